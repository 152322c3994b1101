"""Gateway Provisioner CLI (gwp).

Provisions a Lambda-backed API Gateway REST API from a single request and
rolls back everything it created when a step fails.

Usage:
    gwp provision -a my-api -l my-fn --runtime python3.12 --artifact build/fn.zip
    gwp provision --request-file request.yaml --state-file run.state.json
    gwp provision --function-only -l my-fn --runtime python3.12 --artifact build/fn.zip
    gwp plan --request-file request.yaml
    gwp rollback --state-file run.state.json
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .builder import API, graph_for_request
from .client import ResourceClient
from .config import Config, ConfigurationError
from .errors import InvalidRequestError, RollbackPartialFailure
from .executor import ProvisioningResult
from .graph import ResourceGraph
from .main import (
    EXIT_INVALID_INPUT,
    EXIT_MANUAL_RECONCILIATION,
    EXIT_SUCCESS,
    EXIT_UNEXPECTED_ERROR,
    create_client,
    exit_code_for,
    invoke_hint,
    replay_rollback,
    run_provisioning,
    save_failed_state,
    setup_logging,
    state_path_for,
)
from .models import FunctionRequest, ProvisioningRequest, parse_request
from .request_loader import load_request
from .state import StateFileError

logger = logging.getLogger(__name__)

VERSION = "0.1.0"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

ClientFactory = Callable[[Config], ResourceClient]


def request_options(f: Callable[..., Any]) -> Callable[..., Any]:
    """Options describing a provisioning request, shared by provision and plan."""
    options = [
        click.option("--api-name", "-a", help="Name of the REST API"),
        click.option("--lambda-name", "-l", "function_name", help="Name of the Lambda function"),
        click.option("--runtime", help="Lambda runtime, e.g. python3.12"),
        click.option(
            "--artifact",
            type=click.Path(dir_okay=False, path_type=Path),
            help="Deployment package (.zip or .jar)",
        ),
        click.option("--memory-size", type=int, help="Function memory in MB (default: 512)"),
        click.option("--role-name", help="IAM execution role (default: lambda_basic_execution)"),
        click.option("--handler", help="Function handler (default: handler.api_handler)"),
        click.option("--stage-name", help="Deployment stage (default: api)"),
        click.option("--description", help="Description for the function and API"),
        click.option(
            "--request-file",
            "-f",
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
            help="YAML request file; command line options take precedence",
        ),
        click.option(
            "--function-only",
            is_flag=True,
            help="Only the role and function; no API (--api-name and --stage-name not allowed)",
        ),
        click.option("--json", "as_json", is_flag=True, help="Print machine-readable output"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def resolve_request(
    request_file: Path | None, fields: dict[str, Any], function_only: bool = False
) -> FunctionRequest:
    """Build a request from a request file and/or command line options.

    Raises:
        InvalidRequestError: If the combined input is invalid.
    """
    model = FunctionRequest if function_only else ProvisioningRequest
    overrides = {key: value for key, value in fields.items() if value is not None}
    if request_file is not None:
        return load_request(request_file, overrides, model)
    return parse_request(overrides, model)


def load_config(dry_run: bool = False) -> Config:
    """Config from the environment; a --dry-run flag can only switch dry run on."""
    config = Config.from_env()
    if dry_run and not config.dry_run:
        config = dataclasses.replace(config, dry_run=True)
    return config


def _client_factory(ctx: click.Context) -> ClientFactory:
    obj = ctx.obj or {}
    return obj.get("client_factory", create_client)


def _echo_plan(graph: ResourceGraph, as_json: bool) -> None:
    order = graph.topological_sort()
    if as_json:
        plan = [
            {
                "logical_id": lid,
                "kind": graph.get(lid).kind.value,
                "depends_on": list(graph.get(lid).depends_on),
            }
            for lid in order
        ]
        click.echo(json.dumps({"dry_run": True, "plan": plan}, indent=2))
        return

    click.echo(f"Plan ({len(order)} resources):")
    for position, lid in enumerate(order, start=1):
        node = graph.get(lid)
        deps = f" <- {', '.join(node.depends_on)}" if node.depends_on else ""
        click.echo(f"  {position:>2}. {lid} [{node.kind.value}]{deps}")


def _echo_result(
    result: ProvisioningResult,
    invoke_url: str | None,
    state_file: Path | None,
    as_json: bool,
    invoke_command: str | None = None,
) -> None:
    if as_json:
        data = result.to_dict()
        data["invoke_url"] = invoke_url
        data["invoke_command"] = invoke_command
        data["state_file"] = str(state_file) if state_file else None
        click.echo(json.dumps(data, indent=2))
        return

    if result.success:
        click.secho("✓ Provisioning complete", fg="green")
        for lid in result.order:
            click.echo(f"  {lid}: {result.node_states[lid].value}")
        if invoke_url:
            click.echo(f"Invoke URL: {invoke_url}")
        if invoke_command:
            click.echo("To invoke the function from the AWS CLI:")
            click.echo(f"  $ {invoke_command}")
        return

    click.secho(
        f"✗ Provisioning failed at '{result.failed_node}': {result.error}", fg="red", err=True
    )
    if result.rollback is not None:
        click.echo(f"Rollback: {result.rollback.status.value}", err=True)
        for failure in result.rollback.failed:
            click.echo(f"  could not delete {failure.logical_id}: {failure.error}", err=True)
    remaining = result.remaining_resources()
    if remaining:
        click.echo("Resources still present:", err=True)
        for lid, external_id in remaining.items():
            click.echo(f"  {lid}: {external_id}", err=True)
    if state_file is not None:
        click.echo(f"Run state saved to {state_file}", err=True)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="gwp")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Level of the JSON logs written to stderr",
)
def cli(log_level: str) -> None:
    """Gateway Provisioner CLI (gwp).

    Idempotently provisions role, function, REST API, proxy resources,
    methods, integrations, deployment and invoke permission.

    \b
    Exit codes:
        0  success
        1  unexpected error
        2  invalid request or configuration
        3  failed, everything created was rolled back
        4  failed, manual cleanup required
    """
    setup_logging(log_level.upper())


@cli.command()
@request_options
@click.option("--dry-run", is_flag=True, help="Print the plan without calling AWS")
@click.option(
    "--state-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Where to save the run state if the run fails",
)
@click.pass_context
def provision(
    ctx: click.Context,
    request_file: Path | None,
    as_json: bool,
    function_only: bool,
    dry_run: bool,
    state_file: Path | None,
    **fields: Any,
) -> None:
    """Provision the API, rolling back on failure.

    \b
    Examples:
        gwp provision -a my-api -l my-fn --runtime python3.12 --artifact fn.zip
        gwp provision -f request.yaml --dry-run
        gwp provision --function-only -l my-fn --runtime java8 --artifact app.jar
    """
    try:
        config = load_config(dry_run)
        request = resolve_request(request_file, fields, function_only)
        graph = graph_for_request(request)
    except (ConfigurationError, InvalidRequestError) as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_INVALID_INPUT)

    if config.dry_run:
        _echo_plan(graph, as_json)
        ctx.exit(EXIT_SUCCESS)

    invoke_url = None
    invoke_command = None
    try:
        client = _client_factory(ctx)(config)
        result = asyncio.run(run_provisioning(request, config, client))
        if result.success and isinstance(request, ProvisioningRequest):
            invoke_url = client.describe_endpoint(result.outputs[API], request.stage_name)
        elif result.success:
            invoke_command = invoke_hint(request.function_name)
    except Exception as e:
        logger.exception("Provisioning failed unexpectedly", extra={"error": str(e)})
        click.echo(f"Unexpected error: {type(e).__name__}: {e}", err=True)
        ctx.exit(EXIT_UNEXPECTED_ERROR)

    # Report the run even when its state cannot be saved
    saved_to = None
    try:
        saved_to = save_failed_state(result, state_path_for(request.run_name, config, state_file))
    except StateFileError as e:
        logger.warning("Could not save run state", extra={"error": str(e)})
        click.echo(f"Warning: {e}", err=True)

    _echo_result(result, invoke_url, saved_to, as_json, invoke_command)
    ctx.exit(exit_code_for(result))


@cli.command()
@request_options
@click.pass_context
def plan(
    ctx: click.Context,
    request_file: Path | None,
    as_json: bool,
    function_only: bool,
    **fields: Any,
) -> None:
    """Print the provisioning plan in execution order. Makes no AWS calls."""
    try:
        request = resolve_request(request_file, fields, function_only)
        graph = graph_for_request(request)
    except InvalidRequestError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_INVALID_INPUT)

    _echo_plan(graph, as_json)


@cli.command()
@click.option(
    "--state-file",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Run state saved by a failed provision",
)
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable output")
@click.pass_context
def rollback(ctx: click.Context, state_file: Path, as_json: bool) -> None:
    """Delete the resources recorded in a saved run state."""
    try:
        config = load_config()
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_INVALID_INPUT)

    try:
        client = _client_factory(ctx)(config)
        outcome = asyncio.run(replay_rollback(state_file, config, client))
    except StateFileError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_INVALID_INPUT)
    except RollbackPartialFailure as e:
        click.secho(f"✗ {e}", fg="red", err=True)
        ctx.exit(EXIT_MANUAL_RECONCILIATION)
    except Exception as e:
        logger.exception("Rollback failed unexpectedly", extra={"error": str(e)})
        click.echo(f"Unexpected error: {type(e).__name__}: {e}", err=True)
        ctx.exit(EXIT_UNEXPECTED_ERROR)

    if as_json:
        click.echo(json.dumps(outcome.to_dict(), indent=2))
    else:
        click.secho(f"✓ Rollback: {outcome.status.value}", fg="green")
        for lid in outcome.deleted:
            click.echo(f"  deleted {lid}")
        for lid in outcome.kept:
            click.echo(f"  kept {lid}")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
