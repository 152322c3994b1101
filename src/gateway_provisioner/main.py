"""Run orchestration for the provisioner.

Wires together the request, the graph builder, the executor and the AWS
client, and maps run outcomes onto process exit codes:

- 0: every node created or reused
- 1: unexpected error
- 2: invalid request or configuration
- 3: run failed and everything it created was rolled back
- 4: run failed and rollback left resources behind (manual cleanup)
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path

from .aws_client import AwsResourceClient
from .builder import graph_for_request
from .client import ResourceClient
from .config import Config
from .errors import RollbackPartialFailure
from .executor import PlanExecutor, ProvisioningResult
from .models import FunctionRequest
from .rollback import RollbackCoordinator, RollbackOutcome
from .state import RunState

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_UNEXPECTED_ERROR = 1
EXIT_INVALID_INPUT = 2
EXIT_ROLLED_BACK = 3
EXIT_MANUAL_RECONCILIATION = 4

LAMBDA_INVOKE_HINT = (
    "aws lambda invoke --function-name {function_name} "
    "--cli-binary-format raw-in-base64-out --payload '{{}}' output.txt"
)

_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int | str = logging.INFO) -> None:
    """Configure structured JSON logging on stderr.

    Stdout is left for command output (plan, invoke URL, --json results).
    Calling this again replaces the previously installed handler.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def invoke_hint(function_name: str) -> str:
    """AWS CLI command that invokes a deployed function."""
    return LAMBDA_INVOKE_HINT.format(function_name=function_name)


def create_client(config: Config) -> ResourceClient:
    """Build the production resource client."""
    return AwsResourceClient(config)


def exit_code_for(result: ProvisioningResult) -> int:
    if result.success:
        return EXIT_SUCCESS
    if result.needs_manual_reconciliation:
        return EXIT_MANUAL_RECONCILIATION
    return EXIT_ROLLED_BACK


def state_path_for(run_name: str, config: Config, state_file: Path | None = None) -> Path | None:
    """Where to persist a failed run's state, if anywhere."""
    if state_file is not None:
        return state_file
    if config.state_dir is not None:
        return config.state_dir / f"{run_name}.state.json"
    return None


async def run_provisioning(
    request: FunctionRequest,
    config: Config,
    client: ResourceClient,
) -> ProvisioningResult:
    """Build the graph for a request and execute it.

    A ProvisioningRequest gets the full API graph; a plain FunctionRequest
    only the role and function.

    SIGINT/SIGTERM request cancellation: the executor stops before its next
    node and rolls back what it created.
    """
    graph = graph_for_request(request)
    executor = PlanExecutor(client, config)

    logger.info(
        "Provisioning",
        extra={
            "run_name": request.run_name,
            "function_name": request.function_name,
            "region": config.region,
            "rollback_policy": config.rollback_policy.value,
        },
    )

    # Set up signal handlers for graceful cancellation
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        executor.cancel()

    signals = (signal.SIGTERM, signal.SIGINT)
    for sig in signals:
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        return await executor.execute(graph)
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)


def save_failed_state(result: ProvisioningResult, path: Path | None) -> Path | None:
    """Persist the run state of a failed run for a later rollback replay."""
    if result.success or result.run_state is None or path is None:
        return None

    result.run_state.save(path)
    return path


async def replay_rollback(
    state_file: Path,
    config: Config,
    client: ResourceClient,
) -> RollbackOutcome:
    """Roll back the resources recorded in a saved run state.

    The state file is rewritten with the outcome, so a replay that fails
    part-way can simply be run again.

    Raises:
        StateFileError: If the state file cannot be read.
        RollbackPartialFailure: If some deletes still failed.
    """
    run_state = RunState.load(state_file)
    logger.info(
        "Replaying rollback",
        extra={"run_id": run_state.run_id, "state_file": str(state_file)},
    )

    outcome = await RollbackCoordinator(client, config).rollback(run_state)
    run_state.save(state_file)

    if outcome.needs_manual_reconciliation:
        remaining = [f.logical_id for f in outcome.failed]
        raise RollbackPartialFailure(
            f"Rollback left {len(remaining)} resource(s) behind: {remaining}",
            remaining=remaining,
        )
    return outcome
