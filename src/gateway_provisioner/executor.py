"""Plan executor: drives a resource graph to completion or rollback.

For every node in topological order the executor:
1. Checks that all dependencies are created or reused
2. Resolves Ref params against the external ids recorded so far
3. Asks the idempotence guard whether the resource already exists
4. Creates it, retrying transient failures with backoff
5. Records the outcome in the run's RunState

The first hard failure stops the run. Everything the run created is then
handed to the rollback coordinator, and the result reports the failing
node, the error and what is left behind. Node-level failures never escape
execute(); the ProvisioningResult is the only reporting channel.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .calls import ProviderCaller
from .client import ResourceClient
from .config import Config
from .errors import (
    AlreadyExistsError,
    DuplicateResourceError,
    OperationTimeoutError,
    PermanentError,
    ProvisioningCancelledError,
    ProvisioningError,
)
from .graph import ResourceGraph, ResourceNode
from .guard import IdempotenceGuard
from .rollback import RollbackCoordinator, RollbackOutcome
from .state import SATISFIED_STATES, NodeState, RunState

logger = logging.getLogger(__name__)

# States in which the resource still exists, or may exist, after the run
REMAINING_STATES = frozenset(
    {
        NodeState.CREATED,
        NodeState.SKIPPED,
        NodeState.KEPT,
        NodeState.ROLLBACK_FAILED,
        NodeState.UNCERTAIN,
    }
)
UNKNOWN_EXTERNAL_ID = "unknown"


@dataclass
class ProvisioningResult:
    """Terminal value of one provisioning run."""

    run_id: str
    success: bool
    order: list[str] = field(default_factory=list)
    outputs: dict[str, str] = field(default_factory=dict)
    node_states: dict[str, NodeState] = field(default_factory=dict)
    failed_node: str | None = None
    error: ProvisioningError | None = None
    rollback: RollbackOutcome | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    run_state: RunState | None = field(default=None, repr=False)

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def needs_manual_reconciliation(self) -> bool:
        return self.rollback is not None and self.rollback.needs_manual_reconciliation

    def remaining_resources(self) -> dict[str, str]:
        """Logical id to external id of every resource that still exists.

        A create that timed out and could not be reconciled is listed with
        an external id of "unknown".
        """
        if self.run_state is None:
            return dict(self.outputs)
        return {
            rec.logical_id: rec.external_id or UNKNOWN_EXTERNAL_ID
            for rec in self.run_state.records()
            if rec.state in REMAINING_STATES
            and (rec.external_id is not None or rec.state == NodeState.UNCERTAIN)
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "success": self.success,
            "order": list(self.order),
            "outputs": dict(self.outputs),
            "node_states": {lid: state.value for lid, state in self.node_states.items()},
            "failed_node": self.failed_node,
            "error": f"{type(self.error).__name__}: {self.error}" if self.error else None,
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "remaining_resources": self.remaining_resources(),
            "duration_seconds": self.duration_seconds,
        }


class PlanExecutor:
    """Executes a resource graph against a resource client.

    One executor instance may run several graphs one after another, but each
    execute() call owns a fresh RunState that is never shared.
    """

    def __init__(
        self,
        client: ResourceClient,
        config: Config | None = None,
        guard: IdempotenceGuard | None = None,
        rollback_coordinator: RollbackCoordinator | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            client: Resource client for provider calls.
            config: Timeouts, retry and concurrency settings.
            guard: Idempotence guard (default: IdempotenceGuard()).
            rollback_coordinator: Rollback coordinator (default: built from client/config).
        """
        self._client = client
        self._config = config or Config()
        self._guard = guard or IdempotenceGuard()
        self._cancel_event = asyncio.Event()
        self._caller = ProviderCaller(self._config, cancel_event=self._cancel_event)
        self._rollback = rollback_coordinator or RollbackCoordinator(client, self._config)

    def cancel(self) -> None:
        """Request cancellation; the run stops before its next node and rolls back."""
        logger.warning("Cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def execute(self, graph: ResourceGraph) -> ProvisioningResult:
        """Provision every node of the graph.

        Args:
            graph: Validated resource graph.

        Returns:
            ProvisioningResult describing success or the failure and rollback.
        """
        order = graph.topological_sort()
        run_state = RunState.for_graph(graph, run_id=uuid.uuid4().hex[:12])
        result = ProvisioningResult(run_id=run_state.run_id, success=False, order=order)

        logger.info(
            "Starting provisioning run",
            extra={
                "run_id": run_state.run_id,
                "node_count": len(order),
                "max_concurrency": self._config.max_concurrency,
            },
        )

        if self._config.max_concurrency > 1:
            failure = await self._run_waves(graph, run_state)
        else:
            failure = await self._run_sequential(graph, order, run_state)

        if failure is None:
            result.success = True
            result.outputs = run_state.external_ids()
        else:
            result.failed_node, result.error = failure
            result.rollback = await self._rollback.rollback(run_state)

        result.node_states = {rec.logical_id: rec.state for rec in run_state.records()}
        result.run_state = run_state
        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def _run_sequential(
        self, graph: ResourceGraph, order: list[str], run_state: RunState
    ) -> tuple[str, ProvisioningError] | None:
        for lid in order:
            if self._cancel_event.is_set():
                error = ProvisioningCancelledError(f"Run cancelled before '{lid}'")
                run_state.mark_failed(lid, error)
                return lid, error

            error = await self._run_node_captured(graph.get(lid), run_state)
            if error is not None:
                return lid, error
        return None

    async def _run_waves(
        self, graph: ResourceGraph, run_state: RunState
    ) -> tuple[str, ProvisioningError] | None:
        """Run independent nodes concurrently, one wave of ready nodes at a time."""
        started: set[str] = set()

        while True:
            ready = graph.get_ready_nodes(run_state.satisfied(), started)
            if not ready:
                break

            if self._cancel_event.is_set():
                error = ProvisioningCancelledError(f"Run cancelled before '{ready[0]}'")
                run_state.mark_failed(ready[0], error)
                return ready[0], error

            batch = ready[: self._config.max_concurrency]
            started.update(batch)
            errors = await asyncio.gather(
                *(self._run_node_captured(graph.get(lid), run_state) for lid in batch)
            )

            failures = [(lid, err) for lid, err in zip(batch, errors) if err is not None]
            if failures:
                return failures[0]

        unfinished = [node.logical_id for node in graph if node.logical_id not in started]
        if unfinished:
            error = PermanentError(f"Nodes never became ready: {unfinished}")
            run_state.mark_failed(unfinished[0], error)
            return unfinished[0], error
        return None

    async def _run_node_captured(
        self, node: ResourceNode, run_state: RunState
    ) -> ProvisioningError | None:
        """Run a node, recording any failure in the run state instead of raising."""
        try:
            await self._run_node(node, run_state)
            return None
        except ProvisioningError as e:
            error = e
        except Exception as e:
            error = PermanentError(f"Unexpected error on '{node.logical_id}': {e}")
            error.__cause__ = e

        if run_state.state_of(node.logical_id) != NodeState.UNCERTAIN:
            run_state.mark_failed(node.logical_id, error)
        logger.error(
            "Node failed",
            extra={
                "run_id": run_state.run_id,
                "logical_id": node.logical_id,
                "kind": node.kind.value,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )
        return error

    async def _run_node(self, node: ResourceNode, run_state: RunState) -> None:
        """Create (or reuse) a single node.

        Raises:
            ProvisioningError: On any hard failure.
        """
        unmet = [dep for dep in node.depends_on if run_state.state_of(dep) not in SATISFIED_STATES]
        if unmet:
            raise PermanentError(f"Node '{node.logical_id}' has unmet dependencies: {unmet}")

        params = node.resolve_params(run_state.external_ids())
        handler = self._client.handler(node.kind)
        kind = node.kind.value

        decision = await self._caller.call_with_retry(
            f"lookup {kind} '{node.logical_id}'", self._guard.should_create, node, self._client
        )
        if not decision.should_create:
            assert decision.existing_id is not None
            run_state.mark_skipped(node.logical_id, decision.existing_id, params)
            return

        try:
            external_id = await self._caller.call_with_retry(
                f"create {kind} '{node.logical_id}'",
                handler.create,
                params,
                on_attempt=lambda: run_state.note_attempt(node.logical_id),
            )
        except AlreadyExistsError as e:
            # Appeared between lookup and create: reuse it like the guard would have
            if handler.supports_lookup and e.existing_id is not None:
                run_state.mark_skipped(node.logical_id, e.existing_id, params)
                return
            raise DuplicateResourceError(
                f"{kind} '{node.logical_id}' already exists; refusing to create a duplicate: {e}"
            ) from e
        except OperationTimeoutError as e:
            run_state.mark_uncertain(node.logical_id, params, e, e.pending)
            raise

        run_state.mark_created(node.logical_id, external_id, params)
        logger.info(
            "Created resource",
            extra={
                "run_id": run_state.run_id,
                "logical_id": node.logical_id,
                "kind": kind,
                "external_id": external_id,
            },
        )

    def _log_result(self, result: ProvisioningResult) -> None:
        """Log run result with structured data."""
        extra: dict[str, Any] = {
            "run_id": result.run_id,
            "success": result.success,
            "duration_seconds": result.duration_seconds,
            "node_count": len(result.order),
        }

        if result.success:
            logger.info("Provisioning complete", extra=extra)
            return

        extra["failed_node"] = result.failed_node
        extra["error"] = str(result.error)
        extra["remaining_resources"] = result.remaining_resources()
        if result.rollback is not None:
            extra["rollback_status"] = result.rollback.status.value

        if result.needs_manual_reconciliation:
            logger.critical("Provisioning failed, manual cleanup required", extra=extra)
        else:
            logger.error("Provisioning failed", extra=extra)
