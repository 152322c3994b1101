"""Saga-style rollback of a failed provisioning run.

Cloud resource creation has no multi-resource transaction, so a failed run
is unwound with compensating deletes:

- only nodes the run itself created are deleted, never reused ones
- deletes run in strict reverse creation order (children before parents)
- a failed delete is recorded and the unwind continues
- a create that timed out is reconciled first; if it cannot be, it is
  reported as remaining
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .builder import PREREQUISITE_IDS
from .calls import ProviderCaller
from .client import ResourceClient
from .config import Config, RollbackPolicy
from .errors import ProvisioningError
from .state import NodeRecord, NodeState, RunState

logger = logging.getLogger(__name__)

UNWIND_STATES = frozenset({NodeState.CREATED, NodeState.ROLLBACK_FAILED, NodeState.KEPT})
UNKNOWN_OUTCOME = "create timed out and its outcome is unknown"


class RollbackStatus(str, Enum):
    """Summary of a rollback."""

    NOTHING_TO_ROLL_BACK = "nothing-to-roll-back"
    FULLY_ROLLED_BACK = "fully-rolled-back"
    PARTIALLY_ROLLED_BACK = "partially-rolled-back"


@dataclass(frozen=True)
class RollbackFailure:
    """A resource rollback could not delete."""

    logical_id: str
    external_id: str | None
    error: str


@dataclass
class RollbackOutcome:
    """Result of unwinding a run."""

    status: RollbackStatus
    deleted: list[str] = field(default_factory=list)
    failed: list[RollbackFailure] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)

    @property
    def needs_manual_reconciliation(self) -> bool:
        return self.status == RollbackStatus.PARTIALLY_ROLLED_BACK

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "deleted": list(self.deleted),
            "failed": [
                {"logical_id": f.logical_id, "external_id": f.external_id, "error": f.error}
                for f in self.failed
            ],
            "kept": list(self.kept),
        }


class RollbackCoordinator:
    """Deletes resources created by a run, newest first."""

    def __init__(
        self,
        client: ResourceClient,
        config: Config,
        caller: ProviderCaller | None = None,
    ) -> None:
        self._client = client
        self._config = config
        # Rollback keeps going after cancellation, so no cancel event here
        self._caller = caller or ProviderCaller(config)

    def plan(self, run_state: RunState) -> tuple[list[str], list[str]]:
        """Split created nodes into (to_delete, to_keep) per rollback policy.

        to_delete is in reverse creation order. Nodes left behind by an
        earlier rollback (failed or kept) are candidates again, so a saved
        state can be replayed.
        """
        created = [
            lid for lid in run_state.creation_order if run_state.state_of(lid) in UNWIND_STATES
        ]
        to_keep: list[str] = []
        if self._config.rollback_policy == RollbackPolicy.KEEP_PREREQUISITES:
            to_keep = [lid for lid in created if lid in PREREQUISITE_IDS]
        to_delete = [lid for lid in reversed(created) if lid not in to_keep]
        return to_delete, to_keep

    async def rollback(self, run_state: RunState) -> RollbackOutcome:
        """Delete every node the run created, in reverse creation order.

        Nodes in state skipped-already-exists are never touched. Possibly
        created nodes are settled first.

        Args:
            run_state: State of the failed run. Updated in place with
                rolled-back / rollback-failed / kept states.

        Returns:
            RollbackOutcome summarising what was removed and what remains.
        """
        unresolved = await self.settle(run_state)
        to_delete, to_keep = self.plan(run_state)

        for lid in to_keep:
            run_state.mark_kept(lid)

        if not to_delete and not unresolved:
            logger.info(
                "Nothing to roll back",
                extra={"run_id": run_state.run_id, "kept": to_keep},
            )
            return RollbackOutcome(status=RollbackStatus.NOTHING_TO_ROLL_BACK, kept=to_keep)

        logger.warning(
            "Rolling back created resources",
            extra={
                "run_id": run_state.run_id,
                "delete_order": to_delete,
                "policy": self._config.rollback_policy.value,
            },
        )

        deleted: list[str] = []
        failed = [
            RollbackFailure(logical_id=lid, external_id=None, error=UNKNOWN_OUTCOME)
            for lid in unresolved
        ]

        for lid in to_delete:
            record = run_state.record(lid)
            handler = self._client.handler(record.kind)
            operation = f"delete {record.kind.value} '{lid}'"

            try:
                await self._caller.call_with_retry(
                    operation, handler.delete, record.external_id, record.params
                )
            except ProvisioningError as e:
                run_state.mark_rollback_failed(lid, e)
                failed.append(
                    RollbackFailure(
                        logical_id=lid,
                        external_id=record.external_id,
                        error=f"{type(e).__name__}: {e}",
                    )
                )
                logger.error(
                    "Rollback delete failed, continuing",
                    extra={
                        "run_id": run_state.run_id,
                        "logical_id": lid,
                        "external_id": record.external_id,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                continue

            run_state.mark_rolled_back(lid)
            deleted.append(lid)
            logger.info(
                "Rolled back resource",
                extra={
                    "run_id": run_state.run_id,
                    "logical_id": lid,
                    "external_id": record.external_id,
                },
            )

        status = (
            RollbackStatus.PARTIALLY_ROLLED_BACK if failed else RollbackStatus.FULLY_ROLLED_BACK
        )
        outcome = RollbackOutcome(status=status, deleted=deleted, failed=failed, kept=to_keep)

        if failed:
            logger.error(
                "Rollback incomplete, manual cleanup required",
                extra={
                    "run_id": run_state.run_id,
                    "remaining": [f.logical_id for f in failed],
                },
            )
        else:
            logger.info(
                "Rollback complete",
                extra={"run_id": run_state.run_id, "deleted_count": len(deleted)},
            )
        return outcome

    async def settle(self, run_state: RunState) -> list[str]:
        """Reconcile every possibly-created node before anything is deleted.

        A create still running in this process is given one more call
        timeout to finish. Without one (a replayed state file), kinds that
        support lookup by name are looked up. A node found to exist becomes
        created and is unwound like any other; a node known to be absent
        becomes failed.

        Returns:
            Logical ids whose outcome is still unknown. They stay
            possibly-created.
        """
        unresolved: list[str] = []
        for lid in run_state.creation_order:
            record = run_state.record(lid)
            if record.state != NodeState.UNCERTAIN:
                continue

            pending = run_state.take_pending(lid)
            if pending is not None:
                found, known = await self._await_pending(pending)
            else:
                found, known = await self._look_up(record)

            if not known:
                unresolved.append(lid)
                logger.error(
                    "Could not reconcile timed-out create",
                    extra={"run_id": run_state.run_id, "logical_id": lid},
                )
            elif found is not None:
                run_state.mark_resolved(lid, found)
                logger.warning(
                    "Timed-out create went through",
                    extra={"run_id": run_state.run_id, "logical_id": lid, "external_id": found},
                )
            else:
                run_state.mark_failed(lid, ProvisioningError(f"{lid} was never created"))
        return unresolved

    async def _await_pending(self, pending: asyncio.Future[Any]) -> tuple[str | None, bool]:
        done, _ = await asyncio.wait({pending}, timeout=self._config.call_timeout_seconds)
        if not done:
            return None, False
        if pending.cancelled() or pending.exception() is not None:
            return None, True
        return pending.result(), True

    async def _look_up(self, record: NodeRecord) -> tuple[str | None, bool]:
        handler = self._client.handler(record.kind)
        name = record.params.get("name")
        if not handler.supports_lookup or not isinstance(name, str):
            return None, False
        try:
            found = await self._caller.call_with_retry(
                f"lookup {record.kind.value} '{record.logical_id}'", handler.exists, name
            )
        except ProvisioningError as e:
            logger.warning(
                "Lookup of timed-out create failed",
                extra={"logical_id": record.logical_id, "error": str(e)},
            )
            return None, False
        return found, True
