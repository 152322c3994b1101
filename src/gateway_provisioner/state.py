"""Per-run provisioning state.

A RunState is owned by exactly one provisioning run. It records, per
logical id, what happened to the node and (once created) the provider's
external identifier together with the resolved params needed to delete it.
A failed run's state can be written to disk so the rollback can be
replayed later without rebuilding the graph.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from .graph import ResourceGraph, ResourceKind

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class NodeState(str, Enum):
    """Lifecycle of a node within one run."""

    PENDING = "pending"
    CREATED = "created"
    SKIPPED = "skipped-already-exists"
    FAILED = "failed"
    # Create timed out; the provider may or may not hold the resource
    UNCERTAIN = "possibly-created"
    # Set by rollback for reporting
    ROLLED_BACK = "rolled-back"
    ROLLBACK_FAILED = "rollback-failed"
    KEPT = "kept"


# States in which a node's dependents may start
SATISFIED_STATES = frozenset({NodeState.CREATED, NodeState.SKIPPED})


class StateFileError(Exception):
    """Raised when a saved run state cannot be read or written."""

    pass


@dataclass
class NodeRecord:
    """What happened to a single node."""

    logical_id: str
    kind: ResourceKind
    state: NodeState = NodeState.PENDING
    external_id: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "logical_id": self.logical_id,
            "kind": self.kind.value,
            "state": self.state.value,
            "external_id": self.external_id,
            "params": self.params,
            "attempts": self.attempts,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodeRecord:
        return cls(
            logical_id=data["logical_id"],
            kind=ResourceKind(data["kind"]),
            state=NodeState(data["state"]),
            external_id=data.get("external_id"),
            params=dict(data.get("params") or {}),
            attempts=int(data.get("attempts", 0)),
            error=data.get("error"),
        )


class RunState:
    """Mutable state of one provisioning run.

    Thread-safe: every mutation takes the internal lock, so concurrent
    node execution cannot interleave updates to the same record.
    """

    def __init__(self, run_id: str, records: dict[str, NodeRecord]) -> None:
        self.run_id = run_id
        self.started_at = datetime.now(UTC)
        self._records = records
        self._creation_order: list[str] = []
        # In-process only, never saved
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._lock = threading.Lock()

    @classmethod
    def for_graph(cls, graph: ResourceGraph, run_id: str) -> RunState:
        """Create a state with every node of the graph pending."""
        records = {
            node.logical_id: NodeRecord(logical_id=node.logical_id, kind=node.kind)
            for node in graph
        }
        return cls(run_id=run_id, records=records)

    def __contains__(self, logical_id: object) -> bool:
        return logical_id in self._records

    def record(self, logical_id: str) -> NodeRecord:
        return self._records[logical_id]

    def records(self) -> list[NodeRecord]:
        with self._lock:
            return list(self._records.values())

    @property
    def creation_order(self) -> list[str]:
        """Logical ids in the order their create calls succeeded."""
        with self._lock:
            return list(self._creation_order)

    def state_of(self, logical_id: str) -> NodeState:
        return self._records[logical_id].state

    def satisfied(self) -> set[str]:
        with self._lock:
            return {lid for lid, rec in self._records.items() if rec.state in SATISFIED_STATES}

    def external_ids(self) -> dict[str, str]:
        """Logical id to external id for every node that has one."""
        with self._lock:
            return {
                lid: rec.external_id
                for lid, rec in self._records.items()
                if rec.external_id is not None
            }

    def in_state(self, state: NodeState) -> list[str]:
        with self._lock:
            return [lid for lid, rec in self._records.items() if rec.state == state]

    def note_attempt(self, logical_id: str) -> int:
        with self._lock:
            record = self._records[logical_id]
            record.attempts += 1
            return record.attempts

    def mark_created(self, logical_id: str, external_id: str, params: dict[str, Any]) -> None:
        with self._lock:
            record = self._records[logical_id]
            record.state = NodeState.CREATED
            record.external_id = external_id
            record.params = params
            record.error = None
            self._creation_order.append(logical_id)

    def mark_skipped(self, logical_id: str, external_id: str, params: dict[str, Any]) -> None:
        with self._lock:
            record = self._records[logical_id]
            record.state = NodeState.SKIPPED
            record.external_id = external_id
            record.params = params

    def mark_failed(self, logical_id: str, error: BaseException) -> None:
        with self._lock:
            record = self._records[logical_id]
            record.state = NodeState.FAILED
            record.error = f"{type(error).__name__}: {error}"

    def mark_uncertain(
        self,
        logical_id: str,
        params: dict[str, Any],
        error: BaseException,
        pending: asyncio.Future[Any] | None = None,
    ) -> None:
        """Record a create whose outcome is unknown.

        The node takes its place in the creation order so that, once
        resolved, rollback deletes it before its dependencies.
        """
        with self._lock:
            record = self._records[logical_id]
            record.state = NodeState.UNCERTAIN
            record.params = params
            record.error = f"{type(error).__name__}: {error}"
            self._creation_order.append(logical_id)
            if pending is not None:
                self._pending[logical_id] = pending

    def take_pending(self, logical_id: str) -> asyncio.Future[Any] | None:
        """Future of a timed-out create still running in this process, if any."""
        with self._lock:
            return self._pending.pop(logical_id, None)

    def mark_resolved(self, logical_id: str, external_id: str) -> None:
        """A possibly-created node turned out to exist."""
        with self._lock:
            record = self._records[logical_id]
            record.state = NodeState.CREATED
            record.external_id = external_id

    def mark_rolled_back(self, logical_id: str) -> None:
        with self._lock:
            self._records[logical_id].state = NodeState.ROLLED_BACK

    def mark_rollback_failed(self, logical_id: str, error: BaseException) -> None:
        with self._lock:
            record = self._records[logical_id]
            record.state = NodeState.ROLLBACK_FAILED
            record.error = f"{type(error).__name__}: {error}"

    def mark_kept(self, logical_id: str) -> None:
        with self._lock:
            self._records[logical_id].state = NodeState.KEPT

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "version": STATE_FORMAT_VERSION,
                "run_id": self.run_id,
                "started_at": self.started_at.isoformat(),
                "creation_order": list(self._creation_order),
                "nodes": [rec.to_dict() for rec in self._records.values()],
            }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunState:
        if data.get("version") != STATE_FORMAT_VERSION:
            raise StateFileError(f"Unsupported state format version: {data.get('version')}")
        records = {
            rec.logical_id: rec for rec in (NodeRecord.from_dict(n) for n in data["nodes"])
        }
        state = cls(run_id=data["run_id"], records=records)
        state.started_at = datetime.fromisoformat(data["started_at"])
        unknown = [lid for lid in data["creation_order"] if lid not in records]
        if unknown:
            raise StateFileError(f"Creation order references unknown nodes: {unknown}")
        state._creation_order = list(data["creation_order"])
        return state

    def save(self, path: Path) -> None:
        """Write the state as JSON.

        Raises:
            StateFileError: If the file cannot be written.
        """
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        except OSError as e:
            raise StateFileError(f"Failed to write state file {path}: {e}") from e
        logger.info("Saved run state", extra={"run_id": self.run_id, "path": str(path)})

    @classmethod
    def load(cls, path: Path) -> RunState:
        """Read a state previously written by save().

        Raises:
            StateFileError: If the file is missing, unreadable or malformed.
        """
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateFileError(f"Failed to read state file {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise StateFileError(f"Invalid JSON in state file {path}: {e}") from e

        try:
            return cls.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StateFileError(f"Malformed state file {path}: {e}") from e
