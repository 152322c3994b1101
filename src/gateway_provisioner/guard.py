"""Idempotence guard.

Decides per node whether the executor should create a resource or reuse
one that already exists. Only kinds with a natural name (role, function,
api) can be looked up; everything else is created unconditionally and a
conflict on create is treated as a duplicate rather than silently
reused.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .client import ResourceClient
from .graph import ResourceNode

logger = logging.getLogger(__name__)


class GuardAction(str, Enum):
    CREATE = "create"
    SKIP = "skip"


@dataclass(frozen=True)
class GuardDecision:
    """Outcome of an idempotence check."""

    action: GuardAction
    existing_id: str | None = None

    @classmethod
    def create(cls) -> GuardDecision:
        return cls(action=GuardAction.CREATE)

    @classmethod
    def skip(cls, existing_id: str) -> GuardDecision:
        return cls(action=GuardAction.SKIP, existing_id=existing_id)

    @property
    def should_create(self) -> bool:
        return self.action == GuardAction.CREATE


class IdempotenceGuard:
    """Checks for pre-existing resources before creation."""

    def should_create(self, node: ResourceNode, client: ResourceClient) -> GuardDecision:
        """Decide whether a node needs to be created.

        Blocking: may issue a lookup call against the provider.

        Args:
            node: Node about to be created.
            client: Resource client used for the lookup.

        Returns:
            GuardDecision.create() or GuardDecision.skip(existing_id).

        Raises:
            TransientError, PermanentError: If the lookup itself fails.
        """
        handler = client.handler(node.kind)
        name = node.lookup_name

        if not handler.supports_lookup or name is None:
            return GuardDecision.create()

        existing_id = handler.exists(name)
        if existing_id is None:
            return GuardDecision.create()

        logger.info(
            "Resource already exists, reusing",
            extra={
                "logical_id": node.logical_id,
                "kind": node.kind.value,
                "resource_name": name,
                "external_id": existing_id,
            },
        )
        return GuardDecision.skip(existing_id)
