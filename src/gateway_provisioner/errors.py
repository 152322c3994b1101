"""Error taxonomy for provisioning runs.

Every failure a run can hit maps onto one of these classes. The executor
decides what to do with a node-level failure purely by its class:

- InvalidRequestError: raised before any graph exists, nothing to undo
- AlreadyExistsError: resource present, handled by the idempotence guard
- DuplicateResourceError: fatal, a logical id would be created twice
- TransientError: retried with exponential backoff
- PermanentError (and subclasses): stops the run and triggers rollback
- RollbackPartialFailure: rollback could not delete everything
"""

from __future__ import annotations

import asyncio
from typing import Any


class ProvisioningError(Exception):
    """Base class for all provisioning errors."""

    pass


class InvalidRequestError(ProvisioningError):
    """Raised when a provisioning request is structurally invalid."""

    pass


class AlreadyExistsError(ProvisioningError):
    """Raised by a resource handler when the resource already exists."""

    def __init__(self, message: str, existing_id: str | None = None) -> None:
        super().__init__(message)
        self.existing_id = existing_id


class DuplicateResourceError(ProvisioningError):
    """Raised when a logical id would be created a second time."""

    pass


class TransientError(ProvisioningError):
    """Raised for retryable provider failures (throttling, 5xx, propagation)."""

    pass


class PermanentError(ProvisioningError):
    """Raised for provider failures that must not be retried."""

    pass


class OperationTimeoutError(PermanentError):
    """Raised when a provider call exceeds the per-call timeout.

    The worker thread cannot be stopped, so the call may still complete.
    pending is the future that will hold its eventual outcome.
    """

    def __init__(self, message: str, pending: asyncio.Future[Any] | None = None) -> None:
        super().__init__(message)
        self.pending = pending


class ProvisioningCancelledError(PermanentError):
    """Raised when a run is cancelled by the user."""

    pass


class RollbackPartialFailure(ProvisioningError):
    """Raised when rollback left resources that need manual cleanup."""

    def __init__(self, message: str, remaining: list[str] | None = None) -> None:
        super().__init__(message)
        self.remaining = remaining or []


class GraphError(ProvisioningError):
    """Raised when a resource graph violates its structural invariants."""

    pass


class CyclicDependencyError(GraphError):
    """Raised when a dependency cycle is detected."""

    pass


class UnknownDependencyError(GraphError):
    """Raised when a node depends on (or references) an undeclared node."""

    pass
