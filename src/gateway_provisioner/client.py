"""Resource client contract.

The core never talks to a provider directly. It asks a ResourceClient for
the handler of a resource kind and calls one of three blocking operations:

- exists(name): external id of a resource with that name, or None
- create(params): external id of the newly created resource
- delete(external_id, params): remove a resource created earlier

Handlers report outcomes through the error taxonomy in errors.py:
AlreadyExistsError, TransientError or PermanentError. Request and response
shapes beyond the generic params mapping are the handler's concern.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from .graph import ResourceKind


class ResourceHandler(ABC):
    """Create/lookup/delete operations for a single resource kind."""

    kind: ResourceKind

    # Kinds with a natural lookup-by-name override this
    supports_lookup: bool = False

    def exists(self, name: str) -> str | None:
        """Return the external id of an existing resource named `name`.

        Only called when supports_lookup is True.
        """
        raise NotImplementedError(f"{self.kind.value} does not support lookup by name")

    @abstractmethod
    def create(self, params: Mapping[str, Any]) -> str:
        """Create the resource and return its external identifier.

        Raises:
            AlreadyExistsError: If an equivalent resource already exists.
            TransientError: If the call may succeed when retried.
            PermanentError: For any other failure.
        """

    @abstractmethod
    def delete(self, external_id: str, params: Mapping[str, Any]) -> None:
        """Delete a resource previously returned by create.

        A resource that is already gone counts as deleted.

        Raises:
            TransientError: If the call may succeed when retried.
            PermanentError: For any other failure.
        """


class ResourceClient(ABC):
    """Collection of handlers, one per resource kind."""

    @abstractmethod
    def handler(self, kind: ResourceKind) -> ResourceHandler:
        """Return the handler for a resource kind."""

    def describe_endpoint(self, rest_api_id: str, stage_name: str) -> str | None:
        """Public invoke URL of a deployed stage, if the client can tell."""
        return None
