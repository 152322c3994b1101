"""AWS Mock for Integration Testing.

This module provides an in-memory implementation of the provisioner's
ResourceClient contract that enables executor and CLI testing without
AWS connectivity.

Key Features:
- In-memory state for every resource kind
- Error injection per kind (permanent, transient, conflict, hang)
- Delete failure injection for partial rollback scenarios
- Call recording for asserting order and idempotence

Usage:
    from aws_mock import MockResourceClient

    client = MockResourceClient(fail_on={ResourceKind.DEPLOYMENT: PermanentError("boom")})
    result = await PlanExecutor(client, config).execute(graph)

    assert client.state.resource_count == 0
    assert client.deleted_kinds() == [...]
"""

from .client import MockCall, MockResourceClient
from .state import MockAwsState, MockResource

__all__ = [
    "MockAwsState",
    "MockCall",
    "MockResource",
    "MockResourceClient",
]
