"""Tests for the rollback coordinator."""

from __future__ import annotations

import asyncio

import pytest
from aws_mock import MockResourceClient

from gateway_provisioner.builder import build_graph
from gateway_provisioner.config import Config, RollbackPolicy
from gateway_provisioner.errors import OperationTimeoutError, PermanentError, TransientError
from gateway_provisioner.graph import ResourceKind
from gateway_provisioner.models import ProvisioningRequest
from gateway_provisioner.rollback import (
    RollbackCoordinator,
    RollbackFailure,
    RollbackOutcome,
    RollbackStatus,
)
from gateway_provisioner.state import NodeState, RunState


def _created_state(request_model: ProvisioningRequest, *lids: str) -> RunState:
    """A run state where the given nodes were created, in that order."""
    run_state = RunState.for_graph(build_graph(request_model), run_id="run-rb")
    for lid in lids:
        run_state.mark_created(lid, f"ext-{lid}", {"name": lid})
    return run_state


class TestRollbackOutcome:
    def test_needs_manual_reconciliation(self) -> None:
        assert RollbackOutcome(RollbackStatus.PARTIALLY_ROLLED_BACK).needs_manual_reconciliation
        assert not RollbackOutcome(RollbackStatus.FULLY_ROLLED_BACK).needs_manual_reconciliation
        assert not RollbackOutcome(RollbackStatus.NOTHING_TO_ROLL_BACK).needs_manual_reconciliation

    def test_to_dict(self) -> None:
        outcome = RollbackOutcome(
            status=RollbackStatus.PARTIALLY_ROLLED_BACK,
            deleted=["api"],
            failed=[RollbackFailure("role", "arn:role", "PermanentError: denied")],
        )

        data = outcome.to_dict()

        assert data["status"] == "partially-rolled-back"
        assert data["deleted"] == ["api"]
        assert data["failed"] == [
            {"logical_id": "role", "external_id": "arn:role", "error": "PermanentError: denied"}
        ]


class TestRollbackCoordinator:
    """Tests for RollbackCoordinator."""

    def test_plan_reverse_creation_order(
        self, request_model: ProvisioningRequest, fast_config: Config
    ) -> None:
        run_state = _created_state(request_model, "role", "api", "function")

        to_delete, to_keep = RollbackCoordinator(MockResourceClient(), fast_config).plan(run_state)

        assert to_delete == ["function", "api", "role"]
        assert to_keep == []

    def test_plan_ignores_skipped_and_failed(
        self, request_model: ProvisioningRequest, fast_config: Config
    ) -> None:
        run_state = _created_state(request_model, "function")
        run_state.mark_skipped("role", "arn:existing", {"name": "role"})
        run_state.mark_failed("api", PermanentError("x"))

        to_delete, _ = RollbackCoordinator(MockResourceClient(), fast_config).plan(run_state)

        assert to_delete == ["function"]

    def test_plan_keep_prerequisites(self, request_model: ProvisioningRequest) -> None:
        config = Config(rollback_policy=RollbackPolicy.KEEP_PREREQUISITES)
        run_state = _created_state(request_model, "role", "function", "api", "root-resource")

        to_delete, to_keep = RollbackCoordinator(MockResourceClient(), config).plan(run_state)

        assert to_delete == ["root-resource"]
        assert to_keep == ["role", "function", "api"]

    @pytest.mark.asyncio
    async def test_nothing_to_roll_back(
        self, request_model: ProvisioningRequest, fast_config: Config
    ) -> None:
        client = MockResourceClient()
        run_state = _created_state(request_model)

        outcome = await RollbackCoordinator(client, fast_config).rollback(run_state)

        assert outcome.status == RollbackStatus.NOTHING_TO_ROLL_BACK
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_rollback_deletes_with_recorded_params(
        self, request_model: ProvisioningRequest, fast_config: Config
    ) -> None:
        client = MockResourceClient()
        run_state = _created_state(request_model, "role", "function")

        outcome = await RollbackCoordinator(client, fast_config).rollback(run_state)

        assert outcome.status == RollbackStatus.FULLY_ROLLED_BACK
        assert outcome.deleted == ["function", "role"]
        assert client.deleted_targets() == ["ext-function", "ext-role"]
        assert run_state.state_of("role") == NodeState.ROLLED_BACK
        assert run_state.state_of("function") == NodeState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_failed_delete_continues(
        self, request_model: ProvisioningRequest, fast_config: Config
    ) -> None:
        """Test that one failed delete does not stop the unwind."""
        client = MockResourceClient(
            fail_delete_on={ResourceKind.API: PermanentError("dependent resources")}
        )
        run_state = _created_state(request_model, "role", "api", "root-resource")

        outcome = await RollbackCoordinator(client, fast_config).rollback(run_state)

        assert outcome.status == RollbackStatus.PARTIALLY_ROLLED_BACK
        assert outcome.deleted == ["root-resource", "role"]
        assert [f.logical_id for f in outcome.failed] == ["api"]
        assert "dependent resources" in outcome.failed[0].error
        assert run_state.state_of("api") == NodeState.ROLLBACK_FAILED
        assert client.deleted_targets() == ["ext-root-resource", "ext-api", "ext-role"]

    @pytest.mark.asyncio
    async def test_replay_retries_only_leftovers(
        self, request_model: ProvisioningRequest, fast_config: Config
    ) -> None:
        """Test that a second rollback only touches what the first left behind."""
        failing = MockResourceClient(fail_delete_on={ResourceKind.API: PermanentError("busy")})
        run_state = _created_state(request_model, "role", "api")
        await RollbackCoordinator(failing, fast_config).rollback(run_state)

        client = MockResourceClient()
        outcome = await RollbackCoordinator(client, fast_config).rollback(run_state)

        assert outcome.status == RollbackStatus.FULLY_ROLLED_BACK
        assert outcome.deleted == ["api"]
        assert client.deleted_targets() == ["ext-api"]

    @pytest.mark.asyncio
    async def test_transient_delete_retried(
        self, request_model: ProvisioningRequest, fast_config: Config
    ) -> None:
        client = MockResourceClient()
        flaky_deletes = {"count": 0}
        handler = client.handler(ResourceKind.ROLE)
        original_delete = handler.delete

        def flaky_delete(external_id: str, params: dict) -> None:
            flaky_deletes["count"] += 1
            if flaky_deletes["count"] == 1:
                raise TransientError("throttled")
            original_delete(external_id, params)

        handler.delete = flaky_delete  # type: ignore[method-assign]
        run_state = _created_state(request_model, "role")

        outcome = await RollbackCoordinator(client, fast_config).rollback(run_state)

        assert outcome.status == RollbackStatus.FULLY_ROLLED_BACK
        assert flaky_deletes["count"] == 2


class TestTimedOutCreates:
    """Tests for reconciling creates whose outcome is unknown."""

    @pytest.mark.asyncio
    async def test_completed_create_is_deleted_before_its_dependencies(
        self, request_model: ProvisioningRequest, fast_config: Config
    ) -> None:
        client = MockResourceClient()
        run_state = _created_state(request_model, "role")
        pending = asyncio.get_running_loop().create_future()
        pending.set_result("ext-function")
        run_state.mark_uncertain(
            "function", {"name": "orders-fn"}, OperationTimeoutError("slow"), pending
        )

        outcome = await RollbackCoordinator(client, fast_config).rollback(run_state)

        assert outcome.status == RollbackStatus.FULLY_ROLLED_BACK
        assert outcome.deleted == ["function", "role"]
        assert client.deleted_targets() == ["ext-function", "ext-role"]

    @pytest.mark.asyncio
    async def test_failed_create_is_not_deleted(
        self, request_model: ProvisioningRequest, fast_config: Config
    ) -> None:
        client = MockResourceClient()
        run_state = _created_state(request_model, "role")
        pending = asyncio.get_running_loop().create_future()
        pending.set_exception(PermanentError("invalid runtime"))
        run_state.mark_uncertain(
            "function", {"name": "orders-fn"}, OperationTimeoutError("slow"), pending
        )

        outcome = await RollbackCoordinator(client, fast_config).rollback(run_state)

        assert outcome.deleted == ["role"]
        assert run_state.state_of("function") == NodeState.FAILED

    @pytest.mark.asyncio
    async def test_replay_looks_up_named_resource(
        self, request_model: ProvisioningRequest, fast_config: Config
    ) -> None:
        client = MockResourceClient()
        found = client.state.add(ResourceKind.FUNCTION, "orders-fn")
        run_state = _created_state(request_model, "role")
        run_state.mark_uncertain("function", {"name": "orders-fn"}, OperationTimeoutError("slow"))

        outcome = await RollbackCoordinator(client, fast_config).rollback(run_state)

        assert outcome.status == RollbackStatus.FULLY_ROLLED_BACK
        assert outcome.deleted == ["function", "role"]
        assert client.deleted_targets() == [found.external_id, "ext-role"]
        assert client.state.resource_count == 0

    @pytest.mark.asyncio
    async def test_replay_named_resource_absent(
        self, request_model: ProvisioningRequest, fast_config: Config
    ) -> None:
        client = MockResourceClient()
        run_state = _created_state(request_model)
        run_state.mark_uncertain(
            "role", {"name": "lambda_basic_execution"}, OperationTimeoutError("slow")
        )

        outcome = await RollbackCoordinator(client, fast_config).rollback(run_state)

        assert outcome.status == RollbackStatus.NOTHING_TO_ROLL_BACK
        assert run_state.state_of("role") == NodeState.FAILED
        assert [call.action for call in client.calls] == ["exists"]

    @pytest.mark.asyncio
    async def test_unnamed_resource_left_for_manual_cleanup(
        self, request_model: ProvisioningRequest, fast_config: Config
    ) -> None:
        client = MockResourceClient()
        run_state = _created_state(request_model, "role", "api")
        run_state.mark_uncertain(
            "deployment", {"rest_api_id": "ext-api"}, OperationTimeoutError("slow")
        )

        outcome = await RollbackCoordinator(client, fast_config).rollback(run_state)

        assert outcome.status == RollbackStatus.PARTIALLY_ROLLED_BACK
        assert outcome.deleted == ["api", "role"]
        assert outcome.failed == [
            RollbackFailure(
                logical_id="deployment",
                external_id=None,
                error="create timed out and its outcome is unknown",
            )
        ]
        assert run_state.state_of("deployment") == NodeState.UNCERTAIN
