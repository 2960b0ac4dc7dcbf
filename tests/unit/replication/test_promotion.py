"""Unit tests for PromotionCoordinator."""

from __future__ import annotations

import asyncio

import pytest

from pgcontrol.core.enums import NodeHealthStatus, NodeRole, NodeState, SlotState
from pgcontrol.infrastructure.postgres.config import PostgresConnectionSettings
from pgcontrol.replication.config import PromotionConfig, ReplicationCredentials
from pgcontrol.replication.domain import ClusterTopology
from pgcontrol.replication.engine import UpstreamInfo
from pgcontrol.replication.exceptions import (
    CandidateNotHealthyError,
    OperationCancelledError,
    PromotionFailedError,
    StalePrimaryStillAliveError,
    UnknownNodeError,
)
from pgcontrol.replication.health import HealthSnapshot, NodeHealthReport
from pgcontrol.replication.promotion import PromotionCoordinator
from pgcontrol.replication.slots import ReplicationSlotManager

from tests.unit.replication.conftest import FakeEngine


def snapshot_of(topology: ClusterTopology, **statuses: NodeHealthStatus) -> HealthSnapshot:
    """Build a snapshot where every active node is healthy unless overridden by node id (dashes as underscores)."""
    reports = {}
    for node in topology.active_nodes():
        status = statuses.get(node.node_id.replace("-", "_"), NodeHealthStatus.HEALTHY)
        reports[node.node_id] = NodeHealthReport(
            node_id=node.node_id,
            role=node.role,
            status=status,
            reachable=status != NodeHealthStatus.UNREACHABLE,
        )
    return HealthSnapshot(
        cluster_name=topology.cluster_name,
        primary_id=topology.primary_id,
        topology_generation=topology.generation,
        nodes=reports,
    )


@pytest.fixture
def promotion_config() -> PromotionConfig:
    return PromotionConfig(check_timeout_seconds=0.05, decommission_grace_seconds=300)


@pytest.fixture
def coordinator(engine: FakeEngine, promotion_config: PromotionConfig) -> PromotionCoordinator:
    return PromotionCoordinator(engine, promotion_config, ReplicationSlotManager(engine), ReplicationCredentials())


@pytest.fixture
def failed_primary(engine: FakeEngine, streaming_topology: ClusterTopology) -> ClusterTopology:
    """Streaming topology whose primary stopped answering."""
    engine.server("pg-0").reachable = False
    return streaming_topology


class TestSplitBrainGuard:
    """Tests for refusing promotion while the old primary is alive."""

    @pytest.mark.asyncio
    async def test_refuses_while_primary_answers(
        self, engine: FakeEngine, coordinator: PromotionCoordinator, streaming_topology: ClusterTopology
    ) -> None:
        """Verify no replica is promoted while the primary answers a direct check.

        Assert
        ------
        - StalePrimaryStillAliveError naming the old primary
        - pg_promote never issued
        """
        with pytest.raises(StalePrimaryStillAliveError) as exc_info:
            await coordinator.promote(streaming_topology, "pg-1", snapshot_of(streaming_topology))

        assert exc_info.value.node_id == "pg-0"
        assert engine.promotions == []

    @pytest.mark.asyncio
    async def test_auth_rejection_counts_as_alive(
        self, engine: FakeEngine, coordinator: PromotionCoordinator, streaming_topology: ClusterTopology
    ) -> None:
        engine.server("pg-0").reject_auth = True

        with pytest.raises(StalePrimaryStillAliveError):
            await coordinator.promote(streaming_topology, "pg-1", snapshot_of(streaming_topology))

    @pytest.mark.asyncio
    async def test_hung_primary_counts_as_dead(
        self, engine: FakeEngine, coordinator: PromotionCoordinator, streaming_topology: ClusterTopology
    ) -> None:
        engine.server("pg-0").hang = True

        result = await coordinator.promote(streaming_topology, "pg-1", snapshot_of(streaming_topology))

        assert result.new_primary_id == "pg-1"

    @pytest.mark.asyncio
    async def test_force_overrides_guard(
        self, engine: FakeEngine, coordinator: PromotionCoordinator, streaming_topology: ClusterTopology
    ) -> None:
        result = await coordinator.promote(streaming_topology, "pg-1", snapshot_of(streaming_topology), force=True)

        assert result.new_primary_id == "pg-1"
        assert engine.promotions == ["pg-1:5432"]


class TestCandidateChecks:
    """Tests for candidate eligibility."""

    @pytest.mark.asyncio
    async def test_unknown_candidate(self, coordinator: PromotionCoordinator, failed_primary: ClusterTopology) -> None:
        with pytest.raises(UnknownNodeError):
            await coordinator.promote(failed_primary, "pg-9", snapshot_of(failed_primary))

    @pytest.mark.asyncio
    async def test_primary_is_not_a_candidate(
        self, coordinator: PromotionCoordinator, failed_primary: ClusterTopology
    ) -> None:
        with pytest.raises(CandidateNotHealthyError):
            await coordinator.promote(failed_primary, "pg-0", snapshot_of(failed_primary))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [NodeHealthStatus.UNREACHABLE, NodeHealthStatus.DIVERGED])
    async def test_unhealthy_candidate_rejected(
        self,
        engine: FakeEngine,
        coordinator: PromotionCoordinator,
        failed_primary: ClusterTopology,
        status: NodeHealthStatus,
    ) -> None:
        with pytest.raises(CandidateNotHealthyError) as exc_info:
            await coordinator.promote(failed_primary, "pg-1", snapshot_of(failed_primary, pg_1=status))

        assert exc_info.value.node_id == "pg-1"
        assert engine.promotions == []

    @pytest.mark.asyncio
    async def test_lagging_candidate_accepted(
        self, coordinator: PromotionCoordinator, failed_primary: ClusterTopology
    ) -> None:
        snapshot = snapshot_of(failed_primary, pg_1=NodeHealthStatus.LAGGING)

        result = await coordinator.promote(failed_primary, "pg-1", snapshot)

        assert result.new_primary_id == "pg-1"

    @pytest.mark.asyncio
    async def test_bootstrapping_candidate_rejected(
        self, coordinator: PromotionCoordinator, failed_primary: ClusterTopology
    ) -> None:
        node = failed_primary.node("pg-2").model_copy(update={"state": NodeState.BOOTSTRAPPING})
        topology = failed_primary.with_node(node)

        with pytest.raises(CandidateNotHealthyError):
            await coordinator.promote(topology, "pg-2", snapshot_of(topology))


class TestPromotion:
    """Tests for the promotion effect and replica reconciliation."""

    @pytest.mark.asyncio
    async def test_failover_leaves_single_primary(
        self, engine: FakeEngine, coordinator: PromotionCoordinator, failed_primary: ClusterTopology
    ) -> None:
        """Verify the promoted replica is the only primary and the survivor follows it.

        Arrange
        -------
        - pg-0 down, pg-1 and pg-2 healthy

        Act
        ---
        - Promote pg-1

        Assert
        ------
        - pg-1 is PRIMARY in state PROMOTED and left recovery
        - pg-0 demoted, not a member of the replica set
        - pg-2 streams from pg-1 through its own slot on pg-1
        - No slot hosted on pg-0 remains in the topology
        """
        result = await coordinator.promote(failed_primary, "pg-1", snapshot_of(failed_primary))
        topology = result.topology

        assert result.complete
        assert result.old_primary_id == "pg-0"
        assert result.reconfigured == ("pg-2",)
        assert topology.primary_id == "pg-1"
        assert topology.generation > failed_primary.generation

        promoted = topology.node("pg-1")
        assert promoted.role == NodeRole.PRIMARY
        assert promoted.state == NodeState.PROMOTED
        assert promoted.promoted_at is not None
        assert promoted.upstream_id is None
        assert engine.server("pg-1").in_recovery is False

        demoted = topology.node("pg-0")
        assert demoted.role == NodeRole.REPLICA
        assert demoted.state == NodeState.UNREACHABLE
        assert topology.replica_ids == ("pg-2",)

        survivor = topology.node("pg-2")
        assert survivor.upstream_id == "pg-1"
        assert engine.server("pg-2").upstream == ("pg-1:5432", "replica_slot_pg_2")
        assert engine.reconfigured["pg-2:5432"] == UpstreamInfo.for_standby(
            PostgresConnectionSettings(host="pg-1"),
            ReplicationCredentials(),
            application_name="pg-2",
            slot_name="replica_slot_pg_2",
        )
        assert {slot.host_node_id for slot in topology.slots.values()} == {"pg-1"}
        assert topology.slots["replica_slot_pg_2"].bound_node_id == "pg-2"

        primaries = [n.node_id for n in topology.active_nodes() if n.role == NodeRole.PRIMARY]
        assert primaries == ["pg-1"]

    @pytest.mark.asyncio
    async def test_input_topology_not_mutated(
        self, coordinator: PromotionCoordinator, failed_primary: ClusterTopology
    ) -> None:
        await coordinator.promote(failed_primary, "pg-1", snapshot_of(failed_primary))

        assert failed_primary.primary_id == "pg-0"
        assert failed_primary.node("pg-1").role == NodeRole.REPLICA

    @pytest.mark.asyncio
    async def test_zero_grace_decommissions_old_primary(
        self, engine: FakeEngine, failed_primary: ClusterTopology
    ) -> None:
        coordinator = PromotionCoordinator(
            engine,
            PromotionConfig(check_timeout_seconds=0.05, decommission_grace_seconds=0),
            ReplicationSlotManager(engine),
            ReplicationCredentials(),
        )

        result = await coordinator.promote(failed_primary, "pg-2", snapshot_of(failed_primary))

        assert result.topology.node("pg-0").state == NodeState.DECOMMISSIONED
        assert result.reconfigured == ("pg-1",)

    @pytest.mark.asyncio
    async def test_promotion_not_confirmed(
        self, engine: FakeEngine, coordinator: PromotionCoordinator, failed_primary: ClusterTopology
    ) -> None:
        engine.server("pg-1").promote_sticks = False

        with pytest.raises(PromotionFailedError) as exc_info:
            await coordinator.promote(failed_primary, "pg-1", snapshot_of(failed_primary))

        assert exc_info.value.node_id == "pg-1"
        assert engine.reconfigured == {}

    @pytest.mark.asyncio
    async def test_unreachable_replica_reported_not_fatal(
        self, engine: FakeEngine, coordinator: PromotionCoordinator, failed_primary: ClusterTopology
    ) -> None:
        """Verify a replica that cannot be repointed does not undo the promotion.

        Assert
        ------
        - Promotion result returned, not complete
        - pg-2 listed in failures with last_error set and still following pg-0
        """
        engine.fail_reconfigure.add("pg-2")

        result = await coordinator.promote(failed_primary, "pg-1", snapshot_of(failed_primary))

        assert result.topology.primary_id == "pg-1"
        assert not result.complete
        assert set(result.failures) == {"pg-2"}
        survivor = result.topology.node("pg-2")
        assert survivor.upstream_id == "pg-0"
        assert survivor.last_error is not None
        assert survivor.last_error.startswith("TransientNetworkError")

    @pytest.mark.asyncio
    async def test_slot_on_new_primary_reported_active_after_repoint(
        self, engine: FakeEngine, coordinator: PromotionCoordinator, failed_primary: ClusterTopology
    ) -> None:
        slots = ReplicationSlotManager(engine)

        await coordinator.promote(failed_primary, "pg-1", snapshot_of(failed_primary))

        state = await slots.slot_state(PostgresConnectionSettings(host="pg-1"), "replica_slot_pg_2")
        assert state == SlotState.ACTIVE


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_promote(
        self, engine: FakeEngine, coordinator: PromotionCoordinator, failed_primary: ClusterTopology
    ) -> None:
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(OperationCancelledError):
            await coordinator.promote(failed_primary, "pg-1", snapshot_of(failed_primary), cancel=cancel)

        assert engine.promotions == []

    @pytest.mark.asyncio
    async def test_cancel_after_promote_stops_reconciliation(
        self, engine: FakeEngine, coordinator: PromotionCoordinator, failed_primary: ClusterTopology
    ) -> None:
        """Verify cancellation after pg_promote still returns the promoted topology.

        The promotion cannot be undone; pending replicas are reported instead.
        """
        cancel = asyncio.Event()
        promote = engine.promote

        async def promote_then_cancel(conn: PostgresConnectionSettings, wait_seconds: int) -> bool:
            promoted = await promote(conn, wait_seconds)
            cancel.set()
            return promoted

        engine.promote = promote_then_cancel  # type: ignore[method-assign]

        result = await coordinator.promote(failed_primary, "pg-1", snapshot_of(failed_primary), cancel=cancel)

        assert result.cancelled is True
        assert result.topology.primary_id == "pg-1"
        assert result.failures == {"pg-2": "reconciliation cancelled"}
        assert engine.reconfigured == {}
