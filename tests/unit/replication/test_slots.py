"""Unit tests for ReplicationSlotManager."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from pgcontrol.core.enums import NodeRole, NodeState, SlotState
from pgcontrol.infrastructure.postgres.config import PostgresConnectionSettings
from pgcontrol.replication.config import NodeConfig
from pgcontrol.replication.domain import ClusterTopology, Node, ReplicationSlot
from pgcontrol.replication.engine import SlotInfo
from pgcontrol.replication.exceptions import InvalidSlotNameError, SlotAlreadyExistsError, SlotInUseError
from pgcontrol.replication.slots import ReplicationSlotManager, classify_orphans

from tests.unit.replication.conftest import FakeEngine


@pytest.fixture
def slots(engine: FakeEngine) -> ReplicationSlotManager:
    return ReplicationSlotManager(engine)


def attach_standby(engine: FakeEngine, host: str, slot_name: str) -> None:
    standby = engine.server(host)
    standby.reachable = True
    standby.in_recovery = True
    standby.upstream = ("pg-0:5432", slot_name)


class TestEnsureSlot:
    """Tests for idempotent slot creation."""

    @pytest.mark.asyncio
    async def test_creates_missing_slot(
        self, engine: FakeEngine, slots: ReplicationSlotManager, primary_conn: PostgresConnectionSettings
    ) -> None:
        state = await slots.ensure_slot(primary_conn, "replica_slot_pg_1")

        assert state == SlotState.CREATED
        assert "replica_slot_pg_1" in engine.server("pg-0").slots

    @pytest.mark.asyncio
    async def test_second_call_is_noop(
        self, engine: FakeEngine, slots: ReplicationSlotManager, primary_conn: PostgresConnectionSettings
    ) -> None:
        """Verify ensure_slot twice leaves exactly one slot and raises nothing."""
        first = await slots.ensure_slot(primary_conn, "replica_slot_pg_1")
        second = await slots.ensure_slot(primary_conn, "replica_slot_pg_1")

        assert first == second == SlotState.CREATED
        assert list(engine.server("pg-0").slots) == ["replica_slot_pg_1"]

    @pytest.mark.asyncio
    async def test_reports_active_slot(
        self, engine: FakeEngine, slots: ReplicationSlotManager, primary_conn: PostgresConnectionSettings
    ) -> None:
        await slots.ensure_slot(primary_conn, "replica_slot_pg_1")
        attach_standby(engine, "pg-1", "replica_slot_pg_1")

        assert await slots.ensure_slot(primary_conn, "replica_slot_pg_1") == SlotState.ACTIVE

    @pytest.mark.asyncio
    async def test_lost_creation_race_treated_as_existing(self, primary_conn: PostgresConnectionSettings) -> None:
        """Verify a duplicate_object error from a concurrent creator is not surfaced.

        Arrange
        -------
        - Engine that lists no slot, then raises SlotAlreadyExistsError on create

        Assert
        ------
        - ensure_slot returns CREATED
        """
        engine = AsyncMock()
        engine.list_slots.side_effect = [[], [SlotInfo(name="replica_slot_pg_1")]]
        engine.create_physical_slot.side_effect = SlotAlreadyExistsError("replica_slot_pg_1")

        state = await ReplicationSlotManager(engine).ensure_slot(primary_conn, "replica_slot_pg_1")

        assert state == SlotState.CREATED
        engine.create_physical_slot.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_calls_for_same_name_create_once(
        self, engine: FakeEngine, slots: ReplicationSlotManager, primary_conn: PostgresConnectionSettings
    ) -> None:
        results = await asyncio.gather(*(slots.ensure_slot(primary_conn, "replica_slot_pg_1") for _ in range(5)))

        assert set(results) == {SlotState.CREATED}
        assert list(engine.server("pg-0").slots) == ["replica_slot_pg_1"]

    @pytest.mark.asyncio
    async def test_invalid_name_rejected_before_engine_call(self, primary_conn: PostgresConnectionSettings) -> None:
        engine = AsyncMock()

        with pytest.raises(InvalidSlotNameError):
            await ReplicationSlotManager(engine).ensure_slot(primary_conn, "Replica-Slot")

        engine.list_slots.assert_not_called()


class TestDropSlot:
    """Tests for slot removal."""

    @pytest.mark.asyncio
    async def test_drop_absent_slot_is_noop(
        self, slots: ReplicationSlotManager, primary_conn: PostgresConnectionSettings
    ) -> None:
        assert await slots.drop_slot(primary_conn, "replica_slot_gone") is False

    @pytest.mark.asyncio
    async def test_drop_idle_slot(
        self, engine: FakeEngine, slots: ReplicationSlotManager, primary_conn: PostgresConnectionSettings
    ) -> None:
        await slots.ensure_slot(primary_conn, "replica_slot_pg_1")

        assert await slots.drop_slot(primary_conn, "replica_slot_pg_1") is True
        assert engine.server("pg-0").slots == {}
        assert await slots.slot_state(primary_conn, "replica_slot_pg_1") == SlotState.ABSENT

    @pytest.mark.asyncio
    async def test_active_slot_requires_force(
        self, engine: FakeEngine, slots: ReplicationSlotManager, primary_conn: PostgresConnectionSettings
    ) -> None:
        await slots.ensure_slot(primary_conn, "replica_slot_pg_1")
        attach_standby(engine, "pg-1", "replica_slot_pg_1")

        with pytest.raises(SlotInUseError) as exc_info:
            await slots.drop_slot(primary_conn, "replica_slot_pg_1")

        assert exc_info.value.slot_name == "replica_slot_pg_1"
        assert "replica_slot_pg_1" in engine.server("pg-0").slots

    @pytest.mark.asyncio
    async def test_forced_drop_terminates_consumer(
        self, engine: FakeEngine, slots: ReplicationSlotManager, primary_conn: PostgresConnectionSettings
    ) -> None:
        await slots.ensure_slot(primary_conn, "replica_slot_pg_1")
        attach_standby(engine, "pg-1", "replica_slot_pg_1")

        assert await slots.drop_slot(primary_conn, "replica_slot_pg_1", force=True) is True
        assert engine.server("pg-0").slots == {}
        assert engine.server("pg-1").upstream is None


class TestOrphans:
    """Tests for orphaned slot detection."""

    @staticmethod
    def topology_with(*replicas: tuple[str, NodeState]) -> ClusterTopology:
        topo = ClusterTopology(cluster_name="orders", primary_id="pg-0")
        topo = topo.with_node(
            Node(config=NodeConfig(node_id="pg-0"), role=NodeRole.PRIMARY, state=NodeState.STREAMING)
        )
        for node_id, state in replicas:
            topo = topo.with_node(
                Node(
                    config=NodeConfig(node_id=node_id),
                    role=NodeRole.REPLICA,
                    state=state,
                    slot_name=f"replica_slot_{node_id.replace('-', '_')}",
                )
            )
        return topo

    @pytest.mark.asyncio
    async def test_slot_of_unknown_replica_is_orphan(
        self, slots: ReplicationSlotManager, primary_conn: PostgresConnectionSettings
    ) -> None:
        await slots.ensure_slot(primary_conn, "replica_slot_pg_1")
        await slots.ensure_slot(primary_conn, "replica_slot_pg_9")
        topology = self.topology_with(("pg-1", NodeState.STREAMING))

        orphans = await slots.find_orphans(primary_conn, topology)

        assert {slot.name for slot in orphans} == {"replica_slot_pg_9"}
        orphan = next(iter(orphans))
        assert orphan.state == SlotState.ORPHANED
        assert orphan.host_node_id == "pg-0"

    def test_slot_of_decommissioned_replica_is_orphan(self) -> None:
        topology = self.topology_with(("pg-1", NodeState.DECOMMISSIONED), ("pg-2", NodeState.BOOTSTRAPPING))
        observed = [ReplicationSlot(name="replica_slot_pg_1"), ReplicationSlot(name="replica_slot_pg_2")]

        orphans = classify_orphans(observed, topology)

        assert {slot.name for slot in orphans} == {"replica_slot_pg_1"}

    def test_orphan_keeps_known_binding(self) -> None:
        topology = self.topology_with().with_slot(
            ReplicationSlot(name="replica_slot_pg_5", bound_node_id="pg-5", host_node_id="pg-0")
        )

        orphans = classify_orphans([ReplicationSlot(name="replica_slot_pg_5")], topology)

        assert [slot.bound_node_id for slot in orphans] == ["pg-5"]
