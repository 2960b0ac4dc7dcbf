"""Physical replication slot lifecycle on the primary.

A physical slot makes the primary retain WAL until the bound standby has
consumed it. That guarantee is what lets a fresh replica start streaming from
exactly where its base backup ended, and it is also a liability: a slot whose
consumer is gone pins WAL forever. Slots are therefore tied to the replica
lifecycle (created when a replica starts bootstrapping, reclaimed when it is
decommissioned) and orphans are reported by the health monitor.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from ..core.enums import SlotState
from ..logger import get_logger
from .domain import ReplicationSlot, validate_slot_name
from .exceptions import SlotAlreadyExistsError, SlotInUseError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    from structlog.stdlib import BoundLogger

    from ..infrastructure.postgres.config import PostgresConnectionSettings
    from .domain import ClusterTopology
    from .engine import ReplicationEngine, SlotInfo

logger: BoundLogger = get_logger(__name__)


def _to_slot(info: SlotInfo, bound_node_id: str | None = None, host_node_id: str | None = None) -> ReplicationSlot:
    return ReplicationSlot(
        name=info.name,
        bound_node_id=bound_node_id,
        host_node_id=host_node_id,
        state=SlotState.ACTIVE if info.active else SlotState.CREATED,
        restart_lsn=info.restart_lsn,
    )


class ReplicationSlotManager:
    """Idempotent create / inspect / drop of physical slots.

    Calls for the same slot name are serialized with a per-name lock; calls
    for distinct names run concurrently.

    Examples
    --------
    >>> slots = ReplicationSlotManager(engine)
    >>> await slots.ensure_slot(primary_settings, "replica_slot_pg_1")
    <SlotState.CREATED: 'created'>
    >>> await slots.ensure_slot(primary_settings, "replica_slot_pg_1")  # no error
    <SlotState.CREATED: 'created'>
    """

    __slots__ = ("_engine", "_locks")

    def __init__(self, engine: ReplicationEngine) -> None:
        self._engine = engine
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def _slot_lock(self, slot_name: str) -> AsyncIterator[None]:
        async with self._locks[slot_name]:
            yield

    async def _find(self, primary_conn: PostgresConnectionSettings, slot_name: str) -> SlotInfo | None:
        for info in await self._engine.list_slots(primary_conn):
            if info.name == slot_name:
                return info
        return None

    async def ensure_slot(self, primary_conn: PostgresConnectionSettings, slot_name: str) -> SlotState:
        """Create the slot if absent.

        Parameters
        ----------
        primary_conn
            Connection settings of the server hosting the slot.
        slot_name
            Slot name, ``[a-z0-9_]{1,63}``.

        Returns
        -------
        SlotState
            ``CREATED`` for a new or idle slot, ``ACTIVE`` if a standby is
            already streaming from it.

        Raises
        ------
        InvalidSlotNameError
            If ``slot_name`` is not a valid slot name.
        """
        validate_slot_name(slot_name)

        async with self._slot_lock(slot_name):
            existing = await self._find(primary_conn, slot_name)
            if existing is not None:
                state = SlotState.ACTIVE if existing.active else SlotState.CREATED
                logger.debug("Replication slot already exists", slot_name=slot_name, state=state)
                return state

            try:
                await self._engine.create_physical_slot(primary_conn, slot_name)
            except SlotAlreadyExistsError:
                # Created by another controller between the lookup and the create.
                existing = await self._find(primary_conn, slot_name)
                if existing is not None and existing.active:
                    return SlotState.ACTIVE
                return SlotState.CREATED

            logger.info("Replication slot created", slot_name=slot_name, server=primary_conn.address)
            return SlotState.CREATED

    async def list_slots(self, primary_conn: PostgresConnectionSettings) -> set[ReplicationSlot]:
        """Enumerate physical slots with their active / inactive state."""
        return {_to_slot(info) for info in await self._engine.list_slots(primary_conn)}

    async def slot_state(self, primary_conn: PostgresConnectionSettings, slot_name: str) -> SlotState:
        info = await self._find(primary_conn, slot_name)
        if info is None:
            return SlotState.ABSENT
        return SlotState.ACTIVE if info.active else SlotState.CREATED

    async def drop_slot(
        self,
        primary_conn: PostgresConnectionSettings,
        slot_name: str,
        *,
        force: bool = False,
    ) -> bool:
        """Remove a slot.

        Returns
        -------
        bool
            True if a slot was dropped, False if it did not exist.

        Raises
        ------
        SlotInUseError
            If a standby is streaming from the slot and ``force`` is False.
        """
        validate_slot_name(slot_name)

        async with self._slot_lock(slot_name):
            existing = await self._find(primary_conn, slot_name)
            if existing is None:
                return False
            if existing.active and not force:
                raise SlotInUseError(slot_name)

            await self._engine.drop_slot(primary_conn, slot_name, terminate=force)

        logger.info("Replication slot dropped", slot_name=slot_name, forced=force, server=primary_conn.address)
        return True

    async def find_orphans(
        self,
        primary_conn: PostgresConnectionSettings,
        topology: ClusterTopology,
    ) -> set[ReplicationSlot]:
        """Slots on the primary whose bound replica is gone."""
        return classify_orphans(await self.list_slots(primary_conn), topology)


def classify_orphans(slots: Iterable[ReplicationSlot], topology: ClusterTopology) -> set[ReplicationSlot]:
    """Select the slots no active replica in ``topology`` is bound to.

    Orphans keep WAL on the primary indefinitely and must be reclaimed.
    """
    bound = {node.slot_name for node in topology.replicas() if node.is_active and node.slot_name is not None}
    orphans: set[ReplicationSlot] = set()
    for slot in slots:
        if slot.name in bound:
            continue
        known = topology.slots.get(slot.name)
        orphans.add(
            slot.model_copy(
                update={
                    "state": SlotState.ORPHANED,
                    "bound_node_id": known.bound_node_id if known else None,
                    "host_node_id": topology.primary_id,
                }
            )
        )
    return orphans
