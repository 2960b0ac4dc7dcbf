"""Replica promotion with split-brain guards.

Promotion is refused while the current primary still accepts a direct connection,
unless the caller forces it. Forcing is only safe when the old primary has
been fenced by other means; the coordinator cannot verify that.

After ``pg_promote()`` is confirmed, every remaining replica gets a slot on
the new primary and its ``primary_conninfo`` repointed. A replica that cannot
be reconciled keeps its old ``upstream_id`` and is reported in
`PromotionResult.failures`; the monitor then classifies it as diverged.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from ..core.enums import NodeRole, NodeState
from ..logger import get_logger
from .domain import ALLOWED_TRANSITIONS, ClusterTopology, ReplicationSlot, slot_name_for
from .engine import UpstreamInfo
from .exceptions import (
    CandidateNotHealthyError,
    OperationCancelledError,
    PromotionFailedError,
    ReplicationControlError,
    StalePrimaryStillAliveError,
    TransientNetworkError,
)

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

    from ..infrastructure.postgres.config import PostgresConnectionSettings
    from .config import PromotionConfig, ReplicationCredentials
    from .domain import Node
    from .engine import ReplicationEngine
    from .health import HealthSnapshot
    from .slots import ReplicationSlotManager

logger: BoundLogger = get_logger(__name__)

_PROMOTABLE_STATES = frozenset({NodeState.STREAMING, NodeState.LAGGING, NodeState.UNREACHABLE})


class PromotionResult(BaseModel):
    """Outcome of a completed promotion.

    The promotion itself succeeded; ``failures`` lists replicas that could not
    be repointed at the new primary (node id to error message).
    """

    model_config = ConfigDict(frozen=True)

    topology: ClusterTopology
    new_primary_id: str
    old_primary_id: str
    reconfigured: tuple[str, ...] = ()
    failures: dict[str, str] = Field(default_factory=dict)
    cancelled: bool = Field(default=False, description="Reconciliation stopped early by cancellation")

    @property
    def complete(self) -> bool:
        return not self.failures and not self.cancelled


class PromotionCoordinator:
    """Promote a replica and reconcile the rest of the cluster around it."""

    __slots__ = ("_config", "_credentials", "_engine", "_slot_prefix", "_slots")

    def __init__(
        self,
        engine: ReplicationEngine,
        config: PromotionConfig,
        slots: ReplicationSlotManager,
        credentials: ReplicationCredentials,
        *,
        slot_prefix: str = "replica_slot_",
    ) -> None:
        self._engine = engine
        self._config = config
        self._slots = slots
        self._credentials = credentials
        self._slot_prefix = slot_prefix

    def _check_candidate(self, topology: ClusterTopology, candidate_id: str, snapshot: HealthSnapshot) -> Node:
        candidate = topology.node(candidate_id)

        if candidate_id == topology.primary_id or candidate.role != NodeRole.REPLICA:
            msg = f"Node {candidate_id!r} is not a replica"
            raise CandidateNotHealthyError(msg, node_id=candidate_id)
        if candidate.state not in _PROMOTABLE_STATES:
            msg = f"Node {candidate_id!r} is {candidate.state} and cannot be promoted"
            raise CandidateNotHealthyError(msg, node_id=candidate_id)

        report = snapshot.get(candidate_id)
        if report is None or not report.is_promotable():
            status = report.status if report is not None else "unknown"
            msg = f"Node {candidate_id!r} health is {status}; promotion requires healthy or lagging"
            raise CandidateNotHealthyError(msg, node_id=candidate_id)
        return candidate

    async def _is_alive(self, conn: PostgresConnectionSettings) -> bool:
        timeout = self._config.check_timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                await self._engine.ping(conn, timeout)
        except (TimeoutError, TransientNetworkError):
            return False
        except ReplicationControlError:
            # The server answered, it only rejected us.
            return True
        return True

    async def _promote_server(self, candidate: Node) -> None:
        conn = candidate.config.connection
        try:
            promoted = await self._engine.promote(conn, self._config.promote_wait_seconds)
            status = await self._engine.node_status(conn, self._config.check_timeout_seconds)
        except ReplicationControlError as e:
            msg = f"Promotion of {candidate.node_id!r} could not be confirmed: {e.message}"
            raise PromotionFailedError(msg, node_id=candidate.node_id) from e

        if status.in_recovery:
            msg = f"Node {candidate.node_id!r} is still in recovery after pg_promote (returned {promoted})"
            raise PromotionFailedError(msg, node_id=candidate.node_id)

    async def promote(
        self,
        topology: ClusterTopology,
        candidate_id: str,
        snapshot: HealthSnapshot,
        *,
        force: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> PromotionResult:
        """Promote ``candidate_id`` to primary.

        Parameters
        ----------
        topology
            Current topology; returned updated in the result, never mutated.
        candidate_id
            Replica to promote.
        snapshot
            Latest health snapshot; the candidate must be healthy or lagging.
        force
            Promote even though the old primary still answers checks.
        cancel
            Checked before ``pg_promote`` and between replica reconciliations.

        Returns
        -------
        PromotionResult
            New topology plus per-replica reconciliation failures.

        Raises
        ------
        UnknownNodeError
            ``candidate_id`` is not in the topology.
        CandidateNotHealthyError
            The candidate is not a promotable replica.
        StalePrimaryStillAliveError
            The old primary answered and ``force`` is False.
        PromotionFailedError
            The server did not leave recovery.
        OperationCancelledError
            ``cancel`` was set before ``pg_promote`` was issued.
        """
        candidate = self._check_candidate(topology, candidate_id, snapshot)
        old_primary = topology.primary
        log = logger.bind(candidate_id=candidate_id, old_primary_id=old_primary.node_id)

        if await self._is_alive(old_primary.config.connection):
            if not force:
                msg = f"Primary {old_primary.node_id!r} is still reachable; refusing to promote {candidate_id!r}"
                raise StalePrimaryStillAliveError(msg, node_id=old_primary.node_id)
            log.warning("Forcing promotion while the old primary still answers checks")

        if cancel is not None and cancel.is_set():
            msg = f"Promotion of {candidate_id!r} cancelled before pg_promote"
            raise OperationCancelledError(msg, node_id=candidate_id)

        log.info("Promoting replica")
        await self._promote_server(candidate)
        log.info("Replica left recovery")

        new_topology = self._swap_primary(topology, candidate, old_primary)
        return await self._reconcile(new_topology, candidate, old_primary.node_id, cancel)

    def _swap_primary(self, topology: ClusterTopology, candidate: Node, old_primary: Node) -> ClusterTopology:
        promoted = candidate.model_copy(
            update={"role": NodeRole.PRIMARY, "upstream_id": None, "slot_name": None, "last_error": None}
        ).transition(NodeState.PROMOTED)

        can_wait = (
            old_primary.state == NodeState.UNREACHABLE
            or NodeState.UNREACHABLE in ALLOWED_TRANSITIONS[old_primary.state]
        )
        if self._config.decommission_grace_seconds > 0 and can_wait:
            old_target = NodeState.UNREACHABLE
        else:
            old_target = NodeState.DECOMMISSIONED
        demoted = old_primary.model_copy(update={"role": NodeRole.REPLICA, "upstream_id": None}).transition(old_target)

        new_topology = (
            topology.with_primary(candidate.node_id).with_node(promoted).with_node(demoted, enroll=False)
        )
        for slot in topology.slots.values():
            if slot.host_node_id in (None, old_primary.node_id):
                new_topology = new_topology.without_slot(slot.name)
        return new_topology

    async def _reconcile(
        self,
        topology: ClusterTopology,
        new_primary: Node,
        old_primary_id: str,
        cancel: asyncio.Event | None,
    ) -> PromotionResult:
        primary_conn = new_primary.config.connection
        reconfigured: list[str] = []
        failures: dict[str, str] = {}
        cancelled = False

        for replica in topology.replicas():
            if not replica.is_active:
                continue
            if cancel is not None and cancel.is_set():
                cancelled = True
                failures[replica.node_id] = "reconciliation cancelled"
                continue

            slot_name = replica.slot_name or slot_name_for(replica.node_id, self._slot_prefix)
            try:
                slot_state = await self._slots.ensure_slot(primary_conn, slot_name)
                upstream = UpstreamInfo.for_standby(
                    primary_conn,
                    self._credentials,
                    application_name=replica.config.effective_application_name,
                    slot_name=slot_name,
                )
                await self._engine.reconfigure_upstream(replica.config.connection, upstream)
            except ReplicationControlError as e:
                failures[replica.node_id] = e.message
                topology = topology.with_node(replica.with_error(f"{e.code}: {e.message}"))
                logger.error(
                    "Failed to repoint replica at new primary",
                    node_id=replica.node_id,
                    new_primary_id=new_primary.node_id,
                    error=e.message,
                )
                continue

            topology = topology.with_node(
                replica.model_copy(
                    update={"upstream_id": new_primary.node_id, "slot_name": slot_name, "last_error": None}
                )
            ).with_slot(
                ReplicationSlot(
                    name=slot_name,
                    bound_node_id=replica.node_id,
                    host_node_id=new_primary.node_id,
                    state=slot_state,
                )
            )
            reconfigured.append(replica.node_id)
            logger.info("Replica repointed at new primary", node_id=replica.node_id, slot_name=slot_name)

        if cancelled:
            logger.warning("Promotion reconciliation cancelled", pending=sorted(failures))

        logger.info(
            "Promotion completed",
            new_primary_id=new_primary.node_id,
            old_primary_id=old_primary_id,
            reconfigured=len(reconfigured),
            failures=len(failures),
        )
        return PromotionResult(
            topology=topology,
            new_primary_id=new_primary.node_id,
            old_primary_id=old_primary_id,
            reconfigured=tuple(reconfigured),
            failures=failures,
            cancelled=cancelled,
        )
