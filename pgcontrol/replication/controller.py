"""Cluster controller: topology owner and operator surface.

The controller is the only writer of `ClusterTopology`. Components return
new topologies or raise typed errors; the controller commits the former to
the topology store and turns the latter into `Outcome` objects, so a failure
on one node never takes the control loop down.

Usage
-----
>>> async with ClusterController.from_config(cluster_config, PostgresEngine()) as controller:
...     await controller.bootstrap_all()
...     outcome = await controller.poll_once()
...     outcome.snapshot.status
"""

from __future__ import annotations

import asyncio
from collections import Counter
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Self

from pydantic import BaseModel, ConfigDict

from ..core.enums import BootstrapCheckpoint, ErrorKind, NodeHealthStatus, NodeRole, NodeState, SlotState
from ..logger import get_logger
from .bootstrap import BootstrapExecutor, BootstrapRequest, BootstrapResult
from .domain import ClusterTopology, Node, ReplicationSlot, slot_name_for
from .exceptions import (
    DuplicateNodeError,
    InvalidTransitionError,
    PreconditionFailedError,
    PromotionInProgressError,
    ReplicationControlError,
    SlotInUseError,
    TopologyStoreError,
    TransientNetworkError,
)
from .health import HealthSnapshot, NodeHealthReport
from .monitor import HealthMonitor
from .promotion import PromotionCoordinator, PromotionResult
from .slots import ReplicationSlotManager
from .store import TopologyStore, build_store

if TYPE_CHECKING:
    import types
    from collections.abc import Iterator

    from structlog.stdlib import BoundLogger

    from .config import ClusterConfig, ControllerSettings, NodeConfig
    from .domain import BootstrapProgress
    from .engine import ReplicationEngine

logger: BoundLogger = get_logger(__name__)


class ErrorInfo(BaseModel):
    """Structured description of a failed operation."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    code: str
    message: str
    node_id: str | None = None

    @classmethod
    def from_exception(cls, exc: ReplicationControlError) -> Self:
        return cls(kind=exc.kind, code=exc.code, message=exc.message, node_id=exc.node_id)


class Outcome(BaseModel):
    """Result of a controller operation.

    ``ok`` is False exactly when ``error`` is set. The fields that apply to
    the operation are populated; the others stay None.
    """

    model_config = ConfigDict(frozen=True)

    ok: bool
    operation: str
    topology: ClusterTopology | None = None
    snapshot: HealthSnapshot | None = None
    bootstrap: dict[str, BootstrapResult] | None = None
    promotion: PromotionResult | None = None
    errors: tuple[ErrorInfo, ...] = ()

    @property
    def error(self) -> ErrorInfo | None:
        return self.errors[0] if self.errors else None

    @classmethod
    def failure(cls, operation: str, *errors: ReplicationControlError, topology: ClusterTopology | None = None) -> Self:
        return cls(
            ok=False,
            operation=operation,
            topology=topology,
            errors=tuple(ErrorInfo.from_exception(e) for e in errors),
        )


def _default_engine() -> ReplicationEngine:
    # Imported here: the asyncpg engine itself depends on this package.
    from ..infrastructure.postgres.engine import PostgresEngine

    return PostgresEngine()


def _desired_topology(config: ClusterConfig) -> ClusterTopology:
    topology = ClusterTopology(cluster_name=config.name, primary_id=config.primary.node_id)
    topology = topology.with_node(Node(config=config.primary, role=NodeRole.PRIMARY))
    for replica in config.replicas:
        topology = topology.with_node(_replica_node(replica, config))
    return topology


def _replica_node(node_config: NodeConfig, config: ClusterConfig, primary_id: str | None = None) -> Node:
    return Node(
        config=node_config,
        role=NodeRole.REPLICA,
        upstream_id=primary_id or config.primary.node_id,
        slot_name=slot_name_for(node_config.node_id, config.slot_prefix),
    )


class ClusterController:
    """Owns the cluster topology and drives all node state transitions.

    Topology mutations are serialized by one lock. A promotion is rejected
    while another promotion or any bootstrap is running, and replicas cannot
    be added while a promotion is running.
    """

    __slots__ = (
        "_bootstrapper",
        "_bootstrapping",
        "_cancel",
        "_config",
        "_engine",
        "_lock",
        "_monitor",
        "_promoter",
        "_promotion_lock",
        "_slots",
        "_store",
        "_topology",
    )

    def __init__(
        self,
        config: ClusterConfig,
        engine: ReplicationEngine,
        store: TopologyStore | None = None,
    ) -> None:
        self._config = config
        self._engine = engine
        self._store = store
        self._slots = ReplicationSlotManager(engine)
        self._bootstrapper = BootstrapExecutor(engine, config.bootstrap, self._slots)
        self._monitor = HealthMonitor(engine, config.monitor, self._slots)
        self._promoter = PromotionCoordinator(
            engine, config.promotion, self._slots, config.replication, slot_prefix=config.slot_prefix
        )
        self._topology = _desired_topology(config)
        self._lock = asyncio.Lock()
        self._promotion_lock = asyncio.Lock()
        self._bootstrapping: Counter[str] = Counter()
        self._cancel = asyncio.Event()

    @classmethod
    def from_config(
        cls,
        config: ClusterConfig,
        engine: ReplicationEngine | None = None,
        store: TopologyStore | None = None,
    ) -> Self:
        return cls(config, engine or _default_engine(), store)

    @classmethod
    def from_settings(cls, settings: ControllerSettings, engine: ReplicationEngine | None = None) -> Self:
        """Create a controller from environment-derived settings."""
        return cls(settings.load_cluster_config(), engine or _default_engine(), build_store(settings.store))

    async def __aenter__(self) -> Self:
        outcome = await self.initialize()
        if not outcome.ok and outcome.error is not None:
            logger.warning("Controller started without a provisioned primary", error=outcome.error.message)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        if exc_type is not None and exc_val is not None:
            logger.error(
                "ClusterController exiting with exception",
                exc_type=exc_type.__name__,
                exc_val=str(exc_val),
            )
        await self.aclose()

    async def aclose(self) -> None:
        self._cancel.set()
        if self._store is not None:
            await self._store.aclose()
        logger.info("Cluster controller closed", cluster=self._config.name)

    @property
    def topology(self) -> ClusterTopology:
        return self._topology

    @property
    def cancel_event(self) -> asyncio.Event:
        """Set to cancel in-flight bootstraps and promotion reconciliation."""
        return self._cancel

    @property
    def store(self) -> TopologyStore | None:
        return self._store

    # Topology bookkeeping

    async def _commit(self, topology: ClusterTopology) -> None:
        """Replace the topology and persist it; caller holds ``_lock``."""
        violations = topology.check_invariants()
        if violations:
            logger.debug("Topology not settled", generation=topology.generation, violations=violations)
        self._topology = topology
        if self._store is not None:
            await self._store.save(topology)

    async def _update_node(self, node: Node) -> None:
        async with self._lock:
            await self._commit(self._topology.with_node(node, enroll=node.node_id in self._topology.replica_ids))

    async def _record_error(self, node_id: str, exc: ReplicationControlError) -> None:
        async with self._lock:
            node = self._topology.nodes.get(node_id)
            if node is None:
                return
            updated = node.with_error(f"{exc.code}: {exc.message}")
            try:
                await self._commit(self._topology.with_node(updated, enroll=node_id in self._topology.replica_ids))
            except TopologyStoreError as e:
                logger.warning("Could not persist node error", node_id=node_id, error=e.message)

    def _rebind_configs(self, topology: ClusterTopology) -> ClusterTopology:
        """Attach configured node settings, including passwords, to a loaded topology.

        Nodes added at runtime are not in the configuration and reuse the
        primary's password.
        """
        configured = {node.node_id: node for node in (self._config.primary, *self._config.replicas)}
        password = self._config.primary.connection.password
        nodes: dict[str, Node] = {}
        for node_id, node in topology.nodes.items():
            node_config = configured.get(node_id)
            if node_config is None:
                connection = node.config.connection.model_copy(update={"password": password})
                node_config = node.config.model_copy(update={"connection": connection})
            nodes[node_id] = node.model_copy(update={"config": node_config})
        return topology.model_copy(update={"nodes": nodes})

    async def _load_persisted(self) -> None:
        if self._store is None:
            return
        persisted = await self._store.load(self._config.name)
        if persisted is None:
            return

        topology = self._rebind_configs(persisted)
        # Replicas added to the configuration since the last run.
        for replica in self._config.replicas:
            if replica.node_id not in topology.nodes:
                topology = topology.with_node(_replica_node(replica, self._config, topology.primary_id))
        self._topology = topology
        logger.info(
            "Loaded persisted topology",
            cluster=topology.cluster_name,
            primary_id=topology.primary_id,
            generation=topology.generation,
        )

    # Operator surface

    async def initialize(self) -> Outcome:
        """Load persisted state and provision the primary.

        Provisioning waits for the primary, ensures the replication role and
        enables the configured extensions. A missing extension is logged and
        does not fail initialization.
        """
        try:
            async with self._lock:
                await self._load_persisted()
        except ReplicationControlError as e:
            # Leave the stored document untouched.
            logger.error("Persisted topology could not be loaded", code=e.code, error=e.message)
            return Outcome.failure("initialize", e, topology=self._topology)

        try:
            primary = self._topology.primary
            conn = primary.config.connection
            await self._bootstrapper.wait_for_primary(conn, node_id=primary.node_id)

            provisioning = self._config.provisioning
            if provisioning.create_replication_role:
                await self._engine.ensure_replication_role(conn, self._config.replication)
            for extension in provisioning.extensions:
                try:
                    await self._engine.enable_extension(conn, extension)
                except PreconditionFailedError as e:
                    logger.warning("Extension not available", extension=extension, error=e.message)

            async with self._lock:
                primary = self._topology.primary
                if primary.state == NodeState.PROVISIONING:
                    primary = primary.transition(NodeState.STREAMING)
                await self._commit(self._topology.with_node(primary.with_error(None)))
        except ReplicationControlError as e:
            logger.error("Primary provisioning failed", error=e.message, code=e.code)
            await self._record_error(self._topology.primary_id, e)
            return Outcome.failure("initialize", e, topology=self._topology)

        logger.info(
            "Cluster initialized",
            cluster=self._config.name,
            primary_id=self._topology.primary_id,
            replicas=len(self._topology.replica_ids),
        )
        return Outcome(ok=True, operation="initialize", topology=self._topology)

    @contextmanager
    def _bootstrap_guard(self, *node_ids: str) -> Iterator[None]:
        """Mark nodes as bootstrapping for the duration of the block; promotions are rejected meanwhile."""
        if self._promotion_lock.locked():
            msg = f"Cannot bootstrap {sorted(node_ids)} while a promotion is in progress"
            raise PromotionInProgressError(msg, node_id=node_ids[0] if len(node_ids) == 1 else None)
        pending = Counter(node_ids)
        self._bootstrapping.update(pending)
        try:
            yield
        finally:
            self._bootstrapping -= pending

    async def _bootstrap_node(self, node_id: str) -> BootstrapResult:
        topology = self._topology
        node = topology.node(node_id)
        if node.config.data_directory is None:
            msg = f"Replica {node_id!r} has no data_directory configured"
            raise PreconditionFailedError(msg, node_id=node_id)

        slot_name = node.slot_name or slot_name_for(node_id, self._config.slot_prefix)
        primary = topology.primary
        try:
            await self._update_node(
                node.model_copy(update={"slot_name": slot_name, "upstream_id": primary.node_id}).transition(
                    NodeState.BOOTSTRAPPING
                )
            )

            async def on_checkpoint(progress: BootstrapProgress) -> None:
                async with self._lock:
                    current = self._topology.node(node_id).model_copy(update={"bootstrap": progress})
                    await self._commit(self._topology.with_node(current))

            request = BootstrapRequest(
                node_id=node_id,
                data_directory=node.config.data_directory,
                primary=primary.config.connection,
                credentials=self._config.replication,
                slot_name=slot_name,
                application_name=node.config.effective_application_name,
            )
            result = await self._bootstrapper.bootstrap(
                request,
                progress=node.bootstrap,
                on_checkpoint=on_checkpoint,
                cancel=self._cancel,
            )
        except ReplicationControlError as e:
            logger.error("Replica bootstrap failed", node_id=node_id, code=e.code, error=e.message)
            await self._record_error(node_id, e)
            raise

        async with self._lock:
            current = self._topology.node(node_id).with_error(None)
            slot = ReplicationSlot(
                name=slot_name,
                bound_node_id=node_id,
                host_node_id=primary.node_id,
                state=SlotState.CREATED,
            )
            await self._commit(self._topology.with_node(current).with_slot(slot))
        return result

    async def add_replica(self, config: NodeConfig) -> Outcome:
        """Add a replica to the topology and bootstrap it."""
        try:
            with self._bootstrap_guard(config.node_id):
                async with self._lock:
                    existing = self._topology.nodes.get(config.node_id)
                    if existing is not None and existing.is_active:
                        raise DuplicateNodeError(config.node_id)
                    if config.data_directory is None:
                        msg = f"Replica {config.node_id!r} has no data_directory configured"
                        raise PreconditionFailedError(msg, node_id=config.node_id)
                    await self._commit(
                        self._topology.with_node(_replica_node(config, self._config, self._topology.primary_id))
                    )
                logger.info("Replica added", node_id=config.node_id)

                result = await self._bootstrap_node(config.node_id)
        except ReplicationControlError as e:
            return Outcome.failure("add_replica", e, topology=self._topology)

        return Outcome(
            ok=True,
            operation="add_replica",
            topology=self._topology,
            bootstrap={config.node_id: result},
        )

    async def remove_replica(self, node_id: str) -> Outcome:
        """Decommission a replica and reclaim its slot on the primary."""
        try:
            node = self._topology.node(node_id)
            if node_id == self._topology.primary_id:
                msg = f"Node {node_id!r} is the primary and cannot be removed"
                raise PreconditionFailedError(msg, node_id=node_id)

            if node.slot_name is not None:
                try:
                    await self._slots.drop_slot(self._topology.primary.config.connection, node.slot_name, force=True)
                except TransientNetworkError as e:
                    # Left behind on the primary; reported later as an orphan.
                    logger.warning(
                        "Could not drop slot of removed replica",
                        node_id=node_id,
                        slot_name=node.slot_name,
                        error=e.message,
                    )

            async with self._lock:
                current = self._topology.node(node_id).transition(NodeState.DECOMMISSIONED)
                topology = self._topology.with_node(current, enroll=False).without_replica(node_id)
                if node.slot_name is not None:
                    topology = topology.without_slot(node.slot_name)
                await self._commit(topology)
        except ReplicationControlError as e:
            return Outcome.failure("remove_replica", e, topology=self._topology)

        self._monitor.forget(node_id)
        logger.info("Replica decommissioned", node_id=node_id)
        return Outcome(ok=True, operation="remove_replica", topology=self._topology)

    async def promote(self, node_id: str, *, force: bool = False) -> Outcome:
        """Promote a replica to primary.

        Rejected while another promotion or any bootstrap is in flight.
        """
        try:
            if self._promotion_lock.locked():
                msg = "Another promotion is in progress"
                raise PromotionInProgressError(msg, node_id=node_id)
            if self._bootstrapping:
                msg = f"Bootstrap in progress for {sorted(self._bootstrapping)}"
                raise PromotionInProgressError(msg, node_id=node_id)

            async with self._promotion_lock:
                snapshot = self._monitor.latest or await self._monitor.poll(self._topology)
                result = await self._promoter.promote(
                    self._topology, node_id, snapshot, force=force, cancel=self._cancel
                )
                async with self._lock:
                    try:
                        await self._commit(result.topology)
                    except TopologyStoreError as e:
                        # Promotion happened; only persisting it failed.
                        logger.error("Promoted topology not persisted", candidate_id=node_id, error=e.message)
                        return Outcome(
                            ok=False,
                            operation="promote",
                            topology=self._topology,
                            promotion=result,
                            errors=(ErrorInfo.from_exception(e),),
                        )
        except ReplicationControlError as e:
            logger.error("Promotion failed", candidate_id=node_id, code=e.code, error=e.message)
            return Outcome.failure("promote", e, topology=self._topology)

        return Outcome(ok=True, operation="promote", topology=self._topology, promotion=result)

    async def get_topology(self) -> Outcome:
        return Outcome(ok=True, operation="get_topology", topology=self._topology)

    async def get_health_snapshot(self) -> Outcome:
        """Latest snapshot, polling once if none was taken yet."""
        snapshot = self._monitor.latest
        if snapshot is None:
            return await self.poll_once()
        return Outcome(ok=True, operation="get_health_snapshot", topology=self._topology, snapshot=snapshot)

    async def bootstrap_all(self) -> Outcome:
        """Bootstrap every replica not yet past bootstrapping, concurrently."""
        pending = [
            node.node_id
            for node in self._topology.replicas()
            if node.state in (NodeState.PROVISIONING, NodeState.BOOTSTRAPPING)
        ]
        try:
            with self._bootstrap_guard(*pending):
                results = await asyncio.gather(
                    *(self._bootstrap_node(node_id) for node_id in pending), return_exceptions=True
                )
        except PromotionInProgressError as e:
            return Outcome.failure("bootstrap_all", e, topology=self._topology)

        completed: dict[str, BootstrapResult] = {}
        errors: list[ReplicationControlError] = []
        for node_id, result in zip(pending, results, strict=True):
            if isinstance(result, ReplicationControlError):
                errors.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                completed[node_id] = result

        logger.info("Bootstrap round finished", completed=len(completed), failed=len(errors))
        return Outcome(
            ok=not errors,
            operation="bootstrap_all",
            topology=self._topology,
            bootstrap=completed,
            errors=tuple(ErrorInfo.from_exception(e) for e in errors),
        )

    # Health-driven transitions

    def _target_state(self, topology: ClusterTopology, node: Node, report: NodeHealthReport) -> NodeState | None:
        if report.status == NodeHealthStatus.UNREACHABLE:
            if node.state in (NodeState.STREAMING, NodeState.LAGGING, NodeState.PROMOTED):
                return NodeState.UNREACHABLE
            return None

        if not report.reachable or report.status == NodeHealthStatus.DIVERGED:
            return None

        if node.node_id == topology.primary_id:
            if node.state == NodeState.UNREACHABLE:
                return NodeState.PROMOTED if node.promoted_at is not None else NodeState.STREAMING
            return None

        # Demoted primaries wait for decommission; replicas need a finished bootstrap.
        if node.node_id not in topology.replica_ids or node.upstream_id != topology.primary_id:
            return None
        if node.state == NodeState.BOOTSTRAPPING and node.bootstrap.checkpoint != BootstrapCheckpoint.READY:
            return None
        if node.state == NodeState.PROVISIONING:
            return None
        return NodeState.LAGGING if report.status == NodeHealthStatus.LAGGING else NodeState.STREAMING

    def _refresh_slots(self, topology: ClusterTopology, snapshot: HealthSnapshot) -> ClusterTopology:
        if snapshot.primary_slots is None or snapshot.primary_id != topology.primary_id:
            return topology
        observed = {slot.name: slot for slot in snapshot.primary_slots}
        for slot in list(topology.slots.values()):
            if slot.host_node_id != topology.primary_id:
                continue
            seen = observed.get(slot.name)
            state = seen.state if seen is not None else SlotState.ABSENT
            restart_lsn = seen.restart_lsn if seen is not None else None
            if state != slot.state or restart_lsn != slot.restart_lsn:
                topology = topology.with_slot(slot.model_copy(update={"state": state, "restart_lsn": restart_lsn}))
        return topology

    def _expire_demoted(self, topology: ClusterTopology) -> ClusterTopology:
        grace = timedelta(seconds=self._config.promotion.decommission_grace_seconds)
        now = datetime.now(UTC)
        for node in topology.active_nodes():
            if node.node_id == topology.primary_id or node.node_id in topology.replica_ids:
                continue
            if node.state == NodeState.UNREACHABLE and node.unreachable_since is not None:
                if now - node.unreachable_since >= grace:
                    logger.info("Decommissioning demoted primary after grace period", node_id=node.node_id)
                    topology = topology.with_node(node.transition(NodeState.DECOMMISSIONED), enroll=False)
        return topology

    async def _apply_snapshot(self, snapshot: HealthSnapshot) -> None:
        async with self._lock:
            topology = self._refresh_slots(self._topology, snapshot)

            for node_id, report in snapshot.nodes.items():
                node = topology.nodes.get(node_id)
                if node is None or not node.is_active or node.role != report.role:
                    continue

                updated = node
                target = self._target_state(topology, node, report)
                if target is not None and target != node.state:
                    try:
                        updated = node.transition(target)
                    except InvalidTransitionError as e:
                        logger.debug("Skipping health transition", node_id=node_id, error=e.message)
                    else:
                        logger.info("Node state changed", node_id=node_id, old=node.state, new=target)
                if report.status == NodeHealthStatus.DIVERGED and updated.last_error != report.message:
                    updated = updated.with_error(report.message)
                elif updated is not node and updated.state in (NodeState.STREAMING, NodeState.PROMOTED):
                    updated = updated.with_error(None)

                if updated is not node:
                    topology = topology.with_node(updated, enroll=node_id in topology.replica_ids)

            topology = self._expire_demoted(topology)
            if topology is not self._topology:
                await self._commit(topology)

        if self._config.monitor.reclaim_orphaned_slots and snapshot.orphaned_slots:
            await self._reclaim_orphans(snapshot)

    async def _reclaim_orphans(self, snapshot: HealthSnapshot) -> None:
        primary_conn = self._topology.primary.config.connection
        for slot in snapshot.orphaned_slots:
            try:
                dropped = await self._slots.drop_slot(primary_conn, slot.name)
            except SlotInUseError:
                logger.warning("Orphaned slot still has a consumer, not reclaimed", slot_name=slot.name)
                continue
            except ReplicationControlError as e:
                logger.warning("Failed to reclaim orphaned slot", slot_name=slot.name, error=e.message)
                continue
            if dropped:
                logger.info("Reclaimed orphaned slot", slot_name=slot.name)
                async with self._lock:
                    if slot.name in self._topology.slots:
                        await self._commit(self._topology.without_slot(slot.name))

    async def poll_once(self) -> Outcome:
        """Take one health snapshot and apply it to the topology."""
        snapshot = await self._monitor.poll(self._topology)
        try:
            await self._apply_snapshot(snapshot)
        except ReplicationControlError as e:
            logger.error("Failed to apply health snapshot", code=e.code, error=e.message)
            return Outcome(
                ok=False,
                operation="poll_once",
                topology=self._topology,
                snapshot=snapshot,
                errors=(ErrorInfo.from_exception(e),),
            )
        return Outcome(ok=True, operation="poll_once", topology=self._topology, snapshot=snapshot)

    async def run(self, stop: asyncio.Event) -> None:
        """Poll until ``stop`` is set."""
        logger.info("Cluster controller running", cluster=self._config.name)

        async def apply(snapshot: HealthSnapshot) -> None:
            try:
                await self._apply_snapshot(snapshot)
            except ReplicationControlError as e:
                logger.error("Failed to apply health snapshot", code=e.code, error=e.message)

        await self._monitor.run(lambda: self._topology, apply, stop)
