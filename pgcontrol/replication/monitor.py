"""Cluster health polling.

Every node is checked concurrently and each check is bounded by a timeout, so
a hung server cannot delay the rest of the cycle. The snapshot is assembled
only after all checks of the cycle have returned.

Debounce
--------
A single failed check does not make a node unreachable. The monitor keeps a
per-node count of consecutive failures; the node keeps its previous
classification until ``failure_threshold`` failures in a row, and leaves
``unreachable`` again only after ``recovery_threshold`` good checks in a row.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import TYPE_CHECKING

from ..core.enums import NodeHealthStatus
from ..logger import get_logger
from .exceptions import ReplicationControlError
from .health import HealthSnapshot, NodeHealthReport
from .slots import classify_orphans

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from structlog.stdlib import BoundLogger

    from .config import MonitorConfig
    from .domain import ClusterTopology, Node, ReplicationSlot
    from .engine import NodeStatus, ReplicationEngine
    from .slots import ReplicationSlotManager

logger: BoundLogger = get_logger(__name__)


class _CheckResult:
    __slots__ = ("error", "latency_s", "status")

    def __init__(self, status: NodeStatus | None, latency_s: float | None = None, error: str | None = None) -> None:
        self.status = status
        self.latency_s = latency_s
        self.error = error


class HealthMonitor:
    """Polls all nodes and produces `HealthSnapshot` objects.

    Examples
    --------
    >>> monitor = HealthMonitor(engine, MonitorConfig(failure_threshold=3), slots)
    >>> snapshot = await monitor.poll(topology)
    >>> snapshot.status
    <ClusterHealthStatus.HEALTHY: 'healthy'>
    """

    __slots__ = ("_config", "_engine", "_failures", "_last_status", "_latest", "_slots", "_successes")

    def __init__(
        self,
        engine: ReplicationEngine,
        config: MonitorConfig,
        slots: ReplicationSlotManager | None = None,
    ) -> None:
        self._engine = engine
        self._config = config
        self._slots = slots
        self._failures: dict[str, int] = {}
        self._successes: dict[str, int] = {}
        self._last_status: dict[str, NodeHealthStatus] = {}
        self._latest: HealthSnapshot | None = None

    @property
    def latest(self) -> HealthSnapshot | None:
        """Most recent snapshot, or None before the first poll."""
        return self._latest

    def forget(self, node_id: str) -> None:
        """Drop debounce state for a node that left the topology."""
        self._failures.pop(node_id, None)
        self._successes.pop(node_id, None)
        self._last_status.pop(node_id, None)

    async def _check_node(self, node: Node) -> _CheckResult:
        timeout = self._config.check_timeout_seconds
        started = time.perf_counter()
        try:
            async with asyncio.timeout(timeout):
                status = await self._engine.node_status(node.config.connection, timeout)
        except TimeoutError:
            return _CheckResult(None, error=f"check timed out after {timeout}s")
        except ReplicationControlError as e:
            return _CheckResult(None, error=e.message)
        return _CheckResult(status, latency_s=time.perf_counter() - started)

    async def _list_primary_slots(self, topology: ClusterTopology) -> frozenset[ReplicationSlot] | None:
        if self._slots is None:
            return None
        try:
            async with asyncio.timeout(self._config.check_timeout_seconds):
                return frozenset(await self._slots.list_slots(topology.primary.config.connection))
        except (TimeoutError, ReplicationControlError) as e:
            logger.warning("Could not list replication slots on primary", primary_id=topology.primary_id, error=str(e))
            return None

    def _classify(
        self,
        node: Node,
        topology: ClusterTopology,
        status: NodeStatus,
        primary_lsn: int | None,
    ) -> tuple[NodeHealthStatus, int | None, str | None]:
        if node.node_id == topology.primary_id:
            if status.in_recovery:
                return NodeHealthStatus.DIVERGED, None, "primary is in recovery mode"
            return NodeHealthStatus.HEALTHY, None, None

        if not status.in_recovery:
            return NodeHealthStatus.DIVERGED, None, "replica left recovery without a recorded promotion"
        if node.upstream_id is not None and node.upstream_id != topology.primary_id:
            return NodeHealthStatus.DIVERGED, None, f"replica still follows {node.upstream_id}"

        lag_bytes = None
        if primary_lsn is not None and status.wal_lsn is not None:
            lag_bytes = max(0, primary_lsn - status.wal_lsn)
        if lag_bytes is not None and lag_bytes > self._config.lag_threshold_bytes:
            return NodeHealthStatus.LAGGING, lag_bytes, f"lag {lag_bytes} bytes above threshold"
        return NodeHealthStatus.HEALTHY, lag_bytes, None

    def _report(
        self,
        node: Node,
        topology: ClusterTopology,
        result: _CheckResult,
        primary_lsn: int | None,
    ) -> NodeHealthReport:
        node_id = node.node_id
        previous = self._last_status.get(node_id, NodeHealthStatus.HEALTHY)

        if result.status is None:
            failures = self._failures.get(node_id, 0) + 1
            self._failures[node_id] = failures
            self._successes[node_id] = 0
            status = NodeHealthStatus.UNREACHABLE if failures >= self._config.failure_threshold else previous
            self._last_status[node_id] = status
            if status == NodeHealthStatus.UNREACHABLE and previous != NodeHealthStatus.UNREACHABLE:
                logger.warning("Node unreachable", node_id=node_id, consecutive_failures=failures, error=result.error)
            return NodeHealthReport.check_failed(
                node_id,
                node.role,
                status=status,
                consecutive_failures=failures,
                error=result.error or "check failed",
            )

        successes = self._successes.get(node_id, 0) + 1
        self._successes[node_id] = successes
        self._failures[node_id] = 0

        status, lag_bytes, message = self._classify(node, topology, result.status, primary_lsn)
        if previous == NodeHealthStatus.UNREACHABLE and successes < self._config.recovery_threshold:
            status = NodeHealthStatus.UNREACHABLE
            message = f"recovering ({successes}/{self._config.recovery_threshold} good checks)"
        if status == NodeHealthStatus.DIVERGED and previous != NodeHealthStatus.DIVERGED:
            logger.warning("Node diverged from topology", node_id=node_id, reason=message)
        self._last_status[node_id] = status

        return NodeHealthReport(
            node_id=node_id,
            role=node.role,
            status=status,
            reachable=True,
            recovery_mode=result.status.in_recovery,
            lag_bytes=lag_bytes,
            wal_lsn=result.status.wal_lsn,
            consecutive_successes=successes,
            latency_s=result.latency_s,
            message=message,
        )

    async def poll(self, topology: ClusterTopology) -> HealthSnapshot:
        """Check every active node once and assemble a snapshot.

        Parameters
        ----------
        topology
            Topology to evaluate the checks against.

        Returns
        -------
        HealthSnapshot
            Immutable snapshot for this cycle.
        """
        nodes = topology.active_nodes()
        results, primary_slots = await asyncio.gather(
            asyncio.gather(*(self._check_node(node) for node in nodes)),
            self._list_primary_slots(topology),
        )
        by_id = dict(zip((node.node_id for node in nodes), results, strict=True))

        primary_result = by_id.get(topology.primary_id)
        primary_lsn = None
        if primary_result is not None and primary_result.status is not None and not primary_result.status.in_recovery:
            primary_lsn = primary_result.status.wal_lsn

        reports = {node.node_id: self._report(node, topology, by_id[node.node_id], primary_lsn) for node in nodes}

        orphaned: frozenset[ReplicationSlot] = frozenset()
        if primary_slots is not None:
            orphaned = frozenset(classify_orphans(primary_slots, topology))
            if orphaned:
                logger.warning(
                    "Orphaned replication slots retain WAL on primary",
                    primary_id=topology.primary_id,
                    slots=sorted(slot.name for slot in orphaned),
                )

        snapshot = HealthSnapshot(
            cluster_name=topology.cluster_name,
            primary_id=topology.primary_id,
            topology_generation=topology.generation,
            nodes=reports,
            primary_slots=primary_slots,
            orphaned_slots=orphaned,
        )
        self._latest = snapshot

        logger.debug(
            "Health poll completed",
            status=snapshot.status,
            nodes=len(reports),
            healthy_replicas=snapshot.healthy_replica_count,
        )
        return snapshot

    async def run(
        self,
        topology_source: Callable[[], ClusterTopology],
        on_snapshot: Callable[[HealthSnapshot], Awaitable[None]],
        stop: asyncio.Event,
    ) -> None:
        """Poll on a fixed interval until ``stop`` is set."""
        logger.info("Health monitor started", interval_s=self._config.poll_interval_seconds)
        while not stop.is_set():
            snapshot = await self.poll(topology_source())
            await on_snapshot(snapshot)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self._config.poll_interval_seconds)
        logger.info("Health monitor stopped")
