from __future__ import annotations

from datetime import UTC, datetime
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, computed_field

from ..core.enums import ClusterHealthStatus, NodeHealthStatus, NodeRole
from .domain import ReplicationSlot


def _utcnow() -> datetime:
    return datetime.now(UTC)


class NodeHealthReport(BaseModel):
    """Health of one node as observed in one poll cycle."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    role: NodeRole
    status: NodeHealthStatus
    reachable: bool
    recovery_mode: bool | None = None
    lag_bytes: int | None = None
    wal_lsn: int | None = None
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    latency_s: float | None = None
    message: str | None = None
    last_checked: datetime = Field(default_factory=_utcnow)

    @classmethod
    def check_failed(
        cls: type[Self],
        node_id: str,
        role: NodeRole,
        *,
        status: NodeHealthStatus,
        consecutive_failures: int,
        error: str,
    ) -> Self:
        """Create a report for a check that failed or timed out.

        Parameters
        ----------
        node_id
            Checked node.
        role
            Role of the node in the topology.
        status
            Debounced classification; ``UNREACHABLE`` only once the failure
            threshold has been reached.
        consecutive_failures
            Failed checks in a row including this one.
        error
            Description of the failure.

        Returns
        -------
        Self
            NodeHealthReport with ``reachable=False``.
        """
        return cls(
            node_id=node_id,
            role=role,
            status=status,
            reachable=False,
            consecutive_failures=consecutive_failures,
            message=error,
        )

    def is_healthy(self) -> bool:
        return self.status == NodeHealthStatus.HEALTHY

    def is_promotable(self) -> bool:
        return self.role == NodeRole.REPLICA and self.status in (NodeHealthStatus.HEALTHY, NodeHealthStatus.LAGGING)


class HealthSnapshot(BaseModel):
    """Point-in-time health of the whole cluster.

    Immutable once produced; superseded by the next poll cycle.
    """

    model_config = ConfigDict(frozen=True)

    cluster_name: str
    primary_id: str
    topology_generation: int
    nodes: dict[str, NodeHealthReport]
    primary_slots: frozenset[ReplicationSlot] | None = Field(
        default=None, description="Physical slots observed on the primary (None if they could not be listed)"
    )
    orphaned_slots: frozenset[ReplicationSlot] = frozenset()
    taken_at: datetime = Field(default_factory=_utcnow)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> ClusterHealthStatus:
        """Cluster status: unhealthy without a healthy primary, degraded if any replica is not healthy."""
        primary = self.nodes.get(self.primary_id)
        if primary is None or primary.status != NodeHealthStatus.HEALTHY:
            return ClusterHealthStatus.UNHEALTHY
        if any(not report.is_healthy() for report in self.nodes.values()) or self.orphaned_slots:
            return ClusterHealthStatus.DEGRADED
        return ClusterHealthStatus.HEALTHY

    @property
    def primary(self) -> NodeHealthReport | None:
        return self.nodes.get(self.primary_id)

    def get(self, node_id: str) -> NodeHealthReport | None:
        return self.nodes.get(node_id)

    @property
    def healthy_replica_count(self) -> int:
        return sum(
            1 for report in self.nodes.values() if report.role == NodeRole.REPLICA and report.is_healthy()
        )

    @property
    def is_operational(self) -> bool:
        """Check if the cluster can serve writes (primary healthy)."""
        primary = self.primary
        return primary is not None and primary.is_healthy()
