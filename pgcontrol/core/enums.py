from __future__ import annotations

from enum import StrEnum


class NodeRole(StrEnum):
    PRIMARY = "primary"
    REPLICA = "replica"


class NodeState(StrEnum):
    """Lifecycle state of a node as owned by the cluster controller."""

    PROVISIONING = "provisioning"
    BOOTSTRAPPING = "bootstrapping"
    STREAMING = "streaming"
    LAGGING = "lagging"
    UNREACHABLE = "unreachable"
    PROMOTED = "promoted"
    DECOMMISSIONED = "decommissioned"


class SlotState(StrEnum):
    ABSENT = "absent"
    CREATED = "created"
    ACTIVE = "active"
    ORPHANED = "orphaned"


class NodeHealthStatus(StrEnum):
    """Per-node classification produced by one health poll."""

    HEALTHY = "healthy"
    LAGGING = "lagging"
    UNREACHABLE = "unreachable"
    DIVERGED = "diverged"


class ClusterHealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class BootstrapCheckpoint(StrEnum):
    """Last completed bootstrap step; ordered by `BOOTSTRAP_ORDER`."""

    PENDING = "pending"
    PRIMARY_REACHABLE = "primary_reachable"
    DATA_DIR_CLEAN = "data_dir_clean"
    BASE_BACKUP_DONE = "base_backup_done"
    STANDBY_CONFIGURED = "standby_configured"
    READY = "ready"


BOOTSTRAP_ORDER: tuple[BootstrapCheckpoint, ...] = tuple(BootstrapCheckpoint)


class ErrorKind(StrEnum):
    TRANSIENT_NETWORK = "transient_network"
    RESOURCE_CONFLICT = "resource_conflict"
    PRECONDITION_FAILED = "precondition_failed"
    IRRECOVERABLE_STATE = "irrecoverable_state"
    PERMANENT = "permanent"
    CANCELLED = "cancelled"
