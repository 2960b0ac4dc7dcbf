"""Replication control plane.

- `ReplicationSlotManager`: physical slot lifecycle on the primary
- `BootstrapExecutor`: resumable replica bootstrap from a base backup
- `HealthMonitor`: debounced, timeout-bounded health polling
- `PromotionCoordinator`: split-brain guarded promotion
- `ClusterController`: topology owner and operator surface
"""

from __future__ import annotations

from .bootstrap import BootstrapExecutor, BootstrapRequest, BootstrapResult
from .config import (
    BootstrapConfig,
    ClusterConfig,
    ControllerSettings,
    MonitorConfig,
    NodeConfig,
    PromotionConfig,
    ProvisioningConfig,
    ReplicationCredentials,
    StoreConfig,
)
from .controller import ClusterController, ErrorInfo, Outcome
from .domain import BootstrapProgress, ClusterTopology, Node, ReplicationSlot, slot_name_for
from .engine import NodeStatus, ReplicationEngine, SlotInfo, UpstreamInfo
from .exceptions import (
    AuthenticationFailedError,
    BaseBackupFailedError,
    CandidateNotHealthyError,
    CorruptDataDirectoryError,
    CorruptTopologyError,
    DuplicateNodeError,
    InvalidSlotNameError,
    InvalidTransitionError,
    IrrecoverableStateError,
    OperationCancelledError,
    PermanentError,
    PreconditionFailedError,
    PrimaryUnreachableError,
    PromotionFailedError,
    PromotionInProgressError,
    ReplicationControlError,
    ResourceConflictError,
    SlotAlreadyExistsError,
    SlotInUseError,
    StalePrimaryStillAliveError,
    TopologyStoreError,
    TransientNetworkError,
    UnknownNodeError,
)
from .health import HealthSnapshot, NodeHealthReport
from .monitor import HealthMonitor
from .promotion import PromotionCoordinator, PromotionResult
from .slots import ReplicationSlotManager
from .store import FileTopologyStore, RedisTopologyStore, TopologyStore, build_store

__all__ = [
    # Components
    "BootstrapExecutor",
    "ClusterController",
    "HealthMonitor",
    "PromotionCoordinator",
    "ReplicationSlotManager",
    # Engine boundary
    "NodeStatus",
    "ReplicationEngine",
    "SlotInfo",
    "UpstreamInfo",
    # Domain
    "BootstrapProgress",
    "BootstrapRequest",
    "BootstrapResult",
    "ClusterTopology",
    "ErrorInfo",
    "HealthSnapshot",
    "Node",
    "NodeHealthReport",
    "Outcome",
    "PromotionResult",
    "ReplicationSlot",
    "slot_name_for",
    # Config
    "BootstrapConfig",
    "ClusterConfig",
    "ControllerSettings",
    "MonitorConfig",
    "NodeConfig",
    "PromotionConfig",
    "ProvisioningConfig",
    "ReplicationCredentials",
    "StoreConfig",
    # Persistence
    "FileTopologyStore",
    "RedisTopologyStore",
    "TopologyStore",
    "build_store",
    # Errors
    "AuthenticationFailedError",
    "BaseBackupFailedError",
    "CandidateNotHealthyError",
    "CorruptDataDirectoryError",
    "CorruptTopologyError",
    "DuplicateNodeError",
    "InvalidSlotNameError",
    "InvalidTransitionError",
    "IrrecoverableStateError",
    "OperationCancelledError",
    "PermanentError",
    "PreconditionFailedError",
    "PrimaryUnreachableError",
    "PromotionFailedError",
    "PromotionInProgressError",
    "ReplicationControlError",
    "ResourceConflictError",
    "SlotAlreadyExistsError",
    "SlotInUseError",
    "StalePrimaryStillAliveError",
    "TopologyStoreError",
    "TransientNetworkError",
    "UnknownNodeError",
]
