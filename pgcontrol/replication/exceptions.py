"""Error taxonomy for the replication control plane.

Every error carries an `ErrorKind` so callers can decide between retrying,
surfacing to an operator, or treating the node as lost:

- ``transient_network``: retried with bounded backoff, surfaced only once the
  retry budget is exhausted.
- ``resource_conflict``: surfaced immediately, never retried.
- ``precondition_failed``: surfaced; an operator has to act.
- ``irrecoverable_state``: fatal for that node until an operator intervenes.
- ``permanent``: e.g. bad credentials; never retried.
- ``cancelled``: caller-driven cancellation at a checkpoint boundary.
"""

from __future__ import annotations

from ..core.enums import ErrorKind


class ReplicationControlError(Exception):
    """Base class for all control-plane errors."""

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(self, message: str, *, node_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.node_id = node_id

    @property
    def code(self) -> str:
        return type(self).__name__


# Transient


class TransientNetworkError(ReplicationControlError):
    kind = ErrorKind.TRANSIENT_NETWORK


class PrimaryUnreachableError(TransientNetworkError):
    """Primary did not answer within the wait-for-primary retry budget."""


class TopologyStoreError(TransientNetworkError):
    """The topology store backend could not be read or written."""


# Resource conflicts


class ResourceConflictError(ReplicationControlError):
    kind = ErrorKind.RESOURCE_CONFLICT


class SlotInUseError(ResourceConflictError):
    def __init__(self, slot_name: str, *, node_id: str | None = None) -> None:
        super().__init__(f"Replication slot {slot_name!r} is in use by an active consumer", node_id=node_id)
        self.slot_name = slot_name


class SlotAlreadyExistsError(ResourceConflictError):
    """Raised by the engine when a concurrent creation won the race."""

    def __init__(self, slot_name: str) -> None:
        super().__init__(f"Replication slot {slot_name!r} already exists")
        self.slot_name = slot_name


class PromotionInProgressError(ResourceConflictError):
    pass


# Preconditions


class PreconditionFailedError(ReplicationControlError):
    kind = ErrorKind.PRECONDITION_FAILED


class StalePrimaryStillAliveError(PreconditionFailedError):
    pass


class CandidateNotHealthyError(PreconditionFailedError):
    pass


class UnknownNodeError(PreconditionFailedError):
    def __init__(self, node_id: str) -> None:
        super().__init__(f"Unknown node {node_id!r}", node_id=node_id)


class DuplicateNodeError(PreconditionFailedError):
    def __init__(self, node_id: str) -> None:
        super().__init__(f"Node {node_id!r} already exists in topology", node_id=node_id)


class InvalidTransitionError(PreconditionFailedError):
    pass


class InvalidSlotNameError(PreconditionFailedError):
    pass


# Irrecoverable


class IrrecoverableStateError(ReplicationControlError):
    kind = ErrorKind.IRRECOVERABLE_STATE


class CorruptDataDirectoryError(IrrecoverableStateError):
    pass


class BaseBackupFailedError(IrrecoverableStateError):
    pass


class PromotionFailedError(IrrecoverableStateError):
    pass


# Permanent


class PermanentError(ReplicationControlError):
    kind = ErrorKind.PERMANENT


class AuthenticationFailedError(PermanentError):
    pass


class CorruptTopologyError(PermanentError):
    """Persisted topology document could not be parsed."""


class OperationCancelledError(ReplicationControlError):
    kind = ErrorKind.CANCELLED
