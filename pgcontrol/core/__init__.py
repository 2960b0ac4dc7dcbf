"""Core module exports."""

from __future__ import annotations

from .enums import (
    BOOTSTRAP_ORDER,
    BootstrapCheckpoint,
    ClusterHealthStatus,
    ErrorKind,
    NodeHealthStatus,
    NodeRole,
    NodeState,
    SlotState,
)

__all__ = [
    "BOOTSTRAP_ORDER",
    "BootstrapCheckpoint",
    "ClusterHealthStatus",
    "ErrorKind",
    "NodeHealthStatus",
    "NodeRole",
    "NodeState",
    "SlotState",
]
