"""Control plane for PostgreSQL physical streaming replication clusters."""

from __future__ import annotations

__version__ = "0.1.0"
