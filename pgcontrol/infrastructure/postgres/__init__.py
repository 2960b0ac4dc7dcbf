"""PostgreSQL engine adapter with asyncpg.

This module provides:

- `PostgresEngine`: `ReplicationEngine` backed by asyncpg and ``pg_basebackup``
- `PostgresConnectionSettings`: Connection parameters of one server
- `PostgresEngineConfig`: Timeouts and ``pg_basebackup`` options

Usage
-----
::

    engine = PostgresEngine(PostgresEngineConfig(connect_timeout=3.0))
    status = await engine.node_status(PostgresConnectionSettings(host="pg-0"), timeout=3.0)
"""

from .config import PostgresConnectionSettings, PostgresEngineConfig
from .engine import PostgresEngine

__all__ = [
    "PostgresConnectionSettings",
    "PostgresEngine",
    "PostgresEngineConfig",
]
