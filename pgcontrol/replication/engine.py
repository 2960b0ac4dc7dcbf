"""Boundary between the control plane and the database engine.

The control plane never speaks the replication protocol itself. It needs
three capabilities from the engine: SQL-level management and status queries,
a physical base backup, and a liveness check. `ReplicationEngine` describes
them; `pgcontrol.infrastructure.postgres.PostgresEngine` implements them with
asyncpg and ``pg_basebackup``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, SecretStr

if TYPE_CHECKING:
    from pathlib import Path

    from ..infrastructure.postgres.config import PostgresConnectionSettings
    from .config import ReplicationCredentials


def parse_lsn(value: str) -> int:
    """Convert a textual LSN (``"16/B374D848"``) to a byte position.

    Raises
    ------
    ValueError
        If ``value`` is not a valid LSN.
    """
    high, sep, low = value.partition("/")
    if not sep:
        msg = f"Invalid LSN {value!r}"
        raise ValueError(msg)
    return (int(high, 16) << 32) + int(low, 16)


def format_lsn(position: int) -> str:
    return f"{position >> 32:X}/{position & 0xFFFFFFFF:X}"


def _quote_conninfo_value(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class SlotInfo(BaseModel):
    """A row of ``pg_replication_slots``."""

    model_config = ConfigDict(frozen=True)

    name: str
    slot_type: str = "physical"
    active: bool = False
    active_pid: int | None = None
    restart_lsn: int | None = None


class NodeStatus(BaseModel):
    """Recovery status and WAL position of one server.

    ``wal_lsn`` is the current write position on a primary and the last
    replayed position on a standby.
    """

    model_config = ConfigDict(frozen=True)

    in_recovery: bool
    wal_lsn: int | None = None


class UpstreamInfo(BaseModel):
    """Where a standby streams from."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int
    user: str
    password: SecretStr
    application_name: str
    slot_name: str

    @classmethod
    def for_standby(
        cls,
        primary: PostgresConnectionSettings,
        credentials: ReplicationCredentials,
        *,
        application_name: str,
        slot_name: str,
    ) -> UpstreamInfo:
        return cls(
            host=primary.host,
            port=primary.port,
            user=credentials.user,
            password=credentials.password,
            application_name=application_name,
            slot_name=slot_name,
        )

    def to_conninfo(self) -> str:
        """Render a libpq keyword/value ``primary_conninfo`` string."""
        pairs = {
            "host": self.host,
            "port": str(self.port),
            "user": self.user,
            "password": self.password.get_secret_value(),
            "application_name": self.application_name,
        }
        return " ".join(f"{key}={_quote_conninfo_value(value)}" for key, value in pairs.items())


@runtime_checkable
class ReplicationEngine(Protocol):
    """Capabilities the control plane requires from the database engine.

    Implementations raise `TransientNetworkError` for connectivity problems and
    `AuthenticationFailedError` for rejected credentials.
    """

    async def ping(self, conn: PostgresConnectionSettings, timeout: float) -> None:
        """Lightweight liveness check; returns only if the server answers a query."""
        ...

    async def node_status(self, conn: PostgresConnectionSettings, timeout: float) -> NodeStatus: ...

    async def ensure_replication_role(
        self, conn: PostgresConnectionSettings, credentials: ReplicationCredentials
    ) -> bool:
        """Create the replication role if missing; return True when it was created."""
        ...

    async def enable_extension(self, conn: PostgresConnectionSettings, name: str) -> None: ...

    async def create_physical_slot(self, conn: PostgresConnectionSettings, name: str) -> None:
        """Create a physical slot reserving WAL immediately.

        Raises `SlotAlreadyExistsError` if the slot exists.
        """
        ...

    async def list_slots(self, conn: PostgresConnectionSettings) -> list[SlotInfo]: ...

    async def drop_slot(self, conn: PostgresConnectionSettings, name: str, *, terminate: bool = False) -> None:
        """Drop a slot, terminating its walsender first when ``terminate`` is set.

        Raises `SlotInUseError` if the slot is active and ``terminate`` is False.
        """
        ...

    async def base_backup(self, upstream: UpstreamInfo, target_dir: Path) -> None:
        """Stream a physical copy of the upstream into ``target_dir`` using ``upstream.slot_name``."""
        ...

    async def promote(self, conn: PostgresConnectionSettings, wait_seconds: int) -> bool: ...

    async def reconfigure_upstream(self, conn: PostgresConnectionSettings, upstream: UpstreamInfo) -> None:
        """Point a running standby at a new upstream and reload its configuration."""
        ...
