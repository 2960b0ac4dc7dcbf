"""asyncpg / pg_basebackup implementation of `ReplicationEngine`.

Control operations are infrequent and must observe the server exactly as it
is right now, so every call opens a short-lived connection instead of
borrowing from a pool. Driver and subprocess failures are translated into the
control-plane error taxonomy at this boundary.
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, NoReturn

import asyncpg

from ...logger import get_logger
from ...replication.engine import NodeStatus, SlotInfo, UpstreamInfo, parse_lsn
from ...replication.exceptions import (
    AuthenticationFailedError,
    BaseBackupFailedError,
    PermanentError,
    PreconditionFailedError,
    SlotAlreadyExistsError,
    SlotInUseError,
    TransientNetworkError,
)
from .config import PostgresEngineConfig

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from structlog.stdlib import BoundLogger

    from ...replication.config import ReplicationCredentials
    from .config import PostgresConnectionSettings

logger: BoundLogger = get_logger(__name__)

_TRANSIENT_DRIVER_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.AdminShutdownError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.TooManyConnectionsError,
)
_AUTH_DRIVER_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.exceptions.InvalidPasswordError,
    asyncpg.exceptions.InvalidAuthorizationSpecificationError,
)
# Any other driver error is permanent.
_DRIVER_ERRORS: tuple[type[BaseException], ...] = (
    *_AUTH_DRIVER_ERRORS,
    *_TRANSIENT_DRIVER_ERRORS,
    asyncpg.exceptions.PostgresError,
    asyncpg.exceptions.InterfaceError,
)
_TRANSIENT_BACKUP_MARKERS = (
    "could not connect",
    "connection refused",
    "timeout expired",
    "server closed the connection",
    "the database system is starting up",
    "could not translate host name",
)
_AUTH_BACKUP_MARKERS = ("password authentication failed", "no pg_hba.conf entry", "authentication failed")

_SLOT_ROWS_QUERY = """
    SELECT slot_name, slot_type, active, active_pid, restart_lsn::text AS restart_lsn
    FROM pg_catalog.pg_replication_slots
    WHERE slot_type = 'physical'
    ORDER BY slot_name
"""
_NODE_STATUS_QUERY = """
    SELECT pg_catalog.pg_is_in_recovery() AS in_recovery,
           CASE WHEN pg_catalog.pg_is_in_recovery()
                THEN pg_catalog.pg_last_wal_replay_lsn()
                ELSE pg_catalog.pg_current_wal_lsn()
           END::text AS lsn
"""


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _raise_translated(exc: BaseException, conn: PostgresConnectionSettings) -> NoReturn:
    if isinstance(exc, _AUTH_DRIVER_ERRORS):
        msg = f"Authentication rejected by {conn.address}: {exc}"
        raise AuthenticationFailedError(msg) from exc
    if isinstance(exc, _TRANSIENT_DRIVER_ERRORS):
        msg = f"Cannot reach {conn.address}: {exc.__class__.__name__}: {exc}"
        raise TransientNetworkError(msg) from exc
    msg = f"{conn.address} rejected the request: {exc.__class__.__name__}: {exc}"
    raise PermanentError(msg) from exc


class PostgresEngine:
    """Database engine adapter backed by asyncpg and ``pg_basebackup``.

    Examples
    --------
    >>> engine = PostgresEngine(PostgresEngineConfig(connect_timeout=3.0))
    >>> status = await engine.node_status(primary_settings, timeout=3.0)
    >>> status.in_recovery
    False
    """

    __slots__ = ("_config",)

    def __init__(self, config: PostgresEngineConfig | None = None) -> None:
        self._config = config or PostgresEngineConfig()

    @property
    def config(self) -> PostgresEngineConfig:
        return self._config

    @asynccontextmanager
    async def aconnect(
        self,
        conn: PostgresConnectionSettings,
        timeout: float | None = None,
    ) -> AsyncIterator[asyncpg.Connection]:
        """Open a short-lived connection, translating driver errors.

        Parameters
        ----------
        conn
            Server to connect to.
        timeout
            Connect timeout override in seconds.

        Yields
        ------
        asyncpg.Connection
            An open connection, closed on exit.
        """
        connect_timeout = timeout if timeout is not None else self._config.connect_timeout
        try:
            connection = await asyncpg.connect(
                **conn.to_connect_params(connect_timeout),
                command_timeout=self._config.command_timeout,
                server_settings={"application_name": self._config.application_name},
            )
        except _DRIVER_ERRORS as e:
            _raise_translated(e, conn)

        try:
            yield connection
        except _DRIVER_ERRORS as e:
            _raise_translated(e, conn)
        finally:
            if not connection.is_closed():
                await connection.close()

    async def ping(self, conn: PostgresConnectionSettings, timeout: float) -> None:
        async with self.aconnect(conn, timeout) as connection:
            await connection.fetchval("SELECT 1", timeout=timeout)

    async def node_status(self, conn: PostgresConnectionSettings, timeout: float) -> NodeStatus:
        async with self.aconnect(conn, timeout) as connection:
            row = await connection.fetchrow(_NODE_STATUS_QUERY, timeout=timeout)

        if row is None:
            msg = f"Empty status response from {conn.address}"
            raise TransientNetworkError(msg)

        lsn = row["lsn"]
        return NodeStatus(in_recovery=bool(row["in_recovery"]), wal_lsn=parse_lsn(lsn) if lsn else None)

    async def ensure_replication_role(
        self,
        conn: PostgresConnectionSettings,
        credentials: ReplicationCredentials,
    ) -> bool:
        async with self.aconnect(conn) as connection:
            exists = await connection.fetchval(
                "SELECT 1 FROM pg_catalog.pg_roles WHERE rolname = $1",
                credentials.user,
            )
            if exists:
                logger.debug("Replication role already exists", role=credentials.user, server=conn.address)
                return False

            try:
                await connection.execute(
                    f"CREATE ROLE {quote_ident(credentials.user)} WITH REPLICATION LOGIN "
                    f"PASSWORD {quote_literal(credentials.password.get_secret_value())}"
                )
            except asyncpg.exceptions.DuplicateObjectError:
                return False

        logger.info("Created replication role", role=credentials.user, server=conn.address)
        return True

    async def enable_extension(self, conn: PostgresConnectionSettings, name: str) -> None:
        async with self.aconnect(conn) as connection:
            try:
                await connection.execute(f"CREATE EXTENSION IF NOT EXISTS {quote_ident(name)}")
            except asyncpg.exceptions.PostgresError as e:
                msg = f"Cannot enable extension {name!r} on {conn.address}: {e}"
                raise PreconditionFailedError(msg) from e
        logger.info("Extension enabled", extension=name, server=conn.address)

    async def create_physical_slot(self, conn: PostgresConnectionSettings, name: str) -> None:
        async with self.aconnect(conn) as connection:
            try:
                await connection.execute("SELECT pg_catalog.pg_create_physical_replication_slot($1, true)", name)
            except asyncpg.exceptions.DuplicateObjectError as e:
                raise SlotAlreadyExistsError(name) from e

    async def list_slots(self, conn: PostgresConnectionSettings) -> list[SlotInfo]:
        async with self.aconnect(conn) as connection:
            rows = await connection.fetch(_SLOT_ROWS_QUERY)

        return [
            SlotInfo(
                name=row["slot_name"],
                slot_type=row["slot_type"],
                active=bool(row["active"]),
                active_pid=row["active_pid"],
                restart_lsn=parse_lsn(row["restart_lsn"]) if row["restart_lsn"] else None,
            )
            for row in rows
        ]

    async def drop_slot(self, conn: PostgresConnectionSettings, name: str, *, terminate: bool = False) -> None:
        async with self.aconnect(conn) as connection:
            if terminate:
                await connection.execute(
                    "SELECT pg_catalog.pg_terminate_backend(active_pid) "
                    "FROM pg_catalog.pg_replication_slots WHERE slot_name = $1 AND active_pid IS NOT NULL",
                    name,
                )

            # A terminated walsender releases the slot asynchronously.
            attempts = 10 if terminate else 1
            for attempt in range(1, attempts + 1):
                try:
                    await connection.execute("SELECT pg_catalog.pg_drop_replication_slot($1)", name)
                    return
                except asyncpg.exceptions.UndefinedObjectError:
                    return
                except asyncpg.exceptions.ObjectInUseError as e:
                    if attempt == attempts:
                        raise SlotInUseError(name) from e
                    await asyncio.sleep(0.2)

    async def base_backup(self, upstream: UpstreamInfo, target_dir: Path) -> None:
        command = [
            self._config.pg_basebackup_path,
            "--host",
            upstream.host,
            "--port",
            str(upstream.port),
            "--username",
            upstream.user,
            "--pgdata",
            str(target_dir),
            "--wal-method=stream",
            f"--checkpoint={self._config.backup_checkpoint}",
            "--slot",
            upstream.slot_name,
            "--no-password",
        ]
        env = {
            **os.environ,
            "PGPASSWORD": upstream.password.get_secret_value(),
            "PGAPPNAME": upstream.application_name,
        }

        logger.info(
            "Starting base backup",
            upstream=f"{upstream.host}:{upstream.port}",
            slot_name=upstream.slot_name,
            target_dir=str(target_dir),
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as e:
            msg = f"{self._config.pg_basebackup_path} not found"
            raise PermanentError(msg) from e

        try:
            async with asyncio.timeout(self._config.backup_timeout):
                _, stderr = await process.communicate()
        except TimeoutError as e:
            process.kill()
            await process.wait()
            msg = f"Base backup from {upstream.host}:{upstream.port} timed out"
            raise TransientNetworkError(msg) from e

        if process.returncode == 0:
            logger.info("Base backup finished", slot_name=upstream.slot_name, target_dir=str(target_dir))
            return

        output = stderr.decode(errors="replace").strip()
        lowered = output.lower()
        msg = f"pg_basebackup exited with {process.returncode}: {output}"
        if any(marker in lowered for marker in _AUTH_BACKUP_MARKERS):
            raise AuthenticationFailedError(msg)
        if any(marker in lowered for marker in _TRANSIENT_BACKUP_MARKERS):
            raise TransientNetworkError(msg)
        raise BaseBackupFailedError(msg)

    async def promote(self, conn: PostgresConnectionSettings, wait_seconds: int) -> bool:
        async with self.aconnect(conn) as connection:
            promoted = await connection.fetchval(
                "SELECT pg_catalog.pg_promote(true, $1)",
                wait_seconds,
                timeout=wait_seconds + self._config.command_timeout,
            )
        return bool(promoted)

    async def reconfigure_upstream(self, conn: PostgresConnectionSettings, upstream: UpstreamInfo) -> None:
        async with self.aconnect(conn) as connection:
            await connection.execute(f"ALTER SYSTEM SET primary_conninfo = {quote_literal(upstream.to_conninfo())}")
            await connection.execute(f"ALTER SYSTEM SET primary_slot_name = {quote_literal(upstream.slot_name)}")
            await connection.execute("SELECT pg_catalog.pg_reload_conf()")

        logger.info(
            "Standby upstream reconfigured",
            server=conn.address,
            upstream=f"{upstream.host}:{upstream.port}",
            slot_name=upstream.slot_name,
        )
