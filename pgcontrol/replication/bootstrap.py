"""Replica bootstrap as a resumable checkpoint machine.

::

    pending -> primary_reachable -> data_dir_clean -> base_backup_done
            -> standby_configured -> ready

Each checkpoint is reported through ``on_checkpoint`` so the caller can
persist it; a bootstrap interrupted after ``base_backup_done`` resumes at the
standby configuration step instead of copying the primary again.
``standby.signal`` is written last, so its presence means a complete setup.
"""

from __future__ import annotations

import asyncio
import errno
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from ..core.enums import BootstrapCheckpoint
from ..infrastructure.postgres.config import PostgresConnectionSettings
from ..logger import get_logger
from ..resilience import log_before_sleep, retry
from .config import ReplicationCredentials
from .domain import BootstrapProgress, validate_slot_name
from .engine import UpstreamInfo
from .exceptions import (
    BaseBackupFailedError,
    CorruptDataDirectoryError,
    OperationCancelledError,
    PrimaryUnreachableError,
    TransientNetworkError,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from structlog.stdlib import BoundLogger

    from .config import BootstrapConfig
    from .engine import ReplicationEngine
    from .slots import ReplicationSlotManager

logger: BoundLogger = get_logger(__name__)

STANDBY_SIGNAL = "standby.signal"
AUTO_CONF = "postgresql.auto.conf"
PG_VERSION = "PG_VERSION"

_MANAGED_SETTINGS = ("primary_conninfo", "primary_slot_name")

type CheckpointCallback = Callable[[BootstrapProgress], Awaitable[None]]


class BootstrapRequest(BaseModel):
    """Everything needed to turn an empty data directory into a standby."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    node_id: str
    data_directory: Path
    primary: PostgresConnectionSettings
    credentials: ReplicationCredentials = Field(default_factory=ReplicationCredentials)
    slot_name: str
    application_name: str

    def upstream(self) -> UpstreamInfo:
        return UpstreamInfo.for_standby(
            self.primary,
            self.credentials,
            application_name=self.application_name,
            slot_name=self.slot_name,
        )


class BootstrapResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: str
    ready: bool = True
    already_bootstrapped: bool = False
    progress: BootstrapProgress


def _conf_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _prepare_data_directory(data_directory: Path) -> None:
    if data_directory.exists() and not data_directory.is_dir():
        raise NotADirectoryError(errno.ENOTDIR, "exists but is not a directory", str(data_directory))

    if not data_directory.exists():
        data_directory.mkdir(parents=True, mode=0o700)
        return

    for entry in data_directory.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


async def _on_data_directory(node_id: str, func: Callable[..., None], *args: object) -> None:
    try:
        await asyncio.to_thread(func, *args)
    except OSError as e:
        msg = f"Data directory operation failed for {node_id}: {e}"
        raise CorruptDataDirectoryError(msg, node_id=node_id) from e


def _write_standby_config(data_directory: Path, upstream: UpstreamInfo) -> None:
    auto_conf = data_directory / AUTO_CONF
    kept: list[str] = []
    if auto_conf.exists():
        for line in auto_conf.read_text(encoding="utf-8").splitlines():
            key = line.split("=", 1)[0].strip()
            if key not in _MANAGED_SETTINGS:
                kept.append(line)

    kept.append(f"primary_conninfo = {_conf_quote(upstream.to_conninfo())}")
    kept.append(f"primary_slot_name = {_conf_quote(upstream.slot_name)}")
    auto_conf.write_text("\n".join(kept) + "\n", encoding="utf-8")


class BootstrapExecutor:
    """Bootstrap replicas from the primary with ``pg_basebackup``.

    Examples
    --------
    >>> executor = BootstrapExecutor(engine, BootstrapConfig(), slots)
    >>> result = await executor.bootstrap(request)
    >>> result.ready
    True
    """

    __slots__ = ("_config", "_engine", "_slots")

    def __init__(self, engine: ReplicationEngine, config: BootstrapConfig, slots: ReplicationSlotManager) -> None:
        self._engine = engine
        self._config = config
        self._slots = slots

    async def wait_for_primary(self, primary: PostgresConnectionSettings, *, node_id: str | None = None) -> None:
        """Ping the primary at a fixed interval until it answers.

        Raises
        ------
        PrimaryUnreachableError
            If the primary did not answer within ``wait_max_attempts`` checks.
        AuthenticationFailedError
            Immediately, without retrying.
        """
        ping = retry(
            self._config.wait_retry_config(),
            before_sleep=log_before_sleep("wait_for_primary", primary=primary.address),
        )(self._engine.ping)
        try:
            await ping(primary, self._config.check_timeout_seconds)
        except TransientNetworkError as e:
            msg = f"Primary {primary.address} unreachable after {self._config.wait_max_attempts} attempts: {e.message}"
            raise PrimaryUnreachableError(msg, node_id=node_id) from e

    async def bootstrap(
        self,
        request: BootstrapRequest,
        *,
        progress: BootstrapProgress | None = None,
        on_checkpoint: CheckpointCallback | None = None,
        cancel: asyncio.Event | None = None,
    ) -> BootstrapResult:
        """Run (or resume) the bootstrap of one replica.

        Parameters
        ----------
        request
            Replica and upstream description.
        progress
            Persisted progress of an earlier attempt, if any.
        on_checkpoint
            Awaited after every checkpoint with the new progress.
        cancel
            Checked between steps; when set the bootstrap stops with
            `OperationCancelledError` and can be resumed later.

        Returns
        -------
        BootstrapResult
            ``already_bootstrapped`` is True when the data directory was
            already a configured standby and nothing was copied.

        Raises
        ------
        PrimaryUnreachableError
            The primary never answered.
        CorruptDataDirectoryError
            The data directory is not a directory or cannot be written.
        BaseBackupFailedError
            Base backup failed ``max_backup_failures`` times.
        AuthenticationFailedError
            Replication credentials were rejected.
        OperationCancelledError
            ``cancel`` was set.
        """
        validate_slot_name(request.slot_name)
        state = progress or BootstrapProgress()
        data_directory = request.data_directory
        log = logger.bind(node_id=request.node_id, slot_name=request.slot_name)

        async def checkpoint(step: BootstrapCheckpoint) -> None:
            nonlocal state
            state = state.advance(step)
            log.info("Bootstrap checkpoint reached", checkpoint=step)
            if on_checkpoint is not None:
                await on_checkpoint(state)

        def check_cancel() -> None:
            if cancel is not None and cancel.is_set():
                log.warning("Bootstrap cancelled", checkpoint=state.checkpoint)
                msg = f"Bootstrap of {request.node_id} cancelled at {state.checkpoint}"
                raise OperationCancelledError(msg, node_id=request.node_id)

        if state.reached(BootstrapCheckpoint.READY) and (data_directory / STANDBY_SIGNAL).exists():
            log.info("Replica already bootstrapped")
            return BootstrapResult(node_id=request.node_id, already_bootstrapped=True, progress=state)

        resumable = state.reached(BootstrapCheckpoint.BASE_BACKUP_DONE) and (data_directory / PG_VERSION).exists()

        if not resumable:
            check_cancel()
            await self.wait_for_primary(request.primary, node_id=request.node_id)
            await checkpoint(BootstrapCheckpoint.PRIMARY_REACHABLE)

            if (data_directory / STANDBY_SIGNAL).exists():
                log.info("Data directory already configured as standby, skipping bootstrap")
                await checkpoint(BootstrapCheckpoint.READY)
                return BootstrapResult(node_id=request.node_id, already_bootstrapped=True, progress=state)

            check_cancel()
            await self._slots.ensure_slot(request.primary, request.slot_name)

            while True:
                check_cancel()
                await _on_data_directory(request.node_id, _prepare_data_directory, data_directory)
                await checkpoint(BootstrapCheckpoint.DATA_DIR_CLEAN)

                check_cancel()
                try:
                    await self._base_backup(request)
                except (TransientNetworkError, BaseBackupFailedError) as e:
                    state = state.record_backup_failure()
                    if on_checkpoint is not None:
                        await on_checkpoint(state)
                    log.error(
                        "Base backup failed",
                        failures=state.backup_failures,
                        max_failures=self._config.max_backup_failures,
                        error=str(e),
                    )
                    if state.backup_failures >= self._config.max_backup_failures:
                        msg = f"Base backup of {request.node_id} failed {state.backup_failures} times: {e}"
                        raise BaseBackupFailedError(msg, node_id=request.node_id) from e
                    continue
                break

            await checkpoint(BootstrapCheckpoint.BASE_BACKUP_DONE)
        else:
            log.info("Resuming bootstrap after completed base backup")

        check_cancel()
        await _on_data_directory(request.node_id, _write_standby_config, data_directory, request.upstream())
        await checkpoint(BootstrapCheckpoint.STANDBY_CONFIGURED)

        # Marker last: only complete setups carry it.
        await _on_data_directory(request.node_id, (data_directory / STANDBY_SIGNAL).touch)
        await checkpoint(BootstrapCheckpoint.READY)

        log.info("Replica bootstrapped", data_directory=str(data_directory))
        return BootstrapResult(node_id=request.node_id, progress=state)

    async def _base_backup(self, request: BootstrapRequest) -> None:
        backup = retry(
            self._config.backup_retry,
            before_sleep=log_before_sleep("base_backup", node_id=request.node_id, slot_name=request.slot_name),
        )(self._engine.base_backup)
        await backup(request.upstream(), request.data_directory)
