"""Persistence of the cluster topology.

The topology, slot bindings and bootstrap checkpoints must survive a
controller restart. The whole `ClusterTopology` is stored as one JSON
document, either in a local file (replaced atomically) or under a single
Redis key.

Node connection passwords are not part of the document; the controller
rebinds them from its configuration after loading.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..logger import get_logger
from .domain import ClusterTopology
from .exceptions import CorruptTopologyError, TopologyStoreError

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

    from .config import StoreConfig

logger: BoundLogger = get_logger(__name__)


def _parse(payload: str | bytes, source: str) -> ClusterTopology:
    try:
        return ClusterTopology.model_validate_json(payload)
    except ValidationError as e:
        msg = f"Persisted topology at {source} is invalid: {e.error_count()} validation errors"
        raise CorruptTopologyError(msg) from e


@runtime_checkable
class TopologyStore(Protocol):
    async def load(self, cluster_name: str) -> ClusterTopology | None: ...

    async def save(self, topology: ClusterTopology) -> None: ...

    async def aclose(self) -> None: ...


class FileTopologyStore:
    """Topology persisted as a JSON file.

    Writes go to a temporary file in the same directory which then replaces
    the target, so readers never observe a partial document.
    """

    __slots__ = ("_lock", "_path")

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> str | None:
        try:
            return self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write(self, payload: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def load(self, cluster_name: str) -> ClusterTopology | None:
        try:
            async with self._lock:
                payload = await asyncio.to_thread(self._read)
        except OSError as e:
            msg = f"Cannot read topology from {self._path}: {e}"
            raise TopologyStoreError(msg) from e
        if payload is None:
            return None

        topology = _parse(payload, str(self._path))
        if topology.cluster_name != cluster_name:
            logger.warning(
                "Ignoring persisted topology of another cluster",
                path=str(self._path),
                expected=cluster_name,
                found=topology.cluster_name,
            )
            return None
        return topology

    async def save(self, topology: ClusterTopology) -> None:
        payload = topology.model_dump_json(indent=2)
        try:
            async with self._lock:
                await asyncio.to_thread(self._write, payload)
        except OSError as e:
            msg = f"Cannot write topology to {self._path}: {e}"
            raise TopologyStoreError(msg) from e
        logger.debug("Topology saved", path=str(self._path), generation=topology.generation)

    async def aclose(self) -> None:
        return None


class RedisTopologyStore:
    """Topology persisted under ``{key_prefix}:{cluster_name}:topology``.

    Examples
    --------
    >>> store = RedisTopologyStore(Redis.from_url("redis://localhost:6379/0"))
    >>> await store.save(topology)
    >>> await store.load(topology.cluster_name)
    """

    __slots__ = ("_client", "_key_prefix")

    def __init__(self, client: Redis, *, key_prefix: str = "pgcontrol") -> None:
        self._client = client
        self._key_prefix = key_prefix

    def key_for(self, cluster_name: str) -> str:
        return f"{self._key_prefix}:{cluster_name}:topology"

    async def load(self, cluster_name: str) -> ClusterTopology | None:
        key = self.key_for(cluster_name)
        try:
            payload = await self._client.get(key)
        except RedisError as e:
            msg = f"Cannot read topology key {key}: {e}"
            raise TopologyStoreError(msg) from e
        if payload is None:
            return None
        return _parse(payload, key)

    async def save(self, topology: ClusterTopology) -> None:
        key = self.key_for(topology.cluster_name)
        try:
            await self._client.set(key, topology.model_dump_json())
        except RedisError as e:
            msg = f"Cannot write topology key {key}: {e}"
            raise TopologyStoreError(msg) from e
        logger.debug("Topology saved", key=key, generation=topology.generation)

    async def aclose(self) -> None:
        await self._client.aclose()


def build_store(config: StoreConfig) -> TopologyStore:
    """Create the store selected by ``config.backend``."""
    if config.backend == "redis":
        logger.info("Using Redis topology store", key_prefix=config.redis_key_prefix)
        return RedisTopologyStore(Redis.from_url(config.redis_url), key_prefix=config.redis_key_prefix)

    logger.info("Using file topology store", path=str(config.path))
    return FileTopologyStore(config.path)
