"""Shared fixtures for replication unit tests.

`FakeEngine` is a stateful in-memory stand-in for a set of PostgreSQL
servers. A slot is active when a reachable server in recovery streams from
it, which is how ``pg_replication_slots.active`` behaves on a real primary.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from pgcontrol.core.enums import BootstrapCheckpoint, NodeRole, NodeState, SlotState
from pgcontrol.infrastructure.postgres.config import PostgresConnectionSettings
from pgcontrol.replication.config import (
    BootstrapConfig,
    ClusterConfig,
    MonitorConfig,
    NodeConfig,
    PromotionConfig,
    ReplicationCredentials,
)
from pgcontrol.replication.domain import BootstrapProgress, ClusterTopology, Node, ReplicationSlot, slot_name_for
from pgcontrol.replication.engine import NodeStatus, SlotInfo, UpstreamInfo
from pgcontrol.replication.exceptions import (
    AuthenticationFailedError,
    BaseBackupFailedError,
    PreconditionFailedError,
    SlotAlreadyExistsError,
    SlotInUseError,
    TransientNetworkError,
)
from pgcontrol.resilience import RetryConfig

PRIMARY_LSN = 0x3_0000_0000


@dataclass
class FakeServer:
    host: str
    port: int = 5432
    reachable: bool = True
    hang: bool = False
    reject_auth: bool = False
    in_recovery: bool = False
    lsn: int = PRIMARY_LSN
    upstream: tuple[str, str] | None = None
    slots: dict[str, int | None] = field(default_factory=dict)
    roles: set[str] = field(default_factory=set)
    extensions: set[str] = field(default_factory=set)
    promote_sticks: bool = True

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


class FakeEngine:
    """In-memory `ReplicationEngine`."""

    def __init__(self) -> None:
        self.servers: dict[str, FakeServer] = {}
        self.data_dirs: dict[Path, str] = {}
        self.backup_errors: list[Exception] = []
        self.unavailable_extensions: set[str] = set()
        self.backups: list[tuple[str, str, Path]] = []
        self.promotions: list[str] = []
        self.reconfigured: dict[str, UpstreamInfo] = {}
        self.fail_reconfigure: set[str] = set()

    def add_server(self, host: str, **kwargs: object) -> FakeServer:
        server = FakeServer(host=host, **kwargs)  # type: ignore[arg-type]
        self.servers[server.address] = server
        return server

    def server(self, host: str, port: int = 5432) -> FakeServer:
        return self.servers[f"{host}:{port}"]

    async def _connect(self, conn: PostgresConnectionSettings) -> FakeServer:
        server = self.servers.get(conn.address)
        if server is None or not server.reachable:
            msg = f"Cannot reach {conn.address}: connection refused"
            raise TransientNetworkError(msg)
        if server.hang:
            await asyncio.sleep(3600)
        if server.reject_auth:
            msg = f"Authentication rejected by {conn.address}"
            raise AuthenticationFailedError(msg)
        return server

    def _slot_active(self, address: str, name: str) -> bool:
        return any(
            server.reachable and server.in_recovery and server.upstream == (address, name)
            for server in self.servers.values()
        )

    async def ping(self, conn: PostgresConnectionSettings, timeout: float) -> None:
        await self._connect(conn)

    async def node_status(self, conn: PostgresConnectionSettings, timeout: float) -> NodeStatus:
        server = await self._connect(conn)
        return NodeStatus(in_recovery=server.in_recovery, wal_lsn=server.lsn)

    async def ensure_replication_role(
        self, conn: PostgresConnectionSettings, credentials: ReplicationCredentials
    ) -> bool:
        server = await self._connect(conn)
        if credentials.user in server.roles:
            return False
        server.roles.add(credentials.user)
        return True

    async def enable_extension(self, conn: PostgresConnectionSettings, name: str) -> None:
        server = await self._connect(conn)
        if name in self.unavailable_extensions:
            msg = f"extension {name!r} is not available"
            raise PreconditionFailedError(msg)
        server.extensions.add(name)

    async def create_physical_slot(self, conn: PostgresConnectionSettings, name: str) -> None:
        server = await self._connect(conn)
        if name in server.slots:
            raise SlotAlreadyExistsError(name)
        server.slots[name] = server.lsn

    async def list_slots(self, conn: PostgresConnectionSettings) -> list[SlotInfo]:
        server = await self._connect(conn)
        return [
            SlotInfo(
                name=name,
                active=self._slot_active(server.address, name),
                active_pid=4242 if self._slot_active(server.address, name) else None,
                restart_lsn=restart_lsn,
            )
            for name, restart_lsn in sorted(server.slots.items())
        ]

    async def drop_slot(self, conn: PostgresConnectionSettings, name: str, *, terminate: bool = False) -> None:
        server = await self._connect(conn)
        if name not in server.slots:
            return
        if self._slot_active(server.address, name):
            if not terminate:
                raise SlotInUseError(name)
            for standby in self.servers.values():
                if standby.upstream == (server.address, name):
                    standby.upstream = None
        del server.slots[name]

    async def base_backup(self, upstream: UpstreamInfo, target_dir: Path) -> None:
        address = f"{upstream.host}:{upstream.port}"
        self.backups.append((address, upstream.slot_name, target_dir))
        if self.backup_errors:
            raise self.backup_errors.pop(0)

        primary = self.servers.get(address)
        if primary is None or not primary.reachable:
            msg = f"could not connect to server {address}"
            raise TransientNetworkError(msg)
        if upstream.slot_name not in primary.slots:
            msg = f'replication slot "{upstream.slot_name}" does not exist'
            raise BaseBackupFailedError(msg)

        (target_dir / "PG_VERSION").write_text("16\n")
        (target_dir / "postgresql.auto.conf").write_text("# Do not edit this file manually!\n")

        standby_address = self.data_dirs.get(target_dir)
        if standby_address is not None:
            standby = self.servers[standby_address]
            standby.reachable = True
            standby.in_recovery = True
            standby.lsn = primary.lsn
            standby.upstream = (address, upstream.slot_name)

    async def promote(self, conn: PostgresConnectionSettings, wait_seconds: int) -> bool:
        server = await self._connect(conn)
        self.promotions.append(server.address)
        if not server.promote_sticks:
            return False
        server.in_recovery = False
        server.upstream = None
        return True

    async def reconfigure_upstream(self, conn: PostgresConnectionSettings, upstream: UpstreamInfo) -> None:
        server = await self._connect(conn)
        if server.host in self.fail_reconfigure:
            msg = f"Cannot reach {server.address}: connection reset"
            raise TransientNetworkError(msg)
        server.upstream = (f"{upstream.host}:{upstream.port}", upstream.slot_name)
        self.reconfigured[server.address] = upstream


@pytest.fixture
def engine(tmp_path: Path) -> FakeEngine:
    """One running primary and two replica servers that start after their base backup."""
    fake = FakeEngine()
    fake.add_server("pg-0")
    for host in ("pg-1", "pg-2"):
        fake.add_server(host, reachable=False)
        fake.data_dirs[tmp_path / host] = f"{host}:5432"
    return fake


@pytest.fixture
def primary_conn() -> PostgresConnectionSettings:
    return PostgresConnectionSettings(host="pg-0")


@pytest.fixture
def bootstrap_config() -> BootstrapConfig:
    return BootstrapConfig(
        wait_interval_seconds=0,
        wait_max_attempts=3,
        check_timeout_seconds=0.1,
        backup_retry=RetryConfig(
            max_attempts=2,
            backoff="fixed",
            wait_fixed=0,
            retry_on_exceptions=(TransientNetworkError,),
            never_retry_on=(AuthenticationFailedError,),
        ),
    )


@pytest.fixture
def monitor_config() -> MonitorConfig:
    return MonitorConfig(
        poll_interval_seconds=0.01,
        check_timeout_seconds=0.05,
        failure_threshold=3,
        recovery_threshold=1,
        lag_threshold_bytes=1024,
    )


@pytest.fixture
def cluster_config(tmp_path: Path, bootstrap_config: BootstrapConfig, monitor_config: MonitorConfig) -> ClusterConfig:
    config = ClusterConfig.with_replica_hosts(
        "orders",
        NodeConfig(node_id="pg-0", connection=PostgresConnectionSettings(host="pg-0")),
        {"pg-1": tmp_path / "pg-1", "pg-2": tmp_path / "pg-2"},
    )
    return config.model_copy(
        update={
            "bootstrap": bootstrap_config,
            "monitor": monitor_config,
            "promotion": PromotionConfig(check_timeout_seconds=0.05, decommission_grace_seconds=300),
        }
    )


@pytest.fixture
def streaming_topology(engine: FakeEngine, cluster_config: ClusterConfig) -> ClusterTopology:
    """Settled topology: pg-0 primary, pg-1 and pg-2 streaming through active slots."""
    primary = engine.server("pg-0")
    topology = ClusterTopology(cluster_name=cluster_config.name, primary_id="pg-0").with_node(
        Node(config=cluster_config.primary, role=NodeRole.PRIMARY, state=NodeState.STREAMING)
    )
    for replica in cluster_config.replicas:
        slot_name = slot_name_for(replica.node_id)
        primary.slots[slot_name] = primary.lsn

        server = engine.server(replica.node_id)
        server.reachable = True
        server.in_recovery = True
        server.lsn = primary.lsn
        server.upstream = (primary.address, slot_name)

        node = Node(
            config=replica,
            role=NodeRole.REPLICA,
            state=NodeState.STREAMING,
            upstream_id="pg-0",
            slot_name=slot_name,
            bootstrap=BootstrapProgress(checkpoint=BootstrapCheckpoint.READY),
        )
        topology = topology.with_node(node).with_slot(
            ReplicationSlot(name=slot_name, bound_node_id=replica.node_id, host_node_id="pg-0", state=SlotState.ACTIVE)
        )
    return topology
