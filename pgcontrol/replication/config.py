"""Configuration models for the replication control plane.

Every component receives its configuration explicitly at construction; the
only place the environment is read is `ControllerSettings`.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..infrastructure.postgres.config import PostgresConnectionSettings
from ..logger import LoggingConfig
from ..resilience.config import RetryConfig
from .exceptions import AuthenticationFailedError, TransientNetworkError

_NODE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,62}$")


class ReplicationCredentials(BaseModel):
    """Role used by standbys to stream WAL from the primary."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    user: str = Field(default="replicator", min_length=1)
    password: SecretStr = Field(default=SecretStr("replicator_password"))


class NodeConfig(BaseModel):
    """Desired configuration of a single cluster member."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    node_id: str = Field(description="Stable identifier, also the default application_name")
    connection: PostgresConnectionSettings = Field(default_factory=PostgresConnectionSettings)
    data_directory: Path | None = Field(
        default=None, description="Local path of the node's data directory (required for bootstrap)"
    )
    application_name: str | None = Field(default=None)

    @field_validator("node_id")
    @classmethod
    def _validate_node_id(cls, value: str) -> str:
        if not _NODE_ID_PATTERN.match(value):
            msg = f"invalid node_id {value!r}"
            raise ValueError(msg)
        return value

    @property
    def effective_application_name(self) -> str:
        return self.application_name or self.node_id


class ProvisioningConfig(BaseModel):
    """What `ClusterController.initialize()` sets up on the primary."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    create_replication_role: bool = Field(default=True)
    extensions: tuple[str, ...] = Field(default=("vector", "pg_stat_statements"))


class BootstrapConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    wait_interval_seconds: float = Field(default=2.0, ge=0, description="Fixed backoff while waiting for primary")
    wait_max_attempts: int = Field(default=30, ge=1, description="Check attempts before PrimaryUnreachable")
    check_timeout_seconds: float = Field(default=5.0, gt=0)
    backup_retry: RetryConfig = Field(
        default_factory=lambda: RetryConfig(
            max_attempts=3,
            backoff="exponential_jitter",
            wait_min=1.0,
            wait_max=30.0,
            retry_on_exceptions=(TransientNetworkError,),
            never_retry_on=(AuthenticationFailedError,),
        )
    )
    max_backup_failures: int = Field(default=2, ge=1, description="Failed base backups before giving up on a node")

    def wait_retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.wait_max_attempts,
            backoff="fixed",
            wait_fixed=self.wait_interval_seconds,
            retry_on_exceptions=(TransientNetworkError,),
            never_retry_on=(AuthenticationFailedError,),
        )


class MonitorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    poll_interval_seconds: float = Field(default=5.0, gt=0)
    check_timeout_seconds: float = Field(default=3.0, gt=0)
    failure_threshold: int = Field(default=3, ge=1, description="Consecutive failed checks before unreachable")
    recovery_threshold: int = Field(default=1, ge=1, description="Consecutive good checks to leave unreachable")
    lag_threshold_bytes: int = Field(default=16 * 1024 * 1024, ge=0)
    reclaim_orphaned_slots: bool = Field(default=False)


class PromotionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    promote_wait_seconds: int = Field(default=60, ge=1, le=3600)
    check_timeout_seconds: float = Field(default=3.0, gt=0)
    decommission_grace_seconds: float = Field(
        default=300.0, ge=0, description="How long a demoted primary may stay unreachable before decommission"
    )


class ClusterConfig(BaseModel):
    """Desired topology plus per-component settings.

    Examples
    --------
    >>> config = ClusterConfig.with_replica_hosts(
    ...     "orders",
    ...     NodeConfig(node_id="pg-0", connection=PostgresConnectionSettings(host="pg-0")),
    ...     {"pg-1": Path("/var/lib/postgresql/pg-1"), "pg-2": Path("/var/lib/postgresql/pg-2")},
    ... )
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(default="main", min_length=1)
    primary: NodeConfig
    replicas: tuple[NodeConfig, ...] = Field(default_factory=tuple)
    replication: ReplicationCredentials = Field(default_factory=ReplicationCredentials)
    slot_prefix: str = Field(default="replica_slot_", pattern=r"^[a-z0-9_]{0,40}$")
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    bootstrap: BootstrapConfig = Field(default_factory=BootstrapConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    promotion: PromotionConfig = Field(default_factory=PromotionConfig)

    @model_validator(mode="after")
    def _unique_node_ids(self) -> Self:
        ids = [self.primary.node_id, *(replica.node_id for replica in self.replicas)]
        if len(ids) != len(set(ids)):
            msg = "node ids must be unique within a cluster"
            raise ValueError(msg)
        return self

    @classmethod
    def with_replica_hosts(
        cls,
        name: str,
        primary: NodeConfig,
        replicas: dict[str, Path],
    ) -> Self:
        """Create a cluster whose replicas share the primary's credentials.

        Parameters
        ----------
        name
            Cluster name.
        primary
            Primary node configuration.
        replicas
            Mapping of replica host (also used as node id) to data directory.
        """
        replica_configs = tuple(
            NodeConfig(
                node_id=host,
                connection=primary.connection.for_host(host),
                data_directory=data_directory,
            )
            for host, data_directory in replicas.items()
        )
        return cls(name=name, primary=primary, replicas=replica_configs)

    @classmethod
    def from_file(cls, path: Path) -> Self:
        """Load a cluster definition from a JSON file."""
        return cls.model_validate_json(path.read_text(encoding="utf-8"))


class StoreConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    backend: Literal["file", "redis"] = Field(default="file")
    path: Path = Field(default=Path("pgcontrol-state.json"))
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_key_prefix: str = Field(default="pgcontrol", min_length=1)


class ControllerSettings(BaseSettings):
    """Process-level settings read from the environment.

    ``PGCONTROL_CLUSTER_CONFIG=/etc/pgcontrol/cluster.json``
    ``PGCONTROL_STORE__BACKEND=redis``
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PGCONTROL_",
        env_nested_delimiter="__",
        extra="ignore",
        frozen=True,
    )

    cluster_config: Path = Field(default=Path("cluster.json"))
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def load_cluster_config(self) -> ClusterConfig:
        return ClusterConfig.from_file(self.cluster_config)
