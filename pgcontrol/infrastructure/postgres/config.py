"""Configuration models for PostgreSQL connections and the engine adapter.

- `PostgresConnectionSettings`: how to reach one server (admin / SQL access)
- `PostgresEngineConfig`: driver timeouts and `pg_basebackup` invocation
"""

from __future__ import annotations

from typing import Any, Literal, Self
from urllib.parse import quote_plus

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class PostgresConnectionSettings(BaseModel):
    """Connection settings for a PostgreSQL server."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    host: str = Field(default="localhost")
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = Field(default="postgres")
    user: str = Field(default="postgres")
    password: SecretStr | None = Field(default=None)
    sslmode: Literal["disable", "allow", "prefer", "require", "verify-ca", "verify-full"] = Field(default="prefer")

    @property
    def dsn(self) -> str:
        """Build PostgreSQL DSN from connection settings."""
        password = self.password.get_secret_value() if self.password else ""
        escaped_user = quote_plus(self.user)
        escaped_password = quote_plus(password) if password else ""
        auth = f"{escaped_user}:{escaped_password}@" if escaped_password else f"{escaped_user}@"
        return f"postgresql://{auth}{self.host}:{self.port}/{self.database}?sslmode={self.sslmode}"

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def to_connect_params(self, timeout: float) -> dict[str, Any]:
        """Convert settings to ``asyncpg.connect()`` keyword arguments.

        Parameters
        ----------
        timeout
            Connection establishment timeout in seconds.

        Returns
        -------
        dict[str, Any]
            Parameters for asyncpg.connect().
        """
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.user,
            "password": self.password.get_secret_value() if self.password else None,
            "ssl": self.sslmode,
            "timeout": timeout,
        }

    def for_host(self, host: str, port: int | None = None) -> Self:
        """Copy these settings for another server sharing credentials.

        Examples
        --------
        >>> primary = PostgresConnectionSettings(host="pg-primary", password=SecretStr("s3cret"))
        >>> replica = primary.for_host("pg-replica-1")
        """
        return self.model_copy(update={"host": host, "port": port if port is not None else self.port})


class PostgresEngineConfig(BaseModel):
    """Settings for `PostgresEngine`."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    connect_timeout: float = Field(default=5.0, gt=0, le=120.0, description="Connection timeout (seconds)")
    command_timeout: float = Field(default=30.0, gt=0, le=600.0, description="Statement timeout (seconds)")
    application_name: str = Field(default="pgcontrol", description="application_name for control connections")
    pg_basebackup_path: str = Field(default="pg_basebackup", description="pg_basebackup executable")
    backup_checkpoint: Literal["fast", "spread"] = Field(default="fast")
    backup_timeout: float | None = Field(default=None, gt=0, description="Base backup timeout (None = unlimited)")
