"""Shared fixtures for pgcontrol.infrastructure.postgres integration tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from testcontainers.postgres import PostgresContainer  # type: ignore[import-untyped]

from pgcontrol.infrastructure.postgres import PostgresEngine, PostgresEngineConfig

from ..conftest import is_docker_available

# Import replication fixtures to make them available to tests
from .replication_fixtures import (  # noqa: F401
    primary_container,
    promotable_replica,
    replica_container,
    settings_for,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

    from pgcontrol.infrastructure.postgres import PostgresConnectionSettings


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Provide session-scoped standalone PostgreSQL container.

    Yields
    ------
    PostgresContainer
        Running PostgreSQL container instance.
    """
    if not is_docker_available():
        pytest.skip("Docker daemon not accessible")

    with PostgresContainer("postgres:17-alpine", driver="asyncpg") as container:
        yield container


@pytest.fixture
def primary_settings(postgres_container: PostgresContainer) -> PostgresConnectionSettings:
    return settings_for(postgres_container)


@pytest.fixture
def pg_engine() -> PostgresEngine:
    """Engine with short timeouts so unreachable-server tests fail fast."""
    return PostgresEngine(PostgresEngineConfig(connect_timeout=3.0, command_timeout=10.0))
