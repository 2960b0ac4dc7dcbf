"""Shared fixtures for integration tests.

Provides:
- Docker environment detection for testcontainers
- redis_container: Session-scoped Redis container
- redis_client: Function-scoped asyncio Redis client
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio
from docker import from_env  # type: ignore[import-untyped]
from docker.errors import DockerException  # type: ignore[import-untyped]
from redis.asyncio import Redis

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator

    from testcontainers.redis import RedisContainer  # type: ignore[import-untyped]


def pytest_configure(config: pytest.Config) -> None:  # noqa: ARG001
    """Configure Docker environment for testcontainers.

    This hook runs before any fixtures, ensuring Docker is properly configured
    for both local development and CI environments.
    """
    if not os.environ.get("DOCKER_HOST"):
        possible_sockets = [
            Path("/var/run/docker.sock"),
            Path.home() / ".docker" / "run" / "docker.sock",
        ]
        for socket_path in possible_sockets:
            if socket_path.exists():
                os.environ["DOCKER_HOST"] = f"unix://{socket_path}"
                os.environ["TESTCONTAINERS_DOCKER_SOCKET_OVERRIDE"] = str(socket_path)
                break

    # Ryuk (testcontainers cleanup daemon) has known issues on macOS/Docker Desktop
    if sys.platform == "darwin" and not os.environ.get("TESTCONTAINERS_RYUK_DISABLED"):
        os.environ["TESTCONTAINERS_RYUK_DISABLED"] = "true"


def is_docker_available() -> bool:
    """Check if Docker daemon is accessible.

    Returns
    -------
    bool
        True if Docker daemon responds to ping, False otherwise.

    Notes
    -----
    This validates actual daemon connectivity, not just socket existence.
    Important for CI environments where socket may exist but daemon is not running.
    """
    try:
        client = from_env()
        client.ping()
    except DockerException:
        return False
    else:
        return True


@pytest.fixture(scope="session")
def redis_container() -> Iterator[RedisContainer]:
    """Provide session-scoped Redis container.

    Skips
    -----
    If Docker daemon is not available.
    """
    if not is_docker_available():
        pytest.skip("Docker daemon not accessible")

    from testcontainers.redis import RedisContainer  # type: ignore[import-untyped]

    with RedisContainer("redis:7-alpine") as container:
        yield container


@pytest_asyncio.fixture
async def redis_client(redis_container: RedisContainer) -> AsyncIterator[Redis]:
    """Provide a Redis client against an empty database."""
    client = Redis(
        host=redis_container.get_container_host_ip(),
        port=int(redis_container.get_exposed_port(6379)),
    )
    await client.flushdb()
    try:
        yield client
    finally:
        await client.aclose()
