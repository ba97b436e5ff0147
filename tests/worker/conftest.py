"""Shared fixtures for worker tests."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from agentfleet.worker.config import Settings
from agentfleet.worker.database import Base, StateStore, create_session_factory
from agentfleet.worker.database.models import (
    AgentActualStateDB,
    AgentDB,
    AgentDesiredStateDB,
    ProfileDB,
    ProjectDB,
)
from agentfleet.worker.services.container_runtime import ContainerRuntime
from agentfleet.worker.services.crypto import ConfigCipher

RUNNING_INFO = {"State": {"Running": True, "Status": "running"}}
EXITED_INFO = {"State": {"Running": False, "Status": "exited"}}

SeedAgent = Callable[..., Awaitable[str]]


# ============================================================================
# Configuration
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Worker settings pointing at a temporary data directory."""
    return Settings(
        agents_data_container_path=str(tmp_path / "workspaces"),
        public_host="agents.test",
        docker_network_name="agentfleet-test",
        boot_grace_seconds=0,
        chat_retry_delay_seconds=0,
        encryption_key="unit-test-encryption-key",
    )


@pytest.fixture
def cipher() -> ConfigCipher:
    return ConfigCipher("unit-test-encryption-key", "sensitive")


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with every worker table created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def store(db_engine: AsyncEngine) -> StateStore:
    return StateStore(create_session_factory(db_engine))


@pytest.fixture
def seed_agent(store: StateStore) -> SeedAgent:
    """Insert an agent with its owner, project, desired and optional actual state."""

    async def _seed(
        *,
        agent_id: str | None = None,
        framework: str = "openclaw",
        enabled: bool = False,
        config: Any = None,
        metadata: dict[str, Any] | None = None,
        purge_at: datetime | None = None,
        tier: str = "free",
        status: str | None = None,
        endpoint_url: str | None = None,
    ) -> str:
        agent_id = agent_id or str(uuid.uuid4())
        async with store.session() as session:
            profile = ProfileDB(id=str(uuid.uuid4()), tier=tier)
            project = ProjectDB(id=str(uuid.uuid4()), user_id=profile.id, name="project")
            session.add_all([profile, project])
            await session.flush()
            session.add(
                AgentDB(id=agent_id, name=f"agent-{agent_id[:8]}", framework=framework, project_id=project.id)
            )
            await session.flush()
            session.add(
                AgentDesiredStateDB(
                    agent_id=agent_id,
                    enabled=enabled,
                    config=config if config is not None else {"gateway": {"auth": {"token": "tok"}}},
                    agent_metadata=metadata or {},
                    purge_at=purge_at,
                )
            )
            if status is not None:
                session.add(
                    AgentActualStateDB(agent_id=agent_id, status=status, endpoint_url=endpoint_url)
                )
        return agent_id

    return _seed


# ============================================================================
# Docker
# ============================================================================


def make_exec(output: bytes = b"ok\n") -> Mock:
    """Mock aiodocker exec whose attached stream yields ``output`` once."""
    stream = MagicMock()
    stream.read_out = AsyncMock(side_effect=[SimpleNamespace(stream=1, data=output), None])
    stream.__aenter__ = AsyncMock(return_value=stream)
    stream.__aexit__ = AsyncMock(return_value=False)

    exec_ = Mock()
    exec_.id = "exec-123"
    exec_.start = Mock(return_value=stream)
    return exec_


@pytest.fixture
def docker_container() -> Mock:
    """Mock aiodocker container that reports running."""
    container = Mock()
    container.id = "container-123"
    container.start = AsyncMock()
    container.stop = AsyncMock()
    container.delete = AsyncMock()
    container.show = AsyncMock(return_value=RUNNING_INFO)
    container.log = AsyncMock(return_value=["line 1\n", "line 2\n"])
    container.wait = AsyncMock(return_value={"StatusCode": 0})
    container.exec = AsyncMock(side_effect=lambda *args, **kwargs: make_exec(b"ok\n"))
    return container


@pytest.fixture
def docker_client(docker_container: Mock) -> Mock:
    """Mock aiodocker client."""
    client = Mock()
    client.containers = Mock()
    client.containers.container = Mock(return_value=docker_container)
    client.containers.create = AsyncMock(return_value=docker_container)
    client.containers.list = AsyncMock(return_value=[])
    client.images = Mock()
    client.images.inspect = AsyncMock(return_value={"Id": "sha256:abc"})
    client.images.pull = AsyncMock(return_value=[{"status": "Pull complete"}])
    client.close = AsyncMock()
    return client


@pytest.fixture
async def runtime(settings: Settings, docker_client: Mock) -> AsyncGenerator[ContainerRuntime, None]:
    """Container runtime over the mocked aiodocker client."""
    container_runtime = ContainerRuntime(settings, docker=docker_client)
    await container_runtime.initialize()
    yield container_runtime
    await container_runtime.close()


def container_summary(name: str, state: str = "running") -> MagicMock:
    """Engine container-list entry as aiodocker returns it."""
    summary = MagicMock()
    summary.id = f"id-{name}"
    data = {"Names": [f"/{name}"], "State": state}
    summary.__getitem__.side_effect = data.__getitem__
    return summary


@pytest.fixture
def make_summary() -> Callable[..., MagicMock]:
    return container_summary


@pytest.fixture
def exec_factory() -> Callable[[bytes], Mock]:
    return make_exec
