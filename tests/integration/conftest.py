"""Integration fixtures backed by a throwaway PostgreSQL container.

Tests skip when testcontainers or a container runtime is unavailable.
"""

import os
from collections.abc import AsyncGenerator, Generator
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import matchday.storage.entities  # noqa: F401 - register all models with Base.metadata
from matchday.storage.models import Base


def _configure_container_runtime() -> None:
    """Point testcontainers at a rootless Podman socket when Docker is absent."""
    if os.environ.get("DOCKER_HOST") or os.path.exists("/var/run/docker.sock"):
        return
    podman_socket = f"/run/user/{os.getuid()}/podman/podman.sock"
    if os.path.exists(podman_socket):
        os.environ["DOCKER_HOST"] = f"unix://{podman_socket}"
        os.environ.setdefault("TESTCONTAINERS_RYUK_DISABLED", "true")


_configure_container_runtime()


@pytest.fixture(scope="session")
def postgres_container() -> Generator[Any, None, None]:
    postgres = pytest.importorskip("testcontainers.postgres")
    try:
        with postgres.PostgresContainer(
            image="postgres:16-alpine",
            username="test",
            password="test",
            dbname="matchday_test",
        ) as container:
            yield container
    except Exception as e:
        pytest.skip(f"Docker/Podman not available: {e}")


@pytest.fixture(scope="session")
def postgres_url(postgres_container: Any) -> str:
    sync_url = postgres_container.get_connection_url()
    return sync_url.replace("postgresql+psycopg2://", "postgresql+asyncpg://").replace(
        "postgresql://", "postgresql+asyncpg://"
    )


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def integration_engine(postgres_url: str) -> AsyncGenerator[Any, None]:
    engine = create_async_engine(postgres_url, pool_pre_ping=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(loop_scope="session")
async def integration_session(integration_engine: Any) -> AsyncGenerator[AsyncSession, None]:
    """Session inside an outer transaction that is always rolled back.

    ``session.commit()`` releases a SAVEPOINT, which is reopened, so code
    under test may commit freely without persisting anything.
    """
    async with integration_engine.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(bind=conn, expire_on_commit=False)
        await session.begin_nested()

        @event.listens_for(session.sync_session, "after_transaction_end")
        def restart_savepoint(session_sync, transaction):
            if transaction.nested and not transaction._parent.nested:
                session_sync.begin_nested()

        yield session

        await session.close()
        await trans.rollback()


@pytest_asyncio.fixture(loop_scope="session")
async def committing_sessions(integration_engine: Any) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """A real session factory for tests that need concurrent transactions.

    Tables are emptied before and after, since these sessions commit.
    """

    async def _truncate() -> None:
        async with integration_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    await _truncate()
    yield async_sessionmaker(integration_engine, expire_on_commit=False)
    await _truncate()
