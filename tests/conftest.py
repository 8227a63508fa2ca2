"""Pytest configuration and fixtures."""

from typing import AsyncGenerator

import fakeredis
import pytest

from radiochat.config import Settings
from radiochat.core import ChatCore
from radiochat.database.session import Database
from radiochat.services.redis_client import RedisClient


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway database file."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'radiochat.db'}",
        redis_prefix="test:",
        history_limit=20,
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
async def redis_client() -> AsyncGenerator[RedisClient, None]:
    """RedisClient backed by an in-process fake server (fresh per test)."""
    server = fakeredis.FakeServer()
    client = RedisClient(
        prefix="test:",
        client=fakeredis.FakeAsyncRedis(server=server, decode_responses=True),
    )
    await client.connect()
    yield client
    await client.close()


@pytest.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    """Durable store on a temporary SQLite file with all tables created."""
    db = Database(settings.database_url)
    await db.init()
    yield db
    await db.close()


@pytest.fixture
def core(settings, redis_client, database) -> ChatCore:
    """Every component wired against the fake Redis and the temp database."""
    return ChatCore.create(settings, redis=redis_client, database=database)


@pytest.fixture
def down_redis() -> RedisClient:
    """A client that never connected: every call degrades."""
    return RedisClient(prefix="test:")
