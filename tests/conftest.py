"""Session Router – Pytest Configuration.

Shared fixtures for all tests.
"""

import os

# Force testing mode to allow SQLite fallback in app/core/db.py
os.environ["ENVIRONMENT"] = "testing"
if "DATABASE_URL" in os.environ:
    del os.environ["DATABASE_URL"]
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["AUTH_SECRET"] = "test-auth-secret"

import fakeredis.aioredis
import pytest
from httpx import ASGITransport, AsyncClient
from unittest.mock import AsyncMock

from app.core.db import Base, engine, run_migrations
from app.gateway.main import app
from config.settings import Settings


@pytest.fixture(autouse=True)
def mock_redis_bus():
    """Mock RedisBus for all tests."""
    from app.gateway.dependencies import redis_bus

    redis_bus.connect = AsyncMock()
    redis_bus.disconnect = AsyncMock()
    redis_bus.publish = AsyncMock(return_value=1)
    redis_bus.health_check = AsyncMock(return_value=True)
    return redis_bus


@pytest.fixture(autouse=True)
def fresh_db():
    """Every test starts from empty tables."""
    run_migrations()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path):
    """Fast timings so supervisor/dispatcher tests never sleep for real."""
    return Settings(
        environment="testing",
        auth_secret="test-auth-secret",
        reconnect_backoff_seconds=0.01,
        socket_ready_timeout_seconds=0.05,
        socket_ready_retry_delay_seconds=0.01,
        socket_ready_poll_seconds=0.01,
        media_dir=str(tmp_path / "media"),
        media_base_url="http://test/media",
        crm_base_url="https://crm.test",
    )


@pytest.fixture
async def fake_redis():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
async def client():
    """Async test client for the FastAPI gateway."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
