"""Echo-suppression cache tests (fakeredis)."""

from unittest.mock import AsyncMock

import pytest
import redis.asyncio as redis

from app.routing.echo import EchoSuppressionCache


class TestEchoSuppressionCache:
    @pytest.mark.anyio
    async def test_remembered_id_is_seen(self, fake_redis) -> None:
        cache = EchoSuppressionCache(fake_redis, ttl_ms=15000)
        await cache.remember("loc1", "MSG1")
        assert await cache.seen("loc1", "MSG1") is True
        assert await cache.seen("loc1", "MSG2") is False

    @pytest.mark.anyio
    async def test_ids_are_tenant_scoped(self, fake_redis) -> None:
        cache = EchoSuppressionCache(fake_redis)
        await cache.remember("loc1", "MSG1")
        assert await cache.seen("loc2", "MSG1") is False

    @pytest.mark.anyio
    async def test_entries_carry_millisecond_ttl(self, fake_redis) -> None:
        cache = EchoSuppressionCache(fake_redis, ttl_ms=15000)
        await cache.remember("loc1", "MSG1")
        keys = await fake_redis.keys("*MSG1*")
        assert len(keys) == 1
        ttl = await fake_redis.pttl(keys[0])
        assert 0 < ttl <= 15000

    @pytest.mark.anyio
    async def test_expired_entry_is_not_seen(self, fake_redis) -> None:
        cache = EchoSuppressionCache(fake_redis, ttl_ms=15000)
        await cache.remember("loc1", "MSG1")
        for key in await fake_redis.keys("*MSG1*"):
            await fake_redis.delete(key)
        assert await cache.seen("loc1", "MSG1") is False

    @pytest.mark.anyio
    async def test_redis_errors_read_as_unseen(self) -> None:
        broken = AsyncMock()
        broken.exists.side_effect = redis.ConnectionError("down")
        broken.set.side_effect = redis.ConnectionError("down")
        cache = EchoSuppressionCache(broken)
        await cache.remember("loc1", "MSG1")
        assert await cache.seen("loc1", "MSG1") is False
