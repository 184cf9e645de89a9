"""Session Router – Echo-Suppression Cache.

Remembers, for a short TTL, the ids of messages the router itself sent, so
the transport's echo of a just-sent message is not processed as new traffic.
Backed by Redis keys with a millisecond expiry.
"""

from __future__ import annotations

import redis.asyncio as redis
import structlog

from app.core.redis_keys import echo_key

logger = structlog.get_logger()


class EchoSuppressionCache:
    def __init__(self, client: redis.Redis, ttl_ms: int = 15000) -> None:
        self._client = client
        self._ttl_ms = ttl_ms

    async def remember(self, tenant_id: str, message_id: str) -> None:
        if not message_id:
            return
        try:
            await self._client.set(echo_key(tenant_id, message_id), "1", px=self._ttl_ms)
        except redis.RedisError as e:
            logger.error("echo.remember_failed", tenant_id=tenant_id, message_id=message_id, error=str(e))

    async def seen(self, tenant_id: str, message_id: str) -> bool:
        if not message_id:
            return False
        try:
            return bool(await self._client.exists(echo_key(tenant_id, message_id)))
        except redis.RedisError as e:
            logger.error("echo.lookup_failed", tenant_id=tenant_id, message_id=message_id, error=str(e))
            return False
