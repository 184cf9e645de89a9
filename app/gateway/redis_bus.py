"""Session Router – Redis Bus Connector.

One async Redis connection, shared by the system event channel and the
echo suppression cache.
"""

import redis.asyncio as redis
import structlog

from app.gateway.schemas import SystemEvent

logger = structlog.get_logger()


class RedisBus:
    """Async Redis connector.

    Channels:
        - `router:events` – channel removals and other operator-facing events
    """

    CHANNEL_EVENTS = "router:events"

    def __init__(self, redis_url: str = "redis://127.0.0.1:6379/0") -> None:
        self._redis_url = redis_url
        self._client: redis.Redis | None = None

    def _require(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis not connected. Call connect() first.")
        return self._client

    async def connect(self) -> None:
        client = redis.from_url(self._redis_url, decode_responses=True, retry_on_timeout=True)
        await client.ping()
        self._client = client
        logger.info("redis.connected", url=self._redis_url)

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("redis.disconnected")

    async def health_check(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except (redis.ConnectionError, redis.TimeoutError):
            logger.error("redis.health_check_failed")
            return False

    async def publish(self, channel: str, message: str) -> int:
        """Publish ``message`` (already serialized) and return the subscriber count."""
        count = await self._require().publish(channel, message)
        logger.debug("redis.published", channel=channel, subscribers=count)
        return count

    async def publish_event(self, event: SystemEvent) -> int:
        """Publish a SystemEvent on the events channel; failures are logged, not raised."""
        try:
            return await self.publish(self.CHANNEL_EVENTS, event.model_dump_json())
        except (RuntimeError, redis.RedisError) as e:
            logger.error("redis.event_publish_failed", event_type=event.event_type, error=str(e))
            return 0

    @property
    def client(self) -> redis.Redis:
        """The underlying client, for the echo cache and other direct users."""
        return self._require()
