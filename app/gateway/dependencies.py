"""Shared dependencies for the Gateway routers.

Avoids circular imports by centralizing singleton initialization.
"""

import redis.asyncio as redis
import structlog

from app.gateway.redis_bus import RedisBus
from app.inbound.media import MediaStore
from app.inbound.processor import InboundProcessor
from app.integrations.crm.client import CrmClient
from app.integrations.crm.contacts import ContactResolver
from app.integrations.crm.tokens import StoredTokenProvider
from app.integrations.dispatcher import OutboundDispatcher
from app.integrations.whatsapp.bridge import bridge_transport_factory
from app.routing.affinity import RoutingStore
from app.routing.channels import ChannelRepository
from app.routing.echo import EchoSuppressionCache
from app.sessions.auth_state import AuthStateStore
from app.sessions.manager import ChannelManager
from app.sessions.registry import SessionRegistry
from config.settings import get_settings

logger = structlog.get_logger()
settings = get_settings()

# Initialize Singletons
redis_bus = RedisBus(redis_url=settings.redis_url)
registry = SessionRegistry()
auth_store = AuthStateStore()
channels = ChannelRepository()
routing = RoutingStore()

_manager: ChannelManager | None = None


def _redis_client() -> redis.Redis:
    try:
        return redis_bus.client
    except RuntimeError:
        # Lazily connecting client; echo cache errors are logged per call.
        logger.warning("gateway.redis_fallback_client")
        return redis.from_url(settings.redis_url, decode_responses=True)


def build_channel_manager() -> ChannelManager:
    """Wire the router components; called once from the app lifespan."""
    global _manager
    echo = EchoSuppressionCache(_redis_client(), ttl_ms=settings.echo_ttl_ms)
    crm = CrmClient(StoredTokenProvider(settings), settings)
    processor = InboundProcessor(
        echo=echo,
        routing=routing,
        contacts=ContactResolver(crm, settings),
        crm=crm,
        media=MediaStore(settings),
        settings=settings,
    )
    dispatcher = OutboundDispatcher(registry, channels, routing, echo, settings)
    _manager = ChannelManager(
        registry=registry,
        auth_store=auth_store,
        channels=channels,
        dispatcher=dispatcher,
        transport_factory=bridge_transport_factory(settings),
        on_message=processor.handle,
        routing=routing,
        bus=redis_bus,
        settings=settings,
    )
    return _manager


def get_redis_bus() -> RedisBus:
    return redis_bus


def get_channel_manager() -> ChannelManager:
    if _manager is None:
        raise RuntimeError("Channel manager not initialized. Is the app lifespan running?")
    return _manager
