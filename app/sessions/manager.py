"""Session Router – Channel Manager.

Control surface over the tenant channels: start/pair, status, configuration,
removal, outbound dispatch and start-up restore. Start and remove on the same
``(tenant, slot)`` are serialized by a per-key lock.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from app.core.errors import ChannelNotFoundError
from app.gateway.redis_bus import RedisBus
from app.gateway.schemas import (
    ChannelStatus,
    DispatchResult,
    OutboundRequest,
    PairingArtifact,
    SystemEvent,
)
from app.integrations.dispatcher import OutboundDispatcher
from app.integrations.whatsapp.transport import ConnectionClosed, TransportFactory
from app.routing.affinity import RoutingStore
from app.routing.channels import ChannelRecord, ChannelRepository
from app.sessions.auth_state import AuthStateStore, parse_session_id, session_id_for
from app.sessions.registry import SessionKey, SessionRegistry, SessionSnapshot, SessionState
from app.sessions.supervisor import ConnectionSupervisor, MessageHandler
from config.settings import Settings, get_settings

logger = structlog.get_logger()


def _status(tenant_id: str, slot_id: int, snap: SessionSnapshot | None, record: ChannelRecord | None) -> ChannelStatus:
    return ChannelStatus(
        tenant_id=tenant_id,
        slot_id=slot_id,
        connected=bool(snap and snap.connected),
        state=snap.connectivity if snap else "disconnected",
        bound_address=(snap.bound_address if snap and snap.bound_address else None)
        or (record.phone_number if record else None),
        priority=record.priority if record else None,
        tags=list(record.tags) if record else [],
    )


class ChannelManager:
    def __init__(
        self,
        *,
        registry: SessionRegistry,
        auth_store: AuthStateStore,
        channels: ChannelRepository,
        dispatcher: OutboundDispatcher,
        transport_factory: TransportFactory,
        on_message: MessageHandler | None = None,
        routing: RoutingStore | None = None,
        bus: RedisBus | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._registry = registry
        self._auth_store = auth_store
        self._channels = channels
        self._dispatcher = dispatcher
        self._transport_factory = transport_factory
        self._on_message = on_message
        self._routing = routing
        self._bus = bus
        self._settings = settings or get_settings()
        self._locks: dict[SessionKey, asyncio.Lock] = {}

    def _lock(self, key: SessionKey) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    # ── supervisor hooks ──────────────────────────────────────────────────

    async def _on_connected(self, tenant_id: str, slot_id: int, address: str) -> None:
        await self._channels.sync_on_connect(tenant_id, slot_id, address)

    async def _on_terminated(self, supervisor: ConnectionSupervisor, closed: ConnectionClosed) -> None:
        await self._publish_removed(supervisor.tenant_id, supervisor.slot_id, reason=f"disconnect:{closed.code}")

    async def _publish_removed(self, tenant_id: str, slot_id: int, reason: str) -> None:
        if self._bus is None:
            return
        await self._bus.publish_event(
            SystemEvent(
                event_type="channel.removed",
                source="channel_manager",
                payload={"tenant_id": tenant_id, "slot_id": slot_id, "reason": reason},
                severity="warning",
            )
        )

    def _build_supervisor(self, tenant_id: str, slot_id: int) -> ConnectionSupervisor:
        return ConnectionSupervisor(
            tenant_id,
            slot_id,
            auth_store=self._auth_store,
            transport_factory=self._transport_factory,
            registry=self._registry,
            on_message=self._on_message,
            on_connected=self._on_connected,
            on_terminated=self._on_terminated,
            settings=self._settings,
        )

    # ── control operations ────────────────────────────────────────────────

    async def start_channel(self, tenant_id: str, slot_id: int) -> ChannelStatus:
        """Start (or keep) the session behind ``(tenant, slot)``; idempotent."""
        key = (tenant_id, slot_id)
        async with self._lock(key):
            supervisor = self._registry.get(key)
            if supervisor is None or not supervisor.running:
                supervisor = self._build_supervisor(tenant_id, slot_id)
                supervisor.start()
                logger.info("channels.start", tenant_id=tenant_id, slot=slot_id)
        return await self.get_status(tenant_id, slot_id)

    async def get_pairing_artifact(self, tenant_id: str, slot_id: int) -> PairingArtifact:
        snap = self._registry.snapshot((tenant_id, slot_id))
        if snap is None:
            raise ChannelNotFoundError(tenant_id, slot_id)
        return PairingArtifact(
            tenant_id=tenant_id,
            slot_id=slot_id,
            qr=snap.pairing_code if snap.state is SessionState.PAIRING else None,
            connected=snap.connected,
        )

    async def get_status(self, tenant_id: str, slot_id: int) -> ChannelStatus:
        snap = self._registry.snapshot((tenant_id, slot_id))
        record = await self._channels.get(tenant_id, slot_id)
        if snap is None and record is None:
            raise ChannelNotFoundError(tenant_id, slot_id)
        return _status(tenant_id, slot_id, snap, record)

    async def list_channels(self, tenant_id: str) -> list[ChannelStatus]:
        records = {r.slot_id: r for r in await self._channels.for_tenant(tenant_id)}
        snaps = {s.slot_id: s for s in self._registry.snapshots(tenant_id)}
        return [
            _status(tenant_id, slot_id, snaps.get(slot_id), records.get(slot_id))
            for slot_id in sorted(set(records) | set(snaps))
        ]

    async def configure_channel(
        self,
        tenant_id: str,
        slot_id: int,
        *,
        priority: int | None = None,
        add_tag: str | None = None,
        remove_tag: str | None = None,
    ) -> ChannelStatus:
        record = await self._channels.configure(
            tenant_id,
            slot_id,
            priority=priority,
            add_tag=add_tag,
            remove_tag=remove_tag,
        )
        logger.info(
            "channels.configured",
            tenant_id=tenant_id,
            slot=slot_id,
            priority=record.priority,
            tags=list(record.tags),
        )
        return _status(tenant_id, slot_id, self._registry.snapshot((tenant_id, slot_id)), record)

    async def remove_channel(self, tenant_id: str, slot_id: int) -> dict[str, Any]:
        """Stop the session, drop it from the registry and delete its channel and auth state."""
        key = (tenant_id, slot_id)
        async with self._lock(key):
            supervisor = self._registry.get(key)
            if supervisor is not None:
                await supervisor.teardown()
                self._registry.unregister(key)
            purged = await self._auth_store.purge(session_id_for(tenant_id, slot_id))
            deleted = await self._channels.delete(tenant_id, slot_id)
        if supervisor is None and not purged and not deleted:
            raise ChannelNotFoundError(tenant_id, slot_id)
        logger.info("channels.removed", tenant_id=tenant_id, slot=slot_id, auth_rows=purged)
        await self._publish_removed(tenant_id, slot_id, reason="removed")
        return {"tenant_id": tenant_id, "slot_id": slot_id, "removed": True}

    async def remove_tenant(self, tenant_id: str) -> dict[str, Any]:
        """Remove every channel of ``tenant_id``, then drop its routing entries."""
        slots = {r.slot_id for r in await self._channels.for_tenant(tenant_id)}
        slots |= {s.slot_id for s in self._registry.snapshots(tenant_id)}
        for session_id in await self._auth_store.list_session_ids():
            parsed = parse_session_id(session_id)
            if parsed is not None and parsed[0] == tenant_id:
                slots.add(parsed[1])

        removed: list[int] = []
        for slot_id in sorted(slots):
            try:
                await self.remove_channel(tenant_id, slot_id)
            except ChannelNotFoundError:
                continue
            removed.append(slot_id)
            residual = await self._auth_store.count(session_id_for(tenant_id, slot_id))
            if residual:
                logger.error("channels.residual_auth_state", tenant_id=tenant_id, slot=slot_id, rows=residual)

        routes = await self._routing.purge_tenant(tenant_id) if self._routing is not None else 0
        logger.info("channels.tenant_removed", tenant_id=tenant_id, slots=removed, routes=routes)
        return {"tenant_id": tenant_id, "removed_slots": removed, "routes_purged": routes}

    async def dispatch_outbound(self, request: OutboundRequest) -> DispatchResult:
        return await self._dispatcher.dispatch(request)

    async def restore_all_sessions(self) -> int:
        """Start every session that has stored credentials; returns how many were started."""
        restored = 0
        for session_id in await self._auth_store.list_session_ids():
            parsed = parse_session_id(session_id)
            if parsed is None:
                logger.warning("channels.restore_skipped", session_id=session_id)
                continue
            tenant_id, slot_id = parsed
            await self.start_channel(tenant_id, slot_id)
            restored += 1
        logger.info("channels.restored", sessions=restored)
        return restored

    async def shutdown(self) -> None:
        """Stop all supervisors without signing out; auth state is kept for restore."""
        for snap in self._registry.snapshots():
            supervisor = self._registry.get(snap.key)
            if supervisor is not None:
                await supervisor.stop()
        logger.info("channels.shutdown", sessions=len(self._registry))
