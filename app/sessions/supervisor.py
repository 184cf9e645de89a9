"""Session Router – Connection Supervisor.

Owns the lifecycle of one WhatsApp session:

    Idle → Pairing → Connected → Disconnected → (Idle | Terminated)

Connection events arrive as typed messages from the transport and are
consumed by a single task per session. Recoverable closes reconnect after a
fixed backoff; terminal closes (logout / revoked credentials) purge the
session's auth state and drop it from the registry.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import structlog

from app.core.addresses import jid_to_address
from app.core.errors import SocketNotReadyError, TransportError
from app.core.instrumentation import CONNECTED_SESSIONS
from app.integrations.whatsapp.transport import (
    ConnectionClosed,
    ConnectionOpened,
    MessageReceived,
    OutboundPayload,
    PairingCodeIssued,
    Transport,
    TransportFactory,
    is_terminal,
)
from app.sessions.auth_state import AuthStateStore, session_id_for
from app.sessions.registry import SessionKey, SessionRegistry, SessionSnapshot, SessionState
from config.settings import Settings, get_settings

logger = structlog.get_logger()

MessageHandler = Callable[["ConnectionSupervisor", dict[str, Any]], Awaitable[None]]
ChannelSync = Callable[[str, int, str], Awaitable[None]]
TerminationHook = Callable[["ConnectionSupervisor", ConnectionClosed], Awaitable[None]]


class ConnectionSupervisor:
    def __init__(
        self,
        tenant_id: str,
        slot_id: int,
        *,
        auth_store: AuthStateStore,
        transport_factory: TransportFactory,
        registry: SessionRegistry,
        on_message: MessageHandler | None = None,
        on_connected: ChannelSync | None = None,
        on_terminated: TerminationHook | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.slot_id = slot_id
        self.session_id = session_id_for(tenant_id, slot_id)
        self._auth = auth_store.bind(self.session_id)
        self._transport_factory = transport_factory
        self._registry = registry
        self._on_message = on_message
        self._on_connected = on_connected
        self._on_terminated = on_terminated
        self._settings = settings or get_settings()

        self._state = SessionState.IDLE
        self._pairing_code: str | None = None
        self._bound_address: str | None = None
        self._transport: Transport | None = None
        self._task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def key(self) -> SessionKey:
        return (self.tenant_id, self.slot_id)

    @property
    def state(self) -> SessionState:
        return self._state

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            tenant_id=self.tenant_id,
            slot_id=self.slot_id,
            state=self._state,
            bound_address=self._bound_address,
            pairing_code=self._pairing_code,
        )

    # ──────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Register and spawn the supervision task (idempotent)."""
        if self._task is not None and not self._task.done():
            return
        self._registry.register(self)
        self._task = asyncio.create_task(self.run(), name=f"supervisor:{self.session_id}")
        logger.info("supervisor.started", session_id=self.session_id)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self) -> None:
        while True:
            closed = await self._run_once()
            if is_terminal(closed.code, self._settings.terminal_codes):
                await self._terminate(closed)
                return
            logger.warning(
                "supervisor.reconnect_scheduled",
                session_id=self.session_id,
                code=closed.code,
                reason=closed.reason,
                backoff=self._settings.reconnect_backoff_seconds,
            )
            # Cancellable: stop()/teardown cancels the pending reconnect here.
            await asyncio.sleep(self._settings.reconnect_backoff_seconds)

    async def _run_once(self) -> ConnectionClosed:
        self._state = SessionState.IDLE
        transport = self._transport_factory(self._auth)
        self._transport = transport
        closed = ConnectionClosed(code=None, reason="event stream ended")
        try:
            await transport.connect()
            self._state = SessionState.PAIRING
            async for event in transport.events():
                if isinstance(event, ConnectionClosed):
                    closed = event
                    break
                await self._handle(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("supervisor.transport_error", session_id=self.session_id, error=str(e))
            closed = ConnectionClosed(code=None, reason=str(e))
        finally:
            self._mark_disconnected()
            try:
                await transport.close()
            except Exception as e:
                logger.warning("supervisor.close_failed", session_id=self.session_id, error=str(e))
        return closed

    async def _handle(self, event: Any) -> None:
        if isinstance(event, PairingCodeIssued):
            self._pairing_code = event.code
            self._state = SessionState.PAIRING
            logger.info("supervisor.pairing_code", session_id=self.session_id)
        elif isinstance(event, ConnectionOpened):
            self._pairing_code = None
            self._bound_address = jid_to_address(event.own_jid) or None
            if self._state is not SessionState.CONNECTED:
                CONNECTED_SESSIONS.inc()
            self._state = SessionState.CONNECTED
            logger.info("supervisor.connected", session_id=self.session_id, channel=self._bound_address)
            await self._sync_channel()
        elif isinstance(event, MessageReceived):
            if self._on_message is None:
                return
            task = asyncio.create_task(self._on_message(self, event.raw))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _sync_channel(self) -> None:
        if self._on_connected is None or not self._bound_address:
            return
        try:
            await self._on_connected(self.tenant_id, self.slot_id, self._bound_address)
        except Exception as e:
            logger.error("supervisor.channel_sync_failed", session_id=self.session_id, error=str(e))

    def _mark_disconnected(self) -> None:
        if self._state is SessionState.CONNECTED:
            CONNECTED_SESSIONS.dec()
        self._state = SessionState.DISCONNECTED
        self._pairing_code = None

    async def _terminate(self, closed: ConnectionClosed) -> None:
        self._state = SessionState.TERMINATED
        self._transport = None
        await self._auth.purge()
        self._registry.unregister(self.key, owner=self)
        logger.warning(
            "supervisor.terminated",
            session_id=self.session_id,
            code=closed.code,
            reason=closed.reason,
        )
        if self._on_terminated is not None:
            try:
                await self._on_terminated(self, closed)
            except Exception as e:
                logger.error("supervisor.termination_hook_failed", session_id=self.session_id, error=str(e))

    async def stop(self) -> None:
        """Cancel the supervision task, including any pending reconnect."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._transport = None
        if self._state is not SessionState.TERMINATED:
            self._state = SessionState.DISCONNECTED

    async def teardown(self) -> None:
        """Graceful sign-out (if connected) followed by stop()."""
        transport = self._transport
        if transport is not None and self._state is SessionState.CONNECTED:
            try:
                await transport.logout()
            except Exception as e:
                logger.warning("supervisor.logout_failed", session_id=self.session_id, error=str(e))
        await self.stop()
        self._state = SessionState.TERMINATED

    # ──────────────────────────────────────────────────────────────
    # Operations used by dispatcher / inbound processor
    # ──────────────────────────────────────────────────────────────

    def is_ready(self) -> bool:
        transport = self._transport
        return (
            transport is not None
            and self._state is SessionState.CONNECTED
            and transport.is_ready()
        )

    async def wait_until_ready(self, timeout: float, poll: float | None = None) -> None:
        """Poll until the socket reports ready; raise SocketNotReadyError after ``timeout``."""
        poll = poll if poll is not None else self._settings.socket_ready_poll_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not self.is_ready():
            if loop.time() >= deadline:
                raise SocketNotReadyError(f"{self.session_id} socket not ready after {timeout}s")
            await asyncio.sleep(poll)

    async def send(self, jid: str, payload: OutboundPayload) -> str:
        transport = self._transport
        if transport is None or self._state is not SessionState.CONNECTED:
            raise TransportError(f"{self.session_id} is not connected")
        return await transport.send(jid, payload)

    async def resolve_jid(self, lid: str) -> str | None:
        transport = self._transport
        if transport is None:
            return None
        return await transport.resolve_jid(lid)

    async def download_media(self, raw: dict[str, Any]) -> bytes:
        transport = self._transport
        if transport is None:
            raise TransportError(f"{self.session_id} has no live transport")
        return await transport.download_media(raw)
