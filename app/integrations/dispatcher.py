"""Session Router – Outbound Message Dispatcher.

Selects a connected channel for each outbound request and sends through it.
A failing channel is dropped from the candidate set and selection runs again
on the rest (cascade) until a send succeeds or nothing is left.
"""

from __future__ import annotations

import asyncio
import os
from typing import TYPE_CHECKING
from urllib.parse import urlparse

import structlog

from app.core.addresses import address_to_jid, normalize_address
from app.core.errors import SocketNotReadyError
from app.core.instrumentation import CASCADE_COUNT, DISPATCH_COUNT
from app.gateway.schemas import DispatchOutcome, DispatchResult, OutboundRequest
from app.integrations import spintax
from app.integrations.whatsapp.transport import OutboundPayload, PayloadKind
from app.routing.affinity import RoutingStore
from app.routing.channels import ChannelRepository
from app.routing.echo import EchoSuppressionCache
from app.routing.selection import Candidate, exclude_self_send, select_channel
from app.sessions.registry import SessionRegistry
from config.settings import Settings, get_settings

if TYPE_CHECKING:
    from app.sessions.supervisor import ConnectionSupervisor

logger = structlog.get_logger()

MEDIA_EXTENSIONS: dict[str, PayloadKind] = {
    ".jpg": PayloadKind.IMAGE,
    ".jpeg": PayloadKind.IMAGE,
    ".png": PayloadKind.IMAGE,
    ".gif": PayloadKind.IMAGE,
    ".webp": PayloadKind.IMAGE,
    ".mp4": PayloadKind.VIDEO,
    ".mov": PayloadKind.VIDEO,
    ".3gp": PayloadKind.VIDEO,
    ".mp3": PayloadKind.AUDIO,
    ".ogg": PayloadKind.AUDIO,
    ".oga": PayloadKind.AUDIO,
    ".m4a": PayloadKind.AUDIO,
    ".aac": PayloadKind.AUDIO,
    ".wav": PayloadKind.AUDIO,
}


def media_kind(url: str) -> PayloadKind:
    """Payload kind from the URL's file extension; anything unknown is a document."""
    ext = os.path.splitext(urlparse(url).path)[1].lower()
    return MEDIA_EXTENSIONS.get(ext, PayloadKind.DOCUMENT)


def build_payloads(text: str, media_urls: list[str]) -> list[OutboundPayload]:
    """Text rides as the caption of the first attachment; later attachments go bare."""
    urls = [u for u in media_urls if u]
    if not urls:
        return [OutboundPayload(kind=PayloadKind.TEXT, text=text)] if text else []
    payloads = []
    for index, url in enumerate(urls):
        kind = media_kind(url)
        caption = text if index == 0 else ""
        if caption and kind is PayloadKind.AUDIO:
            payloads.append(OutboundPayload(kind=PayloadKind.TEXT, text=caption))
            caption = ""
        file_name = os.path.basename(urlparse(url).path) or None
        payloads.append(OutboundPayload(kind=kind, text=caption, media_url=url, file_name=file_name))
    return payloads


class OutboundDispatcher:
    """Routes outbound requests to one of the tenant's connected channels.

    Flow: OutboundRequest → render text → candidates → select → send → record
    """

    def __init__(
        self,
        registry: SessionRegistry,
        channels: ChannelRepository,
        routing: RoutingStore,
        echo: EchoSuppressionCache,
        settings: Settings | None = None,
    ) -> None:
        self._registry = registry
        self._channels = channels
        self._routing = routing
        self._echo = echo
        self._settings = settings or get_settings()

    async def _candidates(self, tenant_id: str, destination: str) -> list[Candidate]:
        records = {r.slot_id: r for r in await self._channels.for_tenant(tenant_id)}
        candidates = []
        for snap in self._registry.connected(tenant_id):
            record = records.get(snap.slot_id)
            candidates.append(
                Candidate(
                    slot_id=snap.slot_id,
                    address=snap.bound_address or "",
                    priority=record.priority if record else self._settings.default_channel_priority,
                    tags=record.tags if record else (),
                )
            )
        return exclude_self_send(candidates, destination)

    async def _wait_ready(self, supervisor: "ConnectionSupervisor") -> None:
        timeout = self._settings.socket_ready_timeout_seconds
        poll = self._settings.socket_ready_poll_seconds
        try:
            await supervisor.wait_until_ready(timeout, poll)
        except SocketNotReadyError:
            logger.warning("dispatcher.socket_not_ready_retry", session_id=supervisor.session_id)
            await asyncio.sleep(self._settings.socket_ready_retry_delay_seconds)
            await supervisor.wait_until_ready(timeout, poll)

    async def _send_via(
        self,
        supervisor: "ConnectionSupervisor",
        destination: str,
        pending: list[OutboundPayload],
        sent_ids: list[str],
    ) -> None:
        """Send ``pending`` in order. Each delivered payload leaves ``pending`` and its id joins ``sent_ids``."""
        await self._wait_ready(supervisor)
        jid = address_to_jid(destination)
        while pending:
            message_id = await supervisor.send(jid, pending[0])
            await self._echo.remember(supervisor.tenant_id, message_id)
            sent_ids.append(message_id)
            pending.pop(0)

    async def dispatch(self, request: OutboundRequest) -> DispatchResult:
        """Deliver ``request`` over the best available channel, cascading on failure."""
        tenant_id = request.tenant_id
        destination = normalize_address(request.destination)
        rendered = spintax.render(request.text)
        payloads = build_payloads(rendered.text, request.media_urls)

        if not payloads:
            logger.warning("dispatcher.empty_message", tenant_id=tenant_id, destination=destination)
            return self._finish(tenant_id, DispatchResult(outcome=DispatchOutcome.SEND_FAILED))

        candidates = await self._candidates(tenant_id, destination)
        if not candidates:
            logger.warning("dispatcher.no_connected_channel", tenant_id=tenant_id, destination=destination)
            return self._finish(tenant_id, DispatchResult(outcome=DispatchOutcome.NO_CONNECTED_CHANNEL))

        if rendered.delay_ms:
            await asyncio.sleep(rendered.delay_ms / 1000)

        route = await self._routing.get(destination, tenant_id)
        sticky = route.channel_address if route else None
        attempts = 0
        pending = list(payloads)
        sent_ids: list[str] = []

        while candidates:
            selected = select_channel(candidates, sticky, self._settings.force_priority_tag)
            if selected is None:
                break
            candidate, tier = selected
            attempts += 1
            supervisor = self._registry.get((tenant_id, candidate.slot_id))
            try:
                if supervisor is None:
                    raise SocketNotReadyError(f"{tenant_id}/slot{candidate.slot_id} is no longer registered")
                await self._send_via(supervisor, destination, pending, sent_ids)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                CASCADE_COUNT.labels(tenant_id=tenant_id).inc()
                logger.warning(
                    "dispatcher.cascade",
                    tenant_id=tenant_id,
                    slot=candidate.slot_id,
                    tier=tier.value,
                    delivered=len(sent_ids),
                    remaining=len(pending),
                    error=str(e),
                )
                candidates = [c for c in candidates if c.slot_id != candidate.slot_id]
                continue

            message_id = sent_ids[0]
            await self._routing.upsert(
                destination,
                tenant_id,
                contact_id=request.contact_id,
                channel_address=candidate.address,
            )
            logger.info(
                "dispatcher.sent",
                tenant_id=tenant_id,
                slot=candidate.slot_id,
                tier=tier.value,
                message_id=message_id,
            )
            return self._finish(
                tenant_id,
                DispatchResult(
                    outcome=DispatchOutcome.SENT,
                    message_id=message_id,
                    channel_address=candidate.address,
                    slot_id=candidate.slot_id,
                    attempts=attempts,
                ),
            )

        logger.error(
            "dispatcher.send_failed",
            tenant_id=tenant_id,
            destination=destination,
            attempts=attempts,
            delivered=len(sent_ids),
        )
        return self._finish(
            tenant_id,
            DispatchResult(
                outcome=DispatchOutcome.SEND_FAILED,
                message_id=sent_ids[0] if sent_ids else None,
                attempts=attempts,
            ),
        )

    @staticmethod
    def _finish(tenant_id: str, result: DispatchResult) -> DispatchResult:
        DISPATCH_COUNT.labels(outcome=result.outcome.value, tenant_id=tenant_id).inc()
        return result
