"""Session Router – Inbound Event Processor.

Turns one ``MessageReceived`` event of one channel into one CRM conversation
message:

    normalize → echo / source filters → sender address → media → direction
    → contact → routing entry → CRM post

Every event runs in its own task; any failure is logged and the event dropped.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from app.core.addresses import (
    is_lid,
    is_non_conversational,
    is_user_jid,
    jid_to_address,
)
from app.core.instrumentation import INBOUND_COUNT
from app.gateway.schemas import MessageDirection
from app.inbound.media import MediaStore
from app.integrations.crm.client import CrmClient
from app.integrations.crm.contacts import ContactResolver
from app.integrations.normalizer import InboundEnvelope, MediaContent, MessageNormalizer
from app.routing.affinity import RoutingStore
from app.routing.echo import EchoSuppressionCache
from config.settings import Settings, get_settings

if TYPE_CHECKING:
    from app.sessions.supervisor import ConnectionSupervisor

logger = structlog.get_logger()


class InboundProcessor:
    def __init__(
        self,
        echo: EchoSuppressionCache,
        routing: RoutingStore,
        contacts: ContactResolver,
        crm: CrmClient,
        media: MediaStore,
        normalizer: MessageNormalizer | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._echo = echo
        self._routing = routing
        self._contacts = contacts
        self._crm = crm
        self._media = media
        self._normalizer = normalizer or MessageNormalizer()
        self._settings = settings or get_settings()
        # (tenant, lid) -> address, learned from hints and lookups
        self._lid_cache: dict[tuple[str, str], str] = {}

    async def handle(self, supervisor: "ConnectionSupervisor", raw: dict[str, Any]) -> None:
        """Entry point wired as the supervisors' message handler."""
        tenant_id = supervisor.tenant_id
        try:
            outcome = await self._process(supervisor, raw)
        except Exception as e:
            outcome = "failed"
            logger.error(
                "inbound.processing_failed",
                tenant_id=tenant_id,
                session_id=supervisor.session_id,
                error=str(e),
            )
        INBOUND_COUNT.labels(outcome=outcome).inc()

    async def _process(self, supervisor: "ConnectionSupervisor", raw: dict[str, Any]) -> str:
        tenant_id = supervisor.tenant_id
        envelope = self._normalizer.normalize(raw)
        if envelope is None:
            return "dropped_empty"

        if await self._echo.seen(tenant_id, envelope.message_id):
            logger.debug("inbound.echo_suppressed", tenant_id=tenant_id, message_id=envelope.message_id)
            return "dropped_echo"

        jid = envelope.remote_jid
        if is_non_conversational(jid) or not (is_user_jid(jid) or is_lid(jid)):
            return "dropped_source"

        address = await self._resolve_address(supervisor, envelope)
        if not address:
            logger.warning("inbound.unresolved_sender", tenant_id=tenant_id, jid=jid)
            return "dropped_unresolved"

        text = envelope.content.text if envelope.content else ""
        attachments: list[str] = []
        if isinstance(envelope.content, MediaContent):
            url = await self._store_media(supervisor, envelope)
            if url:
                attachments.append(url)

        if not text and not attachments:
            return "dropped_unsupported"

        channel_address = supervisor.snapshot().bound_address
        direction = MessageDirection.OUTBOUND if envelope.from_me else MessageDirection.INBOUND
        body = self._compose(text, envelope.from_me, channel_address)

        route = await self._routing.get(address, tenant_id)
        contact = await self._contacts.resolve(
            tenant_id,
            address,
            envelope.push_name,
            known_contact_id=route.contact_id if route else None,
            from_me=envelope.from_me,
        )
        if contact is None:
            logger.warning("inbound.contact_unresolved", tenant_id=tenant_id, address=address)
            return "dropped_no_contact"

        await self._routing.upsert(address, tenant_id, contact_id=contact.id, channel_address=channel_address)
        await self._crm.post_message(tenant_id, contact.id, body, direction, attachments)
        logger.info(
            "inbound.forwarded",
            tenant_id=tenant_id,
            contact_id=contact.id,
            direction=direction.value,
            attachments=len(attachments),
        )
        return direction.value

    async def _resolve_address(self, supervisor: "ConnectionSupervisor", envelope: InboundEnvelope) -> str:
        jid = envelope.remote_jid
        if is_user_jid(jid):
            return jid_to_address(jid)

        cache_key = (supervisor.tenant_id, jid)
        if is_user_jid(envelope.remote_jid_alt):
            address = jid_to_address(envelope.remote_jid_alt)
            self._lid_cache[cache_key] = address
            return address

        try:
            resolved = await supervisor.resolve_jid(jid)
        except Exception as e:
            logger.warning("inbound.lid_lookup_failed", tenant_id=supervisor.tenant_id, jid=jid, error=str(e))
            resolved = None
        if is_user_jid(resolved):
            address = jid_to_address(resolved)
            self._lid_cache[cache_key] = address
            return address

        return self._lid_cache.get(cache_key, "")

    async def _store_media(self, supervisor: "ConnectionSupervisor", envelope: InboundEnvelope) -> str | None:
        media = envelope.content
        try:
            data = await supervisor.download_media(envelope.raw)
            return await self._media.save(supervisor.tenant_id, media, data)
        except Exception as e:
            logger.error(
                "inbound.media_failed",
                tenant_id=supervisor.tenant_id,
                message_id=envelope.message_id,
                error=str(e),
            )
            return None

    def _compose(self, text: str, from_me: bool, channel_address: str | None) -> str:
        lines = []
        if from_me:
            lines.append(self._settings.from_me_marker)
        if self._settings.show_source_label and channel_address:
            lines.append(f"Source: {channel_address}")
        if not lines:
            return text
        footer = "\n".join(lines)
        return f"{text}\n\n{footer}" if text else footer
