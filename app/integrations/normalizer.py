"""Session Router – Message Normalizer.

Decodes raw WhatsApp Web messages (``WAMessage`` JSON as delivered by the
bridge) into a small tagged union, once, at the transport boundary. Nothing
past this module inspects the raw message shape.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from app.integrations.whatsapp.transport import PayloadKind

logger = structlog.get_logger()

# Containers that only wrap another message.
WRAPPER_KEYS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
    "editedMessage",
)

MEDIA_KEYS: dict[str, PayloadKind] = {
    "imageMessage": PayloadKind.IMAGE,
    "videoMessage": PayloadKind.VIDEO,
    "audioMessage": PayloadKind.AUDIO,
    "documentMessage": PayloadKind.DOCUMENT,
}


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class MediaContent:
    kind: PayloadKind
    caption: str = ""
    mimetype: str | None = None
    file_name: str | None = None

    @property
    def text(self) -> str:
        return self.caption


InboundContent = TextContent | MediaContent


@dataclass(frozen=True)
class InboundEnvelope:
    """Routing-relevant fields of one inbound message plus its decoded content."""

    message_id: str
    remote_jid: str
    remote_jid_alt: str | None
    from_me: bool
    push_name: str | None
    content: InboundContent | None
    raw: dict[str, Any]


def _unwrap(message: dict[str, Any]) -> dict[str, Any]:
    for _ in range(4):
        for key in WRAPPER_KEYS:
            inner = message.get(key)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                message = inner["message"]
                break
        else:
            return message
    return message


def decode_content(message: dict[str, Any] | None) -> InboundContent | None:
    """Return the content of a ``message`` body, or None for unsupported kinds."""
    if not message:
        return None
    message = _unwrap(message)

    if message.get("conversation"):
        return TextContent(text=str(message["conversation"]))
    extended = message.get("extendedTextMessage")
    if isinstance(extended, dict) and extended.get("text"):
        return TextContent(text=str(extended["text"]))

    for key, kind in MEDIA_KEYS.items():
        media = message.get(key)
        if isinstance(media, dict):
            return MediaContent(
                kind=kind,
                caption=str(media.get("caption") or ""),
                mimetype=media.get("mimetype"),
                file_name=media.get("fileName"),
            )
    return None


class MessageNormalizer:
    """Normalizes bridge messages into :class:`InboundEnvelope` values."""

    def normalize(self, raw: dict[str, Any]) -> InboundEnvelope | None:
        """None when the raw message carries no body at all (receipts, stubs)."""
        body = raw.get("message")
        if not body:
            return None
        key = raw.get("key") or {}
        envelope = InboundEnvelope(
            message_id=str(key.get("id") or ""),
            remote_jid=str(key.get("remoteJid") or ""),
            remote_jid_alt=key.get("remoteJidAlt") or None,
            from_me=bool(key.get("fromMe")),
            push_name=raw.get("pushName") or None,
            content=decode_content(body),
            raw=raw,
        )
        logger.debug(
            "normalizer.whatsapp",
            message_id=envelope.message_id,
            content_type=type(envelope.content).__name__ if envelope.content else None,
        )
        return envelope
