"""Session Router – WhatsApp transport boundary.

The WhatsApp Web protocol (handshake, Signal encryption, pairing) belongs to
an external client library. This module fixes the small surface the router
consumes from it:

    connect()                     open the socket with the session's auth state
    events()                      typed connection/message events (message-passing)
    send(jid, payload) -> id      deliver one message
    logout() / close()            sign out / drop the socket
    resolve_jid(lid)              map an opaque linked id to a user JID
    download_media(raw)           fetch the bytes of an inbound media message
    is_ready()                    socket open and authenticated
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable

from app.sessions.auth_state import SessionAuthState


class DisconnectCode(int, Enum):
    """Close codes reported by the WhatsApp Web client."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    FORBIDDEN = 403
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    UNAVAILABLE_SERVICE = 503


# ── connection events ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class PairingCodeIssued:
    code: str


@dataclass(frozen=True)
class ConnectionOpened:
    own_jid: str


@dataclass(frozen=True)
class ConnectionClosed:
    code: int | None
    reason: str = ""


@dataclass(frozen=True)
class MessageReceived:
    """One raw message as delivered by the library (``WAMessage`` JSON)."""

    raw: dict[str, Any] = field(default_factory=dict)


ConnectionEvent = PairingCodeIssued | ConnectionOpened | ConnectionClosed | MessageReceived


# ── outbound payload (tagged union) ────────────────────────────────────────

class PayloadKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"


@dataclass(frozen=True)
class OutboundPayload:
    kind: PayloadKind
    text: str = ""
    media_url: str | None = None
    file_name: str | None = None

    def to_wire(self) -> dict[str, Any]:
        """Shape understood by the library's ``sendMessage``."""
        if self.kind is PayloadKind.TEXT:
            return {"text": self.text}
        content: dict[str, Any] = {self.kind.value: {"url": self.media_url}}
        if self.text and self.kind is not PayloadKind.AUDIO:
            content["caption"] = self.text
        if self.kind is PayloadKind.DOCUMENT:
            content["fileName"] = self.file_name or (self.media_url or "file").rsplit("/", 1)[-1]
        return content


class Transport(abc.ABC):
    """One live connection of one session."""

    @abc.abstractmethod
    async def connect(self) -> None: ...

    @abc.abstractmethod
    def events(self) -> AsyncIterator[ConnectionEvent]:
        """Yield events until the connection closes (the last event is ConnectionClosed)."""

    @abc.abstractmethod
    async def send(self, jid: str, payload: OutboundPayload) -> str: ...

    @abc.abstractmethod
    async def logout(self) -> None: ...

    @abc.abstractmethod
    async def close(self) -> None: ...

    @abc.abstractmethod
    async def resolve_jid(self, lid: str) -> str | None: ...

    @abc.abstractmethod
    async def download_media(self, raw: dict[str, Any]) -> bytes: ...

    @abc.abstractmethod
    def is_ready(self) -> bool: ...


TransportFactory = Callable[[SessionAuthState], Transport]


def is_terminal(code: int | None, terminal_codes: frozenset[int]) -> bool:
    """Explicit logout / revoked credentials end the session; everything else is retried."""
    return code is not None and code in terminal_codes
