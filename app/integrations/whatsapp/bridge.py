"""Session Router – WhatsApp Web bridge transport.

The WhatsApp Web client library runs in a sidecar (the Baileys bridge). The
bridge keeps NO state of its own: credentials and signal keys live in our
Auth State Store and are served to it over the session websocket.

Wire contract:
  WS  {bridge_ws_url}/sessions/{session_id}
      → {"type": "auth.load", "creds": b64|null, "browser": [...]}
      ← {"type": "qr", "qr": "..."}
      ← {"type": "open", "me": "59891234567:3@s.whatsapp.net"}
      ← {"type": "close", "code": 428, "reason": "..."}
      ← {"type": "message", "message": {...WAMessage...}}
      ← {"type": "creds.update", "request_id": n, "creds": b64}          → ack
      ← {"type": "keys.get", "request_id": n, "category": c, "ids": [...]} → keys.result
      ← {"type": "keys.set", "request_id": n, "data": {c: {id: b64|null}}} → ack
  HTTP POST {bridge_http_url}/sessions/{id}/send     {"to", "content"} → {"id"}
       POST {bridge_http_url}/sessions/{id}/logout
       POST {bridge_http_url}/sessions/{id}/resolve  {"jid"} → {"jid"}
       GET  {bridge_http_url}/sessions/{id}/media/{message_id} → bytes
"""

from __future__ import annotations

import base64
import json
from typing import Any, AsyncIterator

import httpx
import structlog
import websockets
from websockets.exceptions import ConnectionClosed as WebSocketClosed

from app.core.errors import TransportError
from app.integrations.whatsapp.transport import (
    ConnectionClosed,
    ConnectionEvent,
    ConnectionOpened,
    MessageReceived,
    OutboundPayload,
    PairingCodeIssued,
    Transport,
)
from app.sessions.auth_state import SessionAuthState
from config.settings import Settings, get_settings

logger = structlog.get_logger()


def _b64(blob: bytes | None) -> str | None:
    return base64.b64encode(blob).decode() if blob is not None else None


def _unb64(value: str | None) -> bytes | None:
    return base64.b64decode(value) if value else None


class BridgeTransport(Transport):
    """Transport backed by the Baileys sidecar bridge."""

    def __init__(self, auth: SessionAuthState, settings: Settings | None = None) -> None:
        self._auth = auth
        self._settings = settings or get_settings()
        self._session_id = auth.session_id
        self._http_base = f"{self._settings.bridge_http_url.rstrip('/')}/sessions/{self._session_id}"
        self._ws_url = f"{self._settings.bridge_ws_url.rstrip('/')}/sessions/{self._session_id}"
        self._ws: Any = None
        self._authenticated = False
        self._socket_open = False

    # ──────────────────────────────────────────────────────────────
    # Connection lifecycle
    # ──────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        creds = await self._auth.load_credentials()
        try:
            self._ws = await websockets.connect(self._ws_url, max_size=None)
        except (OSError, websockets.InvalidURI, websockets.InvalidHandshake) as e:
            raise TransportError(f"bridge unreachable: {e}") from e
        self._socket_open = True
        await self._ws.send(json.dumps({
            "type": "auth.load",
            "creds": _b64(creds),
            "browser": [self._settings.bridge_browser_name, "Chrome", "10.0"],
        }))
        logger.info("bridge.connected", session_id=self._session_id, fresh=creds is None)

    async def events(self) -> AsyncIterator[ConnectionEvent]:
        if self._ws is None:
            raise TransportError("connect() must be called before events()")
        try:
            async for raw in self._ws:
                frame = json.loads(raw)
                event = await self._handle_frame(frame)
                if event is None:
                    continue
                yield event
                if isinstance(event, ConnectionClosed):
                    return
        except WebSocketClosed as e:
            logger.warning("bridge.socket_closed", session_id=self._session_id, error=str(e))
        finally:
            self._socket_open = False
            self._authenticated = False
        yield ConnectionClosed(code=None, reason="bridge socket closed")

    async def _handle_frame(self, frame: dict[str, Any]) -> ConnectionEvent | None:
        kind = frame.get("type")
        if kind == "qr":
            return PairingCodeIssued(code=frame.get("qr", ""))
        if kind == "open":
            self._authenticated = True
            return ConnectionOpened(own_jid=frame.get("me", ""))
        if kind == "close":
            self._authenticated = False
            return ConnectionClosed(code=frame.get("code"), reason=frame.get("reason", ""))
        if kind == "message":
            return MessageReceived(raw=frame.get("message") or {})
        if kind == "creds.update":
            blob = _unb64(frame.get("creds"))
            if blob is not None:
                await self._auth.save_credentials(blob)
            await self._reply({"type": "ack", "request_id": frame.get("request_id")})
            return None
        if kind == "keys.get":
            values = await self._auth.get(frame.get("category", ""), list(frame.get("ids") or []))
            await self._reply({
                "type": "keys.result",
                "request_id": frame.get("request_id"),
                "values": {key_id: _b64(blob) for key_id, blob in values.items()},
            })
            return None
        if kind == "keys.set":
            data = {
                category: {key_id: _unb64(value) for key_id, value in entries.items()}
                for category, entries in (frame.get("data") or {}).items()
            }
            await self._auth.set(data)
            await self._reply({"type": "ack", "request_id": frame.get("request_id")})
            return None
        logger.debug("bridge.unknown_frame", session_id=self._session_id, frame_type=kind)
        return None

    async def _reply(self, frame: dict[str, Any]) -> None:
        await self._ws.send(json.dumps(frame))

    async def close(self) -> None:
        self._authenticated = False
        self._socket_open = False
        if self._ws is not None:
            try:
                await self._ws.close()
            except WebSocketClosed:
                pass

    def is_ready(self) -> bool:
        return self._socket_open and self._authenticated

    # ──────────────────────────────────────────────────────────────
    # HTTP operations
    # ──────────────────────────────────────────────────────────────

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self._settings.bridge_timeout_seconds) as client:
            try:
                response = await client.post(f"{self._http_base}{path}", json=payload)
                response.raise_for_status()
                return response.json() if response.content else {}
            except httpx.HTTPError as e:
                raise TransportError(f"bridge {path} failed: {e}") from e

    async def send(self, jid: str, payload: OutboundPayload) -> str:
        data = await self._post("/send", {"to": jid, "content": payload.to_wire()})
        message_id = data.get("id")
        if not message_id:
            raise TransportError("bridge returned no message id")
        logger.info("bridge.sent", session_id=self._session_id, to=jid, id=message_id)
        return message_id

    async def logout(self) -> None:
        await self._post("/logout", {})
        logger.info("bridge.logged_out", session_id=self._session_id)

    async def resolve_jid(self, lid: str) -> str | None:
        data = await self._post("/resolve", {"jid": lid})
        return data.get("jid") or None

    async def download_media(self, raw: dict[str, Any]) -> bytes:
        message_id = (raw.get("key") or {}).get("id", "")
        async with httpx.AsyncClient(timeout=self._settings.bridge_timeout_seconds) as client:
            try:
                response = await client.get(f"{self._http_base}/media/{message_id}")
                response.raise_for_status()
                return response.content
            except httpx.HTTPError as e:
                raise TransportError(f"bridge media download failed: {e}") from e


def bridge_transport_factory(settings: Settings | None = None):
    """TransportFactory producing :class:`BridgeTransport` instances."""

    def factory(auth: SessionAuthState) -> Transport:
        return BridgeTransport(auth, settings=settings)

    return factory
