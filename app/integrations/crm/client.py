"""Session Router – CRM REST client.

Thin httpx wrapper over the LeadConnector-style endpoints the router
consumes. Every call is tenant-scoped: the bearer token and ``Location-Id``
header come from the TokenProvider. A 401 triggers exactly one token refresh
followed by one retry; a second 401 raises :class:`CrmAuthError`.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from app.core.errors import CrmAuthError, CrmError
from app.gateway.schemas import MessageDirection
from app.integrations.crm.tokens import CrmCredentials, TokenProvider
from config.settings import Settings, get_settings

logger = structlog.get_logger()


class CrmClient:
    def __init__(
        self,
        tokens: TokenProvider,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._tokens = tokens
        self._settings = settings or get_settings()
        self._transport = transport

    def _headers(self, creds: CrmCredentials) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "Version": self._settings.crm_api_version,
            "Authorization": f"Bearer {creds.access_token}",
            "Location-Id": creds.location_id,
        }

    async def _send(self, method: str, path: str, creds: CrmCredentials, **kwargs: Any) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self._settings.crm_base_url,
            timeout=self._settings.crm_timeout_seconds,
            transport=self._transport,
        ) as client:
            try:
                return await client.request(method, path, headers=self._headers(creds), **kwargs)
            except httpx.HTTPError as e:
                logger.warning("crm.transport_error", method=method, path=path, error=str(e) or type(e).__name__)
                raise CrmError(f"CRM {method} {path} unreachable: {e!r}") from e

    async def request(self, tenant_id: str, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        creds = await self._tokens.credentials(tenant_id)
        resp = await self._send(method, path, creds, **kwargs)
        if resp.status_code == 401:
            logger.warning("crm.unauthorized_refreshing", tenant_id=tenant_id, path=path)
            creds = await self._tokens.refresh_token(tenant_id)
            resp = await self._send(method, path, creds, **kwargs)
            if resp.status_code == 401:
                raise CrmAuthError("CRM rejected refreshed token", status_code=401, body=_body(resp))
        if resp.status_code >= 400:
            raise CrmError(
                f"CRM {method} {path} failed with {resp.status_code}",
                status_code=resp.status_code,
                body=_body(resp),
            )
        body = _body(resp)
        return body if isinstance(body, dict) else {}

    # ── contacts ──────────────────────────────────────────────────────────

    async def get_contact(self, tenant_id: str, contact_id: str) -> dict[str, Any] | None:
        data = await self.request(tenant_id, "GET", f"/contacts/{contact_id}")
        contact = data.get("contact", data)
        return contact if contact.get("id") else None

    async def search_contacts(self, tenant_id: str, query: str, limit: int = 1) -> list[dict[str, Any]]:
        location_id = (await self._tokens.credentials(tenant_id)).location_id
        data = await self.request(
            tenant_id,
            "GET",
            "/contacts/",
            params={"locationId": location_id, "query": query, "limit": limit},
        )
        return list(data.get("contacts") or [])

    async def create_contact(self, tenant_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        location_id = (await self._tokens.credentials(tenant_id)).location_id
        data = await self.request(tenant_id, "POST", "/contacts/", json={"locationId": location_id, **fields})
        return data.get("contact", data)

    async def update_contact(self, tenant_id: str, contact_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        data = await self.request(tenant_id, "PUT", f"/contacts/{contact_id}", json=fields)
        return data.get("contact", data)

    # ── conversations ─────────────────────────────────────────────────────

    async def post_message(
        self,
        tenant_id: str,
        contact_id: str,
        text: str,
        direction: MessageDirection,
        attachments: list[str] | None = None,
    ) -> dict[str, Any]:
        location_id = (await self._tokens.credentials(tenant_id)).location_id
        payload: dict[str, Any] = {
            "type": "SMS",
            "contactId": contact_id,
            "locationId": location_id,
            # The conversations API rejects empty bodies.
            "message": text or " ",
            "direction": direction.value,
        }
        if attachments:
            payload["attachments"] = attachments
        path = "/conversations/messages/inbound" if direction is MessageDirection.INBOUND else "/conversations/messages"
        return await self.request(tenant_id, "POST", path, json=payload)


def _body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text
