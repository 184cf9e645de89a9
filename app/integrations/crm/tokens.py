"""Session Router – CRM token provider.

Per-tenant bearer tokens come from an external installation flow. The router
only reads them and, when the CRM rejects one, runs the OAuth refresh-token
grant once. Token JSON is stored encrypted in ``crm_tokens``.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog

from app.core.crypto import decrypt_value, encrypt_value
from app.core.db import SessionLocal, upsert
from app.core.errors import CrmAuthError, TokenUnavailableError
from app.core.models import CrmToken
from config.settings import Settings, get_settings

logger = structlog.get_logger()


@dataclass(frozen=True)
class CrmCredentials:
    access_token: str
    location_id: str


class TokenProvider(Protocol):
    async def credentials(self, tenant_id: str) -> CrmCredentials: ...

    async def refresh_token(self, tenant_id: str) -> CrmCredentials: ...


class StoredTokenProvider:
    """TokenProvider backed by the ``crm_tokens`` table."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._refresh_locks: dict[str, asyncio.Lock] = {}

    # ── persistence ───────────────────────────────────────────────────────

    def _load(self, tenant_id: str) -> dict[str, Any] | None:
        db = SessionLocal()
        try:
            row = db.get(CrmToken, tenant_id)
            if row is None:
                return None
            try:
                return json.loads(decrypt_value(row.raw_token))
            except (TypeError, ValueError) as e:
                logger.error("crm.tokens.unreadable", tenant_id=tenant_id, error=str(e))
                return None
        finally:
            db.close()

    def _store(self, tenant_id: str, token: dict[str, Any]) -> None:
        stmt = upsert(CrmToken.__table__).values(
            tenant_id=tenant_id,
            raw_token=encrypt_value(json.dumps(token)),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id"],
            set_={"raw_token": stmt.excluded.raw_token},
        )
        db = SessionLocal()
        try:
            db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def save(self, tenant_id: str, token: dict[str, Any]) -> None:
        await asyncio.to_thread(self._store, tenant_id, token)

    # ── TokenProvider ─────────────────────────────────────────────────────

    def _credentials_of(self, tenant_id: str, token: dict[str, Any]) -> CrmCredentials:
        access = token.get("access_token")
        if not access:
            raise TokenUnavailableError(f"No CRM access token stored for {tenant_id}")
        return CrmCredentials(access_token=access, location_id=token.get("locationId") or tenant_id)

    async def credentials(self, tenant_id: str) -> CrmCredentials:
        token = await asyncio.to_thread(self._load, tenant_id)
        if token is None:
            raise TokenUnavailableError(f"No CRM token stored for {tenant_id}")
        return self._credentials_of(tenant_id, token)

    async def refresh_token(self, tenant_id: str) -> CrmCredentials:
        lock = self._refresh_locks.setdefault(tenant_id, asyncio.Lock())
        async with lock:
            token = await asyncio.to_thread(self._load, tenant_id)
            if not token or not token.get("refresh_token"):
                raise TokenUnavailableError(f"No CRM refresh token stored for {tenant_id}")

            async with httpx.AsyncClient(timeout=self._settings.crm_timeout_seconds) as client:
                resp = await client.post(
                    f"{self._settings.crm_base_url}/oauth/token",
                    data={
                        "client_id": self._settings.crm_client_id,
                        "client_secret": self._settings.crm_client_secret,
                        "grant_type": "refresh_token",
                        "refresh_token": token["refresh_token"],
                    },
                    headers={"Accept": "application/json"},
                )
            if resp.status_code >= 400:
                logger.error("crm.tokens.refresh_failed", tenant_id=tenant_id, status=resp.status_code)
                raise CrmAuthError("CRM token refresh rejected", status_code=resp.status_code, body=resp.text)

            refreshed = {**token, **resp.json()}
            await self.save(tenant_id, refreshed)
            logger.info("crm.tokens.refreshed", tenant_id=tenant_id)
            return self._credentials_of(tenant_id, refreshed)
