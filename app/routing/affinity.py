"""Session Router – Routing / Affinity Store.

Durable ``(address, tenant) → {contact, last channel, counter}`` table.

Semantics of :meth:`RoutingStore.upsert`:
  - contact id: first writer wins (an existing reference is never replaced)
  - channel:    refreshed whenever the caller supplies one
  - counter:    incremented on every touch
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy import func

from app.core.addresses import normalize_address
from app.core.db import SessionLocal, upsert
from app.core.models import RoutingEntry

logger = structlog.get_logger()


@dataclass(frozen=True)
class Route:
    address: str
    tenant_id: str
    contact_id: str | None
    channel_address: str | None
    message_count: int


class RoutingStore:
    def _upsert(
        self,
        address: str,
        tenant_id: str,
        contact_id: str | None,
        channel_address: str | None,
    ) -> None:
        table = RoutingEntry.__table__
        stmt = upsert(table).values(
            phone=address,
            tenant_id=tenant_id,
            contact_id=contact_id,
            channel_number=channel_address,
            message_count=1,
            updated_at=datetime.now(timezone.utc),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["phone", "tenant_id"],
            set_={
                "contact_id": func.coalesce(table.c.contact_id, stmt.excluded.contact_id),
                "channel_number": func.coalesce(stmt.excluded.channel_number, table.c.channel_number),
                "message_count": table.c.message_count + 1,
                "updated_at": stmt.excluded.updated_at,
            },
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

    def _get(self, address: str, tenant_id: str) -> Route | None:
        db = SessionLocal()
        try:
            row = db.get(RoutingEntry, (address, tenant_id))
            if row is None:
                return None
            return Route(
                address=row.phone,
                tenant_id=row.tenant_id,
                contact_id=row.contact_id,
                channel_address=row.channel_number,
                message_count=int(row.message_count or 0),
            )
        finally:
            db.close()

    def _purge_tenant(self, tenant_id: str) -> int:
        db = SessionLocal()
        try:
            deleted = db.query(RoutingEntry).filter(RoutingEntry.tenant_id == tenant_id).delete()
            db.commit()
            return deleted
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def upsert(
        self,
        address: str,
        tenant_id: str,
        contact_id: str | None = None,
        channel_address: str | None = None,
    ) -> None:
        address = normalize_address(address)
        channel_address = normalize_address(channel_address) or None
        if not address:
            return
        try:
            await asyncio.to_thread(self._upsert, address, tenant_id, contact_id or None, channel_address)
        except Exception as e:
            logger.error("routing.upsert_failed", tenant_id=tenant_id, address=address, error=str(e))

    async def get(self, address: str, tenant_id: str) -> Route | None:
        address = normalize_address(address)
        if not address:
            return None
        try:
            return await asyncio.to_thread(self._get, address, tenant_id)
        except Exception as e:
            logger.error("routing.read_failed", tenant_id=tenant_id, address=address, error=str(e))
            return None

    async def purge_tenant(self, tenant_id: str) -> int:
        """Tenant teardown: the only path that deletes routing rows."""
        removed = await asyncio.to_thread(self._purge_tenant, tenant_id)
        logger.info("routing.tenant_purged", tenant_id=tenant_id, rows=removed)
        return removed
