"""Session Router – Channel (slot) repository.

Durable per-tenant channel table: bound address, priority, tags.
New channels are appended to the tail of the tenant's priority order; a
per-tenant watermark guarantees a freed priority number is never handed out
again.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field

import structlog
from sqlalchemy import func

from app.core.db import SessionLocal, upsert
from app.core.errors import ChannelNotFoundError
from app.core.models import ChannelPriorityCounter, ChannelSlot

logger = structlog.get_logger()


@dataclass(frozen=True)
class ChannelRecord:
    tenant_id: str
    slot_id: int
    phone_number: str | None
    priority: int
    tags: tuple[str, ...] = field(default_factory=tuple)

    def has_tag(self, tag: str) -> bool:
        wanted = tag.strip().lower()
        return any(t.strip().lower() == wanted for t in self.tags)


def _tags_of(row: ChannelSlot) -> tuple[str, ...]:
    try:
        value = json.loads(row.tags or "[]")
    except (TypeError, ValueError):
        return ()
    return tuple(str(t) for t in value) if isinstance(value, list) else ()


def _record(row: ChannelSlot) -> ChannelRecord:
    return ChannelRecord(
        tenant_id=row.tenant_id,
        slot_id=int(row.slot_id),
        phone_number=row.phone_number,
        priority=int(row.priority),
        tags=_tags_of(row),
    )


class ChannelRepository:
    # ── sync workers ──────────────────────────────────────────────────────

    def _next_priority(self, db, tenant_id: str) -> int:
        """Bump and return the tenant's watermark (caller commits)."""
        stmt = upsert(ChannelPriorityCounter.__table__).values(tenant_id=tenant_id, last_priority=0)
        db.execute(stmt.on_conflict_do_nothing(index_elements=["tenant_id"]))
        counter = (
            db.query(ChannelPriorityCounter)
            .filter(ChannelPriorityCounter.tenant_id == tenant_id)
            .with_for_update()
            .one()
        )
        current_max = (
            db.query(func.max(ChannelSlot.priority))
            .filter(ChannelSlot.tenant_id == tenant_id)
            .scalar()
        )
        priority = max(counter.last_priority or 0, current_max or 0) + 1
        counter.last_priority = priority
        return priority

    def _raise_watermark(self, db, tenant_id: str, priority: int) -> None:
        counter = db.get(ChannelPriorityCounter, tenant_id)
        if counter is None:
            db.add(ChannelPriorityCounter(tenant_id=tenant_id, last_priority=priority))
        elif priority > (counter.last_priority or 0):
            counter.last_priority = priority

    def _sync(self, tenant_id: str, slot_id: int, phone_number: str | None) -> ChannelRecord:
        db = SessionLocal()
        try:
            row = db.get(ChannelSlot, (tenant_id, slot_id))
            if row is None:
                row = ChannelSlot(
                    tenant_id=tenant_id,
                    slot_id=slot_id,
                    phone_number=phone_number,
                    priority=self._next_priority(db, tenant_id),
                    tags="[]",
                )
                db.add(row)
                logger.info("channels.created", tenant_id=tenant_id, slot=slot_id, priority=row.priority)
            elif phone_number:
                row.phone_number = phone_number
            db.commit()
            db.refresh(row)
            return _record(row)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _get(self, tenant_id: str, slot_id: int) -> ChannelRecord | None:
        db = SessionLocal()
        try:
            row = db.get(ChannelSlot, (tenant_id, slot_id))
            return _record(row) if row else None
        finally:
            db.close()

    def _list(self, tenant_id: str) -> list[ChannelRecord]:
        db = SessionLocal()
        try:
            rows = (
                db.query(ChannelSlot)
                .filter(ChannelSlot.tenant_id == tenant_id)
                .order_by(ChannelSlot.priority.asc(), ChannelSlot.slot_id.asc())
                .all()
            )
            return [_record(row) for row in rows]
        finally:
            db.close()

    def _configure(
        self,
        tenant_id: str,
        slot_id: int,
        priority: int | None,
        add_tag: str | None,
        remove_tag: str | None,
    ) -> ChannelRecord:
        db = SessionLocal()
        try:
            row = db.get(ChannelSlot, (tenant_id, slot_id))
            if row is None:
                raise ChannelNotFoundError(tenant_id, slot_id)
            if priority is not None:
                row.priority = int(priority)
                self._raise_watermark(db, tenant_id, int(priority))
            tags = list(_tags_of(row))
            if add_tag and add_tag.strip() and add_tag.strip() not in tags:
                tags.append(add_tag.strip())
            if remove_tag:
                tags = [t for t in tags if t.strip().lower() != remove_tag.strip().lower()]
            row.tags = json.dumps(tags)
            db.commit()
            db.refresh(row)
            return _record(row)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _delete(self, tenant_id: str, slot_id: int) -> bool:
        db = SessionLocal()
        try:
            deleted = (
                db.query(ChannelSlot)
                .filter(ChannelSlot.tenant_id == tenant_id, ChannelSlot.slot_id == slot_id)
                .delete()
            )
            db.commit()
            return bool(deleted)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ── async API ─────────────────────────────────────────────────────────

    async def sync_on_connect(self, tenant_id: str, slot_id: int, phone_number: str | None) -> ChannelRecord:
        """Create the channel at the tail of the priority order, or refresh its address."""
        return await asyncio.to_thread(self._sync, tenant_id, slot_id, phone_number)

    async def get(self, tenant_id: str, slot_id: int) -> ChannelRecord | None:
        return await asyncio.to_thread(self._get, tenant_id, slot_id)

    async def for_tenant(self, tenant_id: str) -> list[ChannelRecord]:
        return await asyncio.to_thread(self._list, tenant_id)

    async def configure(
        self,
        tenant_id: str,
        slot_id: int,
        *,
        priority: int | None = None,
        add_tag: str | None = None,
        remove_tag: str | None = None,
    ) -> ChannelRecord:
        return await asyncio.to_thread(self._configure, tenant_id, slot_id, priority, add_tag, remove_tag)

    async def delete(self, tenant_id: str, slot_id: int) -> bool:
        return await asyncio.to_thread(self._delete, tenant_id, slot_id)
