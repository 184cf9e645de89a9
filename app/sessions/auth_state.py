"""Session Router – WhatsApp Auth State Store.

Persists the opaque key/credential blobs of every WhatsApp session, one row
per ``(session_id, key_id)``. The blobs belong to the transport library's own
serialization and are never inspected here; they are only encrypted at rest.

Failure policy:
  - read failure / undecryptable row  → treated as absent (fresh bootstrap)
  - write / delete failure            → logged and swallowed
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select

from app.core.crypto import decrypt_bytes, encrypt_bytes
from app.core.db import SessionLocal, upsert
from app.core.models import AuthStateRecord

logger = structlog.get_logger()

CREDS_KEY = "creds"


def session_id_for(tenant_id: str, slot_id: int) -> str:
    return f"{tenant_id}_slot{slot_id}"


def parse_session_id(session_id: str) -> tuple[str, int] | None:
    """Inverse of :func:`session_id_for`. Returns None for foreign ids."""
    tenant_id, sep, slot = session_id.rpartition("_slot")
    if not sep or not tenant_id or not slot.isdigit():
        return None
    return tenant_id, int(slot)


class AuthStateStore:
    """Row-level key/value store for transport auth state.

    Writes and deletes run in worker threads that outlive a cancelled caller,
    so they are tracked per session; ``purge`` waits for them before deleting.
    """

    def __init__(self) -> None:
        self._inflight: dict[str, set[asyncio.Task]] = {}

    # ── sync workers (run via asyncio.to_thread) ──────────────────────────

    def _read(self, session_id: str, key: str) -> bytes | None:
        db = SessionLocal()
        try:
            row = db.execute(
                select(AuthStateRecord.data).where(
                    AuthStateRecord.session_id == session_id,
                    AuthStateRecord.key_id == key,
                )
            ).scalar_one_or_none()
        finally:
            db.close()
        if row is None:
            return None
        return decrypt_bytes(row)

    def _write(self, session_id: str, key: str, blob: bytes) -> None:
        stmt = upsert(AuthStateRecord.__table__).values(
            session_id=session_id,
            key_id=key,
            data=encrypt_bytes(blob),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["session_id", "key_id"],
            set_={"data": stmt.excluded.data, "updated_at": datetime.now(timezone.utc)},
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

    def _delete(self, session_id: str, key: str | None) -> int:
        stmt = delete(AuthStateRecord).where(AuthStateRecord.session_id == session_id)
        if key is not None:
            stmt = stmt.where(AuthStateRecord.key_id == key)
        db = SessionLocal()
        try:
            result = db.execute(stmt)
            db.commit()
            return result.rowcount or 0
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _session_ids(self) -> list[str]:
        db = SessionLocal()
        try:
            rows = db.execute(
                select(AuthStateRecord.session_id)
                .where(AuthStateRecord.key_id == CREDS_KEY)
                .distinct()
            ).scalars().all()
            return sorted(rows)
        finally:
            db.close()

    def _count(self, session_id: str) -> int:
        db = SessionLocal()
        try:
            return db.query(AuthStateRecord).filter(AuthStateRecord.session_id == session_id).count()
        finally:
            db.close()

    # ── async contract ────────────────────────────────────────────────────

    async def read(self, session_id: str, key: str) -> bytes | None:
        try:
            return await asyncio.to_thread(self._read, session_id, key)
        except Exception as e:
            logger.error("auth_state.read_failed", session_id=session_id, key=key, error=str(e))
            return None

    async def _mutate(self, event: str, session_id: str, key: str, fn, *args) -> None:
        async def run() -> None:
            try:
                await asyncio.to_thread(fn, session_id, key, *args)
            except Exception as e:
                logger.error(event, session_id=session_id, key=key, error=str(e))

        task = asyncio.create_task(run())
        pending = self._inflight.setdefault(session_id, set())
        pending.add(task)

        def _done(t: asyncio.Task) -> None:
            pending.discard(t)
            if not pending and self._inflight.get(session_id) is pending:
                del self._inflight[session_id]

        task.add_done_callback(_done)
        # A cancelled caller leaves the write running; purge() still waits for it.
        await asyncio.shield(task)

    async def write(self, session_id: str, key: str, blob: bytes) -> None:
        await self._mutate("auth_state.write_failed", session_id, key, self._write, blob)

    async def delete(self, session_id: str, key: str) -> None:
        await self._mutate("auth_state.delete_failed", session_id, key, self._delete)

    async def drain(self, session_id: str) -> None:
        """Wait until no write or delete of ``session_id`` is still running."""
        while self._inflight.get(session_id):
            await asyncio.gather(*list(self._inflight[session_id]), return_exceptions=True)

    async def purge(self, session_id: str) -> int:
        """Remove every key of a session. Returns the number of rows deleted."""
        await self.drain(session_id)
        try:
            removed = await asyncio.to_thread(self._delete, session_id, None)
            logger.info("auth_state.purged", session_id=session_id, rows=removed)
            return removed
        except Exception as e:
            logger.error("auth_state.purge_failed", session_id=session_id, error=str(e))
            return 0

    async def list_session_ids(self) -> list[str]:
        """Sessions that hold credentials (i.e. were paired at least once)."""
        try:
            return await asyncio.to_thread(self._session_ids)
        except Exception as e:
            logger.error("auth_state.list_failed", error=str(e))
            return []

    async def count(self, session_id: str) -> int:
        """Rows currently stored for ``session_id``."""
        return await asyncio.to_thread(self._count, session_id)

    def bind(self, session_id: str) -> "SessionAuthState":
        return SessionAuthState(self, session_id)


class SessionAuthState:
    """The auth state of one session, as handed to the transport library.

    Mirrors the library's key-store shape: ``get`` many ids of one category,
    ``set`` a nested ``{category: {id: blob | None}}`` mapping where ``None``
    deletes the key. Every mutation is written through before returning.
    """

    def __init__(self, store: AuthStateStore, session_id: str) -> None:
        self._store = store
        self.session_id = session_id

    async def load_credentials(self) -> bytes | None:
        return await self._store.read(self.session_id, CREDS_KEY)

    async def save_credentials(self, blob: bytes) -> None:
        await self._store.write(self.session_id, CREDS_KEY, blob)

    async def get(self, category: str, ids: list[str]) -> dict[str, bytes]:
        values = await asyncio.gather(
            *(self._store.read(self.session_id, f"{category}-{key_id}") for key_id in ids)
        )
        return {key_id: value for key_id, value in zip(ids, values) if value is not None}

    async def set(self, data: dict[str, dict[str, bytes | None]]) -> None:
        tasks = []
        for category, entries in data.items():
            for key_id, value in entries.items():
                key = f"{category}-{key_id}"
                if value is not None:
                    tasks.append(self._store.write(self.session_id, key, value))
                else:
                    tasks.append(self._store.delete(self.session_id, key))
        await asyncio.gather(*tasks)

    async def purge(self) -> int:
        return await self._store.purge(self.session_id)
