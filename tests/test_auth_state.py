"""Auth State Store tests: row-level upsert, decrypt failures, purge, session listing."""

import asyncio
import threading
import time

import pytest

from app.core.db import SessionLocal
from app.core.models import AuthStateRecord
from app.sessions.auth_state import AuthStateStore, parse_session_id, session_id_for


@pytest.fixture
def store() -> AuthStateStore:
    return AuthStateStore()


class TestSessionIds:
    def test_round_trip(self) -> None:
        assert session_id_for("loc_ABC", 2) == "loc_ABC_slot2"
        assert parse_session_id("loc_ABC_slot2") == ("loc_ABC", 2)

    def test_foreign_ids_are_rejected(self) -> None:
        assert parse_session_id("legacy-session") is None
        assert parse_session_id("loc_slotX") is None
        assert parse_session_id("_slot1") is None


class TestAuthStateStore:
    @pytest.mark.anyio
    async def test_write_then_read(self, store: AuthStateStore) -> None:
        await store.write("t1_slot1", "creds", b"\x00\x01secret")
        assert await store.read("t1_slot1", "creds") == b"\x00\x01secret"

    @pytest.mark.anyio
    async def test_blobs_are_encrypted_at_rest(self, store: AuthStateStore) -> None:
        await store.write("t1_slot1", "creds", b"plain-credentials")
        db = SessionLocal()
        try:
            row = db.get(AuthStateRecord, ("t1_slot1", "creds"))
            assert row is not None
            assert b"plain-credentials" not in row.data
        finally:
            db.close()

    @pytest.mark.anyio
    async def test_concurrent_writes_keep_unrelated_keys(self, store: AuthStateStore) -> None:
        await asyncio.gather(
            *(store.write("t1_slot1", f"pre-key-{i}", f"v{i}".encode()) for i in range(10))
        )
        await store.write("t1_slot1", "pre-key-3", b"updated")
        assert await store.read("t1_slot1", "pre-key-3") == b"updated"
        assert await store.read("t1_slot1", "pre-key-7") == b"v7"
        assert await store.count("t1_slot1") == 10

    @pytest.mark.anyio
    async def test_undecryptable_row_reads_as_absent(self, store: AuthStateStore) -> None:
        db = SessionLocal()
        try:
            db.add(AuthStateRecord(session_id="t1_slot1", key_id="creds", data=b"not-a-fernet-token"))
            db.commit()
        finally:
            db.close()
        assert await store.read("t1_slot1", "creds") is None

    @pytest.mark.anyio
    async def test_delete_removes_single_key(self, store: AuthStateStore) -> None:
        await store.write("t1_slot1", "creds", b"c")
        await store.write("t1_slot1", "session-abc", b"s")
        await store.delete("t1_slot1", "session-abc")
        assert await store.read("t1_slot1", "session-abc") is None
        assert await store.read("t1_slot1", "creds") == b"c"

    @pytest.mark.anyio
    async def test_purge_and_list_session_ids(self, store: AuthStateStore) -> None:
        await store.write("t1_slot1", "creds", b"c1")
        await store.write("t1_slot1", "pre-key-1", b"k")
        await store.write("t2_slot4", "creds", b"c2")
        await store.write("t3_slot1", "pre-key-1", b"orphan")

        assert sorted(await store.list_session_ids()) == ["t1_slot1", "t2_slot4"]
        assert await store.purge("t1_slot1") == 2
        assert await store.count("t1_slot1") == 0
        assert await store.list_session_ids() == ["t2_slot4"]

    @pytest.mark.anyio
    async def test_purge_waits_for_write_of_cancelled_caller(self, store: AuthStateStore, monkeypatch) -> None:
        original = store._write
        started = threading.Event()

        def slow_write(session_id: str, key: str, blob: bytes) -> None:
            started.set()
            time.sleep(0.1)
            original(session_id, key, blob)

        monkeypatch.setattr(store, "_write", slow_write)
        writer = asyncio.create_task(store.write("t1_slot1", "creds", b"late"))
        assert await asyncio.to_thread(started.wait, 2)
        writer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await writer

        await store.purge("t1_slot1")

        assert await store.count("t1_slot1") == 0
        assert await store.list_session_ids() == []


class TestSessionAuthState:
    @pytest.mark.anyio
    async def test_key_store_get_and_set(self, store: AuthStateStore) -> None:
        auth = store.bind("t1_slot1")
        await auth.set({"pre-key": {"1": b"one", "2": b"two"}, "session": {"a": b"sa"}})
        assert await auth.get("pre-key", ["1", "2", "3"]) == {"1": b"one", "2": b"two"}

        await auth.set({"pre-key": {"1": None}})
        assert await auth.get("pre-key", ["1", "2"]) == {"2": b"two"}

    @pytest.mark.anyio
    async def test_credentials(self, store: AuthStateStore) -> None:
        auth = store.bind("t1_slot1")
        assert await auth.load_credentials() is None
        await auth.save_credentials(b"creds-blob")
        assert await auth.load_credentials() == b"creds-blob"
        assert await auth.purge() == 1
