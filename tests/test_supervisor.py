"""Connection supervisor tests: pairing, reconnect, terminal teardown, readiness."""

import pytest
from prometheus_client import REGISTRY

from app.core.errors import SocketNotReadyError, TransportError
from app.integrations.whatsapp.transport import (
    ConnectionClosed,
    ConnectionOpened,
    DisconnectCode,
    MessageReceived,
    OutboundPayload,
    PairingCodeIssued,
    PayloadKind,
)
from app.sessions.auth_state import AuthStateStore
from app.sessions.registry import SessionRegistry, SessionState
from app.sessions.supervisor import ConnectionSupervisor
from tests.fakes import TransportRecorder, open_session, wait_for


@pytest.fixture
def recorder() -> TransportRecorder:
    return TransportRecorder()


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def auth_store() -> AuthStateStore:
    return AuthStateStore()


def _supervisor(recorder, registry, auth_store, settings, **hooks) -> ConnectionSupervisor:
    return ConnectionSupervisor(
        "loc1",
        1,
        auth_store=auth_store,
        transport_factory=recorder,
        registry=registry,
        settings=settings,
        **hooks,
    )


class TestLifecycle:
    @pytest.mark.anyio
    async def test_pairing_code_is_exposed_until_connected(self, recorder, registry, auth_store, settings) -> None:
        sup = _supervisor(recorder, registry, auth_store, settings)
        sup.start()
        await wait_for(lambda: recorder.built and recorder.last.connected)
        recorder.last.push(PairingCodeIssued(code="2@QRDATA"))
        await wait_for(lambda: sup.snapshot().pairing_code == "2@QRDATA")
        assert registry.snapshot(("loc1", 1)).state is SessionState.PAIRING

        await open_session(recorder, sup, "59890000001:4@s.whatsapp.net")
        snap = registry.snapshot(("loc1", 1))
        assert snap.connected
        assert snap.pairing_code is None
        assert snap.bound_address == "+59890000001"
        await sup.stop()

    @pytest.mark.anyio
    async def test_connect_runs_channel_sync(self, recorder, registry, auth_store, settings) -> None:
        synced = []

        async def on_connected(tenant_id, slot_id, address):
            synced.append((tenant_id, slot_id, address))

        sup = _supervisor(recorder, registry, auth_store, settings, on_connected=on_connected)
        await open_session(recorder, sup, "59890000001@s.whatsapp.net")
        assert synced == [("loc1", 1, "+59890000001")]
        await sup.stop()

    @pytest.mark.anyio
    async def test_repeated_open_counts_the_session_once(self, recorder, registry, auth_store, settings) -> None:
        synced = []

        async def on_connected(tenant_id, slot_id, address):
            synced.append(address)

        before = REGISTRY.get_sample_value("router_connected_sessions")
        sup = _supervisor(recorder, registry, auth_store, settings, on_connected=on_connected)
        transport = await open_session(recorder, sup, "59890000001@s.whatsapp.net")
        transport.push(ConnectionOpened(own_jid="59890000001@s.whatsapp.net"))
        await wait_for(lambda: len(synced) == 2)
        assert REGISTRY.get_sample_value("router_connected_sessions") == before + 1

        await sup.stop()
        assert REGISTRY.get_sample_value("router_connected_sessions") == before

    @pytest.mark.anyio
    async def test_channel_sync_failure_does_not_crash(self, recorder, registry, auth_store, settings) -> None:
        async def on_connected(tenant_id, slot_id, address):
            raise RuntimeError("db down")

        sup = _supervisor(recorder, registry, auth_store, settings, on_connected=on_connected)
        await open_session(recorder, sup, "59890000001@s.whatsapp.net")
        assert sup.running
        assert sup.snapshot().connected
        await sup.stop()

    @pytest.mark.anyio
    async def test_messages_are_handed_off(self, recorder, registry, auth_store, settings) -> None:
        received = []

        async def on_message(supervisor, raw):
            received.append((supervisor.session_id, raw))

        sup = _supervisor(recorder, registry, auth_store, settings, on_message=on_message)
        transport = await open_session(recorder, sup, "59890000001@s.whatsapp.net")
        transport.push(MessageReceived(raw={"key": {"id": "A1"}}))
        await wait_for(lambda: len(received) == 1)
        assert received[0] == ("loc1_slot1", {"key": {"id": "A1"}})
        await sup.stop()


class TestDisconnects:
    @pytest.mark.anyio
    async def test_recoverable_close_reconnects(self, recorder, registry, auth_store, settings) -> None:
        await auth_store.write("loc1_slot1", "creds", b"c")
        sup = _supervisor(recorder, registry, auth_store, settings)
        first = await open_session(recorder, sup, "59890000001@s.whatsapp.net")
        first.push(ConnectionClosed(code=DisconnectCode.CONNECTION_LOST, reason="timeout"))

        await wait_for(lambda: len(recorder.built) == 2 and recorder.last.connected)
        assert first.closed
        assert ("loc1", 1) in registry
        assert await auth_store.read("loc1_slot1", "creds") == b"c"
        await sup.stop()

    @pytest.mark.anyio
    async def test_connection_replaced_is_recoverable(self, recorder, registry, auth_store, settings) -> None:
        sup = _supervisor(recorder, registry, auth_store, settings)
        first = await open_session(recorder, sup, "59890000001@s.whatsapp.net")
        first.push(ConnectionClosed(code=DisconnectCode.CONNECTION_REPLACED))
        await wait_for(lambda: len(recorder.built) == 2)
        await sup.stop()

    @pytest.mark.anyio
    async def test_terminal_close_purges_and_stops(self, recorder, registry, auth_store, settings) -> None:
        terminated = []

        async def on_terminated(supervisor, closed):
            terminated.append(closed.code)

        await auth_store.write("loc1_slot1", "creds", b"c")
        await auth_store.write("loc1_slot1", "pre-key-1", b"k")
        sup = _supervisor(recorder, registry, auth_store, settings, on_terminated=on_terminated)
        transport = await open_session(recorder, sup, "59890000001@s.whatsapp.net")
        transport.push(ConnectionClosed(code=DisconnectCode.LOGGED_OUT, reason="logged out"))

        await wait_for(lambda: not sup.running)
        assert terminated == [401]
        assert sup.state is SessionState.TERMINATED
        assert ("loc1", 1) not in registry
        assert await auth_store.count("loc1_slot1") == 0
        assert len(recorder.built) == 1

    @pytest.mark.anyio
    async def test_stop_cancels_pending_reconnect(self, recorder, registry, auth_store, settings) -> None:
        settings.reconnect_backoff_seconds = 30
        sup = _supervisor(recorder, registry, auth_store, settings)
        first = await open_session(recorder, sup, "59890000001@s.whatsapp.net")
        first.push(ConnectionClosed(code=DisconnectCode.CONNECTION_CLOSED))
        await wait_for(lambda: first.closed)
        await sup.stop()
        assert not sup.running
        assert len(recorder.built) == 1

    @pytest.mark.anyio
    async def test_teardown_logs_out(self, recorder, registry, auth_store, settings) -> None:
        sup = _supervisor(recorder, registry, auth_store, settings)
        transport = await open_session(recorder, sup, "59890000001@s.whatsapp.net")
        await sup.teardown()
        assert transport.logged_out
        assert transport.closed
        assert sup.state is SessionState.TERMINATED


class TestSendPath:
    @pytest.mark.anyio
    async def test_send_when_connected(self, recorder, registry, auth_store, settings) -> None:
        sup = _supervisor(recorder, registry, auth_store, settings)
        transport = await open_session(recorder, sup, "59890000001@s.whatsapp.net")
        message_id = await sup.send("1555@s.whatsapp.net", OutboundPayload(kind=PayloadKind.TEXT, text="hi"))
        assert message_id.startswith("MSG")
        assert transport.sent[0][0] == "1555@s.whatsapp.net"
        await sup.stop()

    @pytest.mark.anyio
    async def test_send_when_not_connected_raises(self, recorder, registry, auth_store, settings) -> None:
        sup = _supervisor(recorder, registry, auth_store, settings)
        with pytest.raises(TransportError):
            await sup.send("1555@s.whatsapp.net", OutboundPayload(kind=PayloadKind.TEXT, text="hi"))

    @pytest.mark.anyio
    async def test_wait_until_ready_times_out(self, recorder, registry, auth_store, settings) -> None:
        sup = _supervisor(recorder, registry, auth_store, settings)
        transport = await open_session(recorder, sup, "59890000001@s.whatsapp.net")
        transport.ready = False
        with pytest.raises(SocketNotReadyError):
            await sup.wait_until_ready(0.03, 0.01)
        transport.ready = True
        await sup.wait_until_ready(0.03, 0.01)
        await sup.stop()
