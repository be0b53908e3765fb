"""Tests for SessionSupervisor start, events and teardown."""

import asyncio
import shutil
from unittest.mock import AsyncMock, patch

import pytest

from warden.client.base import EventKind, SocketState, StatusFind
from warden.errors import ConnectionTimeoutError
from warden.sessions.models import SessionStatus
from warden.sessions.supervisor import is_lid_id, serialized_id


def _make_snapshot(settings, name):
    snapshot = settings.user_data_dir / f"backup_{name}" / "Default"
    snapshot.mkdir(parents=True)
    (snapshot / "Preferences").write_text("{}")
    return snapshot.parent


class TestContactIds:
    def test_serialized_id_accepts_strings_and_mappings(self):
        assert serialized_id("1@c.us") == "1@c.us"
        assert serialized_id({"_serialized": "2@lid"}) == "2@lid"
        assert serialized_id(None) is None

    def test_is_lid_id(self):
        assert is_lid_id("123@lid")
        assert is_lid_id({"_serialized": "123@lid"})
        assert not is_lid_id("123@c.us")
        assert not is_lid_id(None)


class TestStart:
    @pytest.mark.asyncio
    async def test_start_connects_and_wires_events(self, supervisor, fake_client, registry, dispatcher):
        await supervisor.start("alice", {"webhook": "http://hooks.local/alice"})

        session = registry.get("alice")
        assert session.status == SessionStatus.CONNECTED
        assert len(fake_client.calls) == 1

        handle = fake_client.handles[0]
        assert session.handle is handle
        kinds = handle.kinds
        assert kinds[:3] == [EventKind.STATE_CHANGE, EventKind.MESSAGE, EventKind.INCOMING_CALL]
        assert EventKind.ACK in kinds
        assert EventKind.LABEL_UPDATE in kinds
        assert "session-logged" in dispatcher.socket_events()
        assert dispatcher.webhooks[0][0] == "state_change"

    @pytest.mark.asyncio
    async def test_start_persists_request_config(self, supervisor, token_store):
        await supervisor.start("alice", {"webhook": "http://hooks.local/alice"})

        record = await token_store.get("alice")
        assert record["config"]["webhook"] == "http://hooks.local/alice"

    @pytest.mark.asyncio
    async def test_start_falls_back_to_stored_config(self, supervisor, token_store, registry):
        await token_store.set("alice", {"WABrowserId": "x", "config": {"webhook": "http://old"}})

        await supervisor.start("alice")

        assert registry.get("alice").webhook_url == "http://old"
        record = await token_store.get("alice")
        assert record["WABrowserId"] == "x"

    @pytest.mark.asyncio
    async def test_concurrent_starts_create_one_connection(self, supervisor, fake_client, registry):
        fake_client.gate = asyncio.Event()

        first = supervisor.spawn("alice")
        second = supervisor.spawn("alice")
        await asyncio.sleep(0.05)
        fake_client.gate.set()
        await asyncio.gather(first, second)

        assert len(fake_client.calls) == 1
        assert registry.get("alice").status == SessionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_start_while_connected_is_noop(self, supervisor, fake_client):
        await supervisor.start("alice")
        await supervisor.start("alice")

        assert len(fake_client.calls) == 1

    @pytest.mark.asyncio
    async def test_phone_login_omits_device_fields(self, supervisor, fake_client):
        await supervisor.start("alice", {"phone": "5511999999999"})

        options = fake_client.calls[0]
        assert options.phone_number == "5511999999999"
        assert options.device_name is None
        assert options.powered_by is None

    @pytest.mark.asyncio
    async def test_qr_login_sends_device_fields(self, supervisor, fake_client, settings):
        await supervisor.start("alice")

        options = fake_client.calls[0]
        assert options.device_name == settings.device_name
        assert options.powered_by == settings.powered_by
        assert options.user_data_dir == settings.user_data_dir / "alice"

    @pytest.mark.asyncio
    async def test_proxy_is_chained_into_browser_args(self, fake_client, registry, token_store, dispatcher, settings):
        from warden.sessions.supervisor import SessionSupervisor

        seen = []

        async def anonymizer(url):
            seen.append(url)
            return "http://127.0.0.1:9999"

        sup = SessionSupervisor(
            fake_client, registry, token_store, dispatcher, settings,
            proxy_anonymizer=anonymizer,
        )
        await sup.start(
            "alice",
            {"proxy": {"url": "proxy.local:3128", "username": "u", "password": "p"}},
        )

        assert seen == ["http://u:p@proxy.local:3128"]
        assert fake_client.calls[0].browser_args[0] == "--proxy-server=http://127.0.0.1:9999"
        await sup.close_all()

    @pytest.mark.asyncio
    async def test_proxy_failure_closes_session(self, fake_client, registry, token_store, dispatcher, settings):
        from warden.sessions.supervisor import SessionSupervisor

        async def anonymizer(url):
            raise OSError("no route")

        sup = SessionSupervisor(
            fake_client, registry, token_store, dispatcher, settings,
            proxy_anonymizer=anonymizer,
        )
        await sup.start("alice", {"proxy": "http://u:p@proxy.local:3128"})

        assert fake_client.calls == []
        assert registry.get("alice") is None
        assert "session-error" in dispatcher.socket_events()


class TestStartFailures:
    @pytest.mark.asyncio
    async def test_timeout_discards_snapshot(self, supervisor, fake_client, registry, dispatcher, settings):
        snapshot = _make_snapshot(settings, "alice")
        fake_client.error = ConnectionTimeoutError("no qr scan")

        await supervisor.start("alice")

        assert registry.get("alice") is None
        assert not snapshot.exists()
        assert ("session-error", "alice") in dispatcher.emitted

    @pytest.mark.asyncio
    async def test_other_failure_keeps_snapshot(self, supervisor, fake_client, registry, settings):
        snapshot = _make_snapshot(settings, "alice")
        fake_client.error = RuntimeError("browser crashed")

        await supervisor.start("alice")

        assert registry.get("alice") is None
        assert snapshot.exists()

    @pytest.mark.asyncio
    async def test_not_connected_handle_is_closed(self, supervisor, fake_client, registry):
        fake_client.connected = False

        await supervisor.start("alice")

        assert registry.get("alice") is None
        assert fake_client.handles[0].close_calls == 1

    @pytest.mark.asyncio
    async def test_session_can_restart_after_failure(self, supervisor, fake_client, registry):
        fake_client.error = RuntimeError("boom")
        await supervisor.start("alice")
        fake_client.error = None

        await supervisor.start("alice")

        assert registry.get("alice").status == SessionStatus.CONNECTED
        assert len(fake_client.calls) == 2


class TestStatusCallbacks:
    @pytest.mark.asyncio
    async def test_qr_code_projection(self, supervisor, fake_client, registry, dispatcher):
        statuses = []

        async def during(callbacks):
            callbacks.on_qr_code("data:image/png;base64,QRDATA", "2@abc")
            statuses.append(registry.get("alice").status)

        fake_client.during_connect = during
        await supervisor.start("alice")

        assert statuses == [SessionStatus.QRCODE]
        assert ("qrCode", {"data": "data:image/png;base64,QRDATA", "session": "alice"}) in dispatcher.emitted
        assert "qrcode" in dispatcher.webhook_events()
        assert registry.get("alice").qrcode is None

    @pytest.mark.asyncio
    async def test_link_code_projection(self, supervisor, fake_client, registry, dispatcher):
        async def during(callbacks):
            callbacks.on_link_code("ABCD-EFGH")

        fake_client.during_connect = during
        await supervisor.start("alice", {"phone": "551100"})

        assert registry.get("alice").phone_code == "ABCD-EFGH"
        assert ("phoneCode", {"data": "ABCD-EFGH", "phone": "551100", "session": "alice"}) in dispatcher.emitted

    @pytest.mark.asyncio
    async def test_qr_read_error_removes_token_and_snapshot(self, supervisor, fake_client, registry, token_store, settings):
        await token_store.set("alice", {"token": "t"})
        snapshot = _make_snapshot(settings, "alice")

        async def during(callbacks):
            await callbacks.on_status(StatusFind.QR_READ_ERROR)

        fake_client.during_connect = during
        await supervisor.start("alice")

        assert registry.get("alice") is None
        assert await token_store.get("alice") is None
        assert not snapshot.exists()
        # Handle produced after the fatal status is released
        assert fake_client.handles[0].close_calls == 1

    @pytest.mark.asyncio
    async def test_disconnected_mobile_keeps_token(self, supervisor, fake_client, registry, token_store, settings):
        await supervisor.start("alice")
        snapshot = _make_snapshot(settings, "alice")

        await supervisor._on_status(registry.get("alice"), StatusFind.DISCONNECTED_MOBILE)

        assert registry.get("alice") is None
        assert await token_store.get("alice") is not None
        assert snapshot.exists()

    @pytest.mark.asyncio
    async def test_non_fatal_status_is_forwarded(self, supervisor, registry, dispatcher):
        await supervisor.start("alice")

        await supervisor._on_status(registry.get("alice"), StatusFind.IN_CHAT)

        assert registry.get("alice").status == SessionStatus.CONNECTED
        assert ("status-find", {"status": "inChat"}, "alice") in dispatcher.webhooks

    @pytest.mark.asyncio
    async def test_token_callback_persists_token(self, supervisor, fake_client, token_store):
        async def during(callbacks):
            await callbacks.on_token({"WABrowserId": "new"})

        fake_client.during_connect = during
        await supervisor.start("alice", {"webhook": "http://w"})

        record = await token_store.get("alice")
        assert record["WABrowserId"] == "new"
        assert record["config"]["webhook"] == "http://w"


class TestEvents:
    @pytest.mark.asyncio
    async def test_message_resolves_lid_once(self, supervisor, fake_client, registry, dispatcher):
        await supervisor.start("alice")
        handle = fake_client.handles[0]
        handle.identities["77@lid"] = {"id": "77@c.us"}

        message = {"chatId": "77@lid", "body": "hi", "sender": {"id": "77@lid"}}
        await handle.emit(EventKind.MESSAGE, dict(message))
        await handle.emit(EventKind.MESSAGE, dict(message))

        assert handle.resolve_calls == ["77@lid"]
        _, payload, session = dispatcher.webhooks[-1]
        assert dispatcher.webhooks[-1][0] == "onmessage"
        assert session == "alice"
        assert payload["chatEntry"] == {"id": "77@c.us"}
        assert payload["sender"]["lidEntry"] == {"id": "77@c.us"}

    @pytest.mark.asyncio
    async def test_unresolved_lid_is_left_out(self, supervisor, fake_client, dispatcher):
        await supervisor.start("alice")
        handle = fake_client.handles[0]

        await handle.emit(EventKind.MESSAGE, {"chatId": "88@lid", "body": "hi"})

        _, payload, _ = dispatcher.webhooks[-1]
        assert "chatEntry" not in payload
        assert ("received-message", {"response": payload}) in dispatcher.emitted

    @pytest.mark.asyncio
    async def test_self_message_only_when_enabled(self, supervisor, fake_client, dispatcher, settings):
        await supervisor.start("alice")
        handle = fake_client.handles[0]

        await handle.emit(EventKind.MESSAGE, {"chatId": "1@c.us", "fromMe": True})
        assert "onselfmessage" not in dispatcher.webhook_events()

        settings.webhook.on_self_message = True
        await handle.emit(EventKind.MESSAGE, {"chatId": "1@c.us", "fromMe": True})
        assert "onselfmessage" in dispatcher.webhook_events()

    @pytest.mark.asyncio
    async def test_conflict_takes_session_back(self, supervisor, fake_client):
        await supervisor.start("alice")
        handle = fake_client.handles[0]

        await handle.emit(EventKind.STATE_CHANGE, SocketState.CONFLICT)
        await handle.emit(EventKind.STATE_CHANGE, "OPENING")

        assert handle.use_here_calls == 1

    @pytest.mark.asyncio
    async def test_incoming_call_forwarded(self, supervisor, fake_client, dispatcher):
        await supervisor.start("alice")
        handle = fake_client.handles[0]
        handle.identities["5@lid"] = {"id": "5@c.us"}

        await handle.emit(EventKind.INCOMING_CALL, {"peerJid": "5@lid", "isVideo": False})

        event, payload = dispatcher.emitted[-1]
        assert event == "incomingcall"
        assert payload["peerEntry"] == {"id": "5@c.us"}

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_propagate(self, supervisor, fake_client, registry):
        await supervisor.start("alice")
        handle = fake_client.handles[0]

        async def broken(session, payload):
            raise RuntimeError("bad payload")

        await supervisor._subscribe(registry.get("alice"), handle, EventKind.ACK, broken)
        await handle.emit(EventKind.ACK, {"id": 1})

        assert registry.get("alice").status == SessionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_disabled_events_not_subscribed(self, supervisor, fake_client, settings):
        settings.webhook.listen_acks = False
        settings.webhook.on_label_updated = False

        await supervisor.start("alice")

        kinds = fake_client.handles[0].kinds
        assert EventKind.ACK not in kinds
        assert EventKind.LABEL_UPDATE not in kinds


class TestClose:
    @pytest.mark.asyncio
    async def test_close_releases_everything(self, supervisor, fake_client, registry):
        await supervisor.start("alice")
        handle = fake_client.handles[0]

        assert await supervisor.close("alice") is True

        assert registry.get("alice") is None
        assert handle.close_calls == 1
        assert all(s.cancelled for s in handle.subscriptions)

    @pytest.mark.asyncio
    async def test_close_unknown_session(self, supervisor):
        assert await supervisor.close("ghost") is False

    @pytest.mark.asyncio
    async def test_close_while_connecting_drops_late_handle(self, supervisor, fake_client, registry):
        fake_client.gate = asyncio.Event()
        task = supervisor.spawn("alice")
        await asyncio.sleep(0.05)

        assert await supervisor.close("alice") is True
        fake_client.gate.set()
        await task

        assert registry.get("alice") is None
        assert fake_client.handles[0].close_calls == 1

    @pytest.mark.asyncio
    async def test_closed_start_does_not_connect(self, fake_client, registry, dispatcher, settings):
        from warden.sessions.supervisor import SessionSupervisor
        from warden.storage.token_store import FileTokenStore

        release = asyncio.Event()

        class SlowTokenStore(FileTokenStore):
            async def get(self, session):
                await release.wait()
                return await super().get(session)

        sup = SessionSupervisor(
            fake_client, registry, SlowTokenStore(settings.token_store_path), dispatcher, settings,
        )
        first = sup.spawn("alice")
        await asyncio.sleep(0.05)
        assert await sup.close("alice") is True
        second = sup.spawn("alice")
        await asyncio.sleep(0.05)

        release.set()
        await asyncio.gather(first, second)

        assert len(fake_client.calls) == 1
        assert registry.get("alice").status == SessionStatus.CONNECTED
        await sup.close_all()

    @pytest.mark.asyncio
    async def test_close_during_proxy_setup_releases_proxy(self, fake_client, registry, token_store, dispatcher, settings):
        from warden.sessions.supervisor import SessionSupervisor

        release = asyncio.Event()

        async def anonymizer(url):
            await release.wait()
            return "http://127.0.0.1:9999"

        sup = SessionSupervisor(
            fake_client, registry, token_store, dispatcher, settings,
            proxy_anonymizer=anonymizer,
        )
        with patch("warden.sessions.supervisor.close_anonymized_proxy", new_callable=AsyncMock) as close_proxy:
            task = sup.spawn("alice", {"proxy": "http://u:p@proxy.local:3128"})
            await asyncio.sleep(0.05)
            assert await sup.close("alice") is True
            release.set()
            await task

        close_proxy.assert_awaited_once_with("http://127.0.0.1:9999")
        assert fake_client.calls == []
        assert registry.get("alice") is None

    @pytest.mark.asyncio
    async def test_close_during_first_snapshot_wait(self, supervisor, fake_client, registry, dispatcher, settings):
        settings.backup_stabilization_delay = 0.2

        async def drop_profile(callbacks):
            shutil.rmtree(settings.user_data_dir / "alice", ignore_errors=True)

        fake_client.during_connect = drop_profile
        task = supervisor.spawn("alice")
        for _ in range(50):
            session = registry.get("alice")
            if session is not None and session.status == SessionStatus.CONNECTED:
                break
            await asyncio.sleep(0.01)

        assert await supervisor.close("alice") is True
        await task

        assert "session-error" not in dispatcher.socket_events()
        assert fake_client.handles[0].close_calls == 1
        assert registry.get("alice") is None

    @pytest.mark.asyncio
    async def test_close_all_closes_stored_and_live_sessions(self, supervisor, token_store, registry):
        await supervisor.start("alice")
        await supervisor.start("bob")
        await token_store.set("carol", {})

        stopped = await supervisor.close_all()

        assert sorted(stopped) == ["alice", "bob"]
        assert registry.names() == []


class TestStartAll:
    @pytest.mark.asyncio
    async def test_start_all_starts_stored_sessions(self, supervisor, token_store, registry):
        await token_store.set("alice", {})
        await token_store.set("bob", {})

        names = await supervisor.start_all()
        await supervisor.wait_started()

        assert names == ["alice", "bob"]
        assert registry.connected_count == 2

    @pytest.mark.asyncio
    async def test_capacity_check(self, supervisor, token_store, monkeypatch):
        monkeypatch.setattr("warden.sessions.supervisor.max_instances_count", lambda mb: 1)
        assert await supervisor.can_create_new_instance() is True

        await token_store.set("alice", {})
        assert await supervisor.can_create_new_instance() is False
