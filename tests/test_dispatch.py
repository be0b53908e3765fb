"""Tests for webhook and socket event delivery."""

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from warden.dispatch import EventDispatcher
from warden.utils import to_serializable


def _recording_transport(status=200):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status)

    return requests, httpx.MockTransport(handler)


class TestWebhooks:
    @pytest.mark.asyncio
    async def test_posts_payload_with_event_and_session(self):
        requests, transport = _recording_transport()
        dispatcher = EventDispatcher(http_client=httpx.AsyncClient(transport=transport))

        dispatcher.call_webhook("onmessage", {"body": "hi"}, session="alice", webhook_url="http://hook/x")
        await dispatcher.drain()

        assert len(requests) == 1
        assert str(requests[0].url) == "http://hook/x"
        assert json.loads(requests[0].content) == {"body": "hi", "event": "onmessage", "session": "alice"}

    @pytest.mark.asyncio
    async def test_falls_back_to_default_url(self):
        requests, transport = _recording_transport()
        dispatcher = EventDispatcher(
            default_webhook_url="http://default/hook",
            http_client=httpx.AsyncClient(transport=transport),
        )

        dispatcher.call_webhook("status-find", {"status": "inChat"}, session="alice")
        await dispatcher.drain()

        assert str(requests[0].url) == "http://default/hook"

    @pytest.mark.asyncio
    async def test_no_url_sends_nothing(self):
        requests, transport = _recording_transport()
        dispatcher = EventDispatcher(http_client=httpx.AsyncClient(transport=transport))

        dispatcher.call_webhook("onack", {"id": 1}, session="alice")
        await dispatcher.drain()

        assert requests == []

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self):
        _, transport = _recording_transport(status=500)
        dispatcher = EventDispatcher(http_client=httpx.AsyncClient(transport=transport))

        dispatcher.call_webhook("onack", {"id": 1}, session="alice", webhook_url="http://hook")
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_non_dict_payload_is_wrapped(self):
        requests, transport = _recording_transport()
        dispatcher = EventDispatcher(http_client=httpx.AsyncClient(transport=transport))

        dispatcher.call_webhook("onack", [1, 2], webhook_url="http://hook")
        await dispatcher.drain()

        assert json.loads(requests[0].content) == {"data": [1, 2], "event": "onack"}


class TestSockets:
    @pytest.mark.asyncio
    async def test_broadcast_to_sockets(self):
        dispatcher = EventDispatcher()
        socket = MagicMock()
        socket.send_json = AsyncMock()
        dispatcher.add_socket(socket)

        dispatcher.emit("qrCode", {"data": "qr", "session": "alice"})
        await dispatcher.drain()

        socket.send_json.assert_awaited_once_with(
            {"event": "qrCode", "data": {"data": "qr", "session": "alice"}}
        )

    @pytest.mark.asyncio
    async def test_broken_socket_is_dropped(self):
        dispatcher = EventDispatcher()
        socket = MagicMock()
        socket.send_json = AsyncMock(side_effect=RuntimeError("closed"))
        dispatcher.add_socket(socket)

        dispatcher.emit("session-logged", {"status": True})
        await dispatcher.drain()

        assert dispatcher.socket_count == 0


class TestSerialization:
    def test_to_serializable_handles_driver_objects(self):
        from dataclasses import dataclass
        from enum import Enum
        from pathlib import Path

        class Color(Enum):
            RED = "red"

        @dataclass
        class Ack:
            id: str
            color: Color

        class Message:
            def __init__(self):
                self.body = "hi"
                self._private = "hidden"

        assert to_serializable(Ack("1", Color.RED)) == {"id": "1", "color": "red"}
        assert to_serializable(Message()) == {"body": "hi"}
        assert to_serializable({"p": Path("/tmp/x"), "s": {1}}) == {"p": "/tmp/x", "s": [1]}
        assert to_serializable(ValueError("bad")) == {"error_type": "ValueError", "message": "bad"}
