"""Shared pytest fixtures and fakes for the remote client."""

import asyncio
from typing import Any, Optional

import pytest

from warden.client.base import (
    ConnectCallbacks,
    ConnectOptions,
    EventKind,
    RemoteClient,
    RemoteHandle,
    Subscription,
)
from warden.config import Settings, WebhookSettings
from warden.dispatch import EventDispatcher
from warden.sessions.registry import SessionRegistry
from warden.sessions.supervisor import SessionSupervisor
from warden.storage.paths import PathStore
from warden.storage.token_store import FileTokenStore


class FakeSubscription(Subscription):
    def __init__(self, handle: "FakeHandle", kind: EventKind, callback):
        self.handle = handle
        self.kind = kind
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeHandle(RemoteHandle):
    """In-memory connection whose events are pushed by the test."""

    def __init__(self, connected: bool = True):
        self.connected = connected
        self.close_calls = 0
        self.use_here_calls = 0
        self.subscriptions: list[FakeSubscription] = []
        self.identities: dict[str, Any] = {}
        self.resolve_calls: list[str] = []
        self.probe_error: Optional[Exception] = None

    async def check_connected(self) -> bool:
        return self.connected

    async def close(self) -> None:
        self.close_calls += 1

    async def subscribe(self, kind, callback) -> Subscription:
        subscription = FakeSubscription(self, kind, callback)
        self.subscriptions.append(subscription)
        return subscription

    async def resolve_identity(self, contact_id: str) -> dict[str, Any]:
        self.resolve_calls.append(contact_id)
        if contact_id not in self.identities:
            raise LookupError(contact_id)
        return self.identities[contact_id]

    async def probe(self) -> None:
        if self.probe_error is not None:
            raise self.probe_error

    async def use_here(self) -> None:
        self.use_here_calls += 1

    @property
    def kinds(self) -> list[EventKind]:
        return [s.kind for s in self.subscriptions if not s.cancelled]

    async def emit(self, kind: EventKind, payload: Any) -> None:
        for subscription in list(self.subscriptions):
            if subscription.kind == kind and not subscription.cancelled:
                await subscription.callback(payload)


class FakeRemoteClient(RemoteClient):
    """
    Records every connection attempt.

    ``during_connect`` runs with the callbacks before the handle is
    returned; ``gate`` (an Event) holds the connection open until set;
    ``error`` is raised instead of connecting.
    """

    def __init__(self, settings=None):
        self.calls: list[ConnectOptions] = []
        self.handles: list[FakeHandle] = []
        self.connected = True
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.during_connect = None

    async def establish_connection(
        self, options: ConnectOptions, callbacks: ConnectCallbacks
    ) -> RemoteHandle:
        self.calls.append(options)
        if self.gate is not None:
            await self.gate.wait()
        if self.during_connect is not None:
            await self.during_connect(callbacks)
        if self.error is not None:
            raise self.error
        handle = FakeHandle(connected=self.connected)
        self.handles.append(handle)
        return handle


class RecordingDispatcher(EventDispatcher):
    """Dispatcher that records deliveries instead of sending them."""

    def __init__(self):
        super().__init__()
        self.emitted: list[tuple[str, Any]] = []
        self.webhooks: list[tuple[str, Any, Optional[str]]] = []

    def emit(self, event: str, payload: Any) -> None:
        self.emitted.append((event, payload))

    def call_webhook(self, event, payload, session=None, webhook_url=None) -> None:
        self.webhooks.append((event, payload, session))

    def webhook_events(self) -> list[str]:
        return [event for event, _, _ in self.webhooks]

    def socket_events(self) -> list[str]:
        return [event for event, _ in self.emitted]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        token_store_path=tmp_path / "tokens",
        user_data_dir=tmp_path / "userDataDir",
        backup_sync_interval=3600,
        backup_stabilization_delay=0,
        health_check_enabled=False,
        start_all_on_boot=False,
        webhook=WebhookSettings(),
    )


@pytest.fixture
def fake_client():
    return FakeRemoteClient()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def token_store(settings):
    return FileTokenStore(settings.token_store_path)


@pytest.fixture
async def supervisor(fake_client, registry, token_store, dispatcher, settings):
    sup = SessionSupervisor(
        fake_client,
        registry,
        token_store,
        dispatcher,
        settings,
        path_store=PathStore(rm_max_retries=0),
    )
    yield sup
    await sup.wait_started()
    await sup.close_all()
