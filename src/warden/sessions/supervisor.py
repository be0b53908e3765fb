"""
Session supervisor: creation, event wiring and teardown of sessions.

``start`` is the only entry point that creates connections. Every failure
inside it ends with the session CLOSED and its resources released; nothing
is raised back to the caller.
"""

import asyncio
import inspect
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

import psutil

from warden.client.base import (
    FATAL_STATUSES,
    ConnectCallbacks,
    ConnectOptions,
    EventKind,
    RemoteClient,
    RemoteHandle,
    SocketState,
    StatusFind,
)
from warden.client.proxy import anonymize_proxy, close_anonymized_proxy, normalize_proxy
from warden.config import Settings
from warden.dispatch import EventDispatcher
from warden.errors import ConnectionTimeoutError, ProxySetupError, WardenError
from warden.logger import get_logger
from warden.sessions.backup import BackupSync
from warden.sessions.models import Session, SessionConfig, SessionStatus
from warden.sessions.registry import SessionRegistry
from warden.storage.paths import PathStore
from warden.storage.token_store import TokenStore, config_from_record, merge_config
from warden.utils import to_serializable

logger = get_logger(__name__)

QR_IMAGE_PREFIX = "data:image/png;base64,"
LID_SUFFIX = "@lid"


def max_instances_count(instance_memory_mb: int) -> int:
    """How many browser-backed sessions fit in this machine's memory."""
    total = psutil.virtual_memory().total
    return round(total / 1024 / 1024 / instance_memory_mb)


def serialized_id(contact_id: Any) -> Optional[str]:
    """Contact ids arrive either as strings or as ``{"_serialized": ...}``."""
    if isinstance(contact_id, str):
        return contact_id
    if isinstance(contact_id, dict):
        return contact_id.get("_serialized")
    return getattr(contact_id, "_serialized", None)


def is_lid_id(contact_id: Any) -> bool:
    serialized = serialized_id(contact_id)
    return bool(serialized) and LID_SUFFIX in serialized


class SessionSupervisor:
    """Starts, wires and tears down sessions."""

    def __init__(
        self,
        client: RemoteClient,
        registry: SessionRegistry,
        token_store: TokenStore,
        dispatcher: EventDispatcher,
        settings: Settings,
        path_store: Optional[PathStore] = None,
        proxy_anonymizer: Callable[[str], Awaitable[str]] = anonymize_proxy,
    ):
        self.client = client
        self.registry = registry
        self.token_store = token_store
        self.dispatcher = dispatcher
        self.settings = settings
        self.paths = path_store or PathStore(rm_max_retries=settings.rm_max_retries)
        self._anonymize_proxy = proxy_anonymizer
        self._tasks: set[asyncio.Task] = set()

    # -- Public API ----------------------------------------------------------

    async def can_create_new_instance(self) -> bool:
        names = await self.token_store.list_names()
        return len(names) < max_instances_count(self.settings.instance_memory_mb)

    def spawn(
        self, name: str, request_config: Union[dict, SessionConfig, None] = None
    ) -> asyncio.Task:
        """Run ``start`` in the background."""
        task = asyncio.create_task(self.start(name, request_config))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def start_all(self) -> list[str]:
        """Start every session that has a stored token."""
        names = await self.token_store.list_names()
        logger.info(f"Starting {len(names)} stored sessions")
        for name in names:
            self.spawn(name)
        return names

    async def wait_started(self) -> None:
        """Wait for background starts launched with ``spawn``."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def start(
        self, name: str, request_config: Union[dict, SessionConfig, None] = None
    ) -> None:
        """
        Start session ``name``.

        A no-op while the session is already starting or running. Failures
        are logged and leave the session CLOSED.
        """
        session = self.registry.begin_start(name)
        if session is None:
            current = self.registry.get(name)
            status = current.status.value if current else "unknown"
            logger.debug(f"[{name}] Start ignored, session is {status}")
            return

        try:
            await self._connect(session, request_config)
        except Exception as e:
            logger.error(f"[{name}] Failed to start session: {e!r}")
            await self._abort_start(session, e)

    async def close(self, name: str, discard_snapshot: bool = False) -> bool:
        """Close a session explicitly."""
        session = self.registry.get(name)
        if session is None or not session.is_running:
            return False
        logger.info(f"[{name}] Closing session")
        await self._teardown(session, discard_snapshot=discard_snapshot)
        return True

    async def close_all(self, names: Optional[list[str]] = None) -> list[str]:
        """
        Stop tracking and close every known session, best-effort.

        Args:
            names: Sessions to stop; defaults to stored tokens plus
                everything in the registry.
        """
        if names is None:
            names = await self.token_store.list_names()
        targets = list(dict.fromkeys([*names, *self.registry.names()]))

        stopped = []
        for name in targets:
            session = self.registry.get(name)
            try:
                if session is not None and session.status != SessionStatus.UNINITIALIZED:
                    logger.info(f"Stopping session: {name}")
                    await self._teardown(session, discard_snapshot=False)
                    stopped.append(name)
                self.registry.remove(name)
            except Exception as e:
                logger.error(f"Could not stop session {name}: {e}")
        return stopped

    async def resolve_lid_entry(self, session: Session, lid: str) -> Optional[Any]:
        """Resolve a linked identity through the session's cache."""
        if lid in session.lid_entry_cache:
            return session.lid_entry_cache[lid]
        if session.handle is None:
            return None
        try:
            entry = await session.handle.resolve_identity(lid)
        except Exception as e:
            logger.debug(f"[{session.name}] Could not resolve {lid}: {e}")
            return None
        session.lid_entry_cache[lid] = entry
        return entry

    # -- Start sequence ------------------------------------------------------

    async def _connect(
        self, session: Session, request_config: Union[dict, SessionConfig, None]
    ) -> None:
        name = session.name
        config = _config_dict(request_config)

        record = await self.token_store.get(name)
        if self._superseded(session):
            return
        if not config:
            config = config_from_record(record)
        session.config = config
        # Persist now so the request config (e.g. phone) wins over a stale record
        await self.token_store.set(name, merge_config(record, config))
        if self._superseded(session):
            return

        browser_args = list(self.settings.browser_args)
        proxy_upstream = normalize_proxy(config.get("proxy"))
        if proxy_upstream:
            logger.info(f"[{name}] try getting proxy")
            try:
                session.proxy_url = await self._anonymize_proxy(proxy_upstream)
            except ProxySetupError:
                raise
            except Exception as e:
                raise ProxySetupError(f"Proxy setup failed: {e}") from e
            logger.info(f"[{name}] proxy setted to {session.proxy_url}")
            browser_args.insert(0, f"--proxy-server={session.proxy_url}")
            if self._superseded(session):
                # Teardown ran before the proxy existed
                await close_anonymized_proxy(session.proxy_url)
                session.proxy_url = None
                return

        backup = session.backup = self._make_backup(name)
        await backup.before_connect()
        if self._superseded(session):
            await backup.stop()
            return

        phone = config.get("phone")
        options = ConnectOptions(
            session=name,
            user_data_dir=backup.user_data_dir,
            config=config,
            token=record,
            browser_args=browser_args,
            phone_number=phone,
            # Link-code logins reject these two fields
            device_name=None if phone else config.get("device_name") or self.settings.device_name,
            powered_by=None if phone else config.get("powered_by") or self.settings.powered_by,
            proxy=config["proxy"] if isinstance(config.get("proxy"), dict) else None,
        )
        handle = await self.client.establish_connection(options, self._callbacks(session))

        if not self.registry.attach_handle(session, handle):
            logger.warning(f"[{name}] Session closed while connecting, dropping handle")
            await self._close_handle(name, handle)
            return

        if not await self._on_connected(session, handle):
            return
        await backup.after_connect()
        if self._superseded(session):
            return
        await self._wire_optional_events(session, handle)

    def _superseded(self, session: Session) -> bool:
        """True once ``session`` was closed or replaced by a newer start."""
        if session.status == SessionStatus.CLOSED or self.registry.get(session.name) is not session:
            logger.info(f"[{session.name}] Session closed while starting, abandoning start")
            return True
        return False

    async def _on_connected(self, session: Session, handle: RemoteHandle) -> bool:
        """Mark the session CONNECTED and wire core events; False if it was closed meanwhile."""
        name = session.name
        if not await handle.check_connected():
            raise WardenError(f"Session {name} did not report connected")
        if self._superseded(session):
            return False

        session.set_status(SessionStatus.CONNECTED)
        session.qrcode = None
        logger.info(f"Started Session: {name}")
        self._webhook(session, "state_change", {"status": "CONNECTED"})
        self.dispatcher.emit("session-logged", {"status": True, "session": name})

        await self._subscribe(session, handle, EventKind.STATE_CHANGE, self._on_state_change)
        await self._subscribe(session, handle, EventKind.MESSAGE, self._on_message)
        await self._subscribe(session, handle, EventKind.INCOMING_CALL, self._on_incoming_call)

        webhook = self.settings.webhook
        if webhook.listen_acks:
            await self._forward(session, handle, EventKind.ACK, "onack")
        if webhook.on_presence_changed:
            await self._forward(session, handle, EventKind.PRESENCE_CHANGE, "onpresencechanged")
        return True

    async def _wire_optional_events(self, session: Session, handle: RemoteHandle) -> None:
        webhook = self.settings.webhook
        optional = [
            (webhook.on_participants_changed, EventKind.PARTICIPANTS_CHANGE, "onparticipantschanged"),
            (webhook.on_reaction_message, EventKind.REACTION, "onreactionmessage"),
            (webhook.on_revoked_message, EventKind.REVOKE, "onrevokedmessage"),
            (webhook.on_poll_response, EventKind.POLL_RESPONSE, "onpollresponse"),
            (webhook.on_label_updated, EventKind.LABEL_UPDATE, "onupdatelabel"),
        ]
        for enabled, kind, event in optional:
            if enabled:
                await self._forward(session, handle, kind, event)

    def _make_backup(self, name: str) -> BackupSync:
        return BackupSync(
            session=name,
            data_root=Path(self.settings.user_data_dir),
            path_store=self.paths,
            sync_interval=self.settings.backup_sync_interval,
            stabilization_delay=self.settings.backup_stabilization_delay,
        )

    # -- Connect callbacks ---------------------------------------------------

    def _callbacks(self, session: Session) -> ConnectCallbacks:
        name = session.name

        def on_qr_code(base64_qr: str, url_code: str) -> None:
            qr = (base64_qr or "").replace(QR_IMAGE_PREFIX, "")
            session.set_status(SessionStatus.QRCODE)
            session.qrcode = qr
            session.urlcode = url_code
            self.dispatcher.emit("qrCode", {"data": QR_IMAGE_PREFIX + qr, "session": name})
            self._webhook(session, "qrcode", {"qrcode": qr, "urlcode": url_code})

        def on_link_code(code: str) -> None:
            phone = session.config.get("phone")
            session.set_status(SessionStatus.PHONECODE)
            session.phone_code = code
            self.dispatcher.emit("phoneCode", {"data": code, "phone": phone, "session": name})
            self._webhook(session, "phoneCode", {"phoneCode": code, "phone": phone})

        def on_loading(percent: Any, message: str) -> None:
            logger.info(f"[{name}] {percent}% - {message}")

        async def on_status(status: StatusFind) -> None:
            await self._on_status(session, status)

        async def on_token(token: dict[str, Any]) -> None:
            await self.token_store.set(name, merge_config(token, session.config))

        return ConnectCallbacks(
            on_qr_code=on_qr_code,
            on_link_code=on_link_code,
            on_loading=on_loading,
            on_status=on_status,
            on_token=on_token,
        )

    async def _on_status(self, session: Session, status: StatusFind) -> None:
        name = session.name
        try:
            status = StatusFind(status)
            if status in FATAL_STATUSES:
                clean_slate = status == StatusFind.QR_READ_ERROR
                await self._teardown(session, discard_snapshot=clean_slate)
                if clean_slate:
                    await self.token_store.remove(name)
                    logger.info(f"[{name}] Removed session json and browser data")

            self._webhook(session, "status-find", {"status": status.value})
            logger.info(f"[{name}] {status.value}")
        except Exception as e:
            logger.error(f"[{name}] Error finding status: {e}")

    # -- Event handlers ------------------------------------------------------

    async def _on_state_change(self, session: Session, state: Any) -> None:
        state_value = getattr(state, "value", state)
        logger.info(f"State Change {state_value}: {session.name}")
        if state_value == SocketState.CONFLICT.value and session.handle is not None:
            await session.handle.use_here()
        self._webhook(session, "state_change", {"status": state_value})

    async def _on_message(self, session: Session, message: Any) -> None:
        message = _as_payload(message)
        message["session"] = session.name

        chat_id = serialized_id(message.get("chatId"))
        if is_lid_id(chat_id):
            entry = await self.resolve_lid_entry(session, chat_id)
            if entry is not None:
                message["chatEntry"] = entry

        sender = message.get("sender")
        if isinstance(sender, dict) and is_lid_id(sender.get("id")):
            entry = await self.resolve_lid_entry(session, serialized_id(sender["id"]))
            if entry is not None:
                sender["lidEntry"] = entry

        self._webhook(session, "onmessage", message)
        self.dispatcher.emit("received-message", {"response": message})
        if self.settings.webhook.on_self_message and message.get("fromMe"):
            self._webhook(session, "onselfmessage", message)

    async def _on_incoming_call(self, session: Session, call: Any) -> None:
        call = _as_payload(call)
        peer = call.get("peerJid")
        if is_lid_id(peer):
            entry = await self.resolve_lid_entry(session, serialized_id(peer))
            if entry is not None:
                call["peerEntry"] = entry
        self.dispatcher.emit("incomingcall", call)
        self._webhook(session, "incomingcall", call)

    async def _forward(
        self, session: Session, handle: RemoteHandle, kind: EventKind, event: str
    ) -> None:
        async def forward(_session: Session, payload: Any) -> None:
            self.dispatcher.emit(event, payload)
            self._webhook(_session, event, payload)

        await self._subscribe(session, handle, kind, forward)

    async def _subscribe(self, session: Session, handle: RemoteHandle, kind: EventKind, handler) -> None:
        if session.status == SessionStatus.CLOSED:
            logger.debug(f"[{session.name}] Skipping {kind.value} subscription, session closed")
            return

        async def guarded(payload: Any) -> None:
            try:
                result = handler(session, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[{session.name}] Error handling {kind.value} event: {e}")

        subscription = await handle.subscribe(kind, guarded)
        if session.status == SessionStatus.CLOSED:
            # Teardown already released the others
            subscription.cancel()
            return
        session.subscriptions.append(subscription)

    def _webhook(self, session: Session, event: str, payload: Any) -> None:
        self.dispatcher.call_webhook(
            event, payload, session=session.name, webhook_url=session.webhook_url
        )

    # -- Teardown ------------------------------------------------------------

    async def _abort_start(self, session: Session, error: Exception) -> None:
        timed_out = isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionTimeoutError))
        if timed_out:
            logger.warning(f"TimeoutError on session {session.name}")
        self.dispatcher.emit("session-error", session.name)
        await self._teardown(session, discard_snapshot=timed_out)

    async def _teardown(self, session: Session, discard_snapshot: bool) -> None:
        """
        Move a session to CLOSED and release everything it owns.

        State changes happen before the first await; the entry stays in the
        registry, marked as releasing, until the handle is closed.
        """
        name = session.name
        session.set_status(SessionStatus.CLOSED)
        session.qrcode = None
        session.releasing = True
        handle, session.handle = session.handle, None
        session.release_subscriptions()

        try:
            if handle is not None:
                await self._close_handle(name, handle)
            if session.backup is not None:
                await session.backup.disconnect(discard_snapshot=discard_snapshot)
            if session.proxy_url:
                await close_anonymized_proxy(session.proxy_url)
                session.proxy_url = None
        finally:
            session.releasing = False
            self.registry.remove(name, session)

    async def _close_handle(self, name: str, handle: RemoteHandle) -> None:
        try:
            await handle.close()
        except Exception as e:
            logger.error(f"[{name}] Error closing session {name}: {e}")


def _config_dict(request_config: Union[dict, SessionConfig, None]) -> dict[str, Any]:
    if request_config is None:
        return {}
    if isinstance(request_config, SessionConfig):
        return request_config.model_dump(exclude_none=True, mode="json")
    return SessionConfig(**request_config).model_dump(exclude_none=True, mode="json")


def _as_payload(event: Any) -> dict[str, Any]:
    payload = to_serializable(event)
    return payload if isinstance(payload, dict) else {"data": payload}
