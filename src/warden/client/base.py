"""
Contract for the remote client that owns the automated browser.

The browser automation and messaging protocol live behind these classes.
A driver implements ``RemoteClient`` and returns a ``RemoteHandle`` per
established connection; the supervisor only ever talks to these interfaces.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union


class StatusFind(str, Enum):
    """Connection status transitions reported while a session starts."""

    IS_LOGGED = "isLogged"
    NOT_LOGGED = "notLogged"
    IN_CHAT = "inChat"
    QR_READ_SUCCESS = "qrReadSuccess"
    QR_READ_FAIL = "qrReadFail"
    QR_READ_ERROR = "qrReadError"
    AUTOCLOSE_CALLED = "autocloseCalled"
    DISCONNECTED_MOBILE = "desconnectedMobile"
    BROWSER_CLOSE = "browserClose"
    SERVER_CLOSE = "serverClose"
    PHONE_NOT_CONNECTED = "phoneNotConnected"


# Statuses after which the handle is unusable and the session must close
FATAL_STATUSES = frozenset(
    {
        StatusFind.AUTOCLOSE_CALLED,
        StatusFind.DISCONNECTED_MOBILE,
        StatusFind.QR_READ_ERROR,
    }
)


class SocketState(str, Enum):
    """Socket states delivered through the state-change subscription."""

    CONNECTED = "CONNECTED"
    CONFLICT = "CONFLICT"
    OPENING = "OPENING"
    PAIRING = "PAIRING"
    TIMEOUT = "TIMEOUT"
    UNPAIRED = "UNPAIRED"
    UNLAUNCHED = "UNLAUNCHED"


class EventKind(str, Enum):
    MESSAGE = "message"
    INCOMING_CALL = "incoming-call"
    ACK = "ack"
    PRESENCE_CHANGE = "presence-change"
    PARTICIPANTS_CHANGE = "participants-change"
    REACTION = "reaction"
    REVOKE = "revoke"
    POLL_RESPONSE = "poll-response"
    LABEL_UPDATE = "label-update"
    STATE_CHANGE = "state-change"


EventCallback = Callable[[Any], Union[None, Awaitable[None]]]


@dataclass
class ConnectCallbacks:
    """Callbacks the remote client invokes while establishing a connection."""

    on_qr_code: Callable[[str, str], Any]
    on_link_code: Callable[[str], Any]
    on_loading: Callable[[Any, str], Any]
    on_status: Callable[[StatusFind], Awaitable[None]]
    # Called by drivers whenever the session token changes
    on_token: Optional[Callable[[dict[str, Any]], Awaitable[None]]] = None


@dataclass
class ConnectOptions:
    """Everything a driver needs to launch one session."""

    session: str
    user_data_dir: Path
    config: dict[str, Any] = field(default_factory=dict)
    token: Optional[dict[str, Any]] = None
    browser_args: list[str] = field(default_factory=list)
    phone_number: Optional[str] = None
    device_name: Optional[str] = None
    powered_by: Optional[str] = None
    proxy: Optional[dict[str, Any]] = None


class Subscription(ABC):
    """Cancellation handle returned by ``RemoteHandle.subscribe``."""

    @abstractmethod
    def cancel(self) -> None:
        pass


class RemoteHandle(ABC):
    """A live connection owned by exactly one session."""

    @abstractmethod
    async def check_connected(self) -> bool:
        """Wait until the connection is ready; raise if it cannot become ready."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @abstractmethod
    async def subscribe(self, kind: EventKind, callback: EventCallback) -> Subscription:
        pass

    @abstractmethod
    async def resolve_identity(self, contact_id: str) -> dict[str, Any]:
        """Resolve a linked-identity contact id to its canonical record."""
        pass

    async def probe(self) -> None:
        """
        Cheap liveness probe used by the health checker.

        Drivers should override this with something that exercises the
        browser (a screenshot, a page evaluation). Raises on failure.
        """
        if not await self.check_connected():
            raise ConnectionError("Remote client reports disconnected")

    async def use_here(self) -> None:
        """Take the session back after a conflict with another device."""
        pass


class RemoteClient(ABC):
    """Factory for remote connections (one driver instance per process)."""

    @abstractmethod
    async def establish_connection(
        self, options: ConnectOptions, callbacks: ConnectCallbacks
    ) -> RemoteHandle:
        """
        Launch the browser and connect a session.

        Raises:
            TimeoutError: If the connection is not established in time.
        """
        pass
