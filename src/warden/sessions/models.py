"""
Session data model.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Union

from pydantic import BaseModel, ConfigDict

from warden.client.base import RemoteHandle, Subscription

if TYPE_CHECKING:
    from warden.sessions.backup import BackupSync


class SessionStatus(str, Enum):
    UNINITIALIZED = "UNINITIALIZED"
    INITIALIZING = "INITIALIZING"
    QRCODE = "QRCODE"
    PHONECODE = "PHONECODE"
    CONNECTED = "CONNECTED"
    CLOSED = "CLOSED"


class ProxyConfig(BaseModel):
    url: str
    username: Optional[str] = None
    password: Optional[str] = None


class SessionConfig(BaseModel):
    """Per-session request config; unknown keys are kept as-is."""

    model_config = ConfigDict(extra="allow")

    webhook: Optional[str] = None
    proxy: Union[str, ProxyConfig, None] = None
    phone: Optional[str] = None
    device_name: Optional[str] = None
    powered_by: Optional[str] = None


@dataclass
class Session:
    """
    One named connection and everything it owns.

    The handle, its subscriptions and the backup engine belong to the
    session until it transitions to CLOSED.
    """

    name: str
    status: SessionStatus = SessionStatus.UNINITIALIZED
    config: dict[str, Any] = field(default_factory=dict)
    handle: Optional[RemoteHandle] = None
    backup: Optional["BackupSync"] = None
    subscriptions: list[Subscription] = field(default_factory=list)
    lid_entry_cache: dict[str, Any] = field(default_factory=dict)
    qrcode: Optional[str] = None
    urlcode: Optional[str] = None
    phone_code: Optional[str] = None
    proxy_url: Optional[str] = None
    # Set while the handle is being released after a close
    releasing: bool = False
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_running(self) -> bool:
        """True while a start is in progress or the session is live."""
        return self.status not in (SessionStatus.UNINITIALIZED, SessionStatus.CLOSED)

    @property
    def webhook_url(self) -> Optional[str]:
        return self.config.get("webhook") or None

    def set_status(self, status: SessionStatus) -> None:
        self.status = status
        self.updated_at = datetime.now()

    def release_subscriptions(self) -> None:
        for subscription in self.subscriptions:
            try:
                subscription.cancel()
            except Exception:
                pass
        self.subscriptions.clear()

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses."""
        return {
            "session": self.name,
            "status": self.status.value,
            "qrcode": self.qrcode,
            "urlcode": self.urlcode,
            "phone_code": self.phone_code,
            "updated_at": self.updated_at.isoformat(),
        }
