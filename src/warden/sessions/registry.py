"""
Process-wide registry of sessions.
Single source of truth for whether a session is running.

Every method is synchronous so that each update to an entry happens
without an intervening suspension point on the event loop.
"""

from typing import Any, Optional

from warden.client.base import RemoteHandle
from warden.logger import get_logger
from warden.sessions.models import Session, SessionStatus

logger = get_logger(__name__)


class SessionRegistry:
    """Maps session names to their ``Session`` objects."""

    def __init__(self):
        self.sessions: dict[str, Session] = {}

    def get(self, name: str) -> Optional[Session]:
        return self.sessions.get(name)

    def get_or_create(self, name: str) -> Session:
        """Return the entry for ``name``, creating an UNINITIALIZED one if absent."""
        session = self.sessions.get(name)
        if session is None:
            session = self.sessions[name] = Session(name=name)
        return session

    def begin_start(self, name: str) -> Optional[Session]:
        """
        Claim ``name`` for a new start.

        Returns:
            The session, now INITIALIZING, or None if it is already running.
        """
        session = self.sessions.get(name)
        if session is not None and (session.is_running or session.releasing):
            return None

        if session is None or session.status == SessionStatus.CLOSED:
            session = self.sessions[name] = Session(name=name)

        session.set_status(SessionStatus.INITIALIZING)
        return session

    def attach_handle(self, session: Session, handle: RemoteHandle) -> bool:
        """
        Give ``handle`` to ``session`` if it is still the live entry.

        Returns:
            False when the session was closed or replaced meanwhile; the
            caller then owns the handle and must close it.
        """
        if self.sessions.get(session.name) is not session:
            return False
        if session.status == SessionStatus.CLOSED:
            return False
        session.handle = handle
        return True

    def remove(self, name: str, session: Optional[Session] = None) -> Optional[Session]:
        """
        Drop the entry for ``name``.

        When ``session`` is given, only that exact entry is removed so a
        late teardown cannot evict a newer session of the same name.
        """
        current = self.sessions.get(name)
        if current is None:
            return None
        if session is not None and current is not session:
            return None
        return self.sessions.pop(name)

    def names(self) -> list[str]:
        return list(self.sessions)

    def list_sessions(self) -> list[dict[str, Any]]:
        return [session.to_dict() for session in self.sessions.values()]

    @property
    def connected_count(self) -> int:
        return sum(
            1 for s in self.sessions.values() if s.status == SessionStatus.CONNECTED
        )
