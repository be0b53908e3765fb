"""
Health checker: periodic scan of every stored session.

Each run classifies every session that has a stored token. If any of them
needs a restart, all sessions are closed and the whole process exits so
the external process manager relaunches it; startup then restores every
session from its token and profile snapshot. Otherwise the next run is
scheduled. Runs never overlap: the next one is only scheduled after the
current one finishes.
"""

import asyncio
import os
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from warden.logger import get_logger
from warden.sessions.models import SessionStatus
from warden.sessions.registry import SessionRegistry
from warden.sessions.supervisor import SessionSupervisor
from warden.storage.token_store import TokenStore

logger = get_logger(__name__)

DEFAULT_CHECK_INTERVAL = 600.0

_active_instance: Optional["HealthChecker"] = None


def get_active_health_checker() -> Optional["HealthChecker"]:
    """Return the active HealthChecker instance, or None."""
    return _active_instance


class HealthVerdict(str, Enum):
    RUNNING = "running"
    PROBE_FAILED = "probe_failed"
    STUCK_INITIALIZING = "stuck_initializing"
    NOT_RUNNING = "not_running"
    NOT_CONNECTED = "not_connected"
    CHECK_ERROR = "check_error"

    @property
    def needs_restart(self) -> bool:
        return self not in (HealthVerdict.RUNNING, HealthVerdict.CHECK_ERROR)


def terminate_process() -> None:
    """Exit immediately; the process manager is expected to relaunch us."""
    logger.warning("[SESSIONS-CHECK] Terminating process for restart")
    os._exit(0)


class HealthChecker:
    """Recurring scan that escalates any unhealthy session to a process restart."""

    def __init__(
        self,
        registry: SessionRegistry,
        token_store: TokenStore,
        supervisor: SessionSupervisor,
        interval_seconds: float = DEFAULT_CHECK_INTERVAL,
        restart_process: Callable[[], None] = terminate_process,
    ):
        self.registry = registry
        self.token_store = token_store
        self.supervisor = supervisor
        self.interval_seconds = interval_seconds
        self._restart_process = restart_process
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._last_run_at: Optional[datetime] = None
        self._last_verdicts: dict[str, HealthVerdict] = {}
        self._last_restart_count = 0

    async def start(self):
        """Schedule the first check."""
        global _active_instance
        _active_instance = self
        self._running = True
        self._schedule()
        logger.info(f"HealthChecker started (every {self.interval_seconds:.0f}s)")

    async def stop(self):
        global _active_instance
        self._running = False
        task, self._task = self._task, None
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        _active_instance = None
        logger.info("HealthChecker stopped.")

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "last_restart_count": self._last_restart_count,
            "sessions": {name: v.value for name, v in self._last_verdicts.items()},
        }

    async def check_running_sessions(self) -> int:
        """
        Classify every stored session and react.

        Returns:
            Number of sessions that needed a restart.
        """
        logger.info("[SESSIONS-CHECK] Checking running sessions...")
        names = await self.token_store.list_names()
        logger.info(f"[SESSIONS-CHECK] Found {len(names)} sessions in store...")
        logger.info(f"[SESSIONS-CHECK] Sessions: {', '.join(names)}")

        self._last_run_at = datetime.now()
        verdicts: dict[str, HealthVerdict] = {}
        for name in names:
            try:
                verdicts[name] = await self.classify(name)
            except Exception as e:
                logger.error(f"[SESSIONS-CHECK] Error checking session {name}: {e}")
                verdicts[name] = HealthVerdict.CHECK_ERROR

        self._last_verdicts = verdicts
        restarts = sum(1 for v in verdicts.values() if v.needs_restart)
        self._last_restart_count = restarts
        logger.info("[SESSIONS-CHECK] Completed checking running sessions")

        if restarts:
            logger.info(f"[SESSIONS-CHECK] Need restart {restarts} sessions")
            await self.safe_restart(names)
        elif self._running:
            self._schedule()
        return restarts

    async def classify(self, name: str) -> HealthVerdict:
        session = self.registry.get(name)

        if session is not None and session.status == SessionStatus.CONNECTED:
            if session.handle is None:
                return HealthVerdict.PROBE_FAILED
            try:
                await session.handle.probe()
            except Exception as e:
                logger.error(f"[SESSIONS-CHECK] Probe failed for session {name}: {e}")
                logger.error(f"[SESSIONS-CHECK] Need restart {name}")
                return HealthVerdict.PROBE_FAILED
            logger.info(f"[SESSIONS-CHECK] Session {name} is running")
            return HealthVerdict.RUNNING

        if session is not None and session.status == SessionStatus.INITIALIZING:
            logger.info(
                f"[SESSIONS-CHECK] Session {name} is initializing very long. "
                "Try restarting session..."
            )
            return HealthVerdict.STUCK_INITIALIZING

        if session is None or session.status in (
            SessionStatus.UNINITIALIZED,
            SessionStatus.CLOSED,
        ):
            logger.info(f"[SESSIONS-CHECK] Session {name} is not running or closed")
            return HealthVerdict.NOT_RUNNING

        logger.info(f"[SESSIONS-CHECK] Session {name} is not connected")
        return HealthVerdict.NOT_CONNECTED

    async def safe_restart(self, names: list[str]) -> None:
        """Close every session, then hand over to the process manager."""
        self._running = False
        await self.supervisor.close_all(names)
        self._restart_process()

    # -- Internal ------------------------------------------------------------

    def _schedule(self) -> None:
        self._task = asyncio.create_task(self._delayed_check())

    async def _delayed_check(self) -> None:
        await asyncio.sleep(self.interval_seconds)
        try:
            await self.check_running_sessions()
        except Exception as e:
            logger.error(f"[SESSIONS-CHECK] Check failed: {e}")
            if self._running:
                self._schedule()
