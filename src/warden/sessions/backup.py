"""
Per-session browser profile snapshots.

The live profile lives at ``<data_root>/<session>`` and its snapshot at
``<data_root>/backup_<session>``. Before a connection the snapshot is
restored over the live profile; once connected, a recurring task copies
the live profile back into the snapshot and prunes everything the session
does not need to resume.
"""

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Optional

from warden.logger import get_logger
from warden.storage.paths import DEFAULT_RM_MAX_RETRIES, PathStore

logger = get_logger(__name__)

# Entries required to restore an authenticated session
REQUIRED_DIRS = ("Default", "IndexedDB", "Local Storage")

DEFAULT_SYNC_INTERVAL = 60.0
# Time for a freshly authenticated profile to reach a recoverable state on disk
DEFAULT_STABILIZATION_DELAY = 60.0

BACKUP_PREFIX = "backup_"


class BackupSync:
    """Snapshot engine for one session lifetime."""

    def __init__(
        self,
        session: str,
        data_root: Path,
        path_store: Optional[PathStore] = None,
        sync_interval: float = DEFAULT_SYNC_INTERVAL,
        stabilization_delay: float = DEFAULT_STABILIZATION_DELAY,
        rm_max_retries: int = DEFAULT_RM_MAX_RETRIES,
        required_dirs: tuple[str, ...] = REQUIRED_DIRS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session = session
        self.data_root = Path(data_root)
        self.user_data_dir = self.data_root / session
        self.backup_path = self.data_root / f"{BACKUP_PREFIX}{session}"
        self.sync_interval = sync_interval
        self.stabilization_delay = stabilization_delay
        self.required_dirs = tuple(required_dirs)
        self.paths = path_store or PathStore(rm_max_retries=rm_max_retries)
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def syncing(self) -> bool:
        return self._task is not None and not self._task.done()

    async def before_connect(self) -> None:
        """Restore the snapshot into the live profile and clear browser locks."""
        live_exists = await self.paths.exists(self.user_data_dir)
        backup_exists = await self.paths.exists(self.backup_path)

        if backup_exists:
            if live_exists:
                try:
                    await self.paths.remove_tree(self.user_data_dir)
                except OSError as e:
                    logger.warning(f"[{self.session}] Could not clear live profile: {e}")
            try:
                await self.paths.copy_tree(self.backup_path, self.user_data_dir)
                logger.info(f"[{self.session}] Restored profile from snapshot")
            except OSError as e:
                logger.warning(f"[{self.session}] Snapshot restore incomplete: {e}")

        if not await self.paths.exists(self.user_data_dir):
            await self.paths.make_dir(self.user_data_dir)

        removed = await self.paths.remove_singleton_locks(self.user_data_dir)
        if removed:
            logger.info(f"[{self.session}] Removed {removed} stale browser lock files")

    async def after_connect(self) -> None:
        """Take the first snapshot if needed and arm the recurring sync."""
        if not await self.paths.exists(self.user_data_dir):
            await self._sleep(self.stabilization_delay)
            if self._stopped:
                return
            await self.store_snapshot()

        self._arm()

    async def store_snapshot(self) -> None:
        """Copy the live profile over the snapshot and prune it."""
        if not await self.paths.exists(self.user_data_dir):
            return

        try:
            await self.paths.copy_tree(self.user_data_dir, self.backup_path)
        except OSError as e:
            # The next tick retries
            logger.debug(f"[{self.session}] Snapshot copy incomplete: {e}")

        await self.delete_backup_metadata()

    async def delete_backup_metadata(self) -> None:
        """Keep only the required entries at the top two snapshot levels."""
        for directory in (self.backup_path, self.backup_path / "Default"):
            try:
                entries = await self.paths.list_dir(directory)
            except OSError:
                continue

            for entry in entries:
                if entry in self.required_dirs:
                    continue
                try:
                    await self.paths.remove_entry(directory / entry)
                except OSError as e:
                    logger.debug(f"[{self.session}] Could not prune {entry}: {e}")

    async def disconnect(self, discard_snapshot: bool = True) -> None:
        """
        Stop syncing. Safe to call when the sync was never armed.

        Args:
            discard_snapshot: Also delete the snapshot so the next start of
                this session does not restore it.
        """
        await self.stop()
        if discard_snapshot:
            await self.delete_backup()

    async def stop(self) -> None:
        self._stopped = True
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def delete_backup(self) -> None:
        if not await self.paths.exists(self.backup_path):
            return
        try:
            await self.paths.remove_tree(self.backup_path)
            logger.info(f"[{self.session}] Deleted profile snapshot")
        except OSError as e:
            logger.warning(f"[{self.session}] Could not delete snapshot: {e}")

    # -- Internal ------------------------------------------------------------

    def _arm(self) -> None:
        if self._stopped or self.syncing:
            return
        self._task = asyncio.create_task(self._sync_loop())

    async def _sync_loop(self) -> None:
        """Snapshot every ``sync_interval`` seconds; ticks never overlap."""
        while True:
            await self._sleep(self.sync_interval)
            try:
                await self.store_snapshot()
            except Exception as e:
                logger.error(f"[{self.session}] Snapshot tick failed: {e}")
