"""
Filesystem primitives used by backups and bulk export/import.

All public methods are coroutines that run the blocking work in a worker
thread so that many sessions can snapshot concurrently on one event loop.
"""

import asyncio
import os
import shutil
import time
from pathlib import Path
from typing import Union

from warden.logger import get_logger

logger = get_logger(__name__)

PathLike = Union[str, Path]

# Browser single-instance guards left behind by a crashed process
SINGLETON_LOCK_FILES = ("SingletonLock", "SingletonCookie", "SingletonSocket")

DEFAULT_RM_MAX_RETRIES = 4
RM_RETRY_DELAY = 0.1


class PathStore:
    """Async wrapper around the handful of filesystem operations we need."""

    def __init__(self, rm_max_retries: int = DEFAULT_RM_MAX_RETRIES):
        self.rm_max_retries = rm_max_retries

    async def exists(self, path: PathLike) -> bool:
        return await asyncio.to_thread(os.path.lexists, path)

    async def is_dir(self, path: PathLike) -> bool:
        return await asyncio.to_thread(os.path.isdir, path)

    async def make_dir(self, path: PathLike) -> None:
        await asyncio.to_thread(Path(path).mkdir, parents=True, exist_ok=True)

    async def list_dir(self, path: PathLike) -> list[str]:
        return await asyncio.to_thread(os.listdir, path)

    async def copy_tree(
        self, src: PathLike, dst: PathLike, overwrite: bool = True
    ) -> None:
        """
        Recursively copy ``src`` over ``dst``, merging into existing content.

        Args:
            src: Source directory.
            dst: Destination directory, created if missing.
            overwrite: When False, files already present in ``dst`` are kept.
        """
        await asyncio.to_thread(_copy_tree, Path(src), Path(dst), overwrite)

    async def remove_tree(self, path: PathLike) -> None:
        """Delete a directory tree, retrying while the browser releases it."""
        await asyncio.to_thread(_remove_tree, Path(path), self.rm_max_retries)

    async def remove_file(self, path: PathLike) -> None:
        await asyncio.to_thread(_remove_file, Path(path))

    async def remove_entry(self, path: PathLike) -> None:
        """Delete a file, symlink or directory, whichever ``path`` is."""
        path = Path(path)
        if await asyncio.to_thread(_is_real_dir, path):
            await self.remove_tree(path)
        else:
            await self.remove_file(path)

    async def remove_singleton_locks(self, directory: PathLike) -> int:
        """
        Remove stale browser lock files from a profile directory.

        Returns:
            Number of lock files removed.
        """
        removed = 0
        for name in SINGLETON_LOCK_FILES:
            target = Path(directory) / name
            if not await self.exists(target):
                continue
            try:
                await self.remove_entry(target)
                removed += 1
            except OSError as e:
                logger.warning(f"Failed to remove lock file {target}: {e}")
        return removed


def _copy_tree(src: Path, dst: Path, overwrite: bool) -> None:
    def existing_entries(directory: str, names: list[str]) -> set[str]:
        target = dst / Path(directory).relative_to(src)
        skipped = set()
        for name in names:
            existing = target / name
            if not os.path.lexists(existing) or _is_real_dir(existing):
                continue
            if not overwrite:
                skipped.add(name)
            else:
                source = os.path.join(directory, name)
                if os.path.islink(existing) or os.path.islink(source) or os.path.isdir(source):
                    # Replace the entry itself, never the file a link points to
                    os.unlink(existing)
        return skipped

    shutil.copytree(
        src, dst, symlinks=True, dirs_exist_ok=True, ignore=existing_entries
    )


def _is_real_dir(path: Path) -> bool:
    return os.path.isdir(path) and not os.path.islink(path)


def _remove_tree(path: Path, max_retries: int) -> None:
    for attempt in range(max_retries + 1):
        try:
            shutil.rmtree(path)
            return
        except FileNotFoundError:
            return
        except OSError:
            if attempt >= max_retries:
                raise
            time.sleep(RM_RETRY_DELAY * (attempt + 1))


def _remove_file(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
