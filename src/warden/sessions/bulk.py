"""
Bulk export and import of every session's token and browser profile.

Both directions stop all sessions first and start them again afterwards;
sessions are unavailable for the duration.
"""

import asyncio
import os
import tempfile
import zipfile
from pathlib import Path
from typing import Any, Optional

from warden.errors import InvalidBundleError
from warden.logger import get_logger
from warden.sessions.supervisor import SessionSupervisor
from warden.storage.paths import PathStore

logger = get_logger(__name__)

TOKENS_ARCNAME = "tokens"
PROFILES_ARCNAME = "userDataDir"


def validate_bundle(archive_path: Path, content_type: Optional[str] = None) -> None:
    """
    Reject anything that is not a zip archive.

    Raises:
        InvalidBundleError: If the declared type or the content is not zip.
    """
    if content_type is not None and "zip" not in content_type.lower():
        raise InvalidBundleError("Please, send zipped file")
    if not zipfile.is_zipfile(archive_path):
        raise InvalidBundleError("Please, send zipped file")

    with zipfile.ZipFile(archive_path) as zf:
        for member in zf.namelist():
            parts = Path(member).parts
            if member.startswith(("/", "\\")) or ".." in parts:
                raise InvalidBundleError(f"Unsafe path in archive: {member}")


def build_archive(token_dir: Path, profile_root: Path, target: Path) -> Path:
    """Write ``tokens/`` and ``userDataDir/`` trees into a zip at ``target``."""
    with zipfile.ZipFile(target, "w", zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
        _add_tree(zf, token_dir, TOKENS_ARCNAME)
        _add_tree(zf, profile_root, PROFILES_ARCNAME)
    return target


def _add_tree(zf: zipfile.ZipFile, root: Path, arcname: str) -> None:
    if not root.is_dir():
        return
    zf.writestr(f"{arcname}/", "")
    for current, dirs, files in os.walk(root):
        rel = Path(current).relative_to(root)
        base = Path(arcname) / rel
        for d in dirs:
            if not os.path.islink(os.path.join(current, d)):
                zf.writestr(f"{(base / d).as_posix()}/", "")
        for f in files:
            full = os.path.join(current, f)
            # Browser lock files are dangling symlinks
            if os.path.islink(full):
                continue
            zf.write(full, (base / f).as_posix())


class BulkBackupManager:
    """Exports and imports all sessions as a single zip bundle."""

    def __init__(
        self,
        supervisor: SessionSupervisor,
        token_dir: Path,
        profile_root: Path,
        path_store: Optional[PathStore] = None,
    ):
        self.supervisor = supervisor
        self.token_dir = Path(token_dir)
        self.profile_root = Path(profile_root)
        self.paths = path_store or PathStore()

    async def export_archive(self) -> Path:
        """
        Stop all sessions and bundle their data.

        Returns:
            Path of a temporary zip file. Pass it to ``finish_export`` once
            it has been delivered.
        """
        await self.supervisor.close_all()

        fd, name = tempfile.mkstemp(prefix="warden_sessions_", suffix=".zip")
        os.close(fd)
        target = Path(name)
        try:
            await asyncio.to_thread(build_archive, self.token_dir, self.profile_root, target)
        except Exception:
            target.unlink(missing_ok=True)
            await self.supervisor.start_all()
            raise
        logger.info(f"Sessions archived to {target}")
        return target

    async def finish_export(self, archive: Path) -> None:
        """Remove the delivered archive and bring sessions back up."""
        Path(archive).unlink(missing_ok=True)
        logger.info("Sessions successfully backed up. Restarting sessions...")
        await self.supervisor.start_all()

    async def import_archive(
        self, archive: Path, content_type: Optional[str] = None
    ) -> dict[str, Any]:
        """
        Restore sessions from a bundle made by ``export_archive``.

        Tokens overwrite existing ones; profile files already on disk are kept.

        Raises:
            InvalidBundleError: Before anything is stopped or written.
        """
        validate_bundle(Path(archive), content_type)

        logger.info("Starting restore sessions...")
        await self.supervisor.close_all()

        result = {"success": True, "tokens": False, "profiles": False}
        with tempfile.TemporaryDirectory(prefix="warden_restore_") as staging:
            await asyncio.to_thread(_extract, Path(archive), Path(staging))

            tokens = Path(staging) / TOKENS_ARCNAME
            try:
                await self.paths.copy_tree(tokens, self.token_dir, overwrite=True)
                result["tokens"] = True
            except OSError:
                logger.info("Folder 'tokens' not found.")

            profiles = Path(staging) / PROFILES_ARCNAME
            try:
                await self.paths.copy_tree(profiles, self.profile_root, overwrite=False)
                result["profiles"] = True
            except OSError:
                logger.info("Folder 'userDataDir' not found.")

        logger.info("Sessions successfully restored. Starting...")
        result["sessions"] = await self.supervisor.start_all()
        return result


def _extract(archive: Path, staging: Path) -> None:
    with zipfile.ZipFile(archive) as zf:
        zf.extractall(staging)
