"""
Persistent per-session credential records.

A token record is the opaque JSON blob the remote client needs to resume an
authenticated session, plus the request config it was started with.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from warden.logger import get_logger

logger = get_logger(__name__)

TOKEN_SUFFIX = ".data.json"


class TokenStore(ABC):
    """Storage for token records keyed by session name."""

    @abstractmethod
    async def get(self, session: str) -> Optional[dict[str, Any]]:
        pass

    @abstractmethod
    async def set(self, session: str, record: dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def remove(self, session: str) -> bool:
        pass

    @abstractmethod
    async def list_names(self) -> list[str]:
        """Names of every session with a stored record."""
        pass


class FileTokenStore(TokenStore):
    """Stores each record as ``<root>/<session>.data.json``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, session: str) -> Path:
        if not session or "/" in session or "\\" in session or session in (".", ".."):
            raise ValueError(f"Invalid session name: {session!r}")
        return self.root / f"{session}{TOKEN_SUFFIX}"

    async def get(self, session: str) -> Optional[dict[str, Any]]:
        return await asyncio.to_thread(self._read, self.path_for(session))

    async def set(self, session: str, record: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, self.path_for(session), record)

    async def remove(self, session: str) -> bool:
        path = self.path_for(session)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        logger.info(f"[{session}] Removed token record")
        return True

    async def list_names(self) -> list[str]:
        return await asyncio.to_thread(self._scan)

    def _read(self, path: Path) -> Optional[dict[str, Any]]:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt token record {path}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def _write(self, path: Path, record: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(record, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, path)

    def _scan(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name[: -len(TOKEN_SUFFIX)]
            for entry in self.root.iterdir()
            if entry.is_file() and entry.name.endswith(TOKEN_SUFFIX)
        )


def merge_config(record: Optional[dict[str, Any]], config: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``record`` carrying ``config`` as its current config."""
    merged = dict(record or {})
    merged["config"] = dict(config)
    return merged


def config_from_record(record: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Recover the request config persisted alongside a token."""
    if not record:
        return {}
    config = dict(record.get("config") or {})
    for key in ("webhook", "proxy"):
        if record.get(key) and key not in config:
            config[key] = record[key]
    return config
