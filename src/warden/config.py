"""
Configuration for the warden server.

Defaults are overridden by an optional JSON file (``$WARDEN_CONFIG`` or
``config/warden.json`` under the project directory) and then by ``WARDEN_*``
environment variables.
"""

import json
import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from warden.logger import get_logger

logger = get_logger(__name__)

PROJECT_DIR = Path(os.getenv("WARDEN_HOME", Path.cwd())).resolve()
DATA_DIR = PROJECT_DIR / "data"
ENV_PREFIX = "WARDEN_"


class WebhookSettings(BaseModel):
    """Server-wide webhook target and per-event toggles."""

    url: Optional[str] = None
    listen_acks: bool = True
    on_presence_changed: bool = True
    on_participants_changed: bool = True
    on_reaction_message: bool = True
    on_revoked_message: bool = True
    on_poll_response: bool = True
    on_label_updated: bool = True
    on_self_message: bool = False


class Settings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 21465
    log_level: str = "INFO"
    log_file: Optional[str] = None

    token_store_path: Path = Field(default_factory=lambda: PROJECT_DIR / "tokens")
    user_data_dir: Path = Field(default_factory=lambda: PROJECT_DIR / "userDataDir")

    # Backups (seconds)
    backup_sync_interval: float = 60.0
    backup_stabilization_delay: float = 60.0
    rm_max_retries: int = 4

    # Health checks (seconds)
    health_check_enabled: bool = True
    health_check_interval: float = 600.0

    start_all_on_boot: bool = True
    client_driver: Optional[str] = None
    device_name: str = "Warden"
    powered_by: str = "Warden-Server"
    browser_args: list[str] = Field(default_factory=list)
    instance_memory_mb: int = 650

    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Build settings from file and environment."""
        data: dict[str, Any] = {}

        path = config_path or Path(
            os.getenv("WARDEN_CONFIG", PROJECT_DIR / "config" / "warden.json")
        )
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                logger.info(f"Loaded config from {path}")
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Failed to read config {path}: {e}")

        _apply_env_overrides(data)
        return cls(**data)


def _apply_env_overrides(data: dict[str, Any]) -> None:
    """Merge ``WARDEN_<FIELD>`` and ``WARDEN_WEBHOOK_<FIELD>`` variables into data."""
    for name in Settings.model_fields:
        if name == "webhook":
            continue
        value = os.getenv(f"{ENV_PREFIX}{name.upper()}")
        if value is None:
            continue
        if name == "browser_args":
            data[name] = _parse_list(value)
        else:
            data[name] = value

    webhook = dict(data.get("webhook") or {})
    for name in WebhookSettings.model_fields:
        value = os.getenv(f"{ENV_PREFIX}WEBHOOK_{name.upper()}")
        if value is not None:
            webhook[name] = value
    if webhook:
        data["webhook"] = webhook


def _parse_list(value: str) -> list[str]:
    value = value.strip()
    if value.startswith("["):
        return json.loads(value)
    return [item.strip() for item in value.split(",") if item.strip()]


class _ConfigProxy:
    """Module-level handle whose settings can be reloaded in place."""

    def __init__(self):
        self._settings = Settings.load()

    def reload(self, config_path: Optional[Path] = None) -> Settings:
        self._settings = Settings.load(config_path)
        return self._settings

    def override(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings

    def __getattr__(self, item: str) -> Any:
        return getattr(self._settings, item)


CONFIG = _ConfigProxy()
