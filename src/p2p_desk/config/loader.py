"""Config loader — reads YAML, applies P2P_* env var overrides."""

from __future__ import annotations

import os
from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from p2p_desk.config.schema import AppConfig, PositioningSettings

log = structlog.get_logger("config")

# env var -> (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "P2P_DATABASE_URL": ("database", "url"),
    "P2P_LOG_LEVEL": ("logging", "level"),
    "P2P_LOG_FORMAT": ("logging", "format"),
    "P2P_API_KEY": ("marketplace", "api_key"),
    "P2P_API_SECRET": ("marketplace", "api_secret"),
    "P2P_MY_NICKNAME": ("positioning", "my_nickname"),
    "P2P_TOTP_SECRET": ("totp", "secret"),
    "P2P_ENABLE_AUTO_RELEASE": ("release", "enabled"),
}


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load config from a YAML file, then apply env var overrides.

    If *path* is None or the file doesn't exist, returns defaults.

    Environment variable overrides:
        P2P_DATABASE_URL         -> database.url
        P2P_LOG_LEVEL            -> logging.level
        P2P_LOG_FORMAT           -> logging.format
        P2P_API_KEY              -> marketplace.api_key
        P2P_API_SECRET           -> marketplace.api_secret
        P2P_MY_NICKNAME          -> positioning.my_nickname
        P2P_TOTP_SECRET          -> totp.secret
        P2P_ENABLE_AUTO_RELEASE  -> release.enabled
    """
    data: dict = {}
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p) as f:
                data = yaml.safe_load(f) or {}

    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            data.setdefault(section, {})[key] = value

    return AppConfig.model_validate(data)


class PositioningWatcher:
    """Callable returning the current positioning settings.

    The config file is re-read whenever its modification time changes. A
    file that fails to load or validate is logged and the last good
    settings stay in force.
    """

    def __init__(self, path: str | Path | None, initial: PositioningSettings) -> None:
        self.path = Path(path) if path is not None else None
        self._settings = initial
        self._mtime = self._stat()

    def _stat(self) -> int | None:
        if self.path is None:
            return None
        try:
            return self.path.stat().st_mtime_ns
        except FileNotFoundError:
            return None

    def __call__(self) -> PositioningSettings:
        mtime = self._stat()
        if mtime is None or mtime == self._mtime:
            return self._settings
        self._mtime = mtime
        try:
            settings = load_config(self.path).positioning
        except (OSError, yaml.YAMLError, ValidationError) as e:
            log.warning("positioning_reload_failed", path=str(self.path), error=str(e))
            return self._settings
        self._settings = settings
        log.info("positioning_reloaded", path=str(self.path))
        return settings
