"""
Local configuration: data directory, key/value settings store and logging setup.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path

from .history import atomic_write_text

logger = logging.getLogger("gemini_chat.settings")

APP_NAME = "GeminiChat"
HOME_ENV_VAR = "GEMINI_CHAT_HOME"
API_KEY_ENV_VAR = "GEMINI_API_KEY"
HISTORY_FILENAME = "chat-history.json"
SETTINGS_FILENAME = "settings.json"

API_KEY_ACCOUNT = "gemini-api-key"
MODEL_PREFERENCE_KEY = "gemini-model"
SYSTEM_PROMPT_PREFERENCE_KEY = "gemini-system-prompt"
SAFETY_PRESET_PREFERENCE_KEY = "gemini-safety-preset"

DEFAULT_MODEL = "gemini-2.0-flash"
RETIRED_MODEL_ALIASES = frozenset({"gemini-3"})

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_log_handler: logging.StreamHandler | None = None


def app_data_dir() -> Path:
    """Directory holding history and settings for the current user."""
    override = os.environ.get(HOME_ENV_VAR, "").strip()
    if override:
        return Path(override).expanduser()
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_NAME
    xdg_data = os.environ.get("XDG_DATA_HOME", "").strip()
    base = Path(xdg_data).expanduser() if xdg_data else Path.home() / ".local" / "share"
    return base / "gemini-chat"


def history_path(data_dir: Path | None = None) -> Path:
    return (data_dir or app_data_dir()) / HISTORY_FILENAME


def settings_path(data_dir: Path | None = None) -> Path:
    return (data_dir or app_data_dir()) / SETTINGS_FILENAME


def effective_model(saved: str | None) -> str:
    """Saved model preference, or the default when it is blank or retired."""
    trimmed = (saved or "").strip()
    if not trimmed or trimmed in RETIRED_MODEL_ALIASES:
        return DEFAULT_MODEL
    return trimmed


class SettingsError(Exception):
    """The local settings file could not be read or written."""


class LocalStore:
    """String key/value store backed by a JSON file.

    Keys are namespaced as ``"<service>.<account>"`` so several services can
    share one file. Reads of unset keys return None.
    """

    def __init__(self, path: Path, service: str = APP_NAME) -> None:
        self.path = path
        self.service = service

    def save_string(self, value: str, account: str) -> None:
        data = self._read_all()
        data[self._namespaced_key(account)] = value
        self._write_all(data)

    def read_string(self, account: str) -> str | None:
        value = self._read_all().get(self._namespaced_key(account))
        return value if isinstance(value, str) else None

    def delete_string(self, account: str) -> None:
        data = self._read_all()
        if data.pop(self._namespaced_key(account), None) is not None:
            self._write_all(data)

    def _namespaced_key(self, account: str) -> str:
        return f"{self.service}.{account}"

    def _read_all(self) -> dict[str, object]:
        if not self.path.exists():
            return {}
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise SettingsError(f"Failed to read {self.path}: {exc}") from exc
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise SettingsError(f"{self.path.name} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise SettingsError(f"{self.path.name} must contain a JSON object")
        return data

    def _write_all(self, data: dict[str, object]) -> None:
        try:
            atomic_write_text(self.path, json.dumps(data, indent=2, sort_keys=True) + "\n")
        except OSError as exc:
            raise SettingsError(f"Failed to write {self.path}: {exc}") from exc


# ── Logging ───────────────────────────────────────────────────────────────────


def resolve_log_level(level: str | int, fallback: int = logging.WARNING) -> int:
    """Accept a level name or number; unknown values fall back with a warning."""
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        if level.isdigit():
            return int(level)
        resolved = logging.getLevelName(level.upper())
        if isinstance(resolved, int):
            return resolved
    logger.warning(
        "[GeminiChat Settings] Unsupported log level '%s'; falling back to %s.",
        level,
        logging.getLevelName(fallback),
    )
    return fallback


def configure_logging(level: str | int = logging.WARNING) -> int:
    """Send ``gemini_chat`` logs to stderr at ``level``; returns the resolved level."""
    global _log_handler
    resolved = resolve_log_level(level)
    package_logger = logging.getLogger("gemini_chat")
    if _log_handler is None:
        _log_handler = logging.StreamHandler(sys.stderr)
        _log_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(_log_handler)
    else:
        _log_handler.setStream(sys.stderr)
    package_logger.setLevel(resolved)
    return resolved
