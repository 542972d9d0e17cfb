"""Key/value settings store and the importer watermark kept in it."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

from posse_bridge.storage import JsonDocument

logger = logging.getLogger(__name__)

MOBILIZE_LAST_SYNC = "mobilize_last_sync"
DEFAULT_LOOKBACK = 24 * 60 * 60


class SettingsStore:
    def __init__(self, path: Path | None = None) -> None:
        self._doc = JsonDocument(path, on_load=self._apply)
        self._settings: dict[str, str] = {}
        self._doc.refresh()

    def _apply(self, data: dict[str, Any]) -> None:
        raw = data.get("settings", {})
        self._settings = {str(k): str(v) for k, v in raw.items()} if isinstance(raw, dict) else {}

    def get(self, key: str, default: str | None = None) -> str | None:
        with self._doc.locked():
            return self._settings.get(key, default)

    def set(self, key: str, value: str) -> None:
        with self._doc.locked():
            self._settings[key] = value
            self._doc.save({"settings": dict(self._settings)})


def read_watermark(settings: SettingsStore, now: float | None = None,
                   key: str = MOBILIZE_LAST_SYNC) -> int:
    """Unix time of the last completed import; now - 24h when unset or unreadable."""
    current = int(now if now is not None else time.time())
    raw = settings.get(key)
    if raw is not None:
        try:
            return int(raw)
        except ValueError:
            logger.warning("Ignoring unreadable %s value %r", key, raw)
    return current - DEFAULT_LOOKBACK


def write_watermark(settings: SettingsStore, now: float | None = None,
                    key: str = MOBILIZE_LAST_SYNC) -> int:
    value = int(now if now is not None else time.time())
    settings.set(key, str(value))
    return value
