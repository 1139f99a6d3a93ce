from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)

SCHEDULED_NOTIFICATIONS_KEY = "scheduled_notifications"
LAST_RESET_KEY = "last_daily_reset"
HAPTIC_ENABLED_KEY = "feedback_haptic_enabled"
SOUND_ENABLED_KEY = "feedback_sound_enabled"


class LocalStorage:
    """Small durable key/value document for one user's device-local state.

    Values must be JSON serializable. Each write replaces the file atomically.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = self._read()

    @classmethod
    def for_user(cls, directory: str | Path, user_id: int) -> "LocalStorage":
        return cls(Path(directory) / f"user_{user_id}.json")

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("Failed to read local storage %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.error("Ignoring malformed local storage %s", self.path)
            return {}
        return data

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(self._data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            try:
                self._flush()
            except OSError as e:
                logger.error("Failed to save local storage %s: %s", self.path, e)

    def remove(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                try:
                    self._flush()
                except OSError as e:
                    logger.error("Failed to save local storage %s: %s", self.path, e)

    def clear(self) -> None:
        with self._lock:
            self._data = {}
            try:
                self.path.unlink(missing_ok=True)
            except OSError as e:
                logger.error("Failed to delete local storage %s: %s", self.path, e)
