"""Persisted preferences (~/.appdeploy/preferences.json).

A tiny key-value store with the four operations the orchestrator needs:
load_string / save_string / load_list / save_list (plus remove). Every
write is a locked read-modify-write of the whole JSON file, so two
appdeploy processes can share it.
"""

from __future__ import annotations

import fcntl
import json
import logging
from pathlib import Path
from typing import Any

from appdeploy.config import PREFERENCES_FILE

logger = logging.getLogger(__name__)


class PreferenceStore:
    """JSON-file backed preference store."""

    def __init__(self, path: Path = PREFERENCES_FILE) -> None:
        self.path = path

    def load_string(self, key: str) -> str | None:
        value = self._read().get(key)
        return value if isinstance(value, str) else None

    def save_string(self, key: str, value: str) -> None:
        self._update(key, value)

    def load_list(self, key: str) -> list[str]:
        value = self._read().get(key)
        if not isinstance(value, list):
            return []
        return [v for v in value if isinstance(v, str)]

    def save_list(self, key: str, value: list[str]) -> None:
        self._update(key, list(value))

    def remove(self, key: str) -> None:
        self._update(key, None)

    def _read(self) -> dict[str, Any]:
        """Read the file with a shared lock. Returns {} if missing or invalid."""
        if not self.path.exists():
            return {}

        try:
            fd = self.path.open("r")
            try:
                fcntl.flock(fd, fcntl.LOCK_SH)
                content = fd.read()
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
                fd.close()

            if not content.strip():
                return {}
            data = json.loads(content)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to read preferences file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _update(self, key: str, value: Any) -> None:
        """Set (or delete, when value is None) one key under an exclusive lock."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd = self.path.open("a+")
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            fd.seek(0)
            content = fd.read()
            try:
                data = json.loads(content) if content.strip() else {}
            except json.JSONDecodeError:
                logger.warning("Preferences file %s was corrupt, rewriting", self.path)
                data = {}
            if not isinstance(data, dict):
                data = {}

            if value is None:
                data.pop(key, None)
            else:
                data[key] = value

            fd.seek(0)
            fd.truncate()
            fd.write(json.dumps(data, indent=2))
            fd.flush()
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            fd.close()
