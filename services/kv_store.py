"""Small JSON-file key-value store for settings, device id and the conversation index.

The whole document is read on every access and rewritten atomically on
every set, so a crash mid-write never leaves a truncated file behind.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULTS: dict[str, Any] = {
    "settings": {
        "webhookUrl": "",
        "apiToken": "",
        "username": "",
        "theme": "dark",
    },
    "deviceId": "",
    "lastConversationId": "",
    "conversationsIndex": [],
}


class JsonStore:
    def __init__(self, path: Path, defaults: dict[str, Any] | None = None):
        self.path = Path(path)
        self._defaults = defaults if defaults is not None else DEFAULTS
        self._lock = threading.Lock()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Could not read %s, using defaults: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _dump(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    def get(self, key: str) -> Any:
        with self._lock:
            data = self._load()
        if key in data:
            return data[key]
        return copy.deepcopy(self._defaults.get(key))

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._dump(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._dump(data)
