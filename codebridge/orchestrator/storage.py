"""Persisted client storage for the last selected model."""

import json
import logging
from pathlib import Path
from typing import Optional

from codebridge.core.configs import CONFIG_DIR

logger = logging.getLogger(__name__)

MODEL_STORAGE_KEY = "codebridge.opencode.model"


class ModelStore:
    """
    Remembers the last selected model in a small JSON key/value file at
    ~/.config/codebridge/storage.json

    Storage is best effort: a missing or corrupted file reads as "no stored
    model" and write failures are ignored.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path or CONFIG_DIR / "storage.json"

    def _load(self) -> dict:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    def read(self) -> str:
        value = self._load().get(MODEL_STORAGE_KEY)
        return value if isinstance(value, str) else ""

    def write(self, model: str) -> None:
        data = self._load()
        data[MODEL_STORAGE_KEY] = model
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.debug(f"Could not persist model to {self.path}: {e}")
