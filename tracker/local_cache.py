"""Device-local snapshot of the last merged catalog tree."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List

from .config import DEFAULT_CACHE_KEY
from .errors import LocalStorageError
from .models import Category, categories_from_payload, categories_to_payload

logger = logging.getLogger(__name__)


class LocalCache:
    """One string-keyed slot in a JSON file holding a serialized ``Category`` list.

    ``read`` and ``write`` never raise: storage problems are logged and the
    caller carries on with an empty result. Writes go through a temporary file
    and ``os.replace`` so readers never observe a half-written snapshot.
    """

    def __init__(self, path: Path, key: str = DEFAULT_CACHE_KEY) -> None:
        self.path = Path(path)
        self.key = key

    def read(self) -> List[Category]:
        try:
            raw = self._load_slots().get(self.key)
            if not raw:
                return []
            return categories_from_payload(json.loads(raw))
        except (LocalStorageError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Local cache unreadable at %s: %s", self.path, exc)
            return []

    def write(self, categories: List[Category]) -> None:
        try:
            slots = self._load_slots()
        except LocalStorageError as exc:
            logger.warning("Replacing unreadable local cache at %s: %s", self.path, exc)
            slots = {}
        slots[self.key] = json.dumps(categories_to_payload(categories), ensure_ascii=False)
        try:
            self._save_slots(slots)
        except LocalStorageError as exc:
            logger.error("Failed to save data locally: %s", exc)

    def clear(self) -> None:
        try:
            slots = self._load_slots()
            if slots.pop(self.key, None) is not None:
                self._save_slots(slots)
        except LocalStorageError as exc:
            logger.error("Failed to clear local cache: %s", exc)

    def _load_slots(self) -> Dict[str, Any]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise LocalStorageError(str(exc)) from exc
        text = text.strip()
        if not text:
            return {}
        try:
            slots = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LocalStorageError(f"corrupt cache file: {exc}") from exc
        if not isinstance(slots, dict):
            raise LocalStorageError("cache file does not hold a slot mapping")
        return slots

    def _save_slots(self, slots: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".cache-", suffix=".json", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(slots, handle, ensure_ascii=False, indent=2)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            raise LocalStorageError(str(exc)) from exc
