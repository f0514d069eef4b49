"""JSON file backed key-value store."""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Union

from .base import DEFAULT_QUOTA_BYTES, KeyValueStore, StorageError, StorageQuotaError

logger = logging.getLogger(__name__)


class JsonFileStore(KeyValueStore):
    """Durable store keeping every key in a single JSON document.

    The whole document is rewritten on each mutation (write to a temp file,
    then rename), which keeps the file readable after a crash mid-write.
    """

    def __init__(self, path: Union[str, Path], quota_bytes: int = DEFAULT_QUOTA_BYTES):
        self.path = Path(path).expanduser()
        self.quota_bytes = quota_bytes
        self._data: Dict[str, str] = {}
        self._load()

    @property
    def name(self) -> str:
        return "json-file"

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read store file {self.path}, starting empty: {e}")
            return

        if not isinstance(raw, dict):
            logger.error(f"Store file {self.path} does not hold an object, starting empty")
            return

        # Values must be strings; anything else is a foreign or corrupt record
        self._data = {k: v for k, v in raw.items() if isinstance(v, str)}
        logger.info(f"Loaded {len(self._data)} keys from {self.path}")

    def _flush(self) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self._data, f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageError(f"Failed to write {self.path}: {e}", backend=self.name) from e

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def _restore(self, key: str, previous: Optional[str]) -> None:
        if previous is None:
            self._data.pop(key, None)
        else:
            self._data[key] = previous

    def set(self, key: str, value: str) -> None:
        previous = self._data.get(key)
        self._data[key] = value
        if self.size_bytes() > self.quota_bytes:
            self._restore(key, previous)
            raise StorageQuotaError(
                f"Quota of {self.quota_bytes} bytes exceeded writing {key}",
                backend=self.name,
                key=key,
            )
        try:
            self._flush()
        except StorageError:
            # Memory must not run ahead of the file
            self._restore(key, previous)
            raise

    def delete(self, key: str) -> None:
        previous = self._data.pop(key, None)
        if previous is None:
            return
        try:
            self._flush()
        except StorageError:
            self._restore(key, previous)
            raise

    def keys(self) -> list[str]:
        return list(self._data.keys())
