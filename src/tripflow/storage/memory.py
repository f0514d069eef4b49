"""In-memory key-value store with a byte quota."""

import logging
from typing import Dict, Optional

from .base import DEFAULT_QUOTA_BYTES, KeyValueStore, StorageQuotaError

logger = logging.getLogger(__name__)


def _entry_size(key: str, value: str) -> int:
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


class MemoryStore(KeyValueStore):
    """Process-local store, mainly for tests and ephemeral runs."""

    def __init__(self, quota_bytes: int = DEFAULT_QUOTA_BYTES):
        self.quota_bytes = quota_bytes
        self._data: Dict[str, str] = {}
        self._used = 0

    @property
    def name(self) -> str:
        return "memory"

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        previous = self._data.get(key)
        released = _entry_size(key, previous) if previous is not None else 0
        needed = _entry_size(key, value)

        if self._used - released + needed > self.quota_bytes:
            raise StorageQuotaError(
                f"Quota of {self.quota_bytes} bytes exceeded writing {key}",
                backend=self.name,
                key=key,
            )

        self._data[key] = value
        self._used += needed - released

    def delete(self, key: str) -> None:
        value = self._data.pop(key, None)
        if value is not None:
            self._used -= _entry_size(key, value)

    def keys(self) -> list[str]:
        return list(self._data.keys())

    def size_bytes(self) -> int:
        return self._used

    def clear(self) -> None:
        """Remove everything."""
        self._data.clear()
        self._used = 0
