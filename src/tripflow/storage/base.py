"""Base classes for key-value storage backends."""

from abc import ABC, abstractmethod
from typing import Optional

DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024  # 5MB, same class as browser profile storage


class KeyValueStore(ABC):
    """Abstract string-keyed, string-valued persistent store.

    All cache persistence goes through this interface so the same cache and
    session logic can run against any backing store.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the backend name."""
        ...

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored string for ``key`` or None if absent."""
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``.

        Raises:
            StorageQuotaError: If the write would exceed the store's capacity.
            StorageError: For any other backend failure.
        """
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``. Missing keys are ignored."""
        ...

    @abstractmethod
    def keys(self) -> list[str]:
        """List all stored keys."""
        ...

    def keys_with_prefix(self, prefix: str) -> list[str]:
        """List stored keys starting with ``prefix``."""
        return [k for k in self.keys() if k.startswith(prefix)]

    def size_bytes(self) -> int:
        """Approximate number of bytes used (keys plus values)."""
        total = 0
        for key in self.keys():
            value = self.get(key) or ""
            total += len(key.encode("utf-8")) + len(value.encode("utf-8"))
        return total


class StorageError(Exception):
    """Base exception for storage backend errors."""

    def __init__(self, message: str, backend: str = "", key: str = ""):
        super().__init__(message)
        self.backend = backend
        self.key = key


class StorageQuotaError(StorageError):
    """Raised when a write would exceed the store's capacity."""
