"""Key-value storage backends for tripflow."""

from .base import DEFAULT_QUOTA_BYTES, KeyValueStore, StorageError, StorageQuotaError
from .file import JsonFileStore
from .memory import MemoryStore

__all__ = [
    "DEFAULT_QUOTA_BYTES",
    "KeyValueStore",
    "StorageError",
    "StorageQuotaError",
    "JsonFileStore",
    "MemoryStore",
]
