"""Expiring cache with stale-while-revalidate and optional compression."""

import asyncio
import base64
import binascii
import dataclasses
import hashlib
import json
import logging
import math
import time
import zlib
from typing import Any, Awaitable, Callable, Dict, Optional

from ..models.cache import CacheEntry
from ..storage.base import KeyValueStore, StorageError, StorageQuotaError

logger = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[Any]]

# Share of capacity kept after an eviction pass
EVICTION_RETAIN_RATIO = 0.8


class ExpiringCache:
    """Key/value cache with TTL, a stale window and write-through persistence.

    An entry is fresh while ``age <= ttl``, stale while
    ``ttl < age <= ttl + stale_window`` and unreachable afterwards.
    """

    def __init__(
        self,
        name: str = "default",
        ttl_seconds: float = 3600,
        stale_seconds: float = 0,
        max_entries: int = 100,
        store: Optional[KeyValueStore] = None,
        key_prefix: str = "cache:",
    ):
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.stale_seconds = stale_seconds
        self.max_entries = max_entries
        self.store = store
        self.key_prefix = key_prefix
        self.entries: Dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0
        self.refreshes = 0
        self.evictions = 0
        self._refresh_tasks: Dict[str, asyncio.Task] = {}

    def create_key(self, name: str, parameters: Dict[str, Any]) -> str:
        """Create a cache key from a name and request parameters."""
        # Sort parameters for consistent hashing
        params_str = json.dumps(parameters, sort_keys=True, default=str)
        key_data = f"{name}:{params_str}"
        return hashlib.sha256(key_data.encode()).hexdigest()

    # -- freshness -----------------------------------------------------

    def _ttl_for(self, entry: CacheEntry) -> float:
        return entry.ttl_seconds if entry.ttl_seconds is not None else self.ttl_seconds

    def _age(self, entry: CacheEntry) -> float:
        return time.time() - entry.timestamp

    def _is_expired(self, entry: CacheEntry, age: float) -> bool:
        return age > self._ttl_for(entry) + self.stale_seconds

    # -- encoding ------------------------------------------------------

    def _encode(self, value: Any) -> Optional[str]:
        try:
            raw = json.dumps(value).encode("utf-8")
        except (TypeError, ValueError) as e:
            logger.debug(f"{self.name}: value not serialisable, storing uncompressed: {e}")
            return None
        return base64.b64encode(zlib.compress(raw)).decode("ascii")

    def _decode(self, entry: CacheEntry) -> Any:
        if not entry.compressed:
            return entry.value
        try:
            raw = zlib.decompress(base64.b64decode(entry.value, validate=True))
            return json.loads(raw.decode("utf-8"))
        except (binascii.Error, zlib.error, ValueError, TypeError) as e:
            logger.warning(f"{self.name}: failed to decompress entry, returning raw value: {e}")
            return entry.value

    # -- persistence ---------------------------------------------------

    def _storage_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _persist(self, key: str, entry: CacheEntry) -> None:
        if self.store is None:
            return
        try:
            payload = json.dumps(entry.to_dict())
        except (TypeError, ValueError) as e:
            logger.warning(f"{self.name}: cannot serialise entry {key}, kept in memory only: {e}")
            return
        try:
            self.store.set(self._storage_key(key), payload)
        except StorageQuotaError as e:
            logger.warning(f"{self.name}: storage quota exceeded persisting {key}: {e}")
        except StorageError as e:
            logger.error(f"{self.name}: failed to persist {key}: {e}")

    def _load_persisted(self, key: str) -> Optional[CacheEntry]:
        if self.store is None:
            return None
        try:
            raw = self.store.get(self._storage_key(key))
        except StorageError as e:
            logger.error(f"{self.name}: failed to read {key} from storage: {e}")
            return None
        if raw is None:
            return None
        try:
            return CacheEntry.from_dict(json.loads(raw))
        except (TypeError, ValueError) as e:
            logger.warning(f"{self.name}: dropping corrupt stored entry {key}: {e}")
            self._delete_persisted(key)
            return None

    def _delete_persisted(self, key: str) -> None:
        if self.store is None:
            return
        try:
            self.store.delete(self._storage_key(key))
        except StorageError as e:
            logger.error(f"{self.name}: failed to delete {key} from storage: {e}")

    def _stored_keys(self) -> list[str]:
        if self.store is None:
            return []
        try:
            stored = self.store.keys_with_prefix(self.key_prefix)
        except StorageError as e:
            logger.error(f"{self.name}: failed to list stored keys: {e}")
            return []
        return [k[len(self.key_prefix):] for k in stored]

    def hydrate(self) -> int:
        """Load persisted entries into memory.

        Corrupt or expired records are dropped without stopping the rest.

        Returns:
            Number of entries loaded.
        """
        loaded = 0
        for key in self._stored_keys():
            entry = self._load_persisted(key)
            if entry is None:
                continue
            if self._is_expired(entry, self._age(entry)):
                self._delete_persisted(key)
                continue
            self.entries[key] = entry
            loaded += 1

        if len(self.entries) > self.max_entries:
            self._evict()

        logger.info(f"{self.name}: hydrated {loaded} entries from {self.store.name if self.store else 'nothing'}")
        return loaded

    # -- core operations -----------------------------------------------

    def _lookup(self, key: str) -> Optional[CacheEntry]:
        entry = self.entries.get(key)
        if entry is None:
            entry = self._load_persisted(key)
            if entry is not None:
                self.entries[key] = entry
        return entry

    def _remove(self, key: str) -> bool:
        existed = self.entries.pop(key, None) is not None
        task = self._refresh_tasks.pop(key, None)
        if task is not None:
            task.cancel()
        self._delete_persisted(key)
        return existed

    def get(self, key: str) -> Optional[Any]:
        """Get a value if it is fresh or within the stale window."""
        entry = self._lookup(key)
        if entry is None:
            self.misses += 1
            return None

        age = self._age(entry)
        if self._is_expired(entry, age):
            self._remove(key)
            self.misses += 1
            return None

        entry.stale = age > self._ttl_for(entry)
        self.hits += 1
        return self._decode(entry)

    def set(
        self,
        key: str,
        value: Any,
        compress: bool = False,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        """Set a value, optionally compressed and with its own TTL."""
        stored, compressed = value, False
        if compress:
            encoded = self._encode(value)
            if encoded is not None:
                stored, compressed = encoded, True

        entry = CacheEntry(
            value=stored,
            timestamp=time.time(),
            compressed=compressed,
            ttl_seconds=ttl_seconds,
        )
        # Re-insert so dict order follows write order
        self.entries.pop(key, None)
        self.entries[key] = entry
        self._persist(key, entry)

        if len(self.entries) > self.max_entries:
            self._evict()

    def delete(self, key: str) -> bool:
        """Delete a key from memory and storage."""
        existed = self._remove(key)
        if not existed and self.store is not None:
            existed = key in self._stored_keys()
            self._delete_persisted(key)
        return existed

    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``."""
        keys = {k for k in self.entries if k.startswith(prefix)}
        keys.update(k for k in self._stored_keys() if k.startswith(prefix))
        for key in keys:
            self._remove(key)
        return len(keys)

    def clear(self) -> None:
        """Clear all cache entries, including persisted ones."""
        for key in set(self.entries) | set(self._stored_keys()):
            self._remove(key)
        self.entries.clear()
        self.hits = 0
        self.misses = 0

    def inspect(self, key: str) -> Optional[CacheEntry]:
        """Return a copy of the in-memory entry for ``key``."""
        entry = self.entries.get(key)
        return dataclasses.replace(entry) if entry is not None else None

    def _evict(self) -> None:
        """Drop the oldest-written entries down to the retained share."""
        retain = max(1, math.ceil(self.max_entries * EVICTION_RETAIN_RATIO))
        count = len(self.entries) - retain
        if count <= 0:
            return
        oldest = sorted(self.entries.items(), key=lambda item: item[1].timestamp)[:count]
        for key, _ in oldest:
            self._remove(key)
        self.evictions += count
        logger.info(f"{self.name}: evicted {count} oldest entries")

    # -- stale-while-revalidate ----------------------------------------

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: FetchFn,
        compress: bool = False,
        force_refresh: bool = False,
        ttl_seconds: Optional[float] = None,
    ) -> Any:
        """Return a cached value, fetching or refreshing through ``fetch_fn``.

        Stale values are returned immediately and refreshed in the background,
        at most one refresh per key at a time.

        Raises:
            Whatever ``fetch_fn`` raises when no usable cached value exists.
        """
        entry = None if force_refresh else self._lookup(key)
        if entry is not None:
            age = self._age(entry)
            if not self._is_expired(entry, age):
                self.hits += 1
                entry.stale = age > self._ttl_for(entry)
                if entry.stale and not entry.refreshing:
                    entry.refreshing = True
                    self._schedule_refresh(key, fetch_fn, compress, ttl_seconds)
                return self._decode(entry)
            self._remove(key)

        self.misses += 1
        value = await fetch_fn()
        self.set(key, value, compress=compress, ttl_seconds=ttl_seconds)
        return value

    def _schedule_refresh(
        self,
        key: str,
        fetch_fn: FetchFn,
        compress: bool,
        ttl_seconds: Optional[float],
    ) -> None:
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._refresh(key, fetch_fn, compress, ttl_seconds))
        self._refresh_tasks[key] = task

        def _done(finished: asyncio.Task) -> None:
            if self._refresh_tasks.get(key) is finished:
                del self._refresh_tasks[key]

        task.add_done_callback(_done)

    def _clear_refreshing(self, key: str) -> None:
        entry = self.entries.get(key)
        if entry is not None:
            entry.refreshing = False

    async def _refresh(
        self,
        key: str,
        fetch_fn: FetchFn,
        compress: bool,
        ttl_seconds: Optional[float],
    ) -> None:
        self.refreshes += 1
        logger.debug(f"{self.name}: refreshing stale entry {key}")
        try:
            value = await fetch_fn()
        except asyncio.CancelledError:
            logger.debug(f"{self.name}: refresh of {key} cancelled, keeping stale value")
            self._clear_refreshing(key)
            raise
        except Exception as e:
            logger.warning(f"{self.name}: background refresh of {key} failed: {e}")
            self._clear_refreshing(key)
            return

        self.set(key, value, compress=compress, ttl_seconds=ttl_seconds)

    async def drain(self) -> None:
        """Wait for all in-flight background refreshes."""
        tasks = list(self._refresh_tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total_requests = self.hits + self.misses
        return {
            "name": self.name,
            "size": len(self.entries),
            "max_entries": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total_requests if total_requests > 0 else 0,
            "refreshes": self.refreshes,
            "refreshing": len(self._refresh_tasks),
            "evictions": self.evictions,
            "ttl_seconds": self.ttl_seconds,
            "stale_seconds": self.stale_seconds,
        }
