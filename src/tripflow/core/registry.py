"""Namespace registry for scoped, per-policy caches."""

import logging
from typing import Any, Callable, Dict, List, Optional

from ..models.cache import NAMESPACE_POLICIES, CacheEvent, CacheNamespace, NamespaceConfig
from .cache import ExpiringCache, FetchFn
from ..storage.base import KeyValueStore

logger = logging.getLogger(__name__)

Listener = Callable[[CacheEvent, Dict[str, Any]], None]

STORAGE_PREFIX = "cache:"


class NamespaceRegistry:
    """Registry of namespaced caches sharing one key-value store.

    Keys are partitioned as ``namespace[:user_id]:key``; entries of two users
    never collide even though they live in the same store.
    """

    def __init__(self, store: Optional[KeyValueStore] = None, user_id: Optional[str] = None):
        self.store = store
        self.current_user_id = user_id
        self._configs: Dict[CacheNamespace, NamespaceConfig] = {}
        self._caches: Dict[CacheNamespace, ExpiringCache] = {}
        self._listeners: Dict[CacheEvent, List[Listener]] = {}

    def register_defaults(self) -> None:
        """Register every namespace with its default policy."""
        for config in NAMESPACE_POLICIES.values():
            self.register_cache(config)

    def register_cache(self, config: NamespaceConfig) -> ExpiringCache:
        """Register a namespace, hydrating it from the store if persistent.

        Raises:
            ValueError: If the namespace is already registered with a
                different policy.
        """
        existing = self._configs.get(config.namespace)
        if existing is not None:
            if existing != config:
                raise ValueError(
                    f"Namespace {config.namespace.value} already registered with a different policy"
                )
            return self._caches[config.namespace]

        cache = ExpiringCache(
            name=config.namespace.value,
            ttl_seconds=config.ttl_seconds,
            stale_seconds=config.stale_seconds,
            max_entries=config.max_entries,
            store=self.store if config.persistence else None,
            key_prefix=f"{STORAGE_PREFIX}{config.namespace.value}:",
        )
        self._configs[config.namespace] = config
        self._caches[config.namespace] = cache
        logger.info(f"Registered cache namespace: {config.namespace.value}")

        if cache.store is not None:
            cache.hydrate()
        return cache

    def is_registered(self, namespace: CacheNamespace) -> bool:
        return CacheNamespace(namespace) in self._configs

    def get_config(self, namespace: CacheNamespace) -> Optional[NamespaceConfig]:
        return self._configs.get(CacheNamespace(namespace))

    def _resolve(self, namespace: CacheNamespace) -> Optional[ExpiringCache]:
        cache = self._caches.get(CacheNamespace(namespace))
        if cache is None:
            logger.warning(f"Cache namespace not registered: {namespace}")
        return cache

    def _scoped_key(self, namespace: CacheNamespace, key: str, user_id: Optional[str]) -> str:
        config = self._configs[CacheNamespace(namespace)]
        owner = user_id if user_id is not None else self.current_user_id
        if config.user_scoped and owner:
            return f"{owner}:{key}"
        return key

    def generate_key(self, namespace: CacheNamespace, key: str, user_id: Optional[str] = None) -> str:
        """Physical key of ``key`` in ``namespace`` for the given or current user."""
        namespace = CacheNamespace(namespace)
        return f"{namespace.value}:{self._scoped_key(namespace, key, user_id)}"

    def get(self, namespace: CacheNamespace, key: str, user_id: Optional[str] = None) -> Optional[Any]:
        cache = self._resolve(namespace)
        if cache is None:
            return None
        return cache.get(self._scoped_key(namespace, key, user_id))

    def set(
        self,
        namespace: CacheNamespace,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> None:
        cache = self._resolve(namespace)
        if cache is None:
            return
        config = self._configs[CacheNamespace(namespace)]
        cache.set(
            self._scoped_key(namespace, key, user_id),
            value,
            compress=config.compress,
            ttl_seconds=ttl,
        )

    def delete(self, namespace: CacheNamespace, key: str, user_id: Optional[str] = None) -> bool:
        cache = self._resolve(namespace)
        if cache is None:
            return False
        return cache.delete(self._scoped_key(namespace, key, user_id))

    def delete_prefix(self, namespace: CacheNamespace, prefix: str, user_id: Optional[str] = None) -> int:
        """Delete keys starting with ``prefix`` in the given or current user's scope."""
        cache = self._resolve(namespace)
        if cache is None:
            return 0
        return cache.delete_prefix(self._scoped_key(namespace, prefix, user_id))

    def clear(self, namespace: CacheNamespace) -> None:
        """Clear a whole namespace for every user."""
        cache = self._resolve(namespace)
        if cache is None:
            return
        cache.clear()
        logger.info(f"Cleared cache namespace: {CacheNamespace(namespace).value}")

    def clear_user(self, user_id: Optional[str] = None) -> int:
        """Clear every user-scoped entry belonging to a user.

        Returns:
            Number of entries removed.
        """
        owner = user_id if user_id is not None else self.current_user_id
        if not owner:
            return 0

        removed = 0
        for namespace, config in self._configs.items():
            if config.user_scoped:
                removed += self._caches[namespace].delete_prefix(f"{owner}:")
        logger.info(f"Cleared {removed} cache entries for user {owner}")
        return removed

    def clear_all(self) -> None:
        """Clear every registered namespace."""
        for namespace in list(self._caches):
            self.clear(namespace)

    async def get_or_fetch(
        self,
        namespace: CacheNamespace,
        key: str,
        fetch_fn: FetchFn,
        force_refresh: bool = False,
        user_id: Optional[str] = None,
    ) -> Any:
        """Read through a namespace, fetching on a miss.

        An unregistered namespace bypasses caching and calls ``fetch_fn``.
        """
        cache = self._resolve(namespace)
        if cache is None:
            return await fetch_fn()
        config = self._configs[CacheNamespace(namespace)]
        return await cache.get_or_fetch(
            self._scoped_key(namespace, key, user_id),
            fetch_fn,
            compress=config.compress,
            force_refresh=force_refresh,
        )

    async def drain(self) -> None:
        """Wait for background refreshes in every namespace."""
        for cache in self._caches.values():
            await cache.drain()

    # -- user and events -----------------------------------------------

    def set_current_user(self, user_id: Optional[str]) -> None:
        """Switch the scoping user, emitting login/logout/switch events."""
        previous = self.current_user_id
        if previous == user_id:
            return
        self.current_user_id = user_id

        if previous is None:
            self.emit(CacheEvent.USER_LOGIN, {"user_id": user_id})
        elif user_id is None:
            self.emit(CacheEvent.USER_LOGOUT, {"previous_user_id": previous})
        else:
            self.emit(CacheEvent.USER_SWITCH, {"previous_user_id": previous, "user_id": user_id})

    def add_listener(self, event: CacheEvent, listener: Listener) -> None:
        self._listeners.setdefault(CacheEvent(event), []).append(listener)

    def remove_listener(self, event: CacheEvent, listener: Listener) -> None:
        listeners = self._listeners.get(CacheEvent(event), [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: CacheEvent, data: Optional[Dict[str, Any]] = None) -> None:
        """Notify listeners of an event. A failing listener doesn't stop the rest."""
        event = CacheEvent(event)
        payload = data or {}
        logger.debug(f"Emitting cache event {event.value}: {payload}")
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(event, payload)
            except Exception as e:
                logger.error(f"Error in listener for {event.value}: {e}")

    def emit_destination_change(self, destination: Optional[str]) -> None:
        self.emit(CacheEvent.DESTINATION_CHANGE, {"destination": destination})

    def emit_conversation_reset(self) -> None:
        """Ask dependent caches to invalidate themselves. Deletes nothing here."""
        self.emit(CacheEvent.CONVERSATION_RESET)

    def get_debug_info(self) -> Dict[str, Any]:
        """Summary of registered namespaces and their statistics."""
        stats = {ns.value: cache.get_stats() for ns, cache in self._caches.items()}
        return {
            "namespaces": [ns.value for ns in self._configs],
            "total_entries": sum(s["size"] for s in stats.values()),
            "current_user": self.current_user_id,
            "store": self.store.name if self.store else None,
            "stats": stats,
        }
