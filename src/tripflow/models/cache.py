"""Cache-related data models and namespace policies."""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR


@dataclass
class CacheEntry:
    """A single cached value plus its freshness bookkeeping."""

    value: Any
    timestamp: float
    compressed: bool = False
    stale: bool = False
    refreshing: bool = False
    ttl_seconds: Optional[float] = None  # overrides the namespace TTL when set

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        """Rebuild an entry from its persisted form.

        Raises:
            ValueError: If the record is missing fields or has the wrong types.
        """
        if not isinstance(data, dict) or "value" not in data:
            raise ValueError("Cache record must be an object with a value")
        timestamp = data.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise ValueError(f"Invalid cache timestamp: {timestamp!r}")
        ttl = data.get("ttl_seconds")
        if ttl is not None and (isinstance(ttl, bool) or not isinstance(ttl, (int, float))):
            raise ValueError(f"Invalid cache ttl: {ttl!r}")
        return cls(
            value=data["value"],
            timestamp=float(timestamp),
            compressed=bool(data.get("compressed", False)),
            stale=bool(data.get("stale", False)),
            # A refresh can't survive a restart, so never restore the flag
            refreshing=False,
            ttl_seconds=ttl,
        )


class CacheNamespace(str, Enum):
    """Logical caches known to the registry."""

    USER_MESSAGES = "user-messages"
    CONVERSATION_CONTEXT = "conversation-context"
    CONVERSATION_SESSION = "conversation-session"
    OPENAI_API = "openai-api"
    GOOGLE_MAPS_API = "google-maps-api"
    TRIPADVISOR_API = "tripadvisor-api"
    RECOMMENDATIONS_API = "recommendations-api"
    GENERAL_API = "general-api"


class CacheEvent(str, Enum):
    """Cross-cutting notifications fanned out by the registry."""

    USER_LOGIN = "user_login"
    USER_LOGOUT = "user_logout"
    USER_SWITCH = "user_switch"
    DESTINATION_CHANGE = "destination_change"
    CONVERSATION_RESET = "conversation_reset"


@dataclass(frozen=True)
class NamespaceConfig:
    """Static policy for one cache namespace."""

    namespace: CacheNamespace
    ttl_seconds: float
    max_entries: int
    persistence: bool = False
    user_scoped: bool = False
    stale_seconds: float = 0
    compress: bool = False

    def __post_init__(self):
        if not isinstance(self.namespace, CacheNamespace):
            # Accept the string form, reject anything unknown
            object.__setattr__(self, "namespace", CacheNamespace(self.namespace))
        if self.ttl_seconds <= 0:
            raise ValueError(f"{self.namespace.value}: ttl_seconds must be positive")
        if self.stale_seconds < 0:
            raise ValueError(f"{self.namespace.value}: stale_seconds cannot be negative")
        if self.max_entries < 1:
            raise ValueError(f"{self.namespace.value}: max_entries must be at least 1")


# Default policies, one per namespace
NAMESPACE_POLICIES: dict[CacheNamespace, NamespaceConfig] = {
    CacheNamespace.USER_MESSAGES: NamespaceConfig(
        namespace=CacheNamespace.USER_MESSAGES,
        ttl_seconds=7 * DAY,
        max_entries=200,
        persistence=True,
        user_scoped=True,
    ),
    CacheNamespace.CONVERSATION_CONTEXT: NamespaceConfig(
        namespace=CacheNamespace.CONVERSATION_CONTEXT,
        ttl_seconds=HOUR,
        max_entries=50,
        persistence=True,
        user_scoped=True,
    ),
    CacheNamespace.CONVERSATION_SESSION: NamespaceConfig(
        namespace=CacheNamespace.CONVERSATION_SESSION,
        ttl_seconds=30 * DAY,
        max_entries=50,
        persistence=True,
        user_scoped=True,
    ),
    CacheNamespace.OPENAI_API: NamespaceConfig(
        namespace=CacheNamespace.OPENAI_API,
        ttl_seconds=30 * MINUTE,
        stale_seconds=10 * MINUTE,
        max_entries=200,
        persistence=True,
        user_scoped=True,
        compress=True,
    ),
    CacheNamespace.GOOGLE_MAPS_API: NamespaceConfig(
        namespace=CacheNamespace.GOOGLE_MAPS_API,
        ttl_seconds=DAY,
        stale_seconds=6 * HOUR,
        max_entries=500,
        persistence=True,
        user_scoped=True,
        compress=False,  # Coordinates/addresses don't compress well
    ),
    CacheNamespace.TRIPADVISOR_API: NamespaceConfig(
        namespace=CacheNamespace.TRIPADVISOR_API,
        ttl_seconds=HOUR,
        stale_seconds=30 * MINUTE,
        max_entries=300,
        persistence=True,
        user_scoped=True,
        compress=True,
    ),
    CacheNamespace.RECOMMENDATIONS_API: NamespaceConfig(
        namespace=CacheNamespace.RECOMMENDATIONS_API,
        ttl_seconds=30 * MINUTE,
        stale_seconds=10 * MINUTE,
        max_entries=100,
        persistence=True,
        user_scoped=True,
        compress=True,
    ),
    CacheNamespace.GENERAL_API: NamespaceConfig(
        namespace=CacheNamespace.GENERAL_API,
        ttl_seconds=15 * MINUTE,
        stale_seconds=5 * MINUTE,
        max_entries=150,
        persistence=True,
        user_scoped=True,
        compress=True,
    ),
}


def get_namespace_policy(namespace: CacheNamespace) -> NamespaceConfig:
    """Look up the default policy for a namespace."""
    return NAMESPACE_POLICIES[CacheNamespace(namespace)]
