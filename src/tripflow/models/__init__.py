"""Data models for tripflow."""

from .cache import (
    NAMESPACE_POLICIES,
    CacheEntry,
    CacheEvent,
    CacheNamespace,
    NamespaceConfig,
    get_namespace_policy,
)
from .conversation import (
    ChatIntent,
    ConversationAnalytics,
    ConversationContext,
    ConversationPhase,
    ConversationSession,
    ConversationTurn,
    MentionedPreference,
    Recommendation,
)

__all__ = [
    "NAMESPACE_POLICIES",
    "CacheEntry",
    "CacheEvent",
    "CacheNamespace",
    "NamespaceConfig",
    "get_namespace_policy",
    "ChatIntent",
    "ConversationAnalytics",
    "ConversationContext",
    "ConversationPhase",
    "ConversationSession",
    "ConversationTurn",
    "MentionedPreference",
    "Recommendation",
]
