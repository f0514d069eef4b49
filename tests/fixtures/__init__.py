"""Test fixtures for the tripflow tests."""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from tripflow.core.registry import NamespaceRegistry
from tripflow.models.cache import CacheNamespace
from tripflow.storage import MemoryStore

RECOMMENDATION_REPLY = """Here are some great places to eat in Tokyo:

1. **Sukiyabashi Jiro** - legendary sushi counter
2. **Ichiran Ramen** - solo ramen booths
- Tsukiji Outer Market - street food stalls

Enjoy your meals!"""


def create_registry(store: Optional[MemoryStore] = None, user_id: Optional[str] = None) -> NamespaceRegistry:
    """Registry with every default namespace registered over a memory store."""
    registry = NamespaceRegistry(store if store is not None else MemoryStore(), user_id=user_id)
    registry.register_defaults()
    return registry


def stored_session(
    session_id: str = "session_stored",
    user_id: Optional[str] = None,
    destination: Optional[str] = None,
    idle_minutes: float = 1,
    total_messages: int = 0,
    phases: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Serialised session record last active ``idle_minutes`` ago."""
    last_active = datetime.now() - timedelta(minutes=idle_minutes)
    return {
        "id": session_id,
        "userId": user_id,
        "startTime": (last_active - timedelta(minutes=10)).isoformat(),
        "lastActiveTime": last_active.isoformat(),
        "destination": destination,
        "totalMessages": total_messages,
        "conversationPhases": phases or ["greeting"],
        "context": {},
        "isActive": True,
    }


def stored_context(turn_contents: List[str], destination: Optional[str] = None) -> Dict[str, Any]:
    """Serialised ledger context holding user turns with the given contents."""
    now = datetime.now()
    return {
        "currentDestination": destination,
        "currentTopic": None,
        "state": {"phase": "general", "conversationFlow": []},
        "recentRecommendations": [],
        "mentionedPreferences": {},
        "conversationHistory": [
            {
                "id": f"turn_{i}",
                "role": "user",
                "content": content,
                "timestamp": (now - timedelta(minutes=len(turn_contents) - i)).isoformat(),
            }
            for i, content in enumerate(turn_contents)
        ],
        "pendingQuestions": [],
        "createdAt": now.isoformat(),
        "lastUpdated": now.isoformat(),
        "version": 1,
    }


def raw_records(store: MemoryStore, namespace: CacheNamespace) -> Dict[str, Any]:
    """Decoded persisted records of one namespace, keyed by storage key."""
    prefix = f"cache:{namespace.value}:"
    return {key: json.loads(store.get(key)) for key in store.keys_with_prefix(prefix)}
