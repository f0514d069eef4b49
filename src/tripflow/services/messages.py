"""User-scoped chat message history kept in the ``user-messages`` namespace."""

import logging
from typing import Any, Callable, Dict, List, Optional

from ..core.registry import NamespaceRegistry
from ..models.cache import DAY, CacheEvent, CacheNamespace
from .consistency import DestinationConsistencyValidator

logger = logging.getLogger(__name__)

MAX_STORED_MESSAGES = 50
MESSAGE_TTL = 7 * DAY
KEY_PREFIX = "conversation:"
REQUIRED_FIELDS = ("id", "content", "role", "timestamp")

Message = Dict[str, Any]


def _cache_key(conversation_id: Optional[str]) -> str:
    return f"{KEY_PREFIX}{conversation_id or 'default'}"


class MessageStore:
    """Persists the visible message list and invalidates it on context changes.

    Subscribes to ``conversation_reset`` and ``destination_change`` on the
    registry; call :meth:`close` to unsubscribe.
    """

    def __init__(
        self,
        registry: NamespaceRegistry,
        validator: Optional[DestinationConsistencyValidator] = None,
        destination_provider: Optional[Callable[[], Optional[str]]] = None,
        max_messages: int = MAX_STORED_MESSAGES,
    ):
        self.registry = registry
        self.validator = validator or DestinationConsistencyValidator()
        self.destination_provider = destination_provider
        self.max_messages = max_messages
        registry.add_listener(CacheEvent.CONVERSATION_RESET, self._handle_reset)
        registry.add_listener(CacheEvent.DESTINATION_CHANGE, self._handle_destination_change)

    def close(self) -> None:
        self.registry.remove_listener(CacheEvent.CONVERSATION_RESET, self._handle_reset)
        self.registry.remove_listener(CacheEvent.DESTINATION_CHANGE, self._handle_destination_change)

    def _handle_reset(self, event: CacheEvent, data: Dict[str, Any]) -> None:
        removed = self.registry.delete_prefix(CacheNamespace.USER_MESSAGES, KEY_PREFIX)
        logger.info(f"Conversation reset, removed {removed} stored message lists")

    def _handle_destination_change(self, event: CacheEvent, data: Dict[str, Any]) -> None:
        destination = data.get("destination")
        if destination:
            self.on_destination_change(destination)

    def _read(self, conversation_id: Optional[str]) -> List[Message]:
        stored = self.registry.get(CacheNamespace.USER_MESSAGES, _cache_key(conversation_id))
        if stored is None:
            return []
        if not isinstance(stored, list):
            logger.warning(f"Discarding malformed message list for {_cache_key(conversation_id)}")
            self.clear_messages(conversation_id)
            return []
        return list(stored)

    def load_messages(self, conversation_id: Optional[str] = None) -> List[Message]:
        """Load messages, dropping them if they contradict the session destination."""
        messages = self._read(conversation_id)
        if not messages:
            return []

        destination = self.destination_provider() if self.destination_provider else None
        if destination and not self.validator.validate(messages, destination):
            logger.info(f"Stored messages inconsistent with destination {destination}, clearing")
            self.clear_messages(conversation_id)
            return []

        logger.debug(f"Loaded {len(messages)} messages for {_cache_key(conversation_id)}")
        return messages

    def save_messages(self, messages: List[Message], conversation_id: Optional[str] = None) -> None:
        """Save the most recent messages; an empty list is ignored."""
        if not messages:
            return
        to_store = list(messages)[-self.max_messages:]
        self.registry.set(
            CacheNamespace.USER_MESSAGES,
            _cache_key(conversation_id),
            to_store,
            ttl=MESSAGE_TTL,
        )
        logger.debug(f"Saved {len(to_store)} messages for {_cache_key(conversation_id)}")

    def add_message(self, message: Message, conversation_id: Optional[str] = None) -> None:
        messages = self.load_messages(conversation_id)
        messages.append(message)
        self.save_messages(messages, conversation_id)

    def clear_messages(self, conversation_id: Optional[str] = None) -> None:
        self.registry.delete(CacheNamespace.USER_MESSAGES, _cache_key(conversation_id))

    def clear_all(self) -> None:
        """Clear stored messages for every user."""
        self.registry.clear(CacheNamespace.USER_MESSAGES)

    def get_stored_message_count(self, conversation_id: Optional[str] = None) -> int:
        return len(self.load_messages(conversation_id))

    def on_destination_change(self, new_destination: str, conversation_id: Optional[str] = None) -> bool:
        """Clear stored messages that belong to another destination.

        Returns:
            True if messages were cleared and a conversation reset was emitted.
        """
        messages = self._read(conversation_id)
        if not messages or self.validator.validate(messages, new_destination):
            return False

        logger.info(f"Destination changed to {new_destination}, clearing inconsistent messages")
        self.clear_messages(conversation_id)
        self.registry.emit_conversation_reset()
        return True

    def handle_visibility_change(
        self, visible: bool, messages: List[Message], conversation_id: Optional[str] = None
    ) -> None:
        """Persist immediately when the client goes to the background."""
        if not visible and messages:
            self.save_messages(messages, conversation_id)

    def export_messages(self, conversation_id: Optional[str] = None) -> List[Message]:
        return self.load_messages(conversation_id)

    def import_messages(self, messages: List[Message], conversation_id: Optional[str] = None) -> int:
        """Import messages, skipping records that lack a required field.

        Returns:
            Number of messages imported.
        """
        valid = [
            m for m in messages
            if isinstance(m, dict) and all(m.get(f) for f in REQUIRED_FIELDS)
        ]
        if len(valid) != len(messages):
            logger.warning(f"Filtered out {len(messages) - len(valid)} invalid messages during import")
        self.save_messages(valid, conversation_id)
        return min(len(valid), self.max_messages)
