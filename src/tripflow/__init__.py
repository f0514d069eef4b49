"""Tripflow - caching and conversation-session core for a trip-planning chat client"""

__version__ = "1.0.0"

from .core import ExpiringCache, NamespaceRegistry
from .services import MessageStore, SessionConfig, SessionManager, TurnLedger

__all__ = [
    "ExpiringCache",
    "MessageStore",
    "NamespaceRegistry",
    "SessionConfig",
    "SessionManager",
    "TurnLedger",
]
