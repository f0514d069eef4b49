"""Service components for tripflow."""

from .autosave import AutoSaveTask
from .consistency import DestinationConsistencyValidator
from .ledger import TurnLedger
from .messages import MessageStore
from .session_manager import SessionConfig, SessionManager
from .api_cache import ApiError, CachedApiClient

__all__ = [
    "ApiError",
    "AutoSaveTask",
    "CachedApiClient",
    "DestinationConsistencyValidator",
    "MessageStore",
    "SessionConfig",
    "SessionManager",
    "TurnLedger",
]
