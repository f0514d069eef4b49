"""Session manager for trip-planning conversations."""

import logging
import os
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..core.registry import NamespaceRegistry
from ..models.cache import CacheNamespace
from ..models.conversation import (
    ChatIntent,
    ConversationAnalytics,
    ConversationContext,
    ConversationPhase,
    ConversationSession,
    ConversationTurn,
)
from .autosave import AutoSaveTask
from .consistency import DestinationConsistencyValidator
from .ledger import CONTEXT_KEY, USER_PHASES, TurnLedger

logger = logging.getLogger(__name__)

CURRENT_SESSION_KEY = "current-session"
SESSION_HISTORY_KEY = "session-history"
TOP_N = 5


@dataclass
class SessionConfig:
    """Tunables for the session manager."""

    session_timeout_minutes: float = 30
    max_session_history: int = 10
    auto_save_interval: float = 30  # seconds
    max_turns: int = 15
    max_recommendations: int = 10
    follow_up_window_minutes: float = 5

    @classmethod
    def from_env(cls, **overrides: Any) -> "SessionConfig":
        """Build a config from ``TRIPFLOW_*`` variables; explicit overrides win."""
        values: Dict[str, Any] = {
            "session_timeout_minutes": float(os.getenv("TRIPFLOW_SESSION_TIMEOUT_MINUTES", "30")),
            "max_session_history": int(os.getenv("TRIPFLOW_MAX_SESSION_HISTORY", "10")),
            "auto_save_interval": float(os.getenv("TRIPFLOW_AUTOSAVE_INTERVAL", "30")),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class SessionManager:
    """Owns the current conversation session for one user at a time.

    Sessions, session history and the turn ledger persist through the
    registry under the active user's scope. Nothing is loaded until
    :meth:`initialize` or :meth:`start_session` is called.
    """

    def __init__(
        self,
        registry: NamespaceRegistry,
        ledger: Optional[TurnLedger] = None,
        validator: Optional[DestinationConsistencyValidator] = None,
        config: Optional[SessionConfig] = None,
    ):
        self.registry = registry
        self.config = config or SessionConfig()
        self.ledger = ledger or TurnLedger(
            registry,
            max_turns=self.config.max_turns,
            max_recommendations=self.config.max_recommendations,
            follow_up_window_minutes=self.config.follow_up_window_minutes,
        )
        self.validator = validator or DestinationConsistencyValidator()
        self.current_session: Optional[ConversationSession] = None
        self.session_history: List[ConversationSession] = []
        self.current_user_id: Optional[str] = None
        self._loaded = False
        self._autosave: Optional[AutoSaveTask] = None

    # -- lifecycle -----------------------------------------------------

    def initialize(self) -> bool:
        """Restore state for the registry's current user.

        Returns:
            True if an active session was restored.
        """
        self._switch_user(self.registry.current_user_id)
        return self.current_session is not None

    def start(self) -> AutoSaveTask:
        """Start periodic flushing on the running loop and return its handle."""
        if self._autosave is None or not self._autosave.running:
            self._autosave = AutoSaveTask(
                self.flush, self.config.auto_save_interval, name="session-autosave"
            ).start()
        return self._autosave

    def stop(self) -> None:
        if self._autosave is not None:
            self._autosave.stop()
            self._autosave = None

    def destroy(self) -> None:
        """Stop auto-saving, end the current session and flush."""
        self.stop()
        self.end_session()
        self.flush()

    async def aclose(self) -> None:
        if self._autosave is not None:
            await self._autosave.aclose()
            self._autosave = None
        self.destroy()

    @property
    def current_destination(self) -> Optional[str]:
        return self.current_session.destination if self.current_session else None

    # -- persistence ---------------------------------------------------

    def _switch_user(self, user_id: Optional[str]) -> None:
        if self._loaded and user_id == self.current_user_id:
            return
        if self._loaded:
            logger.info("User changed, discarding previous session state from memory")

        # Stored data of the previous user stays under its own scope
        self.current_session = None
        self.session_history = []
        self.ledger.reset()
        self.current_user_id = user_id
        self.registry.set_current_user(user_id)
        self._load_user_state()
        self._loaded = True

    def _load_user_state(self) -> None:
        stored_history = self.registry.get(CacheNamespace.CONVERSATION_SESSION, SESSION_HISTORY_KEY)
        if isinstance(stored_history, list):
            for record in stored_history:
                try:
                    self.session_history.append(ConversationSession.from_dict(record))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping unreadable session history record: {e}")
            self._trim_history()

        stored = self.registry.get(CacheNamespace.CONVERSATION_SESSION, CURRENT_SESSION_KEY)
        if stored is None:
            return
        try:
            session = ConversationSession.from_dict(stored)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable stored session: {e}")
            self.registry.delete(CacheNamespace.CONVERSATION_SESSION, CURRENT_SESSION_KEY)
            return

        if not session.is_active:
            return
        if self._is_timed_out(session):
            logger.info(f"Stored session {session.id} timed out, not restoring")
            self.current_session = session
            self.end_session()
            return

        self.current_session = session
        if self.ledger.load():
            self._validate_restored_history()
        logger.info(f"Restored session {session.id} for user {self.current_user_id}")

    def _validate_restored_history(self) -> None:
        session = self.current_session
        if session is None or not self.ledger.turns:
            return
        if not self.validator.validate(self.ledger.turns, session.destination):
            logger.info(
                f"Restored history of session {session.id} does not match "
                f"destination {session.destination}, discarding it"
            )
            self.ledger.discard_history()
            session.context = self.ledger.get_context().to_dict()

    def flush(self) -> None:
        """Write session, session history and context to the registry."""
        if self.current_session is not None:
            self.registry.set(
                CacheNamespace.CONVERSATION_SESSION,
                CURRENT_SESSION_KEY,
                self.current_session.to_dict(),
            )
        else:
            self.registry.delete(CacheNamespace.CONVERSATION_SESSION, CURRENT_SESSION_KEY)
        self.registry.set(
            CacheNamespace.CONVERSATION_SESSION,
            SESSION_HISTORY_KEY,
            [s.to_dict() for s in self.session_history],
        )
        self.ledger.save()

    def on_visibility_change(self, visible: bool) -> None:
        """Flush when hidden; retire a timed-out session when visible again."""
        if not visible:
            self.flush()
        elif self.current_session is not None and self._is_timed_out(self.current_session):
            self.end_session()

    # -- sessions ------------------------------------------------------

    def _is_timed_out(self, session: ConversationSession) -> bool:
        idle = datetime.now() - session.last_active_time
        return idle > timedelta(minutes=self.config.session_timeout_minutes)

    def _trim_history(self) -> None:
        if len(self.session_history) > self.config.max_session_history:
            self.session_history = self.session_history[-self.config.max_session_history:]

    def start_session(
        self, user_id: Optional[str] = None, destination: Optional[str] = None
    ) -> ConversationSession:
        """Start a session, or return the user's active one unchanged.

        Args:
            user_id: Owner of the session; None for an anonymous session.
            destination: Initial trip destination.

        Returns:
            A copy of the current session.
        """
        self._switch_user(user_id)

        session = self.current_session
        if session is not None and session.is_active and session.user_id == user_id:
            if not self._is_timed_out(session):
                logger.debug(f"Reusing active session {session.id}")
                return session.copy()
            logger.info(f"Session {session.id} timed out")

        if self.current_session is not None:
            self.end_session()

        self.ledger.clear()
        now = datetime.now()
        self.current_session = ConversationSession(
            id=f"session_{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            start_time=now,
            last_active_time=now,
            destination=destination,
        )
        if destination:
            self.ledger.set_current_destination(destination)
        self.current_session.context = self.ledger.get_context().to_dict()
        self.flush()

        logger.info(f"Started session {self.current_session.id} for user {user_id}")
        return self.current_session.copy()

    def end_session(self) -> None:
        """Retire the current session into the bounded history."""
        session = self.current_session
        if session is None:
            return
        session.is_active = False
        session.last_active_time = datetime.now()
        self.session_history.append(session.copy())
        self._trim_history()
        self.current_session = None
        self.flush()
        logger.info(f"Ended session {session.id} after {session.total_messages} messages")

    def get_current_session(self) -> Optional[ConversationSession]:
        """Copy of the current session; a timed-out one is retired first."""
        session = self.current_session
        if session is not None and self._is_timed_out(session):
            logger.info(f"Session {session.id} timed out")
            self.end_session()
            return None
        return session.copy() if session else None

    def _ensure_session(self) -> ConversationSession:
        session = self.current_session
        if session is not None and self._is_timed_out(session):
            logger.info(f"Session {session.id} timed out, starting a new one")
            self.end_session()
        if self.current_session is None:
            self.start_session(self.current_user_id)
        return self.current_session

    def _next_phase(self, session: ConversationSession, role: str, content: str, intent: Optional[ChatIntent]) -> Optional[str]:
        if role != "user" or intent is None:
            return None
        if intent == ChatIntent.GENERAL_CHAT:
            if self.ledger.is_follow_up_question(content):
                phase = ConversationPhase.FOLLOW_UP
            else:
                phase = ConversationPhase.GENERAL
        else:
            phase = USER_PHASES[intent]
        return phase.value if phase.value != session.current_phase else None

    def track_conversation_turn(
        self,
        role: str,
        content: str,
        intent: Optional[ChatIntent] = None,
        parameters: Optional[Dict[str, Any]] = None,
        confidence: Optional[float] = None,
    ) -> str:
        """Route a turn through the current session, starting one if needed.

        Returns:
            The id of the recorded turn.

        Raises:
            ValueError: If ``role`` or ``intent`` is invalid.
        """
        if role not in ("user", "assistant"):
            raise ValueError(f"Invalid turn role: {role}")
        intent = ChatIntent(intent) if intent is not None else None

        session = self._ensure_session()
        session.total_messages += 1
        session.last_active_time = datetime.now()

        params = parameters or {}
        destination = params.get("destination") or params.get("location")
        if destination and not session.destination:
            session.destination = destination

        phase = self._next_phase(session, role, content, intent)
        if phase:
            session.conversation_phases.append(phase)

        turn_id = self.ledger.add_turn(role, content, intent, parameters, confidence)
        session.context = self.ledger.get_context().to_dict()
        self.flush()
        return turn_id

    # -- queries -------------------------------------------------------

    def get_conversation_history(self, limit: int = 20) -> List[ConversationTurn]:
        return self.ledger.get_recent_history(limit)

    def get_contextual_suggestions(self) -> List[str]:
        return self.ledger.get_contextual_suggestions()

    def is_follow_up_question(self, text: str) -> bool:
        return self.ledger.is_follow_up_question(text)

    def get_analytics(self) -> ConversationAnalytics:
        """Fold current and historical sessions into analytics."""
        sessions = list(self.session_history)
        if self.current_session is not None:
            sessions.append(self.current_session)

        total = len(sessions)
        if total == 0:
            return ConversationAnalytics()

        intents: Counter = Counter()
        destinations: Counter = Counter()
        converted = 0
        for session in sessions:
            if session.destination:
                destinations[session.destination] += 1
            if ConversationPhase.ITINERARY_PLANNING.value in session.conversation_phases:
                converted += 1
            for turn in (session.context or {}).get("conversationHistory") or []:
                if isinstance(turn, dict) and turn.get("intent"):
                    intents[str(turn["intent"])] += 1

        return ConversationAnalytics(
            total_sessions=total,
            average_session_length=sum(s.total_messages for s in sessions) / total,
            common_intents=[{"intent": i, "count": c} for i, c in intents.most_common(TOP_N)],
            popular_destinations=[
                {"destination": d, "count": c} for d, c in destinations.most_common(TOP_N)
            ],
            conversion_rate=converted / total * 100,
        )

    # -- data management -----------------------------------------------

    def clear_all_data(self) -> None:
        """Forget every session and context of the current user."""
        self.end_session()
        self.session_history = []
        self.ledger.clear()
        self.registry.delete(CacheNamespace.CONVERSATION_SESSION, CURRENT_SESSION_KEY)
        self.registry.delete(CacheNamespace.CONVERSATION_SESSION, SESSION_HISTORY_KEY)
        logger.info(f"Cleared conversation data for user {self.current_user_id}")

    def clear_user_data(self, user_id: str) -> None:
        """Remove a user's stored conversation data, and memory if they are current."""
        if user_id == self.current_user_id:
            self.end_session()
            self.session_history = []
            self.ledger.reset()
        self.registry.delete(CacheNamespace.CONVERSATION_SESSION, CURRENT_SESSION_KEY, user_id=user_id)
        self.registry.delete(CacheNamespace.CONVERSATION_SESSION, SESSION_HISTORY_KEY, user_id=user_id)
        self.registry.delete(CacheNamespace.CONVERSATION_CONTEXT, CONTEXT_KEY, user_id=user_id)
        logger.info(f"Cleared conversation data for user {user_id}")

    def export_conversation_data(self) -> Dict[str, Any]:
        return {
            "currentSession": self.current_session.to_dict() if self.current_session else None,
            "sessionHistory": [s.to_dict() for s in self.session_history],
            "analytics": self.get_analytics().to_dict(),
            "context": self.ledger.get_context().to_dict(),
            "exportDate": datetime.now().isoformat(),
        }

    def import_conversation_data(self, data: Dict[str, Any]) -> bool:
        """Replace sessions (and context, if present) with exported data.

        An imported current session retires the one in progress into history.

        Returns:
            False if the data could not be parsed or belongs to another user;
            nothing is changed then.
        """
        try:
            history = [ConversationSession.from_dict(s) for s in data.get("sessionHistory") or []]
            current = (
                ConversationSession.from_dict(data["currentSession"])
                if data.get("currentSession")
                else None
            )
            context = ConversationContext.from_dict(data["context"]) if data.get("context") else None
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Error importing conversation data: {e}")
            return False

        owners = {s.user_id for s in history}
        if current is not None:
            owners.add(current.user_id)
        if owners - {self.current_user_id}:
            logger.error(f"Refusing to import sessions of another user into {self.current_user_id}")
            return False

        replaced = self.current_session
        if current is not None and replaced is not None and current.id != replaced.id:
            self.end_session()
            retired = self.session_history[-1]
            if all(s.id != retired.id for s in history):
                history.append(retired)

        self.session_history = history
        self._trim_history()
        if current is not None:
            self.current_session = current
        if context is not None:
            self.ledger.restore(context)
            self._validate_restored_history()
        self.flush()
        logger.info(f"Imported {len(history)} historical sessions")
        return True
