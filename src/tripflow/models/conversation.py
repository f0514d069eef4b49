"""Conversation-related data models.

Serialised forms use the camelCase field names of the session record shared
with the client, e.g. ``lastActiveTime`` and ``conversationPhases``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ChatIntent(str, Enum):
    """Intent labels supplied by the upstream classifier."""

    NEW_ITINERARY = "NEW_ITINERARY"
    MODIFY_EXISTING = "MODIFY_EXISTING"
    GET_RECOMMENDATIONS = "GET_RECOMMENDATIONS"
    ASK_QUESTIONS = "ASK_QUESTIONS"
    GENERAL_CHAT = "GENERAL_CHAT"


class ConversationPhase(str, Enum):
    """Phases a session moves through."""

    GREETING = "greeting"
    ITINERARY_PLANNING = "itinerary_planning"
    SEEKING_RECOMMENDATIONS = "seeking_recommendations"
    MODIFYING_ITINERARY = "modifying_itinerary"
    ASKING_QUESTIONS = "asking_questions"
    FOLLOW_UP = "follow_up"
    GENERAL = "general"


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Expected ISO timestamp, got {value!r}")
    return datetime.fromisoformat(value)


def _parse_optional_time(value: Any) -> Optional[datetime]:
    return None if value is None else _parse_time(value)


def _parse_intent(value: Any) -> Optional[ChatIntent]:
    return None if value is None else ChatIntent(value)


@dataclass(frozen=True)
class ConversationTurn:
    """A single turn in a conversation. Never mutated once created."""

    id: str
    role: str  # "user" or "assistant"
    content: str
    timestamp: datetime = field(default_factory=datetime.now)
    intent: Optional[ChatIntent] = None
    parameters: Optional[Dict[str, Any]] = None
    confidence: Optional[float] = None
    follow_up_to: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "intent": self.intent.value if self.intent else None,
            "parameters": dict(self.parameters) if self.parameters else None,
            "confidence": self.confidence,
            "followUpTo": self.follow_up_to,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationTurn":
        if data.get("role") not in ("user", "assistant"):
            raise ValueError(f"Invalid turn role: {data.get('role')!r}")
        return cls(
            id=str(data["id"]),
            role=data["role"],
            content=str(data["content"]),
            timestamp=_parse_time(data["timestamp"]),
            intent=_parse_intent(data.get("intent")),
            parameters=data.get("parameters"),
            confidence=data.get("confidence"),
            follow_up_to=data.get("followUpTo"),
        )


@dataclass
class Recommendation:
    """A batch of items the assistant recommended."""

    type: str
    location: str
    items: List[str]
    query: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "location": self.location,
            "items": list(self.items),
            "query": self.query,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recommendation":
        return cls(
            type=data["type"],
            location=data["location"],
            items=list(data["items"]),
            query=data.get("query", ""),
            timestamp=_parse_time(data["timestamp"]),
        )


@dataclass
class MentionedPreference:
    """A preference the user stated during the conversation."""

    value: str
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class ConversationContext:
    """Aggregate state of the turn ledger."""

    current_destination: Optional[str] = None
    current_topic: Optional[str] = None
    phase: ConversationPhase = ConversationPhase.GREETING
    active_location: Optional[str] = None
    active_recommendation_type: Optional[str] = None
    last_recommendation_at: Optional[datetime] = None
    awaiting_follow_up: bool = False
    conversation_flow: List[str] = field(default_factory=list)
    recent_recommendations: List[Recommendation] = field(default_factory=list)
    mentioned_preferences: Dict[str, MentionedPreference] = field(default_factory=dict)
    conversation_history: List[ConversationTurn] = field(default_factory=list)
    last_intent: Optional[ChatIntent] = None
    last_parameters: Optional[Dict[str, Any]] = None
    pending_questions: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    last_updated: datetime = field(default_factory=datetime.now)
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentDestination": self.current_destination,
            "currentTopic": self.current_topic,
            "state": {
                "phase": self.phase.value,
                "activeLocation": self.active_location,
                "activeRecommendationType": self.active_recommendation_type,
                "lastRecommendationTimestamp": (
                    self.last_recommendation_at.isoformat()
                    if self.last_recommendation_at
                    else None
                ),
                "awaitingFollowUp": self.awaiting_follow_up,
                "conversationFlow": list(self.conversation_flow),
            },
            "recentRecommendations": [r.to_dict() for r in self.recent_recommendations],
            "mentionedPreferences": {
                key: {"value": pref.value, "timestamp": pref.timestamp.isoformat()}
                for key, pref in self.mentioned_preferences.items()
            },
            "conversationHistory": [t.to_dict() for t in self.conversation_history],
            "lastIntent": self.last_intent.value if self.last_intent else None,
            "lastParameters": self.last_parameters,
            "pendingQuestions": list(self.pending_questions),
            "createdAt": self.created_at.isoformat(),
            "lastUpdated": self.last_updated.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationContext":
        """Rebuild a context from its stored form.

        Raises:
            KeyError, TypeError or ValueError on a malformed record.
        """
        state = data.get("state") or {}
        return cls(
            current_destination=data.get("currentDestination"),
            current_topic=data.get("currentTopic"),
            phase=ConversationPhase(state.get("phase", ConversationPhase.GREETING.value)),
            active_location=state.get("activeLocation"),
            active_recommendation_type=state.get("activeRecommendationType"),
            last_recommendation_at=_parse_optional_time(state.get("lastRecommendationTimestamp")),
            awaiting_follow_up=bool(state.get("awaitingFollowUp", False)),
            conversation_flow=list(state.get("conversationFlow", [])),
            recent_recommendations=[
                Recommendation.from_dict(r) for r in data.get("recentRecommendations", [])
            ],
            mentioned_preferences={
                key: MentionedPreference(value=p["value"], timestamp=_parse_time(p["timestamp"]))
                for key, p in (data.get("mentionedPreferences") or {}).items()
            },
            conversation_history=[
                ConversationTurn.from_dict(t) for t in data.get("conversationHistory", [])
            ],
            last_intent=_parse_intent(data.get("lastIntent")),
            last_parameters=data.get("lastParameters"),
            pending_questions=list(data.get("pendingQuestions", [])),
            created_at=_parse_time(data["createdAt"]),
            last_updated=_parse_time(data.get("lastUpdated", data["createdAt"])),
            version=int(data.get("version", 1)),
        )


@dataclass
class ConversationSession:
    """A conversation session owned by the session manager."""

    id: str
    user_id: Optional[str] = None
    start_time: datetime = field(default_factory=datetime.now)
    last_active_time: datetime = field(default_factory=datetime.now)
    destination: Optional[str] = None
    total_messages: int = 0
    conversation_phases: List[str] = field(
        default_factory=lambda: [ConversationPhase.GREETING.value]
    )
    context: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True

    @property
    def current_phase(self) -> Optional[str]:
        return self.conversation_phases[-1] if self.conversation_phases else None

    def copy(self) -> "ConversationSession":
        return ConversationSession(
            id=self.id,
            user_id=self.user_id,
            start_time=self.start_time,
            last_active_time=self.last_active_time,
            destination=self.destination,
            total_messages=self.total_messages,
            conversation_phases=list(self.conversation_phases),
            context=dict(self.context),
            is_active=self.is_active,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "startTime": self.start_time.isoformat(),
            "lastActiveTime": self.last_active_time.isoformat(),
            "destination": self.destination,
            "totalMessages": self.total_messages,
            "conversationPhases": list(self.conversation_phases),
            "context": self.context,
            "isActive": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationSession":
        return cls(
            id=str(data["id"]),
            user_id=data.get("userId"),
            start_time=_parse_time(data["startTime"]),
            last_active_time=_parse_time(data["lastActiveTime"]),
            destination=data.get("destination"),
            total_messages=int(data.get("totalMessages", 0)),
            conversation_phases=list(
                data.get("conversationPhases", [ConversationPhase.GREETING.value])
            ),
            context=dict(data.get("context") or {}),
            is_active=bool(data.get("isActive", True)),
        )


@dataclass
class ConversationAnalytics:
    """Aggregates folded over current and historical sessions."""

    total_sessions: int = 0
    average_session_length: float = 0
    common_intents: List[Dict[str, Any]] = field(default_factory=list)
    popular_destinations: List[Dict[str, Any]] = field(default_factory=list)
    conversion_rate: float = 0  # % of sessions that reached itinerary planning

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalSessions": self.total_sessions,
            "averageSessionLength": self.average_session_length,
            "commonIntents": list(self.common_intents),
            "popularDestinations": list(self.popular_destinations),
            "conversionRate": self.conversion_rate,
        }
