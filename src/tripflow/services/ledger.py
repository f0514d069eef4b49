"""Conversation turn ledger with follow-up and recommendation tracking."""

import logging
import uuid
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..core.heuristics import (
    FollowUpClassifier,
    LexicalFollowUpClassifier,
    ListItemExtractor,
    RecommendationExtractor,
)
from ..core.registry import NamespaceRegistry
from ..models.cache import CacheNamespace
from ..models.conversation import (
    ChatIntent,
    ConversationContext,
    ConversationPhase,
    ConversationTurn,
    MentionedPreference,
    Recommendation,
)

logger = logging.getLogger(__name__)

CONTEXT_KEY = "current-context"
FLOW_LENGTH = 5

PENDING_QUESTIONS = {
    "restaurants": [
        "Would you like recommendations for any specific cuisine in {location}?",
        "Are you looking for restaurants in a particular area of {location}?",
        "What's your budget range for dining in {location}?",
        "Do you need restaurants for any specific meal times?",
    ],
    "activities": [
        "Are you interested in any specific types of activities in {location}?",
        "How many days are you planning to stay in {location}?",
        "Are you traveling with family, friends, or solo?",
        "Do you prefer indoor or outdoor activities?",
    ],
    "hotels": [
        "What's your preferred budget range for accommodation in {location}?",
        "Are you looking for hotels in a specific area of {location}?",
        "Do you need any specific amenities (pool, gym, breakfast)?",
        "When are you planning to stay in {location}?",
    ],
}

USER_PHASES = {
    ChatIntent.NEW_ITINERARY: ConversationPhase.ITINERARY_PLANNING,
    ChatIntent.GET_RECOMMENDATIONS: ConversationPhase.SEEKING_RECOMMENDATIONS,
    ChatIntent.MODIFY_EXISTING: ConversationPhase.MODIFYING_ITINERARY,
    ChatIntent.ASK_QUESTIONS: ConversationPhase.ASKING_QUESTIONS,
}


class TurnLedger:
    """Bounded, ordered history of dialogue turns and recommendations.

    State is persisted through the ``conversation-context`` namespace after
    every mutation when a registry is attached.
    """

    def __init__(
        self,
        registry: Optional[NamespaceRegistry] = None,
        max_turns: int = 15,
        max_recommendations: int = 10,
        follow_up_classifier: Optional[FollowUpClassifier] = None,
        extractor: Optional[RecommendationExtractor] = None,
        follow_up_window_minutes: float = 5,
    ):
        self.registry = registry
        self.max_turns = max_turns
        self.max_recommendations = max_recommendations
        self.follow_up_classifier = follow_up_classifier or LexicalFollowUpClassifier()
        self.extractor = extractor or ListItemExtractor()
        self.follow_up_window_minutes = follow_up_window_minutes
        self.turns: deque[ConversationTurn] = deque(maxlen=max_turns)
        self.recommendations: deque[Recommendation] = deque(maxlen=max_recommendations)
        self.context = ConversationContext()

    # -- turns ---------------------------------------------------------

    def add_turn(
        self,
        role: str,
        content: str,
        intent: Optional[ChatIntent] = None,
        parameters: Optional[Dict[str, Any]] = None,
        confidence: Optional[float] = None,
    ) -> str:
        """Append a turn and update the derived conversation state.

        Returns:
            The new turn id.

        Raises:
            ValueError: If ``role`` is not "user" or "assistant".
        """
        if role not in ("user", "assistant"):
            raise ValueError(f"Invalid turn role: {role}")
        intent = ChatIntent(intent) if intent is not None else None
        parameters = dict(parameters) if parameters else None

        follow_up_to = None
        if role == "user" and self.is_follow_up_question(content):
            last_assistant = self._last_turn("assistant")
            if last_assistant is not None:
                follow_up_to = last_assistant.id

        turn = ConversationTurn(
            id=f"turn_{uuid.uuid4().hex[:12]}",
            role=role,
            content=content,
            intent=intent,
            parameters=parameters,
            confidence=confidence,
            follow_up_to=follow_up_to,
        )
        self.turns.append(turn)
        self._update_state(turn)

        if role == "user" and intent is not None:
            self.context.last_intent = intent
            self.context.last_parameters = parameters

        location = (parameters or {}).get("location") or (parameters or {}).get("destination")
        if location:
            self.set_current_destination(location, save=False)

        if role == "assistant" and intent == ChatIntent.GET_RECOMMENDATIONS:
            params = parameters or {}
            self.add_recommendation(
                params.get("recommendationType") or "general",
                params.get("location") or self.context.current_destination or "Unknown",
                content,
                self._last_user_content() or content,
                save=False,
            )

        if intent is not None:
            self.context.conversation_flow.append(intent.value)
            self.context.conversation_flow = self.context.conversation_flow[-FLOW_LENGTH:]

        self.save()
        return turn.id

    def _update_state(self, turn: ConversationTurn) -> None:
        ctx = self.context
        if turn.role == "user":
            if turn.intent == ChatIntent.GENERAL_CHAT:
                if self.is_follow_up_question(turn.content):
                    ctx.phase = ConversationPhase.FOLLOW_UP
                else:
                    ctx.phase = ConversationPhase.GENERAL
                    ctx.awaiting_follow_up = False
            elif turn.intent in USER_PHASES:
                ctx.phase = USER_PHASES[turn.intent]
                ctx.awaiting_follow_up = turn.intent == ChatIntent.GET_RECOMMENDATIONS
                if turn.intent == ChatIntent.GET_RECOMMENDATIONS:
                    ctx.active_recommendation_type = (turn.parameters or {}).get("recommendationType")
            else:
                ctx.awaiting_follow_up = False
        elif turn.intent == ChatIntent.GET_RECOMMENDATIONS:
            ctx.last_recommendation_at = turn.timestamp
            ctx.awaiting_follow_up = True
            self._generate_pending_questions(
                (turn.parameters or {}).get("recommendationType"), ctx.active_location
            )

    def _generate_pending_questions(self, recommendation_type: Optional[str], location: Optional[str]) -> None:
        templates = PENDING_QUESTIONS.get(recommendation_type or "")
        if templates and location:
            self.context.pending_questions = [t.format(location=location) for t in templates]
        else:
            self.context.pending_questions = []

    def _last_turn(self, role: str) -> Optional[ConversationTurn]:
        for turn in reversed(self.turns):
            if turn.role == role:
                return turn
        return None

    def _last_user_content(self) -> Optional[str]:
        for turn in reversed(self.turns):
            if turn.role == "user":
                return turn.content
        return None

    def get_recent_history(self, n: int = 5) -> List[ConversationTurn]:
        """Last ``n`` turns, oldest first."""
        if n <= 0:
            return []
        return list(self.turns)[-n:]

    # -- recommendations -----------------------------------------------

    def add_recommendation(
        self,
        type: str,
        location: str,
        content: str,
        query: str,
        timestamp: Optional[datetime] = None,
        save: bool = True,
    ) -> Optional[Recommendation]:
        """Record the items listed in ``content``; nothing is recorded if none are found."""
        items = self.extractor.extract(content)
        if not items:
            logger.debug("No recommendation items found in assistant content")
            return None

        recommendation = Recommendation(
            type=type,
            location=location,
            items=items,
            query=query,
            timestamp=timestamp or datetime.now(),
        )
        self.recommendations.append(recommendation)
        if save:
            self.save()
        return recommendation

    def has_recent_recommendations(self, within_minutes: float = 10) -> bool:
        cutoff = datetime.now() - timedelta(minutes=within_minutes)
        return any(rec.timestamp > cutoff for rec in self.recommendations)

    def get_recent_recommendations(self, type: Optional[str] = None, within_minutes: float = 30) -> List[Recommendation]:
        cutoff = datetime.now() - timedelta(minutes=within_minutes)
        return [
            rec
            for rec in self.recommendations
            if rec.timestamp > cutoff and (type is None or rec.type == type)
        ]

    def is_follow_up_question(self, text: str) -> bool:
        return self.follow_up_classifier.is_follow_up(
            text, self.has_recent_recommendations(self.follow_up_window_minutes)
        )

    # -- context -------------------------------------------------------

    def update_mentioned_preferences(self, preferences: Dict[str, str]) -> None:
        now = datetime.now()
        for key, value in preferences.items():
            if value:
                self.context.mentioned_preferences[key] = MentionedPreference(value=value, timestamp=now)
        self.save()

    def get_mentioned_preferences(self) -> Dict[str, MentionedPreference]:
        return dict(self.context.mentioned_preferences)

    def set_current_destination(self, destination: str, save: bool = True) -> None:
        """Switch the destination, notifying dependent caches when it changes."""
        previous = self.context.current_destination
        if previous == destination:
            return
        self.context.current_destination = destination
        self.context.active_location = destination
        if self.registry is not None:
            self.registry.emit_destination_change(destination)
        logger.info(f"Conversation destination changed: {previous} -> {destination}")
        if save:
            self.save()

    def set_current_topic(self, topic: str) -> None:
        self.context.current_topic = topic
        self.save()

    def get_pending_questions(self) -> List[str]:
        return list(self.context.pending_questions)

    def get_contextual_suggestions(self) -> List[str]:
        """Suggested next prompts for the current conversation state."""
        ctx = self.context
        location = ctx.active_location
        if ctx.awaiting_follow_up and location:
            if ctx.active_recommendation_type == "restaurants":
                return [
                    f"What about activities in {location}?",
                    f"Where should I stay in {location}?",
                    "Any specific cuisine recommendations?",
                    "What about different price ranges?",
                ]
            if ctx.active_recommendation_type == "activities":
                return [
                    f"Where should I eat in {location}?",
                    f"What about nightlife in {location}?",
                    "Any indoor alternatives?",
                    "What about nearby attractions?",
                ]

        if ChatIntent.GET_RECOMMENDATIONS.value in ctx.conversation_flow:
            return [
                "Plan a full itinerary",
                "Tell me about local customs",
                "What about transportation?",
                "Weather information",
            ]

        return [
            "Get restaurant recommendations",
            "Find things to do",
            "Plan an itinerary",
            "Ask about travel tips",
        ]

    def get_response_strategy(self) -> str:
        """One of direct_answer, clarifying_question or context_aware."""
        last_user = None
        for turn in reversed(self.get_recent_history(3)):
            if turn.role == "user":
                last_user = turn
                break
        if last_user is None:
            return "direct_answer"

        if self.is_follow_up_question(last_user.content):
            return "context_aware"
        if last_user.intent == ChatIntent.GET_RECOMMENDATIONS and not self.has_recent_recommendations(30):
            return "direct_answer"
        if len(last_user.content) < 20 or (last_user.confidence is not None and last_user.confidence < 0.7):
            return "clarifying_question"
        return "direct_answer"

    def was_recently_discussed(self, topic: str, within_minutes: float = 30) -> bool:
        cutoff = datetime.now() - timedelta(minutes=within_minutes)
        needle = topic.lower()
        for turn in self.turns:
            if turn.timestamp <= cutoff:
                continue
            if needle in turn.content.lower() or _specific_topic(turn).lower() == needle:
                return True
        return False

    def get_dominant_topic(self, recent_turns: int = 5) -> Optional[str]:
        """Most frequent destination or question topic in recent turns."""
        counts: Counter = Counter()
        for turn in self.get_recent_history(recent_turns):
            params = turn.parameters or {}
            if params.get("destination"):
                counts[params["destination"]] += 1
            topic = _specific_topic(turn)
            if topic:
                counts[topic] += 1
        if not counts:
            return None
        return counts.most_common(1)[0][0]

    def get_context(self) -> ConversationContext:
        """Snapshot of the full context, history included."""
        ctx = self.context
        return ConversationContext(
            current_destination=ctx.current_destination,
            current_topic=ctx.current_topic,
            phase=ctx.phase,
            active_location=ctx.active_location,
            active_recommendation_type=ctx.active_recommendation_type,
            last_recommendation_at=ctx.last_recommendation_at,
            awaiting_follow_up=ctx.awaiting_follow_up,
            conversation_flow=list(ctx.conversation_flow),
            recent_recommendations=list(self.recommendations),
            mentioned_preferences=dict(ctx.mentioned_preferences),
            conversation_history=list(self.turns),
            last_intent=ctx.last_intent,
            last_parameters=ctx.last_parameters,
            pending_questions=list(ctx.pending_questions),
            created_at=ctx.created_at,
            last_updated=ctx.last_updated,
            version=ctx.version,
        )

    # -- persistence ---------------------------------------------------

    def save(self) -> None:
        if self.registry is None:
            return
        self.context.last_updated = datetime.now()
        self.registry.set(CacheNamespace.CONVERSATION_CONTEXT, CONTEXT_KEY, self.get_context().to_dict())

    def load(self) -> bool:
        """Restore context from the registry.

        Returns:
            True if a stored context was restored.
        """
        if self.registry is None:
            return False
        data = self.registry.get(CacheNamespace.CONVERSATION_CONTEXT, CONTEXT_KEY)
        if data is None:
            return False
        try:
            restored = ConversationContext.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable conversation context: {e}")
            self.registry.delete(CacheNamespace.CONVERSATION_CONTEXT, CONTEXT_KEY)
            return False

        self.restore(restored)
        logger.info(f"Restored conversation context with {len(self.turns)} turns")
        return True

    def restore(self, context: ConversationContext) -> None:
        """Replace in-memory state with ``context``, applying the bounds."""
        self.turns = deque(context.conversation_history, maxlen=self.max_turns)
        self.recommendations = deque(context.recent_recommendations, maxlen=self.max_recommendations)
        context.conversation_history = []
        context.recent_recommendations = []
        self.context = context

    def reset(self) -> None:
        """Reset in-memory state without touching storage."""
        self.turns.clear()
        self.recommendations.clear()
        self.context = ConversationContext()

    def clear(self) -> None:
        """Reset state and remove the stored context for the current scope."""
        self.reset()
        if self.registry is not None:
            self.registry.delete(CacheNamespace.CONVERSATION_CONTEXT, CONTEXT_KEY)

    def discard_history(self) -> None:
        """Drop turns and recommendations, keeping destination and preferences."""
        self.turns.clear()
        self.recommendations.clear()
        self.context.pending_questions = []
        self.context.awaiting_follow_up = False
        self.save()

    def get_stats(self) -> Dict[str, Any]:
        """Get ledger statistics."""
        turns = list(self.turns)
        confidences = [t.confidence for t in turns if t.confidence is not None]
        intents = Counter(t.intent.value for t in turns if t.intent is not None)
        return {
            "total_turns": len(turns),
            "user_turns": sum(1 for t in turns if t.role == "user"),
            "assistant_turns": sum(1 for t in turns if t.role == "assistant"),
            "average_confidence": sum(confidences) / len(confidences) if confidences else 0,
            "top_intents": [{"intent": i, "count": c} for i, c in intents.most_common(5)],
            "recommendations": len(self.recommendations),
            "max_turns": self.max_turns,
            "max_recommendations": self.max_recommendations,
            "conversation_age": (datetime.now() - self.context.created_at).total_seconds(),
        }


def _specific_topic(turn: ConversationTurn) -> str:
    question = (turn.parameters or {}).get("question")
    if isinstance(question, dict):
        return str(question.get("specificTopic") or "")
    return ""
