"""Unit tests for the conversation turn ledger."""

from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from tests.fixtures import RECOMMENDATION_REPLY, create_registry
from tripflow.models.cache import CacheEvent, CacheNamespace
from tripflow.models.conversation import ChatIntent, ConversationContext, ConversationPhase, ConversationTurn
from tripflow.services.ledger import CONTEXT_KEY, TurnLedger

TOKYO_FOOD = {"location": "Tokyo", "recommendationType": "restaurants"}


def _recommend_food(ledger: TurnLedger) -> str:
    """Ask for and receive Tokyo restaurant recommendations; returns the reply turn id."""
    ledger.add_turn("user", "Where should I eat in Tokyo?", ChatIntent.GET_RECOMMENDATIONS, TOKYO_FOOD, 0.9)
    return ledger.add_turn("assistant", RECOMMENDATION_REPLY, ChatIntent.GET_RECOMMENDATIONS, TOKYO_FOOD)


class TestTurns:
    """Test turn bookkeeping."""

    def test_add_turn(self):
        """Test that turns are appended in order with unique ids."""
        ledger = TurnLedger()
        first = ledger.add_turn("user", "Hello")
        second = ledger.add_turn("assistant", "Hi! Where to?")
        assert first != second
        assert first.startswith("turn_")
        assert [t.content for t in ledger.get_recent_history()] == ["Hello", "Hi! Where to?"]

    def test_invalid_role(self):
        """Test that only user and assistant turns are accepted."""
        ledger = TurnLedger()
        with pytest.raises(ValueError):
            ledger.add_turn("system", "nope")
        assert len(ledger.turns) == 0

    def test_history_is_bounded(self):
        """Test that the oldest turns are dropped past max_turns."""
        ledger = TurnLedger(max_turns=15)
        for i in range(20):
            ledger.add_turn("user", f"message {i}")
        history = ledger.get_recent_history(100)
        assert len(history) == 15
        assert history[0].content == "message 5"
        assert history[-1].content == "message 19"

    def test_recent_history(self):
        """Test the recent history window."""
        ledger = TurnLedger()
        for i in range(8):
            ledger.add_turn("user", f"m{i}")
        assert [t.content for t in ledger.get_recent_history(3)] == ["m5", "m6", "m7"]
        assert ledger.get_recent_history(0) == []

    def test_conversation_flow_keeps_last_five_intents(self):
        """Test the intent flow window."""
        ledger = TurnLedger()
        for _ in range(4):
            ledger.add_turn("user", "plan it", ChatIntent.NEW_ITINERARY)
        for _ in range(3):
            ledger.add_turn("user", "a question", ChatIntent.ASK_QUESTIONS)
        assert ledger.context.conversation_flow == ["NEW_ITINERARY"] * 2 + ["ASK_QUESTIONS"] * 3

    def test_phase_follows_user_intent(self):
        """Test the user intent to phase mapping."""
        ledger = TurnLedger()
        ledger.add_turn("user", "Plan five days in Rome", ChatIntent.NEW_ITINERARY)
        assert ledger.context.phase == ConversationPhase.ITINERARY_PLANNING
        ledger.add_turn("user", "Swap day two and three", ChatIntent.MODIFY_EXISTING)
        assert ledger.context.phase == ConversationPhase.MODIFYING_ITINERARY
        ledger.add_turn("user", "Hello there", ChatIntent.GENERAL_CHAT)
        assert ledger.context.phase == ConversationPhase.GENERAL


class TestRecommendations:
    """Test recommendation capture and follow-up detection."""

    def test_assistant_recommendation_is_recorded(self):
        """Test that listed items in a recommendation reply are captured."""
        ledger = TurnLedger()
        _recommend_food(ledger)

        recs = ledger.get_recent_recommendations()
        assert len(recs) == 1
        assert recs[0].type == "restaurants"
        assert recs[0].location == "Tokyo"
        assert recs[0].query == "Where should I eat in Tokyo?"
        assert recs[0].items == ["Sukiyabashi Jiro", "Ichiran Ramen", "Tsukiji Outer Market"]

    def test_reply_without_items_records_nothing(self):
        """Test that prose replies add no recommendation."""
        ledger = TurnLedger()
        ledger.add_turn("assistant", "Tokyo has great food.", ChatIntent.GET_RECOMMENDATIONS, TOKYO_FOOD)
        assert ledger.get_recent_recommendations() == []
        assert ledger.add_recommendation("general", "Tokyo", "nothing listed", "q") is None

    def test_recommendations_are_bounded(self):
        """Test the recommendation cap."""
        ledger = TurnLedger(max_recommendations=2)
        for i in range(3):
            ledger.add_recommendation("activities", "Oslo", f"1. Place {i}", "q")
        assert [r.items for r in ledger.recommendations] == [["Place 1"], ["Place 2"]]

    def test_recent_windows(self):
        """Test the time windows on recommendations."""
        ledger = TurnLedger()
        ledger.add_recommendation(
            "hotels", "Lima", "1. Hotel B", "q", timestamp=datetime.now() - timedelta(minutes=20)
        )
        assert not ledger.has_recent_recommendations(10)
        assert ledger.has_recent_recommendations(30)
        assert len(ledger.get_recent_recommendations(within_minutes=30)) == 1
        assert ledger.get_recent_recommendations(type="restaurants") == []

    def test_follow_up_links_to_assistant_turn(self):
        """Test that a follow-up records the turn it follows."""
        ledger = TurnLedger()
        reply_id = _recommend_food(ledger)
        ledger.add_turn("user", "What about dinner?")
        assert ledger.get_recent_history(1)[0].follow_up_to == reply_id

    def test_no_follow_up_without_recent_recommendation(self):
        """Test that indicator words alone don't make a follow-up."""
        ledger = TurnLedger()
        ledger.add_turn("assistant", "Welcome!")
        ledger.add_turn("user", "What about dinner?")
        assert ledger.get_recent_history(1)[0].follow_up_to is None
        assert not ledger.is_follow_up_question("What about dinner?")

    def test_follow_up_window(self):
        """Test that a recommendation older than the window doesn't count."""
        ledger = TurnLedger(follow_up_window_minutes=5)
        ledger.add_recommendation("hotels", "Lima", "1. Hotel B", "q", timestamp=datetime.now() - timedelta(minutes=6))
        assert not ledger.is_follow_up_question("What about cheaper ones?")

    def test_custom_classifier(self):
        """Test that the follow-up classifier is pluggable."""
        classifier = Mock()
        classifier.is_follow_up.return_value = True
        ledger = TurnLedger(follow_up_classifier=classifier)
        assert ledger.is_follow_up_question("anything")
        classifier.is_follow_up.assert_called_once_with("anything", False)


class TestContext:
    """Test derived context, suggestions and strategy."""

    def test_destination_change_emits_once(self):
        """Test the destination change event."""
        registry = create_registry()
        listener = Mock()
        registry.add_listener(CacheEvent.DESTINATION_CHANGE, listener)
        ledger = TurnLedger(registry)

        ledger.set_current_destination("Paris")
        ledger.set_current_destination("Paris")
        ledger.add_turn("user", "Plan Rome", ChatIntent.NEW_ITINERARY, {"destination": "Rome"})

        assert [c.args[1] for c in listener.call_args_list] == [
            {"destination": "Paris"},
            {"destination": "Rome"},
        ]
        assert ledger.context.current_destination == "Rome"

    def test_pending_questions_after_recommendation(self):
        """Test that recommendation replies queue clarifying questions."""
        ledger = TurnLedger()
        _recommend_food(ledger)
        questions = ledger.get_pending_questions()
        assert len(questions) == 4
        assert questions[0] == "Would you like recommendations for any specific cuisine in Tokyo?"

    def test_suggestions(self):
        """Test suggestions for the different conversation states."""
        ledger = TurnLedger()
        assert ledger.get_contextual_suggestions()[0] == "Get restaurant recommendations"

        _recommend_food(ledger)
        assert ledger.get_contextual_suggestions()[0] == "What about activities in Tokyo?"

        ledger.add_turn("user", "Hello again", ChatIntent.GENERAL_CHAT)
        assert ledger.get_contextual_suggestions()[0] == "Plan a full itinerary"

    def test_response_strategy(self):
        """Test the response strategy hints."""
        ledger = TurnLedger()
        assert ledger.get_response_strategy() == "direct_answer"

        ledger.add_turn("user", "Hi")
        assert ledger.get_response_strategy() == "clarifying_question"

        ledger.add_turn("user", "I would like to see museums in Vienna", confidence=0.5)
        assert ledger.get_response_strategy() == "clarifying_question"

        ledger.add_turn("user", "I would like to see museums in Vienna", confidence=0.95)
        assert ledger.get_response_strategy() == "direct_answer"

        _recommend_food(ledger)
        ledger.add_turn("user", "What about dinner?")
        assert ledger.get_response_strategy() == "context_aware"

    def test_preferences(self):
        """Test recording stated preferences."""
        ledger = TurnLedger()
        ledger.update_mentioned_preferences({"budget": "cheap", "cuisine": ""})
        prefs = ledger.get_mentioned_preferences()
        assert list(prefs) == ["budget"]
        assert prefs["budget"].value == "cheap"

    def test_topics(self):
        """Test recent and dominant topics."""
        ledger = TurnLedger()
        ledger.add_turn("user", "Rome trip", parameters={"destination": "Rome"})
        ledger.add_turn("user", "Rome again", parameters={"destination": "Rome"})
        ledger.add_turn(
            "user", "Is the metro safe?", ChatIntent.ASK_QUESTIONS,
            {"question": {"specificTopic": "metro"}},
        )
        assert ledger.get_dominant_topic() == "Rome"
        assert ledger.was_recently_discussed("metro")
        assert ledger.was_recently_discussed("ROME")
        assert not ledger.was_recently_discussed("Venice")
        assert TurnLedger().get_dominant_topic() is None

    def test_get_context_snapshot(self):
        """Test that the snapshot carries history and is detached."""
        ledger = TurnLedger()
        _recommend_food(ledger)
        snapshot = ledger.get_context()
        assert len(snapshot.conversation_history) == 2
        assert len(snapshot.recent_recommendations) == 1
        snapshot.conversation_history.clear()
        assert len(ledger.turns) == 2

    def test_get_stats(self):
        """Test ledger statistics."""
        ledger = TurnLedger()
        _recommend_food(ledger)
        stats = ledger.get_stats()
        assert stats["total_turns"] == 2
        assert stats["user_turns"] == 1
        assert stats["assistant_turns"] == 1
        assert stats["average_confidence"] == pytest.approx(0.9)
        assert stats["top_intents"] == [{"intent": "GET_RECOMMENDATIONS", "count": 2}]
        assert stats["recommendations"] == 1


class TestPersistence:
    """Test saving and restoring the ledger."""

    def test_save_and_load(self):
        """Test that a second ledger restores the first one's state."""
        registry = create_registry(user_id="alice")
        ledger = TurnLedger(registry)
        _recommend_food(ledger)
        ledger.update_mentioned_preferences({"budget": "mid"})

        restored = TurnLedger(registry)
        assert restored.load() is True
        assert [t.id for t in restored.turns] == [t.id for t in ledger.turns]
        assert restored.context.current_destination == "Tokyo"
        assert restored.get_recent_recommendations()[0].items == ledger.get_recent_recommendations()[0].items
        assert restored.get_mentioned_preferences()["budget"].value == "mid"
        assert restored.context.conversation_history == []

    def test_load_without_stored_context(self):
        """Test loading from an empty registry."""
        assert TurnLedger(create_registry()).load() is False
        assert TurnLedger().load() is False

    def test_corrupt_context_is_discarded(self, caplog):
        """Test that an unreadable stored context is deleted."""
        registry = create_registry()
        registry.set(CacheNamespace.CONVERSATION_CONTEXT, CONTEXT_KEY, {"createdAt": "not a date"})
        ledger = TurnLedger(registry)
        assert ledger.load() is False
        assert registry.get(CacheNamespace.CONVERSATION_CONTEXT, CONTEXT_KEY) is None
        assert "unreadable" in caplog.text

    def test_restore_applies_bounds(self):
        """Test that restoring trims to the configured limits."""
        turns = [ConversationTurn(id=f"t{i}", role="user", content=str(i)) for i in range(20)]
        ledger = TurnLedger(max_turns=15)
        ledger.restore(ConversationContext(conversation_history=turns))
        assert len(ledger.turns) == 15
        assert ledger.turns[0].id == "t5"

    def test_context_is_user_scoped(self):
        """Test that two users' contexts don't mix."""
        registry = create_registry(user_id="alice")
        TurnLedger(registry).add_turn("user", "alice's turn")

        registry.current_user_id = "bob"
        assert TurnLedger(registry).load() is False

    def test_clear_and_reset(self):
        """Test reset keeps storage while clear removes it."""
        registry = create_registry()
        ledger = TurnLedger(registry)
        ledger.add_turn("user", "hello")

        ledger.reset()
        assert len(ledger.turns) == 0
        assert registry.get(CacheNamespace.CONVERSATION_CONTEXT, CONTEXT_KEY) is not None

        ledger.clear()
        assert registry.get(CacheNamespace.CONVERSATION_CONTEXT, CONTEXT_KEY) is None

    def test_discard_history_keeps_destination(self):
        """Test dropping turns while keeping the destination."""
        registry = create_registry()
        ledger = TurnLedger(registry)
        _recommend_food(ledger)
        ledger.discard_history()

        assert len(ledger.turns) == 0
        assert ledger.get_recent_recommendations() == []
        assert ledger.get_pending_questions() == []
        assert ledger.context.current_destination == "Tokyo"
        stored = registry.get(CacheNamespace.CONVERSATION_CONTEXT, CONTEXT_KEY)
        assert stored["conversationHistory"] == []


class TestFollowUpWindowExamples:
    """Follow-up classification against recommendation age."""

    @pytest.mark.parametrize("age_minutes,expected", [(2, True), (20, False)])
    def test_recommendation_age(self, age_minutes, expected):
        """Test a fresh and an old recommendation with a five minute window."""
        ledger = TurnLedger(follow_up_window_minutes=5)
        ledger.add_recommendation(
            "restaurants", "Tokyo", RECOMMENDATION_REPLY, "food?",
            timestamp=datetime.now() - timedelta(minutes=age_minutes),
        )
        assert ledger.is_follow_up_question("what about something cheaper?") is expected

    def test_without_recommendation(self):
        """Test the same message with no recommendation at all."""
        assert TurnLedger().is_follow_up_question("what about something cheaper?") is False
