"""Pluggable text heuristics used by the turn ledger."""

import re
from abc import ABC, abstractmethod
from typing import List, Optional, Pattern, Sequence

FOLLOW_UP_INDICATORS = (
    "what about",
    "how about",
    "any other",
    "also",
    "additionally",
    "what else",
    "more",
    "other options",
    "alternatives",
    "and",
    "or",
    "instead",
    "rather",
    "different",
    "another",
    "similar",
    "thanks",
    "thank you",
    "great",
    "perfect",
    "good",
    "nice",
)

SHORT_QUESTION_MAX_WORDS = 8

LIST_ITEM_PATTERNS = (
    re.compile(r"^\d+\.\s*\*\*(.+?)\*\*"),  # 1. **Item**
    re.compile(r"^[-*•]\s*\*\*(.+?)\*\*"),  # - **Item**
    re.compile(r"^\*\*\d+\.\s*(.+?)\*\*"),  # **1. Item**
    re.compile(r"^\d+\.\s*(.+?)(?:\s*-|\s*$)"),  # 1. Item - description
    re.compile(r"^[-*•]\s*(.+?)(?:\s*-|\s*$)"),  # - Item - description
)


class FollowUpClassifier(ABC):
    """Decides whether a user message follows up on earlier recommendations."""

    @abstractmethod
    def is_follow_up(self, text: str, has_recent_recommendations: bool) -> bool:
        """Classify ``text``.

        Args:
            text: The raw user message.
            has_recent_recommendations: Whether a recommendation was recorded
                inside the follow-up window.
        """
        pass


class RecommendationExtractor(ABC):
    """Pulls recommended item labels out of assistant text."""

    @abstractmethod
    def extract(self, content: str) -> List[str]:
        pass


class LexicalFollowUpClassifier(FollowUpClassifier):
    """Indicator phrases or a short question, plus a recent recommendation."""

    def __init__(
        self,
        indicators: Sequence[str] = FOLLOW_UP_INDICATORS,
        max_question_words: int = SHORT_QUESTION_MAX_WORDS,
    ):
        self.indicators = tuple(indicators)
        self.max_question_words = max_question_words
        alternatives = "|".join(re.escape(i) for i in sorted(self.indicators, key=len, reverse=True))
        self._pattern: Optional[Pattern[str]] = (
            re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE) if self.indicators else None
        )

    def has_indicator(self, text: str) -> bool:
        return bool(self._pattern and self._pattern.search(text))

    def is_short_question(self, text: str) -> bool:
        stripped = text.strip()
        return stripped.endswith("?") and len(stripped.split()) <= self.max_question_words

    def is_follow_up(self, text: str, has_recent_recommendations: bool) -> bool:
        if not has_recent_recommendations:
            return False
        return self.has_indicator(text) or self.is_short_question(text)


class ListItemExtractor(RecommendationExtractor):
    """Numbered, bulleted and bold-leading list lines."""

    def __init__(self, max_items: int = 10, patterns: Sequence[Pattern[str]] = LIST_ITEM_PATTERNS):
        self.max_items = max_items
        self.patterns = tuple(patterns)

    def extract(self, content: str) -> List[str]:
        items: List[str] = []
        for line in content.splitlines():
            trimmed = line.strip()
            for pattern in self.patterns:
                match = pattern.match(trimmed)
                if match and match.group(1).strip():
                    items.append(match.group(1).strip())
                    break
            if len(items) >= self.max_items:
                break
        return items
