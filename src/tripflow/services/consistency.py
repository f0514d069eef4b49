"""Destination-consistency check for restored conversation history.

Best-effort only: names are compared word by word, so paraphrased or
abbreviated destinations fail.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

logger = logging.getLogger(__name__)

DESTINATION_PHRASES = (
    re.compile(r"\btrip to\b"),
    re.compile(r"\bvisit(?:ing|ed|s)?\b"),
    re.compile(r"\bitinerary for\b"),
    re.compile(r"\bplan(?:s|ning|ned)?\b[^.!?\n]*?\b(?:to|for)\b"),
)

SENTENCE_END = re.compile(r"[.!?\n]")

# Words that end a destination name inside a mention
STOPWORDS = frozenset(
    {
        "a", "an", "and", "at", "by", "during", "for", "from", "in", "it",
        "me", "my", "next", "on", "or", "our", "please", "so", "the", "this",
        "to", "with",
    }
)

# Travel verbs that can sit between an indicator and the place ("plan to go to")
TRAVEL_VERBS = frozenset(
    {"be", "explore", "fly", "go", "head", "see", "spend", "stay", "travel", "visit"}
)

MAX_TARGET_WORDS = 3


@dataclass
class DestinationMention:
    """A destination phrase found in a turn."""

    phrase: str  # lowercased text from the indicator to the end of the sentence
    target: str  # best guess at the destination name


def _content(turn: Any) -> str:
    if isinstance(turn, dict):
        return str(turn.get("content") or "")
    return str(getattr(turn, "content", "") or "")


def _target(fragment: str) -> str:
    words = []
    for raw in fragment.split():
        word = re.sub(r"[^\w'-]", "", raw).strip("'-_")
        if not word:
            continue
        if word in STOPWORDS or word in TRAVEL_VERBS:
            if words:
                break
            continue
        words.append(word)
        if len(words) >= MAX_TARGET_WORDS:
            break
    return " ".join(words)


def _contains_words(text: str, words: str) -> bool:
    return re.search(rf"\b{re.escape(words)}\b", text) is not None


class DestinationConsistencyValidator:
    """Cross-checks turn history against a session destination."""

    def __init__(self, window: int = 10):
        self.window = window

    def find_destination_mentions(self, turns: Iterable[Any]) -> List[DestinationMention]:
        """Destination phrases in the last ``window`` turns."""
        mentions = []
        recent = list(turns)[-self.window:] if self.window > 0 else []
        for turn in recent:
            text = _content(turn).lower()
            for pattern in DESTINATION_PHRASES:
                for match in pattern.finditer(text):
                    end = SENTENCE_END.search(text, match.end())
                    stop = end.start() if end else len(text)
                    target = _target(text[match.end():stop])
                    # "plan something for me" names no place
                    if not target:
                        continue
                    mentions.append(
                        DestinationMention(phrase=text[match.start():stop].strip(), target=target)
                    )
        return mentions

    def validate(self, turns: Iterable[Any], session_destination: Optional[str]) -> bool:
        """Whether ``turns`` are consistent with ``session_destination``.

        No destination or no destination phrases counts as consistent.
        """
        if not session_destination:
            return True

        mentions = self.find_destination_mentions(turns)
        if not mentions:
            return True

        destination = session_destination.lower().strip()
        primary = destination.split(",")[0].strip()
        for mention in mentions:
            if _contains_words(mention.phrase, destination) or (
                primary and _contains_words(mention.phrase, primary)
            ):
                return True
            if _contains_words(destination, mention.target):
                return True

        logger.info(
            f"History mentions {[m.target for m in mentions]} "
            f"but session destination is {session_destination}"
        )
        return False
