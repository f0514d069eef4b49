"""Core components of the tripflow cache."""

from .cache import ExpiringCache
from .heuristics import (
    FollowUpClassifier,
    LexicalFollowUpClassifier,
    ListItemExtractor,
    RecommendationExtractor,
)
from .registry import NamespaceRegistry

__all__ = [
    "ExpiringCache",
    "FollowUpClassifier",
    "LexicalFollowUpClassifier",
    "ListItemExtractor",
    "NamespaceRegistry",
    "RecommendationExtractor",
]
