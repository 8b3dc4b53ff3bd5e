"""
Adaptive Search - Source Package

Self-learning ranking of commercial property listings for free-text Russian
queries. The engine scores listings with weighted, explainable factors and
adapts the weights, learned keywords and query associations from clicks and
ratings.

Modules:
- similarity: Levenshtein-based string similarity
- learning_store: Learning state, its JSON persistence and the single-writer store
- scoring: Per-listing relevance scoring
- ranker: Ranking with learned type and popularity bonuses
- feedback: Learning from clicks, ratings and interactions
- session: Search session tracking
- engine: SelfLearningSearchEngine service object
- mcp_server: MCP host exposing the engine as tools
"""

__version__ = "0.1.0"

from .engine import SelfLearningSearchEngine
from .feedback import FeedbackProcessor
from .learning_store import JsonStateRepository, LearningState, LearningStore
from .models import (
    Interaction,
    Item,
    LearningStateError,
    LearningStats,
    RankedItem,
    ScoreResult,
    SearchResponse,
    StateLoadError,
    StatePersistError,
)
from .ranker import Ranker
from .scoring import AdaptiveScorer
from .session import SessionTracker
from .similarity import levenshtein_distance, similarity

__all__ = [
    "SelfLearningSearchEngine",
    "FeedbackProcessor",
    "JsonStateRepository",
    "LearningState",
    "LearningStore",
    "Interaction",
    "Item",
    "LearningStateError",
    "LearningStats",
    "RankedItem",
    "ScoreResult",
    "SearchResponse",
    "StateLoadError",
    "StatePersistError",
    "Ranker",
    "AdaptiveScorer",
    "SessionTracker",
    "levenshtein_distance",
    "similarity",
]
