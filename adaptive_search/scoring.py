"""
Relevance scoring of one listing against one free-text query.

The score is a sum of independent, explainable terms. Each term that fires
adds its factor name to the result so callers can show why an item matched:

- exact_match: the whole query occurs in the listing text
- type_match: a category keyword (base table or learned from frequent query
  tokens) occurs in the query
- size_match: an area hint (number up to 1000 or a size word) fits the listing
- price_match: a price hint (number above 1000 or a price word) fits the listing
- feature_match: a requested amenity (parking, storage, centre, metro, ground
  floor) is present
- context_match: the listing was clicked after a similar earlier query
- word_match: share of query words found in the listing text

Weights come from the LearningState snapshot, so the same query ranks
differently once feedback has moved the weights. Scoring never mutates state.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from .learning_store import LearningState
from .models import Item, ScoreResult, normalize_text
from .similarity import similarity


BASE_TYPE_KEYWORDS: Dict[str, List[str]] = {
    'магазин': ['магазин', 'торговля', 'продажа', 'ритейл', 'розница'],
    'ресторан': ['ресторан', 'кафе', 'бар', 'общепит', 'еда', 'питание'],
    'офис': ['офис', 'работа', 'бизнес', 'деловой', 'it'],
    'склад': ['склад', 'хранение', 'логистика', 'товары'],
}

# Inclusive area ranges, checked in this order.
SIZE_BUCKETS: List[Tuple[str, float, float]] = [
    ('маленький', 0, 50),
    ('небольшой', 50, 100),
    ('средний', 100, 200),
    ('большой', 200, 500),
]

PRICE_WORDS: Tuple[str, ...] = ('дешево', 'недорого', 'дорого', 'премиум')

FEATURE_RULES: List[Tuple[Tuple[str, ...], Callable[[Item], bool]]] = [
    (('парковка', 'паркинг'), lambda item: item.has_parking),
    (('склад', 'хранение'), lambda item: item.has_storage),
    (('центр',), lambda item: 'центр' in item.location.lower()),
    (('метро',), lambda item: 'метро' in item.location.lower()),
    (('первый этаж', '1 этаж'), lambda item: item.floor == 1),
]

AREA_HINT_MAX = 1000
LEARNED_KEYWORD_MIN_FREQUENCY = 5
CATEGORY_PREFIX_LENGTH = 4
CONTEXT_SIMILARITY_THRESHOLD = 0.7
TOKEN_SIMILARITY_THRESHOLD = 0.8
CONTEXT_MATCH_SCORE = 50
WORD_MATCH_SCALE = 30
SIZE_CALIBRATION = 30
PRICE_CALIBRATION = 30
FEATURE_CALIBRATION = 25
FEATURE_BASE_SCORE = 25

_NUMBER_PATTERN = re.compile(r"[0-9]+")


@dataclass
class QueryContext:
    """Query-level values shared by every item in one ranking pass."""
    query: str
    numbers: List[int]
    contextual_item_ids: Set[str]
    type_keywords: Dict[str, List[str]] = field(default_factory=dict)


class AdaptiveScorer:
    """Computes adaptive relevance scores from a LearningState snapshot."""

    def __init__(self, type_keywords: Optional[Dict[str, List[str]]] = None):
        self.type_keywords = {
            normalize_text(category): [normalize_text(k) for k in keywords]
            for category, keywords in (type_keywords or BASE_TYPE_KEYWORDS).items()
        }

    def prepare(self, query: str, state: LearningState) -> QueryContext:
        """
        Precompute the parts of the score that depend only on the query.

        Args:
            query: Normalized query
            state: Learning state snapshot

        Returns:
            QueryContext reusable for every item scored against this query
        """
        contextual_ids: Set[str] = set()
        for historical_query, clicked_ids in state.contextual_mappings.items():
            if similarity(query, historical_query) > CONTEXT_SIMILARITY_THRESHOLD:
                contextual_ids.update(clicked_ids)

        return QueryContext(
            query=query,
            numbers=[int(n) for n in _NUMBER_PATTERN.findall(query)],
            contextual_item_ids=contextual_ids,
        )

    def score(self,
              query: str,
              item: Item,
              state: LearningState,
              context: Optional[QueryContext] = None) -> ScoreResult:
        """
        Score one item against a normalized query.

        Args:
            query: Normalized (lower-cased, trimmed) query
            item: Listing to score
            state: Learning state snapshot providing weights and preferences
            context: Result of prepare() for the same query and state

        Returns:
            ScoreResult with the total score and the factors that fired
        """
        if context is None:
            context = self.prepare(query, state)

        result = ScoreResult(score=0.0)
        text = item.searchable_text()

        if query and query in text:
            self._add(result, 'exact_match', state.weight('exact_match'))

        keywords = self.learned_type_keywords(item.type, state, context)
        if any(keyword in query for keyword in keywords):
            self._add(result, 'type_match', state.weight('type_match'))

        size_score = self.size_score(query, context.numbers, item.area)
        if size_score > 0:
            self._add(result, 'size_match', size_score * state.weight('size_match') / SIZE_CALIBRATION)

        price_score = self.price_score(query, context.numbers, item.price, state)
        if price_score > 0:
            self._add(result, 'price_match', price_score * state.weight('price_match') / PRICE_CALIBRATION)

        feature_score = self.feature_score(query, item, state)
        if feature_score > 0:
            self._add(result, 'feature_match',
                      feature_score * state.weight('feature_match') / FEATURE_CALIBRATION)

        if item.id and item.id in context.contextual_item_ids:
            self._add(result, 'context_match', CONTEXT_MATCH_SCORE)

        word_score = self.word_overlap_score(query, text)
        if word_score > 0:
            self._add(result, 'word_match', word_score)

        return result

    def learned_type_keywords(self,
                              category: str,
                              state: LearningState,
                              context: Optional[QueryContext] = None) -> List[str]:
        """Base keywords for a category plus frequent query tokens resembling it."""
        category = normalize_text(category)
        if not category:
            return []

        if context is not None and category in context.type_keywords:
            return context.type_keywords[category]

        keywords = list(self.type_keywords.get(category, []))
        prefix = category[:CATEGORY_PREFIX_LENGTH]
        for word, frequency in state.pattern_frequency.items():
            if frequency > LEARNED_KEYWORD_MIN_FREQUENCY and prefix in word:
                keywords.append(word)

        if context is not None:
            context.type_keywords[category] = keywords
        return keywords

    def size_score(self, query: str, numbers: List[int], area: float) -> float:
        """Raw size score before weighting."""
        for number in numbers:
            if number <= AREA_HINT_MAX:
                diff = abs(area - number)
                if diff <= 20:
                    return 40
                if diff <= 50:
                    return 20
                if diff <= 100:
                    return 10

        for size_word, low, high in SIZE_BUCKETS:
            if size_word in query and low <= area <= high:
                return 30

        return 0

    def price_score(self, query: str, numbers: List[int], price: float, state: LearningState) -> float:
        """Raw price score before weighting."""
        for number in numbers:
            if number > AREA_HINT_MAX:
                diff = abs(price - number)
                if diff <= number * 0.1:
                    return 40
                if diff <= number * 0.2:
                    return 20
                if diff <= number * 0.3:
                    return 10

        for word in PRICE_WORDS:
            if word in query:
                preference = state.user_preferences.get(f"price_{word}") or 0
                return min(30, preference / 10)

        return 0

    def feature_score(self, query: str, item: Item, state: LearningState) -> float:
        """Raw amenity score before weighting."""
        score = 0.0
        for keywords, predicate in FEATURE_RULES:
            if any(keyword in query for keyword in keywords) and predicate(item):
                learned_weight = state.user_preferences.get(f"feature_{keywords[0]}") or 1
                score += FEATURE_BASE_SCORE * learned_weight
        return score

    def word_overlap_score(self, query: str, text: str) -> float:
        """Share of query words found in the text, scaled to WORD_MATCH_SCALE."""
        query_words = query.split()
        if not query_words:
            return 0.0

        text_words = text.split()
        match_count = 0
        for q_word in query_words:
            if len(q_word) <= 2:
                continue
            if any(t_word in q_word or q_word in t_word
                   or similarity(q_word, t_word) > TOKEN_SIMILARITY_THRESHOLD
                   for t_word in text_words):
                match_count += 1

        return (match_count / len(query_words)) * WORD_MATCH_SCALE

    @staticmethod
    def _add(result: ScoreResult, factor: str, value: float) -> None:
        result.score += value
        result.matched_factors.add(factor)
        result.components[factor] = value


__all__ = [
    "BASE_TYPE_KEYWORDS",
    "SIZE_BUCKETS",
    "PRICE_WORDS",
    "FEATURE_RULES",
    "QueryContext",
    "AdaptiveScorer",
]
