"""
Ranking of candidate listings for one query.

Every candidate is scored independently against the same LearningState
snapshot, then two learned bonuses are added:
- type bonus from the user's category preference (capped at 20)
- popularity bonus from logged clicks on the listing (capped at 15)

Candidates are ordered by the final score with a stable sort, so listings with
equal scores keep the order in which the catalog supplied them. Listings whose
relevance score is not positive are not returned at all.
"""

import logging
from typing import List, Optional, Sequence

from .learning_store import LearningState
from .models import Item, RankedItem, ScoreResult, normalize_text
from .scoring import AdaptiveScorer

TYPE_BONUS_CAP = 20
TYPE_BONUS_DIVISOR = 5
POPULARITY_BONUS_CAP = 15
POPULARITY_PER_CLICK = 2


class Ranker:
    """Orchestrates scoring across all candidates, then sorts and filters."""

    def __init__(self, scorer: Optional[AdaptiveScorer] = None):
        self.scorer = scorer or AdaptiveScorer()
        self.logger = logging.getLogger(f"{__name__}.Ranker")

    def rank(self, query: str, items: Sequence[Item], state: LearningState) -> List[Item]:
        """
        Rank items for a query.

        Args:
            query: Raw query text
            items: Candidate snapshot from the catalog
            state: Learning state snapshot

        Returns:
            Matching items, best first. An empty query returns the input unchanged.
        """
        normalized_query = normalize_text(query)
        if not normalized_query:
            return list(items)

        return [ranked.item for ranked in self.rank_with_scores(normalized_query, items, state)]

    def rank_with_scores(self,
                         query: str,
                         items: Sequence[Item],
                         state: LearningState) -> List[RankedItem]:
        """
        Rank items and keep the per-item score breakdown.

        An empty query yields every item, unscored, in input order.
        """
        normalized_query = normalize_text(query)
        if not normalized_query:
            return [RankedItem(item=item, score=0.0, final_score=0.0) for item in items]

        context = self.scorer.prepare(normalized_query, state)
        click_counts = state.click_counts()

        ranked: List[RankedItem] = []
        for item in items:
            result = self._safe_score(normalized_query, item, state, context)
            type_bonus = self.type_bonus(item, state)
            popularity_bonus = self.popularity_bonus(click_counts.get(item.id, 0))
            ranked.append(RankedItem(
                item=item,
                score=result.score,
                final_score=result.score + type_bonus + popularity_bonus,
                matched_factors=result.matched_factors,
                type_bonus=type_bonus,
                popularity_bonus=popularity_bonus,
            ))

        # sorted() is stable: equal scores keep catalog order
        ranked = sorted(ranked, key=lambda r: r.final_score, reverse=True)
        return [r for r in ranked if r.score > 0]

    def type_bonus(self, item: Item, state: LearningState) -> float:
        category = normalize_text(item.type)
        if not category:
            return 0.0
        type_frequency = state.user_preferences.get(f"type_{category}") or 0
        return min(TYPE_BONUS_CAP, type_frequency / TYPE_BONUS_DIVISOR)

    @staticmethod
    def popularity_bonus(click_count: int) -> float:
        return min(POPULARITY_BONUS_CAP, click_count * POPULARITY_PER_CLICK)

    def _safe_score(self, query, item, state, context) -> ScoreResult:
        try:
            return self.scorer.score(query, item, state, context)
        except Exception as e:
            self.logger.warning(f"Scoring failed for item {getattr(item, 'id', '?')}: {e}")
            return ScoreResult(score=0.0)


__all__ = ["Ranker"]
