"""
Learning from user behaviour.

Clicks teach the engine which listings answer which queries; ratings move all
feature weights together by (rating - 3) * 5, clamped to [5, 150]. Every
accepted event is persisted immediately through the LearningStore.
"""

import logging
import time
from typing import Optional

from .learning_store import LearningStore, clamp_weight
from .models import Interaction, normalize_text
from .session import SessionTracker

MIN_RATING = 1
MAX_RATING = 5
NEUTRAL_RATING = 3
RATING_STEP = 5
MIN_PATTERN_TOKEN_LENGTH = 3


class FeedbackProcessor:
    """Turns clicks, ratings and interactions into learning state updates."""

    def __init__(self, store: LearningStore):
        self.store = store
        self.logger = logging.getLogger(f"{__name__}.FeedbackProcessor")

    def record_click(self, item_id: str, session: SessionTracker) -> bool:
        """
        Associate a clicked item with the session's current query.

        Returns:
            True if the association was new and has been stored
        """
        query = session.current_query
        item_id = str(item_id)
        if not query or not item_id:
            self.logger.debug(f"Ignoring click on {item_id!r}: no current query in {session.session_id}")
            return False

        if item_id in self.store.snapshot().contextual_mappings.get(query, []):
            return False

        with self.store.mutate() as state:
            clicked = state.contextual_mappings.setdefault(query, [])
            if item_id not in clicked:
                clicked.append(item_id)

        self.logger.info(f"Recorded click on {item_id} for query '{query}'")
        return True

    def record_feedback(self, rating: int, session: SessionTracker) -> bool:
        """
        Record an explicit rating of the session's latest results.

        Returns:
            True if the rating was accepted
        """
        if not session.current_query:
            self.logger.debug(f"Ignoring rating {rating}: no current query in {session.session_id}")
            return False
        if not self.is_valid_rating(rating):
            self.logger.debug(f"Ignoring out-of-range rating {rating!r}")
            return False

        self.record_interaction(Interaction(
            query=session.current_query,
            timestamp=time.time(),
            result_count=0,
            clicked_item_ids=(),
            feedback_rating=int(rating),
            session_id=session.session_id,
        ))
        return True

    def record_interaction(self, interaction: Interaction) -> None:
        """
        Log an interaction and learn from it.

        Clicked listings feed pattern frequencies and the contextual mapping
        for the query; a rating adjusts every feature weight.
        """
        query = normalize_text(interaction.query)
        clicked = tuple(str(i) for i in interaction.clicked_item_ids)
        rating = interaction.feedback_rating
        if rating is not None:
            if self.is_valid_rating(rating):
                rating = int(rating)
            else:
                self.logger.warning(f"Dropping out-of-range rating {rating!r} from interaction")
                rating = None

        entry = Interaction(
            query=query,
            timestamp=interaction.timestamp,
            result_count=interaction.result_count,
            clicked_item_ids=clicked,
            feedback_rating=rating,
            session_id=interaction.session_id,
        )

        with self.store.mutate() as state:
            state.interaction_log.append(entry)

            if clicked:
                for word in query.split():
                    if len(word) >= MIN_PATTERN_TOKEN_LENGTH:
                        state.pattern_frequency[word] = state.pattern_frequency.get(word, 0) + 1
                if query:
                    unique_ids = []
                    for item_id in clicked:
                        if item_id not in unique_ids:
                            unique_ids.append(item_id)
                    state.contextual_mappings[query] = unique_ids

            if rating is not None:
                adjustment = (rating - NEUTRAL_RATING) * RATING_STEP
                for factor, weight in state.feature_weights.items():
                    state.feature_weights[factor] = clamp_weight(weight + adjustment)
                self.logger.info(f"Adjusted feature weights by {adjustment:+d} after rating {rating}")

    def adjust_preference(self, key: str, delta: float) -> Optional[float]:
        """
        Add delta to a user preference such as 'type_офис' or 'price_недорого'.

        Returns:
            The new preference value, or None for an empty key
        """
        key = normalize_text(key)
        if not key:
            return None

        with self.store.mutate() as state:
            value = state.user_preferences.get(key, 0) + delta
            state.user_preferences[key] = value

        self.logger.info(f"Preference '{key}' is now {value}")
        return value

    @staticmethod
    def is_valid_rating(rating) -> bool:
        if isinstance(rating, bool):
            return False
        try:
            return MIN_RATING <= int(rating) <= MAX_RATING and int(rating) == rating
        except (TypeError, ValueError):
            return False


__all__ = ["FeedbackProcessor"]
