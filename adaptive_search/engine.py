"""
Self-learning listing search service.

SelfLearningSearchEngine is the object a host owns: it wires the LearningStore,
the Ranker and the FeedbackProcessor together, keeps a default search session
and exposes engine metrics. It is constructed explicitly; there is no module
level instance.
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from .feedback import FeedbackProcessor
from .learning_store import JsonStateRepository, LearningStore
from .models import Interaction, Item, LearningStats, SearchResponse, StatePersistError
from .ranker import Ranker
from .scoring import AdaptiveScorer
from .session import SessionTracker

TOP_PATTERN_COUNT = 10

ItemLike = Union[Item, Mapping[str, Any]]


class SelfLearningSearchEngine:
    """Ranks listings for free-text queries and learns from user feedback."""

    def __init__(self,
                 store: LearningStore,
                 scorer: Optional[AdaptiveScorer] = None,
                 ranker: Optional[Ranker] = None,
                 enable_metrics: bool = True):
        """
        Args:
            store: Owner of the learning state
            scorer: Relevance scorer; ignored when a ranker is given
            ranker: Ranker to use, built around scorer by default
            enable_metrics: Collect Prometheus metrics on a private registry
        """
        self.logger = logging.getLogger(f"{__name__}.SelfLearningSearchEngine")
        self.store = store
        self.ranker = ranker or Ranker(scorer)
        self.feedback = FeedbackProcessor(store)
        self.default_session = SessionTracker()
        self.enable_metrics = enable_metrics

        self._chained_persist_error = store.on_persist_error
        store.on_persist_error = self._on_persist_error

        if enable_metrics:
            self.registry = CollectorRegistry()
            self.query_counter = Counter(
                'adaptive_search_queries_total',
                'Total number of ranked queries',
                registry=self.registry
            )
            self.rank_duration = Histogram(
                'adaptive_search_rank_duration_seconds',
                'Duration of ranking passes',
                registry=self.registry
            )
            self.feedback_counter = Counter(
                'adaptive_search_feedback_events_total',
                'Feedback events by kind and outcome',
                ['kind', 'status'],
                registry=self.registry
            )
            self.persist_failure_counter = Counter(
                'adaptive_search_persist_failures_total',
                'Learning state writes that failed after retries',
                registry=self.registry
            )
            self.learned_patterns = Gauge(
                'adaptive_search_learned_patterns',
                'Number of learned query tokens',
                registry=self.registry
            )
        else:
            self.metrics = {
                "total_queries": 0,
                "total_results": 0,
                "average_rank_time": 0.0,
                "feedback_events": {},
                "persist_failures": 0,
            }

    @classmethod
    def from_config(cls, settings=None) -> 'SelfLearningSearchEngine':
        """Build an engine backed by a JSON repository from application settings."""
        if settings is None:
            from config.settings import config as settings

        repository = JsonStateRepository(
            directory=settings.LEARNING_STATE_DIR,
            scope=settings.LEARNING_SCOPE,
            max_attempts=settings.PERSIST_ATTEMPTS,
        )
        store = LearningStore(
            repository=repository,
            interaction_log_limit=settings.INTERACTION_LOG_LIMIT,
            pattern_limit=settings.PATTERN_LIMIT,
        )
        return cls(store, enable_metrics=settings.ENABLE_PROMETHEUS_METRICS)

    def start(self) -> LearningStats:
        """Load the persisted learning state; safe to call more than once."""
        if not self.store.is_loaded:
            self.store.load()
        stats = self.get_learning_stats()
        self.logger.info(
            f"Search engine ready: {stats.total_queries} logged interactions, "
            f"{stats.unique_patterns} learned patterns"
        )
        return stats

    def new_session(self, session_id: Optional[str] = None) -> SessionTracker:
        return SessionTracker(session_id)

    def search(self,
               query: str,
               items: Iterable[ItemLike],
               session: Optional[SessionTracker] = None) -> List[Item]:
        """
        Rank candidate listings for a query.

        The query becomes the session's attribution target for later clicks
        and ratings. An empty query returns the candidates unchanged.
        """
        return self.search_with_details(query, items, session).items

    def search_with_details(self,
                            query: str,
                            items: Iterable[ItemLike],
                            session: Optional[SessionTracker] = None) -> SearchResponse:
        """
        Rank candidate listings and keep scores, bonuses and matched factors.

        Args:
            query: Raw query text
            items: Item objects or listing mappings
            session: Session to attribute the query to; the default session if None

        Returns:
            SearchResponse with ranked results and timing metadata
        """
        session = session or self.default_session
        start_time = time.time()

        candidates = [self._coerce_item(item) for item in items]
        normalized_query = session.begin_query(query) or ""
        state = self.store.snapshot()
        results = self.ranker.rank_with_scores(normalized_query, candidates, state)

        rank_time = time.time() - start_time
        if normalized_query:
            self._observe_query(rank_time, len(results))
            self.logger.info(f"Query '{normalized_query}': {len(results)} of {len(candidates)} listings matched")

        return SearchResponse(
            query=normalized_query,
            session_id=session.session_id,
            results=results,
            metadata={
                'total_candidates': len(candidates),
                'result_count': len(results),
                'processing_time': rank_time,
                'timestamp': datetime.now().isoformat(),
            },
        )

    def record_click(self, item_id: str, session: Optional[SessionTracker] = None) -> bool:
        accepted = self.feedback.record_click(item_id, session or self.default_session)
        self._observe_feedback('click', accepted)
        return accepted

    def record_feedback(self, rating: int, session: Optional[SessionTracker] = None) -> bool:
        accepted = self.feedback.record_feedback(rating, session or self.default_session)
        self._observe_feedback('rating', accepted)
        return accepted

    def record_interaction(self, interaction: Interaction) -> None:
        self.feedback.record_interaction(interaction)
        self._observe_feedback('interaction', True)

    def adjust_preference(self, key: str, delta: float) -> Optional[float]:
        value = self.feedback.adjust_preference(key, delta)
        self._observe_feedback('preference', value is not None)
        return value

    def get_learning_stats(self) -> LearningStats:
        """Summary of the current learning state generation."""
        state = self.store.snapshot()
        if self.enable_metrics:
            self.learned_patterns.set(len(state.pattern_frequency))
        return LearningStats(
            total_queries=len(state.interaction_log),
            unique_patterns=len(state.pattern_frequency),
            learned_weights=dict(state.feature_weights),
            top_patterns=state.top_patterns(TOP_PATTERN_COUNT),
        )

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metrics in a standardized format."""
        if self.enable_metrics:
            return {
                "prometheus_metrics": generate_latest(self.registry).decode('utf-8'),
                "format": "prometheus"
            }
        return {
            "metrics": self.metrics,
            "format": "simple"
        }

    def shutdown(self) -> bool:
        """Flush the learning state. Returns False if the final write failed."""
        flushed = self.store.flush()
        if flushed:
            self.logger.info("Learning state flushed")
        else:
            self.logger.warning("Learning state could not be flushed on shutdown")
        return flushed

    @staticmethod
    def _coerce_item(item: ItemLike) -> Item:
        if isinstance(item, Item):
            return item
        return Item.from_dict(item)

    def _observe_query(self, rank_time: float, result_count: int) -> None:
        if self.enable_metrics:
            self.query_counter.inc()
            self.rank_duration.observe(rank_time)
            return

        self.metrics["total_queries"] += 1
        self.metrics["total_results"] += result_count
        total = self.metrics["total_queries"]
        current_avg = self.metrics["average_rank_time"]
        self.metrics["average_rank_time"] = (current_avg * (total - 1) + rank_time) / total

    def _observe_feedback(self, kind: str, accepted: bool) -> None:
        status = "accepted" if accepted else "ignored"
        if self.enable_metrics:
            self.feedback_counter.labels(kind=kind, status=status).inc()
            return

        key = f"{kind}_{status}"
        events = self.metrics["feedback_events"]
        events[key] = events.get(key, 0) + 1

    def _on_persist_error(self, error: StatePersistError) -> None:
        if self.enable_metrics:
            self.persist_failure_counter.inc()
        else:
            self.metrics["persist_failures"] += 1
        if self._chained_persist_error is not None:
            self._chained_persist_error(error)


__all__ = ["SelfLearningSearchEngine"]
