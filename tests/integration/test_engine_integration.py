"""
Integration tests for SelfLearningSearchEngine: search, learning, persistence
and metrics working together.
"""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from adaptive_search import (
    Interaction,
    JsonStateRepository,
    LearningStore,
    SelfLearningSearchEngine,
)


LISTINGS = [
    {"id": 1, "title": "Магазин в центре", "area": 80, "price": 100000,
     "location": "Центр города", "type": "Магазин", "hasParking": True},
    {"id": 2, "title": "Офис у метро", "area": 45, "price": 60000,
     "location": "Метро Сокол", "type": "Офис", "floor": 3},
    {"id": 3, "title": "Склад", "area": 300, "price": 150000,
     "location": "Промзона", "type": "Склад", "hasStorage": True},
    {"id": 4, "title": "Склад", "area": 320, "price": 155000,
     "location": "Промзона", "type": "Склад", "hasStorage": True},
]


class FailingRepository(JsonStateRepository):
    def _write(self, payload):
        raise OSError("read-only file system")


def _engine(directory, enable_metrics=False) -> SelfLearningSearchEngine:
    store = LearningStore(JsonStateRepository(directory))
    engine = SelfLearningSearchEngine(store, enable_metrics=enable_metrics)
    engine.start()
    return engine


def test_search_ranks_and_filters(tmp_path):
    engine = _engine(tmp_path)

    results = engine.search("Магазин в центре", LISTINGS)
    assert [item.id for item in results] == ["1"]
    assert engine.default_session.current_query == "магазин в центре"


def test_empty_query_passes_listings_through(tmp_path):
    engine = _engine(tmp_path)
    engine.search("склад", LISTINGS)

    results = engine.search("", LISTINGS)
    assert [item.id for item in results] == ["1", "2", "3", "4"]
    assert engine.default_session.current_query is None
    assert engine.record_click("3") is False


def test_low_ratings_lower_exact_match_weight(tmp_path):
    engine = _engine(tmp_path)
    engine.search("склад", LISTINGS)

    for _ in range(3):
        assert engine.record_feedback(1) is True

    stats = engine.get_learning_stats()
    assert stats.learned_weights["exact_match"] == 70
    assert stats.total_queries == 3


def test_feedback_needs_a_query_first(tmp_path):
    engine = _engine(tmp_path)
    assert engine.record_feedback(5) is False
    assert engine.record_click("1") is False
    assert engine.get_learning_stats().total_queries == 0


def test_clicks_teach_context_and_survive_restart(tmp_path):
    engine = _engine(tmp_path)
    session = engine.new_session()
    engine.search("склад в промзоне", LISTINGS, session)
    assert engine.record_click("4", session) is True
    engine.shutdown()

    restarted = _engine(tmp_path)
    response = restarted.search_with_details("склад в промзоне", LISTINGS)
    by_id = {ranked.item.id: ranked for ranked in response.results}
    assert "context_match" in by_id["4"].matched_factors
    assert "context_match" not in by_id["3"].matched_factors
    assert response.items[0].id == "4"


def test_popular_listing_wins_ties(tmp_path):
    engine = _engine(tmp_path)
    assert [item.id for item in engine.search("склад", LISTINGS)][:2] == ["3", "4"]

    for _ in range(3):
        engine.record_interaction(Interaction(query="большой склад", clicked_item_ids=("4",)))

    assert [item.id for item in engine.search("склад", LISTINGS)][:2] == ["4", "3"]
    stats = engine.get_learning_stats()
    assert ("большой", 3) in stats.top_patterns
    assert stats.unique_patterns == 2


def test_sessions_attribute_feedback_independently(tmp_path):
    engine = _engine(tmp_path)
    first = engine.new_session("first")
    second = engine.new_session("second")

    engine.search("офис у метро", LISTINGS, first)
    engine.search("склад", LISTINGS, second)
    engine.record_click("2", first)
    engine.record_click("3", second)

    mappings = engine.store.snapshot().contextual_mappings
    assert mappings == {"офис у метро": ["2"], "склад": ["3"]}


def test_stats_shape(tmp_path):
    engine = _engine(tmp_path)
    stats = engine.get_learning_stats().to_dict()
    assert set(stats) == {"total_queries", "unique_patterns", "learned_weights", "top_patterns"}
    assert stats["learned_weights"]["exact_match"] == 100


def test_prometheus_metrics(tmp_path):
    engine = _engine(tmp_path, enable_metrics=True)
    engine.search("склад", LISTINGS)
    engine.record_feedback(4)

    metrics = engine.get_metrics()
    assert metrics["format"] == "prometheus"
    assert "adaptive_search_queries_total 1.0" in metrics["prometheus_metrics"]
    assert 'adaptive_search_feedback_events_total{kind="rating",status="accepted"} 1.0' in metrics["prometheus_metrics"]


def test_simple_metrics_when_prometheus_disabled(tmp_path):
    engine = _engine(tmp_path)
    engine.search("склад", LISTINGS)
    engine.record_click("99")

    metrics = engine.get_metrics()
    assert metrics["format"] == "simple"
    assert metrics["metrics"]["total_queries"] == 1
    assert metrics["metrics"]["feedback_events"] == {"click_accepted": 1}


def test_persist_failure_never_blocks_learning(tmp_path):
    store = LearningStore(FailingRepository(tmp_path, max_attempts=1))
    engine = SelfLearningSearchEngine(store, enable_metrics=False)
    engine.start()

    engine.search("склад", LISTINGS)
    assert engine.record_click("3") is True
    assert engine.store.snapshot().contextual_mappings == {"склад": ["3"]}
    assert engine.get_metrics()["metrics"]["persist_failures"] == 1
    assert engine.shutdown() is False


def test_from_config(tmp_path, monkeypatch):
    from config.settings import config

    monkeypatch.setenv("LEARNING_STATE_DIR", str(tmp_path))
    monkeypatch.setenv("LEARNING_SCOPE", "tenant-7")
    monkeypatch.setenv("ENABLE_PROMETHEUS_METRICS", "false")
    monkeypatch.setenv("PATTERN_LIMIT", "50")

    engine = SelfLearningSearchEngine.from_config(config)
    assert engine.store.repository.path == tmp_path / "tenant-7.json"
    assert engine.store.pattern_limit == 50
    assert engine.enable_metrics is False


def test_shutdown_writes_state(tmp_path):
    engine = _engine(tmp_path)
    engine.adjust_preference("type_склад", 40)
    path = engine.store.repository.path
    path.unlink()

    assert engine.shutdown() is True
    assert path.exists()
    assert _engine(tmp_path).store.snapshot().user_preferences == {"type_склад": 40}
