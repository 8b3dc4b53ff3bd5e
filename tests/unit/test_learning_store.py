"""
Unit tests for the learning state, its JSON repository and the store.
"""

import json
import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from adaptive_search.learning_store import (
    DEFAULT_FEATURE_WEIGHTS,
    FEATURE_FACTORS,
    JsonStateRepository,
    LearningState,
    LearningStore,
)
from adaptive_search.models import Interaction, StateLoadError


class FailingRepository(JsonStateRepository):
    def _write(self, payload):
        raise OSError("disk full")


class FlakyRepository(JsonStateRepository):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = 0

    def _write(self, payload):
        self.calls += 1
        if self.calls == 1:
            raise OSError("temporarily unavailable")
        super()._write(payload)


def _populate(store: LearningStore) -> None:
    with store.mutate() as state:
        state.pattern_frequency["склад"] = 3
        state.feature_weights["exact_match"] = 90
        state.user_preferences["type_склад"] = 12
        state.contextual_mappings["склад у метро"] = ["7", "8"]
        state.interaction_log.append(Interaction(query="склад у метро", timestamp=1.0,
                                                 clicked_item_ids=("7",), session_id="s1"))


def test_default_state():
    state = LearningState.default()
    assert state.feature_weights == DEFAULT_FEATURE_WEIGHTS
    assert state.pattern_frequency == {}
    assert state.interaction_log == []


def test_state_round_trips_through_repository(tmp_path):
    repository = JsonStateRepository(tmp_path, scope="tenant-1")
    _populate(LearningStore(repository))

    restored = LearningStore(JsonStateRepository(tmp_path, scope="tenant-1")).snapshot()
    assert restored.pattern_frequency == {"склад": 3}
    assert restored.feature_weights["exact_match"] == 90
    assert restored.user_preferences == {"type_склад": 12}
    assert restored.contextual_mappings == {"склад у метро": ["7", "8"]}
    assert restored.interaction_log == [
        Interaction(query="склад у метро", timestamp=1.0, clicked_item_ids=("7",), session_id="s1")
    ]


def test_persisted_document_uses_pair_lists(tmp_path):
    repository = JsonStateRepository(tmp_path)
    _populate(LearningStore(repository))

    assert repository.path == tmp_path / "global.json"
    payload = json.loads(repository.path.read_text(encoding="utf-8"))
    assert payload["version"] == 1
    assert ["склад", 3] in payload["pattern_frequency"]
    assert ["склад у метро", ["7", "8"]] in payload["contextual_mappings"]
    assert payload["interaction_log"][0]["clicked_item_ids"] == ["7"]


def test_missing_file_loads_defaults(tmp_path):
    store = LearningStore(JsonStateRepository(tmp_path))
    assert store.snapshot().feature_weights == DEFAULT_FEATURE_WEIGHTS
    assert store.is_loaded


@pytest.mark.parametrize("content", [
    "{not json",
    json.dumps({"pattern_frequency": []}),
    json.dumps({"version": 99, "pattern_frequency": [], "feature_weights": [], "user_preferences": [],
                "contextual_mappings": [], "interaction_log": []}),
    json.dumps({"pattern_frequency": {"a": 1}, "feature_weights": [], "user_preferences": [],
                "contextual_mappings": [], "interaction_log": []}),
])
def test_malformed_document_loads_defaults(tmp_path, content):
    repository = JsonStateRepository(tmp_path)
    repository.path.write_text(content, encoding="utf-8")

    with pytest.raises(StateLoadError):
        repository.load()

    state = LearningStore(repository).snapshot()
    assert state.feature_weights == DEFAULT_FEATURE_WEIGHTS
    assert state.pattern_frequency == {}


def test_loading_normalizes_keys_and_clamps_weights():
    state = LearningState.from_dict({
        "pattern_frequency": [["Склад", 2], ["склад ", 1]],
        "feature_weights": [["exact_match", 500], ["type_match", 1], ["unknown_factor", 70]],
        "user_preferences": [["Type_Офис", 4]],
        "contextual_mappings": [["Офис", ["1"]], ["офис", ["1", "2"]]],
        "interaction_log": [],
    })

    assert state.pattern_frequency == {"склад": 3}
    assert state.feature_weights["exact_match"] == 150
    assert state.feature_weights["type_match"] == 5
    assert state.feature_weights["size_match"] == DEFAULT_FEATURE_WEIGHTS["size_match"]
    assert "unknown_factor" not in state.feature_weights
    assert set(state.feature_weights) == set(FEATURE_FACTORS)
    assert state.user_preferences == {"type_офис": 4}
    assert state.contextual_mappings == {"офис": ["1", "2"]}


def test_interaction_log_is_bounded():
    store = LearningStore(interaction_log_limit=3)
    for i in range(5):
        with store.mutate() as state:
            state.interaction_log.append(Interaction(query=f"запрос {i}"))

    assert [entry.query for entry in store.snapshot().interaction_log] == ["запрос 2", "запрос 3", "запрос 4"]


def test_pattern_limit_evicts_rarest_newest_first():
    store = LearningStore(pattern_limit=2)
    with store.mutate() as state:
        state.pattern_frequency.update({"офис": 3, "склад": 1, "метро": 1})

    assert store.snapshot().pattern_frequency == {"офис": 3, "склад": 1}


def test_snapshot_is_isolated_from_later_mutations():
    store = LearningStore()
    before = store.snapshot()
    with store.mutate() as state:
        state.pattern_frequency["офис"] = 1

    assert before.pattern_frequency == {}
    assert store.snapshot().pattern_frequency == {"офис": 1}


def test_failed_mutation_is_discarded():
    store = LearningStore()
    with pytest.raises(RuntimeError):
        with store.mutate() as state:
            state.pattern_frequency["офис"] = 1
            raise RuntimeError("abort")

    assert store.snapshot().pattern_frequency == {}


def test_persist_failure_keeps_in_memory_state(tmp_path):
    errors = []
    store = LearningStore(FailingRepository(tmp_path, max_attempts=1), on_persist_error=errors.append)

    with store.mutate() as state:
        state.pattern_frequency["офис"] = 1

    assert store.snapshot().pattern_frequency == {"офис": 1}
    assert store.persist_failures == 1
    assert len(errors) == 1
    assert store.flush() is False
    assert store.persist_failures == 2


def test_transient_write_failure_is_retried(tmp_path):
    repository = FlakyRepository(tmp_path, max_attempts=2)
    store = LearningStore(repository)

    with store.mutate() as state:
        state.pattern_frequency["офис"] = 1

    assert repository.calls == 2
    assert store.persist_failures == 0
    assert repository.load()["pattern_frequency"] == [["офис", 1]]


def test_invalid_scope_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        JsonStateRepository(tmp_path, scope="../escape")
