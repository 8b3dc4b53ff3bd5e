"""
Unit tests for ranking, learned bonuses and filtering.
"""

import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from adaptive_search.learning_store import LearningState
from adaptive_search.models import Interaction, Item
from adaptive_search.ranker import Ranker
from adaptive_search.scoring import AdaptiveScorer


SHOP = Item(id="1", title="Магазин в центре", area=80, location="Центр города", type="Магазин")
OFFICE = Item(id="2", title="Офис", area=85, location="Север", type="Офис")
STORE_A = Item(id="a", title="Склад")
STORE_B = Item(id="b", title="Склад")


class ExplodingScorer(AdaptiveScorer):
    def score(self, query, item, state, context=None):
        if item.id == "boom":
            raise RuntimeError("bad listing")
        return super().score(query, item, state, context)


@pytest.fixture
def ranker():
    return Ranker()


@pytest.fixture
def state():
    return LearningState.default()


def test_non_matching_listings_are_dropped(ranker, state):
    assert ranker.rank("магазин", [OFFICE, SHOP], state) == [SHOP]


def test_empty_query_returns_input_unchanged(ranker, state):
    items = [OFFICE, SHOP, STORE_A]
    assert ranker.rank("", items, state) == items
    assert ranker.rank("   ", items, state) == items


def test_empty_query_details_are_unscored(ranker, state):
    ranked = ranker.rank_with_scores("", [OFFICE, SHOP], state)
    assert [r.item for r in ranked] == [OFFICE, SHOP]
    assert all(r.score == 0 and r.final_score == 0 for r in ranked)


def test_equal_scores_keep_catalog_order(ranker, state):
    assert ranker.rank("склад", [STORE_A, STORE_B], state) == [STORE_A, STORE_B]
    assert ranker.rank("склад", [STORE_B, STORE_A], state) == [STORE_B, STORE_A]


def test_popularity_bonus_reorders_ties(ranker, state):
    state.interaction_log = [Interaction(query="склад", clicked_item_ids=("b",)) for _ in range(3)]

    assert ranker.rank("склад", [STORE_A, STORE_B], state) == [STORE_B, STORE_A]
    ranked = ranker.rank_with_scores("склад", [STORE_A, STORE_B], state)
    assert ranked[0].popularity_bonus == 6
    assert ranked[0].final_score == ranked[0].score + 6


def test_popularity_counts_each_interaction_once(state):
    state.interaction_log = [Interaction(query="склад", clicked_item_ids=("b", "b"))]
    assert state.click_counts()["b"] == 1


def test_popularity_bonus_is_capped(ranker):
    assert ranker.popularity_bonus(3) == 6
    assert ranker.popularity_bonus(10) == 15


def test_type_bonus_from_preference(ranker, state):
    storage = Item(id="x", title="Склад", type="Склад")
    assert ranker.type_bonus(storage, state) == 0

    state.user_preferences["type_склад"] = 50
    assert ranker.type_bonus(storage, state) == 10

    state.user_preferences["type_склад"] = 200
    assert ranker.type_bonus(storage, state) == 20


def test_bonuses_do_not_resurrect_non_matching_listings(ranker, state):
    state.user_preferences["type_офис"] = 100
    state.interaction_log = [Interaction(query="офис", clicked_item_ids=("2",)) for _ in range(10)]

    assert ranker.rank("магазин", [OFFICE], state) == []


def test_scoring_failure_drops_only_that_listing(state):
    ranker = Ranker(ExplodingScorer())
    broken = Item(id="boom", title="Склад")

    assert ranker.rank("склад", [broken, STORE_A], state) == [STORE_A]


def test_ranking_reports_matched_factors(ranker, state):
    ranked = ranker.rank_with_scores("магазин", [SHOP], state)
    assert ranked[0].matched_factors == {"exact_match", "type_match", "word_match"}
    assert ranked[0].to_dict()["matched_factors"] == ["exact_match", "type_match", "word_match"]


def test_ranking_does_not_mutate_state(ranker, state):
    state.contextual_mappings["магазин"] = ["1"]
    before = state.to_dict()
    ranker.rank("магазин в центре", [SHOP, OFFICE], state)
    assert state.to_dict() == before


def test_missing_location_only_disables_location_terms(ranker, state):
    shop = Item(id="1", title="Магазин в центре", type="Магазин", location=None)

    ranked = ranker.rank_with_scores("магазин в центре", [shop], state)
    assert [r.item for r in ranked] == [shop]
    assert ranked[0].matched_factors == {"exact_match", "type_match", "word_match"}


def test_missing_area_reads_as_zero(ranker, state):
    shop = Item(id="1", title="Магазин", type="Магазин", area=None, price=None, floor=None)

    ranked = ranker.rank_with_scores("магазин 80", [shop], state)
    assert [r.item for r in ranked] == [shop]
    assert shop.area == 0.0
    assert {"type_match", "size_match"} <= ranked[0].matched_factors
