"""Tests for the Realtime Ranker and the ranking service."""

import math
import random
from datetime import datetime, timedelta, timezone

import pytest

from match_kernel.infra.errors import ConfigurationError, ItemNotFoundError
from match_kernel.marketplace.store import MarketplaceStore
from match_kernel.models.item import GeoPoint, Item, ItemCategory, ItemCondition, SwipeEvent
from match_kernel.models.policy import ExplorationPolicy, PolicyWeights
from match_kernel.models.ranking import RankingRequest
from match_kernel.policy.store import PolicyStore, default_policy
from match_kernel.ranking.ranker import (
    RankingService,
    RealtimeRanker,
    exchange_compatibility,
    freshness_score,
    geo_score,
    haversine_km,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
BERLIN = GeoPoint(latitude=52.52, longitude=13.405)
POTSDAM = GeoPoint(latitude=52.39, longitude=13.065)
HAMBURG = GeoPoint(latitude=53.55, longitude=9.99)


def _make_item(item_id: str, owner_id: str = None, **overrides) -> Item:
    fields = dict(
        id=item_id,
        owner_id=owner_id or f"owner_{item_id}",
        category=ItemCategory.GAMES,
        condition=ItemCondition.GOOD,
        location=BERLIN,
        created_at=NOW - timedelta(days=1),
        swap_preferences=[ItemCategory.BOOKS],
    )
    fields.update(overrides)
    return Item(**fields)


def _make_source(**overrides) -> Item:
    fields = dict(
        category=ItemCategory.BOOKS,
        swap_preferences=[ItemCategory.GAMES, ItemCategory.ELECTRONICS],
    )
    fields.update(overrides)
    return _make_item("source", owner_id="me", **fields)


def _make_policy(randomness: float = 0.0, **changes):
    policy = default_policy(NOW)
    exploration = ExplorationPolicy(
        randomness=randomness, cold_start_boost=0.10, stale_item_penalty=0.05,
    )
    return policy.model_copy(update=dict({"exploration_policy": exploration}, **changes))


class TestScoringHelpers:
    def test_haversine(self):
        assert haversine_km(BERLIN, BERLIN) == pytest.approx(0.0)
        assert haversine_km(BERLIN, HAMBURG) == pytest.approx(255, abs=10)

    def test_geo_score_gaussian_decay(self):
        assert geo_score(BERLIN, BERLIN) == pytest.approx(1.0)
        assert geo_score(BERLIN, None) == 0.0
        d = haversine_km(BERLIN, POTSDAM)
        assert geo_score(BERLIN, POTSDAM) == pytest.approx(math.exp(-(d * d) / (2 * 50 * 50)))
        assert geo_score(BERLIN, HAMBURG) < 0.01

    def test_freshness_score(self):
        assert freshness_score(NOW, NOW) == 1.0
        assert freshness_score(NOW - timedelta(days=1), NOW) == pytest.approx(0.5)
        # Clock skew never produces a score above 1
        assert freshness_score(NOW + timedelta(days=1), NOW) == 1.0

    def test_exchange_compatibility(self):
        source = _make_source()
        assert exchange_compatibility(source, _make_item("c")) == 1.0
        assert exchange_compatibility(source, _make_item("c", swap_preferences=[])) == 0.5
        assert exchange_compatibility(
            source, _make_item("c", category=ItemCategory.CLOTHES, swap_preferences=[])
        ) == 0.0


class TestRealtimeRanker:
    def setup_method(self):
        self.ranker = RealtimeRanker()
        self.source = _make_source()
        self.candidates = [
            _make_item(f"item_{i:02d}", created_at=NOW - timedelta(days=i),
                       category=random.Random(i).choice(list(ItemCategory)))
            for i in range(15)
        ]

    def test_same_seed_same_order(self):
        policy = _make_policy(randomness=0.2)
        first = self.ranker.rank(self.source, self.candidates, policy, now=NOW, seed=7)
        second = self.ranker.rank(self.source, self.candidates, policy, now=NOW, seed=7)
        assert [r.item_id for r in first] == [r.item_id for r in second]
        assert [r.score for r in first] == [r.score for r in second]

    def test_input_order_does_not_matter(self):
        policy = _make_policy(randomness=0.2)
        shuffled = list(self.candidates)
        random.Random(3).shuffle(shuffled)
        a = self.ranker.rank(self.source, self.candidates, policy, now=NOW, seed=7)
        b = self.ranker.rank(self.source, shuffled, policy, now=NOW, seed=7)
        assert [r.item_id for r in a] == [r.item_id for r in b]

    def test_sorted_best_first(self):
        ranked = self.ranker.rank(self.source, self.candidates, _make_policy(), now=NOW)
        scores = [r.score for r in ranked]
        assert scores == sorted(scores, reverse=True)

    def test_ties_broken_by_item_id(self):
        twins = [_make_item("b_item"), _make_item("a_item"), _make_item("c_item")]
        ranked = self.ranker.rank(self.source, twins, _make_policy(), now=NOW)
        assert [r.item_id for r in ranked] == ["a_item", "b_item", "c_item"]
        assert ranked[0].score == ranked[1].score

    def test_score_is_weighted_sum_plus_exploration(self):
        policy = _make_policy()
        [result] = self.ranker.rank(self.source, [_make_item("c")], policy, now=NOW)
        weights = policy.weights.as_dict()
        weighted = sum(weights[name] * value for name, value in result.components.items())
        assert result.score == pytest.approx(weighted + result.exploration)
        assert result.components["geoScore"] == pytest.approx(1.0)
        assert result.components["exchangeCompatibility"] == 1.0
        assert result.components["conditionScore"] == 0.7
        assert result.components["behaviorAffinity"] == 0.0

    def test_behavior_affinity_from_learned_categories(self):
        [result] = self.ranker.rank(
            self.source, [_make_item("c")], _make_policy(),
            affinities={"games": 0.8}, now=NOW,
        )
        assert result.components["behaviorAffinity"] == 0.8

    def test_reciprocal_boost_capped_by_policy(self):
        [result] = self.ranker.rank(
            self.source, [_make_item("c", reciprocal_boost=0.9)], _make_policy(), now=NOW,
        )
        assert result.components["reciprocalBoost"] == 0.5

    def test_cold_start_boost(self):
        items = [_make_item("cold"), _make_item("warm")]
        ranked = self.ranker.rank(
            self.source, items, _make_policy(), impressions={"warm": 10}, now=NOW,
        )
        by_id = {r.item_id: r for r in ranked}
        assert by_id["cold"].exploration == pytest.approx(0.10)
        assert by_id["warm"].exploration == pytest.approx(0.0)
        assert ranked[0].item_id == "cold"

    def test_stale_penalty(self):
        stale = _make_item("stale", created_at=NOW - timedelta(days=20))
        [result] = self.ranker.rank(
            self.source, [stale], _make_policy(), impressions={"stale": 10}, now=NOW,
        )
        assert result.exploration == pytest.approx(-0.05)

    def test_missing_location_scores_zero_geo(self):
        [result] = self.ranker.rank(
            self.source, [_make_item("c", location=None)], _make_policy(), now=NOW,
        )
        assert result.components["geoScore"] == 0.0

    def test_refuses_without_policy(self):
        with pytest.raises(ConfigurationError):
            self.ranker.rank(self.source, self.candidates, None, now=NOW)

    def test_refuses_invalid_policy(self):
        weights = dict(default_policy(NOW).weights.as_dict(), geoScore=0.45)
        bad = _make_policy(weights=PolicyWeights.model_validate(weights))
        with pytest.raises(ConfigurationError):
            self.ranker.rank(self.source, self.candidates, bad, now=NOW)

    def test_empty_candidates(self):
        assert self.ranker.rank(self.source, [], _make_policy(), now=NOW) == []


class TestRankingService:
    def setup_method(self):
        self.marketplace = MarketplaceStore()
        self.policy_store = PolicyStore(":memory:")
        self.policy_store.bootstrap_default(activated_by="alice")
        self.service = RankingService(self.marketplace, self.policy_store)

        self.marketplace.upsert_item(_make_source())
        self.marketplace.upsert_item(_make_item("own", owner_id="me"))
        self.marketplace.upsert_item(_make_item("near"))
        self.marketplace.upsert_item(_make_item("potsdam", location=POTSDAM))
        self.marketplace.upsert_item(_make_item("far", location=HAMBURG))
        self.marketplace.upsert_item(_make_item("clothes", category=ItemCategory.CLOTHES))
        self.marketplace.upsert_item(_make_item("inactive", is_active=False))

    def _ids(self, **kwargs):
        request = RankingRequest(source_item_id="source", **kwargs)
        return {r.item_id for r in self.service.rank(request, now=NOW)}

    def test_strict_mode_respects_intent_and_radius(self):
        assert self._ids() == {"near", "potsdam"}

    def test_expanded_mode_relaxes_category_and_radius(self):
        assert self._ids(expanded_search=True) == {"near", "potsdam", "far", "clothes"}

    def test_already_swiped_items_excluded(self):
        self.marketplace.record_swipe(SwipeEvent(
            swiper_item_id="source", swiped_item_id="near", liked=False, created_at=NOW,
        ))
        assert self._ids() == {"potsdam"}

    def test_source_radius_overrides_default(self):
        self.marketplace.upsert_item(_make_source(search_radius_km=500))
        assert "far" in self._ids()

    def test_limit_is_capped(self):
        for i in range(60):
            self.marketplace.upsert_item(_make_item(f"bulk_{i:02d}"))
        service = RankingService(self.marketplace, self.policy_store, max_limit=50)
        ranked = service.rank(RankingRequest(source_item_id="source", limit=100), now=NOW)
        assert len(ranked) == 50
        assert len(self._ids(limit=5)) == 5

    def test_empty_pool_is_not_an_error(self):
        self.marketplace.upsert_item(_make_source(swap_preferences=[ItemCategory.SPORTS]))
        assert self._ids() == set()

    def test_unknown_source_item(self):
        with pytest.raises(ItemNotFoundError):
            self.service.rank(RankingRequest(source_item_id="missing"), now=NOW)

    def test_refuses_without_active_policy(self):
        service = RankingService(self.marketplace, PolicyStore(":memory:"))
        with pytest.raises(ConfigurationError):
            service.rank(RankingRequest(source_item_id="source"), now=NOW)

    def test_new_activation_is_used_immediately(self):
        request = RankingRequest(source_item_id="source", seed=1)
        before = {r.item_id: r.score for r in self.service.rank(request, now=NOW)}

        weights = dict(
            default_policy(NOW).weights.as_dict(), geoScore=0.20, exchangeCompatibility=0.30,
        )
        self.policy_store.save(default_policy(NOW).model_copy(update={
            "version": "v1.1.0",
            "weights": PolicyWeights.model_validate(weights),
        }))
        self.policy_store.activate("v1.1.0", activated_by="alice")

        ranked = self.service.rank(request, now=NOW)
        after = {r.item_id: r.score for r in ranked}
        assert before["potsdam"] != after["potsdam"]
        for r in ranked:
            weighted = sum(weights[name] * value for name, value in r.components.items())
            assert r.score == pytest.approx(weighted + r.exploration)

    def test_fetch_uses_expanded_flag(self):
        strict = self.service.fetch("source", limit=10, expanded_search=False)
        expanded = self.service.fetch("source", limit=10, expanded_search=True)
        assert len(strict) == 2
        assert len(expanded) == 4
