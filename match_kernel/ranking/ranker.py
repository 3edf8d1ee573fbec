"""
Realtime Ranker — scores a candidate window against the active policy.

Behavioral Contract:
- Pure: no shared mutable state, safe for concurrent requests
- Uses only the policy it is handed; RankingService re-reads the active
  policy from the PolicyStore on every request
- Refuses to rank with a missing or invalid policy (ConfigurationError)
- Identical candidates + policy + seed produce an identical order
"""

import logging
import math
import random
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional

from match_kernel.embeddings.table import CategoryEmbeddingTable
from match_kernel.infra.errors import ConfigurationError
from match_kernel.marketplace.store import MarketplaceStore
from match_kernel.models.item import GeoPoint, Item
from match_kernel.models.policy import ScoringPolicy
from match_kernel.models.ranking import RankedCandidate, RankingRequest
from match_kernel.policy.store import PolicyStore
from match_kernel.policy.validator import DEFAULT_BOUNDS, PolicyBounds, validate

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
GEO_SIGMA_KM = 50.0
SECONDS_PER_DAY = 86400.0


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.longitude - a.longitude)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def geo_score(a: Optional[GeoPoint], b: Optional[GeoPoint], sigma_km: float = GEO_SIGMA_KM) -> float:
    """Gaussian decay over distance; 0 when either location is unknown."""
    if a is None or b is None:
        return 0.0
    d = haversine_km(a, b)
    return math.exp(-(d * d) / (2 * sigma_km * sigma_km))


def freshness_score(created_at: datetime, now: datetime) -> float:
    age_days = max(0.0, (now - created_at).total_seconds() / SECONDS_PER_DAY)
    return 1.0 / (1.0 + age_days)


def exchange_compatibility(source: Item, candidate: Item) -> float:
    """1.0 when both sides want each other's category, 0.5 for one side."""
    source_wants = candidate.category in source.swap_preferences
    candidate_wants = source.category in candidate.swap_preferences
    return 0.5 * source_wants + 0.5 * candidate_wants


class RealtimeRanker:
    """Scores and orders candidates. Holds only read-only lookups."""

    def __init__(
        self,
        embeddings: Optional[CategoryEmbeddingTable] = None,
        geo_sigma_km: float = GEO_SIGMA_KM,
        bounds: PolicyBounds = DEFAULT_BOUNDS,
    ):
        self.embeddings = embeddings or CategoryEmbeddingTable()
        self.geo_sigma_km = geo_sigma_km
        self.bounds = bounds

    def rank(
        self,
        source: Item,
        candidates: Iterable[Item],
        policy: Optional[ScoringPolicy],
        affinities: Optional[Mapping[str, float]] = None,
        impressions: Optional[Mapping[str, int]] = None,
        now: Optional[datetime] = None,
        seed: Optional[int] = None,
    ) -> List[RankedCandidate]:
        """Score every candidate and return them best first."""
        self._require_policy(policy)
        now = now or datetime.now(timezone.utc)
        affinities = affinities or {}
        impressions = impressions or {}
        rng = random.Random(seed)

        # Draw exploration noise in id order so input order never matters.
        ordered = sorted(candidates, key=lambda c: c.id)
        ranked = [
            self._score(source, c, policy, affinities, impressions, now, rng)
            for c in ordered
        ]
        ranked.sort(key=lambda r: (-r.score, -r.freshness, r.item_id))
        return ranked

    def _score(
        self,
        source: Item,
        candidate: Item,
        policy: ScoringPolicy,
        affinities: Mapping[str, float],
        impressions: Mapping[str, int],
        now: datetime,
        rng: random.Random,
    ) -> RankedCandidate:
        weights = policy.weights
        exploration_policy = policy.exploration_policy
        freshness = freshness_score(candidate.created_at, now)

        terms: Dict[str, float] = {
            "categorySimilarity": max(
                0.0, self.embeddings.similarity(source.category, candidate.category)
            ),
            "geoScore": geo_score(source.location, candidate.location, self.geo_sigma_km),
            "exchangeCompatibility": exchange_compatibility(source, candidate),
            "behaviorAffinity": min(
                1.0, max(0.0, affinities.get(candidate.category.value, 0.0))
            ),
            "freshness": freshness,
            "conditionScore": candidate.condition.score,
            "reciprocalBoost": min(
                candidate.reciprocal_boost, policy.reciprocal_policy.boost_cap
            ),
        }
        weight_map = weights.as_dict()
        weighted = sum(weight_map[name] * value for name, value in terms.items())

        exploration = rng.uniform(0.0, exploration_policy.randomness)
        if impressions.get(candidate.id, 0) < exploration_policy.cold_start_threshold_swipes:
            exploration += exploration_policy.cold_start_boost
        age_days = (now - candidate.created_at).total_seconds() / SECONDS_PER_DAY
        if age_days > exploration_policy.stale_threshold_days:
            exploration -= exploration_policy.stale_item_penalty

        return RankedCandidate(
            item_id=candidate.id,
            score=weighted + exploration,
            freshness=freshness,
            components=terms,
            exploration=exploration,
        )

    def _require_policy(self, policy: Optional[ScoringPolicy]) -> None:
        if policy is None:
            raise ConfigurationError("No active scoring policy; refusing to rank")
        result = validate(policy, self.bounds)
        if not result.valid:
            raise ConfigurationError(
                f"Active policy {policy.version} is invalid: {'; '.join(result.errors)}"
            )


class RankingService:
    """
    Answers ranking requests: builds the candidate window from the
    marketplace and ranks it under the currently active policy.
    """

    def __init__(
        self,
        marketplace: MarketplaceStore,
        policy_store: PolicyStore,
        ranker: Optional[RealtimeRanker] = None,
        strict_radius_km: float = 50.0,
        default_limit: int = 20,
        max_limit: int = 50,
    ):
        self.marketplace = marketplace
        self.policy_store = policy_store
        self.ranker = ranker or RealtimeRanker()
        self.strict_radius_km = strict_radius_km
        self.default_limit = default_limit
        self.max_limit = max_limit

    def rank(self, request: RankingRequest, now: Optional[datetime] = None) -> List[RankedCandidate]:
        policy = self.policy_store.get_active()
        source = self.marketplace.get_item(request.source_item_id)
        candidates = self._candidate_window(source, request.expanded_search)

        if not candidates:
            logger.info(
                "Empty candidate pool for %s (expanded=%s)",
                source.id, request.expanded_search,
            )
            return []

        ranked = self.ranker.rank(
            source=source,
            candidates=candidates,
            policy=policy,
            affinities=self.marketplace.get_affinities(source.owner_id),
            impressions=self.marketplace.impression_counts(),
            now=now,
            seed=request.seed,
        )
        return ranked[: min(request.limit, self.max_limit)]

    def fetch(
        self, source_item_id: str, limit: int, expanded_search: bool
    ) -> List[RankedCandidate]:
        """Candidate source used by the swipe lifecycle."""
        return self.rank(RankingRequest(
            source_item_id=source_item_id,
            limit=limit,
            expanded_search=expanded_search,
        ))

    def _candidate_window(self, source: Item, expanded: bool) -> List[Item]:
        swiped = self.marketplace.get_swiped_ids(source.id)
        window = [
            item for item in self.marketplace.list_active_items()
            if item.owner_id != source.owner_id
            and item.id != source.id
            and item.id not in swiped
        ]
        if expanded:
            return window
        return [item for item in window if self._matches_intent(source, item)]

    def _matches_intent(self, source: Item, candidate: Item) -> bool:
        """Strict mode: mutual category intent and within the source's radius."""
        if candidate.category not in source.swap_preferences:
            return False
        if source.category not in candidate.swap_preferences:
            return False
        if source.location is None or candidate.location is None:
            return True
        radius = source.search_radius_km or self.strict_radius_km
        return haversine_km(source.location, candidate.location) <= radius
