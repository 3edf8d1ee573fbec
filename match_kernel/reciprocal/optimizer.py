"""
Reciprocal Optimizer — background batch job for mutually beneficial swaps.

Learns per-user category affinities from swipe history, scores user pairs
for reciprocal satisfaction, finds 2-way and 3-way swap cycles, and writes
one derived number per item: reciprocal_boost.

Behavioral Contract:
- Single writer: one run at a time, at most one run per interval unless forced
- Idempotent: the boost map is recomputed from scratch and replaces the
  previous one in a single write; nothing accumulates across runs
- Opportunity records are internal; the ranker only sees reciprocal_boost
- Cycle search is bounded (population, graph size, out-degree, depth 3)
"""

import asyncio
import hashlib
import logging
import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from croniter import croniter

from match_kernel.infra.errors import RateLimitError
from match_kernel.marketplace.store import MarketplaceStore
from match_kernel.models.item import Item, SwipeEvent
from match_kernel.models.reciprocal import (
    OptimizerRunRecord,
    ReciprocalConfig,
    ReciprocalOpportunity,
)
from match_kernel.ranking.ranker import haversine_km

logger = logging.getLogger(__name__)

DISTANCE_BONUS_WEIGHT = 0.2
DISTANCE_BONUS_SCALE_KM = 100.0
UNWANTED_PREFERENCE = 0.1


class TraderProfile:
    """A user's active items and learned category affinities."""

    def __init__(self, user_id: str, items: List[Item], affinities: Dict[str, float]):
        self.user_id = user_id
        self.items = sorted(items, key=lambda i: i.id)
        self.affinities = affinities


def learn_category_affinities(
    swipes: Iterable[SwipeEvent], items_by_id: Dict[str, Item]
) -> Dict[str, float]:
    """
    Frequency learning over swiped categories: a like counts +1, a pass
    -0.5, and the per-category mean is mapped into [0, 1].
    """
    totals: Dict[str, float] = {}
    counts: Dict[str, int] = {}
    for swipe in swipes:
        item = items_by_id.get(swipe.swiped_item_id)
        if item is None:
            continue
        category = item.category.value
        counts[category] = counts.get(category, 0) + 1
        totals[category] = totals.get(category, 0.0) + (1.0 if swipe.liked else -0.5)

    return {
        category: max(0.0, min(1.0, (totals[category] / counts[category] + 1) / 2))
        for category in sorted(totals)
    }


def predict_preference(affinities: Dict[str, float], item: Item, swap_preferences) -> float:
    """How much a user with these affinities and preferences would want `item`."""
    category_match = 0.5 if item.category in swap_preferences else 0.2
    learned = affinities.get(item.category.value, 0.5)
    return 0.4 * category_match + 0.6 * learned


def _distance_bonus(a: Item, b: Item) -> float:
    if a.location is None or b.location is None:
        return 0.0
    distance = haversine_km(a.location, b.location)
    return math.exp(-distance / DISTANCE_BONUS_SCALE_KM) * DISTANCE_BONUS_WEIGHT


def reciprocal_pair_score(
    a: TraderProfile, b: TraderProfile
) -> Tuple[float, Optional[Item], Optional[Item]]:
    """
    Best symmetric swap between two users: the product of each side's
    predicted preference for the other's item, plus a proximity bonus.
    Returns (score, item A gives, item B gives).
    """
    best = (0.0, None, None)
    for item_a in a.items:
        for item_b in b.items:
            b_pred = (
                predict_preference(b.affinities, item_a, item_b.swap_preferences)
                if item_a.category in item_b.swap_preferences
                else UNWANTED_PREFERENCE
            )
            a_pred = (
                predict_preference(a.affinities, item_b, item_a.swap_preferences)
                if item_b.category in item_a.swap_preferences
                else UNWANTED_PREFERENCE
            )
            score = a_pred * b_pred + _distance_bonus(item_a, item_b)
            if score > best[0]:
                best = (score, item_a, item_b)
    return best


def give_score(giver: TraderProfile, receiver: TraderProfile) -> Tuple[float, Optional[Item]]:
    """
    Directed edge weight: the receiver's best predicted preference for a
    giver item that one of the receiver's items is willing to take.
    """
    best = (0.0, None)
    for gift in giver.items:
        for own in receiver.items:
            if gift.category not in own.swap_preferences:
                continue
            score = predict_preference(receiver.affinities, gift, own.swap_preferences)
            if score > best[0]:
                best = (score, gift)
    return best


def find_three_way_cycles(
    edges: Dict[str, Dict[str, Tuple[float, Item]]],
    config: ReciprocalConfig,
) -> List[Tuple[float, List[Tuple[str, str]]]]:
    """
    Enumerate A→B→C→A cycles over the directed give graph.

    Bounded: at most `max_graph_nodes` nodes (strongest first), each keeping
    its top `max_out_degree` outgoing edges; fixed depth 3; every cycle is
    reported once, rooted at its smallest user id.
    """
    strength: Dict[str, float] = {}
    for giver, targets in edges.items():
        for receiver, (weight, _) in targets.items():
            strength[giver] = strength.get(giver, 0.0) + weight
            strength[receiver] = strength.get(receiver, 0.0) + weight
    nodes = sorted(strength, key=lambda n: (-strength[n], n))[: config.max_graph_nodes]
    allowed = set(nodes)

    adjacency: Dict[str, Dict[str, Tuple[float, Item]]] = {}
    for giver in nodes:
        targets = [
            (receiver, edge) for receiver, edge in edges.get(giver, {}).items()
            if receiver in allowed
        ]
        targets.sort(key=lambda t: (-t[1][0], t[0]))
        adjacency[giver] = dict(targets[: config.max_out_degree])

    cycles = []
    for a in sorted(nodes):
        for b, (w_ab, item_a) in adjacency[a].items():
            if b <= a:
                continue
            for c, (w_bc, item_b) in adjacency[b].items():
                if c <= a or c == b:
                    continue
                closing = adjacency[c].get(a)
                if closing is None:
                    continue
                w_ca, item_c = closing
                score = (w_ab + w_bc + w_ca) / 3
                cycles.append((score, [(a, item_a.id), (b, item_b.id), (c, item_c.id)]))

    cycles.sort(key=lambda cyc: (-cyc[0], cyc[1]))
    return cycles[: config.max_three_way_cycles]


def _opportunity_id(cycle_type: str, legs: List[Tuple[str, str]]) -> str:
    key = cycle_type + "|" + "|".join(f"{u}:{i}" for u, i in legs)
    return f"opp_{hashlib.sha256(key.encode()).hexdigest()[:12]}"


class ReciprocalOptimizer:
    """Runs the reciprocal batch and owns its internal opportunity records."""

    def __init__(
        self,
        marketplace: MarketplaceStore,
        config: Optional[ReciprocalConfig] = None,
    ):
        self.marketplace = marketplace
        self.config = config or ReciprocalConfig()
        self._writer = threading.Lock()
        self._opportunities: Dict[str, ReciprocalOpportunity] = {}
        self._runs: List[OptimizerRunRecord] = []
        self._running = False

    @property
    def status(self) -> str:
        return "running" if self._running else "idle"

    @property
    def runs(self) -> List[OptimizerRunRecord]:
        return list(self._runs)

    def last_successful_run(self) -> Optional[OptimizerRunRecord]:
        for record in reversed(self._runs):
            if record.status == "succeeded":
                return record
        return None

    def time_until_allowed(self, now: Optional[datetime] = None) -> timedelta:
        now = now or datetime.now(timezone.utc)
        last = self.last_successful_run()
        if last is None:
            return timedelta(0)
        elapsed = now - last.started_at
        return max(timedelta(0), timedelta(hours=self.config.min_interval_hours) - elapsed)

    def next_run_at(self, now: Optional[datetime] = None) -> datetime:
        """Next cron fire time, never earlier than the minimum interval allows."""
        now = now or datetime.now(timezone.utc)
        scheduled = croniter(self.config.schedule, now).get_next(datetime)
        return max(scheduled, now + self.time_until_allowed(now))

    def run(self, now: Optional[datetime] = None, force: bool = False) -> OptimizerRunRecord:
        """
        Run one batch. Raises RateLimitError if another run is in progress or
        the last successful run is within the interval (unless forced).
        """
        now = now or datetime.now(timezone.utc)
        if not self._writer.acquire(blocking=False):
            raise RateLimitError(timedelta(0), "Reciprocal optimization already in progress")
        try:
            remaining = self.time_until_allowed(now)
            if remaining > timedelta(0) and not force:
                raise RateLimitError(remaining)

            record = OptimizerRunRecord(
                run_id=f"recip_{uuid4().hex[:12]}", started_at=now, forced=force
            )
            self._runs.append(record)
            self._running = True
            try:
                self._execute(record, now)
            except Exception as e:
                record.status = "failed"
                record.error = str(e)
                record.finished_at = datetime.now(timezone.utc)
                logger.exception("Reciprocal optimization %s failed", record.run_id)
                raise
            record.status = "succeeded"
            record.finished_at = datetime.now(timezone.utc)
            return record
        finally:
            self._running = False
            self._writer.release()

    def _execute(self, record: OptimizerRunRecord, now: datetime) -> None:
        logger.info("Starting reciprocal optimization %s", record.run_id)
        self._purge_expired(now)

        items = self.marketplace.list_active_items()
        swipes = self.marketplace.get_swipes()
        items_by_id = {item.id: item for item in items}
        logger.info("Loaded %d active items and %d swipes", len(items), len(swipes))

        profiles = self._build_profiles(items, swipes, items_by_id)
        record.users_processed = len(profiles)

        threshold = self.config.confidence_threshold
        user_ids = sorted(profiles)

        two_way = []
        edges: Dict[str, Dict[str, Tuple[float, Item]]] = {u: {} for u in user_ids}
        for i, a_id in enumerate(user_ids):
            a = profiles[a_id]
            for b_id in user_ids[i + 1:]:
                b = profiles[b_id]
                score, item_a, item_b = reciprocal_pair_score(a, b)
                if score > threshold and item_a and item_b:
                    two_way.append((score, [(a_id, item_a.id), (b_id, item_b.id)]))
                for giver, receiver in ((a, b), (b, a)):
                    weight, gift = give_score(giver, receiver)
                    if weight > threshold and gift is not None:
                        edges[giver.user_id][receiver.user_id] = (weight, gift)

        three_way = find_three_way_cycles(edges, self.config)
        logger.info(
            "Found %d 2-way and %d 3-way opportunities", len(two_way), len(three_way)
        )

        candidates = [("2-way", s, legs) for s, legs in two_way]
        candidates += [("3-way", s, legs) for s, legs in three_way]
        candidates.sort(key=lambda c: (-c[1], c[0], c[2]))
        kept = candidates[: self.config.max_opportunities]

        expires_at = now + timedelta(days=self.config.opportunity_ttl_days)
        opportunities = {}
        for cycle_type, score, legs in kept:
            opp = ReciprocalOpportunity(
                id=_opportunity_id(cycle_type, legs),
                cycle_type=cycle_type,
                legs=legs,
                confidence=score,
                run_id=record.run_id,
                created_at=now,
                expires_at=expires_at,
            )
            opportunities[opp.id] = opp
        self._opportunities = opportunities

        record.two_way_count = sum(1 for o in opportunities.values() if o.cycle_type == "2-way")
        record.three_way_count = sum(1 for o in opportunities.values() if o.cycle_type == "3-way")
        record.items_boosted = self.marketplace.replace_reciprocal_boosts(
            self._boost_map(opportunities.values())
        )
        logger.info(
            "Reciprocal optimization %s boosted %d items", record.run_id, record.items_boosted
        )

    def _build_profiles(
        self,
        items: List[Item],
        swipes: List[SwipeEvent],
        items_by_id: Dict[str, Item],
    ) -> Dict[str, TraderProfile]:
        items_by_owner: Dict[str, List[Item]] = {}
        for item in items:
            items_by_owner.setdefault(item.owner_id, []).append(item)

        swipes_by_owner: Dict[str, List[SwipeEvent]] = {}
        for swipe in swipes:
            swiper = items_by_id.get(swipe.swiper_item_id)
            if swiper is None:
                continue
            swipes_by_owner.setdefault(swiper.owner_id, []).append(swipe)

        population = sorted(
            items_by_owner,
            key=lambda u: (-len(swipes_by_owner.get(u, [])), u),
        )[: self.config.max_users]

        profiles = {}
        for user_id in population:
            affinities = learn_category_affinities(
                swipes_by_owner.get(user_id, []), items_by_id
            )
            self.marketplace.save_affinities(user_id, affinities)
            profiles[user_id] = TraderProfile(user_id, items_by_owner[user_id], affinities)
        return profiles

    def _boost_map(self, opportunities: Iterable[ReciprocalOpportunity]) -> Dict[str, float]:
        boosts: Dict[str, float] = {}
        for opp in opportunities:
            value = min(opp.confidence, self.config.boost_cap)
            for item_id in opp.item_ids:
                boosts[item_id] = max(boosts.get(item_id, 0.0), value)
        return boosts

    def _purge_expired(self, now: datetime) -> None:
        self._opportunities = {
            k: v for k, v in self._opportunities.items() if v.expires_at > now
        }

    def active_opportunity_count(self, now: Optional[datetime] = None) -> int:
        """Count of unexpired internal records. Used for operational status only."""
        now = now or datetime.now(timezone.utc)
        return sum(1 for o in self._opportunities.values() if o.expires_at > now)

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run on the configured schedule until stopped."""
        if stop_event is None:
            stop_event = asyncio.Event()

        while not stop_event.is_set():
            now = datetime.now(timezone.utc)
            wait_seconds = max(0.0, (self.next_run_at(now) - now).total_seconds())
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=wait_seconds)
                continue
            except asyncio.TimeoutError:
                pass
            try:
                self.run()
            except RateLimitError as e:
                logger.info("Scheduled reciprocal run skipped: %s", e)
            except Exception as e:
                # The failed run is already recorded; the next slot retries.
                logger.warning("Scheduled reciprocal run failed: %s", e)
