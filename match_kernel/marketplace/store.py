"""
Marketplace Store — the persistence collaborator seen by the kernel.

Read by: RealtimeRanker, ReciprocalOptimizer, MetricsCollector
Written by: SwipeLifecycle (swipes), ReciprocalOptimizer (boosts, affinities)

In-memory store for the service core. Production would back this with the
item/swipe/match tables.
"""

import logging
import threading
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set
from uuid import uuid4

from match_kernel.infra.errors import ItemNotFoundError, PersistenceError
from match_kernel.models.item import Item, MatchRecord, SwipeEvent

logger = logging.getLogger(__name__)


class MarketplaceStore:
    """Thread-safe in-memory item, swipe, match and affinity storage."""

    def __init__(self):
        self._lock = threading.RLock()
        self._items: Dict[str, Item] = {}
        self._swipes: List[SwipeEvent] = []
        self._swipe_keys: Set[tuple] = set()
        self._matches: Dict[str, MatchRecord] = {}
        self._affinities: Dict[str, Dict[str, float]] = {}

    # --- Items ---

    def upsert_item(self, item: Item) -> None:
        with self._lock:
            self._items[item.id] = item

    def get_item(self, item_id: str) -> Item:
        item = self._items.get(item_id)
        if item is None:
            raise ItemNotFoundError(f"Item {item_id} not found")
        return item

    def list_active_items(self) -> List[Item]:
        with self._lock:
            return [i for i in self._items.values() if i.is_active]

    def get_items_by_owner(self, owner_id: str) -> List[Item]:
        with self._lock:
            return [i for i in self._items.values() if i.owner_id == owner_id]

    def replace_reciprocal_boosts(self, boosts: Dict[str, float]) -> int:
        """
        Overwrite reciprocal_boost on every active item in one swap: items in
        `boosts` get that value, every other active item is reset to 0.
        Returns the number of items with a non-zero boost.
        """
        with self._lock:
            updated = dict(self._items)
            for item_id, item in self._items.items():
                if not item.is_active:
                    continue
                value = boosts.get(item_id, 0.0)
                if item.reciprocal_boost != value:
                    updated[item_id] = item.model_copy(update={"reciprocal_boost": value})
            self._items = updated
            return sum(
                1 for item_id, value in boosts.items()
                if value > 0 and item_id in updated and updated[item_id].is_active
            )

    # --- Swipes ---

    def record_swipe(self, event: SwipeEvent) -> Optional[MatchRecord]:
        """
        Append a swipe. A second 'liked' swipe completing a mutual pair
        creates a match, which is returned.

        Re-recording the same decision for a pair is a no-op that returns the
        pair's existing match, so a client retrying after a timed-out write
        converges. A conflicting decision for a recorded pair is rejected.
        """
        with self._lock:
            for item_id in (event.swiper_item_id, event.swiped_item_id):
                if item_id not in self._items:
                    raise PersistenceError(f"Unknown item {item_id}")
            key = (event.swiper_item_id, event.swiped_item_id)
            if key in self._swipe_keys:
                existing = next(
                    s for s in self._swipes
                    if (s.swiper_item_id, s.swiped_item_id) == key
                )
                if existing.liked != event.liked:
                    raise PersistenceError(
                        f"Swipe {event.swiper_item_id} -> {event.swiped_item_id} "
                        f"already recorded with a different decision"
                    )
                logger.info("Swipe %s -> %s already recorded, treating as success", *key)
                return self._match_for(*key)
            self._swipes.append(event)
            self._swipe_keys.add(key)

            if event.liked and self._has_like(event.swiped_item_id, event.swiper_item_id):
                match = MatchRecord(
                    id=f"match_{uuid4().hex[:12]}",
                    item_a_id=event.swiped_item_id,
                    item_b_id=event.swiper_item_id,
                    created_at=event.created_at,
                )
                self._matches[match.id] = match
                logger.info("Match %s created for %s <-> %s", match.id, *key)
                return match
            return None

    def delete_swipe(self, swiper_item_id: str, swiped_item_id: str) -> None:
        with self._lock:
            key = (swiper_item_id, swiped_item_id)
            if key not in self._swipe_keys:
                raise PersistenceError(f"No swipe {swiper_item_id} -> {swiped_item_id}")
            self._swipes = [
                s for s in self._swipes
                if (s.swiper_item_id, s.swiped_item_id) != key
            ]
            self._swipe_keys.discard(key)

    def _has_like(self, swiper_item_id: str, swiped_item_id: str) -> bool:
        return any(
            s.liked and s.swiper_item_id == swiper_item_id and s.swiped_item_id == swiped_item_id
            for s in self._swipes
        )

    def _match_for(self, item_a_id: str, item_b_id: str) -> Optional[MatchRecord]:
        pair = {item_a_id, item_b_id}
        for match in self._matches.values():
            if {match.item_a_id, match.item_b_id} == pair:
                return match
        return None

    def get_swipes(self, since: Optional[datetime] = None) -> List[SwipeEvent]:
        with self._lock:
            if since is None:
                return list(self._swipes)
            return [s for s in self._swipes if s.created_at >= since]

    def get_swipes_from(self, swiper_item_id: str) -> List[SwipeEvent]:
        with self._lock:
            return [s for s in self._swipes if s.swiper_item_id == swiper_item_id]

    def get_swiped_ids(self, swiper_item_id: str) -> Set[str]:
        return {s.swiped_item_id for s in self.get_swipes_from(swiper_item_id)}

    def impression_counts(self) -> Counter:
        """Swipes received per item."""
        with self._lock:
            return Counter(s.swiped_item_id for s in self._swipes)

    # --- Matches ---

    def add_match(self, match: MatchRecord) -> None:
        with self._lock:
            self._matches[match.id] = match

    def complete_match(self, match_id: str, completed_at: Optional[datetime] = None) -> MatchRecord:
        with self._lock:
            match = self._matches.get(match_id)
            if match is None:
                raise PersistenceError(f"Match {match_id} not found")
            completed = match.model_copy(update={
                "is_completed": True,
                "completed_at": completed_at or datetime.now(timezone.utc),
            })
            self._matches[match_id] = completed
            return completed

    def get_matches(self, since: Optional[datetime] = None) -> List[MatchRecord]:
        with self._lock:
            matches = list(self._matches.values())
        if since is None:
            return matches
        return [m for m in matches if m.created_at >= since]

    # --- Learned affinities ---

    def save_affinities(self, user_id: str, affinities: Dict[str, float]) -> None:
        with self._lock:
            self._affinities[user_id] = dict(affinities)

    def get_affinities(self, user_id: str) -> Dict[str, float]:
        with self._lock:
            return dict(self._affinities.get(user_id, {}))
