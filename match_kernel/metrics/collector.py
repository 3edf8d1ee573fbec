"""
Metrics Collector — aggregated, anonymized behavioral counters.

Snapshots are optimizer input only. The ranking path never reads them.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from uuid import uuid4

from match_kernel.infra.errors import ItemNotFoundError
from match_kernel.marketplace.store import MarketplaceStore
from match_kernel.models.metrics import CategoryConversion, PolicyMetricSnapshot

logger = logging.getLogger(__name__)


class MetricsCollector:
    """Builds a PolicyMetricSnapshot over a trailing window."""

    def __init__(self, marketplace: MarketplaceStore):
        self.marketplace = marketplace

    def collect(
        self,
        policy_version: str,
        window_days: int = 30,
        now: Optional[datetime] = None,
    ) -> PolicyMetricSnapshot:
        now = now or datetime.now(timezone.utc)
        period_start = now - timedelta(days=window_days)

        swipes = [s for s in self.marketplace.get_swipes(since=period_start) if s.created_at <= now]
        total_swipes = len(swipes)
        total_likes = sum(1 for s in swipes if s.liked)

        matches = [m for m in self.marketplace.get_matches(since=period_start) if m.created_at <= now]
        completed = [m for m in matches if m.is_completed]

        completion_hours = [
            (m.completed_at - m.created_at).total_seconds() / 3600.0
            for m in completed
            if m.completed_at is not None
        ]
        avg_hours = sum(completion_hours) / len(completion_hours) if completion_hours else 0.0

        category_stats: Dict[str, Dict[str, int]] = {}
        for match in matches:
            for item_id in (match.item_a_id, match.item_b_id):
                try:
                    category = self.marketplace.get_item(item_id).category.value
                except ItemNotFoundError:
                    continue
                stats = category_stats.setdefault(category, {"matches": 0, "completed": 0})
                stats["matches"] += 1
                if match.is_completed:
                    stats["completed"] += 1

        snapshot = PolicyMetricSnapshot(
            id=f"metrics_{uuid4().hex[:12]}",
            policy_version=policy_version,
            period_start=period_start,
            period_end=now,
            total_swipes=total_swipes,
            total_likes=total_likes,
            total_dislikes=total_swipes - total_likes,
            like_rate=total_likes / total_swipes if total_swipes else 0.0,
            total_matches=len(matches),
            total_completed_exchanges=len(completed),
            match_to_exchange_conversion=len(completed) / len(matches) if matches else 0.0,
            avg_time_to_complete_hours=max(0.0, avg_hours),
            category_success_rates={
                cat: CategoryConversion(
                    matches=s["matches"],
                    completed=s["completed"],
                    conversion_rate=s["completed"] / s["matches"] if s["matches"] else 0.0,
                )
                for cat, s in category_stats.items()
            },
            collected_at=now,
        )
        logger.info(
            "Collected metrics: swipes=%d matches=%d conversion=%.3f",
            snapshot.total_swipes, snapshot.total_matches,
            snapshot.match_to_exchange_conversion,
        )
        return snapshot


class MetricsStore:
    """Append-only snapshot log."""

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshots: List[PolicyMetricSnapshot] = []

    def append(self, snapshot: PolicyMetricSnapshot) -> PolicyMetricSnapshot:
        with self._lock:
            if any(s.id == snapshot.id for s in self._snapshots):
                raise ValueError(f"Snapshot {snapshot.id} already recorded")
            self._snapshots.append(snapshot)
        return snapshot

    def list_all(self) -> List[PolicyMetricSnapshot]:
        with self._lock:
            return list(self._snapshots)

    def list_for_version(self, policy_version: str) -> List[PolicyMetricSnapshot]:
        return [s for s in self.list_all() if s.policy_version == policy_version]

    def latest(self) -> Optional[PolicyMetricSnapshot]:
        with self._lock:
            return self._snapshots[-1] if self._snapshots else None
