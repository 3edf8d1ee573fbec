"""Reciprocal optimizer records — internal to the batch job."""

from datetime import datetime
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field


class ReciprocalConfig(BaseModel):
    """Configuration for the Reciprocal Optimizer."""

    min_interval_hours: float = 24.0
    confidence_threshold: float = 0.3
    max_opportunities: int = 50
    max_three_way_cycles: int = 20
    max_users: int = 500
    max_graph_nodes: int = 200
    max_out_degree: int = 8
    boost_cap: float = Field(default=1.0, ge=0.0, le=1.0)
    opportunity_ttl_days: int = 7
    schedule: str = "0 3 * * *"


class ReciprocalOpportunity(BaseModel):
    """
    A detected 2-way or 3-way swap cycle. Never exposed to users; its only
    visible effect is the boost written onto the participating items.
    """

    id: str
    cycle_type: str                         # "2-way" | "3-way"
    legs: List[Tuple[str, str]]             # (user_id, item_id) in giving order
    confidence: float
    run_id: str
    created_at: datetime
    expires_at: datetime

    @property
    def item_ids(self) -> List[str]:
        return [item_id for _, item_id in self.legs]


class OptimizerRunRecord(BaseModel):
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: str = "running"                 # "running" | "succeeded" | "failed"
    forced: bool = False
    users_processed: int = 0
    two_way_count: int = 0
    three_way_count: int = 0
    items_boosted: int = 0
    error: Optional[str] = None
