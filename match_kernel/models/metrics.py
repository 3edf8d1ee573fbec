"""Policy Metric Snapshot — aggregated optimizer input. Never read by ranking."""

from datetime import datetime
from typing import Dict

from pydantic import BaseModel, ConfigDict, Field


class CategoryConversion(BaseModel):
    model_config = ConfigDict(frozen=True)

    matches: int = 0
    completed: int = 0
    conversion_rate: float = 0.0


class PolicyMetricSnapshot(BaseModel):
    """Anonymized counters over a trailing window, tagged with a policy version."""

    model_config = ConfigDict(frozen=True)

    id: str
    policy_version: str
    period_start: datetime
    period_end: datetime
    total_swipes: int = Field(ge=0)
    total_likes: int = Field(ge=0)
    total_dislikes: int = Field(ge=0)
    like_rate: float = Field(ge=0.0, le=1.0)
    total_matches: int = Field(ge=0)
    total_completed_exchanges: int = Field(ge=0)
    match_to_exchange_conversion: float = Field(ge=0.0, le=1.0)
    avg_time_to_complete_hours: float = Field(ge=0.0)
    category_success_rates: Dict[str, CategoryConversion] = {}
    collected_at: datetime
