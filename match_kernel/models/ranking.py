"""Ranking request/response shapes."""

from typing import Dict, Optional

from pydantic import BaseModel, Field


class RankingRequest(BaseModel):
    source_item_id: str
    limit: int = Field(default=20, ge=1)
    expanded_search: bool = False
    seed: Optional[int] = None


class RankedCandidate(BaseModel):
    item_id: str
    score: float
    freshness: float = 0.0
    components: Dict[str, float] = {}
    exploration: float = 0.0
