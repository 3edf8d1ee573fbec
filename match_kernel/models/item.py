"""Marketplace records — items, swipes and matches as the kernel sees them."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ItemCategory(str, Enum):
    ELECTRONICS = "electronics"
    CLOTHES = "clothes"
    BOOKS = "books"
    GAMES = "games"
    SPORTS = "sports"
    HOME_GARDEN = "home_garden"
    OTHER = "other"


class ItemCondition(str, Enum):
    NEW = "new"
    LIKE_NEW = "like_new"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"

    @property
    def score(self) -> float:
        return CONDITION_SCORES[self]


CONDITION_SCORES = {
    ItemCondition.NEW: 1.0,
    ItemCondition.LIKE_NEW: 0.9,
    ItemCondition.GOOD: 0.7,
    ItemCondition.FAIR: 0.5,
    ItemCondition.POOR: 0.3,
}


class GeoPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class Item(BaseModel):
    """A listed item. Only reciprocal_boost is ever written by this kernel."""

    id: str
    owner_id: str
    category: ItemCategory
    condition: ItemCondition = ItemCondition.GOOD
    location: Optional[GeoPoint] = None
    value_min: Optional[float] = Field(default=None, ge=0)
    value_max: Optional[float] = Field(default=None, ge=0)
    created_at: datetime                    # Freshness timestamp
    swap_preferences: List[ItemCategory] = []
    search_radius_km: Optional[float] = Field(default=None, gt=0)
    is_active: bool = True
    reciprocal_boost: float = Field(default=0.0, ge=0)

    @model_validator(mode="after")
    def _check_value_range(self) -> "Item":
        if (
            self.value_min is not None
            and self.value_max is not None
            and self.value_min > self.value_max
        ):
            raise ValueError("value_min must not exceed value_max")
        return self


class SwipeEvent(BaseModel):
    """Append-only swipe decision. Immutable once written."""

    model_config = ConfigDict(frozen=True)

    swiper_item_id: str
    swiped_item_id: str
    liked: bool
    created_at: datetime


class MatchRecord(BaseModel):
    """Created only when two mutual 'liked' swipes exist."""

    id: str
    item_a_id: str
    item_b_id: str
    created_at: datetime
    is_completed: bool = False
    completed_at: Optional[datetime] = None
