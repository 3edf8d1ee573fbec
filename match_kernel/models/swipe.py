"""Swipe lifecycle phases and session records."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SwipePhase(str, Enum):
    IDLE = "IDLE"               # No source item selected
    LOADING = "LOADING"         # Fetching candidates
    READY = "READY"             # Candidates available
    SWIPING = "SWIPING"         # Gesture in progress
    COMMITTING = "COMMITTING"   # Persisting the decision
    UNDOING = "UNDOING"         # Reverting the last decision
    REFRESHING = "REFRESHING"   # Manual retry after exhaustion
    EXHAUSTED = "EXHAUSTED"     # No candidates for this source item right now
    PAUSED = "PAUSED"


class SwipeHistoryEntry(BaseModel):
    """An undo-eligible committed swipe."""

    item_id: str
    liked: bool
    position: int
    committed_at: datetime


class LifecycleConfig(BaseModel):
    page_size: int = Field(default=20, ge=1)
    refill_threshold: int = Field(default=3, ge=0)
    undo_window_hours: float = 24.0
    call_timeout_seconds: float = 10.0


class CommitResult(BaseModel):
    swiped_item_id: str
    liked: bool
    match_id: Optional[str] = None
