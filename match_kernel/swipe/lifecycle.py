"""
Swipe Lifecycle — per-client state machine for gesture -> commit -> undo.

One instance per client session. It sequences user actions on the current
source item and calls the candidate source only to fill its pool.

Behavioral Contract:
- Every phase change goes through VALID_TRANSITIONS
- A single-slot, non-reentrant commit lock guards SWIPING -> COMMITTING;
  a second attempt while it is held is rejected, never queued
- The lock is always released and a failed commit always lands in READY
- Switching the source item resets to IDLE and drops the previous pool,
  history and exhaustion state
- Undo is limited to one per (swiper item, swiped item) per rolling window
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol, Set, Tuple

from match_kernel.infra.errors import (
    CommitLockHeldError,
    InvalidTransitionError,
    PersistenceError,
    UndoNotAllowedError,
)
from match_kernel.models.item import MatchRecord, SwipeEvent
from match_kernel.models.ranking import RankedCandidate
from match_kernel.models.swipe import (
    CommitResult,
    LifecycleConfig,
    SwipeHistoryEntry,
    SwipePhase,
)

logger = logging.getLogger(__name__)


# Key = current phase, value = phases reachable from it.
VALID_TRANSITIONS: Dict[SwipePhase, Set[SwipePhase]] = {
    SwipePhase.IDLE: {SwipePhase.LOADING},
    SwipePhase.LOADING: {SwipePhase.READY, SwipePhase.EXHAUSTED, SwipePhase.IDLE},
    SwipePhase.READY: {
        SwipePhase.SWIPING,
        SwipePhase.UNDOING,
        SwipePhase.EXHAUSTED,
        SwipePhase.PAUSED,
    },
    SwipePhase.SWIPING: {SwipePhase.COMMITTING, SwipePhase.READY},
    SwipePhase.COMMITTING: {SwipePhase.READY},
    SwipePhase.UNDOING: {SwipePhase.READY, SwipePhase.EXHAUSTED},
    SwipePhase.REFRESHING: {SwipePhase.READY, SwipePhase.EXHAUSTED},
    SwipePhase.EXHAUSTED: {SwipePhase.REFRESHING, SwipePhase.UNDOING},
    SwipePhase.PAUSED: {SwipePhase.READY},
}


class CandidateSource(Protocol):
    def fetch(
        self, source_item_id: str, limit: int, expanded_search: bool
    ) -> List[RankedCandidate]: ...


class SwipeBackend(Protocol):
    # record_swipe must accept a repeat of an already stored decision, since a
    # timed-out write may still land before the client retries.
    def record_swipe(self, event: SwipeEvent) -> Optional[MatchRecord]: ...

    def delete_swipe(self, swiper_item_id: str, swiped_item_id: str) -> None: ...


class UndoLedger:
    """Remembers when each (swiper, swiped) pair was last undone."""

    def __init__(self, window: timedelta):
        self.window = window
        self._undone: Dict[Tuple[str, str], datetime] = {}

    def allows(self, swiper_item_id: str, swiped_item_id: str, now: datetime) -> bool:
        last = self._undone.get((swiper_item_id, swiped_item_id))
        return last is None or now - last >= self.window

    def record(self, swiper_item_id: str, swiped_item_id: str, now: datetime) -> None:
        self._undone[(swiper_item_id, swiped_item_id)] = now
        self._prune(now)

    def _prune(self, now: datetime) -> None:
        self._undone = {k: v for k, v in self._undone.items() if now - v < self.window}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SwipeLifecycle:
    """State machine for one client's swipe session."""

    def __init__(
        self,
        candidate_source: CandidateSource,
        backend: SwipeBackend,
        config: Optional[LifecycleConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.candidate_source = candidate_source
        self.backend = backend
        self.config = config or LifecycleConfig()
        self.clock = clock
        self.ledger = UndoLedger(timedelta(hours=self.config.undo_window_hours))

        self._commit_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="swipe-io")

        self.phase = SwipePhase.IDLE
        self.source_item_id: Optional[str] = None
        self.expanded_search = False
        self._pool: List[RankedCandidate] = []
        self._history: List[SwipeHistoryEntry] = []
        self._swiped: Dict[str, RankedCandidate] = {}
        self._position = 0

    # --- Read-only views ---

    @property
    def current(self) -> Optional[RankedCandidate]:
        return self._pool[0] if self._pool else None

    @property
    def pool(self) -> List[RankedCandidate]:
        return list(self._pool)

    @property
    def history(self) -> List[SwipeHistoryEntry]:
        return list(self._history)

    @property
    def is_committing(self) -> bool:
        return self._commit_lock.locked()

    # --- Source selection and loading ---

    def select_source(self, source_item_id: str) -> SwipePhase:
        """
        Switch to a new source item. Resets to IDLE, then loads with one
        strict attempt and, if that is empty, one expanded attempt.
        """
        if self._commit_lock.locked():
            raise CommitLockHeldError("Cannot switch source item while a commit is in flight")

        if self.source_item_id is not None:
            logger.info("Switching source item %s -> %s", self.source_item_id, source_item_id)
        self.phase = SwipePhase.IDLE
        self.source_item_id = source_item_id
        self.expanded_search = False
        self._pool = []
        self._history = []
        self._swiped = {}
        self._position = 0

        self._transition(SwipePhase.LOADING)
        try:
            self._pool = self._load_pool()
        except PersistenceError:
            self._transition(SwipePhase.IDLE)
            raise
        return self._settle()

    def refresh(self) -> SwipePhase:
        """Manual retry from EXHAUSTED."""
        self._transition(SwipePhase.REFRESHING)
        try:
            self._pool = self._load_pool()
        except PersistenceError:
            self._transition(SwipePhase.EXHAUSTED)
            raise
        return self._settle()

    def _load_pool(self) -> List[RankedCandidate]:
        self.expanded_search = False
        candidates = self._fetch(expanded=False)
        if not candidates:
            logger.info("Strict search empty for %s, retrying expanded", self.source_item_id)
            self.expanded_search = True
            candidates = self._fetch(expanded=True)
        return candidates

    def _fetch(self, expanded: bool) -> List[RankedCandidate]:
        candidates = self._call(
            "candidate fetch",
            self.candidate_source.fetch,
            self.source_item_id,
            self.config.page_size,
            expanded,
        )
        return [c for c in candidates if c.item_id not in self._swiped]

    def _settle(self) -> SwipePhase:
        self._transition(SwipePhase.READY if self._pool else SwipePhase.EXHAUSTED)
        return self.phase

    # --- Swiping ---

    def start_swipe(self) -> None:
        self._transition(SwipePhase.SWIPING)

    def cancel_swipe(self) -> None:
        self._transition(SwipePhase.READY)

    def swipe(self, liked: bool) -> CommitResult:
        """Start and complete a swipe on the current candidate."""
        self.start_swipe()
        return self.commit(liked)

    def commit(self, liked: bool) -> CommitResult:
        """
        Persist the decision for the current candidate.

        Raises CommitLockHeldError if another commit holds the lock, and
        PersistenceError if the backend fails; in that case the machine is
        READY with the same candidate on top, so the user can retry.
        """
        if not self._commit_lock.acquire(blocking=False):
            raise CommitLockHeldError("A commit is already in progress")
        try:
            self._transition(SwipePhase.COMMITTING)
            candidate = self._pool[0]
            now = self.clock()
            event = SwipeEvent(
                swiper_item_id=self.source_item_id,
                swiped_item_id=candidate.item_id,
                liked=liked,
                created_at=now,
            )
            try:
                match = self._call("swipe persistence", self.backend.record_swipe, event)
            finally:
                self._transition(SwipePhase.READY)

            self._pool.pop(0)
            self._history.append(SwipeHistoryEntry(
                item_id=candidate.item_id,
                liked=liked,
                position=self._position,
                committed_at=now,
            ))
            self._prune_history(now)
            self._swiped[candidate.item_id] = candidate
            self._position += 1
        finally:
            self._commit_lock.release()

        self._refill_if_low()
        if not self._pool:
            self._transition(SwipePhase.EXHAUSTED)
        return CommitResult(
            swiped_item_id=candidate.item_id,
            liked=liked,
            match_id=match.id if match else None,
        )

    def _prune_history(self, now: datetime) -> None:
        """Drop entries that can no longer be undone."""
        self._history = [
            h for h in self._history if now - h.committed_at <= self.ledger.window
        ]

    def _refill_if_low(self) -> None:
        if len(self._pool) > self.config.refill_threshold:
            return
        try:
            fresh = self._fetch(expanded=self.expanded_search)
        except PersistenceError as e:
            logger.warning("Refill for %s failed: %s", self.source_item_id, e)
            return
        known = {c.item_id for c in self._pool}
        added = [c for c in fresh if c.item_id not in known]
        self._pool.extend(added)
        if added:
            logger.debug("Refilled %d candidates for %s", len(added), self.source_item_id)

    # --- Undo ---

    def undo(self) -> SwipeHistoryEntry:
        """
        Revert the most recent committed swipe and put its candidate back on
        top of the pool.
        """
        if not self._commit_lock.acquire(blocking=False):
            raise CommitLockHeldError("A commit or undo is already in progress")
        try:
            if not self._history:
                raise UndoNotAllowedError("Nothing to undo")
            entry = self._history[-1]
            now = self.clock()
            if now - entry.committed_at > self.ledger.window:
                raise UndoNotAllowedError(f"Swipe on {entry.item_id} is outside the undo window")
            if not self.ledger.allows(self.source_item_id, entry.item_id, now):
                raise UndoNotAllowedError(f"Swipe on {entry.item_id} was already undone recently")

            previous = self.phase
            self._transition(SwipePhase.UNDOING)
            try:
                self._call(
                    "swipe deletion",
                    self.backend.delete_swipe,
                    self.source_item_id,
                    entry.item_id,
                )
            except PersistenceError:
                self._transition(previous)
                raise

            self._history.pop()
            self.ledger.record(self.source_item_id, entry.item_id, now)
            candidate = self._swiped.pop(entry.item_id)
            self._pool.insert(0, candidate)
            self._transition(SwipePhase.READY)
            logger.info("Undid swipe %s -> %s", self.source_item_id, entry.item_id)
            return entry
        finally:
            self._commit_lock.release()

    # --- Pause ---

    def pause(self) -> None:
        self._transition(SwipePhase.PAUSED)

    def resume(self) -> None:
        self._transition(SwipePhase.READY)

    # --- Internals ---

    def _call(self, what: str, fn, *args):
        """Run a collaborator call bounded by the configured timeout."""
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.config.call_timeout_seconds)
        except FutureTimeoutError as e:
            future.cancel()
            raise PersistenceError(
                f"{what} timed out after {self.config.call_timeout_seconds}s"
            ) from e
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"{what} failed: {e}") from e

    def _transition(self, new_phase: SwipePhase) -> None:
        current = self.phase
        if new_phase not in VALID_TRANSITIONS.get(current, set()):
            raise InvalidTransitionError(
                f"Invalid swipe transition: {current.value} -> {new_phase.value}"
            )
        logger.debug("Swipe session %s: %s -> %s", self.source_item_id, current.value, new_phase.value)
        self.phase = new_phase

    def close(self) -> None:
        self._executor.shutdown(wait=False)
