"""
Exception hierarchy for the match kernel.

All exceptions inherit from MatchKernelError. Errors that represent a
recoverable rejection (rather than a fault) expose to_rejection(), the
structured payload returned to admin callers.
"""

from datetime import timedelta
from typing import List, Optional


class MatchKernelError(Exception):
    """Base exception for all match kernel errors."""
    pass


class ConfigurationError(MatchKernelError):
    """Missing or invalid active policy. Ranking refuses rather than guesses."""
    pass


class ValidationError(MatchKernelError):
    """A proposed policy is out of bounds."""

    def __init__(self, errors: List[str], message: Optional[str] = None):
        self.errors = list(errors)
        super().__init__(message or "Policy validation failed: " + "; ".join(self.errors))

    def to_rejection(self) -> dict:
        return {"error": "validation_failed", "details": self.errors}


class RateLimitError(MatchKernelError):
    """Invoked before the minimum interval has elapsed."""

    def __init__(self, retry_after: timedelta, message: Optional[str] = None):
        self.retry_after = retry_after
        hours = retry_after.total_seconds() / 3600
        super().__init__(message or f"Rate limited. Retry in {hours:.1f} hours.")

    def to_rejection(self) -> dict:
        return {
            "error": "rate_limited",
            "message": str(self),
            "retry_after_seconds": int(self.retry_after.total_seconds()),
        }


class InsufficientDataError(MatchKernelError):
    """Too few swipes in the metrics window to optimize."""

    def __init__(self, required: int, actual: int):
        self.required = required
        self.actual = actual
        super().__init__(
            f"Need at least {required} swipes for optimization. Current: {actual}"
        )

    def to_rejection(self) -> dict:
        return {
            "error": "insufficient_data",
            "message": str(self),
            "required": self.required,
            "actual": self.actual,
        }


class ExternalGeneratorError(MatchKernelError):
    """The policy generator was unreachable or returned unusable output."""

    def to_rejection(self) -> dict:
        return {"error": "generator_failed", "details": [str(self)]}


class PersistenceError(MatchKernelError):
    """Storage collaborator failure. The caller may retry."""
    pass


class GovernanceError(MatchKernelError):
    """An automated actor attempted a human-only action."""
    pass


class ActivationConflictError(MatchKernelError):
    """Compare-and-set activation found a different active version."""
    pass


class ItemNotFoundError(MatchKernelError):
    pass


class PolicyNotFoundError(MatchKernelError):
    pass


class SwipeLifecycleError(MatchKernelError):
    """Base for swipe state machine rejections."""
    pass


class InvalidTransitionError(SwipeLifecycleError):
    pass


class CommitLockHeldError(SwipeLifecycleError):
    """A commit or undo is already in flight for this session."""
    pass


class UndoNotAllowedError(SwipeLifecycleError):
    pass
