"""Match kernel data models."""

from match_kernel.models.item import (
    GeoPoint,
    Item,
    ItemCategory,
    ItemCondition,
    MatchRecord,
    SwipeEvent,
)
from match_kernel.models.metrics import CategoryConversion, PolicyMetricSnapshot
from match_kernel.models.policy import (
    WEIGHT_NAMES,
    ExplorationPolicy,
    PolicyActivationRecord,
    PolicyProvenance,
    PolicyWeights,
    ReciprocalPolicy,
    ReciprocalPriority,
    ScoringPolicy,
    ValidationResult,
)
from match_kernel.models.ranking import RankedCandidate, RankingRequest
from match_kernel.models.reciprocal import (
    OptimizerRunRecord,
    ReciprocalConfig,
    ReciprocalOpportunity,
)
from match_kernel.models.swipe import (
    CommitResult,
    LifecycleConfig,
    SwipeHistoryEntry,
    SwipePhase,
)

__all__ = [
    "CategoryConversion",
    "CommitResult",
    "ExplorationPolicy",
    "GeoPoint",
    "Item",
    "ItemCategory",
    "ItemCondition",
    "LifecycleConfig",
    "MatchRecord",
    "OptimizerRunRecord",
    "PolicyActivationRecord",
    "PolicyMetricSnapshot",
    "PolicyProvenance",
    "PolicyWeights",
    "RankedCandidate",
    "RankingRequest",
    "ReciprocalConfig",
    "ReciprocalOpportunity",
    "ReciprocalPolicy",
    "ReciprocalPriority",
    "ScoringPolicy",
    "SwipeEvent",
    "SwipeHistoryEntry",
    "SwipePhase",
    "ValidationResult",
    "WEIGHT_NAMES",
]
