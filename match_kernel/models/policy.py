"""Scoring Policy — versioned, immutable ranking configuration."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


WEIGHT_NAMES = (
    "geoScore",
    "categorySimilarity",
    "exchangeCompatibility",
    "behaviorAffinity",
    "freshness",
    "conditionScore",
    "reciprocalBoost",
)


class PolicyProvenance(str, Enum):
    HUMAN = "human"
    AI_OPTIMIZER = "ai_optimizer"


class ReciprocalPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PolicyWeights(BaseModel):
    """The seven ranking weights. Serialized under their camelCase names."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    geo_score: float = Field(alias="geoScore")
    category_similarity: float = Field(alias="categorySimilarity")
    exchange_compatibility: float = Field(alias="exchangeCompatibility")
    behavior_affinity: float = Field(alias="behaviorAffinity")
    freshness: float = Field(alias="freshness")
    condition_score: float = Field(alias="conditionScore")
    reciprocal_boost: float = Field(alias="reciprocalBoost")

    def as_dict(self) -> dict:
        return self.model_dump(by_alias=True)

    @property
    def total(self) -> float:
        return sum(self.as_dict().values())


class ExplorationPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    randomness: float
    cold_start_boost: float
    stale_item_penalty: float
    cold_start_threshold_swipes: int = 5
    stale_threshold_days: int = 14


class ReciprocalPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    priority: ReciprocalPriority = ReciprocalPriority.MEDIUM
    boost_cap: float


class ScoringPolicy(BaseModel):
    """
    A versioned policy record. Never edited in place: a change is a new
    version, and activation state is only ever changed by the PolicyStore.
    """

    model_config = ConfigDict(frozen=True)

    version: str                                    # vMAJOR.MINOR.PATCH
    weights: PolicyWeights
    exploration_policy: ExplorationPolicy
    reciprocal_policy: ReciprocalPolicy
    active: bool = False
    provenance: PolicyProvenance = PolicyProvenance.HUMAN
    description: str = ""
    rationale: List[str] = []
    created_by: str
    created_at: datetime
    activated_at: Optional[datetime] = None
    activated_by: Optional[str] = None

    def to_proposal_dict(self) -> dict:
        """The wire shape shared by hand-authored and generated proposals."""
        return {
            "policy_version": self.version,
            "weights": self.weights.as_dict(),
            "exploration_policy": self.exploration_policy.model_dump(),
            "reciprocal_policy": self.reciprocal_policy.model_dump(mode="json"),
            "rationale": list(self.rationale),
        }


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = []


class PolicyActivationRecord(BaseModel):
    """One row of the activation log."""

    version: str
    previous_version: Optional[str] = None
    activated_by: str
    activated_at: datetime
