"""
Policy Validator — numeric bounds and invariants for any proposed policy.

Behavioral Contract:
- Pure and side-effect free; safe to call concurrently
- Identical for hand-authored and generated proposals; there is no bypass
- Collects every error rather than stopping at the first
- Check order: weight sum, per-weight bounds, exploration bounds,
  reciprocal policy, version format
"""

import math
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel

from match_kernel.models.policy import (
    WEIGHT_NAMES,
    ReciprocalPriority,
    ScoringPolicy,
    ValidationResult,
)

VERSION_PATTERN = re.compile(r"^v(\d+)\.(\d+)\.(\d+)$")


class PolicyBounds(BaseModel):
    """Allowed ranges. Each entry is an inclusive [min, max] pair."""

    weight_sum: Tuple[float, float] = (0.98, 1.02)
    weights: Dict[str, Tuple[float, float]] = {
        "geoScore": (0.10, 0.40),
        "categorySimilarity": (0.05, 0.30),
        "exchangeCompatibility": (0.10, 0.35),
        "behaviorAffinity": (0.05, 0.25),
        "freshness": (0.02, 0.15),
        "conditionScore": (0.02, 0.15),
        "reciprocalBoost": (0.05, 0.25),
    }
    exploration: Dict[str, Tuple[float, float]] = {
        "randomness": (0.00, 0.20),
        "cold_start_boost": (0.00, 0.30),
        "stale_item_penalty": (0.00, 0.50),
    }
    exploration_thresholds: Dict[str, Tuple[int, int]] = {
        "cold_start_threshold_swipes": (0, 1000),
        "stale_threshold_days": (1, 365),
    }
    boost_cap: Tuple[float, float] = (0.0, 1.0)


DEFAULT_BOUNDS = PolicyBounds()


def parse_version(version: str) -> Optional[Tuple[int, int, int]]:
    match = VERSION_PATTERN.match(version or "")
    if not match:
        return None
    return tuple(int(part) for part in match.groups())


def next_minor_version(version: str) -> str:
    """vM.m.p -> vM.(m+1).0; unparseable versions restart at v1.1.0."""
    parsed = parse_version(version)
    if parsed is None:
        return "v1.1.0"
    major, minor, _ = parsed
    return f"v{major}.{minor + 1}.0"


def _as_number(value: Any) -> Optional[float]:
    """Strictly numeric values only; bools and NaN are rejected."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return float(value)


def _check_range(
    errors: List[str], label: str, value: Any, bounds: Tuple[float, float]
) -> Optional[float]:
    lo, hi = bounds
    if value is None:
        errors.append(f"Missing required field: {label}")
        return None
    number = _as_number(value)
    if number is None:
        errors.append(f"{label} must be a number, got {value!r}")
        return None
    if number < lo or number > hi:
        errors.append(f"{label} = {number} outside bounds [{lo}, {hi}]")
    return number


def validate(
    proposal: Union[ScoringPolicy, Mapping[str, Any]],
    bounds: PolicyBounds = DEFAULT_BOUNDS,
) -> ValidationResult:
    """
    Validate a proposed policy.

    Accepts a ScoringPolicy or the raw proposal mapping
    (policy_version, weights, exploration_policy, reciprocal_policy).
    """
    if isinstance(proposal, ScoringPolicy):
        proposal = proposal.to_proposal_dict()
    if not isinstance(proposal, Mapping):
        return ValidationResult(valid=False, errors=["Proposal must be an object"])

    errors: List[str] = []

    weights = proposal.get("weights")
    if not isinstance(weights, Mapping):
        errors.append("weights must be an object with the 7 named weights")
        weights = {}

    # 1. Weight sum
    numeric = [_as_number(weights.get(name)) for name in WEIGHT_NAMES]
    total = sum(v for v in numeric if v is not None)
    lo, hi = bounds.weight_sum
    if total < lo or total > hi:
        errors.append(
            f"Weights sum {total:.3f} outside allowed range [{lo}, {hi}]"
        )

    # 2. Individual weights
    for name in WEIGHT_NAMES:
        if name not in weights:
            errors.append(f"Missing required weight: {name}")
            continue
        _check_range(errors, name, weights[name], bounds.weights[name])
    for name in weights:
        if name not in WEIGHT_NAMES:
            errors.append(f"Unknown weight: {name}")

    # 3. Exploration policy
    exploration = proposal.get("exploration_policy")
    if not isinstance(exploration, Mapping):
        errors.append("exploration_policy must be an object")
    else:
        for field, field_bounds in bounds.exploration.items():
            _check_range(errors, field, exploration.get(field), field_bounds)
        for field, (tlo, thi) in bounds.exploration_thresholds.items():
            if field not in exploration:
                continue  # defaults apply
            value = exploration[field]
            if isinstance(value, bool) or not isinstance(value, int):
                errors.append(f"{field} must be an integer, got {value!r}")
            elif value < tlo or value > thi:
                errors.append(f"{field} = {value} outside bounds [{tlo}, {thi}]")

    # 4. Reciprocal policy
    reciprocal = proposal.get("reciprocal_policy")
    if not isinstance(reciprocal, Mapping):
        errors.append("reciprocal_policy must be an object")
    else:
        priority = reciprocal.get("priority")
        allowed = [p.value for p in ReciprocalPriority]
        if isinstance(priority, ReciprocalPriority):
            priority = priority.value
        if priority not in allowed:
            errors.append("reciprocal_policy.priority must be 'low', 'medium', or 'high'")
        _check_range(
            errors, "reciprocal_policy.boost_cap", reciprocal.get("boost_cap"), bounds.boost_cap
        )

    # 5. Version
    version = proposal.get("policy_version")
    if not isinstance(version, str) or parse_version(version) is None:
        errors.append("policy_version must be in semver format (e.g., 'v1.1.0')")

    return ValidationResult(valid=not errors, errors=errors)
