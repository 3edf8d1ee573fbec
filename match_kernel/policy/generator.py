"""
Policy Generator boundary — the external proposal producer.

Everything a generator returns is untrusted: it is decoded into a provisional
dict and must pass the PolicyValidator before a ScoringPolicy is built from it.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Protocol

import anthropic
from pydantic import BaseModel

from match_kernel.infra.errors import ExternalGeneratorError
from match_kernel.models.metrics import PolicyMetricSnapshot
from match_kernel.models.policy import (
    WEIGHT_NAMES,
    ExplorationPolicy,
    PolicyProvenance,
    PolicyWeights,
    ReciprocalPolicy,
    ScoringPolicy,
)
from match_kernel.policy.validator import PolicyBounds

logger = logging.getLogger(__name__)

MAX_PROMPT_CATEGORIES = 20


class PolicyPrompt(BaseModel):
    system: str
    user: str
    next_version: str


class PolicyGenerator(Protocol):
    """Pluggable proposal backend."""

    def propose(self, prompt: PolicyPrompt) -> Any: ...


PROPOSAL_TOOL = {
    "name": "propose_policy",
    "description": "Propose optimized policy parameters based on metrics analysis",
    "input_schema": {
        "type": "object",
        "properties": {
            "policy_version": {
                "type": "string",
                "description": "Version string in semver format (e.g., 'v1.1.0')",
            },
            "weights": {
                "type": "object",
                "properties": {name: {"type": "number"} for name in WEIGHT_NAMES},
                "required": list(WEIGHT_NAMES),
            },
            "exploration_policy": {
                "type": "object",
                "properties": {
                    "randomness": {"type": "number"},
                    "cold_start_boost": {"type": "number"},
                    "stale_item_penalty": {"type": "number"},
                    "cold_start_threshold_swipes": {"type": "integer"},
                    "stale_threshold_days": {"type": "integer"},
                },
                "required": ["randomness", "cold_start_boost", "stale_item_penalty"],
            },
            "reciprocal_policy": {
                "type": "object",
                "properties": {
                    "priority": {"type": "string", "enum": ["low", "medium", "high"]},
                    "boost_cap": {"type": "number"},
                },
                "required": ["priority", "boost_cap"],
            },
            "rationale": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Brief explanation for each change made",
            },
        },
        "required": [
            "policy_version", "weights", "exploration_policy",
            "reciprocal_policy", "rationale",
        ],
    },
}


def _format_range(bounds: tuple) -> str:
    return f"{bounds[0]:.2f} - {bounds[1]:.2f}"


def build_policy_prompt(
    metrics: PolicyMetricSnapshot,
    current_policy: ScoringPolicy,
    next_version: str,
    bounds: PolicyBounds,
) -> PolicyPrompt:
    """Bounded prompt describing current metrics and the active policy."""
    weight_ranges = "\n".join(
        f"- {name}: {_format_range(bounds.weights[name])}" for name in WEIGHT_NAMES
    )
    exploration_ranges = "\n".join(
        f"- {name}: {_format_range(rng)}" for name, rng in bounds.exploration.items()
    )
    system = f"""You are an algorithm policy optimizer for an item exchange platform.

ROLE CONSTRAINTS:
- You ONLY output numeric policy parameters
- You do NOT select items, users, or matches
- You do NOT have access to personal data
- Your outputs are stored inactive and reviewed by a human before use

OPTIMIZATION GOALS (in priority order):
1. Maximize completed exchanges (match_to_exchange_conversion)
2. Reduce time to match
3. Prioritize mutual swap preferences (reciprocal matches)
4. Improve cold start item visibility
5. Reduce stale item visibility

ALLOWED WEIGHT RANGES:
{weight_ranges}

EXPLORATION POLICY RANGES:
{exploration_ranges}

RULES:
- All weights MUST sum to between {bounds.weight_sum[0]} and {bounds.weight_sum[1]}
- Prefer SMALL incremental changes (max 0.05 per weight from current values)
- Provide brief rationale for each change
- If metrics are insufficient, return current policy unchanged"""

    categories = sorted(
        metrics.category_success_rates.items(),
        key=lambda kv: (-kv[1].matches, kv[0]),
    )[:MAX_PROMPT_CATEGORIES]
    category_lines = "\n".join(
        f"- {cat}: {stats.matches} matches, {stats.completed} completed "
        f"({stats.conversion_rate * 100:.1f}%)"
        for cat, stats in categories
    ) or "- no category data"

    user = f"""Analyze these platform metrics and propose optimized policy parameters:

CURRENT METRICS ({metrics.period_start.date()} to {metrics.period_end.date()}):
- Total swipes: {metrics.total_swipes}
- Like rate: {metrics.like_rate * 100:.1f}%
- Total matches: {metrics.total_matches}
- Completed exchanges: {metrics.total_completed_exchanges}
- Match-to-exchange conversion: {metrics.match_to_exchange_conversion * 100:.1f}%
- Average time to complete: {metrics.avg_time_to_complete_hours:.1f} hours

CATEGORY PERFORMANCE:
{category_lines}

CURRENT POLICY ({current_policy.version}):
{json.dumps(current_policy.to_proposal_dict(), indent=2)}

The new version should be {next_version}."""

    return PolicyPrompt(system=system, user=user, next_version=next_version)


def decode_proposal(raw: Any) -> Dict[str, Any]:
    """
    Decode generator output into a provisional dict. Accepts a mapping or
    JSON text. The result is NOT trusted and must still be validated.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise ExternalGeneratorError(f"Generator output is not valid JSON: {e}") from e
    if not isinstance(raw, Mapping):
        raise ExternalGeneratorError(
            f"Generator output must be an object, got {type(raw).__name__}"
        )
    return dict(raw)


def policy_from_proposal(
    proposal: Mapping[str, Any],
    provenance: PolicyProvenance,
    created_by: str,
    created_at: datetime,
) -> ScoringPolicy:
    """Build a ScoringPolicy from a proposal that has already passed validation."""
    exploration = dict(proposal["exploration_policy"])
    raw_rationale = proposal.get("rationale") or []
    if isinstance(raw_rationale, str):
        raw_rationale = [raw_rationale]
    rationale = [str(r) for r in raw_rationale]
    return ScoringPolicy(
        version=proposal["policy_version"],
        weights=PolicyWeights.model_validate(proposal["weights"]),
        exploration_policy=ExplorationPolicy.model_validate(exploration),
        reciprocal_policy=ReciprocalPolicy.model_validate(proposal["reciprocal_policy"]),
        active=False,
        provenance=provenance,
        description="; ".join(rationale),
        rationale=rationale,
        created_by=created_by,
        created_at=created_at,
    )


class AnthropicPolicyGenerator:
    """
    Requests a proposal through Claude tool use. The tool schema mirrors the
    ScoringPolicy wire shape; the returned tool input is passed back as-is.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-5-20250929",
        max_tokens: int = 2048,
        timeout_seconds: float = 60.0,
        client: Optional[anthropic.Anthropic] = None,
    ):
        self._client = client or anthropic.Anthropic(
            api_key=api_key, timeout=timeout_seconds, max_retries=1
        )
        self._model = model
        self._max_tokens = max_tokens

    def propose(self, prompt: PolicyPrompt) -> Dict[str, Any]:
        try:
            response = self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                system=prompt.system,
                messages=[{"role": "user", "content": prompt.user}],
                tools=[PROPOSAL_TOOL],
                tool_choice={"type": "tool", "name": PROPOSAL_TOOL["name"]},
            )
        except anthropic.APIError as e:
            logger.error("Policy generator request failed: %s", type(e).__name__)
            raise ExternalGeneratorError(f"Generator request failed: {e}") from e

        for block in response.content:
            if getattr(block, "type", None) == "tool_use" and block.name == PROPOSAL_TOOL["name"]:
                return decode_proposal(block.input)
        raise ExternalGeneratorError("Generator did not return the expected tool call")
