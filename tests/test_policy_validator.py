"""Tests for the Policy Validator."""

from datetime import datetime, timezone

import pytest

from match_kernel.policy.store import default_policy
from match_kernel.policy.validator import (
    DEFAULT_BOUNDS,
    PolicyBounds,
    next_minor_version,
    parse_version,
    validate,
)


def _make_proposal(**overrides) -> dict:
    """The baseline v1.0.0 proposal, with optional top-level overrides."""
    proposal = {
        "policy_version": "v1.0.0",
        "weights": {
            "geoScore": 0.30,
            "categorySimilarity": 0.15,
            "exchangeCompatibility": 0.20,
            "behaviorAffinity": 0.10,
            "freshness": 0.08,
            "conditionScore": 0.07,
            "reciprocalBoost": 0.10,
        },
        "exploration_policy": {
            "randomness": 0.05,
            "cold_start_boost": 0.10,
            "stale_item_penalty": 0.05,
        },
        "reciprocal_policy": {"priority": "medium", "boost_cap": 0.5},
    }
    proposal.update(overrides)
    return proposal


def _with_weight(name: str, value) -> dict:
    proposal = _make_proposal()
    proposal["weights"] = dict(proposal["weights"], **{name: value})
    return proposal


class TestWeightChecks:
    def test_baseline_policy_is_valid(self):
        result = validate(_make_proposal())
        assert result.valid
        assert result.errors == []

    def test_geo_score_above_bound_names_the_weight(self):
        result = validate(_with_weight("geoScore", 0.45))
        assert not result.valid
        assert any("geoScore" in e for e in result.errors)

    def test_sum_out_of_range_names_the_sum(self):
        # Every weight within bounds, but the total is 0.90
        proposal = _with_weight("geoScore", 0.20)
        result = validate(proposal)
        assert not result.valid
        assert any("sum" in e.lower() for e in result.errors)
        assert not any(e.startswith("geoScore") for e in result.errors)

    def test_small_deviation_from_one_accepted(self):
        assert validate(_with_weight("geoScore", 0.285)).valid
        assert validate(_with_weight("geoScore", 0.315)).valid

    @pytest.mark.parametrize("name,value", [
        ("categorySimilarity", 0.01),
        ("exchangeCompatibility", 0.40),
        ("behaviorAffinity", 0.30),
        ("freshness", 0.01),
        ("conditionScore", 0.20),
        ("reciprocalBoost", 0.30),
    ])
    def test_single_weight_out_of_bounds_is_named(self, name, value):
        result = validate(_with_weight(name, value))
        assert not result.valid
        assert any(e.startswith(name) for e in result.errors)

    def test_missing_weight(self):
        proposal = _make_proposal()
        del proposal["weights"]["freshness"]
        result = validate(proposal)
        assert not result.valid
        assert "Missing required weight: freshness" in result.errors

    def test_unknown_weight_rejected(self):
        proposal = _make_proposal()
        proposal["weights"]["popularity"] = 0.0
        result = validate(proposal)
        assert "Unknown weight: popularity" in result.errors

    def test_non_numeric_weight_rejected(self):
        for bad in ("0.3", True, None, float("nan")):
            result = validate(_with_weight("geoScore", bad))
            assert not result.valid
            assert any("geoScore" in e for e in result.errors)


class TestOtherChecks:
    def test_exploration_out_of_bounds(self):
        proposal = _make_proposal(exploration_policy={
            "randomness": 0.5,
            "cold_start_boost": 0.10,
            "stale_item_penalty": 0.05,
        })
        result = validate(proposal)
        assert not result.valid
        assert any(e.startswith("randomness") for e in result.errors)

    def test_exploration_thresholds(self):
        proposal = _make_proposal(exploration_policy={
            "randomness": 0.05,
            "cold_start_boost": 0.10,
            "stale_item_penalty": 0.05,
            "stale_threshold_days": 0,
        })
        result = validate(proposal)
        assert any("stale_threshold_days" in e for e in result.errors)

    def test_invalid_priority(self):
        result = validate(_make_proposal(reciprocal_policy={"priority": "urgent", "boost_cap": 0.5}))
        assert not result.valid
        assert any("priority" in e for e in result.errors)

    def test_boost_cap_out_of_range(self):
        result = validate(_make_proposal(reciprocal_policy={"priority": "low", "boost_cap": 1.5}))
        assert any("boost_cap" in e for e in result.errors)

    @pytest.mark.parametrize("version", ["1.0.0", "v1.0", "v1.0.0-beta", "", None])
    def test_bad_version(self, version):
        result = validate(_make_proposal(policy_version=version))
        assert not result.valid
        assert any("semver" in e for e in result.errors)

    def test_collects_all_errors_in_order(self):
        proposal = _make_proposal(
            policy_version="latest",
            reciprocal_policy={"priority": "urgent", "boost_cap": 0.5},
        )
        proposal["weights"]["geoScore"] = 0.45
        errors = validate(proposal).errors
        assert len(errors) == 4
        assert "sum" in errors[0].lower()
        assert errors[1].startswith("geoScore")
        assert "priority" in errors[2]
        assert "semver" in errors[3]

    def test_non_mapping_proposal(self):
        result = validate(["not", "a", "policy"])
        assert not result.valid

    def test_accepts_scoring_policy(self):
        assert validate(default_policy(datetime(2026, 1, 1, tzinfo=timezone.utc))).valid

    def test_custom_bounds(self):
        bounds = PolicyBounds(weights=dict(DEFAULT_BOUNDS.weights, geoScore=(0.10, 0.25)))
        result = validate(_make_proposal(), bounds)
        assert any(e.startswith("geoScore") for e in result.errors)


class TestVersions:
    def test_parse_version(self):
        assert parse_version("v2.13.4") == (2, 13, 4)
        assert parse_version("2.13.4") is None

    def test_next_minor_version(self):
        assert next_minor_version("v1.0.0") == "v1.1.0"
        assert next_minor_version("v1.9.3") == "v1.10.0"
        assert next_minor_version("garbage") == "v1.1.0"
