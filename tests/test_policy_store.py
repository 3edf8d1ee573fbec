"""Tests for the Policy Store."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from match_kernel.infra.errors import (
    ActivationConflictError,
    ConfigurationError,
    GovernanceError,
    PersistenceError,
    PolicyNotFoundError,
    ValidationError,
)
from match_kernel.models.policy import PolicyProvenance, PolicyWeights
from match_kernel.policy.store import PolicyStore, default_policy

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _make_policy(version: str, provenance=PolicyProvenance.HUMAN, created_at=NOW, **weights):
    base = default_policy(created_at)
    new_weights = dict(base.weights.as_dict(), **weights)
    return base.model_copy(update={
        "version": version,
        "provenance": provenance,
        "weights": PolicyWeights.model_validate(new_weights),
        "created_by": "alice",
    })


class TestSave:
    def setup_method(self):
        self.store = PolicyStore(":memory:")

    def test_empty_store_has_no_active_policy(self):
        with pytest.raises(ConfigurationError):
            self.store.get_active()
        assert self.store.active_version is None

    def test_saved_policy_is_inactive(self):
        policy = _make_policy("v1.0.0").model_copy(update={"active": True})
        stored = self.store.save(policy)
        assert not stored.active
        assert not self.store.get("v1.0.0").active
        assert self.store.count_active() == 0

    def test_invalid_policy_is_not_stored(self):
        with pytest.raises(ValidationError) as exc_info:
            self.store.save(_make_policy("v1.0.0", geoScore=0.45))
        assert any("geoScore" in e for e in exc_info.value.errors)
        assert self.store.count() == 0

    def test_duplicate_version_rejected(self):
        self.store.save(_make_policy("v1.0.0"))
        with pytest.raises(PersistenceError):
            self.store.save(_make_policy("v1.0.0"))

    def test_get_unknown_version(self):
        with pytest.raises(PolicyNotFoundError):
            self.store.get("v9.9.9")

    def test_list_versions_in_semver_order(self):
        for version in ("v1.10.0", "v1.2.0", "v1.0.0"):
            self.store.save(_make_policy(version))
        assert [p.version for p in self.store.list_versions()] == ["v1.0.0", "v1.2.0", "v1.10.0"]

    def test_latest_by_provenance(self):
        self.store.save(_make_policy("v1.0.0"))
        self.store.save(_make_policy("v1.1.0", PolicyProvenance.AI_OPTIMIZER, NOW))
        self.store.save(_make_policy(
            "v1.2.0", PolicyProvenance.AI_OPTIMIZER, NOW + timedelta(days=2)
        ))
        latest = self.store.latest_by_provenance(PolicyProvenance.AI_OPTIMIZER)
        assert latest.version == "v1.2.0"

    def test_weights_survive_storage(self):
        self.store.save(_make_policy("v1.0.0"))
        assert self.store.get("v1.0.0").weights == default_policy(NOW).weights


class TestActivation:
    def setup_method(self):
        self.store = PolicyStore(":memory:")
        self.store.bootstrap_default(activated_by="alice")

    def test_bootstrap_activates_baseline(self):
        active = self.store.get_active()
        assert active.version == "v1.0.0"
        assert active.active
        assert active.activated_by == "alice"
        # Second bootstrap is a no-op
        self.store.bootstrap_default()
        assert self.store.count() == 1

    def test_activation_swaps_single_active(self):
        self.store.save(_make_policy("v1.1.0"))
        self.store.activate("v1.1.0", activated_by="bob")
        assert self.store.get_active().version == "v1.1.0"
        assert not self.store.get("v1.0.0").active
        assert self.store.count_active() == 1

    def test_activation_is_idempotent(self):
        before = self.store.activation_history()
        again = self.store.activate("v1.0.0", activated_by="bob")
        assert again.version == "v1.0.0"
        assert self.store.activation_history() == before

    @pytest.mark.parametrize("actor", ["ai_optimizer", "system", "", "   "])
    def test_automated_actors_refused(self, actor):
        self.store.save(_make_policy("v1.1.0", PolicyProvenance.AI_OPTIMIZER))
        with pytest.raises(GovernanceError):
            self.store.activate("v1.1.0", activated_by=actor)
        assert self.store.get_active().version == "v1.0.0"

    def test_unknown_version(self):
        with pytest.raises(PolicyNotFoundError):
            self.store.activate("v3.0.0", activated_by="bob")

    def test_compare_and_set(self):
        self.store.save(_make_policy("v1.1.0"))
        self.store.save(_make_policy("v1.2.0"))
        self.store.activate("v1.1.0", activated_by="bob", expected_active_version="v1.0.0")
        with pytest.raises(ActivationConflictError):
            self.store.activate("v1.2.0", activated_by="carol", expected_active_version="v1.0.0")
        assert self.store.get_active().version == "v1.1.0"

    def test_activation_history(self):
        self.store.save(_make_policy("v1.1.0"))
        self.store.activate("v1.1.0", activated_by="bob", now=NOW)
        history = self.store.activation_history()
        assert [(h.version, h.previous_version) for h in history] == [
            ("v1.0.0", None),
            ("v1.1.0", "v1.0.0"),
        ]
        assert history[-1].activated_by == "bob"

    def test_concurrent_activations_leave_exactly_one_active(self):
        versions = [f"v1.{i}.0" for i in range(1, 9)]
        for version in versions:
            self.store.save(_make_policy(version))

        start = threading.Event()
        errors = []

        def activate(version):
            start.wait()
            try:
                self.store.activate(version, activated_by="ops")
            except Exception as e:  # collected for the assertion below
                errors.append(e)

        threads = [threading.Thread(target=activate, args=(v,)) for v in versions]
        for t in threads:
            t.start()
        start.set()
        for t in threads:
            t.join(timeout=5)

        assert errors == []
        assert self.store.count_active() == 1
        assert self.store.get_active().version in versions
        assert self.store.get(self.store.get_active().version).active

    def test_concurrent_compare_and_set_has_one_winner(self):
        versions = ["v1.1.0", "v1.2.0", "v1.3.0", "v1.4.0"]
        for version in versions:
            self.store.save(_make_policy(version))

        start = threading.Event()
        winners, conflicts = [], []

        def activate(version):
            start.wait()
            try:
                self.store.activate(version, activated_by="ops", expected_active_version="v1.0.0")
                winners.append(version)
            except ActivationConflictError:
                conflicts.append(version)

        threads = [threading.Thread(target=activate, args=(v,)) for v in versions]
        for t in threads:
            t.start()
        start.set()
        for t in threads:
            t.join(timeout=5)

        assert len(winners) == 1
        assert len(conflicts) == 3
        assert self.store.get_active().version == winners[0]
        assert self.store.count_active() == 1


class TestBootstrap:
    def test_concurrent_bootstraps_seed_once(self):
        store = PolicyStore(":memory:")
        start = threading.Event()
        results = []
        errors = []

        def bootstrap():
            start.wait(timeout=5)
            try:
                results.append(store.bootstrap_default(activated_by="alice"))
            except Exception as e:  # collected for the assertion below
                errors.append(e)

        threads = [threading.Thread(target=bootstrap) for _ in range(4)]
        for t in threads:
            t.start()
        start.set()
        for t in threads:
            t.join(timeout=5)

        assert errors == []
        assert [p.version for p in results] == ["v1.0.0"] * 4
        assert store.count() == 1
        assert store.count_active() == 1


class TestPersistence:
    def test_active_policy_reloaded_from_disk(self, tmp_path):
        db_path = str(tmp_path / "policies.db")
        store = PolicyStore(db_path)
        store.bootstrap_default(activated_by="alice")
        store.save(_make_policy("v1.1.0"))
        store.activate("v1.1.0", activated_by="alice")

        reopened = PolicyStore(db_path)
        assert reopened.get_active().version == "v1.1.0"
        assert reopened.count() == 2
