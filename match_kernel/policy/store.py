"""
Policy Store — versioned, append-only scoring policies with one active pointer.

Behavioral Contract:
- Policies are immutable once saved; a change is a new version
- Every saved policy passes the PolicyValidator and is stored inactive
- Activation is a single transaction: never zero-after-one or two active rows
- Activation is human-only; automated actors are refused
- Readers get the active policy through one reference that is swapped
  after the activation commits, so they never observe a partial update
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import List, Optional

from match_kernel.infra.errors import (
    ActivationConflictError,
    ConfigurationError,
    GovernanceError,
    PersistenceError,
    PolicyNotFoundError,
    ValidationError,
)
from match_kernel.models.policy import (
    ExplorationPolicy,
    PolicyActivationRecord,
    PolicyProvenance,
    PolicyWeights,
    ReciprocalPolicy,
    ReciprocalPriority,
    ScoringPolicy,
)
from match_kernel.policy.validator import DEFAULT_BOUNDS, PolicyBounds, parse_version, validate

logger = logging.getLogger(__name__)

AUTOMATED_ACTORS = frozenset({"ai_optimizer", "system", "reciprocal_optimizer"})


def default_policy(created_at: Optional[datetime] = None) -> ScoringPolicy:
    """The hand-authored v1.0.0 baseline."""
    return ScoringPolicy(
        version="v1.0.0",
        weights=PolicyWeights(
            geoScore=0.30,
            categorySimilarity=0.15,
            exchangeCompatibility=0.20,
            behaviorAffinity=0.10,
            freshness=0.08,
            conditionScore=0.07,
            reciprocalBoost=0.10,
        ),
        exploration_policy=ExplorationPolicy(
            randomness=0.05,
            cold_start_boost=0.10,
            stale_item_penalty=0.05,
        ),
        reciprocal_policy=ReciprocalPolicy(
            priority=ReciprocalPriority.MEDIUM,
            boost_cap=0.5,
        ),
        provenance=PolicyProvenance.HUMAN,
        description="Baseline policy",
        created_by="bootstrap",
        created_at=created_at or datetime.now(timezone.utc),
    )


class PolicyStore:
    """
    SQLite-backed policy registry.
    A partial unique index enforces at most one active row at the storage level.
    """

    def __init__(self, db_path: str = ":memory:", bounds: PolicyBounds = DEFAULT_BOUNDS):
        self.db_path = db_path
        self.bounds = bounds
        self._bootstrap_lock = threading.Lock()
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()
        self._active: Optional[ScoringPolicy] = self._load_active()

    def _init_schema(self) -> None:
        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS policies (
                    version TEXT PRIMARY KEY,
                    provenance TEXT NOT NULL,
                    active INTEGER NOT NULL DEFAULT 0,
                    record_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    activated_at TEXT,
                    activated_by TEXT
                )
            """)
            self._conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_policies_single_active
                ON policies(active) WHERE active = 1
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_policies_provenance
                ON policies(provenance, created_at)
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS policy_activations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    version TEXT NOT NULL,
                    previous_version TEXT,
                    activated_by TEXT NOT NULL,
                    activated_at TEXT NOT NULL
                )
            """)

    # --- Writes ---

    def save(self, policy: ScoringPolicy) -> ScoringPolicy:
        """
        Persist a new policy version, inactive. Raises ValidationError if the
        policy fails validation and PersistenceError if the version exists.
        """
        result = validate(policy, self.bounds)
        if not result.valid:
            raise ValidationError(result.errors)

        stored = policy.model_copy(update={
            "active": False,
            "activated_at": None,
            "activated_by": None,
        })
        record_json = stored.model_dump_json()

        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        """
                        INSERT INTO policies (version, provenance, active, record_json, created_at)
                        VALUES (?, ?, 0, ?, ?)
                        """,
                        (
                            stored.version,
                            stored.provenance.value,
                            record_json,
                            stored.created_at.isoformat(),
                        ),
                    )
            except sqlite3.IntegrityError as e:
                raise PersistenceError(f"Policy version {stored.version} already exists") from e

        logger.info(
            "Stored policy %s (provenance=%s, inactive)",
            stored.version, stored.provenance.value,
        )
        return stored

    def activate(
        self,
        version: str,
        activated_by: str,
        expected_active_version: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ScoringPolicy:
        """
        Human action: make `version` the single active policy.

        Idempotent when `version` is already active. When
        `expected_active_version` is given, the swap only happens if that
        version is still the active one (compare-and-set).
        """
        actor = (activated_by or "").strip()
        if not actor or actor in AUTOMATED_ACTORS:
            raise GovernanceError(
                f"Policy activation requires a human actor, got {activated_by!r}"
            )
        now = now or datetime.now(timezone.utc)

        with self._lock:
            row = self._conn.execute(
                "SELECT version FROM policies WHERE version = ?", (version,)
            ).fetchone()
            if row is None:
                raise PolicyNotFoundError(f"Policy {version} not found")

            current = self._conn.execute(
                "SELECT version FROM policies WHERE active = 1"
            ).fetchone()
            current_version = current["version"] if current else None

            if current_version == version:
                return self._active

            if (
                expected_active_version is not None
                and expected_active_version != current_version
            ):
                raise ActivationConflictError(
                    f"Expected active version {expected_active_version}, "
                    f"found {current_version}"
                )

            with self._conn:
                self._conn.execute("UPDATE policies SET active = 0 WHERE active = 1")
                self._conn.execute(
                    """
                    UPDATE policies SET active = 1, activated_at = ?, activated_by = ?
                    WHERE version = ?
                    """,
                    (now.isoformat(), actor, version),
                )
                self._conn.execute(
                    """
                    INSERT INTO policy_activations
                        (version, previous_version, activated_by, activated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (version, current_version, actor, now.isoformat()),
                )

            self._active = self._load_active()

        logger.info(
            "Policy %s activated by %s (previous: %s)", version, actor, current_version
        )
        return self._active

    def bootstrap_default(self, activated_by: str = "bootstrap") -> ScoringPolicy:
        """Seed and activate the baseline policy when the store is empty."""
        with self._bootstrap_lock:
            if self.count() == 0:
                self.save(default_policy())
                return self.activate("v1.0.0", activated_by)
            return self.get_active()

    # --- Reads ---

    def get_active(self) -> ScoringPolicy:
        """The active policy. Raises ConfigurationError when none is usable."""
        active = self._active
        if active is None:
            raise ConfigurationError("No active scoring policy")
        return active

    @property
    def active_version(self) -> Optional[str]:
        active = self._active
        return active.version if active else None

    def get(self, version: str) -> ScoringPolicy:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM policies WHERE version = ?", (version,)
            ).fetchone()
        if row is None:
            raise PolicyNotFoundError(f"Policy {version} not found")
        return self._row_to_policy(row)

    def exists(self, version: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM policies WHERE version = ?", (version,)
            ).fetchone()
        return row is not None

    def list_versions(self) -> List[ScoringPolicy]:
        """All policies, oldest version first."""
        with self._lock:
            rows = self._conn.execute("SELECT * FROM policies").fetchall()
        policies = [self._row_to_policy(r) for r in rows]
        return sorted(policies, key=lambda p: parse_version(p.version) or (0, 0, 0))

    def latest_by_provenance(self, provenance: PolicyProvenance) -> Optional[ScoringPolicy]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT * FROM policies WHERE provenance = ?
                ORDER BY created_at DESC LIMIT 1
                """,
                (provenance.value,),
            ).fetchone()
        return self._row_to_policy(row) if row else None

    def count_active(self) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM policies WHERE active = 1"
            ).fetchone()
        return row["n"]

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM policies").fetchone()
        return row["n"]

    def activation_history(self) -> List[PolicyActivationRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM policy_activations ORDER BY id ASC"
            ).fetchall()
        return [
            PolicyActivationRecord(
                version=r["version"],
                previous_version=r["previous_version"],
                activated_by=r["activated_by"],
                activated_at=datetime.fromisoformat(r["activated_at"]),
            )
            for r in rows
        ]

    # --- Internals ---

    def _load_active(self) -> Optional[ScoringPolicy]:
        row = self._conn.execute(
            "SELECT * FROM policies WHERE active = 1"
        ).fetchone()
        if row is None:
            return None
        try:
            policy = self._row_to_policy(row)
        except ValueError as e:
            logger.error("Active policy %s is unreadable: %s", row["version"], e)
            return None
        result = validate(policy, self.bounds)
        if not result.valid:
            logger.error(
                "Active policy %s fails validation: %s", policy.version, result.errors
            )
            return None
        return policy

    @staticmethod
    def _row_to_policy(row: sqlite3.Row) -> ScoringPolicy:
        data = json.loads(row["record_json"])
        data["active"] = bool(row["active"])
        data["activated_at"] = row["activated_at"]
        data["activated_by"] = row["activated_by"]
        return ScoringPolicy.model_validate(data)
