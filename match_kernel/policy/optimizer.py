"""
Policy Optimizer — the governance job behind automated policy proposals.

Behavioral Contract:
- Admin-triggered, single-flight, at most one stored proposal per interval
- Refuses to run on too little data
- Treats generator output as untrusted: decoded, versioned by the kernel,
  validated, and only then stored
- Stores proposals inactive. Activation is a separate human action on the
  PolicyStore; nothing here can activate a policy
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from match_kernel.infra.errors import (
    ExternalGeneratorError,
    InsufficientDataError,
    RateLimitError,
    ValidationError,
)
from match_kernel.metrics.collector import MetricsCollector, MetricsStore
from match_kernel.models.policy import PolicyProvenance, ScoringPolicy
from match_kernel.policy.generator import (
    PolicyGenerator,
    PolicyPrompt,
    build_policy_prompt,
    decode_proposal,
    policy_from_proposal,
)
from match_kernel.policy.store import PolicyStore
from match_kernel.policy.validator import DEFAULT_BOUNDS, PolicyBounds, next_minor_version, validate

logger = logging.getLogger(__name__)

OPTIMIZER_ACTOR = "ai_optimizer"


class OptimizationResult(BaseModel):
    policy: ScoringPolicy
    rationale: List[str]
    metrics_summary: Dict[str, float]
    requested_by: str
    message: str = "Policy created but NOT activated. An admin must activate it."


class PolicyOptimizer:
    """Requests, validates and stores (inactive) generated policy versions."""

    def __init__(
        self,
        policy_store: PolicyStore,
        metrics_collector: MetricsCollector,
        metrics_store: MetricsStore,
        generator: PolicyGenerator,
        bounds: PolicyBounds = DEFAULT_BOUNDS,
        min_interval: timedelta = timedelta(hours=24),
        min_swipes: int = 100,
        window_days: int = 30,
        generator_timeout_seconds: float = 60.0,
    ):
        self.policy_store = policy_store
        self.metrics_collector = metrics_collector
        self.metrics_store = metrics_store
        self.generator = generator
        self.bounds = bounds
        self.min_interval = min_interval
        self.min_swipes = min_swipes
        self.window_days = window_days
        self.generator_timeout_seconds = generator_timeout_seconds

        self._flight = threading.Lock()

    def time_until_allowed(self, now: Optional[datetime] = None) -> timedelta:
        """Remaining wait before the next automated proposal; zero if allowed."""
        now = now or datetime.now(timezone.utc)
        last = self.policy_store.latest_by_provenance(PolicyProvenance.AI_OPTIMIZER)
        if last is None:
            return timedelta(0)
        elapsed = now - last.created_at
        return max(timedelta(0), self.min_interval - elapsed)

    def run(self, requested_by: str, now: Optional[datetime] = None) -> OptimizationResult:
        """
        Run one optimization.

        Raises RateLimitError, InsufficientDataError, ExternalGeneratorError
        or ValidationError; in each case nothing is stored.
        """
        if not self._flight.acquire(blocking=False):
            raise RateLimitError(
                timedelta(0), "Policy optimization already in progress"
            )
        try:
            return self._run(requested_by, now or datetime.now(timezone.utc))
        finally:
            self._flight.release()

    def _run(self, requested_by: str, now: datetime) -> OptimizationResult:
        remaining = self.time_until_allowed(now)
        if remaining > timedelta(0):
            elapsed = self.min_interval - remaining
            raise RateLimitError(
                remaining,
                f"Last optimization was {elapsed.total_seconds() / 3600:.1f} hours ago. "
                f"Minimum interval is {self.min_interval.total_seconds() / 3600:.0f} hours.",
            )

        logger.info("Starting policy optimization (requested_by=%s)", requested_by)
        current = self.policy_store.get_active()

        metrics = self.metrics_collector.collect(
            policy_version=current.version,
            window_days=self.window_days,
            now=now,
        )
        if metrics.total_swipes < self.min_swipes:
            raise InsufficientDataError(self.min_swipes, metrics.total_swipes)

        next_version = self._next_version(current.version)
        prompt = build_policy_prompt(metrics, current, next_version, self.bounds)
        proposal = decode_proposal(self._call_generator(prompt))

        proposed_version = proposal.get("policy_version")
        if proposed_version != next_version:
            logger.warning(
                "Generator proposed version %r; using %s", proposed_version, next_version
            )
            proposal["policy_version"] = next_version

        result = validate(proposal, self.bounds)
        if not result.valid:
            logger.error("Generated policy failed validation: %s", result.errors)
            raise ValidationError(result.errors)

        policy = policy_from_proposal(
            proposal,
            provenance=PolicyProvenance.AI_OPTIMIZER,
            created_by=OPTIMIZER_ACTOR,
            created_at=now,
        )
        stored = self.policy_store.save(policy)
        self.metrics_store.append(metrics)
        logger.info("Stored generated policy %s (inactive)", stored.version)

        return OptimizationResult(
            policy=stored,
            rationale=stored.rationale,
            metrics_summary={
                "total_swipes": metrics.total_swipes,
                "like_rate": metrics.like_rate,
                "match_to_exchange_conversion": metrics.match_to_exchange_conversion,
            },
            requested_by=requested_by,
        )

    def _next_version(self, current_version: str) -> str:
        candidate = next_minor_version(current_version)
        while self.policy_store.exists(candidate):
            candidate = next_minor_version(candidate)
        return candidate

    def _call_generator(self, prompt: PolicyPrompt) -> Any:
        # One executor per call: a hung call keeps its own thread and never
        # blocks the next invocation.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="policy-generator")
        future = executor.submit(self.generator.propose, prompt)
        try:
            return future.result(timeout=self.generator_timeout_seconds)
        except FutureTimeoutError as e:
            future.cancel()
            raise ExternalGeneratorError(
                f"Generator did not respond within {self.generator_timeout_seconds}s"
            ) from e
        except ExternalGeneratorError:
            raise
        except Exception as e:
            raise ExternalGeneratorError(f"Generator failed: {e}") from e
        finally:
            executor.shutdown(wait=False)
