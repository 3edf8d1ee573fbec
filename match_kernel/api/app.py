"""
Match Kernel API — FastAPI endpoints.

Exposes the kernel via a REST API for:
- Candidate ranking
- Policy inspection, validation, authoring and human activation
- Admin-triggered policy and reciprocal optimization
- Metric snapshot inspection
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from match_kernel.infra.config import MatchKernelSettings, configure_logging
from match_kernel.infra.errors import (
    ActivationConflictError,
    ConfigurationError,
    ExternalGeneratorError,
    GovernanceError,
    InsufficientDataError,
    ItemNotFoundError,
    PersistenceError,
    PolicyNotFoundError,
    RateLimitError,
    ValidationError,
)
from match_kernel.marketplace.store import MarketplaceStore
from match_kernel.metrics.collector import MetricsCollector, MetricsStore
from match_kernel.models.policy import PolicyProvenance, ValidationResult
from match_kernel.models.ranking import RankingRequest
from match_kernel.models.reciprocal import ReciprocalConfig
from match_kernel.policy.generator import (
    AnthropicPolicyGenerator,
    PolicyGenerator,
    policy_from_proposal,
)
from match_kernel.policy.optimizer import PolicyOptimizer
from match_kernel.policy.store import PolicyStore
from match_kernel.policy.validator import validate
from match_kernel.ranking.ranker import RankingService
from match_kernel.reciprocal.optimizer import ReciprocalOptimizer

logger = logging.getLogger(__name__)


# --- Request/Response Models ---

class RankRequest(BaseModel):
    source_item_id: str
    limit: Optional[int] = Field(default=None, ge=1)
    expanded_search: bool = False
    seed: Optional[int] = None


class PolicyCreateRequest(BaseModel):
    policy_version: str
    weights: Dict[str, Any]
    exploration_policy: Dict[str, Any]
    reciprocal_policy: Dict[str, Any]
    rationale: List[str] = []
    created_by: str


class ActivateRequest(BaseModel):
    activated_by: str
    expected_active_version: Optional[str] = None


class OptimizeRequest(BaseModel):
    requested_by: str = "admin"


class ReciprocalRunRequest(BaseModel):
    force: bool = False


def _rejection(status_code: int, payload: dict, retry_after: Optional[timedelta] = None) -> JSONResponse:
    headers = None
    if retry_after is not None:
        headers = {"Retry-After": str(int(retry_after.total_seconds()))}
    return JSONResponse(status_code=status_code, content=payload, headers=headers)


# --- Application Factory ---

def create_app(
    settings: Optional[MatchKernelSettings] = None,
    marketplace: Optional[MarketplaceStore] = None,
    policy_store: Optional[PolicyStore] = None,
    metrics_store: Optional[MetricsStore] = None,
    generator: Optional[PolicyGenerator] = None,
    reciprocal_config: Optional[ReciprocalConfig] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or MatchKernelSettings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Match Kernel API",
        description="Barter marketplace matching engine",
        version="0.1.0",
    )

    # Initialize components
    mp = marketplace or MarketplaceStore()
    ps = policy_store or PolicyStore(settings.db_path)
    if ps.count() == 0:
        ps.bootstrap_default()
    ms = metrics_store or MetricsStore()

    if generator is None and settings.anthropic_api_key:
        generator = AnthropicPolicyGenerator(
            api_key=settings.anthropic_api_key,
            model=settings.generator_model,
            max_tokens=settings.generator_max_tokens,
            timeout_seconds=settings.generator_timeout_seconds,
        )

    ranking = RankingService(
        marketplace=mp,
        policy_store=ps,
        strict_radius_km=settings.strict_radius_km,
        default_limit=settings.default_rank_limit,
        max_limit=settings.max_rank_limit,
    )
    policy_optimizer = None
    if generator is not None:
        policy_optimizer = PolicyOptimizer(
            policy_store=ps,
            metrics_collector=MetricsCollector(mp),
            metrics_store=ms,
            generator=generator,
            min_interval=timedelta(hours=settings.optimizer_min_interval_hours),
            min_swipes=settings.optimizer_min_swipes,
            window_days=settings.metrics_window_days,
            generator_timeout_seconds=settings.generator_timeout_seconds,
        )
    reciprocal = ReciprocalOptimizer(
        mp, reciprocal_config or ReciprocalConfig(schedule=settings.reciprocal_schedule)
    )

    # Store components on app state for access in endpoints
    app.state.settings = settings
    app.state.marketplace = mp
    app.state.policy_store = ps
    app.state.metrics_store = ms
    app.state.ranking = ranking
    app.state.policy_optimizer = policy_optimizer
    app.state.reciprocal_optimizer = reciprocal

    def require_admin(
        x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
    ) -> str:
        """Admin routes need X-Admin-Token equal to the configured token."""
        if not x_admin_token:
            raise HTTPException(401, "Missing X-Admin-Token header")
        expected = settings.admin_token
        if not expected or not secrets.compare_digest(
            x_admin_token.encode(), expected.encode()
        ):
            raise HTTPException(403, "Invalid admin token")
        return "admin"

    # === HEALTH ===

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "active_policy": ps.active_version,
            "reciprocal_optimizer": reciprocal.status,
            "policy_generator_configured": policy_optimizer is not None,
        }

    # === RANKING ===

    @app.post("/rank")
    def rank(req: RankRequest):
        """Ranked candidates for a source item under the active policy."""
        request = RankingRequest(
            source_item_id=req.source_item_id,
            limit=ranking.default_limit if req.limit is None else req.limit,
            expanded_search=req.expanded_search,
            seed=req.seed,
        )
        try:
            ranked = ranking.rank(request)
        except ItemNotFoundError:
            raise HTTPException(404, "Source item not found")
        except ConfigurationError as e:
            logger.error("Ranking refused: %s", e)
            raise HTTPException(503, str(e))
        return {
            "ranked_items": [{"item_id": c.item_id, "score": c.score} for c in ranked],
            "expanded_search": req.expanded_search,
        }

    # === POLICIES ===

    @app.get("/policies")
    def list_policies():
        """All stored policy versions."""
        return [p.model_dump(mode="json", by_alias=True) for p in ps.list_versions()]

    @app.get("/policies/active")
    def get_active_policy():
        try:
            return ps.get_active().model_dump(mode="json", by_alias=True)
        except ConfigurationError as e:
            raise HTTPException(404, str(e))

    @app.get("/policies/{version}")
    def get_policy(version: str):
        try:
            return ps.get(version).model_dump(mode="json", by_alias=True)
        except PolicyNotFoundError:
            raise HTTPException(404, "Policy not found")

    @app.post("/policies/validate", response_model=ValidationResult)
    def validate_policy(proposal: Dict[str, Any]):
        """Dry-run validation of a proposal. Nothing is stored."""
        return validate(proposal, ps.bounds)

    @app.post("/policies", dependencies=[Depends(require_admin)])
    def create_policy(req: PolicyCreateRequest):
        """Store a human-authored policy version, inactive."""
        proposal = req.model_dump(exclude={"created_by"})
        result = validate(proposal, ps.bounds)
        if not result.valid:
            return _rejection(422, ValidationError(result.errors).to_rejection())
        policy = policy_from_proposal(
            proposal,
            provenance=PolicyProvenance.HUMAN,
            created_by=req.created_by,
            created_at=datetime.now(timezone.utc),
        )
        try:
            stored = ps.save(policy)
        except PersistenceError as e:
            raise HTTPException(409, str(e))
        return stored.model_dump(mode="json", by_alias=True)

    @app.post("/policies/{version}/activate", dependencies=[Depends(require_admin)])
    def activate_policy(version: str, req: ActivateRequest):
        """Human activation of a stored policy version."""
        try:
            policy = ps.activate(
                version,
                activated_by=req.activated_by,
                expected_active_version=req.expected_active_version,
            )
        except GovernanceError as e:
            raise HTTPException(403, str(e))
        except PolicyNotFoundError:
            raise HTTPException(404, "Policy not found")
        except ActivationConflictError as e:
            raise HTTPException(409, str(e))
        return policy.model_dump(mode="json", by_alias=True)

    @app.get("/policies/activations/history")
    def activation_history():
        return [r.model_dump(mode="json") for r in ps.activation_history()]

    # === OPTIMIZERS ===

    @app.post("/optimizer/policy", dependencies=[Depends(require_admin)])
    def optimize_policy(req: OptimizeRequest):
        """Generate a new policy version. It is stored inactive."""
        if policy_optimizer is None:
            raise HTTPException(503, "Policy generator is not configured")
        try:
            result = policy_optimizer.run(req.requested_by)
        except InsufficientDataError as e:
            return _rejection(400, e.to_rejection())
        except RateLimitError as e:
            return _rejection(429, e.to_rejection(), retry_after=e.retry_after)
        except ValidationError as e:
            return _rejection(422, e.to_rejection())
        except ExternalGeneratorError as e:
            return _rejection(502, e.to_rejection())
        return result.model_dump(mode="json", by_alias=True)

    @app.post("/optimizer/reciprocal", dependencies=[Depends(require_admin)])
    def run_reciprocal(req: ReciprocalRunRequest):
        """Run the reciprocal batch now."""
        try:
            record = reciprocal.run(force=req.force)
        except RateLimitError as e:
            return _rejection(429, e.to_rejection(), retry_after=e.retry_after)
        return record.model_dump(mode="json")

    @app.get("/optimizer/reciprocal/status")
    def reciprocal_status():
        last = reciprocal.last_successful_run()
        return {
            "status": reciprocal.status,
            "config": reciprocal.config.model_dump(),
            "last_run": last.model_dump(mode="json") if last else None,
            "next_run_at": reciprocal.next_run_at().isoformat(),
            "active_opportunities": reciprocal.active_opportunity_count(),
        }

    # === METRICS ===

    @app.get("/metrics/snapshots")
    def list_snapshots(policy_version: Optional[str] = None):
        snapshots = ms.list_for_version(policy_version) if policy_version else ms.list_all()
        return [s.model_dump(mode="json") for s in snapshots]

    return app


# Default application instance
app = create_app()
