"""
Configuration management using pydantic-settings.

Settings are loaded from environment variables with the MATCH_KERNEL_
prefix, e.g.:
- MATCH_KERNEL_ADMIN_TOKEN=...
- MATCH_KERNEL_ANTHROPIC_API_KEY=sk-...
"""

import logging
import sys

from pydantic_settings import BaseSettings


class MatchKernelSettings(BaseSettings):
    """Service-wide settings."""

    model_config = {"env_prefix": "MATCH_KERNEL_"}

    # Storage
    db_path: str = ":memory:"

    # Admin surface
    admin_token: str = ""

    # Policy generator
    anthropic_api_key: str = ""
    generator_model: str = "claude-sonnet-4-5-20250929"
    generator_max_tokens: int = 2048
    generator_timeout_seconds: float = 60.0

    # Policy optimizer governance
    optimizer_min_interval_hours: float = 24.0
    optimizer_min_swipes: int = 100
    metrics_window_days: int = 30

    # Ranking
    strict_radius_km: float = 50.0
    default_rank_limit: int = 20
    max_rank_limit: int = 50

    # Reciprocal batch job
    reciprocal_schedule: str = "0 3 * * *"

    log_level: str = "INFO"


def configure_logging(level: str = "INFO") -> None:
    """Attach a single stream handler to the match_kernel logger tree."""
    root = logging.getLogger("match_kernel")
    root.setLevel(level.upper())
    if not any(getattr(h, "_match_kernel", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        handler._match_kernel = True
        root.addHandler(handler)
