"""Tests for settings, logging setup and the error taxonomy."""

import logging
from datetime import timedelta

from match_kernel.infra.config import MatchKernelSettings, configure_logging
from match_kernel.infra.errors import (
    CommitLockHeldError,
    ExternalGeneratorError,
    InsufficientDataError,
    MatchKernelError,
    RateLimitError,
    SwipeLifecycleError,
    ValidationError,
)


class TestSettings:
    def test_defaults(self):
        settings = MatchKernelSettings()
        assert settings.db_path == ":memory:"
        assert settings.optimizer_min_interval_hours == 24.0
        assert settings.optimizer_min_swipes == 100
        assert settings.reciprocal_schedule == "0 3 * * *"

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("MATCH_KERNEL_ADMIN_TOKEN", "from-env")
        monkeypatch.setenv("MATCH_KERNEL_MAX_RANK_LIMIT", "25")
        settings = MatchKernelSettings()
        assert settings.admin_token == "from-env"
        assert settings.max_rank_limit == 25


class TestLogging:
    def test_single_handler(self):
        configure_logging("debug")
        configure_logging("info")
        logger = logging.getLogger("match_kernel")
        tagged = [h for h in logger.handlers if getattr(h, "_match_kernel", False)]
        assert len(tagged) == 1
        assert logger.level == logging.INFO


class TestErrors:
    def test_hierarchy(self):
        assert issubclass(CommitLockHeldError, SwipeLifecycleError)
        assert issubclass(SwipeLifecycleError, MatchKernelError)

    def test_rate_limit_rejection(self):
        error = RateLimitError(timedelta(hours=22))
        assert "22.0 hours" in str(error)
        assert error.to_rejection() == {
            "error": "rate_limited",
            "message": str(error),
            "retry_after_seconds": 22 * 3600,
        }

    def test_validation_rejection(self):
        error = ValidationError(["geoScore = 0.45 outside bounds [0.1, 0.4]"])
        assert error.to_rejection()["details"] == error.errors
        assert "geoScore" in str(error)

    def test_insufficient_data_rejection(self):
        assert InsufficientDataError(100, 3).to_rejection()["actual"] == 3

    def test_generator_rejection(self):
        assert ExternalGeneratorError("timeout").to_rejection() == {
            "error": "generator_failed",
            "details": ["timeout"],
        }
