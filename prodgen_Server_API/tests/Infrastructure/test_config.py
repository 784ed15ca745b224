"""
Settings validation and singleton behaviour.
"""

import pytest
from pydantic import ValidationError

from prodgen_Server_API.app.core.config import (
    SIX_HOURS_MS,
    PipelineSettings,
    get_settings,
    reset_settings,
)

pytestmark = pytest.mark.unit


class TestPipelineSettings:
    def test_defaults(self):
        settings = get_settings()
        assert settings.PORT == 3001
        assert settings.JOB_MAX_ATTEMPTS == 3
        assert settings.JOB_BACKOFF_DELAY_MS == 60_000
        assert settings.DEDUP_WINDOW_MS == SIX_HOURS_MS
        assert settings.CIRCUIT_FAILURE_THRESHOLD == 5
        assert settings.CIRCUIT_COOLDOWN_MS == 60_000
        assert settings.DLQ_TTL_SECONDS == 30 * 24 * 60 * 60
        assert settings.REDIS_URL is None

    def test_singleton_and_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("JOB_CONCURRENCY", "7")
        reset_settings()
        assert get_settings() is not first
        assert get_settings().JOB_CONCURRENCY == 7

    def test_short_encryption_key_rejected(self):
        with pytest.raises(ValidationError):
            PipelineSettings(APP_ENCRYPTION_KEY="too-short")
        assert PipelineSettings(APP_ENCRYPTION_KEY="x" * 32).APP_ENCRYPTION_KEY == "x" * 32

    def test_redis_url_scheme(self):
        with pytest.raises(ValidationError):
            PipelineSettings(REDIS_URL="http://localhost:6379")
        assert PipelineSettings(REDIS_URL="rediss://cache:6380/0").REDIS_URL == "rediss://cache:6380/0"

    def test_blank_values_mean_unset(self):
        settings = PipelineSettings(REDIS_URL="  ", JOBS_DB_PATH="", ADMIN_API_TOKEN="")
        assert settings.REDIS_URL is None
        assert settings.JOBS_DB_PATH is None
        assert settings.ADMIN_API_TOKEN is None

    def test_log_level_normalized(self):
        assert PipelineSettings(LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"

    def test_production_hides_stacks(self):
        assert PipelineSettings(APP_ENV="production").include_error_stack is False
        assert PipelineSettings(APP_ENV="development").include_error_stack is True

    def test_invalid_decay_policy(self):
        with pytest.raises(ValidationError):
            PipelineSettings(CIRCUIT_SUCCESS_DECAY="forget")

    def test_cron_expression_lookup(self):
        assert PipelineSettings().cron_expression_for("analyze") == "5 */6 * * *"
