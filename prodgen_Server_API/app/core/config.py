# config.py
# Description: Pydantic settings for the pipeline service (queues, workers, breaker, cron, admin)
#
# Imports
from typing import Literal, Optional
#
# 3rd-party imports
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
#
# Local imports
from loguru import logger

#######################################################################################################################
#
# Constants

SIX_HOURS_MS = 6 * 60 * 60 * 1000
THIRTY_DAYS_SECONDS = 30 * 24 * 60 * 60

#######################################################################################################################
#
# Settings Class

class PipelineSettings(BaseSettings):
    """Runtime configuration for the pipeline orchestration service"""

    # ===== Core Settings =====
    APP_ENV: Literal["development", "test", "production"] = Field(
        default="development",
        description="Deployment environment; stack traces are only persisted outside production"
    )
    HOST: str = Field(default="0.0.0.0", description="Bind address for the HTTP server")
    PORT: int = Field(default=3001, description="Port for the HTTP server")

    # ===== Backends =====
    REDIS_URL: Optional[str] = Field(
        default=None,
        description="Redis URL for queues, cache and shared breaker state; in-process backends when unset"
    )
    JOBS_DB_PATH: Optional[str] = Field(
        default=None,
        description="SQLite file for job records and admin data; in-memory when unset"
    )

    # ===== Admin =====
    ADMIN_API_TOKEN: Optional[str] = Field(
        default=None,
        description="Shared secret for /api/admin; the surface is open when unset"
    )
    APP_ENCRYPTION_KEY: Optional[str] = Field(
        default=None,
        description="Secret (>= 32 chars) used to encrypt stored API keys"
    )

    # ===== Queue / Worker =====
    JOB_CONCURRENCY: int = Field(default=3, ge=1, description="Concurrent executions per stage worker pool")
    JOB_MAX_ATTEMPTS: int = Field(default=3, ge=1, description="Delivery attempts before a job fails permanently")
    JOB_BACKOFF_DELAY_MS: int = Field(default=60_000, ge=0, description="Base delay of the exponential retry backoff")
    JOB_TIMEOUT_MS: int = Field(default=15 * 60 * 1000, ge=1, description="Hard wall-clock limit of one execution")
    JOB_REMOVE_ON_COMPLETE: int = Field(default=500, ge=0, description="Completed messages retained per queue")
    JOB_REMOVE_ON_FAIL: int = Field(default=2000, ge=0, description="Failed messages retained per queue")
    JOB_STALLED_INTERVAL_MS: int = Field(default=30_000, ge=100, description="Lock duration / stall check interval")
    JOB_MAX_STALLED_COUNT: int = Field(default=1, ge=0, description="Stalls tolerated before a message is failed")
    WORKERS_ENABLED: bool = Field(default=True, description="Run stage workers inside the HTTP process")
    PIPELINE_RUNNERS_MODULE: Optional[str] = Field(
        default=None,
        description="Dotted module path imported at startup to register stage runners"
    )

    # ===== Dedup =====
    DEDUP_WINDOW_MS: int = Field(default=SIX_HOURS_MS, ge=1, description="Fixed window for automatic job keys")
    DEDUP_STRATEGY: Literal["fixed_window", "external_key"] = Field(default="fixed_window")

    # ===== Circuit Breaker =====
    CIRCUIT_FAILURE_THRESHOLD: int = Field(default=5, ge=1)
    CIRCUIT_COOLDOWN_MS: int = Field(default=60_000, ge=0)
    CIRCUIT_SUCCESS_DECAY: Literal["decrement", "halve", "reset"] = Field(
        default="decrement",
        description="How the failure count heals on a success while closed"
    )
    CIRCUIT_STATE_BACKEND: Literal["memory", "redis"] = Field(
        default="memory",
        description="Breaker state location; 'redis' shares it across worker processes"
    )

    # ===== Dead Letter =====
    DLQ_TTL_SECONDS: int = Field(default=THIRTY_DAYS_SECONDS, ge=1)

    # ===== Cron =====
    CRON_ENABLED: bool = Field(default=True)
    CRON_TIMEZONE: str = Field(default="UTC")
    CRON_SCRAPE: str = Field(default="0 */6 * * *")
    CRON_ANALYZE: str = Field(default="5 */6 * * *")
    CRON_GENERATE: str = Field(default="10 */6 * * *")
    CRON_LIST: str = Field(default="15 */6 * * *")

    # ===== Logging =====
    LOG_LEVEL: str = Field(default="INFO")
    LOG_JSON: bool = Field(default=False)

    @field_validator("APP_ENCRYPTION_KEY")
    @classmethod
    def validate_encryption_key(cls, v):
        """Reject short encryption secrets"""
        if v is not None and len(v) < 32:
            raise ValueError("APP_ENCRYPTION_KEY must be at least 32 characters long")
        return v

    @field_validator("REDIS_URL", "JOBS_DB_PATH", "ADMIN_API_TOKEN", "PIPELINE_RUNNERS_MODULE", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("REDIS_URL")
    @classmethod
    def validate_redis_url(cls, v):
        """Validate Redis URL format if provided"""
        if v and not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("REDIS_URL must start with redis://, rediss:// or unix://")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v):
        return str(v).upper()

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def include_error_stack(self) -> bool:
        return not self.is_production

    def cron_expression_for(self, stage: str) -> str:
        return getattr(self, f"CRON_{stage.upper()}")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }


#######################################################################################################################
#
# Singleton access

_settings: Optional[PipelineSettings] = None


def get_settings() -> PipelineSettings:
    """Get settings singleton instance"""
    global _settings
    if _settings is None:
        _settings = PipelineSettings()
        logger.info(
            f"Settings initialized - env: {_settings.APP_ENV}, "
            f"redis: {'on' if _settings.REDIS_URL else 'off'}, concurrency: {_settings.JOB_CONCURRENCY}"
        )
    return _settings


def reset_settings() -> None:
    """Reset settings singleton (mainly for testing)"""
    global _settings
    _settings = None

#
# End of config.py
#######################################################################################################################
