"""Runtime configuration for the worker process."""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerSettings:
    """Interval task timing and job claiming settings."""

    scheduled_interval_ms: int = 60_000
    reports_interval_ms: int = 3_600_000
    retention_interval_ms: int = 86_400_000
    job_batch_size: int = 25
    stale_processing_ms: int = 1_800_000
    shutdown_grace_ms: int = 50


@dataclass(slots=True)
class RetrySettings:
    """Requeue policy for failed scheduled jobs."""

    max_attempts: int = 5
    base_delay_ms: int = 60_000
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 3_600_000


@dataclass(slots=True)
class BreakerSettings:
    """Circuit breaker thresholds for the LLM dependency."""

    failure_threshold: int = 5
    reset_timeout_ms: int = 60_000
    success_threshold: int = 2


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".tee_time_worker.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    retention_days: int = 90
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    llm_breaker: BreakerSettings = field(default_factory=BreakerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment.

        Numeric values that are missing, unparsable or out of range fall back
        to their defaults, so a bad value never prevents the worker from
        starting.
        """

        worker_defaults = WorkerSettings()
        retry_defaults = RetrySettings()
        breaker_defaults = BreakerSettings()
        return cls(
            db_path=db_path or Path(os.getenv("TEE_TIME_DB_PATH", ".tee_time_worker.db")),
            sqlite_busy_timeout_ms=env_int("TEE_TIME_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            log_level=_env_log_level("LOG_LEVEL", "INFO"),
            retention_days=env_int("RETENTION_DAYS", 90, allow_non_positive=True),
            worker=WorkerSettings(
                scheduled_interval_ms=env_int(
                    "WORKER_SCHEDULED_INTERVAL_MS",
                    worker_defaults.scheduled_interval_ms,
                ),
                reports_interval_ms=env_int(
                    "WORKER_REPORTS_INTERVAL_MS",
                    worker_defaults.reports_interval_ms,
                ),
                retention_interval_ms=env_int(
                    "WORKER_RETENTION_INTERVAL_MS",
                    worker_defaults.retention_interval_ms,
                ),
                job_batch_size=env_int("WORKER_JOB_BATCH_SIZE", worker_defaults.job_batch_size),
                stale_processing_ms=env_int(
                    "WORKER_STALE_PROCESSING_MS",
                    worker_defaults.stale_processing_ms,
                    allow_non_positive=True,
                ),
                shutdown_grace_ms=env_int(
                    "WORKER_SHUTDOWN_GRACE_MS",
                    worker_defaults.shutdown_grace_ms,
                ),
            ),
            retry=RetrySettings(
                max_attempts=env_int("WORKER_MAX_ATTEMPTS", retry_defaults.max_attempts),
                base_delay_ms=env_int("WORKER_RETRY_BASE_DELAY_MS", retry_defaults.base_delay_ms),
                backoff_multiplier=env_float(
                    "WORKER_RETRY_BACKOFF_MULTIPLIER",
                    retry_defaults.backoff_multiplier,
                ),
                max_delay_ms=env_int("WORKER_RETRY_MAX_DELAY_MS", retry_defaults.max_delay_ms),
            ),
            llm_breaker=BreakerSettings(
                failure_threshold=env_int(
                    "LLM_BREAKER_FAILURE_THRESHOLD",
                    breaker_defaults.failure_threshold,
                ),
                reset_timeout_ms=env_int(
                    "LLM_BREAKER_RESET_TIMEOUT_MS",
                    breaker_defaults.reset_timeout_ms,
                ),
                success_threshold=env_int(
                    "LLM_BREAKER_SUCCESS_THRESHOLD",
                    breaker_defaults.success_threshold,
                ),
            ),
        )


def env_int(name: str, default: int, *, allow_non_positive: bool = False) -> int:
    """Read an integer env var, falling back to ``default`` on bad input."""

    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid integer %s=%r, using default %s", name, raw, default)
        return default
    if value <= 0 and not allow_non_positive:
        logger.warning("Ignoring non-positive %s=%r, using default %s", name, raw, default)
        return default
    return value


def env_float(name: str, default: float) -> float:
    """Read a positive float env var, falling back to ``default`` on bad input."""

    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid number %s=%r, using default %s", name, raw, default)
        return default
    if not math.isfinite(value) or value <= 0:
        logger.warning("Ignoring out-of-range %s=%r, using default %s", name, raw, default)
        return default
    return value


def _env_log_level(name: str, default: str) -> str:
    raw = os.getenv(name, "").strip().upper()
    if raw == "WARN":
        return "WARNING"
    if raw in {"DEBUG", "INFO", "WARNING", "ERROR"}:
        return raw
    return default
