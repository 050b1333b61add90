"""Bootstrap module for the runner.

Central responsibilities:
- Load and validate settings from environment (.env supported by Settings)
- Configure structured logging (structlog + optional rotating file handler)
- Expose Prometheus metric instruments (counters, histograms)
- Provide a shared context object for the run loop

Design notes:
- ``bootstrap()`` is idempotent; pass ``force=True`` (tests) to rebuild.
- Explicit overrides (CLI arguments) win over environment values.
"""
from __future__ import annotations

import asyncio
import logging
import sys
import tempfile
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

import structlog
from prometheus_client import Counter, Histogram
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ------------------------------------------------------------
# Settings
# ------------------------------------------------------------

class Settings(BaseSettings):
    """Runner settings loaded from environment.

    Durations keep the control plane's millisecond convention; use the
    ``*_seconds`` properties inside asyncio code.
    """

    app_name: str = Field("jobrunner", alias="APP_NAME")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_file: str | None = Field(None, alias="LOG_FILE")
    log_max_bytes: int = Field(2_000_000, alias="LOG_MAX_BYTES")  # ~2MB
    log_backup_count: int = Field(5, alias="LOG_BACKUP_COUNT")

    # Control plane
    runner_key: Optional[str] = Field(None, alias="RUNNER_KEY")
    api_url: Optional[str] = Field(None, alias="API_URL")
    httpx_timeout: float = Field(20.0, alias="HTTPX_TIMEOUT")

    # Cadences & limits
    poll_interval_ms: int = Field(30_000, alias="POLL_INTERVAL_MS")
    execution_timeout_ms: int = Field(300_000, alias="EXECUTION_TIMEOUT_MS")
    liveness_interval_ms: int = Field(30_000, alias="LIVENESS_INTERVAL_MS")
    log_flush_interval_ms: int = Field(1_000, alias="LOG_FLUSH_INTERVAL_MS")

    # Sandbox
    workspace_root: str = Field(default_factory=tempfile.gettempdir, alias="WORKSPACE_ROOT")
    sandbox_python: str = Field(default_factory=lambda: sys.executable, alias="SANDBOX_PYTHON")

    # Misc
    metrics_port: Optional[int] = Field(None, alias="METRICS_PORT")
    lock_file: Optional[str] = Field(None, alias="LOCK_FILE")

    @field_validator("api_url")
    @classmethod
    def _ensure_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        return v if v.endswith("/") else v + "/"

    @field_validator("poll_interval_ms", "execution_timeout_ms", "liveness_interval_ms", "log_flush_interval_ms")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive number of milliseconds")
        return v

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def execution_timeout_seconds(self) -> float:
        return self.execution_timeout_ms / 1000

    @property
    def liveness_interval_seconds(self) -> float:
        return self.liveness_interval_ms / 1000

    @property
    def log_flush_interval_seconds(self) -> float:
        return self.log_flush_interval_ms / 1000

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )


# ------------------------------------------------------------
# Logging configuration (structlog)
# ------------------------------------------------------------
def configure_logging(level: str = "INFO", settings: Settings | None = None) -> None:
    """Configure structured logging with structlog.

    JSON lines on stdout, plus a rotating file when ``LOG_FILE`` is set.
    """
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)

    def redact_sensitive(logger, method_name, event_dict):  # noqa: D401
        """Best-effort redaction of credentials that end up in log context."""
        sensitive_keys = {"runner_key", "x-runner-key", "authorization", "password", "token"}

        def _scrub(value):
            if isinstance(value, dict):
                out = {}
                for k, v in value.items():
                    ks = str(k).lower()
                    if ks in sensitive_keys or any(sk in ks for sk in ("token", "password", "runner_key", "runner-key")):
                        out[k] = "[REDACTED]"
                    else:
                        out[k] = _scrub(v)
                return out
            if isinstance(value, (list, tuple)):
                return [_scrub(v) for v in value]
            return value

        return _scrub(event_dict)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            timestamper,
            structlog.processors.add_log_level,
            redact_sensitive,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = []
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    handlers.append(stream_handler)

    if settings and settings.log_file:
        try:
            log_path = Path(settings.log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                settings.log_file,
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
                encoding="utf-8",
            )
            file_handler.setFormatter(logging.Formatter("%(message)s"))
            handlers.append(file_handler)
        except OSError as e:  # pragma: no cover
            print(f"Failed to set file handler: {e}", file=sys.stderr)

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


# ------------------------------------------------------------
# Metrics instruments
# ------------------------------------------------------------
RUNNER_JOBS_TOTAL = Counter(
    "runner_jobs_total", "Jobs finished by terminal status", labelnames=("status",)
)
RUNNER_JOB_DURATION_SECONDS = Histogram(
    "runner_job_duration_seconds", "Wall-clock duration of one job execution"
)
RUNNER_API_FAILURES = Counter(
    "runner_api_failures_total", "Control-plane calls that failed", labelnames=("operation",)
)
RUNNER_LOG_RECORDS = Counter(
    "runner_log_records_total", "Log records relayed from job subprocesses", labelnames=("source",)
)


# ------------------------------------------------------------
# Context dataclass
# ------------------------------------------------------------
@dataclass(slots=True)
class AppContext:
    settings: Settings
    logger: structlog.BoundLogger
    metrics_started: bool = False


_context_singleton: Optional[AppContext] = None
_context_lock = asyncio.Lock()


def _start_metrics_exporter(settings: Settings, logger: Any) -> bool:
    if not settings.metrics_port:
        return False
    from prometheus_client import start_http_server

    try:
        start_http_server(settings.metrics_port)
    except OSError as exc:
        logger.warning("metrics_exporter_failed", port=settings.metrics_port, error=str(exc))
        return False
    logger.info("metrics_exporter_started", port=settings.metrics_port)
    return True


async def bootstrap(force: bool = False, **overrides: Any) -> AppContext:
    """Create (or return existing) application context.

    Args:
        force: Recreate the context even if already initialized.
        overrides: Settings values (by field name) taking precedence over env.
    """
    global _context_singleton
    if _context_singleton and not force:
        return _context_singleton

    async with _context_lock:
        if _context_singleton and not force:
            return _context_singleton

        explicit = {k: v for k, v in overrides.items() if v is not None}
        settings = Settings(**explicit)
        configure_logging(settings.log_level, settings)
        logger = structlog.get_logger().bind(component="bootstrap")

        ctx = AppContext(settings=settings, logger=structlog.get_logger().bind(subsystem="core"))
        ctx.metrics_started = _start_metrics_exporter(settings, logger)
        logger.info(
            "bootstrap_complete",
            api_url=settings.api_url,
            poll_interval_ms=settings.poll_interval_ms,
            execution_timeout_ms=settings.execution_timeout_ms,
            workspace_root=settings.workspace_root,
            sandbox_python=settings.sandbox_python,
        )
        _context_singleton = ctx
        return ctx
