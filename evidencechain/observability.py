"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs
- Request/response logging middleware
- Metrics collection (submission outcomes, ledger retries, latencies)
- Health check utilities

Configuration:
- EVIDENCECHAIN_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- EVIDENCECHAIN_LOG_FORMAT: json, text (default: json in production)
- EVIDENCECHAIN_PRODUCTION: Enable production mode

Usage:
    from evidencechain.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Evidence committed", record_id=str(record.id), receipt=receipt)
"""

import json
import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
submitter_var: ContextVar[str] = ContextVar("submitter", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def is_production() -> bool:
    return os.environ.get("EVIDENCECHAIN_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("EVIDENCECHAIN_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("EVIDENCECHAIN_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_STANDARD_RECORD_FIELDS = frozenset(logging.LogRecord(
    "", 0, "", 0, "", None, None
).__dict__.keys()) | {"message", "asctime", "taskName"}


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000Z",
        "level": "INFO",
        "logger": "evidencechain.core.coordinator",
        "message": "Evidence committed",
        "request_id": "abc-123",
        "submitter": "0xAbC...",
        ...extra fields...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        submitter = submitter_var.get()
        if submitter:
            log_data["submitter"] = submitter

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _STANDARD_RECORD_FIELDS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        request_id = request_id_var.get()
        if request_id:
            prefix = f"[{request_id[:8]}] "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        extras = {
            k: v for k, v in record.__dict__.items()
            if k not in _STANDARD_RECORD_FIELDS and not k.startswith("_")
        }
        if extras:
            msg += " " + " ".join(f"{k}={v}" for k, v in extras.items())

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that automatically includes context fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Case created", case_number="CR-2024-001")
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})
        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """Get a structured logger for the given name (typically __name__)."""
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Configure logging for the application.

    Call this once at application startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(_get_log_level())
    handler.setFormatter(StructuredFormatter() if _use_json_logging() else TextFormatter())
    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Sets up request context for logging.

    - Uses X-Request-ID if provided, otherwise generates one
    - Logs request/response with timing
    - Records request metrics
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request_id_token = request_id_var.set(request_id)
        submitter_token = submitter_var.set("")

        logger = get_logger("evidencechain.request")
        start_time = time.perf_counter()

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            get_metrics().record_request(duration_ms, success=response.status_code < 500)
            log_level = logging.INFO if response.status_code < 400 else logging.WARNING
            logger.log(
                log_level,
                f"{request.method} {request.url.path} -> {response.status_code}",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            get_metrics().record_request(duration_ms, success=False)
            logger.exception(
                f"{request.method} {request.url.path} -> 500",
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e),
            )
            raise

        finally:
            request_id_var.reset(request_id_token)
            submitter_var.reset(submitter_token)


# ============================================================
# METRICS
# ============================================================

@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    submissions_committed: int = 0
    submissions_rejected: int = 0
    submissions_aborted: int = 0
    ledger_retries: int = 0
    orphaned_receipts: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    # Histograms (simplified as bounded lists)
    submission_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    _lock: Lock = field(default_factory=Lock, repr=False)

    MAX_SAMPLES = 1000

    def _sample(self, samples: list, value: float) -> None:
        samples.append(value)
        if len(samples) > self.MAX_SAMPLES:
            del samples[: len(samples) - self.MAX_SAMPLES]

    def record_submission(self, outcome: str, latency_ms: float) -> None:
        """Record a finished submission (committed, rejected, aborted)."""
        with self._lock:
            if outcome == "committed":
                self.submissions_committed += 1
            elif outcome == "rejected":
                self.submissions_rejected += 1
            elif outcome == "aborted":
                self.submissions_aborted += 1
            self._sample(self.submission_latencies_ms, latency_ms)

    def record_ledger_retry(self) -> None:
        with self._lock:
            self.ledger_retries += 1

    def record_orphan(self) -> None:
        with self._lock:
            self.orphaned_receipts += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self._sample(self.request_latencies_ms, latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return sorted_data[min(idx, len(sorted_data) - 1)]

        with self._lock:
            return {
                "submissions_committed": self.submissions_committed,
                "submissions_rejected": self.submissions_rejected,
                "submissions_aborted": self.submissions_aborted,
                "ledger_retries": self.ledger_retries,
                "orphaned_receipts": self.orphaned_receipts,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "submission_latency_p50_ms": percentile(self.submission_latencies_ms, 0.5),
                "submission_latency_p95_ms": percentile(self.submission_latencies_ms, 0.95),
                "request_latency_p50_ms": percentile(self.request_latencies_ms, 0.5),
                "request_latency_p95_ms": percentile(self.request_latencies_ms, 0.95),
            }


# Global metrics instance
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(record_store=None, ledger=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        record_store: RecordStore instance
        ledger: LedgerClient instance
    """
    start = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}
    all_healthy = True

    if record_store is not None:
        try:
            checks["record_store"] = {
                "status": "healthy",
                "evidence_count": record_store.count_evidence(),
                "store_type": type(record_store).__name__,
            }
        except Exception as e:
            checks["record_store"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    if ledger is not None:
        try:
            reachable = ledger.ping()
            checks["ledger"] = {
                "status": "healthy" if reachable else "unhealthy",
                "client_type": type(ledger).__name__,
            }
            all_healthy = all_healthy and reachable
        except Exception as e:
            checks["ledger"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000
    return HealthStatus(healthy=all_healthy, checks=checks, duration_ms=round(duration_ms, 2))
