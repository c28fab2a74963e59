"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request and batch IDs
- Request/response logging middleware
- Ledger metrics (appends, flagged events, head races, retries)
- Health check utilities

Configuration:
- HERBTRACE_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- HERBTRACE_LOG_FORMAT: json, text (default: json in production)
- HERBTRACE_PRODUCTION: Enable production mode

Usage:
    from herbtrace.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Event appended", batch_id=batch_id, event_type="harvest")
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
from typing import TYPE_CHECKING, Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

if TYPE_CHECKING:
    from .db.store import LedgerStore

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
batch_id_var: ContextVar[str] = ContextVar("batch_id", default="")

# Attributes every LogRecord carries; anything else came in as a field
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("HERBTRACE_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("HERBTRACE_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("HERBTRACE_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-02-10T06:30:00.000000+00:00",
        "level": "INFO",
        "logger": "herbtrace.core.ledger",
        "message": "Event appended",
        "request_id": "abc12345",
        "batch_id": "ASH-2024-001",
        ...extra fields...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        batch_id = batch_id_var.get()
        if batch_id:
            log_data["batch_id"] = batch_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_"):
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

        timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }
        if fields:
            msg += " " + " ".join(f"{key}={value}" for key, value in fields.items())

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that accepts fields as keyword arguments.

    Usage:
        logger = get_logger(__name__)
        logger.warning("Event flagged", batch_id=batch_id, errors=2)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.get("extra") or {})

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

    if _use_json_logging():
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Sets up request context for logging.

    - Generates a request ID (or honours X-Request-ID)
    - Logs request/response with timing
    - Clears the batch tag the ledger sets while appending
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request_id_var.set(request_id)

        logger = get_logger("herbtrace.request")
        start_time = time.perf_counter()

        logger.debug(
            f"{request.method} {request.url.path}",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

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
            request_id_var.set("")
            batch_id_var.set("")


# ============================================================
# METRICS
# ============================================================

_MAX_SAMPLES = 1000


def _percentile(data: list, p: float) -> Optional[float]:
    if not data:
        return None
    sorted_data = sorted(data)
    idx = int(len(sorted_data) * p)
    return round(sorted_data[min(idx, len(sorted_data) - 1)], 3)


@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    events_appended: int = 0
    events_flagged: int = 0
    head_conflicts: int = 0
    transient_retries: int = 0
    sequence_conflicts: int = 0
    products_created: int = 0
    provenance_queries: int = 0
    integrity_failures: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    # Histograms (simplified as bounded lists)
    append_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_append(self, latency_ms: float, is_valid: bool) -> None:
        with self._lock:
            self.events_appended += 1
            if not is_valid:
                self.events_flagged += 1
            self.append_latencies_ms.append(latency_ms)
            del self.append_latencies_ms[:-_MAX_SAMPLES]

    def record_head_conflict(self) -> None:
        with self._lock:
            self.head_conflicts += 1

    def record_transient_retry(self) -> None:
        with self._lock:
            self.transient_retries += 1

    def record_sequence_conflict(self) -> None:
        with self._lock:
            self.sequence_conflicts += 1

    def record_product(self) -> None:
        with self._lock:
            self.products_created += 1

    def record_provenance_query(self, chain_intact: Optional[bool]) -> None:
        with self._lock:
            self.provenance_queries += 1
            if chain_intact is False:
                self.integrity_failures += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self.request_latencies_ms.append(latency_ms)
            del self.request_latencies_ms[:-_MAX_SAMPLES]

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "events_appended": self.events_appended,
                "events_flagged": self.events_flagged,
                "head_conflicts": self.head_conflicts,
                "transient_retries": self.transient_retries,
                "sequence_conflicts": self.sequence_conflicts,
                "products_created": self.products_created,
                "provenance_queries": self.provenance_queries,
                "integrity_failures": self.integrity_failures,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "append_latency_p50_ms": _percentile(self.append_latencies_ms, 0.5),
                "append_latency_p95_ms": _percentile(self.append_latencies_ms, 0.95),
                "append_latency_p99_ms": _percentile(self.append_latencies_ms, 0.99),
                "request_latency_p50_ms": _percentile(self.request_latencies_ms, 0.5),
                "request_latency_p95_ms": _percentile(self.request_latencies_ms, 0.95),
            }


# Global metrics instance
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


def reset_metrics() -> MetricsCollector:
    """Replace the global collector with a fresh one (for tests)."""
    global _metrics
    _metrics = MetricsCollector()
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


def check_health(store: Optional["LedgerStore"] = None, verify_chains: bool = False) -> HealthStatus:
    """
    Run health checks.

    Args:
        store: LedgerStore instance
        verify_chains: Re-verify every batch chain (expensive)
    """
    start = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}
    all_healthy = True

    if store is not None:
        try:
            checks["ledger_store"] = {
                "status": "healthy",
                "backend": type(store).__name__,
                "event_count": store.count_events(),
            }
        except Exception as e:
            checks["ledger_store"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    if store is not None and verify_chains and all_healthy:
        from .core.hasher import verify_chain

        try:
            broken = []
            batch_ids = store.list_batch_ids()
            for batch_id in batch_ids:
                report = verify_chain(store.list_batch_events(batch_id), batch_id)
                if not report.valid:
                    broken.append(batch_id)
            checks["chain_integrity"] = {
                "status": "healthy" if not broken else "unhealthy",
                "batches_checked": len(batch_ids),
                "broken_batches": broken,
            }
            if broken:
                all_healthy = False
        except Exception as e:
            checks["chain_integrity"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
