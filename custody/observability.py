"""
Logging, metrics and health reporting for the custody service.

Log lines carry the request id and acting principal of the HTTP request
that produced them. Output is JSON in production and a compact text
line in development (CUSTODY_LOG_FORMAT overrides either).

    from custody.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Evidence recorded", evidence_id=str(evidence_id))
"""

import json
import logging
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

from .config import CustodyConfig

if TYPE_CHECKING:
    from .core.service import CustodyService

# Bound per request by RequestContextMiddleware
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
principal_id_var: ContextVar[str] = ContextVar("principal_id", default="")

PRINCIPAL_HEADER = "X-Principal-ID"
REQUEST_ID_HEADER = "X-Request-ID"

# Standard LogRecord attributes, never copied into structured output
_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
))


# ============================================================
# STRUCTURED LOGGING
# ============================================================

def _context_fields() -> Dict[str, str]:
    fields = {"request_id": request_id_var.get(), "principal_id": principal_id_var.get()}
    return {name: value for name, value in fields.items() if value}


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line.

    Keys: timestamp, level, logger, message, then request_id and
    principal_id when a request is in flight, then any keyword fields
    passed to the ContextLogger call (UUIDs and datetimes become strings).
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context_fields(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        payload.update(
            (key, _jsonable(value))
            for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        )
        return json.dumps(payload)


class TextFormatter(logging.Formatter):
    """Single-line output for a terminal."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")
        request_id = request_id_var.get()
        tag = f"[{request_id[:8]}] " if request_id else ""

        line = f"{stamp} {record.levelname:<8} {tag}{record.name}: {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


_LOGGING_KWARGS = ("exc_info", "stack_info", "stacklevel", "extra")


class ContextLogger(logging.LoggerAdapter):
    """
    Adapter that turns keyword arguments into structured fields:

        logger.info("Index rebuilt", leaf_count=12, root=root[:16])
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        fields = dict(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in _LOGGING_KWARGS]:
            fields[key] = kwargs.pop(key)
        kwargs["extra"] = fields
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(config: Optional[CustodyConfig] = None) -> None:
    """Install a single stdout handler on the root logger. Call once at startup."""
    config = config or CustodyConfig.from_env()
    level = getattr(logging, config.log_level, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter() if config.log_format == "json" else TextFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

_request_logger = get_logger("custody.request")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds X-Request-ID (generated when absent) and X-Principal-ID to the
    logging context for the duration of a request, echoes the request id
    back, and records one access log line plus request metrics.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:8]
        request_tokens = (
            request_id_var.set(request_id),
            principal_id_var.set(request.headers.get(PRINCIPAL_HEADER, "")),
        )
        route = f"{request.method} {request.url.path}"
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            elapsed = (time.perf_counter() - started) * 1000
            _request_logger.exception(
                f"{route} failed",
                status_code=500,
                duration_ms=round(elapsed, 2),
                error=str(e),
            )
            get_metrics().record_request(elapsed, False)
            raise
        else:
            elapsed = (time.perf_counter() - started) * 1000
            _request_logger.log(
                logging.WARNING if response.status_code >= 400 else logging.INFO,
                f"{route} -> {response.status_code}",
                status_code=response.status_code,
                duration_ms=round(elapsed, 2),
                client_ip=request.client.host if request.client else None,
            )
            get_metrics().record_request(elapsed, response.status_code < 500)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            request_id_var.reset(request_tokens[0])
            principal_id_var.reset(request_tokens[1])


# ============================================================
# METRICS
# ============================================================

_MAX_SAMPLES = 1000


def _percentile(data: list, p: float) -> Optional[float]:
    if not data:
        return None
    ranked = sorted(data)
    return round(ranked[min(int(len(ranked) * p), len(ranked) - 1)], 3)


@dataclass
class MetricsCollector:
    """Process-local counters and latency samples, served at /metrics."""

    # Counters
    entries_appended: int = 0
    index_rebuilds: int = 0
    verifications: int = 0
    verifications_tampered: int = 0
    verifications_unverifiable: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    # Latency samples, newest _MAX_SAMPLES kept
    append_latencies_ms: list = field(default_factory=list)
    rebuild_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    _lock: Lock = field(default_factory=Lock, repr=False)

    @staticmethod
    def _sample(samples: list, value: float) -> None:
        samples.append(value)
        if len(samples) > _MAX_SAMPLES:
            del samples[:-_MAX_SAMPLES]

    def record_append(self, latency_ms: float) -> None:
        with self._lock:
            self.entries_appended += 1
            self._sample(self.append_latencies_ms, latency_ms)

    def record_rebuild(self, latency_ms: float) -> None:
        with self._lock:
            self.index_rebuilds += 1
            self._sample(self.rebuild_latencies_ms, latency_ms)

    def record_verification(self, status: str) -> None:
        with self._lock:
            self.verifications += 1
            if status == "TAMPERED":
                self.verifications_tampered += 1
            elif status == "CANNOT_VERIFY":
                self.verifications_unverifiable += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self._sample(self.request_latencies_ms, latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "entries_appended": self.entries_appended,
                "index_rebuilds": self.index_rebuilds,
                "verifications": self.verifications,
                "verifications_tampered": self.verifications_tampered,
                "verifications_unverifiable": self.verifications_unverifiable,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "append_latency_p50_ms": _percentile(self.append_latencies_ms, 0.5),
                "append_latency_p95_ms": _percentile(self.append_latencies_ms, 0.95),
                "append_latency_p99_ms": _percentile(self.append_latencies_ms, 0.99),
                "rebuild_latency_p50_ms": _percentile(self.rebuild_latencies_ms, 0.5),
                "rebuild_latency_p95_ms": _percentile(self.rebuild_latencies_ms, 0.95),
                "request_latency_p50_ms": _percentile(self.request_latencies_ms, 0.5),
                "request_latency_p95_ms": _percentile(self.request_latencies_ms, 0.95),
            }

    def reset(self) -> None:
        """Zero every counter (for tests)."""
        with self._lock:
            self.entries_appended = 0
            self.index_rebuilds = 0
            self.verifications = 0
            self.verifications_tampered = 0
            self.verifications_unverifiable = 0
            self.requests_total = 0
            self.requests_failed = 0
            self.append_latencies_ms.clear()
            self.rebuild_latencies_ms.clear()
            self.request_latencies_ms.clear()


# Shared by the service, the middleware and /metrics
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Outcome of check_health; checks is keyed by component."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(service: Optional["CustodyService"] = None, audit: bool = True) -> HealthStatus:
    """
    Liveness always; ledger and Merkle index state when a service is given.

    Args:
        service: CustodyService to inspect
        audit: Walk every ledger stream (expensive on large ledgers)
    """
    start = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if service is not None:
        streams = {}
        for stream in service.ledger.streams():
            cursor = service.store.get_cursor(stream)
            stream_check: Dict[str, Any] = {
                "entry_count": cursor.next_sequence,
                "head": cursor.last_link[:16] + "..." if not cursor.is_empty else None,
            }
            if audit:
                try:
                    result = service.ledger.audit_stream(stream)
                    stream_check["valid"] = result.valid
                    stream_check["breaks"] = len(result.breaks)
                    if not result.valid:
                        all_healthy = False
                except Exception as e:
                    stream_check["valid"] = False
                    stream_check["error"] = str(e)
                    all_healthy = False
            streams[stream] = stream_check

        checks["ledger"] = {
            "status": "healthy" if all_healthy else "unhealthy",
            "streams": streams,
        }

        latest = service.store.latest_root()
        checks["merkle_index"] = {
            "status": "healthy",
            "root": latest.root if latest else None,
            "leaf_count": latest.leaf_count if latest else 0,
            "roots_recorded": len(service.store.list_roots()),
        }

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
