"""
Structured logging, run correlation IDs, and pipeline counters.

Usage:
    from ordersync.observability import setup_logging, get_logger, correlation_context

    setup_logging(level="INFO", json_format=True)
    logger = get_logger(__name__)

    with correlation_context() as run_id, log_context(user_id="42"):
        logger.info("Sync started", extra={"accounts": 3})
"""
import json
import logging
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Correlation ID for one sync run / scheduled job / HTTP request
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Extra fields attached to every record (user_id, account_id)
_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "asctime", "taskName",
}


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return _correlation_id.get()


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


class correlation_context:
    """Context manager binding a correlation ID for the enclosed work."""

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or generate_correlation_id()
        self.token = None

    def __enter__(self) -> str:
        self.token = _correlation_id.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, *args):
        _correlation_id.reset(self.token)


@contextmanager
def log_context(**fields):
    """Attach fields to every log record emitted inside the block."""
    token = _log_context.set({**_log_context.get(), **fields})
    try:
        yield
    finally:
        _log_context.reset(token)


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """JSON formatter: timestamp, level, logger, message, correlation and extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            entry["correlation_id"] = correlation_id

        entry.update(_log_context.get())
        entry.update(_record_extras(record))

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter.

    Format: TIMESTAMP - LEVEL - LOGGER [CORRELATION_ID] - MESSAGE | extras
    """

    def format(self, record: logging.LogRecord) -> str:
        correlation_id = get_correlation_id()
        correlation_str = f" [{correlation_id}]" if correlation_id else ""
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        line = f"{timestamp} - {record.levelname:8} - {record.name}{correlation_str} - {record.getMessage()}"

        extras = {**_log_context.get(), **_record_extras(record)}
        if extras:
            line += f" | {extras}"

        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"

        return line


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    include_libs: bool = False
) -> None:
    """
    Configure root logging.

    Args:
        level: Log level name
        json_format: Emit JSON lines instead of human-readable text
        include_libs: Keep third-party loggers (httpx, apscheduler) at the root level
    """
    formatter = StructuredFormatter() if json_format else HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))

    if not include_libs:
        for noisy in ("httpx", "httpcore", "apscheduler", "uvicorn.access"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)


# ═══════════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Context manager for timing operations.

    Usage:
        with Timer("fetch_account", logger) as t:
            result = await fetcher.fetch(account)
        print(t.elapsed_ms)
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None, warn_ms: float = 5000):
        self.name = name
        self.logger = logger
        self.warn_ms = warn_ms
        self.start_time: float = 0
        self.elapsed_ms: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed_ms = (time.perf_counter() - self.start_time) * 1000

        if self.logger:
            level = logging.WARNING if self.elapsed_ms > self.warn_ms else logging.DEBUG
            self.logger.log(
                level,
                f"{self.name} completed",
                extra={"duration_ms": round(self.elapsed_ms, 2)}
            )


# ═══════════════════════════════════════════════════════════════════════════════
# PIPELINE COUNTERS
# ═══════════════════════════════════════════════════════════════════════════════

class PipelineMetrics:
    """
    In-memory counters for the health endpoint.

    Tracks upstream requests, retries, failed pages, and
    orders fetched/saved since process start.
    """

    COUNTERS = (
        "requests", "retries", "credential_rejections", "page_failures",
        "orders_fetched", "orders_saved", "save_errors", "runs", "continuations",
    )

    def __init__(self):
        self._counts: Dict[str, int] = {name: 0 for name in self.COUNTERS}
        self._last_run_at: Optional[datetime] = None
        self._started_at = datetime.now(timezone.utc)

    def incr(self, counter: str, amount: int = 1) -> None:
        self._counts[counter] = self._counts.get(counter, 0) + amount

    def mark_run(self) -> None:
        self.incr("runs")
        self._last_run_at = datetime.now(timezone.utc)

    def get(self, counter: str) -> int:
        return self._counts.get(counter, 0)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._counts,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "uptime_seconds": round(
                (datetime.now(timezone.utc) - self._started_at).total_seconds(), 1
            ),
        }

    def reset(self) -> None:
        self._counts = {name: 0 for name in self.COUNTERS}
        self._last_run_at = None


# Global metrics instance
metrics = PipelineMetrics()
