"""
Structured logging configuration and utilities.

Every record carries the component that emitted it and, while a run or
step executes, the pipeline id and step name. ``StructuredFormatter``
renders records as single-line JSON.
"""

import json
import logging
import sys
import time
from contextvars import ContextVar
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any

import psutil

if TYPE_CHECKING:
    from ..config import LoggingSettings

PIPELINE_ID: ContextVar[str | None] = ContextVar("pipeline_id", default=None)
STEP_NAME: ContextVar[str | None] = ContextVar("step_name", default=None)

# Record attributes copied verbatim into the JSON entry
_PASSTHROUGH_FIELDS = ("component", "operation", "event", "metrics", "success")

HUMAN_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class StructuredFormatter(logging.Formatter):
    """JSON formatter adding correlation ids and structured record fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        pipeline_id, step = PIPELINE_ID.get(), STEP_NAME.get()
        if pipeline_id:
            entry["pipeline_id"] = pipeline_id
        if step:
            entry["step"] = step

        for name in _PASSTHROUGH_FIELDS:
            if hasattr(record, name):
                entry[name] = getattr(record, name)
        entry.update(getattr(record, "extra_fields", {}))

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        if hasattr(record, "error_context"):
            entry["error"] = record.error_context

        return json.dumps(entry, default=str, separators=(",", ":"))


def _rss_mb() -> float | None:
    try:
        return psutil.Process().memory_info().rss / (1024 * 1024)
    except (psutil.Error, OSError):
        return None


class PerformanceLogger:
    """
    Times an operation and logs one completion record with its duration
    and resident memory delta.

    Works as a sync or async context manager. Failures are logged at
    ERROR and operations slower than ``slow_ms`` at WARNING; exceptions
    always propagate.
    """

    def __init__(
        self,
        logger: logging.Logger,
        operation: str,
        component: str,
        level: int = logging.INFO,
        slow_ms: float = 10_000,
    ):
        self.logger = logger
        self.operation = operation
        self.component = component
        self.level = level
        self.slow_ms = slow_ms
        self.duration_ms: float | None = None
        self._started = 0.0
        self._rss_before: float | None = None

    def __enter__(self) -> "PerformanceLogger":
        self._rss_before = _rss_mb()
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.duration_ms = (time.perf_counter() - self._started) * 1000
        rss_after = _rss_mb()
        memory_delta = None
        if self._rss_before is not None and rss_after is not None:
            memory_delta = round(rss_after - self._rss_before, 3)

        if exc_type is not None:
            level, outcome = logging.ERROR, "failed"
        else:
            level = logging.WARNING if self.duration_ms > self.slow_ms else self.level
            outcome = "completed"

        self.logger.log(
            level,
            f"{self.operation} {outcome} in {self.duration_ms:.2f}ms",
            extra={
                "component": self.component,
                "operation": self.operation,
                "event": "complete",
                "success": exc_type is None,
                "metrics": {"duration_ms": self.duration_ms, "memory_delta_mb": memory_delta},
            },
        )
        return False

    async def __aenter__(self) -> "PerformanceLogger":
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        return self.__exit__(exc_type, exc_val, exc_tb)


class CodeAtlasLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter stamping the component name on every record."""

    def __init__(self, logger: logging.Logger, component: str):
        self.component = component
        super().__init__(logger, {"component": component})

    def process(self, msg, kwargs):
        kwargs.setdefault("extra", {})["component"] = self.component
        return msg, kwargs

    def operation_error(self, operation: str, error: Exception, **context):
        """Log a failed operation with the error's structured form when it has one."""
        from .errors import CodeAtlasError

        extra = {"operation": operation, "event": "error", "extra_fields": context}
        if isinstance(error, CodeAtlasError):
            extra["error_context"] = error.to_dict()

        self.error(
            f"Error in {operation}: {error}",
            exc_info=(type(error), error, error.__traceback__),
            extra=extra,
        )

    def performance_track(self, operation: str, level: int = logging.INFO) -> PerformanceLogger:
        return PerformanceLogger(self.logger, operation, self.component, level)


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "structured",
    log_file: str | Path | None = None,
    enable_console: bool = True,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Replace the root logger's handlers.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_format: "structured" for JSON lines, "human" for plain text
        log_file: Optional path of a size-rotated log file
        enable_console: Whether to log to stdout
        max_bytes: Size at which the log file rotates
        backup_count: Rotated files kept
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    formatter = StructuredFormatter() if log_format == "structured" else logging.Formatter(HUMAN_FORMAT)

    handlers: list[logging.Handler] = []
    if enable_console:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(level)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for noisy in ("aiohttp", "asyncio", "google", "qdrant_client"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def configure_from_settings(settings: "LoggingSettings | None" = None) -> None:
    """Apply a logging settings section, the global one by default."""
    if settings is None:
        from ..config import get_settings

        settings = get_settings().logging
    setup_logging(log_level=settings.log_level, log_format=settings.log_format, log_file=settings.log_file)


def get_logger(component: str) -> CodeAtlasLoggerAdapter:
    """Logger named ``codeatlas.<component>``."""
    return CodeAtlasLoggerAdapter(logging.getLogger(f"codeatlas.{component}"), component)


def set_request_context(pipeline_id: str = None, step_name: str = None) -> None:
    """Set correlation ids for records emitted by the current task."""
    if pipeline_id:
        PIPELINE_ID.set(pipeline_id)
    if step_name:
        STEP_NAME.set(step_name)


def clear_request_context() -> None:
    PIPELINE_ID.set(None)
    STEP_NAME.set(None)


def log_pipeline_start(pipeline_id: str, config: dict[str, Any]) -> None:
    set_request_context(pipeline_id=pipeline_id)
    get_logger("pipeline").info(
        "Pipeline execution started",
        extra={"operation": "pipeline_start", "extra_fields": {"pipeline_id": pipeline_id, "config": config}},
    )


def log_pipeline_complete(pipeline_id: str, duration_ms: float, stats: dict[str, Any]) -> None:
    get_logger("pipeline").info(
        f"Pipeline execution completed in {duration_ms:.2f}ms",
        extra={
            "operation": "pipeline_complete",
            "metrics": {"duration_ms": duration_ms},
            "extra_fields": {"pipeline_id": pipeline_id, "stats": stats},
        },
    )


def log_pipeline_error(pipeline_id: str, error: Exception, stage: str = None) -> None:
    context = {"pipeline_id": pipeline_id}
    if stage:
        context["failed_stage"] = stage
    get_logger("pipeline").operation_error("pipeline_execution", error, **context)
