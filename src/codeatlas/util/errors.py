"""
Structured error types for the pipeline and its collaborators.

Every error raised across a component seam carries a severity, a category,
a suggested recovery strategy and an optional ErrorContext so it can be
logged as a single structured record.
"""

import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


class ErrorSeverity(str, Enum):
    """Error severity levels for categorization and response."""
    CRITICAL = "critical"    # Run cannot continue
    HIGH = "high"            # Step output unusable
    MEDIUM = "medium"        # Degraded, usually transient
    LOW = "low"              # Minor, safe to continue


class ErrorCategory(str, Enum):
    """Error categories for raised exceptions."""
    VALIDATION = "validation"
    PARSING = "parsing"
    FILESYSTEM = "filesystem"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    RESOURCE = "resource"
    EXTERNAL_SERVICE = "external_service"
    PIPELINE = "pipeline"
    LOGIC = "logic"


class RecoveryStrategy(str, Enum):
    """Coarse recovery hint attached to a raised exception."""
    RETRY = "retry"
    FALLBACK = "fallback"
    SKIP = "skip"
    ABORT = "abort"


@dataclass
class ErrorContext:
    """Where an error happened and what was being done."""
    component: str
    operation: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    pipeline_id: Optional[str] = None
    step_name: Optional[str] = None
    file_path: Optional[str] = None
    line_number: Optional[int] = None
    function_name: Optional[str] = None
    memory_usage: Optional[int] = None
    parameters: Dict[str, Any] = field(default_factory=dict)


class CodeAtlasError(Exception):
    """
    Base exception class with structured error handling.

    Carries severity, category, recovery hint, context and suggestions so
    the logging layer can emit one self-describing record per failure.
    """

    # ErrorHandler kind (e.g. "api") for errors whose message does not say it
    error_kind: Optional[str] = None

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.LOGIC,
        recovery_strategy: RecoveryStrategy = RecoveryStrategy.ABORT,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.recovery_strategy = recovery_strategy
        self.context = context or ErrorContext(component="unknown", operation="unknown")
        self.cause = cause
        self.details = details or {}
        self.suggestions = suggestions or []
        self.timestamp = datetime.now(timezone.utc)
        self.traceback_str = traceback.format_exc() if cause else None
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to structured dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "recovery_strategy": self.recovery_strategy.value,
            "timestamp": self.timestamp.isoformat(),
            "context": {
                "component": self.context.component,
                "operation": self.context.operation,
                "timestamp": self.context.timestamp.isoformat(),
                "pipeline_id": self.context.pipeline_id,
                "step_name": self.context.step_name,
                "file_path": self.context.file_path,
                "line_number": self.context.line_number,
                "function_name": self.context.function_name,
                "parameters": self.context.parameters,
            },
            "details": self.details,
            "suggestions": self.suggestions,
            "cause": str(self.cause) if self.cause else None,
            "traceback": self.traceback_str,
        }

    def __str__(self) -> str:
        return self.message


# Component-specific errors

class ValidationError(CodeAtlasError):
    """Input validation errors."""

    def __init__(self, message: str, field: str = None, value: Any = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.VALIDATION,
            recovery_strategy=RecoveryStrategy.ABORT,
            **kwargs
        )
        if field:
            self.details["field"] = field
        if value is not None:
            self.details["value"] = str(value)


class ConfigurationError(CodeAtlasError):
    """Configuration and setup errors."""

    def __init__(self, config_key: str, message: str, **kwargs):
        super().__init__(
            f"Configuration error for '{config_key}': {message}",
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            recovery_strategy=RecoveryStrategy.ABORT,
            **kwargs
        )
        self.details["config_key"] = config_key


class LLMUnavailableError(ConfigurationError):
    """No LLM adapter could be built for the configured model."""

    error_kind = "api"

    def __init__(self, model: str, reason: str, **kwargs):
        super().__init__("llm_model", f"LLM unavailable for '{model}': {reason}", **kwargs)
        self.severity = ErrorSeverity.CRITICAL
        self.model = model


class FileSystemError(CodeAtlasError):
    """File system operation errors."""

    error_kind = "filesystem"

    def __init__(self, path: Union[str, Path], operation: str, message: str, **kwargs):
        super().__init__(
            f"File operation '{operation}' failed on '{path}': {message}",
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.FILESYSTEM,
            recovery_strategy=RecoveryStrategy.SKIP,
            **kwargs
        )
        self.details["path"] = str(path)
        self.details["operation"] = operation


class ParsingError(CodeAtlasError):
    """Source file could not be parsed into code units."""

    error_kind = "parsing"

    def __init__(self, path: Union[str, Path], message: str, **kwargs):
        super().__init__(
            f"Parse error in '{path}': {message}",
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.PARSING,
            recovery_strategy=RecoveryStrategy.SKIP,
            **kwargs
        )
        self.details["path"] = str(path)


class ExternalServiceError(CodeAtlasError):
    """Failure talking to an LLM, embedding or index service."""

    def __init__(self, service: str, message: str, retryable: bool = False, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        kwargs.setdefault("category", ErrorCategory.EXTERNAL_SERVICE)
        kwargs.setdefault(
            "recovery_strategy",
            RecoveryStrategy.RETRY if retryable else RecoveryStrategy.FALLBACK,
        )
        super().__init__(f"{service}: {message}", **kwargs)
        self.service = service
        self.retryable = retryable
        self.details["service"] = service


class IndexBackendError(CodeAtlasError):
    """Vector index misuse or backend failure."""

    def __init__(self, backend: str, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            recovery_strategy=RecoveryStrategy.ABORT,
            **kwargs
        )
        self.backend = backend
        self.details["backend"] = backend


# Orchestration errors

class PipelineError(CodeAtlasError):
    """Base class for orchestration contract violations."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("recovery_strategy", RecoveryStrategy.ABORT)
        super().__init__(message, category=ErrorCategory.PIPELINE, **kwargs)


class PipelineCapacityError(PipelineError):
    """Too many runs are already in the running state."""

    def __init__(self, limit: int, **kwargs):
        super().__init__(f"Maximum concurrent pipelines limit reached ({limit})", **kwargs)
        self.limit = limit
        self.details["limit"] = limit


class PipelineNotFoundError(PipelineError):
    """No run with the requested id is known to the manager."""

    def __init__(self, pipeline_id: str, **kwargs):
        super().__init__(f"Pipeline {pipeline_id} not found", **kwargs)
        self.pipeline_id = pipeline_id


class StepNotFoundError(PipelineError):
    """Step id outside 1..5 or unknown to the history log."""

    def __init__(self, step_id: Any, **kwargs):
        super().__init__(f"Step {step_id} not found", **kwargs)
        self.step_id = step_id


class StepConflictError(PipelineError):
    """Step is already running in independent-step mode."""

    def __init__(self, step_id: int, **kwargs):
        super().__init__(f"Step {step_id} is already running", **kwargs)
        self.step_id = step_id


class StageExecutionError(PipelineError):
    """A stage raised while executing; wraps the original exception."""

    def __init__(self, step_name: str, message: str, **kwargs):
        super().__init__(message, **kwargs)
        self.step_name = step_name
        self.details["step_name"] = step_name


def create_error_context(component: str, operation: str, **kwargs) -> ErrorContext:
    """Create error context with caller frame and process memory."""
    import inspect

    import psutil

    context = ErrorContext(component=component, operation=operation, **kwargs)

    frame = inspect.currentframe()
    if frame and frame.f_back:
        caller_frame = frame.f_back
        context.file_path = context.file_path or caller_frame.f_code.co_filename
        context.line_number = caller_frame.f_lineno
        context.function_name = caller_frame.f_code.co_name

    try:
        context.memory_usage = psutil.Process().memory_info().rss
    except (psutil.Error, OSError):
        pass

    return context
