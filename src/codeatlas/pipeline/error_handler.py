"""
Central error classification and recovery planning.

Errors are classified by message keywords into an ErrorKind, scored for
severity in the context of the step that raised them, and mapped to a
RecoveryPlan. Stages never hardcode retry policy: they hand the error to
the ErrorHandler and act on the RecoveryOutcome it returns.
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from ..data.schemas import ErrorEntry, ErrorKind, RecoveryAction, RecoveryOutcome, RecoveryPlan
from ..util.errors import CodeAtlasError, ErrorSeverity
from ..util.logging_config import get_logger

logger = get_logger("pipeline.errors")

SleepFunc = Callable[[float], Awaitable[Any]]

# First match wins
CLASSIFICATION_RULES = (
    (ErrorKind.PARSING, ("parse", "syntax")),
    (ErrorKind.API, ("api", "rate limit", "quota")),
    (ErrorKind.FILESYSTEM, ("enoent", "file", "directory")),
    (ErrorKind.NETWORK, ("network", "connection", "timeout")),
    (ErrorKind.VALIDATION, ("invalid", "validation", "required")),
    (ErrorKind.RESOURCE, ("memory", "heap", "resource")),
)

SEVERITY_LOG_LEVELS = {
    ErrorSeverity.CRITICAL: logging.CRITICAL,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.LOW: logging.INFO,
}

RATE_LIMIT_MAX_RETRIES = 5
RATE_LIMIT_MAX_DELAY_MS = 30000
QUOTA_PAUSE_MS = 60000
QUOTA_MAX_RETRIES = 3
NETWORK_BASE_DELAY_MS = 1000
NETWORK_MAX_DELAY_MS = 10000
NETWORK_MAX_RETRIES = 3


def _message_of(error: Union[BaseException, str]) -> str:
    if isinstance(error, CodeAtlasError):
        return error.message
    return str(error)


def _match_rules(message: str) -> ErrorKind:
    for kind, keywords in CLASSIFICATION_RULES:
        if any(keyword in message for keyword in keywords):
            return kind
    return ErrorKind.UNKNOWN


def _declared_kind(error: Union[BaseException, str]) -> Optional[ErrorKind]:
    kind = getattr(error, "error_kind", None)
    return ErrorKind(kind) if kind else None


class ErrorHandler:
    """
    Classifies errors, keeps a bounded most-recent-first history and
    decides how callers should recover.

    The handler never retries the failed operation itself; it only waits
    out the chosen delay and reports whether the caller should retry,
    continue or abort.
    """

    def __init__(
        self,
        max_history: int = 100,
        sleep: SleepFunc = asyncio.sleep,
        metrics: Any = None,
    ):
        self.max_history = max_history
        self._history: deque[ErrorEntry] = deque(maxlen=max_history)
        self._sleep = sleep
        self._metrics = metrics

    def handle_error(
        self, error: Union[BaseException, str], context: Optional[Dict[str, Any]] = None
    ) -> ErrorEntry:
        """Classify, score, record and log an error."""
        context = dict(context or {})
        entry = ErrorEntry(
            id=self.generate_error_id(),
            message=_message_of(error),
            kind=self.classify_error(error),
            severity=self.determine_severity(error, context),
            context=context,
            error_type=type(error).__name__ if isinstance(error, BaseException) else None,
        )
        self._history.appendleft(entry)

        logger.log(
            SEVERITY_LOG_LEVELS[entry.severity],
            f"[{entry.severity.value.upper()}] pipeline {context.get('pipeline_id') or 'unknown'}: {entry.message}",
            extra={
                "operation": "handle_error",
                "extra_fields": {
                    "error_id": entry.id,
                    "error_kind": entry.kind.value,
                    "severity": entry.severity.value,
                    "step": context.get("step"),
                },
            },
        )
        if self._metrics is not None:
            self._metrics.record_error(entry.kind.value, entry.severity.value)

        return entry

    def classify_error(self, error: Union[BaseException, str]) -> ErrorKind:
        """Keyword classification in fixed priority order."""
        return self._classify(error)[0]

    def _classify(self, error: Union[BaseException, str]) -> Tuple[ErrorKind, str]:
        """
        Kind plus the lowercased message it was read from.

        A declared ``error_kind`` wins. Otherwise the wrapped cause of a
        structured error is classified first, so a provider timeout wrapped
        in an LLMError still reads as a network failure; the wrapper's own
        message is used when the cause matches no rule.
        """
        message = _message_of(error).lower()
        declared = _declared_kind(error)
        if declared is not None:
            return declared, message

        cause = error.cause if isinstance(error, CodeAtlasError) else None
        if cause is not None:
            cause_message = _message_of(cause).lower()
            kind = _match_rules(cause_message)
            if kind != ErrorKind.UNKNOWN:
                return kind, cause_message

        return _match_rules(message), message

    def determine_severity(
        self, error: Union[BaseException, str], context: Optional[Dict[str, Any]] = None
    ) -> ErrorSeverity:
        """Score severity from kind, message and the step that raised it."""
        kind, message = self._classify(error)
        step = (context or {}).get("step")
        rate_limited = "rate limit" in message

        if (
            (isinstance(error, CodeAtlasError) and error.severity == ErrorSeverity.CRITICAL)
            or kind == ErrorKind.RESOURCE
            or (kind == ErrorKind.FILESYSTEM and step == "parsing")
            or (kind == ErrorKind.API and "authentication" in message)
        ):
            return ErrorSeverity.CRITICAL

        # Rate limits are transient even during enrichment
        if (
            kind == ErrorKind.PARSING
            or (kind == ErrorKind.API and step == "enrichment" and not rate_limited)
            or kind == ErrorKind.VALIDATION
        ):
            return ErrorSeverity.HIGH

        if kind == ErrorKind.NETWORK or (kind == ErrorKind.API and rate_limited):
            return ErrorSeverity.MEDIUM

        return ErrorSeverity.LOW

    def get_recovery_strategy(self, entry: ErrorEntry, retry_count: Optional[int] = None) -> RecoveryPlan:
        """Map an error entry to a recovery plan."""
        if retry_count is None:
            retry_count = int(entry.context.get("retry_count", 0))
        message = entry.message.lower()

        if entry.severity == ErrorSeverity.CRITICAL:
            return RecoveryPlan(action=RecoveryAction.ABORT_PIPELINE)

        if entry.kind == ErrorKind.API:
            if "rate limit" in message:
                return RecoveryPlan(
                    action=RecoveryAction.RETRY_WITH_DELAY,
                    delay_ms=self.calculate_backoff_delay(retry_count),
                    max_retries=RATE_LIMIT_MAX_RETRIES,
                )
            if "quota" in message:
                return RecoveryPlan(
                    action=RecoveryAction.PAUSE_AND_RETRY,
                    delay_ms=QUOTA_PAUSE_MS,
                    max_retries=QUOTA_MAX_RETRIES,
                )
        elif entry.kind == ErrorKind.NETWORK:
            return RecoveryPlan(
                action=RecoveryAction.EXPONENTIAL_BACKOFF,
                base_delay_ms=NETWORK_BASE_DELAY_MS,
                max_delay_ms=NETWORK_MAX_DELAY_MS,
                max_retries=NETWORK_MAX_RETRIES,
            )
        elif entry.kind == ErrorKind.PARSING:
            return RecoveryPlan(action=RecoveryAction.SKIP_FILE, continue_pipeline=True, log_warning=True)
        elif entry.kind == ErrorKind.FILESYSTEM:
            return RecoveryPlan(action=RecoveryAction.SKIP_FILE, continue_pipeline=True)
        elif entry.kind in (ErrorKind.VALIDATION, ErrorKind.RESOURCE):
            return RecoveryPlan(action=RecoveryAction.ABORT_PIPELINE)

        return RecoveryPlan(action=RecoveryAction.RETRY, max_retries=1)

    async def execute_recovery_strategy(
        self, plan: RecoveryPlan, context: Optional[Dict[str, Any]] = None
    ) -> RecoveryOutcome:
        """Wait out the plan's delay and tell the caller what to do next."""
        context = context or {}
        retry_count = int(context.get("retry_count", 0))

        if plan.action in (RecoveryAction.RETRY_WITH_DELAY, RecoveryAction.PAUSE_AND_RETRY):
            delay_ms = plan.delay_ms or 0
            await self._delay(delay_ms)
            return RecoveryOutcome(should_retry=True, should_continue=True, delay_ms=delay_ms)

        if plan.action == RecoveryAction.EXPONENTIAL_BACKOFF:
            delay_ms = min(plan.base_delay_ms * 2 ** retry_count, plan.max_delay_ms)
            await self._delay(delay_ms)
            return RecoveryOutcome(should_retry=True, should_continue=True, delay_ms=delay_ms)

        if plan.action == RecoveryAction.SKIP_FILE:
            if plan.log_warning:
                logger.warning(f"Skipping file due to error: {context.get('file_path')}")
            return RecoveryOutcome(should_retry=False, should_continue=True)

        if plan.action == RecoveryAction.ABORT_PIPELINE:
            logger.error(f"Aborting pipeline {context.get('pipeline_id') or 'unknown'}")
            return RecoveryOutcome(should_retry=False, should_continue=False, abort=True)

        if plan.action == RecoveryAction.RETRY:
            return RecoveryOutcome(should_retry=True, should_continue=True)

        return RecoveryOutcome()

    def calculate_backoff_delay(self, retry_count: int) -> int:
        """1s, 2s, 4s, 8s, 16s, capped at 30s."""
        return min(1000 * 2 ** retry_count, RATE_LIMIT_MAX_DELAY_MS)

    def generate_error_id(self) -> str:
        return f"err_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

    def get_error_statistics(self, time_window: float = 3600.0) -> Dict[str, Any]:
        """
        Count errors recorded within the trailing window.

        Args:
            time_window: Window length in seconds

        Returns:
            Totals by kind and severity plus oldest/newest timestamps
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=time_window)
        recent = [entry for entry in self._history if time_window > 0 and entry.timestamp > cutoff]

        by_kind: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        for entry in recent:
            by_kind[entry.kind.value] = by_kind.get(entry.kind.value, 0) + 1
            by_severity[entry.severity.value] = by_severity.get(entry.severity.value, 0) + 1

        return {
            "total": len(recent),
            "by_kind": by_kind,
            "by_severity": by_severity,
            "time_window": time_window,
            "oldest_error": recent[-1].timestamp if recent else None,
            "newest_error": recent[0].timestamp if recent else None,
        }

    def get_recent_errors(self, limit: int = 10) -> List[ErrorEntry]:
        """Most recent errors first."""
        return list(self._history)[:max(0, limit)]

    def clear_history(self) -> None:
        self._history.clear()

    async def _delay(self, delay_ms: int) -> None:
        if delay_ms > 0:
            await self._sleep(delay_ms / 1000)
