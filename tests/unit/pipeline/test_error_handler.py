"""
Unit tests for error classification and recovery planning.
"""

import pytest

from codeatlas.data.schemas import ErrorKind, RecoveryAction, RecoveryPlan
from codeatlas.monitoring.metrics import MetricsCollector
from codeatlas.pipeline.error_handler import ErrorHandler
from codeatlas.pipeline.llm_adapter import LLMError
from codeatlas.util.errors import (
    ErrorSeverity,
    ExternalServiceError,
    FileSystemError,
    LLMUnavailableError,
    ParsingError,
)


class TestClassification:
    """Test keyword classification."""

    def setup_method(self):
        self.handler = ErrorHandler()

    @pytest.mark.parametrize("message,kind", [
        ("Unexpected token: parse failure", ErrorKind.PARSING),
        ("SyntaxError on line 4", ErrorKind.PARSING),
        ("rate limit exceeded", ErrorKind.API),
        ("daily quota used up", ErrorKind.API),
        ("ENOENT: no such file", ErrorKind.FILESYSTEM),
        ("connection reset by peer", ErrorKind.NETWORK),
        ("request timeout", ErrorKind.NETWORK),
        ("invalid argument", ErrorKind.VALIDATION),
        ("JavaScript heap out of memory", ErrorKind.RESOURCE),
        ("something odd happened", ErrorKind.UNKNOWN),
    ])
    def test_classify_error(self, message, kind):
        assert self.handler.classify_error(Exception(message)) == kind

    def test_first_rule_wins(self):
        """Test parsing keywords take priority over API keywords."""
        assert self.handler.classify_error("API could not parse the payload") == ErrorKind.PARSING

    def test_structured_errors_use_their_message(self):
        assert self.handler.classify_error(ParsingError("x.py", "bad indent")) == ErrorKind.PARSING
        assert self.handler.classify_error(FileSystemError("x.py", "read", "denied")) == ErrorKind.FILESYSTEM
        assert self.handler.classify_error(
            LLMError("quota exceeded", provider="google", model="gemini")
        ) == ErrorKind.API

    def test_wrapped_cause_is_classified_first(self):
        """Test a provider timeout wrapped in an LLMError reads as a network failure."""
        cause = TimeoutError("connection timeout")
        error = LLMError(str(cause), provider="google", model="gemini", cause=cause)

        assert self.handler.classify_error(error) == ErrorKind.NETWORK
        assert self.handler.determine_severity(error, {"step": "enrichment"}) == ErrorSeverity.MEDIUM

    def test_unmatched_cause_falls_back_to_wrapper(self):
        error = ExternalServiceError("openai", "rate limit exceeded", cause=RuntimeError("HTTP 429"))

        assert self.handler.classify_error(error) == ErrorKind.API

    def test_declared_kind_ignores_cause_wording(self):
        cause = SyntaxError("invalid character")

        assert self.handler.classify_error(ParsingError("x.py", str(cause), cause=cause)) == ErrorKind.PARSING

    def test_declared_critical_error(self):
        error = LLMUnavailableError("gemini-2.5-flash", "GOOGLE_API_KEY not set")

        assert self.handler.classify_error(error) == ErrorKind.API
        assert self.handler.determine_severity(error, {"step": "enrichment"}) == ErrorSeverity.CRITICAL


class TestSeverity:
    """Test severity scoring in step context."""

    def setup_method(self):
        self.handler = ErrorHandler()

    def test_resource_is_critical(self):
        assert self.handler.determine_severity("out of memory") == ErrorSeverity.CRITICAL

    def test_filesystem_during_parsing_is_critical(self):
        assert self.handler.determine_severity(
            "directory missing", {"step": "parsing"}
        ) == ErrorSeverity.CRITICAL
        assert self.handler.determine_severity(
            "directory missing", {"step": "indexing"}
        ) == ErrorSeverity.LOW

    def test_api_authentication_is_critical(self):
        assert self.handler.determine_severity("API authentication failed") == ErrorSeverity.CRITICAL

    def test_api_during_enrichment_is_high(self):
        assert self.handler.determine_severity("API error 500", {"step": "enrichment"}) == ErrorSeverity.HIGH

    def test_rate_limit_during_enrichment_is_medium(self):
        assert self.handler.determine_severity(
            "rate limit exceeded", {"step": "enrichment"}
        ) == ErrorSeverity.MEDIUM

    def test_parsing_and_validation_are_high(self):
        assert self.handler.determine_severity("syntax error") == ErrorSeverity.HIGH
        assert self.handler.determine_severity("field is required") == ErrorSeverity.HIGH

    def test_network_is_medium(self):
        assert self.handler.determine_severity("network unreachable") == ErrorSeverity.MEDIUM

    def test_unknown_is_low(self):
        assert self.handler.determine_severity("odd") == ErrorSeverity.LOW


class TestHandleError:
    """Test recording and history."""

    def test_entry_fields(self):
        handler = ErrorHandler()

        entry = handler.handle_error(
            Exception("rate limit exceeded"), {"step": "enrichment", "pipeline_id": "p-1"}
        )

        assert entry.id.startswith("err_")
        assert entry.kind == ErrorKind.API
        assert entry.severity == ErrorSeverity.MEDIUM
        assert entry.context["pipeline_id"] == "p-1"
        assert entry.error_type == "Exception"

    def test_recent_errors_most_recent_first(self):
        handler = ErrorHandler()
        for i in range(3):
            handler.handle_error(f"error {i}")

        recent = handler.get_recent_errors(2)

        assert [entry.message for entry in recent] == ["error 2", "error 1"]

    def test_history_bounded(self):
        handler = ErrorHandler(max_history=5)
        for i in range(8):
            handler.handle_error(f"error {i}")

        recent = handler.get_recent_errors(100)

        assert len(recent) == 5
        assert recent[0].message == "error 7"
        assert recent[-1].message == "error 3"

    def test_error_ids_unique(self):
        handler = ErrorHandler()
        ids = {handler.generate_error_id() for _ in range(100)}
        assert len(ids) == 100

    def test_metrics_recorded(self):
        metrics = MetricsCollector()
        handler = ErrorHandler(metrics=metrics)

        handler.handle_error("network unreachable")

        assert metrics.get_sample_value(
            "codeatlas_errors_total", {"kind": "network", "severity": "medium"}
        ) == 1.0


class TestErrorStatistics:
    """Test windowed statistics."""

    def test_counts_by_kind_and_severity(self):
        handler = ErrorHandler()
        handler.handle_error("syntax error")
        handler.handle_error("network down")
        handler.handle_error("network slow")

        stats = handler.get_error_statistics(3600)

        assert stats["total"] == 3
        assert stats["by_kind"] == {"parsing": 1, "network": 2}
        assert stats["by_severity"] == {"high": 1, "medium": 2}
        assert stats["oldest_error"] <= stats["newest_error"]

    def test_zero_window_is_empty(self):
        handler = ErrorHandler()
        handler.handle_error("syntax error")

        stats = handler.get_error_statistics(0)

        assert stats["total"] == 0
        assert stats["by_kind"] == {}
        assert stats["oldest_error"] is None
        assert stats["newest_error"] is None


class TestRecoveryStrategy:
    """Test recovery plan selection."""

    def setup_method(self):
        self.handler = ErrorHandler()

    def test_rate_limit_during_enrichment(self):
        """Test a rate-limited enrichment call retries after a short delay."""
        entry = self.handler.handle_error("rate limit exceeded", {"step": "enrichment", "retry_count": 0})

        plan = self.handler.get_recovery_strategy(entry)

        assert entry.kind == ErrorKind.API
        assert entry.severity == ErrorSeverity.MEDIUM
        assert plan.action == RecoveryAction.RETRY_WITH_DELAY
        assert plan.delay_ms == 1000
        assert plan.max_retries == 5

    def test_rate_limit_backoff_grows(self):
        entry = self.handler.handle_error("rate limit exceeded", {"retry_count": 3})

        assert self.handler.get_recovery_strategy(entry).delay_ms == 8000

    def test_quota(self):
        entry = self.handler.handle_error("API quota exhausted")

        plan = self.handler.get_recovery_strategy(entry)

        assert plan.action == RecoveryAction.PAUSE_AND_RETRY
        assert plan.delay_ms == 60000
        assert plan.max_retries == 3

    def test_network(self):
        entry = self.handler.handle_error("connection refused")

        plan = self.handler.get_recovery_strategy(entry)

        assert plan.action == RecoveryAction.EXPONENTIAL_BACKOFF
        assert plan.base_delay_ms == 1000
        assert plan.max_delay_ms == 10000
        assert plan.max_retries == 3

    def test_parsing_skips_file(self):
        entry = self.handler.handle_error(ParsingError("a.py", "bad"), {"step": "parsing"})

        plan = self.handler.get_recovery_strategy(entry)

        assert plan.action == RecoveryAction.SKIP_FILE
        assert plan.continue_pipeline
        assert plan.log_warning

    def test_critical_aborts(self):
        entry = self.handler.handle_error("heap out of memory")

        assert self.handler.get_recovery_strategy(entry).action == RecoveryAction.ABORT_PIPELINE

    def test_validation_aborts(self):
        entry = self.handler.handle_error("invalid configuration")

        assert self.handler.get_recovery_strategy(entry).action == RecoveryAction.ABORT_PIPELINE

    def test_unknown_retries_once(self):
        entry = self.handler.handle_error("odd")

        plan = self.handler.get_recovery_strategy(entry)

        assert plan.action == RecoveryAction.RETRY
        assert plan.max_retries == 1

    @pytest.mark.parametrize("retry_count,expected", [(0, 1000), (1, 2000), (4, 16000), (5, 30000), (10, 30000)])
    def test_backoff_delay(self, retry_count, expected):
        assert self.handler.calculate_backoff_delay(retry_count) == expected


class TestExecuteRecovery:
    """Test recovery execution."""

    @pytest.mark.asyncio
    async def test_retry_with_delay_waits(self, no_sleep):
        handler = ErrorHandler(sleep=no_sleep)
        plan = RecoveryPlan(action=RecoveryAction.RETRY_WITH_DELAY, delay_ms=2000, max_retries=5)

        outcome = await handler.execute_recovery_strategy(plan)

        assert outcome.should_retry
        assert outcome.should_continue
        assert outcome.delay_ms == 2000
        assert no_sleep.calls == [2.0]

    @pytest.mark.asyncio
    async def test_exponential_backoff_capped(self, no_sleep):
        handler = ErrorHandler(sleep=no_sleep)
        plan = RecoveryPlan(
            action=RecoveryAction.EXPONENTIAL_BACKOFF, base_delay_ms=1000, max_delay_ms=10000, max_retries=3
        )

        first = await handler.execute_recovery_strategy(plan, {"retry_count": 1})
        capped = await handler.execute_recovery_strategy(plan, {"retry_count": 6})

        assert first.delay_ms == 2000
        assert capped.delay_ms == 10000
        assert no_sleep.calls == [2.0, 10.0]

    @pytest.mark.asyncio
    async def test_skip_file(self, no_sleep):
        handler = ErrorHandler(sleep=no_sleep)
        plan = RecoveryPlan(action=RecoveryAction.SKIP_FILE, continue_pipeline=True, log_warning=True)

        outcome = await handler.execute_recovery_strategy(plan, {"file_path": "a.py"})

        assert not outcome.should_retry
        assert outcome.should_continue
        assert not outcome.abort
        assert no_sleep.calls == []

    @pytest.mark.asyncio
    async def test_abort(self, no_sleep):
        handler = ErrorHandler(sleep=no_sleep)

        outcome = await handler.execute_recovery_strategy(RecoveryPlan(action=RecoveryAction.ABORT_PIPELINE))

        assert outcome.abort
        assert not outcome.should_continue
        assert not outcome.should_retry

    @pytest.mark.asyncio
    async def test_plain_retry(self, no_sleep):
        handler = ErrorHandler(sleep=no_sleep)

        outcome = await handler.execute_recovery_strategy(RecoveryPlan(action=RecoveryAction.RETRY, max_retries=1))

        assert outcome.should_retry
        assert no_sleep.calls == []
