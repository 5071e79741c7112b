"""
Prometheus metrics collection for the CodeAtlas pipeline engine.

Provides application metrics including:
- Pipeline run and step outcomes and durations
- Handled errors by kind and severity
- External LLM and embedding request outcomes
- Process resource usage
"""

from typing import Optional

import psutil
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from ..util.logging_config import get_logger

logger = get_logger("monitoring.metrics")

STEP_DURATION_BUCKETS = (0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 3600.0)


class MetricsCollector:
    """
    Metrics collector for the pipeline engine.

    Every collector owns its own registry, so several managers (or tests)
    can coexist in one process without duplicate-metric errors.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._init_core_metrics()

    def _init_core_metrics(self) -> None:
        registry = self.registry

        # Pipeline metrics

        self.runs_started_total = Counter(
            "codeatlas_pipeline_runs_started_total",
            "Total number of pipeline runs started",
            registry=registry,
        )

        self.runs_finished_total = Counter(
            "codeatlas_pipeline_runs_finished_total",
            "Total number of pipeline runs finished",
            ["status"],
            registry=registry,
        )

        self.run_duration_seconds = Histogram(
            "codeatlas_pipeline_run_duration_seconds",
            "Duration of pipeline runs",
            ["status"],
            buckets=STEP_DURATION_BUCKETS,
            registry=registry,
        )

        self.active_runs = Gauge(
            "codeatlas_pipeline_active_runs",
            "Number of pipeline runs currently running",
            registry=registry,
        )

        self.step_executions_total = Counter(
            "codeatlas_step_executions_total",
            "Total number of step executions",
            ["step", "status"],
            registry=registry,
        )

        self.step_duration_seconds = Histogram(
            "codeatlas_step_duration_seconds",
            "Duration of step executions",
            ["step"],
            buckets=STEP_DURATION_BUCKETS,
            registry=registry,
        )

        # Error metrics

        self.errors_total = Counter(
            "codeatlas_errors_total",
            "Total number of handled errors",
            ["kind", "severity"],
            registry=registry,
        )

        # External service metrics

        self.external_requests_total = Counter(
            "codeatlas_external_requests_total",
            "Total number of LLM and embedding requests",
            ["service", "provider", "outcome"],
            registry=registry,
        )

        # System metrics

        self.memory_usage_bytes = Gauge(
            "codeatlas_memory_usage_bytes",
            "Process memory usage",
            ["type"],
            registry=registry,
        )

        self.cpu_usage_percent = Gauge(
            "codeatlas_cpu_usage_percent",
            "Process CPU usage percentage",
            registry=registry,
        )

    def record_run_started(self) -> None:
        self.runs_started_total.inc()

    def record_run_finished(self, status: str, duration_seconds: float) -> None:
        self.runs_finished_total.labels(status=status).inc()
        self.run_duration_seconds.labels(status=status).observe(duration_seconds)

    def set_active_runs(self, count: int) -> None:
        self.active_runs.set(count)

    def record_step(self, step: str, status: str, duration_seconds: Optional[float] = None) -> None:
        self.step_executions_total.labels(step=step, status=status).inc()
        if duration_seconds is not None:
            self.step_duration_seconds.labels(step=step).observe(duration_seconds)

    def record_error(self, kind: str, severity: str) -> None:
        self.errors_total.labels(kind=kind, severity=severity).inc()

    def record_external_request(self, service: str, provider: str, outcome: str) -> None:
        self.external_requests_total.labels(service=service, provider=provider, outcome=outcome).inc()

    def update_system_metrics(self) -> None:
        """Update process resource metrics."""
        try:
            process = psutil.Process()
            memory_info = process.memory_info()
            self.memory_usage_bytes.labels(type="rss").set(memory_info.rss)
            self.memory_usage_bytes.labels(type="vms").set(memory_info.vms)
            self.cpu_usage_percent.set(process.cpu_percent())
        except psutil.Error as e:
            logger.error(f"Error updating system metrics: {e}")

    def get_sample_value(self, name: str, labels: Optional[dict] = None) -> Optional[float]:
        return self.registry.get_sample_value(name, labels or {})

    def export(self) -> str:
        """Prometheus text exposition of every metric in this collector's registry."""
        self.update_system_metrics()
        return generate_latest(self.registry).decode("utf-8")
