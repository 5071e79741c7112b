"""
Monitoring and observability for the CodeAtlas pipeline engine.

Provides Prometheus metrics collection; structured logging lives in
``codeatlas.util.logging_config``.
"""

from .metrics import MetricsCollector

__all__ = ["MetricsCollector"]
