"""
dialgov Metrics Module

Prometheus-compatible metrics for monitoring the governance engine.
"""

from .collector import (
    Counter,
    Gauge,
    GovernanceMetrics,
    Histogram,
    MetricsRegistry,
)

__all__ = [
    "Counter",
    "Gauge",
    "GovernanceMetrics",
    "Histogram",
    "MetricsRegistry",
]
