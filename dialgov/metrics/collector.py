"""
Governance Metrics

Prometheus text-format (0.0.4) counters, gauges and histograms for the
governance engine, rendered without ``prometheus_client``.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class _Metric:
    name: str
    help: str = ""
    _value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    kind = "untyped"

    @property
    def value(self) -> float:
        return self._value

    def _header(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.help}"] if self.help else []
        lines.append(f"# TYPE {self.name} {self.kind}")
        return lines

    def expose(self) -> str:
        return "\n".join(self._header() + [f"{self.name} {self._value}"])


@dataclass
class Counter(_Metric):
    """Monotonically increasing counter."""
    kind = "counter"

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Counter can only be incremented")
        with self._lock:
            self._value += amount


@dataclass
class Gauge(_Metric):
    """Value that can go up and down."""
    kind = "gauge"

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value


# Collaborator call latency in seconds
DEFAULT_BUCKETS: Tuple[float, ...] = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


@dataclass
class Histogram(_Metric):
    """Cumulative-bucket histogram."""
    buckets: Tuple[float, ...] = DEFAULT_BUCKETS
    _counts: Dict[float, int] = field(default_factory=dict, repr=False)
    _sum: float = 0.0
    _count: int = 0

    kind = "histogram"

    def observe(self, value: float) -> None:
        with self._lock:
            self._sum += value
            self._count += 1
            for bound in sorted(self.buckets):
                if value <= bound:
                    self._counts[bound] = self._counts.get(bound, 0) + 1
                    break

    @property
    def count(self) -> int:
        return self._count

    def expose(self) -> str:
        lines = self._header()
        cumulative = 0
        for bound in sorted(self.buckets):
            cumulative += self._counts.get(bound, 0)
            lines.append(f'{self.name}_bucket{{le="{bound}"}} {cumulative}')
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines)


class MetricsRegistry:
    """Named metrics rendered together by ``expose()``."""

    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def register(self, metric: _Metric) -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"Metric already registered: {metric.name}")
            self._metrics[metric.name] = metric

    def get(self, name: str) -> Optional[_Metric]:
        return self._metrics.get(name)

    def expose(self) -> str:
        with self._lock:
            parts = [metric.expose() for metric in self._metrics.values()]
        return "\n\n".join(parts) + "\n"


class GovernanceMetrics:
    """
    Pre-registered metrics for one governance engine.

    The engine updates these as it ingests, records, finalizes and
    publishes; ``expose()`` renders the Prometheus body.
    """

    def __init__(self, namespace: str = "dialgov"):
        self.registry = MetricsRegistry()
        ns = namespace

        self.messages_processed = Counter(f"{ns}_messages_processed_total", "Inbound messages consumed by the cursor")
        self.messages_ignored = Counter(f"{ns}_messages_ignored_total", "Inbound messages that were not governance votes")
        self.votes_recorded = Counter(f"{ns}_votes_recorded_total", "Votes accepted into a voting session")
        self.votes_rejected = Counter(f"{ns}_votes_rejected_total", "Votes dropped by validation")
        self.sessions_committed = Counter(f"{ns}_sessions_committed_total", "Sessions finalized with a parameter update")
        self.sessions_rejected = Counter(f"{ns}_sessions_rejected_total", "Sessions finalized without reaching quorum")
        self.dispatch_failures = Counter(f"{ns}_dispatch_failures_total", "Failed execution endpoint dispatches")
        self.snapshots_published = Counter(f"{ns}_snapshots_published_total", "State snapshots sent")
        self.transport_errors = Counter(f"{ns}_transport_errors_total", "Failed fetch or send calls")
        self.active_sessions = Gauge(f"{ns}_active_sessions", "Voting sessions currently open")
        self.cursor_sequence = Gauge(f"{ns}_cursor_sequence", "Highest processed inbound sequence number")
        self.dispatch_latency = Histogram(f"{ns}_dispatch_seconds", "Execution endpoint call latency")
        self.uptime_seconds = Gauge(f"{ns}_uptime_seconds", "Engine uptime in seconds")
        self._start_time = time.time()

        for attr in vars(self).values():
            if isinstance(attr, _Metric):
                self.registry.register(attr)

    def snapshot(self) -> Dict[str, Any]:
        """Current counter and gauge values keyed by metric name."""
        return {
            name: metric.value
            for name, metric in self.registry._metrics.items()
            if not isinstance(metric, Histogram)
        }

    def expose(self) -> str:
        self.uptime_seconds.set(time.time() - self._start_time)
        return self.registry.expose()
