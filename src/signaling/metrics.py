"""Prometheus-compatible metrics for signaling observability.

This module provides metrics collection for monitoring:
- Connection and room occupancy (active connections, active rooms)
- Protocol traffic (joins, leaves, relayed messages by type)
- Failures (error replies by code, heartbeat terminations)
- Message handling latency

Metrics are collected in-memory and exposed via the /metrics endpoint in
Prometheus exposition format.

Architecture:
    Gateway/Controller → MetricsCollector → export_prometheus() → /metrics
"""

import logging
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class HistogramBucket:
    """Histogram bucket for latency distributions."""

    le: float  # Upper bound (less-than-or-equal)
    count: int = 0  # Number of observations <= le


@dataclass
class Histogram:
    """Histogram metric for tracking distributions.

    Signaling work is in-memory, so buckets cover 0.1ms to 1s.
    """

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)

    buckets: list[HistogramBucket] = field(
        default_factory=lambda: [
            HistogramBucket(le=0.0001),
            HistogramBucket(le=0.0005),
            HistogramBucket(le=0.001),
            HistogramBucket(le=0.005),
            HistogramBucket(le=0.010),
            HistogramBucket(le=0.050),
            HistogramBucket(le=0.100),
            HistogramBucket(le=0.500),
            HistogramBucket(le=1.000),
            HistogramBucket(le=float("inf")),
        ]
    )

    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        """Record an observation.

        Args:
            value: Observed value in seconds
        """
        self.sum += value
        self.count += 1

        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1

    def quantile(self, q: float) -> float | None:
        """Approximate quantile from cumulative bucket counts.

        Returns the upper bound of the first bucket reaching the target rank,
        or None if nothing was observed.
        """
        if self.count == 0:
            return None

        target_rank = max(1, int(q * self.count))
        for bucket in self.buckets:
            if bucket.count >= target_rank:
                return bucket.le
        return self.buckets[-1].le


@dataclass
class Counter:
    """Counter metric (monotonically increasing)."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount


@dataclass
class Gauge:
    """Gauge metric (can go up or down)."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def set(self, value: float) -> None:
        self.value = value

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount

    def dec(self, amount: float = 1.0) -> None:
        self.value -= amount


class MetricsCollector:
    """Thread-safe metrics collector with Prometheus-compatible output.

    Thread-safety: All public methods are thread-safe via mutex.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

        # Keyed by metric name plus rendered labels
        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}

        self._init_connection_metrics()
        self._init_protocol_metrics()

        logger.info("MetricsCollector initialized")

    def _init_connection_metrics(self) -> None:
        self._gauges["connections_active"] = Gauge(
            name="connections_active",
            help="Number of live signaling connections",
        )
        self._gauges["rooms_active"] = Gauge(
            name="rooms_active",
            help="Number of rooms with at least one participant",
        )
        self._counters["connections_total"] = Counter(
            name="connections_total",
            help="Total number of accepted signaling connections",
        )
        self._counters["connections_rejected_total"] = Counter(
            name="connections_rejected_total",
            help="Connections refused because the server was at capacity",
        )
        self._counters["heartbeat_terminations_total"] = Counter(
            name="heartbeat_terminations_total",
            help="Connections terminated for missing a heartbeat pong",
        )

    def _init_protocol_metrics(self) -> None:
        self._counters["joins_total"] = Counter(
            name="joins_total",
            help="Total number of successful room joins",
        )
        self._counters["leaves_total"] = Counter(
            name="leaves_total",
            help="Total number of room leaves (explicit or disconnect)",
        )
        self._histograms["message_handling_seconds"] = Histogram(
            name="message_handling_seconds",
            help="Time spent dispatching one inbound frame",
        )

    def _labeled_counter(self, name: str, help_text: str, **labels: str) -> Counter:
        key = name + self._format_labels(labels)
        counter = self._counters.get(key)
        if counter is None:
            counter = Counter(name=name, help=help_text, labels=dict(labels))
            self._counters[key] = counter
        return counter

    # === Connection metrics ===

    def record_connection_open(self) -> None:
        with self._lock:
            self._counters["connections_total"].inc()
            self._gauges["connections_active"].inc()

    def record_connection_closed(self) -> None:
        with self._lock:
            self._gauges["connections_active"].dec()

    def record_connection_rejected(self) -> None:
        with self._lock:
            self._counters["connections_rejected_total"].inc()

    def record_heartbeat_termination(self) -> None:
        with self._lock:
            self._counters["heartbeat_terminations_total"].inc()

    def set_rooms_active(self, count: int) -> None:
        with self._lock:
            self._gauges["rooms_active"].set(count)

    # === Protocol metrics ===

    def record_join(self) -> None:
        with self._lock:
            self._counters["joins_total"].inc()

    def record_leave(self) -> None:
        with self._lock:
            self._counters["leaves_total"].inc()

    def record_relay(self, message_type: str) -> None:
        with self._lock:
            self._labeled_counter(
                "relays_total",
                "Total number of relayed negotiation messages",
                type=message_type,
            ).inc()

    def record_error(self, code: str) -> None:
        with self._lock:
            self._labeled_counter(
                "errors_total",
                "Total number of error replies sent to clients",
                code=code,
            ).inc()

    def observe_message_handling(self, seconds: float) -> None:
        with self._lock:
            self._histograms["message_handling_seconds"].observe(seconds)

    # === Export ===

    def export_prometheus(self) -> str:
        """Export all metrics in Prometheus exposition format.

        Format:
            # HELP metric_name Description
            # TYPE metric_name type
            metric_name{label="value"} value
        """
        with self._lock:
            lines: list[str] = []
            described: set[str] = set()

            def describe(name: str, help_text: str, metric_type: str) -> None:
                if name in described:
                    return
                described.add(name)
                lines.append(f"# HELP {name} {help_text}")
                lines.append(f"# TYPE {name} {metric_type}")

            for counter in sorted(self._counters.values(), key=lambda c: c.name):
                describe(counter.name, counter.help, "counter")
                lines.append(f"{counter.name}{self._format_labels(counter.labels)} {counter.value}")

            for gauge in self._gauges.values():
                describe(gauge.name, gauge.help, "gauge")
                lines.append(f"{gauge.name}{self._format_labels(gauge.labels)} {gauge.value}")

            for histogram in self._histograms.values():
                describe(histogram.name, histogram.help, "histogram")
                labels_str = self._format_labels(histogram.labels)

                for bucket in histogram.buckets:
                    bucket_labels = {**histogram.labels, "le": str(bucket.le)}
                    bucket_labels_str = self._format_labels(bucket_labels)
                    lines.append(f"{histogram.name}_bucket{bucket_labels_str} {bucket.count}")

                lines.append(f"{histogram.name}_sum{labels_str} {histogram.sum}")
                lines.append(f"{histogram.name}_count{labels_str} {histogram.count}")

            return "\n".join(lines) + "\n"

    def _format_labels(self, labels: dict[str, str]) -> str:
        if not labels:
            return ""

        label_pairs = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(label_pairs) + "}"

    # === Summary statistics ===

    def get_summary(self) -> dict[str, float | None]:
        """Key metrics for dashboards and debugging."""
        with self._lock:
            handling = self._histograms["message_handling_seconds"]
            p95 = handling.quantile(0.95)

            relays = sum(c.value for c in self._counters.values() if c.name == "relays_total")
            errors = sum(c.value for c in self._counters.values() if c.name == "errors_total")

            return {
                "connections_active": self._gauges["connections_active"].value,
                "connections_total": self._counters["connections_total"].value,
                "rooms_active": self._gauges["rooms_active"].value,
                "joins_total": self._counters["joins_total"].value,
                "leaves_total": self._counters["leaves_total"].value,
                "relays_total": relays,
                "errors_total": errors,
                "heartbeat_terminations": self._counters["heartbeat_terminations_total"].value,
                "message_handling_p95_ms": p95 * 1000 if p95 is not None else None,
            }


# Global metrics collector singleton
_metrics_collector: MetricsCollector | None = None
_collector_lock = threading.Lock()


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector singleton.

    Thread-safety: Safe for concurrent access.
    """
    global _metrics_collector

    if _metrics_collector is None:
        with _collector_lock:
            if _metrics_collector is None:
                _metrics_collector = MetricsCollector()

    return _metrics_collector
