"""
Prometheus metrics collection.

In-memory counters for the shipping pipeline. Each shipper gets its own
registry unless one is passed in, so several shippers (or tests) can live in
one process without duplicate metric names.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class ShipperMetrics:
    """
    Centralized metrics collection for the log shipper.

    Keep metrics simple, use in-memory counters, let Prometheus handle storage.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        self.records_enqueued_total = Counter(
            "logship_records_enqueued_total",
            "Total log records accepted into the queue",
            registry=self.registry,
        )

        self.records_dropped_total = Counter(
            "logship_records_dropped_total",
            "Total log records discarded before delivery",
            ["reason"],
            registry=self.registry,
        )

        self.records_delivered_total = Counter(
            "logship_records_delivered_total",
            "Total log records accepted by the ingestion service",
            registry=self.registry,
        )

        self.batches_sent_total = Counter(
            "logship_batches_sent_total",
            "Total batches delivered successfully",
            registry=self.registry,
        )

        self.batches_failed_total = Counter(
            "logship_batches_failed_total",
            "Total batches dropped after a delivery failure",
            ["kind"],
            registry=self.registry,
        )

        self.send_attempts_total = Counter(
            "logship_send_attempts_total",
            "Total HTTP send attempts, including retries",
            registry=self.registry,
        )

        self.queue_depth = Gauge(
            "logship_queue_depth",
            "Records currently buffered",
            registry=self.registry,
        )

        self.flush_duration = Histogram(
            "logship_flush_duration_seconds",
            "Time spent delivering one flush",
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry,
        )

    def record_enqueued(self, depth: int) -> None:
        self.records_enqueued_total.inc()
        self.queue_depth.set(depth)

    def record_dropped(self, reason: str, count: int = 1) -> None:
        """Record discarded records by reason (queue_full, closed, oversized, ...)."""
        if count > 0:
            self.records_dropped_total.labels(reason=reason).inc(count)

    def record_send_attempt(self) -> None:
        self.send_attempts_total.inc()

    def record_batch_delivered(self, records: int) -> None:
        self.batches_sent_total.inc()
        self.records_delivered_total.inc(records)

    def record_batch_failed(self, kind: str, records: int) -> None:
        self.batches_failed_total.labels(kind=kind).inc()
        self.record_dropped("delivery_failed", records)

    def update_queue_depth(self, depth: int) -> None:
        self.queue_depth.set(depth)

    def observe_flush(self, duration_seconds: float) -> None:
        self.flush_duration.observe(duration_seconds)

    def value(self, name: str, **labels: str) -> float:
        """Current value of a sample, 0.0 when it has not been recorded yet."""
        sample = self.registry.get_sample_value(name, labels or None)
        return sample if sample is not None else 0.0
