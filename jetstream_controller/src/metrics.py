from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile counters carry an ``action`` label (``create``, ``update``,
    ``delete``, ``noop``) so operators can tell convergence work apart from
    idle resyncs.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "jetstream_stream_reconcile_total",
            "Total stream reconcile passes",
            ["action", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "jetstream_stream_reconcile_duration_seconds",
            "Seconds spent in a single stream reconcile pass",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "jetstream_stream_queue_depth",
            "Current number of keys ready to be processed",
            ["queue"],
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "jetstream_stream_retry_total",
            "Total keys requeued with backoff after a failed reconcile",
        )
    )
    dropped_keys_total: Counter = field(
        default_factory=lambda: Counter(
            "jetstream_stream_dropped_keys_total",
            "Total keys dropped without further retries",
            ["reason"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "jetstream_stream_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "jetstream_stream_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "jetstream_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
