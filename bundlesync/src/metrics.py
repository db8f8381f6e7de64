from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile outcomes are labelled by ``action`` (created, updated,
    unchanged, skipped) and failures by ``reason`` so operators can tell
    RBAC problems from API flakiness without reading logs.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "bundlesync_reconcile_total",
            "Total successful reconciliations by resulting action",
            ["action"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "bundlesync_reconcile_errors_total",
            "Total failed reconciliations by error class",
            ["reason"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "bundlesync_reconcile_duration_seconds",
            "Seconds spent in a single namespace reconciliation",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    requeues_total: Counter = field(
        default_factory=lambda: Counter(
            "bundlesync_requeues_total",
            "Total namespace keys requeued with backoff after a failed reconciliation",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "bundlesync_queue_depth",
            "Current number of namespaces waiting to be reconciled",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "bundlesync_watch_errors_total",
            "Total Kubernetes watch errors",
            ["source"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "bundlesync_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["source"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "bundlesync_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "bundlesync_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "bundlesync_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "bundlesync",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
