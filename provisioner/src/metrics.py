from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ProvisionerMetrics:
    """Prometheus metrics exported by the provisioner on ``/metrics``.

    Reconcile outcomes are labelled by the condition reason that was
    reported, so alerts can tell "waiting for unpack" apart from real
    apply failures.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "plain_provisioner_reconcile_total",
            "Total reconciliation passes by outcome",
            ["result"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "plain_provisioner_reconcile_errors_total",
            "Total failed reconciliation passes by condition reason",
            ["reason"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "plain_provisioner_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation pass",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, float("inf")),
        )
    )
    release_operations_total: Counter = field(
        default_factory=lambda: Counter(
            "plain_provisioner_release_operations_total",
            "Total release backend operations",
            ["operation", "result"],
        )
    )
    dynamic_watches: Gauge = field(
        default_factory=lambda: Gauge(
            "plain_provisioner_dynamic_watches",
            "Number of resource kinds with an established dynamic watch",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "plain_provisioner_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "plain_provisioner_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "plain_provisioner_queue_depth",
            "Current number of InstallationRequest keys waiting for a worker",
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "plain_provisioner_retry_total",
            "Total reconciliation retries scheduled with backoff",
        )
    )
    status_patch_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "plain_provisioner_status_patch_failures_total",
            "Total best-effort status patches that failed",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "plain_provisioner",
            "Build information for the provisioner",
        )
    )


METRICS = ProvisionerMetrics()
