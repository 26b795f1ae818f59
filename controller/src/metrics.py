from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Pass outcomes are labelled by ``result`` so operators can alert on the
    ratio of failed to applied passes without parsing policy status.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "tracing_controller_reconcile_total",
            "Total reconcile passes by outcome",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "tracing_controller_reconcile_duration_seconds",
            "Wall-clock duration of reconcile passes",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, float("inf")),
        )
    )
    config_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "tracing_controller_config_writes_total",
            "Derived ConfigMap reconciliations by action",
            ["action"],
        )
    )
    workload_patches_total: Counter = field(
        default_factory=lambda: Counter(
            "tracing_controller_workload_patches_total",
            "Matched deployments processed by the workload patcher, by result",
            ["result"],
        )
    )
    status_write_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "tracing_controller_status_write_errors_total",
            "Total failed policy status writes",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "tracing_controller_queue_depth",
            "Policy keys waiting in the work queue, including delayed requeues",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "tracing_controller_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "tracing_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "tracing_controller_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "tracing_controller_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "tracing_controller_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "tracing_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
