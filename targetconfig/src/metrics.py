from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the target config controller on ``/metrics``.

    Sub-reconciler failures carry a ``step`` label matching the name used in
    the degraded condition message, so an alert can point at the failing
    resource without parsing the condition text.
    """

    sync_total: Counter = field(
        default_factory=lambda: Counter(
            "target_config_sync_total",
            "Total reconcile cycles by outcome",
            ["result"],
        )
    )
    sync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "target_config_sync_duration_seconds",
            "Seconds spent in a single reconcile cycle",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
        )
    )
    step_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "target_config_step_failures_total",
            "Total sub-reconciler failures",
            ["step"],
        )
    )
    resources_applied_total: Counter = field(
        default_factory=lambda: Counter(
            "target_config_resources_applied_total",
            "Total managed resources written by the apply layer",
            ["kind", "action"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "target_config_queue_depth",
            "Whether a reconcile is currently queued (1=yes, 0=no)",
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "target_config_queue_retries_total",
            "Total rate-limited requeues after failed cycles",
        )
    )
    signer_wait_seconds: Gauge = field(
        default_factory=lambda: Gauge(
            "target_config_signer_wait_seconds",
            "Delay of the most recently scheduled signer promotion requeue",
        )
    )
    signer_promotions_total: Counter = field(
        default_factory=lambda: Counter(
            "target_config_signer_promotions_total",
            "Total signer promotions that changed the deployed signer",
        )
    )
    notifications_total: Counter = field(
        default_factory=lambda: Counter(
            "target_config_notifications_total",
            "Total change notifications received from watch sources",
            ["source"],
        )
    )
    tombstones_dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "target_config_tombstones_dropped_total",
            "Total delete notifications dropped because the object could not be identified",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "target_config_watch_errors_total",
            "Total Kubernetes watch errors",
            ["source"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "target_config_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["source"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "target_config_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
