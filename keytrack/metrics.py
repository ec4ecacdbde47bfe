"""
Prometheus metrics for the overdue lifecycle.

Counters live in a module-level registry so an operator can alert on
failed security notifications and per-record failures.
"""
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest

registry = CollectorRegistry()

lifecycle_runs_total = Counter(
    "keytrack_lifecycle_runs_total",
    "Overdue lifecycle runs by outcome",
    ["outcome"],
    registry=registry,
)

lifecycle_transitions_total = Counter(
    "keytrack_lifecycle_transitions_total",
    "Status transitions applied by the lifecycle processor",
    ["transition"],
    registry=registry,
)

lifecycle_record_failures_total = Counter(
    "keytrack_lifecycle_record_failures_total",
    "Records whose update failed during a lifecycle run",
    registry=registry,
)

lifecycle_skipped_total = Counter(
    "keytrack_lifecycle_skipped_total",
    "Transitions skipped because the record changed after it was read",
    registry=registry,
)

notification_failures_total = Counter(
    "keytrack_notification_failures_total",
    "Notifications the notifier failed to deliver",
    ["kind"],
    registry=registry,
)


def record_run(outcome: str) -> None:
    lifecycle_runs_total.labels(outcome=outcome).inc()


def record_transition(from_status: str, to_status: str) -> None:
    lifecycle_transitions_total.labels(transition=f"{from_status}->{to_status}").inc()


def record_record_failure() -> None:
    lifecycle_record_failures_total.inc()


def record_skipped() -> None:
    lifecycle_skipped_total.inc()


def record_notification_failure(kind: str) -> None:
    notification_failures_total.labels(kind=kind).inc()


def get_metrics_response():
    """Return (body, content_type) for the /metrics endpoint."""
    return generate_latest(registry), CONTENT_TYPE_LATEST
