"""
Prometheus metrics for the operator.
"""
from prometheus_client import Counter, Histogram, start_http_server

from kubedb_operator.config.logging import get_logger

logger = get_logger(__name__)

reconcile_total = Counter(
    "kubedb_operator_reconcile_total",
    "Reconcile operations by resource kind, action and result",
    ["kind", "action", "result"],
)

reconcile_duration_seconds = Histogram(
    "kubedb_operator_reconcile_duration_seconds",
    "Reconcile operation duration in seconds",
    ["kind", "action"],
    buckets=(0.1, 0.5, 1, 5, 15, 30, 60, 300, 900, 1800),
)

phase_transitions_total = Counter(
    "kubedb_operator_phase_transitions_total",
    "Phase changes written by the operator",
    ["kind", "phase"],
)

advisory_failures_total = Counter(
    "kubedb_operator_advisory_failures_total",
    "Best-effort side effects that failed without failing their operation",
    ["action"],
)

requeues_total = Counter(
    "kubedb_operator_requeues_total",
    "Work items requeued after a retriable failure",
    ["kind"],
)


def start_metrics_server(port: int) -> None:
    """Expose /metrics on the given port (background thread)."""
    start_http_server(port)
    logger.info("metrics_server_started", port=port)
