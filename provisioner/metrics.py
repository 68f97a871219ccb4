"""Prometheus metrics for the provisioner.

Records hypervisor API latency, reconciliation outcomes, retries and
readiness timeouts. A run is short-lived, so the CLI writes them to a file
for the node_exporter textfile collector with `write_metrics()`.
"""
from __future__ import annotations

from pathlib import Path

from prometheus_client import REGISTRY, Counter, Histogram, write_to_textfile

hypervisor_request_duration = Histogram(
    "provisioner_hypervisor_request_seconds",
    "Duration of hypervisor API calls",
    ["operation", "status"],
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
)

reconcile_duration = Histogram(
    "provisioner_reconcile_seconds",
    "Duration of a single resource reconciliation",
    ["desired", "outcome"],
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 900, float("inf")),
)

hypervisor_retries = Counter(
    "provisioner_retries_total",
    "Hypervisor calls retried after a transient error",
    ["operation"],
)

readiness_timeouts = Counter(
    "provisioner_readiness_timeouts_total",
    "Readiness waits that ran out of attempts",
)


def write_metrics(path: str | Path) -> None:
    """Write every metric to `path` in the text exposition format (atomic replace)."""
    write_to_textfile(str(path), REGISTRY)
