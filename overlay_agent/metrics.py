"""Prometheus metrics for the overlay agent.

Exposes per-host convergence metrics: kernel table reconciliation, component
health, recovery attempts and reachability probes. The status API serves these
in Prometheus exposition format on ``/metrics``.
"""
from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

reconcile_duration = Histogram(
    "overlay_agent_reconcile_seconds",
    "Duration of a kernel table reconciliation pass",
    ["table"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
)

reconcile_operations = Counter(
    "overlay_agent_reconcile_operations_total",
    "Kernel table mutations applied by the reconciler",
    ["table", "op"],
)

reconcile_errors = Counter(
    "overlay_agent_reconcile_errors_total",
    "Kernel table mutations that failed",
    ["table"],
)

component_status = Gauge(
    "overlay_agent_component_status",
    "Component health (0=unknown, 1=healthy, 2=degraded, 3=critical)",
    ["component"],
)

recovery_attempts = Counter(
    "overlay_agent_recovery_attempts_total",
    "Recovery actions by level and outcome",
    ["level", "outcome"],
)

probe_results = Counter(
    "overlay_agent_probe_results_total",
    "Connectivity probe results",
    ["kind", "result"],
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
