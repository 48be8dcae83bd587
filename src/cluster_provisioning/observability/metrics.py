"""Prometheus metrics for provisioning runs.

Counters are observational only: nothing in the client or the orchestrators
reads them back.

Usage::

    from cluster_provisioning.observability.metrics import ROLLBACKS_TOTAL

    ROLLBACKS_TOTAL.labels(orchestrator="sample_bucket", reason="stalled").inc()

A CLI run is short-lived, so instead of serving /metrics it can leave the
counters in a textfile for node_exporter's textfile collector
(``--metrics-file``).
"""

from __future__ import annotations

from prometheus_client import (
    REGISTRY,
    Counter,
    generate_latest,
    write_to_textfile,
)

# ---------------------------------------------------------------------------
# Transport client
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "cluster_provisioning_http_requests_total",
    "Management API requests by method and response status.",
    labelnames=["method", "status"],
    registry=REGISTRY,
)

HTTP_RETRIES_TOTAL = Counter(
    "cluster_provisioning_http_retries_total",
    "Requests re-issued after a transport failure, by failure kind.",
    labelnames=["reason"],
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Orchestrators
# ---------------------------------------------------------------------------

CONVERGENCE_POLLS_TOTAL = Counter(
    "cluster_provisioning_convergence_polls_total",
    "Progress polls issued while waiting for convergence.",
    labelnames=["orchestrator"],
    registry=REGISTRY,
)

ROLLBACKS_TOTAL = Counter(
    "cluster_provisioning_rollbacks_total",
    "Attempts abandoned and rolled back, by orchestrator and trigger.",
    labelnames=["orchestrator", "reason"],
    registry=REGISTRY,
)


def metrics_text() -> bytes:
    """Render the default registry in Prometheus exposition format."""
    return generate_latest(REGISTRY)


def write_metrics_file(path: str) -> None:
    """Atomically write the default registry to ``path`` (textfile collector format)."""
    write_to_textfile(path, REGISTRY)
