"""Logging and metrics for provisioning runs.

Quick start::

    from cluster_provisioning.observability import configure_logging, get_logger

    configure_logging(json_output=False)
    logger = get_logger(__name__)
    logger.info("rollback", bucket="travel-sample", reason="stalled")
"""

from .logging import bind_run, configure_logging, get_logger
from .metrics import metrics_text, write_metrics_file

__all__ = [
    "bind_run",
    "configure_logging",
    "get_logger",
    "metrics_text",
    "write_metrics_file",
]
