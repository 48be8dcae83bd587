"""Command-line entry point.

Usage:
    # Connection options come from CB_* environment variables
    export CB_HOST=10.0.0.5 CB_USERNAME=Administrator CB_PASSWORD=secret

    python -m cluster_provisioning sample-bucket --bucket travel-sample \
        --expected-documents 31591
    python -m cluster_provisioning search-index --bucket travel-sample \
        --definition travel-sample-index.json --expected-documents 1000

The search index is created on the search service, located through the
bucket topology. --search-port (with optional --search-host) pins it instead.

Exit codes:
    0  converged
    1  invalid configuration or index definition
    2  convergence or service-location deadline expired (the cluster is not
       healthy)
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Sequence

from .errors import ConfigurationError, ConvergenceTimeoutError, ServiceNotFoundError
from .observability.logging import configure_logging, get_logger
from .observability.metrics import write_metrics_file
from .provisioning.sample_bucket import SampleBucketOrchestrator
from .provisioning.search_index import (
    DEFAULT_EXPECTED_DOCUMENTS,
    DEFAULT_INDEX_NAME,
    SearchIndexOrchestrator,
)
from .provisioning.service_locator import ServiceAddress
from .settings import ConnectionOptions

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_TIMEOUT = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cluster_provisioning",
        description="Provision sample data and search indexes on a cluster.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="DEBUG, INFO, WARNING or ERROR (default: LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--log-format",
        choices=("console", "json"),
        default=None,
        help="log renderer (default: LOG_FORMAT or console)",
    )
    parser.add_argument(
        "--metrics-file",
        default=None,
        help="write Prometheus counters here when the run ends (textfile collector format)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sample = sub.add_parser("sample-bucket", help="install a sample bucket and wait for it")
    sample.add_argument("--bucket", default=None, help="sample bucket name (default: CB_BUCKET)")
    sample.add_argument("--expected-documents", type=int, required=True)

    search = sub.add_parser("search-index", help="create a search index and wait for it")
    search.add_argument("--definition", required=True, help="path to the index definition JSON")
    search.add_argument("--index-name", default=DEFAULT_INDEX_NAME)
    search.add_argument(
        "--expected-documents", type=int, default=DEFAULT_EXPECTED_DOCUMENTS
    )
    search.add_argument(
        "--bucket",
        default=None,
        help="bucket whose topology names the search service (default: CB_BUCKET)",
    )
    search.add_argument(
        "--search-host",
        default=None,
        help="search service host (default: CB_HOST); needs --search-port",
    )
    search.add_argument(
        "--search-port",
        type=int,
        default=None,
        help="search service port; skips the topology lookup",
    )
    return parser


def _build_orchestrator(
    args: argparse.Namespace, options: ConnectionOptions
) -> SampleBucketOrchestrator | SearchIndexOrchestrator:
    if args.command == "sample-bucket":
        return SampleBucketOrchestrator(
            options,
            bucket=args.bucket,
            expected_documents=args.expected_documents,
        )
    search_address = None
    if args.search_port is not None:
        search_address = ServiceAddress(args.search_host or options.host, args.search_port)
    elif args.search_host is not None:
        raise ConfigurationError("--search-host needs --search-port")
    return SearchIndexOrchestrator(
        options,
        bucket=args.bucket,
        search_address=search_address,
        definition_path=args.definition,
        index_name=args.index_name,
        expected_documents=args.expected_documents,
    )


def main(argv: Sequence[str] | None = None, *, env: dict[str, str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    json_output = None if args.log_format is None else args.log_format == "json"
    configure_logging(level=args.log_level, json_output=json_output)

    try:
        options = ConnectionOptions.from_env(env).require_valid()
        orchestrator = _build_orchestrator(args, options)
    except ConfigurationError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    try:
        asyncio.run(orchestrator.run())
    except (ConvergenceTimeoutError, ServiceNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_TIMEOUT
    except (OSError, ValueError) as exc:
        # Unreadable or malformed index definition file.
        logger.error("provisioning_failed", error=str(exc))
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    finally:
        if args.metrics_file:
            write_metrics_file(args.metrics_file)
            logger.info("metrics_written", path=args.metrics_file)
    return EXIT_OK
