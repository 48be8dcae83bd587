"""Resolve which cluster node serves a capability for a bucket.

The bucket topology document (``GET /pools/default/b/{bucket}``) lists nodes
under ``nodesExt``; each node maps service names to ports, with ``<name>SSL``
keys for the TLS ports. Nodes may omit ``hostname`` on single-node clusters,
in which case the management host is used.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from ..api.client import TransportClient
from ..observability.logging import get_logger
from ..settings import ConnectionOptions
from .convergence import Sleep, coerce_count

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ServiceAddress:
    host: str
    port: int


def service_port_key(service: str, strict_encryption: bool) -> str:
    """Topology key for a service: ``n1ql`` or ``n1qlSSL``."""
    return f'{service}SSL' if strict_encryption else service


def bucket_topology_path(bucket: str) -> str:
    return f'/pools/default/b/{quote(bucket, safe="")}'


def find_service_address(
    topology: Any,
    port_key: str,
    *,
    default_host: str,
) -> ServiceAddress | None:
    """Return the first node exposing ``port_key``, or None if none does yet.

    A malformed or missing topology document means "not yet", never an error.
    """
    if not isinstance(topology, dict):
        return None
    nodes = topology.get('nodesExt')
    if not isinstance(nodes, list):
        return None

    for node in nodes:
        if not isinstance(node, dict):
            continue
        services = node.get('services')
        if not isinstance(services, dict) or port_key not in services:
            continue
        port = coerce_count(services[port_key])
        if port == 0:
            return None
        return ServiceAddress(host=node.get('hostname') or default_host, port=port)
    return None


async def locate_service(
    api: TransportClient,
    service: str,
    bucket: str,
    options: ConnectionOptions,
    *,
    interval: float = 1.0,
    sleep: Sleep = asyncio.sleep,
) -> ServiceAddress:
    """Poll bucket topology until a node advertises ``service``.

    Loops without limit; wrap the call in a deadline.
    """
    port_key = service_port_key(service, options.strict_encryption)
    path = bucket_topology_path(bucket)
    attempts = 0
    while True:
        attempts += 1
        topology = await api.get(path)
        address = find_service_address(topology, port_key, default_host=options.host)
        await sleep(interval)
        if address is not None:
            logger.info(
                'service_located',
                service=port_key,
                bucket=bucket,
                host=address.host,
                port=address.port,
                attempts=attempts,
            )
            return address
        logger.debug('service_not_found', service=port_key, bucket=bucket, attempts=attempts)
