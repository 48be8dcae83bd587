"""Pytest configuration for cluster_provisioning tests."""
import sys
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import parse_qs

# Add src/ to path for src-layout imports
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import httpx
import pytest

from cluster_provisioning.api.client import TransportClient
from cluster_provisioning.provisioning.convergence import ConvergencePolicy
from cluster_provisioning.settings import ConnectionOptions


@dataclass(frozen=True)
class RecordedRequest:
    method: str
    host: str
    port: int | None
    path: str
    statement: str | None = None
    body: bytes = b''


def _default_topology(call_number):
    return {
        'nodesExt': [
            {
                'hostname': '10.0.0.3',
                'services': {
                    'mgmt': 8091,
                    'n1ql': 8093,
                    'n1qlSSL': 18093,
                    'fts': 8094,
                    'ftsSSL': 18094,
                },
            },
        ],
    }


class FakeCluster:
    """Scriptable stand-in for the management, search and query services.

    Count sources are called with the 1-based number of the poll.
    """

    def __init__(
        self,
        *,
        topology=_default_topology,
        index_count=lambda n: 1000,
        row_count=lambda n: 1000,
    ):
        self.topology = topology
        self.index_count = index_count
        self.row_count = row_count
        self.requests: list[RecordedRequest] = []
        self.topology_calls = 0
        self.index_polls = 0
        self.row_polls = 0
        self.installs = 0

    def handle(self, request: httpx.Request) -> httpx.Response:
        statement = None
        content_type = request.headers.get('content-type', '')
        if content_type.startswith('application/x-www-form-urlencoded'):
            form = parse_qs(request.content.decode())
            statement = form.get('statement', [None])[0]
        path = request.url.path
        self.requests.append(
            RecordedRequest(
                method=request.method,
                host=request.url.host,
                port=request.url.port,
                path=path,
                statement=statement,
                body=request.content,
            )
        )

        if request.method == 'GET' and path.startswith('/pools/default/b/'):
            self.topology_calls += 1
            return httpx.Response(200, json=self.topology(self.topology_calls))
        if request.method == 'GET' and path.endswith('/count'):
            self.index_polls += 1
            return httpx.Response(
                200, json={'status': 'ok', 'count': self.index_count(self.index_polls)}
            )
        if request.method in ('PUT', 'DELETE') and path.startswith('/api/index/'):
            return httpx.Response(200, json={'status': 'ok'})
        if request.method == 'POST' and path == '/sampleBuckets/install':
            self.installs += 1
            return httpx.Response(202, json=[])
        if request.method == 'DELETE' and path.startswith('/pools/default/buckets/'):
            return httpx.Response(200, text='')
        if request.method == 'POST' and path == '/query/service':
            if statement and statement.startswith('SELECT RAW COUNT(*)'):
                self.row_polls += 1
                return httpx.Response(
                    200,
                    json={'results': [self.row_count(self.row_polls)], 'status': 'success'},
                )
            return httpx.Response(200, json={'results': [], 'status': 'success'})
        return httpx.Response(404, text='not found')

    def client_factory(self, options: ConnectionOptions) -> TransportClient:
        return TransportClient(
            options,
            transport=httpx.MockTransport(self.handle),
            retry_delay=0,
        )

    def calls(self, method=None, path_prefix=''):
        return [
            r for r in self.requests
            if (method is None or r.method == method) and r.path.startswith(path_prefix)
        ]


@pytest.fixture
def options():
    return ConnectionOptions(
        host='127.0.0.1',
        port=8091,
        username='Administrator',
        password='s3cret',
        bucket='travel-sample',
    )


@pytest.fixture
def fast_policy():
    """Real timing semantics scaled down to milliseconds."""
    return ConvergencePolicy(
        poll_interval=0.001,
        stall_threshold=60,
        convergence_timeout=5.0,
        locate_timeout=0.05,
    )
