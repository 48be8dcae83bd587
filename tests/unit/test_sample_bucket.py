"""SampleBucketOrchestrator tests against a fake cluster."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest
from prometheus_client import REGISTRY

from conftest import FakeCluster
from cluster_provisioning.errors import ConfigurationError, ConvergenceTimeoutError
from cluster_provisioning.provisioning.convergence import ConvergencePolicy
from cluster_provisioning.provisioning.sample_bucket import (
    SampleBucketOrchestrator,
    quote_identifier,
    row_count,
)
from cluster_provisioning.settings import ConnectionOptions

BUCKET_PATH = '/pools/default/buckets/travel-sample'
COUNT = 'SELECT RAW COUNT(*) FROM `travel-sample`'
CREATE = 'CREATE PRIMARY INDEX ON `travel-sample` USING GSI'
DROP = 'DROP PRIMARY INDEX ON `travel-sample`'


def _orchestrator(cluster, options, *, expected=1000, policy=None, sleep=None):
    return SampleBucketOrchestrator(
        options,
        expected_documents=expected,
        client_factory=cluster.client_factory,
        policy=policy or ConvergencePolicy(),
        sleep=sleep or AsyncMock(),
    )


def _significant(cluster):
    """Request trail without the topology polling noise."""
    trail = []
    for r in cluster.requests:
        if r.path.startswith('/pools/default/b/'):
            continue
        trail.append(r.statement or (r.method, r.path))
    return trail


@pytest.mark.parametrize(
    ('resp', 'expected'),
    [
        ({'results': [31591], 'status': 'success'}, 31591),
        ({'results': []}, 0),
        ({'results': None}, 0),
        ({'errors': [{'code': 12003, 'msg': 'Keyspace not found'}]}, 0),
        ('Service Unavailable', 0),
        ({'results': ['17']}, 17),
    ],
)
def test_row_count(resp, expected):
    assert row_count(resp) == expected


def test_quote_identifier():
    assert quote_identifier('travel-sample') == '`travel-sample`'
    assert quote_identifier('we`ird') == '`we``ird`'


def test_bucket_is_required():
    with pytest.raises(ConfigurationError, match='bucket'):
        SampleBucketOrchestrator(ConnectionOptions(), expected_documents=10)


def test_explicit_bucket_overrides_options(options):
    orchestrator = SampleBucketOrchestrator(options, bucket='beer-sample', expected_documents=10)
    assert orchestrator.bucket == 'beer-sample'


@pytest.mark.asyncio
async def test_happy_path(options):
    topologies = [
        {'nodesExt': []},
        {
            'nodesExt': [
                {'hostname': '10.0.0.2', 'services': {'mgmt': 8091, 'kv': 11210}},
                {'hostname': '10.0.0.3', 'services': {'mgmt': 8091, 'n1ql': 8093}},
            ]
        },
    ]
    cluster = FakeCluster(
        topology=lambda n: topologies[min(n, 2) - 1],
        row_count=lambda n: min(n * 100, 1000),
    )
    orchestrator = _orchestrator(cluster, options)

    run = await orchestrator.run()

    assert run.state == 'converged'
    assert run.rollbacks == 0
    assert orchestrator.service_address.host == '10.0.0.3'
    assert orchestrator.service_address.port == 8093
    assert cluster.row_polls == 10

    install = cluster.calls('POST', '/sampleBuckets/install')
    assert len(install) == 1
    assert json.loads(install[0].body) == ['travel-sample']
    assert (install[0].host, install[0].port) == ('127.0.0.1', 8091)

    queries = cluster.calls('POST', '/query/service')
    assert all((q.host, q.port) == ('10.0.0.3', 8093) for q in queries)
    assert queries[0].statement == CREATE
    assert 'timeout=300s' in queries[0].body.decode()
    assert all(q.statement == COUNT for q in queries[1:])


@pytest.mark.asyncio
async def test_tls_locates_ssl_port():
    tls_options = ConnectionOptions(
        host='127.0.0.1', port=18091, strict_encryption=True, bucket='travel-sample'
    )
    cluster = FakeCluster()

    orchestrator = _orchestrator(cluster, tls_options)
    await orchestrator.run()

    assert orchestrator.service_address.port == 18093
    assert cluster.calls('POST', '/query/service')[0].port == 18093


@pytest.mark.asyncio
async def test_stall_drops_index_then_deletes_bucket_then_reinstalls(options):
    cluster = FakeCluster(row_count=lambda n: 0 if n <= 60 else 1000)
    sleep = AsyncMock()

    run = await _orchestrator(cluster, options, sleep=sleep).run()

    assert run.state == 'converged'
    assert run.rollbacks == 1
    assert run.attempt == 2
    assert cluster.installs == 2
    assert _significant(cluster) == (
        [('POST', '/sampleBuckets/install'), CREATE]
        + [COUNT] * 60
        + [DROP, ('DELETE', BUCKET_PATH)]
        + [('POST', '/sampleBuckets/install'), CREATE, COUNT]
    )


@pytest.mark.asyncio
async def test_fifty_nine_zero_polls_converge_without_rollback(options):
    cluster = FakeCluster(row_count=lambda n: 0 if n <= 59 else 1000)

    run = await _orchestrator(cluster, options).run()

    assert run.rollbacks == 0
    assert cluster.installs == 1
    assert DROP not in _significant(cluster)
    assert cluster.calls('DELETE') == []


@pytest.mark.asyncio
async def test_malformed_counts_fold_into_stall_detection(options):
    cluster = FakeCluster(row_count=lambda n: 'pending' if n <= 60 else 1000)

    run = await _orchestrator(cluster, options).run()

    assert run.rollbacks == 1


@pytest.mark.asyncio
async def test_locate_timeout_deletes_bucket_and_reinstalls(options, fast_policy):
    cluster = FakeCluster()
    # No query node until the bucket has been installed a second time.
    cluster.topology = lambda n: (
        {'nodesExt': [{'hostname': '10.0.0.3', 'services': {'n1ql': 8093}}]}
        if cluster.installs >= 2
        else {'nodesExt': [{'hostname': '10.0.0.3', 'services': {'mgmt': 8091}}]}
    )
    before = REGISTRY.get_sample_value(
        'cluster_provisioning_rollbacks_total',
        {'orchestrator': 'sample_bucket', 'reason': 'locate_timeout'},
    ) or 0.0

    orchestrator = SampleBucketOrchestrator(
        options,
        expected_documents=1000,
        client_factory=cluster.client_factory,
        policy=fast_policy,
    )
    run = await orchestrator.run()

    after = REGISTRY.get_sample_value(
        'cluster_provisioning_rollbacks_total',
        {'orchestrator': 'sample_bucket', 'reason': 'locate_timeout'},
    )
    assert run.state == 'converged'
    assert run.rollbacks == 1
    assert after - before == 1
    trail = _significant(cluster)
    assert trail[:3] == [
        ('POST', '/sampleBuckets/install'),
        ('DELETE', BUCKET_PATH),
        ('POST', '/sampleBuckets/install'),
    ]
    # Nothing was created on the query service before the bucket came up.
    assert DROP not in trail
    assert trail.count(CREATE) == 1


@pytest.mark.asyncio
async def test_count_deadline_is_fatal(options):
    cluster = FakeCluster(row_count=lambda n: 12)
    policy = ConvergencePolicy(poll_interval=0.001, convergence_timeout=0.05)
    orchestrator = SampleBucketOrchestrator(
        options,
        expected_documents=31591,
        client_factory=cluster.client_factory,
        policy=policy,
    )

    with pytest.raises(ConvergenceTimeoutError) as exc_info:
        await orchestrator.run()

    assert "bucket 'travel-sample'" in str(exc_info.value)
    assert exc_info.value.expected_count == 31591
    assert cluster.installs == 1
    assert cluster.calls('DELETE') == []
