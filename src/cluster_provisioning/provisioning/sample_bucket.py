"""Sample bucket provisioning.

Installs a bundled sample dataset, finds the node running the query service
for it, builds a primary index and waits until the bucket reports the
expected number of documents:

  install           POST /sampleBuckets/install ["<bucket>"]
  locate_service    topology polling for n1ql/n1qlSSL, bounded by locate_timeout
  locate_timed_out  bucket never came up; delete it and install again
  create_index      CREATE PRIMARY INDEX ... USING GSI (300s statement timeout)
  poll              SELECT RAW COUNT(*) once per interval, bounded by the
                    convergence deadline
  stalled/rollback  DROP PRIMARY INDEX, delete the bucket, install again
  timed_out         deadline hit without convergence or stall; fatal
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable
from urllib.parse import quote

from ..api.client import TransportClient
from ..errors import ConfigurationError, ConvergenceTimeoutError
from ..observability.logging import bind_run, get_logger
from ..observability.metrics import ROLLBACKS_TOTAL
from ..settings import ConnectionOptions
from .convergence import DEFAULT_POLICY, ConvergencePolicy, ConvergencePoller, Sleep, coerce_count
from .service_locator import ServiceAddress, locate_service
from .state_machine import SAMPLE_BUCKET, OrchestrationState, drive, start_run

logger = get_logger(__name__)

QUERY_SERVICE = 'n1ql'
QUERY_PATH = '/query/service'
INDEX_STATEMENT_TIMEOUT = '300s'

ClientFactory = Callable[[ConnectionOptions], TransportClient]


def quote_identifier(name: str) -> str:
    """Backtick-quote a keyspace name for a query statement."""
    return '`' + name.replace('`', '``') + '`'


def row_count(resp: Any) -> int:
    """First value of ``results`` from a query response; 0 if unusable."""
    if not isinstance(resp, dict):
        return 0
    results = resp.get('results')
    if not isinstance(results, list) or not results:
        return 0
    return coerce_count(results[0])


class SampleBucketOrchestrator:
    """Loads one sample bucket to convergence, rolling back on stalls."""

    def __init__(
        self,
        options: ConnectionOptions,
        *,
        expected_documents: int,
        bucket: str | None = None,
        policy: ConvergencePolicy = DEFAULT_POLICY,
        client_factory: ClientFactory = TransportClient,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        bucket = bucket or options.bucket
        if not bucket:
            raise ConfigurationError('a bucket name is required to load sample data')
        self._options = options
        self._bucket = bucket
        self._expected = expected_documents
        self._policy = policy
        self._client_factory = client_factory
        self._sleep = sleep

        self._management: TransportClient | None = None
        self._query: TransportClient | None = None
        self.service_address: ServiceAddress | None = None
        self._timeout_error: ConvergenceTimeoutError | None = None

    @property
    def bucket(self) -> str:
        return self._bucket

    async def run(self) -> OrchestrationState:
        """Load the bucket; returns the final snapshot on convergence.

        Raises:
            ConvergenceTimeoutError: the document count deadline expired.
        """
        handlers = {
            'install': self._install,
            'locate_service': self._locate_service,
            'locate_timed_out': self._locate_timed_out,
            'rollback_install': self._rollback_install,
            'create_index': self._create_index,
            'poll': self._poll,
            'stalled': self._stalled,
            'rollback': self._rollback,
        }
        with bind_run(SAMPLE_BUCKET, bucket=self._bucket):
            self._management = self._client_factory(self._options)
            try:
                run = await drive(start_run(SAMPLE_BUCKET, self._bucket), handlers)
            finally:
                await self._close_query()
                await self._management.aclose()
                self._management = None

            if self._timeout_error is not None:
                logger.error('convergence_timeout', error=str(self._timeout_error))
                raise self._timeout_error
            logger.info(
                'sample_bucket_ready',
                bucket=self._bucket,
                attempts=run.attempt,
                rollbacks=run.rollbacks,
            )
            return run

    # ── State handlers ───────────────────────────────────────────

    async def _install(self) -> str:
        await self._mgmt().post_json('/sampleBuckets/install', [self._bucket])
        return 'locate_service'

    async def _locate_service(self) -> str:
        try:
            async with asyncio.timeout(self._policy.locate_timeout):
                address = await locate_service(
                    self._mgmt(),
                    QUERY_SERVICE,
                    self._bucket,
                    self._options,
                    interval=self._policy.poll_interval,
                    sleep=self._sleep,
                )
        except TimeoutError:
            return 'locate_timed_out'

        self.service_address = address
        logger.info('query_service', host=address.host, port=address.port)
        await self._close_query()
        self._query = self._client_factory(
            self._options.with_address(address.host, address.port)
        )
        return 'create_index'

    async def _locate_timed_out(self) -> str:
        ROLLBACKS_TOTAL.labels(orchestrator=SAMPLE_BUCKET, reason='locate_timeout').inc()
        logger.warning(
            'query_service_not_found',
            bucket=self._bucket,
            timeout=self._policy.locate_timeout,
        )
        return 'rollback_install'

    async def _rollback_install(self) -> str:
        logger.warning('rollback', bucket=self._bucket, action='delete_bucket')
        await self._delete_bucket()
        await self._sleep(self._policy.poll_interval)
        return 'install'

    async def _create_index(self) -> str:
        logger.info('create_primary_index', bucket=self._bucket)
        await self._query_api().post_form(
            QUERY_PATH,
            {
                'statement': f'CREATE PRIMARY INDEX ON {quote_identifier(self._bucket)} USING GSI',
                'timeout': INDEX_STATEMENT_TIMEOUT,
            },
        )
        return 'poll'

    async def _poll(self) -> str:
        poller = ConvergencePoller(
            self._fetch_count,
            resource=f'bucket {self._bucket!r}',
            orchestrator=SAMPLE_BUCKET,
            expected=self._expected,
            policy=self._policy,
            sleep=self._sleep,
        )
        try:
            await poller.run()
        except ConvergenceTimeoutError as exc:
            self._timeout_error = exc
            return 'timed_out'
        return 'converged' if poller.converged() else 'stalled'

    async def _stalled(self) -> str:
        ROLLBACKS_TOTAL.labels(orchestrator=SAMPLE_BUCKET, reason='stalled').inc()
        logger.warning(
            'bucket_stalled',
            bucket=self._bucket,
            stall_threshold=self._policy.stall_threshold,
        )
        return 'rollback'

    async def _rollback(self) -> str:
        logger.warning('rollback', bucket=self._bucket, action='drop_index_delete_bucket')
        await self._query_api().post_form(
            QUERY_PATH,
            {'statement': f'DROP PRIMARY INDEX ON {quote_identifier(self._bucket)}'},
        )
        await self._delete_bucket()
        await self._close_query()
        await self._sleep(self._policy.poll_interval)
        return 'install'

    # ── Helpers ──────────────────────────────────────────────────

    async def _fetch_count(self) -> int:
        resp = await self._query_api().post_form(
            QUERY_PATH,
            {'statement': f'SELECT RAW COUNT(*) FROM {quote_identifier(self._bucket)}'},
        )
        return row_count(resp)

    async def _delete_bucket(self) -> None:
        await self._mgmt().delete(f'/pools/default/buckets/{quote(self._bucket, safe="")}')

    def _mgmt(self) -> TransportClient:
        if self._management is None:
            raise RuntimeError('management API client used outside run()')
        return self._management

    def _query_api(self) -> TransportClient:
        if self._query is None:
            raise RuntimeError('query API client used before the service was located')
        return self._query

    async def _close_query(self) -> None:
        if self._query is not None:
            query, self._query = self._query, None
            await query.aclose()
