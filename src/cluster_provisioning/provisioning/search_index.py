"""Search index provisioning.

Installs a search index from a JSON definition file and waits until it has
indexed the expected number of documents:

  submit     locate the search service (``fts``) from the bucket topology,
             then PUT /api/index/{name} with the definition (re-read every
             attempt) against that service
  poll       GET /api/index/{name}/count once per interval, bounded by the
             convergence deadline
  stalled    the count stayed at zero for ``stall_threshold`` polls
  rollback   DELETE /api/index/{name}, then submit again
  timed_out  deadline hit without convergence or stall; raised to the caller

A fixed ``search_address`` skips the topology lookup.
"""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Callable
from urllib.parse import quote

from ..api.client import TransportClient
from ..errors import ConfigurationError, ConvergenceTimeoutError, ServiceNotFoundError
from ..observability.logging import bind_run, get_logger
from ..observability.metrics import ROLLBACKS_TOTAL
from ..settings import ConnectionOptions
from .convergence import DEFAULT_POLICY, ConvergencePolicy, ConvergencePoller, Sleep, coerce_count
from .service_locator import ServiceAddress, locate_service
from .state_machine import SEARCH_INDEX, OrchestrationState, drive, start_run

logger = get_logger(__name__)

DEFAULT_INDEX_NAME = 'travel-sample-index'
DEFAULT_EXPECTED_DOCUMENTS = 1000
SEARCH_SERVICE = 'fts'

ClientFactory = Callable[[ConnectionOptions], TransportClient]


def load_index_definition(path: Path) -> Any:
    """Read the index definition; its schema is the server's business."""
    with open(path, encoding='utf-8') as f:
        return json.load(f)


class SearchIndexOrchestrator:
    """Drives one search index to convergence, rolling back on stalls.

    ``options`` address the management API. The index itself lives on the
    search service, found through ``bucket``'s topology unless
    ``search_address`` pins it.
    """

    def __init__(
        self,
        options: ConnectionOptions,
        *,
        definition_path: Path | str,
        index_name: str = DEFAULT_INDEX_NAME,
        expected_documents: int = DEFAULT_EXPECTED_DOCUMENTS,
        bucket: str | None = None,
        search_address: ServiceAddress | None = None,
        policy: ConvergencePolicy = DEFAULT_POLICY,
        client_factory: ClientFactory = TransportClient,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        bucket = bucket or options.bucket
        if search_address is None and not bucket:
            raise ConfigurationError(
                'a bucket name (or an explicit search service address) is required '
                'to find the search service'
            )
        self._options = options
        self._definition_path = Path(definition_path)
        self._index_name = index_name
        self._expected = expected_documents
        self._bucket = bucket
        self._fixed_address = search_address
        self._policy = policy
        self._client_factory = client_factory
        self._sleep = sleep

        self._api: TransportClient | None = None
        self.service_address: ServiceAddress | None = search_address
        self._timeout_error: ConvergenceTimeoutError | None = None

    @property
    def bucket(self) -> str | None:
        return self._bucket

    @property
    def index_path(self) -> str:
        return f'/api/index/{quote(self._index_name, safe="")}'

    async def run(self) -> OrchestrationState:
        """Provision the index; returns the final snapshot on convergence.

        Raises:
            ConvergenceTimeoutError: the convergence deadline expired.
            ServiceNotFoundError: no node advertised the search service in time.
        """
        handlers = {
            'submit': self._submit,
            'poll': self._poll,
            'stalled': self._stalled,
            'rollback': self._rollback,
        }
        with bind_run(SEARCH_INDEX, index=self._index_name):
            try:
                run = await drive(start_run(SEARCH_INDEX, self._index_name), handlers)
            finally:
                await self._close_api()

            if self._timeout_error is not None:
                logger.error('convergence_timeout', error=str(self._timeout_error))
                raise self._timeout_error
            logger.info(
                'search_index_ready',
                index=self._index_name,
                attempts=run.attempt,
                rollbacks=run.rollbacks,
            )
            return run

    # ── State handlers ───────────────────────────────────────────

    async def _submit(self) -> str:
        await self._close_api()
        logger.info('using_index_definition', definition=self._definition_path.name)
        definition = load_index_definition(self._definition_path)
        address = await self._search_service_address()
        self.service_address = address
        self._api = self._client_factory(self._options.with_address(address.host, address.port))
        await self._api.put_json(self.index_path, definition)
        return 'poll'

    async def _poll(self) -> str:
        poller = ConvergencePoller(
            self._fetch_count,
            resource=f'search index {self._index_name!r}',
            orchestrator=SEARCH_INDEX,
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
        ROLLBACKS_TOTAL.labels(orchestrator=SEARCH_INDEX, reason='stalled').inc()
        logger.warning(
            'index_stalled',
            index=self._index_name,
            stall_threshold=self._policy.stall_threshold,
        )
        return 'rollback'

    async def _rollback(self) -> str:
        logger.warning('rollback', index=self._index_name, action='delete_index')
        await self._require_api().delete(self.index_path)
        return 'submit'

    # ── Helpers ──────────────────────────────────────────────────

    async def _fetch_count(self) -> int:
        resp = await self._require_api().get(f'{self.index_path}/count')
        if not isinstance(resp, dict):
            return 0
        return coerce_count(resp.get('count'))

    def _require_api(self) -> TransportClient:
        if self._api is None:
            raise RuntimeError('search index API client used before submit')
        return self._api

    async def _close_api(self) -> None:
        if self._api is not None:
            api, self._api = self._api, None
            await api.aclose()

    async def _search_service_address(self) -> ServiceAddress:
        if self._fixed_address is not None:
            return self._fixed_address
        started = time.monotonic()
        management = self._client_factory(self._options)
        try:
            async with asyncio.timeout(self._policy.locate_timeout):
                address = await locate_service(
                    management,
                    SEARCH_SERVICE,
                    self._bucket,
                    self._options,
                    interval=self._policy.poll_interval,
                    sleep=self._sleep,
                )
        except TimeoutError:
            raise ServiceNotFoundError(
                SEARCH_SERVICE,
                self._bucket,
                elapsed_seconds=time.monotonic() - started,
            ) from None
        finally:
            await management.aclose()
        logger.info('search_service', host=address.host, port=address.port)
        return address
