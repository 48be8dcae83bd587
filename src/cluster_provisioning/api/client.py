"""Async HTTP client for the cluster management API.

Provides GET, form POST, JSON POST/PUT and DELETE against one host:port with
HTTP basic auth. Responses are decoded by content type: JSON bodies are parsed,
everything else is returned as text.

The client never surfaces transport failures. A connection the server has
dropped is replaced and the request re-issued immediately; any other transport
failure is logged and the request re-issued after ``retry_delay`` seconds.
There is no retry cap: callers bound a request by cancelling it, typically
from an enclosing ``asyncio.timeout()``.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

import httpx

from ..observability.logging import get_logger
from ..observability.metrics import HTTP_REQUESTS_TOTAL, HTTP_RETRIES_TOTAL
from ..settings import ConnectionOptions

logger = get_logger(__name__)

_DEFAULT_RETRY_DELAY = 1.0  # seconds
_DEFAULT_TIMEOUT = 330.0  # seconds; above the 300s statement timeout used for index builds

# Raised when the server closed a kept-alive connection under us.
_DEAD_CONNECTION_ERRORS: tuple[type[Exception], ...] = (httpx.RemoteProtocolError,)


@dataclass(frozen=True, slots=True)
class ApiResponse:
    """Decoded management API response."""

    status_code: int
    content_type: str
    payload: Any


def decode_response(response: httpx.Response) -> ApiResponse:
    """Decode a response body according to its content type.

    Raises ValueError when a JSON content type carries an unparseable body.
    """
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        payload = response.json()
    else:
        payload = response.text
    return ApiResponse(
        status_code=response.status_code,
        content_type=content_type,
        payload=payload,
    )


class TransportClient:
    """Resilient client bound to ``(host, port, strict_encryption)``.

    Construct a new client (see ``ConnectionOptions.with_address``) to talk to
    another service endpoint; a client is never re-pointed.
    """

    def __init__(
        self,
        options: ConnectionOptions,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_delay: float = _DEFAULT_RETRY_DELAY,
        timeout_seconds: float = _DEFAULT_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._options = options
        self._transport = transport
        self._retry_delay = retry_delay
        self._timeout = float(timeout_seconds)
        self._sleep = sleep
        self._client = self._connect()

    @property
    def options(self) -> ConnectionOptions:
        return self._options

    def _connect(self) -> httpx.AsyncClient:
        opts = self._options
        logger.info(
            "connect",
            host=opts.host,
            port=opts.port,
            tls=opts.strict_encryption,
        )
        kwargs: dict[str, Any] = {}
        if opts.strict_encryption:
            # Provisioning targets run with self-signed certificates.
            kwargs["verify"] = False
        return httpx.AsyncClient(
            base_url=opts.base_url,
            auth=httpx.BasicAuth(opts.username, opts.password),
            headers={"Accept": "application/json"},
            timeout=self._timeout,
            transport=self._transport,
            **kwargs,
        )

    async def _reconnect(self) -> None:
        stale = self._client
        self._client = self._connect()
        if self._transport is None:
            await stale.aclose()
        # else: the injected transport now serves the new client; leave it open.

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> TransportClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ── Request loop ─────────────────────────────────────────────

    async def send(
        self,
        method: str,
        path: str,
        *,
        form: Mapping[str, str] | None = None,
        json_body: Any | None = None,
    ) -> ApiResponse:
        """Issue a request, retrying until a response is decoded.

        Serialization errors in ``json_body`` are the caller's bug and
        propagate before anything is sent.
        """
        headers: dict[str, str] = {}
        content: str | None = None
        if json_body is not None:
            content = json.dumps(json_body)
            headers["Content-Type"] = "application/json"

        url = self._options.display_url(path)
        logger.info(
            "http_request",
            method=method,
            url=url,
            body=content if content is not None else form,
        )

        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self._client.request(
                    method,
                    path,
                    content=content,
                    data=form,
                    headers=headers,
                )
                decoded = decode_response(response)
            except _DEAD_CONNECTION_ERRORS as exc:
                HTTP_RETRIES_TOTAL.labels(reason="reconnect").inc()
                logger.info(
                    "http_reconnect",
                    method=method,
                    url=url,
                    attempt=attempt,
                    error=str(exc),
                )
                await self._reconnect()
                continue
            except (httpx.RequestError, ValueError) as exc:
                HTTP_RETRIES_TOTAL.labels(reason=type(exc).__name__).inc()
                logger.warning(
                    "http_retry",
                    method=method,
                    url=url,
                    attempt=attempt,
                    error=f"{type(exc).__name__}: {exc}",
                    delay=self._retry_delay,
                )
                await self._sleep(self._retry_delay)
                continue

            HTTP_REQUESTS_TOTAL.labels(
                method=method, status=str(decoded.status_code)
            ).inc()
            if self._options.verbose:
                logger.info(
                    "http_response",
                    method=method,
                    url=url,
                    status=decoded.status_code,
                    payload=decoded.payload,
                )
            return decoded

    async def request(
        self,
        method: str,
        path: str,
        *,
        form: Mapping[str, str] | None = None,
        json_body: Any | None = None,
    ) -> Any:
        """Issue a request and return only the decoded payload."""
        response = await self.send(method, path, form=form, json_body=json_body)
        return response.payload

    # ── Verb helpers ─────────────────────────────────────────────

    async def get(self, path: str) -> Any:
        return await self.request("GET", path)

    async def post_form(self, path: str, fields: Mapping[str, str]) -> Any:
        return await self.request("POST", path, form=fields)

    async def post_json(self, path: str, obj: Any) -> Any:
        return await self.request("POST", path, json_body=obj)

    async def put_json(self, path: str, obj: Any) -> Any:
        return await self.request("PUT", path, json_body=obj)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)
