"""Request manager for handling HTTP requests.

This module provides AsyncRequestManager, which encapsulates the httpx
clients and turns raw HTTP exchanges into Response objects.

The request manager is responsible for:
- Maintaining one httpx.AsyncClient per proxy endpoint
- Converting HTTP responses to Response objects
- Translating timeouts, connection errors and 5xx statuses into
  TransientException subclasses

Block detection and retry policy are not handled here; they belong to the
anti-blocking layer and the scheduler.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from schoolyard.common.exceptions import (
    HTMLResponseAssumptionException,
    NetworkException,
    RequestTimeoutException,
)
from schoolyard.data_types import HttpMethod, PageRequest, Response

logger = logging.getLogger(__name__)


class AsyncRequestManager:
    """Manages HTTP requests for the crawler.

    httpx binds a proxy to a client, so the manager keeps one client per
    proxy URL (``None`` is the direct client) and creates them lazily.
    Cookies are cleared before every request; identity comes from the
    synthesized headers and the session's proxy, never from cookie state.

    Example::

        async with AsyncRequestManager(timeout=30.0) as manager:
            response = await manager.fetch(url, headers={"User-Agent": ua})
    """

    def __init__(
        self,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the request manager.

        Args:
            timeout: Request timeout in seconds. None means no timeout.
            transport: Optional transport shared by all clients (used by
                tests to route requests to a mock transport).
        """
        self.timeout = timeout
        self._transport = transport
        self._clients: dict[str | None, httpx.AsyncClient] = {}
        self._clients_lock = asyncio.Lock()

    async def _client_for(self, proxy: str | None) -> httpx.AsyncClient:
        async with self._clients_lock:
            client = self._clients.get(proxy)
            if client is None:
                kwargs: dict[str, Any] = {
                    "timeout": self.timeout,
                    "follow_redirects": True,
                }
                if self._transport is not None:
                    kwargs["transport"] = self._transport
                elif proxy is not None:
                    kwargs["proxy"] = proxy
                client = httpx.AsyncClient(**kwargs)
                self._clients[proxy] = client
                logger.debug(f"Opened HTTP client (proxy={proxy})")
            return client

    async def close(self) -> None:
        """Close every HTTP client and release resources."""
        async with self._clients_lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            await client.aclose()

    async def __aenter__(self) -> AsyncRequestManager:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def fetch(
        self,
        url: str,
        method: HttpMethod = HttpMethod.GET,
        headers: dict[str, str] | None = None,
        proxy: str | None = None,
        request: PageRequest | None = None,
    ) -> Response:
        """Fetch a URL and return the Response.

        Args:
            url: Absolute URL to fetch.
            method: GET for pages, HEAD for metadata probes.
            headers: Request headers for this attempt.
            proxy: Proxy endpoint, or None for a direct connection.
            request: The PageRequest being served, attached to the Response.

        Returns:
            Response containing the HTTP response data. Header names are
            lowercased.

        Raises:
            RequestTimeoutException: If the request times out.
            NetworkException: If the connection fails.
            HTMLResponseAssumptionException: If server returns 5xx status code.
        """
        client = await self._client_for(proxy)
        client.cookies.clear()

        try:
            http_response = await client.request(
                method=method.value,
                url=url,
                headers=headers,
            )
        except httpx.TimeoutException:
            raise RequestTimeoutException(
                url=url, timeout_seconds=self.timeout
            )
        except httpx.TransportError as e:
            raise NetworkException(url=url, reason=f"{type(e).__name__}: {e}")

        # Check for server errors (5xx status codes)
        if http_response.status_code >= 500:
            raise HTMLResponseAssumptionException(
                status_code=http_response.status_code,
                expected_codes=[200],
                url=url,
            )

        return Response(
            status_code=http_response.status_code,
            headers={k.lower(): v for k, v in http_response.headers.items()},
            content=http_response.content,
            text=http_response.text,
            url=str(http_response.url),
            request=request,
        )
