"""HTTP transport seam.

Adapters build a :class:`WireRequest`; a :class:`Transport` sends it and
yields a response whose body can be read whole or line by line. The httpx
implementation maps every httpx failure to :class:`TransportError` so the
rest of the library never sees httpx exception types.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx

from genbridge.errors import TransportError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping
    from contextlib import AbstractAsyncContextManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WireRequest:
    """A fully encoded provider request."""

    url: str
    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)
    stream: bool = False
    method: str = "POST"


@runtime_checkable
class WireResponse(Protocol):
    """The response side of one exchange."""

    status_code: int
    headers: Mapping[str, str]

    async def aread(self) -> bytes:
        """Read the whole body."""
        ...

    def aiter_lines(self) -> AsyncIterator[str]:
        """Iterate body lines without their terminators."""
        ...


@runtime_checkable
class Transport(Protocol):
    """Sends wire requests. The response is released when the context exits."""

    def send(self, request: WireRequest) -> AbstractAsyncContextManager[WireResponse]:
        """Open an exchange for *request*."""
        ...

    async def aclose(self) -> None:
        """Release pooled connections."""
        ...


class _HTTPXResponse:
    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self.status_code = response.status_code
        self.headers: Mapping[str, str] = response.headers

    async def aread(self) -> bytes:
        try:
            return await self._response.aread()
        except httpx.HTTPError as e:
            raise TransportError(f"reading response body failed: {e}", phase="read") from e

    async def aiter_lines(self) -> AsyncIterator[str]:
        try:
            async for line in self._response.aiter_lines():
                yield line
        except httpx.HTTPError as e:
            raise TransportError(f"reading stream failed: {e}", phase="read") from e


class HTTPXTransport:
    """:class:`Transport` backed by a lazily created ``httpx.AsyncClient``."""

    def __init__(
        self,
        *,
        timeout_s: float = 60.0,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout_s = timeout_s
        self._client = client
        self._transport = transport
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout_s),
                transport=self._transport,
            )
        return self._client

    @asynccontextmanager
    async def send(self, request: WireRequest) -> AsyncIterator[WireResponse]:
        client = self._get_client()
        http_request = client.build_request(
            request.method,
            request.url,
            headers=dict(request.headers),
            content=request.body,
        )
        logger.debug("%s %s (stream=%s)", request.method, request.url, request.stream)
        try:
            response = await client.send(http_request, stream=True)
        except httpx.TimeoutException as e:
            raise TransportError(
                f"request to {request.url} timed out",
                phase="connect",
                hint="Increase Config.timeout_s or check network connectivity.",
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                f"request to {request.url} failed: {e}", phase="connect"
            ) from e
        try:
            yield _HTTPXResponse(response)
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
