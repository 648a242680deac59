"""Byte-range access to a remote resource over HTTP."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Mapping, Optional

import httpx

from flasher.errors import SourceUnavailable


def apply_proxy(url: str, proxy_url: Optional[str]) -> str:
    """Route ``url`` through a prefix proxy, if one is configured."""
    if not proxy_url:
        return url
    return f"{proxy_url.rstrip('/')}/{url}"


class RangeHttpSource:
    """Reads byte ranges of one remote URL.

    ``length()`` issues a single HEAD request and caches the result;
    ``read_range()`` issues one ranged GET per call.
    """

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        proxy_url: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = 30.0,
    ):
        """Initialize range source.

        Args:
            url: Remote resource URL
            client: Shared AsyncClient (a short-lived client per request if None)
            proxy_url: Optional prefix proxy for sandboxed callers
            headers: Extra headers sent with every request (user agent, referer, auth)
            timeout: Request timeout in seconds when no client is given
        """
        self.logger = logging.getLogger("flasher.range_source")
        self.url = url
        self.request_url = apply_proxy(url, proxy_url)
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.bytes_fetched = 0
        self._client = client
        self._length: Optional[int] = None

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            yield client

    async def length(self) -> int:
        """Total byte length of the resource.

        Raises:
            SourceUnavailable: If the request fails or no content length is reported
        """
        if self._length is not None:
            return self._length

        try:
            async with self._session() as client:
                response = await client.head(
                    self.request_url, headers=self.headers, follow_redirects=True
                )
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"HEAD {self.url} failed: {e}") from e

        if not response.is_success:
            raise SourceUnavailable(
                f"HEAD {self.url} failed, status: {response.status_code}"
            )

        try:
            self._length = int(response.headers["content-length"])
        except (KeyError, ValueError):
            raise SourceUnavailable(f"Could not get length of {self.url}") from None

        self.logger.debug(f"Remote length of {self.url}: {self._length} bytes")
        return self._length

    async def read_range(self, offset: int, size: int) -> bytes:
        """Read ``size`` bytes starting at ``offset``.

        Args:
            offset: First byte position
            size: Number of bytes to read

        Returns:
            Exactly ``size`` bytes (empty for a zero-size read, no request made)

        Raises:
            SourceUnavailable: On transport failure, non-2xx status or a short body
        """
        if size == 0:
            return b""
        if offset < 0 or size < 0:
            raise ValueError(f"Invalid range: offset={offset}, size={size}")

        headers = {**self.headers, "Range": f"bytes={offset}-{offset + size - 1}"}
        try:
            async with self._session() as client:
                response = await client.get(
                    self.request_url, headers=headers, follow_redirects=True
                )
        except httpx.HTTPError as e:
            raise SourceUnavailable(
                f"GET {self.url} failed, offset: {offset} size: {size}: {e}"
            ) from e

        if not response.is_success:
            raise SourceUnavailable(
                f"GET {self.url} failed, status: {response.status_code} "
                f"offset: {offset} size: {size}"
            )

        data = response.content
        self.bytes_fetched += len(data)
        if response.status_code == 200 and len(data) > size:
            # Server ignored the Range header and sent the whole resource
            data = data[offset:offset + size]
        if len(data) != size:
            raise SourceUnavailable(
                f"Short read from {self.url}: expected {size} bytes, got {len(data)}"
            )

        return data
