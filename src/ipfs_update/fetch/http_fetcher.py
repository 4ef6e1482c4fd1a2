"""
HTTP gateway fetcher.

Fetches distribution content from a public IPFS HTTP gateway, e.g.
https://ipfs.io/ipns/dist.ipfs.tech/kubo/versions.
"""

from __future__ import annotations

import httpx

from ipfs_update.config import DEFAULT_DIST_PATH, DEFAULT_FETCH_LIMIT
from ipfs_update.daemon_api import USER_AGENT
from ipfs_update.errors import TransportError
from ipfs_update.fetch.backends import Fetcher, LimitedStream, join_dist_path
from ipfs_update.logging import get_logger

logger = get_logger(__name__)


class HttpFetcher(Fetcher):
    """
    Fetcher backed by an HTTP gateway.

    Attributes:
        gateway_url: Gateway base URL without trailing slash.
        dist_path: Distribution root, e.g. "/ipns/dist.ipfs.tech".
        limit: Byte ceiling per fetch.
    """

    def __init__(
        self,
        gateway_url: str = "https://ipfs.io",
        dist_path: str = DEFAULT_DIST_PATH,
        limit: int = DEFAULT_FETCH_LIMIT,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.gateway_url = gateway_url.rstrip("/")
        self.dist_path = dist_path
        self.limit = limit
        self._client = httpx.AsyncClient(
            headers={"User-Agent": USER_AGENT},
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    def url_for(self, path: str) -> str:
        """Return the gateway URL of a logical path."""
        return self.gateway_url + join_dist_path(self.dist_path, path)

    async def fetch(self, path: str) -> LimitedStream:
        """
        Fetch a logical path from the gateway.

        Raises:
            TransportError: On connection errors or HTTP status >= 400.
        """
        url = self.url_for(path)
        logger.debug(f"fetching url: {url}")

        request = self._client.build_request("GET", url)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransportError(
                f"http request to {url} failed: {e}",
                details={"url": url, "error": str(e)},
            ) from e

        if response.status_code >= 400:
            body = await response.aread()
            await response.aclose()
            logger.error(f"fetching resource: {response.status_code}")
            raise TransportError(
                f"{response.status_code} {response.reason_phrase}: "
                f"{body.decode(errors='replace').strip()}",
                details={"url": url, "status_code": response.status_code},
            )

        return LimitedStream.from_response(response, limit=self.limit)

    async def close(self) -> None:
        await self._client.aclose()
