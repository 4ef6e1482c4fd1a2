"""
Local daemon fetcher.

Fetches distribution content through the control API of a locally running
ipfs daemon, which is usually faster than a public gateway and does not
depend on one being reachable.
"""

from __future__ import annotations

from pathlib import Path

import httpx

from ipfs_update.config import DEFAULT_DIST_PATH, DEFAULT_FETCH_LIMIT
from ipfs_update.daemon_api import DaemonApiClient
from ipfs_update.errors import TransportError
from ipfs_update.fetch.backends import Fetcher, LimitedStream, join_dist_path
from ipfs_update.logging import get_logger

logger = get_logger(__name__)


class ApiFetcher(Fetcher):
    """
    Fetcher backed by the local daemon API.

    The daemon endpoint is looked up lazily on each fetch so a daemon started
    after construction is still used.

    Attributes:
        ipfs_dir: ipfs directory holding the `api` file.
        dist_path: Distribution root, e.g. "/ipns/dist.ipfs.tech".
        limit: Byte ceiling per fetch.
    """

    def __init__(
        self,
        ipfs_dir: Path,
        dist_path: str = DEFAULT_DIST_PATH,
        limit: int = DEFAULT_FETCH_LIMIT,
        timeout: float = 120.0,
        check_timeout: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.ipfs_dir = ipfs_dir
        self.dist_path = dist_path
        self.limit = limit
        self._timeout = timeout
        self._check_timeout = check_timeout
        self._transport = transport
        self._client: DaemonApiClient | None = None

    async def _shell(self) -> DaemonApiClient:
        if self._client is None:
            self._client = DaemonApiClient.from_ipfs_dir(
                self.ipfs_dir,
                timeout=self._timeout,
                check_timeout=self._check_timeout,
                transport=self._transport,
            )
        if self._client is None or not await self._client.is_up():
            raise TransportError(
                "ipfs api shell not up",
                details={"ipfs_dir": str(self.ipfs_dir)},
            )
        return self._client

    async def fetch(self, path: str) -> LimitedStream:
        """
        Fetch a logical path through the daemon's `cat` call.

        Raises:
            TransportError: If no daemon is running or the cat call fails.
        """
        client = await self._shell()
        ipfs_path = join_dist_path(self.dist_path, path)
        logger.debug(f"  - using local ipfs daemon for transfer of {ipfs_path}")
        response = await client.cat(ipfs_path)
        return LimitedStream.from_response(response, limit=self.limit)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
