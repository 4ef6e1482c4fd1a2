"""
Client for the control API of a locally running ipfs daemon.

The daemon writes its API multiaddr to `<ipfs-dir>/api`, e.g.
`/ip4/127.0.0.1/tcp/5001`. This module turns that into a host:port endpoint
and issues the few RPC calls ipfs-update needs: `version` (to detect a live
daemon and its version) and `cat` (to stream distribution content).
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx

from ipfs_update import __version__
from ipfs_update.errors import TransportError
from ipfs_update.logging import get_logger

logger = get_logger(__name__)

API_FILE_NAME = "api"
USER_AGENT = f"ipfs-update/{__version__}"


def api_endpoint(ipfs_dir: Path) -> str:
    """
    Read the daemon API endpoint from the ipfs directory.

    Args:
        ipfs_dir: The ipfs directory containing the `api` file.

    Returns:
        Endpoint in "host:port" form.

    Raises:
        FileNotFoundError: If the api file does not exist.
        ValueError: If the api file is not a /ip4|ip6|dns/<host>/tcp/<port> multiaddr.
    """
    value = (ipfs_dir / API_FILE_NAME).read_text().strip()

    parts = value.split("/")
    if len(parts) != 5:
        raise ValueError(f"incorrectly formatted api string: {value!r}")

    host = parts[2]
    if parts[1] == "ip6":
        host = f"[{host}]"
    return f"{host}:{parts[4]}"


class DaemonApiClient:
    """
    Minimal async client for the ipfs daemon RPC API.

    Attributes:
        endpoint: Daemon endpoint in "host:port" form.
        timeout: Timeout for content transfers.
        check_timeout: Timeout for the liveness probe.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = 120.0,
        check_timeout: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self.check_timeout = check_timeout
        self._client = httpx.AsyncClient(
            base_url=f"http://{endpoint}/api/v0",
            headers={"User-Agent": USER_AGENT},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_ipfs_dir(
        cls,
        ipfs_dir: Path,
        **kwargs: Any,
    ) -> DaemonApiClient | None:
        """Build a client from the api file, or return None if there is none."""
        try:
            endpoint = api_endpoint(ipfs_dir)
        except (OSError, ValueError) as e:
            logger.debug(f"no daemon api endpoint: {e}")
            return None
        return cls(endpoint, **kwargs)

    async def version(self) -> str:
        """
        Ask the daemon for its version.

        Returns:
            The version string reported by the daemon, e.g. "0.28.0".

        Raises:
            TransportError: If the daemon is not reachable or answers badly.
        """
        try:
            response = await self._client.post("/version", timeout=self.check_timeout)
            response.raise_for_status()
            return str(response.json()["Version"])
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise TransportError(
                "ipfs api shell not up",
                details={"endpoint": self.endpoint, "error": str(e)},
            ) from e

    async def is_up(self) -> bool:
        """Return True if the daemon answers the version call."""
        try:
            await self.version()
        except TransportError:
            return False
        return True

    async def cat(self, ipfs_path: str) -> httpx.Response:
        """
        Start streaming the content at an IPFS path.

        The returned response has not been read; the caller must close it.

        Raises:
            TransportError: If the request fails or the daemon reports an error.
        """
        request = self._client.build_request("POST", "/cat", params={"arg": ipfs_path})
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransportError(
                f"api cat failed: {e}",
                details={"path": ipfs_path, "endpoint": self.endpoint},
            ) from e

        if response.status_code >= 400:
            body = await response.aread()
            await response.aclose()
            raise TransportError(
                f"api cat failed: {response.status_code}: {body.decode(errors='replace')}",
                details={"path": ipfs_path, "status_code": response.status_code},
            )
        return response

    async def close(self) -> None:
        """Release the underlying connection pool."""
        await self._client.aclose()
