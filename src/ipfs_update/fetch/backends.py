"""
Fetcher abstraction and size-bounded byte streams.

This module defines the Fetcher abstract base class that every transport
and every composite fetcher implements, and LimitedStream, the byte stream
all fetches return.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path

import httpx

from ipfs_update.config import DEFAULT_FETCH_LIMIT
from ipfs_update.errors import TransportError

CHUNK_SIZE = 64 * 1024


class LimitedStream:
    """
    An async byte stream that stops after a fixed number of bytes.

    Reading past the limit truncates the stream instead of failing, the way
    a hard read limit behaves. A limit of 0 disables the cap.

    Attributes:
        limit: Maximum number of bytes yielded.
        bytes_read: Number of bytes yielded so far.
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        limit: int = DEFAULT_FETCH_LIMIT,
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._chunks = chunks
        self._on_close = on_close
        self._closed = False
        self.limit = limit
        self.bytes_read = 0

    @classmethod
    def from_bytes(cls, data: bytes, limit: int = DEFAULT_FETCH_LIMIT) -> LimitedStream:
        """Wrap an in-memory payload."""

        async def _chunks() -> AsyncIterator[bytes]:
            for offset in range(0, len(data), CHUNK_SIZE):
                yield data[offset : offset + CHUNK_SIZE]

        return cls(_chunks(), limit=limit)

    @classmethod
    def from_response(
        cls, response: httpx.Response, limit: int = DEFAULT_FETCH_LIMIT
    ) -> LimitedStream:
        """
        Wrap a streaming httpx response; closing the stream closes it.

        Network errors while the body is read surface as TransportError.
        """
        url = str(response.request.url)

        async def _chunks() -> AsyncIterator[bytes]:
            try:
                async for chunk in response.aiter_bytes():
                    yield chunk
            except httpx.HTTPError as e:
                raise TransportError(
                    f"reading response body from {url} failed: {e}",
                    details={"url": url, "error": str(e)},
                ) from e

        return cls(_chunks(), limit=limit, on_close=response.aclose)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        async for chunk in self._chunks:
            if self.limit:
                remaining = self.limit - self.bytes_read
                if remaining <= 0:
                    break
                chunk = chunk[:remaining]
            self.bytes_read += len(chunk)
            yield chunk
            if self.limit and self.bytes_read >= self.limit:
                break

    async def read(self) -> bytes:
        """Read the whole (possibly truncated) stream into memory."""
        parts = [chunk async for chunk in self]
        return b"".join(parts)

    async def write_to(self, path: Path) -> int:
        """
        Write the stream to a file.

        Args:
            path: Destination file, created or truncated.

        Returns:
            Number of bytes written.
        """
        written = 0
        with open(path, "wb") as f:
            async for chunk in self:
                f.write(chunk)
                written += len(chunk)
        return written

    async def aclose(self) -> None:
        """Release the underlying transport. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            await self._on_close()

    async def __aenter__(self) -> LimitedStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


class Fetcher(ABC):
    """
    Abstract base class for content fetchers.

    A fetcher maps a logical distribution path onto its transport and returns
    the content as a LimitedStream. Fetchers hold no per-update state and may
    be reused across operations.

    Concrete implementations include:
    - ApiFetcher: local daemon control API
    - HttpFetcher: public HTTP gateway
    - MultiFetcher: ordered fallback over several fetchers
    - RetryFetcher: bounded retries over one fetcher
    """

    @abstractmethod
    async def fetch(self, path: str) -> LimitedStream:
        """
        Fetch the content at a logical distribution path.

        Args:
            path: Path relative to the distribution root, e.g.
                "kubo/versions".

        Returns:
            A LimitedStream the caller must close.

        Raises:
            TransportError: If the content cannot be retrieved.
        """

    async def close(self) -> None:
        """Release any resources held by the fetcher."""

    async def fetch_bytes(self, path: str) -> bytes:
        """Fetch a path and read it fully."""
        async with await self.fetch(path) as stream:
            return await stream.read()

    async def fetch_to_file(self, path: str, dest: Path) -> int:
        """
        Fetch a path into a file, created or truncated.

        Returns:
            Number of bytes written.
        """
        async with await self.fetch(path) as stream:
            return await stream.write_to(dest)

    async def __aenter__(self) -> Fetcher:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


def join_dist_path(dist_path: str, path: str) -> str:
    """Join a distribution root and a logical path with single slashes."""
    return f"{dist_path.rstrip('/')}/{path.lstrip('/')}"
