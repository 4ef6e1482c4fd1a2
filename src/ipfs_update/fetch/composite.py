"""
Composite fetchers: ordered fallback and bounded retry.

MultiFetcher prefers a fast local transport and falls back to a public one
without the caller knowing which served the bytes. RetryFetcher absorbs
transient failures of a single transport.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from ipfs_update.errors import InvalidArgumentError, TransportError, UpdateError
from ipfs_update.fetch.api_fetcher import ApiFetcher
from ipfs_update.fetch.backends import Fetcher, LimitedStream
from ipfs_update.fetch.http_fetcher import HttpFetcher
from ipfs_update.logging import get_logger

if TYPE_CHECKING:
    from ipfs_update.config import UpdaterConfig

logger = get_logger(__name__)

DEFAULT_MAX_RETRIES = 3

T = TypeVar("T")


class MultiFetcher(Fetcher):
    """
    Tries child fetchers strictly in order; the first success wins.

    Errors of all but the last child are discarded. If every child fails, the
    last error is wrapped in a TransportError. Whole-body reads
    (fetch_bytes, fetch_to_file) fall back too when a child fails mid-body.
    """

    def __init__(self, *fetchers: Fetcher) -> None:
        if not fetchers:
            raise InvalidArgumentError("MultiFetcher needs at least one fetcher")
        self._fetchers: tuple[Fetcher, ...] = fetchers

    @property
    def fetchers(self) -> Sequence[Fetcher]:
        """Get the child fetchers in try order."""
        return self._fetchers

    async def _first_success(
        self, path: str, operation: Callable[[Fetcher], Awaitable[T]]
    ) -> T:
        last_error: Exception | None = None
        for fetcher in self._fetchers:
            try:
                return await operation(fetcher)
            except Exception as e:
                logger.debug(
                    f"fetcher {type(fetcher).__name__} failed for {path}: {e}"
                )
                last_error = e

        raise TransportError(
            f"all fetchers failed: {last_error}",
            details={"path": path, "fetchers": len(self._fetchers)},
        ) from last_error

    async def fetch(self, path: str) -> LimitedStream:
        return await self._first_success(path, lambda f: f.fetch(path))

    async def fetch_bytes(self, path: str) -> bytes:
        return await self._first_success(path, lambda f: f.fetch_bytes(path))

    async def fetch_to_file(self, path: str, dest: Path) -> int:
        return await self._first_success(path, lambda f: f.fetch_to_file(path, dest))

    async def close(self) -> None:
        """Close every child, raising the last close error if any."""
        last_error: Exception | None = None
        for fetcher in self._fetchers:
            try:
                await fetcher.close()
            except Exception as e:
                logger.warning(f"error closing {type(fetcher).__name__}: {e}")
                last_error = e
        if last_error is not None:
            raise last_error


class RetryFetcher(Fetcher):
    """
    Re-invokes one fetcher up to max_retries times.

    Errors that are known not to be retryable (any UpdateError whose
    `retryable` flag is False, such as DecodeError) are raised at once.
    Between attempts the fetcher sleeps retry_delay * 2**(attempt - 1)
    seconds; the default delay is zero, which retries immediately.

    fetch only covers opening the stream. fetch_bytes and fetch_to_file
    retry the whole transfer, so a connection dropped mid-body is retried.

    Attributes:
        max_retries: Total number of attempts.
        retry_delay: Base delay in seconds.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = 0.0,
    ) -> None:
        if max_retries < 1:
            raise InvalidArgumentError(
                "max_retries must be at least 1",
                details={"max_retries": max_retries},
            )
        self._fetcher = fetcher
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def _retry(self, path: str, operation: Callable[[], Awaitable[T]]) -> T:
        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return await operation()
            except UpdateError as e:
                if not e.retryable:
                    raise
                last_error = e
            except Exception as e:
                last_error = e

            logger.debug(
                f"fetch attempt {attempt}/{self.max_retries} for {path} failed: {last_error}"
            )
            if attempt < self.max_retries and self.retry_delay > 0:
                await asyncio.sleep(self.retry_delay * 2 ** (attempt - 1))

        raise TransportError(
            f"exceeded number of retries. last error was {last_error}",
            details={"path": path, "attempts": self.max_retries},
        ) from last_error

    async def fetch(self, path: str) -> LimitedStream:
        return await self._retry(path, lambda: self._fetcher.fetch(path))

    async def fetch_bytes(self, path: str) -> bytes:
        return await self._retry(path, lambda: self._fetcher.fetch_bytes(path))

    async def fetch_to_file(self, path: str, dest: Path) -> int:
        return await self._retry(path, lambda: self._fetcher.fetch_to_file(path, dest))

    async def close(self) -> None:
        await self._fetcher.close()


def build_default_fetcher(config: UpdaterConfig) -> Fetcher:
    """
    Build the standard transport chain from configuration.

    The local daemon is tried first; the gateway, with retries, second.
    """
    api = ApiFetcher(
        config.resolved_ipfs_dir(),
        dist_path=config.dist_path,
        limit=config.fetch_limit_bytes,
        timeout=config.http_timeout_seconds,
        check_timeout=config.api_check_timeout_seconds,
    )
    http = HttpFetcher(
        gateway_url=config.gateway_url,
        dist_path=config.dist_path,
        limit=config.fetch_limit_bytes,
        timeout=config.http_timeout_seconds,
    )
    return MultiFetcher(
        api,
        RetryFetcher(
            http,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay_seconds,
        ),
    )
