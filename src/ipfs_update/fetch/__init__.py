"""
Content fetching for ipfs-update.

A Fetcher reads bytes at a logical distribution path such as
`kubo/v0.28.0/kubo_v0.28.0_linux-amd64.tar.gz`. Concrete fetchers map that
path onto a transport:
- ApiFetcher: the control API of a locally running daemon
- HttpFetcher: a public HTTP gateway

Fetchers compose by wrapping:
- MultiFetcher: try children in order, first success wins
- RetryFetcher: re-invoke one child a bounded number of times

Every fetch returns a LimitedStream capped at a byte ceiling.
"""

from ipfs_update.fetch.api_fetcher import ApiFetcher
from ipfs_update.fetch.backends import Fetcher, LimitedStream
from ipfs_update.fetch.composite import MultiFetcher, RetryFetcher, build_default_fetcher
from ipfs_update.fetch.http_fetcher import HttpFetcher

__all__ = [
    "Fetcher",
    "LimitedStream",
    "ApiFetcher",
    "HttpFetcher",
    "MultiFetcher",
    "RetryFetcher",
    "build_default_fetcher",
]
