"""
Pytest configuration and shared fixtures for the ipfs-update tests.
"""

from __future__ import annotations

import io
import logging
import os
import sys
import tarfile
import zipfile
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path

import httpx
import pytest

from ipfs_update.errors import TransportError
from ipfs_update.fetch.backends import Fetcher, LimitedStream
from ipfs_update.updates.acquisition import PlatformInfo

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]

posix_only = pytest.mark.skipif(
    sys.platform == "win32", reason="uses shell-script stand-ins for binaries"
)


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


@pytest.fixture(autouse=True)
def _reset_package_logger() -> Iterator[None]:
    """Undo setup_logging() so caplog keeps seeing records."""
    yield
    logger = logging.getLogger("ipfs_update")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


# =============================================================================
# Fetchers
# =============================================================================


class StaticFetcher(Fetcher):
    """
    In-memory fetcher serving fixed payloads.

    Values may be bytes or an exception to raise. Every requested path is
    recorded in `calls`.
    """

    def __init__(self, files: dict[str, bytes | Exception] | None = None) -> None:
        self.files = dict(files or {})
        self.calls: list[str] = []
        self.closed = False

    async def fetch(self, path: str) -> LimitedStream:
        self.calls.append(path)
        value = self.files.get(path)
        if value is None:
            raise TransportError(f"404 Not Found: {path}", details={"path": path})
        if isinstance(value, Exception):
            raise value
        return LimitedStream.from_bytes(value)

    async def close(self) -> None:
        self.closed = True


class BrokenBody(httpx.AsyncByteStream):
    """Response body that breaks off after its first chunk."""

    def __init__(self, first: bytes = b"partial") -> None:
        self.first = first

    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield self.first
        raise httpx.ReadError("connection reset mid-body")

    async def aclose(self) -> None:
        pass


@pytest.fixture
def static_fetcher() -> Callable[..., StaticFetcher]:
    """Factory for StaticFetcher instances."""
    return StaticFetcher


# =============================================================================
# Archives
# =============================================================================


def build_tarball(entries: dict[str, bytes]) -> bytes:
    """Build a .tar.gz archive holding the given regular files."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in entries.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def build_zip(entries: dict[str, bytes]) -> bytes:
    """Build a .zip archive holding the given files."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buf.getvalue()


@pytest.fixture
def tarball() -> Callable[[dict[str, bytes]], bytes]:
    """Factory for in-memory .tar.gz archives."""
    return build_tarball


@pytest.fixture
def zip_archive() -> Callable[[dict[str, bytes]], bytes]:
    """Factory for in-memory .zip archives."""
    return build_zip


@pytest.fixture
def linux_amd64() -> PlatformInfo:
    """Platform of the distribution archives used in tests."""
    return PlatformInfo(os="linux", arch="amd64")


# =============================================================================
# Executables
# =============================================================================


@pytest.fixture
def make_script(tmp_path: Path) -> Callable[..., Path]:
    """
    Factory writing an executable shell script.

    The script body is plain sh; the file is created in `directory`
    (default: tmp_path/bin) and made executable.
    """

    def _make(name: str, body: str, directory: Path | None = None) -> Path:
        directory = directory or tmp_path / "bin"
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(0o755)
        return path

    return _make


@pytest.fixture
def ipfs_dir(tmp_path: Path) -> Path:
    """An empty ipfs directory."""
    path = tmp_path / "ipfs-dir"
    path.mkdir()
    return path


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove ipfs-update environment overrides."""
    for key in list(os.environ):
        if key.startswith("IPFS_UPDATE_") or key in ("IPFS_PATH", "IPFS_DIST_PATH"):
            monkeypatch.delenv(key, raising=False)
