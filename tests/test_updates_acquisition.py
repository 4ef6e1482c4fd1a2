"""
Tests for binary acquisition and archive extraction.

Tests cover:
- Platform naming and archive paths
- Fetching and extracting from tar.gz and zip archives
- Missing entries and corrupt archives
- Downloads that break off mid-body
"""

from __future__ import annotations

import io
import zipfile
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from conftest import BrokenBody
from ipfs_update.errors import DecodeError, NoBinaryFoundError, TransportError
from ipfs_update.fetch import HttpFetcher, RetryFetcher
from ipfs_update.updates.acquisition import (
    PlatformInfo,
    archive_name,
    archive_path,
    distribution_for,
    fetch_binary,
    platform_info,
)
from ipfs_update.updates.archive import extract_entry

TARBALL_PATH = "kubo/v0.28.0/kubo_v0.28.0_linux-amd64.tar.gz"

# =============================================================================
# Platform naming Tests
# =============================================================================


class TestPlatformInfo:
    """Tests for platform naming."""

    @pytest.mark.parametrize(
        ("system", "machine", "expected"),
        [
            ("Linux", "x86_64", PlatformInfo("linux", "amd64")),
            ("Linux", "aarch64", PlatformInfo("linux", "arm64")),
            ("Darwin", "arm64", PlatformInfo("darwin", "arm64")),
            ("Windows", "AMD64", PlatformInfo("windows", "amd64")),
            ("FreeBSD", "i386", PlatformInfo("freebsd", "386")),
            ("Linux", "armv7l", PlatformInfo("linux", "arm")),
            ("Linux", "s390x", PlatformInfo("linux", "s390x")),
        ],
    )
    def test_platform_info(self, system: str, machine: str, expected: PlatformInfo) -> None:
        """Test Python platform names map to distribution names."""
        assert platform_info(system, machine) == expected

    def test_archive_format(self) -> None:
        """Test Windows uses zip and everything else tar.gz."""
        assert PlatformInfo("windows", "amd64").archive_format == "zip"
        assert PlatformInfo("windows", "amd64").exe_suffix == ".exe"
        assert PlatformInfo("linux", "arm64").archive_format == "tar.gz"
        assert PlatformInfo("linux", "arm64").exe_suffix == ""

    def test_archive_path(self, linux_amd64: PlatformInfo) -> None:
        """Test the logical archive path layout."""
        assert archive_name("kubo", "v0.28.0", linux_amd64) == (
            "kubo_v0.28.0_linux-amd64.tar.gz"
        )
        assert archive_path("kubo", "v0.28.0", linux_amd64) == TARBALL_PATH


# =============================================================================
# fetch_binary Tests
# =============================================================================


class TestFetchBinary:
    """Tests for fetch_binary."""

    @pytest.mark.asyncio
    async def test_fetch_from_tarball(
        self,
        tmp_path: Path,
        static_fetcher: Callable,
        tarball: Callable,
        linux_amd64: PlatformInfo,
    ) -> None:
        """Test the executable is extracted from a tar.gz archive."""
        archive = tarball({"kubo/README.md": b"readme", "kubo/ipfs": b"\x7fELF-binary"})
        fetcher = static_fetcher({TARBALL_PATH: archive})
        out = tmp_path / "ipfs-new"

        result = await fetch_binary(fetcher, "kubo", "v0.28.0", "ipfs", out, linux_amd64)

        assert result == out
        assert out.read_bytes() == b"\x7fELF-binary"
        assert fetcher.calls == [TARBALL_PATH]

    @pytest.mark.asyncio
    async def test_fetch_from_zip(
        self, tmp_path: Path, static_fetcher: Callable, zip_archive: Callable
    ) -> None:
        """Test the .exe is extracted from a zip archive on Windows."""
        info = PlatformInfo("windows", "amd64")
        archive = zip_archive({"kubo/ipfs.exe": b"MZ-binary"})
        fetcher = static_fetcher(
            {"kubo/v0.28.0/kubo_v0.28.0_windows-amd64.zip": archive}
        )

        result = await fetch_binary(
            fetcher, "kubo", "v0.28.0", "ipfs", tmp_path / "out.exe", info
        )

        assert result.read_bytes() == b"MZ-binary"

    @pytest.mark.asyncio
    async def test_directory_output(
        self,
        tmp_path: Path,
        static_fetcher: Callable,
        tarball: Callable,
        linux_amd64: PlatformInfo,
    ) -> None:
        """Test a directory destination receives the executable by name."""
        fetcher = static_fetcher({TARBALL_PATH: tarball({"kubo/ipfs": b"bin"})})

        result = await fetch_binary(
            fetcher, "kubo", "v0.28.0", "ipfs", tmp_path, linux_amd64
        )

        assert result == tmp_path / "ipfs"
        assert result.read_bytes() == b"bin"

    @pytest.mark.asyncio
    async def test_missing_entry(
        self,
        tmp_path: Path,
        static_fetcher: Callable,
        tarball: Callable,
        linux_amd64: PlatformInfo,
    ) -> None:
        """Test an archive without the executable is rejected."""
        fetcher = static_fetcher({TARBALL_PATH: tarball({"kubo/other": b"x"})})
        out = tmp_path / "ipfs-new"

        with pytest.raises(NoBinaryFoundError, match="kubo/ipfs"):
            await fetch_binary(fetcher, "kubo", "v0.28.0", "ipfs", out, linux_amd64)

        assert not out.exists()

    @pytest.mark.asyncio
    async def test_corrupt_archive(
        self, tmp_path: Path, static_fetcher: Callable, linux_amd64: PlatformInfo
    ) -> None:
        """Test garbage bytes are a decode error."""
        fetcher = static_fetcher({TARBALL_PATH: b"<html>not found</html>"})

        with pytest.raises(DecodeError):
            await fetch_binary(
                fetcher, "kubo", "v0.28.0", "ipfs", tmp_path / "out", linux_amd64
            )

    @pytest.mark.asyncio
    async def test_fetch_failure(
        self, tmp_path: Path, static_fetcher: Callable, linux_amd64: PlatformInfo
    ) -> None:
        """Test transport errors propagate unchanged."""
        with pytest.raises(TransportError):
            await fetch_binary(
                static_fetcher(), "kubo", "v0.28.0", "ipfs", tmp_path / "out", linux_amd64
            )

    @pytest.mark.asyncio
    async def test_broken_download_is_refetched(
        self, tmp_path: Path, tarball: Callable, linux_amd64: PlatformInfo
    ) -> None:
        """Test an archive download cut off mid-body is fetched again."""
        seen: list[httpx.Request] = []
        responses = iter(
            [
                httpx.Response(200, stream=BrokenBody(b"\x1f\x8b")),
                httpx.Response(200, content=tarball({"kubo/ipfs": b"binary"})),
            ]
        )

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return next(responses)

        async with RetryFetcher(HttpFetcher(transport=httpx.MockTransport(handler))) as fetcher:
            out = await fetch_binary(
                fetcher, "kubo", "v0.28.0", "ipfs", tmp_path / "out", linux_amd64
            )

        assert out.read_bytes() == b"binary"
        assert len(seen) == 2
        assert seen[1].url.path.endswith(TARBALL_PATH)

    @pytest.mark.asyncio
    async def test_broken_download_without_retry(
        self, tmp_path: Path, linux_amd64: PlatformInfo
    ) -> None:
        """Test a mid-body failure surfaces as TransportError."""
        transport = httpx.MockTransport(lambda r: httpx.Response(200, stream=BrokenBody()))

        async with HttpFetcher(transport=transport) as fetcher:
            with pytest.raises(TransportError, match="connection reset mid-body"):
                await fetch_binary(
                    fetcher, "kubo", "v0.28.0", "ipfs", tmp_path / "out", linux_amd64
                )

        assert not (tmp_path / "out").exists()


# =============================================================================
# Legacy distribution Tests
# =============================================================================


class TestLegacyDistribution:
    """Tests for releases published before the kubo rename."""

    @pytest.mark.parametrize(
        ("dist", "version", "expected"),
        [
            ("kubo", "v0.4.23", "go-ipfs"),
            ("kubo", "v0.13.1", "go-ipfs"),
            ("kubo", "v0.14.0-rc1", "kubo"),
            ("kubo", "v0.14.0", "kubo"),
            ("kubo", "QmHash", "kubo"),
            ("fs-repo-migrations", "v0.1.0", "fs-repo-migrations"),
        ],
    )
    def test_distribution_for(self, dist: str, version: str, expected: str) -> None:
        assert distribution_for(dist, version) == expected

    @pytest.mark.asyncio
    async def test_old_release_fetched_from_go_ipfs(
        self,
        tmp_path: Path,
        static_fetcher: Callable,
        tarball: Callable,
        linux_amd64: PlatformInfo,
    ) -> None:
        """Test a pre-rename version is fetched and extracted under go-ipfs."""
        legacy_path = "go-ipfs/v0.4.23/go-ipfs_v0.4.23_linux-amd64.tar.gz"
        fetcher = static_fetcher({legacy_path: tarball({"go-ipfs/ipfs": b"old"})})

        out = await fetch_binary(
            fetcher, "kubo", "v0.4.23", "ipfs", tmp_path / "out", linux_amd64
        )

        assert out.read_bytes() == b"old"
        assert fetcher.calls == [legacy_path]


# =============================================================================
# extract_entry Tests
# =============================================================================


class TestExtractEntry:
    """Tests for extract_entry."""

    def test_directory_entry_is_not_a_binary(
        self, tmp_path: Path, zip_archive: Callable
    ) -> None:
        """Test a directory named like the executable is not extracted."""
        archive = tmp_path / "a.zip"
        archive.write_bytes(zip_archive({"kubo/ipfs/": b""}))

        with pytest.raises(NoBinaryFoundError):
            extract_entry(archive, "zip", "kubo/ipfs/", tmp_path / "out")

    def test_corrupt_zip(self, tmp_path: Path) -> None:
        """Test a broken zip is a decode error."""
        archive = tmp_path / "a.zip"
        archive.write_bytes(b"PK-not-really")

        with pytest.raises(DecodeError):
            extract_entry(archive, "zip", "kubo/ipfs.exe", tmp_path / "out")

    def test_corrupt_zip_member(self, tmp_path: Path) -> None:
        """Test a broken deflate stream inside a zip member is a decode error."""
        name = "kubo/ipfs.exe"
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr(name, b"x" * 4096, compress_type=zipfile.ZIP_DEFLATED)
            size = zf.getinfo(name).compress_size
        data = bytearray(buf.getvalue())
        # Local header is 30 bytes plus the name; BTYPE 11 is an invalid block.
        start = 30 + len(name)
        data[start : start + size] = b"\xff" * size
        archive = tmp_path / "a.zip"
        archive.write_bytes(bytes(data))

        with pytest.raises(DecodeError, match="error opening zip archive"):
            extract_entry(archive, "zip", name, tmp_path / "out")

    def test_unknown_format(self, tmp_path: Path) -> None:
        """Test unsupported formats are rejected."""
        archive = tmp_path / "a.rar"
        archive.write_bytes(b"")

        with pytest.raises(DecodeError, match="unsupported archive format"):
            extract_entry(archive, "rar", "kubo/ipfs", tmp_path / "out")
