"""
Download and unpack a distribution binary for the running platform.

Archives live at `<dist>/<version>/<dist>_<version>_<os>-<arch>.<ext>`
under the distribution root. OS and architecture names follow the Go
naming used by the published distributions.
"""

from __future__ import annotations

import platform
import tempfile
from dataclasses import dataclass
from pathlib import Path

from ipfs_update.fetch.backends import Fetcher
from ipfs_update.logging import get_logger
from ipfs_update.updates.archive import extract_entry
from ipfs_update.updates.version import before_version

logger = get_logger(__name__)

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv8l": "arm64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "armv6l": "arm",
    "armv7l": "arm",
    "ppc64le": "ppc64le",
    "riscv64": "riscv64",
}

# Distributions published under another name before a given release.
LEGACY_DISTRIBUTIONS = {"kubo": ("go-ipfs", "v0.14.0")}


@dataclass(frozen=True)
class PlatformInfo:
    """Target platform in distribution naming."""

    os: str
    arch: str

    @property
    def archive_format(self) -> str:
        return "zip" if self.os == "windows" else "tar.gz"

    @property
    def exe_suffix(self) -> str:
        return ".exe" if self.os == "windows" else ""


def platform_info(system: str | None = None, machine: str | None = None) -> PlatformInfo:
    """Map Python's platform names to distribution OS and arch names."""
    system = (system if system is not None else platform.system()).lower()
    machine = (machine if machine is not None else platform.machine()).lower()
    return PlatformInfo(os=system, arch=_ARCH_ALIASES.get(machine, machine))


def distribution_for(dist: str, version: str) -> str:
    """
    Return the distribution name a version was published under.

    kubo releases before v0.14.0 only exist as go-ipfs.
    """
    legacy = LEGACY_DISTRIBUTIONS.get(dist)
    if legacy is None:
        return dist
    legacy_name, renamed_in = legacy
    if before_version(renamed_in, version):
        return legacy_name
    return dist


def archive_name(dist: str, version: str, info: PlatformInfo) -> str:
    """Return the archive file name, e.g. kubo_v0.28.0_linux-amd64.tar.gz."""
    return f"{dist}_{version}_{info.os}-{info.arch}.{info.archive_format}"


def archive_path(dist: str, version: str, info: PlatformInfo) -> str:
    """Return the logical fetch path of an archive."""
    return f"{dist}/{version}/{archive_name(dist, version, info)}"


async def fetch_binary(
    fetcher: Fetcher,
    dist: str,
    version: str,
    binary_name: str,
    out_path: Path,
    info: PlatformInfo | None = None,
) -> Path:
    """
    Download a distribution archive and extract its executable.

    Args:
        fetcher: Fetcher to read the archive with.
        dist: Distribution name, e.g. "kubo". Versions published under a
            legacy name are fetched from it.
        version: Concrete version, e.g. "v0.28.0".
        binary_name: Executable name inside the archive, without ".exe".
        out_path: Destination file, or a directory to place it in.
        info: Target platform; defaults to the running one.

    Returns:
        Path of the extracted executable.

    Raises:
        TransportError: If the archive cannot be fetched, including a
            transfer that breaks off mid-body.
        DecodeError: If the archive is corrupt.
        NoBinaryFoundError: If the archive lacks the executable.
    """
    if info is None:
        info = platform_info()

    published = distribution_for(dist, version)
    if published != dist:
        logger.debug(f"  - {version} predates {dist}, using {published}")
        dist = published

    exe = binary_name + info.exe_suffix
    if out_path.is_dir():
        out_path = out_path / exe

    path = archive_path(dist, version, info)
    logger.info(f"fetching {dist} version {version}")
    logger.debug(f"  - fetching {path}")

    with tempfile.TemporaryDirectory(prefix="ipfs-update-") as scratch:
        archive = Path(scratch) / archive_name(dist, version, info)
        written = await fetcher.fetch_to_file(path, archive)
        logger.debug(f"  - downloaded {written} bytes")

        extract_entry(archive, info.archive_format, f"{dist}/{exe}", out_path)

    logger.debug(f"  - extracted binary to {out_path}")
    return out_path
