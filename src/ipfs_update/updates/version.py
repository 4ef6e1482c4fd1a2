"""
Version handling for ipfs-update.

This module implements:
- Tolerant semantic version parsing and comparison
- Normalization of version strings to the `vMAJOR.MINOR.PATCH` form
- Discovery of the currently installed ipfs version
- Listing published versions and resolving symbolic targets
  (`latest`, `latest-stable`)
"""

from __future__ import annotations

import functools
import re
import shutil
from pathlib import Path
from typing import Any

from ipfs_update.daemon_api import DaemonApiClient
from ipfs_update.errors import InvalidArgumentError, TransportError, VersionQueryError
from ipfs_update.fetch.backends import Fetcher
from ipfs_update.logging import get_logger
from ipfs_update.updates.operations import run_command

logger = get_logger(__name__)

NO_VERSION = "none"
LATEST = "latest"
LATEST_STABLE = "latest-stable"

# Tolerant semantic versioning pattern, applied after an optional "v" prefix.
# Accepts: 0.4, 0.4.23, 0.9.0-rc1, 1.0.0-alpha.1+build.5
SEMVER_PATTERN = re.compile(
    r"^(?P<major>\d+)"
    r"(?:\.(?P<minor>\d+))?"
    r"(?:\.(?P<patch>\d+))?"
    r"(?:-(?P<prerelease>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+(?P<buildmetadata>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)


def parse_semantic_version(version: str) -> dict[str, Any]:
    """
    Parse a version string, tolerating a "v" prefix and short forms.

    Missing minor or patch components are treated as 0, so "v0.4" parses
    as 0.4.0.

    Args:
        version: Version string (e.g., "v0.28.0", "0.9.0-rc1").

    Returns:
        Dictionary with parsed version components:
        - major, minor, patch: integers
        - prerelease: pre-release identifier or None
        - buildmetadata: build metadata or None

    Raises:
        InvalidArgumentError: If the version string is not a version.
    """
    if not version or not version.strip():
        raise InvalidArgumentError(
            "Version string cannot be empty",
            details={"version": version},
        )

    text = version.strip()
    if text.startswith("v"):
        text = text[1:]

    match = SEMVER_PATTERN.match(text)
    if not match:
        raise InvalidArgumentError(
            f"Invalid semantic version: {version}",
            details={
                "version": version,
                "format": "[v]MAJOR[.MINOR[.PATCH]][-PRERELEASE][+BUILDMETADATA]",
            },
        )

    return {
        "major": int(match.group("major")),
        "minor": int(match.group("minor") or 0),
        "patch": int(match.group("patch") or 0),
        "prerelease": match.group("prerelease"),
        "buildmetadata": match.group("buildmetadata"),
    }


def _compare_prerelease(pre1: str, pre2: str) -> int:
    ids1 = pre1.split(".")
    ids2 = pre2.split(".")
    for a, b in zip(ids1, ids2):
        if a == b:
            continue
        a_num = a.isdigit()
        b_num = b.isdigit()
        if a_num and b_num:
            return -1 if int(a) < int(b) else 1
        # Numeric identifiers have lower precedence than alphanumeric ones
        if a_num:
            return -1
        if b_num:
            return 1
        return -1 if a < b else 1

    if len(ids1) == len(ids2):
        return 0
    return -1 if len(ids1) < len(ids2) else 1


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two semantic versions.

    Build metadata is ignored. A pre-release sorts below its release.

    Args:
        v1: First version string.
        v2: Second version string.

    Returns:
        -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2

    Raises:
        InvalidArgumentError: If either version is invalid.
    """
    p1 = parse_semantic_version(v1)
    p2 = parse_semantic_version(v2)

    for key in ["major", "minor", "patch"]:
        if p1[key] < p2[key]:
            return -1
        elif p1[key] > p2[key]:
            return 1

    pre1 = p1.get("prerelease")
    pre2 = p2.get("prerelease")

    if pre1 is None and pre2 is not None:
        return 1
    if pre1 is not None and pre2 is None:
        return -1
    if pre1 is not None and pre2 is not None:
        return _compare_prerelease(pre1, pre2)

    return 0


def normalize_version(version: str) -> str:
    """
    Add the "v" prefix to a bare dotted version.

    "0.9.0" becomes "v0.9.0"; "v0.9.0", hashes and other non-version
    strings are returned unchanged.
    """
    if version.startswith("v"):
        return version
    parts = version.split(".")
    if len(parts) >= 3 and parts[0].isdigit():
        return "v" + version
    return version


def before_version(check: str, current: str) -> bool:
    """
    Return True if `current` is older than `check`.

    Only the numeric triple is compared. Unparsable input is never "before".
    """
    try:
        c = parse_semantic_version(check)
        v = parse_semantic_version(current)
    except InvalidArgumentError:
        return False
    key = ("major", "minor", "patch")
    return tuple(v[k] for k in key) < tuple(c[k] for k in key)


def is_prerelease(version: str) -> bool:
    """Return True if a version carries a pre-release tag."""
    return parse_semantic_version(version)["prerelease"] is not None


def sort_versions(versions: list[str], *, newest_first: bool = True) -> list[str]:
    """Sort parsable versions; raises InvalidArgumentError on bad input."""
    return sorted(
        versions,
        key=functools.cmp_to_key(compare_versions),
        reverse=newest_first,
    )


# =============================================================================
# Version Resolver
# =============================================================================


class VersionResolver:
    """
    Determines installed and available versions of a distribution.

    Attributes:
        fetcher: Fetcher used to read `<dist>/versions`.
        ipfs_dir: ipfs directory used to find a running daemon.
        binary_name: Executable name searched on the PATH.
    """

    def __init__(
        self,
        fetcher: Fetcher | None,
        ipfs_dir: Path,
        binary_name: str = "ipfs",
        *,
        api_check_timeout: float = 2.0,
        command_timeout: float = 30.0,
        search_path: str | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.ipfs_dir = ipfs_dir
        self.binary_name = binary_name
        self.api_check_timeout = api_check_timeout
        self.command_timeout = command_timeout
        self.search_path = search_path

    async def _daemon_version(self) -> str | None:
        client = DaemonApiClient.from_ipfs_dir(
            self.ipfs_dir, check_timeout=self.api_check_timeout
        )
        if client is None:
            return None
        try:
            return await client.version()
        except TransportError as e:
            logger.debug(f"daemon version check failed: {e}")
            return None
        finally:
            await client.close()

    async def binary_version(self, binary: str) -> str:
        """
        Run `<binary> version -n` and return the normalized version.

        Raises:
            VersionQueryError: If the binary cannot report its version.
        """
        try:
            result = await run_command(
                binary, "version", "-n", timeout=self.command_timeout
            )
        except (OSError, TimeoutError) as e:
            raise VersionQueryError(
                f"failed to check ipfs version: {e}",
                details={"binary": binary},
            ) from e

        if result.returncode != 0:
            raise VersionQueryError(
                f"failed to check ipfs version: {result.output}",
                details={"binary": binary, "returncode": result.returncode},
            )
        return normalize_version(result.stdout.strip())

    async def current_version(self) -> str:
        """
        Return the installed version, or "none" if it cannot be determined.

        A running daemon is asked first; otherwise the executable found on
        the PATH is run with `version -n`. Neither failure is fatal: a
        binary that cannot answer is logged as a warning and treated as
        absent.
        """
        version = await self._daemon_version()
        if version:
            return normalize_version(version.strip())

        binary = shutil.which(self.binary_name, path=self.search_path)
        if binary is None:
            logger.debug(f"{self.binary_name} not found on PATH")
            return NO_VERSION

        try:
            return await self.binary_version(binary)
        except VersionQueryError as e:
            logger.warning(f"{binary} did not report its version: {e.message}")
            return NO_VERSION

    async def get_versions(self, dist: str) -> list[str]:
        """
        List the published versions of a distribution, newest first.

        Raises:
            InvalidArgumentError: If no fetcher is configured.
            TransportError: If the versions file cannot be fetched.
        """
        if self.fetcher is None:
            raise InvalidArgumentError("no fetcher configured for version lookup")

        data = await self.fetcher.fetch_bytes(f"{dist}/versions")

        versions = []
        for line in data.decode("utf-8", errors="replace").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                parse_semantic_version(line)
            except InvalidArgumentError:
                logger.debug(f"skipping unparsable version {line!r}")
                continue
            versions.append(normalize_version(line))

        return sort_versions(versions)

    async def latest_version(self, dist: str, *, stable_only: bool = False) -> str:
        """
        Return the newest published version.

        Args:
            dist: Distribution name.
            stable_only: Skip versions with a pre-release tag.

        Raises:
            InvalidArgumentError: If no version qualifies.
        """
        versions = await self.get_versions(dist)
        for version in versions:
            if stable_only and is_prerelease(version):
                continue
            return version

        kind = "stable " if stable_only else ""
        raise InvalidArgumentError(
            f"no {kind}versions of {dist} found",
            details={"dist": dist},
        )

    async def resolve_target(self, version: str, dist: str) -> str:
        """Map a symbolic target to a concrete version, or normalize it."""
        if version == LATEST:
            return await self.latest_version(dist)
        if version == LATEST_STABLE:
            return await self.latest_version(dist, stable_only=True)
        return normalize_version(version)
