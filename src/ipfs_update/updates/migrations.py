"""
Repo migration check after a binary install.

The repo records its format version in `<ipfs-dir>/version`; each ipfs
binary reports the format it expects through `ipfs version --repo`. When the
two differ, the fs-repo-migrations tool is fetched from the distribution
tree and run to bring the repo to the expected version.
"""

from __future__ import annotations

import os
import tempfile
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path

from ipfs_update.errors import MigrationQueryError, MigrationRunError, UpdateError
from ipfs_update.fetch.backends import Fetcher
from ipfs_update.logging import get_logger
from ipfs_update.updates.acquisition import PlatformInfo, fetch_binary
from ipfs_update.updates.operations import run_command
from ipfs_update.updates.version import VersionResolver, before_version

logger = get_logger(__name__)

REPO_VERSION_FILE = "version"
# Oldest release able to report its repo version via `version --repo`
REPO_VERSION_SUPPORT = "v0.3.10"


class MigrationOutcome(str, Enum):
    """Result of a migration check."""

    NOT_NEEDED = "not_needed"
    RAN = "ran"
    SKIPPED = "skipped"


def read_repo_version(ipfs_dir: Path) -> int | None:
    """
    Read the repo format version.

    Returns:
        The version, or None if there is no repo.

    Raises:
        MigrationQueryError: If the version file is unreadable or not an integer.
    """
    path = ipfs_dir / REPO_VERSION_FILE
    try:
        text = path.read_text().strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise MigrationQueryError(
            f"could not read repo version: {e}",
            details={"path": str(path)},
        ) from e

    try:
        return int(text)
    except ValueError as e:
        raise MigrationQueryError(
            f"repo version is not an integer: {text}",
            details={"path": str(path)},
        ) from e


async def binary_repo_version(binary_path: Path, timeout: float = 60.0) -> int:
    """
    Ask a binary which repo version it expects.

    Raises:
        MigrationQueryError: If the binary cannot answer.
    """
    try:
        result = await run_command(str(binary_path), "version", "--repo", timeout=timeout)
    except (OSError, TimeoutError) as e:
        raise MigrationQueryError(
            f"failed to run {binary_path} version --repo: {e}",
            details={"binary": str(binary_path)},
        ) from e

    if result.returncode != 0:
        raise MigrationQueryError(
            f"exit status {result.returncode}: {result.output}",
            details={"binary": str(binary_path)},
        )

    text = result.output
    try:
        return int(text)
    except ValueError as e:
        raise MigrationQueryError(
            f"repo version is not an integer: {text}",
            details={"binary": str(binary_path)},
        ) from e


# =============================================================================
# Migration runners
# =============================================================================


class MigrationRunner(ABC):
    """Brings a repo to a target format version."""

    @abstractmethod
    async def run_migration(
        self,
        fetcher: Fetcher,
        target_repo_version: int,
        ipfs_dir: Path,
        allow_downgrade: bool,
    ) -> None:
        """
        Migrate the repo in `ipfs_dir` to `target_repo_version`.

        Raises:
            UpdateError: If the migration fails.
        """


class FsRepoMigrationsRunner(MigrationRunner):
    """
    Runs the fs-repo-migrations tool from the distribution tree.

    The latest release of the tool is fetched through the same fetcher used
    for the binary, then run as
    `fs-repo-migrations -to <n> -y [-revert-ok]` with IPFS_PATH set.
    """

    DEFAULT_TIMEOUT = 3600.0

    def __init__(
        self,
        distribution: str = "fs-repo-migrations",
        *,
        timeout: float = DEFAULT_TIMEOUT,
        platform: PlatformInfo | None = None,
    ) -> None:
        self.distribution = distribution
        self.timeout = timeout
        self.platform = platform

    async def run_migration(
        self,
        fetcher: Fetcher,
        target_repo_version: int,
        ipfs_dir: Path,
        allow_downgrade: bool,
    ) -> None:
        resolver = VersionResolver(fetcher, ipfs_dir)
        version = await resolver.latest_version(self.distribution, stable_only=True)
        logger.info(f"using {self.distribution} {version}")

        with tempfile.TemporaryDirectory(prefix="ipfs-update-migrate-") as scratch:
            binary = await fetch_binary(
                fetcher,
                self.distribution,
                version,
                self.distribution,
                Path(scratch),
                self.platform,
            )
            binary.chmod(0o755)

            args = [str(binary), "-to", str(target_repo_version), "-y"]
            if allow_downgrade:
                args.append("-revert-ok")

            logger.info(f"running migration: {' '.join(args[1:])}")
            env = {**os.environ, "IPFS_PATH": str(ipfs_dir)}
            try:
                result = await run_command(*args, timeout=self.timeout, env=env)
            except (OSError, TimeoutError) as e:
                raise MigrationRunError(
                    f"failed to run migrations: {e}",
                    details={"target": target_repo_version},
                ) from e

        if result.stdout.strip():
            logger.info(result.stdout.strip())
        if result.returncode != 0:
            raise MigrationRunError(
                f"migration failed: {result.output}",
                details={"target": target_repo_version, "returncode": result.returncode},
            )


# =============================================================================
# Migration coordinator
# =============================================================================


class MigrationCoordinator:
    """
    Decides whether a freshly installed binary needs a repo migration.

    Attributes:
        ipfs_dir: The ipfs directory holding the repo.
        runner: Runner invoked when a migration is required.
        fetcher: Fetcher handed to the runner.
        command_timeout: Timeout for `version --repo`.
    """

    def __init__(
        self,
        ipfs_dir: Path,
        runner: MigrationRunner,
        fetcher: Fetcher,
        *,
        command_timeout: float = 60.0,
    ) -> None:
        self.ipfs_dir = ipfs_dir
        self.runner = runner
        self.fetcher = fetcher
        self.command_timeout = command_timeout

    async def check(self, binary_path: Path, target_version: str) -> MigrationOutcome:
        """
        Run a migration if the repo and the new binary disagree.

        Args:
            binary_path: The newly installed binary.
            target_version: Version of that binary.

        Returns:
            The outcome of the check.

        Raises:
            MigrationRunError: If a required migration fails.
        """
        logger.info("checking if repo migration is needed...")

        if before_version(REPO_VERSION_SUPPORT, target_version):
            logger.info(
                f"  - ipfs pre {REPO_VERSION_SUPPORT} does not support checking "
                "of repo version through the tool"
            )
            logger.info(
                "  - if a migration is required, you will be prompted when starting ipfs"
            )
            return MigrationOutcome.SKIPPED

        try:
            old_version = read_repo_version(self.ipfs_dir)
            if old_version is None:
                logger.debug("  - no prexisting repo to migrate")
                return MigrationOutcome.SKIPPED
            logger.debug(f"  - old repo version is {old_version}")

            new_version = await binary_repo_version(binary_path, self.command_timeout)
        except MigrationQueryError as e:
            logger.info("Failed to check new binary repo version.")
            logger.debug(f"Reason: {e}")
            logger.info("This is not an error.")
            logger.info("This just means that you may have to manually run the migration")
            logger.info(
                "You will be prompted to do so upon starting the ipfs daemon if necessary"
            )
            return MigrationOutcome.SKIPPED

        logger.debug(f"  - repo version of new binary is {new_version}")

        if old_version == new_version:
            logger.debug("  check complete, no migration required.")
            return MigrationOutcome.NOT_NEEDED

        logger.info("  check complete, migration required.")
        try:
            await self.runner.run_migration(
                self.fetcher, new_version, self.ipfs_dir, allow_downgrade=True
            )
        except MigrationRunError:
            raise
        except UpdateError as e:
            raise MigrationRunError(
                f"migration failed: {e}",
                details={"from": old_version, "to": new_version},
            ) from e

        return MigrationOutcome.RAN
