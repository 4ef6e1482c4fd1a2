"""
Install orchestration for ipfs-update.

This module implements the Installer, which drives one install attempt
through a validated state machine with rollback:

- start: nothing done yet
- resolve_current: determine the installed version
- check_trivial_noop: stop if the target is already installed
- compare_for_downgrade: refuse downgrades unless allowed
- download: fetch and unpack the target binary into a temp directory
- verify: smoke-test the downloaded binary
- stash: back up the installed binary
- select_install_location: choose where the new binary goes
- install: copy the new binary into place
- migration_check: migrate the repo if the new binary needs it
- commit: the update succeeded
- rolling_back: restoring the backed-up binary after a failure
- failed: the attempt ended with an error

Nothing is written to disk before the stash step; from then until commit
any failure, including cancellation, restores the previous binary.
"""

from __future__ import annotations

import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

from ipfs_update.config import AppConfig
from ipfs_update.errors import (
    DowngradeRefusedError,
    FailedPreconditionError,
    InvalidArgumentError,
    NoPriorBinaryError,
)
from ipfs_update.fetch.backends import Fetcher
from ipfs_update.logging import get_logger
from ipfs_update.updates.acquisition import PlatformInfo, fetch_binary, platform_info
from ipfs_update.updates.migrations import (
    FsRepoMigrationsRunner,
    MigrationCoordinator,
    MigrationOutcome,
)
from ipfs_update.updates.operations import find_install_dir
from ipfs_update.updates.stash import StashManager
from ipfs_update.updates.verification import BinaryVerifier, SmokeTestVerifier
from ipfs_update.updates.version import (
    NO_VERSION,
    VersionResolver,
    compare_versions,
)

logger = get_logger(__name__)


class InstallState(str, Enum):
    """
    States of an install attempt.

    Forward transitions follow the declared order. `failed` is reachable
    from every step before stash; from stash until commit a failure goes
    through `rolling_back` first. `commit` and `failed` are terminal.
    """

    START = "start"
    RESOLVE_CURRENT = "resolve_current"
    CHECK_TRIVIAL_NOOP = "check_trivial_noop"
    COMPARE_FOR_DOWNGRADE = "compare_for_downgrade"
    DOWNLOAD = "download"
    VERIFY = "verify"
    STASH = "stash"
    SELECT_INSTALL_LOCATION = "select_install_location"
    INSTALL = "install"
    MIGRATION_CHECK = "migration_check"
    COMMIT = "commit"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


# Valid state transitions
_VALID_TRANSITIONS: dict[InstallState, set[InstallState]] = {
    InstallState.START: {InstallState.RESOLVE_CURRENT, InstallState.FAILED},
    InstallState.RESOLVE_CURRENT: {InstallState.CHECK_TRIVIAL_NOOP, InstallState.FAILED},
    InstallState.CHECK_TRIVIAL_NOOP: {
        InstallState.COMPARE_FOR_DOWNGRADE,
        InstallState.COMMIT,
        InstallState.FAILED,
    },
    InstallState.COMPARE_FOR_DOWNGRADE: {InstallState.DOWNLOAD, InstallState.FAILED},
    InstallState.DOWNLOAD: {InstallState.VERIFY, InstallState.FAILED},
    InstallState.VERIFY: {InstallState.STASH, InstallState.FAILED},
    InstallState.STASH: {InstallState.SELECT_INSTALL_LOCATION, InstallState.ROLLING_BACK},
    InstallState.SELECT_INSTALL_LOCATION: {InstallState.INSTALL, InstallState.ROLLING_BACK},
    InstallState.INSTALL: {InstallState.MIGRATION_CHECK, InstallState.ROLLING_BACK},
    InstallState.MIGRATION_CHECK: {InstallState.COMMIT, InstallState.ROLLING_BACK},
    InstallState.ROLLING_BACK: {InstallState.FAILED},
    InstallState.COMMIT: set(),
    InstallState.FAILED: set(),
}

# States in which the filesystem may have been changed
_MUTATING_STATES = {
    InstallState.STASH,
    InstallState.SELECT_INSTALL_LOCATION,
    InstallState.INSTALL,
    InstallState.MIGRATION_CHECK,
}


@dataclass(frozen=True)
class InstallRequest:
    """
    What the operator asked for.

    Attributes:
        target_version: Concrete or symbolic version to install.
        fetcher: Fetcher for binaries and migrations.
        no_check: Skip verification of the downloaded binary.
        allow_downgrade: Permit installing an older version.
    """

    target_version: str
    fetcher: Fetcher
    no_check: bool = False
    allow_downgrade: bool = False


class InstallSession(BaseModel):
    """
    State of one install attempt.

    Attributes:
        state: Current state machine state.
        current_version: Installed version, "none" if not installed.
        target_version: Normalized version being installed.
        temp_binary_path: Downloaded binary awaiting install.
        stashed_from_path: Where the previous binary was installed.
        install_path: Final location of the new binary.
        migration_outcome: Result of the repo migration check.
        succeeded: True once the attempt committed.
        error_message: Failure that ended the attempt.
    """

    state: InstallState = Field(default=InstallState.START)
    current_version: str = Field(default=NO_VERSION)
    target_version: str = Field(..., description="Normalized target version")
    temp_binary_path: Path | None = None
    stashed_from_path: Path | None = None
    install_path: Path | None = None
    migration_outcome: MigrationOutcome | None = None
    succeeded: bool = False
    error_message: str | None = None


class Installer:
    """
    Drives one install attempt from start to commit or rollback.

    Attributes:
        request: The install request.
        session: State of this attempt.
    """

    def __init__(
        self,
        request: InstallRequest,
        resolver: VersionResolver,
        stash_manager: StashManager,
        verifier: BinaryVerifier | None,
        migration_coordinator: MigrationCoordinator,
        *,
        distribution: str = "kubo",
        binary_name: str = "ipfs",
        platform: PlatformInfo | None = None,
        install_dir_finder: Callable[[], Path] = find_install_dir,
    ) -> None:
        self.request = request
        self.resolver = resolver
        self.stash_manager = stash_manager
        self.verifier = verifier
        self.migration_coordinator = migration_coordinator
        self.distribution = distribution
        self.binary_name = binary_name
        self.platform = platform or platform_info()
        self.install_dir_finder = install_dir_finder
        self.session = InstallSession(target_version=request.target_version)

    @classmethod
    def from_config(cls, request: InstallRequest, config: AppConfig) -> Installer:
        """Wire an installer with the default components."""
        updater = config.updater
        ipfs_dir = updater.resolved_ipfs_dir()
        return cls(
            request,
            VersionResolver(
                request.fetcher,
                ipfs_dir,
                updater.binary_name,
                api_check_timeout=updater.api_check_timeout_seconds,
                command_timeout=config.verification.command_timeout_seconds,
            ),
            StashManager(
                ipfs_dir,
                updater.binary_name,
                use_lock_file=updater.use_lock_file,
            ),
            SmokeTestVerifier(ipfs_dir, config.verification),
            MigrationCoordinator(
                ipfs_dir,
                FsRepoMigrationsRunner(updater.migration_distribution),
                request.fetcher,
                command_timeout=config.verification.command_timeout_seconds,
            ),
            distribution=updater.distribution,
            binary_name=updater.binary_name,
        )

    @property
    def state(self) -> InstallState:
        """Get the current state."""
        return self.session.state

    def _transition_to(self, new_state: InstallState) -> None:
        """
        Transition to a new state.

        Raises:
            FailedPreconditionError: If the transition is not valid.
        """
        current = self.session.state

        if new_state not in _VALID_TRANSITIONS.get(current, set()):
            raise FailedPreconditionError(
                f"Invalid state transition from {current.value} to {new_state.value}",
                details={
                    "current_state": current.value,
                    "target_state": new_state.value,
                    "valid_transitions": sorted(
                        s.value for s in _VALID_TRANSITIONS.get(current, set())
                    ),
                },
            )

        logger.debug(
            f"State transition: {current.value} -> {new_state.value}",
            extra={
                "old_state": current.value,
                "new_state": new_state.value,
                "target_version": self.session.target_version,
            },
        )
        self.session.state = new_state

    async def run(self) -> InstallSession:
        """
        Run the install attempt.

        Returns:
            The committed session.

        Raises:
            UpdateError: The error that ended the attempt, after rollback.
        """
        session = self.session
        try:
            with tempfile.TemporaryDirectory(prefix="ipfs-update-") as tmp:
                await self._prepare(Path(tmp))
                if session.succeeded:
                    return session

                with self.stash_manager.locked():
                    try:
                        await self._apply()
                    finally:
                        if not session.succeeded:
                            self._rollback()
        except BaseException as e:
            session.error_message = str(e) or e.__class__.__name__
            if InstallState.FAILED in _VALID_TRANSITIONS[session.state]:
                self._transition_to(InstallState.FAILED)
            raise

        return session

    async def _prepare(self, workdir: Path) -> None:
        session = self.session

        self._transition_to(InstallState.RESOLVE_CURRENT)
        session.target_version = await self.resolver.resolve_target(
            self.request.target_version, self.distribution
        )
        session.current_version = await self.resolver.current_version()
        logger.debug(f"  - current version is {session.current_version}")

        self._transition_to(InstallState.CHECK_TRIVIAL_NOOP)
        if session.current_version == session.target_version:
            logger.info(
                f"Already have version {session.target_version} installed, skipping."
            )
            self._transition_to(InstallState.COMMIT)
            session.succeeded = True
            return

        self._transition_to(InstallState.COMPARE_FOR_DOWNGRADE)
        self._check_downgrade()

        self._transition_to(InstallState.DOWNLOAD)
        session.temp_binary_path = await fetch_binary(
            self.request.fetcher,
            self.distribution,
            session.target_version,
            self.binary_name,
            workdir,
            self.platform,
        )

        self._transition_to(InstallState.VERIFY)
        if self.request.no_check or self.verifier is None:
            logger.info("skipping tests since '--no-check' was passed")
        else:
            await self.verifier.verify(session.temp_binary_path, session.target_version)

    def _check_downgrade(self) -> None:
        session = self.session
        if session.current_version == NO_VERSION or self.request.allow_downgrade:
            return

        try:
            order = compare_versions(session.target_version, session.current_version)
        except InvalidArgumentError:
            logger.warning(
                f"cannot order {session.current_version} and {session.target_version}, "
                "skipping downgrade check"
            )
            return

        if order < 0:
            raise DowngradeRefusedError(
                f"downgrading from {session.current_version} to {session.target_version} "
                "is not allowed, pass --allow-downgrade or use revert",
                details={
                    "current_version": session.current_version,
                    "target_version": session.target_version,
                },
            )

    async def _apply(self) -> None:
        session = self.session
        if session.temp_binary_path is None:
            raise FailedPreconditionError("no downloaded binary to install")

        self._transition_to(InstallState.STASH)
        if session.current_version != NO_VERSION:
            try:
                session.stashed_from_path = self.stash_manager.stash(
                    session.current_version
                )
            except NoPriorBinaryError as e:
                logger.warning(f"{e}")
                logger.warning(
                    "an ipfs daemon may be running without an ipfs binary on the PATH, "
                    "continuing without a backup"
                )

        self._transition_to(InstallState.SELECT_INSTALL_LOCATION)
        exe = self.binary_name + self.platform.exe_suffix
        if session.stashed_from_path is not None:
            install_dir = session.stashed_from_path.parent
        else:
            install_dir = self.install_dir_finder()
        session.install_path = install_dir / exe

        self._transition_to(InstallState.INSTALL)
        self.stash_manager.install(session.temp_binary_path, session.install_path)

        self._transition_to(InstallState.MIGRATION_CHECK)
        session.migration_outcome = await self.migration_coordinator.check(
            session.install_path, session.target_version
        )

        self._transition_to(InstallState.COMMIT)
        session.succeeded = True
        logger.info(
            f"Installation complete! {session.target_version} installed at "
            f"{session.install_path}"
        )

    def _rollback(self) -> None:
        """Restore the stashed binary. Never raises."""
        session = self.session
        if session.succeeded or session.state not in _MUTATING_STATES:
            return

        self._transition_to(InstallState.ROLLING_BACK)
        if session.current_version != NO_VERSION:
            install_path = session.install_path or session.stashed_from_path
            if install_path is None:
                logger.error("install failed before an install location was known")
            else:
                logger.error("install failed, reverting changes...")
                if self.stash_manager.revert(install_path, session.current_version):
                    logger.info(f"reverted to {session.current_version}")
        self._transition_to(InstallState.FAILED)
