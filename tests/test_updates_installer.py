"""
Tests for the install orchestrator.

Tests cover:
- State transition validation
- The no-op and downgrade gates
- A full install with stash and migration check
- Rollback on failures and cancellation after the stash step
- First installs and installs without a binary on the PATH
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import posix_only
from ipfs_update.errors import (
    DowngradeRefusedError,
    FailedPreconditionError,
    InstallIOError,
    MigrationRunError,
    VerificationFailedError,
)
from ipfs_update.updates.acquisition import PlatformInfo
from ipfs_update.updates.installer import (
    _VALID_TRANSITIONS,
    Installer,
    InstallRequest,
    InstallState,
)
from ipfs_update.updates.migrations import MigrationOutcome
from ipfs_update.updates.stash import StashManager
from ipfs_update.updates.verification import BinaryVerifier
from ipfs_update.updates.version import NO_VERSION, VersionResolver

OLD_BYTES = b"old binary v0.27.0"
NEW_BYTES = b"new binary v0.28.0"
TARBALL_PATH = "kubo/v0.28.0/kubo_v0.28.0_linux-amd64.tar.gz"


class FakeVerifier(BinaryVerifier):
    """Verifier recording calls, optionally failing."""

    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[tuple[bytes, str]] = []
        self.error = error

    async def verify(self, binary_path: Path, expected_version: str) -> None:
        self.calls.append((binary_path.read_bytes(), expected_version))
        if self.error is not None:
            raise self.error


class FakeCoordinator:
    """Migration coordinator returning a fixed outcome or raising."""

    def __init__(
        self,
        outcome: MigrationOutcome = MigrationOutcome.NOT_NEEDED,
        error: BaseException | None = None,
    ) -> None:
        self.outcome = outcome
        self.error = error
        self.calls: list[tuple[Path, str]] = []

    async def check(self, binary_path: Path, target_version: str) -> MigrationOutcome:
        self.calls.append((binary_path, target_version))
        if self.error is not None:
            raise self.error
        return self.outcome


class FixedResolver(VersionResolver):
    """Resolver reporting a fixed installed version."""

    def __init__(self, current: str, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.current = current

    async def current_version(self) -> str:
        return self.current


@pytest.fixture
def bin_dir(tmp_path: Path) -> Path:
    path = tmp_path / "bin"
    path.mkdir()
    return path


@pytest.fixture
def installed(bin_dir: Path) -> Path:
    """The currently installed v0.27.0 binary."""
    path = bin_dir / "ipfs"
    path.write_bytes(OLD_BYTES)
    path.chmod(0o755)
    return path


@pytest.fixture
def fetcher(static_fetcher: Callable, tarball: Callable):
    return static_fetcher(
        {
            "kubo/versions": b"v0.26.0\nv0.27.0\nv0.28.0\n",
            TARBALL_PATH: tarball({"kubo/ipfs": NEW_BYTES}),
        }
    )


@pytest.fixture
def make_installer(
    ipfs_dir: Path, bin_dir: Path, fetcher, linux_amd64: PlatformInfo
) -> Callable[..., Installer]:
    """Factory wiring an Installer against tmp directories."""

    def _make(
        target: str = "v0.28.0",
        current: str = "v0.27.0",
        *,
        verifier: BinaryVerifier | None = None,
        coordinator: FakeCoordinator | None = None,
        no_check: bool = False,
        allow_downgrade: bool = False,
        install_dir: Path | None = None,
    ) -> Installer:
        request = InstallRequest(
            target_version=target,
            fetcher=fetcher,
            no_check=no_check,
            allow_downgrade=allow_downgrade,
        )
        return Installer(
            request,
            FixedResolver(current, fetcher, ipfs_dir),
            StashManager(ipfs_dir, search_path=str(bin_dir)),
            verifier if verifier is not None else FakeVerifier(),
            coordinator or FakeCoordinator(),
            platform=linux_amd64,
            install_dir_finder=lambda: install_dir or bin_dir,
        )

    return _make


# =============================================================================
# State machine Tests
# =============================================================================


class TestStateMachine:
    """Tests for transition validation."""

    def test_terminal_states(self) -> None:
        """Test commit and failed have no way out."""
        assert _VALID_TRANSITIONS[InstallState.COMMIT] == set()
        assert _VALID_TRANSITIONS[InstallState.FAILED] == set()

    def test_rolling_back_only_after_stash(self) -> None:
        """Test rollback is reachable exactly from stash until commit."""
        sources = {
            state
            for state, targets in _VALID_TRANSITIONS.items()
            if InstallState.ROLLING_BACK in targets
        }
        assert sources == {
            InstallState.STASH,
            InstallState.SELECT_INSTALL_LOCATION,
            InstallState.INSTALL,
            InstallState.MIGRATION_CHECK,
        }

    def test_every_state_listed(self) -> None:
        """Test the transition table covers every state."""
        assert set(_VALID_TRANSITIONS) == set(InstallState)

    def test_invalid_transition(self, make_installer: Callable[..., Installer]) -> None:
        """Test skipping a step is rejected."""
        installer = make_installer()
        with pytest.raises(FailedPreconditionError, match="Invalid state transition"):
            installer._transition_to(InstallState.INSTALL)
        assert installer.state == InstallState.START


# =============================================================================
# Gate Tests
# =============================================================================


@posix_only
class TestGates:
    """Tests for the no-op and downgrade gates."""

    @pytest.mark.asyncio
    async def test_already_installed_is_noop(
        self,
        make_installer: Callable[..., Installer],
        installed: Path,
        ipfs_dir: Path,
        fetcher,
    ) -> None:
        """Test installing the current version touches nothing."""
        installer = make_installer(target="0.27.0", current="v0.27.0")

        session = await installer.run()

        assert session.succeeded
        assert session.state == InstallState.COMMIT
        assert fetcher.calls == []
        assert list(ipfs_dir.iterdir()) == []
        assert installed.read_bytes() == OLD_BYTES

    @pytest.mark.asyncio
    async def test_downgrade_refused_before_fetch(
        self, make_installer: Callable[..., Installer], installed: Path, fetcher
    ) -> None:
        """Test a downgrade fails before any network activity."""
        installer = make_installer(target="v0.26.0", current="v0.27.0")

        with pytest.raises(DowngradeRefusedError, match="--allow-downgrade"):
            await installer.run()

        assert fetcher.calls == []
        assert installer.state == InstallState.FAILED
        assert installer.session.error_message is not None
        assert installed.read_bytes() == OLD_BYTES

    @pytest.mark.asyncio
    async def test_downgrade_allowed(
        self,
        make_installer: Callable[..., Installer],
        installed: Path,
    ) -> None:
        """Test --allow-downgrade lets an older version through."""
        installer = make_installer(target="v0.28.0", current="v0.29.0", allow_downgrade=True)

        session = await installer.run()

        assert session.succeeded
        assert installed.read_bytes() == NEW_BYTES

    @pytest.mark.asyncio
    async def test_unorderable_current_skips_gate(
        self, make_installer: Callable[..., Installer], installed: Path
    ) -> None:
        """Test a non-version current build does not block the install."""
        installer = make_installer(target="v0.28.0", current="QmDevBuild")

        session = await installer.run()

        assert session.succeeded


# =============================================================================
# Install Tests
# =============================================================================


@posix_only
class TestInstall:
    """Tests for successful installs."""

    @pytest.mark.asyncio
    async def test_full_install(
        self,
        make_installer: Callable[..., Installer],
        installed: Path,
        ipfs_dir: Path,
    ) -> None:
        """Test the new binary replaces the old one, which is stashed."""
        verifier = FakeVerifier()
        coordinator = FakeCoordinator(MigrationOutcome.RAN)
        installer = make_installer(verifier=verifier, coordinator=coordinator)

        session = await installer.run()

        assert session.state == InstallState.COMMIT
        assert session.succeeded
        assert session.install_path == installed
        assert session.stashed_from_path == installed
        assert session.migration_outcome == MigrationOutcome.RAN
        assert installed.read_bytes() == NEW_BYTES
        assert (ipfs_dir / "old-bin" / "ipfs-v0.27.0").read_bytes() == OLD_BYTES
        assert (ipfs_dir / "old-bin" / "path-old").read_text() == str(installed)
        assert not (ipfs_dir / "old-bin" / ".lock").exists()
        assert verifier.calls == [(NEW_BYTES, "v0.28.0")]
        assert coordinator.calls == [(installed, "v0.28.0")]

    @pytest.mark.asyncio
    async def test_symbolic_target(
        self, make_installer: Callable[..., Installer], installed: Path
    ) -> None:
        """Test latest resolves through the versions file."""
        session = await make_installer(target="latest").run()

        assert session.target_version == "v0.28.0"
        assert installed.read_bytes() == NEW_BYTES

    @pytest.mark.asyncio
    async def test_no_check_skips_verifier(
        self, make_installer: Callable[..., Installer], installed: Path
    ) -> None:
        """Test --no-check bypasses verification."""
        verifier = FakeVerifier(VerificationFailedError("would fail"))

        session = await make_installer(verifier=verifier, no_check=True).run()

        assert session.succeeded
        assert verifier.calls == []

    @pytest.mark.asyncio
    async def test_first_install(
        self, make_installer: Callable[..., Installer], tmp_path: Path, ipfs_dir: Path
    ) -> None:
        """Test with nothing installed the install location is discovered."""
        target_dir = tmp_path / "local-bin"
        target_dir.mkdir()

        session = await make_installer(current=NO_VERSION, install_dir=target_dir).run()

        assert session.succeeded
        assert session.stashed_from_path is None
        assert (target_dir / "ipfs").read_bytes() == NEW_BYTES
        assert not (ipfs_dir / "old-bin" / "ipfs-none").exists()

    @pytest.mark.asyncio
    async def test_daemon_without_binary_on_path(
        self, make_installer: Callable[..., Installer], tmp_path: Path
    ) -> None:
        """Test a missing prior binary is soft and the install continues."""
        target_dir = tmp_path / "local-bin"
        target_dir.mkdir()

        session = await make_installer(current="v0.27.0", install_dir=target_dir).run()

        assert session.succeeded
        assert session.stashed_from_path is None
        assert session.install_path == target_dir / "ipfs"


# =============================================================================
# Failure and Rollback Tests
# =============================================================================


@posix_only
class TestRollback:
    """Tests for failure handling."""

    @pytest.mark.asyncio
    async def test_verify_failure_touches_nothing(
        self, make_installer: Callable[..., Installer], installed: Path, ipfs_dir: Path
    ) -> None:
        """Test a failed smoke test leaves the installation alone."""
        verifier = FakeVerifier(VerificationFailedError("version didnt match"))
        installer = make_installer(verifier=verifier)

        with pytest.raises(VerificationFailedError):
            await installer.run()

        assert installer.state == InstallState.FAILED
        assert installed.read_bytes() == OLD_BYTES
        assert not (ipfs_dir / "old-bin").exists()

    @pytest.mark.asyncio
    async def test_stash_failure_surfaces(
        self, make_installer: Callable[..., Installer], installed: Path, ipfs_dir: Path
    ) -> None:
        """Test a backup that cannot be made fails the run with the binary intact."""
        installer = make_installer()

        with patch(
            "ipfs_update.updates.stash.move_file",
            side_effect=OSError(28, "No space left on device"),
        ):
            with pytest.raises(InstallIOError, match="could not stash old binary"):
                await installer.run()

        assert installer.state == InstallState.FAILED
        assert not installer.session.succeeded
        assert installer.session.install_path is None
        assert installed.read_bytes() == OLD_BYTES
        assert not (ipfs_dir / "old-bin" / "ipfs-v0.27.0").exists()

    @pytest.mark.asyncio
    async def test_migration_failure_rolls_back(
        self, make_installer: Callable[..., Installer], installed: Path, ipfs_dir: Path
    ) -> None:
        """Test a failed migration restores the exact previous binary."""
        coordinator = FakeCoordinator(error=MigrationRunError("migration failed"))
        installer = make_installer(coordinator=coordinator)

        with pytest.raises(MigrationRunError):
            await installer.run()

        assert installer.state == InstallState.FAILED
        assert not installer.session.succeeded
        assert installer.session.error_message == "migration failed"
        assert installed.read_bytes() == OLD_BYTES
        assert not (ipfs_dir / "old-bin" / "ipfs-v0.27.0").exists()

    @pytest.mark.asyncio
    async def test_install_failure_rolls_back(
        self, make_installer: Callable[..., Installer], installed: Path
    ) -> None:
        """Test a failed copy into place restores the previous binary."""
        installer = make_installer()

        with patch.object(
            StashManager,
            "install",
            side_effect=InstallIOError("error moving new binary into place"),
        ):
            with pytest.raises(InstallIOError):
                await installer.run()

        assert installer.state == InstallState.FAILED
        assert installed.read_bytes() == OLD_BYTES

    @pytest.mark.asyncio
    async def test_unexpected_error_rolls_back(
        self, make_installer: Callable[..., Installer], installed: Path
    ) -> None:
        """Test a non-domain error after stashing still restores the binary."""
        installer = make_installer()

        with patch(
            "ipfs_update.updates.installer.Installer._transition_to",
            autospec=True,
            side_effect=_fail_on(InstallState.INSTALL),
        ):
            with pytest.raises(RuntimeError, match="injected"):
                await installer.run()

        assert installed.read_bytes() == OLD_BYTES

    @pytest.mark.asyncio
    async def test_cancellation_rolls_back(
        self, make_installer: Callable[..., Installer], installed: Path
    ) -> None:
        """Test cancellation during the migration check still rolls back."""
        installer = make_installer(coordinator=FakeCoordinator(error=asyncio.CancelledError()))

        with pytest.raises(asyncio.CancelledError):
            await installer.run()

        assert installer.state == InstallState.FAILED
        assert installed.read_bytes() == OLD_BYTES

    @pytest.mark.asyncio
    async def test_lock_held_fails_before_stash(
        self, make_installer: Callable[..., Installer], installed: Path, ipfs_dir: Path
    ) -> None:
        """Test a concurrent run's lock stops the install untouched."""
        lock = ipfs_dir / "old-bin" / ".lock"
        lock.parent.mkdir()
        lock.write_text("12345")
        installer = make_installer()

        with pytest.raises(FailedPreconditionError, match="lock file"):
            await installer.run()

        assert installer.state == InstallState.FAILED
        assert installed.read_bytes() == OLD_BYTES
        assert lock.exists()


def _fail_on(state: InstallState) -> Callable[[Installer, InstallState], None]:
    """Build a _transition_to replacement raising when entering `state`."""
    original = Installer._transition_to

    def _transition(self: Installer, new_state: InstallState) -> None:
        if new_state == state:
            raise RuntimeError(f"injected failure entering {state.value}")
        original(self, new_state)

    return _transition
