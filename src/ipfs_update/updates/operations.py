"""
Filesystem and subprocess primitives for installing binaries.

This module implements the low-level operations the stash/install/revert
manager and the orchestrator build on:
- Copy and move that work across filesystem boundaries
- Force-removal of an in-use executable (relocated on Windows)
- Directory creation/removal with domain errors
- An exclusive lock file guarding the stash directory
- Install-location discovery for first installs
- Bounded subprocess execution
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import platform
import shutil
import tempfile
import time
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path

from ipfs_update.errors import FailedPreconditionError, InstallIOError
from ipfs_update.logging import get_logger

logger = get_logger(__name__)

IS_WINDOWS = platform.system() == "Windows"


def exe_name(name: str) -> str:
    """Return the platform executable file name for a binary name."""
    if IS_WINDOWS and not name.endswith(".exe"):
        return name + ".exe"
    return name


def ensure_directory(path: Path, *, parents: bool = True, mode: int = 0o755) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Raises:
        InstallIOError: If the directory cannot be created.
    """
    try:
        path.mkdir(parents=parents, mode=mode, exist_ok=True)
        return path
    except OSError as e:
        raise InstallIOError(
            f"Failed to create directory: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def safe_remove_directory(path: Path) -> bool:
    """
    Remove a directory tree, logging instead of raising on failure.

    Returns:
        True if the directory was removed, False if it didn't exist or
        could not be removed.
    """
    if not path.exists():
        return False

    try:
        shutil.rmtree(path)
    except OSError as e:
        logger.warning(f"error cleaning up directory {path}: {e}")
        return False
    logger.debug("Removed directory", extra={"path": str(path)})
    return True


def force_remove(path: Path) -> None:
    """
    Remove a file even if it is in use.

    On Windows a running executable cannot be deleted, but it can be moved;
    such a file is relocated to the temp directory instead. A missing file
    is not an error.
    """
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError:
        if not IS_WINDOWS:
            raise
        stamp = time.strftime("%Y.%m.%d-%H.%M.%S")
        final_path = Path(tempfile.gettempdir()) / f"{stamp} {path.name}"
        logger.debug(f"  - {path} is in use, moving it to {final_path}")
        shutil.move(str(path), str(final_path))


def copy_file(src: Path, dest: Path) -> None:
    """
    Copy a file's bytes to a destination.

    The content is copied to a temporary file beside the destination and
    then renamed over it, so a running executable at `dest` is replaced
    rather than rewritten. On Windows the destination is force-removed
    first.
    """
    logger.debug(f"  - copying {src} to {dest}")
    fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.")
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        shutil.copyfile(src, tmp_path)
        if IS_WINDOWS:
            force_remove(dest)
        os.replace(tmp_path, dest)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp_path.unlink()
        raise


def move_file(src: Path, dest: Path) -> None:
    """Copy a file to a destination, then remove the source."""
    copy_file(src, dest)
    force_remove(src)


@contextlib.contextmanager
def exclusive_lock(lock_path: Path) -> Iterator[Path]:
    """
    Hold an exclusive lock file for the duration of the block.

    Concurrent runs are not supported; the lock makes a second run fail fast
    instead of corrupting the stash directory.

    Raises:
        FailedPreconditionError: If the lock is already held.
        InstallIOError: If the lock file cannot be created.
    """
    ensure_directory(lock_path.parent, mode=0o700)
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    except FileExistsError as e:
        raise FailedPreconditionError(
            f"another ipfs-update appears to be running (lock file {lock_path} exists)",
            details={"lock_path": str(lock_path)},
        ) from e
    except OSError as e:
        raise InstallIOError(
            f"could not create lock file {lock_path}: {e}",
            details={"lock_path": str(lock_path)},
        ) from e

    try:
        os.write(fd, str(os.getpid()).encode())
        os.close(fd)
        yield lock_path
    finally:
        with contextlib.suppress(FileNotFoundError):
            lock_path.unlink()


# =============================================================================
# Install location discovery
# =============================================================================


def can_write(directory: Path) -> bool:
    """Return True if a file can be created and written in a directory."""
    try:
        with tempfile.NamedTemporaryFile(dir=directory, prefix=".ipfs-update-test"):
            pass
    except OSError:
        return False
    return True


def _ensure_writable(directory: Path) -> bool:
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False
    return can_write(directory)


def find_install_dir(
    search_path: str | None = None,
    home: Path | None = None,
    is_root: bool | None = None,
) -> Path:
    """
    Choose a directory for a first-time install.

    Candidates must be on the search path. Root prefers /usr/local/bin and
    /usr/bin; other users ~/.local/bin then ~/bin (created if missing).

    Args:
        search_path: PATH-style string; defaults to $PATH.
        home: Home directory; defaults to the current user's.
        is_root: Whether running as root; detected if None.

    Returns:
        The chosen directory.

    Raises:
        FailedPreconditionError: If no suitable directory exists.
    """
    if search_path is None:
        search_path = os.environ.get("PATH", "")
    path_dirs = {os.path.normpath(p) for p in search_path.split(os.pathsep) if p}

    def in_path(directory: Path) -> bool:
        return os.path.normpath(str(directory)) in path_dirs

    if is_root is None:
        is_root = hasattr(os, "getuid") and os.getuid() == 0

    if is_root:
        logger.info("checking root install locations")
        for candidate in (Path("/usr/local/bin"), Path("/usr/bin")):
            if in_path(candidate) and can_write(candidate):
                return candidate

    if home is None:
        with contextlib.suppress(RuntimeError):
            home = Path.home()

    if home is not None:
        logger.info("checking user install locations")
        user_paths = [
            p for p in (home / ".local" / "bin", home / "bin") if in_path(p)
        ]
        for candidate in user_paths:
            if candidate.is_dir() and can_write(candidate):
                return candidate
        for candidate in user_paths:
            if _ensure_writable(candidate):
                return candidate

    raise FailedPreconditionError(
        "could not find good install location",
        details={"search_path": search_path},
    )


# =============================================================================
# Subprocess execution
# =============================================================================


@dataclass
class CommandResult:
    """Outcome of a finished subprocess."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        """Combined stdout and stderr, stripped."""
        return (self.stdout + self.stderr).strip()


async def run_command(
    *args: str,
    timeout: float = 60.0,
    env: Mapping[str, str] | None = None,
    input_data: bytes | None = None,
) -> CommandResult:
    """
    Run a subprocess and wait for it with a timeout.

    On timeout or cancellation the process is killed before the exception
    propagates, so no child outlives the call.

    Raises:
        TimeoutError: If the command does not finish in time.
        OSError: If the command cannot be started.
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.PIPE if input_data is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=dict(env) if env is not None else None,
    )
    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(input_data), timeout=timeout
        )
    except BaseException:
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
        raise

    return CommandResult(
        returncode=process.returncode or 0,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
