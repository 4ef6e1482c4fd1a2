"""
Stash, install and revert of ipfs binaries.

Backups live in the ipfs directory:

    <ipfs-dir>/old-bin/ipfs-<tag>    backup of a previously installed binary
    <ipfs-dir>/old-bin/path-old      absolute path the binary was installed at

Several backups can coexist, one per tag. `path-old` always records the
location of the most recent stash.
"""

from __future__ import annotations

import contextlib
import shutil
from collections.abc import Iterator
from datetime import datetime
from pathlib import Path
from typing import TextIO

from pydantic import BaseModel, Field

from ipfs_update.errors import InstallIOError, NoPriorBinaryError, UserAbortError
from ipfs_update.logging import get_logger
from ipfs_update.updates.operations import (
    copy_file,
    ensure_directory,
    exclusive_lock,
    force_remove,
    move_file,
)

logger = get_logger(__name__)

STASH_DIR_NAME = "old-bin"
PATH_FILE_NAME = "path-old"
LOCK_FILE_NAME = ".lock"


def format_timestamp(value: datetime) -> str:
    """Format a time like "Mon Jan  2 15:04:05 2006"."""
    return f"{value:%a %b} {value.day:>2} {value:%H:%M:%S %Y}"


class StashRecord(BaseModel):
    """
    A backup binary in the stash directory.

    Attributes:
        name: File name, e.g. "ipfs-v0.27.0".
        path: Absolute path of the backup.
        tag: Tag the backup was stored under, usually a version.
        modified_at: Modification time of the backup.
    """

    name: str = Field(..., description="File name of the backup")
    path: Path = Field(..., description="Absolute path of the backup")
    tag: str = Field(..., description="Tag the backup was stored under")
    modified_at: datetime = Field(..., description="Modification time")


class StashManager:
    """
    Owns the stash directory and moves binaries in and out of it.

    Attributes:
        ipfs_dir: The ipfs directory holding `old-bin`.
        binary_name: Executable name searched on the PATH.
        search_path: PATH-style string; None uses $PATH.
        use_lock_file: Whether `locked()` takes the lock file.
    """

    def __init__(
        self,
        ipfs_dir: Path,
        binary_name: str = "ipfs",
        *,
        search_path: str | None = None,
        use_lock_file: bool = True,
    ) -> None:
        self.ipfs_dir = ipfs_dir
        self.binary_name = binary_name
        self.search_path = search_path
        self.use_lock_file = use_lock_file

    @property
    def stash_dir(self) -> Path:
        return self.ipfs_dir / STASH_DIR_NAME

    @property
    def path_file(self) -> Path:
        return self.stash_dir / PATH_FILE_NAME

    def stash_path(self, tag: str) -> Path:
        """Return the backup location for a tag."""
        return self.stash_dir / f"{self.binary_name}-{tag}"

    @contextlib.contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the stash lock file, if enabled, for the duration of the block."""
        if not self.use_lock_file:
            yield
            return
        with exclusive_lock(self.stash_dir / LOCK_FILE_NAME):
            yield

    def find_installed(self) -> Path:
        """
        Locate the installed executable on the PATH.

        Raises:
            NoPriorBinaryError: If there is none.
        """
        found = shutil.which(self.binary_name, path=self.search_path)
        if found is None:
            raise NoPriorBinaryError(
                f"could not find old {self.binary_name} installation",
                details={"binary_name": self.binary_name},
            )
        return Path(found).absolute()

    def stash(self, tag: str, keep_original: bool = False) -> Path:
        """
        Back up the installed binary as `old-bin/<binary>-<tag>`.

        Args:
            tag: Tag to store the backup under, usually the installed version.
            keep_original: Copy instead of move, leaving the binary in place.

        Returns:
            The absolute path the binary was stashed from.

        Raises:
            NoPriorBinaryError: If no binary is installed.
            InstallIOError: If the backup cannot be made.
        """
        original = self.find_installed()
        target = self.stash_path(tag)

        if keep_original:
            logger.info(f"copying {original} to {target}")
        else:
            logger.info(f"moving {original} to {target}")

        ensure_directory(self.stash_dir, mode=0o700)
        try:
            self.path_file.write_text(str(original))
            if keep_original:
                copy_file(original, target)
            else:
                move_file(original, target)
        except OSError as e:
            raise InstallIOError(
                f"could not stash old binary: {e}",
                details={"source": str(original), "target": str(target)},
            ) from e

        return original

    def install(self, source: Path, dest: Path) -> None:
        """
        Copy a binary into place and make it executable.

        Raises:
            InstallIOError: If the copy or chmod fails.
        """
        logger.info(f"installing new binary to {dest}")
        try:
            copy_file(source, dest)
            dest.chmod(0o755)
        except OSError as e:
            raise InstallIOError(
                f"error moving new binary into place: {e}",
                details={"source": str(source), "dest": str(dest)},
            ) from e

    def revert(self, install_path: Path, version: str) -> bool:
        """
        Restore a stashed binary to where it was installed.

        Never raises; on failure the location of the backup and a manual
        recovery command are logged.

        Returns:
            True if the backup was restored.
        """
        stash = self.stash_path(version)
        if not stash.exists():
            logger.error(f"no stashed binary found at {stash}, cannot revert")
            return False

        logger.info(f"reverting to {version}: moving {stash} to {install_path}")
        try:
            move_file(stash, install_path)
            install_path.chmod(0o755)
        except OSError as e:
            logger.error(f"error reverting: {e}")
            logger.error(f"the previous binary is stashed at {stash}")
            logger.error(f'try: mv "{stash}" "{install_path}"')
            return False
        return True

    def list_stashes(self) -> list[StashRecord]:
        """Return every backup in the stash directory, sorted by name."""
        if not self.stash_dir.is_dir():
            return []

        prefix = f"{self.binary_name}-"
        records = []
        for entry in sorted(self.stash_dir.iterdir()):
            if entry.name in (PATH_FILE_NAME, LOCK_FILE_NAME):
                continue
            if not entry.name.startswith(prefix) or not entry.is_file():
                continue
            records.append(
                StashRecord(
                    name=entry.name,
                    path=entry.absolute(),
                    tag=entry.name[len(prefix) :],
                    modified_at=datetime.fromtimestamp(entry.stat().st_mtime),
                )
            )
        return records

    def select_stash_for_revert(
        self, input_stream: TextIO, output_stream: TextIO
    ) -> StashRecord:
        """
        Choose the backup to revert to.

        A single backup is returned without asking. With several, a numbered
        table is written to `output_stream` and a choice read from `input_stream`.

        Raises:
            NoPriorBinaryError: If there are no backups.
            UserAbortError: If the operator enters 0.
            InstallIOError: If input ends before a valid choice.
        """
        records = self.list_stashes()
        if not records:
            raise NoPriorBinaryError(
                f"no prior binary found in {self.stash_dir}",
                details={"stash_dir": str(self.stash_dir)},
            )
        if len(records) == 1:
            return records[0]

        output_stream.write("found multiple old binaries:\n")
        width = max(len(r.name) for r in records)
        for i, record in enumerate(records, start=1):
            output_stream.write(
                f"{i}) {record.name:<{width}}  {format_timestamp(record.modified_at)}\n"
            )
        output_stream.write("install which? (0 to exit)\n")
        output_stream.flush()

        while True:
            line = input_stream.readline()
            if not line:
                raise InstallIOError("failed to select binary")
            try:
                choice = int(line.strip())
            except ValueError:
                choice = -1

            if choice == 0:
                raise UserAbortError()
            if 1 <= choice <= len(records):
                return records[choice - 1]

            output_stream.write(
                f"please enter a number in the range 1-{len(records)} (0 to exit)\n"
            )
            output_stream.flush()

    def revert_to(self, record: StashRecord) -> Path:
        """
        Install a backup at the path recorded in `path-old` and drop it.

        Returns:
            The path the backup was installed to.

        Raises:
            InstallIOError: If `path-old` is unreadable or the install fails.
        """
        try:
            old_path = Path(self.path_file.read_text().strip())
        except OSError as e:
            raise InstallIOError(
                f"cannot revert: failed to read {self.path_file}: {e}",
                details={"path_file": str(self.path_file)},
            ) from e

        logger.info(f"reverting to {record.tag}: installing {record.path} at {old_path}")
        self.install(record.path, old_path)

        try:
            force_remove(record.path)
        except OSError as e:
            raise InstallIOError(
                f"failed to remove stashed binary after revert: {e}",
                details={"stash": str(record.path)},
            ) from e
        return old_path
