"""
Extraction of a single executable from a distribution archive.

Distributions are published as `.tar.gz` archives, or `.zip` on Windows,
containing a `<dist>/` directory with the executable inside.
"""

from __future__ import annotations

import gzip
import shutil
import tarfile
import zipfile
import zlib
from pathlib import Path

from ipfs_update.errors import DecodeError, NoBinaryFoundError
from ipfs_update.logging import get_logger

logger = get_logger(__name__)


def _extract_from_tar(archive_path: Path, entry_name: str, out_path: Path) -> None:
    try:
        with tarfile.open(archive_path, mode="r:gz") as tar:
            for member in tar:
                if member.name != entry_name:
                    continue
                if not member.isfile():
                    break
                source = tar.extractfile(member)
                if source is None:
                    break
                with source, open(out_path, "wb") as dest:
                    shutil.copyfileobj(source, dest)
                return
    except (tarfile.TarError, gzip.BadGzipFile, zlib.error, EOFError) as e:
        raise DecodeError(
            f"error opening tar.gz archive: {e}",
            details={"archive": str(archive_path)},
        ) from e

    raise NoBinaryFoundError(
        f"no binary {entry_name!r} found in archive",
        details={"archive": str(archive_path), "entry": entry_name},
    )


def _extract_from_zip(archive_path: Path, entry_name: str, out_path: Path) -> None:
    try:
        with zipfile.ZipFile(archive_path) as zf:
            try:
                info = zf.getinfo(entry_name)
            except KeyError:
                info = None
            if info is not None and not info.is_dir():
                with zf.open(info) as source, open(out_path, "wb") as dest:
                    shutil.copyfileobj(source, dest)
                return
    except (zipfile.BadZipFile, zlib.error, EOFError) as e:
        raise DecodeError(
            f"error opening zip archive: {e}",
            details={"archive": str(archive_path)},
        ) from e

    raise NoBinaryFoundError(
        f"no binary {entry_name!r} found in archive",
        details={"archive": str(archive_path), "entry": entry_name},
    )


def extract_entry(
    archive_path: Path,
    archive_format: str,
    entry_name: str,
    out_path: Path,
) -> Path:
    """
    Extract one regular-file entry from an archive.

    Args:
        archive_path: The downloaded archive.
        archive_format: "tar.gz" or "zip".
        entry_name: Exact entry name, e.g. "kubo/ipfs".
        out_path: Destination file.

    Returns:
        The destination path.

    Raises:
        DecodeError: If the archive is not a valid archive of its format.
        NoBinaryFoundError: If the entry is missing.
    """
    logger.debug(f"extracting {entry_name} from {archive_path.name} to {out_path}")
    if archive_format == "zip":
        _extract_from_zip(archive_path, entry_name, out_path)
    elif archive_format == "tar.gz":
        _extract_from_tar(archive_path, entry_name, out_path)
    else:
        raise DecodeError(
            f"unsupported archive format: {archive_format}",
            details={"archive": str(archive_path)},
        )
    return out_path
