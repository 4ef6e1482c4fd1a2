"""
Update pipeline for ipfs-update.

This package implements the steps of an install:
- version: installed/available versions and ordering
- acquisition: download and unpack a distribution binary
- verification: smoke test of a candidate binary
- stash: backup, install and revert of binaries
- migrations: repo migration after an install
- installer: the state machine driving one install attempt
"""

from ipfs_update.updates.installer import (
    Installer,
    InstallRequest,
    InstallSession,
    InstallState,
)
from ipfs_update.updates.migrations import MigrationCoordinator, MigrationOutcome
from ipfs_update.updates.stash import StashManager, StashRecord
from ipfs_update.updates.verification import BinaryVerifier, SmokeTestVerifier
from ipfs_update.updates.version import VersionResolver, normalize_version

__all__ = [
    "BinaryVerifier",
    "InstallRequest",
    "InstallSession",
    "InstallState",
    "Installer",
    "MigrationCoordinator",
    "MigrationOutcome",
    "SmokeTestVerifier",
    "StashManager",
    "StashRecord",
    "VersionResolver",
    "normalize_version",
]
