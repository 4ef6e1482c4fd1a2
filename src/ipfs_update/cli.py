"""
Command-line interface for ipfs-update.

Usage:
    ipfs-update [--verbose] [--distpath P] [--config FILE] <command> [...]

Commands:
    versions                 print out all available versions
    version                  print out currently installed version
    install <version>        install a version of ipfs (or latest, latest-stable)
    stash                    stash the currently installed binary
    revert                   revert to a previously installed version
    fetch [version]          fetch a version of ipfs (default: latest)

Exit status is 1 on any error, with the message on standard error.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ipfs_update import __version__
from ipfs_update.config import AppConfig, load_config
from ipfs_update.errors import NoPriorBinaryError, UpdateError, UserAbortError
from ipfs_update.fetch import build_default_fetcher
from ipfs_update.logging import get_logger, setup_logging
from ipfs_update.updates.acquisition import fetch_binary
from ipfs_update.updates.installer import Installer, InstallRequest
from ipfs_update.updates.stash import StashManager
from ipfs_update.updates.version import LATEST, NO_VERSION, VersionResolver

logger = get_logger(__name__)

Handler = Callable[[argparse.Namespace, AppConfig], Awaitable[int]]


def _resolver(config: AppConfig, fetcher: Any = None) -> VersionResolver:
    updater = config.updater
    return VersionResolver(
        fetcher,
        updater.resolved_ipfs_dir(),
        updater.binary_name,
        api_check_timeout=updater.api_check_timeout_seconds,
        command_timeout=config.verification.command_timeout_seconds,
    )


def _stash_manager(config: AppConfig) -> StashManager:
    updater = config.updater
    return StashManager(
        updater.resolved_ipfs_dir(),
        updater.binary_name,
        use_lock_file=updater.use_lock_file,
    )


# =============================================================================
# Commands
# =============================================================================


async def cmd_versions(args: argparse.Namespace, config: AppConfig) -> int:
    """Print every published version, newest first."""
    async with build_default_fetcher(config.updater) as fetcher:
        versions = await _resolver(config, fetcher).get_versions(
            config.updater.distribution
        )
    for version in versions:
        print(version)
    return 0


async def cmd_version(args: argparse.Namespace, config: AppConfig) -> int:
    """Print the installed version."""
    print(await _resolver(config).current_version())
    return 0


async def cmd_install(args: argparse.Namespace, config: AppConfig) -> int:
    """Install a version, rolling back on failure."""
    async with build_default_fetcher(config.updater) as fetcher:
        target = await _resolver(config, fetcher).resolve_target(
            args.version, config.updater.distribution
        )
        request = InstallRequest(
            target_version=target,
            fetcher=fetcher,
            no_check=args.no_check,
            allow_downgrade=args.allow_downgrade,
        )
        await Installer.from_config(request, config).run()
    return 0


async def cmd_stash(args: argparse.Namespace, config: AppConfig) -> int:
    """Back up the installed binary into the stash directory."""
    tag = args.tag
    if tag is None:
        tag = await _resolver(config).current_version()
        if tag == NO_VERSION:
            raise NoPriorBinaryError("no ipfs installation found to stash")

    manager = _stash_manager(config)
    with manager.locked():
        manager.stash(tag, keep_original=args.keep)
    print(manager.stash_path(tag))
    return 0


async def cmd_revert(args: argparse.Namespace, config: AppConfig) -> int:
    """Reinstall a stashed binary at its recorded location."""
    manager = _stash_manager(config)
    record = manager.select_stash_for_revert(sys.stdin, sys.stdout)
    with manager.locked():
        path = manager.revert_to(record)
    logger.info(f"reverted to {record.tag} at {path}")
    return 0


async def cmd_fetch(args: argparse.Namespace, config: AppConfig) -> int:
    """Download a binary without installing it."""
    updater = config.updater
    async with build_default_fetcher(updater) as fetcher:
        version = await _resolver(config, fetcher).resolve_target(
            args.version, updater.distribution
        )
        output = Path(args.output) if args.output else Path(f"{updater.binary_name}-{version}")
        path = await fetch_binary(
            fetcher, updater.distribution, version, updater.binary_name, output
        )
    path.chmod(0o755)
    logger.info(f"fetched {version} to {path}")
    return 0


# =============================================================================
# Argument parsing
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="ipfs-update",
        description="Update ipfs.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="print verbose output",
    )
    parser.add_argument(
        "--distpath",
        type=str,
        help="specify the distributions build to use",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="path to configuration file",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    p = sub.add_parser("versions", help="print out all available versions")
    p.set_defaults(handler=cmd_versions)

    p = sub.add_parser("version", help="print out currently installed version")
    p.set_defaults(handler=cmd_version)

    p = sub.add_parser("install", help="install a version of ipfs")
    p.add_argument("version", help="version to install, or latest / latest-stable")
    p.add_argument(
        "--no-check",
        action="store_true",
        help="skip running of pre-install tests",
    )
    p.add_argument(
        "--allow-downgrade",
        action="store_true",
        help="allow downgrading to an older version",
    )
    p.set_defaults(handler=cmd_install)

    p = sub.add_parser("stash", help="stashes copy of currently installed ipfs binary")
    p.add_argument("--tag", help="optionally specify tag for stashed binary")
    p.add_argument(
        "--keep",
        action="store_true",
        help="don't remove the binary from its install location",
    )
    p.set_defaults(handler=cmd_stash)

    p = sub.add_parser("revert", help="revert to previously installed version of ipfs")
    p.set_defaults(handler=cmd_revert)

    p = sub.add_parser("fetch", help="fetch a given version of ipfs (default: latest)")
    p.add_argument("version", nargs="?", default=LATEST, help="version to fetch")
    p.add_argument("--output", "-o", help="specify where to save the downloaded binary")
    p.set_defaults(handler=cmd_fetch)

    return parser


def main(argv: list[str] | None = None) -> int:
    """
    Run the command line.

    Args:
        argv: Arguments without the program name; defaults to sys.argv[1:].

    Returns:
        Process exit status.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help(sys.stderr)
        return 1

    overrides: dict[str, Any] = {}
    if args.distpath:
        overrides["updater"] = {"dist_path": args.distpath}

    try:
        config = load_config(args.config, overrides=overrides)
    except (OSError, ValidationError, yaml.YAMLError) as e:
        print(f"error loading configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(config.logging, verbose=args.verbose)

    handler: Handler = args.handler
    try:
        return asyncio.run(handler(args, config))
    except UserAbortError as e:
        print(e.message)
        return 0
    except UpdateError as e:
        logger.debug("command failed", extra={"error": e.to_dict()})
        print(e.message, file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return 1
    except Exception as e:
        logger.debug("unexpected error", exc_info=True)
        print(str(e) or e.__class__.__name__, file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
