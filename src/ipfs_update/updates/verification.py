"""
Verification of a downloaded binary before it is installed.

The orchestrator depends only on the BinaryVerifier contract. The provided
SmokeTestVerifier runs the candidate against a throwaway repo:
- `init` a repo in `<ipfs-dir>/update-staging/test*`
- check that `version` reports the expected version
- start a daemon on ephemeral ports and wait for its API
- round-trip a small file through `add -q` and `cat`
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO

from ipfs_update.config import VerificationConfig
from ipfs_update.daemon_api import API_FILE_NAME
from ipfs_update.errors import VerificationFailedError
from ipfs_update.logging import get_logger
from ipfs_update.updates.operations import (
    CommandResult,
    ensure_directory,
    run_command,
    safe_remove_directory,
)

logger = get_logger(__name__)

STAGING_DIR_NAME = "update-staging"
TEST_TEXT = "hello world! This node should work"


class BinaryVerifier(ABC):
    """Decides whether a candidate binary may be installed."""

    @abstractmethod
    async def verify(self, binary_path: Path, expected_version: str) -> None:
        """
        Check a candidate binary.

        Raises:
            VerificationFailedError: If the binary is not fit to install.
        """


class DaemonProcess:
    """
    A daemon started from a candidate binary against a test repo.

    Output is written to `daemon.stdout` and `daemon.stderr` in the repo.
    """

    def __init__(self, binary_path: Path, repo_path: Path, env: dict[str, str]) -> None:
        self.binary_path = binary_path
        self.repo_path = repo_path
        self.env = env
        self._process: asyncio.subprocess.Process | None = None
        self._logs: list[IO[bytes]] = []

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        """Start `<binary> daemon`."""
        stdout = open(self.repo_path / "daemon.stdout", "wb")
        stderr = open(self.repo_path / "daemon.stderr", "wb")
        self._logs = [stdout, stderr]
        try:
            self._process = await asyncio.create_subprocess_exec(
                str(self.binary_path),
                "daemon",
                stdout=stdout,
                stderr=stderr,
                env=self.env,
            )
        except OSError as e:
            self._close_logs()
            raise VerificationFailedError(
                f"failed to start daemon: {e}",
                details={"binary": str(self.binary_path)},
            ) from e

    async def wait_ready(self, attempts: int = 10, backoff: float = 0.1) -> str:
        """
        Wait for the daemon's API file and a TCP connection to its port.

        Each phase polls up to `attempts` times, sleeping backoff * attempt
        between polls.

        Returns:
            The API port.

        Raises:
            VerificationFailedError: If the daemon does not come online.
        """
        api_file = self.repo_path / API_FILE_NAME
        endpoint = None
        for i in range(attempts):
            self._check_alive()
            try:
                endpoint = api_file.read_text().strip()
            except FileNotFoundError:
                endpoint = None
            if endpoint:
                break
            await asyncio.sleep(backoff * (i + 1))
        if not endpoint:
            raise VerificationFailedError("failed to find api file")

        port = endpoint.split("/")[-1]
        for i in range(attempts):
            self._check_alive()
            try:
                _, writer = await asyncio.wait_for(
                    asyncio.open_connection("localhost", int(port)),
                    timeout=max(backoff * (i + 1), 1.0),
                )
            except (OSError, TimeoutError, ValueError):
                await asyncio.sleep(backoff * (i + 1))
                continue
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()
            return port

        raise VerificationFailedError(
            "failed to come online",
            details={"endpoint": endpoint},
        )

    def _check_alive(self) -> None:
        if self._process is not None and self._process.returncode is not None:
            raise VerificationFailedError(
                f"daemon exited with status {self._process.returncode}",
                details={"stderr_log": str(self.repo_path / "daemon.stderr")},
            )

    async def stop(self, timeout: float = 5.0) -> None:
        """Terminate the daemon, killing it if it does not exit in time."""
        process = self._process
        try:
            if process is None or process.returncode is not None:
                return
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except TimeoutError:
                logger.warning("daemon did not stop in time, killing it")
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
        finally:
            self._close_logs()

    def _close_logs(self) -> None:
        for f in self._logs:
            f.close()
        self._logs = []


def tweak_config(repo_path: Path) -> None:
    """
    Rewrite a test repo config to avoid clashing with a running daemon.

    Binds API and swarm to ephemeral ports, disables the gateway and MDNS.
    """
    config_path = repo_path / "config"
    try:
        cfg = json.loads(config_path.read_text())
    except (OSError, ValueError) as e:
        raise VerificationFailedError(f"could not read test repo config: {e}") from e

    cfg.setdefault("Discovery", {}).setdefault("MDNS", {})["Enabled"] = False

    addrs = cfg.get("Addresses")
    if not isinstance(addrs, dict):
        raise VerificationFailedError("no addresses field in config")

    addrs["API"] = "/ip4/127.0.0.1/tcp/0"
    addrs["Gateway"] = ""
    addrs["Swarm"] = ["/ip4/0.0.0.0/tcp/0"]

    config_path.write_text(json.dumps(cfg, indent=2))


class SmokeTestVerifier(BinaryVerifier):
    """
    Runs a candidate binary against a throwaway repo.

    Attributes:
        ipfs_dir: The ipfs directory hosting `update-staging`.
        config: Timeouts and readiness polling settings.
    """

    def __init__(self, ipfs_dir: Path, config: VerificationConfig | None = None) -> None:
        self.ipfs_dir = ipfs_dir
        self.config = config or VerificationConfig()

    async def _run(
        self,
        binary_path: Path,
        *args: str,
        env: dict[str, str],
        input_data: bytes | None = None,
    ) -> CommandResult:
        command = " ".join(args)
        try:
            result = await run_command(
                str(binary_path),
                *args,
                timeout=self.config.command_timeout_seconds,
                env=env,
                input_data=input_data,
            )
        except TimeoutError as e:
            raise VerificationFailedError(
                f"'{command}' timed out",
                details={"binary": str(binary_path)},
            ) from e
        except OSError as e:
            raise VerificationFailedError(
                f"error running '{command}': {e}",
                details={"binary": str(binary_path)},
            ) from e

        if result.returncode != 0:
            raise VerificationFailedError(
                f"'{command}' failed: {result.output}",
                details={"binary": str(binary_path), "returncode": result.returncode},
            )
        return result

    async def verify(self, binary_path: Path, expected_version: str) -> None:
        logger.info("testing new binary")
        try:
            binary_path.chmod(0o755)
        except OSError as e:
            raise VerificationFailedError(f"could not make binary executable: {e}") from e

        staging = ensure_directory(self.ipfs_dir / STAGING_DIR_NAME)
        repo_path = Path(tempfile.mkdtemp(prefix="test", dir=staging))
        env = {**os.environ, "IPFS_PATH": str(repo_path)}
        try:
            await self._run(binary_path, "init", env=env)

            result = await self._run(binary_path, "version", env=env)
            expected = f"ipfs version {expected_version.removeprefix('v')}"
            if result.stdout.strip() != expected:
                raise VerificationFailedError(
                    "version didnt match",
                    details={"expected": expected, "actual": result.stdout.strip()},
                )

            tweak_config(repo_path)

            daemon = DaemonProcess(binary_path, repo_path, env)
            await daemon.start()
            try:
                await daemon.wait_ready(
                    attempts=self.config.daemon_ready_attempts,
                    backoff=self.config.daemon_ready_backoff_seconds,
                )
                await self._check_add_cat(binary_path, env)
            finally:
                await daemon.stop(self.config.daemon_stop_timeout_seconds)
        finally:
            safe_remove_directory(repo_path)

        logger.info("binary passed smoke test")

    async def _check_add_cat(self, binary_path: Path, env: dict[str, str]) -> None:
        added = await self._run(
            binary_path, "add", "-q", env=env, input_data=TEST_TEXT.encode()
        )
        cid = added.stdout.strip()
        result = await self._run(binary_path, "cat", cid, env=env)
        if result.stdout != TEST_TEXT:
            raise VerificationFailedError(
                "add/cat check failed",
                details={"cid": cid},
            )
