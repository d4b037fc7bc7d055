"""
Agent activity and liveness probe.

The probe is the updater's only view of the managed runner: whether a job is
executing, whether the listener is up, and which version the installed
binaries report.
"""

from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import psutil

from runner_updater.errors import InvalidArgumentError
from runner_updater.logging import get_logger
from runner_updater.version import parse_semantic_version

logger = get_logger(__name__)


class AgentProbe(ABC):
    """Abstract base class for agent probes."""

    @abstractmethod
    async def is_busy(self) -> bool:
        """Return True while a unit of work is executing."""

    @abstractmethod
    async def is_healthy(self) -> bool:
        """Return True when the agent is up and accepting work."""

    @abstractmethod
    async def running_version(self) -> str | None:
        """Return the version the agent reports, or None if unknown."""


def _is_under(path: str | None, root: Path) -> bool:
    if not path:
        return False
    try:
        return Path(path).resolve().is_relative_to(root)
    except (OSError, ValueError):
        return False


class RunnerAgentProbe(AgentProbe):
    """
    Probe for a self-hosted GitHub Actions runner.

    A running Runner.Worker process means a job is executing; a running
    Runner.Listener process means the runner is connected and idle-capable.
    Only processes belonging to this installation are considered.

    Attributes:
        install_dir: Runner installation root.
        listener_binary: Listener binary path relative to install_dir.
        listener_process_name: Process name of the listener.
        worker_process_name: Process name of a job worker.
        version_timeout: Timeout for the `--version` query.
    """

    def __init__(
        self,
        install_dir: Path | str,
        listener_binary: str = "bin/Runner.Listener",
        listener_process_name: str = "Runner.Listener",
        worker_process_name: str = "Runner.Worker",
        version_timeout: float = 15.0,
    ) -> None:
        self.install_dir = Path(install_dir)
        self.listener_binary = listener_binary
        self.listener_process_name = listener_process_name
        self.worker_process_name = worker_process_name
        self.version_timeout = version_timeout

    def _belongs_to_install(self, info: dict[str, Any]) -> bool:
        root = self.install_dir.resolve()
        exe = info.get("exe")
        cmdline = info.get("cmdline") or []
        if not exe and not cmdline:
            # Details hidden (e.g. AccessDenied); the name match has to do
            return True
        if _is_under(exe, root):
            return True
        return any(_is_under(arg, root) for arg in cmdline if arg.startswith("/"))

    def find_processes(self, process_name: str) -> list[int]:
        """
        Find pids of processes with the given name in this installation.

        Args:
            process_name: Executable name, e.g. "Runner.Worker".

        Returns:
            Matching process ids.
        """
        pids: list[int] = []
        for proc in psutil.process_iter(["pid", "name", "exe", "cmdline"]):
            try:
                info = proc.info
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

            name = info.get("name") or ""
            cmdline = info.get("cmdline") or []
            argv0 = Path(cmdline[0]).name if cmdline else ""
            if process_name not in (name, argv0):
                continue

            if self._belongs_to_install(info):
                pids.append(info["pid"])
        return pids

    async def is_busy(self) -> bool:
        workers = self.find_processes(self.worker_process_name)
        if workers:
            logger.debug("Runner job in progress", extra={"worker_pids": workers})
        return bool(workers)

    async def is_healthy(self) -> bool:
        return bool(self.find_processes(self.listener_process_name))

    async def running_version(self) -> str | None:
        binary = self.install_dir / self.listener_binary
        if not binary.exists():
            return None

        try:
            proc = await asyncio.create_subprocess_exec(
                str(binary),
                "--version",
                cwd=str(self.install_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning(
                "Could not query runner version",
                extra={"binary": str(binary), "error": str(e)},
            )
            return None

        try:
            stdout, _ = await asyncio.wait_for(
                proc.communicate(),
                timeout=self.version_timeout,
            )
        except TimeoutError as e:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            logger.warning(
                "Could not query runner version",
                extra={"binary": str(binary), "error": str(e)},
            )
            return None

        if proc.returncode != 0:
            return None

        lines = stdout.decode("utf-8", errors="replace").strip().splitlines()
        if not lines:
            return None

        version = lines[-1].strip().lstrip("v")
        try:
            parse_semantic_version(version)
        except InvalidArgumentError:
            logger.warning(
                "Runner reported an unparseable version",
                extra={"output": version[:100]},
            )
            return None
        return version
