"""
Service control for the managed runner.

Controllers stop and start the runner and report whether it came back:
- SystemdServiceController: systemd unit installed by the runner's svc.sh
- LaunchdServiceController: launchd agent installed by svc.sh on macOS
- ProcessServiceController: a run.sh process supervised through a pid file
"""

from __future__ import annotations

import asyncio
import contextlib
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import Any

import psutil

from runner_updater.errors import FailedPreconditionError, ServiceStartFailure
from runner_updater.logging import get_logger
from runner_updater.polling import poll_until

logger = get_logger(__name__)

HealthCheck = Callable[[], Awaitable[bool]]

# Written by the runner's svc.sh install
SERVICE_FILE_NAME = ".service"


async def _run_command(
    *args: str,
    timeout: float = 30.0,
) -> tuple[int, str, str]:
    """
    Run a service manager command.

    Returns:
        Tuple of (return_code, stdout, stderr).

    Raises:
        FailedPreconditionError: If the tool is not installed or times out.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise FailedPreconditionError(
            f"{args[0]} not available",
            details={"hint": f"This system may not use {args[0]}"},
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(),
            timeout=timeout,
        )
    except TimeoutError as exc:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        raise FailedPreconditionError(
            f"{args[0]} command timed out after {timeout}s",
            details={"args": list(args)},
        ) from exc

    return (
        proc.returncode or 0,
        stdout.decode() if stdout else "",
        stderr.decode() if stderr else "",
    )


async def _run_systemctl(*args: str, timeout: float = 30.0) -> tuple[int, str, str]:
    """Run a systemctl command."""
    return await _run_command("systemctl", *args, timeout=timeout)


def read_service_file(install_dir: Path | str) -> str | None:
    """Read the service name recorded by svc.sh, or None."""
    path = Path(install_dir) / SERVICE_FILE_NAME
    try:
        value = path.read_text().strip()
    except FileNotFoundError:
        return None
    return value or None


class ServiceController(ABC):
    """
    Abstract base class for service controllers.

    Attributes:
        health_check: Optional agent-level health check used by
            wait_for_liveness in addition to is_running.
        poll_interval: Seconds between liveness polls.
        stop_grace: Seconds a graceful stop may take before escalation.
    """

    def __init__(
        self,
        health_check: HealthCheck | None = None,
        poll_interval: float = 5.0,
        stop_grace: float = 30.0,
    ) -> None:
        self.health_check = health_check
        self.poll_interval = poll_interval
        self.stop_grace = stop_grace

    @abstractmethod
    async def stop(self) -> None:
        """Stop the agent, escalating to a forced kill after the grace period."""

    @abstractmethod
    async def start(self) -> None:
        """
        Start the agent and return without waiting for it to be healthy.

        Raises:
            ServiceStartFailure: If the service manager refuses to start it.
        """

    @abstractmethod
    async def is_running(self) -> bool:
        """Check whether the agent process/service is running."""

    @abstractmethod
    async def status(self) -> dict[str, Any]:
        """Get service status details."""

    async def _is_live(self) -> bool:
        try:
            if not await self.is_running():
                return False
            if self.health_check is not None:
                return bool(await self.health_check())
        except Exception as e:
            logger.debug("Health poll failed", extra={"error": str(e)})
            return False
        return True

    async def wait_for_liveness(
        self,
        timeout: float,
        cancel_event: asyncio.Event | None = None,
    ) -> bool:
        """
        Poll until the agent is running and healthy.

        Returns:
            True if healthy within timeout, False otherwise.
        """
        live = await poll_until(
            self._is_live,
            interval=self.poll_interval,
            timeout=timeout,
            cancel_event=cancel_event,
        )
        logger.info(
            "Liveness check finished",
            extra={"healthy": live, "timeout_seconds": timeout},
        )
        return live

    async def _wait_stopped(self, timeout: float) -> bool:
        async def stopped() -> bool:
            return not await self.is_running()

        return await poll_until(
            stopped,
            interval=min(1.0, self.poll_interval),
            timeout=timeout,
        )


class SystemdServiceController(ServiceController):
    """
    Controls a runner installed as a systemd unit.

    Attributes:
        service_name: Unit name, from configuration or the runner's .service
            file.
    """

    def __init__(
        self,
        service_name: str | None = None,
        install_dir: Path | str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        name = service_name or (read_service_file(install_dir) if install_dir else None)
        if not name:
            raise FailedPreconditionError(
                "No systemd unit configured for the runner",
                details={
                    "install_dir": str(install_dir) if install_dir else None,
                    "hint": "Set runner.service_name or install the service with svc.sh",
                },
            )
        self.service_name = name

    async def stop(self) -> None:
        logger.info("Stopping service", extra={"service": self.service_name})

        returncode, stdout, stderr = await _run_systemctl(
            "stop", self.service_name, timeout=self.stop_grace + 10.0
        )
        if returncode != 0:
            logger.warning(
                f"systemctl stop failed: {stderr or stdout}",
                extra={"service": self.service_name, "returncode": returncode},
            )

        if await self._wait_stopped(self.stop_grace):
            logger.info("Service stopped", extra={"service": self.service_name})
            return

        logger.warning(
            "Service did not stop within grace period, killing",
            extra={"service": self.service_name, "grace_seconds": self.stop_grace},
        )
        await _run_systemctl("kill", "--signal=SIGKILL", self.service_name)
        if not await self._wait_stopped(self.stop_grace):
            raise FailedPreconditionError(
                f"Service {self.service_name} could not be stopped",
                details={"service": self.service_name},
            )

    async def start(self) -> None:
        logger.info("Starting service", extra={"service": self.service_name})
        returncode, stdout, stderr = await _run_systemctl(
            "start", "--no-block", self.service_name
        )
        if returncode != 0:
            raise ServiceStartFailure(
                f"Failed to start {self.service_name}: {stderr or stdout}",
                details={"service": self.service_name, "returncode": returncode},
            )

    async def is_running(self) -> bool:
        returncode, _, _ = await _run_systemctl(
            "is-active", self.service_name, timeout=10.0
        )
        return returncode == 0

    async def status(self) -> dict[str, Any]:
        returncode, stdout, _ = await _run_systemctl(
            "is-active", self.service_name, timeout=10.0
        )
        info: dict[str, Any] = {
            "service": self.service_name,
            "status": stdout.strip(),
            "is_active": returncode == 0,
        }
        if returncode == 0:
            _, show_stdout, _ = await _run_systemctl(
                "show",
                self.service_name,
                "--property=MainPID,ActiveEnterTimestamp,SubState",
                timeout=10.0,
            )
            for line in show_stdout.strip().split("\n"):
                if "=" in line:
                    key, value = line.split("=", 1)
                    info[key.lower()] = value
        return info


class LaunchdServiceController(ServiceController):
    """
    Controls a runner installed as a launchd agent (macOS).

    svc.sh records the plist path in .service; the label is the plist's
    file name without extension.
    """

    def __init__(
        self,
        service_name: str | None = None,
        install_dir: Path | str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        value = service_name or (read_service_file(install_dir) if install_dir else None)
        if not value:
            raise FailedPreconditionError(
                "No launchd agent configured for the runner",
                details={"install_dir": str(install_dir) if install_dir else None},
            )
        if value.endswith(".plist"):
            self.plist_path: str | None = str(Path(value).expanduser())
            self.label = Path(value).stem
        else:
            self.plist_path = None
            self.label = value

    def _target(self) -> str:
        return self.plist_path or self.label

    async def stop(self) -> None:
        logger.info("Stopping launchd agent", extra={"label": self.label})
        if self.plist_path:
            await _run_command("launchctl", "unload", self.plist_path)
        else:
            await _run_command("launchctl", "stop", self.label)

        if await self._wait_stopped(self.stop_grace):
            return

        logger.warning(
            "launchd agent did not stop within grace period, killing",
            extra={"label": self.label},
        )
        pid = await self._pid()
        if pid is not None:
            try:
                psutil.Process(pid).kill()
            except psutil.NoSuchProcess:
                pass
        if not await self._wait_stopped(self.stop_grace):
            raise FailedPreconditionError(
                f"launchd agent {self.label} could not be stopped",
                details={"label": self.label},
            )

    async def start(self) -> None:
        logger.info("Starting launchd agent", extra={"label": self.label})
        if self.plist_path:
            returncode, stdout, stderr = await _run_command(
                "launchctl", "load", "-w", self.plist_path
            )
        else:
            returncode, stdout, stderr = await _run_command(
                "launchctl", "start", self.label
            )
        if returncode != 0:
            raise ServiceStartFailure(
                f"Failed to start {self.label}: {stderr or stdout}",
                details={"label": self.label, "returncode": returncode},
            )

    async def _pid(self) -> int | None:
        returncode, stdout, _ = await _run_command(
            "launchctl", "list", self.label, timeout=10.0
        )
        if returncode != 0:
            return None
        for line in stdout.splitlines():
            line = line.strip()
            if line.startswith('"PID"'):
                try:
                    return int(line.split("=", 1)[1].strip().rstrip(";"))
                except (IndexError, ValueError):
                    return None
        return None

    async def is_running(self) -> bool:
        return await self._pid() is not None

    async def status(self) -> dict[str, Any]:
        pid = await self._pid()
        return {"label": self.label, "pid": pid, "is_active": pid is not None}


class ProcessServiceController(ServiceController):
    """
    Supervises the runner as a plain process started from run.sh.

    Attributes:
        install_dir: Working directory for the start command.
        start_command: Command launching the runner.
        pid_file: File recording the supervised pid.
    """

    def __init__(
        self,
        install_dir: Path | str,
        pid_file: Path | str,
        start_command: Sequence[str] = ("./run.sh",),
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.install_dir = Path(install_dir)
        self.pid_file = Path(pid_file)
        self.start_command = list(start_command)

    def _read_pid(self) -> int | None:
        try:
            return int(self.pid_file.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def _process(self) -> psutil.Process | None:
        pid = self._read_pid()
        if pid is None:
            return None
        try:
            proc = psutil.Process(pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                return None
            return proc
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    async def stop(self) -> None:
        proc = self._process()
        if proc is None:
            self.pid_file.unlink(missing_ok=True)
            return

        logger.info("Stopping runner process", extra={"pid": proc.pid})
        try:
            procs = [*proc.children(recursive=True), proc]
        except psutil.NoSuchProcess:
            procs = [proc]

        for p in procs:
            try:
                p.terminate()
            except psutil.NoSuchProcess:
                continue

        _, alive = await asyncio.to_thread(
            psutil.wait_procs, procs, timeout=self.stop_grace
        )
        if alive:
            logger.warning(
                "Runner process did not exit within grace period, killing",
                extra={"pids": [p.pid for p in alive]},
            )
            for p in alive:
                try:
                    p.kill()
                except psutil.NoSuchProcess:
                    continue
            await asyncio.to_thread(psutil.wait_procs, alive, timeout=self.stop_grace)

        self.pid_file.unlink(missing_ok=True)

    async def start(self) -> None:
        if self._process() is not None:
            logger.info("Runner process already running")
            return

        logger.info(
            "Starting runner process",
            extra={"command": self.start_command, "cwd": str(self.install_dir)},
        )
        try:
            proc = psutil.Popen(
                self.start_command,
                cwd=str(self.install_dir),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise ServiceStartFailure(
                f"Failed to launch runner: {e}",
                details={"command": self.start_command, "error": str(e)},
            ) from e

        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(proc.pid))

    async def is_running(self) -> bool:
        return self._process() is not None

    async def status(self) -> dict[str, Any]:
        proc = self._process()
        return {
            "pid": proc.pid if proc else None,
            "is_active": proc is not None,
            "pid_file": str(self.pid_file),
        }
