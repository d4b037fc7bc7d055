"""
Tests for service controllers.

systemctl/launchctl calls are mocked; the process controller runs a real
short-lived process.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any
from unittest import mock

import pytest

from runner_updater.errors import FailedPreconditionError, ServiceStartFailure
from runner_updater.service import (
    LaunchdServiceController,
    ProcessServiceController,
    ServiceController,
    SystemdServiceController,
    _run_command,
    read_service_file,
)

# =============================================================================
# Helpers
# =============================================================================


class ToggleService(ServiceController):
    """In-memory controller for the shared liveness logic."""

    def __init__(self, running: list[bool], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.running = list(running)

    async def stop(self) -> None:
        pass

    async def start(self) -> None:
        pass

    async def is_running(self) -> bool:
        return self.running.pop(0) if len(self.running) > 1 else self.running[0]

    async def status(self) -> dict[str, Any]:
        return {}


def _systemctl(responses: dict[str, tuple[int, str, str]]) -> mock.AsyncMock:
    """Build a _run_systemctl mock answering by sub-command."""

    async def fake(*args: str, timeout: float = 30.0) -> tuple[int, str, str]:
        return responses.get(args[0], (0, "", ""))

    return mock.AsyncMock(side_effect=fake)


# =============================================================================
# Shared Helper Tests
# =============================================================================


class TestRunCommand:
    """Tests for _run_command."""

    @pytest.mark.asyncio
    async def test_missing_tool(self) -> None:
        """Test a missing service manager binary."""
        with mock.patch(
            "asyncio.create_subprocess_exec", side_effect=FileNotFoundError()
        ):
            with pytest.raises(FailedPreconditionError, match="not available"):
                await _run_command("systemctl", "status")

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        """Test a hung command is killed and reported."""
        mock_proc = mock.MagicMock()
        mock_proc.communicate = mock.AsyncMock(side_effect=TimeoutError())
        with mock.patch("asyncio.create_subprocess_exec", return_value=mock_proc):
            with pytest.raises(FailedPreconditionError, match="timed out"):
                await _run_command("systemctl", "stop", "x", timeout=0.1)
        mock_proc.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_output(self) -> None:
        """Test return code and output decoding."""
        mock_proc = mock.MagicMock()
        mock_proc.returncode = 3
        mock_proc.communicate = mock.AsyncMock(return_value=(b"inactive\n", b""))
        with mock.patch("asyncio.create_subprocess_exec", return_value=mock_proc):
            assert await _run_command("systemctl", "is-active", "x") == (
                3,
                "inactive\n",
                "",
            )

    def test_read_service_file(self, tmp_path: Path) -> None:
        """Test the svc.sh service record is read."""
        assert read_service_file(tmp_path) is None
        (tmp_path / ".service").write_text("actions.runner.org-repo.pi-01.service\n")
        assert read_service_file(tmp_path) == "actions.runner.org-repo.pi-01.service"


class TestWaitForLiveness:
    """Tests for the shared liveness wait."""

    @pytest.mark.asyncio
    async def test_becomes_live(self) -> None:
        """Test liveness once the service runs."""
        service = ToggleService([False, False, True], poll_interval=0.01)
        assert await service.wait_for_liveness(timeout=5) is True

    @pytest.mark.asyncio
    async def test_health_check_required(self) -> None:
        """Test a running but unhealthy agent is not live."""
        health = mock.AsyncMock(return_value=False)
        service = ToggleService([True], health_check=health, poll_interval=0.01)

        assert await service.wait_for_liveness(timeout=0.05) is False
        health.assert_awaited()

    @pytest.mark.asyncio
    async def test_health_check_error_not_live(self) -> None:
        """Test health check errors count as not live."""
        health = mock.AsyncMock(side_effect=[RuntimeError("probe"), True])
        service = ToggleService([True], health_check=health, poll_interval=0.01)

        assert await service.wait_for_liveness(timeout=5) is True
        assert health.await_count == 2


# =============================================================================
# SystemdServiceController Tests
# =============================================================================


class TestSystemdServiceController:
    """Tests for SystemdServiceController."""

    def test_name_from_service_file(self, tmp_path: Path) -> None:
        """Test the unit name falls back to the .service file."""
        (tmp_path / ".service").write_text("actions.runner.pi.service")
        controller = SystemdServiceController(install_dir=tmp_path)
        assert controller.service_name == "actions.runner.pi.service"

    def test_no_unit_configured(self, tmp_path: Path) -> None:
        """Test a missing unit name is a precondition failure."""
        with pytest.raises(FailedPreconditionError):
            SystemdServiceController(install_dir=tmp_path)

    @pytest.mark.asyncio
    async def test_stop_graceful(self) -> None:
        """Test a stop that completes within the grace period."""
        controller = SystemdServiceController("runner.service", poll_interval=0.01)
        systemctl = _systemctl({"is-active": (3, "inactive", "")})

        with mock.patch("runner_updater.service._run_systemctl", systemctl):
            await controller.stop()

        commands = [call.args[0] for call in systemctl.await_args_list]
        assert commands[0] == "stop"
        assert "kill" not in commands

    @pytest.mark.asyncio
    async def test_stop_escalates_to_kill(self) -> None:
        """Test SIGKILL after the grace period."""
        controller = SystemdServiceController(
            "runner.service", poll_interval=0.01, stop_grace=0.05
        )
        killed = False

        async def fake(*args: str, timeout: float = 30.0) -> tuple[int, str, str]:
            nonlocal killed
            if args[0] == "kill":
                killed = True
            if args[0] == "is-active":
                return (3, "inactive", "") if killed else (0, "active", "")
            return (0, "", "")

        with mock.patch(
            "runner_updater.service._run_systemctl", mock.AsyncMock(side_effect=fake)
        ):
            await controller.stop()

        assert killed

    @pytest.mark.asyncio
    async def test_stop_fails(self) -> None:
        """Test a service that survives SIGKILL."""
        controller = SystemdServiceController(
            "runner.service", poll_interval=0.01, stop_grace=0.02
        )
        systemctl = _systemctl({"is-active": (0, "active", "")})

        with mock.patch("runner_updater.service._run_systemctl", systemctl):
            with pytest.raises(FailedPreconditionError, match="could not be stopped"):
                await controller.stop()

    @pytest.mark.asyncio
    async def test_start(self) -> None:
        """Test start does not block on the unit."""
        controller = SystemdServiceController("runner.service")
        systemctl = _systemctl({})

        with mock.patch("runner_updater.service._run_systemctl", systemctl):
            await controller.start()

        systemctl.assert_awaited_once_with("start", "--no-block", "runner.service")

    @pytest.mark.asyncio
    async def test_start_failure(self) -> None:
        """Test a refused start."""
        controller = SystemdServiceController("runner.service")
        systemctl = _systemctl({"start": (5, "", "Unit not found")})

        with mock.patch("runner_updater.service._run_systemctl", systemctl):
            with pytest.raises(ServiceStartFailure, match="Unit not found"):
                await controller.start()

    @pytest.mark.asyncio
    async def test_status(self) -> None:
        """Test status parses systemctl show output."""
        controller = SystemdServiceController("runner.service")
        systemctl = _systemctl(
            {
                "is-active": (0, "active\n", ""),
                "show": (0, "MainPID=1234\nSubState=running\n", ""),
            }
        )

        with mock.patch("runner_updater.service._run_systemctl", systemctl):
            status = await controller.status()

        assert status["is_active"] is True
        assert status["mainpid"] == "1234"
        assert status["substate"] == "running"


# =============================================================================
# LaunchdServiceController Tests
# =============================================================================


class TestLaunchdServiceController:
    """Tests for LaunchdServiceController."""

    def test_plist_label(self) -> None:
        """Test the label is derived from the plist path."""
        controller = LaunchdServiceController(
            "/Users/ci/Library/LaunchAgents/actions.runner.org.mac-01.plist"
        )
        assert controller.label == "actions.runner.org.mac-01"
        assert controller.plist_path is not None

    @pytest.mark.asyncio
    async def test_is_running_parses_pid(self) -> None:
        """Test the PID is read from launchctl list."""
        controller = LaunchdServiceController("actions.runner.mac")
        output = '{\n\t"Label" = "actions.runner.mac";\n\t"PID" = 4242;\n};\n'

        with mock.patch(
            "runner_updater.service._run_command",
            mock.AsyncMock(return_value=(0, output, "")),
        ):
            assert await controller.is_running() is True
            assert (await controller.status())["pid"] == 4242

    @pytest.mark.asyncio
    async def test_not_loaded(self) -> None:
        """Test an unloaded agent is not running."""
        controller = LaunchdServiceController("actions.runner.mac")
        with mock.patch(
            "runner_updater.service._run_command",
            mock.AsyncMock(return_value=(113, "", "Could not find service")),
        ):
            assert await controller.is_running() is False

    @pytest.mark.asyncio
    async def test_start_loads_plist(self) -> None:
        """Test start loads the plist."""
        controller = LaunchdServiceController("/tmp/actions.runner.mac.plist")
        run = mock.AsyncMock(return_value=(0, "", ""))

        with mock.patch("runner_updater.service._run_command", run):
            await controller.start()

        run.assert_awaited_once_with(
            "launchctl", "load", "-w", "/tmp/actions.runner.mac.plist"
        )


# =============================================================================
# ProcessServiceController Tests
# =============================================================================


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX process control")
class TestProcessServiceController:
    """Tests for ProcessServiceController with a real process."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, tmp_path: Path) -> None:
        """Test the supervised process lifecycle."""
        pid_file = tmp_path / "state" / "runner.pid"
        controller = ProcessServiceController(
            install_dir=tmp_path,
            pid_file=pid_file,
            start_command=["sleep", "30"],
            stop_grace=5,
            poll_interval=0.05,
        )

        await controller.start()
        try:
            assert pid_file.exists()
            assert await controller.is_running() is True
            assert await controller.wait_for_liveness(timeout=2) is True
            assert (await controller.status())["pid"] == int(pid_file.read_text())
        finally:
            await controller.stop()

        assert await controller.is_running() is False
        assert not pid_file.exists()

    @pytest.mark.asyncio
    async def test_stop_without_process(self, tmp_path: Path) -> None:
        """Test stopping when nothing runs clears a stale pid file."""
        pid_file = tmp_path / "runner.pid"
        pid_file.write_text("not-a-pid")
        controller = ProcessServiceController(tmp_path, pid_file)

        await controller.stop()

        assert not pid_file.exists()
        assert await controller.is_running() is False

    @pytest.mark.asyncio
    async def test_start_failure(self, tmp_path: Path) -> None:
        """Test a missing start command."""
        controller = ProcessServiceController(
            tmp_path, tmp_path / "runner.pid", start_command=["./missing-run.sh"]
        )
        with pytest.raises(ServiceStartFailure):
            await controller.start()

    @pytest.mark.asyncio
    async def test_start_when_running_is_noop(self, tmp_path: Path) -> None:
        """Test start does not launch a second process."""
        pid_file = tmp_path / "runner.pid"
        controller = ProcessServiceController(
            tmp_path, pid_file, start_command=["sleep", "30"], stop_grace=5
        )
        await controller.start()
        try:
            first_pid = pid_file.read_text()
            await controller.start()
            assert pid_file.read_text() == first_pid
        finally:
            await controller.stop()
