"""
Tests for the runner agent probe.
"""

from __future__ import annotations

import stat
from pathlib import Path
from typing import Any
from unittest import mock

import psutil
import pytest

from runner_updater.agent import RunnerAgentProbe

# =============================================================================
# Helpers
# =============================================================================


def _proc(pid: int, name: str, exe: str | None = None, cmdline: list[str] | None = None):
    proc = mock.MagicMock()
    proc.info = {"pid": pid, "name": name, "exe": exe, "cmdline": cmdline}
    return proc


def _write_listener(install_dir: Path, script: str) -> Path:
    binary = install_dir / "bin" / "Runner.Listener"
    binary.parent.mkdir(parents=True, exist_ok=True)
    binary.write_text("#!/bin/sh\n" + script + "\n")
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return binary


@pytest.fixture
def install_dir(tmp_path: Path) -> Path:
    path = tmp_path / "actions-runner"
    path.mkdir()
    return path


@pytest.fixture
def probe(install_dir: Path) -> RunnerAgentProbe:
    return RunnerAgentProbe(install_dir)


# =============================================================================
# Process Discovery Tests
# =============================================================================


class TestFindProcesses:
    """Tests for process discovery."""

    def test_matches_processes_in_install(
        self, probe: RunnerAgentProbe, install_dir: Path
    ) -> None:
        """Test only this installation's processes are returned."""
        procs = [
            _proc(10, "Runner.Worker", exe=str(install_dir / "bin" / "Runner.Worker")),
            _proc(11, "Runner.Worker", exe="/other/runner/bin/Runner.Worker"),
            _proc(12, "bash", exe="/bin/bash"),
        ]
        with mock.patch("psutil.process_iter", return_value=procs):
            assert probe.find_processes("Runner.Worker") == [10]

    def test_matches_by_argv0(self, probe: RunnerAgentProbe, install_dir: Path) -> None:
        """Test matching when the process name is truncated."""
        procs = [
            _proc(
                20,
                "Runner.Listene",
                exe=None,
                cmdline=[str(install_dir / "bin" / "Runner.Listener"), "run"],
            ),
        ]
        with mock.patch("psutil.process_iter", return_value=procs):
            assert probe.find_processes("Runner.Listener") == [20]

    def test_hidden_details_match_by_name(self, probe: RunnerAgentProbe) -> None:
        """Test processes with inaccessible details match on name alone."""
        with mock.patch("psutil.process_iter", return_value=[_proc(30, "Runner.Worker")]):
            assert probe.find_processes("Runner.Worker") == [30]

    def test_skips_vanished_processes(self, probe: RunnerAgentProbe) -> None:
        """Test processes that exit during iteration are skipped."""
        vanished = mock.MagicMock()
        type(vanished).info = mock.PropertyMock(side_effect=psutil.NoSuchProcess(99))
        with mock.patch("psutil.process_iter", return_value=[vanished]):
            assert probe.find_processes("Runner.Worker") == []


class TestBusyAndHealthy:
    """Tests for is_busy and is_healthy."""

    @pytest.mark.asyncio
    async def test_busy_when_worker_running(
        self, probe: RunnerAgentProbe, install_dir: Path
    ) -> None:
        """Test a worker process means busy."""
        procs = [_proc(10, "Runner.Worker", exe=str(install_dir / "bin" / "Runner.Worker"))]
        with mock.patch("psutil.process_iter", return_value=procs):
            assert await probe.is_busy() is True
            assert await probe.is_healthy() is False

    @pytest.mark.asyncio
    async def test_idle_and_healthy(self, probe: RunnerAgentProbe, install_dir: Path) -> None:
        """Test a listener without workers means idle and healthy."""
        procs = [
            _proc(20, "Runner.Listener", exe=str(install_dir / "bin" / "Runner.Listener"))
        ]
        with mock.patch("psutil.process_iter", return_value=procs):
            assert await probe.is_busy() is False
            assert await probe.is_healthy() is True


# =============================================================================
# Version Query Tests
# =============================================================================


class TestRunningVersion:
    """Tests for running_version."""

    @pytest.mark.asyncio
    async def test_reports_version(self, probe: RunnerAgentProbe, install_dir: Path) -> None:
        """Test the listener's --version output is parsed."""
        _write_listener(install_dir, 'echo "v2.311.0"')
        assert await probe.running_version() == "2.311.0"

    @pytest.mark.asyncio
    async def test_uses_last_output_line(
        self, probe: RunnerAgentProbe, install_dir: Path
    ) -> None:
        """Test banner lines before the version are ignored."""
        _write_listener(install_dir, 'echo "Starting"\necho "2.312.0"')
        assert await probe.running_version() == "2.312.0"

    @pytest.mark.asyncio
    async def test_missing_binary(self, probe: RunnerAgentProbe) -> None:
        """Test None when the listener binary is absent."""
        assert await probe.running_version() is None

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, probe: RunnerAgentProbe, install_dir: Path) -> None:
        """Test None when the query fails."""
        _write_listener(install_dir, 'echo "2.311.0"\nexit 1')
        assert await probe.running_version() is None

    @pytest.mark.asyncio
    async def test_unparseable_output(
        self, probe: RunnerAgentProbe, install_dir: Path
    ) -> None:
        """Test None when the output is not a version."""
        _write_listener(install_dir, 'echo "garbage"')
        assert await probe.running_version() is None

    @pytest.mark.asyncio
    async def test_timeout(self, install_dir: Path) -> None:
        """Test a hung query is killed."""
        _write_listener(install_dir, "sleep 5")
        probe = RunnerAgentProbe(install_dir, version_timeout=0.1)
        assert await probe.running_version() is None

    @pytest.mark.asyncio
    async def test_exec_error(self, probe: RunnerAgentProbe, install_dir: Path) -> None:
        """Test None when the binary cannot be executed."""
        binary = install_dir / "bin" / "Runner.Listener"
        binary.parent.mkdir(parents=True)
        binary.write_text("not executable")

        def _raise(*args: Any, **kwargs: Any) -> None:
            raise PermissionError("denied")

        with mock.patch("asyncio.create_subprocess_exec", side_effect=_raise):
            assert await probe.running_version() is None
