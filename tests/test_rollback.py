"""
Tests for the rollback manager.
"""

from __future__ import annotations

from unittest import mock

import pytest

from runner_updater.errors import BackupError, FatalRollbackError, ServiceStartFailure
from runner_updater.rollback import RollbackManager
from runner_updater.session import UpdateSession


@pytest.fixture
def service() -> mock.AsyncMock:
    service = mock.AsyncMock()
    service.wait_for_liveness.return_value = True
    return service


@pytest.fixture
def backup_manager() -> mock.MagicMock:
    return mock.MagicMock()


@pytest.fixture
def installer() -> mock.MagicMock:
    installer = mock.MagicMock()
    installer.restore_previous.return_value = True
    return installer


@pytest.fixture
def probe() -> mock.AsyncMock:
    probe = mock.AsyncMock()
    probe.running_version.return_value = "2.310.0"
    return probe


@pytest.fixture
def session() -> UpdateSession:
    return UpdateSession(
        target_version="2.311.0",
        previous_version="2.310.0",
        snapshot_id="20240101T000000000000Z",
    )


@pytest.fixture
def manager(
    service: mock.AsyncMock,
    backup_manager: mock.MagicMock,
    installer: mock.MagicMock,
    probe: mock.AsyncMock,
) -> RollbackManager:
    return RollbackManager(
        service, backup_manager, installer, probe=probe, liveness_timeout=5
    )


class TestRollback:
    """Tests for RollbackManager.rollback."""

    @pytest.mark.asyncio
    async def test_successful_rollback(
        self,
        manager: RollbackManager,
        service: mock.AsyncMock,
        backup_manager: mock.MagicMock,
        installer: mock.MagicMock,
        session: UpdateSession,
    ) -> None:
        """Test the full rollback sequence."""
        order: list[str] = []
        service.stop.side_effect = lambda: order.append("stop")
        backup_manager.restore.side_effect = lambda s: order.append("restore_snapshot")
        installer.restore_previous.side_effect = lambda: order.append("restore_binaries") or True
        service.start.side_effect = lambda: order.append("start")

        await manager.rollback(session)

        assert order == ["stop", "restore_snapshot", "restore_binaries", "start"]
        backup_manager.get_snapshot.assert_called_once_with("20240101T000000000000Z")
        service.wait_for_liveness.assert_awaited_once_with(5)

    @pytest.mark.asyncio
    async def test_without_snapshot(
        self,
        manager: RollbackManager,
        backup_manager: mock.MagicMock,
        session: UpdateSession,
    ) -> None:
        """Test sessions that skipped the backup still restore binaries."""
        session.snapshot_id = None

        await manager.rollback(session)

        backup_manager.restore.assert_not_called()

    @pytest.mark.asyncio
    async def test_nothing_replaced_is_not_fatal(
        self,
        manager: RollbackManager,
        installer: mock.MagicMock,
        session: UpdateSession,
    ) -> None:
        """Test a session that never replaced binaries has nothing to restore."""
        installer.restore_previous.return_value = False
        await manager.rollback(session)

    @pytest.mark.asyncio
    async def test_missing_previous_binaries_is_fatal(
        self,
        manager: RollbackManager,
        service: mock.AsyncMock,
        installer: mock.MagicMock,
        session: UpdateSession,
    ) -> None:
        """Test replaced binaries that cannot be put back defeat rollback."""
        session.binaries_replaced = True
        installer.restore_previous.return_value = False

        with pytest.raises(FatalRollbackError) as exc_info:
            await manager.rollback(session)

        assert exc_info.value.details["step"] == "restore_binaries"
        assert exc_info.value.details["cause"]["error_code"] == "failed_precondition"
        service.start.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_previous_binaries_fatal_without_probe(
        self,
        service: mock.AsyncMock,
        backup_manager: mock.MagicMock,
        installer: mock.MagicMock,
        session: UpdateSession,
    ) -> None:
        """Test the restore check does not depend on a version probe."""
        manager = RollbackManager(service, backup_manager, installer, probe=None)
        session.binaries_replaced = True
        installer.restore_previous.return_value = False

        with pytest.raises(FatalRollbackError, match="restore_binaries"):
            await manager.rollback(session)

    @pytest.mark.asyncio
    async def test_restored_binaries_checkpointed(
        self,
        manager: RollbackManager,
        session: UpdateSession,
    ) -> None:
        """Test the session is persisted once its binaries are back."""
        session.binaries_replaced = True
        saved: list[bool] = []

        await manager.rollback(
            session, checkpoint=lambda s: saved.append(s.binaries_replaced)
        )

        assert saved == [False]
        assert session.binaries_replaced is False
        assert session.trail[-1].outcome == "binaries_restored"

    @pytest.mark.asyncio
    async def test_unknown_running_version_tolerated(
        self, manager: RollbackManager, probe: mock.AsyncMock, session: UpdateSession
    ) -> None:
        """Test rollback succeeds when the version cannot be queried."""
        probe.running_version.return_value = None
        await manager.rollback(session)

    @pytest.mark.asyncio
    async def test_snapshot_restore_failure_is_fatal(
        self,
        manager: RollbackManager,
        backup_manager: mock.MagicMock,
        session: UpdateSession,
    ) -> None:
        """Test a corrupt snapshot defeats rollback."""
        backup_manager.restore.side_effect = BackupError("Snapshot file corrupt: .runner")

        with pytest.raises(FatalRollbackError) as exc_info:
            await manager.rollback(session)

        assert exc_info.value.details["step"] == "restore_snapshot"
        assert exc_info.value.details["cause"]["error_code"] == "backup_failed"

    @pytest.mark.asyncio
    async def test_binary_restore_os_error_is_fatal(
        self,
        manager: RollbackManager,
        installer: mock.MagicMock,
        session: UpdateSession,
    ) -> None:
        """Test filesystem errors are fatal."""
        installer.restore_previous.side_effect = OSError("read-only file system")

        with pytest.raises(FatalRollbackError) as exc_info:
            await manager.rollback(session)

        assert exc_info.value.details["step"] == "restore_binaries"

    @pytest.mark.asyncio
    async def test_liveness_failure_is_fatal(
        self, manager: RollbackManager, service: mock.AsyncMock, session: UpdateSession
    ) -> None:
        """Test a restored runner that never becomes healthy."""
        service.wait_for_liveness.return_value = False

        with pytest.raises(FatalRollbackError) as exc_info:
            await manager.rollback(session)

        assert exc_info.value.details["step"] == "liveness"

    @pytest.mark.asyncio
    async def test_start_failure_is_fatal(
        self, manager: RollbackManager, service: mock.AsyncMock, session: UpdateSession
    ) -> None:
        """Test a refused start."""
        service.start.side_effect = ServiceStartFailure("unit masked")

        with pytest.raises(FatalRollbackError, match="start"):
            await manager.rollback(session)

    @pytest.mark.asyncio
    async def test_wrong_version_is_fatal(
        self, manager: RollbackManager, probe: mock.AsyncMock, session: UpdateSession
    ) -> None:
        """Test the restored runner must report the previous version."""
        probe.running_version.return_value = "2.311.0"

        with pytest.raises(FatalRollbackError) as exc_info:
            await manager.rollback(session)

        assert exc_info.value.details["step"] == "verify_version"
