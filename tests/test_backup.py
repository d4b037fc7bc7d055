"""
Tests for snapshot backup and restore of stateful files.
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest import mock

import pytest

from runner_updater.backup import MANIFEST_NAME, BackupManager, file_sha256
from runner_updater.config import StatefulFileConfig
from runner_updater.errors import BackupError

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def install_dir(tmp_path: Path) -> Path:
    """A configured runner installation."""
    path = tmp_path / "actions-runner"
    path.mkdir()
    (path / ".runner").write_text('{"agentName": "pi-01"}')
    (path / ".credentials").write_text('{"scheme": "OAuth"}')
    (path / ".path").write_text("/usr/bin:/bin")
    return path


@pytest.fixture
def stateful_files() -> list[StatefulFileConfig]:
    return [
        StatefulFileConfig(path=".runner"),
        StatefulFileConfig(path=".credentials"),
        StatefulFileConfig(path=".path"),
        StatefulFileConfig(path=".env", required=False),
    ]


@pytest.fixture
def manager(
    tmp_path: Path, install_dir: Path, stateful_files: list[StatefulFileConfig]
) -> BackupManager:
    return BackupManager(install_dir, tmp_path / "snapshots", stateful_files)


# =============================================================================
# Snapshot Creation Tests
# =============================================================================


class TestCreateSnapshot:
    """Tests for BackupManager.create_snapshot."""

    def test_captures_stateful_files(self, manager: BackupManager, install_dir: Path) -> None:
        """Test every present stateful file is copied and hashed."""
        snapshot = manager.create_snapshot()

        assert [f.path for f in snapshot.files] == [".runner", ".credentials", ".path"]
        for item in snapshot.files:
            copy = snapshot.files_dir / item.path
            assert copy.read_bytes() == (install_dir / item.path).read_bytes()
            assert item.sha256 == file_sha256(copy)

    def test_manifest_written(self, manager: BackupManager) -> None:
        """Test the manifest describes the snapshot."""
        snapshot = manager.create_snapshot()

        data = json.loads((Path(snapshot.path) / MANIFEST_NAME).read_text())
        assert data["snapshot_id"] == snapshot.snapshot_id
        assert len(data["files"]) == 3

    def test_optional_file_captured_when_present(
        self, manager: BackupManager, install_dir: Path
    ) -> None:
        """Test optional files are included if they exist."""
        (install_dir / ".env").write_text("LANG=C.UTF-8")
        snapshot = manager.create_snapshot()
        assert ".env" in [f.path for f in snapshot.files]

    def test_missing_required_file(
        self, manager: BackupManager, install_dir: Path
    ) -> None:
        """Test a missing required file fails and leaves nothing behind."""
        (install_dir / ".credentials").unlink()

        with pytest.raises(BackupError, match=".credentials"):
            manager.create_snapshot()

        assert list(manager.snapshot_dir.iterdir()) == []
        assert manager.list_snapshots() == []

    def test_copy_failure_cleans_up(self, manager: BackupManager) -> None:
        """Test I/O errors are reported as BackupError."""
        with mock.patch("shutil.copy2", side_effect=PermissionError("denied")):
            with pytest.raises(BackupError, match="denied"):
                manager.create_snapshot()

        assert list(manager.snapshot_dir.iterdir()) == []

    def test_unique_ids(self, manager: BackupManager) -> None:
        """Test consecutive snapshots get distinct ids."""
        first = manager.create_snapshot()
        second = manager.create_snapshot()
        assert first.snapshot_id != second.snapshot_id

    def test_retention(self, install_dir: Path, tmp_path: Path) -> None:
        """Test old snapshots are pruned after creation."""
        manager = BackupManager(
            install_dir,
            tmp_path / "snapshots",
            [StatefulFileConfig(path=".runner")],
            retention=2,
        )
        ids = [manager.create_snapshot().snapshot_id for _ in range(4)]

        remaining = [s.snapshot_id for s in manager.list_snapshots()]
        assert remaining == ids[-2:]


# =============================================================================
# Restore Tests
# =============================================================================


class TestRestore:
    """Tests for BackupManager.restore."""

    def test_restore_overwritten_files(
        self, manager: BackupManager, install_dir: Path
    ) -> None:
        """Test stateful files are restored byte-for-byte."""
        snapshot = manager.create_snapshot()
        original = (install_dir / ".runner").read_bytes()

        (install_dir / ".runner").write_text("clobbered")
        (install_dir / ".credentials").unlink()

        manager.restore(snapshot)

        assert (install_dir / ".runner").read_bytes() == original
        assert (install_dir / ".credentials").read_text() == '{"scheme": "OAuth"}'

    def test_restore_is_idempotent(
        self, manager: BackupManager, install_dir: Path
    ) -> None:
        """Test restoring twice leaves the same state."""
        snapshot = manager.create_snapshot()
        (install_dir / ".runner").write_text("clobbered")

        manager.restore(snapshot)
        manager.restore(snapshot)

        assert (install_dir / ".runner").read_text() == '{"agentName": "pi-01"}'
        assert not list(install_dir.glob("*.restore-tmp"))

    def test_restore_rejects_corrupt_snapshot(
        self, manager: BackupManager, install_dir: Path
    ) -> None:
        """Test a tampered snapshot is refused before writing anything."""
        snapshot = manager.create_snapshot()
        (snapshot.files_dir / ".path").write_text("tampered")
        (install_dir / ".runner").write_text("clobbered")

        with pytest.raises(BackupError, match="corrupt"):
            manager.restore(snapshot)

        assert (install_dir / ".runner").read_text() == "clobbered"

    def test_restore_missing_snapshot_file(self, manager: BackupManager) -> None:
        """Test an incomplete snapshot is refused."""
        snapshot = manager.create_snapshot()
        (snapshot.files_dir / ".runner").unlink()

        with pytest.raises(BackupError, match="unreadable"):
            manager.restore(snapshot)


# =============================================================================
# Listing and Pruning Tests
# =============================================================================


class TestSnapshotListing:
    """Tests for get/list/latest/prune."""

    def test_get_snapshot(self, manager: BackupManager) -> None:
        """Test loading a snapshot by id."""
        created = manager.create_snapshot()
        loaded = manager.get_snapshot(created.snapshot_id)
        assert loaded.snapshot_id == created.snapshot_id
        assert loaded.files == created.files

    def test_get_unknown_snapshot(self, manager: BackupManager) -> None:
        """Test unknown ids raise BackupError."""
        with pytest.raises(BackupError):
            manager.get_snapshot("missing")

    def test_list_skips_incomplete(self, manager: BackupManager) -> None:
        """Test temporary and broken directories are not listed."""
        created = manager.create_snapshot()
        (manager.snapshot_dir / ".tmp-20240101T000000000000Z").mkdir()
        broken = manager.snapshot_dir / "broken"
        broken.mkdir()
        (broken / MANIFEST_NAME).write_text("{")

        assert [s.snapshot_id for s in manager.list_snapshots()] == [created.snapshot_id]

    def test_list_without_directory(self, tmp_path: Path) -> None:
        """Test an absent snapshot directory lists nothing."""
        manager = BackupManager(tmp_path, tmp_path / "none", [])
        assert manager.list_snapshots() == []
        assert manager.latest_snapshot() is None

    def test_latest_snapshot(self, manager: BackupManager) -> None:
        """Test the newest snapshot is returned."""
        manager.create_snapshot()
        newest = manager.create_snapshot()
        latest = manager.latest_snapshot()
        assert latest is not None
        assert latest.snapshot_id == newest.snapshot_id

    def test_prune(self, manager: BackupManager) -> None:
        """Test pruning keeps the newest snapshots."""
        manager.retention = None
        ids = [manager.create_snapshot().snapshot_id for _ in range(3)]

        assert manager.prune(1) == ids[:2]
        assert [s.snapshot_id for s in manager.list_snapshots()] == ids[2:]

    def test_prune_invalid(self, manager: BackupManager) -> None:
        """Test keep must be positive."""
        with pytest.raises(ValueError):
            manager.prune(0)
