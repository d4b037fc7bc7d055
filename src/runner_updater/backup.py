"""
Backup snapshots of the runner's stateful configuration.

A snapshot is a directory under the snapshot root::

    snapshots/<snapshot_id>/
        snapshot.json        manifest (id, created_at, install_dir, files)
        files/<relative>     copies of the stateful files

Snapshots are built in a hidden temporary directory and only appear under
their final name through an atomic rename, so a listed snapshot is always
complete.
"""

from __future__ import annotations

import hashlib
import json
import os
import shutil
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from runner_updater.errors import BackupError
from runner_updater.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from runner_updater.config import StatefulFileConfig

logger = get_logger(__name__)

MANIFEST_NAME = "snapshot.json"
FILES_DIR = "files"
_TMP_PREFIX = ".tmp-"
_CHUNK_SIZE = 1024 * 1024


def file_sha256(path: Path) -> str:
    """Calculate the SHA-256 hex digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(_CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()


class SnapshotFile(BaseModel):
    """A file captured in a snapshot."""

    path: str = Field(..., description="Path relative to install_dir")
    size: int = Field(..., ge=0, description="Size in bytes")
    sha256: str = Field(..., description="SHA-256 hex digest")


class Snapshot(BaseModel):
    """
    An immutable copy of the stateful files taken before an install.

    Attributes:
        snapshot_id: Timestamp-based identifier.
        created_at: ISO 8601 creation timestamp.
        install_dir: Installation the files were copied from.
        path: Snapshot directory.
        files: Captured files.
    """

    snapshot_id: str = Field(..., description="Snapshot identifier")
    created_at: str = Field(..., description="ISO 8601 creation timestamp")
    install_dir: str = Field(..., description="Source installation directory")
    path: str = Field(..., description="Snapshot directory")
    files: list[SnapshotFile] = Field(default_factory=list)

    @property
    def files_dir(self) -> Path:
        return Path(self.path) / FILES_DIR


class BackupManager:
    """
    Creates, restores and prunes snapshots of stateful files.

    Attributes:
        install_dir: Runner installation root.
        snapshot_dir: Directory holding snapshots.
        stateful_files: Files to capture.
        retention: Number of snapshots kept after each new snapshot
            (None keeps all).
    """

    def __init__(
        self,
        install_dir: Path | str,
        snapshot_dir: Path | str,
        stateful_files: Sequence[StatefulFileConfig],
        retention: int | None = 5,
    ) -> None:
        self.install_dir = Path(install_dir)
        self.snapshot_dir = Path(snapshot_dir)
        self.stateful_files = list(stateful_files)
        self.retention = retention

    def _new_snapshot_id(self) -> str:
        base = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        snapshot_id = base
        counter = 1
        while (self.snapshot_dir / snapshot_id).exists():
            snapshot_id = f"{base}-{counter}"
            counter += 1
        return snapshot_id

    def create_snapshot(self) -> Snapshot:
        """
        Copy every configured stateful file into a new snapshot.

        Required files must exist; optional files are captured when present.

        Returns:
            The created Snapshot.

        Raises:
            BackupError: If a required file is missing or any file cannot be
                read or copied. No snapshot directory is left behind.
        """
        snapshot_id = self._new_snapshot_id()
        final_dir = self.snapshot_dir / snapshot_id
        tmp_dir = self.snapshot_dir / f"{_TMP_PREFIX}{snapshot_id}"

        logger.info(
            "Creating snapshot",
            extra={"snapshot_id": snapshot_id, "install_dir": str(self.install_dir)},
        )

        try:
            tmp_dir.mkdir(parents=True)
            files: list[SnapshotFile] = []

            for entry in self.stateful_files:
                source = self.install_dir / entry.path
                if not source.is_file():
                    if entry.required:
                        raise BackupError(
                            f"Required stateful file missing: {entry.path}",
                            details={"path": str(source)},
                        )
                    logger.debug(
                        "Optional stateful file absent",
                        extra={"path": entry.path},
                    )
                    continue

                target = tmp_dir / FILES_DIR / entry.path
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)

                digest = file_sha256(source)
                if file_sha256(target) != digest:
                    raise BackupError(
                        f"Snapshot copy does not match source: {entry.path}",
                        details={"path": entry.path},
                    )
                files.append(
                    SnapshotFile(
                        path=entry.path,
                        size=target.stat().st_size,
                        sha256=digest,
                    )
                )

            snapshot = Snapshot(
                snapshot_id=snapshot_id,
                created_at=datetime.now(UTC).isoformat(),
                install_dir=str(self.install_dir),
                path=str(final_dir),
                files=files,
            )

            manifest = tmp_dir / MANIFEST_NAME
            with open(manifest, "w") as f:
                json.dump(snapshot.model_dump(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            os.rename(tmp_dir, final_dir)

        except BackupError:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise
        except OSError as e:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise BackupError(
                f"Failed to create snapshot: {e}",
                details={"snapshot_id": snapshot_id, "error": str(e)},
            ) from e

        logger.info(
            "Snapshot created",
            extra={
                "snapshot_id": snapshot_id,
                "files": [f.path for f in snapshot.files],
            },
        )

        if self.retention is not None:
            self.prune(self.retention)

        return snapshot

    def restore(self, snapshot: Snapshot) -> None:
        """
        Copy every snapshot file back to its original location.

        All files are verified against the manifest before any is written.
        Files already matching the snapshot are left alone, so restoring
        twice is a no-op the second time.

        Raises:
            BackupError: If the snapshot is corrupt or a file cannot be written.
        """
        for item in snapshot.files:
            source = snapshot.files_dir / item.path
            try:
                digest = file_sha256(source)
            except OSError as e:
                raise BackupError(
                    f"Snapshot file unreadable: {item.path}",
                    details={"snapshot_id": snapshot.snapshot_id, "error": str(e)},
                ) from e
            if digest != item.sha256:
                raise BackupError(
                    f"Snapshot file corrupt: {item.path}",
                    details={
                        "snapshot_id": snapshot.snapshot_id,
                        "expected": item.sha256,
                        "actual": digest,
                    },
                )

        restored: list[str] = []
        for item in snapshot.files:
            source = snapshot.files_dir / item.path
            target = self.install_dir / item.path
            try:
                if target.is_file() and file_sha256(target) == item.sha256:
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                tmp_target = target.with_name(f"{target.name}.restore-tmp")
                shutil.copy2(source, tmp_target)
                os.replace(tmp_target, target)
            except OSError as e:
                raise BackupError(
                    f"Failed to restore {item.path}: {e}",
                    details={"snapshot_id": snapshot.snapshot_id, "error": str(e)},
                ) from e
            restored.append(item.path)

        logger.info(
            "Snapshot restored",
            extra={"snapshot_id": snapshot.snapshot_id, "restored": restored},
        )

    def _load_manifest(self, snapshot_path: Path) -> Snapshot:
        with open(snapshot_path / MANIFEST_NAME) as f:
            data = json.load(f)
        snapshot = Snapshot(**data)
        # The directory may have moved since the manifest was written
        snapshot.path = str(snapshot_path)
        return snapshot

    def get_snapshot(self, snapshot_id: str) -> Snapshot:
        """
        Load a snapshot by id.

        Raises:
            BackupError: If the snapshot is missing or its manifest is invalid.
        """
        try:
            return self._load_manifest(self.snapshot_dir / snapshot_id)
        except (OSError, ValueError) as e:
            raise BackupError(
                f"Snapshot not readable: {snapshot_id}",
                details={"snapshot_id": snapshot_id, "error": str(e)},
            ) from e

    def list_snapshots(self) -> list[Snapshot]:
        """List complete snapshots, oldest first."""
        if not self.snapshot_dir.is_dir():
            return []

        snapshots: list[Snapshot] = []
        for path in self.snapshot_dir.iterdir():
            if not path.is_dir() or path.name.startswith(_TMP_PREFIX):
                continue
            try:
                snapshots.append(self._load_manifest(path))
            except (OSError, ValueError) as e:
                logger.warning(
                    "Skipping unreadable snapshot",
                    extra={"path": str(path), "error": str(e)},
                )

        snapshots.sort(key=lambda s: (s.created_at, s.snapshot_id))
        return snapshots

    def latest_snapshot(self) -> Snapshot | None:
        """Get the newest snapshot, or None."""
        snapshots = self.list_snapshots()
        return snapshots[-1] if snapshots else None

    def prune(self, keep: int) -> list[str]:
        """
        Delete all but the newest `keep` snapshots.

        Returns:
            Ids of removed snapshots.
        """
        if keep < 1:
            raise ValueError(f"keep must be at least 1, got {keep}")

        removed: list[str] = []
        for snapshot in self.list_snapshots()[:-keep]:
            shutil.rmtree(snapshot.path, ignore_errors=True)
            removed.append(snapshot.snapshot_id)

        if removed:
            logger.info("Pruned snapshots", extra={"removed": removed})
        return removed
