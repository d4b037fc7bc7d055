"""
Installer for runner packages.

The install runs in two phases:

1. Pre-mutation: download the package into the staging directory, verify
   its size and SHA-256, extract it, and check it contains the required
   entries. A failure here leaves the installation untouched.
2. Mutation: move the current binaries aside into the *previous*
   directory, move the staged entries into place, then re-apply the
   stateful files from the backup snapshot. A failure here leaves a mixed
   installation and is reported as PartialInstallError.

Stateful files and preserved entries (`_work`, `_diag`) are never moved.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import shutil
import tarfile
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlparse

import httpx

from runner_updater.errors import (
    DownloadError,
    ExtractionError,
    IntegrityError,
    PartialInstallError,
    UpdateCancelledError,
    UpdateError,
)
from runner_updater.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from runner_updater.backup import BackupManager, Snapshot
    from runner_updater.version import PackageLocator, Version

logger = get_logger(__name__)

# Rewritten in the previous directory after every move of the swap; lists
# the entries actually moved aside and actually installed.
INSTALLED_MANIFEST = ".installed.json"

_CHUNK_SIZE = 64 * 1024


@dataclass
class InstallResult:
    """
    Result of an install attempt.

    Attributes:
        success: Whether the new version is in place.
        version: Target version string.
        mutated: Whether the remove/replace step began.
        error: The failure, if any.
        staged_files: Number of top-level entries installed from the package.
    """

    success: bool
    version: str
    mutated: bool = False
    error: UpdateError | None = None
    staged_files: int = 0


# =============================================================================
# Package Fetching
# =============================================================================


class PackageFetcher(ABC):
    """Abstract base class for package fetchers."""

    @abstractmethod
    async def fetch(self, package: PackageLocator, dest_dir: Path) -> Path:
        """
        Download a package into dest_dir and verify it.

        Returns:
            Path of the downloaded archive.

        Raises:
            DownloadError: If the package cannot be retrieved.
            IntegrityError: If size or SHA-256 do not match.
        """


def verify_package(path: Path, package: PackageLocator) -> None:
    """
    Verify a downloaded archive against the locator's size and digest.

    Raises:
        IntegrityError: On mismatch. The file is removed.
    """
    size = path.stat().st_size
    if package.size is not None and size != package.size:
        path.unlink(missing_ok=True)
        raise IntegrityError(
            "Package size mismatch",
            details={"expected": package.size, "actual": size, "url": package.url},
        )

    if package.sha256 is not None:
        digest = hashlib.sha256()
        with open(path, "rb") as f:
            while chunk := f.read(_CHUNK_SIZE):
                digest.update(chunk)
        actual = digest.hexdigest()
        if actual != package.sha256:
            path.unlink(missing_ok=True)
            raise IntegrityError(
                "Package SHA-256 mismatch",
                details={
                    "expected": package.sha256,
                    "actual": actual,
                    "url": package.url,
                },
            )


class HttpPackageFetcher(PackageFetcher):
    """
    Fetches packages over HTTP(S), from file:// URLs or local paths.

    Attributes:
        timeout: HTTP timeout in seconds.
        token: Optional bearer token sent with HTTP requests.
    """

    def __init__(
        self,
        timeout: float = 300.0,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.token = token
        self._transport = transport

    async def _download(self, url: str, target: Path) -> None:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url, headers=headers) as response:
                    if response.status_code != 200:
                        raise DownloadError(
                            f"Package download returned HTTP {response.status_code}",
                            details={"url": url, "status_code": response.status_code},
                        )
                    with open(target, "wb") as f:
                        async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                            f.write(chunk)
        except httpx.HTTPError as e:
            target.unlink(missing_ok=True)
            raise DownloadError(
                f"Package download failed: {e}",
                details={"url": url, "error": str(e)},
            ) from e
        except DownloadError:
            target.unlink(missing_ok=True)
            raise

    async def fetch(self, package: PackageLocator, dest_dir: Path) -> Path:
        dest_dir.mkdir(parents=True, exist_ok=True)
        target = dest_dir / package.archive_name
        parsed = urlparse(package.url)

        logger.info(
            "Fetching package",
            extra={"url": package.url, "target": str(target)},
        )

        if parsed.scheme in ("http", "https"):
            await self._download(package.url, target)
        else:
            source = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(package.url)
            try:
                await asyncio.to_thread(shutil.copyfile, source, target)
            except OSError as e:
                raise DownloadError(
                    f"Package not readable: {source}",
                    details={"url": package.url, "error": str(e)},
                ) from e

        try:
            verify_package(target, package)
        except OSError as e:
            raise DownloadError(
                f"Downloaded package not readable: {e}",
                details={"path": str(target)},
            ) from e

        logger.info(
            "Package fetched",
            extra={"path": str(target), "size": target.stat().st_size},
        )
        return target


# =============================================================================
# Archive Extraction
# =============================================================================


class ArchiveExtractor(ABC):
    """Abstract base class for archive extractors."""

    @abstractmethod
    def extract(self, archive: Path, dest_dir: Path) -> None:
        """
        Extract an archive into dest_dir.

        Raises:
            ExtractionError: If the archive is malformed, empty, of an
                unknown format, or has members escaping dest_dir.
        """


def _check_member_name(name: str, archive: Path) -> None:
    pure = PurePosixPath(name.replace("\\", "/"))
    if pure.is_absolute() or ".." in pure.parts:
        raise ExtractionError(
            f"Archive member escapes the extraction directory: {name}",
            details={"archive": str(archive), "member": name},
        )


class StandardArchiveExtractor(ArchiveExtractor):
    """Extracts .tar.gz, .tgz, .tar and .zip archives."""

    def extract(self, archive: Path, dest_dir: Path) -> None:
        name = archive.name.lower()
        dest_dir.mkdir(parents=True, exist_ok=True)
        try:
            if name.endswith((".tar.gz", ".tgz", ".tar")):
                self._extract_tar(archive, dest_dir)
            elif name.endswith(".zip"):
                self._extract_zip(archive, dest_dir)
            else:
                raise ExtractionError(
                    f"Unsupported archive format: {archive.name}",
                    details={"archive": str(archive)},
                )
        except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError) as e:
            raise ExtractionError(
                f"Malformed archive: {e}",
                details={"archive": str(archive), "error": str(e)},
            ) from e

    def _extract_tar(self, archive: Path, dest_dir: Path) -> None:
        with tarfile.open(archive, "r:*") as tar:
            members = tar.getmembers()
            if not members:
                raise ExtractionError(
                    "Archive is empty",
                    details={"archive": str(archive)},
                )
            for member in members:
                _check_member_name(member.name, archive)
            tar.extractall(dest_dir, filter="data")

    def _extract_zip(self, archive: Path, dest_dir: Path) -> None:
        with zipfile.ZipFile(archive) as zf:
            infos = zf.infolist()
            if not infos:
                raise ExtractionError(
                    "Archive is empty",
                    details={"archive": str(archive)},
                )
            for info in infos:
                _check_member_name(info.filename, archive)
            for info in infos:
                extracted = Path(zf.extract(info, dest_dir))
                mode = (info.external_attr >> 16) & 0o777
                if mode and not info.is_dir():
                    extracted.chmod(mode)


# =============================================================================
# Installer
# =============================================================================


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


class Installer:
    """
    Replaces the runner binaries while keeping its stateful files.

    Attributes:
        install_dir: Runner installation root.
        staging_dir: Scratch directory for downloads and extraction.
        previous_dir: Where the replaced binaries are kept until the update
            is verified.
        fetcher: Package fetcher.
        extractor: Archive extractor.
        backup_manager: Used to re-apply the preserve snapshot.
        protected_entries: Top-level entries never moved or replaced.
        required_entries: Entries a package must contain.
    """

    def __init__(
        self,
        install_dir: Path | str,
        staging_dir: Path | str,
        previous_dir: Path | str,
        fetcher: PackageFetcher,
        extractor: ArchiveExtractor,
        backup_manager: BackupManager | None = None,
        stateful_paths: Sequence[str] = (),
        preserved_entries: Sequence[str] = ("_work", "_diag"),
        required_entries: Sequence[str] = ("config.sh", "run.sh"),
    ) -> None:
        self.install_dir = Path(install_dir)
        self.staging_dir = Path(staging_dir)
        self.previous_dir = Path(previous_dir)
        self.fetcher = fetcher
        self.extractor = extractor
        self.backup_manager = backup_manager
        self.protected_entries = {
            PurePosixPath(p).parts[0] for p in stateful_paths
        } | set(preserved_entries)
        self.required_entries = list(required_entries)

    def _reset_staging(self) -> None:
        if self.staging_dir.exists():
            shutil.rmtree(self.staging_dir)
        self.staging_dir.mkdir(parents=True)

    def _package_root(self, extract_dir: Path) -> Path:
        """Find the package root, descending into a single wrapper directory."""
        entries = list(extract_dir.iterdir())
        if not entries:
            raise ExtractionError(
                "Archive extracted no files",
                details={"path": str(extract_dir)},
            )

        root = extract_dir
        if len(entries) == 1 and entries[0].is_dir():
            wrapped = entries[0]
            if all((wrapped / e).exists() for e in self.required_entries):
                root = wrapped

        missing = [e for e in self.required_entries if not (root / e).exists()]
        if missing:
            raise ExtractionError(
                "Package is missing required entries",
                details={"missing": missing},
            )
        return root

    async def _stage(self, package: PackageLocator) -> list[Path]:
        self._reset_staging()
        archive = await self.fetcher.fetch(package, self.staging_dir / "download")
        extract_dir = self.staging_dir / "extract"
        await asyncio.to_thread(self.extractor.extract, archive, extract_dir)
        root = self._package_root(extract_dir)
        return sorted(
            (e for e in root.iterdir() if e.name not in self.protected_entries),
            key=lambda e: e.name,
        )

    def _write_swap_manifest(
        self, version: str, moved_aside: list[str], installed: list[str]
    ) -> None:
        manifest = self.previous_dir / INSTALLED_MANIFEST
        tmp = manifest.with_name(manifest.name + ".tmp")
        with open(tmp, "w") as f:
            json.dump(
                {"version": version, "moved_aside": moved_aside, "installed": installed},
                f,
            )
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, manifest)

    def _swap(self, version: str, staged: list[Path]) -> None:
        self.previous_dir.mkdir(parents=True)
        moved_aside: list[str] = []
        installed: list[str] = []
        self._write_swap_manifest(version, moved_aside, installed)

        for entry in sorted(self.install_dir.iterdir(), key=lambda e: e.name):
            if entry.name in self.protected_entries:
                continue
            shutil.move(str(entry), str(self.previous_dir / entry.name))
            moved_aside.append(entry.name)
            self._write_swap_manifest(version, moved_aside, installed)

        for entry in staged:
            shutil.move(str(entry), str(self.install_dir / entry.name))
            installed.append(entry.name)
            self._write_swap_manifest(version, moved_aside, installed)

    async def install(
        self,
        package: Version,
        preserve: Snapshot | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> InstallResult:
        """
        Install a package version over the current installation.

        Args:
            package: Target version with its package locator.
            preserve: Snapshot whose files are re-applied after the swap.
            cancel_event: Checked once more before the swap starts.

        Returns:
            InstallResult. Errors are returned, not raised.
        """
        version = package.version
        if package.package is None:
            return InstallResult(
                success=False,
                version=version,
                error=DownloadError(
                    f"Version {version} has no package locator",
                    details={"version": version},
                ),
            )

        if self.previous_dir.exists():
            logger.warning(
                "Removing leftover previous-version directory",
                extra={"path": str(self.previous_dir)},
            )
            shutil.rmtree(self.previous_dir)

        try:
            staged = await self._stage(package.package)
        except UpdateError as e:
            logger.error(
                "Package staging failed",
                extra={"version": version, "error": e.to_dict()},
            )
            return InstallResult(success=False, version=version, error=e)
        except OSError as e:
            return InstallResult(
                success=False,
                version=version,
                error=ExtractionError(
                    f"Staging failed: {e}",
                    details={"staging_dir": str(self.staging_dir)},
                ),
            )

        if cancel_event is not None and cancel_event.is_set():
            return InstallResult(
                success=False,
                version=version,
                error=UpdateCancelledError("Update cancelled before install"),
            )

        logger.info(
            "Replacing runner binaries",
            extra={"version": version, "entries": [e.name for e in staged]},
        )

        try:
            self._swap(version, staged)
            if preserve is not None and self.backup_manager is not None:
                self.backup_manager.restore(preserve)
        except (OSError, UpdateError) as e:
            logger.error(
                "Install interrupted after mutation began",
                extra={"version": version, "error": str(e)},
            )
            return InstallResult(
                success=False,
                version=version,
                mutated=True,
                error=PartialInstallError(
                    f"Install of {version} failed part-way: {e}",
                    details={"version": version, "error": str(e)},
                ),
            )

        shutil.rmtree(self.staging_dir, ignore_errors=True)

        logger.info(
            "Runner binaries replaced",
            extra={"version": version, "staged_files": len(staged)},
        )
        return InstallResult(
            success=True,
            version=version,
            mutated=True,
            staged_files=len(staged),
        )

    def has_previous(self) -> bool:
        """Check whether replaced binaries are available for rollback."""
        return self.previous_dir.is_dir()

    def restore_previous(self) -> bool:
        """
        Put the replaced binaries back.

        Removes the entries the swap actually installed, then moves back
        the entries it actually moved aside. Progress is recorded as it goes,
        so an interrupted restore can be repeated. Returns False once nothing
        is left to restore.

        Returns:
            True if binaries were restored, False if there was nothing to do.

        Raises:
            OSError: If the filesystem operations fail.
        """
        if not self.previous_dir.is_dir():
            return False

        record: dict = {}
        manifest = self.previous_dir / INSTALLED_MANIFEST
        if manifest.exists():
            with open(manifest) as f:
                record = json.load(f)
        version = record.get("version", "")
        installed = [
            n for n in record.get("installed", []) if n not in self.protected_entries
        ]
        # Entries whose move aside did not complete are still in place
        if "moved_aside" in record:
            moved_aside = list(record["moved_aside"])
        else:
            moved_aside = sorted(
                e.name
                for e in self.previous_dir.iterdir()
                if e.name not in (INSTALLED_MANIFEST, INSTALLED_MANIFEST + ".tmp")
            )

        while installed:
            target = self.install_dir / installed[0]
            if target.exists() or target.is_symlink():
                _remove_path(target)
            installed.pop(0)
            self._write_swap_manifest(version, moved_aside, installed)

        restored: list[str] = []
        while moved_aside:
            name = moved_aside[0]
            entry = self.previous_dir / name
            if entry.exists() or entry.is_symlink():
                target = self.install_dir / name
                if target.exists() or target.is_symlink():
                    _remove_path(target)
                shutil.move(str(entry), str(target))
                restored.append(name)
            moved_aside.pop(0)
            self._write_swap_manifest(version, moved_aside, installed)

        shutil.rmtree(self.previous_dir)

        logger.info("Previous binaries restored", extra={"entries": restored})
        return True

    def discard_previous(self) -> None:
        """Delete the replaced binaries once the update is verified."""
        if self.previous_dir.exists():
            shutil.rmtree(self.previous_dir)
            logger.info(
                "Discarded previous binaries",
                extra={"path": str(self.previous_dir)},
            )
        shutil.rmtree(self.staging_dir, ignore_errors=True)
