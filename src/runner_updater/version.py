"""
Runner versions and the version.json record of the installed runner.

Runner releases are tagged with semantic versions (2.311.0, 2.312.0-rc.1).
Ordering follows semver precedence: build metadata is ignored and a release
ranks above its own pre-releases.

version.json is kept next to a backup copy and carries a sha256 checksum of
its content, so a torn or hand-edited file falls back to the backup.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, NamedTuple

from pydantic import BaseModel, Field, field_validator

from runner_updater.errors import InvalidArgumentError
from runner_updater.logging import get_logger

logger = get_logger(__name__)

_NUMERIC = r"0|[1-9]\d*"
_IDENT = r"(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)"

SEMVER_PATTERN = re.compile(
    rf"^(?P<major>{_NUMERIC})\.(?P<minor>{_NUMERIC})\.(?P<patch>{_NUMERIC})"
    rf"(?:-(?P<prerelease>{_IDENT}(?:\.{_IDENT})*))?"
    r"(?:\+(?P<build>[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)

SHA256_PATTERN = re.compile(r"^[a-f0-9]{64}$")

HISTORY_LIMIT = 10


class SemanticVersion(NamedTuple):
    """Parsed components of a semantic version."""

    major: int
    minor: int
    patch: int
    prerelease: str | None = None
    build: str | None = None

    def precedence_key(self) -> tuple[Any, ...]:
        """Sort key implementing semver precedence."""
        if self.prerelease is None:
            # Releases sort after every pre-release of the same core
            pre: tuple[Any, ...] = (1,)
        else:
            pre = (
                0,
                tuple(
                    (0, int(part), "") if part.isdigit() else (1, 0, part)
                    for part in self.prerelease.split(".")
                ),
            )
        return (self.major, self.minor, self.patch, pre)


def parse_semantic_version(version: str) -> SemanticVersion:
    """
    Parse a semantic version string.

    Tag prefixes ("v2.311.0") are not accepted here; strip them first.

    Raises:
        InvalidArgumentError: If the string is not a semantic version.
    """
    match = SEMVER_PATTERN.match(version or "")
    if match is None:
        details: dict[str, Any] = {
            "version": version,
            "format": "MAJOR.MINOR.PATCH[-PRERELEASE][+BUILD]",
        }
        if version and version[0] in "vV":
            details["hint"] = f"Drop the tag prefix: {version[1:]}"
        raise InvalidArgumentError(f"Not a semantic version: {version!r}", details=details)

    return SemanticVersion(
        major=int(match["major"]),
        minor=int(match["minor"]),
        patch=int(match["patch"]),
        prerelease=match["prerelease"],
        build=match["build"],
    )


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two semantic versions.

    Returns:
        -1, 0 or 1 as v1 is older than, equal to or newer than v2.

    Raises:
        InvalidArgumentError: If either version is invalid.
    """
    k1 = parse_semantic_version(v1).precedence_key()
    k2 = parse_semantic_version(v2).precedence_key()
    return (k1 > k2) - (k1 < k2)


def _utc_now() -> str:
    return datetime.now(UTC).isoformat()


# =============================================================================
# Version Model
# =============================================================================


class PackageLocator(BaseModel):
    """
    Where a version's package can be downloaded from.

    Attributes:
        url: HTTP(S) URL, file:// URL, or local filesystem path.
        filename: Archive file name (determines the archive format).
        sha256: Expected SHA-256 hex digest, when the source publishes one.
        size: Expected size in bytes, when the source publishes one.
    """

    url: str = Field(..., description="Package URL or local path")
    filename: str | None = Field(default=None, description="Archive file name")
    sha256: str | None = Field(default=None, description="Expected SHA-256 hex digest")
    size: int | None = Field(default=None, gt=0, description="Expected size in bytes")

    @field_validator("sha256")
    @classmethod
    def validate_sha256(cls, v: str | None) -> str | None:
        """Normalize and validate the hex digest."""
        if v is None:
            return None
        v = v.strip().lower()
        if not SHA256_PATTERN.match(v):
            raise ValueError(f"Invalid SHA-256 digest: {v!r}")
        return v

    @property
    def archive_name(self) -> str:
        """Get the archive file name, derived from the URL when not set."""
        if self.filename:
            return self.filename
        return self.url.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0]


class Version(BaseModel):
    """
    A comparable runner version.

    Ordering operators compare semantic versions only; `==` compares the
    whole record. Use `same_version` for "already up to date" checks.

    Attributes:
        version: Semantic version string.
        package: Package locator (None for the installed version).
        release_notes: Optional human-readable release notes.
    """

    version: str = Field(..., description="Semantic version string")
    package: PackageLocator | None = Field(
        default=None,
        description="Where to download this version",
    )
    release_notes: str | None = Field(
        default=None,
        description="Release notes text",
    )

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate the version is a semantic version."""
        parse_semantic_version(v)
        return v

    def compare(self, other: Version | str) -> int:
        """Compare with another version; see compare_versions."""
        other_version = other.version if isinstance(other, Version) else other
        return compare_versions(self.version, other_version)

    def same_version(self, other: Version | str) -> bool:
        """Check whether both identify the same release."""
        return self.compare(other) == 0

    def __lt__(self, other: Version) -> bool:
        return self.compare(other) < 0

    def __le__(self, other: Version) -> bool:
        return self.compare(other) <= 0

    def __gt__(self, other: Version) -> bool:
        return self.compare(other) > 0

    def __ge__(self, other: Version) -> bool:
        return self.compare(other) >= 0

    def __str__(self) -> str:
        return self.version


# =============================================================================
# version.json Models
# =============================================================================


class VersionHistory(BaseModel):
    """
    One installed version in version.json.

    Attributes:
        version: Installed version.
        installed_at: ISO 8601 install timestamp.
        source: Where the version came from ("github", "manifest", "probe", ...).
        status: "active" for the current version, "previous_good" once it has
            been replaced.
        updated_from: Version this one replaced.
    """

    version: str
    installed_at: str = Field(default_factory=_utc_now)
    source: str = "github"
    status: str = "active"
    updated_from: str | None = None

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        parse_semantic_version(v)
        return v


class LastUpdateStatus(BaseModel):
    """Outcome of the most recent update attempt."""

    outcome: str
    finished_at: str = Field(default_factory=_utc_now)
    old_version: str | None = None
    new_version: str | None = None
    message: str | None = None


class VersionInfo(BaseModel):
    """
    Content of version.json.

    Attributes:
        format_version: Schema version of the file.
        current: Installed version.
        previous: Last known good version before current.
        history: Installed versions, newest first.
        last_update: Outcome of the most recent update attempt.
        last_modified: ISO 8601 timestamp of the last save.
    """

    format_version: str = "1.0"
    current: str
    previous: str | None = None
    history: list[VersionHistory] = Field(default_factory=list)
    last_update: LastUpdateStatus | None = None
    last_modified: str | None = None

    @field_validator("current", "previous")
    @classmethod
    def validate_versions(cls, v: str | None) -> str | None:
        """Both recorded versions must be semantic versions."""
        if v is not None:
            parse_semantic_version(v)
        return v


# =============================================================================
# Version Manager
# =============================================================================


def _content_digest(payload: dict[str, Any]) -> str:
    body = {k: v for k, v in payload.items() if k != "checksum"}
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(canonical.encode()).hexdigest()


class VersionManager:
    """
    Reads and writes version.json and its backup copy.

    Attributes:
        version_file: Path to version.json.
        backup_file: Path to the backup copy.
    """

    def __init__(
        self,
        version_file: Path | str,
        backup_file: Path | str | None = None,
    ) -> None:
        self.version_file = Path(version_file)
        self.backup_file = (
            Path(backup_file)
            if backup_file
            else self.version_file.with_name(f"{self.version_file.name}.backup")
        )
        self._version_info: VersionInfo | None = None

    @property
    def version_info(self) -> VersionInfo | None:
        """The loaded version.json content, if any."""
        return self._version_info

    def exists(self) -> bool:
        """Check whether version.json or its backup is present."""
        return self.version_file.exists() or self.backup_file.exists()

    @staticmethod
    def _read(path: Path) -> VersionInfo:
        with open(path) as f:
            payload = json.load(f)
        if not isinstance(payload, dict):
            raise ValueError(f"{path} does not hold a JSON object")

        stored = payload.pop("checksum", None)
        if stored is not None and stored != _content_digest(payload):
            raise ValueError(f"Checksum mismatch in {path}")
        return VersionInfo.model_validate(payload)

    @staticmethod
    def _write(path: Path, info: VersionInfo) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = info.model_dump(exclude_none=True)
        payload["checksum"] = _content_digest(payload)

        tmp = path.with_name(f"{path.name}.tmp")
        with open(tmp, "w") as f:
            json.dump(payload, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def load(self) -> VersionInfo:
        """
        Load version.json, falling back to the backup copy.

        A primary file that is missing, unparsable or fails its checksum is
        rewritten from a valid backup.

        Raises:
            RuntimeError: If neither file holds a valid record.
        """
        errors: dict[str, str] = {}
        for path in (self.version_file, self.backup_file):
            try:
                info = self._read(path)
            except (OSError, ValueError, InvalidArgumentError) as e:
                errors[str(path)] = str(e)
                logger.warning(
                    "version.json candidate rejected",
                    extra={"path": str(path), "error": str(e)},
                )
                continue

            if path == self.backup_file:
                self._write(self.version_file, info)
                logger.info(
                    "version.json restored from backup",
                    extra={"path": str(self.version_file)},
                )
            self._version_info = info
            return info

        logger.error("No valid version.json found", extra={"errors": errors})
        raise RuntimeError(
            f"Cannot load {self.version_file}: no valid primary or backup copy"
        )

    def save(self, version_info: VersionInfo | None = None) -> None:
        """Write version.json and then its backup."""
        info = version_info or self._version_info
        if info is None:
            raise ValueError("No version info to save")

        info.last_modified = _utc_now()
        self._write(self.version_file, info)
        self._write(self.backup_file, info)
        self._version_info = info

    def _loaded(self) -> VersionInfo:
        if self._version_info is None:
            raise RuntimeError("version.json has not been loaded")
        return self._version_info

    def get_current_version(self) -> str | None:
        return self._version_info.current if self._version_info else None

    def get_previous_version(self) -> str | None:
        return self._version_info.previous if self._version_info else None

    def update_version(
        self,
        new_version: str,
        source: str = "github",
        *,
        save: bool = True,
    ) -> None:
        """
        Make new_version current, demoting the old current to previous.

        Raises:
            InvalidArgumentError: If new_version is invalid.
            RuntimeError: If version.json has not been loaded.
        """
        parse_semantic_version(new_version)
        info = self._loaded()
        replaced = info.current

        for entry in info.history:
            if entry.status == "active":
                entry.status = "previous_good"

        info.history = [
            VersionHistory(version=new_version, source=source, updated_from=replaced),
            *info.history,
        ][:HISTORY_LIMIT]
        info.previous, info.current = replaced, new_version

        if save:
            self.save()
        logger.info(
            "Installed version recorded",
            extra={"old_version": replaced, "new_version": new_version, "source": source},
        )

    def record_update_result(
        self,
        outcome: str,
        *,
        old_version: str | None = None,
        new_version: str | None = None,
        message: str | None = None,
        save: bool = True,
    ) -> None:
        """
        Store the outcome of an update attempt as last_update.

        Raises:
            RuntimeError: If version.json has not been loaded.
        """
        self._loaded().last_update = LastUpdateStatus(
            outcome=outcome,
            old_version=old_version,
            new_version=new_version,
            message=message,
        )
        if save:
            self.save()

    def create_initial_version(
        self,
        version: str,
        source: str = "initial",
    ) -> VersionInfo:
        """Write a fresh version.json for an installation found on disk."""
        parse_semantic_version(version)
        info = VersionInfo(
            current=version,
            history=[VersionHistory(version=version, source=source)],
        )
        self.save(info)
        logger.info(
            "version.json initialized",
            extra={"version": version, "source": source},
        )
        return info

    def to_dict(self) -> dict[str, Any]:
        """Loaded content as a dictionary ({} when nothing is loaded)."""
        return self._version_info.model_dump() if self._version_info else {}
