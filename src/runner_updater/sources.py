"""
Version sources for the runner updater.

A version source answers two questions: what is the newest published runner
version in a channel, and where is the package for a given version.

Sources:
- GitHubReleasesSource: the GitHub REST releases API of the runner repository
- ManifestVersionSource: a JSON manifest published by the operator
"""

from __future__ import annotations

import platform
import re
from abc import ABC, abstractmethod
from typing import Any

import httpx

from runner_updater.errors import InvalidArgumentError, ResolutionError
from runner_updater.logging import get_logger
from runner_updater.version import PackageLocator, Version

logger = get_logger(__name__)

STABLE_CHANNEL = "stable"
PRERELEASE_CHANNEL = "prerelease"

_MACHINE_ARCH = {
    "x86_64": "x64",
    "amd64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
}

_SYSTEM_OS = {
    "linux": "linux",
    "darwin": "osx",
    "windows": "win",
}


def detect_runner_platform() -> str:
    """
    Detect the runner platform identifier of this host.

    Returns:
        Platform string such as "linux-x64", "linux-arm64" or "osx-arm64".

    Raises:
        ResolutionError: If the host OS or architecture has no runner build.
    """
    system = platform.system().lower()
    machine = platform.machine().lower()

    os_name = _SYSTEM_OS.get(system)
    arch = _MACHINE_ARCH.get(machine)
    if os_name is None or arch is None:
        raise ResolutionError(
            f"Unsupported runner platform: {system}/{machine}",
            details={"system": system, "machine": machine},
        )
    return f"{os_name}-{arch}"


def runner_asset_name(runner_platform: str, version: str) -> str:
    """Get the release asset file name for a platform and version."""
    extension = "zip" if runner_platform.startswith("win-") else "tar.gz"
    return f"actions-runner-{runner_platform}-{version}.{extension}"


def strip_tag_prefix(tag: str) -> str:
    """Strip the leading "v" of a release tag ("v2.311.0" -> "2.311.0")."""
    tag = tag.strip()
    if tag[:1] in ("v", "V"):
        return tag[1:]
    return tag


def extract_published_sha256(body: str, runner_platform: str) -> str | None:
    """
    Read a platform's SHA-256 from release notes.

    Runner releases publish digests between HTML comment markers:
    ``<!-- BEGIN SHA linux-x64 -->digest<!-- END SHA linux-x64 -->``.

    Returns:
        The lowercase hex digest, or None when the markers are absent.
    """
    key = re.escape(runner_platform)
    pattern = re.compile(
        rf"<!--\s*BEGIN SHA {key}\s*-->\s*([0-9a-fA-F]{{64}})\s*<!--\s*END SHA {key}\s*-->"
    )
    match = pattern.search(body or "")
    if match is None:
        return None
    return match.group(1).lower()


class VersionSource(ABC):
    """
    Abstract base class for version sources.

    Implementations are responsible for:
    - Finding the newest published version of a release channel
    - Locating the package of an explicitly requested version

    Failures of any kind (network, status, malformed metadata, missing
    platform asset) are reported as ResolutionError.
    """

    name: str = "source"

    @abstractmethod
    async def latest(self, channel: str = STABLE_CHANNEL) -> Version:
        """
        Get the newest published version in a channel.

        Args:
            channel: "stable" excludes pre-releases, "prerelease" includes them.

        Raises:
            ResolutionError: If the source cannot answer.
        """

    @abstractmethod
    async def get(self, version: str) -> Version:
        """
        Get a specific published version.

        Raises:
            ResolutionError: If the version is not published or unreachable.
        """


class GitHubReleasesSource(VersionSource):
    """
    Version source backed by the GitHub releases API.

    Attributes:
        repository: "owner/repo" publishing the runner.
        api_url: API base URL (GitHub Enterprise Server compatible).
        runner_platform: Platform whose asset is selected.
        token: Optional bearer token.
        timeout: HTTP timeout in seconds.
    """

    name = "github"

    def __init__(
        self,
        repository: str = "actions/runner",
        api_url: str = "https://api.github.com",
        runner_platform: str | None = None,
        token: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.repository = repository
        self.api_url = api_url.rstrip("/")
        self.runner_platform = runner_platform or detect_runner_platform()
        self.token = token
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self.api_url}/repos/{self.repository}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, headers=self._headers(), params=params)
        except httpx.HTTPError as e:
            raise ResolutionError(
                f"Version source unreachable: {e}",
                details={"url": url, "error": str(e)},
            ) from e

        if response.status_code != 200:
            raise ResolutionError(
                f"Version source returned HTTP {response.status_code}",
                details={"url": url, "status_code": response.status_code},
            )

        try:
            return response.json()
        except ValueError as e:
            raise ResolutionError(
                "Version source returned malformed JSON",
                details={"url": url},
            ) from e

    def _release_to_version(self, release: Any) -> Version:
        """Convert a release payload into a Version with this platform's asset."""
        if not isinstance(release, dict) or not release.get("tag_name"):
            raise ResolutionError(
                "Malformed release metadata",
                details={"release": str(release)[:200]},
            )

        version_str = strip_tag_prefix(str(release["tag_name"]))
        asset_name = runner_asset_name(self.runner_platform, version_str)

        asset = next(
            (
                a
                for a in release.get("assets") or []
                if isinstance(a, dict) and a.get("name") == asset_name
            ),
            None,
        )
        if asset is None or not asset.get("browser_download_url"):
            raise ResolutionError(
                f"Release {version_str} has no asset for platform {self.runner_platform}",
                details={
                    "version": version_str,
                    "platform": self.runner_platform,
                    "asset": asset_name,
                },
            )

        body = release.get("body") or ""
        try:
            return Version(
                version=version_str,
                package=PackageLocator(
                    url=asset["browser_download_url"],
                    filename=asset_name,
                    sha256=extract_published_sha256(body, self.runner_platform),
                    size=asset.get("size") or None,
                ),
                release_notes=body or None,
            )
        except (ValueError, InvalidArgumentError) as e:
            raise ResolutionError(
                f"Malformed release metadata for {version_str}: {e}",
                details={"version": version_str},
            ) from e

    async def latest(self, channel: str = STABLE_CHANNEL) -> Version:
        if channel == STABLE_CHANNEL:
            release = await self._get_json("/releases/latest")
            version = self._release_to_version(release)
        else:
            releases = await self._get_json("/releases", params={"per_page": 30})
            if not isinstance(releases, list):
                raise ResolutionError(
                    "Malformed releases listing",
                    details={"repository": self.repository},
                )
            candidates = [
                r for r in releases if isinstance(r, dict) and not r.get("draft")
            ]
            if not candidates:
                raise ResolutionError(
                    "No published releases found",
                    details={"repository": self.repository, "channel": channel},
                )
            versions = [self._release_to_version(r) for r in candidates]
            version = max(versions)

        logger.info(
            "Resolved latest runner version",
            extra={
                "version": version.version,
                "channel": channel,
                "platform": self.runner_platform,
            },
        )
        return version

    async def get(self, version: str) -> Version:
        release = await self._get_json(f"/releases/tags/v{strip_tag_prefix(version)}")
        return self._release_to_version(release)


class ManifestVersionSource(VersionSource):
    """
    Version source backed by a JSON manifest.

    Manifest format::

        {
          "stable": {"version": "2.311.0", "url": "...", "sha256": "...",
                     "size": 123, "notes": "..."},
          "prerelease": {...},
          "versions": {"2.310.2": {"url": "...", "sha256": "..."}}
        }

    A missing "prerelease" entry falls back to "stable".
    """

    name = "manifest"

    def __init__(self, manifest_url: str, timeout: float = 30.0) -> None:
        if not manifest_url:
            raise InvalidArgumentError(
                "Manifest URL must be configured for the manifest version source",
                details={"manifest_url": manifest_url},
            )
        self.manifest_url = manifest_url
        self.timeout = timeout

    async def _fetch_manifest(self) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.manifest_url)
        except httpx.HTTPError as e:
            raise ResolutionError(
                f"Manifest unreachable: {e}",
                details={"url": self.manifest_url, "error": str(e)},
            ) from e

        if response.status_code != 200:
            raise ResolutionError(
                f"Manifest returned HTTP {response.status_code}",
                details={"url": self.manifest_url, "status_code": response.status_code},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ResolutionError(
                "Manifest is not valid JSON",
                details={"url": self.manifest_url},
            ) from e

        if not isinstance(data, dict):
            raise ResolutionError(
                "Manifest must be a JSON object",
                details={"url": self.manifest_url},
            )
        return data

    def _entry_to_version(self, entry: Any, version: str | None = None) -> Version:
        if not isinstance(entry, dict):
            raise ResolutionError(
                "Malformed manifest entry",
                details={"entry": str(entry)[:200]},
            )
        version_str = version or entry.get("version")
        if not version_str or not entry.get("url"):
            raise ResolutionError(
                "Manifest entry requires 'version' and 'url'",
                details={"entry": entry},
            )
        try:
            return Version(
                version=strip_tag_prefix(str(version_str)),
                package=PackageLocator(
                    url=entry["url"],
                    filename=entry.get("filename"),
                    sha256=entry.get("sha256"),
                    size=entry.get("size"),
                ),
                release_notes=entry.get("notes"),
            )
        except (ValueError, InvalidArgumentError) as e:
            raise ResolutionError(
                f"Malformed manifest entry: {e}",
                details={"version": version_str},
            ) from e

    async def latest(self, channel: str = STABLE_CHANNEL) -> Version:
        manifest = await self._fetch_manifest()
        entry = manifest.get(channel)
        if entry is None and channel == PRERELEASE_CHANNEL:
            entry = manifest.get(STABLE_CHANNEL)
        if entry is None:
            raise ResolutionError(
                f"Manifest has no entry for channel: {channel}",
                details={"url": self.manifest_url, "channel": channel},
            )
        return self._entry_to_version(entry)

    async def get(self, version: str) -> Version:
        version = strip_tag_prefix(version)
        manifest = await self._fetch_manifest()

        entry = (manifest.get("versions") or {}).get(version)
        if entry is not None:
            return self._entry_to_version(entry, version=version)

        for channel in (STABLE_CHANNEL, PRERELEASE_CHANNEL):
            channel_entry = manifest.get(channel)
            if (
                isinstance(channel_entry, dict)
                and channel_entry.get("version")
                and strip_tag_prefix(str(channel_entry["version"])) == version
            ):
                return self._entry_to_version(channel_entry)

        raise ResolutionError(
            f"Version {version} is not published in the manifest",
            details={"url": self.manifest_url, "version": version},
        )
