"""
Version resolver: installed version versus the version to install.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from runner_updater.errors import ResolutionError
from runner_updater.logging import get_logger
from runner_updater.sources import STABLE_CHANNEL, strip_tag_prefix
from runner_updater.version import PackageLocator, Version, parse_semantic_version

if TYPE_CHECKING:
    from runner_updater.agent import AgentProbe
    from runner_updater.sources import VersionSource
    from runner_updater.version import VersionManager

logger = get_logger(__name__)


@dataclass
class Resolution:
    """
    Result of version resolution.

    Attributes:
        current: Installed version.
        target: Version to install, with its package locator.
        already_current: True when no update is needed.
    """

    current: Version
    target: Version
    already_current: bool

    @property
    def package(self) -> PackageLocator | None:
        return self.target.package


class VersionResolver:
    """
    Determines the installed version and the version to install.

    The installed version comes from version.json. When the file does not
    exist yet (first run against an existing runner), the agent probe is
    asked and its answer becomes the initial version.json.

    Attributes:
        source: Version source to query.
        version_manager: version.json manager.
        probe: Agent probe used when version.json is missing.
        channel: Release channel for unrequested updates.
    """

    def __init__(
        self,
        source: VersionSource,
        version_manager: VersionManager,
        probe: AgentProbe | None = None,
        channel: str = STABLE_CHANNEL,
    ) -> None:
        self.source = source
        self.version_manager = version_manager
        self.probe = probe
        self.channel = channel

    async def current_version(self) -> str:
        """
        Get the installed runner version.

        Raises:
            ResolutionError: If the installed version cannot be determined.
        """
        if self.version_manager.exists():
            try:
                return self.version_manager.load().current
            except RuntimeError as e:
                raise ResolutionError(
                    "Installed version metadata is unreadable",
                    details={"path": str(self.version_manager.version_file)},
                ) from e

        version = await self.probe.running_version() if self.probe else None
        if version is None:
            raise ResolutionError(
                "Cannot determine the installed runner version",
                details={"path": str(self.version_manager.version_file)},
            )

        logger.info(
            "No version metadata found, recording probed version",
            extra={"version": version},
        )
        self.version_manager.create_initial_version(version, source="probe")
        return version

    async def resolve(
        self,
        requested_version: str | None = None,
        force: bool = False,
    ) -> Resolution:
        """
        Resolve the update target.

        Args:
            requested_version: Explicit version to install; newest in the
                channel when omitted.
            force: Install even when the target is not newer.

        Returns:
            Resolution; already_current is set when target <= current and
            the update is not forced.

        Raises:
            ResolutionError: If the source cannot answer.
            InvalidArgumentError: If requested_version is malformed.
        """
        current = Version(version=await self.current_version())

        if requested_version:
            requested = strip_tag_prefix(requested_version)
            parse_semantic_version(requested)
            target = await self.source.get(requested)
        else:
            target = await self.source.latest(self.channel)

        already_current = not force and target <= current

        logger.info(
            "Version resolved",
            extra={
                "current_version": current.version,
                "target_version": target.version,
                "already_current": already_current,
                "forced": force,
            },
        )

        return Resolution(current=current, target=target, already_current=already_current)
