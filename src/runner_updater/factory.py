"""
Wiring of updater components from configuration.
"""

from __future__ import annotations

from pathlib import Path

from runner_updater.agent import RunnerAgentProbe
from runner_updater.backup import BackupManager
from runner_updater.config import AppConfig, load_config
from runner_updater.drain import DrainController
from runner_updater.installer import HttpPackageFetcher, Installer, StandardArchiveExtractor
from runner_updater.logging import get_logger, setup_logging
from runner_updater.orchestrator import UpdateOptions, UpdateOrchestrator, UpdateReport
from runner_updater.resolver import VersionResolver
from runner_updater.rollback import RollbackManager
from runner_updater.service import (
    LaunchdServiceController,
    ProcessServiceController,
    ServiceController,
    SystemdServiceController,
)
from runner_updater.session import SessionStore
from runner_updater.sources import GitHubReleasesSource, ManifestVersionSource, VersionSource
from runner_updater.version import VersionManager

logger = get_logger(__name__)


def build_version_source(config: AppConfig) -> VersionSource:
    """Create the configured version source."""
    source = config.source
    if source.kind == "manifest":
        return ManifestVersionSource(
            source.manifest_url,
            timeout=source.request_timeout_seconds,
        )
    return GitHubReleasesSource(
        repository=source.repository,
        api_url=source.api_url,
        runner_platform=source.platform,
        token=source.token,
        timeout=source.request_timeout_seconds,
    )


def build_service_controller(
    config: AppConfig,
    probe: RunnerAgentProbe,
) -> ServiceController:
    """Create the configured service controller."""
    runner = config.runner
    updates = config.updates
    common = {
        "health_check": probe.is_healthy,
        "poll_interval": updates.liveness_poll_interval_seconds,
        "stop_grace": updates.stop_grace_seconds,
    }

    if runner.service_manager == "launchd":
        return LaunchdServiceController(
            service_name=runner.service_name,
            install_dir=runner.install_dir,
            **common,
        )
    if runner.service_manager == "process":
        pid_file = runner.pid_file or str(updates.state_path / "runner.pid")
        return ProcessServiceController(
            install_dir=runner.install_dir,
            pid_file=pid_file,
            start_command=runner.start_command,
            **common,
        )
    return SystemdServiceController(
        service_name=runner.service_name,
        install_dir=runner.install_dir,
        **common,
    )


def build_orchestrator(config: AppConfig) -> UpdateOrchestrator:
    """
    Create an UpdateOrchestrator with concrete components.

    Args:
        config: Application configuration.

    Returns:
        Ready-to-run orchestrator.
    """
    runner = config.runner
    updates = config.updates
    install_dir = Path(runner.install_dir)

    probe = RunnerAgentProbe(
        install_dir,
        listener_binary=runner.listener_binary,
        listener_process_name=runner.listener_process_name,
        worker_process_name=runner.worker_process_name,
    )
    version_manager = VersionManager(updates.version_file, updates.version_backup_file)
    resolver = VersionResolver(
        build_version_source(config),
        version_manager,
        probe=probe,
        channel=config.source.channel,
    )
    backup_manager = BackupManager(
        install_dir,
        updates.snapshot_dir,
        updates.stateful_files,
        retention=updates.snapshot_retention,
    )
    installer = Installer(
        install_dir,
        updates.staging_dir,
        updates.previous_dir,
        fetcher=HttpPackageFetcher(token=config.source.token),
        extractor=StandardArchiveExtractor(),
        backup_manager=backup_manager,
        stateful_paths=[f.path for f in updates.stateful_files],
        preserved_entries=updates.preserved_entries,
        required_entries=updates.required_entries,
    )
    service = build_service_controller(config, probe)

    return UpdateOrchestrator(
        resolver=resolver,
        drain_controller=DrainController(
            probe,
            poll_interval=updates.drain_poll_interval_seconds,
        ),
        backup_manager=backup_manager,
        installer=installer,
        service=service,
        rollback_manager=RollbackManager(
            service,
            backup_manager,
            installer,
            probe=probe,
            liveness_timeout=updates.liveness_timeout_seconds,
        ),
        store=SessionStore(
            updates.session_file,
            stale_after_seconds=updates.session_stale_after_seconds,
        ),
        version_manager=version_manager,
        probe=probe,
        drain_timeout=updates.drain_timeout_seconds,
        liveness_timeout=updates.liveness_timeout_seconds,
    )


async def run_update(
    options: UpdateOptions | None = None,
    config: AppConfig | None = None,
) -> UpdateReport:
    """
    Load configuration, set up logging and run one update.

    SIGINT and SIGTERM cancel the update while it runs.
    """
    config = config or load_config()
    setup_logging(config.logging)

    orchestrator = build_orchestrator(config)
    orchestrator.install_signal_handlers()
    try:
        report = await orchestrator.run(options)
    finally:
        orchestrator.remove_signal_handlers()

    logger.info("Update report", extra={"report": report.to_dict()})
    return report
