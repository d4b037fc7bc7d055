"""
Update orchestrator for the self-hosted runner.

This module implements the UpdateOrchestrator class that sequences a runner
update through the installation state machine:

    idle → checking_version → draining → backing_up → installing
         → verifying → complete

with rollback (rolling_back → failed) whenever installing or verifying fails
after the installation was mutated.

Error propagation:
- Failures before the installation is mutated are raised to the caller
  after the session is returned to idle and the runner restarted.
- Failures after mutation trigger rollback; run() returns an UpdateReport
  with outcome "rolled_back" carrying the original error.
- A failed rollback raises FatalRollbackError carrying the report. The
  session marker is kept so later runs refuse to start until reset().
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from runner_updater.drain import DrainOutcome
from runner_updater.errors import (
    DrainTimeoutError,
    FatalRollbackError,
    PartialInstallError,
    ServiceStartFailure,
    SessionInProgressError,
    UpdateCancelledError,
    UpdateError,
)
from runner_updater.logging import get_logger
from runner_updater.session import (
    MUTATING_STATES,
    InstallationState,
    UpdateSession,
)
from runner_updater.version import compare_versions

if TYPE_CHECKING:
    from runner_updater.agent import AgentProbe
    from runner_updater.backup import BackupManager, Snapshot
    from runner_updater.drain import DrainController
    from runner_updater.installer import Installer
    from runner_updater.resolver import Resolution, VersionResolver
    from runner_updater.rollback import RollbackManager
    from runner_updater.service import ServiceController
    from runner_updater.session import SessionStore
    from runner_updater.version import VersionManager

logger = get_logger(__name__)


class UpdateOptions(BaseModel):
    """
    Options of one update invocation.

    Attributes:
        target_version: Explicit version to install (newest when None).
        force: Install even if not newer; proceed after a drain timeout.
        skip_backup: Do not snapshot stateful files.
        max_wait_seconds: Drain timeout override.
        dry_run: Resolve and report planned actions without mutating.
    """

    target_version: str | None = Field(default=None)
    force: bool = Field(default=False)
    skip_backup: bool = Field(default=False)
    max_wait_seconds: float | None = Field(default=None, ge=0)
    dry_run: bool = Field(default=False)


class UpdateOutcome(str, Enum):
    """Final outcome of an update invocation."""

    COMPLETE = "complete"
    ALREADY_CURRENT = "already_current"
    DRY_RUN = "dry_run"
    ROLLED_BACK = "rolled_back"
    FATAL = "fatal"
    RECOVERED = "recovered"
    ABORTED = "aborted"


@dataclass
class UpdateReport:
    """
    Result of an update invocation or a crash recovery.

    Attributes:
        outcome: Final outcome.
        session: The session at the end of the run.
        error: Error that ended the update (rolled_back, fatal, recovered,
            aborted).
        rollback_error: Rollback failure (fatal only).
        planned_actions: Actions a dry run would take.
    """

    outcome: UpdateOutcome
    session: UpdateSession | None = None
    error: UpdateError | None = None
    rollback_error: UpdateError | None = None
    planned_actions: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.outcome in (
            UpdateOutcome.COMPLETE,
            UpdateOutcome.ALREADY_CURRENT,
            UpdateOutcome.DRY_RUN,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert the report to a dictionary for emission."""
        return {
            "outcome": self.outcome.value,
            "succeeded": self.succeeded,
            "session": self.session.model_dump(mode="json") if self.session else None,
            "error": self.error.to_dict() if self.error else None,
            "rollback_error": (
                self.rollback_error.to_dict() if self.rollback_error else None
            ),
            "planned_actions": list(self.planned_actions),
        }


class UpdateOrchestrator:
    """
    Sequences the update stages and owns the single update session.

    Attributes:
        resolver: Version resolver.
        drain_controller: Drain controller.
        backup_manager: Snapshot manager.
        installer: Binary installer.
        service: Service controller.
        rollback_manager: Rollback manager.
        store: Session marker store.
        version_manager: version.json manager.
        probe: Agent probe used to confirm the running version.
        drain_timeout: Default drain timeout in seconds.
        liveness_timeout: Seconds to wait for the new runner to be healthy.
    """

    def __init__(
        self,
        resolver: VersionResolver,
        drain_controller: DrainController,
        backup_manager: BackupManager,
        installer: Installer,
        service: ServiceController,
        rollback_manager: RollbackManager,
        store: SessionStore,
        version_manager: VersionManager,
        probe: AgentProbe | None = None,
        drain_timeout: float = 3600.0,
        liveness_timeout: float = 120.0,
    ) -> None:
        self.resolver = resolver
        self.drain_controller = drain_controller
        self.backup_manager = backup_manager
        self.installer = installer
        self.service = service
        self.rollback_manager = rollback_manager
        self.store = store
        self.version_manager = version_manager
        self.probe = probe
        self.drain_timeout = drain_timeout
        self.liveness_timeout = liveness_timeout

        self._session: UpdateSession | None = None
        self._cancel_event = asyncio.Event()

    @property
    def session(self) -> UpdateSession | None:
        """Get the session of the running update, if any."""
        return self._session

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel(self) -> None:
        """
        Request cancellation of the running update.

        Observed between stages and while polling. Before installing the
        update aborts to idle; from installing on it is rolled back.
        """
        logger.warning("Update cancellation requested")
        self._cancel_event.set()

    def install_signal_handlers(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        """Route SIGINT and SIGTERM to cancel()."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.cancel)

    def remove_signal_handlers(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        """Undo install_signal_handlers()."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    def _check_cancelled(self, stage: str) -> None:
        if self._cancel_event.is_set():
            raise UpdateCancelledError(
                f"Update cancelled before {stage}",
                details={"stage": stage},
            )

    # -------------------------------------------------------------------------
    # Session bookkeeping
    # -------------------------------------------------------------------------

    def _persist(self, session: UpdateSession) -> None:
        if not session.dry_run:
            self.store.save(session)

    def _transition_to(
        self,
        session: UpdateSession,
        new_state: InstallationState,
        detail: str | None = None,
    ) -> None:
        old_state = session.transition_to(new_state, detail)
        logger.info(
            f"State transition: {old_state.value} -> {new_state.value}",
            extra={
                "session_id": session.session_id,
                "old_state": old_state.value,
                "new_state": new_state.value,
                "target_version": session.target_version,
            },
        )
        self._persist(session)

    def _record(
        self,
        session: UpdateSession,
        stage: str,
        outcome: str,
        detail: str | None = None,
    ) -> None:
        session.record(stage, outcome, detail)
        self._persist(session)

    def _finish(self, report: UpdateReport, *, keep_marker: bool = False) -> UpdateReport:
        """Log the final report with its diagnostic trail and drop the session."""
        session = report.session
        log = logger.info if report.succeeded else logger.error
        log(
            f"Update finished: {report.outcome.value}",
            extra={
                "outcome": report.outcome.value,
                "session_id": session.session_id if session else None,
                "trail": (
                    [r.model_dump() for r in session.trail] if session else []
                ),
                "error": report.error.to_dict() if report.error else None,
                "rollback_error": (
                    report.rollback_error.to_dict() if report.rollback_error else None
                ),
            },
        )

        if session is not None and not session.dry_run:
            self._record_last_update(report)
            if not keep_marker:
                self.store.clear()

        self._session = None
        return report

    def _record_last_update(self, report: UpdateReport) -> None:
        session = report.session
        if session is None or not self.version_manager.exists():
            return
        message = report.error.message if report.error else None
        try:
            if self.version_manager.version_info is None:
                self.version_manager.load()
            self.version_manager.record_update_result(
                report.outcome.value,
                old_version=session.previous_version,
                new_version=session.target_version,
                message=message,
            )
        except (OSError, RuntimeError) as e:
            logger.warning(
                "Could not record update result",
                extra={"error": str(e)},
            )

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    async def run(self, options: UpdateOptions | None = None) -> UpdateReport:
        """
        Run one update.

        Args:
            options: Invocation options.

        Returns:
            UpdateReport with outcome complete, already_current, dry_run or
            rolled_back.

        Raises:
            SessionInProgressError: If another session is active.
            FatalRollbackError: If rollback failed, now or in an earlier run.
            UpdateError: Any failure before the installation was mutated.
        """
        options = options or UpdateOptions()
        self._cancel_event.clear()

        await self.recover()

        session = UpdateSession(forced=options.force, dry_run=options.dry_run)
        if options.dry_run:
            if self.store.exists():
                raise SessionInProgressError(
                    "Another update session is in progress",
                    details={"marker": str(self.store.path)},
                )
        else:
            self.store.create(session)
        self._session = session

        logger.info(
            "Update session started",
            extra={
                "session_id": session.session_id,
                "options": options.model_dump(),
            },
        )

        try:
            resolution = await self._check_version(session, options)

            if resolution.already_current:
                self._transition_to(
                    session,
                    InstallationState.COMPLETE,
                    f"already at {resolution.current.version}",
                )
                return self._finish(
                    UpdateReport(outcome=UpdateOutcome.ALREADY_CURRENT, session=session)
                )

            if options.dry_run:
                self._transition_to(session, InstallationState.IDLE, "dry run")
                return self._finish(
                    UpdateReport(
                        outcome=UpdateOutcome.DRY_RUN,
                        session=session,
                        planned_actions=self._planned_actions(
                            session, options, resolution
                        ),
                    )
                )

            await self._drain(session, options)
            snapshot = await self._back_up(session, options)

            self._check_cancelled("installing")
            self._transition_to(session, InstallationState.INSTALLING)
            result = await self.installer.install(
                resolution.target,
                preserve=snapshot,
                cancel_event=self._cancel_event,
            )
            if result.mutated:
                session.binaries_replaced = True
            self._record(
                session,
                "installing",
                "installed" if result.success else "failed",
                result.error.message if result.error else f"{result.staged_files} entries",
            )
            if not result.success and not result.mutated:
                raise result.error or PartialInstallError("Install failed")

        except UpdateError as e:
            await self._abort(session, e)
            raise

        try:
            if not result.success:
                raise result.error or PartialInstallError(
                    "Install failed after mutation began"
                )
            self._check_cancelled("verifying")
            await self._verify(session)
        except UpdateError as e:
            return await self._roll_back(session, e)

        self._transition_to(session, InstallationState.COMPLETE)
        self._finalize_complete(session)
        return self._finish(UpdateReport(outcome=UpdateOutcome.COMPLETE, session=session))

    async def _check_version(
        self,
        session: UpdateSession,
        options: UpdateOptions,
    ) -> Resolution:
        self._transition_to(session, InstallationState.CHECKING_VERSION)
        resolution = await self.resolver.resolve(
            options.target_version,
            force=options.force,
        )
        session.previous_version = resolution.current.version
        session.target_version = resolution.target.version
        self._record(
            session,
            "checking_version",
            "resolved",
            f"{resolution.current.version} -> {resolution.target.version}",
        )
        return resolution

    def _max_wait(self, options: UpdateOptions) -> float:
        if options.max_wait_seconds is not None:
            return options.max_wait_seconds
        return self.drain_timeout

    async def _drain(self, session: UpdateSession, options: UpdateOptions) -> None:
        self._check_cancelled("draining")
        self._transition_to(session, InstallationState.DRAINING)

        max_wait = self._max_wait(options)
        outcome = await self.drain_controller.drain(max_wait, self._cancel_event)
        self._record(session, "draining", outcome.value)

        if outcome == DrainOutcome.TIMED_OUT:
            if not options.force:
                raise DrainTimeoutError(
                    f"Runner still busy after {max_wait:g}s",
                    details={"max_wait_seconds": max_wait},
                )
            logger.warning(
                "Drain timed out, proceeding because the update is forced",
                extra={"session_id": session.session_id, "max_wait_seconds": max_wait},
            )

    async def _back_up(
        self,
        session: UpdateSession,
        options: UpdateOptions,
    ) -> Snapshot | None:
        self._check_cancelled("backing_up")
        self._transition_to(session, InstallationState.BACKING_UP)

        await self.service.stop()
        session.service_stopped = True
        self._record(session, "backing_up", "service_stopped")

        if options.skip_backup:
            self._record(session, "backing_up", "skipped")
            return None

        snapshot = self.backup_manager.create_snapshot()
        session.snapshot_id = snapshot.snapshot_id
        self._record(session, "backing_up", "snapshot_created", snapshot.snapshot_id)
        return snapshot

    async def _abort(self, session: UpdateSession, error: UpdateError) -> None:
        """Return a session that failed before mutation to idle."""
        logger.error(
            f"Update aborted: {error.message}",
            extra={
                "session_id": session.session_id,
                "state": session.state.value,
                "error": error.to_dict(),
            },
        )
        session.error = error.to_dict()

        if session.service_stopped:
            try:
                await self.service.start()
                self._record(session, "abort", "service_restarted")
            except UpdateError as start_error:
                logger.error(
                    "Could not restart runner after aborted update",
                    extra={"error": start_error.to_dict()},
                )
                self._record(
                    session, "abort", "service_restart_failed", start_error.message
                )

        if session.state != InstallationState.IDLE:
            self._transition_to(session, InstallationState.IDLE, error.error_code)

        self._finish(
            UpdateReport(outcome=UpdateOutcome.ABORTED, session=session, error=error)
        )

    def _planned_actions(
        self,
        session: UpdateSession,
        options: UpdateOptions,
        resolution: Resolution,
    ) -> list[str]:
        max_wait = self._max_wait(options)
        actions = [
            f"drain runner jobs (max wait {max_wait:g}s"
            + (", then proceed anyway)" if options.force else ")"),
            "stop runner service",
        ]
        if options.skip_backup:
            actions.append("skip backup of stateful files")
        else:
            files = ", ".join(f.path for f in self.backup_manager.stateful_files)
            actions.append(f"snapshot stateful files ({files})")

        package = resolution.package
        if package is not None:
            actions.append(f"download {package.url}")
            if package.sha256:
                actions.append(f"verify sha256 {package.sha256}")
        actions.extend(
            [
                f"replace runner binaries in {self.installer.install_dir}",
                "start runner service",
                f"verify runner is healthy on {session.target_version} "
                f"within {self.liveness_timeout:g}s",
            ]
        )
        return actions

    async def _verify(self, session: UpdateSession) -> None:
        self._transition_to(session, InstallationState.VERIFYING)
        await self.service.start()
        self._record(session, "verifying", "service_started")

        live = await self.service.wait_for_liveness(
            self.liveness_timeout,
            cancel_event=self._cancel_event,
        )
        if not live:
            raise ServiceStartFailure(
                f"Runner did not become healthy within {self.liveness_timeout:g}s",
                details={"timeout_seconds": self.liveness_timeout},
            )

        if self.probe is not None and session.target_version:
            running = await self.probe.running_version()
            if running is None or compare_versions(running, session.target_version) != 0:
                raise ServiceStartFailure(
                    f"Runner reports version {running}, expected {session.target_version}",
                    details={
                        "running_version": running,
                        "expected_version": session.target_version,
                    },
                )
        self._record(session, "verifying", "healthy")

    def _finalize_complete(self, session: UpdateSession) -> None:
        """Record the new version and drop the replaced binaries."""
        if session.target_version:
            if self.version_manager.version_info is None:
                self.version_manager.load()
            if self.version_manager.get_current_version() != session.target_version:
                self.version_manager.update_version(
                    session.target_version,
                    source=getattr(self.resolver.source, "name", "unknown"),
                )
        self.installer.discard_previous()

    async def _roll_back(self, session: UpdateSession, error: UpdateError) -> UpdateReport:
        """Roll back a mutated installation."""
        logger.error(
            f"Update failed after mutation: {error.message}",
            extra={"session_id": session.session_id, "error": error.to_dict()},
        )
        session.error = error.to_dict()
        if session.state != InstallationState.ROLLING_BACK:
            self._transition_to(session, InstallationState.ROLLING_BACK, error.error_code)

        try:
            await self.rollback_manager.rollback(session, checkpoint=self._persist)
        except FatalRollbackError as fatal:
            session.requires_intervention = True
            self._transition_to(session, InstallationState.FAILED, fatal.error_code)
            fatal.details["original_error"] = error.to_dict()
            report = UpdateReport(
                outcome=UpdateOutcome.FATAL,
                session=session,
                error=error,
                rollback_error=fatal,
            )
            fatal.report = report
            self._finish(report, keep_marker=True)
            raise

        self._transition_to(session, InstallationState.FAILED, "rolled back")
        return self._finish(
            UpdateReport(outcome=UpdateOutcome.ROLLED_BACK, session=session, error=error)
        )

    # -------------------------------------------------------------------------
    # Recovery and administration
    # -------------------------------------------------------------------------

    async def recover(self) -> UpdateReport | None:
        """
        Recover a session left behind by a crashed run.

        Returns:
            A report with outcome "recovered", or None if there was nothing
            to recover. Its error is set when a mutated installation had to
            be rolled back.

        Raises:
            FatalRollbackError: If an earlier rollback failed, or rolling
                back the crashed session fails.
            SessionInProgressError: If the marker belongs to a live session.
        """
        try:
            existing = self.store.load()
        except ValueError as e:
            age = self.store.marker_age_seconds()
            if age is not None and age <= self.store.stale_after_seconds:
                raise SessionInProgressError(
                    "Session marker is unreadable and may belong to a live session",
                    details={
                        "marker": str(self.store.path),
                        "age_seconds": round(age, 1),
                        "error": str(e),
                        "hint": "Call reset() if no update is running",
                    },
                ) from e
            logger.error(
                "Stale session marker unreadable, discarding it",
                extra={"path": str(self.store.path), "error": str(e)},
            )
            self.store.clear()
            return None

        if existing is None:
            return None

        if existing.requires_intervention:
            raise FatalRollbackError(
                "A previous rollback failed; the runner requires manual intervention",
                details={
                    "session_id": existing.session_id,
                    "error": existing.error,
                    "hint": "Repair the installation, then call reset()",
                },
            )

        if not self.store.is_stale(existing):
            raise SessionInProgressError(
                "Another update session is in progress",
                details={
                    "session_id": existing.session_id,
                    "state": existing.state.value,
                    "pid": existing.pid,
                    "started_at": existing.started_at,
                },
            )

        logger.warning(
            "Recovering stale update session",
            extra={
                "session_id": existing.session_id,
                "state": existing.state.value,
                "pid": existing.pid,
            },
        )
        existing.record("recovery", "started", existing.state.value)

        if existing.state in MUTATING_STATES:
            self._session = existing
            error = PartialInstallError(
                "Update interrupted while the installation was being modified",
                details={
                    "session_id": existing.session_id,
                    "state": existing.state.value,
                },
            )
            report = await self._roll_back(existing, error)
            report.outcome = UpdateOutcome.RECOVERED
            return report

        if existing.state == InstallationState.COMPLETE:
            self._finalize_complete(existing)
        elif existing.service_stopped:
            try:
                await self.service.start()
                existing.record("recovery", "service_restarted")
            except UpdateError as e:
                logger.error(
                    "Could not restart runner during recovery",
                    extra={"error": e.to_dict()},
                )
                existing.record("recovery", "service_restart_failed", e.message)

        self.store.clear()
        logger.info(
            "Stale session discarded",
            extra={
                "session_id": existing.session_id,
                "trail": [r.model_dump() for r in existing.trail],
            },
        )
        return UpdateReport(outcome=UpdateOutcome.RECOVERED, session=existing)

    def reset(self) -> bool:
        """
        Clear a session marker left for manual intervention.

        Returns:
            True if a marker was removed.

        Raises:
            SessionInProgressError: If the marker belongs to a live session.
        """
        try:
            existing = self.store.load()
        except ValueError:
            self.store.clear()
            return True

        if existing is None:
            return False

        if not existing.requires_intervention and not self.store.is_stale(existing):
            raise SessionInProgressError(
                "Refusing to reset a live update session",
                details={"session_id": existing.session_id, "pid": existing.pid},
            )

        self.store.clear()
        logger.warning(
            "Update session reset",
            extra={
                "session_id": existing.session_id,
                "state": existing.state.value,
                "requires_intervention": existing.requires_intervention,
            },
        )
        return True

    def get_status(self) -> dict[str, Any]:
        """
        Get the updater status.

        Returns:
            Dictionary with the session state, installed version info and
            the newest snapshot id.
        """
        session = self._session
        marker_error: str | None = None
        if session is None:
            try:
                session = self.store.load()
            except ValueError as e:
                marker_error = str(e)

        version_info: dict[str, Any] = {}
        if self.version_manager.exists():
            try:
                self.version_manager.load()
                version_info = self.version_manager.to_dict()
            except RuntimeError as e:
                version_info = {"error": str(e)}

        latest = self.backup_manager.latest_snapshot()

        status: dict[str, Any] = {
            "state": session.state.value if session else InstallationState.IDLE.value,
            "in_progress": session is not None,
            "requires_intervention": bool(session and session.requires_intervention),
            "session": session.model_dump(mode="json") if session else None,
            "current_version": version_info.get("current"),
            "previous_version": version_info.get("previous"),
            "last_update": version_info.get("last_update"),
            "latest_snapshot": latest.snapshot_id if latest else None,
        }
        if marker_error:
            status["marker_error"] = marker_error
        return status
