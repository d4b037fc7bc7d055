"""
Rollback of a failed runner update.

Rollback restores the binaries replaced by the installer and the stateful
files captured in the session's snapshot, then brings the runner back up on
its previous version.

Rollback is attempted once. Any failure is reported as FatalRollbackError
and the host is left for manual intervention.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from runner_updater.errors import (
    FailedPreconditionError,
    FatalRollbackError,
    ServiceStartFailure,
    UpdateError,
)
from runner_updater.logging import get_logger
from runner_updater.version import compare_versions

if TYPE_CHECKING:
    from collections.abc import Callable

    from runner_updater.agent import AgentProbe
    from runner_updater.backup import BackupManager
    from runner_updater.installer import Installer
    from runner_updater.service import ServiceController
    from runner_updater.session import UpdateSession

logger = get_logger(__name__)


class RollbackManager:
    """
    Restores the last known good installation.

    Attributes:
        service: Service controller.
        backup_manager: Snapshot manager.
        installer: Installer holding the previous binaries.
        probe: Optional probe used to confirm the restored version.
        liveness_timeout: Seconds to wait for the restored runner.
    """

    def __init__(
        self,
        service: ServiceController,
        backup_manager: BackupManager,
        installer: Installer,
        probe: AgentProbe | None = None,
        liveness_timeout: float = 120.0,
    ) -> None:
        self.service = service
        self.backup_manager = backup_manager
        self.installer = installer
        self.probe = probe
        self.liveness_timeout = liveness_timeout

    async def _verify_version(self, expected: str) -> None:
        if self.probe is None:
            return
        running = await self.probe.running_version()
        if running is None:
            logger.warning(
                "Could not determine restored runner version",
                extra={"expected_version": expected},
            )
            return
        if compare_versions(running, expected) != 0:
            raise ServiceStartFailure(
                f"Restored runner reports {running}, expected {expected}",
                details={"running_version": running, "expected_version": expected},
            )

    async def rollback(
        self,
        session: UpdateSession,
        checkpoint: Callable[[UpdateSession], None] | None = None,
    ) -> None:
        """
        Roll back the installation touched by a session.

        Sequence: stop, restore snapshot, restore previous binaries, start,
        wait for liveness, confirm the running version. Missing previous
        binaries are fatal once the session has replaced them.

        Args:
            session: Session being rolled back.
            checkpoint: Called to persist the session once its binaries are
                restored.

        Raises:
            FatalRollbackError: If any step fails.
        """
        logger.warning(
            "Starting rollback",
            extra={
                "session_id": session.session_id,
                "previous_version": session.previous_version,
                "target_version": session.target_version,
                "snapshot_id": session.snapshot_id,
            },
        )

        step = "stop"
        try:
            await self.service.stop()

            step = "restore_snapshot"
            if session.snapshot_id:
                snapshot = self.backup_manager.get_snapshot(session.snapshot_id)
                self.backup_manager.restore(snapshot)
            else:
                logger.warning(
                    "No snapshot recorded for session, stateful files not restored",
                    extra={"session_id": session.session_id},
                )

            step = "restore_binaries"
            if self.installer.restore_previous():
                session.binaries_replaced = False
                session.record("rolling_back", "binaries_restored")
                if checkpoint is not None:
                    checkpoint(session)
            elif session.binaries_replaced:
                raise FailedPreconditionError(
                    "Previous binaries are missing; the new version is still installed",
                    details={"previous_dir": str(self.installer.previous_dir)},
                )
            else:
                logger.info(
                    "No binaries were replaced, nothing to restore",
                    extra={"session_id": session.session_id},
                )

            step = "start"
            await self.service.start()

            step = "liveness"
            if not await self.service.wait_for_liveness(self.liveness_timeout):
                raise ServiceStartFailure(
                    "Runner did not become healthy after rollback",
                    details={"timeout_seconds": self.liveness_timeout},
                )

            step = "verify_version"
            if session.previous_version:
                await self._verify_version(session.previous_version)

        except (UpdateError, OSError, ValueError) as e:
            logger.critical(
                "Rollback failed, manual intervention required",
                extra={
                    "session_id": session.session_id,
                    "step": step,
                    "error": str(e),
                },
            )
            details: dict[str, Any] = {"step": step, "session_id": session.session_id}
            if isinstance(e, UpdateError):
                details["cause"] = e.to_dict()
            else:
                details["cause"] = {"message": str(e)}
            raise FatalRollbackError(
                f"Rollback failed at step '{step}': {e}",
                details=details,
            ) from e

        logger.info(
            "Rollback completed",
            extra={
                "session_id": session.session_id,
                "restored_version": session.previous_version,
            },
        )
