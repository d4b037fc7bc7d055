"""
Update session record and its on-disk marker.

One update session may exist per host. The session is persisted to the
marker file on every state transition so a crashed update can be found and
recovered by the next invocation.

Installation states:
- idle: No update in progress
- checking_version: Resolving installed and target versions
- draining: Waiting for the in-flight job to finish
- backing_up: Runner stopped, snapshot of stateful files being taken
- installing: Replacing runner binaries
- verifying: Waiting for the new runner to become healthy
- rolling_back: Restoring the previous binaries and configuration
- complete: Update finished (or runner already current)
- failed: Update failed and was rolled back
"""

from __future__ import annotations

import json
import os
import socket
import uuid
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import psutil
from pydantic import BaseModel, Field

from runner_updater.errors import InvalidArgumentError, SessionInProgressError
from runner_updater.logging import get_logger

logger = get_logger(__name__)


class InstallationState(str, Enum):
    """
    States of an update session.

    State transitions:
    - idle → checking_version (session created)
    - checking_version → draining (newer version, or forced)
    - checking_version → complete (already current)
    - checking_version → idle (resolution failed, dry run)
    - draining → backing_up (idle, or timed out and forced)
    - draining → idle (unforced timeout, cancellation)
    - backing_up → installing (snapshot taken or backup skipped)
    - backing_up → idle (backup failed, cancellation)
    - installing → verifying (binaries replaced)
    - installing → rolling_back (failure after mutation)
    - installing → idle (failure before mutation)
    - verifying → complete (healthy on target version)
    - verifying → rolling_back (not healthy)
    - rolling_back → failed
    - complete, failed → checking_version (next session)
    """

    IDLE = "idle"
    CHECKING_VERSION = "checking_version"
    DRAINING = "draining"
    BACKING_UP = "backing_up"
    INSTALLING = "installing"
    VERIFYING = "verifying"
    ROLLING_BACK = "rolling_back"
    COMPLETE = "complete"
    FAILED = "failed"


_VALID_TRANSITIONS: dict[InstallationState, set[InstallationState]] = {
    InstallationState.IDLE: {InstallationState.CHECKING_VERSION},
    InstallationState.CHECKING_VERSION: {
        InstallationState.DRAINING,
        InstallationState.COMPLETE,
        InstallationState.IDLE,
    },
    InstallationState.DRAINING: {
        InstallationState.BACKING_UP,
        InstallationState.IDLE,
    },
    InstallationState.BACKING_UP: {
        InstallationState.INSTALLING,
        InstallationState.IDLE,
    },
    InstallationState.INSTALLING: {
        InstallationState.VERIFYING,
        InstallationState.ROLLING_BACK,
        InstallationState.IDLE,
    },
    InstallationState.VERIFYING: {
        InstallationState.COMPLETE,
        InstallationState.ROLLING_BACK,
    },
    InstallationState.ROLLING_BACK: {InstallationState.FAILED},
    InstallationState.COMPLETE: {InstallationState.CHECKING_VERSION},
    InstallationState.FAILED: {InstallationState.CHECKING_VERSION},
}

# States whose crash leaves a mutated installation behind
MUTATING_STATES = frozenset(
    {
        InstallationState.INSTALLING,
        InstallationState.VERIFYING,
        InstallationState.ROLLING_BACK,
    }
)


def valid_transitions(state: InstallationState) -> set[InstallationState]:
    """Get the states reachable from a state."""
    return set(_VALID_TRANSITIONS.get(state, set()))


def _now() -> str:
    return datetime.now(UTC).isoformat()


class StageRecord(BaseModel):
    """One entry of a session's diagnostic trail."""

    stage: str = Field(..., description="Stage or state name")
    outcome: str = Field(..., description="What happened")
    detail: str | None = Field(default=None, description="Optional detail")
    timestamp: str = Field(default_factory=_now, description="ISO 8601 timestamp")


class UpdateSession(BaseModel):
    """
    The mutable record of one update attempt.

    Attributes:
        session_id: Unique session identifier.
        state: Current installation state.
        target_version: Version being installed.
        previous_version: Version installed when the session began.
        started_at: ISO 8601 start timestamp.
        last_transition_at: ISO 8601 timestamp of the last transition.
        trail: Ordered diagnostic trail.
        snapshot_id: Backup snapshot taken for this session.
        service_stopped: Whether the runner was stopped by this session.
        binaries_replaced: Whether the installer moved binaries that rollback
            has not yet put back.
        pid: Owning process id.
        hostname: Owning host.
        forced: Whether the update was forced.
        dry_run: Whether this is a dry run (never persisted).
        requires_intervention: Set when rollback failed.
        error: Serialized error that ended the session.
    """

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    state: InstallationState = Field(default=InstallationState.IDLE)
    target_version: str | None = Field(default=None)
    previous_version: str | None = Field(default=None)
    started_at: str = Field(default_factory=_now)
    last_transition_at: str | None = Field(default=None)
    trail: list[StageRecord] = Field(default_factory=list)
    snapshot_id: str | None = Field(default=None)
    service_stopped: bool = Field(default=False)
    binaries_replaced: bool = Field(default=False)
    pid: int = Field(default_factory=os.getpid)
    hostname: str = Field(default_factory=socket.gethostname)
    forced: bool = Field(default=False)
    dry_run: bool = Field(default=False)
    requires_intervention: bool = Field(default=False)
    error: dict[str, Any] | None = Field(default=None)

    def record(self, stage: str, outcome: str, detail: str | None = None) -> None:
        """Append an entry to the diagnostic trail."""
        self.trail.append(StageRecord(stage=stage, outcome=outcome, detail=detail))

    def transition_to(
        self,
        new_state: InstallationState,
        detail: str | None = None,
    ) -> InstallationState:
        """
        Move to a new state.

        Args:
            new_state: The state to transition to.
            detail: Optional detail for the trail.

        Returns:
            The previous state.

        Raises:
            InvalidArgumentError: If the transition is not valid.
        """
        current = self.state
        if new_state not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidArgumentError(
                f"Invalid state transition from {current.value} to {new_state.value}",
                details={
                    "current_state": current.value,
                    "target_state": new_state.value,
                    "valid_transitions": sorted(
                        s.value for s in _VALID_TRANSITIONS.get(current, set())
                    ),
                },
            )

        self.state = new_state
        self.last_transition_at = _now()
        self.record(new_state.value, "entered", detail)
        return current

    def age_seconds(self, now: datetime | None = None) -> float:
        """Seconds since the session started."""
        now = now or datetime.now(UTC)
        return (now - datetime.fromisoformat(self.started_at)).total_seconds()


class SessionStore:
    """
    Persists the session marker file.

    The marker is published exclusively and complete, so at most one session
    can own it; later writes replace it atomically.

    Attributes:
        path: Marker file path.
        stale_after_seconds: Age after which a marker is stale.
    """

    def __init__(
        self,
        path: Path | str,
        stale_after_seconds: float = 86400.0,
    ) -> None:
        self.path = Path(path)
        self.stale_after_seconds = stale_after_seconds

    def exists(self) -> bool:
        return self.path.exists()

    def _serialize(self, session: UpdateSession) -> bytes:
        return json.dumps(session.model_dump(mode="json"), indent=2).encode()

    def create(self, session: UpdateSession) -> None:
        """
        Create the marker for a new session.

        The record is written to a private temp file and then hard-linked
        into place, so the marker is never observed partially written.

        Raises:
            SessionInProgressError: If a marker already exists. The existing
                marker is left untouched.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.path.with_name(f"{self.path.name}.{session.session_id}.tmp")
        with open(temp_file, "wb") as f:
            f.write(self._serialize(session))
            f.flush()
            os.fsync(f.fileno())
        try:
            os.link(temp_file, self.path)
        except FileExistsError as e:
            details: dict[str, Any] = {"marker": str(self.path)}
            try:
                existing = self.load()
            except ValueError:
                existing = None
            if existing is not None:
                details.update(
                    session_id=existing.session_id,
                    state=existing.state.value,
                    pid=existing.pid,
                    started_at=existing.started_at,
                )
            raise SessionInProgressError(
                "Another update session is in progress",
                details=details,
            ) from e
        finally:
            temp_file.unlink(missing_ok=True)

        logger.debug(
            "Session marker created",
            extra={"session_id": session.session_id, "path": str(self.path)},
        )

    def save(self, session: UpdateSession) -> None:
        """Atomically replace the marker with the session's current state."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.path.with_suffix(".tmp")
        with open(temp_file, "wb") as f:
            f.write(self._serialize(session))
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_file, self.path)

    def load(self) -> UpdateSession | None:
        """
        Load the marker.

        Returns:
            The persisted session, or None if there is no marker.

        Raises:
            ValueError: If the marker is not a valid session record.
        """
        try:
            with open(self.path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        return UpdateSession.model_validate(data)

    def clear(self) -> None:
        """Remove the marker."""
        self.path.unlink(missing_ok=True)
        self.path.with_suffix(".tmp").unlink(missing_ok=True)

    def marker_age_seconds(self) -> float | None:
        """Seconds since the marker file was last written, or None if absent."""
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return None
        return max(0.0, datetime.now(UTC).timestamp() - mtime)

    def is_stale(self, session: UpdateSession, now: datetime | None = None) -> bool:
        """
        Check whether a marker's owner is gone.

        A marker is stale when its owning process is no longer alive or the
        session is older than stale_after_seconds.
        """
        if not psutil.pid_exists(session.pid):
            return True
        return session.age_seconds(now) > self.stale_after_seconds
