"""
Error types for the runner updater.

This module defines the UpdateError base class and the subclasses that make up
the update error taxonomy. Every failure an update stage can report is one of
these types, so callers can tell pre-mutation aborts apart from failures that
require (or defeated) a rollback.

Pre-mutation errors (safe to abort, nothing changed on disk):
- ResolutionError, SessionInProgressError, DrainTimeoutError, BackupError,
  DownloadError, IntegrityError, ExtractionError, UpdateCancelledError

Post-mutation errors (rollback required):
- PartialInstallError, ServiceStartFailure

Unrecoverable:
- FatalRollbackError
"""

from __future__ import annotations

from typing import Any


class UpdateError(Exception):
    """
    Base exception class for update errors.

    Attributes:
        error_code: Internal error code string (e.g., "resolution_failed",
            "backup_failed", "fatal_rollback").
        message: Human-readable error message.
        details: Optional structured details (e.g., paths, versions).
        requires_rollback: Whether the error was raised after the
            installation was mutated.

    Example:
        >>> raise UpdateError(
        ...     error_code="invalid_argument",
        ...     message="Version string cannot be empty",
        ...     details={"version": ""},
        ... )
    """

    requires_rollback: bool = False

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an UpdateError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(UpdateError):
    """Error raised for invalid input such as a malformed version string."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class FailedPreconditionError(UpdateError):
    """
    Error raised when a precondition for the operation is not met.

    Used for misconfiguration (e.g. no service name can be determined) and
    for hosts left in a state that needs manual intervention.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class ResolutionError(UpdateError):
    """
    Error raised when the version source is unreachable or returns
    malformed metadata.

    Not retried within the orchestrator; the caller may retry the whole
    command later.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ResolutionError."""
        super().__init__(
            error_code="resolution_failed", message=message, details=details
        )


class SessionInProgressError(UpdateError):
    """Error raised when another update session is active on this host."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a SessionInProgressError."""
        super().__init__(
            error_code="session_in_progress", message=message, details=details
        )


class DrainTimeoutError(UpdateError):
    """Error raised when the agent stayed busy past max wait and the update was not forced."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a DrainTimeoutError."""
        super().__init__(error_code="drain_timeout", message=message, details=details)


class BackupError(UpdateError):
    """Error raised when a snapshot cannot be created or read back."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a BackupError."""
        super().__init__(error_code="backup_failed", message=message, details=details)


class DownloadError(UpdateError):
    """Error raised when the package cannot be downloaded."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a DownloadError."""
        super().__init__(
            error_code="download_failed", message=message, details=details
        )


class IntegrityError(UpdateError):
    """Error raised when a downloaded package fails its size or hash check."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an IntegrityError."""
        super().__init__(
            error_code="integrity_failed", message=message, details=details
        )


class ExtractionError(UpdateError):
    """Error raised when the package archive is malformed or incomplete."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an ExtractionError."""
        super().__init__(
            error_code="extraction_failed", message=message, details=details
        )


class PartialInstallError(UpdateError):
    """
    Error raised when the remove/replace step was interrupted mid-way.

    The live installation is in a mixed state; rollback is required.
    """

    requires_rollback = True

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PartialInstallError."""
        super().__init__(
            error_code="partial_install", message=message, details=details
        )


class ServiceStartFailure(UpdateError):
    """Error raised when the agent never became live on the new version."""

    requires_rollback = True

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ServiceStartFailure."""
        super().__init__(
            error_code="service_start_failed", message=message, details=details
        )


class UpdateCancelledError(UpdateError):
    """Error raised when an operator cancelled the update between stages."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UpdateCancelledError."""
        super().__init__(error_code="cancelled", message=message, details=details)


class FatalRollbackError(UpdateError):
    """
    Error raised when rollback itself failed.

    This is the one unrecoverable outcome: the host needs manual
    intervention and no further automatic recovery is attempted.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FatalRollbackError."""
        super().__init__(
            error_code="fatal_rollback", message=message, details=details
        )
        self.report: Any = None
