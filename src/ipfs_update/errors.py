"""
Error types for ipfs-update.

This module defines the UpdateError base class and one subclass per failure
condition of the update pipeline. Components raise these instead of returning
ad-hoc status values; the orchestrator decides which ones are soft (logged,
update continues) and which ones are hard (rollback, then surface).

The CLI maps any UpdateError to a non-zero exit status and prints its message
to standard error.
"""

from __future__ import annotations

from typing import Any


class UpdateError(Exception):
    """
    Base exception class for update errors.

    Attributes:
        error_code: Internal error code string (e.g., "transport_error",
            "downgrade_refused", "install_io_error").
        message: Human-readable error message.
        details: Optional structured details (e.g., paths, versions).
        retryable: Whether retrying the same operation may succeed.

    Example:
        >>> raise UpdateError(
        ...     error_code="install_io_error",
        ...     message="error moving new binary into place",
        ...     details={"dest": "/usr/local/bin/ipfs"},
        ... )
    """

    retryable: bool = False

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
            Dictionary with error_code, message, details and retryable.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class TransportError(UpdateError):
    """
    Error raised when fetching content over the network or daemon API fails.

    Transport errors are the only retryable errors.
    """

    retryable = True

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a TransportError."""
        super().__init__(error_code="transport_error", message=message, details=details)


class DecodeError(UpdateError):
    """Error raised when an archive or payload cannot be decoded."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a DecodeError."""
        super().__init__(error_code="decode_error", message=message, details=details)


class NoBinaryFoundError(UpdateError):
    """
    Error raised when a downloaded archive lacks the expected executable.

    This indicates a packaging problem upstream and is never retried.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a NoBinaryFoundError."""
        super().__init__(error_code="no_binary_found", message=message, details=details)


class NoPriorBinaryError(UpdateError):
    """
    Error raised when no installed binary can be found to stash or revert.

    The orchestrator treats this as a soft condition: a missing prior binary
    does not prevent installing a new one.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a NoPriorBinaryError."""
        super().__init__(error_code="no_prior_binary", message=message, details=details)


class DowngradeRefusedError(UpdateError):
    """Error raised when the target is older than the installed version."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a DowngradeRefusedError."""
        super().__init__(
            error_code="downgrade_refused", message=message, details=details
        )


class VerificationFailedError(UpdateError):
    """Error raised when a candidate binary fails its smoke test."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a VerificationFailedError."""
        super().__init__(
            error_code="verification_failed", message=message, details=details
        )


class MigrationQueryError(UpdateError):
    """
    Error raised when the new binary cannot report the repo version it expects.

    Soft: the user is advised to migrate manually.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a MigrationQueryError."""
        super().__init__(
            error_code="migration_query_failed", message=message, details=details
        )


class MigrationRunError(UpdateError):
    """Error raised when a required repo migration fails to run."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a MigrationRunError."""
        super().__init__(
            error_code="migration_run_failed", message=message, details=details
        )


class InstallIOError(UpdateError):
    """Error raised for permission or disk failures touching installed binaries."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InstallIOError."""
        super().__init__(error_code="install_io_error", message=message, details=details)


class VersionQueryError(UpdateError):
    """Error raised when an installed binary is found but cannot report its version."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a VersionQueryError."""
        super().__init__(
            error_code="version_query_failed", message=message, details=details
        )


class InvalidArgumentError(UpdateError):
    """Error raised for malformed input such as an unparsable version string."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class FailedPreconditionError(UpdateError):
    """
    Error raised when a precondition for the operation is not met.

    Used for invalid state transitions, a held lock file, or a missing
    install location.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class UserAbortError(UpdateError):
    """Error raised when the operator cancels an interactive selection."""

    def __init__(
        self,
        message: str = "exiting at user request",
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a UserAbortError."""
        super().__init__(error_code="aborted", message=message, details=details)
