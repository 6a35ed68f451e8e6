"""
Exception hierarchy for backup and restore processing.
"""

from __future__ import annotations


class BackupError(Exception):
    """Base class for errors raised by the backup subsystem."""


class ValidationError(BackupError):
    """Request is missing required data and was rejected before processing."""


class TransientIOError(BackupError):
    """A single entity or file could not be read or written."""


class FatalProcessingError(BackupError):
    """Document-level failure (serialization, hashing) that fails the job."""


class UnsupportedDestinationError(BackupError):
    """No writer is registered for the requested destination type."""


class JobStateError(BackupError):
    """Requested job transition or action is not allowed in its current state."""


# Error types whose message is safe to show to the job owner as-is.
USER_SAFE_ERRORS = (ValidationError, UnsupportedDestinationError)

GENERIC_FAILURE_MESSAGE = "Backup failed due to an internal error"


def public_error_message(
    exc: BaseException, fallback: str = GENERIC_FAILURE_MESSAGE
) -> str:
    """Redact internal error text before it reaches the job owner."""
    if isinstance(exc, USER_SAFE_ERRORS):
        return str(exc)
    return fallback
