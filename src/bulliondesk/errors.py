"""
Backup error taxonomy.

Every failure the backup subsystem can report maps onto one of the
kinds below. Each carries a short, kind-specific message that is safe
to show to the operator; raw internal detail stays in the logs.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Failure categories surfaced at the export/import boundary."""

    PERMISSION_DENIED = "permission_denied"
    KEY_MISSING = "key_missing"
    INTEGRITY = "integrity"
    NOT_FOUND = "not_found"
    MALFORMED_ARCHIVE = "malformed_archive"
    MERGE_CONFLICT = "merge_conflict"
    IO_FAILURE = "io_failure"


class BackupError(Exception):
    """Base class for backup subsystem failures."""

    kind: ErrorKind = ErrorKind.IO_FAILURE
    user_message: str = "Backup operation failed. Please try again."


class PermissionDenied(BackupError):
    """The backup location was not granted or is not writable."""

    kind = ErrorKind.PERMISSION_DENIED
    user_message = "Cannot access storage location."


class KeyMissing(BackupError):
    """No encryption key has been configured."""

    kind = ErrorKind.KEY_MISSING
    user_message = "Encryption key not found. Please set up encryption first."


class IntegrityError(BackupError):
    """Decryption failed: wrong key, tampered or truncated data."""

    kind = ErrorKind.INTEGRITY
    user_message = "Invalid encryption key or corrupted backup file."


class ObjectNotFound(BackupError):
    """A content hash has no blob in the object store."""

    kind = ErrorKind.NOT_FOUND
    user_message = "Backup object not found."


class MalformedArchive(BackupError):
    """The decrypted archive is not a valid backup bundle."""

    kind = ErrorKind.MALFORMED_ARCHIVE
    user_message = "Invalid backup file."


class MergeConflict(BackupError):
    """Incoming base inventory differs from local and needs a decision."""

    kind = ErrorKind.MERGE_CONFLICT
    user_message = "The backup contains different base inventory values."


class IOFailure(BackupError):
    """Transient filesystem error."""

    kind = ErrorKind.IO_FAILURE
    user_message = "Failed to read or write the backup file. Please try again."


def classify(exc: BaseException) -> BackupError:
    """Map an arbitrary exception onto the nearest taxonomy kind.

    Args:
        exc: The exception raised somewhere inside a backup run.

    Returns:
        BackupError: ``exc`` itself if already classified, otherwise a
        new error of the closest kind chaining the original.
    """
    if isinstance(exc, BackupError):
        return exc
    if isinstance(exc, PermissionError):
        mapped: BackupError = PermissionDenied(type(exc).__name__)
    elif isinstance(exc, FileNotFoundError):
        mapped = IOFailure("file not found")
    else:
        mapped = IOFailure(type(exc).__name__)
    mapped.__cause__ = exc
    return mapped
