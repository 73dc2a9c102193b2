"""Error taxonomy for the update engine.

Every error raised by upkeep derives from ``UpkeepError`` and carries an
``ErrorKind`` so callers can branch on what went wrong without matching
message text. Best-effort cleanup failures never replace the primary
error; they ride along on ``secondary_errors``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class ErrorKind(Enum):
    """What kind of failure an ``UpkeepError`` represents."""

    # Single-file writes
    MISSING_PARENT_DIRECTORY = "missing_parent_directory"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    REPLACE_FAILED = "replace_failed"

    # Read-transform-write
    FILE_NOT_FOUND = "file_not_found"
    UPDATE_FUNCTION_FAILED = "update_function_failed"
    INVALID_UPDATE_RESULT = "invalid_update_result"

    # Batches
    VALIDATION_FAILED = "validation_failed"
    TRANSACTION_ABORTED = "transaction_aborted"
    TRANSACTION_ABORTED_WITH_ROLLBACK_ERRORS = "transaction_aborted_with_rollback_errors"

    # Metadata and backups
    CORRUPT_METADATA = "corrupt_metadata"
    NO_METADATA = "no_metadata"
    BACKUP_INCOMPLETE = "backup_incomplete"
    BACKUP_NOT_FOUND = "backup_not_found"
    RESTORE_PARTIAL = "restore_partial"

    # Canonical sources
    UNKNOWN_SOURCE = "unknown_source"


@dataclass
class SecondaryError:
    """A failure that happened while handling another failure."""

    path: str
    error: Exception

    def __str__(self) -> str:
        return f"{self.path}: {self.error}"


class UpkeepError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.VALIDATION_FAILED

    def __init__(
        self,
        message: str,
        path: str | Path | None = None,
        secondary_errors: list[SecondaryError] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.path = str(path) if path is not None else None
        self.secondary_errors: list[SecondaryError] = list(secondary_errors or [])


class MissingParentDirectory(UpkeepError):
    kind = ErrorKind.MISSING_PARENT_DIRECTORY


class InsufficientPermissions(UpkeepError):
    kind = ErrorKind.INSUFFICIENT_PERMISSIONS


class ReplaceFailed(UpkeepError):
    kind = ErrorKind.REPLACE_FAILED


class FileNotFound(UpkeepError):
    kind = ErrorKind.FILE_NOT_FOUND


class UpdateFunctionFailed(UpkeepError):
    kind = ErrorKind.UPDATE_FUNCTION_FAILED


class InvalidUpdateResult(UpkeepError):
    kind = ErrorKind.INVALID_UPDATE_RESULT


class ValidationFailed(UpkeepError):
    """Malformed input, detected before any I/O."""

    kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, message: str, index: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.index = index


class TransactionAborted(UpkeepError):
    """A batch write failed and every target is back to its prior state."""

    kind = ErrorKind.TRANSACTION_ABORTED

    def __init__(
        self,
        message: str,
        cause: Exception,
        rolled_back: bool = True,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.cause = cause
        self.rolled_back = rolled_back


class TransactionAbortedWithRollbackErrors(TransactionAborted):
    """A batch write failed and restoring some targets failed too.

    ``rollback_errors`` lists each path left in an unknown state together
    with the error hit while restoring it.
    """

    kind = ErrorKind.TRANSACTION_ABORTED_WITH_ROLLBACK_ERRORS

    def __init__(
        self,
        message: str,
        cause: Exception,
        rollback_errors: list[SecondaryError],
        **kwargs,
    ):
        super().__init__(message, cause, rolled_back=False, **kwargs)
        self.rollback_errors = rollback_errors

    @property
    def affected_paths(self) -> list[str]:
        return [e.path for e in self.rollback_errors]


class CorruptMetadata(UpkeepError):
    kind = ErrorKind.CORRUPT_METADATA


class MetadataMissing(UpkeepError):
    kind = ErrorKind.NO_METADATA


class BackupIncomplete(UpkeepError):
    kind = ErrorKind.BACKUP_INCOMPLETE


class BackupNotFound(UpkeepError):
    kind = ErrorKind.BACKUP_NOT_FOUND


class RestorePartial(UpkeepError):
    kind = ErrorKind.RESTORE_PARTIAL


class UnknownSource(UpkeepError):
    kind = ErrorKind.UNKNOWN_SOURCE
