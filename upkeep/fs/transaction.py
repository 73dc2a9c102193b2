"""Transactions — all-or-nothing writes across several files.

A batch is applied in three phases:

1. Snapshot: remember each target's current bytes (or that it is absent).
2. Stage: write every new content to a temp sibling of its target.
3. Commit: rename each temp over its target.

A failure before the commit phase leaves every target untouched. A
failure during the commit phase rolls back every target committed so far
from its snapshot, and removes files that did not exist before.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping

from upkeep.errors import (
    ReplaceFailed,
    SecondaryError,
    TransactionAborted,
    TransactionAbortedWithRollbackErrors,
    ValidationFailed,
)
from upkeep.fs.atomic import (
    Content,
    absolute,
    atomic_write,
    encode_content,
    remove_temp,
    replace_file,
    require_parent,
    write_temp,
)

logger = logging.getLogger(__name__)


@dataclass
class TransactionOperation:
    """One file write inside a transaction."""

    path: str | Path
    content: Content
    encoding: str = "utf-8"


@dataclass
class _Snapshot:
    target: Path
    existed: bool
    content: bytes | None = None


@dataclass
class _Staged:
    temp: Path
    target: Path


@dataclass
class TransactionResult:
    """Outcome of a committed transaction."""

    written: list[Path] = field(default_factory=list)
    created: list[Path] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.written)


class TransactionManager:
    """Applies batches of file writes as single all-or-nothing units.

    The manager owns the temp files it stages for the duration of one
    ``apply_batch`` call and removes every one of them on every exit path.
    """

    def __init__(self, fsync: bool = True):
        self.fsync = fsync

    def apply_batch(
        self, operations: Iterable[TransactionOperation | Mapping]
    ) -> TransactionResult:
        """Write every operation's content, or none of them.

        Raises:
            ValidationFailed: An operation is malformed. Nothing was touched.
            TransactionAborted: The batch failed and every target is back to
                its previous state.
            TransactionAbortedWithRollbackErrors: The batch failed and some
                targets could not be restored; ``rollback_errors`` names them.
        """
        ops = validate_operations(operations)
        result = TransactionResult()
        if not ops:
            return result

        payloads = []
        for i, op in enumerate(ops):
            try:
                payloads.append(encode_content(op.content, op.encoding))
            except (LookupError, UnicodeError) as e:
                raise ValidationFailed(
                    f"Operation at index {i} cannot be encoded as {op.encoding}: {e}",
                    index=i,
                    path=op.path,
                ) from e

        snapshots = self._snapshot(ops)
        staged = self._stage(snapshots, payloads)
        committed = self._commit(staged, snapshots)

        for snap in committed:
            result.written.append(snap.target)
            if not snap.existed:
                result.created.append(snap.target)
        logger.debug("Transaction committed %d file(s)", result.count)
        return result

    # -- phases --------------------------------------------------------------

    def _snapshot(self, ops: list[TransactionOperation]) -> list[_Snapshot]:
        snapshots = []
        for op in ops:
            target = absolute(op.path)
            try:
                content = target.read_bytes()
            except FileNotFoundError:
                snapshots.append(_Snapshot(target=target, existed=False))
                continue
            except OSError as e:
                raise TransactionAborted(
                    f"Cannot read existing file {target}: {e}", cause=e, path=target
                ) from e
            snapshots.append(_Snapshot(target=target, existed=True, content=content))
        return snapshots

    def _stage(self, snapshots: list[_Snapshot], payloads: list[bytes]) -> list[_Staged]:
        staged: list[_Staged] = []
        for snap, data in zip(snapshots, payloads):
            try:
                require_parent(snap.target)
                temp = write_temp(snap.target, data, fsync=self.fsync)
            except Exception as e:
                secondary = self._cleanup(staged)
                raise TransactionAborted(
                    f"Transaction aborted before commit: {e}",
                    cause=e,
                    path=snap.target,
                    secondary_errors=secondary,
                ) from e
            staged.append(_Staged(temp=temp, target=snap.target))
        return staged

    def _commit(
        self, staged: list[_Staged], snapshots: list[_Snapshot]
    ) -> list[_Snapshot]:
        committed: list[_Snapshot] = []
        for i, item in enumerate(staged):
            try:
                replace_file(item.temp, item.target)
            except Exception as e:
                logger.error("Transaction commit failed at %s: %s", item.target, e)
                snap = snapshots[i]
                if isinstance(e, ReplaceFailed) or snap.existed != item.target.exists():
                    # The fallback may have removed the target before failing
                    committed.append(snap)
                self._abort(e, item.target, committed, staged[i:])
            committed.append(snapshots[i])
        return committed

    # -- failure handling ----------------------------------------------------

    def _abort(
        self,
        error: Exception,
        failed_path: Path,
        committed: list[_Snapshot],
        pending: list[_Staged],
    ) -> None:
        logger.warning("Rolling back %d committed write(s)", len(committed))
        rollback_errors = self._rollback(committed)
        secondary = self._cleanup(pending)

        if rollback_errors:
            details = "\n".join(f"  - {e}" for e in rollback_errors)
            raise TransactionAbortedWithRollbackErrors(
                "Transaction failed and rollback encountered errors:\n"
                f"Original error: {error}\n"
                f"Rollback errors:\n{details}",
                cause=error,
                rollback_errors=rollback_errors,
                path=failed_path,
                secondary_errors=secondary,
            ) from error

        raise TransactionAborted(
            f"Transaction failed and was rolled back: {error}",
            cause=error,
            rolled_back=True,
            path=failed_path,
            secondary_errors=secondary,
        ) from error

    def _rollback(self, committed: list[_Snapshot]) -> list[SecondaryError]:
        errors: list[SecondaryError] = []
        for snap in committed:
            try:
                if snap.existed:
                    atomic_write(snap.target, snap.content, fsync=self.fsync)
                else:
                    snap.target.unlink(missing_ok=True)
            except Exception as e:
                logger.error("Rollback of %s failed: %s", snap.target, e)
                errors.append(SecondaryError(path=str(snap.target), error=e))
        return errors

    @staticmethod
    def _cleanup(staged: list[_Staged]) -> list[SecondaryError]:
        errors = []
        for item in staged:
            failure = remove_temp(item.temp)
            if failure:
                errors.append(failure)
        return errors


def validate_operations(
    operations: Iterable[TransactionOperation | Mapping],
) -> list[TransactionOperation]:
    """Check a batch before any I/O and normalise dicts to operations."""
    if operations is None or isinstance(operations, (str, bytes, Mapping)):
        raise ValidationFailed("operations must be a sequence of operations")

    ops: list[TransactionOperation] = []
    seen: dict[Path, int] = {}
    for i, op in enumerate(operations):
        if isinstance(op, Mapping):
            op = TransactionOperation(
                path=op.get("path"),
                content=op.get("content"),
                encoding=op.get("encoding") or "utf-8",
            )
        elif not isinstance(op, TransactionOperation):
            raise ValidationFailed(f"Operation at index {i} must be an operation", index=i)

        if (
            not op.path
            or not isinstance(op.path, (str, Path))
            or str(op.path).strip() in ("", ".")
        ):
            raise ValidationFailed(
                f"Operation at index {i} must have a non-empty path", index=i
            )
        if op.content is None:
            raise ValidationFailed(
                f"Operation at index {i} must have content", index=i, path=op.path
            )
        if not isinstance(op.content, (str, bytes, bytearray)):
            raise ValidationFailed(
                f"Operation at index {i} content must be str or bytes", index=i, path=op.path
            )

        target = absolute(op.path)
        if target in seen:
            raise ValidationFailed(
                f"Operation at index {i} repeats the path of operation {seen[target]}: {target}",
                index=i,
                path=target,
            )
        seen[target] = i
        ops.append(op)
    return ops


def multi_write(
    operations: Iterable[TransactionOperation | Mapping], fsync: bool = True
) -> TransactionResult:
    """Apply *operations* as one transaction."""
    return TransactionManager(fsync=fsync).apply_batch(operations)
