"""Atomic writes — a target holds either its old content or its new content.

Content is written to a temporary sibling of the target and then renamed
over it. The temporary file must live in the same directory as the
target: a rename is only atomic within one filesystem.
"""

from __future__ import annotations

import logging
import os
import secrets
import time
from pathlib import Path
from typing import Callable, Union

from upkeep.errors import (
    FileNotFound,
    InsufficientPermissions,
    InvalidUpdateResult,
    MissingParentDirectory,
    ReplaceFailed,
    SecondaryError,
    UpdateFunctionFailed,
    UpkeepError,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

Content = Union[str, bytes, bytearray]

TEMP_MARKER = ".tmp."


def absolute(path: str | Path) -> Path:
    """Absolute form of *path* without following symlinks."""
    return Path(os.path.abspath(path))


def temp_path_for(target: Path) -> Path:
    """A temp sibling name: ``<name>.tmp.<ms timestamp>.<random>``."""
    timestamp = int(time.time() * 1000)
    return target.with_name(f"{target.name}{TEMP_MARKER}{timestamp}.{secrets.token_hex(6)}")


def encode_content(content: Content, encoding: str = "utf-8") -> bytes:
    if isinstance(content, str):
        return content.encode(encoding)
    if isinstance(content, (bytes, bytearray)):
        return bytes(content)
    raise ValidationFailed(
        f"Content must be str or bytes, got {type(content).__name__}"
    )


def require_parent(target: Path) -> None:
    """Fail unless the parent directory of *target* already exists."""
    parent = target.parent
    if not parent.is_dir():
        raise MissingParentDirectory(
            f"Parent directory does not exist: {parent}", path=target
        )


def write_temp(
    target: Path,
    data: bytes,
    mode: int | None = None,
    fsync: bool = True,
) -> Path:
    """Write *data* to a new temp sibling of *target* and return its path.

    On failure the temp file is removed and the error propagates; the
    target itself is never touched.
    """
    temp = temp_path_for(target)
    try:
        with open(temp, "xb") as f:
            f.write(data)
            f.flush()
            if fsync:
                os.fsync(f.fileno())
        if mode is not None:
            os.chmod(temp, mode)
    except OSError:
        remove_temp(temp)
        raise
    return temp


def remove_temp(temp: Path) -> SecondaryError | None:
    """Best-effort removal of a temp file.

    Returns the failure instead of raising so it can never mask the error
    that triggered the cleanup.
    """
    try:
        os.unlink(temp)
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("Failed to clean up temporary file %s: %s", temp, e)
        return SecondaryError(path=str(temp), error=e)
    return None


def replace_file(temp: Path, target: Path) -> None:
    """Move *temp* over *target* in one step.

    Some platforms refuse to rename onto an existing file; there the
    target is removed first and the rename retried. The target is briefly
    absent during that fallback.
    """
    try:
        os.replace(temp, target)
    except FileExistsError:
        logger.debug("Rename over %s refused, retrying after unlink", target)
        try:
            try:
                os.unlink(target)
            except FileNotFoundError:
                pass
            os.rename(temp, target)
        except OSError as retry_error:
            raise ReplaceFailed(
                f"Failed to atomically replace {target}: {retry_error}", path=target
            ) from retry_error


def _is_permission_error(error: BaseException) -> bool:
    return isinstance(error, PermissionError) or isinstance(
        error.__cause__, PermissionError
    )


def atomic_write(
    path: str | Path,
    content: Content,
    *,
    encoding: str = "utf-8",
    mode: int | None = None,
    fsync: bool = True,
) -> Path:
    """Write *content* to *path* atomically and return the absolute target.

    Args:
        path: Target file. Its parent directory must already exist.
        content: Full new content; ``str`` is encoded with *encoding*.
        encoding: Text encoding for ``str`` content.
        mode: Optional permission bits for the written file.
        fsync: Flush the temp file to disk before the rename.

    Raises:
        MissingParentDirectory: The parent directory does not exist.
        InsufficientPermissions: Any stage hit a permission error.
        ReplaceFailed: The rename fallback failed.
    """
    target = absolute(path)
    if content is None:
        raise ValidationFailed("Content must not be None", path=target)
    data = encode_content(content, encoding)
    require_parent(target)

    try:
        temp = write_temp(target, data, mode=mode, fsync=fsync)
    except PermissionError as e:
        raise InsufficientPermissions(
            f"Insufficient permissions to write to: {target}", path=target
        ) from e

    try:
        replace_file(temp, target)
    except (OSError, ReplaceFailed) as e:
        secondary = remove_temp(temp)
        secondary_errors = [secondary] if secondary else []
        if _is_permission_error(e):
            raise InsufficientPermissions(
                f"Insufficient permissions to write to: {target}",
                path=target,
                secondary_errors=secondary_errors,
            ) from e
        if isinstance(e, UpkeepError):
            e.secondary_errors.extend(secondary_errors)
        raise

    logger.debug("Wrote %d bytes to %s", len(data), target)
    return target


def read_text(path: Path, encoding: str = "utf-8") -> str:
    """Read text without newline translation."""
    with open(path, encoding=encoding, newline="") as f:
        return f.read()


def atomic_update(
    path: str | Path,
    transform: Callable[[str], Content],
    *,
    encoding: str = "utf-8",
    create_if_missing: bool = False,
    mode: int | None = None,
) -> Path:
    """Read *path*, pass its text through *transform*, and write the result atomically.

    The read and the final write are not atomic with respect to other
    writers touching the same file in between.

    Raises:
        FileNotFound: The file is absent and *create_if_missing* is false.
        UpdateFunctionFailed: *transform* raised.
        InvalidUpdateResult: *transform* returned ``None`` or a non-text value.
    """
    if not callable(transform):
        raise ValidationFailed("transform must be callable")

    target = absolute(path)
    try:
        current = read_text(target, encoding)
    except FileNotFoundError:
        if not create_if_missing:
            raise FileNotFound(f"File does not exist: {target}", path=target) from None
        current = ""
    except PermissionError as e:
        raise InsufficientPermissions(
            f"Insufficient permissions to read: {target}", path=target
        ) from e

    try:
        new_content = transform(current)
    except Exception as e:
        raise UpdateFunctionFailed(f"Update function failed: {e}", path=target) from e

    if new_content is None:
        raise InvalidUpdateResult(
            "Update function must return a value (received None)", path=target
        )
    if not isinstance(new_content, (str, bytes, bytearray)):
        raise InvalidUpdateResult(
            f"Update function must return str or bytes, got {type(new_content).__name__}",
            path=target,
        )

    return atomic_write(target, new_content, encoding=encoding, mode=mode)
