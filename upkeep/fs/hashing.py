"""Content hashing — stable digests identifying a file's exact bytes.

Digests are only compared for equality, never used for authentication.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

ALGORITHM = "sha256"
CHUNK_SIZE = 64 * 1024


def hash_bytes(data: bytes) -> str:
    """Return the digest of *data* as ``"sha256:<hex>"``."""
    return f"{ALGORITHM}:{hashlib.new(ALGORITHM, data).hexdigest()}"


def hash_file(path: str | Path) -> str:
    """Return the digest of the file at *path*.

    Read errors (missing file, permissions, a directory in the way)
    propagate unchanged.
    """
    h = hashlib.new(ALGORITHM)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            h.update(chunk)
    return f"{ALGORITHM}:{h.hexdigest()}"


def split_digest(digest: str) -> tuple[str, str]:
    """Split ``"algo:hex"`` into its parts."""
    algorithm, sep, hexdigest = digest.partition(":")
    if not sep or not hexdigest:
        raise ValueError(f"Malformed digest: {digest!r}")
    return algorithm, hexdigest
