"""Canonical sources — what a managed file should contain for a given release.

The engine never knows a file's intended content itself; it asks a
``CanonicalSource``. ``DirectorySource`` serves files from an unpacked
package directory, ``MappingSource`` from memory.
"""

from __future__ import annotations

from pathlib import Path
from typing import Mapping, Protocol

from upkeep.errors import UnknownSource
from upkeep.sync.policy import normalize

# Directories never served from a package tree
SKIP_DIRS = {".git", "__pycache__", "node_modules", ".venv", "venv", ".tox"}


class CanonicalSource(Protocol):
    def read(self, relative_path: str) -> bytes | None:
        """Canonical bytes for *relative_path*, or ``None`` if it has none."""

    def paths(self) -> list[str]:
        """Every relative path this source provides."""


class DirectorySource:
    """Serves canonical content from a package directory.

    Args:
        package_root: Root of the unpacked package.
        remap: Installed path -> location inside the package, for files
            that are installed somewhere other than where they ship
            (e.g. ``{"CLAUDE.md": "template/CLAUDE.md"}``).
        allowed_prefixes: If given, only paths under one of these prefixes
            (or a remapped path) are served; anything else raises
            ``UnknownSource``.
    """

    def __init__(
        self,
        package_root: str | Path,
        remap: Mapping[str, str] | None = None,
        allowed_prefixes: list[str] | None = None,
    ):
        self.package_root = Path(package_root)
        self.remap = {normalize(k): v for k, v in (remap or {}).items()}
        self.allowed_prefixes = list(allowed_prefixes or [])

    def _source_path(self, relative_path: str) -> Path:
        rel = normalize(relative_path)
        if rel in self.remap:
            return self.package_root / self.remap[rel]
        if self.allowed_prefixes and not any(rel.startswith(p) for p in self.allowed_prefixes):
            raise UnknownSource(f"Unknown file source for {rel}", path=rel)
        return self.package_root / rel

    def read(self, relative_path: str) -> bytes | None:
        try:
            return self._source_path(relative_path).read_bytes()
        except FileNotFoundError:
            return None

    def paths(self) -> list[str]:
        found = {rel for rel, src in self.remap.items() if (self.package_root / src).is_file()}
        roots = (
            [self.package_root / p for p in self.allowed_prefixes]
            if self.allowed_prefixes
            else [self.package_root]
        )
        for root in roots:
            if root.is_file():
                found.add(root.relative_to(self.package_root).as_posix())
                continue
            if not root.is_dir():
                continue
            for item in root.rglob("*"):
                rel = item.relative_to(self.package_root)
                if item.is_file() and not any(part in SKIP_DIRS for part in rel.parts):
                    found.add(rel.as_posix())
        return sorted(found)


class MappingSource:
    """Serves canonical content from a path -> content mapping."""

    def __init__(self, files: Mapping[str, str | bytes], encoding: str = "utf-8"):
        self.files = {
            normalize(k): v.encode(encoding) if isinstance(v, str) else bytes(v)
            for k, v in files.items()
        }

    def read(self, relative_path: str) -> bytes | None:
        return self.files.get(normalize(relative_path))

    def paths(self) -> list[str]:
        return sorted(self.files)
