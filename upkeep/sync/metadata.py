"""Metadata store — what the engine installed, and the hash it installed it with.

A record exists for a path exactly when the engine owns that path's last
written content. A file on disk without a record was added by the user.

The document is always rewritten whole through the atomic writer, so a
half-written metadata file is never observable. Read-modify-write calls
are not safe against concurrent callers on the same root.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from upkeep.config import UpkeepConfig
from upkeep.errors import CorruptMetadata, MetadataMissing
from upkeep.fs.atomic import atomic_write
from upkeep.fs.hashing import split_digest
from upkeep.sync.policy import normalize

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class FileRecord:
    """A tracked file's last known hash and provenance."""

    hash: str
    source: str = "managed"
    installed_at: str = ""
    updated_at: str | None = None
    updated_to_version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "hash": self.hash,
            "source": self.source,
            "installed_at": self.installed_at,
        }
        if self.updated_at is not None:
            data["updated_at"] = self.updated_at
        if self.updated_to_version is not None:
            data["updated_to_version"] = self.updated_to_version
        return data


@dataclass
class Metadata:
    """The persisted document for one project root."""

    installed_version: str
    installed_at: str = ""
    last_update_check: str | None = None
    last_update_applied: str | None = None
    files: dict[str, FileRecord] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "installed_version": self.installed_version,
            "installed_at": self.installed_at,
            "last_update_check": self.last_update_check,
            "last_update_applied": self.last_update_applied,
            "files": {path: rec.to_dict() for path, rec in sorted(self.files.items())},
        }


class MetadataStore:
    """Loads and saves the metadata document for a project root."""

    def __init__(self, config: UpkeepConfig):
        self.config = config
        self.path = config.metadata_path

    def load(self) -> Metadata | None:
        """Return the metadata, or ``None`` when none has been written yet.

        Raises:
            CorruptMetadata: The file exists but cannot be parsed.
        """
        try:
            with open(self.path, encoding="utf-8") as f:
                text = f.read()
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as e:
            raise CorruptMetadata(
                f"Metadata file is not valid UTF-8: {self.path}: {e}", path=self.path
            ) from e

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise CorruptMetadata(
                f"Metadata file is not valid JSON: {self.path}: {e}", path=self.path
            ) from e
        return _metadata_from_dict(data, self.path)

    def save(self, metadata: Metadata) -> None:
        self.config.state_dir.mkdir(parents=True, exist_ok=True)
        atomic_write(self.path, json.dumps(metadata.to_dict(), indent=2) + "\n")

    def exists(self) -> bool:
        return self.load() is not None

    def initialize(self, version: str) -> Metadata:
        """Write a fresh, empty document for *version*."""
        metadata = Metadata(installed_version=version, installed_at=utc_now())
        self.save(metadata)
        logger.info("Initialized metadata for %s at version %s", self.config.root, version)
        return metadata

    def record_file(self, relative_path: str, hash: str, version: str) -> FileRecord:
        """Record that the engine just installed *relative_path* with *hash*."""
        return self.record_files({relative_path: hash}, version)[normalize(relative_path)]

    def record_files(
        self, hashes: dict[str, str], version: str, set_version: bool = False
    ) -> dict[str, FileRecord]:
        """Record several installed files with one metadata write.

        A fresh document is initialised for *version* when none exists;
        ``set_version`` also moves an existing document to *version*.
        """
        metadata = self.load()
        if metadata is None:
            metadata = Metadata(installed_version=version, installed_at=utc_now())
        elif set_version:
            metadata.installed_version = version

        now = utc_now()
        records = {}
        for rel, digest in hashes.items():
            record = FileRecord(hash=digest, source=self.config.source_tag, installed_at=now)
            metadata.files[normalize(rel)] = record
            records[normalize(rel)] = record
        self.save(metadata)
        return records

    def record_update(self, relative_path: str, hash: str, version: str) -> FileRecord:
        """Record that an update rewrote *relative_path* with *hash*.

        Raises:
            MetadataMissing: No metadata has been initialised for this root.
        """
        return self.record_updates({relative_path: hash}, version)[normalize(relative_path)]

    def record_updates(self, hashes: dict[str, str], version: str) -> dict[str, FileRecord]:
        """Record several updated files and the new version with one write."""
        metadata = self.load()
        if metadata is None:
            raise MetadataMissing("Cannot update tracking: no metadata exists")

        now = utc_now()
        records = {}
        for rel, digest in hashes.items():
            path = normalize(rel)
            record = metadata.files.get(path)
            if record:
                record.hash = digest
                record.updated_at = now
                record.updated_to_version = version
            else:
                # Added by this update
                record = FileRecord(hash=digest, source=self.config.source_tag, installed_at=now)
                metadata.files[path] = record
            records[path] = record

        metadata.installed_version = version
        metadata.last_update_applied = now
        self.save(metadata)
        return records

    def tracked_files(self) -> list[str]:
        metadata = self.load()
        if metadata is None:
            return []
        return list(metadata.files)

    def untrack_file(self, relative_path: str) -> bool:
        """Forget *relative_path*. Returns whether a record was removed."""
        metadata = self.load()
        if metadata is None:
            return False
        if metadata.files.pop(normalize(relative_path), None) is None:
            return False
        self.save(metadata)
        return True

    def touch_update_check(self) -> None:
        metadata = self.load()
        if metadata is None:
            raise MetadataMissing("Cannot stamp update check: no metadata exists")
        metadata.last_update_check = utc_now()
        self.save(metadata)


def _metadata_from_dict(data: Any, path) -> Metadata:
    if not isinstance(data, dict):
        raise CorruptMetadata(f"Metadata document must be an object: {path}", path=path)

    files_data = data.get("files") or {}
    if not isinstance(files_data, dict):
        raise CorruptMetadata(f"Metadata 'files' must be an object: {path}", path=path)

    files = {}
    for rel, rec in files_data.items():
        try:
            split_digest(rec["hash"])
            files[rel] = FileRecord(
                hash=rec["hash"],
                source=rec.get("source", "unknown"),
                installed_at=rec.get("installed_at", ""),
                updated_at=rec.get("updated_at"),
                updated_to_version=rec.get("updated_to_version"),
            )
        except (TypeError, KeyError, AttributeError, ValueError) as e:
            raise CorruptMetadata(
                f"Malformed record for {rel!r} in {path}: {e}", path=path
            ) from e

    return Metadata(
        installed_version=str(data.get("installed_version", "unknown")),
        installed_at=data.get("installed_at", ""),
        last_update_check=data.get("last_update_check"),
        last_update_applied=data.get("last_update_applied"),
        files=files,
    )
