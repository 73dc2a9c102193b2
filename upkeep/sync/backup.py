"""Backups — snapshot tracked files before an update, and restore them.

Layout::

    <root>/.upkeep/backups/<timestamp>/
        manifest.json
        .upkeep/update-metadata.json
        <relative paths of every backed-up file>

The manifest lists exactly the files that were copied. A file that could
not be copied is left out of the manifest rather than aborting the whole
backup.
"""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from upkeep.config import UpkeepConfig
from upkeep.errors import (
    BackupIncomplete,
    BackupNotFound,
    CorruptMetadata,
    RestorePartial,
    SecondaryError,
    UpkeepError,
)
from upkeep.fs.atomic import atomic_write
from upkeep.sync.metadata import MetadataStore, utc_now
from upkeep.sync.policy import normalize

logger = logging.getLogger(__name__)


@dataclass
class BackupManifest:
    """Describes one backup directory."""

    timestamp: str
    reason: str
    version: str
    file_count: int
    files: list[str] = field(default_factory=list)
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "reason": self.reason,
            "version": self.version,
            "file_count": self.file_count,
            "files": self.files,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupManifest:
        files = data["files"]
        if not isinstance(files, list):
            raise ValueError("manifest 'files' must be a list")
        return cls(
            timestamp=str(data["timestamp"]),
            reason=data.get("reason", ""),
            version=data.get("version", "unknown"),
            file_count=int(data.get("file_count", len(files))),
            files=[str(f) for f in files],
            created_at=data.get("created_at", ""),
        )


@dataclass
class Backup:
    """A backup directory found on disk."""

    path: Path
    manifest: BackupManifest

    @property
    def timestamp(self) -> str:
        return self.manifest.timestamp


@dataclass
class BackupResult:
    """Outcome of creating a backup."""

    path: Path
    manifest: BackupManifest
    failures: list[SecondaryError] = field(default_factory=list)

    @property
    def incomplete(self) -> bool:
        return bool(self.failures)

    def raise_for_incomplete(self) -> None:
        if self.failures:
            names = ", ".join(f.path for f in self.failures)
            raise BackupIncomplete(
                f"Backup {self.path} is missing {len(self.failures)} file(s): {names}",
                path=self.path,
                secondary_errors=self.failures,
            )


@dataclass
class RestoreResult:
    """Outcome of restoring a backup."""

    restored: int
    total: int
    version: str
    failures: list[SecondaryError] = field(default_factory=list)
    metadata_restored: bool = False

    @property
    def complete(self) -> bool:
        return self.restored == self.total

    def raise_for_partial(self) -> None:
        if not self.complete:
            raise RestorePartial(
                f"Restored {self.restored} of {self.total} file(s)",
                secondary_errors=self.failures,
            )


class BackupManager:
    """Creates, lists, and restores backups for a project root."""

    def __init__(self, config: UpkeepConfig):
        self.config = config
        self.store = MetadataStore(config)
        self.backups_path = config.backups_path

    def create_full_backup(self, reason: str = "update") -> BackupResult:
        """Copy every tracked, non-user file plus the metadata document."""
        backup_path = self._new_backup_dir()
        metadata = self.store.load()

        copied: list[str] = []
        failures: list[SecondaryError] = []
        if metadata:
            for rel in sorted(metadata.files):
                if self.config.policy.is_user_content(rel):
                    continue
                try:
                    self._copy_into(rel, backup_path)
                except OSError as e:
                    logger.warning("Failed to back up %s: %s", rel, e)
                    failures.append(SecondaryError(path=rel, error=e))
                    continue
                copied.append(rel)

            meta_dest = backup_path / self.config.metadata_relpath
            meta_dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.config.metadata_path, meta_dest)

        manifest = BackupManifest(
            timestamp=backup_path.name,
            reason=reason,
            version=metadata.installed_version if metadata else "unknown",
            file_count=len(copied),
            files=copied,
            created_at=utc_now(),
        )
        self._write_manifest(backup_path, manifest)

        logger.info("Backed up %d file(s) to %s", len(copied), backup_path)
        return BackupResult(path=backup_path, manifest=manifest, failures=failures)

    def backup_file(self, relative_path: str, reason: str = "file") -> Path:
        """Back up a single file and return the directory holding it."""
        rel = normalize(relative_path)
        backup_path = self._new_backup_dir()
        try:
            self._copy_into(rel, backup_path)
        except OSError:
            shutil.rmtree(backup_path, ignore_errors=True)
            raise
        metadata = self.store.load()
        self._write_manifest(
            backup_path,
            BackupManifest(
                timestamp=backup_path.name,
                reason=reason,
                version=metadata.installed_version if metadata else "unknown",
                file_count=1,
                files=[rel],
                created_at=utc_now(),
            ),
        )
        return backup_path

    def list_backups(self) -> list[Backup]:
        """All backups with a readable manifest, newest first."""
        if not self.backups_path.is_dir():
            return []

        backups = []
        for entry in self.backups_path.iterdir():
            if not entry.is_dir():
                continue
            try:
                manifest = self._read_manifest(entry)
            except (BackupNotFound, CorruptMetadata):
                logger.debug("Skipping %s: no valid manifest", entry)
                continue
            backups.append(Backup(path=entry, manifest=manifest))

        backups.sort(key=lambda b: _name_order(b.path.name), reverse=True)
        return backups

    def restore_from_backup(self, backup_path: str | Path) -> RestoreResult:
        """Copy every file listed in a backup back to its original place.

        The metadata document is restored last, so it never claims a file
        was restored when it was not.
        """
        backup_path = Path(backup_path)
        manifest = self._read_manifest(backup_path)

        result = RestoreResult(restored=0, total=len(manifest.files), version=manifest.version)
        for rel in manifest.files:
            source = backup_path / rel
            dest = self.config.resolve(rel)
            try:
                data = source.read_bytes()
                dest.parent.mkdir(parents=True, exist_ok=True)
                atomic_write(dest, data)
            except (OSError, UpkeepError) as e:
                logger.error("Failed to restore %s: %s", rel, e)
                result.failures.append(SecondaryError(path=rel, error=e))
                continue
            result.restored += 1

        meta_source = backup_path / self.config.metadata_relpath
        try:
            meta_bytes = meta_source.read_bytes()
        except FileNotFoundError:
            logger.info("Backup %s has no metadata copy", backup_path)
        else:
            self.config.state_dir.mkdir(parents=True, exist_ok=True)
            atomic_write(self.config.metadata_path, meta_bytes)
            result.metadata_restored = True

        logger.info(
            "Restored %d of %d file(s) from %s", result.restored, result.total, backup_path
        )
        return result

    # -- helpers ---------------------------------------------------------------

    def _new_backup_dir(self) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
        self.backups_path.mkdir(parents=True, exist_ok=True)
        candidate = self.backups_path / stamp
        n = 0
        while True:
            try:
                candidate.mkdir()
                return candidate
            except FileExistsError:
                n += 1
                candidate = self.backups_path / f"{stamp}-{n}"

    def _copy_into(self, rel: str, backup_path: Path) -> None:
        dest = backup_path / rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(self.config.resolve(rel), dest)

    def _write_manifest(self, backup_path: Path, manifest: BackupManifest) -> None:
        atomic_write(
            backup_path / self.config.manifest_file,
            json.dumps(manifest.to_dict(), indent=2) + "\n",
        )

    def _read_manifest(self, backup_path: Path) -> BackupManifest:
        manifest_path = backup_path / self.config.manifest_file
        try:
            with open(manifest_path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise BackupNotFound(f"No backup manifest at {manifest_path}", path=manifest_path) from None
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptMetadata(f"Backup manifest is not valid JSON: {manifest_path}", path=manifest_path) from e

        try:
            return BackupManifest.from_dict(data)
        except (TypeError, KeyError, ValueError) as e:
            raise CorruptMetadata(f"Malformed backup manifest {manifest_path}: {e}", path=manifest_path) from e


def _name_order(name: str) -> tuple[str, int]:
    """Sort key for backup directory names: timestamp, then numeric ``-N`` suffix."""
    stamp, sep, suffix = name.rpartition("-")
    if sep and suffix.isdigit() and len(stamp) == 19:
        return stamp, int(suffix)
    return name, 0
