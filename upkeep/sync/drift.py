"""Drift detection — has a tracked file changed since the engine wrote it?

Every query yields exactly one ``FileState``. Only ``UNCHANGED`` files may
be overwritten silently; every other state means the file is, or must be
assumed to be, customised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from upkeep.config import UpkeepConfig
from upkeep.fs.hashing import hash_file
from upkeep.sync.metadata import Metadata, MetadataStore
from upkeep.sync.policy import normalize

logger = logging.getLogger(__name__)


class FileState(Enum):
    UNCHANGED = "unchanged"  # Hash matches the recorded hash
    MODIFIED = "modified"  # Hash differs from the recorded hash
    USER_ADDED = "user_added"  # No record for the path
    USER_DELETED = "user_deleted"  # Record exists, file is gone
    NO_METADATA = "no_metadata"  # Root never initialised
    HASH_ERROR = "hash_error"  # File exists but cannot be read


@dataclass
class FileDriftReport:
    """Drift classification of a single path."""

    path: str
    state: FileState
    recorded_hash: str | None = None
    current_hash: str | None = None
    error: str = ""

    @property
    def customized(self) -> bool:
        return self.state is not FileState.UNCHANGED

    def summary(self) -> str:
        if self.state is FileState.HASH_ERROR:
            return f"{self.path}: {self.state.value} ({self.error})"
        return f"{self.path}: {self.state.value}"


class DriftDetector:
    """Classifies tracked files against the metadata store."""

    def __init__(self, config: UpkeepConfig):
        self.config = config
        self.store = MetadataStore(config)

    def classify(self, relative_path: str, metadata: Metadata | None = None) -> FileDriftReport:
        """Classify *relative_path*.

        Args:
            relative_path: Path relative to the project root.
            metadata: Already-loaded metadata, to avoid re-reading it when
                classifying many paths.
        """
        path = normalize(relative_path)
        if metadata is None:
            metadata = self.store.load()

        if metadata is None:
            return FileDriftReport(path=path, state=FileState.NO_METADATA)

        record = metadata.files.get(path)
        if record is None:
            return FileDriftReport(path=path, state=FileState.USER_ADDED)

        report = FileDriftReport(path=path, state=FileState.UNCHANGED, recorded_hash=record.hash)
        file_path = self.config.resolve(path)
        if not file_path.exists() and not file_path.is_symlink():
            report.state = FileState.USER_DELETED
            return report

        try:
            report.current_hash = hash_file(file_path)
        except OSError as e:
            logger.debug("Cannot hash %s: %s", file_path, e)
            report.state = FileState.HASH_ERROR
            report.error = str(e)
            return report

        if report.current_hash != record.hash:
            report.state = FileState.MODIFIED
        return report

    def check_all(self) -> list[FileDriftReport]:
        """Classify every tracked path."""
        metadata = self.store.load()
        if metadata is None:
            return []
        return [self.classify(path, metadata) for path in sorted(metadata.files)]
