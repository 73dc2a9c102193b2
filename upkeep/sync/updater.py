"""Updater — install a package of managed files and upgrade it in place.

An update never overwrites a file the user has touched. Each core path is
classified against the metadata store; only files still byte-identical
to what the engine last wrote are replaced. Everything is backed up
first, written in one transaction, and only then recorded in metadata.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from upkeep.config import UpkeepConfig
from upkeep.errors import MetadataMissing, UnknownSource
from upkeep.fs.hashing import hash_bytes
from upkeep.fs.transaction import TransactionManager, TransactionOperation
from upkeep.sync.backup import BackupManager, BackupResult
from upkeep.sync.drift import DriftDetector, FileState
from upkeep.sync.metadata import Metadata, MetadataStore
from upkeep.sync.policy import normalize
from upkeep.sync.source import CanonicalSource

logger = logging.getLogger(__name__)


class UpdateAction(Enum):
    UPDATE = "update"  # Unchanged on disk, new canonical content
    ADD = "add"  # New in the package, absent on disk
    CURRENT = "current"  # Already identical to canonical content
    SKIP = "skip"  # Customised; left alone unless forced
    MISSING = "missing"  # No canonical content any more


@dataclass
class PlanItem:
    path: str
    action: UpdateAction
    state: FileState | None = None
    content: bytes | None = None

    @property
    def hash(self) -> str | None:
        return hash_bytes(self.content) if self.content is not None else None


@dataclass
class UpdatePlan:
    from_version: str
    to_version: str
    items: list[PlanItem] = field(default_factory=list)

    def by_action(self, action: UpdateAction) -> list[PlanItem]:
        return [i for i in self.items if i.action is action]

    @property
    def writes(self) -> list[PlanItem]:
        return [i for i in self.items if i.action in (UpdateAction.UPDATE, UpdateAction.ADD)]

    @property
    def skipped(self) -> list[PlanItem]:
        return self.by_action(UpdateAction.SKIP)

    @property
    def has_changes(self) -> bool:
        return bool(self.writes)


@dataclass
class InstallResult:
    written: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass
class UpdateResult:
    version: str
    written: list[str] = field(default_factory=list)
    skipped: list[PlanItem] = field(default_factory=list)
    backup: BackupResult | None = None


class Updater:
    """Installs and updates the files a canonical source provides."""

    def __init__(
        self,
        config: UpkeepConfig,
        source: CanonicalSource,
        version: str,
        manager: TransactionManager | None = None,
    ):
        self.config = config
        self.source = source
        self.version = version
        self.manager = manager or TransactionManager()
        self.store = MetadataStore(config)
        self.detector = DriftDetector(config)
        self.backups = BackupManager(config)

    def install(self, paths: list[str] | None = None, force: bool = False) -> InstallResult:
        """Write canonical content for *paths* (default: every source path).

        Existing files that differ from the canonical content and are not
        tracked are kept unless *force* is set.
        """
        metadata = self.store.load()
        tracked = metadata.files if metadata else {}
        result = InstallResult()
        ops = []
        hashes = {}

        for rel in sorted({normalize(p) for p in (paths or self.source.paths())}):
            content = self.source.read(rel)
            if content is None:
                raise UnknownSource(f"No canonical content for {rel}", path=rel)
            target = self.config.resolve(rel)
            if target.exists() and rel not in tracked and not force:
                if target.read_bytes() != content:
                    logger.warning("Keeping existing untracked file %s", rel)
                    result.skipped.append(rel)
                    continue
            target.parent.mkdir(parents=True, exist_ok=True)
            ops.append(TransactionOperation(path=target, content=content))
            hashes[rel] = hash_bytes(content)

        self.manager.apply_batch(ops)
        self.store.record_files(hashes, self.version, set_version=True)
        result.written = list(hashes)
        logger.info("Installed %d file(s) at version %s", len(result.written), self.version)
        return result

    def plan(self, paths: list[str] | None = None) -> UpdatePlan:
        """Decide what an update to ``self.version`` would do to each core path.

        Raises:
            MetadataMissing: Nothing was ever installed under this root.
        """
        metadata = self.store.load()
        if metadata is None:
            raise MetadataMissing(
                f"No metadata under {self.config.root}; install before updating"
            )

        if paths is None:
            candidates = set(metadata.files) | set(self.source.paths())
        else:
            candidates = {normalize(p) for p in paths}

        plan = UpdatePlan(from_version=metadata.installed_version, to_version=self.version)
        for rel in sorted(candidates):
            if not self.config.policy.is_core_file(rel):
                continue
            plan.items.append(self._plan_item(rel, metadata))

        self.store.touch_update_check()
        return plan

    def _plan_item(self, rel: str, metadata: Metadata) -> PlanItem:
        try:
            content = self.source.read(rel)
        except UnknownSource:
            content = None
        report = self.detector.classify(rel, metadata)
        item = PlanItem(path=rel, action=UpdateAction.SKIP, state=report.state, content=content)

        if content is None:
            item.action = UpdateAction.MISSING
        elif report.state is FileState.UNCHANGED:
            if report.current_hash == item.hash:
                item.action = UpdateAction.CURRENT
            else:
                item.action = UpdateAction.UPDATE
        elif report.state is FileState.USER_ADDED:
            target = self.config.resolve(rel)
            if not target.exists():
                item.action = UpdateAction.ADD
            elif target.is_file() and target.read_bytes() == content:
                item.action = UpdateAction.CURRENT
        return item

    def apply(self, plan: UpdatePlan, force: bool = False) -> UpdateResult:
        """Back up, then write every planned change in one transaction.

        With *force*, customised files are overwritten too; untracked ones
        are backed up individually first since a full backup only covers
        tracked files.
        """
        items = list(plan.writes)
        if force:
            items += [i for i in plan.skipped if i.content is not None]

        result = UpdateResult(version=plan.to_version)
        result.skipped = [i for i in plan.skipped if i not in items]
        if not items:
            logger.info("Nothing to update")
            return result

        result.backup = self.backups.create_full_backup(
            reason="force-update" if force else "update"
        )
        for item in items:
            if item.state is FileState.USER_ADDED and self.config.resolve(item.path).is_file():
                self.backups.backup_file(item.path, reason="pre-overwrite")

        ops = []
        for item in items:
            target = self.config.resolve(item.path)
            target.parent.mkdir(parents=True, exist_ok=True)
            ops.append(TransactionOperation(path=target, content=item.content))
        self.manager.apply_batch(ops)

        self.store.record_updates({i.path: i.hash for i in items}, plan.to_version)
        result.written = [i.path for i in items]
        logger.info(
            "Updated %d file(s) from %s to %s",
            len(result.written),
            plan.from_version,
            plan.to_version,
        )
        return result
