"""Tests for installing and updating managed files."""

import tempfile
from pathlib import Path

import pytest

from upkeep.config import UpkeepConfig
from upkeep.errors import MetadataMissing, TransactionAborted, UnknownSource
from upkeep.fs import transaction
from upkeep.fs.hashing import hash_bytes
from upkeep.sync.backup import BackupManager
from upkeep.sync.drift import DriftDetector, FileState
from upkeep.sync.metadata import MetadataStore
from upkeep.sync.policy import ContentPolicy
from upkeep.sync.source import DirectorySource, MappingSource
from upkeep.sync.updater import UpdateAction, Updater

V1 = {
    "agents/backend.md": "backend v1",
    "agents/qa.md": "qa v1",
    "commands/run.md": "run v1",
}

V2 = {
    "agents/backend.md": "backend v2",
    "agents/qa.md": "qa v1",
    "commands/run.md": "run v2",
    "commands/new.md": "new in v2",
}


def _installed(root: Path, config: UpkeepConfig | None = None) -> UpkeepConfig:
    config = config or UpkeepConfig(root=root)
    Updater(config, MappingSource(V1), "1.0.0").install()
    return config


def _actions(plan) -> dict:
    return {item.path: item.action for item in plan.items}


# --- Install ---


def test_install_writes_and_tracks_files():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        result = Updater(UpkeepConfig(root=root), MappingSource(V1), "1.0.0").install()

        assert sorted(result.written) == sorted(V1)
        assert (root / "agents" / "qa.md").read_text() == "qa v1"

        metadata = MetadataStore(UpkeepConfig(root=root)).load()
        assert metadata.installed_version == "1.0.0"
        assert metadata.files["agents/qa.md"].hash == hash_bytes(b"qa v1")


def test_install_keeps_untracked_files_unless_forced():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        (root / "agents").mkdir()
        (root / "agents" / "qa.md").write_text("my own qa")
        config = UpkeepConfig(root=root)

        result = Updater(config, MappingSource(V1), "1.0.0").install()
        assert result.skipped == ["agents/qa.md"]
        assert (root / "agents" / "qa.md").read_text() == "my own qa"
        assert "agents/qa.md" not in MetadataStore(config).tracked_files()

        Updater(config, MappingSource(V1), "1.0.0").install(force=True)
        assert (root / "agents" / "qa.md").read_text() == "qa v1"


def test_install_unknown_path_raises():
    with tempfile.TemporaryDirectory() as tmpdir:
        updater = Updater(UpkeepConfig(root=tmpdir), MappingSource(V1), "1.0.0")
        with pytest.raises(UnknownSource):
            updater.install(paths=["agents/nope.md"])


# --- Plan ---


def test_plan_requires_install():
    with tempfile.TemporaryDirectory() as tmpdir:
        updater = Updater(UpkeepConfig(root=tmpdir), MappingSource(V2), "2.0.0")
        with pytest.raises(MetadataMissing):
            updater.plan()


def test_plan_classifies_every_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        config = _installed(root)
        (root / "commands" / "run.md").write_text("run, customised")

        source = dict(V2)
        del source["agents/backend.md"]
        plan = Updater(config, MappingSource(source), "2.0.0").plan()

        assert plan.from_version == "1.0.0"
        assert plan.to_version == "2.0.0"
        assert _actions(plan) == {
            "agents/backend.md": UpdateAction.MISSING,
            "agents/qa.md": UpdateAction.CURRENT,
            "commands/new.md": UpdateAction.ADD,
            "commands/run.md": UpdateAction.SKIP,
        }
        assert plan.skipped[0].state is FileState.MODIFIED
        assert MetadataStore(config).load().last_update_check is not None


def test_plan_only_considers_core_files():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        config = UpkeepConfig(root=root, policy=ContentPolicy(core_prefixes=["agents/"]))
        _installed(root, config)

        plan = Updater(config, MappingSource(V2), "2.0.0").plan()

        assert sorted(_actions(plan)) == ["agents/backend.md", "agents/qa.md"]


def test_plan_treats_identical_untracked_file_as_current():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        config = _installed(root)
        (root / "commands" / "new.md").write_text("new in v2")
        (root / "commands" / "other.md").write_text("mine")

        source = {**V2, "commands/other.md": "upstream"}
        plan = Updater(config, MappingSource(source), "2.0.0").plan()

        actions = _actions(plan)
        assert actions["commands/new.md"] is UpdateAction.CURRENT
        assert actions["commands/other.md"] is UpdateAction.SKIP


# --- Apply ---


def test_update_preserves_user_edits():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        config = _installed(root)
        (root / "commands" / "run.md").write_text("run, customised")

        updater = Updater(config, MappingSource(V2), "2.0.0")
        result = updater.apply(updater.plan())

        assert sorted(result.written) == ["agents/backend.md", "commands/new.md"]
        assert [i.path for i in result.skipped] == ["commands/run.md"]
        assert (root / "agents" / "backend.md").read_text() == "backend v2"
        assert (root / "commands" / "new.md").read_text() == "new in v2"
        assert (root / "commands" / "run.md").read_text() == "run, customised"

        metadata = MetadataStore(config).load()
        assert metadata.installed_version == "2.0.0"
        assert metadata.files["agents/backend.md"].updated_to_version == "2.0.0"
        assert metadata.last_update_applied is not None

        states = {r.path: r.state for r in DriftDetector(config).check_all()}
        assert states["agents/backend.md"] is FileState.UNCHANGED
        assert states["commands/new.md"] is FileState.UNCHANGED
        assert states["commands/run.md"] is FileState.MODIFIED


def test_update_backs_up_before_writing():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        config = _installed(root)

        updater = Updater(config, MappingSource(V2), "2.0.0")
        result = updater.apply(updater.plan())

        assert result.backup is not None
        assert (result.backup.path / "agents" / "backend.md").read_text() == "backend v1"
        assert result.backup.manifest.version == "1.0.0"


def test_update_with_nothing_to_do():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        config = _installed(root)

        updater = Updater(config, MappingSource(V1), "1.0.0")
        plan = updater.plan()
        result = updater.apply(plan)

        assert not plan.has_changes
        assert result.written == []
        assert result.backup is None


def test_forced_update_overwrites_after_backup():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        config = _installed(root)
        (root / "commands" / "run.md").write_text("run, customised")
        (root / "commands" / "new.md").write_text("mine")

        updater = Updater(config, MappingSource(V2), "2.0.0")
        result = updater.apply(updater.plan(), force=True)

        assert (root / "commands" / "run.md").read_text() == "run v2"
        assert (root / "commands" / "new.md").read_text() == "new in v2"
        assert result.skipped == []
        assert (result.backup.path / "commands" / "run.md").read_text() == "run, customised"

        single = [
            b for b in BackupManager(config).list_backups() if b.manifest.reason == "pre-overwrite"
        ]
        assert len(single) == 1
        assert (single[0].path / "commands" / "new.md").read_text() == "mine"


def test_failed_transaction_leaves_files_and_metadata(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        config = _installed(root)
        failing = config.resolve("commands/run.md")
        real_replace = transaction.replace_file

        def replace(temp, target):
            if target == failing:
                raise OSError("disk full")
            real_replace(temp, target)

        monkeypatch.setattr("upkeep.fs.transaction.replace_file", replace)

        updater = Updater(config, MappingSource(V2), "2.0.0")
        with pytest.raises(TransactionAborted):
            updater.apply(updater.plan())

        assert (root / "agents" / "backend.md").read_text() == "backend v1"
        assert not (root / "commands" / "new.md").exists()
        assert MetadataStore(config).load().installed_version == "1.0.0"
        assert all(r.state is FileState.UNCHANGED for r in DriftDetector(config).check_all())


# --- Sources ---


def test_directory_source_walks_package():
    with tempfile.TemporaryDirectory() as tmpdir:
        pkg = Path(tmpdir)
        (pkg / "agents").mkdir()
        (pkg / "agents" / "a.md").write_text("a")
        (pkg / "node_modules" / "x").mkdir(parents=True)
        (pkg / "node_modules" / "x" / "index.js").write_text("")
        (pkg / "template").mkdir()
        (pkg / "template" / "CLAUDE.md").write_text("root doc")

        source = DirectorySource(pkg, remap={"CLAUDE.md": "template/CLAUDE.md"})

        assert "node_modules/x/index.js" not in source.paths()
        assert "agents/a.md" in source.paths()
        assert "CLAUDE.md" in source.paths()
        assert source.read("CLAUDE.md") == b"root doc"
        assert source.read("agents/missing.md") is None


def test_directory_source_allowed_prefixes():
    with tempfile.TemporaryDirectory() as tmpdir:
        pkg = Path(tmpdir)
        (pkg / "agents").mkdir()
        (pkg / "agents" / "a.md").write_text("a")
        (pkg / "README.md").write_text("readme")

        source = DirectorySource(pkg, allowed_prefixes=["agents/"])

        assert source.paths() == ["agents/a.md"]
        assert source.read("agents/a.md") == b"a"
        with pytest.raises(UnknownSource):
            source.read("README.md")


def test_update_from_directory_source():
    with tempfile.TemporaryDirectory() as tmpdir:
        base = Path(tmpdir)
        root, v1, v2 = base / "project", base / "v1", base / "v2"
        for pkg, files in ((v1, V1), (v2, V2)):
            for rel, content in files.items():
                (pkg / rel).parent.mkdir(parents=True, exist_ok=True)
                (pkg / rel).write_text(content)
        root.mkdir()

        config = UpkeepConfig(root=root)
        Updater(config, DirectorySource(v1), "1.0.0").install()
        updater = Updater(config, DirectorySource(v2), "2.0.0")
        updater.apply(updater.plan())

        assert (root / "commands" / "run.md").read_text() == "run v2"
        assert MetadataStore(config).load().installed_version == "2.0.0"
