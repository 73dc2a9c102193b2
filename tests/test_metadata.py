"""Tests for the metadata store."""

import json
import tempfile
from pathlib import Path

import pytest

from upkeep.config import UpkeepConfig
from upkeep.errors import CorruptMetadata, MetadataMissing
from upkeep.sync.metadata import MetadataStore


def test_load_returns_none_when_uninitialized():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = MetadataStore(UpkeepConfig(root=tmpdir))
        assert store.load() is None
        assert not store.exists()
        assert store.tracked_files() == []


def test_initialize_writes_fresh_document():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = UpkeepConfig(root=tmpdir)
        store = MetadataStore(config)
        metadata = store.initialize("1.0.0")

        assert metadata.installed_version == "1.0.0"
        assert store.exists()
        data = json.loads(config.metadata_path.read_text())
        assert data["installed_version"] == "1.0.0"
        assert data["last_update_check"] is None
        assert data["last_update_applied"] is None
        assert data["files"] == {}


def test_record_file_initializes_metadata():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = MetadataStore(UpkeepConfig(root=tmpdir))
        record = store.record_file("docs/guide.md", "sha256:abc", "1.0.0")

        metadata = store.load()
        assert metadata.installed_version == "1.0.0"
        assert metadata.files["docs/guide.md"].hash == "sha256:abc"
        assert metadata.files["docs/guide.md"].source == "managed"
        assert record.installed_at != ""


def test_record_file_upserts_and_normalizes_paths():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = MetadataStore(UpkeepConfig(root=tmpdir))
        store.initialize("1.0.0")
        store.record_file("./a.md", "sha256:111", "1.0.0")
        store.record_file("a.md", "sha256:222", "1.0.0")

        metadata = store.load()
        assert list(metadata.files) == ["a.md"]
        assert metadata.files["a.md"].hash == "sha256:222"


def test_saved_document_round_trips():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = MetadataStore(UpkeepConfig(root=tmpdir, source_tag="npm"))
        store.record_file("a.md", "sha256:abc", "1.0.0")
        store.record_update("a.md", "sha256:def", "1.1.0")

        record = store.load().files["a.md"]
        assert record.source == "npm"
        assert record.hash == "sha256:def"
        assert record.updated_to_version == "1.1.0"
        assert record.updated_at is not None


def test_record_update_sets_version_and_timestamp():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = MetadataStore(UpkeepConfig(root=tmpdir))
        store.record_file("a.md", "sha256:abc", "1.0.0")
        store.record_update("b.md", "sha256:new", "2.0.0")

        metadata = store.load()
        assert metadata.installed_version == "2.0.0"
        assert metadata.last_update_applied is not None
        assert metadata.files["b.md"].hash == "sha256:new"
        assert metadata.files["b.md"].updated_at is None


def test_record_update_requires_metadata():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = MetadataStore(UpkeepConfig(root=tmpdir))
        with pytest.raises(MetadataMissing):
            store.record_update("a.md", "sha256:abc", "1.0.0")


def test_untrack_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = MetadataStore(UpkeepConfig(root=tmpdir))
        assert store.untrack_file("a.md") is False

        store.record_file("a.md", "sha256:abc", "1.0.0")
        store.record_file("b.md", "sha256:def", "1.0.0")
        assert store.untrack_file("a.md") is True
        assert store.tracked_files() == ["b.md"]


def test_touch_update_check():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = MetadataStore(UpkeepConfig(root=tmpdir))
        store.initialize("1.0.0")
        store.touch_update_check()
        assert store.load().last_update_check is not None


def test_corrupt_metadata_is_a_hard_error():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = UpkeepConfig(root=tmpdir)
        config.state_dir.mkdir()
        config.metadata_path.write_text("{not json")

        with pytest.raises(CorruptMetadata):
            MetadataStore(config).load()


def test_malformed_record_is_corrupt():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = UpkeepConfig(root=tmpdir)
        config.state_dir.mkdir()
        config.metadata_path.write_text(
            json.dumps({"installed_version": "1", "files": {"a.md": {"hash": "nohex"}}})
        )

        with pytest.raises(CorruptMetadata, match="a.md"):
            MetadataStore(config).load()


def test_non_object_document_is_corrupt():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = UpkeepConfig(root=tmpdir)
        config.state_dir.mkdir()
        config.metadata_path.write_text("[]")

        with pytest.raises(CorruptMetadata):
            MetadataStore(config).load()


def test_save_leaves_no_temp_files():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = UpkeepConfig(root=tmpdir)
        store = MetadataStore(config)
        for i in range(5):
            store.record_file(f"f{i}.md", f"sha256:{i:02x}", "1.0.0")

        assert sorted(p.name for p in config.state_dir.iterdir()) == ["update-metadata.json"]
        assert len(Path(config.metadata_path).read_text().strip()) > 0


def test_undecodable_metadata_is_corrupt():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = UpkeepConfig(root=tmpdir)
        config.state_dir.mkdir()
        config.metadata_path.write_bytes(b"\xff\xfe{not json")

        with pytest.raises(CorruptMetadata):
            MetadataStore(config).load()
