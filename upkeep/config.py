"""Engine configuration — where upkeep keeps its state under a project root.

Every component takes an ``UpkeepConfig`` at construction instead of
reading module-level constants, so two roots (or two layouts) can be
handled side by side.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

from upkeep.errors import ValidationFailed
from upkeep.sync.policy import ContentPolicy, policy_from_dict

CONFIG_FILE = "config.yaml"


@dataclass
class UpkeepConfig:
    """Layout of the engine's state under one project root."""

    root: Path
    tool_dir: str = ".upkeep"
    metadata_file: str = "update-metadata.json"
    backup_dir: str = "backups"
    manifest_file: str = "manifest.json"
    source_tag: str = "managed"
    policy: ContentPolicy = field(default_factory=ContentPolicy)

    def __post_init__(self):
        self.root = Path(self.root).resolve()

    @property
    def state_dir(self) -> Path:
        return self.root / self.tool_dir

    @property
    def metadata_relpath(self) -> str:
        return f"{self.tool_dir}/{self.metadata_file}"

    @property
    def metadata_path(self) -> Path:
        return self.state_dir / self.metadata_file

    @property
    def backups_path(self) -> Path:
        return self.state_dir / self.backup_dir

    def resolve(self, relative_path: str) -> Path:
        """Absolute location of a root-relative path."""
        return self.root / relative_path

    def relative(self, path: str | Path) -> str:
        """POSIX path of *path* relative to the root."""
        p = Path(path)
        if p.is_absolute():
            p = p.resolve().relative_to(self.root)
        return p.as_posix()


def load_config(root: str | Path, config_path: str | Path | None = None) -> UpkeepConfig:
    """Build the configuration for *root*.

    Reads ``<root>/.upkeep/config.yaml`` (or *config_path*) when present;
    missing keys keep their defaults.
    """
    root = Path(root)
    path = Path(config_path) if config_path else root / UpkeepConfig.tool_dir / CONFIG_FILE
    if not path.exists():
        if config_path:
            raise ValidationFailed(f"Config file not found: {path}", path=path)
        return UpkeepConfig(root=root)

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValidationFailed(f"Config file must contain a mapping: {path}", path=path)

    known = {"tool_dir", "metadata_file", "backup_dir", "manifest_file", "source_tag"}
    unknown = set(data) - known - {"policy"}
    if unknown:
        raise ValidationFailed(
            f"Unknown config keys in {path}: {', '.join(sorted(unknown))}", path=path
        )

    return UpkeepConfig(
        root=root,
        policy=policy_from_dict(data.get("policy")),
        **{k: str(v) for k, v in data.items() if k in known},
    )
