"""Content policy — which tracked paths the engine may overwrite.

User content (product specs, auto-generated artifacts, ephemeral local
state) is never overwritten automatically. Core content lives under one
of the configured core prefixes and is not user content. Everything else
is left alone by updates but still tracked for drift.

Patterns are shell-style globs matched against POSIX relative paths
(``*`` also matches ``/``). A pattern ending in ``/`` matches everything
under that directory.
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

DEFAULT_USER_PATTERNS = ["*.local", "*.backup"]


class ContentClass(Enum):
    """How the update policy treats a path."""

    USER = "user"  # Never auto-overwritten
    CORE = "core"  # Managed by the engine
    OTHER = "other"  # Outside every core prefix


@dataclass
class ContentPolicy:
    """Path-pattern policy separating user content from core content."""

    user_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_USER_PATTERNS))
    core_prefixes: list[str] = field(default_factory=list)  # Empty: everything is core

    def is_user_content(self, relative_path: str) -> bool:
        path = normalize(relative_path)
        return any(_pattern_matches(p, path) for p in self.user_patterns)

    def is_core_file(self, relative_path: str) -> bool:
        path = normalize(relative_path)
        if self.is_user_content(path):
            return False
        if not self.core_prefixes:
            return True
        return any(path == prefix or path.startswith(prefix) for prefix in self.core_prefixes)

    def classify(self, relative_path: str) -> ContentClass:
        if self.is_user_content(relative_path):
            return ContentClass.USER
        if self.is_core_file(relative_path):
            return ContentClass.CORE
        return ContentClass.OTHER


def normalize(relative_path: str) -> str:
    """POSIX form of a relative path, without a leading ``./``."""
    path = Path(relative_path).as_posix()
    while path.startswith("./"):
        path = path[2:]
    return path


def policy_from_dict(data: dict[str, Any] | None) -> ContentPolicy:
    data = data or {}
    user_patterns = data.get("user_patterns")
    return ContentPolicy(
        user_patterns=list(DEFAULT_USER_PATTERNS if user_patterns is None else user_patterns),
        core_prefixes=list(data.get("core_prefixes", [])),
    )


def load_policy(path: str | Path) -> ContentPolicy:
    """Load a content policy from a YAML file."""
    with open(path) as f:
        data = yaml.safe_load(f)
    return policy_from_dict(data)


def _pattern_matches(pattern: str, path: str) -> bool:
    if pattern.endswith("/"):
        return path.startswith(pattern)
    return fnmatch.fnmatchcase(path, pattern)
