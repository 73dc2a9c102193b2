"""Drift-tracked updates — the layer that keeps installed files and user edits apart.

This package provides the primitives for:
- Metadata: which files the engine installed, with which hash and version
- Drift detection: has a tracked file changed since the engine wrote it
- Content policy: which paths are user content and must never be overwritten
- Backups: snapshotting tracked files before an update, and restoring them
- Updating: planning and applying an upgrade without clobbering user edits
"""
