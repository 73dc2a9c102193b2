"""Filesystem primitives — content hashing, atomic writes, and batch transactions.

This package provides the primitives for:
- Hashing: stable "algorithm:hex" digests used to detect changed files
- Atomic writes: temp-file-and-rename so a target is never half written
- Transactions: all-or-nothing writes across several files, with rollback
"""
