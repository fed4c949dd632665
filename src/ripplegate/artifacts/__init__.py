"""Deterministic serialization helpers."""

from ripplegate.artifacts.canonical_json import canonical_dumps, sha256_file, sha256_text

__all__ = ["canonical_dumps", "sha256_file", "sha256_text"]
