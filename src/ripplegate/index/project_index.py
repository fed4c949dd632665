"""Read-only adapters for the external project relationship index.

The engine only needs ``query(symbol) -> {"definitions": [...], "references": [...]}``.
Definitions carry ``name`` and ``file``; references carry ``file`` and an
optional ``line``.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

import yaml  # type: ignore[import-untyped]

from ripplegate.artifacts.canonical_json import sha256_file
from ripplegate.errors import ProjectIndexError
from ripplegate.schemas.validator import validate_data


class ProjectIndex(Protocol):
    """Code-intelligence collaborator."""

    def query(self, symbol: str) -> dict[str, list[dict[str, Any]]]: ...


def _empty_result() -> dict[str, list[dict[str, Any]]]:
    return {"definitions": [], "references": []}


class MappingProjectIndex:
    """Index backed by an in-memory ``{symbol: {definitions, references}}`` mapping."""

    def __init__(self, symbols: Mapping[str, Mapping[str, Any]]) -> None:
        self._symbols = {str(name): dict(entry) for name, entry in symbols.items()}

    def query(self, symbol: str) -> dict[str, list[dict[str, Any]]]:
        entry = self._symbols.get(symbol)
        if entry is None:
            return _empty_result()
        return {
            "definitions": [dict(d) for d in entry.get("definitions", [])],
            "references": [dict(r) for r in entry.get("references", [])],
        }

    def symbols(self) -> list[str]:
        return sorted(self._symbols)


class FileProjectIndex(MappingProjectIndex):
    """Index exported to a YAML or JSON file by an external code-intelligence tool."""

    def __init__(self, path: Path) -> None:
        self.path = path
        data = self._load(path)
        super().__init__(data["symbols"])
        self.sha256 = sha256_file(path)

    @staticmethod
    def _load(path: Path) -> dict[str, Any]:
        if not path.exists():
            raise ProjectIndexError(f"Project index not found: {path}")
        try:
            text = path.read_text(encoding="utf-8")
            if path.suffix == ".json":
                data = json.loads(text)
            else:
                data = yaml.safe_load(text)
        except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
            raise ProjectIndexError(f"Failed to read project index {path}: {e}") from e

        if not isinstance(data, dict):
            raise ProjectIndexError(f"Project index {path} must be a mapping with a 'symbols' key")
        ok, errors = validate_data(data, "project_index", strict=False)
        if not ok:
            raise ProjectIndexError(
                f"Project index {path} is invalid:\n" + "\n".join(f"  - {msg}" for msg in errors)
            )
        return data
