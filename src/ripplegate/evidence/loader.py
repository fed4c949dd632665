"""Read fact drafts from YAML/JSON files and inline CLI member specs."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from ripplegate.evidence.types import UNDOCUMENTED, AssertedUsage, FactDraft, Member
from ripplegate.schemas.validator import validate_data

SPEC_SEPARATOR = ";"

_TRUE = {"true", "yes", "1"}
_FALSE = {"false", "no", "0"}


def _parse_nullable(value: Any) -> bool | str:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    if text == UNDOCUMENTED:
        return UNDOCUMENTED
    raise ValueError(f"nullable must be true, false or '{UNDOCUMENTED}', got {value!r}")


def parse_member_spec(spec: str) -> Member:
    """Parse ``name;type;signature[;nullable[;constraints]]``.

    Omitted trailing fields are recorded as undocumented, never guessed.
    """
    parts = spec.split(SPEC_SEPARATOR, 4)
    if len(parts) < 3:
        raise ValueError(
            f"member spec {spec!r} must look like name;type;signature[;nullable[;constraints]]"
        )
    name, type_, signature = (part.strip() for part in parts[:3])
    nullable: bool | str = _parse_nullable(parts[3]) if len(parts) > 3 else UNDOCUMENTED
    constraints = parts[4].strip() if len(parts) > 4 else UNDOCUMENTED
    return Member(
        name=name,
        type=type_,
        signature=signature,
        nullable=nullable,
        constraints=constraints,
    )


def drafts_from_data(data: Any) -> list[FactDraft]:
    """Validate a parsed fact document and convert it to drafts."""
    validate_data(data, "dependency_fact_input", strict=True)
    drafts: list[FactDraft] = []
    for raw in data["facts"]:
        members = tuple(
            Member(
                name=m["name"],
                type=m["type"],
                signature=m["signature"],
                nullable=_parse_nullable(m["nullable"]),
                constraints=m["constraints"],
            )
            for m in raw["members"]
        )
        drafts.append(FactDraft(subject=raw["subject"], file_path=raw["file"], members=members))
    return drafts


def _read_document(path: Path) -> Any:
    """Parse ``.json`` as JSON and anything else as YAML."""
    text = path.read_text(encoding="utf-8")
    try:
        return json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValueError(f"cannot parse {path}: {e}") from e


def load_fact_file(path: Path) -> list[FactDraft]:
    """Load facts from a ``.json`` file, or YAML for any other suffix."""
    return drafts_from_data(_read_document(path))


def parse_usage_spec(spec: str) -> AssertedUsage:
    """Parse ``name;type;signature`` as asserted by the generation step."""
    parts = [part.strip() for part in spec.split(SPEC_SEPARATOR, 2)]
    if len(parts) != 3 or not all(parts):
        raise ValueError(f"usage spec {spec!r} must look like name;type;signature")
    return AssertedUsage(name=parts[0], type=parts[1], signature=parts[2])


def load_usage_file(path: Path) -> list[AssertedUsage]:
    """Load ``{usage: [{name, type, signature}, ...]}`` from YAML or JSON."""
    data = _read_document(path)
    validate_data(data, "asserted_usage", strict=True)
    return [
        AssertedUsage(name=raw["name"], type=raw["type"], signature=raw["signature"])
        for raw in data["usage"]
    ]
