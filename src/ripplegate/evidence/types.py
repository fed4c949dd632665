"""Evidence store types."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

UNDOCUMENTED = "undocumented"

# Member fields that must be concrete before generation may use them.
MEMBER_FIELDS: tuple[str, ...] = ("type", "signature", "nullable", "constraints")


def _require_present(owner: str, field_name: str, value: object) -> None:
    if value is None:
        raise ValueError(f"{owner}: field '{field_name}' is missing; use '{UNDOCUMENTED}' explicitly")
    if isinstance(value, str) and not value.strip():
        raise ValueError(f"{owner}: field '{field_name}' is empty; use '{UNDOCUMENTED}' explicitly")


@dataclass(frozen=True)
class Member:
    """One documented member of a dependency (method, property, constructor...)."""

    name: str
    type: str
    signature: str
    nullable: bool | str
    constraints: str

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("member name must be a non-empty string")
        owner = f"member {self.name!r}"
        for field_name in MEMBER_FIELDS:
            _require_present(owner, field_name, getattr(self, field_name))
        if isinstance(self.nullable, str) and self.nullable != UNDOCUMENTED:
            raise ValueError(f"{owner}: nullable must be a boolean or '{UNDOCUMENTED}'")

    def undocumented_fields(self) -> tuple[str, ...]:
        return tuple(name for name in MEMBER_FIELDS if getattr(self, name) == UNDOCUMENTED)

    @property
    def documented(self) -> bool:
        return not self.undocumented_fields()


@dataclass(frozen=True)
class DependencyFact:
    """Recorded, attributed description of a dependency's exact shape.

    Facts are immutable. A correction is a new fact whose members supersede
    same-named members of earlier facts for the same subject and file.
    """

    fact_id: str
    change_id: str
    subject: str
    file_path: str
    members: tuple[Member, ...]
    recorded_at: str
    sequence: int

    def __post_init__(self) -> None:
        _require_present("fact", "subject", self.subject)
        _require_present(f"fact {self.subject!r}", "file_path", self.file_path)
        if not self.members:
            raise ValueError(f"fact {self.subject!r}: at least one member must be documented")
        names = [member.name for member in self.members]
        if len(set(names)) != len(names):
            raise ValueError(f"fact {self.subject!r}: duplicate member names")


class DiscrepancyKind(str, Enum):
    UNVERIFIED = "unverified"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class AssertedUsage:
    """A (name, type, signature) triple the generation step claims to have used."""

    name: str
    type: str
    signature: str


@dataclass(frozen=True)
class Discrepancy:
    """Self-validation finding."""

    kind: DiscrepancyKind
    name: str
    detail: str

    def render(self) -> str:
        return f"{self.kind.value}: {self.name}: {self.detail}"


@dataclass(frozen=True)
class FactDraft:
    """A fact as asserted by the reader, before the store assigns id and sequence."""

    subject: str
    file_path: str
    members: tuple[Member, ...]
