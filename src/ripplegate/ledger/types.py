"""Dependency ledger types."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, order=True)
class Dependency:
    """An external symbol the change relies on; orders by file path, then subject."""

    file_path: str
    subject: str

    def render(self) -> str:
        return f"{self.subject} ({self.file_path})"


@dataclass(frozen=True)
class MissingFact:
    """Why a dependency does not yet satisfy the generation gate."""

    dependency: Dependency
    member: str | None
    fields: tuple[str, ...]

    def render(self) -> str:
        if self.member is None:
            return f"no fact recorded for {self.dependency.render()}"
        return (
            f"{self.dependency.render()}: member {self.member!r} has undocumented "
            f"{', '.join(self.fields)}"
        )
