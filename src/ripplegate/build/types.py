"""Build verifier types."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ripplegate.workflow.types import Stage

TIMEOUT_DIAGNOSTIC = "timeout"


class BuildClassification(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class DiagnosticRule:
    """Ordered pattern rule mapping a diagnostic line back onto a stage."""

    name: str
    pattern: str
    stage: Stage


@dataclass(frozen=True)
class Diagnostic:
    """One diagnostic line with the stage it routes to (None on success)."""

    text: str
    routed_stage: Stage | None
    rule: str | None = None


@dataclass(frozen=True)
class BuildResult:
    """Outcome of one build invocation. Every run is kept for history."""

    change_id: str
    command: tuple[str, ...]
    classification: BuildClassification
    exit_code: int | None
    timed_out: bool
    diagnostics: tuple[Diagnostic, ...]
    started_at: str
    duration_sec: float

    @property
    def succeeded(self) -> bool:
        return self.classification is BuildClassification.SUCCESS

    def routed_stages(self) -> list[Stage]:
        """Distinct routed stages, earliest workflow stage first."""
        stages = {d.routed_stage for d in self.diagnostics if d.routed_stage is not None}
        return sorted(stages, key=lambda stage: stage.position)
