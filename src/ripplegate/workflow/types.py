"""Gate state machine types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Stage(str, Enum):
    """Ordered workflow stages; each is both a gate and a record."""

    SCOPED = "scoped"
    IMPACT_ANALYZED = "impact_analyzed"
    DEPENDENCIES_MAPPED = "dependencies_mapped"
    FACTS_DOCUMENTED = "facts_documented"
    GENERATED = "generated"
    SELF_VALIDATED = "self_validated"
    COMPILED = "compiled"
    CONSUMERS_VERIFIED = "consumers_verified"
    DONE = "done"

    @property
    def position(self) -> int:
        return STAGE_ORDER.index(self)


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)

# Stages that additionally require every dependency to be fully documented.
FACT_GATED_STAGES: frozenset[Stage] = frozenset(
    {Stage.GENERATED, Stage.SELF_VALIDATED, Stage.COMPILED}
)


class StageStatus(str, Enum):
    """Status of a single StageRecord."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def satisfied(self) -> bool:
        return self in (StageStatus.PASSED, StageStatus.SKIPPED)


class RequestStatus(str, Enum):
    """Lifecycle status of a ChangeRequest."""

    OPEN = "open"
    DONE = "done"
    ABANDONED = "abandoned"

    @property
    def terminal(self) -> bool:
        return self is not RequestStatus.OPEN


@dataclass
class ChangeRequest:
    """Declared intent to modify code."""

    change_id: str
    scope: str
    success_criteria: tuple[str, ...]
    has_ripple_effect: bool
    changed_symbols: tuple[str, ...] = ()
    referenced_symbols: tuple[str, ...] = ()
    status: RequestStatus = RequestStatus.OPEN
    created_at: str = ""
    abandon_reason: str | None = None


@dataclass
class StageRecord:
    """Outcome of one stage for one change request."""

    change_id: str
    stage: Stage
    status: StageStatus = StageStatus.PENDING
    updated_at: str = ""
    attempts: int = 0
    diagnostics: tuple[str, ...] = ()


@dataclass(frozen=True)
class Event:
    """Journal entry for a transition, refusal or build."""

    sequence: int
    at: str
    kind: str  # entered, passed, failed, skipped, refused, reset, build, abandoned, done
    stage: str | None
    detail: str = ""


@dataclass
class StatusView:
    """Read-only snapshot rendered by `status`."""

    change: ChangeRequest
    stages: list[StageRecord]
    current_stage: Stage | None
    open_consumers: list[str] = field(default_factory=list)
    missing_facts: list[str] = field(default_factory=list)
