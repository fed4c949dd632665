"""Gate state machine: advances a change request through ordered stages.

Every operation runs inside one store transaction. Gate checks happen before
any StageRecord is touched; a refused entry only appends a journal event, so
the machine never advances on an unmet precondition.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import TypeVar

from ripplegate.build.types import BuildResult, DiagnosticRule
from ripplegate.build.verifier import DEFAULT_RULES, run_build
from ripplegate.errors import (
    ChangeClosed,
    ChangeStillOpen,
    PreconditionUnmet,
    ProjectIndexError,
    UnknownConsumer,
)
from ripplegate.evidence.store import cross_check, make_fact, record, route_discrepancies
from ripplegate.evidence.types import AssertedUsage, Discrepancy, FactDraft
from ripplegate.impact.tracker import compute_consumers, mark_category, unsatisfied
from ripplegate.impact.types import ConsumerEntry
from ripplegate.index.project_index import ProjectIndex
from ripplegate.ledger.dependencies import compute_dependencies, missing_facts
from ripplegate.ledger.types import Dependency
from ripplegate.storage.record_set import RecordSet
from ripplegate.storage.state_store import StateStore
from ripplegate.utils.timestamps import Clock, wallclock_timestamp
from ripplegate.workflow.types import (
    FACT_GATED_STAGES,
    STAGE_ORDER,
    ChangeRequest,
    Event,
    RequestStatus,
    Stage,
    StageRecord,
    StageStatus,
    StatusView,
)

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


def previous_required(record_set: RecordSet, stage: Stage) -> StageRecord | None:
    """The closest earlier stage that is not skipped."""
    for earlier in reversed(STAGE_ORDER[: stage.position]):
        candidate = record_set.stage(earlier)
        if candidate.status is not StageStatus.SKIPPED:
            return candidate
    return None


def current_stage(record_set: RecordSet) -> Stage | None:
    """First stage still awaiting a pass, or None once the request is terminal."""
    if record_set.change.status.terminal:
        return None
    for stage in STAGE_ORDER:
        if not record_set.stage(stage).status.satisfied:
            return stage
    return None


def ordering_violations(record_set: RecordSet) -> list[str]:
    """Stages marked passed while an earlier stage is neither passed nor skipped."""
    violations: list[str] = []
    for stage in STAGE_ORDER[1:]:
        if record_set.stage(stage).status is not StageStatus.PASSED:
            continue
        for earlier in STAGE_ORDER[: stage.position]:
            earlier_status = record_set.stage(earlier).status
            if not earlier_status.satisfied:
                violations.append(f"{stage.value} passed while {earlier.value} is {earlier_status.value}")
    return violations


class GateMachine:
    """Orchestrates change requests over a state store and a project index."""

    def __init__(
        self,
        store: StateStore,
        index: ProjectIndex | None = None,
        *,
        clock: Clock = wallclock_timestamp,
        build_rules: Sequence[DiagnosticRule] = DEFAULT_RULES,
        build_cwd: Path | None = None,
        build_timeout_sec: float | None = None,
    ) -> None:
        self.store = store
        self.index = index
        self.clock = clock
        self.build_rules = tuple(build_rules)
        self.build_cwd = build_cwd
        self.build_timeout_sec = build_timeout_sec

    # ------------------------------------------------------------------
    # record helpers

    def _event(self, record_set: RecordSet, kind: str, stage: Stage | None, detail: str = "") -> None:
        record_set.append_event(at=self.clock(), kind=kind, stage=stage, detail=detail)

    def _set(
        self,
        record_set: RecordSet,
        stage: Stage,
        status: StageStatus,
        diagnostics: Iterable[str] = (),
        *,
        detail: str = "",
    ) -> StageRecord:
        stage_record = record_set.stage(stage)
        stage_record.status = status
        stage_record.diagnostics = tuple(diagnostics)
        stage_record.updated_at = self.clock()
        self._event(record_set, status.value, stage, detail)
        logger.info("%s: %s -> %s", record_set.change_id, stage.value, status.value)
        return stage_record

    def _reset_after(self, record_set: RecordSet, stage: Stage) -> None:
        """Return every later, non-skipped stage to pending."""
        for later in STAGE_ORDER[stage.position + 1 :]:
            later_record = record_set.stage(later)
            if later_record.status in (StageStatus.SKIPPED, StageStatus.PENDING):
                continue
            later_record.status = StageStatus.PENDING
            later_record.diagnostics = ()
            later_record.updated_at = self.clock()
            self._event(record_set, "reset", later, f"re-entered {stage.value}")

    def _begin(self, record_set: RecordSet, stage: Stage) -> StageRecord:
        self._reset_after(record_set, stage)
        stage_record = record_set.stage(stage)
        stage_record.attempts += 1
        return self._set(record_set, stage, StageStatus.IN_PROGRESS)

    def _route_back(self, record_set: RecordSet, target: Stage, failed: Stage) -> None:
        """Send the workflow back to ``target`` after ``failed`` did not pass."""
        for stage in STAGE_ORDER[target.position : failed.position]:
            if record_set.stage(stage).status is StageStatus.SKIPPED:
                continue
            self._set(record_set, stage, StageStatus.PENDING, detail=f"routed back from {failed.value}")

    def _complete(self, record_set: RecordSet) -> None:
        self._set(record_set, Stage.DONE, StageStatus.PASSED)
        record_set.change.status = RequestStatus.DONE
        self._event(record_set, "done", None, "change request complete")

    # ------------------------------------------------------------------
    # gate checks

    def _ensure_open(self, record_set: RecordSet) -> None:
        if record_set.change.status.terminal:
            raise ChangeClosed(record_set.change_id, record_set.change.status.value)

    def _check_entry(self, record_set: RecordSet, stage: Stage) -> None:
        if stage in FACT_GATED_STAGES:
            missing = missing_facts(record_set)
            if missing:
                raise PreconditionUnmet(stage.value, [item.render() for item in missing])
        prior = previous_required(record_set, stage)
        if prior is not None and prior.status is not StageStatus.PASSED:
            raise PreconditionUnmet(stage.value, [f"{prior.stage.value} is {prior.status.value}"])

    def _gated(
        self,
        change_id: str,
        stage: Stage,
        body: Callable[[RecordSet], _T],
        extra_gate: Callable[[RecordSet], list[str]] | None = None,
    ) -> _T:
        """Run ``body`` for ``stage`` if its gate holds; journal refusals."""
        with self.store.transaction(change_id) as record_set:
            self._ensure_open(record_set)
            refusal = self._refusal(record_set, stage, extra_gate)
            if refusal is None:
                return body(record_set)
            # The refusal event is saved with the transaction; the raise comes after.
            self._event(record_set, "refused", stage, str(refusal))
            logger.warning("%s: %s", change_id, refusal)
        raise refusal

    def _refusal(
        self,
        record_set: RecordSet,
        stage: Stage,
        extra_gate: Callable[[RecordSet], list[str]] | None,
    ) -> PreconditionUnmet | None:
        try:
            self._check_entry(record_set, stage)
        except PreconditionUnmet as exc:
            return exc
        if extra_gate is not None:
            missing = extra_gate(record_set)
            if missing:
                return PreconditionUnmet(stage.value, missing)
        return None

    def _require_index(self) -> ProjectIndex:
        if self.index is None:
            raise ProjectIndexError("no project relationship index configured")
        return self.index

    # ------------------------------------------------------------------
    # stages

    def scope(
        self,
        change_id: str,
        scope: str,
        *,
        success_criteria: Sequence[str] = (),
        has_ripple_effect: bool,
        changed_symbols: Sequence[str] = (),
        referenced_symbols: Sequence[str] = (),
    ) -> RecordSet:
        """Declare a change request; this passes the ``scoped`` stage."""
        if not scope.strip():
            raise ValueError("scope description must not be empty")
        if has_ripple_effect and not changed_symbols:
            raise ValueError("a change with a ripple effect must name at least one changed symbol")

        change = ChangeRequest(
            change_id=change_id,
            scope=scope.strip(),
            success_criteria=tuple(success_criteria),
            has_ripple_effect=has_ripple_effect,
            changed_symbols=tuple(dict.fromkeys(changed_symbols)),
            referenced_symbols=tuple(dict.fromkeys(referenced_symbols)),
            created_at=self.clock(),
        )
        record_set = RecordSet.new(change)
        self._event(record_set, "created", None, change.scope)
        record_set.stage(Stage.SCOPED).attempts = 1
        self._set(record_set, Stage.SCOPED, StageStatus.PASSED)
        if not has_ripple_effect:
            self._set(record_set, Stage.IMPACT_ANALYZED, StageStatus.SKIPPED, detail="no ripple effect")
            self._set(record_set, Stage.CONSUMERS_VERIFIED, StageStatus.SKIPPED, detail="no ripple effect")
        self.store.create(record_set)
        return record_set

    def rescope(
        self,
        change_id: str,
        *,
        scope: str | None = None,
        success_criteria: Sequence[str] | None = None,
        has_ripple_effect: bool | None = None,
        changed_symbols: Sequence[str] | None = None,
        referenced_symbols: Sequence[str] | None = None,
    ) -> RecordSet:
        """Change the declared scope; every later stage must be redone."""
        with self.store.transaction(change_id) as record_set:
            self._ensure_open(record_set)
            change = record_set.change
            if scope is not None:
                if not scope.strip():
                    raise ValueError("scope description must not be empty")
                change.scope = scope.strip()
            if success_criteria is not None:
                change.success_criteria = tuple(success_criteria)
            if changed_symbols is not None:
                change.changed_symbols = tuple(dict.fromkeys(changed_symbols))
            if referenced_symbols is not None:
                referenced = tuple(dict.fromkeys(referenced_symbols))
                if referenced != change.referenced_symbols:
                    # the old mapping no longer describes the scope
                    record_set.dependencies = []
                change.referenced_symbols = referenced
            if has_ripple_effect is not None:
                change.has_ripple_effect = has_ripple_effect
            if change.has_ripple_effect and not change.changed_symbols:
                raise ValueError("a change with a ripple effect must name at least one changed symbol")

            self._begin(record_set, Stage.SCOPED)
            self._set(record_set, Stage.SCOPED, StageStatus.PASSED, detail="rescoped")
            for entry in record_set.active_consumers():
                entry.superseded = True
            if change.has_ripple_effect:
                for stage in (Stage.IMPACT_ANALYZED, Stage.CONSUMERS_VERIFIED):
                    if record_set.stage(stage).status is StageStatus.SKIPPED:
                        self._set(record_set, stage, StageStatus.PENDING, detail="ripple effect declared")
            else:
                for stage in (Stage.IMPACT_ANALYZED, Stage.CONSUMERS_VERIFIED):
                    self._set(record_set, stage, StageStatus.SKIPPED, detail="no ripple effect")
            return record_set

    def analyze_impact(self, change_id: str) -> list[ConsumerEntry]:
        """Compute consumer files for the changed symbols (``impact_analyzed``)."""
        index = self._require_index()
        current = self.store.load(change_id)
        if not current.change.has_ripple_effect and not current.change.status.terminal:
            logger.info("%s declares no ripple effect; impact analysis is skipped", change_id)
            return []

        def body(record_set: RecordSet) -> list[ConsumerEntry]:
            self._begin(record_set, Stage.IMPACT_ANALYZED)
            previous = record_set.active_consumers()
            generation = max((entry.generation for entry in record_set.consumers), default=0) + 1
            for entry in previous:
                entry.superseded = True
            entries = compute_consumers(record_set.change, index)
            for entry in entries:
                entry.generation = generation
            record_set.consumers.extend(entries)

            files = [entry.file_path for entry in entries]
            self._set(record_set, Stage.IMPACT_ANALYZED, StageStatus.PASSED, files)
            if entries:
                if record_set.stage(Stage.CONSUMERS_VERIFIED).status is StageStatus.SKIPPED:
                    self._set(record_set, Stage.CONSUMERS_VERIFIED, StageStatus.PENDING, detail="consumers found")
            else:
                self._set(record_set, Stage.CONSUMERS_VERIFIED, StageStatus.SKIPPED, detail="no consumers")
            return entries

        return self._gated(change_id, Stage.IMPACT_ANALYZED, body)

    def map_dependencies(self, change_id: str) -> tuple[Dependency, ...]:
        """Enumerate dependencies of the declared scope (``dependencies_mapped``)."""
        index = self._require_index()

        def body(record_set: RecordSet) -> tuple[Dependency, ...]:
            self._begin(record_set, Stage.DEPENDENCIES_MAPPED)
            dependencies = compute_dependencies(record_set.change, index)
            record_set.dependencies = list(dependencies)
            fingerprint = getattr(index, "sha256", None)
            detail = f"index sha256 {fingerprint}" if fingerprint else ""
            self._set(
                record_set,
                Stage.DEPENDENCIES_MAPPED,
                StageStatus.PASSED,
                [dependency.render() for dependency in dependencies],
                detail=detail,
            )
            return dependencies

        return self._gated(change_id, Stage.DEPENDENCIES_MAPPED, body)

    def document_facts(self, change_id: str, drafts: Sequence[FactDraft] = ()) -> StageRecord:
        """Append facts and re-evaluate completeness (``facts_documented``).

        Passes once every mapped dependency is fully documented; otherwise the
        stage stays in progress with the missing items as diagnostics.
        """

        def body(record_set: RecordSet) -> StageRecord:
            self._begin(record_set, Stage.FACTS_DOCUMENTED)
            mapped = {(dep.subject, dep.file_path) for dep in record_set.dependencies}
            for draft in drafts:
                fact = make_fact(
                    record_set,
                    subject=draft.subject,
                    file_path=draft.file_path,
                    members=draft.members,
                    recorded_at=self.clock(),
                )
                record(record_set, fact)
                if (draft.subject, draft.file_path) not in mapped:
                    logger.info("%s: fact %s documents an unmapped subject", change_id, fact.fact_id)
                self._event(record_set, "fact", Stage.FACTS_DOCUMENTED, f"{fact.fact_id} {fact.subject}")

            missing = [item.render() for item in missing_facts(record_set)]
            if missing:
                return self._set(record_set, Stage.FACTS_DOCUMENTED, StageStatus.IN_PROGRESS, missing)
            return self._set(record_set, Stage.FACTS_DOCUMENTED, StageStatus.PASSED)

        return self._gated(change_id, Stage.FACTS_DOCUMENTED, body)

    def generate(self, change_id: str, note: str | None = None) -> StageRecord:
        """Confirm code was generated from documented facts (``generated``)."""

        def body(record_set: RecordSet) -> StageRecord:
            self._begin(record_set, Stage.GENERATED)
            return self._set(record_set, Stage.GENERATED, StageStatus.PASSED, [note] if note else [])

        return self._gated(change_id, Stage.GENERATED, body)

    def self_validate(
        self,
        change_id: str,
        asserted_usage: Sequence[AssertedUsage],
    ) -> tuple[StageRecord, list[Discrepancy]]:
        """Cross-check asserted usage against the evidence store (``self_validated``)."""

        def body(record_set: RecordSet) -> tuple[StageRecord, list[Discrepancy]]:
            self._begin(record_set, Stage.SELF_VALIDATED)
            discrepancies = cross_check(record_set, asserted_usage)
            if not discrepancies:
                stage_record = self._set(record_set, Stage.SELF_VALIDATED, StageStatus.PASSED)
                return stage_record, discrepancies

            stage_record = self._set(
                record_set,
                Stage.SELF_VALIDATED,
                StageStatus.FAILED,
                [d.render() for d in discrepancies],
            )
            target = route_discrepancies(discrepancies)
            if target is not None:
                self._route_back(record_set, target, Stage.SELF_VALIDATED)
            return stage_record, discrepancies

        return self._gated(change_id, Stage.SELF_VALIDATED, body)

    def _record_build_failure(self, record_set: RecordSet, result: BuildResult) -> None:
        self._set(
            record_set,
            Stage.COMPILED,
            StageStatus.FAILED,
            [d.text for d in result.diagnostics],
            detail="timeout" if result.timed_out else f"exit {result.exit_code}",
        )
        routed = result.routed_stages()
        if routed and routed[0] is not Stage.COMPILED:
            self._route_back(record_set, routed[0], Stage.COMPILED)
        self._reset_after(record_set, Stage.COMPILED)

    def _run_build(
        self,
        record_set: RecordSet,
        command: str | Sequence[str],
        timeout_sec: float | None,
        cwd: Path | None,
    ) -> BuildResult:
        result = run_build(
            record_set.change_id,
            command,
            cwd=cwd or self.build_cwd,
            timeout_sec=timeout_sec if timeout_sec is not None else self.build_timeout_sec,
            rules=self.build_rules,
            clock=self.clock,
        )
        record_set.builds.append(result)
        self._event(
            record_set,
            "build",
            Stage.COMPILED,
            f"{result.classification.value} exit={result.exit_code} timed_out={result.timed_out}",
        )
        return result

    def build(
        self,
        change_id: str,
        command: str | Sequence[str],
        *,
        timeout_sec: float | None = None,
        cwd: Path | None = None,
    ) -> BuildResult:
        """Run the build (``compiled``); failures route back by diagnostic."""

        def body(record_set: RecordSet) -> BuildResult:
            self._begin(record_set, Stage.COMPILED)
            result = self._run_build(record_set, command, timeout_sec, cwd)
            if not result.succeeded:
                self._record_build_failure(record_set, result)
                return result

            self._set(record_set, Stage.COMPILED, StageStatus.PASSED)
            if record_set.stage(Stage.CONSUMERS_VERIFIED).status is StageStatus.SKIPPED:
                self._complete(record_set)
            return result

        return self._gated(change_id, Stage.COMPILED, body)

    def mark_consumer(
        self,
        change_id: str,
        file_path: str,
        category: str,
        note: str | None = None,
        *,
        done: bool = True,
    ) -> ConsumerEntry:
        """Tick (or re-open) one edit category for a consumer file."""
        with self.store.transaction(change_id) as record_set:
            self._ensure_open(record_set)
            if record_set.stage(Stage.IMPACT_ANALYZED).status is not StageStatus.PASSED:
                raise PreconditionUnmet(
                    Stage.CONSUMERS_VERIFIED.value,
                    [f"impact_analyzed is {record_set.stage(Stage.IMPACT_ANALYZED).status.value}"],
                )
            entry = record_set.consumer(file_path)
            if entry is None:
                raise UnknownConsumer(change_id, file_path)
            mark_category(entry, category, note, done=done)
            self._event(
                record_set,
                "consumer",
                Stage.CONSUMERS_VERIFIED,
                f"{file_path} {category}={'done' if done else 'open'}",
            )
            return entry

    def verify_consumers(
        self,
        change_id: str,
        command: str | Sequence[str] | None = None,
        *,
        timeout_sec: float | None = None,
        cwd: Path | None = None,
    ) -> StageRecord:
        """Pass ``consumers_verified`` once every consumer is fully updated.

        With a build command the project is recompiled first; a failing
        recompile is handled exactly like a failing ``build``.
        """

        def open_items(record_set: RecordSet) -> list[str]:
            return unsatisfied(record_set.active_consumers())

        def body(record_set: RecordSet) -> StageRecord:
            self._begin(record_set, Stage.CONSUMERS_VERIFIED)
            if command is not None:
                result = self._run_build(record_set, command, timeout_sec, cwd)
                if not result.succeeded:
                    self._record_build_failure(record_set, result)
                    return record_set.stage(Stage.CONSUMERS_VERIFIED)
            stage_record = self._set(
                record_set,
                Stage.CONSUMERS_VERIFIED,
                StageStatus.PASSED,
                [entry.file_path for entry in record_set.active_consumers()],
            )
            self._complete(record_set)
            return stage_record

        return self._gated(change_id, Stage.CONSUMERS_VERIFIED, body, extra_gate=open_items)

    # ------------------------------------------------------------------
    # lifecycle and views

    def abandon(self, change_id: str, reason: str | None = None) -> RecordSet:
        """Move a non-terminal request to ``abandoned``; no data is discarded."""
        with self.store.transaction(change_id) as record_set:
            self._ensure_open(record_set)
            record_set.change.status = RequestStatus.ABANDONED
            record_set.change.abandon_reason = reason
            self._event(record_set, "abandoned", current_stage(record_set), reason or "")
            logger.info("%s: abandoned", change_id)
            return record_set

    def archive(self, change_id: str) -> None:
        """Move a terminal request out of the active set."""
        record_set = self.store.load(change_id)
        if not record_set.change.status.terminal:
            raise ChangeStillOpen(change_id)
        self.store.archive(change_id)

    def status(self, change_id: str) -> StatusView:
        record_set = self.store.load(change_id)
        violations = ordering_violations(record_set)
        if violations:
            logger.error("%s: stage ordering violated: %s", change_id, "; ".join(violations))
        return StatusView(
            change=record_set.change,
            stages=[record_set.stage(stage) for stage in STAGE_ORDER],
            current_stage=current_stage(record_set),
            open_consumers=unsatisfied(record_set.active_consumers()),
            missing_facts=[item.render() for item in missing_facts(record_set)],
        )

    def current_stage(self, change_id: str) -> Stage | None:
        return current_stage(self.store.load(change_id))

    def history(self, change_id: str) -> list[Event]:
        return list(self.store.load(change_id).events)
