"""Per-change record set and its JSON form.

A record set owns everything recorded for one change request: StageRecords,
dependencies, DependencyFacts, ConsumerEntries, BuildResults and the event
journal. It is the unit the store reads, locks and writes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ripplegate.build.types import BuildClassification, BuildResult, Diagnostic
from ripplegate.evidence.types import DependencyFact, Member
from ripplegate.impact.types import ConsumerEntry
from ripplegate.ledger.types import Dependency
from ripplegate.workflow.types import (
    STAGE_ORDER,
    ChangeRequest,
    Event,
    RequestStatus,
    Stage,
    StageRecord,
    StageStatus,
)

RECORD_SET_SCHEMA_VERSION = "ripplegate.record_set.v1"


@dataclass
class RecordSet:
    """All state owned by one ChangeRequest."""

    change: ChangeRequest
    stages: dict[Stage, StageRecord]
    dependencies: list[Dependency] = field(default_factory=list)
    facts: list[DependencyFact] = field(default_factory=list)
    consumers: list[ConsumerEntry] = field(default_factory=list)
    builds: list[BuildResult] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)

    @classmethod
    def new(cls, change: ChangeRequest) -> RecordSet:
        stages = {stage: StageRecord(change_id=change.change_id, stage=stage) for stage in STAGE_ORDER}
        return cls(change=change, stages=stages)

    @property
    def change_id(self) -> str:
        return self.change.change_id

    def stage(self, stage: Stage) -> StageRecord:
        return self.stages[stage]

    def active_consumers(self) -> list[ConsumerEntry]:
        return [entry for entry in self.consumers if not entry.superseded]

    def consumer(self, file_path: str) -> ConsumerEntry | None:
        for entry in self.active_consumers():
            if entry.file_path == file_path:
                return entry
        return None

    def next_fact_sequence(self) -> int:
        return len(self.facts) + 1

    def append_event(self, *, at: str, kind: str, stage: Stage | None, detail: str = "") -> Event:
        event = Event(
            sequence=len(self.events) + 1,
            at=at,
            kind=kind,
            stage=stage.value if stage is not None else None,
            detail=detail,
        )
        self.events.append(event)
        return event


def record_set_to_dict(record_set: RecordSet) -> dict[str, Any]:
    """Convert a record set to its JSON-compatible form."""
    change = record_set.change
    return {
        "schema_version": RECORD_SET_SCHEMA_VERSION,
        "change": {
            "change_id": change.change_id,
            "scope": change.scope,
            "success_criteria": list(change.success_criteria),
            "has_ripple_effect": change.has_ripple_effect,
            "changed_symbols": list(change.changed_symbols),
            "referenced_symbols": list(change.referenced_symbols),
            "status": change.status.value,
            "created_at": change.created_at,
            "abandon_reason": change.abandon_reason,
        },
        "stages": [
            {
                "stage": record.stage.value,
                "status": record.status.value,
                "updated_at": record.updated_at,
                "attempts": record.attempts,
                "diagnostics": list(record.diagnostics),
            }
            for record in (record_set.stages[stage] for stage in STAGE_ORDER)
        ],
        "dependencies": [
            {"subject": dep.subject, "file_path": dep.file_path} for dep in record_set.dependencies
        ],
        "facts": [_fact_to_dict(fact) for fact in record_set.facts],
        "consumers": [
            {
                "file_path": entry.file_path,
                "symbols": list(entry.symbols),
                "categories": dict(entry.categories),
                "notes": {key: list(value) for key, value in entry.notes.items()},
                "generation": entry.generation,
                "superseded": entry.superseded,
            }
            for entry in record_set.consumers
        ],
        "builds": [
            {
                "command": list(build.command),
                "classification": build.classification.value,
                "exit_code": build.exit_code,
                "timed_out": build.timed_out,
                "diagnostics": [
                    {
                        "text": diagnostic.text,
                        "routed_stage": diagnostic.routed_stage.value if diagnostic.routed_stage else None,
                        "rule": diagnostic.rule,
                    }
                    for diagnostic in build.diagnostics
                ],
                "started_at": build.started_at,
                "duration_sec": build.duration_sec,
            }
            for build in record_set.builds
        ],
        "events": [
            {
                "sequence": event.sequence,
                "at": event.at,
                "kind": event.kind,
                "stage": event.stage,
                "detail": event.detail,
            }
            for event in record_set.events
        ],
    }


def _fact_to_dict(fact: DependencyFact) -> dict[str, Any]:
    return {
        "fact_id": fact.fact_id,
        "subject": fact.subject,
        "file_path": fact.file_path,
        "recorded_at": fact.recorded_at,
        "sequence": fact.sequence,
        "members": [
            {
                "name": member.name,
                "type": member.type,
                "signature": member.signature,
                "nullable": member.nullable,
                "constraints": member.constraints,
            }
            for member in fact.members
        ],
    }


def record_set_from_dict(data: dict[str, Any]) -> RecordSet:
    """Rebuild a record set from its JSON form (already schema-validated)."""
    raw_change = data["change"]
    change_id = raw_change["change_id"]
    change = ChangeRequest(
        change_id=change_id,
        scope=raw_change["scope"],
        success_criteria=tuple(raw_change.get("success_criteria", [])),
        has_ripple_effect=bool(raw_change["has_ripple_effect"]),
        changed_symbols=tuple(raw_change.get("changed_symbols", [])),
        referenced_symbols=tuple(raw_change.get("referenced_symbols", [])),
        status=RequestStatus(raw_change.get("status", "open")),
        created_at=raw_change.get("created_at", ""),
        abandon_reason=raw_change.get("abandon_reason"),
    )

    record_set = RecordSet.new(change)
    for raw in data.get("stages", []):
        stage = Stage(raw["stage"])
        record_set.stages[stage] = StageRecord(
            change_id=change_id,
            stage=stage,
            status=StageStatus(raw["status"]),
            updated_at=raw.get("updated_at", ""),
            attempts=int(raw.get("attempts", 0)),
            diagnostics=tuple(raw.get("diagnostics", [])),
        )

    record_set.dependencies = [
        Dependency(file_path=raw["file_path"], subject=raw["subject"])
        for raw in data.get("dependencies", [])
    ]
    record_set.facts = [
        DependencyFact(
            fact_id=raw["fact_id"],
            change_id=change_id,
            subject=raw["subject"],
            file_path=raw["file_path"],
            members=tuple(Member(**member) for member in raw["members"]),
            recorded_at=raw.get("recorded_at", ""),
            sequence=int(raw["sequence"]),
        )
        for raw in data.get("facts", [])
    ]
    record_set.consumers = [
        ConsumerEntry(
            change_id=change_id,
            file_path=raw["file_path"],
            symbols=tuple(raw.get("symbols", [])),
            categories=dict(raw["categories"]),
            notes={key: list(value) for key, value in raw.get("notes", {}).items()},
            generation=int(raw.get("generation", 1)),
            superseded=bool(raw.get("superseded", False)),
        )
        for raw in data.get("consumers", [])
    ]
    record_set.builds = [
        BuildResult(
            change_id=change_id,
            command=tuple(raw["command"]),
            classification=BuildClassification(raw["classification"]),
            exit_code=raw.get("exit_code"),
            timed_out=bool(raw.get("timed_out", False)),
            diagnostics=tuple(
                Diagnostic(
                    text=diagnostic["text"],
                    routed_stage=Stage(diagnostic["routed_stage"]) if diagnostic.get("routed_stage") else None,
                    rule=diagnostic.get("rule"),
                )
                for diagnostic in raw.get("diagnostics", [])
            ),
            started_at=raw.get("started_at", ""),
            duration_sec=float(raw.get("duration_sec", 0.0)),
        )
        for raw in data.get("builds", [])
    ]
    record_set.events = [
        Event(
            sequence=int(raw["sequence"]),
            at=raw["at"],
            kind=raw["kind"],
            stage=raw.get("stage"),
            detail=raw.get("detail", ""),
        )
        for raw in data.get("events", [])
    ]
    return record_set
