"""Gate state machine tests: stage ordering, fact gating, routing and completion."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from ripplegate.errors import ChangeClosed, ChangeStillOpen, PreconditionUnmet, UnknownConsumer
from ripplegate.evidence.types import UNDOCUMENTED, AssertedUsage, FactDraft, Member
from ripplegate.impact.types import EDIT_CATEGORIES
from ripplegate.index.project_index import MappingProjectIndex
from ripplegate.storage.state_store import MemoryStateStore
from ripplegate.utils.timestamps import deterministic_timestamp
from ripplegate.workflow.machine import GateMachine, ordering_violations
from ripplegate.workflow.types import RequestStatus, Stage, StageStatus

OK_BUILD = [sys.executable, "-c", "print('BUILD SUCCESSFUL')"]

PARSE_USAGE = AssertedUsage("TlvParser.parse", "List<Tlv>", "fun parse(data: ByteArray): List<Tlv>")
ENCODE_USAGE = AssertedUsage("ApduCommand.encode", "ByteArray", "fun encode(): ByteArray")


def _failing_build(message: str) -> list[str]:
    return [sys.executable, "-c", f"import sys; sys.stderr.write({message!r} + '\\n'); sys.exit(1)"]


def _statuses(machine: GateMachine, change_id: str) -> dict[Stage, StageStatus]:
    record_set = machine.store.load(change_id)
    return {stage: record.status for stage, record in record_set.stages.items()}


def _assert_ordered(machine: GateMachine, change_id: str) -> None:
    assert ordering_violations(machine.store.load(change_id)) == []


def _scope_ripple(machine: GateMachine, change_id: str = "CR-R") -> None:
    machine.scope(
        change_id,
        "readTag returns Result<Tag>",
        success_criteria=["callers handle failure"],
        has_ripple_effect=True,
        changed_symbols=["CardReader.readTag"],
        referenced_symbols=["ApduCommand", "TlvParser"],
    )


def _advance_to_compiled(
    machine: GateMachine,
    change_id: str,
    drafts: list[FactDraft],
    tmp_path: Path,
) -> None:
    machine.analyze_impact(change_id)
    machine.map_dependencies(change_id)
    machine.document_facts(change_id, drafts)
    machine.generate(change_id)
    machine.self_validate(change_id, [PARSE_USAGE, ENCODE_USAGE])
    result = machine.build(change_id, OK_BUILD, cwd=tmp_path)
    assert result.succeeded


def test_scope_without_ripple_skips_impact_and_consumers(machine: GateMachine) -> None:
    machine.scope("CR-A", "Tighten TLV length check", has_ripple_effect=False, referenced_symbols=["TlvParser"])

    statuses = _statuses(machine, "CR-A")
    assert statuses[Stage.SCOPED] is StageStatus.PASSED
    assert statuses[Stage.IMPACT_ANALYZED] is StageStatus.SKIPPED
    assert statuses[Stage.CONSUMERS_VERIFIED] is StageStatus.SKIPPED
    assert machine.status("CR-A").current_stage is Stage.DEPENDENCIES_MAPPED


def test_ripple_requires_changed_symbols(machine: GateMachine) -> None:
    with pytest.raises(ValueError, match="changed symbol"):
        machine.scope("CR-X", "Rename field", has_ripple_effect=True)


def test_no_ripple_change_reaches_done_after_compile(
    machine: GateMachine,
    complete_drafts: list[FactDraft],
    tmp_path: Path,
) -> None:
    machine.scope("CR-A", "Tighten TLV length check", has_ripple_effect=False, referenced_symbols=["TlvParser"])
    assert machine.analyze_impact("CR-A") == []
    machine.map_dependencies("CR-A")
    machine.document_facts("CR-A", complete_drafts[1:])
    machine.generate("CR-A", "length check added")
    _, discrepancies = machine.self_validate("CR-A", [PARSE_USAGE])
    assert discrepancies == []

    result = machine.build("CR-A", OK_BUILD, cwd=tmp_path)

    view = machine.status("CR-A")
    assert result.succeeded
    assert view.change.status is RequestStatus.DONE
    assert view.current_stage is None
    assert _statuses(machine, "CR-A")[Stage.DONE] is StageStatus.PASSED
    _assert_ordered(machine, "CR-A")


def test_stage_cannot_be_entered_out_of_order(machine: GateMachine) -> None:
    _scope_ripple(machine)

    with pytest.raises(PreconditionUnmet, match="impact_analyzed is pending"):
        machine.map_dependencies("CR-R")

    record_set = machine.store.load("CR-R")
    assert record_set.stage(Stage.DEPENDENCIES_MAPPED).status is StageStatus.PENDING
    assert record_set.stage(Stage.DEPENDENCIES_MAPPED).attempts == 0
    assert record_set.events[-1].kind == "refused"


def test_undocumented_field_blocks_generation_until_fact_recorded(
    machine: GateMachine,
    complete_drafts: list[FactDraft],
) -> None:
    _scope_ripple(machine)
    machine.analyze_impact("CR-R")
    machine.map_dependencies("CR-R")
    partial = FactDraft(
        subject="TlvParser",
        file_path="src/emv/TlvParser.kt",
        members=(
            Member(
                name="parse",
                type=UNDOCUMENTED,
                signature="fun parse(data: ByteArray): List<Tlv>",
                nullable=False,
                constraints="none",
            ),
        ),
    )
    stage_record = machine.document_facts("CR-R", [complete_drafts[0], partial])
    assert stage_record.status is StageStatus.IN_PROGRESS

    with pytest.raises(PreconditionUnmet) as excinfo:
        machine.generate("CR-R")
    assert excinfo.value.stage == "generated"
    assert any("TlvParser (src/emv/TlvParser.kt)" in item for item in excinfo.value.missing)
    assert not any("ApduCommand" in item for item in excinfo.value.missing)
    assert _statuses(machine, "CR-R")[Stage.GENERATED] is StageStatus.PENDING

    assert machine.document_facts("CR-R", complete_drafts[1:]).status is StageStatus.PASSED
    assert machine.generate("CR-R").status is StageStatus.PASSED
    _assert_ordered(machine, "CR-R")


def test_build_diagnostic_routes_back_to_facts(
    machine: GateMachine,
    complete_drafts: list[FactDraft],
    tmp_path: Path,
) -> None:
    _scope_ripple(machine)
    machine.analyze_impact("CR-R")
    machine.map_dependencies("CR-R")
    machine.document_facts("CR-R", complete_drafts)
    machine.generate("CR-R")
    machine.self_validate("CR-R", [PARSE_USAGE])

    result = machine.build("CR-R", _failing_build("unresolved member 'foo'"), cwd=tmp_path)

    statuses = _statuses(machine, "CR-R")
    assert not result.succeeded
    assert statuses[Stage.COMPILED] is StageStatus.FAILED
    assert statuses[Stage.FACTS_DOCUMENTED] is StageStatus.PENDING
    assert statuses[Stage.GENERATED] is StageStatus.PENDING
    assert statuses[Stage.DONE] is StageStatus.PENDING
    view = machine.status("CR-R")
    assert view.change.status is RequestStatus.OPEN
    assert view.current_stage is Stage.FACTS_DOCUMENTED
    assert machine.store.load("CR-R").stage(Stage.COMPILED).diagnostics == ("unresolved member 'foo'",)
    _assert_ordered(machine, "CR-R")

    with pytest.raises(PreconditionUnmet):
        machine.build("CR-R", OK_BUILD, cwd=tmp_path)


def test_build_timeout_keeps_earlier_stages(
    machine: GateMachine,
    complete_drafts: list[FactDraft],
    tmp_path: Path,
) -> None:
    _scope_ripple(machine)
    machine.analyze_impact("CR-R")
    machine.map_dependencies("CR-R")
    machine.document_facts("CR-R", complete_drafts)
    machine.generate("CR-R")
    machine.self_validate("CR-R", [PARSE_USAGE])

    slow = [sys.executable, "-c", "import time; time.sleep(5)"]
    result = machine.build("CR-R", slow, cwd=tmp_path, timeout_sec=0.2)

    record_set = machine.store.load("CR-R")
    assert result.timed_out
    assert record_set.stage(Stage.COMPILED).status is StageStatus.FAILED
    assert record_set.stage(Stage.COMPILED).diagnostics == ("timeout",)
    assert record_set.stage(Stage.SELF_VALIDATED).status is StageStatus.PASSED

    assert machine.build("CR-R", OK_BUILD, cwd=tmp_path).succeeded
    assert machine.store.load("CR-R").stage(Stage.COMPILED).attempts == 2


def test_self_validation_mismatch_routes_to_generated(
    machine: GateMachine,
    complete_drafts: list[FactDraft],
) -> None:
    _scope_ripple(machine)
    machine.analyze_impact("CR-R")
    machine.map_dependencies("CR-R")
    machine.document_facts("CR-R", complete_drafts)
    machine.generate("CR-R")

    wrong = AssertedUsage("TlvParser.parse", "List<Tlv>", "fun parse(data: String): List<Tlv>")
    stage_record, discrepancies = machine.self_validate("CR-R", [wrong])

    assert stage_record.status is StageStatus.FAILED
    assert len(discrepancies) == 1
    assert _statuses(machine, "CR-R")[Stage.GENERATED] is StageStatus.PENDING

    machine.generate("CR-R", "fixed parse call")
    stage_record, discrepancies = machine.self_validate("CR-R", [PARSE_USAGE])
    assert stage_record.status is StageStatus.PASSED
    assert discrepancies == []


def test_unverified_usage_routes_to_facts(machine: GateMachine, complete_drafts: list[FactDraft]) -> None:
    _scope_ripple(machine)
    machine.analyze_impact("CR-R")
    machine.map_dependencies("CR-R")
    machine.document_facts("CR-R", complete_drafts)
    machine.generate("CR-R")

    _, discrepancies = machine.self_validate("CR-R", [AssertedUsage("TlvParser.reset", "Unit", "fun reset()")])

    assert discrepancies[0].kind.value == "unverified"
    assert _statuses(machine, "CR-R")[Stage.FACTS_DOCUMENTED] is StageStatus.PENDING


def test_consumers_must_all_be_updated(
    complete_drafts: list[FactDraft],
    tmp_path: Path,
) -> None:
    index = MappingProjectIndex(
        {
            "CardReader.readTag": {
                "definitions": [{"name": "CardReader", "file": "src/nfc/CardReader.kt"}],
                "references": [
                    {"file": "src/ui/ScanScreen.kt"},
                    {"file": "src/emv/EmvSession.kt"},
                    {"file": "src/debug/DebugPanel.kt"},
                ],
            },
            "ApduCommand": {"definitions": [{"name": "ApduCommand", "file": "src/emv/ApduCommand.kt"}]},
            "TlvParser": {"definitions": [{"name": "TlvParser", "file": "src/emv/TlvParser.kt"}]},
        }
    )
    machine = GateMachine(MemoryStateStore(), index, clock=deterministic_timestamp)
    _scope_ripple(machine)
    _advance_to_compiled(machine, "CR-R", complete_drafts, tmp_path)

    for file_path in ("src/ui/ScanScreen.kt", "src/emv/EmvSession.kt"):
        for category in EDIT_CATEGORIES:
            machine.mark_consumer("CR-R", file_path, category)
    for category in EDIT_CATEGORIES:
        if category != "imports":
            machine.mark_consumer("CR-R", "src/debug/DebugPanel.kt", category)

    with pytest.raises(PreconditionUnmet, match="src/debug/DebugPanel.kt: imports"):
        machine.verify_consumers("CR-R")
    assert _statuses(machine, "CR-R")[Stage.CONSUMERS_VERIFIED] is StageStatus.PENDING

    machine.mark_consumer("CR-R", "src/debug/DebugPanel.kt", "imports", "added Result import")
    stage_record = machine.verify_consumers("CR-R")

    assert stage_record.status is StageStatus.PASSED
    assert machine.status("CR-R").change.status is RequestStatus.DONE
    _assert_ordered(machine, "CR-R")


def test_reopened_category_blocks_verification(
    machine: GateMachine,
    complete_drafts: list[FactDraft],
    tmp_path: Path,
) -> None:
    _scope_ripple(machine)
    _advance_to_compiled(machine, "CR-R", complete_drafts, tmp_path)
    for file_path in ("src/ui/ScanScreen.kt", "src/emv/EmvSession.kt"):
        for category in EDIT_CATEGORIES:
            machine.mark_consumer("CR-R", file_path, category)

    machine.mark_consumer("CR-R", "src/ui/ScanScreen.kt", "state-access", done=False)

    with pytest.raises(PreconditionUnmet, match="state-access"):
        machine.verify_consumers("CR-R")


def test_verify_consumers_recompile_failure_routes_back(
    machine: GateMachine,
    complete_drafts: list[FactDraft],
    tmp_path: Path,
) -> None:
    _scope_ripple(machine)
    _advance_to_compiled(machine, "CR-R", complete_drafts, tmp_path)
    for file_path in ("src/ui/ScanScreen.kt", "src/emv/EmvSession.kt"):
        for category in EDIT_CATEGORIES:
            machine.mark_consumer("CR-R", file_path, category)

    stage_record = machine.verify_consumers(
        "CR-R",
        _failing_build("error: None of the following functions can be called"),
        cwd=tmp_path,
    )

    statuses = _statuses(machine, "CR-R")
    assert stage_record.status is StageStatus.PENDING
    assert statuses[Stage.COMPILED] is StageStatus.FAILED
    assert statuses[Stage.DEPENDENCIES_MAPPED] is StageStatus.PENDING
    assert machine.status("CR-R").change.status is RequestStatus.OPEN
    _assert_ordered(machine, "CR-R")


def test_mark_consumer_rejects_unknown_file(machine: GateMachine) -> None:
    _scope_ripple(machine)
    machine.analyze_impact("CR-R")

    with pytest.raises(UnknownConsumer):
        machine.mark_consumer("CR-R", "src/Other.kt", "imports")


def test_reanalysis_supersedes_consumers(machine: GateMachine) -> None:
    _scope_ripple(machine)
    machine.analyze_impact("CR-R")
    machine.mark_consumer("CR-R", "src/ui/ScanScreen.kt", "imports")

    entries = machine.analyze_impact("CR-R")

    record_set = machine.store.load("CR-R")
    assert {entry.generation for entry in entries} == {2}
    assert len(record_set.consumers) == 4
    assert all(entry.superseded for entry in record_set.consumers if entry.generation == 1)
    assert not record_set.consumer("src/ui/ScanScreen.kt").categories["imports"]


def test_reentering_stage_resets_later_stages(machine: GateMachine, complete_drafts: list[FactDraft]) -> None:
    _scope_ripple(machine)
    machine.analyze_impact("CR-R")
    machine.map_dependencies("CR-R")
    machine.document_facts("CR-R", complete_drafts)
    machine.generate("CR-R")

    machine.map_dependencies("CR-R")

    statuses = _statuses(machine, "CR-R")
    assert statuses[Stage.DEPENDENCIES_MAPPED] is StageStatus.PASSED
    assert statuses[Stage.FACTS_DOCUMENTED] is StageStatus.PENDING
    assert statuses[Stage.GENERATED] is StageStatus.PENDING
    _assert_ordered(machine, "CR-R")


def test_rescope_to_no_ripple_skips_consumer_stages(machine: GateMachine) -> None:
    _scope_ripple(machine)
    machine.analyze_impact("CR-R")

    machine.rescope("CR-R", has_ripple_effect=False)

    record_set = machine.store.load("CR-R")
    assert record_set.stage(Stage.IMPACT_ANALYZED).status is StageStatus.SKIPPED
    assert record_set.stage(Stage.CONSUMERS_VERIFIED).status is StageStatus.SKIPPED
    assert record_set.active_consumers() == []
    assert record_set.stage(Stage.SCOPED).attempts == 2


def test_abandon_and_archive(machine: GateMachine) -> None:
    _scope_ripple(machine)

    with pytest.raises(ChangeStillOpen):
        machine.archive("CR-R")

    machine.abandon("CR-R", "superseded by CR-S")
    with pytest.raises(ChangeClosed):
        machine.analyze_impact("CR-R")

    machine.archive("CR-R")
    assert machine.store.list_ids() == []
    assert machine.status("CR-R").change.abandon_reason == "superseded by CR-S"


def test_history_journals_every_transition(machine: GateMachine) -> None:
    _scope_ripple(machine)
    machine.analyze_impact("CR-R")
    with pytest.raises(PreconditionUnmet):
        machine.generate("CR-R")

    events = machine.history("CR-R")

    assert [event.sequence for event in events] == list(range(1, len(events) + 1))
    assert events[0].kind == "created"
    assert ("passed", "impact_analyzed") in [(event.kind, event.stage) for event in events]
    assert events[-1].kind == "refused"
    assert all(event.at == "1970-01-01T00:00:00Z" for event in events)


def test_rescope_with_new_references_drops_stale_dependencies(machine: GateMachine) -> None:
    _scope_ripple(machine)
    machine.analyze_impact("CR-R")
    machine.map_dependencies("CR-R")
    assert machine.status("CR-R").missing_facts

    machine.rescope("CR-R", referenced_symbols=["TlvParser"])

    assert machine.store.load("CR-R").dependencies == []
    assert machine.status("CR-R").missing_facts == []
    with pytest.raises(PreconditionUnmet, match="facts_documented is pending"):
        machine.generate("CR-R")


def test_rescope_with_same_references_keeps_dependencies(machine: GateMachine) -> None:
    _scope_ripple(machine)
    machine.analyze_impact("CR-R")
    mapped = machine.map_dependencies("CR-R")

    machine.rescope("CR-R", scope="readTag returns Result<Tag> and logs", referenced_symbols=["ApduCommand", "TlvParser"])

    assert tuple(machine.store.load("CR-R").dependencies) == mapped
