"""Append-only evidence store for documented dependency facts."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

from ripplegate.artifacts.canonical_json import canonical_dumps, sha256_text
from ripplegate.evidence.types import (
    UNDOCUMENTED,
    AssertedUsage,
    DependencyFact,
    Discrepancy,
    DiscrepancyKind,
    Member,
)
from ripplegate.workflow.types import Stage

if TYPE_CHECKING:
    from ripplegate.storage.record_set import RecordSet

logger = logging.getLogger(__name__)

# Where a self-validation finding sends the workflow back to.
DISCREPANCY_ROUTES: dict[DiscrepancyKind, Stage] = {
    DiscrepancyKind.UNVERIFIED: Stage.FACTS_DOCUMENTED,
    DiscrepancyKind.MISMATCH: Stage.GENERATED,
}


def make_fact(
    record_set: RecordSet,
    *,
    subject: str,
    file_path: str,
    members: Sequence[Member],
    recorded_at: str,
) -> DependencyFact:
    """Build the next fact for a record set with a content-derived id."""
    sequence = record_set.next_fact_sequence()
    payload = {
        "change_id": record_set.change_id,
        "subject": subject,
        "file_path": file_path,
        "sequence": sequence,
        "members": [
            [m.name, m.type, m.signature, m.nullable, m.constraints] for m in members
        ],
    }
    return DependencyFact(
        fact_id=f"F{sequence:04d}-{sha256_text(canonical_dumps(payload))[:12]}",
        change_id=record_set.change_id,
        subject=subject,
        file_path=file_path,
        members=tuple(members),
        recorded_at=recorded_at,
        sequence=sequence,
    )


def record(record_set: RecordSet, fact: DependencyFact) -> DependencyFact:
    """Append a fact. Existing facts are never modified or removed."""
    if fact.change_id != record_set.change_id:
        raise ValueError(
            f"fact {fact.fact_id} belongs to {fact.change_id}, not {record_set.change_id}"
        )
    if fact.sequence != record_set.next_fact_sequence():
        raise ValueError(
            f"fact {fact.fact_id} has sequence {fact.sequence}; "
            f"expected {record_set.next_fact_sequence()}"
        )
    record_set.facts.append(fact)
    logger.debug("recorded fact %s for %s (%s)", fact.fact_id, fact.subject, fact.file_path)
    return fact


def facts_for(record_set: RecordSet, subject: str, file_path: str) -> list[DependencyFact]:
    """All facts for one dependency, oldest first."""
    return [
        fact
        for fact in record_set.facts
        if fact.subject == subject and fact.file_path == file_path
    ]


def effective_members(record_set: RecordSet, subject: str, file_path: str) -> dict[str, Member]:
    """Latest documented version of every member of a dependency."""
    members: dict[str, Member] = {}
    for fact in facts_for(record_set, subject, file_path):
        for member in fact.members:
            members[member.name] = member
    return members


def lookup_member(record_set: RecordSet, name: str) -> tuple[DependencyFact, Member] | None:
    """Find the most recent fact documenting ``name``.

    ``name`` is either ``Subject.member`` or a bare member name. A qualified
    name whose subject is unknown falls back to a bare-name lookup of the
    whole string.
    """
    subject: str | None = None
    member_name = name
    if "." in name:
        candidate_subject, candidate_member = name.rsplit(".", 1)
        if any(fact.subject == candidate_subject for fact in record_set.facts):
            subject, member_name = candidate_subject, candidate_member

    for fact in reversed(record_set.facts):
        if subject is not None and fact.subject != subject:
            continue
        for member in fact.members:
            if member.name == member_name:
                return fact, member
    return None


def cross_check(
    record_set: RecordSet,
    asserted_usage: Iterable[AssertedUsage],
) -> list[Discrepancy]:
    """Compare asserted (name, type, signature) triples against recorded facts.

    The result depends only on the inputs and the recorded facts, so calling it
    again with unchanged facts yields the same sequence.
    """
    discrepancies: list[Discrepancy] = []
    for usage in asserted_usage:
        found = lookup_member(record_set, usage.name)
        if found is None:
            discrepancies.append(
                Discrepancy(DiscrepancyKind.UNVERIFIED, usage.name, "no recorded fact documents this name")
            )
            continue

        fact, member = found
        undocumented = [
            field_name
            for field_name in ("type", "signature")
            if getattr(member, field_name) == UNDOCUMENTED
        ]
        if undocumented:
            discrepancies.append(
                Discrepancy(
                    DiscrepancyKind.UNVERIFIED,
                    usage.name,
                    f"fact {fact.fact_id} leaves {', '.join(undocumented)} undocumented",
                )
            )
            continue

        if usage.type != member.type:
            discrepancies.append(
                Discrepancy(
                    DiscrepancyKind.MISMATCH,
                    usage.name,
                    f"type {usage.type!r} does not match documented {member.type!r} (fact {fact.fact_id})",
                )
            )
        if usage.signature != member.signature:
            discrepancies.append(
                Discrepancy(
                    DiscrepancyKind.MISMATCH,
                    usage.name,
                    f"signature {usage.signature!r} does not match documented "
                    f"{member.signature!r} (fact {fact.fact_id})",
                )
            )
    return discrepancies


def route_discrepancies(discrepancies: Sequence[Discrepancy]) -> Stage | None:
    """Earliest stage any discrepancy routes back to."""
    stages = {DISCREPANCY_ROUTES[d.kind] for d in discrepancies}
    if not stages:
        return None
    return min(stages, key=lambda stage: stage.position)
