"""Dependency enumeration and the fact-completeness gate predicate."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ripplegate.evidence.store import effective_members, facts_for
from ripplegate.ledger.types import Dependency, MissingFact

if TYPE_CHECKING:
    from ripplegate.index.project_index import ProjectIndex
    from ripplegate.storage.record_set import RecordSet
    from ripplegate.workflow.types import ChangeRequest

logger = logging.getLogger(__name__)


def compute_dependencies(change: ChangeRequest, index: ProjectIndex) -> tuple[Dependency, ...]:
    """Definitions of every symbol the declared scope references.

    Deduplicated and ordered by file path, then subject name.
    """
    found: set[Dependency] = set()
    for symbol in change.referenced_symbols:
        result = index.query(symbol)
        definitions = result.get("definitions", [])
        if not definitions:
            logger.warning("index has no definition for referenced symbol %s", symbol)
        for definition in definitions:
            found.add(Dependency(file_path=str(definition["file"]), subject=str(definition["name"])))
    return tuple(sorted(found))


def missing_facts(record_set: RecordSet) -> list[MissingFact]:
    """Reasons each mapped dependency does not yet satisfy the generation gate."""
    missing: list[MissingFact] = []
    for dependency in record_set.dependencies:
        if not facts_for(record_set, dependency.subject, dependency.file_path):
            missing.append(MissingFact(dependency=dependency, member=None, fields=()))
            continue
        members = effective_members(record_set, dependency.subject, dependency.file_path)
        for name in sorted(members):
            fields = members[name].undocumented_fields()
            if fields:
                missing.append(MissingFact(dependency=dependency, member=name, fields=fields))
    return missing


def facts_complete(record_set: RecordSet) -> bool:
    """True iff every dependency has a non-superseded, fully documented fact."""
    return not missing_facts(record_set)
