"""Consumer impact computation and per-file edit checklists."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from ripplegate.errors import UnknownCategory
from ripplegate.impact.types import EDIT_CATEGORIES, ConsumerEntry

if TYPE_CHECKING:
    from ripplegate.index.project_index import ProjectIndex
    from ripplegate.workflow.types import ChangeRequest

logger = logging.getLogger(__name__)


def compute_consumers(change: ChangeRequest, index: ProjectIndex) -> list[ConsumerEntry]:
    """One entry per distinct file referencing a changed symbol, ordered by path.

    A symbol's own defining files are not consumers of it.
    """
    by_file: dict[str, set[str]] = {}
    for symbol in change.changed_symbols:
        result = index.query(symbol)
        defining_files = {str(d["file"]) for d in result.get("definitions", [])}
        for reference in result.get("references", []):
            file_path = str(reference["file"])
            if file_path in defining_files:
                continue
            by_file.setdefault(file_path, set()).add(symbol)

    entries = [
        ConsumerEntry(change_id=change.change_id, file_path=file_path, symbols=tuple(sorted(symbols)))
        for file_path, symbols in sorted(by_file.items())
    ]
    logger.debug("change %s: %d consumer file(s)", change.change_id, len(entries))
    return entries


def mark_category(entry: ConsumerEntry, category: str, note: str | None = None, *, done: bool = True) -> ConsumerEntry:
    """Set (or re-open with ``done=False``) one edit category and append its note."""
    if category not in EDIT_CATEGORIES:
        raise UnknownCategory(category, EDIT_CATEGORIES)
    entry.categories[category] = done
    if note:
        entry.notes.setdefault(category, []).append(note)
    return entry


def unsatisfied(entries: Iterable[ConsumerEntry]) -> list[str]:
    """Human-readable list of open categories, one line per consumer file."""
    return [
        f"{entry.file_path}: {', '.join(entry.open_categories())}"
        for entry in entries
        if not entry.satisfied
    ]


def all_satisfied(entries: Iterable[ConsumerEntry]) -> bool:
    """Gate predicate for consumers_verified."""
    return all(entry.satisfied for entry in entries)
