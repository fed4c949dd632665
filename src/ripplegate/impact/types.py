"""Consumer impact tracker types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class EditCategory(str, Enum):
    """Fixed enumeration of edits a consumer may need after a ripple change."""

    IMPORTS = "imports"
    INITIALIZATION = "initialization"
    METHOD_CALLS = "method-calls"
    STATE_ACCESS = "state-access"


EDIT_CATEGORIES: tuple[str, ...] = tuple(category.value for category in EditCategory)


@dataclass
class ConsumerEntry:
    """A file referencing a changed symbol, with its per-category checklist."""

    change_id: str
    file_path: str
    symbols: tuple[str, ...] = ()
    categories: dict[str, bool] = field(
        default_factory=lambda: {category: False for category in EDIT_CATEGORIES}
    )
    notes: dict[str, list[str]] = field(
        default_factory=lambda: {category: [] for category in EDIT_CATEGORIES}
    )
    generation: int = 1
    superseded: bool = False

    @property
    def satisfied(self) -> bool:
        return all(self.categories.get(category, False) for category in EDIT_CATEGORIES)

    def open_categories(self) -> list[str]:
        return [category for category in EDIT_CATEGORIES if not self.categories.get(category, False)]
