"""Evidence store: documented dependency facts and self-validation."""

from ripplegate.evidence.store import cross_check, effective_members, lookup_member, make_fact, record
from ripplegate.evidence.types import (
    UNDOCUMENTED,
    AssertedUsage,
    DependencyFact,
    Discrepancy,
    DiscrepancyKind,
    Member,
)

__all__ = [
    "UNDOCUMENTED",
    "AssertedUsage",
    "DependencyFact",
    "Discrepancy",
    "DiscrepancyKind",
    "Member",
    "cross_check",
    "effective_members",
    "lookup_member",
    "make_fact",
    "record",
]
