"""Error kinds raised by the RippleGate engine.

Recoverable workflow outcomes (self-validation discrepancies, build failures,
build timeouts) are recorded on StageRecords instead of being raised. Only
misuse of the engine and backing-store failures surface as exceptions.
"""

from __future__ import annotations

from collections.abc import Sequence


class RippleGateError(Exception):
    """Base class for all engine errors."""

    exit_code: int = 1


class PreconditionUnmet(RippleGateError):
    """A stage was entered before its gate predicate held."""

    exit_code = 3

    def __init__(self, stage: str, missing: Sequence[str]) -> None:
        self.stage = stage
        self.missing = tuple(missing)
        rendered = "; ".join(self.missing) if self.missing else "unknown prerequisite"
        super().__init__(f"cannot enter {stage}: {rendered}")


class UnknownCategory(RippleGateError, ValueError):
    """An edit category outside the fixed enumeration was used."""

    exit_code = 4

    def __init__(self, category: str, allowed: Sequence[str]) -> None:
        self.category = category
        self.allowed = tuple(allowed)
        super().__init__(
            f"unknown edit category {category!r}; expected one of: {', '.join(self.allowed)}"
        )


class ChangeNotFound(RippleGateError, KeyError):
    """No record set exists for the requested change id."""

    def __init__(self, change_id: str) -> None:
        self.change_id = change_id
        super().__init__(change_id)

    def __str__(self) -> str:
        return f"change request not found: {self.change_id}"


class ChangeExists(RippleGateError):
    """A change request with the same id is already open."""

    def __init__(self, change_id: str) -> None:
        self.change_id = change_id
        super().__init__(f"change request already exists: {change_id}")


class ChangeClosed(RippleGateError):
    """The change request is terminal (done or abandoned)."""

    exit_code = 8

    def __init__(self, change_id: str, status: str) -> None:
        self.change_id = change_id
        self.status = status
        super().__init__(f"change request {change_id} is {status}; no further transitions allowed")


class StorageError(RippleGateError):
    """The backing store could not be read or written."""


class ConfigError(RippleGateError):
    """Configuration file is malformed or invalid."""


class ProjectIndexError(RippleGateError):
    """The project relationship index could not be loaded or queried."""


class UnknownConsumer(RippleGateError, KeyError):
    """The file is not a consumer of the change."""

    def __init__(self, change_id: str, file_path: str) -> None:
        self.change_id = change_id
        self.file_path = file_path
        super().__init__(file_path)

    def __str__(self) -> str:
        return f"{self.file_path} is not a consumer of change {self.change_id}"


class ChangeStillOpen(RippleGateError):
    """Archival was requested for a change that is not terminal."""

    def __init__(self, change_id: str) -> None:
        self.change_id = change_id
        super().__init__(f"change request {change_id} is still open; finish or abandon it first")
