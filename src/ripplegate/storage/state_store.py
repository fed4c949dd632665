"""Key-value stores for per-change record sets.

Each store exposes ``transaction(change_id)``: the record set is loaded under
an exclusive per-change lock, handed to the caller, and written back only if
the block exits normally. A failing block leaves the persisted state exactly
as it was, so a stage transition is never half-applied.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import shutil
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol

from ripplegate.artifacts.canonical_json import pretty_dumps
from ripplegate.errors import ChangeExists, ChangeNotFound, StorageError
from ripplegate.schemas.validator import validate_data
from ripplegate.storage.record_set import RecordSet, record_set_from_dict, record_set_to_dict

logger = logging.getLogger(__name__)

_CHANGE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

CHANGES_DIRNAME = "changes"
ARCHIVE_DIRNAME = "archive"


def validate_change_id(change_id: str) -> str:
    """Change ids double as file names; keep them to a safe alphabet."""
    if not _CHANGE_ID_RE.match(change_id):
        raise ValueError(
            f"invalid change id {change_id!r}: use letters, digits, '.', '_' or '-' "
            "(max 128 chars, must start with a letter or digit)"
        )
    return change_id


class StateStore(Protocol):
    """What the gate machine needs from a backing store."""

    def create(self, record_set: RecordSet) -> None: ...

    def load(self, change_id: str) -> RecordSet: ...

    def exists(self, change_id: str) -> bool: ...

    def list_ids(self) -> list[str]: ...

    def archive(self, change_id: str) -> None: ...

    def transaction(self, change_id: str) -> Any: ...


class MemoryStateStore:
    """In-process store; record sets are kept in serialized form."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}
        self._archived: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._change_locks: dict[str, threading.RLock] = {}

    def create(self, record_set: RecordSet) -> None:
        change_id = validate_change_id(record_set.change_id)
        with self._lock:
            if change_id in self._data or change_id in self._archived:
                raise ChangeExists(change_id)
            self._data[change_id] = record_set_to_dict(record_set)

    def load(self, change_id: str) -> RecordSet:
        with self._lock:
            data = self._data.get(change_id) or self._archived.get(change_id)
            if data is None:
                raise ChangeNotFound(change_id)
            return record_set_from_dict(json.loads(json.dumps(data)))

    def exists(self, change_id: str) -> bool:
        with self._lock:
            return change_id in self._data

    def list_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._data)

    def archive(self, change_id: str) -> None:
        with self._change_lock(change_id), self._lock:
            if change_id not in self._data:
                raise ChangeNotFound(change_id)
            self._archived[change_id] = self._data.pop(change_id)

    def archived_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._archived)

    @contextmanager
    def transaction(self, change_id: str) -> Iterator[RecordSet]:
        with self._change_lock(change_id):
            with self._lock:
                if change_id not in self._data:
                    raise ChangeNotFound(change_id)
            record_set = self.load(change_id)
            yield record_set
            with self._lock:
                self._data[change_id] = record_set_to_dict(record_set)

    def _change_lock(self, change_id: str) -> threading.RLock:
        with self._lock:
            return self._change_locks.setdefault(change_id, threading.RLock())


class FileStateStore:
    """One JSON document per change under ``<root>/changes``.

    Writers take an advisory ``flock`` on ``<id>.lock`` and replace the document
    atomically, so concurrent processes working on different changes (or
    racing on the same one) never observe a torn file.
    """

    def __init__(self, root: Path) -> None:
        self.root = root.expanduser().resolve()
        self.changes_dir = self.root / CHANGES_DIRNAME
        self.archive_dir = self.root / ARCHIVE_DIRNAME

    def _path(self, change_id: str) -> Path:
        return self.changes_dir / f"{validate_change_id(change_id)}.json"

    def _lock_path(self, change_id: str) -> Path:
        return self.changes_dir / f"{validate_change_id(change_id)}.lock"

    @contextmanager
    def _locked(self, change_id: str) -> Iterator[None]:
        try:
            self.changes_dir.mkdir(parents=True, exist_ok=True)
            handle = self._lock_path(change_id).open("a+")
        except OSError as e:
            raise StorageError(f"cannot open lock for {change_id} under {self.changes_dir}: {e}") from e
        with handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _read(self, path: Path, change_id: str) -> RecordSet:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ChangeNotFound(change_id) from e
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"cannot read record set {path}: {e}") from e

        ok, errors = validate_data(data, "record_set", strict=False)
        if not ok:
            raise StorageError(
                f"record set {path} failed schema validation:\n"
                + "\n".join(f"  - {msg}" for msg in errors)
            )
        try:
            return record_set_from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"record set {path} is inconsistent: {e}") from e

    def _write(self, record_set: RecordSet) -> None:
        path = self._path(record_set.change_id)
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(pretty_dumps(record_set_to_dict(record_set)), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise StorageError(f"cannot write record set {path}: {e}") from e

    def create(self, record_set: RecordSet) -> None:
        change_id = record_set.change_id
        with self._locked(change_id):
            archived = self.archive_dir / f"{change_id}.json"
            if self._path(change_id).exists() or archived.exists():
                raise ChangeExists(change_id)
            self._write(record_set)
        logger.debug("created record set %s", self._path(change_id))

    def load(self, change_id: str) -> RecordSet:
        path = self._path(change_id)
        if not path.exists():
            archived = self.archive_dir / path.name
            if archived.exists():
                return self._read(archived, change_id)
        return self._read(path, change_id)

    def exists(self, change_id: str) -> bool:
        return self._path(change_id).exists()

    def list_ids(self) -> list[str]:
        if not self.changes_dir.exists():
            return []
        return sorted(path.stem for path in self.changes_dir.glob("*.json"))

    def archive(self, change_id: str) -> None:
        with self._locked(change_id):
            path = self._path(change_id)
            if not path.exists():
                raise ChangeNotFound(change_id)
            try:
                self.archive_dir.mkdir(parents=True, exist_ok=True)
                shutil.move(str(path), str(self.archive_dir / path.name))
            except OSError as e:
                raise StorageError(f"cannot archive {path}: {e}") from e
        self._lock_path(change_id).unlink(missing_ok=True)

    @contextmanager
    def transaction(self, change_id: str) -> Iterator[RecordSet]:
        with self._locked(change_id):
            record_set = self._read(self._path(change_id), change_id)
            yield record_set
            self._write(record_set)
