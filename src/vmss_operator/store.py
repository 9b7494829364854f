"""Persistence for tracking records and fleet status.

Two implementations share the same contract:

- InMemoryRecordStore / InMemoryStatusStore: process-local, for tests and
  one-shot runs.
- FileStateStore: YAML files under a state directory, so checkpoints and
  records survive operator restarts. Writes are atomic (temp file + rename).

Deleting a record that still has finalizers only marks it for deletion; it
disappears once an update removes the last finalizer.
"""

from __future__ import annotations

import copy
import logging
import os
import re
import tempfile
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import yaml

from .records import TrackingRecord
from .status import FleetStatus

logger = logging.getLogger(__name__)

MAX_STATE_FILE_SIZE_BYTES = 1024 * 1024

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][-A-Za-z0-9_.]*$")


class StoreError(Exception):
    """Raised when state cannot be read or written."""

    pass


class RecordExistsError(StoreError):
    """Raised when creating a record whose name is taken."""

    pass


class RecordStore(Protocol):
    def list(self, labels: dict[str, str]) -> list[TrackingRecord]: ...

    def create(self, record: TrackingRecord) -> None: ...

    def update(self, record: TrackingRecord) -> None: ...

    def delete(self, record: TrackingRecord) -> None: ...


class StatusStore(Protocol):
    def load_status(self, name: str) -> FleetStatus | None: ...

    def save_status(self, status: FleetStatus) -> None: ...


def _mark_deleted(record: TrackingRecord) -> TrackingRecord | None:
    """Apply delete semantics. Returns the record to keep, or None to drop it."""
    if not record.finalizers:
        return None
    if record.deletion_timestamp is None:
        record.deletion_timestamp = datetime.now(UTC)
    return record


# =============================================================================
# In-memory
# =============================================================================


class InMemoryRecordStore:
    """Thread-safe dictionary-backed record store."""

    def __init__(self) -> None:
        self._records: dict[str, TrackingRecord] = {}
        self._lock = threading.Lock()

    def list(self, labels: dict[str, str]) -> list[TrackingRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._records.values() if r.matches(labels)]

    def get(self, name: str) -> TrackingRecord | None:
        with self._lock:
            record = self._records.get(name)
            return copy.deepcopy(record) if record else None

    def create(self, record: TrackingRecord) -> None:
        with self._lock:
            if record.name in self._records:
                raise RecordExistsError(f"tracking record {record.name} already exists")
            self._records[record.name] = copy.deepcopy(record)

    def update(self, record: TrackingRecord) -> None:
        with self._lock:
            if record.name not in self._records:
                raise StoreError(f"tracking record {record.name} not found")
            if record.is_deleting and not record.finalizers:
                del self._records[record.name]
                return
            self._records[record.name] = copy.deepcopy(record)

    def delete(self, record: TrackingRecord) -> None:
        with self._lock:
            current = self._records.get(record.name)
            if current is None:
                logger.debug("Tracking record already gone", extra={"record": record.name})
                return
            kept = _mark_deleted(current)
            if kept is None:
                del self._records[record.name]


class InMemoryStatusStore:
    """Thread-safe dictionary-backed status store."""

    def __init__(self) -> None:
        self._statuses: dict[str, FleetStatus] = {}
        self._lock = threading.Lock()

    def load_status(self, name: str) -> FleetStatus | None:
        with self._lock:
            status = self._statuses.get(name)
            return copy.deepcopy(status) if status else None

    def save_status(self, status: FleetStatus) -> None:
        with self._lock:
            self._statuses[status.name] = copy.deepcopy(status)


# =============================================================================
# File-backed
# =============================================================================


class FileStateStore:
    """YAML-file store for records and fleet status.

    Layout::

        <state_dir>/fleets/<fleet>.yaml
        <state_dir>/records/<record>.yaml
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir
        self._fleets_dir = state_dir / "fleets"
        self._records_dir = state_dir / "records"
        self._lock = threading.RLock()
        try:
            self._fleets_dir.mkdir(parents=True, exist_ok=True)
            self._records_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Failed to create state directory {state_dir}: {e}") from e

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def list(self, labels: dict[str, str]) -> list[TrackingRecord]:
        with self._lock:
            records = []
            for path in sorted(self._records_dir.glob("*.yaml")):
                record = TrackingRecord.from_dict(self._read(path))
                if record.matches(labels):
                    records.append(record)
            return records

    def get(self, name: str) -> TrackingRecord | None:
        with self._lock:
            path = self._record_path(name)
            if not path.exists():
                return None
            return TrackingRecord.from_dict(self._read(path))

    def create(self, record: TrackingRecord) -> None:
        with self._lock:
            path = self._record_path(record.name)
            if path.exists():
                raise RecordExistsError(f"tracking record {record.name} already exists")
            self._write(path, record.to_dict())

    def update(self, record: TrackingRecord) -> None:
        with self._lock:
            path = self._record_path(record.name)
            if not path.exists():
                raise StoreError(f"tracking record {record.name} not found")
            if record.is_deleting and not record.finalizers:
                self._remove(path)
                return
            self._write(path, record.to_dict())

    def delete(self, record: TrackingRecord) -> None:
        with self._lock:
            current = self.get(record.name)
            if current is None:
                logger.debug("Tracking record already gone", extra={"record": record.name})
                return
            kept = _mark_deleted(current)
            if kept is None:
                self._remove(self._record_path(record.name))
            else:
                self._write(self._record_path(record.name), kept.to_dict())

    # -------------------------------------------------------------------------
    # Fleet status
    # -------------------------------------------------------------------------

    def load_status(self, name: str) -> FleetStatus | None:
        with self._lock:
            path = self._status_path(name)
            if not path.exists():
                return None
            return FleetStatus.from_dict(self._read(path))

    def save_status(self, status: FleetStatus) -> None:
        with self._lock:
            self._write(self._status_path(status.name), status.to_dict())

    def list_statuses(self) -> list[FleetStatus]:
        with self._lock:
            return [
                FleetStatus.from_dict(self._read(path))
                for path in sorted(self._fleets_dir.glob("*.yaml"))
            ]

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def _record_path(self, name: str) -> Path:
        return self._records_dir / f"{_check_name(name)}.yaml"

    def _status_path(self, name: str) -> Path:
        return self._fleets_dir / f"{_check_name(name)}.yaml"

    def _read(self, path: Path) -> dict:
        try:
            if path.stat().st_size > MAX_STATE_FILE_SIZE_BYTES:
                raise StoreError(
                    f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: {path}"
                )
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StoreError(f"Failed to read state file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise StoreError(f"Invalid YAML in state file {path}: {e}") from e
        if not isinstance(data, dict):
            raise StoreError(f"State file must contain a YAML mapping: {path}")
        return data

    def _write(self, path: Path, data: dict) -> None:
        try:
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".yaml")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, sort_keys=False)
            os.replace(tmp_name, path)
        except OSError as e:
            raise StoreError(f"Failed to write state file {path}: {e}") from e

    def _remove(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StoreError(f"Failed to remove state file {path}: {e}") from e


def _check_name(name: str) -> str:
    if not _SAFE_NAME.match(name):
        raise StoreError(f"Invalid state object name: {name!r}")
    return name
