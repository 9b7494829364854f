"""Tests for record and status stores."""

from __future__ import annotations

from pathlib import Path

import pytest

from vmss_operator.records import (
    RECORD_FINALIZER,
    OwnerReference,
    TrackingRecord,
    fleet_labels,
)
from vmss_operator.status import FleetStatus
from vmss_operator.store import (
    FileStateStore,
    InMemoryRecordStore,
    RecordExistsError,
    StoreError,
)

LABELS = fleet_labels("cluster1", "pool0")


def _record(instance_id: str = "0", finalizers: list[str] | None = None) -> TrackingRecord:
    return TrackingRecord(
        name=f"pool0-{instance_id}",
        provider_id=f"azure:///subscriptions/s/resourceGroups/rg/virtualMachines/{instance_id}",
        instance_id=instance_id,
        owner=OwnerReference(kind="Fleet", name="pool0"),
        labels=dict(LABELS),
        finalizers=[RECORD_FINALIZER] if finalizers is None else finalizers,
    )


@pytest.fixture(params=["memory", "file"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> InMemoryRecordStore | FileStateStore:
    if request.param == "memory":
        return InMemoryRecordStore()
    return FileStateStore(tmp_path / "state")


class TestRecordStore:
    """Contract tests shared by both record stores."""

    def test_create_and_list_by_labels(self, store: InMemoryRecordStore | FileStateStore) -> None:
        """Test that records are listed by label selector."""
        store.create(_record("0"))
        other = _record("1")
        other.labels = fleet_labels("cluster1", "pool1")
        store.create(other)

        listed = store.list(LABELS)

        assert [r.name for r in listed] == ["pool0-0"]

    def test_create_duplicate_rejected(self, store: InMemoryRecordStore | FileStateStore) -> None:
        """Test that names are unique."""
        store.create(_record("0"))

        with pytest.raises(RecordExistsError):
            store.create(_record("0"))

    def test_delete_with_finalizer_only_marks(
        self, store: InMemoryRecordStore | FileStateStore
    ) -> None:
        """Test that a finalizer keeps a deleted record around."""
        store.create(_record("0"))
        store.delete(_record("0"))

        [record] = store.list(LABELS)
        assert record.is_deleting

    def test_removing_last_finalizer_drops_record(
        self, store: InMemoryRecordStore | FileStateStore
    ) -> None:
        """Test that an update without finalizers removes a deleting record."""
        store.create(_record("0"))
        store.delete(_record("0"))
        [record] = store.list(LABELS)

        record.finalizers = []
        store.update(record)

        assert store.list(LABELS) == []

    def test_delete_without_finalizer_removes(
        self, store: InMemoryRecordStore | FileStateStore
    ) -> None:
        """Test immediate removal when no finalizer is set."""
        store.create(_record("0", finalizers=[]))
        store.delete(_record("0"))

        assert store.list(LABELS) == []

    def test_update_missing_record_fails(self, store: InMemoryRecordStore | FileStateStore) -> None:
        """Test that updating an unknown record is an error."""
        with pytest.raises(StoreError):
            store.update(_record("9"))


class TestFileStateStore:
    """Tests specific to the file-backed store."""

    def test_status_survives_new_store_instance(self, tmp_path: Path) -> None:
        """Test that status written by one store is read by another."""
        FileStateStore(tmp_path).save_status(FleetStatus(name="pool0", replicas=3))

        loaded = FileStateStore(tmp_path).load_status("pool0")

        assert loaded is not None
        assert loaded.replicas == 3

    def test_missing_status_is_none(self, tmp_path: Path) -> None:
        """Test that an unknown fleet has no status."""
        assert FileStateStore(tmp_path).load_status("nope") is None

    def test_unsafe_name_rejected(self, tmp_path: Path) -> None:
        """Test that names cannot escape the state directory."""
        with pytest.raises(StoreError):
            FileStateStore(tmp_path).load_status("../etc/passwd")

    def test_corrupt_file_reported(self, tmp_path: Path) -> None:
        """Test that invalid YAML raises StoreError."""
        store = FileStateStore(tmp_path)
        (tmp_path / "fleets" / "pool0.yaml").write_text("{not: [valid")

        with pytest.raises(StoreError) as exc_info:
            store.load_status("pool0")

        assert "Invalid YAML" in str(exc_info.value)
