"""Tests for tracking record synchronization."""

from __future__ import annotations

from typing import Any

import pytest
from azure.core.exceptions import HttpResponseError
from azure_mock import SUBSCRIPTION_ID, MockScaleSetClient, make_sku, make_spec
from azure_mock.fleets import BOOTSTRAP_DATA

from vmss_operator.builder import ScaleSetBuilder
from vmss_operator.checkpoint import OperationCheckpoint, OperationKind
from vmss_operator.errors import TransientError
from vmss_operator.records import RECORD_FINALIZER, record_name
from vmss_operator.scope import FleetScope
from vmss_operator.status import VM_RUNNING, Severity, get_condition
from vmss_operator.store import InMemoryRecordStore
from vmss_operator.synchronizer import InstanceSynchronizer, InvalidInstanceError, new_record
from vmss_operator.vmss import ScaleSetInstance

RG = "rg-cluster"
ROLLING = {"type": "RollingUpdate", "rollingUpdate": {"maxSurge": 1, "maxUnavailable": 0}}


def _scope(client: MockScaleSetClient, **overrides: Any) -> FleetScope:
    """Scope with the scale set observed as the mock reports it."""
    scope = FleetScope(make_spec(**overrides))
    observed = client.get(RG, scope.scale_set_name)
    scope.set_observed(observed.with_instances(client.list_instances(RG, scope.scale_set_name)))
    return scope


def _seed(client: MockScaleSetClient, capacity: int) -> list[ScaleSetInstance]:
    spec = make_spec()
    assert spec.image is not None
    model = ScaleSetBuilder(
        spec, make_sku(), spec.image, BOOTSTRAP_DATA, subscription_id=SUBSCRIPTION_ID
    ).build_model()
    return client.add_scale_set(RG, "pool0", capacity, model).instances


class TestApply:
    """Tests for InstanceSynchronizer.apply()."""

    def test_creates_record_per_instance(
        self,
        client: MockScaleSetClient,
        records: InMemoryRecordStore,
        synchronizer: InstanceSynchronizer,
    ) -> None:
        """Test that every instance gets a record with finalizer and labels."""
        _seed(client, 2)
        scope = _scope(client)

        result = synchronizer.apply(scope)

        assert result.created == ["pool0-0", "pool0-1"]
        record = records.get("pool0-0")
        assert record is not None
        assert record.finalizers == [RECORD_FINALIZER]
        assert record.owner.name == "pool0"
        assert record.labels == scope.labels
        condition = get_condition(record.conditions, VM_RUNNING)
        assert condition is not None
        assert condition.status is False

    def test_creates_missing_then_deletes_vanished(
        self,
        client: MockScaleSetClient,
        records: InMemoryRecordStore,
        synchronizer: InstanceSynchronizer,
    ) -> None:
        """Test instances {A,B,C} with records {A,B}, then instances {A,B}."""
        a, b, c = _seed(client, 3)
        spec_overrides = {"replicas": 1, "strategy": ROLLING}
        scope = _scope(client, **spec_overrides)
        records.create(new_record(scope, a))
        records.create(new_record(scope, b))

        first = synchronizer.apply(scope)

        assert first.created == [record_name("pool0", c.instance_id)]
        assert first.removed_vanished == []
        synchronizer.refresh_records(scope)

        client.remove_instance(RG, "pool0", c.instance_id)
        second = synchronizer.apply(_scope(client, **spec_overrides))

        assert second.created == []
        assert second.removed_vanished == [record_name("pool0", c.instance_id)]
        # 2 ready records for 1 desired, but selection waits for the next pass
        assert second.removed_selected == []
        deleting = [r.name for r in records.list(scope.labels) if r.is_deleting]
        assert deleting == [record_name("pool0", c.instance_id)]

    def test_no_selection_without_strategy(
        self,
        client: MockScaleSetClient,
        records: InMemoryRecordStore,
        synchronizer: InstanceSynchronizer,
    ) -> None:
        """Test that a fleet without strategy never shrinks by selection."""
        _seed(client, 3)
        scope = _scope(client, replicas=1)
        synchronizer.apply(scope)
        synchronizer.refresh_records(scope)

        result = synchronizer.apply(scope)

        assert result.removed_selected == []

    def test_no_selection_while_operation_outstanding(
        self,
        client: MockScaleSetClient,
        records: InMemoryRecordStore,
        synchronizer: InstanceSynchronizer,
    ) -> None:
        """Test that delete selection waits for the scale set operation."""
        _seed(client, 3)
        scope = _scope(client, replicas=1, strategy=ROLLING)
        synchronizer.apply(scope)
        synchronizer.refresh_records(scope)
        scope.set_checkpoint(
            OperationCheckpoint(
                kind=OperationKind.UPDATE,
                service_name="scalesets",
                resource_group=RG,
                name="pool0",
            )
        )

        result = synchronizer.apply(scope)

        assert result.removed_selected == []

    def test_strategy_selects_surplus(
        self,
        client: MockScaleSetClient,
        records: InMemoryRecordStore,
        synchronizer: InstanceSynchronizer,
    ) -> None:
        """Test that surplus ready records are deleted oldest first."""
        _seed(client, 3)
        scope = _scope(client, replicas=2, strategy=ROLLING)
        synchronizer.apply(scope)
        synchronizer.refresh_records(scope)

        result = synchronizer.apply(scope)

        assert result.removed_selected == ["pool0-0"]
        assert result.changed

    def test_nothing_without_observed_scale_set(self, synchronizer: InstanceSynchronizer) -> None:
        """Test that apply is a no-op when nothing was observed."""
        result = synchronizer.apply(FleetScope(make_spec()))

        assert not result.changed


class TestFinalize:
    """Tests for InstanceSynchronizer.finalize()."""

    def test_removes_instances_of_deleted_records_in_one_call(
        self,
        client: MockScaleSetClient,
        records: InMemoryRecordStore,
        synchronizer: InstanceSynchronizer,
    ) -> None:
        """Test instance deletion is batched and issued once."""
        _seed(client, 4)
        scope = _scope(client, replicas=2, strategy=ROLLING)
        synchronizer.apply(scope)
        synchronizer.refresh_records(scope)
        synchronizer.apply(scope)

        released = synchronizer.finalize(scope)
        synchronizer.finalize(scope)

        assert released == []
        calls = client.calls_to("delete_instances_async")
        assert len(calls) == 1
        assert calls[0].args["instance_ids"] == ["0", "1"]
        assert all(r.instance_delete_issued for r in records.list(scope.labels) if r.is_deleting)

    def test_releases_records_whose_instance_is_gone(
        self,
        client: MockScaleSetClient,
        records: InMemoryRecordStore,
        synchronizer: InstanceSynchronizer,
    ) -> None:
        """Test that the finalizer is dropped once the instance vanished."""
        _seed(client, 3)
        scope = _scope(client, replicas=2, strategy=ROLLING)
        synchronizer.apply(scope)
        synchronizer.refresh_records(scope)
        synchronizer.apply(scope)
        synchronizer.finalize(scope)

        released = synchronizer.finalize(_scope(client, replicas=2, strategy=ROLLING))

        assert released == ["pool0-0"]
        assert records.get("pool0-0") is None
        assert len(records.list(scope.labels)) == 2

    def test_skipped_while_operation_outstanding(
        self,
        client: MockScaleSetClient,
        records: InMemoryRecordStore,
        synchronizer: InstanceSynchronizer,
    ) -> None:
        """Test that no instance delete races a scale set operation."""
        _seed(client, 3)
        scope = _scope(client, replicas=2, strategy=ROLLING)
        synchronizer.apply(scope)
        synchronizer.refresh_records(scope)
        synchronizer.apply(scope)
        scope.set_checkpoint(
            OperationCheckpoint(
                kind=OperationKind.UPDATE,
                service_name="scalesets",
                resource_group=RG,
                name="pool0",
            )
        )

        assert synchronizer.finalize(scope) == []
        assert client.calls_to("delete_instances_async") == []

    def test_instance_delete_failure_is_wrapped(
        self,
        client: MockScaleSetClient,
        records: InMemoryRecordStore,
        synchronizer: InstanceSynchronizer,
    ) -> None:
        """Test that a failed instance delete leaves records retryable."""
        _seed(client, 3)
        scope = _scope(client, replicas=2, strategy=ROLLING)
        synchronizer.apply(scope)
        synchronizer.refresh_records(scope)
        synchronizer.apply(scope)
        client.fail_next("delete_instances_async", HttpResponseError("throttled"))

        with pytest.raises(TransientError) as exc_info:
            synchronizer.finalize(scope)

        assert "failed to delete instances ['0']" in str(exc_info.value)
        record = records.get("pool0-0")
        assert record is not None
        assert record.instance_delete_issued is False


class TestRefreshRecords:
    """Tests for InstanceSynchronizer.refresh_records()."""

    def test_ready_follows_instance_state(
        self,
        client: MockScaleSetClient,
        records: InMemoryRecordStore,
        synchronizer: InstanceSynchronizer,
    ) -> None:
        """Test readiness and VMRunning mirror the instance."""
        _seed(client, 2)
        synchronizer.apply(_scope(client))
        client.set_instance_state(RG, "pool0", "1", "Failed")

        scope = _scope(client)
        synchronizer.refresh_records(scope)

        ready = records.get("pool0-0")
        failed = records.get("pool0-1")
        assert ready is not None and failed is not None
        assert ready.ready is True
        assert failed.ready is False
        condition = get_condition(failed.conditions, VM_RUNNING)
        assert condition is not None
        assert condition.reason == "Failed"
        assert condition.severity == Severity.ERROR

    def test_counters_derived_from_records(
        self,
        client: MockScaleSetClient,
        records: InMemoryRecordStore,
        synchronizer: InstanceSynchronizer,
    ) -> None:
        """Test that ready replicas and provider ids come from live records."""
        instances = _seed(client, 3)
        scope = _scope(client)
        synchronizer.apply(scope)
        synchronizer.refresh_records(scope)
        client.set_instance_state(RG, "pool0", "2", "Creating")
        scope = _scope(client)
        synchronizer.refresh_records(scope)

        scope.update_replicas_and_provider_ids(records.list(scope.labels))

        assert scope.status.replicas == 2
        assert scope.status.provider_id_list == sorted(i.provider_id for i in instances)


class TestRemoveAll:
    """Tests for InstanceSynchronizer.remove_all()."""

    def test_drops_every_record(
        self,
        client: MockScaleSetClient,
        records: InMemoryRecordStore,
        synchronizer: InstanceSynchronizer,
    ) -> None:
        """Test that live and deleting records all disappear."""
        _seed(client, 3)
        scope = _scope(client, replicas=2, strategy=ROLLING)
        synchronizer.apply(scope)
        synchronizer.refresh_records(scope)
        synchronizer.apply(scope)

        assert synchronizer.remove_all(scope) == 3
        assert records.list(scope.labels) == []


class TestNewRecord:
    """Tests for new_record()."""

    def test_instance_without_id_rejected(self) -> None:
        """Test that instances must have an id."""
        instance = ScaleSetInstance(id="/x", instance_id="", name="pool0_0")

        with pytest.raises(InvalidInstanceError):
            new_record(FleetScope(make_spec()), instance)

    def test_created_at_taken_from_instance(self, client: MockScaleSetClient) -> None:
        """Test that record age follows the instance."""
        [instance] = _seed(client, 1)

        record = new_record(FleetScope(make_spec()), instance)

        assert record.created_at == instance.created_at
        assert record.provider_id.startswith("azure:///subscriptions/")
