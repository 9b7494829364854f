"""Keep tracking records in step with the instances of a scale set.

apply() runs the membership steps in a fixed order:

1. create a record for every instance that has none
2. delete records whose instance is gone; if any were deleted, stop
3. stop while a scale set operation is outstanding
4. stop when the fleet has no deployment strategy
5. delete the records the strategy selects

Stopping after step 2 throttles shrinking to one batch per pass, so victims
are never chosen from a membership picture that is known to be stale.

Deleted records keep their finalizer until finalize() has removed their
instance from the scale set (or seen it vanish). refresh_records() copies
instance health onto the records; fleet readiness counters are derived from
the records, never from Azure directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .client import ScaleSetClient
from .errors import wrap_error
from .records import (
    FLEET_KIND,
    RECORD_FINALIZER,
    OwnerReference,
    TrackingRecord,
    record_name,
)
from .scope import FleetScope
from .status import CREATING_REASON, VM_RUNNING, Severity, mark_false, mark_true
from .store import RecordStore
from .vmss import ProvisioningState, ScaleSetInstance

logger = logging.getLogger(__name__)


class InvalidInstanceError(Exception):
    """Raised when an instance lacks the data needed to track it."""

    pass


@dataclass
class SyncResult:
    """What one apply() pass did."""

    created: list[str] = field(default_factory=list)
    removed_vanished: list[str] = field(default_factory=list)
    removed_selected: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.removed_vanished or self.removed_selected)


class InstanceSynchronizer:
    """Synchronizes tracking records for one fleet at a time."""

    def __init__(self, store: RecordStore, client: ScaleSetClient) -> None:
        self._store = store
        self._client = client

    def apply(self, scope: FleetScope) -> SyncResult:
        """Reconcile records against the observed instances.

        Does nothing when no scale set was observed this pass.
        """
        result = SyncResult()
        observed = scope.observed
        if observed is None:
            return result

        records = self._store.list(scope.labels)
        known = {r.provider_id for r in records}
        live = {r.provider_id: r for r in records if not r.is_deleting}
        instances = observed.instances_by_provider_id()

        for provider_id, instance in instances.items():
            if provider_id in known:
                continue
            record = new_record(scope, instance)
            self._store.create(record)
            result.created.append(record.name)
            logger.info(
                "Created tracking record",
                extra={"fleet": scope.name, "record": record.name, "provider_id": provider_id},
            )

        for provider_id, record in list(live.items()):
            if provider_id in instances:
                continue
            del live[provider_id]
            self._store.delete(record)
            result.removed_vanished.append(record.name)
        if result.removed_vanished:
            logger.info(
                "Deleted tracking records of vanished instances",
                extra={"fleet": scope.name, "records": result.removed_vanished},
            )
            return result

        if scope.has_outstanding_checkpoint():
            logger.debug(
                "Scale set operation outstanding, skipping delete selection",
                extra={"fleet": scope.name},
            )
            return result

        strategy = scope.deployment_strategy()
        if strategy is None:
            return result

        for record in strategy.select_records_to_delete(scope.desired_replicas, live):
            self._store.delete(record)
            result.removed_selected.append(record.name)
        if result.removed_selected:
            logger.info(
                "Deleted tracking records selected by deployment strategy",
                extra={
                    "fleet": scope.name,
                    "records": result.removed_selected,
                    "desired_replicas": scope.desired_replicas,
                },
            )
        return result

    def finalize(self, scope: FleetScope) -> list[str]:
        """Clean up instances of deleted records, then release the records.

        A deleted record whose instance is gone loses its finalizer and
        disappears. Instances still present are removed from the scale set
        in a single call. Skipped while a scale set operation is outstanding.

        Returns:
            Names of the records released.
        """
        observed = scope.observed
        if observed is None or scope.has_outstanding_checkpoint():
            return []

        instances = observed.instances_by_provider_id()
        released: list[str] = []
        pending: list[TrackingRecord] = []
        for record in self._store.list(scope.labels):
            if not record.is_deleting or RECORD_FINALIZER not in record.finalizers:
                continue
            if record.provider_id not in instances:
                record.finalizers.remove(RECORD_FINALIZER)
                self._store.update(record)
                released.append(record.name)
            elif not record.instance_delete_issued:
                pending.append(record)

        if pending:
            instance_ids = [r.instance_id for r in pending]
            try:
                self._client.delete_instances_async(
                    scope.resource_group, scope.scale_set_name, instance_ids
                )
            except Exception as e:
                raise wrap_error(
                    e, f"failed to delete instances {instance_ids} of VMSS {scope.scale_set_name}"
                ) from e
            for record in pending:
                record.instance_delete_issued = True
                self._store.update(record)
            logger.info(
                "Deleting scale set instances",
                extra={"fleet": scope.name, "instance_ids": instance_ids},
            )

        if released:
            logger.debug("Released tracking records", extra={"fleet": scope.name, "records": released})
        return released

    def refresh_records(self, scope: FleetScope) -> None:
        """Copy instance state onto live records. Writes only what changed."""
        observed = scope.observed
        if observed is None:
            return

        instances = observed.instances_by_provider_id()
        for record in self._store.list(scope.labels):
            instance = instances.get(record.provider_id)
            if instance is None or record.is_deleting:
                continue
            if _refresh(record, instance):
                self._store.update(record)

    def remove_all(self, scope: FleetScope) -> int:
        """Drop every record of a fleet whose scale set is gone."""
        count = 0
        for record in self._store.list(scope.labels):
            record.finalizers = [f for f in record.finalizers if f != RECORD_FINALIZER]
            # Deleting records without finalizers vanish on update
            self._store.update(record)
            if not record.is_deleting:
                self._store.delete(record)
            count += 1
        return count


def new_record(scope: FleetScope, instance: ScaleSetInstance) -> TrackingRecord:
    """Build the tracking record for a newly seen instance.

    Raises:
        InvalidInstanceError: If the instance has no instance id or name.
    """
    if not instance.instance_id:
        raise InvalidInstanceError("instance id must not be empty")
    if not instance.name:
        raise InvalidInstanceError("instance name must not be empty")

    record = TrackingRecord(
        name=record_name(scope.name, instance.instance_id),
        provider_id=instance.provider_id,
        instance_id=instance.instance_id,
        owner=OwnerReference(kind=FLEET_KIND, name=scope.name),
        labels=scope.labels,
        finalizers=[RECORD_FINALIZER],
        latest_model_applied=instance.latest_model_applied,
        provisioning_state=instance.provisioning_state,
    )
    if instance.created_at is not None:
        record.created_at = instance.created_at
    mark_false(record.conditions, VM_RUNNING, CREATING_REASON, Severity.INFO)
    return record


def _refresh(record: TrackingRecord, instance: ScaleSetInstance) -> bool:
    state = instance.provisioning_state
    ready = state == ProvisioningState.SUCCEEDED.value
    changed = (
        record.ready != ready
        or record.provisioning_state != state
        or record.latest_model_applied != instance.latest_model_applied
    )
    if not changed:
        return False

    record.ready = ready
    record.provisioning_state = state
    record.latest_model_applied = instance.latest_model_applied
    if ready:
        mark_true(record.conditions, VM_RUNNING)
    else:
        severity = Severity.ERROR if state == ProvisioningState.FAILED.value else Severity.INFO
        mark_false(record.conditions, VM_RUNNING, state or CREATING_REASON, severity)
    return True
