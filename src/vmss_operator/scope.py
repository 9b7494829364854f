"""Per-pass reconciliation context for one fleet.

A FleetScope is created at the start of a pass and thrown away at the end.
It carries the (immutable) spec, the status loaded from the store, and the
scale set observed during the pass. Components never write status fields
directly; every mutation goes through a named method here, so the full set of
status changes a pass can make is visible in one place.

The status is persisted once, by the control loop, after the pass.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from . import checkpoint as checkpoints
from .checkpoint import OperationCheckpoint
from .errors import is_operation_not_done
from .models import FleetSpec, Image
from .records import TrackingRecord, fleet_labels
from .status import (
    CREATING_REASON,
    DELETED_REASON,
    DELETING_REASON,
    DELETION_FAILED_REASON,
    FAILED_REASON,
    SCALE_SET_CREATING_REASON,
    SCALE_SET_DELETING_REASON,
    SCALE_SET_DESIRED_REPLICAS,
    SCALE_SET_MODEL_OUT_OF_DATE_REASON,
    SCALE_SET_MODEL_UPDATED,
    SCALE_SET_RUNNING,
    SCALE_SET_SCALE_DOWN_REASON,
    SCALE_SET_SCALE_UP_REASON,
    UPDATING_REASON,
    FleetStatus,
    Severity,
    mark_false,
    mark_true,
    set_summary,
)
from .strategies import DeploymentStrategy, new_deployment_strategy
from .vmss import ObservedScaleSet, ProvisioningState, is_terminal_provisioning_state

logger = logging.getLogger(__name__)


class FleetScope:
    """Context handed to every component taking part in a pass."""

    def __init__(self, spec: FleetSpec, status: FleetStatus | None = None) -> None:
        self._spec = spec
        self._status = status if status is not None else FleetStatus(name=spec.name)
        self._observed: ObservedScaleSet | None = None
        self._strategy: DeploymentStrategy | None = new_deployment_strategy(spec.strategy)

    # =========================================================================
    # Identity
    # =========================================================================

    @property
    def spec(self) -> FleetSpec:
        return self._spec

    @property
    def status(self) -> FleetStatus:
        return self._status

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def scale_set_name(self) -> str:
        return self._spec.scale_set_name

    @property
    def resource_group(self) -> str:
        return self._spec.resource_group

    @property
    def labels(self) -> dict[str, str]:
        return fleet_labels(self._spec.cluster_name, self._spec.name)

    @property
    def desired_replicas(self) -> int:
        return self._spec.replicas

    # =========================================================================
    # Checkpoints
    # =========================================================================

    def get_checkpoint(self, service_name: str) -> OperationCheckpoint | None:
        return checkpoints.get_checkpoint(
            self._status.checkpoints, self.scale_set_name, service_name
        )

    def set_checkpoint(self, checkpoint: OperationCheckpoint) -> None:
        """Record an accepted operation.

        Raises:
            CheckpointConflictError: If another operation is unresolved.
        """
        checkpoints.set_checkpoint(self._status.checkpoints, checkpoint)
        logger.debug(
            "Stored operation checkpoint",
            extra={"fleet": self.name, "operation": checkpoint.describe()},
        )

    def delete_checkpoint(self, service_name: str) -> bool:
        removed = checkpoints.delete_checkpoint(
            self._status.checkpoints, self.scale_set_name, service_name
        )
        if removed:
            logger.debug(
                "Cleared operation checkpoint",
                extra={"fleet": self.name, "service": service_name},
            )
        return removed

    def has_outstanding_checkpoint(self) -> bool:
        return any(c.name == self.scale_set_name for c in self._status.checkpoints)

    # =========================================================================
    # Observed state
    # =========================================================================

    @property
    def observed(self) -> ObservedScaleSet | None:
        return self._observed

    def set_observed(self, observed: ObservedScaleSet | None) -> None:
        """Publish the latest scale set snapshot, with its provider id."""
        self._observed = observed
        if observed is not None:
            self._status.provider_id = observed.provider_id

    def save_image(self, image: Image) -> None:
        self._status.image = image.model_dump(mode="json", by_alias=True, exclude_none=True)

    # =========================================================================
    # Strategy
    # =========================================================================

    def deployment_strategy(self) -> DeploymentStrategy | None:
        return self._strategy

    def max_surge(self) -> int:
        """Surge count for the configured strategy, 0 when there is none."""
        if self._strategy is None:
            return 0
        return self._strategy.surge(self.desired_replicas)

    # =========================================================================
    # Operation conditions
    # =========================================================================

    def update_put_status(
        self, condition: str, service_name: str, err: BaseException | None
    ) -> None:
        if err is None:
            mark_true(self._status.conditions, condition)
        elif is_operation_not_done(err):
            mark_false(
                self._status.conditions,
                condition,
                CREATING_REASON,
                Severity.INFO,
                f"{service_name} creating or updating",
            )
        else:
            mark_false(
                self._status.conditions,
                condition,
                FAILED_REASON,
                Severity.ERROR,
                f"{service_name} failed to create or update. err: {err}",
            )

    def update_patch_status(
        self, condition: str, service_name: str, err: BaseException | None
    ) -> None:
        if err is None:
            mark_true(self._status.conditions, condition)
        elif is_operation_not_done(err):
            mark_false(
                self._status.conditions,
                condition,
                UPDATING_REASON,
                Severity.INFO,
                f"{service_name} updating",
            )
        else:
            mark_false(
                self._status.conditions,
                condition,
                FAILED_REASON,
                Severity.ERROR,
                f"{service_name} failed to update. err: {err}",
            )

    def update_delete_status(
        self, condition: str, service_name: str, err: BaseException | None
    ) -> None:
        if err is None:
            mark_false(
                self._status.conditions,
                condition,
                DELETED_REASON,
                Severity.INFO,
                f"{service_name} successfully deleted",
            )
        elif is_operation_not_done(err):
            mark_false(
                self._status.conditions,
                condition,
                DELETING_REASON,
                Severity.INFO,
                f"{service_name} deleting",
            )
        else:
            mark_false(
                self._status.conditions,
                condition,
                DELETION_FAILED_REASON,
                Severity.ERROR,
                f"{service_name} failed to delete. err: {err}",
            )

    def set_failure(self, reason: str, message: str) -> None:
        self._status.failure_reason = reason
        self._status.failure_message = message

    def clear_failure(self) -> None:
        self._status.failure_reason = None
        self._status.failure_message = None

    @property
    def deletion_requested(self) -> bool:
        return self._status.deletion_requested

    def mark_deleted(self) -> None:
        """Record that the scale set and all its records are gone."""
        self._observed = None
        self._status.deleted = True
        self._status.ready = False
        self._status.provisioning_state = ProvisioningState.DELETED.value
        self._status.provider_id = ""

    # =========================================================================
    # Fleet status
    # =========================================================================

    def update_replicas_and_provider_ids(self, records: list[TrackingRecord]) -> None:
        """Derive replica counters from tracking records, not from Azure."""
        live = [r for r in records if not r.is_deleting]
        self._status.replicas = sum(1 for r in live if r.ready)
        self._status.provider_id_list = sorted(r.provider_id for r in live)

    def set_provisioning_state_and_conditions(self) -> None:
        """Map the observed provisioning state onto status and conditions.

        A Succeeded scale set whose ready replicas do not match the desired
        count is reported as Updating: it is still scaling.
        """
        if self._observed is None:
            return

        conditions = self._status.conditions
        state = self._observed.provisioning_state
        self._status.provisioning_state = state
        desired = self.desired_replicas
        ready = self._status.replicas

        match state:
            case ProvisioningState.SUCCEEDED.value if ready == desired:
                mark_true(conditions, SCALE_SET_RUNNING)
                mark_true(conditions, SCALE_SET_MODEL_UPDATED)
                mark_true(conditions, SCALE_SET_DESIRED_REPLICAS)
                self._status.ready = True
            case ProvisioningState.SUCCEEDED.value:
                self._status.provisioning_state = ProvisioningState.UPDATING.value
                reason = SCALE_SET_SCALE_UP_REASON if desired > ready else SCALE_SET_SCALE_DOWN_REASON
                mark_false(conditions, SCALE_SET_DESIRED_REPLICAS, reason, Severity.INFO)
                self._status.ready = False
            case ProvisioningState.UPDATING.value:
                mark_false(
                    conditions, SCALE_SET_MODEL_UPDATED, SCALE_SET_MODEL_OUT_OF_DATE_REASON, Severity.INFO
                )
                self._status.ready = False
            case ProvisioningState.CREATING.value:
                mark_false(conditions, SCALE_SET_RUNNING, SCALE_SET_CREATING_REASON, Severity.INFO)
                self._status.ready = False
            case ProvisioningState.DELETING.value:
                mark_false(conditions, SCALE_SET_RUNNING, SCALE_SET_DELETING_REASON, Severity.INFO)
                self._status.ready = False
            case _:
                mark_false(conditions, SCALE_SET_RUNNING, state or "Unknown", Severity.INFO)
                self._status.ready = False

    def needs_requeue(self) -> bool:
        """Whether the fleet should be looked at again soon.

        True while the provisioning state is not terminal, while some
        instance runs an old model, or while the instance count differs from
        the desired count. Without an observed scale set, only an outstanding
        operation warrants a requeue.
        """
        if self._observed is None:
            return self.has_outstanding_checkpoint()
        if not is_terminal_provisioning_state(self._observed.provisioning_state):
            return True
        if not self._observed.has_latest_model_applied_to_all():
            return True
        return len(self._observed.instances) != self.desired_replicas

    def close(self) -> FleetStatus:
        """Finish the pass: summarize conditions and stamp the status."""
        set_summary(self._status.conditions)
        self._status.last_reconciled_at = datetime.now(UTC)
        return self._status
