"""Fleet status and conditions.

FleetStatus is the only state carried between passes: the observed summary,
conditions, and the outstanding operation checkpoints. It is persisted once
per pass by the control loop.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .checkpoint import OperationCheckpoint

# =============================================================================
# Conditions
# =============================================================================

# Fleet conditions
SCALE_SET_RUNNING = "ScaleSetRunning"
SCALE_SET_MODEL_UPDATED = "ScaleSetModelUpdated"
SCALE_SET_DESIRED_REPLICAS = "ScaleSetDesiredReplicas"
BOOTSTRAP_SUCCEEDED = "BootstrapSucceeded"
READY = "Ready"

# Tracking record conditions
VM_RUNNING = "VMRunning"

# Reasons
CREATING_REASON = "Creating"
UPDATING_REASON = "Updating"
DELETING_REASON = "Deleting"
DELETED_REASON = "Deleted"
FAILED_REASON = "Failed"
DELETION_FAILED_REASON = "DeletionFailed"
SCALE_SET_CREATING_REASON = "ScaleSetCreating"
SCALE_SET_DELETING_REASON = "ScaleSetDeleting"
SCALE_SET_SCALE_UP_REASON = "ScaleSetScaleUp"
SCALE_SET_SCALE_DOWN_REASON = "ScaleSetScaleDown"
SCALE_SET_MODEL_OUT_OF_DATE_REASON = "ScaleSetModelOutOfDate"

# Failure reasons surfaced for terminal errors
INVALID_CONFIGURATION = "InvalidConfiguration"

# Conditions summarized into Ready, in priority order
SUMMARIZED_CONDITIONS: tuple[str, ...] = (
    SCALE_SET_RUNNING,
    SCALE_SET_MODEL_UPDATED,
    SCALE_SET_DESIRED_REPLICAS,
    BOOTSTRAP_SUCCEEDED,
)


class Severity(str, Enum):
    """How bad a false condition is."""

    NONE = ""
    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"


@dataclass
class Condition:
    """Observation of one aspect of a fleet or record."""

    type: str
    status: bool
    reason: str = ""
    severity: Severity = Severity.NONE
    message: str = ""
    last_transition_time: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "severity": self.severity.value,
            "message": self.message,
            "last_transition_time": self.last_transition_time.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Condition:
        return cls(
            type=data["type"],
            status=bool(data["status"]),
            reason=data.get("reason", ""),
            severity=Severity(data.get("severity", "")),
            message=data.get("message", ""),
            last_transition_time=datetime.fromisoformat(data["last_transition_time"]),
        )


def get_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def is_true(conditions: list[Condition], condition_type: str) -> bool:
    condition = get_condition(conditions, condition_type)
    return condition is not None and condition.status


def set_condition(conditions: list[Condition], condition: Condition) -> None:
    """Insert or replace a condition.

    The transition time only moves when the status flips.
    """
    existing = get_condition(conditions, condition.type)
    if existing is None:
        conditions.append(condition)
        return
    if existing.status == condition.status:
        condition = replace(condition, last_transition_time=existing.last_transition_time)
    conditions[conditions.index(existing)] = condition


def mark_true(conditions: list[Condition], condition_type: str) -> None:
    set_condition(conditions, Condition(type=condition_type, status=True))


def mark_false(
    conditions: list[Condition],
    condition_type: str,
    reason: str,
    severity: Severity = Severity.INFO,
    message: str = "",
) -> None:
    set_condition(
        conditions,
        Condition(
            type=condition_type,
            status=False,
            reason=reason,
            severity=severity,
            message=message,
        ),
    )


def set_summary(conditions: list[Condition]) -> None:
    """Derive the Ready condition from the other fleet conditions.

    Ready mirrors the first false condition (errors before warnings before
    info). Conditions that were never set do not block readiness.
    """
    false_conditions = [
        c
        for t in SUMMARIZED_CONDITIONS
        if (c := get_condition(conditions, t)) is not None and not c.status
    ]
    if not false_conditions:
        mark_true(conditions, READY)
        return

    order = {Severity.ERROR: 0, Severity.WARNING: 1, Severity.INFO: 2, Severity.NONE: 3}
    worst = min(false_conditions, key=lambda c: order[c.severity])
    mark_false(conditions, READY, worst.reason, worst.severity, worst.message)


# =============================================================================
# Fleet status
# =============================================================================


@dataclass
class FleetStatus:
    """Persisted status of one fleet."""

    name: str
    provisioning_state: str | None = None
    ready: bool = False
    replicas: int = 0
    provider_id: str = ""
    provider_id_list: list[str] = field(default_factory=list)
    conditions: list[Condition] = field(default_factory=list)
    failure_reason: str | None = None
    failure_message: str | None = None
    image: dict[str, Any] | None = None
    checkpoints: list[OperationCheckpoint] = field(default_factory=list)
    deletion_requested: bool = False
    deleted: bool = False
    last_reconciled_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "provisioning_state": self.provisioning_state,
            "ready": self.ready,
            "replicas": self.replicas,
            "provider_id": self.provider_id,
            "provider_id_list": list(self.provider_id_list),
            "conditions": [c.to_dict() for c in self.conditions],
            "failure_reason": self.failure_reason,
            "failure_message": self.failure_message,
            "image": self.image,
            "checkpoints": [c.to_dict() for c in self.checkpoints],
            "deletion_requested": self.deletion_requested,
            "deleted": self.deleted,
            "last_reconciled_at": (
                self.last_reconciled_at.isoformat() if self.last_reconciled_at else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FleetStatus:
        """Create from dictionary."""
        last = data.get("last_reconciled_at")
        return cls(
            name=data["name"],
            provisioning_state=data.get("provisioning_state"),
            ready=bool(data.get("ready", False)),
            replicas=int(data.get("replicas", 0)),
            provider_id=data.get("provider_id", ""),
            provider_id_list=list(data.get("provider_id_list") or []),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
            failure_reason=data.get("failure_reason"),
            failure_message=data.get("failure_message"),
            image=data.get("image"),
            checkpoints=[OperationCheckpoint.from_dict(c) for c in data.get("checkpoints") or []],
            deletion_requested=bool(data.get("deletion_requested", False)),
            deleted=bool(data.get("deleted", False)),
            last_reconciled_at=datetime.fromisoformat(last) if last else None,
        )
