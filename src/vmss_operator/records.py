"""Per-instance tracking records.

One TrackingRecord exists for every scale set instance the synchronizer has
seen. Records are keyed by provider id, which never changes for the life of
the record. Deleting a record is how the rolling update strategy shrinks a
fleet: a record marked for deletion has its instance removed from the scale
set before its finalizer is dropped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .status import Condition

CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"
FLEET_NAME_LABEL = "vmss-operator.io/fleet-name"
RECORD_FINALIZER = "vmss-operator.io/instance-cleanup"
FLEET_KIND = "Fleet"


def record_name(fleet_name: str, instance_id: str) -> str:
    return f"{fleet_name}-{instance_id}"


def fleet_labels(cluster_name: str, fleet_name: str) -> dict[str, str]:
    """Labels that select every record of a fleet."""
    return {CLUSTER_NAME_LABEL: cluster_name, FLEET_NAME_LABEL: fleet_name}


@dataclass(frozen=True)
class OwnerReference:
    kind: str
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "name": self.name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OwnerReference:
        return cls(kind=data["kind"], name=data["name"])


@dataclass
class TrackingRecord:
    """Tracking state for one scale set instance.

    Attributes:
        name: ``<fleet>-<instanceId>``.
        provider_id: Immutable key, ``azure://<instance resource id>``.
        instance_id: Scale set instance id.
        owner: The owning fleet.
        labels: Cluster and fleet selector labels.
        finalizers: Cleanup hooks that must run before the record goes away.
        conditions: VMRunning and friends.
        ready: Whether the instance is up and serving.
        latest_model_applied: Whether the instance runs the current model.
        provisioning_state: Last observed instance provisioning state.
        delete_requested: Operator asked for this instance to go first.
        deletion_timestamp: Set once deletion started, finalizers pending.
        instance_delete_issued: The scale set instance delete was sent.
    """

    name: str
    provider_id: str
    instance_id: str
    owner: OwnerReference
    labels: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    conditions: list[Condition] = field(default_factory=list)
    ready: bool = False
    latest_model_applied: bool = True
    provisioning_state: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    delete_requested: bool = False
    deletion_timestamp: datetime | None = None
    instance_delete_issued: bool = False

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def matches(self, labels: dict[str, str]) -> bool:
        return all(self.labels.get(k) == v for k, v in labels.items())

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "provider_id": self.provider_id,
            "instance_id": self.instance_id,
            "owner": self.owner.to_dict(),
            "labels": dict(self.labels),
            "finalizers": list(self.finalizers),
            "conditions": [c.to_dict() for c in self.conditions],
            "ready": self.ready,
            "latest_model_applied": self.latest_model_applied,
            "provisioning_state": self.provisioning_state,
            "created_at": self.created_at.isoformat(),
            "delete_requested": self.delete_requested,
            "deletion_timestamp": (
                self.deletion_timestamp.isoformat() if self.deletion_timestamp else None
            ),
            "instance_delete_issued": self.instance_delete_issued,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackingRecord:
        """Create from dictionary."""
        deletion = data.get("deletion_timestamp")
        return cls(
            name=data["name"],
            provider_id=data["provider_id"],
            instance_id=data["instance_id"],
            owner=OwnerReference.from_dict(data["owner"]),
            labels=dict(data.get("labels") or {}),
            finalizers=list(data.get("finalizers") or []),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
            ready=bool(data.get("ready", False)),
            latest_model_applied=bool(data.get("latest_model_applied", True)),
            provisioning_state=data.get("provisioning_state", ""),
            created_at=datetime.fromisoformat(data["created_at"]),
            delete_requested=bool(data.get("delete_requested", False)),
            deletion_timestamp=datetime.fromisoformat(deletion) if deletion else None,
            instance_delete_issued=bool(data.get("instance_delete_issued", False)),
        )
