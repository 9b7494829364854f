"""Operation checkpoints for long running Azure operations.

A checkpoint is the persisted form of an in-flight asynchronous mutation
(create, patch or delete of a scale set). It lets a multi-minute Azure
operation span many short reconciliation passes: the pass that starts the
operation stores a checkpoint, later passes poll it, and the pass that sees
the operation finish clears it.

Checkpoints are keyed by (resource name, service name). At most one may exist
per key; its presence is the only signal that a mutation is outstanding.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class OperationKind(str, Enum):
    """Kinds of long running operations."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"


class CheckpointConflictError(Exception):
    """Raised when storing a checkpoint while another one is unresolved."""

    pass


@dataclass(frozen=True)
class OperationCheckpoint:
    """Durable record of an in-flight cloud operation.

    Attributes:
        kind: Create, Update or Delete.
        service_name: Subsystem that owns the operation (e.g. "scalesets").
        resource_group: Resource group of the target resource.
        name: Name of the target resource.
        data: Opaque polling token returned by the cloud client.
        created_at: When the operation was accepted.
    """

    kind: OperationKind
    service_name: str
    resource_group: str
    name: str
    data: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def matches(self, name: str, service_name: str) -> bool:
        return self.name == name and self.service_name == service_name

    def describe(self) -> str:
        return f"{self.kind.value} on {self.resource_group}/{self.name}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "kind": self.kind.value,
            "service_name": self.service_name,
            "resource_group": self.resource_group,
            "name": self.name,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OperationCheckpoint:
        """Create from dictionary."""
        return cls(
            kind=OperationKind(data["kind"]),
            service_name=data["service_name"],
            resource_group=data["resource_group"],
            name=data["name"],
            data=data.get("data", ""),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


def get_checkpoint(
    checkpoints: list[OperationCheckpoint], name: str, service_name: str
) -> OperationCheckpoint | None:
    """Find the checkpoint for a (resource, service) pair, if any."""
    for checkpoint in checkpoints:
        if checkpoint.matches(name, service_name):
            return checkpoint
    return None


def set_checkpoint(
    checkpoints: list[OperationCheckpoint], checkpoint: OperationCheckpoint
) -> None:
    """Store a checkpoint.

    Raises:
        CheckpointConflictError: If an unresolved checkpoint already exists
            for the same resource and service.
    """
    existing = get_checkpoint(checkpoints, checkpoint.name, checkpoint.service_name)
    if existing is not None and existing != checkpoint:
        raise CheckpointConflictError(
            f"operation {existing.describe()} is still outstanding for service "
            f"{existing.service_name}; refusing to record {checkpoint.describe()}"
        )
    if existing is None:
        checkpoints.append(checkpoint)


def delete_checkpoint(
    checkpoints: list[OperationCheckpoint], name: str, service_name: str
) -> bool:
    """Remove the checkpoint for a (resource, service) pair.

    Returns:
        True if a checkpoint was removed.
    """
    for i, checkpoint in enumerate(checkpoints):
        if checkpoint.matches(name, service_name):
            del checkpoints[i]
            return True
    return False
