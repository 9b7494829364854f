"""Decide whether an existing scale set needs a patch, and with what capacity.

Only the comparable model is diffed. Capacity is handled by the surge rule,
and the network profile is never compared nor patched: once a scale set
exists, the cloud provider owns parts of it (load balancer pools).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, is_dataclass

from .vmss import DesiredScaleSet, ObservedScaleSet, ScaleSetModel, ScaleSetPatch

logger = logging.getLogger(__name__)


def model_differences(observed: ScaleSetModel, desired: ScaleSetModel) -> list[str]:
    """List the model fields that differ between observed and desired.

    Unset (None) desired values match anything: updates are PATCH calls, so
    an omitted setting is left as Azure has it and must not count as drift.
    Zones are compared as sets and data disks independent of order. Tags
    differ only when a desired tag is missing or has another value; extra
    tags added outside the operator do not count.
    """
    changed: list[str] = []
    for f in fields(ScaleSetModel):
        ours = getattr(desired, f.name)
        theirs = getattr(observed, f.name)
        match f.name:
            case "zones":
                same = set(ours) == set(theirs)
            case "data_disks":
                same = len(ours) == len(theirs) and all(
                    _matches(a, b)
                    for a, b in zip(
                        sorted(ours, key=_disk_key), sorted(theirs, key=_disk_key), strict=True
                    )
                )
            case "tags":
                same = all(theirs.get(k) == v for k, v in ours.items())
            case _:
                same = _matches(ours, theirs)
        if not same:
            changed.append(f.name)
    return changed


def _matches(desired: object, observed: object) -> bool:
    if desired is None:
        return True
    if is_dataclass(desired) and type(desired) is type(observed):
        return all(
            _matches(getattr(desired, f.name), getattr(observed, f.name)) for f in fields(desired)
        )
    if isinstance(desired, tuple) and isinstance(observed, tuple):
        return len(desired) == len(observed) and all(
            _matches(a, b) for a, b in zip(desired, observed, strict=True)
        )
    if isinstance(desired, str) and isinstance(observed, str):
        return desired.lower() == observed.lower()
    return desired == observed


def _disk_key(disk: object) -> tuple[int, str]:
    lun = getattr(disk, "lun", None)
    return (lun if lun is not None else -1, getattr(disk, "name", ""))


def has_model_changes(observed: ObservedScaleSet, desired: DesiredScaleSet) -> bool:
    return bool(model_differences(observed.model, desired.model))


def target_capacity(
    desired_capacity: int, surge: int, model_changed: bool, all_latest_model: bool
) -> int:
    """Capacity to request from Azure.

    During a rolling update (a model change, or instances still on an old
    model) the fleet surges above the desired count. The surplus is removed
    later by the instance synchronizer.
    """
    if surge > 0 and (model_changed or not all_latest_model):
        return desired_capacity + surge
    return desired_capacity


@dataclass(frozen=True)
class PatchDecision:
    """Outcome of diffing desired against observed state."""

    patch: ScaleSetPatch | None
    changed_fields: tuple[str, ...] = ()

    @property
    def needed(self) -> bool:
        return self.patch is not None


def compute_patch(
    observed: ObservedScaleSet, desired: DesiredScaleSet, surge: int
) -> PatchDecision:
    """Build the patch for an existing scale set, if one is needed.

    No patch is issued when the target capacity does not exceed the observed
    capacity and the model is unchanged. Scale-down happens through record
    deletion, not through capacity patches.
    """
    changed = model_differences(observed.model, desired.model)
    capacity = target_capacity(
        desired.capacity,
        surge,
        model_changed=bool(changed),
        all_latest_model=observed.has_latest_model_applied_to_all(),
    )

    if capacity <= observed.capacity and not changed:
        logger.debug(
            "Nothing to update on scale set",
            extra={
                "scale_set": observed.name,
                "target_capacity": capacity,
                "observed_capacity": observed.capacity,
            },
        )
        return PatchDecision(patch=None)

    patch = ScaleSetPatch(
        capacity=capacity,
        model=desired.model,
        custom_data=desired.os_profile.custom_data,
    )
    return PatchDecision(patch=patch, changed_fields=tuple(changed))
