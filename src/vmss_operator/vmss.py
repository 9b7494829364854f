"""Canonical scale set types.

The reconciliation core never touches Azure SDK models. It works with the
frozen dataclasses below, and client.py owns the conversion in both
directions. Three shapes matter:

- DesiredScaleSet: the full resource compiled from a FleetSpec (create path).
- ScaleSetPatch: the subset sent on update. It never carries a network
  profile, since cloud-provider components own parts of it once the scale
  set exists.
- ObservedScaleSet: a snapshot of what Azure reports, replaced on every
  fetch and never mutated.

ScaleSetModel is the comparable part shared by desired and observed state.
Capacity and networking are deliberately not part of it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

PROVIDER_ID_PREFIX = "azure://"

_RESOURCE_GROUP_SEGMENT = re.compile(r"(?i)(/resourceGroups/)([^/]+)")


class ProvisioningState(str, Enum):
    """Azure provisioning states the reconciler cares about."""

    CREATING = "Creating"
    UPDATING = "Updating"
    DELETING = "Deleting"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELED = "Canceled"
    DELETED = "Deleted"


TERMINAL_PROVISIONING_STATES: frozenset[str] = frozenset(
    {ProvisioningState.SUCCEEDED.value, ProvisioningState.FAILED.value, ProvisioningState.CANCELED.value}
)


def is_terminal_provisioning_state(state: str | None) -> bool:
    return state is not None and state in TERMINAL_PROVISIONING_STATES


def provider_id_for(resource_id: str) -> str:
    """Build the cloud-provider style id for an ARM resource.

    The resource group segment is lowercased to match what the Kubernetes
    cloud provider reports for nodes.
    """
    normalized = _RESOURCE_GROUP_SEGMENT.sub(
        lambda m: m.group(1) + m.group(2).lower(), resource_id, count=1
    )
    return PROVIDER_ID_PREFIX + normalized


# =============================================================================
# Model components
# =============================================================================


@dataclass(frozen=True)
class ImageReference:
    """Either an ARM image id or a marketplace publisher/offer/sku/version."""

    id: str | None = None
    publisher: str | None = None
    offer: str | None = None
    sku: str | None = None
    version: str | None = None


@dataclass(frozen=True)
class PurchasePlan:
    name: str
    publisher: str
    product: str


@dataclass(frozen=True)
class Identity:
    type: str
    user_assigned_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class OSDiskConfig:
    os_type: str
    disk_size_gb: int | None = None
    storage_account_type: str | None = None
    disk_encryption_set_id: str | None = None
    caching: str | None = None
    diff_disk_option: str | None = None


@dataclass(frozen=True)
class DataDiskConfig:
    name: str
    disk_size_gb: int
    lun: int | None = None
    storage_account_type: str | None = None
    disk_encryption_set_id: str | None = None
    caching: str | None = None


@dataclass(frozen=True)
class SpotSettings:
    eviction_policy: str
    max_price: float = -1


@dataclass(frozen=True)
class ScaleSetModel:
    """The comparable instance model of a scale set.

    Two scale sets with equal models produce identical instances; any
    difference means existing instances are out of date.
    """

    sku_name: str
    image: ImageReference | None = None
    plan: PurchasePlan | None = None
    identity: Identity | None = None
    zones: tuple[str, ...] = ()
    tags: dict[str, str] = field(default_factory=dict)
    os_disk: OSDiskConfig | None = None
    data_disks: tuple[DataDiskConfig, ...] = ()
    encryption_at_host: bool | None = None
    spot: SpotSettings | None = None
    ultra_ssd_enabled: bool | None = None
    terminate_notification_minutes: int | None = None


@dataclass(frozen=True)
class OSProfile:
    computer_name_prefix: str
    admin_username: str
    custom_data: str
    ssh_public_key: str | None = None
    admin_password: str | None = field(default=None, repr=False)
    disable_password_authentication: bool = True
    enable_automatic_updates: bool | None = None

    @property
    def is_windows(self) -> bool:
        return self.admin_password is not None


@dataclass(frozen=True)
class NetworkProfile:
    nic_name: str
    subnet_id: str
    load_balancer_backend_pool_ids: tuple[str, ...] = ()
    accelerated_networking: bool = False
    ip_forwarding: bool = True
    private_ip_version: str = "IPv4"


# =============================================================================
# Resources
# =============================================================================


@dataclass(frozen=True)
class DesiredScaleSet:
    """Complete resource body for a create call."""

    name: str
    location: str
    capacity: int
    model: ScaleSetModel
    os_profile: OSProfile
    network_profile: NetworkProfile
    sku_tier: str = "Standard"
    upgrade_mode: str = "Manual"
    overprovision: bool = False
    single_placement_group: bool = False
    boot_diagnostics: bool = True


@dataclass(frozen=True)
class ScaleSetPatch:
    """Resource body for an update call. Carries no network profile."""

    capacity: int
    model: ScaleSetModel
    custom_data: str | None = None


@dataclass(frozen=True)
class ScaleSetInstance:
    """One VM of a scale set as reported by Azure."""

    id: str
    instance_id: str
    name: str
    provisioning_state: str = ""
    latest_model_applied: bool = True
    zone: str | None = None
    created_at: datetime | None = None

    @property
    def provider_id(self) -> str:
        return provider_id_for(self.id)


@dataclass(frozen=True)
class ObservedScaleSet:
    """Scale set snapshot fetched from Azure together with its instances."""

    id: str
    name: str
    provisioning_state: str
    capacity: int
    model: ScaleSetModel
    location: str = ""
    instances: tuple[ScaleSetInstance, ...] = ()

    @property
    def zones(self) -> tuple[str, ...]:
        return self.model.zones

    @property
    def provider_id(self) -> str:
        return provider_id_for(self.id)

    def with_instances(self, instances: list[ScaleSetInstance]) -> ObservedScaleSet:
        return ObservedScaleSet(
            id=self.id,
            name=self.name,
            provisioning_state=self.provisioning_state,
            capacity=self.capacity,
            model=self.model,
            location=self.location,
            instances=tuple(instances),
        )

    def instances_by_provider_id(self) -> dict[str, ScaleSetInstance]:
        return {instance.provider_id: instance for instance in self.instances}

    def has_latest_model_applied_to_all(self) -> bool:
        return all(instance.latest_model_applied for instance in self.instances)
