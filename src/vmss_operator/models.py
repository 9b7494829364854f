"""Pydantic models for fleet specifications with validation.

These models provide:
1. Type-safe YAML parsing (camelCase keys, snake_case attributes)
2. Validation at the boundary (fail fast, fail loudly)
3. A frozen FleetSpec that stays immutable for the duration of a pass

Capability-dependent checks (vCPUs, memory, zones, disk tiers) cannot be done
here because they need platform data. They live in validation.py.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

# Storage tier that requires the UltraSSD capability
ULTRA_SSD_STORAGE_TYPE = "UltraSSD_LRS"

MIN_TERMINATE_NOTIFICATION_MINUTES = 5
MAX_TERMINATE_NOTIFICATION_MINUTES = 15

# Windows computer name prefixes are limited to 9 characters
MAX_WINDOWS_NAME_LENGTH = 9


class OSType(str, Enum):
    """Operating system of the fleet instances."""

    LINUX = "Linux"
    WINDOWS = "Windows"


class IdentityType(str, Enum):
    """Managed identity mode of the scale set."""

    NONE = "None"
    SYSTEM_ASSIGNED = "SystemAssigned"
    USER_ASSIGNED = "UserAssigned"


class DeletePolicy(str, Enum):
    """Order in which surplus instances are removed."""

    OLDEST = "Oldest"
    NEWEST = "Newest"
    RANDOM = "Random"


class SpotEvictionPolicy(str, Enum):
    """What Azure does with a spot instance on eviction."""

    DEALLOCATE = "Deallocate"
    DELETE = "Delete"


ROLLING_UPDATE_STRATEGY = "RollingUpdate"

_BASE_CONFIG: dict[str, Any] = {"extra": "ignore", "populate_by_name": True, "frozen": True}


# =============================================================================
# Disks
# =============================================================================


class ManagedDiskParameters(BaseModel):
    """Managed disk options shared by OS and data disks."""

    model_config = _BASE_CONFIG

    storage_account_type: str = Field("Premium_LRS", alias="storageAccountType")
    disk_encryption_set_id: str | None = Field(None, alias="diskEncryptionSetId")


class DiffDiskSettings(BaseModel):
    """Ephemeral OS disk placement."""

    model_config = _BASE_CONFIG

    option: str = "Local"

    @field_validator("option")
    @classmethod
    def validate_option(cls, v: str) -> str:
        if v != "Local":
            raise ValueError("diffDiskSettings.option must be 'Local'")
        return v


class OSDisk(BaseModel):
    """OS disk layout."""

    model_config = _BASE_CONFIG

    os_type: OSType = Field(OSType.LINUX, alias="osType")
    disk_size_gb: Annotated[int, Field(ge=1, le=4095, alias="diskSizeGB")] = 30
    caching: str | None = None
    managed_disk: ManagedDiskParameters | None = Field(None, alias="managedDisk")
    diff_disk_settings: DiffDiskSettings | None = Field(None, alias="diffDiskSettings")


class DataDisk(BaseModel):
    """Additional data disk attached to every instance."""

    model_config = _BASE_CONFIG

    name_suffix: Annotated[str, Field(min_length=1, alias="nameSuffix")]
    disk_size_gb: Annotated[int, Field(ge=1, le=65536, alias="diskSizeGB")]
    lun: Annotated[int, Field(ge=0, le=63)] | None = None
    caching: str | None = None
    managed_disk: ManagedDiskParameters | None = Field(None, alias="managedDisk")

    @property
    def is_ultra_ssd(self) -> bool:
        return (
            self.managed_disk is not None
            and self.managed_disk.storage_account_type == ULTRA_SSD_STORAGE_TYPE
        )


# =============================================================================
# Image
# =============================================================================


class MarketplaceImage(BaseModel):
    """Azure Marketplace image reference."""

    model_config = _BASE_CONFIG

    publisher: Annotated[str, Field(min_length=1)]
    offer: Annotated[str, Field(min_length=1)]
    sku: Annotated[str, Field(min_length=1)]
    version: Annotated[str, Field(min_length=1)]
    third_party_image: bool = Field(False, alias="thirdPartyImage")


class SharedGalleryImage(BaseModel):
    """Shared Image Gallery image reference."""

    model_config = _BASE_CONFIG

    subscription_id: Annotated[str, Field(min_length=1, alias="subscriptionID")]
    resource_group: Annotated[str, Field(min_length=1, alias="resourceGroup")]
    gallery: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1)]
    version: Annotated[str, Field(min_length=1)]
    publisher: str | None = None
    offer: str | None = None
    sku: str | None = None

    @property
    def resource_id(self) -> str:
        return (
            f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.Compute/galleries/{self.gallery}"
            f"/images/{self.name}/versions/{self.version}"
        )


class Image(BaseModel):
    """Boot image: exactly one of id, marketplace or sharedGallery."""

    model_config = _BASE_CONFIG

    id: str | None = None
    marketplace: MarketplaceImage | None = None
    shared_gallery: SharedGalleryImage | None = Field(None, alias="sharedGallery")

    @model_validator(mode="after")
    def validate_exactly_one(self) -> Image:
        chosen = [v for v in (self.id, self.marketplace, self.shared_gallery) if v is not None]
        if len(chosen) != 1:
            raise ValueError("image must set exactly one of id, marketplace, sharedGallery")
        return self


# =============================================================================
# Options
# =============================================================================


class SpotVMOptions(BaseModel):
    """Spot priority options. maxPrice unset means pay up to on-demand price."""

    model_config = _BASE_CONFIG

    max_price: float | None = Field(None, alias="maxPrice")
    eviction_policy: SpotEvictionPolicy | None = Field(None, alias="evictionPolicy")

    @field_validator("max_price")
    @classmethod
    def validate_max_price(cls, v: float | None) -> float | None:
        if v is not None and v <= 0 and v != -1:
            raise ValueError("maxPrice must be positive or -1")
        return v


class SecurityProfile(BaseModel):
    """Host-level security options."""

    model_config = _BASE_CONFIG

    encryption_at_host: bool | None = Field(None, alias="encryptionAtHost")


class AdditionalCapabilities(BaseModel):
    """Explicit capability overrides."""

    model_config = _BASE_CONFIG

    ultra_ssd_enabled: bool | None = Field(None, alias="ultraSSDEnabled")


class UserAssignedIdentity(BaseModel):
    """Reference to a user-assigned managed identity."""

    model_config = _BASE_CONFIG

    provider_id: Annotated[str, Field(min_length=1, alias="providerID")]

    @property
    def resource_id(self) -> str:
        """ARM id of the identity, with any azure:// prefix removed."""
        return self.provider_id.removeprefix("azure://")


class RollingUpdate(BaseModel):
    """Rolling update knobs. Ints are absolute, strings like "25%" are relative."""

    model_config = _BASE_CONFIG

    max_surge: int | str = Field(1, alias="maxSurge")
    max_unavailable: int | str = Field(0, alias="maxUnavailable")
    delete_policy: DeletePolicy = Field(DeletePolicy.OLDEST, alias="deletePolicy")

    @field_validator("max_surge", "max_unavailable")
    @classmethod
    def validate_int_or_percent(cls, v: int | str) -> int | str:
        if isinstance(v, int):
            if v < 0:
                raise ValueError("must not be negative")
            return v
        if not v.endswith("%") or not v[:-1].isdigit():
            raise ValueError(f"must be an integer or a percentage like '25%': {v}")
        return v


class DeploymentStrategySpec(BaseModel):
    """Deployment strategy selector. Unknown types disable scale-down selection."""

    model_config = _BASE_CONFIG

    type: str = ROLLING_UPDATE_STRATEGY
    rolling_update: RollingUpdate | None = Field(None, alias="rollingUpdate")


# =============================================================================
# Fleet
# =============================================================================


class FleetSpec(BaseModel):
    """Desired state of one scale set.

    Immutable: a pass reads one FleetSpec snapshot and never modifies it.
    """

    model_config = _BASE_CONFIG

    name: Annotated[str, Field(min_length=1, max_length=64, pattern=r"^[a-zA-Z0-9][-a-zA-Z0-9]*$")]
    resource_group: Annotated[str, Field(min_length=1, max_length=90, alias="resourceGroup")]
    location: Annotated[str, Field(min_length=1)]
    cluster_name: Annotated[str, Field(min_length=1, alias="clusterName")]
    vm_size: Annotated[str, Field(min_length=1, alias="vmSize")]
    replicas: Annotated[int, Field(ge=0, le=1000)] = 1

    ssh_public_key: str = Field("", alias="sshPublicKey")
    os_disk: OSDisk = Field(default_factory=OSDisk, alias="osDisk")
    data_disks: list[DataDisk] = Field(default_factory=list, alias="dataDisks")

    # Network attachment
    subnet_name: Annotated[str, Field(min_length=1, alias="subnetName")]
    vnet_name: Annotated[str, Field(min_length=1, alias="vnetName")]
    vnet_resource_group: str | None = Field(None, alias="vnetResourceGroup")
    public_lb_name: str | None = Field(None, alias="publicLBName")
    public_lb_address_pool_name: str | None = Field(None, alias="publicLBAddressPoolName")
    accelerated_networking: bool | None = Field(None, alias="acceleratedNetworking")

    # Identity
    identity: IdentityType = IdentityType.NONE
    user_assigned_identities: list[UserAssignedIdentity] = Field(
        default_factory=list, alias="userAssignedIdentities"
    )

    spot_vm_options: SpotVMOptions | None = Field(None, alias="spotVMOptions")
    security_profile: SecurityProfile | None = Field(None, alias="securityProfile")
    additional_capabilities: AdditionalCapabilities | None = Field(
        None, alias="additionalCapabilities"
    )
    failure_domains: list[str] = Field(default_factory=list, alias="failureDomains")
    terminate_notification_timeout: (
        Annotated[
            int,
            Field(ge=MIN_TERMINATE_NOTIFICATION_MINUTES, le=MAX_TERMINATE_NOTIFICATION_MINUTES),
        ]
        | None
    ) = Field(None, alias="terminateNotificationTimeout")
    additional_tags: dict[str, str] = Field(default_factory=dict, alias="additionalTags")

    image: Image | None = None
    version: str | None = None
    bootstrap_data_secret_name: str | None = Field(None, alias="bootstrapDataSecretName")

    strategy: DeploymentStrategySpec | None = None

    @field_validator("failure_domains")
    @classmethod
    def validate_failure_domains(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("failureDomains must not contain duplicates")
        return v

    @field_validator("data_disks")
    @classmethod
    def validate_data_disks(cls, v: list[DataDisk]) -> list[DataDisk]:
        suffixes = [d.name_suffix for d in v]
        if len(set(suffixes)) != len(suffixes):
            raise ValueError("dataDisks nameSuffix values must be unique")
        luns = [d.lun for d in v if d.lun is not None]
        if len(set(luns)) != len(luns):
            raise ValueError("dataDisks lun values must be unique")
        return v

    @model_validator(mode="after")
    def validate_identity(self) -> FleetSpec:
        if self.identity == IdentityType.USER_ASSIGNED and not self.user_assigned_identities:
            raise ValueError("userAssignedIdentities is required when identity is UserAssigned")
        if self.identity != IdentityType.USER_ASSIGNED and self.user_assigned_identities:
            raise ValueError("userAssignedIdentities requires identity UserAssigned")
        return self

    @property
    def is_windows(self) -> bool:
        return self.os_disk.os_type == OSType.WINDOWS

    @property
    def scale_set_name(self) -> str:
        """Azure name of the scale set.

        Windows computer name prefixes cannot exceed 9 characters, so long
        Windows fleet names are shortened to "win-" plus their last 5 chars.
        """
        if self.is_windows and len(self.name) > MAX_WINDOWS_NAME_LENGTH:
            return "win-" + self.name[-5:]
        return self.name

    @property
    def effective_vnet_resource_group(self) -> str:
        return self.vnet_resource_group or self.resource_group

    @property
    def requests_ultra_ssd(self) -> bool:
        """Whether any data disk or explicit override asks for UltraSSD."""
        if any(d.is_ultra_ssd for d in self.data_disks):
            return True
        caps = self.additional_capabilities
        return caps is not None and caps.ultra_ssd_enabled is True
