"""Compile a FleetSpec into a complete desired scale set.

The builder is deterministic given its inputs (spec, capability record,
resolved image, bootstrap payload, cluster tags) with one exception: the
throwaway Windows admin password, which is not part of the comparable model
and never sent on updates.
"""

from __future__ import annotations

import base64
import binascii
import secrets
import string
from collections.abc import Mapping

from .errors import SpecValidationError
from .models import FleetSpec, IdentityType, Image, SpotEvictionPolicy
from .skus import ACCELERATED_NETWORKING, ENCRYPTION_AT_HOST, EPHEMERAL_OS_DISK, ResourceSku
from .vmss import (
    DataDiskConfig,
    DesiredScaleSet,
    Identity,
    ImageReference,
    NetworkProfile,
    OSDiskConfig,
    OSProfile,
    PurchasePlan,
    ScaleSetModel,
    SpotSettings,
)

DEFAULT_ADMIN_USERNAME = "capi"
SKU_TIER_STANDARD = "Standard"
SPOT_PRIORITY = "Spot"
NO_MAX_PRICE = -1

# Ownership tags understood by the Kubernetes cloud provider
ROLE_NODE = "node"
LIFECYCLE_OWNED = "owned"

WINDOWS_PASSWORD_LENGTH = 123  # Azure maximum


def cluster_owned_tag_key(cluster_name: str) -> str:
    return f"sigs.k8s.io_cluster-provider-azure_cluster_{cluster_name}"


def cloud_provider_tag_key(cluster_name: str) -> str:
    return f"kubernetes.io_cluster_{cluster_name}"


def build_tags(
    cluster_name: str,
    resource_name: str,
    cluster_tags: Mapping[str, str],
    fleet_tags: Mapping[str, str],
) -> dict[str, str]:
    """Merge cluster-wide and fleet tags, then apply the ownership tags.

    Fleet tags win over cluster tags on key collision. Ownership tags always
    win, since the cloud provider relies on them.
    """
    tags = dict(cluster_tags)
    tags.update(fleet_tags)
    tags[cloud_provider_tag_key(cluster_name)] = LIFECYCLE_OWNED
    tags[cluster_owned_tag_key(cluster_name)] = LIFECYCLE_OWNED
    tags["sigs.k8s.io_cluster-provider-azure_role"] = ROLE_NODE
    tags["Name"] = resource_name
    return tags


def subnet_id(subscription_id: str, resource_group: str, vnet: str, subnet: str) -> str:
    return (
        f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
        f"/providers/Microsoft.Network/virtualNetworks/{vnet}/subnets/{subnet}"
    )


def address_pool_id(subscription_id: str, resource_group: str, lb_name: str, pool_name: str) -> str:
    return (
        f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
        f"/providers/Microsoft.Network/loadBalancers/{lb_name}/backendAddressPools/{pool_name}"
    )


def data_disk_name(scale_set_name: str, suffix: str) -> str:
    return f"{scale_set_name}_{suffix}"


def generate_password(length: int = WINDOWS_PASSWORD_LENGTH) -> str:
    """Random password meeting Azure's complexity rules."""
    alphabet = string.ascii_letters + string.digits + "!@#$%^&*()-_=+"
    required = [
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.digits),
        secrets.choice("!@#$%^&*()-_=+"),
    ]
    rest = [secrets.choice(alphabet) for _ in range(length - len(required))]
    chars = required + rest
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def image_reference(image: Image) -> ImageReference:
    """Convert a spec image into the reference Azure boots from."""
    if image.id is not None:
        return ImageReference(id=image.id)
    if image.shared_gallery is not None:
        return ImageReference(id=image.shared_gallery.resource_id)
    marketplace = image.marketplace
    assert marketplace is not None
    return ImageReference(
        publisher=marketplace.publisher,
        offer=marketplace.offer,
        sku=marketplace.sku,
        version=marketplace.version,
    )


def image_plan(image: Image) -> PurchasePlan | None:
    """Purchase plan for images that need one.

    Shared gallery images built from a paid image carry publisher, offer and
    sku. Third-party marketplace images always need a plan.
    """
    gallery = image.shared_gallery
    if gallery is not None and gallery.publisher and gallery.offer and gallery.sku:
        return PurchasePlan(name=gallery.sku, publisher=gallery.publisher, product=gallery.offer)

    marketplace = image.marketplace
    if marketplace is None or not marketplace.third_party_image:
        return None
    return PurchasePlan(
        name=marketplace.sku, publisher=marketplace.publisher, product=marketplace.offer
    )


class ScaleSetBuilder:
    """Builds the desired scale set for one fleet."""

    def __init__(
        self,
        spec: FleetSpec,
        sku: ResourceSku,
        image: Image,
        bootstrap_data: str,
        subscription_id: str,
        cluster_tags: Mapping[str, str] | None = None,
    ) -> None:
        self._spec = spec
        self._sku = sku
        self._image = image
        self._bootstrap_data = bootstrap_data
        self._subscription_id = subscription_id
        self._cluster_tags = dict(cluster_tags or {})

    def build(self) -> DesiredScaleSet:
        """Compile the full resource.

        Raises:
            SpecValidationError: If the spec asks for something the VM size
                cannot do, or the SSH key is not valid base64.
        """
        spec = self._spec
        name = spec.scale_set_name

        return DesiredScaleSet(
            name=name,
            location=spec.location,
            capacity=spec.replicas,
            sku_tier=SKU_TIER_STANDARD,
            model=self.build_model(),
            os_profile=self._os_profile(name),
            network_profile=self._network_profile(name),
        )

    def build_model(self) -> ScaleSetModel:
        spec = self._spec
        name = spec.scale_set_name
        return ScaleSetModel(
            sku_name=spec.vm_size,
            image=image_reference(self._image),
            plan=image_plan(self._image),
            identity=self._identity(),
            zones=tuple(sorted(spec.failure_domains)),
            tags=build_tags(spec.cluster_name, name, self._cluster_tags, spec.additional_tags),
            os_disk=self._os_disk(),
            data_disks=self._data_disks(name),
            encryption_at_host=self._encryption_at_host(),
            spot=self._spot(),
            ultra_ssd_enabled=self._ultra_ssd_enabled(),
            terminate_notification_minutes=spec.terminate_notification_timeout,
        )

    # =========================================================================
    # Profiles
    # =========================================================================

    def _os_profile(self, name: str) -> OSProfile:
        try:
            ssh_key = base64.b64decode(self._spec.ssh_public_key, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise SpecValidationError(f"failed to decode ssh public key: {e}") from e

        if self._spec.is_windows:
            # Cloudbase-init sets the real password on first boot
            return OSProfile(
                computer_name_prefix=name,
                admin_username=DEFAULT_ADMIN_USERNAME,
                custom_data=self._bootstrap_data,
                admin_password=generate_password(),
                disable_password_authentication=False,
                enable_automatic_updates=False,
            )

        return OSProfile(
            computer_name_prefix=name,
            admin_username=DEFAULT_ADMIN_USERNAME,
            custom_data=self._bootstrap_data,
            ssh_public_key=ssh_key,
            disable_password_authentication=True,
        )

    def _network_profile(self, name: str) -> NetworkProfile:
        spec = self._spec
        pools: tuple[str, ...] = ()
        if spec.public_lb_name and spec.public_lb_address_pool_name:
            pools = (
                address_pool_id(
                    self._subscription_id,
                    spec.resource_group,
                    spec.public_lb_name,
                    spec.public_lb_address_pool_name,
                ),
            )

        accelerated = spec.accelerated_networking
        if accelerated is None:
            accelerated = self._sku.has_capability(ACCELERATED_NETWORKING)

        return NetworkProfile(
            nic_name=name,
            subnet_id=subnet_id(
                self._subscription_id,
                spec.effective_vnet_resource_group,
                spec.vnet_name,
                spec.subnet_name,
            ),
            load_balancer_backend_pool_ids=pools,
            accelerated_networking=accelerated,
        )

    def _os_disk(self) -> OSDiskConfig:
        spec = self._spec
        disk = spec.os_disk

        diff_option = None
        if disk.diff_disk_settings is not None:
            if not self._sku.has_capability(EPHEMERAL_OS_DISK):
                raise SpecValidationError(
                    f"vm size {spec.vm_size} does not support ephemeral os. "
                    "select a different vm size or disable ephemeral os"
                )
            diff_option = disk.diff_disk_settings.option

        managed = disk.managed_disk
        return OSDiskConfig(
            os_type=disk.os_type.value,
            disk_size_gb=disk.disk_size_gb,
            storage_account_type=managed.storage_account_type if managed else None,
            disk_encryption_set_id=managed.disk_encryption_set_id if managed else None,
            caching=disk.caching,
            diff_disk_option=diff_option,
        )

    def _data_disks(self, name: str) -> tuple[DataDiskConfig, ...]:
        disks = []
        for disk in self._spec.data_disks:
            managed = disk.managed_disk
            disks.append(
                DataDiskConfig(
                    name=data_disk_name(name, disk.name_suffix),
                    disk_size_gb=disk.disk_size_gb,
                    lun=disk.lun,
                    storage_account_type=managed.storage_account_type if managed else None,
                    disk_encryption_set_id=managed.disk_encryption_set_id if managed else None,
                    caching=disk.caching,
                )
            )
        return tuple(disks)

    # =========================================================================
    # Options
    # =========================================================================

    def _identity(self) -> Identity | None:
        spec = self._spec
        match spec.identity:
            case IdentityType.SYSTEM_ASSIGNED:
                return Identity(type=IdentityType.SYSTEM_ASSIGNED.value)
            case IdentityType.USER_ASSIGNED:
                ids = tuple(
                    sorted((i.resource_id for i in spec.user_assigned_identities), key=str.lower)
                )
                return Identity(type=IdentityType.USER_ASSIGNED.value, user_assigned_ids=ids)
            case _:
                return None

    def _encryption_at_host(self) -> bool | None:
        profile = self._spec.security_profile
        if profile is None:
            return None
        if not self._sku.has_capability(ENCRYPTION_AT_HOST):
            raise SpecValidationError(
                f"encryption at host is not supported for VM type {self._spec.vm_size}"
            )
        return bool(profile.encryption_at_host)

    def _spot(self) -> SpotSettings | None:
        options = self._spec.spot_vm_options
        if options is None:
            return None
        eviction = options.eviction_policy or SpotEvictionPolicy.DEALLOCATE
        max_price = options.max_price if options.max_price is not None else NO_MAX_PRICE
        return SpotSettings(eviction_policy=eviction.value, max_price=max_price)

    def _ultra_ssd_enabled(self) -> bool | None:
        enabled: bool | None = None
        if any(disk.is_ultra_ssd for disk in self._spec.data_disks):
            enabled = True
        caps = self._spec.additional_capabilities
        if caps is not None and caps.ultra_ssd_enabled is not None:
            enabled = caps.ultra_ssd_enabled
        return enabled
