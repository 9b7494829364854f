"""Azure Compute boundary for scale set operations.

This is the only module that knows Azure SDK model shapes. Everything that
crosses it is converted to or from the canonical types in vmss.py.

NON-BLOCKING OPERATIONS:
Mutations are started with ``polling=False``. The SDK returns as soon as
Azure accepts the request, and no poller thread is left running. The
returned checkpoint is persisted by the caller. Completion is detected later
with a single GET of the scale set (get_result_if_done):

- Create/Update: done once the provisioning state is Succeeded, failed once
  it is Failed or Canceled. An update is only judged after UPDATE_SETTLE_GRACE,
  since the state read right after acceptance may predate the patch.
- Delete: done once the scale set is gone.

A pass therefore never waits on Azure, and an operation can span any number
of passes and operator restarts.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from azure.core.credentials import TokenCredential
from azure.core.exceptions import ResourceNotFoundError
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.compute.models import (
    AdditionalCapabilities,
    ApiEntityReference,
    BillingProfile,
    BootDiagnostics,
    DiagnosticsProfile,
    DiffDiskSettings,
    DiskEncryptionSetParameters,
    ImageReference as SdkImageReference,
    LinuxConfiguration,
    Plan,
    ScheduledEventsProfile,
    SecurityProfile,
    Sku,
    SshConfiguration,
    SshPublicKey,
    SubResource,
    TerminateNotificationProfile,
    UpgradePolicy,
    UserAssignedIdentitiesValue,
    VirtualMachineScaleSet,
    VirtualMachineScaleSetDataDisk,
    VirtualMachineScaleSetIdentity,
    VirtualMachineScaleSetIPConfiguration,
    VirtualMachineScaleSetManagedDiskParameters,
    VirtualMachineScaleSetNetworkConfiguration,
    VirtualMachineScaleSetNetworkProfile,
    VirtualMachineScaleSetOSDisk,
    VirtualMachineScaleSetOSProfile,
    VirtualMachineScaleSetStorageProfile,
    VirtualMachineScaleSetUpdate,
    VirtualMachineScaleSetUpdateOSDisk,
    VirtualMachineScaleSetUpdateOSProfile,
    VirtualMachineScaleSetUpdateStorageProfile,
    VirtualMachineScaleSetUpdateVMProfile,
    VirtualMachineScaleSetVMInstanceRequiredIDs,
    VirtualMachineScaleSetVMProfile,
    WindowsConfiguration,
)

from .checkpoint import OperationCheckpoint, OperationKind
from .errors import OperationFailedError, OperationNotDoneError
from .vmss import (
    DataDiskConfig,
    DesiredScaleSet,
    Identity,
    ImageReference,
    OSDiskConfig,
    ObservedScaleSet,
    ProvisioningState,
    PurchasePlan,
    ScaleSetInstance,
    ScaleSetModel,
    ScaleSetPatch,
    SpotSettings,
    is_terminal_provisioning_state,
)

logger = logging.getLogger(__name__)

SCALESETS_SERVICE_NAME = "scalesets"

# A freshly accepted create may not be readable right away
CREATE_VISIBILITY_GRACE = timedelta(minutes=2)

# Right after a patch is accepted a GET may still report the previous
# terminal state
UPDATE_SETTLE_GRACE = timedelta(seconds=30)

SPOT_PRIORITY = "Spot"

_ISO_MINUTES = re.compile(r"^PT(\d+)M$")


class ScaleSetClient(Protocol):
    """Operations the scale set service needs from Azure."""

    def get(self, resource_group: str, name: str) -> ObservedScaleSet: ...

    def list_instances(self, resource_group: str, name: str) -> list[ScaleSetInstance]: ...

    def create_or_update_async(
        self, resource_group: str, name: str, desired: DesiredScaleSet
    ) -> OperationCheckpoint: ...

    def update_async(
        self, resource_group: str, name: str, patch: ScaleSetPatch
    ) -> OperationCheckpoint: ...

    def delete_async(self, resource_group: str, name: str) -> OperationCheckpoint: ...

    def get_result_if_done(self, checkpoint: OperationCheckpoint) -> ObservedScaleSet | None: ...

    def delete_instances_async(
        self, resource_group: str, name: str, instance_ids: list[str]
    ) -> None: ...


def _str_value(value: Any) -> str:
    return str(getattr(value, "value", value) or "")


# =============================================================================
# Azure implementation
# =============================================================================


class AzureScaleSetClient:
    """ScaleSetClient over azure-mgmt-compute."""

    def __init__(
        self,
        credential: TokenCredential,
        subscription_id: str,
        compute_client: ComputeManagementClient | None = None,
    ) -> None:
        self._compute = compute_client or ComputeManagementClient(
            credential=credential,
            subscription_id=subscription_id,
        )

    @property
    def compute(self) -> ComputeManagementClient:
        return self._compute

    def get(self, resource_group: str, name: str) -> ObservedScaleSet:
        """Fetch a scale set (without instances).

        Raises:
            ResourceNotFoundError: The scale set does not exist.
        """
        vmss = self._compute.virtual_machine_scale_sets.get(resource_group, name)
        return scale_set_from_sdk(vmss)

    def list_instances(self, resource_group: str, name: str) -> list[ScaleSetInstance]:
        vms = self._compute.virtual_machine_scale_set_vms.list(resource_group, name)
        return [instance_from_sdk(vm) for vm in vms]

    def create_or_update_async(
        self, resource_group: str, name: str, desired: DesiredScaleSet
    ) -> OperationCheckpoint:
        poller = self._compute.virtual_machine_scale_sets.begin_create_or_update(
            resource_group, name, scale_set_to_sdk(desired), polling=False
        )
        logger.info(
            "Create or update accepted",
            extra={"resource_group": resource_group, "scale_set": name},
        )
        return self._checkpoint(OperationKind.CREATE, resource_group, name, poller)

    def update_async(
        self, resource_group: str, name: str, patch: ScaleSetPatch
    ) -> OperationCheckpoint:
        poller = self._compute.virtual_machine_scale_sets.begin_update(
            resource_group, name, patch_to_sdk(patch), polling=False
        )
        logger.info(
            "Update accepted",
            extra={"resource_group": resource_group, "scale_set": name, "capacity": patch.capacity},
        )
        return self._checkpoint(OperationKind.UPDATE, resource_group, name, poller)

    def delete_async(self, resource_group: str, name: str) -> OperationCheckpoint:
        poller = self._compute.virtual_machine_scale_sets.begin_delete(
            resource_group, name, polling=False
        )
        logger.info(
            "Delete accepted", extra={"resource_group": resource_group, "scale_set": name}
        )
        return self._checkpoint(OperationKind.DELETE, resource_group, name, poller)

    def delete_instances_async(
        self, resource_group: str, name: str, instance_ids: list[str]
    ) -> None:
        self._compute.virtual_machine_scale_sets.begin_delete_instances(
            resource_group,
            name,
            VirtualMachineScaleSetVMInstanceRequiredIDs(instance_ids=list(instance_ids)),
            polling=False,
        )
        logger.info(
            "Instance delete accepted",
            extra={"resource_group": resource_group, "scale_set": name, "instance_ids": instance_ids},
        )

    def get_result_if_done(self, checkpoint: OperationCheckpoint) -> ObservedScaleSet | None:
        """Check a checkpointed operation with one GET.

        Returns:
            The scale set for a finished create or update, None for a
            finished delete.

        Raises:
            OperationNotDoneError: The operation is still running, or an update
                was accepted too recently to trust the provisioning state.
            OperationFailedError: A create or update ended Failed or Canceled,
                or a delete finished but the scale set remains.
            ResourceNotFoundError: A create or update target vanished.
        """
        rg, name = checkpoint.resource_group, checkpoint.name
        try:
            observed = self.get(rg, name)
        except ResourceNotFoundError:
            if checkpoint.kind == OperationKind.DELETE:
                return None
            age = datetime.now(UTC) - checkpoint.created_at
            if checkpoint.kind == OperationKind.CREATE and age < CREATE_VISIBILITY_GRACE:
                raise OperationNotDoneError(
                    f"operation {checkpoint.describe()} is not done: scale set not visible yet"
                ) from None
            raise

        state = observed.provisioning_state
        if checkpoint.kind == OperationKind.DELETE:
            if state == ProvisioningState.DELETING.value or not is_terminal_provisioning_state(state):
                raise OperationNotDoneError(
                    f"operation {checkpoint.describe()} is not done: provisioning state {state}"
                )
            raise OperationFailedError(
                f"operation {checkpoint.describe()} finished but the scale set still exists "
                f"in provisioning state {state}"
            )

        if not is_terminal_provisioning_state(state):
            raise OperationNotDoneError(
                f"operation {checkpoint.describe()} is not done: provisioning state {state}"
            )
        age = datetime.now(UTC) - checkpoint.created_at
        if checkpoint.kind == OperationKind.UPDATE and age < UPDATE_SETTLE_GRACE:
            raise OperationNotDoneError(
                f"operation {checkpoint.describe()} is not done: provisioning state {state} "
                "may predate the update"
            )
        if state != ProvisioningState.SUCCEEDED.value:
            raise OperationFailedError(
                f"operation {checkpoint.describe()} finished in provisioning state {state}"
            )
        return observed

    def _checkpoint(
        self, kind: OperationKind, resource_group: str, name: str, poller: Any
    ) -> OperationCheckpoint:
        return OperationCheckpoint(
            kind=kind,
            service_name=SCALESETS_SERVICE_NAME,
            resource_group=resource_group,
            name=name,
            data=poller.continuation_token() or "",
        )


# =============================================================================
# Canonical -> SDK
# =============================================================================


def _image_to_sdk(image: ImageReference | None) -> SdkImageReference | None:
    if image is None:
        return None
    if image.id:
        return SdkImageReference(id=image.id)
    return SdkImageReference(
        publisher=image.publisher, offer=image.offer, sku=image.sku, version=image.version
    )


def _plan_to_sdk(plan: PurchasePlan | None) -> Plan | None:
    if plan is None:
        return None
    return Plan(name=plan.name, publisher=plan.publisher, product=plan.product)


def _identity_to_sdk(identity: Identity | None) -> VirtualMachineScaleSetIdentity | None:
    if identity is None:
        return None
    if identity.user_assigned_ids:
        return VirtualMachineScaleSetIdentity(
            type=identity.type,
            user_assigned_identities={
                i: UserAssignedIdentitiesValue() for i in identity.user_assigned_ids
            },
        )
    return VirtualMachineScaleSetIdentity(type=identity.type)


def _managed_disk_to_sdk(
    storage_account_type: str | None, disk_encryption_set_id: str | None
) -> VirtualMachineScaleSetManagedDiskParameters | None:
    if storage_account_type is None and disk_encryption_set_id is None:
        return None
    encryption = (
        DiskEncryptionSetParameters(id=disk_encryption_set_id) if disk_encryption_set_id else None
    )
    return VirtualMachineScaleSetManagedDiskParameters(
        storage_account_type=storage_account_type, disk_encryption_set=encryption
    )


def _data_disks_to_sdk(disks: tuple[DataDiskConfig, ...]) -> list[VirtualMachineScaleSetDataDisk]:
    return [
        VirtualMachineScaleSetDataDisk(
            name=disk.name,
            lun=disk.lun if disk.lun is not None else index,
            create_option="Empty",
            disk_size_gb=disk.disk_size_gb,
            caching=disk.caching,
            managed_disk=_managed_disk_to_sdk(
                disk.storage_account_type, disk.disk_encryption_set_id
            ),
        )
        for index, disk in enumerate(disks)
    ]


def _diff_disk_to_sdk(os_disk: OSDiskConfig) -> DiffDiskSettings | None:
    if os_disk.diff_disk_option is None:
        return None
    return DiffDiskSettings(option=os_disk.diff_disk_option)


def _security_to_sdk(model: ScaleSetModel) -> SecurityProfile | None:
    if model.encryption_at_host is None:
        return None
    return SecurityProfile(encryption_at_host=model.encryption_at_host)


def _scheduled_events_to_sdk(model: ScaleSetModel) -> ScheduledEventsProfile | None:
    if model.terminate_notification_minutes is None:
        return None
    return ScheduledEventsProfile(
        terminate_notification_profile=TerminateNotificationProfile(
            not_before_timeout=f"PT{model.terminate_notification_minutes}M",
            enable=True,
        )
    )


def _additional_capabilities_to_sdk(model: ScaleSetModel) -> AdditionalCapabilities | None:
    if model.ultra_ssd_enabled is None:
        return None
    return AdditionalCapabilities(ultra_ssd_enabled=model.ultra_ssd_enabled)


def scale_set_to_sdk(desired: DesiredScaleSet) -> VirtualMachineScaleSet:
    """Full resource body for a PUT."""
    model = desired.model
    os_profile = desired.os_profile
    network = desired.network_profile
    os_disk = model.os_disk or OSDiskConfig(os_type="Linux")

    sdk_os_profile = VirtualMachineScaleSetOSProfile(
        computer_name_prefix=os_profile.computer_name_prefix,
        admin_username=os_profile.admin_username,
        custom_data=os_profile.custom_data,
    )
    if os_profile.is_windows:
        sdk_os_profile.admin_password = os_profile.admin_password
        sdk_os_profile.windows_configuration = WindowsConfiguration(
            enable_automatic_updates=os_profile.enable_automatic_updates
        )
    else:
        sdk_os_profile.linux_configuration = LinuxConfiguration(
            disable_password_authentication=os_profile.disable_password_authentication,
            ssh=SshConfiguration(
                public_keys=[
                    SshPublicKey(
                        path=f"/home/{os_profile.admin_username}/.ssh/authorized_keys",
                        key_data=os_profile.ssh_public_key,
                    )
                ]
            ),
        )

    ip_configuration = VirtualMachineScaleSetIPConfiguration(
        name=network.nic_name,
        subnet=ApiEntityReference(id=network.subnet_id),
        primary=True,
        private_ip_address_version=network.private_ip_version,
        load_balancer_backend_address_pools=[
            SubResource(id=pool) for pool in network.load_balancer_backend_pool_ids
        ],
    )

    vm_profile = VirtualMachineScaleSetVMProfile(
        os_profile=sdk_os_profile,
        storage_profile=VirtualMachineScaleSetStorageProfile(
            image_reference=_image_to_sdk(model.image),
            os_disk=VirtualMachineScaleSetOSDisk(
                create_option="FromImage",
                os_type=os_disk.os_type,
                disk_size_gb=os_disk.disk_size_gb,
                caching=os_disk.caching,
                managed_disk=_managed_disk_to_sdk(
                    os_disk.storage_account_type, os_disk.disk_encryption_set_id
                ),
                diff_disk_settings=_diff_disk_to_sdk(os_disk),
            ),
            data_disks=_data_disks_to_sdk(model.data_disks),
        ),
        network_profile=VirtualMachineScaleSetNetworkProfile(
            network_interface_configurations=[
                VirtualMachineScaleSetNetworkConfiguration(
                    name=network.nic_name,
                    primary=True,
                    enable_ip_forwarding=network.ip_forwarding,
                    enable_accelerated_networking=network.accelerated_networking,
                    ip_configurations=[ip_configuration],
                )
            ]
        ),
        security_profile=_security_to_sdk(model),
        diagnostics_profile=DiagnosticsProfile(
            boot_diagnostics=BootDiagnostics(enabled=desired.boot_diagnostics)
        ),
        scheduled_events_profile=_scheduled_events_to_sdk(model),
    )
    if model.spot is not None:
        vm_profile.priority = SPOT_PRIORITY
        vm_profile.eviction_policy = model.spot.eviction_policy
        vm_profile.billing_profile = BillingProfile(max_price=model.spot.max_price)

    return VirtualMachineScaleSet(
        location=desired.location,
        tags=dict(model.tags),
        sku=Sku(name=model.sku_name, tier=desired.sku_tier, capacity=desired.capacity),
        plan=_plan_to_sdk(model.plan),
        identity=_identity_to_sdk(model.identity),
        zones=list(model.zones) or None,
        upgrade_policy=UpgradePolicy(mode=desired.upgrade_mode),
        virtual_machine_profile=vm_profile,
        overprovision=desired.overprovision,
        single_placement_group=desired.single_placement_group,
        additional_capabilities=_additional_capabilities_to_sdk(model),
    )


def patch_to_sdk(patch: ScaleSetPatch) -> VirtualMachineScaleSetUpdate:
    """Resource body for a PATCH. Never includes a network profile."""
    model = patch.model

    storage_profile = VirtualMachineScaleSetUpdateStorageProfile(
        image_reference=_image_to_sdk(model.image),
        data_disks=_data_disks_to_sdk(model.data_disks),
    )
    if model.os_disk is not None:
        storage_profile.os_disk = VirtualMachineScaleSetUpdateOSDisk(
            disk_size_gb=model.os_disk.disk_size_gb,
            caching=model.os_disk.caching,
            managed_disk=_managed_disk_to_sdk(
                model.os_disk.storage_account_type, model.os_disk.disk_encryption_set_id
            ),
            diff_disk_settings=_diff_disk_to_sdk(model.os_disk),
        )

    vm_profile = VirtualMachineScaleSetUpdateVMProfile(
        storage_profile=storage_profile,
        security_profile=_security_to_sdk(model),
        scheduled_events_profile=_scheduled_events_to_sdk(model),
    )
    if patch.custom_data is not None:
        vm_profile.os_profile = VirtualMachineScaleSetUpdateOSProfile(custom_data=patch.custom_data)
    if model.spot is not None:
        vm_profile.billing_profile = BillingProfile(max_price=model.spot.max_price)

    return VirtualMachineScaleSetUpdate(
        tags=dict(model.tags),
        sku=Sku(name=model.sku_name, capacity=patch.capacity),
        plan=_plan_to_sdk(model.plan),
        identity=_identity_to_sdk(model.identity),
        virtual_machine_profile=vm_profile,
        additional_capabilities=_additional_capabilities_to_sdk(model),
    )


# =============================================================================
# SDK -> canonical
# =============================================================================


def _managed_disk_from_sdk(managed: Any) -> tuple[str | None, str | None]:
    if managed is None:
        return None, None
    encryption = managed.disk_encryption_set
    return (
        _str_value(managed.storage_account_type) or None,
        encryption.id if encryption is not None else None,
    )


def _model_from_sdk(vmss: Any) -> ScaleSetModel:
    profile = vmss.virtual_machine_profile
    storage = profile.storage_profile if profile else None

    image = None
    if storage is not None and storage.image_reference is not None:
        ref = storage.image_reference
        if ref.id:
            image = ImageReference(id=ref.id)
        else:
            image = ImageReference(
                publisher=ref.publisher, offer=ref.offer, sku=ref.sku, version=ref.version
            )

    os_disk = None
    if storage is not None and storage.os_disk is not None:
        disk = storage.os_disk
        storage_type, encryption_set = _managed_disk_from_sdk(disk.managed_disk)
        diff = disk.diff_disk_settings
        os_disk = OSDiskConfig(
            os_type=_str_value(disk.os_type),
            disk_size_gb=disk.disk_size_gb,
            storage_account_type=storage_type,
            disk_encryption_set_id=encryption_set,
            caching=_str_value(disk.caching) or None,
            diff_disk_option=_str_value(diff.option) if diff is not None else None,
        )

    data_disks = []
    for disk in (storage.data_disks if storage is not None else None) or []:
        storage_type, encryption_set = _managed_disk_from_sdk(disk.managed_disk)
        data_disks.append(
            DataDiskConfig(
                name=disk.name or "",
                disk_size_gb=disk.disk_size_gb or 0,
                lun=disk.lun,
                storage_account_type=storage_type,
                disk_encryption_set_id=encryption_set,
                caching=_str_value(disk.caching) or None,
            )
        )

    identity = None
    if vmss.identity is not None:
        user_ids = sorted((vmss.identity.user_assigned_identities or {}).keys(), key=str.lower)
        identity = Identity(type=_str_value(vmss.identity.type), user_assigned_ids=tuple(user_ids))

    plan = None
    if vmss.plan is not None:
        plan = PurchasePlan(
            name=vmss.plan.name, publisher=vmss.plan.publisher, product=vmss.plan.product
        )

    spot = None
    if profile is not None and _str_value(profile.priority) == SPOT_PRIORITY:
        billing = profile.billing_profile
        max_price = billing.max_price if billing is not None and billing.max_price else -1
        spot = SpotSettings(
            eviction_policy=_str_value(profile.eviction_policy), max_price=max_price
        )

    terminate_minutes = None
    events = profile.scheduled_events_profile if profile else None
    if events is not None and events.terminate_notification_profile is not None:
        notification = events.terminate_notification_profile
        match = _ISO_MINUTES.match(notification.not_before_timeout or "")
        if match and notification.enable is not False:
            terminate_minutes = int(match.group(1))

    security = profile.security_profile if profile else None
    capabilities = vmss.additional_capabilities

    return ScaleSetModel(
        sku_name=vmss.sku.name if vmss.sku else "",
        image=image,
        plan=plan,
        identity=identity,
        zones=tuple(sorted(vmss.zones or [])),
        tags=dict(vmss.tags or {}),
        os_disk=os_disk,
        data_disks=tuple(data_disks),
        encryption_at_host=security.encryption_at_host if security is not None else None,
        spot=spot,
        ultra_ssd_enabled=capabilities.ultra_ssd_enabled if capabilities is not None else None,
        terminate_notification_minutes=terminate_minutes,
    )


def scale_set_from_sdk(vmss: Any) -> ObservedScaleSet:
    """Convert a VirtualMachineScaleSet into an observed snapshot."""
    return ObservedScaleSet(
        id=vmss.id or "",
        name=vmss.name or "",
        location=vmss.location or "",
        provisioning_state=vmss.provisioning_state or "",
        capacity=(vmss.sku.capacity or 0) if vmss.sku else 0,
        model=_model_from_sdk(vmss),
    )


def instance_from_sdk(vm: Any) -> ScaleSetInstance:
    """Convert a VirtualMachineScaleSetVM."""
    zones = vm.zones or []
    return ScaleSetInstance(
        id=vm.id or "",
        instance_id=vm.instance_id or "",
        name=vm.name or "",
        provisioning_state=vm.provisioning_state or "",
        latest_model_applied=bool(vm.latest_model_applied),
        zone=zones[0] if zones else None,
        created_at=getattr(vm, "time_created", None),
    )
