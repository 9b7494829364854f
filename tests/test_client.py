"""Tests for the Azure Compute boundary."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import ResourceNotFoundError
from azure.mgmt.compute.models import VirtualMachineScaleSet, VirtualMachineScaleSetVM
from azure_mock import SUBSCRIPTION_ID, make_sku, make_spec
from azure_mock.fleets import BOOTSTRAP_DATA, LOCATION

from vmss_operator.builder import ScaleSetBuilder
from vmss_operator.checkpoint import OperationCheckpoint, OperationKind
from vmss_operator.client import (
    UPDATE_SETTLE_GRACE,
    AzureScaleSetClient,
    instance_from_sdk,
    patch_to_sdk,
    scale_set_from_sdk,
    scale_set_to_sdk,
)
from vmss_operator.diff import model_differences
from vmss_operator.errors import OperationFailedError, OperationNotDoneError
from vmss_operator.models import FleetSpec
from vmss_operator.vmss import DesiredScaleSet, ScaleSetPatch

RG = "rg-cluster"
SCALE_SET_ID = (
    f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{RG}/providers/"
    "Microsoft.Compute/virtualMachineScaleSets/pool0"
)


def _desired(spec: FleetSpec | None = None) -> DesiredScaleSet:
    spec = spec or make_spec()
    assert spec.image is not None
    return ScaleSetBuilder(
        spec, make_sku(), spec.image, BOOTSTRAP_DATA, subscription_id=SUBSCRIPTION_ID
    ).build()


def _sdk_scale_set(
    desired: DesiredScaleSet | None = None, provisioning_state: str = "Succeeded"
) -> VirtualMachineScaleSet:
    """SDK body as Azure would return it, read-only fields included."""
    vmss = scale_set_to_sdk(desired or _desired())
    vmss.id = SCALE_SET_ID
    vmss.name = "pool0"
    vmss.provisioning_state = provisioning_state
    return vmss


def _client(compute: MagicMock) -> AzureScaleSetClient:
    return AzureScaleSetClient(MagicMock(), SUBSCRIPTION_ID, compute_client=compute)


def _checkpoint(kind: OperationKind, *, age: timedelta = timedelta(0)) -> OperationCheckpoint:
    return OperationCheckpoint(
        kind=kind,
        service_name="scalesets",
        resource_group=RG,
        name="pool0",
        created_at=datetime.now(UTC) - age,
    )


class TestToSdk:
    """Tests for canonical to SDK conversion."""

    def test_create_body(self) -> None:
        """Test the PUT body carries capacity, profile and network."""
        desired = _desired()

        vmss = scale_set_to_sdk(desired)

        assert vmss.location == LOCATION
        assert vmss.sku.name == "Standard_D2s_v3"
        assert vmss.sku.capacity == 2
        profile = vmss.virtual_machine_profile
        assert profile.os_profile.custom_data == BOOTSTRAP_DATA
        assert profile.os_profile.linux_configuration.disable_password_authentication is True
        [nic] = profile.network_profile.network_interface_configurations
        assert nic.ip_configurations[0].subnet.id == desired.network_profile.subnet_id
        assert profile.priority is None

    def test_spot_priority(self) -> None:
        vmss = scale_set_to_sdk(_desired(make_spec(spotVMOptions={"maxPrice": 0.5})))

        profile = vmss.virtual_machine_profile
        assert profile.priority == "Spot"
        assert profile.billing_profile.max_price == 0.5

    def test_patch_has_no_network_profile(self) -> None:
        """Test that a patch never touches the network profile."""
        desired = _desired()
        patch = ScaleSetPatch(capacity=4, model=desired.model, custom_data=BOOTSTRAP_DATA)

        body = patch_to_sdk(patch)

        assert body.sku.capacity == 4
        assert body.virtual_machine_profile.network_profile is None
        assert body.virtual_machine_profile.os_profile.custom_data == BOOTSTRAP_DATA

    def test_patch_without_custom_data(self) -> None:
        desired = _desired()

        body = patch_to_sdk(ScaleSetPatch(capacity=2, model=desired.model))

        assert body.virtual_machine_profile.os_profile is None


class TestFromSdk:
    """Tests for SDK to canonical conversion."""

    def test_created_scale_set_has_no_drift(self) -> None:
        """Test that what we create reads back without differences."""
        desired = _desired(
            make_spec(
                additionalTags={"team": "a"},
                failureDomains=["1", "2"],
                dataDisks=[{"nameSuffix": "etcd", "diskSizeGB": 64, "lun": 0}],
            )
        )

        observed = scale_set_from_sdk(_sdk_scale_set(desired))

        assert observed.id == SCALE_SET_ID
        assert observed.capacity == desired.capacity
        assert observed.provisioning_state == "Succeeded"
        assert model_differences(observed.model, desired.model) == []

    def test_instance(self) -> None:
        created = datetime(2024, 1, 1, tzinfo=UTC)
        vm = VirtualMachineScaleSetVM(location=LOCATION)
        vm.id = f"{SCALE_SET_ID}/virtualMachines/3"
        vm.instance_id = "3"
        vm.name = "pool0_3"
        vm.provisioning_state = "Succeeded"
        vm.latest_model_applied = False
        vm.zones = ["2"]
        vm.time_created = created

        instance = instance_from_sdk(vm)

        assert instance.instance_id == "3"
        assert instance.latest_model_applied is False
        assert instance.zone == "2"
        assert instance.created_at == created
        assert instance.provider_id == f"azure://{SCALE_SET_ID}/virtualMachines/3"


class TestMutations:
    """Tests for starting operations without polling."""

    def test_create_does_not_poll(self) -> None:
        """Test that the create is started with polling disabled."""
        compute = MagicMock()
        compute.virtual_machine_scale_sets.begin_create_or_update.return_value.continuation_token.return_value = "token"

        checkpoint = _client(compute).create_or_update_async(RG, "pool0", _desired())

        _, kwargs = compute.virtual_machine_scale_sets.begin_create_or_update.call_args
        assert kwargs["polling"] is False
        assert checkpoint.kind == OperationKind.CREATE
        assert checkpoint.data == "token"
        assert checkpoint.service_name == "scalesets"

    def test_delete_instances_in_one_call(self) -> None:
        compute = MagicMock()

        _client(compute).delete_instances_async(RG, "pool0", ["1", "2"])

        call = compute.virtual_machine_scale_sets.begin_delete_instances.call_args
        assert call.args[2].instance_ids == ["1", "2"]
        assert call.kwargs["polling"] is False


class TestGetResultIfDone:
    """Tests for single-GET completion checks."""

    def test_create_done_when_succeeded(self) -> None:
        compute = MagicMock()
        compute.virtual_machine_scale_sets.get.return_value = _sdk_scale_set()

        observed = _client(compute).get_result_if_done(_checkpoint(OperationKind.CREATE))

        assert observed is not None
        assert observed.name == "pool0"

    def test_update_not_done_while_updating(self) -> None:
        compute = MagicMock()
        compute.virtual_machine_scale_sets.get.return_value = _sdk_scale_set(
            provisioning_state="Updating"
        )

        with pytest.raises(OperationNotDoneError):
            _client(compute).get_result_if_done(_checkpoint(OperationKind.UPDATE))

    def test_create_failed_state_raises(self) -> None:
        """Test a create that ended Failed is reported as a failure."""
        compute = MagicMock()
        compute.virtual_machine_scale_sets.get.return_value = _sdk_scale_set(
            provisioning_state="Failed"
        )

        with pytest.raises(OperationFailedError, match="Create on rg-cluster/pool0"):
            _client(compute).get_result_if_done(_checkpoint(OperationKind.CREATE))

    def test_settled_update_canceled_raises(self) -> None:
        compute = MagicMock()
        compute.virtual_machine_scale_sets.get.return_value = _sdk_scale_set(
            provisioning_state="Canceled"
        )

        with pytest.raises(OperationFailedError, match="provisioning state Canceled"):
            _client(compute).get_result_if_done(
                _checkpoint(OperationKind.UPDATE, age=UPDATE_SETTLE_GRACE + timedelta(seconds=1))
            )

    def test_settled_update_done_when_succeeded(self) -> None:
        compute = MagicMock()
        compute.virtual_machine_scale_sets.get.return_value = _sdk_scale_set()

        observed = _client(compute).get_result_if_done(
            _checkpoint(OperationKind.UPDATE, age=UPDATE_SETTLE_GRACE + timedelta(seconds=1))
        )

        assert observed is not None

    @pytest.mark.parametrize("state", ["Succeeded", "Failed"])
    def test_fresh_update_terminal_state_not_trusted(self, state: str) -> None:
        """Test a state read right after a patch is accepted may predate it."""
        compute = MagicMock()
        compute.virtual_machine_scale_sets.get.return_value = _sdk_scale_set(
            provisioning_state=state
        )

        with pytest.raises(OperationNotDoneError, match="may predate the update"):
            _client(compute).get_result_if_done(_checkpoint(OperationKind.UPDATE))

    def test_fresh_create_not_visible_yet(self) -> None:
        """Test a create within its grace period is not done, not missing."""
        compute = MagicMock()
        compute.virtual_machine_scale_sets.get.side_effect = ResourceNotFoundError("gone")

        with pytest.raises(OperationNotDoneError):
            _client(compute).get_result_if_done(_checkpoint(OperationKind.CREATE))

    def test_old_create_missing_is_not_found(self) -> None:
        compute = MagicMock()
        compute.virtual_machine_scale_sets.get.side_effect = ResourceNotFoundError("gone")

        with pytest.raises(ResourceNotFoundError):
            _client(compute).get_result_if_done(
                _checkpoint(OperationKind.CREATE, age=timedelta(minutes=5))
            )

    def test_delete_done_when_gone(self) -> None:
        compute = MagicMock()
        compute.virtual_machine_scale_sets.get.side_effect = ResourceNotFoundError("gone")

        assert _client(compute).get_result_if_done(_checkpoint(OperationKind.DELETE)) is None

    def test_delete_not_done_while_deleting(self) -> None:
        compute = MagicMock()
        compute.virtual_machine_scale_sets.get.return_value = _sdk_scale_set(
            provisioning_state="Deleting"
        )

        with pytest.raises(OperationNotDoneError):
            _client(compute).get_result_if_done(_checkpoint(OperationKind.DELETE))

    def test_delete_failed_when_still_present(self) -> None:
        """Test a terminal scale set after a delete means the delete failed."""
        compute = MagicMock()
        compute.virtual_machine_scale_sets.get.return_value = _sdk_scale_set(
            provisioning_state="Failed"
        )

        with pytest.raises(OperationFailedError):
            _client(compute).get_result_if_done(_checkpoint(OperationKind.DELETE))
