"""Preflight validation of a fleet spec against platform capabilities.

Runs before anything else in a pass, so an unusable spec never reaches a
mutating Azure call. Checks run in a fixed order and stop at the first
violation:

1. the VM size exists in the region
2. at least 2 vCPUs
3. at least 2 GiB of memory
4. ephemeral OS disk support, if requested
5. encryption at host support, if requested
6. UltraSSD availability in every zone of the region, if requested
7. every failure domain is a zone where the size is offered

Violations are terminal: retrying cannot help until the spec changes.
"""

from __future__ import annotations

import logging

from .errors import SpecValidationError, TerminalError, TransientError
from .models import FleetSpec
from .skus import (
    EPHEMERAL_OS_DISK,
    ENCRYPTION_AT_HOST,
    MEMORY_GB,
    MINIMUM_MEMORY_GB,
    MINIMUM_VCPUS,
    ULTRA_SSD_AVAILABLE,
    VCPUS,
    VIRTUAL_MACHINES,
    CapabilityLookup,
    ResourceSku,
    SkuLookupError,
    SkuNotFoundError,
)

logger = logging.getLogger(__name__)


def validate_spec(spec: FleetSpec, skus: CapabilityLookup) -> ResourceSku:
    """Validate a fleet spec against the capability data of its VM size.

    Args:
        spec: Desired fleet state.
        skus: Capability lookup for the fleet's region.

    Returns:
        The capability record of the VM size, for use by the builder.

    Raises:
        SpecValidationError: The spec cannot work with the selected size.
        TerminalError: Capability data is malformed.
        TransientError: Capability data could not be retrieved.
    """
    try:
        sku = skus.get(spec.vm_size, VIRTUAL_MACHINES)
    except SkuNotFoundError as e:
        raise SpecValidationError(f"failed to get SKU {spec.vm_size} in compute api: {e}") from e
    except SkuLookupError as e:
        raise TransientError(f"failed to get SKU {spec.vm_size} in compute api: {e}") from e

    try:
        has_vcpus = sku.has_capability_with_capacity(VCPUS, MINIMUM_VCPUS)
    except ValueError as e:
        raise TerminalError(f"failed to validate the vCPU capability: {e}") from e
    if not has_vcpus:
        raise SpecValidationError("vm size should be bigger or equal to at least 2 vCPUs")

    try:
        has_memory = sku.has_capability_with_capacity(MEMORY_GB, MINIMUM_MEMORY_GB)
    except ValueError as e:
        raise TerminalError(f"failed to validate the memory capability: {e}") from e
    if not has_memory:
        raise SpecValidationError("vm memory should be bigger or equal to at least 2Gi")

    if spec.os_disk.diff_disk_settings is not None and not sku.has_capability(EPHEMERAL_OS_DISK):
        raise SpecValidationError(
            f"vm size {spec.vm_size} does not support ephemeral os. "
            "select a different vm size or disable ephemeral os"
        )

    if spec.security_profile is not None and not sku.has_capability(ENCRYPTION_AT_HOST):
        raise SpecValidationError(f"encryption at host is not supported for VM type {spec.vm_size}")

    _validate_ultra_ssd(spec, sku, skus)
    _validate_failure_domains(spec, skus)

    logger.debug(
        "Spec passed validation",
        extra={"fleet": spec.name, "vm_size": spec.vm_size, "location": spec.location},
    )
    return sku


def _validate_ultra_ssd(spec: FleetSpec, sku: ResourceSku, skus: CapabilityLookup) -> None:
    try:
        zones = skus.get_zones(spec.location)
    except SkuLookupError as e:
        raise TerminalError(f"failed to get the zones for location {spec.location}: {e}") from e

    wants_ultra_disks = any(disk.is_ultra_ssd for disk in spec.data_disks)
    caps = spec.additional_capabilities
    wants_ultra_volumes = caps is not None and caps.ultra_ssd_enabled is True
    if not (wants_ultra_disks or wants_ultra_volumes):
        return

    for zone in zones:
        if not sku.has_location_capability(ULTRA_SSD_AVAILABLE, spec.location, zone):
            raise SpecValidationError(
                f"vm size {spec.vm_size} does not support ultra disks in location "
                f"{spec.location}. select a different vm size or disable ultra disks"
            )


def _validate_failure_domains(spec: FleetSpec, skus: CapabilityLookup) -> None:
    if not spec.failure_domains:
        return

    try:
        available = skus.get_zones_with_vm_size(spec.vm_size, spec.location)
    except SkuLookupError as e:
        raise TransientError(
            f"failed to get zones for VM type {spec.vm_size} in location {spec.location}: {e}"
        ) from e

    for zone in spec.failure_domains:
        if zone not in available:
            raise SpecValidationError(
                f"availability zone {zone} is not available for VM type {spec.vm_size} "
                f"in location {spec.location}"
            )
