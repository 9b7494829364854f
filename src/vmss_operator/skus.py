"""Resource SKU capability records and lookup.

Azure publishes per-region capability data for every VM size (vCPUs, memory,
feature flags, zone availability) through the Resource SKUs API. The
validation gate and the builder consult it before any mutating call.

ResourceSkuCache loads the list for one region on first use and keeps it until
it is older than max_age. The list is large (thousands of entries) and
changes rarely, so reloading per pass would dominate API usage.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from azure.core.exceptions import AzureError

logger = logging.getLogger(__name__)

VIRTUAL_MACHINES = "virtualMachines"

# Capability names as published by the Resource SKUs API
VCPUS = "vCPUs"
MEMORY_GB = "MemoryGB"
ACCELERATED_NETWORKING = "AcceleratedNetworkingEnabled"
EPHEMERAL_OS_DISK = "EphemeralOSDiskSupported"
ENCRYPTION_AT_HOST = "EncryptionAtHostSupported"
ULTRA_SSD_AVAILABLE = "UltraSSDAvailable"

MINIMUM_VCPUS = 2
MINIMUM_MEMORY_GB = 2

RESTRICTION_TYPE_LOCATION = "Location"
RESTRICTION_TYPE_ZONE = "Zone"

DEFAULT_SKU_MAX_AGE_SECONDS = 3600


class SkuNotFoundError(Exception):
    """Raised when a size is not offered in the cached region."""

    pass


class SkuLookupError(Exception):
    """Raised when the SKU list cannot be retrieved from Azure."""

    pass


def _str_value(value: Any) -> str:
    return str(getattr(value, "value", value) or "")


# =============================================================================
# Capability records
# =============================================================================


@dataclass(frozen=True)
class ZoneDetail:
    """Capabilities that only hold in specific zones."""

    zones: tuple[str, ...]
    capabilities: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LocationInfo:
    location: str
    zones: tuple[str, ...] = ()
    zone_details: tuple[ZoneDetail, ...] = ()


@dataclass(frozen=True)
class SkuRestriction:
    type: str
    values: tuple[str, ...] = ()
    zones: tuple[str, ...] = ()
    reason_code: str = ""


@dataclass(frozen=True)
class ResourceSku:
    """Capability record for one VM size in one region."""

    name: str
    resource_type: str = VIRTUAL_MACHINES
    capabilities: dict[str, str] = field(default_factory=dict)
    location_info: tuple[LocationInfo, ...] = ()
    restrictions: tuple[SkuRestriction, ...] = ()

    def get_capability(self, name: str) -> str | None:
        return self.capabilities.get(name)

    def has_capability(self, name: str) -> bool:
        """Check a boolean capability. Missing capabilities count as False."""
        value = self.capabilities.get(name)
        return value is not None and value.lower() == "true"

    def has_capability_with_capacity(self, name: str, minimum: float) -> bool:
        """Check that a numeric capability is at least ``minimum``.

        Returns:
            False if the capability is absent or below the minimum.

        Raises:
            ValueError: If the capability value is not numeric.
        """
        value = self.capabilities.get(name)
        if value is None:
            return False
        try:
            return float(value) >= minimum
        except ValueError as e:
            raise ValueError(f"capability {name} has non-numeric value {value!r}") from e

    def has_location_capability(self, capability: str, location: str, zone: str) -> bool:
        """Check a zone-scoped capability (e.g. UltraSSDAvailable) for one zone."""
        for info in self.location_info:
            if info.location.lower() != location.lower():
                continue
            for detail in info.zone_details:
                if zone not in detail.zones:
                    continue
                value = detail.capabilities.get(capability)
                if value is not None and value.lower() == "true":
                    return True
        return False

    def is_restricted_in(self, location: str) -> bool:
        """Check whether the size is blocked for the whole region."""
        return any(
            r.type == RESTRICTION_TYPE_LOCATION
            and location.lower() in (v.lower() for v in r.values)
            for r in self.restrictions
        )

    def zones_in(self, location: str) -> list[str]:
        """Zones of ``location`` where this size can actually be deployed."""
        if self.is_restricted_in(location):
            return []
        restricted = {
            zone
            for r in self.restrictions
            if r.type == RESTRICTION_TYPE_ZONE
            for zone in r.zones
        }
        zones: set[str] = set()
        for info in self.location_info:
            if info.location.lower() == location.lower():
                zones.update(z for z in info.zones if z not in restricted)
        return sorted(zones)

    @classmethod
    def from_sdk(cls, sku: Any) -> ResourceSku:
        """Convert an azure-mgmt-compute ResourceSku."""
        location_info = []
        for info in sku.location_info or []:
            details = tuple(
                ZoneDetail(
                    zones=tuple(detail.name or ()),
                    capabilities={c.name: c.value for c in detail.capabilities or []},
                )
                for detail in info.zone_details or []
            )
            location_info.append(
                LocationInfo(
                    location=info.location or "",
                    zones=tuple(info.zones or ()),
                    zone_details=details,
                )
            )

        restrictions = []
        for restriction in sku.restrictions or []:
            restriction_info = restriction.restriction_info
            restrictions.append(
                SkuRestriction(
                    type=_str_value(restriction.type),
                    values=tuple(restriction.values or ()),
                    zones=tuple(restriction_info.zones or ()) if restriction_info else (),
                    reason_code=_str_value(restriction.reason_code),
                )
            )

        return cls(
            name=sku.name or "",
            resource_type=sku.resource_type or "",
            capabilities={c.name: c.value for c in sku.capabilities or []},
            location_info=tuple(location_info),
            restrictions=tuple(restrictions),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceSku:
        """Create from an offline catalog entry.

        Capability values are stringified, as the API returns them::

            name: Standard_D2s_v3
            capabilities: {vCPUs: 2, MemoryGB: 8}
            locations:
              - location: westeurope
                zones: ["1", "2", "3"]
                zoneDetails:
                  - zones: ["1"]
                    capabilities: {UltraSSDAvailable: "True"}
        """

        def strings(values: dict[str, Any] | None) -> dict[str, str]:
            return {str(k): str(v) for k, v in (values or {}).items()}

        location_info = tuple(
            LocationInfo(
                location=str(info["location"]),
                zones=tuple(str(z) for z in info.get("zones") or ()),
                zone_details=tuple(
                    ZoneDetail(
                        zones=tuple(str(z) for z in detail.get("zones") or ()),
                        capabilities=strings(detail.get("capabilities")),
                    )
                    for detail in info.get("zoneDetails") or ()
                ),
            )
            for info in data.get("locations") or ()
        )
        return cls(
            name=str(data["name"]),
            resource_type=str(data.get("resourceType", VIRTUAL_MACHINES)),
            capabilities=strings(data.get("capabilities")),
            location_info=location_info,
        )


# =============================================================================
# Lookup
# =============================================================================


class CapabilityLookup(Protocol):
    """What the validation gate and builder need from capability data."""

    def get(self, size: str, resource_type: str = VIRTUAL_MACHINES) -> ResourceSku: ...

    def get_zones(self, location: str) -> list[str]: ...

    def get_zones_with_vm_size(self, size: str, location: str) -> list[str]: ...


class StaticSkuCatalog:
    """Capability lookup over a fixed list of records.

    Used for offline validation (``vmss-operator validate``) and as the
    storage behind ResourceSkuCache.
    """

    def __init__(self, skus: list[ResourceSku]) -> None:
        self._skus = list(skus)

    def __len__(self) -> int:
        return len(self._skus)

    def get(self, size: str, resource_type: str = VIRTUAL_MACHINES) -> ResourceSku:
        for sku in self._skus:
            if sku.name.lower() == size.lower() and sku.resource_type == resource_type:
                return sku
        raise SkuNotFoundError(f"resource sku with name '{size}' and category '{resource_type}' not found")

    def get_zones(self, location: str) -> list[str]:
        zones: set[str] = set()
        for sku in self._skus:
            zones.update(sku.zones_in(location))
        return sorted(zones)

    def get_zones_with_vm_size(self, size: str, location: str) -> list[str]:
        zones: set[str] = set()
        for sku in self._skus:
            if sku.name.lower() == size.lower() and sku.resource_type == VIRTUAL_MACHINES:
                zones.update(sku.zones_in(location))
        return sorted(zones)


class ResourceSkuCache:
    """Lazily loaded SKU catalog for one region.

    Thread-safe: passes for different fleets run concurrently in executor
    threads and share one cache.
    """

    def __init__(
        self,
        compute_client: Any,
        location: str,
        max_age_seconds: float = DEFAULT_SKU_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        Args:
            compute_client: azure.mgmt.compute.ComputeManagementClient.
            location: Region whose SKUs are loaded.
            max_age_seconds: Age after which the next lookup reloads the list.
            clock: Monotonic time source.
        """
        self._client = compute_client
        self._location = location
        self._max_age_seconds = max_age_seconds
        self._clock = clock
        self._catalog: StaticSkuCatalog | None = None
        self._loaded_at = 0.0
        self._lock = threading.Lock()

    @property
    def location(self) -> str:
        return self._location

    def _load(self) -> StaticSkuCatalog:
        with self._lock:
            now = self._clock()
            if self._catalog is not None and now - self._loaded_at < self._max_age_seconds:
                return self._catalog
            # A failed reload keeps serving the previous list
            try:
                raw = self._client.resource_skus.list(filter=f"location eq '{self._location}'")
                skus = [ResourceSku.from_sdk(sku) for sku in raw]
            except AzureError as e:
                if self._catalog is not None:
                    logger.warning(
                        "Failed to reload resource SKUs, keeping cached list",
                        extra={"location": self._location, "error": str(e)},
                    )
                    return self._catalog
                raise SkuLookupError(
                    f"failed to list resource skus in location {self._location}: {e}"
                ) from e
            self._catalog = StaticSkuCatalog(skus)
            self._loaded_at = now
            logger.info(
                "Loaded resource SKUs",
                extra={"location": self._location, "sku_count": len(skus)},
            )
            return self._catalog

    def get(self, size: str, resource_type: str = VIRTUAL_MACHINES) -> ResourceSku:
        return self._load().get(size, resource_type)

    def get_zones(self, location: str) -> list[str]:
        return self._load().get_zones(location)

    def get_zones_with_vm_size(self, size: str, location: str) -> list[str]:
        return self._load().get_zones_with_vm_size(size, location)
