"""Inputs the builder resolves at reconcile time: boot image and bootstrap data.

Both are looked up fresh on every pass. A new image version or a rotated
bootstrap secret therefore shows up as a model change on the next pass.
"""

from __future__ import annotations

import base64
import logging
import re
from pathlib import Path
from typing import Any, Protocol

from azure.core.exceptions import AzureError

from .models import FleetSpec, Image, MarketplaceImage

logger = logging.getLogger(__name__)

# Reference images published for Kubernetes nodes
DEFAULT_IMAGE_PUBLISHER = "cncf-upstream"
DEFAULT_LINUX_OFFER = "capi"
DEFAULT_LINUX_SKU = "ubuntu-2004-gen1"
DEFAULT_WINDOWS_OFFER = "capi-windows"
DEFAULT_WINDOWS_SKU = "windows-2019-containerd-gen1"
LATEST_IMAGE_VERSION = "latest"

MAX_BOOTSTRAP_DATA_BYTES = 64 * 1024  # Azure customData limit

_SEMVER_PATTERN = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)")


class ImageResolutionError(Exception):
    """Raised when no image matches the fleet's configuration."""

    pass


class BootstrapDataError(Exception):
    """Raised when the bootstrap payload cannot be read."""

    pass


class ImageResolver(Protocol):
    def resolve(self, spec: FleetSpec) -> Image: ...


class BootstrapDataSource(Protocol):
    def get_bootstrap_data(self, spec: FleetSpec) -> str: ...


class DefaultImageResolver:
    """Use the spec's image, or fall back to the reference node images.

    Reference images are versioned ``<major><minor>.<patch>.<build>``
    (e.g. ``122.3.20211014`` for Kubernetes v1.22.3). With a compute client
    and a spec version, the newest build for that Kubernetes version is
    picked. Otherwise ``latest`` is used.
    """

    def __init__(self, compute_client: Any | None = None) -> None:
        self._client = compute_client

    def resolve(self, spec: FleetSpec) -> Image:
        if spec.image is not None:
            return spec.image

        if spec.is_windows:
            offer, sku = DEFAULT_WINDOWS_OFFER, DEFAULT_WINDOWS_SKU
        else:
            offer, sku = DEFAULT_LINUX_OFFER, DEFAULT_LINUX_SKU

        version = LATEST_IMAGE_VERSION
        if spec.version and self._client is not None:
            version = self._latest_version_for(spec, offer, sku)

        logger.debug(
            "Using default image",
            extra={"fleet": spec.name, "offer": offer, "sku": sku, "image_version": version},
        )
        return Image(
            marketplace=MarketplaceImage(
                publisher=DEFAULT_IMAGE_PUBLISHER, offer=offer, sku=sku, version=version
            )
        )

    def _latest_version_for(self, spec: FleetSpec, offer: str, sku: str) -> str:
        match = _SEMVER_PATTERN.match(spec.version or "")
        if match is None:
            raise ImageResolutionError(f"unable to parse Kubernetes version {spec.version!r}")
        major, minor, patch = match.groups()
        prefix = f"{major}{minor}.{patch}."

        try:
            images = self._client.virtual_machine_images.list(
                location=spec.location,
                publisher_name=DEFAULT_IMAGE_PUBLISHER,
                offer=offer,
                skus=sku,
            )
        except AzureError as e:
            raise ImageResolutionError(
                f"failed to list images for {DEFAULT_IMAGE_PUBLISHER}/{offer}/{sku}: {e}"
            ) from e

        versions = [image.name for image in images or [] if image.name.startswith(prefix)]
        if not versions:
            raise ImageResolutionError(
                f"no VM image found for publisher {DEFAULT_IMAGE_PUBLISHER} offer {offer} "
                f"sku {sku} with Kubernetes version {spec.version}"
            )
        return max(versions, key=_version_key)


def _version_key(version: str) -> tuple[int, ...]:
    return tuple(int(part) if part.isdigit() else 0 for part in version.split("."))


class FileBootstrapDataSource:
    """Read bootstrap payloads from mounted secret files.

    A secret named ``foo`` is read from ``<secrets_dir>/foo``. If that is a
    directory (Kubernetes secret volume), its ``value`` key is used.
    """

    def __init__(self, secrets_dir: Path) -> None:
        self._secrets_dir = secrets_dir

    def get_bootstrap_data(self, spec: FleetSpec) -> str:
        """Return the payload base64 encoded, ready for customData.

        Raises:
            BootstrapDataError: If the secret is unset, missing or too large.
        """
        name = spec.bootstrap_data_secret_name
        if not name:
            raise BootstrapDataError(
                f"error retrieving bootstrap data: fleet {spec.name} has no bootstrapDataSecretName"
            )
        if "/" in name or name.startswith("."):
            raise BootstrapDataError(f"invalid bootstrap data secret name: {name}")

        path = self._secrets_dir / name
        if path.is_dir():
            path = path / "value"
        if not path.is_file():
            raise BootstrapDataError(
                f"failed to retrieve bootstrap data secret {name} for fleet {spec.name}"
            )

        try:
            size = path.stat().st_size
            if size > MAX_BOOTSTRAP_DATA_BYTES:
                raise BootstrapDataError(
                    f"bootstrap data exceeds maximum size of {MAX_BOOTSTRAP_DATA_BYTES} bytes: {path}"
                )
            data = path.read_bytes()
        except OSError as e:
            raise BootstrapDataError(f"failed to read bootstrap data {path}: {e}") from e

        return base64.b64encode(data).decode("ascii")
