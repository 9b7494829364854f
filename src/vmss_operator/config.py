"""Configuration management with validation.

The operator is configured entirely from environment variables. Every value
is validated when the Config is built, so a bad setting stops the process at
startup instead of surfacing halfway through a pass.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from .errors import CONFLICT_RETRY_SECONDS, OPERATION_NOT_DONE_RETRY_SECONDS


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 10
MAX_RECONCILE_INTERVAL_SECONDS = 3600

MIN_RETRY_INTERVAL_SECONDS = 1
MAX_RETRY_INTERVAL_SECONDS = 600

DEFAULT_PASS_TIMEOUT_SECONDS = 120
MAX_PASS_TIMEOUT_SECONDS = 900

DEFAULT_SKU_REFRESH_INTERVAL_SECONDS = 3600
MIN_SKU_REFRESH_INTERVAL_SECONDS = 60
MAX_SKU_REFRESH_INTERVAL_SECONDS = 86400

DEFAULT_MAX_CONCURRENT_PASSES = 4
MAX_CONCURRENT_PASSES = 64

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_CLUSTER_NAME_PATTERN = r"^[a-z0-9][-a-z0-9]{0,62}$"


def parse_tags(value: str) -> dict[str, str]:
    """Parse ``k=v,k=v`` into a dict.

    Raises:
        ConfigurationError: If an entry has no ``=`` or an empty key.
    """
    tags: dict[str, str] = {}
    for entry in value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        key, sep, tag_value = entry.partition("=")
        if not sep or not key.strip():
            raise ConfigurationError(f"CLUSTER_TAGS entries must look like key=value: {entry}")
        tags[key.strip()] = tag_value.strip()
    return tags


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    subscription_id: str
    location: str
    cluster_name: str

    # Paths
    specs_dir: Path = field(default_factory=lambda: Path("/specs"))
    state_dir: Path = field(default_factory=lambda: Path("/var/lib/vmss-operator"))
    bootstrap_secrets_dir: Path = field(default_factory=lambda: Path("/secrets"))

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    operation_poll_interval_seconds: int = OPERATION_NOT_DONE_RETRY_SECONDS
    conflict_retry_interval_seconds: int = CONFLICT_RETRY_SECONDS
    pass_timeout_seconds: int = DEFAULT_PASS_TIMEOUT_SECONDS
    sku_refresh_interval_seconds: int = DEFAULT_SKU_REFRESH_INTERVAL_SECONDS

    # Concurrency
    max_concurrent_passes: int = DEFAULT_MAX_CONCURRENT_PASSES

    # Tags applied to every scale set of the cluster
    cluster_tags: dict[str, str] = field(default_factory=dict)

    # User-assigned managed identity; system-assigned when unset
    client_id: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if not self.cluster_name:
            errors.append("CLUSTER_NAME is required")
        elif not re.match(VALID_CLUSTER_NAME_PATTERN, self.cluster_name):
            errors.append(
                f"CLUSTER_NAME must match pattern {VALID_CLUSTER_NAME_PATTERN}: {self.cluster_name}"
            )

        # Timing validation
        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        for name, value in (
            ("OPERATION_POLL_INTERVAL", self.operation_poll_interval_seconds),
            ("CONFLICT_RETRY_INTERVAL", self.conflict_retry_interval_seconds),
        ):
            if not MIN_RETRY_INTERVAL_SECONDS <= value <= MAX_RETRY_INTERVAL_SECONDS:
                errors.append(
                    f"{name} must be between {MIN_RETRY_INTERVAL_SECONDS} "
                    f"and {MAX_RETRY_INTERVAL_SECONDS} seconds"
                )

        if not 1 <= self.pass_timeout_seconds <= MAX_PASS_TIMEOUT_SECONDS:
            errors.append(f"PASS_TIMEOUT must be between 1 and {MAX_PASS_TIMEOUT_SECONDS} seconds")

        if not (
            MIN_SKU_REFRESH_INTERVAL_SECONDS
            <= self.sku_refresh_interval_seconds
            <= MAX_SKU_REFRESH_INTERVAL_SECONDS
        ):
            errors.append(
                f"SKU_REFRESH_INTERVAL must be between {MIN_SKU_REFRESH_INTERVAL_SECONDS} "
                f"and {MAX_SKU_REFRESH_INTERVAL_SECONDS} seconds"
            )

        if not 1 <= self.max_concurrent_passes <= MAX_CONCURRENT_PASSES:
            errors.append(f"MAX_CONCURRENT_PASSES must be between 1 and {MAX_CONCURRENT_PASSES}")

        # Path validation
        if not self.specs_dir.exists():
            errors.append(f"Specs directory does not exist: {self.specs_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Subscription holding the scale sets
            AZURE_LOCATION: Region used for capability (SKU) lookups
            CLUSTER_NAME: Cluster the fleets belong to (ownership tags)
            SPECS_DIR: Path to fleet YAML specs (default: /specs)
            STATE_DIR: Path for persisted status and records
                (default: /var/lib/vmss-operator)
            BOOTSTRAP_SECRETS_DIR: Mounted bootstrap data secrets (default: /secrets)
            RECONCILE_INTERVAL: Seconds between passes of a settled fleet (default: 300)
            OPERATION_POLL_INTERVAL: Seconds before polling an outstanding
                operation again (default: 15)
            CONFLICT_RETRY_INTERVAL: Seconds before retrying after a
                conflict (default: 30)
            PASS_TIMEOUT: Deadline for a single pass in seconds (default: 120)
            SKU_REFRESH_INTERVAL: Seconds before VM size capability data is
                reloaded (default: 3600)
            MAX_CONCURRENT_PASSES: Fleets reconciled in parallel (default: 4)
            CLUSTER_TAGS: Extra tags for every scale set, as k=v,k=v
            AZURE_CLIENT_ID: Client id of a user-assigned managed identity
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            location=os.environ.get("AZURE_LOCATION", ""),
            cluster_name=os.environ.get("CLUSTER_NAME", ""),
            specs_dir=Path(os.environ.get("SPECS_DIR", "/specs")),
            state_dir=Path(os.environ.get("STATE_DIR", "/var/lib/vmss-operator")),
            bootstrap_secrets_dir=Path(os.environ.get("BOOTSTRAP_SECRETS_DIR", "/secrets")),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            operation_poll_interval_seconds=get_int(
                "OPERATION_POLL_INTERVAL", OPERATION_NOT_DONE_RETRY_SECONDS
            ),
            conflict_retry_interval_seconds=get_int(
                "CONFLICT_RETRY_INTERVAL", CONFLICT_RETRY_SECONDS
            ),
            pass_timeout_seconds=get_int("PASS_TIMEOUT", DEFAULT_PASS_TIMEOUT_SECONDS),
            sku_refresh_interval_seconds=get_int(
                "SKU_REFRESH_INTERVAL", DEFAULT_SKU_REFRESH_INTERVAL_SECONDS
            ),
            max_concurrent_passes=get_int("MAX_CONCURRENT_PASSES", DEFAULT_MAX_CONCURRENT_PASSES),
            cluster_tags=parse_tags(os.environ.get("CLUSTER_TAGS", "")),
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
        )
