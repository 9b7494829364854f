"""Fleet spec file loading with validation.

All file reads enforce a size limit. A spec file holds one fleet, either as
a flat mapping or wrapped Kubernetes-style (apiVersion/kind/spec, with the
name taken from metadata.name when the spec has none).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import FleetSpec
from .skus import ResourceSku, StaticSkuCatalog

logger = logging.getLogger(__name__)

SPEC_FILE_SUFFIXES: tuple[str, ...] = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def _read_yaml(spec_path: Path) -> Any:
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e


def parse_fleet_spec(raw_data: Any, source: str = "<input>") -> FleetSpec:
    """Validate already-parsed YAML data as a FleetSpec.

    Raises:
        SpecLoadError: If the data is not a mapping or fails validation.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
        metadata = raw_data.get("metadata") or {}
        if "name" not in spec_data and isinstance(metadata, dict) and "name" in metadata:
            spec_data = {**spec_data, "name": metadata["name"]}
    else:
        spec_data = raw_data

    try:
        return FleetSpec.model_validate(spec_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def load_fleet_spec(spec_path: Path) -> FleetSpec:
    """Load and validate one fleet spec from YAML.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    spec = parse_fleet_spec(_read_yaml(spec_path), str(spec_path))
    logger.info("Loaded fleet spec '%s' from %s", spec.name, spec_path)
    return spec


def load_sku_catalog(catalog_path: Path) -> StaticSkuCatalog:
    """Load an offline capability catalog (a YAML list of SKU records).

    Raises:
        SpecLoadError: If the file is not a list of valid SKU mappings.
    """
    raw_data = _read_yaml(catalog_path)
    if not isinstance(raw_data, list):
        raise SpecLoadError(f"SKU catalog must contain a YAML list: {catalog_path}")
    try:
        return StaticSkuCatalog([ResourceSku.from_dict(entry) for entry in raw_data])
    except (KeyError, TypeError, AttributeError) as e:
        raise SpecLoadError(f"Invalid SKU entry in {catalog_path}: {e}") from e


def load_fleet_specs(specs_dir: Path) -> list[FleetSpec]:
    """Load every fleet spec in a directory, sorted by file name.

    Raises:
        SpecLoadError: If any file is invalid, or two files define the
            same fleet.
    """
    if not specs_dir.is_dir():
        raise SpecLoadError(f"Specs directory does not exist: {specs_dir}")

    specs: list[FleetSpec] = []
    seen: dict[str, Path] = {}
    for path in sorted(specs_dir.iterdir()):
        if path.suffix not in SPEC_FILE_SUFFIXES or not path.is_file():
            continue
        spec = load_fleet_spec(path)
        if spec.name in seen:
            raise SpecLoadError(
                f"Fleet '{spec.name}' is defined twice: {seen[spec.name]} and {path}"
            )
        seen[spec.name] = path
        specs.append(spec)
    return specs
