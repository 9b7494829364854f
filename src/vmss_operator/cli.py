"""Scale set fleet operator CLI.

Usage:
    vmss-operator run                       # Run the control loop
    vmss-operator validate fleet.yaml       # Check a spec offline
    vmss-operator status my-fleet           # Show persisted fleet status
    vmss-operator clear-checkpoint my-fleet # Drop a stuck operation
    vmss-operator delete my-fleet           # Request fleet deletion
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click
import yaml

from . import __version__
from .client import SCALESETS_SERVICE_NAME
from .errors import ReconcileError
from .spec_loader import SpecLoadError, load_fleet_spec, load_sku_catalog
from .status import FleetStatus
from .store import FileStateStore, StoreError
from .validation import validate_spec

DEFAULT_STATE_DIR = "/var/lib/vmss-operator"

state_dir_option = click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="STATE_DIR",
    default=DEFAULT_STATE_DIR,
    show_default=True,
    help="Operator state directory",
)


def open_store(state_dir: Path) -> FileStateStore:
    try:
        return FileStateStore(state_dir)
    except StoreError as e:
        raise click.ClickException(str(e)) from e


def load_status(store: FileStateStore, name: str) -> FleetStatus:
    try:
        status = store.load_status(name)
    except StoreError as e:
        raise click.ClickException(str(e)) from e
    if status is None:
        raise click.ClickException(f"No status recorded for fleet '{name}'")
    return status


def save_status(store: FileStateStore, status: FleetStatus) -> None:
    try:
        store.save_status(status)
    except StoreError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version=__version__, prog_name="vmss-operator")
def cli() -> None:
    """Scale set fleet operator.

    Reconciles Azure virtual machine scale sets against fleet specs and
    keeps per-instance tracking records in sync.
    """
    pass


@cli.command()
def run() -> None:
    """Run the control loop (configured from the environment)."""
    from .main import main

    sys.exit(asyncio.run(main()))


@cli.command()
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--skus",
    "sku_catalog",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Offline SKU catalog (YAML) to run the capability checks against",
)
def validate(spec_file: Path, sku_catalog: Path | None) -> None:
    """Validate a fleet spec file.

    Without --skus only the schema is checked. With a catalog, the VM size
    checks that run before any Azure call are applied too.
    """
    try:
        spec = load_fleet_spec(spec_file)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    if sku_catalog is not None:
        try:
            catalog = load_sku_catalog(sku_catalog)
            validate_spec(spec, catalog)
        except SpecLoadError as e:
            raise click.ClickException(str(e)) from e
        except ReconcileError as e:
            raise click.ClickException(f"Fleet '{spec.name}' is invalid: {e}") from e

    click.echo(f"Fleet '{spec.name}' is valid ({spec.vm_size} x {spec.replicas})")


@cli.command()
@click.argument("name")
@state_dir_option
def status(name: str, state_dir: Path) -> None:
    """Print the persisted status of a fleet."""
    store = open_store(state_dir)
    click.echo(yaml.safe_dump(load_status(store, name).to_dict(), sort_keys=False))


@cli.command("clear-checkpoint")
@click.argument("name")
@click.option("--service", default=SCALESETS_SERVICE_NAME, show_default=True)
@state_dir_option
def clear_checkpoint(name: str, service: str, state_dir: Path) -> None:
    """Drop a stuck operation checkpoint.

    The next pass fetches the scale set and starts over. Only use this when
    the operation is known to be gone on the Azure side.
    """
    store = open_store(state_dir)
    fleet_status = load_status(store, name)

    remaining = [c for c in fleet_status.checkpoints if c.service_name != service]
    if len(remaining) == len(fleet_status.checkpoints):
        click.echo(f"No {service} checkpoint recorded for fleet '{name}'")
        return

    fleet_status.checkpoints = remaining
    save_status(store, fleet_status)
    click.echo(f"Cleared {service} checkpoint for fleet '{name}'")


@cli.command()
@click.argument("name")
@state_dir_option
@click.confirmation_option(prompt="Delete the scale set and all its instances?")
def delete(name: str, state_dir: Path) -> None:
    """Request deletion of a fleet's scale set.

    The running operator deletes the scale set on its next pass for the
    fleet, then drops the fleet's tracking records.
    """
    store = open_store(state_dir)
    fleet_status = load_status(store, name)
    if fleet_status.deletion_requested:
        click.echo(f"Deletion already requested for fleet '{name}'")
        return

    fleet_status.deletion_requested = True
    save_status(store, fleet_status)
    click.echo(f"Deletion requested for fleet '{name}'")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
