"""Provisioner CLI.

Usage:
    provisioner apply manifest.yaml              # Create or update resources
    provisioner power ZONE INSTANCE stopped      # running | stopped | reboot
    provisioner show instance ZONE ID            # Read observed state
    provisioner delete network ZONE ID           # instance | network | volume | bucket

Configuration comes from the environment (see Config.from_env).
Exit codes: 0 on success, 1 on any failed operation or configuration error.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import click

from .client import CloudClient
from .config import Config, ConfigurationError
from .diagnostics import OperationResult, Severity
from .main import setup_logging
from .models import VALID_DESIRED_STATES, ResourceRef
from .operator import Operator
from .spec_loader import SpecLoadError, load_manifest

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
OUTPUT_FORMATS = ("text", "json")
DELETABLE_KINDS = ("instance", "network", "volume", "bucket")
READABLE_KINDS = ("instance", "network", "volume")

_SEVERITY_COLORS = {Severity.INFO: None, Severity.WARNING: "yellow", Severity.ERROR: "red"}


def get_operator(ctx: click.Context) -> Operator:
    """Operator from the context, built from the environment on first use."""
    obj = ctx.ensure_object(dict)
    operator = obj.get("operator")
    if operator is not None:
        return operator

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    client = ctx.with_resource(CloudClient.from_config(config))
    operator = Operator(client, config)
    obj["operator"] = operator
    return operator


def echo_results(results: list[OperationResult], output: str) -> None:
    if output == "json":
        click.echo(json.dumps([r.to_dict() for r in results], indent=2, default=str))
        return

    for result in results:
        status = click.style("ok", fg="green") if result.success else click.style("failed", fg="red")
        click.echo(f"{result.kind} {result.operation}: {status}")
        for diagnostic in result.diagnostics:
            line = f"  [{diagnostic.severity.value}] {diagnostic.summary}"
            if diagnostic.detail:
                line += f": {diagnostic.detail}"
            click.secho(line, fg=_SEVERITY_COLORS[diagnostic.severity])


def finish(ctx: click.Context, results: list[OperationResult], output: str) -> None:
    echo_results(results, output)
    if any(not r.success for r in results):
        ctx.exit(1)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="provisioner")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Log level for JSON logs on stderr",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str) -> None:
    """Provision instances, networks and volumes on the control plane."""
    setup_logging(getattr(logging, log_level.upper()))
    ctx.ensure_object(dict)


@cli.command()
@click.argument("manifest", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--output", "-o", type=click.Choice(OUTPUT_FORMATS), default="text", show_default=True)
@click.pass_context
def apply(ctx: click.Context, manifest: Path, output: str) -> None:
    """Create or update every resource in MANIFEST."""
    try:
        loaded = load_manifest(manifest)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    if loaded.resource_count == 0:
        click.echo("Manifest contains no resources")
        return

    results = get_operator(ctx).apply_manifest(loaded)
    finish(ctx, results, output)


@cli.command()
@click.argument("zone_id")
@click.argument("instance_id")
@click.argument("state", type=click.Choice(VALID_DESIRED_STATES))
@click.option("--output", "-o", type=click.Choice(OUTPUT_FORMATS), default="text", show_default=True)
@click.pass_context
def power(ctx: click.Context, zone_id: str, instance_id: str, state: str, output: str) -> None:
    """Set the power STATE of an instance."""
    result = get_operator(ctx).set_power_state(ResourceRef(zone_id, instance_id), state)
    finish(ctx, [result], output)


@cli.command()
@click.argument("kind", type=click.Choice(READABLE_KINDS))
@click.argument("zone_id")
@click.argument("resource_id")
@click.pass_context
def show(ctx: click.Context, kind: str, zone_id: str, resource_id: str) -> None:
    """Print the observed state of a resource as JSON."""
    operator = get_operator(ctx)
    ref = ResourceRef(zone_id, resource_id)
    readers = {
        "instance": operator.read_instance,
        "network": operator.read_network,
        "volume": operator.read_volume,
    }
    finish(ctx, [readers[kind](ref)], "json")


@cli.command()
@click.argument("kind", type=click.Choice(DELETABLE_KINDS))
@click.argument("zone_id")
@click.argument("resource_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.option("--output", "-o", type=click.Choice(OUTPUT_FORMATS), default="text", show_default=True)
@click.pass_context
def delete(ctx: click.Context, kind: str, zone_id: str, resource_id: str, yes: bool, output: str) -> None:
    """Delete a resource."""
    if not yes:
        click.confirm(f"Delete {kind} {resource_id} in zone {zone_id}?", abort=True)

    operator = get_operator(ctx)
    ref = ResourceRef(zone_id, resource_id)
    deleters = {
        "instance": operator.delete_instance,
        "network": operator.delete_network,
        "volume": operator.delete_volume,
        "bucket": operator.delete_bucket,
    }
    finish(ctx, [deleters[kind](ref)], output)
