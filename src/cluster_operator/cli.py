"""AWS cluster operator CLI.

Usage:
    cluster-operator reconcile default/my-cluster   # One reconciliation
    cluster-operator status default/my-cluster      # Show stored status
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from .main import reconcile_once, setup_logging
from .models import split_key
from .store import StoreLoadError, YAMLObjectStore

DEFAULT_STORE_DIR = "/manifests"


@click.group()
@click.version_option(version="0.1.0", prog_name="cluster-operator")
def cli() -> None:
    """AWS cluster operator.

    Converges AWSCluster manifests onto AWS infrastructure.

    \b
    Configuration comes from the environment:
        AWS_REGION, STORE_DIR, API_SERVER_PORT, INSTANCE_WAIT_TIMEOUT,
        DNS_REQUEUE_SECONDS, ENABLE_EVENT_NOTIFICATIONS, DEFAULT_SSH_KEY_NAME
    """
    pass


@cli.command()
@click.argument("key")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def reconcile(key: str, verbose: bool) -> None:
    """Reconcile the AWSCluster KEY (namespace/name) once."""
    setup_logging(logging.DEBUG if verbose else logging.INFO)

    namespace, name = split_key(key)
    exit_code, result = reconcile_once(f"{namespace}/{name}")

    if result is None:
        sys.exit(exit_code)
    if result.error is not None:
        click.secho(f"error: {result.error}", fg="red", err=True)
    elif result.requeue_after is not None:
        click.echo(f"requeue after {result.requeue_after:g}s")
    else:
        click.secho("done", fg="green")
    sys.exit(exit_code)


@cli.command()
@click.argument("key")
@click.option(
    "--store-dir",
    envvar="STORE_DIR",
    default=DEFAULT_STORE_DIR,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Manifest directory",
)
def status(key: str, store_dir: Path) -> None:
    """Show the stored status of the AWSCluster KEY (namespace/name)."""
    namespace, name = split_key(key)

    try:
        cluster = YAMLObjectStore(store_dir).get(f"{namespace}/{name}")
    except StoreLoadError as e:
        click.secho(str(e), fg="red", err=True)
        sys.exit(1)

    if cluster is None:
        click.secho(f"AWSCluster {namespace}/{name} not found", fg="red", err=True)
        sys.exit(1)

    cluster_status = cluster.status
    click.echo(f"AWSCluster {cluster.key}")
    click.echo("=" * 40)
    click.echo(f"Ready:    {cluster_status.ready}")
    click.echo(f"Phase:    {cluster_status.phase.value}")

    endpoint = cluster.spec.control_plane_endpoint
    if endpoint.host:
        click.echo(f"Endpoint: {endpoint.host}:{endpoint.port}")

    if cluster_status.failure_domains:
        click.echo("\nFailure domains:")
        for zone in sorted(cluster_status.failure_domains):
            control_plane = cluster_status.failure_domains[zone].control_plane
            click.echo(f"  {zone}{' (control plane)' if control_plane else ''}")

    if cluster_status.conditions:
        click.echo("\nConditions:")
        for condition in cluster_status.conditions:
            line = f"  {condition.type}: {condition.status.value}"
            if condition.reason:
                line += f" ({condition.reason})"
            if condition.message:
                line += f" - {condition.message}"
            click.echo(line)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
