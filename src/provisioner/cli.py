"""Cluster provisioner CLI.

Usage:
    provisioner validate nebari-config.yaml
    provisioner check-upgrade 1.33 1.34
    provisioner deploy-storage nebari-config.yaml
    provisioner destroy nebari-config.yaml --dry-run
    provisioner destroy nebari-config.yaml --yes

Exit codes: 0 success, 1 operation failed, 2 invalid input or configuration.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from .config import ConfigurationError, EngineConfig
from .deletion import DeletionError, DeletionReport
from .discovery import DiscoveryError
from .loader import DocumentLoadError, load_cluster_document
from .main import cluster_name_of, run_deploy_storage, run_destroy, setup_logging
from .models import ClusterDocument
from .reconciler import ReconcileError, StorageOperationError
from .retry import OperationCancelledError
from .state import DeletionPlan
from .validator import ConfigValidationError, validate_cluster
from .version import VersionFormatError, VersionUpgradeError, validate_upgrade

EXIT_FAILED = 1
EXIT_INVALID = 2


def _engine_config() -> EngineConfig:
    try:
        config = EngineConfig.from_env()
    except ConfigurationError as e:
        click.secho(str(e), fg="red", err=True)
        sys.exit(EXIT_INVALID)
    setup_logging(config)
    return config


def _load_valid_document(path: Path) -> ClusterDocument:
    try:
        document = load_cluster_document(path)
        validate_cluster(document)
    except (DocumentLoadError, ConfigValidationError) as e:
        click.secho(f"✗ {e}", fg="red", err=True)
        sys.exit(EXIT_INVALID)
    return document


@click.group()
@click.version_option(version="0.1.0", prog_name="provisioner")
def cli() -> None:
    """Cluster provisioner (provisioner).

    Discovers, reconciles and tears down the AWS network and shared file
    storage of a cluster described by a nebari-config.yaml document.
    """
    pass


@cli.command()
@click.argument("config_file", type=click.Path(path_type=Path))
def validate(config_file: Path) -> None:
    """Validate a cluster document without calling AWS."""
    _load_valid_document(config_file)
    click.secho(f"✓ {config_file} is valid", fg="green")


@cli.command("check-upgrade")
@click.argument("current")
@click.argument("desired")
def check_upgrade(current: str, desired: str) -> None:
    """Check that CURRENT -> DESIRED is a legal Kubernetes upgrade."""
    try:
        validate_upgrade(current, desired)
    except (VersionFormatError, VersionUpgradeError) as e:
        click.secho(f"✗ {e}", fg="red", err=True)
        sys.exit(EXIT_INVALID)
    click.secho(f"✓ {current} -> {desired} is allowed", fg="green")


@cli.command("deploy-storage")
@click.argument("config_file", type=click.Path(path_type=Path))
def deploy_storage(config_file: Path) -> None:
    """Create or update the cluster's shared EFS file system."""
    config = _engine_config()
    document = _load_valid_document(config_file)

    try:
        result = asyncio.run(run_deploy_storage(document, config))
    except StorageOperationError as e:
        click.secho(f"✗ {e}", fg="red", err=True)
        click.echo("  Re-run deploy-storage once the cause is resolved.", err=True)
        sys.exit(EXIT_FAILED)
    except ReconcileError as e:
        click.secho(f"✗ {e}", fg="red", err=True)
        sys.exit(EXIT_INVALID)
    except (DiscoveryError, RuntimeError) as e:
        click.secho(f"✗ {e}", fg="red", err=True)
        sys.exit(EXIT_FAILED)

    click.secho(f"✓ File storage: {result.action.value}", fg="green")
    if result.state is not None:
        click.echo(f"  File system: {result.state.file_system_id}")
        click.echo(f"  Mount targets created: {result.mount_targets_created}")


@cli.command()
@click.argument("config_file", type=click.Path(path_type=Path))
@click.option("--dry-run", is_flag=True, help="Show what would be deleted")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
def destroy(config_file: Path, dry_run: bool, yes: bool) -> None:
    """Delete every AWS resource of the cluster."""
    config = _engine_config()
    document = _load_valid_document(config_file)
    cluster_name = cluster_name_of(document)

    if not dry_run and not yes:
        click.confirm(f"Destroy all resources of cluster '{cluster_name}'?", abort=True)

    try:
        outcome = asyncio.run(run_destroy(document, config, dry_run=dry_run))
    except OperationCancelledError as e:
        click.secho(f"✗ Cancelled: {e}", fg="yellow", err=True)
        sys.exit(EXIT_FAILED)
    except DeletionError as e:
        click.secho(f"✗ {e}", fg="red", err=True)
        click.echo("  Re-run destroy to continue from where it stopped.", err=True)
        sys.exit(EXIT_FAILED)

    if isinstance(outcome, DeletionPlan):
        _print_plan(outcome)
    else:
        _print_report(outcome)


def _print_plan(plan: DeletionPlan) -> None:
    click.echo(f"Dry run for cluster '{plan.cluster_name}' (VPC: {plan.vpc_id or 'none'})")
    for stage in plan.stages:
        click.echo(f"  {stage.name}: {len(stage.resource_ids)}")
        for resource_id in stage.resource_ids:
            click.echo(f"    - {resource_id}")
    click.echo(f"{plan.total_resources} resources would be deleted")


def _print_report(report: DeletionReport) -> None:
    click.secho(f"✓ Cluster '{report.cluster_name}' destroyed", fg="green")
    for stage, ids in report.deleted.items():
        click.echo(f"  {stage}: {len(ids)}")
    if report.elastic_ips_skipped:
        click.echo(f"  Elastic IPs still associated: {report.elastic_ips_skipped}")
    if report.nat_gateways_pending:
        click.echo(
            f"  NAT gateways still deleting: {report.nat_gateways_pending} "
            "(re-run destroy to release their elastic IPs)"
        )
    for warning in report.warnings:
        click.secho(f"  ! {warning}", fg="yellow")
