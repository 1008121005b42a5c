"""Load balancer stack CLI (lbdeploy).

Usage:
    lbdeploy validate stack.yaml     # Load and validate a stack file
    lbdeploy apply stack.yaml        # Run one deploy pass for a stack file
    lbdeploy run                     # Run the control loop over STACKS_DIR
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections import Counter
from pathlib import Path

import click

from .config import Config, ConfigurationError
from .context import ReconcileContext
from .errors import RequeueNeededAfter
from .main import build_deployer, main, setup_logging
from .models import Stack
from .stack_loader import StackLoadError, load_stack

# Exit code of a pass that completed but asked to be retried later
EXIT_REQUEUE = 3


def load_config(**overrides: str | None) -> Config:
    """Load configuration from the environment; set options take precedence."""
    try:
        return Config.from_env(**{k: v for k, v in overrides.items() if v})
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def load_stack_or_fail(stack_file: Path) -> Stack:
    try:
        return load_stack(stack_file)
    except StackLoadError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version="0.1.0", prog_name="lbdeploy")
def cli() -> None:
    """Load balancer stack CLI (lbdeploy).

    Converges ELBv2 load balancers, target groups, listeners, listener rules
    and TargetGroupBindings to the stacks described in YAML files.

    \b
    Quick Start:
        lbdeploy validate stack.yaml
        lbdeploy apply stack.yaml --cluster-name demo --vpc-id vpc-0123abcd
    """
    pass


@cli.command()
@click.argument("stack_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(stack_file: Path) -> None:
    """Load and validate STACK_FILE without calling any API."""
    stack = load_stack_or_fail(stack_file)
    counts = Counter(type(r).__name__ for r in stack.resources())

    click.echo(f"Stack {stack.stack_id}: {len(stack)} resources")
    for kind in sorted(counts):
        click.echo(f"  {kind}: {counts[kind]}")


@cli.command()
@click.argument("stack_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--cluster-name", help="Cluster name (default: $CLUSTER_NAME)")
@click.option("--vpc-id", help="VPC ID (default: $VPC_ID)")
@click.option("--region", help="AWS region (default: $AWS_REGION)")
@click.option(
    "--no-cluster",
    is_flag=True,
    help="Do not connect to the cluster; stacks with TargetGroupBindings fail",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def apply(
    stack_file: Path,
    cluster_name: str | None,
    vpc_id: str | None,
    region: str | None,
    no_cluster: bool,
    verbose: bool,
) -> None:
    """Run a single deploy pass for STACK_FILE."""
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    config = load_config(cluster_name=cluster_name, vpc_id=vpc_id, region=region)
    stack = load_stack_or_fail(stack_file)
    deployer = build_deployer(config, with_cluster_api=not no_cluster)

    ctx = ReconcileContext(timeout_seconds=config.pass_timeout_seconds)
    try:
        deployer.deploy(stack, ctx)
    except RequeueNeededAfter as e:
        click.echo(f"Stack {stack.stack_id} not converged yet: {e.reason}", err=True)
        click.echo(f"Re-run in {e.delay_seconds:.0f}s", err=True)
        sys.exit(EXIT_REQUEUE)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Stack {stack.stack_id} deployed")


@cli.command()
def run() -> None:
    """Run the control loop over every stack file in $STACKS_DIR."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
