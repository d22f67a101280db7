"""Provisioner CLI.

Usage:
    provisioner validate deployment.yaml
    provisioner graph deployment.yaml [--json]
    provisioner apply deployment.yaml [--location L] [--seed N] [--record run.json]
    provisioner destroy deployment.yaml --record run.json

Configuration comes from PROVISIONER_* environment variables (see
config.py); options given here override them for a single run. Logs go to
stderr as JSON so that stdout carries only command output.

Apply with `--record` pointing at an existing record is a re-run: the
identifier of the recorded run is reused so names stay stable and resources
that already exist converge without being recreated.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from .config import EngineConfig
from .engine import Deployment
from .executor import RunResult
from .identifier import Identifier
from .main import (
    BUILD_ERRORS,
    EXIT_BUILD_ERROR,
    build_registry,
    exit_code,
    read_record,
    recorded_identifier,
    run_with_signals,
    setup_logging,
    write_record,
)
from .outputs import OutputCollectionError
from .security import EnvironmentSecretStore
from .spec_loader import SpecLoadError, load_declaration

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class BuildError(click.ClickException):
    """Declaration, graph or configuration rejected before any apply."""

    exit_code = EXIT_BUILD_ERROR


def _deployment(
    path: Path,
    *,
    location: str | None = None,
    seed: int | None = None,
    identifier: Identifier | None = None,
) -> Deployment:
    """Load, wire and prepare a deployment, mapping build errors to exit code 2."""
    try:
        config = EngineConfig.from_env()
        declaration, digest = load_declaration(path)
        deployment = Deployment(
            declaration,
            build_registry(config),
            config=config,
            location=location,
            seed=seed,
            identifier=identifier,
            secrets=EnvironmentSecretStore(),
            declaration_hash=digest,
        )
        deployment.prepare()
    except BUILD_ERRORS as e:
        raise BuildError(str(e)) from e
    return deployment


def _previous_run(record: Path | None) -> RunResult | None:
    if record is None or not record.exists():
        return None
    try:
        return read_record(record)
    except BUILD_ERRORS as e:
        raise BuildError(str(e)) from e


def _recorded_identifier(previous: RunResult, record: Path) -> Identifier:
    try:
        return recorded_identifier(previous, record)
    except SpecLoadError as e:
        raise BuildError(str(e)) from e


def _summarize(result: RunResult) -> None:
    colour = "green" if result.success else "red"
    click.secho(f"Run {result.operation}: {result.status.value}", fg=colour, err=True)
    for record in result.records:
        line = f"  {record.resource:<24} {record.outcome.value}"
        if record.error:
            line += f" ({record.error})"
        click.echo(line, err=True)


@click.group()
@click.version_option(version="0.1.0", prog_name="provisioner")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Log level for JSON logs on stderr",
)
def cli(log_level: str) -> None:
    """Dependency-aware, idempotent provisioning of cloud resources.

    \b
    Quick Start:
        provisioner validate deployment.yaml
        provisioner apply deployment.yaml --record run.json
        provisioner destroy deployment.yaml --record run.json
    """
    setup_logging(getattr(logging, log_level.upper()), stream=sys.stderr)


@cli.command()
@click.argument("file", type=click.Path(path_type=Path, dir_okay=False))
def validate(file: Path) -> None:
    """Validate a declaration without touching anything remote."""
    deployment = _deployment(file)
    click.secho(
        f"✓ {len(deployment.graph)} resources in {len(deployment.batches)} batches",
        fg="green",
    )


@cli.command()
@click.argument("file", type=click.Path(path_type=Path, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Print the schedule as JSON")
def graph(file: Path, as_json: bool) -> None:
    """Print the apply schedule (batches in order)."""
    deployment = _deployment(file)
    if as_json:
        click.echo(json.dumps(deployment.describe(), indent=2))
        return
    for batch in deployment.batches:
        click.echo(f"batch {batch.index}: {', '.join(batch.names)}")


@cli.command()
@click.argument("file", type=click.Path(path_type=Path, dir_okay=False))
@click.option("--location", "-l", help="Target region (overrides declaration and env)")
@click.option("--seed", type=int, help="Seed for a reproducible identifier")
@click.option(
    "--record",
    type=click.Path(path_type=Path, dir_okay=False),
    help="Run record to write; an existing record makes this a re-run",
)
@click.pass_context
def apply(
    ctx: click.Context,
    file: Path,
    location: str | None,
    seed: int | None,
    record: Path | None,
) -> None:
    """Apply a declaration and print its outputs as JSON."""
    previous = _previous_run(record)
    identifier = None
    if previous is not None and previous.identifier:
        identifier = _recorded_identifier(previous, record)
        location = location or previous.location
        if seed is not None:
            click.secho("--seed ignored: reusing identifier from run record", fg="yellow", err=True)

    deployment = _deployment(file, location=location, seed=seed, identifier=identifier)

    try:
        result = asyncio.run(run_with_signals(deployment, deployment.apply))
    except OutputCollectionError as e:
        # The record holds the identifier the next apply must reuse
        if record is not None and e.result is not None:
            write_record(e.result, record)
        raise click.ClickException(str(e)) from e

    if record is not None:
        write_record(result, record)
    _summarize(result)
    if result.success:
        click.echo(json.dumps(result.outputs, indent=2, default=str))
    ctx.exit(exit_code(result))


@cli.command()
@click.argument("file", type=click.Path(path_type=Path, dir_okay=False))
@click.option(
    "--record",
    required=True,
    type=click.Path(path_type=Path, dir_okay=False),
    help="Run record written by apply",
)
@click.pass_context
def destroy(ctx: click.Context, file: Path, record: Path) -> None:
    """Delete what a recorded apply created, dependents first.

    The record is left in place; destroying again is a no-op for resources
    that are already gone.
    """
    previous = _previous_run(record)
    if previous is None:
        raise BuildError(f"Run record not found: {record}")
    deployment = _deployment(
        file,
        location=previous.location,
        identifier=_recorded_identifier(previous, record),
    )
    result = asyncio.run(run_with_signals(deployment, lambda: deployment.destroy(previous)))
    _summarize(result)
    ctx.exit(exit_code(result))
