"""CLI interface for costalloc.

Provides commands for:
- Creating the database schema
- Collecting a run from Prometheus
- Listing stored runs for a time range
"""

import json
from dataclasses import asdict
from datetime import datetime

import click

from costalloc import __version__
from costalloc.collector import collect_run
from costalloc.config import get_settings
from costalloc.db.store import RunStore
from costalloc.errors import CostAllocationError
from costalloc.logging import configure_logging
from costalloc.models import Run, to_utc
from costalloc.prometheus.client import PrometheusClient


def _parse_time(ctx: click.Context, param: click.Parameter, value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return to_utc(datetime.fromisoformat(value))
    except ValueError as exc:
        raise click.BadParameter(f"not an ISO 8601 timestamp: {value}") from exc


def _open_store() -> RunStore:
    settings = get_settings()
    return RunStore.from_url(settings.database_url, echo=settings.sql_echo)


def _prometheus_client() -> PrometheusClient:
    settings = get_settings()
    return PrometheusClient(settings.prometheus_url, timeout=settings.query_timeout)


def _run_to_json(run: Run) -> dict:
    data = asdict(run)
    data["measured_time_utc"] = run.measured_time_utc.isoformat()
    return data


@click.group()
@click.version_option(version=__version__, prog_name="costalloc")
def cli() -> None:
    """costalloc - resource usage snapshots from Prometheus.

    Samples requested cpu, memory and replicas per component and stores them
    as timestamped runs.
    """
    settings = get_settings()
    configure_logging(json_format=settings.log_json, level=settings.log_level)


@cli.command("init-db")
def init_db() -> None:
    """Create the database tables."""
    try:
        with _open_store() as store:
            store.init_schema()
    except CostAllocationError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(click.style("✓ Database ready", fg="green"))


@cli.command()
@click.option("--at", "at", default=None, callback=_parse_time, help="Measurement time (ISO 8601, default: now)")
@click.option("--strict/--no-strict", default=None, help="Fail on samples without a replicas sample")
@click.option("--atomic/--no-atomic", default=None, help="Insert all resources in one transaction")
def collect(at: datetime | None, strict: bool | None, atomic: bool | None) -> None:
    """Collect one run from Prometheus and store it."""
    settings = get_settings()
    if strict is None:
        strict = settings.strict_aggregation
    if atomic is None:
        atomic = settings.atomic_resource_inserts

    try:
        with _prometheus_client() as prometheus, _open_store() as store:
            run = collect_run(prometheus, store, measured_time=at, strict=strict, atomic=atomic)
    except CostAllocationError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(
        f"Saved run {run.id} at {run.measured_time_utc.isoformat()} "
        f"with {len(run.resources)} resources"
    )


@cli.command()
@click.option("--from", "start", required=True, callback=_parse_time, help="Start of range (ISO 8601, inclusive)")
@click.option("--to", "end", required=True, callback=_parse_time, help="End of range (ISO 8601, inclusive)")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def runs(start: datetime, end: datetime, as_json: bool) -> None:
    """List stored runs measured between two timestamps."""
    try:
        with _open_store() as store:
            found = store.get_runs_between(start, end)
    except CostAllocationError as exc:
        raise click.ClickException(str(exc)) from exc

    found.sort(key=lambda run: (run.measured_time_utc, run.id))

    if as_json:
        click.echo(json.dumps([_run_to_json(run) for run in found], indent=2))
        return

    if not found:
        click.echo("No runs found.")
        return

    click.echo(f"Runs ({len(found)}):\n")
    for run in found:
        click.echo(
            f"  {click.style(str(run.id), fg='green', bold=True)} "
            f"{run.measured_time_utc.isoformat()}  "
            f"cpu={run.cluster_cpu_millicores}m  memory={run.cluster_memory_mega_bytes}MB  "
            f"resources={len(run.resources)}"
        )


@cli.command()
def info() -> None:
    """Show configuration."""
    settings = get_settings()

    click.echo("costalloc configuration:\n")
    click.echo(f"  Prometheus:    {settings.prometheus_url}")
    click.echo(f"  Query timeout: {settings.query_timeout:g}s")
    click.echo(f"  Database:      {settings.database_url}")
    click.echo(f"  Strict merge:  {settings.strict_aggregation}")
    click.echo(f"  Atomic insert: {settings.atomic_resource_inserts}")
    click.echo(f"  Log Level:     {settings.log_level}")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
