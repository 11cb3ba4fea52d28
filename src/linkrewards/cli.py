"""
linkrewards/cli.py

Command line entry point.

Usage:
    linkrewards --config linkrewards.json run [--dry-run] [--once]
    linkrewards replay 42
    linkrewards export 42 --table private-links --format csv
    linkrewards state
"""

import json
import logging
import sys

import click
import trio

from .config import Settings
from .errors import CacheError, ConfigurationError, RewardsError, SchedulerHaltedError
from .export import FORMATS, TABLES, export_table
from .ingestor.fetcher import DirectoryFetcher
from .store.cache import CacheManager
from .worker.replay import replay_epoch
from .worker.scheduler import Scheduler
from .worker.state import SchedulerState

logger = logging.getLogger("linkrewards.cli")


def _load_settings(config_path) -> Settings:
    settings = Settings.from_file(config_path) if config_path else Settings()
    return Settings.from_env(settings).validate()


def _epoch_or_path(value: str):
    return int(value) if value.isdigit() else value


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="JSON settings file (LINKREWARDS_* environment variables override it)")
@click.option("--log-level", type=click.Choice(["debug", "info", "warning", "error", "critical"],
              case_sensitive=False), default=None, help="Override the configured log level")
@click.pass_context
def main(ctx, config_path, log_level):
    """Telemetry aggregation and reward input pipeline."""
    try:
        settings = _load_settings(config_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    if log_level:
        settings.log_level = log_level
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = settings


@main.command()
@click.option("--dry-run", is_flag=True, help="Compute everything but do not commit or publish")
@click.option("--once", is_flag=True, help="Run a single tick and exit")
@click.pass_obj
def run(settings: Settings, dry_run, once):
    """Run the scheduler loop."""
    if dry_run:
        settings.scheduler.dry_run = True
    try:
        scheduler = Scheduler(settings, DirectoryFetcher(settings.fetcher))
        state = trio.run(lambda: scheduler.run(once=once))
    except SchedulerHaltedError as e:
        click.echo(f"HALTED: {e}", err=True)
        sys.exit(2)
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps(state.to_dict(), indent=2))


@main.command()
@click.argument("epoch")
@click.pass_obj
def replay(settings: Settings, epoch):
    """Recompute EPOCH (number or snapshot path) from the cache and compare."""
    try:
        result = replay_epoch(_epoch_or_path(epoch), settings)
    except RewardsError as e:
        click.echo(f"Replay failed: {type(e).__name__}: {e}", err=True)
        sys.exit(1)

    click.echo(f"Epoch {result.epoch}: {'match' if result.matches else 'MISMATCH'}")
    for problem in result.mismatches:
        click.echo(f"  {problem}")
    if not result.matches:
        sys.exit(3)


@main.command()
@click.argument("epoch")
@click.option("--table", type=click.Choice(TABLES), default="link-stats", show_default=True)
@click.option("--format", "fmt", type=click.Choice(FORMATS), default="csv", show_default=True)
@click.option("--output", "-o", type=click.File("w"), default="-", help="Output file (default stdout)")
@click.pass_obj
def export(settings: Settings, epoch, table, fmt, output):
    """Export a table of a cached EPOCH."""
    cache = CacheManager(settings.cache_dir)
    try:
        snapshot = cache.load_snapshot(_epoch_or_path(epoch))
        output.write(export_table(snapshot, table, fmt))
    except (CacheError, ValueError) as e:
        raise click.ClickException(str(e))


@main.command()
@click.pass_obj
def state(settings: Settings):
    """Print the persisted scheduler state."""
    current = SchedulerState.load_or_default(settings.scheduler.state_file)
    click.echo(json.dumps(current.to_dict(), indent=2))


if __name__ == "__main__":
    main()
