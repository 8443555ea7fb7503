"""CLI entry point for the onionlens tool."""

import logging
import sqlite3
import sys

import click

from onionlens.api import SUMMARY_PATH, handle_request
from onionlens.config import ConfigError, OnionlensConfig, load_config
from onionlens.output import render, render_prune_result, render_update_run
from onionlens.persistence import DocumentStore
from onionlens.sources import get_source, registered_sources
from onionlens.updater import prune_store, run_update

logger = logging.getLogger(__name__)

FORMATS = ("table", "json")

_config_option = click.option(
    "--config",
    "-c",
    "config_path",
    default=None,
    type=click.Path(exists=False),
    help="Path to YAML config file (default: ~/.onionlens/config.yaml).",
)

_format_option = click.option(
    "--format",
    "-f",
    "output_format",
    default="table",
    type=click.Choice(FORMATS, case_sensitive=False),
    show_default=True,
    help="Output format.",
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """Aggregate and query anonymity-network relay and bridge status."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )


@main.command()
@_config_option
@_format_option
@click.option(
    "--source",
    "-s",
    "source_name",
    default="jsondir",
    type=click.Choice(registered_sources(), case_sensitive=False),
    show_default=True,
    help="Where to read new snapshot documents from.",
)
def update(config_path: str | None, output_format: str, source_name: str) -> None:
    """Merge new snapshots and refresh summaries and weight histories."""
    cfg = _load_config_or_exit(config_path)
    source = get_source(source_name.lower(), cfg)

    try:
        store = DocumentStore.open(cfg.db_path)
    except (sqlite3.Error, OSError) as exc:
        click.echo(f"Error: cannot open database {cfg.db_path}: {exc}", err=True)
        sys.exit(1)

    try:
        update_run = run_update(cfg, store, source)
    except (sqlite3.Error, OSError) as exc:
        click.echo(f"Error: update failed: {exc}", err=True)
        sys.exit(1)
    finally:
        store.close()

    render_update_run(update_run, output_format.lower())


@main.command()
@_config_option
@_format_option
@click.option(
    "--param",
    "-p",
    "raw_params",
    multiple=True,
    metavar="KEY=VALUE",
    help="Query parameter, e.g. -p search=moria -p order=-consensus_weight. "
    "Repeat a key to match any of its values.",
)
def summary(config_path: str | None, output_format: str, raw_params: tuple[str, ...]) -> None:
    """Query the current relay and bridge summary."""
    cfg = _load_config_or_exit(config_path)

    params: dict[str, list[str]] = {}
    for raw in raw_params:
        key, sep, value = raw.partition("=")
        if not sep:
            click.echo(f"Error: expected KEY=VALUE, got {raw!r}", err=True)
            sys.exit(1)
        params.setdefault(key, []).append(value)

    try:
        store = DocumentStore.open(cfg.db_path)
    except (sqlite3.Error, OSError) as exc:
        click.echo(f"Error: cannot open database {cfg.db_path}: {exc}", err=True)
        sys.exit(1)

    try:
        response = handle_request(SUMMARY_PATH, params, store)
    finally:
        store.close()

    if response.status != 200:
        click.echo(f"Error: {response.body.get('error')}", err=True)
        sys.exit(1)

    render(response.body, output_format.lower())


@main.command()
@_config_option
@_format_option
@click.option(
    "--days",
    "-d",
    default=30,
    type=click.IntRange(min=7),
    show_default=True,
    help="Delete nodes not seen for this many days.",
)
def prune(config_path: str | None, output_format: str, days: int) -> None:
    """Delete long-gone nodes and their weight histories."""
    cfg = _load_config_or_exit(config_path)

    try:
        store = DocumentStore.open(cfg.db_path)
    except (sqlite3.Error, OSError) as exc:
        click.echo(f"Error: cannot open database {cfg.db_path}: {exc}", err=True)
        sys.exit(1)

    try:
        removed = prune_store(store, days)
    except sqlite3.Error as exc:
        click.echo(f"Error: prune failed: {exc}", err=True)
        sys.exit(1)
    finally:
        store.close()

    render_prune_result(removed, output_format.lower())


def _load_config_or_exit(config_path: str | None) -> OnionlensConfig:
    try:
        cfg = load_config(config_path)
    except (ConfigError, FileNotFoundError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    logger.debug("Config loaded: %s", cfg)
    return cfg
