# Copyright © 2025 Sierra Labs LLC
# SPDX-License-Identifier: AGPL-3.0-only
# License-Filename: LICENSE

"""
Main CLI entry point for the SensorSink ingestion server.
"""

import json
import os
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from ..config import ConfigError, IngestConfig, WIRE_FORMATS, LOG_LEVELS
from ..processing.database.schema import TABLE_NAME, create_schema, verify_schema
from ..processing.database.sqlite_client import SQLiteClient, StoreInitError
from ..processing import server as ingest_server

# Create console for rich output
console = Console()


@click.group(invoke_without_command=True)
@click.option(
    "--version",
    is_flag=True,
    help="Show version and exit"
)
@click.option(
    "--config", "config_path",
    envvar="SENSORSINK_CONFIG",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Configuration file (default: ~/.sensorsink/config.yaml)"
)
@click.option(
    "--debug",
    envvar="SENSORSINK_DEBUG",
    is_flag=True,
    help="Enable debug logging"
)
@click.pass_context
def cli(ctx, version: bool, config_path: Optional[Path], debug: bool):
    """
    SensorSink - TCP ingestion of streamed sensor records into SQLite.

    Examples:
        sensorsink serve --port 9000 --db received_data.db
        sensorsink init-db --db received_data.db
        sensorsink config --json
    """
    if version:
        click.echo(f"SensorSink version {__version__}")
        ctx.exit()

    try:
        config = IngestConfig.load(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e))

    if debug:
        config.debug = True
        config.log_level = "DEBUG"

    # Store in context
    ctx.obj = config

    # If no subcommand, show help
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option("--host", help="Listen address")
@click.option("--port", type=int, help="Listen port")
@click.option("--db", "db_path", help="SQLite database file")
@click.option("--idle-timeout", type=float, help="Seconds before an idle connection is closed")
@click.option("--format", "wire_format", type=click.Choice(WIRE_FORMATS), help="Wire format of incoming lines")
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False), help="Logging level")
@click.pass_obj
def serve(
    config: IngestConfig,
    host: Optional[str],
    port: Optional[int],
    db_path: Optional[str],
    idle_timeout: Optional[float],
    wire_format: Optional[str],
    log_level: Optional[str],
):
    """
    Run the ingestion server until interrupted.

    Exits 0 on a clean shutdown, 1 if startup fails, 2 if the database
    becomes unavailable while running.
    """
    overrides = {
        "host": host,
        "port": port,
        "db_path": db_path,
        "idle_timeout": idle_timeout,
        "wire_format": wire_format,
        "log_level": log_level.upper() if log_level else None,
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)

    sys.exit(ingest_server.main(config))


@cli.command("init-db")
@click.option("--db", "db_path", help="SQLite database file")
@click.pass_obj
def init_db(config: IngestConfig, db_path: Optional[str]):
    """Create the sensor_data table if it does not exist."""
    path = db_path or config.db_path
    client = SQLiteClient(path, timeout=config.db_timeout)
    existed = client.exists()

    try:
        client.initialize_database()
        create_schema(client)
        verify_schema(client)
    except StoreInitError as e:
        console.print(f"[red]✗[/red] {e}", style="bold red")
        sys.exit(ingest_server.EXIT_STARTUP_FAILURE)

    state = "verified" if existed else "created"
    console.print(f"[green]✓[/green] Database {state}: {client.db_path} (table {TABLE_NAME})")


@cli.command("config")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
@click.pass_obj
def show_config(config: IngestConfig, as_json: bool):
    """Show the effective configuration."""
    problems = config.validate()

    if as_json:
        click.echo(json.dumps(config.to_dict(), indent=2))
    else:
        _list_configuration(config)

    if problems:
        for problem in problems:
            console.print(f"[red]Configuration error:[/red] {problem}")
        sys.exit(ingest_server.EXIT_STARTUP_FAILURE)


def _list_configuration(config: IngestConfig):
    """Display configuration in a formatted table."""
    table = Table(title="Current Configuration", show_header=True, header_style="bold magenta")
    table.add_column("Category", style="cyan", no_wrap=True)
    table.add_column("Setting", style="blue")
    table.add_column("Value", style="green")

    # Listener settings
    table.add_row("Server", "Address", f"{config.host}:{config.port}")
    table.add_row("Server", "Backlog", str(config.backlog))
    table.add_row("Server", "Drain Timeout", f"{config.drain_timeout:g}s")
    table.add_row("", "", "")  # Blank row for spacing

    # Store settings
    table.add_row("Store", "Database", str(config.db_path))
    table.add_row("Store", "Busy Timeout", f"{config.db_timeout:g}s")
    table.add_row("Store", "Max Consecutive Failures", str(config.max_consecutive_failures))
    table.add_row("", "", "")

    # Connection settings
    table.add_row("Connection", "Wire Format", config.wire_format)
    table.add_row("Connection", "Idle Timeout", f"{config.idle_timeout:g}s")
    table.add_row("Connection", "Poll Interval", f"{config.poll_interval:g}s")
    table.add_row("Connection", "Max Line Size", f"{config.max_line_bytes} bytes")
    table.add_row("", "", "")

    # Logging settings
    table.add_row("Logging", "Level", config.log_level)
    table.add_row("Logging", "Config File", str(config.config_path or "(none)"))

    console.print(table)


def main():
    """Main entry point for the CLI."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        if os.environ.get("SENSORSINK_DEBUG"):
            console.print_exception()
        else:
            console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
