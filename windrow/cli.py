# -*- coding: utf-8 -*-
"""Windrow Command Line Interface - windowed grouped aggregation over files."""

import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import OUTPUT_FORMATS, get_config
from .errors import WindrowError
from .metrics import WindrowMetrics
from .plan import load_plan
from .row import rows_from_table
from .runner import DirectRunner
from .sources import encode_jsonl, read_input

logger = logging.getLogger(__name__)

# Console for rich output
console = Console()

# Main CLI app
app = typer.Typer(
    name="windrow",
    help="Windowed grouped aggregation over Arrow data",
    add_completion=False,
)

config_app = typer.Typer(help="Configuration management")
app.add_typer(config_app, name="config")


def _setup_logging(level: Optional[str] = None):
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, (level or config.operational.log_level).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


# ============================================================================
# MAIN COMMANDS
# ============================================================================

@app.callback()
def main_callback(
    log_level: Optional[str] = typer.Option(None, "-l", "--loglevel", help="Logging level"),
):
    """Windrow CLI - windowed grouped aggregation."""
    _setup_logging(log_level)


@app.command()
def version():
    """Show Windrow version."""
    from . import __version__
    console.print(f"[bold blue]Windrow[/bold blue] version [bold green]{__version__}[/bold green]")


@app.command()
def explain(
    plan_path: Path = typer.Argument(..., help="Plan document (JSON)"),
):
    """Print the operator's plan line."""
    try:
        node = load_plan(plan_path).build()
        console.print(node.explain(), markup=False, highlight=False, soft_wrap=True)
    except WindrowError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}", soft_wrap=True)
        raise typer.Exit(code=1)
    except Exception as e:
        logger.exception("Unexpected error explaining plan")
        console.print(f"[bold red]Unexpected error:[/bold red] {escape(str(e))}", soft_wrap=True)
        raise typer.Exit(code=1)


@app.command()
def run(
    plan_path: Path = typer.Argument(..., help="Plan document (JSON)"),
    input_path: Path = typer.Argument(..., help="Input data (.jsonl, .csv or .parquet)"),
    output_format: Optional[str] = typer.Option(None, "-f", "--format", help="Output format: table or jsonl"),
    partitions: Optional[int] = typer.Option(None, "-p", "--partitions", help="Runner partitions"),
    show_metrics: bool = typer.Option(False, "--metrics", help="Print Prometheus metrics after the run"),
):
    """Run a plan over an input file with the direct runner."""
    config = get_config()
    output_format = output_format or config.operational.output_format
    if output_format not in OUTPUT_FORMATS:
        console.print(f"[bold red]Error:[/bold red] unknown output format '{output_format}'")
        raise typer.Exit(code=1)

    runner_config = config.runner
    if partitions is not None:
        runner_config = replace(runner_config, partitions=partitions)
    metrics = WindrowMetrics() if (config.operational.enable_metrics or show_metrics) else None

    try:
        config.validate()
        runner = DirectRunner(runner_config, metrics=metrics)
        plan = load_plan(plan_path)
        table = read_input(input_path, plan.input_schema())
        node = plan.build(rows_from_table(table))
        rows = node.execute(runner)
    except (WindrowError, ValueError, OSError) as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}", soft_wrap=True)
        raise typer.Exit(code=1)
    except Exception as e:
        logger.exception("Unexpected error running plan")
        console.print(f"[bold red]Unexpected error:[/bold red] {escape(str(e))}", soft_wrap=True)
        raise typer.Exit(code=1)

    logger.info(f"Plan '{plan.name}' produced {len(rows)} rows")

    if output_format == "jsonl":
        typer.echo(encode_jsonl(rows).decode("utf-8"), nl=False)
    else:
        result_table = Table(title=plan.name)
        for name in node.schema.names:
            result_table.add_column(name)
        for row in rows:
            result_table.add_row(*("" if v is None else str(v) for v in row))
        console.print(result_table)

    if show_metrics and metrics is not None:
        console.print(metrics.render(), markup=False, highlight=False, soft_wrap=True)


# ============================================================================
# CONFIG COMMANDS
# ============================================================================

@config_app.command("show")
def config_show():
    """Show the effective configuration."""
    config = get_config()
    table = Table(title="Windrow Configuration")
    table.add_column("Section", style="cyan")
    table.add_column("Key", style="magenta")
    table.add_column("Value", style="green")
    for section, values in config.to_dict().items():
        for key, value in values.items():
            table.add_row(section, key, str(value))
    console.print(table)


@config_app.command("save")
def config_save(
    path: Path = typer.Argument(Path.home() / ".windrow" / "config.json", help="Destination file"),
):
    """Write the effective configuration to a JSON file."""
    get_config().save_to_file(path)
    console.print(f"[bold green]✓[/bold green] Configuration saved to [bold]{path}[/bold]")


def main():
    """Main CLI entry point - equivalent to 'windrow' command."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted by user[/dim]")
        sys.exit(1)


if __name__ == "__main__":
    main()
