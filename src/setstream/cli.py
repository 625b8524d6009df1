"""Command-line interface for SetStream."""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import Settings, load_settings
from .errors import ConfigurationError, CriticalQualityFailure, PipelineStepError, StateCorruption
from .ingestion.state import load_state
from .logging_config import setup_logging
from .pipeline.orchestrator import PipelineOrchestrator
from .quality.gate import CheckOutcome, QualityReport, run_quality_checks
from .storage.warehouse import close_warehouse, connect_warehouse, get_current_ratings

app = typer.Typer(
    name="setstream",
    help="SetStream - FIVB volleyball ingestion and Elo pipeline",
    add_completion=False,
)
console = Console()

CONFIG_HELP = "Path to settings YAML (default: $SETSTREAM_CONFIG or config.yml)"

OUTCOME_STYLES = {
    CheckOutcome.PASS: "[green]pass[/green]",
    CheckOutcome.WARN: "[yellow]warn[/yellow]",
    CheckOutcome.FAIL: "[red]fail[/red]",
}


def _load(config: Optional[Path]) -> Settings:
    try:
        return load_settings(config)
    except FileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def run(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
    backfill: Optional[int] = typer.Option(
        None, "--backfill", min=0, help="Backfill window in days (0 = pipeline.backfill_days)"
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", "-l", help="Override logging.level"),
):
    """Run the pipeline end to end."""
    settings = _load(config)
    setup_logging(settings.logging, log_level)

    backfill_days = None
    if backfill is not None:
        backfill_days = backfill or settings.pipeline.backfill_days
        console.print(f"[bold green]Starting backfill run:[/bold green] {backfill_days} days")
    else:
        console.print(
            f"[bold green]Starting pipeline run:[/bold green] "
            f"{settings.pipeline.rolling_window_days} day window"
        )

    try:
        result = PipelineOrchestrator(settings).run(backfill_days=backfill_days)
    except PipelineStepError as e:
        console.print(f"[red]✗ Pipeline failed at step '{e.step}': {e.cause}[/red]")
        raise typer.Exit(1)

    table = Table(title="Pipeline Run", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in result.summary().items():
        table.add_row(key, str(value))
    console.print(table)

    if result.quality_report and result.quality_report.has_warnings():
        console.print(f"[yellow]⚠ {len(result.quality_report.warned)} quality warning(s)[/yellow]")
    if result.export_path:
        console.print(f"Exported: [cyan]{result.export_path}[/cyan]")

    console.print("\n[green]✓ Pipeline complete[/green]")


@app.command()
def state(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
):
    """Show the incremental extraction state."""
    settings = _load(config)
    state_path = settings.storage.state_path

    if not state_path.exists():
        console.print(f"[yellow]No state file yet at {state_path}[/yellow]")
        return

    try:
        current = load_state(state_path)
    except StateCorruption as e:
        console.print(f"[red]State file is corrupt: {e}[/red]")
        raise typer.Exit(1)

    panel = Panel(
        f"""[bold]Path:[/bold] {state_path}
[bold]Schema version:[/bold] {current.schema_version}
[bold]Created:[/bold] {current.created_at.isoformat()}
[bold]Last run:[/bold] {current.last_run.isoformat() if current.last_run else 'never'}

[bold]Fetched matches:[/bold] {len(current.fetched_match_nos)}
[bold]Fetched tournaments:[/bold] {len(current.fetched_tournament_nos)}
""",
        title="Pipeline State",
        expand=False,
    )
    console.print(panel)


@app.command()
def ratings(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
    top: int = typer.Option(20, "--top", "-n", min=1, help="Number of teams to show"),
):
    """Show current Elo ratings (latest rating per team)."""
    settings = _load(config)
    warehouse_path = settings.storage.warehouse_path

    if not warehouse_path.exists():
        console.print(f"[red]Warehouse not found: {warehouse_path}[/red]")
        raise typer.Exit(1)

    conn = connect_warehouse(warehouse_path, read_only=True)
    try:
        current = get_current_ratings(conn, limit=top)
    finally:
        close_warehouse(conn)

    if current.empty:
        console.print("[yellow]No ratings yet - run the pipeline first[/yellow]")
        return

    table = Table(title=f"Top {len(current)} Teams by Elo")
    table.add_column("#", justify="right")
    table.add_column("Team", style="cyan")
    table.add_column("Elo", justify="right", style="green")
    table.add_column("Last Match", style="magenta")
    table.add_column("Match No", justify="right")

    for rank, row in enumerate(current.itertuples(index=False), start=1):
        table.add_row(
            str(rank),
            str(row.TeamName),
            f"{row.CurrentElo:.1f}",
            str(row.LastMatchDate)[:10],
            str(row.LastMatchNo),
        )
    console.print(table)


@app.command()
def quality(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
):
    """Run the quality gate against the existing warehouse."""
    settings = _load(config)
    warehouse_path = settings.storage.warehouse_path

    if not warehouse_path.exists():
        console.print(f"[red]Warehouse not found: {warehouse_path}[/red]")
        raise typer.Exit(1)

    conn = connect_warehouse(warehouse_path, read_only=True)
    try:
        report = run_quality_checks(conn, settings)
    except CriticalQualityFailure as e:
        _print_report(e.report)
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)
    finally:
        close_warehouse(conn)

    _print_report(report)
    console.print(f"\n[green]✓ {report}[/green]")


def _print_report(report: Optional[QualityReport]) -> None:
    if report is None or not report.results:
        console.print("[yellow]No staging tables to check[/yellow]")
        return

    table = Table(title="Quality Checks")
    table.add_column("Check", style="cyan")
    table.add_column("Table", style="magenta")
    table.add_column("Outcome", justify="center")
    table.add_column("Failing", justify="right")
    table.add_column("Rows", justify="right")
    table.add_column("Message")

    for result in report.results:
        table.add_row(
            result.name,
            result.table,
            OUTCOME_STYLES[result.outcome],
            str(result.failing_rows),
            str(result.total_rows),
            result.message,
        )
    console.print(table)


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold]SetStream[/bold] version: [green]{__version__}[/green]")


if __name__ == "__main__":
    app()
