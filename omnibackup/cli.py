"""
omnibackup CLI - Command-line interface.

Run a backup pass, run backups on a schedule, or check a definition file.
"""

import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from omnibackup import configure_logging
from omnibackup.backup.definitions import DefinitionError, load_definition
from omnibackup.backup.executor import WorkspaceError, execute_backup
from omnibackup.backup.registry import SOURCES, STRATEGIES, TARGETS, registered
from omnibackup.config import get_config

app = typer.Typer(
    name="omnibackup",
    help="omnibackup - scheduled backups of databases and files",
    no_args_is_help=True,
)
console = Console()


def _settings(env: Optional[str]):
    settings = get_config(env)
    configure_logging(settings)
    return settings


@app.command()
def run(
    definitions: Optional[Path] = typer.Option(
        None, "--definitions", "-d", help="Definition file (defaults to OMNIBACKUP_DEFINITIONS)"
    ),
    env: Optional[str] = typer.Option(None, "--env", "-e", help="Configuration name"),
):
    """Run one backup pass."""
    settings = _settings(env)
    path = str(definitions or settings.DEFINITIONS_FILE)

    os.makedirs(settings.TEMP_DIR, exist_ok=True)

    try:
        report = execute_backup(path, temp_dir=settings.TEMP_DIR, max_workers=settings.MAX_WORKERS)
    except (DefinitionError, WorkspaceError) as e:
        console.print(f"[red]Backup failed: {e}[/red]")
        raise typer.Exit(1)

    if report.stopped_early:
        console.print("[yellow]Nothing to do: no usable sources or targets.[/yellow]")
        return

    table = Table(title=f"Backup run ({report.phase.value})")
    table.add_column("Unit", style="cyan")
    table.add_column("Step", style="magenta")
    table.add_column("Result")

    for step, outcomes in (('load', report.loaded), ('zip', report.archived), ('save', report.delivered)):
        for outcome in outcomes:
            result = "[green]ok[/green]" if outcome.ok else f"[red]{outcome.error}[/red]"
            table.add_row(outcome.unit, step, result)

    console.print(table)
    console.print(f"Archives: {len(report.archives)}, failures: {len(report.failures)}")


@app.command()
def schedule(
    definitions: Optional[Path] = typer.Option(
        None, "--definitions", "-d", help="Definition file (defaults to OMNIBACKUP_DEFINITIONS)"
    ),
    cron: Optional[str] = typer.Option(None, "--cron", "-c", help="Crontab expression (defaults to SCHEDULE_CRON)"),
    env: Optional[str] = typer.Option(None, "--env", "-e", help="Configuration name"),
):
    """Run backups on a cron schedule until interrupted."""
    from omnibackup.scheduler import init_scheduler, run_scheduled_backup, start_scheduler, stop_scheduler

    settings = _settings(env)
    path = str(definitions or settings.DEFINITIONS_FILE)

    os.makedirs(settings.TEMP_DIR, exist_ok=True)

    try:
        init_scheduler(
            settings,
            cron=cron,
            job=lambda: run_scheduled_backup(path, temp_dir=settings.TEMP_DIR, max_workers=settings.MAX_WORKERS)
        )
    except ValueError as e:
        console.print(f"[red]Invalid cron expression: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]Scheduled backups[/green] ({cron or settings.SCHEDULE_CRON}), press Ctrl+C to stop")

    try:
        start_scheduler()
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        stop_scheduler()


@app.command()
def check(
    definitions: Optional[Path] = typer.Option(
        None, "--definitions", "-d", help="Definition file (defaults to OMNIBACKUP_DEFINITIONS)"
    ),
    env: Optional[str] = typer.Option(None, "--env", "-e", help="Configuration name"),
):
    """Validate a definition file and list the providers it uses."""
    settings = get_config(env)
    path = str(definitions or settings.DEFINITIONS_FILE)

    try:
        definition = load_definition(path)
    except DefinitionError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Definitions ({path})")
    table.add_column("Kind", style="magenta")
    table.add_column("Name", style="cyan")
    table.add_column("Provider")
    table.add_column("Strategy")

    problems = 0

    def provider_cell(kind, registry):
        nonlocal problems
        if (kind or '').strip().lower() in registry:
            return kind
        problems += 1
        return f"[red]{kind or 'missing'}[/red]"

    for source in definition.sources:
        table.add_row("source", source.name, provider_cell(source.provider, SOURCES), "")

    for target in definition.targets:
        if target.strategy is None:
            strategy = "[yellow]none (skipped)[/yellow]"
        else:
            strategy = provider_cell(target.strategy.provider, STRATEGIES)
            if target.strategy.provider.strip().lower() == 'days':
                strategy += f" ({target.strategy.revisions})"
        table.add_row("target", target.name, provider_cell(target.provider, TARGETS), strategy)

    console.print(table)

    kinds = registered()
    console.print(f"Sources: {', '.join(kinds['sources'])}")
    console.print(f"Targets: {', '.join(kinds['targets'])}")
    console.print(f"Strategies: {', '.join(kinds['strategies'])}")

    if problems:
        console.print(f"[red]{problems} unknown provider(s)[/red]")
        raise typer.Exit(1)


@app.command()
def version():
    """Show omnibackup version."""
    from omnibackup import __version__

    console.print(f"omnibackup v{__version__}")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
