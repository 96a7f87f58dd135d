"""QA Playbook CLI - typer application entry point."""

from __future__ import annotations

import atexit
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from qaplaybook.observability import close_file_logging, configure_logging, get_logger

if TYPE_CHECKING:
    from qaplaybook.pipeline.config import PlaybookConfig

# Load environment variables (QA_MODE, QA_SEED, ...) from .env file
load_dotenv()

app = typer.Typer(
    name="qa-playbook",
    help="QA Playbook: run layered verification stages behind a single quality gate.",
    no_args_is_help=True,
)
console = Console()

# Exit code for configuration problems; 0/1 are reserved for the quality gate
CONFIG_ERROR_EXIT_CODE = 2

# Global state for logging flags (set by callback, used by commands)
_verbose: int = 0
_log_enabled: bool = False

ProjectOption = Annotated[
    Path,
    typer.Option(
        "--project",
        "-p",
        help="Project directory containing playbook.yaml (default: current directory).",
        envvar="QA_PROJECT_DIR",
    ),
]


@app.callback()
def main(
    verbose: Annotated[
        int,
        typer.Option(
            "-v",
            "--verbose",
            count=True,
            help="Increase verbosity: -v for INFO, -vv for DEBUG.",
        ),
    ] = 0,
    log: Annotated[
        bool,
        typer.Option(
            "--log",
            help="Enable file logging to {project}/logs/debug.jsonl.",
        ),
    ] = False,
) -> None:
    """QA Playbook: run layered verification stages behind a single quality gate."""
    global _verbose, _log_enabled
    _verbose = verbose
    _log_enabled = log

    # Console logging only; file logging is configured once the project is known
    configure_logging(verbosity=verbose)


def _configure_project_logging(project_path: Path) -> None:
    """Configure file logging if --log flag was set."""
    if _log_enabled:
        configure_logging(verbosity=_verbose, log_to_file=True, project_path=project_path)
        atexit.register(close_file_logging)


def _load_config(project_path: Path) -> PlaybookConfig:
    """Load the project's playbook or exit with a configuration error."""
    from qaplaybook.pipeline import PlaybookConfigError, load_or_default_config

    if not project_path.is_dir():
        console.print(f"[red]Error:[/red] Project directory not found: {project_path}")
        raise typer.Exit(CONFIG_ERROR_EXIT_CODE)
    try:
        return load_or_default_config(project_path)
    except PlaybookConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(CONFIG_ERROR_EXIT_CODE) from e


@app.command()
def version() -> None:
    """Show version information."""
    from qaplaybook import __version__

    console.print(f"QA Playbook v{__version__}")


@app.command()
def init(
    project: ProjectOption = Path(),
    force: Annotated[
        bool,
        typer.Option("--force", help="Overwrite an existing playbook.yaml."),
    ] = False,
) -> None:
    """Write the default playbook.yaml into the project directory."""
    from qaplaybook.pipeline.config import CONFIG_FILENAME, write_default_config

    target = project / CONFIG_FILENAME
    if target.exists() and not force:
        console.print(f"[yellow]{target} already exists.[/yellow] Use --force to overwrite.")
        raise typer.Exit(1)

    path = write_default_config(project)
    console.print(f"[green]✓[/green] Created playbook at [cyan]{path}[/cyan]")


@app.command()
def run(
    project: ProjectOption = Path(),
    mode: Annotated[
        str | None,
        typer.Option("--mode", "-m", help="Execution mode: pr or nightly (default: QA_MODE)."),
    ] = None,
    seed: Annotated[
        int | None,
        typer.Option("--seed", help="Deterministic seed passed to stages (default: QA_SEED)."),
    ] = None,
    strict: Annotated[
        bool | None,
        typer.Option("--strict/--no-strict", help="Treat warnings as quality-gate issues."),
    ] = None,
) -> None:
    """Run services and every stage, then apply the quality gate.

    Exits with 0 when the gate passes and 1 when it reports issues.

    Examples:
        qa-playbook run
        qa-playbook run --mode nightly --seed 7
        qa-playbook -v --log run --project ./reservations
    """
    from qaplaybook.pipeline import PipelineOrchestrator
    from qaplaybook.pipeline.report import render_summary

    config = _load_config(project)
    _configure_project_logging(project)
    log = get_logger(__name__)

    try:
        orchestrator = PipelineOrchestrator(
            config,
            mode=mode.lower() if mode else None,
            seed=seed,
            strict=strict,
        )
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(CONFIG_ERROR_EXIT_CODE) from e

    context = orchestrator.context
    console.print()
    console.print(
        f"[bold]Running playbook[/bold] [cyan]{config.name}[/cyan] "
        f"(mode {context.mode.upper()}, seed {context.seed})"
    )
    console.print(f"[dim]Stages: {' → '.join(stage.name for stage in config.stages)}[/dim]")
    console.print()

    report = orchestrator.run()
    log.debug("pipeline_history", states=context.history)

    render_summary(report, console)
    console.print(f"[dim]Report: {config.reports_path}[/dim]")
    raise typer.Exit(report.exit_code)


@app.command()
def stages(
    project: ProjectOption = Path(),
    mode: Annotated[
        str,
        typer.Option("--mode", "-m", help="Show commands for this execution mode."),
    ] = "pr",
) -> None:
    """List configured services and stages in execution order."""
    config = _load_config(project)

    services_table = Table(title=f"Services: {config.name}")
    services_table.add_column("Service", style="cyan", no_wrap=True)
    services_table.add_column("Address")
    services_table.add_column("Required", style="bold")
    services_table.add_column("On degraded", style="dim")
    for spec in config.services:
        services_table.add_row(
            spec.name,
            spec.base_url,
            "[green]yes[/green]" if spec.mandatory else "[dim]no[/dim]",
            spec.on_degraded,
        )

    stages_table = Table(title=f"Stages ({mode.upper()} mode)")
    stages_table.add_column("#", justify="right", style="dim")
    stages_table.add_column("Stage", style="cyan", no_wrap=True)
    stages_table.add_column("Policy", style="bold", no_wrap=True)
    stages_table.add_column("Metric", no_wrap=True)
    stages_table.add_column("Command", style="dim", overflow="fold")
    for index, stage in enumerate(config.stages, start=1):
        policy = stage.failure_policy.value
        if not stage.mandatory:
            policy += " (optional)"
        stages_table.add_row(
            str(index),
            stage.name,
            policy,
            stage.extractor.kind,
            " ".join(stage.command_for(mode.lower())),
        )

    console.print()
    console.print(services_table)
    console.print()
    console.print(stages_table)
    console.print()


@app.command()
def report(project: ProjectOption = Path()) -> None:
    """Show the last persisted report and exit with its exit code."""
    from pydantic import ValidationError

    from qaplaybook.pipeline.report import REPORT_FILENAME, load_report, render_summary

    config = _load_config(project)
    report_path = config.reports_path / REPORT_FILENAME
    if not report_path.exists():
        console.print(f"[red]Error:[/red] No report found at {report_path}. Run 'qa-playbook run'.")
        raise typer.Exit(CONFIG_ERROR_EXIT_CODE)

    try:
        execution_report = load_report(report_path)
    except ValidationError as e:
        console.print(f"[red]Error:[/red] Invalid report at {report_path}: {e}")
        raise typer.Exit(CONFIG_ERROR_EXIT_CODE) from e

    console.print()
    render_summary(execution_report, console)
    raise typer.Exit(execution_report.exit_code)


@app.command()
def doctor(project: ProjectOption = Path()) -> None:
    """Check that stage tools are installed and service ports are free."""
    from qaplaybook.pipeline.services import port_in_use

    config = _load_config(project)
    console.print("[bold]QA Playbook Doctor[/bold]")
    console.print()

    all_ok = True

    console.print("[bold]Services[/bold]")
    for spec in config.services:
        executable = spec.command[0]
        if shutil.which(executable) is None:
            console.print(f"  [red]✗[/red] {spec.name}: '{executable}' not found on PATH")
            all_ok = False
        elif port_in_use(spec.host, spec.port):
            console.print(f"  [red]✗[/red] {spec.name}: port {spec.port} already in use")
            all_ok = False
        else:
            console.print(f"  [green]✓[/green] {spec.name}: {executable}, port {spec.port} free")
    console.print()

    console.print("[bold]Stages[/bold]")
    for stage in config.stages:
        executable = stage.command[0]
        if shutil.which(executable) is None:
            console.print(f"  [red]✗[/red] {stage.name}: '{executable}' not found on PATH")
            all_ok = False
        else:
            console.print(f"  [green]✓[/green] {stage.name}: {executable}")

    console.print()
    if all_ok:
        console.print("[green]All checks passed![/green]")
    else:
        console.print("[yellow]Some checks failed.[/yellow]")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
