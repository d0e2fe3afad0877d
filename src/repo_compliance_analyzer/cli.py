"""
Command-line interface for the Repository Compliance Analyzer.

Provides commands for registering snapshots, running analyses, and
inspecting findings and remediation tasks.
"""

import asyncio
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from .core.audit import DatabaseAuditLog
from .core.config import Settings, create_default_config, get_settings
from .core.errors import AppError
from .core.findings import FindingsService
from .core.models import AnalysisRun, FindingFilters, FindingStatus, PhaseStatus
from .core.orchestrator import AnalysisOrchestrator
from .core.snapshots import SnapshotService
from .storage.database import Database
from .utils.secure_logging import setup_secure_logging

app = typer.Typer(
    name="repo-compliance",
    help="Repository Compliance Analyzer - map code signals to compliance controls",
    add_completion=True,
    no_args_is_help=True,
)

console = Console()

state = {"verbose": False}

STATUS_STYLES = {
    FindingStatus.PASS.value: "green",
    FindingStatus.PARTIAL.value: "yellow",
    FindingStatus.FAIL.value: "red",
    FindingStatus.NOT_OBSERVED.value: "dim",
    FindingStatus.NEEDS_HUMAN.value: "magenta",
}

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to config file"),
]
DbOption = Annotated[
    Optional[Path],
    typer.Option("--db", "-d", help="Path to database file (overrides config)"),
]
OrgOption = Annotated[
    str,
    typer.Option("--org", "-o", envvar="RCA_ORGANIZATION_ID", help="Organization ID"),
]
UserOption = Annotated[
    str,
    typer.Option("--user", "-u", envvar="RCA_USER_ID", help="Acting user ID"),
]


class Services:
    """Database and services wired for one CLI invocation."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.db = Database(settings.database.path)
        self.audit = DatabaseAuditLog(self.db)
        self.snapshots = SnapshotService(self.db, self.audit)
        self.findings = FindingsService(self.db, self.audit)
        self.orchestrator = AnalysisOrchestrator(self.db, self.findings, self.audit, settings=settings)


def _load(config: Optional[Path], db_path: Optional[Path]) -> Services:
    settings = get_settings(str(config) if config else None).model_copy(deep=True)
    if db_path:
        settings.database.path = str(db_path)

    setup_secure_logging(
        "DEBUG" if state["verbose"] else settings.logging.level,
        settings.logging.format,
        settings.logging.file,
    )
    return Services(settings)


def _fail(error: AppError) -> None:
    console.print(f"[red]Error: {error.message} ({error.code})[/red]")
    raise typer.Exit(1)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        from . import __version__
        console.print(f"Repository Compliance Analyzer v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", "-v", callback=version_callback, help="Show version"),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", help="Enable debug logging")] = False,
) -> None:
    """Repository Compliance Analyzer."""
    state["verbose"] = verbose


@app.command()
def register(
    path: Annotated[Path, typer.Argument(help="Directory holding the extracted repository")],
    org: OrgOption,
    user: UserOption = "cli",
    name: Annotated[Optional[str], typer.Option("--name", "-n", help="Snapshot display name")] = None,
    config: ConfigOption = None,
    db_path: DbOption = None,
) -> None:
    """
    Register an extracted repository as an indexed snapshot.

    Example:
        repo-compliance register ./checkout --org acme
    """
    services = _load(config, db_path)
    try:
        snapshot = services.snapshots.register_snapshot(path, org, user, name)
    except AppError as e:
        _fail(e)

    console.print(f"[green]✓ Registered snapshot {snapshot.name}[/green]")
    console.print(f"  ID: [bold]{snapshot.id}[/bold]")


@app.command()
def analyze(
    snapshot_id: Annotated[str, typer.Argument(help="Snapshot ID")],
    org: OrgOption,
    user: UserOption = "cli",
    framework: Annotated[
        Optional[list[str]],
        typer.Option("--framework", "-f", help="Framework to assess (repeatable)"),
    ] = None,
    depth: Annotated[
        Optional[str],
        typer.Option("--depth", help="structure_only, security_relevant or full"),
    ] = None,
    config: ConfigOption = None,
    db_path: DbOption = None,
) -> None:
    """
    Analyze a snapshot and wait for the result.

    Example:
        repo-compliance analyze 3f2a... --org acme -f SOC2 -f ISO27001
    """
    services = _load(config, db_path)
    defaults = services.settings.analysis
    frameworks = framework or defaults.default_frameworks
    depth = depth or defaults.default_depth

    console.print(Panel.fit(
        f"[bold]Snapshot:[/bold] {snapshot_id}\n"
        f"[bold]Frameworks:[/bold] {', '.join(frameworks)}\n"
        f"[bold]Depth:[/bold] {depth}",
        title="Analysis Configuration",
    ))

    try:
        run = asyncio.run(_analyze(services.orchestrator, snapshot_id, frameworks, depth, org, user))
    except AppError as e:
        _fail(e)

    _print_run(run)
    if run.phase_status != PhaseStatus.COMPLETED:
        raise typer.Exit(1)


async def _analyze(
    orchestrator: AnalysisOrchestrator,
    snapshot_id: str,
    frameworks: list[str],
    depth: str,
    org: str,
    user: str,
) -> AnalysisRun:
    run_id = await orchestrator.start_analysis(snapshot_id, frameworks, depth, org, user)
    waiter = asyncio.ensure_future(orchestrator.wait_for_run(run_id))

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Starting analysis...", total=100)
        while not waiter.done():
            run = orchestrator.db.get_run(run_id)
            if run is not None:
                progress.update(task, completed=run.progress, description=run.phase or "")
            await asyncio.wait({waiter}, timeout=0.2)

        run = waiter.result()
        if run.phase_status == PhaseStatus.COMPLETED:
            progress.update(task, completed=100, description="Done")

    return run


def _print_run(run: AnalysisRun) -> None:
    color = "green" if run.phase_status == PhaseStatus.COMPLETED else "red"
    if run.is_active:
        color = "yellow"

    lines = [
        f"[bold]Run:[/bold] {run.id}",
        f"[bold]Snapshot:[/bold] {run.snapshot_id}",
        f"[bold]Frameworks:[/bold] {', '.join(run.frameworks)}",
        f"[bold]Phase:[/bold] {run.phase} ([{color}]{run.phase_status.value}[/{color}])",
        f"[bold]Progress:[/bold] {run.progress}%",
        f"[bold]Files analyzed:[/bold] {run.metrics.files_analyzed}",
        f"[bold]Findings:[/bold] {run.metrics.findings_generated}",
    ]
    for entry in run.error_log:
        lines.append(f"[red]✗ {entry.phase or 'analysis'}: {entry.error}[/red]")

    console.print(Panel.fit("\n".join(lines), title="Analysis Run", border_style=color))


@app.command()
def status(
    run_id: Annotated[str, typer.Argument(help="Analysis run ID")],
    org: OrgOption,
    config: ConfigOption = None,
    db_path: DbOption = None,
) -> None:
    """Show the state of an analysis run."""
    services = _load(config, db_path)
    try:
        run = services.orchestrator.get_analysis_status(run_id, org)
    except AppError as e:
        _fail(e)
    _print_run(run)


@app.command("findings")
def findings_cmd(
    snapshot_id: Annotated[str, typer.Argument(help="Snapshot ID")],
    org: OrgOption,
    framework: Annotated[Optional[str], typer.Option("--framework", "-f", help="Filter by framework")] = None,
    finding_status: Annotated[
        Optional[str],
        typer.Option("--status", "-s", help="Filter by status (pass, partial, fail, not_observed, needs_human)"),
    ] = None,
    confidence: Annotated[
        Optional[str],
        typer.Option("--confidence", help="Filter by confidence (low, medium, high)"),
    ] = None,
    page: Annotated[int, typer.Option("--page", "-p", help="Page number")] = 1,
    limit: Annotated[int, typer.Option("--limit", "-l", help="Findings per page (max 100)")] = 50,
    config: ConfigOption = None,
    db_path: DbOption = None,
) -> None:
    """
    List a snapshot's findings.

    Example:
        repo-compliance findings 3f2a... --org acme --status fail
    """
    services = _load(config, db_path)
    filters = FindingFilters(
        framework=framework,
        status=finding_status,
        confidence_level=confidence,
        page=page,
        limit=limit,
    )
    try:
        result = services.findings.get_findings(snapshot_id, org, filters)
    except AppError as e:
        _fail(e)

    table = Table(
        title=f"Findings (page {result.page}/{max(result.total_pages, 1)}, {result.total} total)",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Framework")
    table.add_column("Control")
    table.add_column("Status")
    table.add_column("Confidence")
    table.add_column("Summary")
    table.add_column("ID", style="dim")

    for finding in result.findings:
        style = STATUS_STYLES.get(finding.status.value, "")
        label = finding.status.value + (" *" if finding.human_override else "")
        table.add_row(
            finding.framework,
            finding.control_id,
            f"[{style}]{label}[/{style}]",
            finding.confidence_level.value,
            finding.summary,
            finding.id[:8],
        )

    console.print(table)


@app.command()
def summary(
    snapshot_id: Annotated[str, typer.Argument(help="Snapshot ID")],
    org: OrgOption,
    config: ConfigOption = None,
    db_path: DbOption = None,
) -> None:
    """Show finding counts for a snapshot."""
    services = _load(config, db_path)
    try:
        result = services.findings.get_findings_summary(snapshot_id, org)
    except AppError as e:
        _fail(e)

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("", style="bold")
    table.add_column("", justify="right")

    table.add_row("Total", str(result.total))
    table.add_row("[red]Critical[/red]", f"[red]{result.critical_count}[/red]")
    for name, count in result.by_status.items():
        style = STATUS_STYLES.get(name, "")
        table.add_row(f"[{style}]{name}[/{style}]", str(count))
    for name, count in sorted(result.by_framework.items()):
        table.add_row(name, str(count))

    console.print(Panel(table, title="[bold]Findings Summary[/bold]", border_style="blue"))


@app.command()
def tasks(
    snapshot_id: Annotated[str, typer.Argument(help="Snapshot ID")],
    org: OrgOption,
    config: ConfigOption = None,
    db_path: DbOption = None,
) -> None:
    """List remediation tasks for a snapshot."""
    services = _load(config, db_path)
    try:
        items = services.findings.list_tasks(snapshot_id, org)
    except AppError as e:
        _fail(e)

    table = Table(title="Remediation Tasks", show_header=True, header_style="bold magenta")
    table.add_column("Priority")
    table.add_column("Category")
    table.add_column("Status")
    table.add_column("Title")
    table.add_column("ID", style="dim")

    for task in items:
        table.add_row(
            task.priority.value,
            task.category.value,
            task.status.value,
            task.title,
            task.id[:8],
        )

    console.print(table)


@app.command()
def reconcile(
    max_age: Annotated[
        Optional[float],
        typer.Option("--max-age", help="Seconds without a heartbeat before a run is stale"),
    ] = None,
    config: ConfigOption = None,
    db_path: DbOption = None,
) -> None:
    """Mark in-flight runs without a recent heartbeat as failed."""
    services = _load(config, db_path)
    reconciled = services.orchestrator.reconcile_stale_runs(max_age)
    if not reconciled:
        console.print("[green]✓ No stale analysis runs[/green]")
        return

    for run_id in reconciled:
        console.print(f"[yellow]⚠ Marked run {run_id} as failed[/yellow]")


@app.command("init-config")
def init_config(
    path: Annotated[Path, typer.Option("--path", "-p")] = Path("config.yaml"),
) -> None:
    """
    Create a default configuration file.

    Example:
        repo-compliance init-config --path config.yaml
    """
    if path.exists():
        if not typer.confirm(f"{path} already exists. Overwrite?"):
            raise typer.Exit(0)

    create_default_config(path)
    console.print(f"[green]✓ Created default config at {path}[/green]")


@app.command()
def serve(
    host: Annotated[Optional[str], typer.Option("--host", help="Bind host")] = None,
    port: Annotated[Optional[int], typer.Option("--port", help="Bind port")] = None,
    reload: Annotated[bool, typer.Option("--reload", help="Reload on code changes")] = False,
) -> None:
    """Start the HTTP API server."""
    from .api import main as run_server

    run_server(host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
