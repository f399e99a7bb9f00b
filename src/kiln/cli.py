from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from kiln.config.cli_args import parse_task_args
from kiln.config.loader import find_config, load_config
from kiln.config.schema import ConfigSpec
from kiln.dag.build import TaskGraph, build_graph
from kiln.exec.events import EventBus
from kiln.exec.runner import execute, open_store, resolve_home
from kiln.report.console import ConsoleReporter
from kiln.state.model import RunStatus, StatsFilter
from kiln.state.store import StateStore
from kiln.util.errors import ConfigError, StateError, WorkspaceError
from kiln.util.ids import project_hash
from kiln.util.log import configure_logging, verbosity_to_level
from kiln.util.paths import default_db_path

app = typer.Typer(help="Dependency-aware task runner with content-addressed caching")
console = Console()

EXIT_TASK_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_CANCELED = 130

_TASK_ARGS_SETTINGS = {
    "allow_extra_args": True,
    "ignore_unknown_options": True,
    "allow_interspersed_args": False,
}

ConfigOption = Annotated[Path | None, typer.Option("--file", "-f", help="Path to kiln.yml")]
HomeOption = Annotated[Path | None, typer.Option("--home", help="Workspace home directory")]
VerboseOption = Annotated[int, typer.Option("--verbose", "-v", count=True)]
QuietOption = Annotated[bool, typer.Option("--quiet", "-q")]


def _exit_code_for_status(status: RunStatus) -> int:
    if status == "success":
        return 0
    if status == "canceled":
        return EXIT_CANCELED
    return EXIT_TASK_FAILED


def _setup_logging(verbose: int, quiet: bool) -> None:
    configure_logging(verbosity_to_level(verbose, quiet))


def _load_config_or_exit(config_path: Path | None) -> ConfigSpec:
    try:
        path = config_path if config_path is not None else find_config(Path.cwd())
        return load_config(path)
    except ConfigError as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        raise typer.Exit(EXIT_CONFIG_ERROR) from exc


def _build_graph_or_exit(config: ConfigSpec, tokens: list[str]) -> TaskGraph:
    try:
        requests = parse_task_args(config, tokens)
        return build_graph(config, requests)
    except ConfigError as exc:
        console.print(f"[red]Graph error:[/red] {exc}")
        raise typer.Exit(EXIT_CONFIG_ERROR) from exc


def _open_store_or_exit(home: Path) -> StateStore:
    try:
        return StateStore(default_db_path(home))
    except StateError as exc:
        console.print(f"[red]Failed to open state database:[/red] {exc}")
        raise typer.Exit(EXIT_CONFIG_ERROR) from exc


@app.command(context_settings=_TASK_ARGS_SETTINGS)
def run(
    ctx: typer.Context,
    config_path: ConfigOption = None,
    jobs: Annotated[int | None, typer.Option("--jobs", "-j", min=1)] = None,
    force: Annotated[bool, typer.Option("--force", help="Ignore cached results")] = False,
    home: HomeOption = None,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
) -> None:
    """Run tasks: kiln run [TASK [--param value]...]..."""
    _setup_logging(verbose, quiet)
    config = _load_config_or_exit(config_path)
    tokens = list(ctx.args)
    graph = _build_graph_or_exit(config, tokens)

    resolved_home = resolve_home(config, home)
    store = open_store(default_db_path(resolved_home))
    events = EventBus()
    events.subscribe(ConsoleReporter(console, show_output=not quiet))
    try:
        outcome = asyncio.run(
            execute(
                config,
                graph,
                home=resolved_home,
                jobs=jobs or config.project.jobs,
                store=store,
                force=force,
                args=tokens,
                events=events,
            )
        )
    except WorkspaceError as exc:
        console.print(f"[red]Failed to initialize run:[/red] {exc}")
        raise typer.Exit(EXIT_CONFIG_ERROR) from exc
    finally:
        if store is not None:
            store.close()

    result = outcome.result
    counts = {
        status: len(result.by_status(status)) for status in ("completed", "failed", "skipped")
    }
    console.print(f"run_id: [bold]{result.run_id}[/bold]")
    console.print(
        f"status: [bold]{result.status}[/bold] "
        f"(completed={counts['completed']} failed={counts['failed']} skipped={counts['skipped']})"
    )
    if outcome.summary_path is not None:
        console.print(f"summary: {outcome.summary_path}")
    raise typer.Exit(_exit_code_for_status(result.status))


@app.command(context_settings=_TASK_ARGS_SETTINGS)
def graph(
    ctx: typer.Context,
    config_path: ConfigOption = None,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
) -> None:
    """Print the resolved execution order without running anything."""
    _setup_logging(verbose, quiet)
    config = _load_config_or_exit(config_path)
    task_graph = _build_graph_or_exit(config, list(ctx.args))

    table = Table(title="Execution Order")
    table.add_column("#", justify="right")
    table.add_column("task")
    table.add_column("depends on")
    table.add_column("hash")
    table.add_column("interactive")
    for idx, name in enumerate(task_graph.topological_order(), start=1):
        task = task_graph.tasks[name]
        table.add_row(
            str(idx),
            name,
            ", ".join(task.deps) or "-",
            task.hash,
            "yes" if task.interactive else "",
        )
    console.print(table)


@app.command()
def history(
    config_path: ConfigOption = None,
    home: HomeOption = None,
    limit: Annotated[int, typer.Option("--limit", "-n", min=1)] = 20,
    all_projects: Annotated[bool, typer.Option("--all-projects")] = False,
    verbose: VerboseOption = 0,
) -> None:
    """List recent runs."""
    _setup_logging(verbose, False)
    config = _load_config_or_exit(config_path)
    scope = None if all_projects else project_hash(str(config.path))
    with _open_store_or_exit(resolve_home(config, home)) as store:
        try:
            runs = store.recent_runs(limit, project_hash=scope)
        except StateError as exc:
            console.print(f"[red]Failed to read history:[/red] {exc}")
            raise typer.Exit(EXIT_CONFIG_ERROR) from exc

    table = Table(title="Run History")
    table.add_column("run_id")
    if all_projects:
        table.add_column("project")
    table.add_column("status")
    table.add_column("started")
    table.add_column("duration_sec", justify="right")
    table.add_column("size_bytes", justify="right")
    for record in runs:
        row = [record.run_id]
        if all_projects:
            row.append(record.project_name)
        row.extend(
            [
                record.status,
                record.started_at,
                "-" if record.duration_sec is None else str(record.duration_sec),
                "-" if record.size_bytes is None else str(record.size_bytes),
            ]
        )
        table.add_row(*row)
    console.print(table)


@app.command()
def stats(
    config_path: ConfigOption = None,
    home: HomeOption = None,
    task: Annotated[str | None, typer.Option("--task")] = None,
    since_days: Annotated[int | None, typer.Option("--since-days", min=1)] = None,
    verbose: VerboseOption = 0,
) -> None:
    """Show per-task aggregates for this project."""
    _setup_logging(verbose, False)
    config = _load_config_or_exit(config_path)
    since = None
    if since_days is not None:
        since = (datetime.now().astimezone() - timedelta(days=since_days)).isoformat(
            timespec="seconds"
        )
    stats_filter = StatsFilter(project_hash=project_hash(str(config.path)), task=task, since=since)
    with _open_store_or_exit(resolve_home(config, home)) as store:
        try:
            rows = store.query_stats(stats_filter)
        except StateError as exc:
            console.print(f"[red]Failed to read stats:[/red] {exc}")
            raise typer.Exit(EXIT_CONFIG_ERROR) from exc

    table = Table(title=f"Task Stats: {config.project.name}")
    table.add_column("task")
    table.add_column("runs", justify="right")
    table.add_column("completed", justify="right")
    table.add_column("failed", justify="right")
    table.add_column("skipped", justify="right")
    table.add_column("success_rate", justify="right")
    table.add_column("avg_sec", justify="right")
    table.add_column("min_sec", justify="right")
    table.add_column("max_sec", justify="right")
    table.add_column("last_run")
    for row in rows:
        table.add_row(
            row.task,
            str(row.runs),
            str(row.completed),
            str(row.failed),
            str(row.skipped),
            f"{row.success_rate:.1%}",
            "-" if row.avg_duration_sec is None else str(row.avg_duration_sec),
            "-" if row.min_duration_sec is None else str(row.min_duration_sec),
            "-" if row.max_duration_sec is None else str(row.max_duration_sec),
            row.last_run_at or "-",
        )
    console.print(table)


@app.command()
def clean(
    keep_days: Annotated[int, typer.Option("--keep-days", min=0)],
    config_path: ConfigOption = None,
    home: HomeOption = None,
    keep_last: Annotated[int, typer.Option("--keep-last", min=0)] = 0,
    all_projects: Annotated[bool, typer.Option("--all-projects")] = False,
    dry_run: Annotated[bool, typer.Option("--dry-run")] = False,
    verbose: VerboseOption = 0,
) -> None:
    """Delete runs older than --keep-days together with their run directories."""
    _setup_logging(verbose, False)
    config = _load_config_or_exit(config_path)
    scope = None if all_projects else project_hash(str(config.path))
    before = datetime.now().astimezone() - timedelta(days=keep_days)
    with _open_store_or_exit(resolve_home(config, home)) as store:
        try:
            removed = store.cleanup(before, keep_last=keep_last, project_hash=scope, dry_run=dry_run)
        except StateError as exc:
            console.print(f"[red]Cleanup failed:[/red] {exc}")
            raise typer.Exit(EXIT_CONFIG_ERROR) from exc

    verb = "would remove" if dry_run else "removed"
    for record in removed:
        console.print(f"{verb}: {record.run_id} ({record.run_dir})")
    console.print(f"{verb} [bold]{len(removed)}[/bold] run(s)")


if __name__ == "__main__":
    app()
