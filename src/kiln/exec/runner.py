from __future__ import annotations

import asyncio
import logging
import os
import socket
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from pathlib import Path

from kiln.config.schema import ConfigSpec
from kiln.dag.build import TaskGraph
from kiln.exec.cancel import CancelToken
from kiln.exec.events import EventBus
from kiln.exec.process import current_user
from kiln.exec.scheduler import RunResult, run_graph
from kiln.report.render_md import render_markdown
from kiln.report.summarize import build_summary
from kiln.state.model import RunContext
from kiln.state.store import StateStore
from kiln.util.errors import StateError, WorkspaceError
from kiln.util.paths import default_home, write_atomic
from kiln.util.time import now_iso
from kiln.workspace.layout import SUMMARY_NAME, Workspace

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunOutcome:
    result: RunResult
    workspace: Workspace
    summary_path: Path | None


def resolve_home(config: ConfigSpec, override: Path | None = None) -> Path:
    """CLI override, then ``kiln.home`` (relative to the config), then the default."""
    if override is not None:
        return override.expanduser()
    if config.project.home:
        home = Path(config.project.home).expanduser()
        return home if home.is_absolute() else config.root / home
    return default_home()


def open_store(db_path: Path) -> StateStore | None:
    try:
        return StateStore(db_path)
    except StateError as exc:
        logger.warning("%s; running without history", exc)
        return None


def run_context(config: ConfigSpec, args: Sequence[str]) -> RunContext:
    return RunContext(
        config_path=str(config.path),
        cwd=os.getcwd(),
        user=current_user(),
        hostname=socket.gethostname(),
        args=list(args),
    )


def write_summary(result: RunResult, graph: TaskGraph, workspace: Workspace) -> Path:
    summary = build_summary(result, graph, workspace)
    path = workspace.run_dir / SUMMARY_NAME
    write_atomic(path, render_markdown(summary).encode("utf-8"))
    return path


async def execute(
    config: ConfigSpec,
    graph: TaskGraph,
    *,
    home: Path,
    jobs: int,
    store: StateStore | None = None,
    force: bool = False,
    args: Sequence[str] = (),
    events: EventBus | None = None,
    cancel: CancelToken | None = None,
) -> RunOutcome:
    """Run ``graph`` in a fresh run directory and record it in ``store``."""
    workspace = Workspace.create(config, home)
    context = run_context(config, args)
    started_at = now_iso()
    try:
        workspace.write_run_context(
            {
                "run_id": workspace.run_id,
                "project": config.project.name,
                "project_id": workspace.project_id,
                "started_at": started_at,
                "jobs": jobs,
                "force": force,
                **asdict(context),
                "tasks": list(graph.order),
            }
        )
    except OSError as exc:
        raise WorkspaceError(f"failed to write run context: {exc}") from exc

    if store is not None:
        try:
            store.begin_run(
                project_hash=workspace.project_id,
                project_name=config.project.name,
                run_id=workspace.run_id,
                run_dir=workspace.run_dir,
                context=context,
                started_at=started_at,
            )
        except StateError as exc:
            logger.warning("%s; running without history", exc)
            store = None

    loop = asyncio.get_running_loop()
    cancel = cancel or CancelToken()
    cancel.install(loop)
    try:
        result = await run_graph(
            graph,
            workspace,
            jobs=jobs,
            store=store,
            project_hash=workspace.project_id,
            force=force,
            cancel=cancel,
            events=events,
        )
    finally:
        cancel.uninstall(loop)

    if store is not None:
        try:
            store.finish_run(
                result.run_id,
                result.status,
                size_bytes=workspace.size_bytes(),
                ended_at=result.ended_at,
            )
        except StateError:
            logger.warning("failed to record run end for %s", result.run_id, exc_info=True)

    summary_path: Path | None
    try:
        summary_path = write_summary(result, graph, workspace)
    except OSError:
        logger.warning("failed to write run summary", exc_info=True)
        summary_path = None
    return RunOutcome(result=result, workspace=workspace, summary_path=summary_path)
