"""Kahn-style concurrent execution of a task graph.

One coordinator loop owns the in-degree counters and the ready queue and
mutates them only between completions. Normal tasks share ``jobs`` slots;
interactive tasks have a pool of their own with a single slot, and while
one is queued or running no further normal task is dispatched.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path

from kiln.dag.build import TaskGraph
from kiln.dag.task import Task
from kiln.exec.action import finalize_output, prepare_inputs, write_builtins
from kiln.exec.cancel import CancelToken
from kiln.exec.events import EventBus, TaskEvent
from kiln.exec.process import TaskResult, run_task
from kiln.exec.pty import run_interactive
from kiln.state.model import RunStatus, SkipReason, TaskRecord, TaskStatus
from kiln.state.store import StateStore
from kiln.util.errors import StateError, WorkspaceError
from kiln.util.paths import append_text_best_effort
from kiln.util.time import now_iso
from kiln.workspace.fingerprint import inputs_digest, outputs_present
from kiln.workspace.layout import Workspace

logger = logging.getLogger(__name__)

RUNNER_EXCEPTION_EXIT_CODE = 70


@dataclass(slots=True)
class TaskOutcome:
    name: str
    status: TaskStatus
    script_hash: str
    skip_reason: SkipReason | None = None
    blocked_by: str | None = None
    exit_code: int | None = None
    inputs_digest: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
    duration_sec: float | None = None


@dataclass(slots=True)
class RunResult:
    run_id: str
    status: RunStatus
    started_at: str
    ended_at: str
    tasks: dict[str, TaskOutcome] = field(default_factory=dict)

    def by_status(self, status: TaskStatus) -> list[str]:
        return [name for name, outcome in self.tasks.items() if outcome.status == status]


def _usable(outcome: TaskOutcome) -> bool:
    return outcome.status == "completed" or (
        outcome.status == "skipped" and outcome.skip_reason == "up_to_date"
    )


def _blocker(task: Task, outcomes: dict[str, TaskOutcome]) -> TaskOutcome | None:
    for dep in task.deps:
        outcome = outcomes.get(dep)
        if outcome is not None and not _usable(outcome):
            return outcome
    return None


def _link_inputs(task: Task, workspace: Workspace) -> Path:
    task_dir = workspace.materialize_task_dir(task)
    for dep in task.deps:
        workspace.link_dependency_output(task.name, dep)
    return task_dir


def prepare_task(task: Task, workspace: Workspace) -> Path:
    """Create the task directory, input links and interpreter helpers."""
    task_dir = _link_inputs(task, workspace)
    write_builtins(task_dir, task.interpreter)
    prepare_inputs(task_dir, task.interpreter, task.deps)
    return task_dir


def _cache_hit(
    task: Task,
    workspace: Workspace,
    store: StateStore | None,
    project_hash: str | None,
    digest: str,
) -> Path | None:
    """Return the reusable prior output of ``task``, if any."""
    if store is None or project_hash is None or task.interactive:
        return None
    try:
        previous = store.last_success(project_hash, task.name)
    except StateError:
        logger.warning("state lookup failed for '%s'", task.name, exc_info=True)
        return None
    if previous is None or previous.output_path is None:
        return None
    if previous.script_hash != task.hash or previous.inputs_digest != digest:
        return None
    output = Path(previous.output_path)
    if not output.is_file() or not outputs_present(task.outputs):
        return None
    return output


class _Run:
    """Mutable bookkeeping for one ``run_graph`` call."""

    def __init__(
        self,
        graph: TaskGraph,
        workspace: Workspace,
        *,
        store: StateStore | None,
        project_hash: str | None,
        events: EventBus,
    ) -> None:
        self.graph = graph
        self.workspace = workspace
        self.store = store
        self.project_hash = project_hash
        self.events = events
        self.outcomes: dict[str, TaskOutcome] = {}
        self.dep_remaining = {name: len(task.deps) for name, task in graph.tasks.items()}
        self.ready: deque[str] = deque(
            name for name in graph.order if self.dep_remaining[name] == 0
        )
        self.digests: dict[str, str] = {}
        self.started: dict[str, str] = {}

    def status(self, name: str, status: TaskStatus, **detail: object) -> None:
        self.events.publish(TaskEvent(kind="status", task=name, status=status, detail=detail))

    def settle(self, outcome: TaskOutcome) -> None:
        """Record a terminal outcome and release dependents."""
        self.outcomes[outcome.name] = outcome
        self._record(outcome)
        self.events.publish(
            TaskEvent(
                kind="finished",
                task=outcome.name,
                status=outcome.status,
                detail={
                    "skip_reason": outcome.skip_reason,
                    "blocked_by": outcome.blocked_by,
                    "exit_code": outcome.exit_code,
                    "duration_sec": outcome.duration_sec,
                },
            )
        )
        for child in self.graph.dependents.get(outcome.name, []):
            if child not in self.dep_remaining:
                continue
            self.dep_remaining[child] -= 1
            if self.dep_remaining[child] == 0:
                self.ready.append(child)
                self.status(child, "ready")

    def _record(self, outcome: TaskOutcome) -> None:
        if self.store is None:
            return
        name = outcome.name
        output = self.workspace.output_path(name)
        record = TaskRecord(
            name=name,
            status=outcome.status,
            script_hash=outcome.script_hash,
            inputs_digest=outcome.inputs_digest,
            skip_reason=outcome.skip_reason,
            exit_code=outcome.exit_code,
            started_at=outcome.started_at,
            ended_at=outcome.ended_at,
            duration_sec=outcome.duration_sec,
            stdout_path=str(self.workspace.stdout_path(name)),
            stderr_path=str(self.workspace.stderr_path(name)),
            output_path=str(output) if _usable(outcome) and output.is_file() else None,
        )
        try:
            self.store.record_task(self.workspace.run_id, record)
        except StateError:
            logger.warning("failed to record task '%s'", name, exc_info=True)

    def skip(self, task: Task, reason: SkipReason, *, blocked_by: str | None = None) -> None:
        now = now_iso()
        self.settle(
            TaskOutcome(
                name=task.name,
                status="skipped",
                script_hash=task.hash,
                skip_reason=reason,
                blocked_by=blocked_by,
                inputs_digest=self.digests.get(task.name),
                started_at=now,
                ended_at=now,
                duration_sec=0.0,
            )
        )

    def fail_before_start(self, task: Task, exc: Exception) -> None:
        message = f"failed to prepare task: {exc}\n"
        append_text_best_effort(self.workspace.stderr_path(task.name), message)
        logger.error("task '%s' could not be prepared: %s", task.name, exc)
        now = now_iso()
        self.settle(
            TaskOutcome(
                name=task.name,
                status="failed",
                script_hash=task.hash,
                exit_code=None,
                inputs_digest=self.digests.get(task.name),
                started_at=now,
                ended_at=now,
                duration_sec=0.0,
            )
        )

    def finish(self, task: Task, result: TaskResult) -> None:
        status: TaskStatus = "completed" if result.ok else "failed"
        if result.ok:
            try:
                finalize_output(self.workspace.task_dir(task.name), task.name, task.interpreter)
            except (OSError, WorkspaceError) as exc:
                append_text_best_effort(
                    self.workspace.stderr_path(task.name), f"failed to collect output: {exc}\n"
                )
                status = "failed"
        if result.canceled:
            self.skip(task, "canceled")
            return
        if status == "failed":
            logger.info("task '%s' failed with exit code %s", task.name, result.exit_code)
        self.settle(
            TaskOutcome(
                name=task.name,
                status=status,
                script_hash=task.hash,
                exit_code=result.exit_code,
                inputs_digest=self.digests.get(task.name),
                started_at=result.started_at,
                ended_at=result.ended_at,
                duration_sec=result.duration_sec,
            )
        )


async def run_graph(
    graph: TaskGraph,
    workspace: Workspace,
    *,
    jobs: int,
    store: StateStore | None = None,
    project_hash: str | None = None,
    force: bool = False,
    cancel: CancelToken | None = None,
    events: EventBus | None = None,
) -> RunResult:
    """Execute every task of ``graph`` respecting dependencies and job slots."""
    if jobs < 1:
        raise ValueError("jobs must be >= 1")
    cancel = cancel or CancelToken()
    events = events or EventBus()
    started_at = now_iso()
    run = _Run(graph, workspace, store=store, project_hash=project_hash, events=events)
    normal_pool = asyncio.Semaphore(jobs)
    interactive_pool = asyncio.Semaphore(1)
    running: dict[str, asyncio.Task[TaskResult]] = {}
    interactive_active: str | None = None
    cancel_waiter = asyncio.create_task(cancel.wait())

    async def _run_normal(task: Task) -> TaskResult:
        async with normal_pool:
            return await run_task(task, workspace, cancel=cancel, events=events)

    async def _run_exclusive(task: Task) -> TaskResult:
        async with interactive_pool:
            return await run_interactive(task, workspace, cancel=cancel, events=events)

    try:
        while len(run.outcomes) < len(graph.tasks):
            if cancel.requested:
                for name in graph.order:
                    if name not in run.outcomes and name not in running:
                        run.skip(graph.tasks[name], "canceled")
                run.ready.clear()

            while run.ready and not cancel.requested:
                name = run.ready[0]
                task = graph.tasks[name]
                blocker = _blocker(task, run.outcomes)
                if blocker is not None:
                    run.ready.popleft()
                    if blocker.skip_reason == "canceled":
                        run.skip(task, "canceled")
                    else:
                        root = blocker.blocked_by or blocker.name
                        logger.info("task '%s' blocked by failed task '%s'", name, root)
                        run.skip(task, "blocked", blocked_by=root)
                    continue

                if task.interactive:
                    if running:
                        break
                elif interactive_active is not None or len(running) >= jobs:
                    break
                run.ready.popleft()

                run.digests[name] = inputs_digest(task, workspace)
                previous = None if force else _cache_hit(
                    task, workspace, store, project_hash, run.digests[name]
                )
                if previous is not None:
                    try:
                        _link_inputs(task, workspace)
                        workspace.adopt_output(name, previous)
                    except (OSError, WorkspaceError):
                        logger.warning("could not reuse cached output of '%s'", name, exc_info=True)
                    else:
                        logger.info("task '%s' is up to date", name)
                        run.skip(task, "up_to_date")
                        continue

                try:
                    prepare_task(task, workspace)
                except (OSError, WorkspaceError) as exc:
                    run.fail_before_start(task, exc)
                    continue

                run.started[name] = now_iso()
                run.status(name, "running")
                events.publish(TaskEvent(kind="started", task=name, status="running"))
                if task.interactive:
                    interactive_active = name
                    running[name] = asyncio.create_task(_run_exclusive(task))
                else:
                    running[name] = asyncio.create_task(_run_normal(task))

            if not running:
                if run.ready:
                    continue
                for name in graph.order:
                    if name not in run.outcomes:
                        run.skip(graph.tasks[name], "blocked")
                break

            waitables: set[asyncio.Future] = set(running.values())
            if not cancel.requested:
                waitables.add(cancel_waiter)
            done, _ = await asyncio.wait(waitables, return_when=asyncio.FIRST_COMPLETED)
            for name, fut in list(running.items()):
                if fut not in done:
                    continue
                del running[name]
                if name == interactive_active:
                    interactive_active = None
                task = graph.tasks[name]
                try:
                    result = fut.result()
                except Exception as exc:
                    logger.exception("runner error in task '%s'", name)
                    append_text_best_effort(
                        workspace.stderr_path(name), f"runner exception: {exc}\n"
                    )
                    result = TaskResult(
                        exit_code=RUNNER_EXCEPTION_EXIT_CODE,
                        canceled=False,
                        start_failed=True,
                        started_at=run.started.get(name, now_iso()),
                        ended_at=now_iso(),
                        duration_sec=0.0,
                    )
                run.finish(task, result)
    finally:
        cancel_waiter.cancel()
        for fut in running.values():
            fut.cancel()
        if running:
            await asyncio.gather(*running.values(), return_exceptions=True)

    outcomes = {name: run.outcomes[name] for name in graph.order if name in run.outcomes}
    if cancel.requested:
        status: RunStatus = "canceled"
    elif all(_usable(outcome) for outcome in outcomes.values()):
        status = "success"
    else:
        status = "failed"
    return RunResult(
        run_id=workspace.run_id,
        status=status,
        started_at=started_at,
        ended_at=now_iso(),
        tasks=outcomes,
    )
