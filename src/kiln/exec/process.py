from __future__ import annotations

import asyncio
import getpass
import logging
import os
from dataclasses import dataclass
from datetime import datetime

from kiln.dag.task import Task
from kiln.exec.action import script_command
from kiln.exec.cancel import CancelToken, terminate_process
from kiln.exec.capture import stream_to_file
from kiln.exec.events import EventBus, TaskEvent
from kiln.util.paths import append_text_best_effort
from kiln.util.time import duration_sec
from kiln.workspace.layout import Workspace

logger = logging.getLogger(__name__)

START_FAILED_EXIT_CODE = 127
_POLL_INTERVAL_SEC = 0.05


@dataclass(slots=True)
class TaskResult:
    exit_code: int | None
    canceled: bool
    start_failed: bool
    started_at: str
    ended_at: str
    duration_sec: float

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.canceled


def current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return os.environ.get("USER", "unknown")


def task_environment(task: Task, workspace: Workspace) -> dict[str, str]:
    """Process env + task env + the runtime variables every script sees."""
    env = os.environ.copy()
    env.update(task.envs)
    env.update(
        {
            "KILN_TASK": task.name,
            "KILN_TASK_DIR": str(workspace.task_dir(task.name)),
            "KILN_TASKS_DIR": str(workspace.tasks_dir),
            "KILN_RUN_DIR": str(workspace.run_dir),
            "KILN_PROJECT_ROOT": str(workspace.root),
            "KILN_USER": current_user(),
        }
    )
    return env


def make_result(
    started_dt: datetime, *, exit_code: int | None, canceled: bool, start_failed: bool
) -> TaskResult:
    ended_dt = datetime.now().astimezone()
    return TaskResult(
        exit_code=exit_code,
        canceled=canceled,
        start_failed=start_failed,
        started_at=started_dt.isoformat(timespec="seconds"),
        ended_at=ended_dt.isoformat(timespec="seconds"),
        duration_sec=duration_sec(started_dt, ended_dt),
    )


async def run_task(
    task: Task,
    workspace: Workspace,
    *,
    cancel: CancelToken | None = None,
    events: EventBus | None = None,
) -> TaskResult:
    """Run the task's linked script with stdout/stderr captured to its logs."""
    started_dt = datetime.now().astimezone()
    out_path = workspace.stdout_path(task.name)
    err_path = workspace.stderr_path(task.name)
    command = script_command(task.interpreter, workspace.script_path(task.name))

    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(workspace.root),
            env=task_environment(task, workspace),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except (OSError, ValueError) as exc:
        append_text_best_effort(err_path, f"failed to start process: {exc}\n")
        logger.error("task '%s' failed to start: %s", task.name, exc)
        return make_result(
            started_dt, exit_code=START_FAILED_EXIT_CODE, canceled=False, start_failed=True
        )

    def _emitter(stream: str):
        if events is None:
            return None

        def _emit(chunk: bytes) -> None:
            events.publish(TaskEvent(kind="output", task=task.name, stream=stream, data=chunk))

        return _emit

    out_stream = asyncio.create_task(
        stream_to_file(proc.stdout, out_path, on_chunk=_emitter("stdout"))
    )
    err_stream = asyncio.create_task(
        stream_to_file(proc.stderr, err_path, on_chunk=_emitter("stderr"))
    )
    canceled = False
    waiter = asyncio.create_task(proc.wait())
    try:
        while not waiter.done():
            if cancel is not None and cancel.requested:
                canceled = True
                await terminate_process(proc)
                break
            await asyncio.wait({waiter}, timeout=_POLL_INTERVAL_SEC)
    except asyncio.CancelledError:
        await terminate_process(proc)
        raise
    finally:
        await asyncio.gather(waiter, out_stream, err_stream, return_exceptions=True)

    return make_result(
        started_dt, exit_code=proc.returncode, canceled=canceled, start_failed=False
    )
