"""Interactive task execution through a pseudo-terminal.

The child gets a pty as its controlling terminal. Two directional copy
loops move bytes between the real terminal and the pty master, and a stop
event ends them once the child exits or the run is canceled. Terminal
output is also appended to the task's ``stdout.log``.
"""

from __future__ import annotations

import asyncio
import errno
import fcntl
import logging
import os
import pty
import signal
import struct
import sys
import termios
import tty
from collections.abc import Callable, Sequence
from contextlib import suppress
from datetime import datetime

from kiln.dag.task import Task
from kiln.exec.action import script_command
from kiln.exec.cancel import CancelToken, terminate_process
from kiln.exec.capture import open_log
from kiln.exec.events import EventBus, TaskEvent
from kiln.exec.process import (
    START_FAILED_EXIT_CODE,
    TaskResult,
    make_result,
    run_task,
    task_environment,
)
from kiln.util.paths import append_text_best_effort
from kiln.workspace.layout import Workspace

logger = logging.getLogger(__name__)

_READ_SIZE = 4096
_DRAIN_TIMEOUT_SEC = 1.0


def terminal_available() -> bool:
    try:
        return sys.stdin.isatty() and sys.stdout.isatty()
    except (AttributeError, ValueError):
        return False


def copy_window_size(src_fd: int, dst_fd: int) -> None:
    with suppress(OSError):
        size = fcntl.ioctl(src_fd, termios.TIOCGWINSZ, struct.pack("HHHH", 0, 0, 0, 0))
        fcntl.ioctl(dst_fd, termios.TIOCSWINSZ, size)


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid; fd 0 is the pty slave by now.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        try:
            written = os.write(fd, view)
        except BlockingIOError:
            continue
        view = view[written:]


async def copy_loop(
    src_fd: int,
    sinks: Sequence[int],
    stop: asyncio.Event,
    *,
    on_chunk: Callable[[bytes], None] | None = None,
) -> None:
    """Copy bytes from ``src_fd`` to every sink until EOF, EIO or ``stop``."""
    loop = asyncio.get_running_loop()
    readable = asyncio.Event()
    loop.add_reader(src_fd, readable.set)
    stop_waiter = asyncio.create_task(stop.wait())
    try:
        while not stop.is_set():
            ready_waiter = asyncio.create_task(readable.wait())
            await asyncio.wait({ready_waiter, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
            if not ready_waiter.done():
                ready_waiter.cancel()
                break
            readable.clear()
            try:
                data = os.read(src_fd, _READ_SIZE)
            except BlockingIOError:
                continue
            except OSError as exc:
                # The master side reports EIO once the child closed the slave.
                if exc.errno == errno.EIO:
                    break
                raise
            if not data:
                break
            for sink in sinks:
                with suppress(OSError):
                    _write_all(sink, data)
            if on_chunk is not None:
                on_chunk(data)
    finally:
        loop.remove_reader(src_fd)
        stop_waiter.cancel()


async def run_interactive(
    task: Task,
    workspace: Workspace,
    *,
    cancel: CancelToken | None = None,
    events: EventBus | None = None,
) -> TaskResult:
    """Run ``task`` attached to the controlling terminal through a pty.

    Without a terminal the task runs like any other task.
    """
    if not terminal_available():
        logger.warning(
            "task '%s' is interactive but no terminal is attached; running without a pty",
            task.name,
        )
        return await run_task(task, workspace, cancel=cancel, events=events)

    loop = asyncio.get_running_loop()
    started_dt = datetime.now().astimezone()
    stdin_fd = sys.stdin.fileno()
    stdout_fd = sys.stdout.fileno()
    master_fd, slave_fd = pty.openpty()
    copy_window_size(stdin_fd, slave_fd)

    try:
        proc = await asyncio.create_subprocess_exec(
            *script_command(task.interpreter, workspace.script_path(task.name)),
            cwd=str(workspace.root),
            env=task_environment(task, workspace),
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            start_new_session=True,
            preexec_fn=_acquire_controlling_tty,
        )
    except (OSError, ValueError, RuntimeError) as exc:
        os.close(master_fd)
        os.close(slave_fd)
        append_text_best_effort(
            workspace.stderr_path(task.name), f"failed to start process: {exc}\n"
        )
        return make_result(
            started_dt, exit_code=START_FAILED_EXIT_CODE, canceled=False, start_failed=True
        )
    os.close(slave_fd)

    log_fd = open_log(workspace.stdout_path(task.name))
    sinks = [stdout_fd] + ([log_fd] if log_fd is not None else [])
    saved_attrs = termios.tcgetattr(stdin_fd)
    os.set_blocking(master_fd, False)
    stop = asyncio.Event()

    def _emit(chunk: bytes) -> None:
        if events is not None:
            events.publish(TaskEvent(kind="output", task=task.name, stream="pty", data=chunk))

    def _on_resize() -> None:
        copy_window_size(stdin_fd, master_fd)
        with suppress(ProcessLookupError):
            proc.send_signal(signal.SIGWINCH)

    canceled = False
    try:
        tty.setraw(stdin_fd)
        with suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signal.SIGWINCH, _on_resize)
        to_child = asyncio.create_task(copy_loop(stdin_fd, [master_fd], stop))
        to_terminal = asyncio.create_task(copy_loop(master_fd, sinks, stop, on_chunk=_emit))
        waiter = asyncio.create_task(proc.wait())
        while not waiter.done():
            if cancel is not None and cancel.requested:
                canceled = True
                await terminate_process(proc)
                break
            await asyncio.wait({waiter}, timeout=0.05)
        with suppress(TimeoutError):
            await asyncio.wait_for(asyncio.shield(to_terminal), timeout=_DRAIN_TIMEOUT_SEC)
        stop.set()
        await asyncio.gather(waiter, to_child, to_terminal, return_exceptions=True)
    finally:
        with suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGWINCH)
        termios.tcsetattr(stdin_fd, termios.TCSAFLUSH, saved_attrs)
        with suppress(OSError):
            os.close(master_fd)
        if log_fd is not None:
            with suppress(OSError):
                os.close(log_fd)

    return make_result(
        started_dt, exit_code=proc.returncode, canceled=canceled, start_failed=False
    )
