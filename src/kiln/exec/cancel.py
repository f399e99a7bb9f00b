"""Run cancellation driven by SIGINT/SIGTERM."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from contextlib import suppress

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SEC = 3.0
_HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CancelToken:
    """Shared flag telling the scheduler and executors to stop."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.signum: int | None = None

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    def request(self, signum: int | None = None) -> None:
        if self._event.is_set():
            return
        self.signum = signum
        self._event.set()
        if signum is not None:
            logger.warning("received %s, canceling run", signal.Signals(signum).name)

    async def wait(self) -> None:
        await self._event.wait()

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum in _HANDLED_SIGNALS:
            with suppress(NotImplementedError, RuntimeError, ValueError):
                loop.add_signal_handler(signum, self.request, signum)

    def uninstall(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum in _HANDLED_SIGNALS:
            with suppress(NotImplementedError, RuntimeError, ValueError):
                loop.remove_signal_handler(signum)


def _signal_group(proc: asyncio.subprocess.Process, signum: int) -> None:
    # Children run in their own session, so the pid doubles as the group id.
    try:
        os.killpg(proc.pid, signum)
    except (ProcessLookupError, PermissionError):
        with suppress(ProcessLookupError):
            proc.send_signal(signum)


async def terminate_process(
    proc: asyncio.subprocess.Process, *, grace_sec: float = TERMINATE_GRACE_SEC
) -> int | None:
    """SIGTERM the child's group, then SIGKILL it if it outlives the grace period."""
    if proc.returncode is not None:
        return proc.returncode
    _signal_group(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_sec)
    except TimeoutError:
        _signal_group(proc, signal.SIGKILL)
        await proc.wait()
    return proc.returncode
