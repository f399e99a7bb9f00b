from __future__ import annotations

import asyncio
import os
import stat
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path

from kiln.util.path_guard import is_symlink_path

ChunkCallback = Callable[[bytes], None]


def open_log(file_path: Path) -> int | None:
    """Open ``file_path`` for appending without following symlinks."""
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
    except (OSError, RuntimeError):
        return None
    if is_symlink_path(file_path.parent) or is_symlink_path(file_path):
        return None

    flags = os.O_WRONLY | os.O_CREAT | os.O_APPEND
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW

    fd: int | None = None
    try:
        fd = os.open(str(file_path), flags, 0o644)
        if not stat.S_ISREG(os.fstat(fd).st_mode):
            os.close(fd)
            return None
    except (OSError, RuntimeError):
        if fd is not None:
            with suppress(OSError, RuntimeError):
                os.close(fd)
        return None
    return fd


async def stream_to_file(
    stream: asyncio.StreamReader | None,
    file_path: Path,
    *,
    on_chunk: ChunkCallback | None = None,
) -> None:
    """Copy ``stream`` into ``file_path`` and hand every chunk to ``on_chunk``."""
    if stream is None:
        return
    fd = open_log(file_path)
    if fd is None:
        # Still drain the pipe so the child never blocks on a full buffer.
        while await stream.read(4096):
            pass
        return

    try:
        with os.fdopen(fd, "ab") as f:
            fd = None
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    break
                f.write(chunk)
                f.flush()
                if on_chunk is not None:
                    on_chunk(chunk)
    except (OSError, RuntimeError):
        if fd is not None:
            with suppress(OSError, RuntimeError):
                os.close(fd)
        return
