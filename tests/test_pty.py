from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from kiln.config.cli_args import TaskRequest
from kiln.config.loader import parse_config
from kiln.dag.build import build_graph
from kiln.exec.events import EventBus, TaskEvent
from kiln.exec.pty import copy_loop, run_interactive
from kiln.exec.scheduler import prepare_task
from kiln.workspace.layout import Workspace


def _read_available(fd: int) -> bytes:
    os.set_blocking(fd, False)
    chunks = []
    while True:
        try:
            chunk = os.read(fd, 4096)
        except BlockingIOError:
            break
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks)


@pytest.mark.asyncio
async def test_copy_loop_copies_until_eof() -> None:
    src_r, src_w = os.pipe()
    sink_r, sink_w = os.pipe()
    os.set_blocking(src_r, False)
    seen: list[bytes] = []
    try:
        loop_task = asyncio.create_task(
            copy_loop(src_r, [sink_w], asyncio.Event(), on_chunk=seen.append)
        )
        os.write(src_w, b"hello\n")
        os.close(src_w)
        await asyncio.wait_for(loop_task, timeout=5)
        assert _read_available(sink_r) == b"hello\n"
        assert b"".join(seen) == b"hello\n"
    finally:
        for fd in (src_r, sink_r, sink_w):
            os.close(fd)


@pytest.mark.asyncio
async def test_copy_loop_stops_on_event() -> None:
    src_r, src_w = os.pipe()
    os.set_blocking(src_r, False)
    stop = asyncio.Event()
    try:
        loop_task = asyncio.create_task(copy_loop(src_r, [], stop))
        await asyncio.sleep(0.05)
        assert not loop_task.done()
        stop.set()
        await asyncio.wait_for(loop_task, timeout=5)
    finally:
        os.close(src_r)
        os.close(src_w)


@pytest.mark.asyncio
async def test_run_interactive_without_terminal_captures_output(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("kiln.exec.pty.terminal_available", lambda: False)
    project = tmp_path / "project"
    project.mkdir()
    config = parse_config(
        {"tasks": {"ask": {"interactive": True, "bash": "echo answered"}}},
        project / "kiln.yml",
    )
    graph = build_graph(config, [TaskRequest("ask")], base_env={})
    workspace = Workspace.create(config, tmp_path / "home")
    prepare_task(graph.tasks["ask"], workspace)
    events = EventBus()
    seen: list[TaskEvent] = []
    events.subscribe(seen.append)

    result = await run_interactive(graph.tasks["ask"], workspace, events=events)

    assert result.exit_code == 0
    assert workspace.stdout_path("ask").read_text(encoding="utf-8") == "answered\n"
    assert any(e.kind == "output" and e.stream == "stdout" for e in seen)

