from __future__ import annotations

import asyncio
import getpass
import json
import os
import textwrap
import time
from pathlib import Path

import pytest

from kiln.config.cli_args import parse_task_args
from kiln.config.loader import load_config
from kiln.config.schema import ConfigSpec
from kiln.dag.build import build_graph
from kiln.exec.cancel import CancelToken
from kiln.exec.events import EventBus, TaskEvent
from kiln.exec.process import task_environment
from kiln.exec.runner import run_context
from kiln.exec.scheduler import RunResult, run_graph
from kiln.state.model import RunContext
from kiln.state.store import StateStore
from kiln.workspace.layout import Workspace


def _load(tmp_path: Path, content: str) -> ConfigSpec:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    path = project / "kiln.yml"
    path.write_text(textwrap.dedent(content).strip() + "\n", encoding="utf-8")
    return load_config(path)


async def _run(
    config: ConfigSpec,
    home: Path,
    *tokens: str,
    store: StateStore | None = None,
    jobs: int = 4,
    force: bool = False,
    cancel: CancelToken | None = None,
    events: EventBus | None = None,
) -> tuple[RunResult, Workspace]:
    graph = build_graph(config, parse_task_args(config, list(tokens)))
    workspace = Workspace.create(config, home)
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
    return result, workspace


def _lines(path: Path) -> list[str]:
    return path.read_text(encoding="utf-8").splitlines()


@pytest.mark.asyncio
async def test_tasks_start_in_dependency_order(tmp_path: Path) -> None:
    config = _load(
        tmp_path,
        """
        tasks:
          package:
            before: [compile]
            bash: echo package >> order.log
          compile:
            before: [fetch]
            bash: echo compile >> order.log
          fetch:
            bash: |
              sleep 0.1
              echo fetch >> order.log
        """,
    )
    result, workspace = await _run(config, tmp_path / "home", "package")

    assert result.status == "success"
    assert list(result.tasks) == ["fetch", "compile", "package"]
    assert _lines(config.root / "order.log") == ["fetch", "compile", "package"]
    assert _lines(workspace.stdout_path("fetch")) == []
    for name in result.tasks:
        assert workspace.output_path(name).is_file()


@pytest.mark.asyncio
async def test_outputs_flow_to_dependents(tmp_path: Path) -> None:
    config = _load(
        tmp_path,
        """
        tasks:
          producer:
            python: |
              KILN_OUTPUT["greeting"] = "hello world"
              KILN_OUTPUT["count"] = 3
          relay:
            before: [producer]
            bash: |
              greeting="$(kiln_get_input producer.greeting)"
              kiln_set_output echoed "$greeting!"
              kiln_set_output count "$(kiln_get_input producer.count)"
          consumer:
            before: [relay]
            python: |
              print(kiln_get_input("relay.echoed"))
              KILN_OUTPUT["final"] = kiln_get_input("relay.count") + "0"
        """,
    )
    result, workspace = await _run(config, tmp_path / "home", "consumer")

    assert result.status == "success", result
    link = workspace.input_path("relay", "producer")
    assert link.is_symlink()
    assert not os.path.isabs(os.readlink(link))
    assert link.read_bytes() == workspace.output_path("producer").read_bytes()
    assert json.loads(workspace.output_path("relay").read_text(encoding="utf-8")) == {
        "count": "3",
        "echoed": "hello world!",
    }
    assert json.loads(workspace.output_path("consumer").read_text(encoding="utf-8")) == {
        "final": "30"
    }
    assert _lines(workspace.stdout_path("consumer")) == ["hello world!"]


@pytest.mark.asyncio
async def test_identical_scripts_save_output_under_their_own_task(tmp_path: Path) -> None:
    config = _load(
        tmp_path,
        """
        tasks:
          one:
            bash: kiln_set_output who "$KILN_TASK"
          two:
            bash: kiln_set_output who "$KILN_TASK"
          three:
            python: KILN_OUTPUT["who"] = os.environ["KILN_TASK"]
          four:
            python: KILN_OUTPUT["who"] = os.environ["KILN_TASK"]
        """,
    )
    result, workspace = await _run(config, tmp_path / "home")

    assert result.status == "success", result
    for name in ("one", "two", "three", "four"):
        data = json.loads(workspace.output_path(name).read_text(encoding="utf-8"))
        assert data == {"who": name}


@pytest.mark.asyncio
async def test_foreach_subtasks_run_and_parent_is_never_dispatched(tmp_path: Path) -> None:
    config = _load(
        tmp_path,
        """
        tasks:
          gen:
            foreach:
              items: [a, b, c]
              as: letter
            bash: echo "$letter" > "gen_$letter.txt"
          collect:
            before: [gen]
            bash: cat gen_a.txt gen_b.txt gen_c.txt > all.txt
        """,
    )
    events = EventBus()
    started: list[str] = []
    events.subscribe(lambda e: started.append(e.task) if e.kind == "started" else None)

    result, _ = await _run(config, tmp_path / "home", "collect", events=events)

    assert result.status == "success"
    assert set(result.tasks) == {"gen:a", "gen:b", "gen:c", "collect"}
    assert "gen" not in started
    assert started[-1] == "collect"
    assert _lines(config.root / "all.txt") == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_targeting_a_subtask_runs_only_it(tmp_path: Path) -> None:
    config = _load(
        tmp_path,
        """
        tasks:
          gen:
            foreach:
              range: "1..3"
            bash: touch "shard_$item"
        """,
    )
    result, _ = await _run(config, tmp_path / "home", "gen:2")

    assert list(result.tasks) == ["gen:2"]
    assert (config.root / "shard_2").exists()
    assert not (config.root / "shard_1").exists()
    assert not (config.root / "shard_3").exists()


@pytest.mark.asyncio
async def test_unchanged_rerun_skips_every_task(tmp_path: Path) -> None:
    config = _load(
        tmp_path,
        """
        tasks:
          a:
            input: [src.txt]
            bash: |
              echo run >> a.log
              kiln_set_output data "$(cat src.txt)"
          b:
            before: [a]
            bash: echo run >> b.log
        """,
    )
    (config.root / "src.txt").write_text("v1", encoding="utf-8")
    home = tmp_path / "home"
    with StateStore(tmp_path / "kiln.db") as store:
        first, _ = await _run(config, home, "b", store=store)
        second, workspace = await _run(config, home, "b", store=store)

        assert first.by_status("completed") == ["a", "b"]
        assert second.status == "success"
        assert second.by_status("skipped") == ["a", "b"]
        assert {o.skip_reason for o in second.tasks.values()} == {"up_to_date"}
        assert _lines(config.root / "a.log") == ["run"]
        assert json.loads(workspace.output_path("a").read_text(encoding="utf-8")) == {"data": "v1"}
        assert workspace.input_path("b", "a").read_bytes() == workspace.output_path("a").read_bytes()

        (config.root / "src.txt").write_text("v2", encoding="utf-8")
        third, _ = await _run(config, home, "b", store=store)
        assert third.by_status("completed") == ["a", "b"]

        forced, _ = await _run(config, home, "b", store=store, force=True)
        assert forced.by_status("completed") == ["a", "b"]
        assert _lines(config.root / "a.log") == ["run", "run", "run"]


@pytest.mark.asyncio
async def test_failure_blocks_only_dependents(tmp_path: Path) -> None:
    config = _load(
        tmp_path,
        """
        tasks:
          broken:
            bash: |
              echo boom >&2
              exit 3
          after_broken:
            before: [broken]
            bash: "true"
          deeper:
            before: [after_broken]
            bash: "true"
          independent:
            bash: |
              sleep 0.2
              echo ok
        """,
    )
    result, workspace = await _run(config, tmp_path / "home")

    assert result.status == "failed"
    assert result.tasks["broken"].status == "failed"
    assert result.tasks["broken"].exit_code == 3
    assert result.tasks["independent"].status == "completed"
    for name in ("after_broken", "deeper"):
        assert result.tasks[name].status == "skipped"
        assert result.tasks[name].skip_reason == "blocked"
        assert result.tasks[name].blocked_by == "broken"
    assert _lines(workspace.stderr_path("broken")) == ["boom"]
    assert not workspace.output_path("broken").exists()


@pytest.mark.asyncio
async def test_failed_runs_are_not_reused(tmp_path: Path) -> None:
    config = _load(
        tmp_path,
        """
        tasks:
          flaky:
            bash: |
              if [ ! -f ok ]; then exit 1; fi
        """,
    )
    home = tmp_path / "home"
    with StateStore(tmp_path / "kiln.db") as store:
        first, _ = await _run(config, home, store=store)
        assert first.tasks["flaky"].status == "failed"
        (config.root / "ok").write_text("", encoding="utf-8")
        second, _ = await _run(config, home, store=store)
        assert second.tasks["flaky"].status == "completed"


@pytest.mark.asyncio
async def test_interactive_tasks_never_overlap(tmp_path: Path) -> None:
    body = 'echo "start $KILN_TASK" >> timeline.log; sleep 0.2; echo "end $KILN_TASK" >> timeline.log'
    config = _load(
        tmp_path,
        f"""
        tasks:
          n1:
            bash: '{body}'
          n2:
            bash: '{body}'
          i1:
            interactive: true
            bash: '{body}'
          i2:
            interactive: true
            bash: '{body}'
          n3:
            bash: '{body}'
        """,
    )
    result, _ = await _run(config, tmp_path / "home", jobs=4)

    assert result.status == "success"
    running: set[str] = set()
    for line in _lines(config.root / "timeline.log"):
        kind, name = line.split()
        if kind == "start":
            if name.startswith("i"):
                assert not running, f"{name} started while {running} were running"
            else:
                assert not any(r.startswith("i") for r in running)
            running.add(name)
        else:
            running.discard(name)


@pytest.mark.asyncio
async def test_normal_tasks_respect_job_slots(tmp_path: Path) -> None:
    body = 'echo "start $KILN_TASK" >> timeline.log; sleep 0.2; echo "end $KILN_TASK" >> timeline.log'
    config = _load(
        tmp_path,
        f"""
        tasks:
          a:
            bash: '{body}'
          b:
            bash: '{body}'
          c:
            bash: '{body}'
        """,
    )
    result, _ = await _run(config, tmp_path / "home", jobs=2)

    assert result.status == "success"
    running = 0
    peak = 0
    for line in _lines(config.root / "timeline.log"):
        running += 1 if line.startswith("start") else -1
        peak = max(peak, running)
    assert peak == 2


@pytest.mark.asyncio
async def test_cancel_terminates_running_and_skips_pending(tmp_path: Path) -> None:
    config = _load(
        tmp_path,
        """
        tasks:
          slow:
            bash: sleep 30
          later:
            before: [slow]
            bash: "true"
        """,
    )
    cancel = CancelToken()
    events = EventBus()

    def _on_event(event: TaskEvent) -> None:
        if event.kind == "started" and event.task == "slow":
            asyncio.get_running_loop().call_later(0.2, cancel.request)

    events.subscribe(_on_event)
    started = time.monotonic()
    result, _ = await _run(config, tmp_path / "home", "later", cancel=cancel, events=events)

    assert time.monotonic() - started < 10
    assert result.status == "canceled"
    assert result.tasks["slow"].skip_reason == "canceled"
    assert result.tasks["later"].status == "skipped"
    assert result.tasks["later"].skip_reason == "canceled"


@pytest.mark.asyncio
async def test_run_records_are_written_to_store(tmp_path: Path) -> None:
    config = _load(
        tmp_path,
        """
        tasks:
          ok:
            bash: "true"
          bad:
            bash: exit 7
        """,
    )
    with StateStore(tmp_path / "kiln.db") as store:
        graph = build_graph(config, parse_task_args(config, []))
        workspace = Workspace.create(config, tmp_path / "home")
        store.begin_run(
            project_hash=workspace.project_id,
            project_name=config.project.name,
            run_id=workspace.run_id,
            run_dir=workspace.run_dir,
            context=RunContext(config_path="kiln.yml", cwd=".", user="u", hostname="h", args=[]),
        )
        await run_graph(graph, workspace, jobs=2, store=store, project_hash=workspace.project_id)
        records = {r.name: r for r in store.run_tasks(workspace.run_id)}

    assert records["ok"].status == "completed"
    assert records["ok"].output_path == str(workspace.output_path("ok"))
    assert records["ok"].script_hash == graph.tasks["ok"].hash
    assert records["bad"].status == "failed"
    assert records["bad"].exit_code == 7
    assert records["bad"].output_path is None


def test_run_context_and_task_env_agree_on_user_fallback(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _no_passwd_entry() -> str:
        raise OSError("no passwd entry")

    monkeypatch.setattr(getpass, "getuser", _no_passwd_entry)
    monkeypatch.setenv("USER", "builder")
    config = _load(
        tmp_path,
        """
        tasks:
          t:
            bash: "true"
        """,
    )
    graph = build_graph(config, parse_task_args(config, []))
    workspace = Workspace.create(config, tmp_path / "home")

    assert run_context(config, []).user == "builder"
    assert task_environment(graph.tasks["t"], workspace)["KILN_USER"] == "builder"
