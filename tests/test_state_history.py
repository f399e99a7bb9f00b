from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from kiln.state.model import RunContext, StatsFilter, TaskRecord, TaskStats
from kiln.state.store import StateStore
from kiln.util.errors import StateError

_CONTEXT = RunContext(config_path="/p/kiln.yml", cwd="/p", user="dev", hostname="box", args=["a"])


def _begin(
    store: StateStore, tmp_path: Path, run_id: str, *, project: str = "p1", started: str
) -> Path:
    run_dir = tmp_path / project / run_id
    run_dir.mkdir(parents=True)
    store.begin_run(
        project_hash=project,
        project_name=f"name-{project}",
        run_id=run_id,
        run_dir=run_dir,
        context=_CONTEXT,
        started_at=started,
    )
    return run_dir


def _record(name: str, status: str = "completed", *, script_hash: str = "h1", **kwargs: Any) -> TaskRecord:
    return TaskRecord(name=name, status=status, script_hash=script_hash, **kwargs)


def test_schema_is_migrated_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "db" / "kiln.db"
    with StateStore(db_path):
        pass
    conn = sqlite3.connect(db_path)
    try:
        assert conn.execute("SELECT version_num FROM alembic_version").fetchone() == (
            "20261019_0001",
        )
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert {"projects", "runs", "tasks"} <= tables
    finally:
        conn.close()


def test_reopening_migrated_database_keeps_history(tmp_path: Path) -> None:
    db_path = tmp_path / "kiln.db"
    with StateStore(db_path) as store:
        _begin(store, tmp_path, "r1", started="2026-01-01T10:00:00+00:00")
    with StateStore(db_path) as store:
        run = store.get_run("r1")
    assert run is not None
    assert run.status == "running"


def test_unknown_schema_revision_is_rejected(tmp_path: Path) -> None:
    db_path = tmp_path / "kiln.db"
    with StateStore(db_path):
        pass
    conn = sqlite3.connect(db_path)
    conn.execute("UPDATE alembic_version SET version_num = 'ffff_future'")
    conn.commit()
    conn.close()
    with pytest.raises(StateError, match="failed to open state database"):
        StateStore(db_path)


def test_open_failure_is_state_error(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    with pytest.raises(StateError, match="failed to open state database"):
        StateStore(blocker / "kiln.db")


def test_run_lifecycle_and_task_records(tmp_path: Path) -> None:
    with StateStore(tmp_path / "kiln.db") as store:
        _begin(store, tmp_path, "r1", started="2026-01-01T10:00:00+00:00")
        store.record_task("r1", _record("a", duration_sec=1.5, exit_code=0, output_path="/o/a.json"))
        store.record_task("r1", _record("b", "failed", exit_code=2, duration_sec=0.5))
        store.record_task("r1", _record("c", "skipped", skip_reason="blocked"))
        store.finish_run("r1", "failed", size_bytes=42, ended_at="2026-01-01T10:00:30+00:00")

        run = store.get_run("r1")
        assert run is not None
        assert run.status == "failed"
        assert run.duration_sec == 30.0
        assert run.size_bytes == 42
        assert run.user == "dev"
        assert run.args == '["a"]'
        tasks = store.run_tasks("r1")
        assert [t.name for t in tasks] == ["a", "b", "c"]
        assert tasks[1].exit_code == 2
        assert tasks[2].skip_reason == "blocked"
        assert all(t.run_id == "r1" for t in tasks)


def test_record_task_for_unknown_run_fails(tmp_path: Path) -> None:
    with StateStore(tmp_path / "kiln.db") as store:
        with pytest.raises(StateError, match="unknown run"):
            store.record_task("missing", _record("a"))


def test_last_success_prefers_newest_usable_record(tmp_path: Path) -> None:
    with StateStore(tmp_path / "kiln.db") as store:
        _begin(store, tmp_path, "r1", started="2026-01-01T10:00:00+00:00")
        store.record_task("r1", _record("a", script_hash="old", output_path="/r1/a.json"))
        _begin(store, tmp_path, "r2", started="2026-01-01T11:00:00+00:00")
        store.record_task("r2", _record("a", "skipped", skip_reason="up_to_date", output_path="/r2/a.json"))
        _begin(store, tmp_path, "r3", started="2026-01-01T12:00:00+00:00")
        store.record_task("r3", _record("a", "failed", exit_code=1))
        store.record_task("r3", _record("b", "skipped", skip_reason="blocked"))

        latest = store.last_success("p1", "a")
        assert latest is not None
        assert latest.run_id == "r2"
        assert latest.output_path == "/r2/a.json"
        assert store.last_success("p1", "b") is None
        assert store.last_success("other", "a") is None


def test_query_stats_aggregates_per_project_and_task(tmp_path: Path) -> None:
    with StateStore(tmp_path / "kiln.db") as store:
        _begin(store, tmp_path, "r1", started="2026-01-01T10:00:00+00:00")
        store.record_task("r1", _record("a", duration_sec=1.0))
        _begin(store, tmp_path, "r2", started="2026-01-02T10:00:00+00:00")
        store.record_task("r2", _record("a", "failed", duration_sec=3.0))
        _begin(store, tmp_path, "r3", started="2026-01-03T10:00:00+00:00")
        store.record_task("r3", _record("a", "skipped", skip_reason="up_to_date", duration_sec=0.0))
        _begin(store, tmp_path, "x1", project="p2", started="2026-01-03T10:00:00+00:00")
        store.record_task("x1", _record("a", duration_sec=9.0))

        stats = store.query_stats(StatsFilter(project_hash="p1"))
        assert stats == [
            TaskStats(
                project_hash="p1",
                project_name="name-p1",
                task="a",
                runs=3,
                completed=1,
                failed=1,
                skipped=1,
                avg_duration_sec=2.0,
                min_duration_sec=1.0,
                max_duration_sec=3.0,
                last_run_at="2026-01-03T10:00:00+00:00",
            )
        ]
        assert stats[0].success_rate == 0.5
        assert len(store.query_stats()) == 2

        recent = store.query_stats(StatsFilter(project_hash="p1", since="2026-01-02T00:00:00+00:00"))
        assert recent[0].runs == 2
        assert store.query_stats(StatsFilter(task="zzz")) == []


def test_recent_runs_newest_first(tmp_path: Path) -> None:
    with StateStore(tmp_path / "kiln.db") as store:
        _begin(store, tmp_path, "r1", started="2026-01-01T10:00:00+00:00")
        _begin(store, tmp_path, "r2", started="2026-01-02T10:00:00+00:00")
        _begin(store, tmp_path, "x1", project="p2", started="2026-01-03T10:00:00+00:00")
        assert [r.run_id for r in store.recent_runs(10)] == ["x1", "r2", "r1"]
        assert [r.run_id for r in store.recent_runs(1, project_hash="p1")] == ["r2"]


def test_cleanup_removes_old_runs_and_directories(tmp_path: Path) -> None:
    now = datetime.now().astimezone()
    old = (now - timedelta(days=10)).isoformat(timespec="seconds")
    older = (now - timedelta(days=20)).isoformat(timespec="seconds")
    fresh = now.isoformat(timespec="seconds")
    with StateStore(tmp_path / "kiln.db") as store:
        older_dir = _begin(store, tmp_path, "r0", started=older)
        store.record_task("r0", _record("a"))
        store.finish_run("r0", "success", ended_at=older)
        old_dir = _begin(store, tmp_path, "r1", started=old)
        store.finish_run("r1", "success", ended_at=old)
        running_dir = _begin(store, tmp_path, "r2", started=older)
        fresh_dir = _begin(store, tmp_path, "r3", started=fresh)
        store.finish_run("r3", "success", ended_at=fresh)

        cutoff = now - timedelta(days=5)
        preview = store.cleanup(cutoff, dry_run=True)
        assert sorted(r.run_id for r in preview) == ["r0", "r1"]
        assert older_dir.is_dir()

        removed = store.cleanup(cutoff, keep_last=2)
        assert [r.run_id for r in removed] == ["r0"]
        assert not older_dir.exists()
        assert old_dir.is_dir()
        assert running_dir.is_dir()
        assert fresh_dir.is_dir()
        assert store.get_run("r0") is None
        assert store.run_tasks("r0") == []
        assert store.get_run("r2") is not None
