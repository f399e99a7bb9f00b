"""SQLModel-backed run history."""

from __future__ import annotations

import json
import logging
import shutil
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from alembic.util import CommandError
from sqlalchemy import ColumnElement, and_, case, event, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool
from sqlmodel import Session, col, create_engine, delete, select

from kiln.state.migrate import upgrade_head
from kiln.state.model import (
    RunContext,
    RunRecord,
    RunStatus,
    StatsFilter,
    TaskRecord,
    TaskStats,
)
from kiln.state.tables import ProjectRow, RunRow, TaskRow
from kiln.util.errors import StateError
from kiln.util.path_guard import is_symlink_path
from kiln.util.time import now_iso, parse_iso

logger = logging.getLogger(__name__)

_BUSY_TIMEOUT_MS = 10_000


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, _: object) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {_BUSY_TIMEOUT_MS}")
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


def _epoch(value: str) -> float:
    parsed = parse_iso(value)
    if parsed is None:
        return datetime.now().astimezone().timestamp()
    return parsed.timestamp()


def _to_task_record(row: TaskRow, run_id: str) -> TaskRecord:
    return TaskRecord(
        name=row.name,
        status=row.status,  # type: ignore[arg-type]
        script_hash=row.script_hash,
        inputs_digest=row.inputs_digest,
        skip_reason=row.skip_reason,  # type: ignore[arg-type]
        exit_code=row.exit_code,
        started_at=row.started_at,
        ended_at=row.ended_at,
        duration_sec=row.duration_sec,
        stdout_path=row.stdout_path,
        stderr_path=row.stderr_path,
        output_path=row.output_path,
        run_id=run_id,
    )


def _to_run_record(run: RunRow, project: ProjectRow) -> RunRecord:
    return RunRecord(
        run_id=run.run_id,
        project_hash=project.hash,
        project_name=project.name,
        status=run.status,  # type: ignore[arg-type]
        started_at=run.started_at,
        run_dir=run.run_dir,
        ended_at=run.ended_at,
        duration_sec=run.duration_sec,
        size_bytes=run.size_bytes,
        config_path=run.config_path,
        cwd=run.cwd,
        user=run.user,
        hostname=run.hostname,
        args=run.args,
    )


def _usable_task() -> ColumnElement[bool]:
    return or_(
        col(TaskRow.status) == "completed",
        and_(col(TaskRow.status) == "skipped", col(TaskRow.skip_reason) == "up_to_date"),
    )


class StateStore:
    """Run/task metadata persistence facade backed by SQLModel + SQLite.

    Every public method runs in its own session and transaction under one
    lock, so concurrent completions never interleave partial records.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False, "timeout": _BUSY_TIMEOUT_MS / 1000.0},
            poolclass=NullPool,
        )
        event.listen(self.engine, "connect", _apply_sqlite_pragmas)
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            upgrade_head(self.engine)
        except (OSError, SQLAlchemyError, CommandError) as exc:
            self.engine.dispose()
            raise StateError(f"failed to open state database {db_path}: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self.engine.dispose()

    def __enter__(self) -> StateStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._lock:
            try:
                with Session(self.engine) as session:
                    yield session
                    session.commit()
            except SQLAlchemyError as exc:
                raise StateError(f"state database error: {exc}") from exc

    @staticmethod
    def _run_row(session: Session, run_id: str) -> RunRow:
        row = session.exec(select(RunRow).where(col(RunRow.run_id) == run_id)).one_or_none()
        if row is None:
            raise StateError(f"unknown run: {run_id}")
        return row

    def begin_run(
        self,
        *,
        project_hash: str,
        project_name: str,
        run_id: str,
        run_dir: Path,
        context: RunContext,
        started_at: str | None = None,
    ) -> str:
        started = started_at or now_iso()
        with self._session() as session:
            project = session.exec(
                select(ProjectRow).where(col(ProjectRow.hash) == project_hash)
            ).one_or_none()
            if project is None:
                project = ProjectRow(
                    hash=project_hash,
                    name=project_name,
                    config_path=context.config_path,
                    first_seen=started,
                    last_seen=started,
                    run_count=0,
                )
            project.name = project_name
            project.last_seen = started
            project.run_count += 1
            session.add(project)
            session.flush()
            session.add(
                RunRow(
                    project_id=project.id,
                    run_id=run_id,
                    status="running",
                    started_at=started,
                    started_epoch=_epoch(started),
                    run_dir=str(run_dir),
                    config_path=context.config_path,
                    cwd=context.cwd,
                    user=context.user,
                    hostname=context.hostname,
                    args=json.dumps(context.args),
                )
            )
        logger.debug("recorded run start %s", run_id)
        return run_id

    def record_task(self, run_id: str, record: TaskRecord) -> None:
        with self._session() as session:
            run = self._run_row(session, run_id)
            row = session.exec(
                select(TaskRow).where(
                    col(TaskRow.run_id) == run.id, col(TaskRow.name) == record.name
                )
            ).one_or_none()
            if row is None:
                row = TaskRow(
                    run_id=run.id,
                    name=record.name,
                    status=record.status,
                    script_hash=record.script_hash,
                    inputs_digest=record.inputs_digest,
                    started_at=record.started_at,
                    stdout_path=record.stdout_path,
                    stderr_path=record.stderr_path,
                )
            row.status = record.status
            row.skip_reason = record.skip_reason
            row.exit_code = record.exit_code
            row.ended_at = record.ended_at
            row.duration_sec = record.duration_sec
            row.output_path = record.output_path
            session.add(row)

    def finish_run(
        self,
        run_id: str,
        status: RunStatus,
        *,
        size_bytes: int | None = None,
        ended_at: str | None = None,
    ) -> None:
        ended = ended_at or now_iso()
        with self._session() as session:
            run = self._run_row(session, run_id)
            run.status = status
            run.ended_at = ended
            run.duration_sec = round(max(0.0, _epoch(ended) - run.started_epoch), 3)
            run.size_bytes = size_bytes
            session.add(run)

    def last_success(self, project_hash: str, name: str) -> TaskRecord | None:
        """Most recent record of ``name`` that produced a usable output."""
        with self._session() as session:
            found = session.exec(
                select(TaskRow, RunRow.run_id)
                .join(RunRow, col(RunRow.id) == col(TaskRow.run_id))
                .join(ProjectRow, col(ProjectRow.id) == col(RunRow.project_id))
                .where(
                    col(ProjectRow.hash) == project_hash,
                    col(TaskRow.name) == name,
                    _usable_task(),
                )
                .order_by(col(RunRow.started_epoch).desc(), col(TaskRow.id).desc())
                .limit(1)
            ).first()
            return None if found is None else _to_task_record(found[0], found[1])

    def run_tasks(self, run_id: str) -> list[TaskRecord]:
        with self._session() as session:
            rows = session.exec(
                select(TaskRow)
                .join(RunRow, col(RunRow.id) == col(TaskRow.run_id))
                .where(col(RunRow.run_id) == run_id)
                .order_by(col(TaskRow.id))
            ).all()
            return [_to_task_record(row, run_id) for row in rows]

    def get_run(self, run_id: str) -> RunRecord | None:
        with self._session() as session:
            found = session.exec(
                select(RunRow, ProjectRow)
                .join(ProjectRow, col(ProjectRow.id) == col(RunRow.project_id))
                .where(col(RunRow.run_id) == run_id)
            ).first()
            return None if found is None else _to_run_record(found[0], found[1])

    def recent_runs(self, limit: int = 20, *, project_hash: str | None = None) -> list[RunRecord]:
        statement = select(RunRow, ProjectRow).join(
            ProjectRow, col(ProjectRow.id) == col(RunRow.project_id)
        )
        if project_hash is not None:
            statement = statement.where(col(ProjectRow.hash) == project_hash)
        statement = statement.order_by(
            col(RunRow.started_epoch).desc(), col(RunRow.id).desc()
        ).limit(limit)
        with self._session() as session:
            return [_to_run_record(run, project) for run, project in session.exec(statement).all()]

    def query_stats(self, stats_filter: StatsFilter | None = None) -> list[TaskStats]:
        """Aggregate task rows per (project, task name)."""
        stats_filter = stats_filter or StatsFilter()
        clauses = []
        if stats_filter.project_hash is not None:
            clauses.append(col(ProjectRow.hash) == stats_filter.project_hash)
        if stats_filter.task is not None:
            clauses.append(col(TaskRow.name) == stats_filter.task)
        if stats_filter.since is not None:
            clauses.append(col(RunRow.started_epoch) >= _epoch(stats_filter.since))

        executed_duration = case(
            (col(TaskRow.status) != "skipped", col(TaskRow.duration_sec)), else_=None
        )

        def _count(status: str) -> object:
            return func.sum(case((col(TaskRow.status) == status, 1), else_=0))

        statement = (
            select(
                ProjectRow.hash,
                ProjectRow.name,
                TaskRow.name,
                func.count(),
                _count("completed"),
                _count("failed"),
                _count("skipped"),
                func.avg(executed_duration),
                func.min(executed_duration),
                func.max(executed_duration),
                func.max(RunRow.started_at),
            )
            .select_from(TaskRow)
            .join(RunRow, col(RunRow.id) == col(TaskRow.run_id))
            .join(ProjectRow, col(ProjectRow.id) == col(RunRow.project_id))
            .where(*clauses)
            .group_by(col(ProjectRow.hash), col(TaskRow.name))
            .order_by(col(ProjectRow.name), col(TaskRow.name))
        )
        with self._session() as session:
            rows = session.exec(statement).all()
        return [
            TaskStats(
                project_hash=p_hash,
                project_name=p_name,
                task=task,
                runs=runs,
                completed=completed or 0,
                failed=failed or 0,
                skipped=skipped or 0,
                avg_duration_sec=None if avg is None else round(avg, 3),
                min_duration_sec=low,
                max_duration_sec=high,
                last_run_at=last,
            )
            for (
                p_hash,
                p_name,
                task,
                runs,
                completed,
                failed,
                skipped,
                avg,
                low,
                high,
                last,
            ) in rows
        ]

    def cleanup(
        self,
        before: datetime,
        *,
        keep_last: int = 0,
        project_hash: str | None = None,
        dry_run: bool = False,
    ) -> list[RunRecord]:
        """Delete finished runs started before ``before`` with their run dirs.

        The newest ``keep_last`` runs of each project are always kept.
        """
        statement = (
            select(RunRow, ProjectRow)
            .join(ProjectRow, col(ProjectRow.id) == col(RunRow.project_id))
            .where(col(RunRow.status) != "running")
        )
        if project_hash is not None:
            statement = statement.where(col(ProjectRow.hash) == project_hash)
        statement = statement.order_by(
            col(ProjectRow.hash), col(RunRow.started_epoch).desc(), col(RunRow.id).desc()
        )
        threshold = before.timestamp()
        with self._session() as session:
            seen_per_project: dict[str, int] = {}
            doomed: list[RunRecord] = []
            for run, project in session.exec(statement).all():
                rank = seen_per_project.get(project.hash, 0)
                seen_per_project[project.hash] = rank + 1
                if rank < keep_last or run.started_epoch >= threshold:
                    continue
                doomed.append(_to_run_record(run, project))
            if not dry_run and doomed:
                session.exec(
                    delete(RunRow).where(col(RunRow.run_id).in_([run.run_id for run in doomed]))
                )
        if not dry_run:
            for run in doomed:
                _remove_run_dir(Path(run.run_dir))
        logger.info("cleanup %s %d run(s)", "would remove" if dry_run else "removed", len(doomed))
        return doomed


def _remove_run_dir(path: Path) -> None:
    if is_symlink_path(path) or not path.is_dir():
        return
    try:
        shutil.rmtree(path)
    except OSError:
        logger.warning("failed to remove run directory %s", path, exc_info=True)
