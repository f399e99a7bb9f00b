"""SQLModel ORM tables for run history."""

from __future__ import annotations

from sqlalchemy import Column, ForeignKey, Index, Integer, UniqueConstraint
from sqlmodel import Field, SQLModel


class ProjectRow(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    hash: str = Field(unique=True)
    name: str
    config_path: str
    first_seen: str
    last_seen: str
    run_count: int = 0


class RunRow(SQLModel, table=True):
    __tablename__ = "runs"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_runs_project_started", "project_id", "started_epoch"),)

    id: int | None = Field(default=None, primary_key=True)
    project_id: int = Field(
        sa_column=Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    )
    run_id: str = Field(unique=True)
    status: str
    started_at: str
    started_epoch: float
    run_dir: str
    ended_at: str | None = None
    duration_sec: float | None = None
    size_bytes: int | None = None
    config_path: str | None = None
    cwd: str | None = None
    user: str | None = None
    hostname: str | None = None
    args: str | None = None


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("run_id", "name", name="uq_tasks_run_name"),
        Index("ix_tasks_name_status", "name", "status"),
    )

    id: int | None = Field(default=None, primary_key=True)
    run_id: int = Field(
        sa_column=Column(Integer, ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    )
    name: str
    status: str
    script_hash: str
    skip_reason: str | None = None
    inputs_digest: str | None = None
    exit_code: int | None = None
    started_at: str | None = None
    ended_at: str | None = None
    duration_sec: float | None = None
    stdout_path: str | None = None
    stderr_path: str | None = None
    output_path: str | None = None
