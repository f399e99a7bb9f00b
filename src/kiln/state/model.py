from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

RunStatus = Literal["running", "success", "failed", "canceled"]
TaskStatus = Literal["pending", "ready", "running", "completed", "failed", "skipped"]
SkipReason = Literal["up_to_date", "blocked", "canceled"]
RecordedTaskStatus = Literal["completed", "failed", "skipped"]

TERMINAL_TASK_STATUSES: frozenset[str] = frozenset({"completed", "failed", "skipped"})
RUN_STATUS_VALUES: frozenset[str] = frozenset({"running", "success", "failed", "canceled"})


@dataclass(slots=True)
class RunContext:
    config_path: str
    cwd: str
    user: str
    hostname: str
    args: list[str]


@dataclass(slots=True)
class RunRecord:
    run_id: str
    project_hash: str
    project_name: str
    status: RunStatus
    started_at: str
    run_dir: str
    ended_at: str | None = None
    duration_sec: float | None = None
    size_bytes: int | None = None
    config_path: str | None = None
    cwd: str | None = None
    user: str | None = None
    hostname: str | None = None
    args: str | None = None


@dataclass(slots=True)
class TaskRecord:
    name: str
    status: RecordedTaskStatus
    script_hash: str
    inputs_digest: str | None = None
    skip_reason: SkipReason | None = None
    exit_code: int | None = None
    started_at: str | None = None
    ended_at: str | None = None
    duration_sec: float | None = None
    stdout_path: str | None = None
    stderr_path: str | None = None
    output_path: str | None = None
    run_id: str | None = None


@dataclass(slots=True)
class StatsFilter:
    project_hash: str | None = None
    task: str | None = None
    since: str | None = None


@dataclass(slots=True)
class TaskStats:
    project_hash: str
    project_name: str
    task: str
    runs: int
    completed: int
    failed: int
    skipped: int
    avg_duration_sec: float | None
    min_duration_sec: float | None
    max_duration_sec: float | None
    last_run_at: str | None

    @property
    def success_rate(self) -> float:
        executed = self.completed + self.failed
        if executed == 0:
            return 0.0
        return round(self.completed / executed, 3)
