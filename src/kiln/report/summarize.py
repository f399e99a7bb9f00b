from __future__ import annotations

from kiln.dag.build import TaskGraph
from kiln.exec.scheduler import RunResult
from kiln.util.tail import tail_lines
from kiln.workspace.layout import Workspace

_PROBLEM_TAIL_LINES = 30


def build_summary(result: RunResult, graph: TaskGraph, workspace: Workspace) -> dict[str, object]:
    tasks_rows: list[dict[str, object]] = []
    problem_rows: list[dict[str, object]] = []
    artifact_rows: list[dict[str, object]] = []

    for name, outcome in result.tasks.items():
        task = graph.tasks[name]
        tasks_rows.append(
            {
                "name": name,
                "status": outcome.status,
                "skip_reason": outcome.skip_reason,
                "duration_sec": outcome.duration_sec,
                "exit_code": outcome.exit_code,
                "hash": outcome.script_hash,
                "stdout_path": str(workspace.stdout_path(name)),
                "stderr_path": str(workspace.stderr_path(name)),
            }
        )
        if outcome.status == "failed" or outcome.skip_reason in {"blocked", "canceled"}:
            problem_rows.append(
                {
                    "name": name,
                    "status": outcome.status,
                    "skip_reason": outcome.skip_reason,
                    "blocked_by": outcome.blocked_by,
                    "stderr_tail": tail_lines(workspace.stderr_path(name), _PROBLEM_TAIL_LINES),
                }
            )
        if outcome.status == "completed" or outcome.skip_reason == "up_to_date":
            output = workspace.output_path(name)
            if output.is_file():
                artifact_rows.append({"task": name, "path": str(output)})
            for declared in task.outputs:
                artifact_rows.append({"task": name, "path": declared})

    return {
        "run": {
            "run_id": result.run_id,
            "status": result.status,
            "started_at": result.started_at,
            "ended_at": result.ended_at,
            "run_dir": str(workspace.run_dir),
            "project_root": str(workspace.root),
        },
        "tasks": tasks_rows,
        "problems": problem_rows,
        "artifacts": artifact_rows,
    }
