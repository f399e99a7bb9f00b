from __future__ import annotations

from typing import Any


def _cell(value: object) -> str:
    return "-" if value is None else str(value)


def render_markdown(summary: dict[str, Any]) -> str:
    run = summary["run"]
    tasks = summary["tasks"]
    problems = summary["problems"]
    artifacts = summary["artifacts"]

    lines: list[str] = []
    lines.append("# Run Summary")
    lines.append("")
    lines.append("## Overview")
    lines.append("")
    lines.append(f"- run_id: `{run['run_id']}`")
    lines.append(f"- status: **{run['status']}**")
    lines.append(f"- started: {run['started_at']}")
    lines.append(f"- ended: {run['ended_at']}")
    lines.append(f"- run_dir: `{run['run_dir']}`")
    lines.append(f"- project_root: `{run['project_root']}`")
    lines.append("")
    lines.append("## Tasks")
    lines.append("")
    lines.append("| task | status | reason | duration_sec | exit_code | hash | logs |")
    lines.append("|---|---|---|---:|---:|---|---|")
    for row in tasks:
        logs = f"`{row['stdout_path']}` / `{row['stderr_path']}`"
        lines.append(
            f"| {row['name']} | {row['status']} | {_cell(row['skip_reason'])} | "
            f"{_cell(row['duration_sec'])} | {_cell(row['exit_code'])} | "
            f"`{row['hash']}` | {logs} |"
        )
    lines.append("")
    lines.append("## Failed / Blocked / Canceled")
    lines.append("")
    if problems:
        for row in problems:
            lines.append(f"### {row['name']} ({row['status']})")
            if row["skip_reason"]:
                lines.append(f"- reason: `{row['skip_reason']}`")
            if row["blocked_by"]:
                lines.append(f"- blocked_by: `{row['blocked_by']}`")
            if row["status"] == "failed":
                lines.append("- stderr tail:")
                lines.append("```")
                lines.extend(row["stderr_tail"] or ["(empty)"])
                lines.append("```")
            lines.append("")
    else:
        lines.append("No failed, blocked or canceled tasks.")
        lines.append("")
    lines.append("## Artifacts")
    lines.append("")
    if artifacts:
        for artifact in artifacts:
            lines.append(f"- `{artifact['path']}` (task: `{artifact['task']}`)")
    else:
        lines.append("- (none)")
    lines.append("")
    return "\n".join(lines)
