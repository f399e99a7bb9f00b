"""Terminal rendering of task events."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape

from kiln.exec.events import TaskEvent

_STATUS_STYLE = {
    "completed": "green",
    "failed": "red",
    "skipped": "yellow",
}


class ConsoleReporter:
    """Prints task output prefixed by the task name.

    Output chunks are split into lines per task and stream; a trailing
    partial line is held back until its newline arrives or the task ends.
    """

    def __init__(self, console: Console, *, show_output: bool = True) -> None:
        self.console = console
        self.show_output = show_output
        self._partial: dict[tuple[str, str], str] = {}

    def __call__(self, event: TaskEvent) -> None:
        if event.kind == "started":
            self.console.print(f"[cyan]>[/cyan] [bold]{escape(event.task)}[/bold]")
        elif event.kind == "output":
            self._output(event)
        elif event.kind == "finished":
            self._flush(event.task)
            self._finished(event)

    def _output(self, event: TaskEvent) -> None:
        # pty output already reached the terminal directly.
        if not self.show_output or event.stream in (None, "pty"):
            return
        key = (event.task, event.stream)
        text = self._partial.pop(key, "") + event.data.decode("utf-8", errors="replace")
        *lines, rest = text.split("\n")
        for line in lines:
            self._line(event.task, event.stream, line)
        if rest:
            self._partial[key] = rest

    def _line(self, task: str, stream: str, line: str) -> None:
        style = "red" if stream == "stderr" else "dim"
        self.console.print(f"[{style}]{escape(task)} |[/{style}] {escape(line)}", highlight=False)

    def _flush(self, task: str) -> None:
        for key in [key for key in self._partial if key[0] == task]:
            self._line(task, key[1], self._partial.pop(key))

    def _finished(self, event: TaskEvent) -> None:
        status = event.status or "?"
        style = _STATUS_STYLE.get(status, "white")
        detail = event.detail
        parts = [f"[{style}]{status}[/{style}]"]
        if detail.get("skip_reason"):
            parts.append(f"({detail['skip_reason']})")
        if detail.get("blocked_by"):
            parts.append(f"by {escape(str(detail['blocked_by']))}")
        if status == "failed" and detail.get("exit_code") is not None:
            parts.append(f"exit={detail['exit_code']}")
        if detail.get("duration_sec"):
            parts.append(f"{detail['duration_sec']}s")
        self.console.print(f"[bold]{escape(event.task)}[/bold] " + " ".join(parts))
