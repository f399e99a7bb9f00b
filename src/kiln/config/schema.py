from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

ParamKind = Literal["flag", "option", "positional"]
Interpreter = Literal["bash", "python"]

SUBTASK_SEPARATOR = ":"


@dataclass(slots=True)
class ParamSpec:
    name: str
    kind: ParamKind
    short: str | None = None
    long: str | None = None
    default: str | None = None
    choices: list[str] = field(default_factory=list)
    help: str | None = None


@dataclass(slots=True)
class ActionSpec:
    interpreter: Interpreter
    script: str


@dataclass(slots=True)
class ItemsSource:
    items: list[str]


@dataclass(slots=True)
class GlobSource:
    pattern: str


@dataclass(slots=True)
class RangeSource:
    start: int
    end: int
    width: int = 0


ItemSource = ItemsSource | GlobSource | RangeSource


@dataclass(slots=True)
class ForeachSpec:
    source: ItemSource
    var: str = "item"


@dataclass(slots=True)
class TaskSpec:
    name: str
    action: ActionSpec
    help: str | None = None
    before: list[str] = field(default_factory=list)
    after: list[str] = field(default_factory=list)
    input: list[str] = field(default_factory=list)
    output: list[str] = field(default_factory=list)
    envs: dict[str, str] = field(default_factory=dict)
    params: dict[str, ParamSpec] = field(default_factory=dict)
    foreach: ForeachSpec | None = None
    interactive: bool = False


@dataclass(slots=True)
class ProjectSpec:
    name: str = "kiln"
    jobs: int = field(default_factory=lambda: os.cpu_count() or 1)
    home: str | None = None
    tasks: list[str] = field(default_factory=lambda: ["*"])
    envs: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ConfigSpec:
    project: ProjectSpec
    tasks: dict[str, TaskSpec]
    path: Path
    root: Path

    def default_tasks(self) -> list[str]:
        if "*" in self.project.tasks:
            return list(self.tasks)
        return list(self.project.tasks)
