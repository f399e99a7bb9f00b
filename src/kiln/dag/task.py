from __future__ import annotations

from dataclasses import dataclass, field

from kiln.config.schema import Interpreter


@dataclass(frozen=True, slots=True)
class Task:
    """A resolved, executable unit of work."""

    name: str
    interpreter: Interpreter
    body: str
    script: str
    hash: str
    parent: str | None = None
    deps: tuple[str, ...] = ()
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    envs: dict[str, str] = field(default_factory=dict)
    values: dict[str, str] = field(default_factory=dict)
    interactive: bool = False
    help: str | None = None
