from __future__ import annotations

import logging
import re
import textwrap
from pathlib import Path
from typing import Any

import yaml

from kiln.config.params import parse_param
from kiln.config.schema import (
    SUBTASK_SEPARATOR,
    ActionSpec,
    ConfigSpec,
    ForeachSpec,
    GlobSource,
    ItemsSource,
    ItemSource,
    ProjectSpec,
    RangeSource,
    TaskSpec,
)
from kiln.util.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = ("kiln.yml", "kiln.yaml")

_SAFE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_RANGE_PATTERN = re.compile(r"^\s*(\d+)\s*\.\.\s*(\d+)\s*$")
_TASK_NAME_MAX_LEN = 128
_ALLOWED_ROOT_KEYS = {"kiln", "tasks"}
_ALLOWED_PROJECT_KEYS = {"name", "jobs", "home", "tasks", "envs"}
_ALLOWED_TASK_KEYS = {
    "help",
    "before",
    "after",
    "input",
    "output",
    "envs",
    "params",
    "bash",
    "python",
    "foreach",
    "interactive",
}
_ALLOWED_FOREACH_KEYS = {"items", "glob", "range", "as"}


def _is_non_blank_str(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip()) and "\x00" not in value


def _is_safe_name(value: object) -> bool:
    return isinstance(value, str) and _SAFE_NAME_PATTERN.fullmatch(value) is not None


def _ensure_list_str(name: str, value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(_is_non_blank_str(v) for v in value):
        raise ConfigError(f"{name} must be list[str] without empty strings")
    return list(value)


def _ensure_envs(name: str, value: Any) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be mapping")
    envs: dict[str, str] = {}
    for key, val in value.items():
        if not isinstance(key, str) or _ENV_KEY_PATTERN.fullmatch(key) is None:
            raise ConfigError(f"{name} has invalid variable name: {key!r}")
        if isinstance(val, bool):
            val = "true" if val else "false"
        if val is None:
            val = ""
        if not isinstance(val, (str, int, float)) or "\x00" in str(val):
            raise ConfigError(f"{name}.{key} must be scalar")
        envs[key] = str(val)
    return envs


def dedent_script(content: str) -> str:
    return textwrap.dedent(content).strip()


def _parse_action(task_name: str, raw: dict[str, Any]) -> ActionSpec:
    present = [key for key in ("bash", "python") if key in raw]
    if len(present) != 1:
        raise ConfigError(f"task '{task_name}' must declare exactly one of 'bash' or 'python'")
    interpreter = present[0]
    body = raw[interpreter]
    if not isinstance(body, str):
        raise ConfigError(f"task '{task_name}' {interpreter} script must be string")
    script = dedent_script(body)
    if not script:
        raise ConfigError(f"task '{task_name}' {interpreter} script must not be empty")
    return ActionSpec(interpreter=interpreter, script=script)


def _parse_source(task_name: str, raw: dict[str, Any]) -> ItemSource:
    present = [key for key in ("items", "glob", "range") if key in raw]
    if len(present) != 1:
        raise ConfigError(
            f"task '{task_name}' foreach must declare exactly one of 'items', 'glob' or 'range'"
        )
    kind = present[0]
    value = raw[kind]
    if kind == "items":
        if not isinstance(value, list) or not all(
            isinstance(v, (str, int, float)) and not isinstance(v, bool) for v in value
        ):
            raise ConfigError(f"task '{task_name}' foreach.items must be list of scalars")
        items = [str(v) for v in value]
        if any(not _is_safe_name(v) for v in items):
            raise ConfigError(
                f"task '{task_name}' foreach.items must match ^[A-Za-z0-9][A-Za-z0-9._-]*$"
            )
        return ItemsSource(items=items)
    if kind == "glob":
        if not _is_non_blank_str(value):
            raise ConfigError(f"task '{task_name}' foreach.glob must be non-empty string")
        return GlobSource(pattern=value)
    match = _RANGE_PATTERN.fullmatch(value) if isinstance(value, str) else None
    if match is None:
        raise ConfigError(f"task '{task_name}' foreach.range must look like 'START..END'")
    start_text, end_text = match.group(1), match.group(2)
    start, end = int(start_text), int(end_text)
    if start > end:
        raise ConfigError(f"task '{task_name}' foreach.range start must be <= end")
    return RangeSource(start=start, end=end, width=max(len(start_text), len(end_text)))


def _parse_foreach(task_name: str, raw: Any) -> ForeachSpec | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigError(f"task '{task_name}' foreach must be mapping")
    unknown = set(raw) - _ALLOWED_FOREACH_KEYS
    if unknown:
        raise ConfigError(f"task '{task_name}' foreach has unknown fields: {sorted(unknown)}")
    var = raw.get("as", "item")
    if not isinstance(var, str) or _ENV_KEY_PATTERN.fullmatch(var) is None:
        raise ConfigError(f"task '{task_name}' foreach.as must be a valid variable name")
    return ForeachSpec(source=_parse_source(task_name, raw), var=var)


def _parse_task(name: Any, raw: Any) -> TaskSpec:
    if not _is_non_blank_str(name):
        raise ConfigError("task name must be non-empty string")
    if len(name) > _TASK_NAME_MAX_LEN:
        raise ConfigError(f"task name must be <= {_TASK_NAME_MAX_LEN} characters")
    if SUBTASK_SEPARATOR in name:
        raise ConfigError(f"task name '{name}' must not contain '{SUBTASK_SEPARATOR}'")
    if not _is_safe_name(name):
        raise ConfigError(f"task name '{name}' must match ^[A-Za-z0-9][A-Za-z0-9._-]*$")
    if not isinstance(raw, dict):
        raise ConfigError(f"task '{name}' must be mapping")
    unknown = set(raw) - _ALLOWED_TASK_KEYS
    if unknown:
        raise ConfigError(f"task '{name}' has unknown fields: {sorted(unknown)}")

    help_text = raw.get("help")
    if help_text is not None and not isinstance(help_text, str):
        raise ConfigError(f"task '{name}' help must be string")
    interactive = raw.get("interactive", False)
    if not isinstance(interactive, bool):
        raise ConfigError(f"task '{name}' interactive must be boolean")

    raw_params = raw.get("params") or {}
    if not isinstance(raw_params, dict):
        raise ConfigError(f"task '{name}' params must be mapping")
    params = {}
    for title, raw_param in raw_params.items():
        spec = parse_param(name, title, raw_param)
        if spec.name in params:
            raise ConfigError(f"task '{name}' declares param '{spec.name}' twice")
        params[spec.name] = spec

    before = _ensure_list_str(f"task '{name}' before", raw.get("before"))
    after = _ensure_list_str(f"task '{name}' after", raw.get("after"))

    return TaskSpec(
        name=name,
        action=_parse_action(name, raw),
        help=help_text,
        before=before,
        after=after,
        input=_ensure_list_str(f"task '{name}' input", raw.get("input")),
        output=_ensure_list_str(f"task '{name}' output", raw.get("output")),
        envs=_ensure_envs(f"task '{name}' envs", raw.get("envs")),
        params=params,
        foreach=_parse_foreach(name, raw.get("foreach")),
        interactive=interactive,
    )


def _parse_project(raw: Any) -> ProjectSpec:
    if raw is None:
        return ProjectSpec()
    if not isinstance(raw, dict):
        raise ConfigError("kiln section must be mapping")
    unknown = set(raw) - _ALLOWED_PROJECT_KEYS
    if unknown:
        raise ConfigError(f"kiln section has unknown fields: {sorted(unknown)}")
    project = ProjectSpec()
    if "name" in raw:
        if not _is_safe_name(raw["name"]):
            raise ConfigError("kiln.name must match ^[A-Za-z0-9][A-Za-z0-9._-]*$")
        project.name = raw["name"]
    if "jobs" in raw:
        jobs = raw["jobs"]
        if not isinstance(jobs, int) or isinstance(jobs, bool) or jobs < 1:
            raise ConfigError("kiln.jobs must be int >= 1")
        project.jobs = jobs
    if raw.get("home") is not None:
        if not _is_non_blank_str(raw["home"]):
            raise ConfigError("kiln.home must be non-empty string")
        project.home = raw["home"]
    if "tasks" in raw:
        project.tasks = _ensure_list_str("kiln.tasks", raw["tasks"])
    project.envs = _ensure_envs("kiln.envs", raw.get("envs"))
    return project


def parse_config(raw: Any, path: Path) -> ConfigSpec:
    if not isinstance(raw, dict):
        raise ConfigError("config root must be a mapping")
    if any(not isinstance(key, str) for key in raw):
        raise ConfigError("config root keys must be strings")
    unknown_root = set(raw) - _ALLOWED_ROOT_KEYS
    if unknown_root:
        raise ConfigError(f"config contains unknown fields: {sorted(unknown_root)}")

    raw_tasks = raw.get("tasks")
    if not isinstance(raw_tasks, dict) or not raw_tasks:
        raise ConfigError("config.tasks must be a non-empty mapping")
    tasks = {}
    for name, raw_task in raw_tasks.items():
        task = _parse_task(name, raw_task)
        tasks[task.name] = task

    project = _parse_project(raw.get("kiln"))
    for name in project.tasks:
        if name != "*" and name.split(SUBTASK_SEPARATOR, 1)[0] not in tasks:
            raise ConfigError(f"kiln.tasks references unknown task '{name}'")

    resolved = path.resolve()
    return ConfigSpec(project=project, tasks=tasks, path=resolved, root=resolved.parent)


def load_config(path: Path) -> ConfigSpec:
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except UnicodeError as exc:
        raise ConfigError(f"failed to decode config file as utf-8: {path}") from exc
    except OSError as exc:
        raise ConfigError(f"failed to read config file: {path}") from exc

    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse yaml: {exc}") from exc

    config = parse_config(raw, path)
    logger.debug("loaded %d task(s) from %s", len(config.tasks), config.path)
    return config


def find_config(start: Path) -> Path:
    """Walk up from ``start`` to the first directory holding a config file."""
    current = start.resolve()
    while True:
        for filename in CONFIG_FILENAMES:
            candidate = current / filename
            if candidate.is_file():
                return candidate
        if current == current.parent:
            raise ConfigError(f"no {CONFIG_FILENAMES[0]} found in {start} or its parents")
        current = current.parent
