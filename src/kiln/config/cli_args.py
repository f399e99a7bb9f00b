"""Split ``task --opt value task2 ...`` command lines into per-task requests."""

from __future__ import annotations

from dataclasses import dataclass, field

from kiln.config.params import check_choice
from kiln.config.schema import SUBTASK_SEPARATOR, ConfigSpec, ParamSpec, TaskSpec
from kiln.util.errors import ConfigError, UnknownTaskError


@dataclass(slots=True)
class TaskRequest:
    name: str
    values: dict[str, str] = field(default_factory=dict)


def _template_for(config: ConfigSpec, name: str) -> TaskSpec | None:
    return config.tasks.get(name.split(SUBTASK_SEPARATOR, 1)[0])


def _find_option(spec: TaskSpec, token: str) -> ParamSpec | None:
    for param in spec.params.values():
        if param.kind == "positional":
            continue
        if token.startswith("--") and param.long == token[2:]:
            return param
        if not token.startswith("--") and param.short == token[1:]:
            return param
    return None


def _parse_section(spec: TaskSpec, name: str, tokens: list[str]) -> dict[str, str]:
    values: dict[str, str] = {}
    positionals = [p for p in spec.params.values() if p.kind == "positional"]
    idx = 0
    while idx < len(tokens):
        token = tokens[idx]
        idx += 1
        if token.startswith("-") and token != "-":
            flag, sep, inline = token.partition("=")
            param = _find_option(spec, flag)
            if param is None:
                raise ConfigError(f"task '{name}' has no option '{flag}'")
            if param.kind == "flag":
                if sep:
                    raise ConfigError(f"task '{name}' flag '{flag}' takes no value")
                values[param.name] = "true"
                continue
            if sep:
                value = inline
            else:
                if idx >= len(tokens):
                    raise ConfigError(f"task '{name}' option '{flag}' requires a value")
                value = tokens[idx]
                idx += 1
            check_choice(param, value, context=f"task '{name}'")
            values[param.name] = value
            continue
        if not positionals:
            raise ConfigError(f"task '{name}' got unexpected argument '{token}'")
        param = positionals.pop(0)
        check_choice(param, token, context=f"task '{name}'")
        values[param.name] = token
    return values


def _is_task_token(config: ConfigSpec, token: str) -> bool:
    return not token.startswith("-") and _template_for(config, token) is not None


def parse_task_args(config: ConfigSpec, tokens: list[str]) -> list[TaskRequest]:
    """Group CLI tokens into task requests.

    A token naming a declared task (or ``parent:item``) starts a new section
    unless it is consumed as the value of the preceding option. With no
    tokens the config's default task list is requested.
    """
    if not tokens:
        return [TaskRequest(name=name) for name in config.default_tasks()]

    sections: list[tuple[str, list[str]]] = []
    expecting_value = False
    for token in tokens:
        if not sections:
            if not _is_task_token(config, token):
                raise UnknownTaskError(f"unknown task '{token}'")
            sections.append((token, []))
            continue
        if not expecting_value and _is_task_token(config, token):
            sections.append((token, []))
            continue
        name, args = sections[-1]
        args.append(token)
        if expecting_value:
            expecting_value = False
        elif token.startswith("-") and "=" not in token:
            spec = _template_for(config, name)
            assert spec is not None
            param = _find_option(spec, token)
            expecting_value = param is not None and param.kind != "flag"

    requests = []
    for name, args in sections:
        spec = _template_for(config, name)
        assert spec is not None
        requests.append(TaskRequest(name=name, values=_parse_section(spec, name, args)))
    return requests
