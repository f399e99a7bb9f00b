"""Task parameter declarations and value resolution."""

from __future__ import annotations

import re
from typing import Any

from kiln.config.schema import ParamSpec
from kiln.util.errors import ConfigError

_ALLOWED_PARAM_KEYS = {"default", "choices", "help"}
_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
_BOOL_STRINGS = {"true", "false"}


def parse_title(title: str) -> tuple[str, str | None, str | None]:
    """Split ``-v|--verbose`` into (name, short, long).

    The name is the long form when present, then the short form, then the
    bare title for positionals.
    """
    short: str | None = None
    long: str | None = None
    for part in (p.strip() for p in title.split("|")):
        if part.startswith("--") and len(part) > 2:
            long = part[2:]
        elif part.startswith("-") and len(part) == 2:
            short = part[1:]
        elif part.startswith("-"):
            raise ConfigError(f"invalid param title '{title}'")
    if long is not None:
        return long, short, long
    if short is not None:
        return short, short, None
    return title.strip(), None, None


def _default_to_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, str)):
        return str(value)
    raise ConfigError(f"param default must be scalar, got {type(value).__name__}")


def parse_param(task_name: str, title: object, raw: Any) -> ParamSpec:
    if not isinstance(title, str) or not title.strip():
        raise ConfigError(f"task '{task_name}' has an empty param title")
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"task '{task_name}' param '{title}' must be mapping")
    unknown = set(raw) - _ALLOWED_PARAM_KEYS
    if unknown:
        raise ConfigError(f"task '{task_name}' param '{title}' has unknown fields: {sorted(unknown)}")

    name, short, long = parse_title(title)
    if _NAME_PATTERN.fullmatch(name) is None:
        raise ConfigError(f"task '{task_name}' param '{title}' has invalid name '{name}'")

    default = _default_to_str(raw.get("default"))
    choices = raw.get("choices", [])
    if not isinstance(choices, list) or not all(isinstance(c, (str, int, float)) for c in choices):
        raise ConfigError(f"task '{task_name}' param '{name}' choices must be list[str]")
    choices = [str(c) for c in choices]
    help_text = raw.get("help")
    if help_text is not None and not isinstance(help_text, str):
        raise ConfigError(f"task '{task_name}' param '{name}' help must be string")

    if short is None and long is None:
        kind = "positional"
    elif isinstance(raw.get("default"), bool) or (
        default is not None and default.lower() in _BOOL_STRINGS
    ):
        kind = "flag"
        default = default.lower() if default is not None else "false"
    else:
        kind = "option"

    spec = ParamSpec(
        name=name,
        kind=kind,
        short=short,
        long=long,
        default=default,
        choices=choices,
        help=help_text,
    )
    if default is not None and kind != "flag":
        check_choice(spec, default, context=f"task '{task_name}' default")
    return spec


def check_choice(spec: ParamSpec, value: str, *, context: str) -> None:
    if spec.choices and value not in spec.choices:
        raise ConfigError(
            f"{context}: invalid value '{value}' for param '{spec.name}' "
            f"(choose from {', '.join(spec.choices)})"
        )


def default_value(spec: ParamSpec) -> str | None:
    if spec.kind == "flag":
        return spec.default or "false"
    return spec.default


def shell_name(name: str) -> str:
    """Parameter names become script variables with hyphens replaced."""
    return name.replace("-", "_")
