"""Script rendering and the on-disk input/output protocol for task actions.

Every task directory gets a builtins helper next to its ``script`` link. The
rendered script sources/imports it, loads one input record per dependency
and, after the body ran, serializes whatever the task put into its output
record.

Bash tasks exchange flat ``key=value`` files (``input.<dep>.env`` and
``output.<task>.env``) that the engine converts to and from the JSON
artifacts; python tasks read and write JSON directly.
"""

from __future__ import annotations

import json
import os
import shlex
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path

from kiln.config.params import shell_name
from kiln.config.schema import Interpreter
from kiln.util.errors import WorkspaceError
from kiln.util.paths import write_atomic

BASH_BUILTINS_NAME = "builtins.sh"
PYTHON_BUILTINS_NAME = "kiln_builtins.py"

_SECTION_RULE = "#" * 72

BASH_BUILTINS = r"""# kiln bash builtins
# Values are stored one per line as key=value with backslash and newline
# escaped as \\ and \n.

KILN_INPUT=()
KILN_OUTPUT=()

kiln_load_input() {
    local dep="$1"
    local env_file="$KILN_TASK_DIR/input.${dep}.env"
    local line key raw value
    [ -f "$env_file" ] || return 0
    while IFS= read -r line || [ -n "$line" ]; do
        case "$line" in
            ''|'#'*) continue ;;
        esac
        key="${line%%=*}"
        raw="${line#*=}"
        printf -v value '%b' "$raw"
        KILN_INPUT+=("${dep}.${key}=${value}")
    done < "$env_file"
}

kiln_get_input() {
    local key="$1"
    local item
    set +u
    for item in "${KILN_INPUT[@]}"; do
        if [[ "$item" == "$key="* ]]; then
            printf '%s\n' "${item#*=}"
            set -u
            return 0
        fi
    done
    set -u
    return 0
}

kiln_set_output() {
    local key="$1"
    local value="$2"
    local item
    local kept=()
    set +u
    for item in "${KILN_OUTPUT[@]}"; do
        if [[ "$item" != "$key="* ]]; then
            kept+=("$item")
        fi
    done
    kept+=("$key=$value")
    KILN_OUTPUT=("${kept[@]}")
    set -u
}

kiln_save_output() {
    local task="$1"
    local env_file="$KILN_TASK_DIR/output.${task}.env"
    local item key value
    : > "$env_file"
    set +u
    for item in "${KILN_OUTPUT[@]}"; do
        key="${item%%=*}"
        value="${item#*=}"
        value="${value//\\/\\\\}"
        value="${value//$'\n'/\\n}"
        printf '%s=%s\n' "$key" "$value" >> "$env_file"
    done
    set -u
}
"""

PYTHON_BUILTINS = '''"""kiln python builtins."""

import json
import os

KILN_INPUT = {}
KILN_OUTPUT = {}


def _task_dir():
    return os.environ.get("KILN_TASK_DIR", ".")


def kiln_load_input(dep):
    path = os.path.join(_task_dir(), f"input.{dep}.json")
    if not os.path.exists(path):
        return
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    for key, value in data.items():
        KILN_INPUT[f"{dep}.{key}"] = value


def kiln_get_input(key, default=None):
    return KILN_INPUT.get(key, default)


def kiln_set_output(key, value):
    KILN_OUTPUT[key] = value


def kiln_save_output(task, output=None):
    if output is None:
        import __main__

        output = getattr(__main__, "KILN_OUTPUT", KILN_OUTPUT)
    path = os.path.join(_task_dir(), f"output.{task}.json")
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(output, f, indent=2, sort_keys=True)
    os.replace(tmp, path)
'''


def script_command(interpreter: Interpreter, script: Path) -> list[str]:
    if interpreter == "bash":
        return ["bash", str(script)]
    return [os.environ.get("KILN_PYTHON") or sys.executable or "python3", str(script)]


def _bash_prologue(
    deps: Sequence[str], envs: Mapping[str, str], values: Mapping[str, str]
) -> list[str]:
    lines = [
        "# kiln prologue",
        "set -euo pipefail",
        'export KILN_TASK_DIR="${KILN_TASK_DIR:-$(cd "$(dirname "$0")" && pwd)}"',
        f'source "$KILN_TASK_DIR/{BASH_BUILTINS_NAME}"',
    ]
    if envs:
        lines += ["", "# environment", _SECTION_RULE]
        lines += [f"export {key}={shlex.quote(value)}" for key, value in sorted(envs.items())]
    if values:
        lines += ["", "# parameters", _SECTION_RULE]
        lines += [
            f"{shell_name(key)}={shlex.quote(value)}" for key, value in sorted(values.items())
        ]
    if deps:
        lines += ["", "# inputs", _SECTION_RULE]
        lines += [f"kiln_load_input {shlex.quote(dep)}" for dep in deps]
    return lines


def _python_prologue(
    deps: Sequence[str], envs: Mapping[str, str], values: Mapping[str, str]
) -> list[str]:
    lines = [
        "# kiln prologue",
        "import os",
        "import sys",
        "",
        'sys.path.insert(0, os.environ.get("KILN_TASK_DIR") or os.path.dirname(os.path.abspath(__file__)))',
        "from kiln_builtins import (  # noqa: E402",
        "    KILN_INPUT,",
        "    KILN_OUTPUT,",
        "    kiln_get_input,",
        "    kiln_load_input,",
        "    kiln_save_output,",
        "    kiln_set_output,",
        ")",
    ]
    if envs:
        lines += ["", "# environment", _SECTION_RULE]
        lines += [f"os.environ[{key!r}] = {value!r}" for key, value in sorted(envs.items())]
    if values:
        lines += ["", "# parameters", _SECTION_RULE]
        lines += [f"{shell_name(key)} = {value!r}" for key, value in sorted(values.items())]
    if deps:
        lines += ["", "# inputs", _SECTION_RULE]
        lines += [f"kiln_load_input({dep!r})" for dep in deps]
    return lines


def render_script(
    interpreter: Interpreter,
    body: str,
    *,
    deps: Sequence[str] = (),
    envs: Mapping[str, str] | None = None,
    values: Mapping[str, str] | None = None,
) -> str:
    """Concatenate prologue, body and epilogue into the executable script.

    The task name is not embedded; the epilogue reads ``KILN_TASK``.
    """
    envs = envs or {}
    values = values or {}
    if interpreter == "bash":
        head = ["#!/usr/bin/env bash", *_bash_prologue(deps, envs, values)]
        tail = 'kiln_save_output "$KILN_TASK"'
    else:
        head = ["#!/usr/bin/env python3", *_python_prologue(deps, envs, values)]
        tail = 'kiln_save_output(os.environ["KILN_TASK"])'
    parts = [
        "\n".join(head),
        "",
        "# body",
        _SECTION_RULE,
        body.rstrip("\n"),
        "",
        "# epilogue",
        _SECTION_RULE,
        tail,
        "",
    ]
    return "\n".join(parts)


def write_builtins(task_dir: Path, interpreter: Interpreter) -> Path:
    if interpreter == "bash":
        path = task_dir / BASH_BUILTINS_NAME
        content = BASH_BUILTINS
    else:
        path = task_dir / PYTHON_BUILTINS_NAME
        content = PYTHON_BUILTINS
    write_atomic(path, content.encode("utf-8"), mode=0o755)
    return path


def _escape_env_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def _unescape_env_value(raw: str) -> str:
    out: list[str] = []
    idx = 0
    while idx < len(raw):
        ch = raw[idx]
        if ch == "\\" and idx + 1 < len(raw):
            nxt = raw[idx + 1]
            if nxt == "n":
                out.append("\n")
                idx += 2
                continue
            if nxt == "\\":
                out.append("\\")
                idx += 2
                continue
        out.append(ch)
        idx += 1
    return "".join(out)


def dict_to_env(data: Mapping[str, object]) -> str:
    lines = []
    for key, value in data.items():
        text = value if isinstance(value, str) else json.dumps(value, sort_keys=True)
        lines.append(f"{key}={_escape_env_value(text)}")
    return "".join(f"{line}\n" for line in lines)


def env_to_dict(text: str) -> dict[str, str]:
    data: dict[str, str] = {}
    for line in text.splitlines():
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        data[key] = _unescape_env_value(raw)
    return data


def read_output(path: Path) -> dict[str, object]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise WorkspaceError(f"failed to read task output {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise WorkspaceError(f"task output {path} must be a JSON object")
    return data


def prepare_inputs(task_dir: Path, interpreter: Interpreter, deps: Sequence[str]) -> None:
    """Write the bash view of each linked ``input.<dep>.json``."""
    if interpreter != "bash":
        return
    for dep in deps:
        data = read_output(task_dir / f"input.{dep}.json")
        write_atomic(task_dir / f"input.{dep}.env", dict_to_env(data).encode("utf-8"))


def finalize_output(task_dir: Path, name: str, interpreter: Interpreter) -> Path:
    """Make sure ``output.<name>.json`` exists after the script ran.

    Bash output is converted from ``output.<name>.env``; a task that wrote
    nothing gets an empty object so dependents always find an artifact.
    """
    json_path = task_dir / f"output.{name}.json"
    if interpreter == "bash":
        env_path = task_dir / f"output.{name}.env"
        if env_path.is_file():
            data = env_to_dict(env_path.read_text(encoding="utf-8"))
            payload = json.dumps(data, indent=2, sort_keys=True) + "\n"
            write_atomic(json_path, payload.encode("utf-8"))
    if not json_path.exists():
        write_atomic(json_path, b"{}\n")
    return json_path
