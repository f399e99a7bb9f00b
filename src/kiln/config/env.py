"""Evaluation of ``envs`` maps: command substitution and variable references."""

from __future__ import annotations

import logging
import os
import re
import subprocess
from collections.abc import Mapping
from pathlib import Path

from kiln.util.errors import ConfigError

logger = logging.getLogger(__name__)

_COMMAND_PATTERN = re.compile(r"\$\(([^)]+)\)")
_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")
_COMMAND_TIMEOUT_SEC = 30.0


def _run_command(command: str, cwd: Path, env: Mapping[str, str]) -> str:
    logger.debug("evaluating env command: %s", command)
    try:
        proc = subprocess.run(
            ["sh", "-c", command],
            cwd=str(cwd),
            env=dict(env),
            capture_output=True,
            text=True,
            timeout=_COMMAND_TIMEOUT_SEC,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        raise ConfigError(f"failed to run env command '{command}': {exc}") from exc
    if proc.returncode != 0:
        detail = proc.stderr.strip() or f"exit code {proc.returncode}"
        raise ConfigError(f"env command '{command}' failed: {detail}")
    return proc.stdout.strip()


def _references(value: str) -> set[str]:
    return {m.group(1) or m.group(2) for m in _VAR_PATTERN.finditer(value)}


def _substitute(value: str, context: Mapping[str, str]) -> str:
    return _VAR_PATTERN.sub(lambda m: context.get(m.group(1) or m.group(2), ""), value)


def evaluate_envs(
    envs: Mapping[str, str],
    cwd: Path,
    *,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Resolve ``$(cmd)`` and ``${VAR}`` in every value of ``envs``.

    Variables resolve against values already evaluated from ``envs`` first,
    then ``base`` (the process environment by default). Values are evaluated
    once their own references are resolved, so declaration order does not
    matter. A value referring to its own name sees the ``base`` value.
    Unknown variables expand to an empty string.
    """
    context = dict(os.environ if base is None else base)

    evaluated: dict[str, str] = {}
    pending = list(envs)
    while pending:
        progressed = False
        deferred: list[str] = []
        for key in pending:
            raw = envs[key]
            waiting = {ref for ref in _references(raw) if ref in envs and ref not in evaluated}
            waiting.discard(key)
            if waiting:
                deferred.append(key)
                continue
            value = _COMMAND_PATTERN.sub(
                lambda m: _run_command(m.group(1), cwd, context), raw
            )
            value = _substitute(value, context)
            evaluated[key] = value
            context[key] = value
            progressed = True
        if not progressed:
            raise ConfigError(f"circular env references between: {', '.join(sorted(deferred))}")
        pending = deferred
    return evaluated


def merge_envs(*layers: Mapping[str, str]) -> dict[str, str]:
    merged: dict[str, str] = {}
    for layer in layers:
        merged.update(layer)
    return merged
