"""Input fingerprints used to decide whether a cached result is reusable."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from kiln.dag.task import Task
from kiln.workspace.layout import Workspace

_CHUNK_SIZE = 1 << 16


def file_digest(path: Path) -> str | None:
    """SHA-256 of a regular file's content, None when it is not readable."""
    digest = hashlib.sha256()
    try:
        with path.open("rb") as f:
            while True:
                chunk = f.read(_CHUNK_SIZE)
                if not chunk:
                    break
                digest.update(chunk)
    except OSError:
        return None
    return digest.hexdigest()


def _update(digest: Any, *parts: str) -> None:
    for part in parts:
        digest.update(part.encode("utf-8"))
        digest.update(b"\0")


def _file_size(path: Path) -> str:
    try:
        return str(path.stat().st_size)
    except OSError:
        return "missing"


def inputs_digest(task: Task, workspace: Workspace) -> str:
    """Digest of declared input files plus every dependency's output artifact.

    Each file contributes its path, size and content digest.
    """
    digest = hashlib.sha256()
    for raw in sorted(task.inputs):
        path = Path(raw)
        _update(digest, "input", raw, _file_size(path), file_digest(path) or "missing")
    for dep in sorted(task.deps):
        path = workspace.output_path(dep)
        _update(digest, "dep", dep, _file_size(path), file_digest(path) or "missing")
    return digest.hexdigest()


def outputs_present(paths: Iterable[str]) -> bool:
    return all(Path(path).exists() for path in paths)
