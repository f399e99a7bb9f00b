"""On-disk layout of a project workspace and one run inside it.

```
<home>/<name>-<project-id>/
  .cache/<hash>
  <run-id>/
    run.yaml
    tasks/<task>/script -> ../../../.cache/<hash>
    tasks/<task>/input.<dep>.json -> ../<dep>/output.<dep>.json
```
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import yaml

from kiln.config.schema import ConfigSpec
from kiln.dag.task import Task
from kiln.util.errors import WorkspaceError
from kiln.util.ids import content_hash, new_run_id, project_hash
from kiln.util.path_guard import is_symlink_path
from kiln.util.paths import directory_size, ensure_directory, write_atomic

logger = logging.getLogger(__name__)

CACHE_DIRNAME = ".cache"
TASKS_DIRNAME = "tasks"
SCRIPT_NAME = "script"
RUN_CONTEXT_NAME = "run.yaml"
SUMMARY_NAME = "summary.md"


def project_dirname(config: ConfigSpec) -> str:
    return f"{config.project.name}-{project_hash(str(config.path))}"


@dataclass(slots=True)
class Workspace:
    root: Path
    home: Path
    project_dir: Path
    project_id: str
    run_id: str

    @classmethod
    def create(cls, config: ConfigSpec, home: Path, *, now: datetime | None = None) -> Workspace:
        home = home.expanduser().resolve()
        run_id = new_run_id(now or datetime.now().astimezone())
        workspace = cls(
            root=config.root,
            home=home,
            project_dir=home / project_dirname(config),
            project_id=project_hash(str(config.path)),
            run_id=run_id,
        )
        workspace.init()
        return workspace

    @property
    def cache_dir(self) -> Path:
        return self.project_dir / CACHE_DIRNAME

    @property
    def run_dir(self) -> Path:
        return self.project_dir / self.run_id

    @property
    def tasks_dir(self) -> Path:
        return self.run_dir / TASKS_DIRNAME

    def init(self) -> None:
        try:
            self.home.mkdir(parents=True, exist_ok=True)
            for path in (self.project_dir, self.cache_dir, self.run_dir, self.tasks_dir):
                ensure_directory(path, stop_at=self.home)
        except OSError as exc:
            raise WorkspaceError(f"failed to initialize workspace {self.project_dir}: {exc}") from exc

    def task_dir(self, name: str) -> Path:
        return self.tasks_dir / name

    def script_path(self, name: str) -> Path:
        return self.task_dir(name) / SCRIPT_NAME

    def stdout_path(self, name: str) -> Path:
        return self.task_dir(name) / "stdout.log"

    def stderr_path(self, name: str) -> Path:
        return self.task_dir(name) / "stderr.log"

    def output_path(self, name: str) -> Path:
        return self.task_dir(name) / f"output.{name}.json"

    def input_path(self, name: str, dep: str) -> Path:
        return self.task_dir(name) / f"input.{dep}.json"

    def store_script(self, content: str) -> str:
        """Write ``content`` into the cache once and return its hash."""
        digest = content_hash(content)
        path = self.cache_dir / digest
        if path.is_file():
            return digest
        try:
            write_atomic(path, content.encode("utf-8"), mode=0o755)
        except OSError as exc:
            raise WorkspaceError(f"failed to cache script {digest}: {exc}") from exc
        logger.debug("cached script %s", digest)
        return digest

    def _replace_symlink(self, link: Path, target: str) -> None:
        if is_symlink_path(link) or link.exists():
            link.unlink()
        os.symlink(target, link)

    def materialize_task_dir(self, task: Task) -> Path:
        """Create the task directory with a relative link to its cached script."""
        digest = self.store_script(task.script)
        if digest != task.hash:
            raise WorkspaceError(f"task '{task.name}' script hash mismatch: {digest} != {task.hash}")
        task_dir = self.task_dir(task.name)
        try:
            ensure_directory(task_dir, stop_at=self.home)
            relative = os.path.relpath(self.cache_dir / digest, task_dir)
            self._replace_symlink(task_dir / SCRIPT_NAME, relative)
        except OSError as exc:
            raise WorkspaceError(f"failed to prepare task dir for '{task.name}': {exc}") from exc
        return task_dir

    def link_dependency_output(self, name: str, dep: str) -> Path:
        """Link ``input.<dep>.json`` in the task dir to the dependency output."""
        target = self.output_path(dep)
        if not target.is_file():
            raise WorkspaceError(
                f"dependency '{dep}' of task '{name}' has no output artifact at {target}"
            )
        link = self.input_path(name, dep)
        relative = os.path.relpath(target, link.parent)
        try:
            self._replace_symlink(link, relative)
        except OSError as exc:
            raise WorkspaceError(f"failed to link input '{dep}' for '{name}': {exc}") from exc
        return link

    def adopt_output(self, name: str, previous: Path) -> Path:
        """Copy a prior run's artifact into this run for a skipped task."""
        destination = self.output_path(name)
        try:
            shutil.copyfile(previous, destination)
        except OSError as exc:
            raise WorkspaceError(f"failed to adopt output for '{name}' from {previous}: {exc}") from exc
        return destination

    def write_run_context(self, context: dict[str, object]) -> Path:
        path = self.run_dir / RUN_CONTEXT_NAME
        payload = yaml.safe_dump(context, sort_keys=False, allow_unicode=True)
        write_atomic(path, payload.encode("utf-8"))
        return path

    def size_bytes(self) -> int:
        return directory_size(self.run_dir)
