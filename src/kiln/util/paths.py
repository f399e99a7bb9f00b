from __future__ import annotations

import os
import stat
import tempfile
from contextlib import suppress
from pathlib import Path

from kiln.util.path_guard import has_symlink_ancestor, is_symlink_path

DEFAULT_HOME = Path("~/.kiln")
DB_FILENAME = "kiln.db"


def default_home() -> Path:
    """Return the workspace home, honouring ``KILN_HOME``."""
    override = os.environ.get("KILN_HOME")
    if override:
        return Path(override).expanduser()
    return DEFAULT_HOME.expanduser()


def default_db_path(home: Path) -> Path:
    override = os.environ.get("KILN_DB_PATH")
    if override:
        return Path(override).expanduser()
    return home / DB_FILENAME


def ensure_directory(path: Path, *, parents: bool = False, stop_at: Path | None = None) -> None:
    if has_symlink_ancestor(path, stop_at=stop_at):
        raise OSError(f"path must not include symlink: {path}")
    if is_symlink_path(path):
        raise OSError(f"path must not be symlink: {path}")
    try:
        path.mkdir(parents=parents, exist_ok=True)
    except (OSError, RuntimeError) as exc:
        raise OSError(f"failed to create directory path: {path}") from exc
    try:
        meta = path.lstat()
    except (OSError, RuntimeError) as exc:
        raise OSError(f"path must be directory: {path}") from exc
    if is_symlink_path(path) or not stat.S_ISDIR(meta.st_mode):
        raise OSError(f"path must be directory: {path}")


def write_atomic(path: Path, data: bytes, *, mode: int = 0o644) -> None:
    """Write ``data`` to ``path`` through a temp file and rename."""
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        with suppress(OSError):
            os.unlink(tmp_name)
        raise


def append_text_best_effort(path: Path, text: str) -> None:
    try:
        with path.open("a", encoding="utf-8") as f:
            f.write(text)
    except OSError:
        return


def directory_size(path: Path) -> int:
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            with suppress(OSError):
                meta = os.lstat(os.path.join(root, name))
                if stat.S_ISREG(meta.st_mode):
                    total += meta.st_size
    return total
