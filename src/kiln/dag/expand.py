"""Resolve ``foreach`` item sources into concrete subtask items."""

from __future__ import annotations

import glob as globlib
import logging
from dataclasses import dataclass
from pathlib import Path

from kiln.config.schema import (
    SUBTASK_SEPARATOR,
    GlobSource,
    ItemsSource,
    ItemSource,
    RangeSource,
    TaskSpec,
)
from kiln.util.errors import ConfigError, DuplicateTaskError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Item:
    suffix: str
    value: str


def _glob_items(pattern: str, root: Path) -> list[Item]:
    if Path(pattern).is_absolute():
        matches = sorted(Path(p) for p in globlib.glob(pattern, recursive=True))
    else:
        matches = sorted(root.glob(pattern))
    items = []
    for match in matches:
        if not match.is_file():
            continue
        try:
            value = match.relative_to(root).as_posix()
        except ValueError:
            value = str(match)
        items.append(Item(suffix=match.stem, value=value))
    return items


def resolve_items(source: ItemSource, root: Path) -> list[Item]:
    """Turn an item source into an ordered list of items.

    Glob matches are sorted lexicographically, ranges are inclusive and
    zero-padded to the widest bound, explicit lists keep declared order.
    """
    if isinstance(source, ItemsSource):
        return [Item(suffix=value, value=value) for value in source.items]
    if isinstance(source, RangeSource):
        return [
            Item(suffix=str(n).zfill(source.width), value=str(n).zfill(source.width))
            for n in range(source.start, source.end + 1)
        ]
    if isinstance(source, GlobSource):
        return _glob_items(source.pattern, root)
    raise TypeError(f"unsupported item source: {source!r}")


def expand_task(spec: TaskSpec, root: Path) -> list[tuple[str, Item]]:
    """Return ``(subtask name, item)`` pairs for a foreach task."""
    assert spec.foreach is not None
    items = resolve_items(spec.foreach.source, root)
    if not items:
        logger.warning("task '%s' foreach resolved to no items", spec.name)
        return []
    seen: set[str] = set()
    expanded = []
    for item in items:
        if not item.suffix or SUBTASK_SEPARATOR in item.suffix:
            raise ConfigError(f"task '{spec.name}' produced invalid subtask suffix '{item.suffix}'")
        name = f"{spec.name}{SUBTASK_SEPARATOR}{item.suffix}"
        if name in seen:
            raise DuplicateTaskError(f"task '{spec.name}' expands to duplicate subtask '{name}'")
        seen.add(name)
        expanded.append((name, item))
    return expanded
