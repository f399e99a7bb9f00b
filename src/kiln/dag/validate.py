"""DAG validation helpers."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping

from kiln.util.errors import CycleError


def find_cycle(nodes: Iterable[str], deps: Mapping[str, Iterable[str]]) -> list[str] | None:
    """Return one dependency cycle as ``[a, b, ..., a]`` or None."""
    white, grey, black = 0, 1, 2
    color: dict[str, int] = {}
    for root in nodes:
        if color.get(root, white) != white:
            continue
        path: list[str] = [root]
        stack = [iter(deps.get(root, ()))]
        color[root] = grey
        while stack:
            advanced = False
            for nxt in stack[-1]:
                state = color.get(nxt, white)
                if state == grey:
                    return path[path.index(nxt) :] + [nxt]
                if state == white:
                    color[nxt] = grey
                    path.append(nxt)
                    stack.append(iter(deps.get(nxt, ())))
                    advanced = True
                    break
            if not advanced:
                color[path.pop()] = black
                stack.pop()
    return None


def assert_acyclic(
    task_ids: list[str], dependents: dict[str, list[str]], in_degree: dict[str, int]
) -> list[str]:
    """Validate graph has no cycle using Kahn's algorithm; return the order."""
    degrees = dict(in_degree)
    q = deque([task_id for task_id in task_ids if degrees.get(task_id, 0) == 0])
    order: list[str] = []

    while q:
        current = q.popleft()
        order.append(current)
        for nxt in dependents.get(current, []):
            degrees[nxt] = degrees[nxt] - 1
            if degrees[nxt] == 0:
                q.append(nxt)

    if len(order) != len(task_ids):
        done = set(order)
        remaining = [task_id for task_id in task_ids if task_id not in done]
        deps: dict[str, list[str]] = {task_id: [] for task_id in remaining}
        for parent, children in dependents.items():
            for child in children:
                if child in deps and parent in deps:
                    deps[child].append(parent)
        raise CycleError(find_cycle(remaining, deps) or remaining)
    return order
