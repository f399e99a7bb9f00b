"""Build the resolved task graph from a loaded config."""

from __future__ import annotations

import glob as globlib
import logging
import os
from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from kiln.config.cli_args import TaskRequest
from kiln.config.env import evaluate_envs, merge_envs
from kiln.config.params import check_choice, default_value
from kiln.config.schema import ConfigSpec, TaskSpec
from kiln.dag.expand import Item, expand_task
from kiln.dag.task import Task
from kiln.dag.validate import assert_acyclic, find_cycle
from kiln.exec.action import render_script
from kiln.util.errors import CycleError, ParamConflictError, UnknownTaskError
from kiln.util.ids import content_hash

logger = logging.getLogger(__name__)

_GLOB_CHARS = set("*?[")


@dataclass(slots=True)
class _Node:
    spec: TaskSpec
    parent: str | None = None
    item: Item | None = None
    deps: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TaskGraph:
    """Resolved tasks plus adjacency; read-only for consumers."""

    tasks: dict[str, Task]
    virtual: dict[str, list[str]]
    dependents: dict[str, list[str]]
    in_degree: dict[str, int]
    order: list[str]

    def topological_order(self) -> list[str]:
        return list(self.order)

    def __len__(self) -> int:
        return len(self.tasks)


def build_adjacency(
    tasks: Mapping[str, Sequence[str]],
) -> tuple[dict[str, list[str]], dict[str, int]]:
    """Return dependents adjacency and in-degree by task name."""
    dependents: dict[str, list[str]] = defaultdict(list)
    in_degree: dict[str, int] = {}

    for name, deps in tasks.items():
        in_degree[name] = len(deps)
        dependents.setdefault(name, [])
        for dep in deps:
            dependents[dep].append(name)

    return dict(dependents), in_degree


def _is_glob(pattern: str) -> bool:
    return any(ch in _GLOB_CHARS for ch in pattern)


def _absolute(pattern: str, root: Path) -> str:
    path = Path(pattern).expanduser()
    if not path.is_absolute():
        path = root / path
    return os.path.normpath(str(path))


def resolve_paths(patterns: Sequence[str], root: Path) -> list[str]:
    """Resolve file patterns relative to the project root.

    Unmatched globs are kept as their absolute pattern.
    """
    resolved: list[str] = []
    for pattern in patterns:
        absolute = _absolute(pattern, root)
        if _is_glob(pattern):
            matches = sorted(globlib.glob(absolute, recursive=True))
            resolved.extend(matches or [absolute])
        else:
            resolved.append(absolute)
    return list(dict.fromkeys(resolved))


def _bind(patterns: Sequence[str], node: _Node) -> list[str]:
    if node.item is None or node.spec.foreach is None:
        return list(patterns)
    var = node.spec.foreach.var
    return [
        p.replace("${" + var + "}", node.item.value).replace("$" + var, node.item.value)
        for p in patterns
    ]


def _expand(config: ConfigSpec) -> tuple[dict[str, _Node], dict[str, list[str]]]:
    nodes: dict[str, _Node] = {}
    virtual: dict[str, list[str]] = {}
    for spec in config.tasks.values():
        if spec.foreach is None:
            nodes[spec.name] = _Node(spec=spec)
            continue
        children = []
        for name, item in expand_task(spec, config.root):
            nodes[name] = _Node(spec=spec, parent=spec.name, item=item)
            children.append(name)
        virtual[spec.name] = children
    return nodes, virtual


def _resolve_ref(
    ref: str, owner: str, nodes: Mapping[str, _Node], virtual: Mapping[str, list[str]]
) -> list[str]:
    if ref in nodes:
        return [ref]
    if ref in virtual:
        return list(virtual[ref])
    raise UnknownTaskError(f"task '{owner}' references unknown task '{ref}'")


def _link(
    config: ConfigSpec, nodes: dict[str, _Node], virtual: dict[str, list[str]]
) -> dict[str, str]:
    """Fill node deps from before/after and from produced input files.

    Returns the first input of each node that neither exists nor is produced.
    """

    def add(node_name: str, deps: list[str]) -> None:
        node = nodes[node_name]
        for dep in deps:
            if dep not in node.deps:
                node.deps.append(dep)

    owners: dict[str, list[str]] = defaultdict(list)
    for name, node in nodes.items():
        owners[node.spec.name].append(name)

    producers: dict[str, str] = {}
    for name, node in nodes.items():
        for path in resolve_paths(_bind(node.spec.output, node), config.root):
            producers.setdefault(path, name)

    for spec in config.tasks.values():
        members = owners.get(spec.name, [])
        for ref in spec.before:
            targets = _resolve_ref(ref, spec.name, nodes, virtual)
            for member in members:
                add(member, targets)
        for ref in spec.after:
            targets = _resolve_ref(ref, spec.name, nodes, virtual)
            for target in targets:
                add(target, members)

    missing: dict[str, str] = {}
    for name, node in nodes.items():
        for pattern in _bind(node.spec.input, node):
            if _is_glob(pattern):
                continue
            path = _absolute(pattern, config.root)
            producer = producers.get(path)
            if producer is not None:
                if producer != name:
                    add(name, [producer])
                continue
            if not os.path.exists(path):
                missing.setdefault(name, pattern)
    return missing


def _targets(
    requests: Sequence[TaskRequest], nodes: Mapping[str, _Node], virtual: Mapping[str, list[str]]
) -> list[str]:
    targets: list[str] = []
    for request in requests:
        if request.name in nodes:
            targets.append(request.name)
        elif request.name in virtual:
            targets.extend(virtual[request.name])
        else:
            raise UnknownTaskError(f"unknown task '{request.name}'")
    return list(dict.fromkeys(targets))


def _closure(targets: Sequence[str], nodes: Mapping[str, _Node]) -> list[str]:
    seen: dict[str, None] = {}
    stack = list(reversed(targets))
    while stack:
        name = stack.pop()
        if name in seen:
            continue
        seen[name] = None
        stack.extend(reversed(nodes[name].deps))
    return list(seen)


def _cli_values(requests: Sequence[TaskRequest], nodes: Mapping[str, _Node]) -> dict[str, dict[str, str]]:
    values: dict[str, dict[str, str]] = defaultdict(dict)
    for request in requests:
        if not request.values:
            continue
        if request.name in nodes:
            values[request.name].update(request.values)
            continue
        for name, node in nodes.items():
            if node.parent == request.name:
                values[name].update(request.values)
    return values


def _resolve_values(
    names: Sequence[str],
    order: Sequence[str],
    nodes: Mapping[str, _Node],
    cli: Mapping[str, Mapping[str, str]],
) -> dict[str, dict[str, str]]:
    """Resolve parameter values: CLI, then propagated, then defaults.

    Walks dependents before their dependencies. A value a task got from
    the CLI or by propagation flows to each dependency declaring a param of
    the same name, unless that dependency has its own CLI value.
    """
    incoming: dict[str, dict[str, tuple[str, str]]] = defaultdict(dict)
    resolved: dict[str, dict[str, str]] = {}
    in_scope = set(names)

    for name in reversed(order):
        if name not in in_scope:
            continue
        node = nodes[name]
        own = cli.get(name, {})
        explicit: dict[str, str] = {}
        values: dict[str, str] = {}
        for param_name, param in node.spec.params.items():
            if param_name in own:
                explicit[param_name] = own[param_name]
            elif param_name in incoming[name]:
                explicit[param_name] = incoming[name][param_name][0]
            if param_name in explicit:
                values[param_name] = explicit[param_name]
            else:
                fallback = default_value(param)
                if fallback is not None:
                    values[param_name] = fallback
        resolved[name] = values

        for dep in node.deps:
            dep_params = nodes[dep].spec.params
            dep_cli = cli.get(dep, {})
            for param_name, value in explicit.items():
                if param_name not in dep_params or param_name in dep_cli:
                    continue
                check_choice(
                    dep_params[param_name],
                    value,
                    context=f"value propagated from '{name}' to '{dep}'",
                )
                previous = incoming[dep].get(param_name)
                if previous is None:
                    incoming[dep][param_name] = (value, name)
                elif previous[0] != value:
                    raise ParamConflictError(
                        f"Conflicting param propagation for '{dep}': "
                        f"'{previous[1]}' sets {param_name}={previous[0]!r} "
                        f"but '{name}' sets {param_name}={value!r}"
                    )
    return resolved


def build_graph(
    config: ConfigSpec,
    requests: Sequence[TaskRequest],
    *,
    base_env: Mapping[str, str] | None = None,
) -> TaskGraph:
    """Expand, link, validate and resolve the tasks needed for ``requests``."""
    nodes, virtual = _expand(config)
    missing_inputs = _link(config, nodes, virtual)

    all_names = list(nodes)
    dependents, in_degree = build_adjacency({name: nodes[name].deps for name in all_names})
    cycle = find_cycle(all_names, {name: nodes[name].deps for name in all_names})
    if cycle is not None:
        raise CycleError(cycle)
    full_order = assert_acyclic(all_names, dependents, in_degree)

    targets = _targets(requests, nodes, virtual)
    selected = _closure(targets, nodes)
    for name in selected:
        if name in missing_inputs:
            raise UnknownTaskError(
                f"task '{name}' input '{missing_inputs[name]}' does not exist "
                "and no task produces it"
            )
    values = _resolve_values(selected, full_order, nodes, _cli_values(requests, nodes))

    global_envs = evaluate_envs(config.project.envs, config.root, base=base_env)
    base = merge_envs(os.environ if base_env is None else base_env, global_envs)
    task_envs: dict[str, dict[str, str]] = {}

    tasks: dict[str, Task] = {}
    selected_set = set(selected)
    for name in full_order:
        if name not in selected_set:
            continue
        node = nodes[name]
        spec = node.spec
        if spec.name not in task_envs:
            task_envs[spec.name] = merge_envs(
                global_envs, evaluate_envs(spec.envs, config.root, base=base)
            )
        envs = dict(task_envs[spec.name])
        if node.item is not None and spec.foreach is not None:
            envs[spec.foreach.var] = node.item.value
        script = render_script(
            spec.action.interpreter,
            spec.action.script,
            deps=node.deps,
            envs=envs,
            values=values[name],
        )
        tasks[name] = Task(
            name=name,
            interpreter=spec.action.interpreter,
            body=spec.action.script,
            script=script,
            hash=content_hash(script),
            parent=node.parent,
            deps=tuple(node.deps),
            inputs=tuple(resolve_paths(_bind(spec.input, node), config.root)),
            outputs=tuple(resolve_paths(_bind(spec.output, node), config.root)),
            envs=envs,
            values=values[name],
            interactive=spec.interactive,
            help=spec.help,
        )

    sub_deps = {name: list(task.deps) for name, task in tasks.items()}
    sub_dependents, sub_in_degree = build_adjacency(sub_deps)
    order = [name for name in full_order if name in tasks]
    logger.debug("graph has %d task(s): %s", len(tasks), ", ".join(order))
    return TaskGraph(
        tasks=tasks,
        virtual={
            parent: [child for child in children if child in tasks]
            for parent, children in virtual.items()
            if any(child in tasks for child in children)
        },
        dependents=sub_dependents,
        in_degree=sub_in_degree,
        order=order,
    )