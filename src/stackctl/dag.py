# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .model import Task


class UnknownTaskError(ValueError):
    """A target or dependency name does not resolve to a task."""

    def __init__(self, name: str, referenced_by: str | None, known: Iterable[str]):
        self.name = name
        self.referenced_by = referenced_by
        self.known = sorted(known)
        if referenced_by:
            msg = f"Task '{referenced_by}' needs missing task '{name}'. Known tasks: {self.known}"
        else:
            msg = f"Unknown task '{name}'. Known tasks: {self.known}"
        super().__init__(msg)


class CycleError(ValueError):
    """The dependency graph of the requested targets has a cycle."""

    def __init__(self, stuck: List[str]):
        self.stuck = stuck
        super().__init__(f"Task graph has a cycle. Stuck tasks: {stuck}")


def _index(tasks: Iterable[Task]) -> Dict[str, Task]:
    by_name: Dict[str, Task] = {}
    for t in tasks:
        if t.name in by_name:
            raise ValueError(f"Duplicate task name: {t.name}")
        by_name[t.name] = t
    return by_name


def closure(tasks: Iterable[Task], targets: Iterable[str]) -> Dict[str, Task]:
    """
    Return the targets plus everything they transitively need, by name.

    Raises UnknownTaskError for a missing target or dependency.
    """
    by_name = _index(tasks)
    selected: Dict[str, Task] = {}
    stack: List[Tuple[str, str | None]] = [(t, None) for t in targets]

    while stack:
        name, referenced_by = stack.pop()
        if name in selected:
            continue
        if name not in by_name:
            raise UnknownTaskError(name, referenced_by, by_name)
        task = by_name[name]
        selected[name] = task
        for dep in task.needs:
            if dep not in selected:
                stack.append((dep, name))

    return selected


def build_dag(tasks: Iterable[Task]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build adjacency (dep -> dependents) and in-degree maps.

    Every task in `tasks` must only need tasks that are also in `tasks`.
    """
    by_name = _index(tasks)
    adj: Dict[str, Set[str]] = {n: set() for n in by_name}
    indeg: Dict[str, int] = {n: 0 for n in by_name}

    for task in by_name.values():
        for dep in task.needs:
            if dep not in by_name:
                raise UnknownTaskError(dep, task.name, by_name)
            # Edge dep -> task (dep must finish before task)
            if task.name not in adj[dep]:
                adj[dep].add(task.name)
                indeg[task.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological "levels" (stages).
    Tasks in the same stage have no path between them.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level: List[str] = []
        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
            processed += 1

        for node in level:
            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        raise CycleError(sorted(n for n, d in indeg.items() if d > 0))

    return levels


def resolve(tasks: Iterable[Task], targets: Iterable[str]) -> List[Task]:
    """
    Topologically sort the transitive dependency closure of `targets`.

    Every returned task appears after all of its dependencies. Pure: no task
    is mutated, nothing is executed.
    """
    selected = closure(tasks, targets)
    adj, indeg = build_dag(selected.values())
    return [selected[name] for level in topo_levels(adj, indeg) for name in level]


def resolve_levels(tasks: Iterable[Task], targets: Iterable[str]) -> List[List[str]]:
    """Like resolve(), grouped into stages that could run in parallel."""
    selected = closure(tasks, targets)
    adj, indeg = build_dag(selected.values())
    return topo_levels(adj, indeg)
