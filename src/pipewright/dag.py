# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .errors import ConfigurationError
from .model import Job


def build_dag(
    jobs: Iterable[Job],
    *,
    satisfied: Iterable[str] = (),
) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Returns (adj, indeg):
      adj[need] = set of jobs that need it
      indeg[job] = number of unmet needs

    Names in `satisfied` are jobs outside this graph that already succeeded;
    needs on them do not count toward indeg.
    """
    jobs = list(jobs)
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    external = set(satisfied)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for need in job.needs:
            if need in external and need not in name_set:
                continue
            if need not in name_set:
                raise ConfigurationError(
                    f"Job '{job.name}' needs missing job '{need}'",
                    job=job.name,
                    known_jobs=sorted(name_set | external),
                )
            # edge need -> job (need must run before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise ConfigurationError(
            f"Dependency cycle detected: {' -> '.join(find_cycle(adj, remaining))}",
            stuck_jobs=remaining,
        )

    return levels


def find_cycle(adj: Dict[str, Set[str]], candidates: List[str]) -> List[str]:
    """Return one cycle among candidates as [a, b, ..., a] (best effort, for messages)."""
    cand = set(candidates)
    done: Set[str] = set()

    def visit(node: str, path: List[str]) -> List[str] | None:
        if node in path:
            return path[path.index(node):] + [node]
        if node in done:
            return None
        path.append(node)
        for child in sorted(adj.get(node, set()) & cand):
            found = visit(child, path)
            if found:
                return found
        path.pop()
        done.add(node)
        return None

    for start in sorted(cand):
        found = visit(start, [])
        if found:
            return found
    return sorted(cand)


def dependents(adj: Dict[str, Set[str]], name: str) -> Set[str]:
    """All jobs that transitively need `name`."""
    out: Set[str] = set()
    stack = list(adj.get(name, ()))
    while stack:
        n = stack.pop()
        if n in out:
            continue
        out.add(n)
        stack.extend(adj.get(n, ()))
    return out


def plan(jobs: Iterable[Job], *, satisfied: Iterable[str] = ()) -> List[List[str]]:
    """Validate the graph and return its execution stages."""
    adj, indeg = build_dag(jobs, satisfied=satisfied)
    return topo_levels(adj, indeg)
