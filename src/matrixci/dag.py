# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Mapping, Set, Tuple

from .errors import ConfigurationError
from .model import Job, JobSpec


def build_dag(specs: Mapping[str, JobSpec]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG over job specs.

    Requires:
      - spec.name: str (unique, the key in the workflow's `jobs` mapping)
      - spec.needs: names of specs that must finish BEFORE this one
    """
    name_set = set(specs)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for spec in specs.values():
        for need in spec.needs:
            if need not in name_set:
                raise ConfigurationError(
                    f"Job '{spec.name}' needs missing job '{need}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            # edge need -> spec.name
            if spec.name not in adj[need]:
                adj[need].add(spec.name)
                indeg[spec.name] += 1

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
        raise ConfigurationError(f"Job dependencies form a cycle. Stuck jobs: {remaining}")

    return levels


def validate_dag(specs: Mapping[str, JobSpec]) -> List[List[str]]:
    adj, indeg = build_dag(specs)
    return topo_levels(adj, indeg)


def job_prerequisites(jobs: List[Job]) -> Dict[str, Set[str]]:
    """
    Map each job id to the ids it waits for. A `needs` entry names a job
    spec, so a job waits for every matrix instance of that spec.
    """
    by_spec: Dict[str, List[str]] = {}
    for j in jobs:
        by_spec.setdefault(j.spec_name, []).append(j.id)

    prereqs: Dict[str, Set[str]] = {}
    for j in jobs:
        waits: Set[str] = set()
        for need in j.needs:
            if need not in by_spec:
                raise ConfigurationError(f"Job '{j.id}' needs unknown job '{need}'")
            waits.update(by_spec[need])
        prereqs[j.id] = waits
    return prereqs
