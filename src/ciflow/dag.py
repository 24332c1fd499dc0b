# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Set, Tuple

from .errors import ConfigError
from .model import JobSpec


def build_dag(jobs: List[JobSpec]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from job specs.

    Requires:
      - job.id: str (unique)
      - job.needs: names of jobs that must reach a terminal status BEFORE this job

    Returns (adj, indeg) where adj maps a job to its direct dependents.
    """
    names = [j.id for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigError(message=f"Duplicate job ids found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for need in job.needs:
            if need not in name_set:
                raise ConfigError(
                    message=f"Job '{job.id}' needs missing job '{need}'",
                    job=job.id,
                    details={"known": sorted(name_set)},
                )
            if need == job.id:
                raise ConfigError(message=f"Job '{job.id}' needs itself", job=job.id)
            # Edge need -> job.id (need must finish before job)
            if job.id not in adj[need]:
                adj[need].add(job.id)
                indeg[job.id] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Jobs inside a level do not depend on each other.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

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
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise ConfigError(
            message="Job graph has a cycle",
            details={"stuck": remaining},
        )

    return levels


def validate_dag(jobs: List[JobSpec]) -> List[List[str]]:
    """Check ids, `needs` references and acyclicity. Returns the stages."""
    adj, indeg = build_dag(jobs)
    return topo_levels(adj, indeg)

