# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Set, Tuple

from .artifacts import check_relative
from .errors import ValidationError
from .model import Job, Workflow
from .retry import validate_retry
from .timeout import parse_duration


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must run BEFORE this job)
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValidationError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for need in job.needs or []:
            if need not in name_set:
                raise ValidationError(
                    f"Job '{job.name}' needs missing job '{need}'. Known jobs: {sorted(name_set)}",
                    job=job.name,
                )
            # Edge need -> job.name (need must run before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into dependency levels.

    A node is released once all its needs are processed, so the level index
    of a job equals the length of its longest dependency chain.
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

        levels.append(sorted(level))

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise ValidationError(f"Job graph has a cycle. Jobs on or behind the cycle: {remaining}")

    return levels


def depths(jobs: List[Job]) -> Dict[str, int]:
    """depth(j) = 0 without needs, else 1 + max(depth(need))."""
    adj, indeg = build_dag(jobs)
    return {name: i for i, level in enumerate(topo_levels(adj, indeg)) for name in level}


def check_artifacts(jobs: List[Job]) -> Dict[str, str]:
    """
    Artifact names are unique across the whole workflow.
    Returns artifact name -> producing job.
    """
    producers: Dict[str, str] = {}
    dupes: Dict[str, List[str]] = {}
    for job in jobs:
        for name, path in job.outputs.items():
            check_relative(path)
            if name in producers:
                dupes.setdefault(name, [producers[name]]).append(job.name)
            else:
                producers[name] = job.name
    if dupes:
        raise ValidationError(
            f"Duplicate artifact names found: {sorted(dupes)}. Each artifact name must be unique across all jobs.",
            details={name: ", ".join(owners) for name, owners in sorted(dupes.items())},
        )
    for job in jobs:
        for inp in job.artifact_inputs:
            check_relative(inp.path, "restore path")
            if inp.name not in producers:
                raise ValidationError(
                    f"Job '{job.name}' restores unknown artifact '{inp.name}'",
                    job=job.name,
                )
    return producers


def validate(workflow: Workflow) -> List[List[str]]:
    """
    Everything that must hold before the first job starts.
    Returns the dependency levels.
    """
    if not workflow.name:
        raise ValidationError("Workflow name cannot be empty")
    if not workflow.jobs:
        raise ValidationError(f"Workflow '{workflow.name}' has no jobs")

    adj, indeg = build_dag(workflow.jobs)
    levels = topo_levels(adj, indeg)
    check_artifacts(workflow.jobs)

    validate_retry(workflow.retry, f"workflow '{workflow.name}'")
    parse_duration(workflow.timeout)
    for job in workflow.jobs:
        if not job.steps:
            raise ValidationError(f"Job '{job.name}' has no steps", job=job.name)
        validate_retry(job.retry, f"job '{job.name}'")
        parse_duration(job.timeout)
        for step in job.steps:
            validate_retry(step.retry, f"step '{job.name}/{step.name}'")
            parse_duration(step.timeout)

    return levels
