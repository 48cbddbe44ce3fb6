# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .errors import CycleError, DuplicateJobError, UnknownDependencyError, WaveOverrideError
from .model import Job, JobStatus, Wave


def build_dag(
    jobs: List[Job],
    satisfied: Iterable[str] = (),
) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.id: str (unique)
      - job.depends_on: ids that must complete BEFORE this job

    Dependencies on ids in `satisfied` (completed outside this job set) are
    dropped; any other unknown id is a construction error.
    """
    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise DuplicateJobError(dupes)

    id_set = set(ids)
    external = set(satisfied) - id_set
    adj: Dict[str, Set[str]] = {i: set() for i in id_set}
    indeg: Dict[str, int] = {i: 0 for i in id_set}

    for job in jobs:
        for dep in job.depends_on:
            if dep in external:
                continue
            if dep not in id_set:
                raise UnknownDependencyError(job.id, dep, sorted(id_set))
            # Edge dep -> job.id (dep must run before job)
            if job.id not in adj[dep]:
                adj[dep].add(job.id)
                indeg[job.id] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological levels.
    Each level can run in parallel.
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

        levels.append(sorted(level))

    if processed != len(indeg):
        stuck = {n for n, d in indeg.items() if d > 0}
        raise CycleError(_cycle_members(adj, stuck))

    return levels


def _cycle_members(adj: Dict[str, Set[str]], stuck: Set[str]) -> List[str]:
    """
    Narrow the nodes Kahn's algorithm could not place down to the ones that
    actually sit on a cycle (nodes merely downstream of a cycle are dropped).
    """
    on_cycle: Set[str] = set()
    for start in sorted(stuck):
        # start is on a cycle iff it can reach itself through stuck nodes
        seen: Set[str] = set()
        stack = [c for c in adj.get(start, ()) if c in stuck]
        while stack:
            node = stack.pop()
            if node == start:
                on_cycle.add(start)
                break
            if node in seen:
                continue
            seen.add(node)
            stack.extend(c for c in adj.get(node, ()) if c in stuck)
    return sorted(on_cycle or stuck)


def partition_into_waves(jobs: List[Job], satisfied: Iterable[str] = ()) -> List[Wave]:
    """
    Partition a job set into ordered waves.

    Wave(j) = 0 with no deps, else 1 + max(Wave(d)). An explicit
    `wave_override` may move a job later but never earlier than its
    dependencies allow. Raises a ConstructionError subclass instead of
    returning a partial result. Pure: the input jobs are not touched.
    """
    jobs = list(jobs)
    by_id = {j.id: j for j in jobs}
    adj, indeg = build_dag(jobs, satisfied)
    levels = topo_levels(adj, indeg)

    wave_of: Dict[str, int] = {}
    for level in levels:
        for job_id in level:
            job = by_id[job_id]
            minimum = 1 + max((wave_of[d] for d in job.depends_on if d in wave_of), default=-1)
            if job.wave_override is not None:
                if job.wave_override < minimum:
                    raise WaveOverrideError(job_id, job.wave_override, minimum)
                wave_of[job_id] = job.wave_override
            else:
                wave_of[job_id] = minimum

    grouped: Dict[int, List[str]] = {}
    for job_id, w in wave_of.items():
        grouped.setdefault(w, []).append(job_id)

    return [Wave(index=w, job_ids=sorted(grouped[w])) for w in sorted(grouped)]


def assign_waves(jobs: List[Job], waves: List[Wave]) -> None:
    """Write computed wave numbers back onto the Job objects."""
    wave_of = {job_id: w.index for w in waves for job_id in w.job_ids}
    for job in jobs:
        job.wave = wave_of.get(job.id)


def dependents_of(jobs: Iterable[Job]) -> Dict[str, Set[str]]:
    """dep id -> ids of jobs that list it directly."""
    out: Dict[str, Set[str]] = {}
    for job in jobs:
        out.setdefault(job.id, set())
        for dep in job.depends_on:
            out.setdefault(dep, set()).add(job.id)
    return out


def transitive_dependents(adj: Dict[str, Set[str]], root: str) -> Set[str]:
    seen: Set[str] = set()
    q = deque(adj.get(root, ()))
    while q:
        node = q.popleft()
        if node in seen:
            continue
        seen.add(node)
        q.extend(adj.get(node, ()))
    return seen


# ----------------------------------------------------------------------
# Planning helpers
# ----------------------------------------------------------------------

@dataclass
class JobIndex:
    """Summary of a job set: waves, what's left, whether anyone will pause."""
    waves: Dict[int, List[str]]
    incomplete: List[str]
    has_checkpoints: bool


def job_index(jobs: List[Job], statuses: Optional[Dict[str, JobStatus]] = None) -> JobIndex:
    statuses = statuses or {}
    waves = partition_into_waves(jobs)
    incomplete = sorted(
        j.id for j in jobs if statuses.get(j.id, j.status) != JobStatus.COMPLETED
    )
    return JobIndex(
        waves={w.index: list(w.job_ids) for w in waves},
        incomplete=incomplete,
        has_checkpoints=any(not j.autonomous for j in jobs),
    )


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_jobs(jobs: List[Job], satisfied: Iterable[str] = ()) -> ValidationResult:
    """
    Lint a job set without raising.

    Construction errors land in `errors`; suspicious but runnable setups
    (a job pinned past wave 0 with nothing to wait for, a duplicated
    dependency) land in `warnings`.
    """
    result = ValidationResult()

    for job in jobs:
        if job.id in job.depends_on:
            result.errors.append(f"Job '{job.id}' depends on itself")
        if len(set(job.depends_on)) != len(job.depends_on):
            result.warnings.append(f"Job '{job.id}' lists a dependency more than once")
        if job.wave_override and not job.depends_on:
            result.warnings.append(f"Job '{job.id}': wave > 0 but depends_on is empty")

    try:
        partition_into_waves(jobs, satisfied)
    except (CycleError, DuplicateJobError, UnknownDependencyError, WaveOverrideError) as e:
        if e.message not in result.errors:
            result.errors.append(e.message)

    return result


@dataclass
class ReadyPlan:
    ready: List[str]
    join_points: Dict[str, List[str]]


def ready_jobs(jobs: List[Job], completed: Iterable[str]) -> ReadyPlan:
    """
    Jobs that could start right now, plus join points: incomplete jobs that
    wait on at least one ready job (mapped to everything they still wait for).
    """
    done = set(completed)
    ready = sorted(
        j.id for j in jobs if j.id not in done and all(d in done for d in j.depends_on)
    )
    ready_set = set(ready)
    joins = {
        j.id: sorted(d for d in j.depends_on if d not in done)
        for j in jobs
        if j.id not in done and j.id not in ready_set and any(d in ready_set for d in j.depends_on)
    }
    return ReadyPlan(ready=ready, join_points=joins)
