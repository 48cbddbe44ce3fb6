# store.py
from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Union

from .errors import InvalidTransition, UnknownJobError
from .model import Job, JobStatus
from .persistence import JobRecord, Persistence

StatusSet = Union[JobStatus, Iterable[JobStatus]]

_UNSET = object()


class JobStore:
    """
    Single source of truth for job status within one execution unit.

    - One lock per job: concurrent transitions on different jobs never
      contend, and a compare-and-set on one job is atomic.
    - Reads return copies; callers re-read instead of holding on to a Job
      across a suspend or a wave boundary.
    - When a Persistence backend is attached, every transition is written
      through before the lock is released.
    """

    def __init__(self, unit_id: str, persistence: Optional[Persistence] = None):
        self.unit_id = unit_id
        self.persistence = persistence
        self._jobs: Dict[str, Job] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def add(self, job: Job, *, persist: bool = True) -> None:
        with self._registry_lock:
            self._jobs[job.id] = replace(job, depends_on=list(job.depends_on), metadata=dict(job.metadata))
            self._locks.setdefault(job.id, threading.Lock())
        if persist:
            self._save(self._jobs[job.id])

    def load(self, jobs: Iterable[Job], *, persist: bool = True) -> None:
        for job in jobs:
            self.add(job, persist=persist)

    @classmethod
    def from_records(
        cls,
        unit_id: str,
        records: Iterable[JobRecord],
        persistence: Optional[Persistence] = None,
    ) -> JobStore:
        store = cls(unit_id, persistence)
        store.load((r.to_job() for r in records), persist=False)
        return store

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def ids(self) -> List[str]:
        return list(self._jobs)

    def get(self, job_id: str) -> Job:
        lock = self._lock_for(job_id)
        with lock:
            return replace(self._jobs[job_id])

    def status(self, job_id: str) -> JobStatus:
        lock = self._lock_for(job_id)
        with lock:
            return self._jobs[job_id].status

    def jobs(self) -> List[Job]:
        return [self.get(job_id) for job_id in self.ids()]

    def statuses(self) -> Dict[str, JobStatus]:
        return {job_id: self.status(job_id) for job_id in self.ids()}

    def with_status(self, *statuses: JobStatus) -> List[str]:
        wanted = set(statuses)
        return sorted(job_id for job_id, s in self.statuses().items() if s in wanted)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def transition(
        self,
        job_id: str,
        expected: StatusSet,
        new: JobStatus,
        *,
        result: Any = _UNSET,
        failure_reason: Any = _UNSET,
        blocked_by: Any = _UNSET,
    ) -> Job:
        """
        Compare-and-set the status of one job.

        Raises InvalidTransition when the current status is not in
        `expected`; nothing is changed in that case.
        """
        allowed = {expected} if isinstance(expected, JobStatus) else set(expected)
        lock = self._lock_for(job_id)
        with lock:
            job = self._jobs[job_id]
            if job.status not in allowed:
                raise InvalidTransition(
                    job_id,
                    expected="|".join(sorted(s.value for s in allowed)),
                    actual=job.status.value,
                    new=new.value,
                )
            job.status = new
            # result / failure_reason / blocked_by only exist in their own status
            job.result = result if result is not _UNSET and new == JobStatus.COMPLETED else None
            job.failure_reason = (
                failure_reason if failure_reason is not _UNSET and new == JobStatus.FAILED else None
            )
            job.blocked_by = blocked_by if blocked_by is not _UNSET and new == JobStatus.BLOCKED else None
            self._save(job)
            return replace(job)

    def try_transition(self, job_id: str, expected: StatusSet, new: JobStatus, **fields: Any) -> bool:
        try:
            self.transition(job_id, expected, new, **fields)
        except InvalidTransition:
            return False
        return True

    def set_wave(self, job_id: str, wave: Optional[int]) -> None:
        lock = self._lock_for(job_id)
        with lock:
            job = self._jobs[job_id]
            if job.wave != wave:
                job.wave = wave
                self._save(job)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, job_id: str) -> threading.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            raise UnknownJobError(job_id)
        return lock

    def _save(self, job: Job) -> None:
        if self.persistence is not None:
            self.persistence.save_job(self.unit_id, JobRecord.from_job(job))
