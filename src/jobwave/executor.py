# executor.py
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Iterable, List, Optional, Set, Union

from .checkpoint import CheckpointController
from .events import Event, EventBus, EventKind
from .lifecycle import finish_job
from .model import Failed, JobOutcome, JobStatus, Suspended, Wave
from .runner import JobRunner, invoke
from .store import JobStore
from .ui.console import get_console


class WaveExecutor:
    """
    Runs the jobs of one wave and returns once every started job is
    Completed, Failed or Suspended.

    - concurrent=True fans out on a thread pool (max_workers=None means one
      thread per job); concurrent=False runs jobs in input order.
    - A job only starts if it is Pending and all of its dependencies are
      satisfied (Completed, external, or an explicitly allowed failure).
      Anything else is left untouched and absent from the result.
    - Runner exceptions and timeouts turn into Failed outcomes for that job
      alone.
    - request_stop(): running jobs finish, nothing new starts.
    """

    def __init__(
        self,
        store: JobStore,
        runner: JobRunner,
        checkpoints: CheckpointController,
        *,
        bus: Optional[EventBus] = None,
        max_workers: Optional[int] = None,
        fail_fast: bool = False,
        default_timeout: Optional[float] = None,
        satisfied: Iterable[str] = (),
        allow_failed: Iterable[str] = (),
    ):
        self.store = store
        self.runner = runner
        self.checkpoints = checkpoints
        self.bus = bus or EventBus()
        self.max_workers = max_workers
        self.fail_fast = fail_fast
        self.default_timeout = default_timeout
        self.satisfied: Set[str] = set(satisfied)
        self.allow_failed: Set[str] = set(allow_failed)
        self._stop = threading.Event()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run_wave(self, wave: Union[Wave, List[str]], concurrent: bool = True) -> List[JobOutcome]:
        job_ids = list(wave)
        index = wave.index if isinstance(wave, Wave) else None
        if not job_ids:
            return []
        if concurrent:
            return self._run_concurrent(job_ids, index)
        return self._run_sequential(job_ids, index)

    def _run_concurrent(self, job_ids: List[str], index: Optional[int]) -> List[JobOutcome]:
        outcomes: List[JobOutcome] = []
        workers = max(1, self.max_workers or len(job_ids))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="jobwave") as pool:
            futures = {pool.submit(self._run_one, job_id, index): job_id for job_id in job_ids}

            for future in as_completed(futures):
                outcome = future.result()
                if outcome is not None:
                    outcomes.append(outcome)

        return outcomes

    def _run_sequential(self, job_ids: List[str], index: Optional[int]) -> List[JobOutcome]:
        outcomes: List[JobOutcome] = []
        for job_id in job_ids:
            if self.stop_requested:
                break
            outcome = self._run_one(job_id, index)
            if outcome is None:
                continue
            outcomes.append(outcome)
            if self.fail_fast and isinstance(outcome.outcome, Failed):
                get_console().print_debug(f"fail-fast: skipping rest of wave after {job_id}")
                break
        return outcomes

    def _run_one(self, job_id: str, index: Optional[int]) -> Optional[JobOutcome]:
        # queued behind a bounded pool: re-check stop before starting
        if self.stop_requested:
            return None

        unmet = self.unmet_dependencies(job_id)
        if unmet:
            get_console().print_debug(f"[{job_id}] not started, waiting on {unmet}")
            return None
        if not self.store.try_transition(job_id, JobStatus.PENDING, JobStatus.RUNNING):
            get_console().print_debug(f"[{job_id}] not started, status is {self.store.status(job_id).value}")
            return None

        job = self.store.get(job_id)
        self.bus.emit(Event(EventKind.JOB_STARTED, self.store.unit_id, job_id=job_id, wave=index))
        started = time.monotonic()
        result = invoke(self.runner, job, None, timeout=job.timeout or self.default_timeout)
        outcome = JobOutcome(job_id, result, duration=time.monotonic() - started)

        if isinstance(result, Suspended):
            self.checkpoints.suspend(job_id, result.checkpoint)
            return outcome
        return finish_job(self.store, self.bus, outcome, wave=index)

    def unmet_dependencies(self, job_id: str) -> List[str]:
        job = self.store.get(job_id)
        unmet = []
        for dep in job.depends_on:
            if dep in self.satisfied and dep not in self.store:
                continue
            status = self.store.status(dep)
            if status == JobStatus.COMPLETED:
                continue
            if status == JobStatus.FAILED and dep in self.allow_failed:
                continue
            unmet.append(dep)
        return unmet
