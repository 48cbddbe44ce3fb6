# orchestrator.py
from __future__ import annotations

import threading
import uuid
from typing import Any, Dict, Iterable, List, Optional

from .aggregate import aggregate, build_report
from .checkpoint import CheckpointController
from .dag import assign_waves, dependents_of, partition_into_waves, transitive_dependents
from .errors import CheckpointResponseError, UnitNotFoundError
from .events import Event, EventBus, EventKind, Listener
from .executor import WaveExecutor
from .model import (
    TIMEOUT_REASON,
    BlockedInfo,
    Completed,
    Decision,
    Failed,
    Job,
    JobOutcome,
    JobStatus,
    OrchestratorState,
    RunReport,
    Suspended,
    Wave,
    WaveReport,
)
from .persistence import JobRecord, MemoryPersistence, Persistence, UnitSnapshot
from .runner import JobRunner, as_runner
from .settings import RunOptions
from .store import JobStore
from .ui.console import get_console


class Orchestrator:
    """
    Drives one execution unit through its waves.

        initializing -> running_wave(0)
        running_wave(n) -> awaiting_checkpoint   (a job suspended, siblings done)
        awaiting_checkpoint -> running_wave(n)   (all suspended jobs resumed)
        running_wave(n) -> aggregating
        aggregating -> running_wave(n+1) | completed | halted

    All state lives in the Job Store and the Persistence backend, never on
    this object alone: a new Orchestrator pointed at the same persistence and
    unit id carries on where the previous one stopped.
    """

    def __init__(
        self,
        runner: Any,
        persistence: Optional[Persistence] = None,
        *,
        listeners: Optional[List[Listener]] = None,
    ):
        self.runner: JobRunner = as_runner(runner)
        self.persistence: Persistence = persistence if persistence is not None else MemoryPersistence()
        self.bus = EventBus(listeners)
        self.state = OrchestratorState.INITIALIZING
        self.current_wave: Optional[int] = None
        self.options = RunOptions()
        self.waves: List[Wave] = []
        self.store: Optional[JobStore] = None
        self.checkpoints: Optional[CheckpointController] = None
        self.executor: Optional[WaveExecutor] = None
        self._dependents: Dict[str, set] = {}
        self._wave_reports: Dict[int, WaveReport] = {}
        self._stop = threading.Event()

    def subscribe(self, listener: Listener) -> None:
        self.bus.subscribe(listener)

    def request_stop(self) -> None:
        """Let running jobs finish, start nothing new, end up Halted."""
        self._stop.set()
        if self.executor is not None:
            self.executor.request_stop()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute(
        self,
        jobs: Iterable[Job],
        options: Optional[RunOptions] = None,
        *,
        unit_id: Optional[str] = None,
        satisfied: Iterable[str] = (),
    ) -> RunReport:
        """
        Run a job set to completion, a checkpoint pause, or a halt.

        Construction errors (cycle, unknown dependency, duplicate id, bad
        wave override) are raised before anything is persisted or run. When
        `unit_id` names a unit that already has persisted state, completed
        work is kept and the run re-enters the first wave with something
        left to do.
        """
        self._stop.clear()
        options = options or RunOptions()
        jobs = list(jobs)
        satisfied = sorted(set(satisfied))
        waves = partition_into_waves(jobs, satisfied)

        unit_id = unit_id or uuid.uuid4().hex[:12]
        previous = self.persistence.load_unit(unit_id)
        records = _merge_records(jobs, previous, options)

        snapshot = UnitSnapshot(
            unit_id=unit_id,
            jobs=records,
            checkpoints=dict(previous.checkpoints) if previous else {},
            options={**options.to_dict(), "satisfied": satisfied},
            report=previous.report if previous else None,
        )
        self.persistence.save_unit(snapshot)

        self._setup(snapshot, waves, options, satisfied)
        return self._drive()

    def resume_execution(
        self,
        unit_id: str,
        responses: Dict[str, Any],
        options: Optional[RunOptions] = None,
    ) -> RunReport:
        """
        Answer pending checkpoints of a persisted unit and keep going.

        Responses with the wrong shape are listed in report.errors and leave
        their job suspended; valid ones in the same call still apply. With
        nothing suspended this is a no-op returning the stored report.
        """
        self._stop.clear()
        snapshot = self.persistence.load_unit(unit_id)
        if snapshot is None:
            raise UnitNotFoundError(unit_id)

        suspended = [r.id for r in snapshot.jobs.values() if r.status == JobStatus.SUSPENDED]
        if not suspended and snapshot.report is not None:
            return snapshot.report

        if options is None:
            options = RunOptions.from_dict(snapshot.options)
        satisfied = list(snapshot.options.get("satisfied", []))
        jobs = [r.to_job() for r in snapshot.jobs.values()]
        waves = partition_into_waves(jobs, satisfied)

        snapshot = snapshot.model_copy(update={"jobs": _merge_records(jobs, snapshot, options)})
        self.persistence.save_unit(snapshot)
        self._setup(snapshot, waves, options, satisfied)

        errors: List[str] = []
        for job_id in sorted(responses):
            pending = self.checkpoints.get(job_id)
            if pending is None:
                errors.append(f"[{job_id}] is not waiting at a checkpoint")
                continue
            try:
                self.checkpoints.resume(pending, responses[job_id])
            except CheckpointResponseError as e:
                get_console().print_debug(str(e))
                errors.append(e.message)

        return self._drive(errors)

    def report(self, errors: Optional[List[str]] = None) -> RunReport:
        decision = Decision.CONTINUE
        for index in sorted(self._wave_reports):
            decision = self._wave_reports[index].decision
        return build_report(
            self.store,
            state=self.state,
            decision=decision,
            waves=list(self._wave_reports.values()),
            checkpoints=[s.to_pending() for s in self.checkpoints.pending()],
            current_wave=self.current_wave,
            errors=errors,
            stop_requested=self._stop.is_set(),
        )

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _setup(
        self,
        snapshot: UnitSnapshot,
        waves: List[Wave],
        options: RunOptions,
        satisfied: List[str],
    ) -> None:
        self.state = OrchestratorState.INITIALIZING
        self.current_wave = None
        self.options = options
        self.waves = waves
        self._wave_reports = {}

        jobs = [r.to_job() for r in snapshot.jobs.values()]
        assign_waves(jobs, waves)
        self.store = JobStore(snapshot.unit_id, self.persistence)
        self.store.load(jobs)
        self._dependents = dependents_of(jobs)

        self.checkpoints = CheckpointController(
            self.store,
            self.runner,
            persistence=self.persistence,
            bus=self.bus,
            auto_resolve=options.auto_resolve,
            decision_defaults=options.decision_defaults,
            default_timeout=options.default_timeout,
        )
        self.checkpoints.restore(snapshot.checkpoints.values())

        self.executor = WaveExecutor(
            self.store,
            self.runner,
            self.checkpoints,
            bus=self.bus,
            max_workers=options.max_workers if options.concurrent else 1,
            fail_fast=options.fail_fast,
            default_timeout=options.default_timeout,
            satisfied=satisfied,
            allow_failed=options.allow_failed,
        )
        if self._stop.is_set():
            self.executor.request_stop()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _drive(self, errors: Optional[List[str]] = None) -> RunReport:
        unit_id = self.store.unit_id

        for wave in self.waves:
            statuses = [self.store.status(j) for j in wave]
            if all(s.terminal for s in statuses):
                # finished in an earlier pass: re-aggregate quietly
                report = self._aggregate(wave)
                if report.decision != Decision.CONTINUE:
                    return self._halt(report.decision, wave.index, errors)
                continue

            self.state = OrchestratorState.RUNNING_WAVE
            self.current_wave = wave.index
            self._block_unreachable(wave)

            runnable = [j for j in wave if self.store.status(j) == JobStatus.PENDING]
            if runnable:
                self.bus.emit(Event(EventKind.WAVE_STARTED, unit_id, wave=wave.index, data={"jobs": runnable}))
                self.executor.run_wave(Wave(index=wave.index, job_ids=runnable), concurrent=self.options.concurrent)

            if self.checkpoints.pending(wave.index):
                self.state = OrchestratorState.AWAITING_CHECKPOINT
                self.checkpoints.resolve_automatically(wave.index)
                if self.checkpoints.pending(wave.index):
                    return self._finish(errors)
                self.state = OrchestratorState.RUNNING_WAVE

            self.state = OrchestratorState.AGGREGATING
            report = self._aggregate(wave)
            if report.not_started and not self.executor.stop_requested:
                self._block_skipped(report)
            self.bus.emit(Event(
                EventKind.WAVE_FINISHED,
                unit_id,
                wave=wave.index,
                data={"decision": report.decision.value, "successful": report.successful},
            ))

            if self.executor.stop_requested:
                return self._halt(report.decision, wave.index, errors)
            if report.decision != Decision.CONTINUE:
                return self._halt(report.decision, wave.index, errors)

        self.state = OrchestratorState.COMPLETED
        self.bus.emit(Event(EventKind.RUN_COMPLETED, unit_id))
        return self._finish(errors)

    def _aggregate(self, wave: Wave) -> WaveReport:
        outcomes = self._wave_outcomes(wave)
        already_blocked = [j for j in wave if self.store.status(j) == JobStatus.BLOCKED]
        report = aggregate(
            wave,
            outcomes,
            dependents=self._dependents,
            allow_failed=self.options.allow_failed,
            halt_on_failure=self.options.halt_on_failure,
            systemic_min_jobs=self.options.systemic_min_jobs,
            already_blocked=already_blocked,
        )
        for blocked in report.blocked:
            self._block(blocked.job_id, blocked.blocked_by)
        self._wave_reports[wave.index] = report
        return report

    def _wave_outcomes(self, wave: Wave) -> List[JobOutcome]:
        outcomes: List[JobOutcome] = []
        for job_id in wave:
            job = self.store.get(job_id)
            if job.status == JobStatus.COMPLETED:
                outcomes.append(JobOutcome(job_id, Completed(job.result)))
            elif job.status == JobStatus.FAILED:
                reason = job.failure_reason or ""
                outcomes.append(JobOutcome(job_id, Failed(reason, timed_out=reason.startswith(TIMEOUT_REASON))))
            elif job.status == JobStatus.SUSPENDED:
                pending = self.checkpoints.get(job_id)
                if pending is not None:
                    outcomes.append(JobOutcome(job_id, Suspended(pending.checkpoint)))
        return outcomes

    def _block_unreachable(self, wave: Wave) -> None:
        """Block pending jobs whose dependencies already failed or are blocked."""
        allowed = set(self.options.allow_failed)
        for job_id in wave:
            job = self.store.get(job_id)
            if job.status != JobStatus.PENDING:
                continue
            for dep in job.depends_on:
                if dep not in self.store:
                    continue
                dep_job = self.store.get(dep)
                if dep_job.status == JobStatus.FAILED and dep not in allowed:
                    self._block(job_id, dep)
                    break
                if dep_job.status == JobStatus.BLOCKED:
                    self._block(job_id, dep_job.blocked_by or dep)
                    break

    def _block_skipped(self, report: WaveReport) -> None:
        """
        Jobs a fail-fast wave never started are blocked by the failure that
        cut the wave short, together with everything downstream of them.
        With no failure to name, the wave is held for review instead.
        """
        hard = [f.job_id for f in report.failed if f.job_id not in set(self.options.allow_failed)]
        cause = (hard or [f.job_id for f in report.failed] or [None])[0]
        if cause is None:
            report.decision = Decision.HALT_FOR_REVIEW
            return

        blocked = {b.job_id: b.blocked_by for b in report.blocked}
        for job_id in report.not_started:
            for skipped in [job_id, *sorted(transitive_dependents(self._dependents, job_id))]:
                self._block(skipped, cause)
                record = self.store.get(skipped)
                if record.status == JobStatus.BLOCKED:
                    blocked.setdefault(skipped, record.blocked_by or cause)
        report.blocked = [BlockedInfo(job_id=j, blocked_by=by) for j, by in sorted(blocked.items())]
        report.not_started = []

    def _block(self, job_id: str, blocked_by: str) -> None:
        if self.store.try_transition(job_id, JobStatus.PENDING, JobStatus.BLOCKED, blocked_by=blocked_by):
            self.bus.emit(Event(
                EventKind.JOB_BLOCKED,
                self.store.unit_id,
                job_id=job_id,
                wave=self.store.get(job_id).wave,
                data={"blocked_by": blocked_by},
            ))

    def _halt(self, decision: Decision, index: int, errors: Optional[List[str]]) -> RunReport:
        self.state = OrchestratorState.HALTED
        self.current_wave = index
        self.bus.emit(Event(
            EventKind.RUN_HALTED,
            self.store.unit_id,
            wave=index,
            data={"decision": decision.value, "stop_requested": self._stop.is_set()},
        ))
        return self._finish(errors)

    def _finish(self, errors: Optional[List[str]]) -> RunReport:
        report = self.report(errors)
        self.persistence.save_report(self.store.unit_id, report)
        return report


def _merge_records(
    jobs: List[Job],
    previous: Optional[UnitSnapshot],
    options: RunOptions,
) -> Dict[str, JobRecord]:
    """
    Job definitions from `jobs`, runtime state from the previous snapshot.

    - running (the process died mid-job) goes back to pending
    - failed goes back to pending when options.retry_failed is set
    - blocked goes back to pending when its failed ancestor is now allowed
      or no longer failed
    """
    records: Dict[str, JobRecord] = {}
    for job in jobs:
        record = JobRecord.from_job(job)
        prev = previous.jobs.get(job.id) if previous else None
        if prev is not None:
            record.status = prev.status
            record.result = prev.result
            record.failure_reason = prev.failure_reason
            record.blocked_by = prev.blocked_by
        if record.status == JobStatus.RUNNING:
            get_console().print_debug(f"[{job.id}] was running when the last process stopped; re-running")
            _reset(record)
        if record.status == JobStatus.FAILED and options.retry_failed:
            _reset(record)
        records[job.id] = record

    allowed = set(options.allow_failed)
    for record in records.values():
        if record.status != JobStatus.BLOCKED:
            continue
        ancestor = records.get(record.blocked_by or "")
        if record.blocked_by in allowed or ancestor is None or ancestor.status != JobStatus.FAILED:
            _reset(record)
    return records


def _reset(record: JobRecord) -> None:
    record.status = JobStatus.PENDING
    record.result = None
    record.failure_reason = None
    record.blocked_by = None
