# aggregate.py
from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Set

from .dag import transitive_dependents
from .model import (
    TIMEOUT_REASON,
    BlockedInfo,
    Completed,
    Decision,
    Failed,
    FailureInfo,
    JobOutcome,
    JobStatus,
    OrchestratorState,
    PendingCheckpoint,
    RunReport,
    Suspended,
    Wave,
    WaveReport,
)
from .store import JobStore


def aggregate(
    wave: Wave,
    outcomes: List[JobOutcome],
    *,
    dependents: Dict[str, Set[str]],
    allow_failed: Iterable[str] = (),
    halt_on_failure: bool = True,
    systemic_min_jobs: int = 2,
    already_blocked: Iterable[str] = (),
) -> WaveReport:
    """
    Fold the outcomes of one wave into a WaveReport and a decision.

    - The last outcome per job wins (a job can suspend, then complete).
    - Every transitive dependent of a failed job is reported blocked, naming
      the failed ancestor, unless that failure is in `allow_failed`.
    - stop_systemic: every job that ran failed (and at least
      `systemic_min_jobs` ran). halt_for_review: some failure not allowed
      and halt_on_failure set. Otherwise continue.

    Pure: nothing is written anywhere.
    """
    allowed = set(allow_failed)
    latest: Dict[str, JobOutcome] = {}
    for outcome in outcomes:
        latest[outcome.job_id] = outcome

    report = WaveReport(index=wave.index)
    for job_id in sorted(latest):
        result = latest[job_id].outcome
        if isinstance(result, Completed):
            report.completed.append(job_id)
        elif isinstance(result, Failed):
            report.failed.append(FailureInfo(job_id=job_id, reason=result.reason, timed_out=result.timed_out))
        elif isinstance(result, Suspended):
            report.suspended.append(job_id)

    skipped = set(already_blocked)
    report.not_started = sorted(j for j in wave.job_ids if j not in latest and j not in skipped)

    blocked: Dict[str, str] = {}
    for failure in report.failed:
        if failure.job_id in allowed:
            continue
        for dependent in sorted(transitive_dependents(dependents, failure.job_id)):
            blocked.setdefault(dependent, failure.job_id)
    report.blocked = [BlockedInfo(job_id=j, blocked_by=by) for j, by in sorted(blocked.items())]

    ran = len(report.completed) + len(report.failed) + len(report.suspended)
    hard_failures = [f for f in report.failed if f.job_id not in allowed]
    if report.failed and len(report.failed) == ran and ran >= systemic_min_jobs:
        report.decision = Decision.STOP_SYSTEMIC
    elif hard_failures and halt_on_failure:
        report.decision = Decision.HALT_FOR_REVIEW
    else:
        report.decision = Decision.CONTINUE

    return report


def build_report(
    store: JobStore,
    *,
    state: OrchestratorState,
    decision: Decision,
    waves: List[WaveReport],
    checkpoints: List[PendingCheckpoint],
    current_wave: Optional[int] = None,
    errors: Optional[List[str]] = None,
    stop_requested: bool = False,
) -> RunReport:
    """Whole-unit RunReport, read from the Job Store (the source of truth)."""
    jobs = sorted(store.jobs(), key=lambda j: j.id)
    return RunReport(
        unit_id=store.unit_id,
        state=state,
        current_wave=current_wave,
        decision=decision,
        completed=[j.id for j in jobs if j.status == JobStatus.COMPLETED],
        failed=[
            FailureInfo(
                job_id=j.id,
                reason=j.failure_reason or "",
                timed_out=(j.failure_reason or "").startswith(TIMEOUT_REASON),
            )
            for j in jobs
            if j.status == JobStatus.FAILED
        ],
        suspended=[j.id for j in jobs if j.status == JobStatus.SUSPENDED],
        blocked=[
            BlockedInfo(job_id=j.id, blocked_by=j.blocked_by or "")
            for j in jobs
            if j.status == JobStatus.BLOCKED
        ],
        checkpoints=sorted(checkpoints, key=lambda c: c.job_id),
        waves=sorted(waves, key=lambda w: w.index),
        errors=list(errors or []),
        stop_requested=stop_requested,
    )
