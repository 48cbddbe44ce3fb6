# lifecycle.py
from __future__ import annotations

from typing import Optional

from .events import Event, EventBus, EventKind
from .model import Completed, Failed, JobOutcome, JobStatus
from .store import JobStore


def finish_job(
    store: JobStore,
    bus: EventBus,
    outcome: JobOutcome,
    wave: Optional[int] = None,
) -> JobOutcome:
    """
    Record a terminal outcome (Completed or Failed) for a Running job and
    announce it. Suspended outcomes go through the CheckpointController.
    """
    result = outcome.outcome
    if isinstance(result, Completed):
        store.transition(outcome.job_id, JobStatus.RUNNING, JobStatus.COMPLETED, result=result.result)
        bus.emit(Event(
            EventKind.JOB_COMPLETED,
            store.unit_id,
            job_id=outcome.job_id,
            wave=wave,
            data={"duration": outcome.duration},
        ))
    elif isinstance(result, Failed):
        store.transition(outcome.job_id, JobStatus.RUNNING, JobStatus.FAILED, failure_reason=result.reason)
        bus.emit(Event(
            EventKind.JOB_FAILED,
            store.unit_id,
            job_id=outcome.job_id,
            wave=wave,
            data={"reason": result.reason, "timed_out": result.timed_out, "duration": outcome.duration},
        ))
    else:
        raise TypeError(f"finish_job() takes Completed or Failed outcomes, got {type(result).__name__}")
    return outcome
