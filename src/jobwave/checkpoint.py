# checkpoint.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from .errors import CheckpointResponseError, InvalidTransition
from .events import Event, EventBus, EventKind
from .lifecycle import finish_job
from .model import (
    Checkpoint,
    CheckpointKind,
    Failed,
    JobOutcome,
    JobStatus,
    PendingCheckpoint,
    Resume,
    Suspended,
)
from .persistence import CheckpointRecord, Persistence
from .runner import JobRunner, invoke
from .store import JobStore
from .ui.console import get_console


# ---------------------------------------------------------------------
# Response shapes
# ---------------------------------------------------------------------

class VerifyResponse(BaseModel):
    """human-verify: either approve, or describe what is wrong."""
    model_config = ConfigDict(extra="forbid")

    approved: bool = False
    issue: Optional[str] = None

    @model_validator(mode="after")
    def _approve_xor_issue(self) -> VerifyResponse:
        has_issue = bool(self.issue and self.issue.strip())
        if self.approved == has_issue:
            raise ValueError("expected either approved=true or a non-empty issue")
        return self


class DecisionResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    selected: str


class ActionResponse(BaseModel):
    """human-action: the human confirms they did the thing."""
    model_config = ConfigDict(extra="forbid")

    acknowledged: bool = True
    note: Optional[str] = None

    @model_validator(mode="after")
    def _must_acknowledge(self) -> ActionResponse:
        if not self.acknowledged:
            raise ValueError("human-action checkpoints need acknowledged=true")
        return self


_SHAPES = {
    CheckpointKind.HUMAN_VERIFY: VerifyResponse,
    CheckpointKind.DECISION: DecisionResponse,
    CheckpointKind.HUMAN_ACTION: ActionResponse,
}


def _coerce(kind: CheckpointKind, response: Any) -> Any:
    """
    Shorthands accepted from the CLI / callers:
      human-verify: True or "approved" -> approve; any other text -> issue
      decision:     "X" -> selected X
      human-action: True or any text -> acknowledged (text kept as note)
    """
    if isinstance(response, dict):
        return response
    if kind == CheckpointKind.HUMAN_VERIFY:
        if response is True or (isinstance(response, str) and response.strip().lower() == "approved"):
            return {"approved": True}
        if isinstance(response, str):
            return {"issue": response}
    elif kind == CheckpointKind.DECISION:
        if isinstance(response, str):
            return {"selected": response}
    elif kind == CheckpointKind.HUMAN_ACTION:
        if response is True:
            return {"acknowledged": True}
        if isinstance(response, str) and response.strip():
            return {"acknowledged": True, "note": response}
    return response


def validate_response(job_id: str, checkpoint: Checkpoint, response: Any) -> Dict[str, Any]:
    """
    Check a human response against the checkpoint kind and return it in
    canonical dict form. Raises CheckpointResponseError on mismatch.
    """
    shape = _SHAPES[checkpoint.kind]
    try:
        parsed = shape.model_validate(_coerce(checkpoint.kind, response))
    except ValidationError as e:
        raise CheckpointResponseError(
            job_id,
            f"response does not fit a {checkpoint.kind.value} checkpoint",
            details={"errors": [err["msg"] for err in e.errors()]},
        ) from e

    if isinstance(parsed, DecisionResponse) and checkpoint.options and parsed.selected not in checkpoint.options:
        raise CheckpointResponseError(
            job_id,
            f"'{parsed.selected}' is not one of the options",
            details={"options": checkpoint.options},
        )
    return parsed.model_dump(exclude_none=True)


# ---------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class SuspendedJob:
    job_id: str
    checkpoint: Checkpoint
    wave: Optional[int] = None

    def to_pending(self) -> PendingCheckpoint:
        return PendingCheckpoint(
            job_id=self.job_id,
            kind=self.checkpoint.kind,
            prompt_details=self.checkpoint.prompt_details,
            options=list(self.checkpoint.options),
        )


class CheckpointController:
    """
    Owns the snapshots of suspended jobs.

    suspend() stores the checkpoint and frees the caller right away; the job
    keeps no thread. resume() validates the human response and re-runs the
    job through the runner from the stored resume state: a fresh execution,
    never a continuation of the original call.
    """

    def __init__(
        self,
        store: JobStore,
        runner: JobRunner,
        *,
        persistence: Optional[Persistence] = None,
        bus: Optional[EventBus] = None,
        auto_resolve: bool = False,
        decision_defaults: Optional[Dict[str, str]] = None,
        default_timeout: Optional[float] = None,
    ):
        self.store = store
        self.runner = runner
        self.persistence = persistence
        self.bus = bus or EventBus()
        self.auto_resolve = auto_resolve
        self.decision_defaults = dict(decision_defaults or {})
        self.default_timeout = default_timeout
        self._pending: Dict[str, SuspendedJob] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Suspension
    # ------------------------------------------------------------------

    def suspend(self, job_id: str, checkpoint: Checkpoint) -> SuspendedJob:
        wave = self.store.get(job_id).wave
        # snapshot first: a crash before the status flip leaves a Running job,
        # which is re-run from scratch on reload
        if self.persistence is not None:
            self.persistence.save_checkpoint(
                self.store.unit_id, CheckpointRecord.from_checkpoint(job_id, checkpoint)
            )
        self.store.transition(job_id, JobStatus.RUNNING, JobStatus.SUSPENDED)
        suspended = SuspendedJob(job_id=job_id, checkpoint=checkpoint, wave=wave)
        with self._lock:
            self._pending[job_id] = suspended

        self.bus.emit(Event(
            EventKind.JOB_SUSPENDED,
            self.store.unit_id,
            job_id=job_id,
            wave=wave,
            data={"kind": checkpoint.kind.value, "prompt_details": checkpoint.prompt_details},
        ))
        return suspended

    def restore(self, records: Iterable[CheckpointRecord]) -> None:
        """Reload snapshots for jobs the store says are still suspended."""
        for record in records:
            if record.job_id not in self.store:
                continue
            if self.store.status(record.job_id) != JobStatus.SUSPENDED:
                get_console().print_debug(f"[{record.job_id}] dropping stale checkpoint snapshot")
                if self.persistence is not None:
                    self.persistence.delete_checkpoint(self.store.unit_id, record.job_id)
                continue
            with self._lock:
                self._pending[record.job_id] = SuspendedJob(
                    job_id=record.job_id,
                    checkpoint=record.to_checkpoint(),
                    wave=self.store.get(record.job_id).wave,
                )

    def pending(self, wave: Optional[int] = None) -> List[SuspendedJob]:
        with self._lock:
            items = sorted(self._pending.values(), key=lambda s: s.job_id)
        return [s for s in items if wave is None or s.wave == wave]

    def get(self, job_id: str) -> Optional[SuspendedJob]:
        with self._lock:
            return self._pending.get(job_id)

    # ------------------------------------------------------------------
    # Resumption
    # ------------------------------------------------------------------

    def auto_response(self, suspended: SuspendedJob) -> Optional[Dict[str, Any]]:
        """
        The response used in non-interactive mode, or None when a human is
        required. human-action never resolves on its own.
        """
        if not self.auto_resolve:
            return None
        cp = suspended.checkpoint
        if cp.kind == CheckpointKind.HUMAN_VERIFY:
            return {"approved": True}
        if cp.kind == CheckpointKind.DECISION:
            choice = cp.default_option or self.decision_defaults.get(suspended.job_id)
            if choice is not None and (not cp.options or choice in cp.options):
                return {"selected": choice}
        return None

    def resume(self, suspended: SuspendedJob, response: Any) -> JobOutcome:
        """
        Continue a suspended job with a human response.

        A response of the wrong shape raises CheckpointResponseError before
        anything is touched; the job stays Suspended.
        """
        job_id = suspended.job_id
        normalized = validate_response(job_id, suspended.checkpoint, response)

        self.store.transition(job_id, JobStatus.SUSPENDED, JobStatus.RUNNING)
        with self._lock:
            self._pending.pop(job_id, None)
        self.bus.emit(Event(
            EventKind.JOB_RESUMED,
            self.store.unit_id,
            job_id=job_id,
            wave=suspended.wave,
            data={"response": normalized},
        ))

        job = self.store.get(job_id)
        resume = Resume(
            state=dict(suspended.checkpoint.resume_state),
            response=normalized,
            kind=suspended.checkpoint.kind,
        )
        started = time.monotonic()
        result = invoke(self.runner, job, resume, timeout=job.timeout or self.default_timeout)
        outcome = JobOutcome(job_id, result, duration=time.monotonic() - started)

        if isinstance(result, Suspended):
            if result.checkpoint == suspended.checkpoint:
                outcome = JobOutcome(
                    job_id,
                    Failed(reason="Runner suspended again at the same checkpoint after a valid response"),
                    duration=outcome.duration,
                )
            else:
                self.suspend(job_id, result.checkpoint)
                return outcome

        if self.persistence is not None:
            self.persistence.delete_checkpoint(self.store.unit_id, job_id)
        return finish_job(self.store, self.bus, outcome, wave=suspended.wave)

    def resolve_automatically(self, wave: Optional[int] = None) -> List[JobOutcome]:
        """
        Resume every pending checkpoint that has an auto response, repeating
        for jobs that suspend again, until only human-only checkpoints remain.
        """
        outcomes: List[JobOutcome] = []
        progressed = True
        while progressed:
            progressed = False
            for suspended in self.pending(wave):
                response = self.auto_response(suspended)
                if response is None:
                    continue
                try:
                    outcomes.append(self.resume(suspended, response))
                except InvalidTransition:
                    # another caller already resumed it
                    continue
                progressed = True
        return outcomes
