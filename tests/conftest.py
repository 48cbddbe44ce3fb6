# conftest.py
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from jobwave.model import Checkpoint, CheckpointKind, Completed, Failed, Job, Resume, Suspended
from jobwave.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(debug=False))
    yield


def J(job_id: str, *deps: str, **kwargs: Any) -> Job:
    """J("C", "A", "B") -> Job C depending on A and B."""
    return Job(id=job_id, depends_on=list(deps), **kwargs)


class FakeRunner:
    """
    Deterministic job runner for tests.

    `behaviors` maps a job id to an outcome or to fn(job, resume) -> outcome;
    jobs without an entry complete with {"job": id}.
    """

    def __init__(self, behaviors: Optional[Dict[str, Any]] = None, delay: float = 0.0):
        self.behaviors = dict(behaviors or {})
        self.delay = delay
        self.calls: List[Tuple[str, Optional[Resume]]] = []
        self._lock = threading.Lock()

    def run(self, job: Job, resume: Optional[Resume] = None):
        with self._lock:
            self.calls.append((job.id, resume))
        if self.delay:
            time.sleep(self.delay)
        behavior = self.behaviors.get(job.id)
        if behavior is None:
            return Completed({"job": job.id})
        if callable(behavior):
            return behavior(job, resume)
        return behavior

    def ran(self) -> List[str]:
        with self._lock:
            return [job_id for job_id, _ in self.calls]


def fails(reason: str = "boom") -> Failed:
    return Failed(reason=reason)


def decision(options: List[str], default: Optional[str] = None) -> Callable:
    """Suspends at a decision first, then completes with the choice."""
    def behavior(job: Job, resume: Optional[Resume]):
        if resume is None:
            return Suspended(Checkpoint(
                kind=CheckpointKind.DECISION,
                prompt_details={"question": "which one?"},
                resume_state={"step": 1},
                options=list(options),
                default_option=default,
            ))
        return Completed({"choice": resume.response["selected"]})
    return behavior


def verify() -> Callable:
    """Suspends for human verification; an issue fails the job."""
    def behavior(job: Job, resume: Optional[Resume]):
        if resume is None:
            return Suspended(Checkpoint(kind=CheckpointKind.HUMAN_VERIFY, resume_state={"step": 1}))
        if resume.response.get("approved"):
            return Completed({"verified": True})
        return Failed(reason=f"rejected: {resume.response['issue']}")
    return behavior


def action() -> Callable:
    def behavior(job: Job, resume: Optional[Resume]):
        if resume is None:
            return Suspended(Checkpoint(
                kind=CheckpointKind.HUMAN_ACTION,
                prompt_details={"do": "log in to the registry"},
                resume_state={"step": 1},
            ))
        return Completed({"note": resume.response.get("note")})
    return behavior


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()
