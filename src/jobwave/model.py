# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.BLOCKED)


class CheckpointKind(str, Enum):
    HUMAN_VERIFY = "human-verify"
    DECISION = "decision"
    HUMAN_ACTION = "human-action"


TIMEOUT_REASON = "Timeout"


@dataclass(frozen=True)
class Step:
    """A single shell command, or a checkpoint marker, inside a job."""
    name: str
    run: str = ""
    cwd: str | None = None
    kind: str | None = None
    data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"name": self.name, "run": self.run}
        if self.cwd is not None:
            out["cwd"] = self.cwd
        if self.kind is not None:
            out["kind"] = self.kind
        if self.data is not None:
            out["data"] = self.data
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Step:
        return cls(
            name=data["name"],
            run=data.get("run", ""),
            cwd=data.get("cwd"),
            kind=data.get("kind"),
            data=data.get("data"),
        )


@dataclass
class Job:
    """
    A schedulable unit of work.

    `depends_on` lists ids that must be Completed before this job starts.
    `wave` is filled in by the grapher; `wave_override` lets a caller push a
    job into a later wave explicitly.
    """
    id: str
    depends_on: list[str] = field(default_factory=list)
    autonomous: bool = True
    timeout: Optional[float] = None
    wave_override: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    # runtime fields, owned by the JobStore
    wave: Optional[int] = None
    status: JobStatus = JobStatus.PENDING
    result: Any = None
    failure_reason: Optional[str] = None
    blocked_by: Optional[str] = None


@dataclass(frozen=True)
class Wave:
    """A batch of jobs with no dependency edges between them."""
    index: int
    job_ids: List[str]

    def __len__(self) -> int:
        return len(self.job_ids)

    def __iter__(self):
        return iter(self.job_ids)


@dataclass
class Checkpoint:
    """
    A suspension point raised by a running job.

    resume_state must be JSON-serializable: it is the only thing a later
    (possibly different) process gets to continue the job.
    """
    kind: CheckpointKind
    prompt_details: Dict[str, Any] = field(default_factory=dict)
    resume_state: Dict[str, Any] = field(default_factory=dict)
    options: List[str] = field(default_factory=list)
    default_option: Optional[str] = None

    def __post_init__(self) -> None:
        self.kind = CheckpointKind(self.kind)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "prompt_details": self.prompt_details,
            "resume_state": self.resume_state,
            "options": list(self.options),
            "default_option": self.default_option,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Checkpoint:
        return cls(
            kind=CheckpointKind(data["kind"]),
            prompt_details=dict(data.get("prompt_details") or {}),
            resume_state=dict(data.get("resume_state") or {}),
            options=list(data.get("options") or []),
            default_option=data.get("default_option"),
        )


@dataclass(frozen=True)
class Resume:
    """What a runner receives when a suspended job is continued."""
    state: Dict[str, Any]
    response: Dict[str, Any]
    kind: CheckpointKind


# ---------------------------------------------------------------------
# Job outcomes (tagged variant returned by runners)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Completed:
    result: Any = None


@dataclass(frozen=True)
class Failed:
    reason: str
    timed_out: bool = False


@dataclass(frozen=True)
class Suspended:
    checkpoint: Checkpoint


Outcome = Union[Completed, Failed, Suspended]


@dataclass(frozen=True)
class JobOutcome:
    """Outcome of one runner invocation, tagged with the job id."""
    job_id: str
    outcome: Outcome
    duration: float = 0.0

    @property
    def status(self) -> JobStatus:
        if isinstance(self.outcome, Completed):
            return JobStatus.COMPLETED
        if isinstance(self.outcome, Failed):
            return JobStatus.FAILED
        return JobStatus.SUSPENDED


# ---------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------

class Decision(str, Enum):
    CONTINUE = "continue"
    HALT_FOR_REVIEW = "halt_for_review"
    STOP_SYSTEMIC = "stop_systemic"


class OrchestratorState(str, Enum):
    INITIALIZING = "initializing"
    RUNNING_WAVE = "running_wave"
    AWAITING_CHECKPOINT = "awaiting_checkpoint"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    HALTED = "halted"


class FailureInfo(BaseModel):
    job_id: str
    reason: str
    timed_out: bool = False


class BlockedInfo(BaseModel):
    job_id: str
    blocked_by: str


class PendingCheckpoint(BaseModel):
    job_id: str
    kind: CheckpointKind
    prompt_details: Dict[str, Any] = Field(default_factory=dict)
    options: List[str] = Field(default_factory=list)


class WaveReport(BaseModel):
    index: int
    completed: List[str] = Field(default_factory=list)
    failed: List[FailureInfo] = Field(default_factory=list)
    suspended: List[str] = Field(default_factory=list)
    blocked: List[BlockedInfo] = Field(default_factory=list)
    not_started: List[str] = Field(default_factory=list)
    decision: Decision = Decision.CONTINUE

    @property
    def successful(self) -> bool:
        return not self.failed and not self.not_started


class RunReport(BaseModel):
    """Aggregate outcome of one wave or of a whole execution unit."""
    unit_id: str = ""
    state: OrchestratorState = OrchestratorState.INITIALIZING
    current_wave: Optional[int] = None
    decision: Decision = Decision.CONTINUE
    completed: List[str] = Field(default_factory=list)
    failed: List[FailureInfo] = Field(default_factory=list)
    suspended: List[str] = Field(default_factory=list)
    blocked: List[BlockedInfo] = Field(default_factory=list)
    checkpoints: List[PendingCheckpoint] = Field(default_factory=list)
    waves: List[WaveReport] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    stop_requested: bool = False

    @property
    def may_continue(self) -> bool:
        return self.decision == Decision.CONTINUE and self.state not in (
            OrchestratorState.HALTED,
            OrchestratorState.COMPLETED,
        )

    @property
    def counts(self) -> Dict[str, int]:
        return {
            "completed": len(self.completed),
            "failed": len(self.failed),
            "suspended": len(self.suspended),
            "blocked": len(self.blocked),
        }
