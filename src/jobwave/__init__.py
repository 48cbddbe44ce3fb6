from .dsl import job, sh, checkpoint, wf, JobBuilder, build
from .dag import partition_into_waves, validate_jobs, ready_jobs, job_index
from .model import (
    Job, Step, Wave, Checkpoint, CheckpointKind, Resume,
    Completed, Failed, Suspended, JobOutcome, JobStatus,
    Decision, OrchestratorState, RunReport, WaveReport,
)
from .errors import (
    JobwaveError, ConstructionError, CycleError, UnknownDependencyError,
    DuplicateJobError, WaveOverrideError, CheckpointResponseError,
    InvalidTransition, UnitNotFoundError,
)
from .store import JobStore
from .runner import JobRunner, FunctionRunner, VerifiedRunner, ShellJobRunner, invoke, load_workflow
from .executor import WaveExecutor
from .checkpoint import CheckpointController
from .aggregate import aggregate
from .orchestrator import Orchestrator
from .persistence import MemoryPersistence, FilePersistence
from .events import EventKind, EventRecorder
from .settings import RunOptions

__all__ = [
    "job", "sh", "checkpoint", "wf", "JobBuilder", "build",
    "partition_into_waves", "validate_jobs", "ready_jobs", "job_index",
    "Job", "Step", "Wave", "Checkpoint", "CheckpointKind", "Resume",
    "Completed", "Failed", "Suspended", "JobOutcome", "JobStatus",
    "Decision", "OrchestratorState", "RunReport", "WaveReport",
    "JobwaveError", "ConstructionError", "CycleError", "UnknownDependencyError",
    "DuplicateJobError", "WaveOverrideError", "CheckpointResponseError",
    "InvalidTransition", "UnitNotFoundError",
    "JobStore", "JobRunner", "FunctionRunner", "VerifiedRunner", "ShellJobRunner", "invoke", "load_workflow",
    "WaveExecutor", "CheckpointController", "aggregate", "Orchestrator",
    "MemoryPersistence", "FilePersistence", "EventKind", "EventRecorder", "RunOptions",
]
