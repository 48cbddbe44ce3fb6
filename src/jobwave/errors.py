# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class JobwaveError(Exception):
    """
    Structured error with enough context for:
      - clean CLI output
      - callers that need to branch on `kind`
      - debugging without full tracebacks
    """
    kind: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Construction errors: raised before any job runs
# ----------------------------------------------------------------------

class ConstructionError(JobwaveError):
    pass


class CycleError(ConstructionError):
    def __init__(self, jobs: List[str]):
        super().__init__(
            kind="cycle",
            message=f"Dependency cycle between jobs: {', '.join(jobs)}",
            details={"jobs": jobs},
        )
        self.jobs = jobs


class UnknownDependencyError(ConstructionError):
    def __init__(self, job_id: str, dependency: str, known: List[str]):
        super().__init__(
            kind="unknown_dependency",
            message=f"Job '{job_id}' depends on missing job '{dependency}'",
            details={"known": known},
        )
        self.job_id = job_id
        self.dependency = dependency


class DuplicateJobError(ConstructionError):
    def __init__(self, duplicates: List[str]):
        super().__init__(
            kind="duplicate_job",
            message=f"Duplicate job ids found: {duplicates}",
        )
        self.duplicates = duplicates


class WaveOverrideError(ConstructionError):
    def __init__(self, job_id: str, override: int, minimum: int):
        super().__init__(
            kind="wave_override",
            message=(
                f"Job '{job_id}' is pinned to wave {override} "
                f"but its dependencies need wave {minimum} or later"
            ),
            details={"override": override, "minimum": minimum},
        )
        self.job_id = job_id


# ----------------------------------------------------------------------
# Runtime errors
# ----------------------------------------------------------------------

class CheckpointResponseError(JobwaveError):
    """A resume response does not match the shape its checkpoint kind expects."""

    def __init__(self, job_id: str, message: str, details: Dict[str, Any] | None = None):
        super().__init__(kind="checkpoint_response", message=f"[{job_id}] {message}", details=details or {})
        self.job_id = job_id


class InvalidTransition(JobwaveError):
    def __init__(self, job_id: str, expected: str, actual: str, new: str):
        super().__init__(
            kind="invalid_transition",
            message=f"[{job_id}] cannot move to {new}: status is {actual}, expected {expected}",
        )
        self.job_id = job_id
        self.actual = actual


class UnknownJobError(JobwaveError):
    def __init__(self, job_id: str):
        super().__init__(kind="unknown_job", message=f"No job with id '{job_id}'")
        self.job_id = job_id


class UnitNotFoundError(JobwaveError):
    def __init__(self, unit_id: str):
        super().__init__(kind="unit_not_found", message=f"No persisted execution unit '{unit_id}'")
        self.unit_id = unit_id
