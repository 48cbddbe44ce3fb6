# persistence.py
from __future__ import annotations

import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from .model import Checkpoint, CheckpointKind, Job, JobStatus, RunReport


# ---------------------------------------------------------------------
# Persisted documents
# ---------------------------------------------------------------------
# Everything that must survive a process restart between a checkpoint pause
# and its resumption lives in these records. Writes are whole-record
# replacements keyed by (unit_id, job_id), so saving the same state twice
# is harmless.


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class JobRecord(BaseModel):
    id: str
    depends_on: List[str] = Field(default_factory=list)
    autonomous: bool = True
    timeout: Optional[float] = None
    wave_override: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    wave: Optional[int] = None
    status: JobStatus = JobStatus.PENDING
    result: Any = None
    failure_reason: Optional[str] = None
    blocked_by: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> JobRecord:
        return cls(
            id=job.id,
            depends_on=list(job.depends_on),
            autonomous=job.autonomous,
            timeout=job.timeout,
            wave_override=job.wave_override,
            metadata=dict(job.metadata),
            wave=job.wave,
            status=job.status,
            result=job.result,
            failure_reason=job.failure_reason,
            blocked_by=job.blocked_by,
        )

    def to_job(self) -> Job:
        return Job(
            id=self.id,
            depends_on=list(self.depends_on),
            autonomous=self.autonomous,
            timeout=self.timeout,
            wave_override=self.wave_override,
            metadata=dict(self.metadata),
            wave=self.wave,
            status=self.status,
            result=self.result,
            failure_reason=self.failure_reason,
            blocked_by=self.blocked_by,
        )


class CheckpointRecord(BaseModel):
    job_id: str
    kind: CheckpointKind
    prompt_details: Dict[str, Any] = Field(default_factory=dict)
    resume_state: Dict[str, Any] = Field(default_factory=dict)
    options: List[str] = Field(default_factory=list)
    default_option: Optional[str] = None
    raised_at: datetime = Field(default_factory=now_utc)

    @classmethod
    def from_checkpoint(cls, job_id: str, checkpoint: Checkpoint) -> CheckpointRecord:
        return cls(job_id=job_id, **checkpoint.to_dict())

    def to_checkpoint(self) -> Checkpoint:
        return Checkpoint(
            kind=self.kind,
            prompt_details=dict(self.prompt_details),
            resume_state=dict(self.resume_state),
            options=list(self.options),
            default_option=self.default_option,
        )


class UnitSnapshot(BaseModel):
    """Everything persisted for one execution unit."""
    unit_id: str
    jobs: Dict[str, JobRecord] = Field(default_factory=dict)
    checkpoints: Dict[str, CheckpointRecord] = Field(default_factory=dict)
    options: Dict[str, Any] = Field(default_factory=dict)
    report: Optional[RunReport] = None
    updated_at: datetime = Field(default_factory=now_utc)


class Persistence(Protocol):
    def load_unit(self, unit_id: str) -> Optional[UnitSnapshot]: ...

    def save_unit(self, snapshot: UnitSnapshot) -> None: ...

    def save_job(self, unit_id: str, record: JobRecord) -> None: ...

    def save_checkpoint(self, unit_id: str, record: CheckpointRecord) -> None: ...

    def delete_checkpoint(self, unit_id: str, job_id: str) -> None: ...

    def save_report(self, unit_id: str, report: RunReport) -> None: ...

    def list_units(self) -> List[str]: ...


# ---------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------

class _SnapshotPersistence(ABC):
    """
    Shared read-modify-write logic for backends that store one document per
    unit. Subclasses provide _read/_write and list_units.

    Every save_job rewrites the whole unit document. Units hold tens of jobs,
    not thousands; SqlPersistence writes per-row when that stops holding.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @abstractmethod
    def _read(self, unit_id: str) -> Optional[UnitSnapshot]: ...

    @abstractmethod
    def _write(self, snapshot: UnitSnapshot) -> None: ...

    @abstractmethod
    def list_units(self) -> List[str]: ...

    def _update(self, unit_id: str, fn) -> None:
        with self._lock:
            snap = self._read(unit_id) or UnitSnapshot(unit_id=unit_id)
            fn(snap)
            snap.updated_at = now_utc()
            self._write(snap)

    def load_unit(self, unit_id: str) -> Optional[UnitSnapshot]:
        with self._lock:
            return self._read(unit_id)

    def save_unit(self, snapshot: UnitSnapshot) -> None:
        with self._lock:
            self._write(snapshot.model_copy(deep=True))

    def save_job(self, unit_id: str, record: JobRecord) -> None:
        self._update(unit_id, lambda s: s.jobs.__setitem__(record.id, record.model_copy(deep=True)))

    def save_checkpoint(self, unit_id: str, record: CheckpointRecord) -> None:
        self._update(unit_id, lambda s: s.checkpoints.__setitem__(record.job_id, record.model_copy(deep=True)))

    def delete_checkpoint(self, unit_id: str, job_id: str) -> None:
        self._update(unit_id, lambda s: s.checkpoints.pop(job_id, None))

    def save_report(self, unit_id: str, report: RunReport) -> None:
        def apply(s: UnitSnapshot) -> None:
            s.report = report.model_copy(deep=True)
        self._update(unit_id, apply)


class MemoryPersistence(_SnapshotPersistence):
    """Process-local persistence. Survives orchestrator instances, not processes."""

    def __init__(self) -> None:
        super().__init__()
        self._units: Dict[str, UnitSnapshot] = {}

    def _read(self, unit_id: str) -> Optional[UnitSnapshot]:
        snap = self._units.get(unit_id)
        return snap.model_copy(deep=True) if snap is not None else None

    def _write(self, snapshot: UnitSnapshot) -> None:
        self._units[snapshot.unit_id] = snapshot

    def list_units(self) -> List[str]:
        with self._lock:
            return sorted(self._units)


_SAFE_ID = re.compile(r"[^A-Za-z0-9._-]+")


class FilePersistence(_SnapshotPersistence):
    """
    One JSON document per execution unit under `root`.

    Writes go to a temp file in the same directory and are moved into place
    with os.replace, so a crash mid-write leaves the previous document intact.
    """

    def __init__(self, root: str | Path):
        super().__init__()
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, unit_id: str) -> Path:
        return self.root / f"{_SAFE_ID.sub('_', unit_id)}.json"

    def _read(self, unit_id: str) -> Optional[UnitSnapshot]:
        path = self.path_for(unit_id)
        if not path.exists():
            return None
        return UnitSnapshot.model_validate_json(path.read_text(encoding="utf-8"))

    def _write(self, snapshot: UnitSnapshot) -> None:
        path = self.path_for(snapshot.unit_id)
        fd, tmp = tempfile.mkstemp(prefix=".tmp-", suffix=".part", dir=str(self.root))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(snapshot.model_dump_json(indent=2))
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def list_units(self) -> List[str]:
        with self._lock:
            out = []
            for p in sorted(self.root.glob("*.json")):
                out.append(UnitSnapshot.model_validate_json(p.read_text(encoding="utf-8")).unit_id)
            return out
