# sql.py
from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .model import RunReport
from .persistence import CheckpointRecord, JobRecord, UnitSnapshot, now_utc


class Base(DeclarativeBase):
    pass


class Unit(Base):
    __tablename__ = "units"
    id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    options: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    report: Mapped[Optional[dict]] = mapped_column(sa.JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)


class JobRow(Base):
    __tablename__ = "jobs"
    unit_id: Mapped[str] = mapped_column(sa.Text, sa.ForeignKey("units.id", ondelete="CASCADE"), primary_key=True)
    job_id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    record: Mapped[dict] = mapped_column(sa.JSON, nullable=False)


class CheckpointRow(Base):
    __tablename__ = "checkpoints"
    unit_id: Mapped[str] = mapped_column(sa.Text, sa.ForeignKey("units.id", ondelete="CASCADE"), primary_key=True)
    job_id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    kind: Mapped[str] = mapped_column(sa.Text, nullable=False)
    record: Mapped[dict] = mapped_column(sa.JSON, nullable=False)


def make_engine(url: str) -> Engine:
    connect_args: Dict[str, Any] = {}
    if url.startswith("sqlite"):
        # worker threads write job transitions
        connect_args["check_same_thread"] = False
    return sa.create_engine(url, pool_pre_ping=True, connect_args=connect_args)


class SqlPersistence:
    """
    Persistence backed by a SQL database through SQLAlchemy.

    Job and checkpoint rows are upserted with Session.merge on their
    (unit_id, job_id) primary key, so re-saving a record is a no-op.
    """

    def __init__(self, url_or_engine: str | Engine):
        self.engine = make_engine(url_or_engine) if isinstance(url_or_engine, str) else url_or_engine
        self.SessionLocal = sessionmaker(self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)
        self._lock = threading.Lock()

    def _ensure_unit(self, s: Session, unit_id: str) -> Unit:
        unit = s.get(Unit, unit_id)
        if unit is None:
            unit = Unit(id=unit_id, options={}, updated_at=now_utc())
            s.add(unit)
            s.flush()
        else:
            unit.updated_at = now_utc()
        return unit

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load_unit(self, unit_id: str) -> Optional[UnitSnapshot]:
        with self.SessionLocal() as s:
            unit = s.get(Unit, unit_id)
            if unit is None:
                return None
            jobs = s.scalars(sa.select(JobRow).where(JobRow.unit_id == unit_id).order_by(JobRow.job_id)).all()
            cps = s.scalars(sa.select(CheckpointRow).where(CheckpointRow.unit_id == unit_id)).all()
            return UnitSnapshot(
                unit_id=unit.id,
                jobs={row.job_id: JobRecord.model_validate(row.record) for row in jobs},
                checkpoints={row.job_id: CheckpointRecord.model_validate(row.record) for row in cps},
                options=dict(unit.options or {}),
                report=RunReport.model_validate(unit.report) if unit.report else None,
                updated_at=unit.updated_at,
            )

    def list_units(self) -> List[str]:
        with self.SessionLocal() as s:
            return list(s.scalars(sa.select(Unit.id).order_by(Unit.id)).all())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save_unit(self, snapshot: UnitSnapshot) -> None:
        with self._lock, self.SessionLocal() as s:
            with s.begin():
                unit = self._ensure_unit(s, snapshot.unit_id)
                unit.options = dict(snapshot.options)
                unit.report = snapshot.report.model_dump(mode="json") if snapshot.report else None

                s.execute(sa.delete(JobRow).where(JobRow.unit_id == snapshot.unit_id))
                s.execute(sa.delete(CheckpointRow).where(CheckpointRow.unit_id == snapshot.unit_id))
                for record in snapshot.jobs.values():
                    s.add(_job_row(snapshot.unit_id, record))
                for record in snapshot.checkpoints.values():
                    s.add(_checkpoint_row(snapshot.unit_id, record))

    def save_job(self, unit_id: str, record: JobRecord) -> None:
        with self._lock, self.SessionLocal() as s:
            with s.begin():
                self._ensure_unit(s, unit_id)
                s.merge(_job_row(unit_id, record))

    def save_checkpoint(self, unit_id: str, record: CheckpointRecord) -> None:
        with self._lock, self.SessionLocal() as s:
            with s.begin():
                self._ensure_unit(s, unit_id)
                s.merge(_checkpoint_row(unit_id, record))

    def delete_checkpoint(self, unit_id: str, job_id: str) -> None:
        with self._lock, self.SessionLocal() as s:
            with s.begin():
                s.execute(
                    sa.delete(CheckpointRow).where(
                        CheckpointRow.unit_id == unit_id,
                        CheckpointRow.job_id == job_id,
                    )
                )

    def save_report(self, unit_id: str, report: RunReport) -> None:
        with self._lock, self.SessionLocal() as s:
            with s.begin():
                unit = self._ensure_unit(s, unit_id)
                unit.report = report.model_dump(mode="json")


def _job_row(unit_id: str, record: JobRecord) -> JobRow:
    return JobRow(
        unit_id=unit_id,
        job_id=record.id,
        status=record.status.value,
        record=record.model_dump(mode="json"),
    )


def _checkpoint_row(unit_id: str, record: CheckpointRecord) -> CheckpointRow:
    return CheckpointRow(
        unit_id=unit_id,
        job_id=record.job_id,
        kind=record.kind.value,
        record=record.model_dump(mode="json"),
    )
