# test_persistence.py
from __future__ import annotations

import pytest

from conftest import FakeRunner, J, decision, fails
from jobwave.model import Checkpoint, CheckpointKind, JobStatus, OrchestratorState, RunReport
from jobwave.orchestrator import Orchestrator
from jobwave.persistence import (
    CheckpointRecord,
    FilePersistence,
    JobRecord,
    MemoryPersistence,
    UnitSnapshot,
    _SnapshotPersistence,
)
from jobwave.settings import RunOptions
from jobwave.sql import SqlPersistence


@pytest.fixture(params=["memory", "file", "sql"])
def persistence(request, tmp_path):
    if request.param == "memory":
        return MemoryPersistence()
    if request.param == "file":
        return FilePersistence(tmp_path / "state")
    return SqlPersistence(f"sqlite:///{tmp_path / 'state.db'}")


def test_unknown_unit_loads_as_none(persistence):
    assert persistence.load_unit("nope") is None


def test_save_job_is_idempotent(persistence):
    record = JobRecord(id="A", depends_on=["B"], status=JobStatus.COMPLETED, result={"n": 1})
    persistence.save_job("u", record)
    persistence.save_job("u", record)

    snapshot = persistence.load_unit("u")
    assert list(snapshot.jobs) == ["A"]
    assert snapshot.jobs["A"].result == {"n": 1}
    assert snapshot.jobs["A"].depends_on == ["B"]


def test_checkpoint_round_trip_and_delete(persistence):
    cp = Checkpoint(
        kind=CheckpointKind.DECISION,
        prompt_details={"q": "which db?"},
        resume_state={"next_step": 2, "env": {"K": "V"}},
        options=["pg", "sqlite"],
        default_option="pg",
    )
    persistence.save_checkpoint("u", CheckpointRecord.from_checkpoint("A", cp))

    loaded = persistence.load_unit("u").checkpoints["A"].to_checkpoint()
    assert loaded == cp

    persistence.delete_checkpoint("u", "A")
    assert persistence.load_unit("u").checkpoints == {}


def test_save_unit_replaces_everything(persistence):
    persistence.save_job("u", JobRecord(id="old"))
    persistence.save_unit(UnitSnapshot(
        unit_id="u",
        jobs={"A": JobRecord(id="A")},
        options={"concurrent": False, "satisfied": ["ext"]},
    ))
    snapshot = persistence.load_unit("u")
    assert list(snapshot.jobs) == ["A"]
    assert snapshot.options["satisfied"] == ["ext"]


def test_report_round_trip(persistence):
    persistence.save_unit(UnitSnapshot(unit_id="u"))
    report = RunReport(unit_id="u", state=OrchestratorState.COMPLETED, completed=["A"])
    persistence.save_report("u", report)
    assert persistence.load_unit("u").report == report


def test_list_units(persistence):
    persistence.save_unit(UnitSnapshot(unit_id="b"))
    persistence.save_unit(UnitSnapshot(unit_id="a"))
    assert persistence.list_units() == ["a", "b"]


def test_pause_and_resume_across_orchestrators(persistence):
    jobs = [J("A"), J("B", "A", autonomous=False), J("C", "B")]
    options = RunOptions(max_workers=2, decision_defaults={"B": "X"})
    first = Orchestrator(FakeRunner({"B": decision(["X", "Y"])}), persistence)
    report = first.execute(jobs, options, unit_id="unit-p")
    assert report.state == OrchestratorState.AWAITING_CHECKPOINT

    second = Orchestrator(FakeRunner({"B": decision(["X", "Y"])}), persistence)
    report = second.resume_execution("unit-p", {"B": "Y"})

    assert report.state == OrchestratorState.COMPLETED
    snapshot = persistence.load_unit("unit-p")
    assert snapshot.jobs["B"].result == {"choice": "Y"}
    assert snapshot.checkpoints == {}
    assert snapshot.options["decision_defaults"] == {"B": "X"}
    assert snapshot.report == report


def test_failed_run_is_reported_after_reload(persistence):
    Orchestrator(FakeRunner({"A": fails("nope")}), persistence).execute([J("A"), J("B", "A")], unit_id="f")
    snapshot = persistence.load_unit("f")
    assert snapshot.jobs["B"].status == JobStatus.BLOCKED
    assert snapshot.jobs["B"].blocked_by == "A"
    assert snapshot.report.failed[0].reason == "nope"


def test_file_writes_leave_no_temp_files(tmp_path):
    persistence = FilePersistence(tmp_path)
    for i in range(5):
        persistence.save_job("unit/with spaces", JobRecord(id=f"j{i}"))
    files = sorted(p.name for p in tmp_path.iterdir())
    assert files == ["unit_with_spaces.json"]
    assert persistence.list_units() == ["unit/with spaces"]


def test_snapshot_backend_must_provide_storage():
    class ReadOnly(_SnapshotPersistence):
        def _read(self, unit_id):
            return None

        def list_units(self):
            return []

    with pytest.raises(TypeError):
        ReadOnly()
