# test_dag.py
from __future__ import annotations

import pytest

from conftest import J
from jobwave.dag import job_index, partition_into_waves, ready_jobs, transitive_dependents, dependents_of, validate_jobs
from jobwave.errors import CycleError, DuplicateJobError, UnknownDependencyError, WaveOverrideError
from jobwave.model import JobStatus


def as_lists(waves):
    return [list(w.job_ids) for w in waves]


def test_independent_jobs_then_join():
    waves = partition_into_waves([J("A"), J("B"), J("C", "A", "B")])
    assert as_lists(waves) == [["A", "B"], ["C"]]
    assert [w.index for w in waves] == [0, 1]


def test_wave_is_one_past_deepest_dependency():
    jobs = [
        J("lint"),
        J("build", "lint"),
        J("unit", "build"),
        J("docs"),
        J("release", "unit", "docs"),
    ]
    waves = partition_into_waves(jobs)
    wave_of = {job_id: w.index for w in waves for job_id in w}
    for job in jobs:
        for dep in job.depends_on:
            assert wave_of[job.id] > wave_of[dep]
    assert wave_of["release"] == 3
    assert wave_of["docs"] == 0


def test_two_job_cycle_names_both():
    with pytest.raises(CycleError) as exc:
        partition_into_waves([J("A", "B"), J("B", "A")])
    assert exc.value.jobs == ["A", "B"]


def test_cycle_error_excludes_downstream_jobs():
    with pytest.raises(CycleError) as exc:
        partition_into_waves([J("A", "B"), J("B", "A"), J("C", "A"), J("D")])
    assert exc.value.jobs == ["A", "B"]


def test_self_dependency_is_a_cycle():
    with pytest.raises(CycleError):
        partition_into_waves([J("A", "A")])


def test_unknown_dependency():
    with pytest.raises(UnknownDependencyError) as exc:
        partition_into_waves([J("A", "ghost")])
    assert exc.value.dependency == "ghost"


def test_external_dependency_is_satisfied():
    waves = partition_into_waves([J("A", "done-elsewhere"), J("B", "A")], satisfied=["done-elsewhere"])
    assert as_lists(waves) == [["A"], ["B"]]


def test_duplicate_ids():
    with pytest.raises(DuplicateJobError) as exc:
        partition_into_waves([J("A"), J("A"), J("B")])
    assert exc.value.duplicates == ["A"]


def test_wave_override_pushes_later():
    waves = partition_into_waves([J("A"), J("B", "A", wave_override=3)])
    assert [(w.index, list(w.job_ids)) for w in waves] == [(0, ["A"]), (3, ["B"])]


def test_wave_override_cannot_pull_earlier():
    with pytest.raises(WaveOverrideError):
        partition_into_waves([J("A"), J("B", "A", wave_override=0)])


def test_partition_does_not_touch_input():
    jobs = [J("A"), J("B", "A")]
    partition_into_waves(jobs)
    assert [j.wave for j in jobs] == [None, None]


def test_transitive_dependents():
    adj = dependents_of([J("A"), J("B", "A"), J("C", "B"), J("D")])
    assert transitive_dependents(adj, "A") == {"B", "C"}
    assert transitive_dependents(adj, "D") == set()


def test_validate_reports_errors_and_warnings():
    result = validate_jobs([J("A", "A"), J("B", wave_override=2)])
    assert not result.valid
    assert any("depends on itself" in e for e in result.errors)
    assert any("depends_on is empty" in w for w in result.warnings)


def test_validate_clean_set():
    result = validate_jobs([J("A"), J("B", "A")])
    assert result.valid
    assert result.warnings == []


def test_job_index():
    jobs = [J("A"), J("B", "A", autonomous=False)]
    index = job_index(jobs, {"A": JobStatus.COMPLETED})
    assert index.waves == {0: ["A"], 1: ["B"]}
    assert index.incomplete == ["B"]
    assert index.has_checkpoints


def test_ready_jobs_and_join_points():
    jobs = [J("A"), J("D"), J("B", "A"), J("C", "A", "D"), J("E", "C")]
    plan = ready_jobs(jobs, completed=[])
    assert plan.ready == ["A", "D"]
    assert plan.join_points == {"B": ["A"], "C": ["A", "D"]}

    plan = ready_jobs(jobs, completed=["A", "D"])
    assert plan.ready == ["B", "C"]
    assert plan.join_points == {"E": ["C"]}
