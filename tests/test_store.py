# test_store.py
from __future__ import annotations

import threading

import pytest

from conftest import J
from jobwave.errors import InvalidTransition, UnknownJobError
from jobwave.model import JobStatus
from jobwave.persistence import MemoryPersistence
from jobwave.store import JobStore


def make_store(*jobs, persistence=None):
    store = JobStore("unit-1", persistence)
    store.load(jobs or [J("A")])
    return store


def test_transition_compare_and_set():
    store = make_store()
    store.transition("A", JobStatus.PENDING, JobStatus.RUNNING)
    with pytest.raises(InvalidTransition):
        store.transition("A", JobStatus.PENDING, JobStatus.RUNNING)
    assert store.status("A") == JobStatus.RUNNING


def test_fields_only_live_in_their_status():
    store = make_store()
    store.transition("A", JobStatus.PENDING, JobStatus.RUNNING)
    job = store.transition("A", JobStatus.RUNNING, JobStatus.FAILED, failure_reason="boom")
    assert job.failure_reason == "boom"
    job = store.transition("A", JobStatus.FAILED, JobStatus.PENDING)
    assert job.failure_reason is None
    assert job.result is None


def test_get_returns_a_copy():
    store = make_store()
    job = store.get("A")
    job.status = JobStatus.COMPLETED
    assert store.status("A") == JobStatus.PENDING


def test_unknown_job():
    store = make_store()
    with pytest.raises(UnknownJobError):
        store.status("nope")


def test_only_one_racer_wins():
    store = make_store()
    wins = []
    barrier = threading.Barrier(16)

    def racer():
        barrier.wait()
        if store.try_transition("A", JobStatus.PENDING, JobStatus.RUNNING):
            wins.append(1)

    threads = [threading.Thread(target=racer) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(wins) == 1


def test_transitions_write_through():
    persistence = MemoryPersistence()
    store = make_store(J("A"), J("B", "A"), persistence=persistence)
    store.transition("A", JobStatus.PENDING, JobStatus.RUNNING)
    store.transition("A", JobStatus.RUNNING, JobStatus.COMPLETED, result={"ok": 1})

    snapshot = persistence.load_unit("unit-1")
    assert snapshot.jobs["A"].status == JobStatus.COMPLETED
    assert snapshot.jobs["A"].result == {"ok": 1}
    assert snapshot.jobs["B"].status == JobStatus.PENDING

    reloaded = JobStore.from_records("unit-1", snapshot.jobs.values())
    assert reloaded.statuses() == {"A": JobStatus.COMPLETED, "B": JobStatus.PENDING}


def test_with_status():
    store = make_store(J("A"), J("B"), J("C"))
    store.transition("B", JobStatus.PENDING, JobStatus.BLOCKED, blocked_by="X")
    assert store.with_status(JobStatus.PENDING) == ["A", "C"]
    assert store.get("B").blocked_by == "X"
