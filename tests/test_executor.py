# test_executor.py
from __future__ import annotations

import threading
import time

from conftest import FakeRunner, J, fails
from jobwave.checkpoint import CheckpointController
from jobwave.events import Event, EventBus, EventKind, EventRecorder
from jobwave.executor import WaveExecutor
from jobwave.model import Completed, Failed, JobStatus, Wave
from jobwave.store import JobStore


def setup(jobs, runner, **kwargs):
    store = JobStore("unit-x")
    store.load(jobs)
    recorder = EventRecorder()
    bus = EventBus([recorder])
    checkpoints = CheckpointController(store, runner, bus=bus)
    executor = WaveExecutor(store, runner, checkpoints, bus=bus, **kwargs)
    return store, executor, recorder


def test_five_independent_jobs_all_finish_before_return():
    started = threading.Barrier(5, timeout=5)

    def work(job, resume):
        # opens only once all five are running at the same time
        started.wait()
        return Completed(job.id)

    runner = FakeRunner({f"j{i}": work for i in range(5)})
    store, executor, _ = setup([J(f"j{i}") for i in range(5)], runner)

    outcomes = executor.run_wave(Wave(0, [f"j{i}" for i in range(5)]), concurrent=True)

    assert sorted(o.job_id for o in outcomes) == [f"j{i}" for i in range(5)]
    assert all(store.status(f"j{i}") == JobStatus.COMPLETED for i in range(5))


def test_failure_does_not_touch_siblings():
    runner = FakeRunner({"B": fails("B broke")})
    store, executor, recorder = setup([J("A"), J("B"), J("C")], runner)

    executor.run_wave(Wave(0, ["A", "B", "C"]))

    assert store.statuses() == {"A": JobStatus.COMPLETED, "B": JobStatus.FAILED, "C": JobStatus.COMPLETED}
    assert store.get("B").failure_reason == "B broke"
    assert EventKind.JOB_FAILED in recorder.kinds("B")


def test_runner_exception_becomes_failed():
    def explode(job, resume):
        raise RuntimeError("disk on fire")

    store, executor, _ = setup([J("A"), J("B")], FakeRunner({"A": explode}))
    outcomes = {o.job_id: o for o in executor.run_wave(Wave(0, ["A", "B"]))}

    assert isinstance(outcomes["A"].outcome, Failed)
    assert "disk on fire" in outcomes["A"].outcome.reason
    assert store.status("B") == JobStatus.COMPLETED


def test_timeout_fails_with_timeout_reason():
    def slow(job, resume):
        time.sleep(2)
        return Completed("late")

    store, executor, _ = setup([J("A", timeout=0.1), J("B")], FakeRunner({"A": slow}))
    outcomes = {o.job_id: o for o in executor.run_wave(Wave(0, ["A", "B"]))}

    assert outcomes["A"].outcome.timed_out
    assert store.get("A").failure_reason.startswith("Timeout")
    assert store.status("B") == JobStatus.COMPLETED


def test_sequential_runs_in_input_order_and_continues_after_failure():
    runner = FakeRunner({"B": fails()})
    store, executor, _ = setup([J("C"), J("A"), J("B")], runner)

    executor.run_wave(["C", "B", "A"], concurrent=False)

    assert runner.ran() == ["C", "B", "A"]
    assert store.status("A") == JobStatus.COMPLETED


def test_sequential_fail_fast_stops_the_rest():
    runner = FakeRunner({"B": fails()})
    store, executor, _ = setup([J("A"), J("B"), J("C")], runner, fail_fast=True)

    outcomes = executor.run_wave(["A", "B", "C"], concurrent=False)

    assert [o.job_id for o in outcomes] == ["A", "B"]
    assert store.status("C") == JobStatus.PENDING


def test_never_starts_job_with_unmet_dependency():
    runner = FakeRunner()
    store, executor, _ = setup([J("A"), J("B", "A")], runner)

    outcomes = executor.run_wave(["B"])

    assert outcomes == []
    assert runner.ran() == []
    assert executor.unmet_dependencies("B") == ["A"]


def test_allowed_failure_satisfies_dependency():
    runner = FakeRunner()
    store, executor, _ = setup([J("A"), J("B", "A")], runner, allow_failed=["A"])
    store.transition("A", JobStatus.PENDING, JobStatus.FAILED, failure_reason="x")

    executor.run_wave(["B"])

    assert store.status("B") == JobStatus.COMPLETED


def test_stop_requested_starts_nothing_new():
    runner = FakeRunner()
    store, executor, _ = setup([J("A"), J("B")], runner)
    executor.request_stop()

    assert executor.run_wave(["A", "B"]) == []
    assert store.statuses() == {"A": JobStatus.PENDING, "B": JobStatus.PENDING}


def test_stop_mid_wave_lets_running_job_finish():
    store_box = {}

    def first(job, resume):
        store_box["executor"].request_stop()
        return Completed("done anyway")

    runner = FakeRunner({"A": first})
    store, executor, _ = setup([J("A"), J("B")], runner)
    store_box["executor"] = executor

    executor.run_wave(["A", "B"], concurrent=False)

    assert store.status("A") == JobStatus.COMPLETED
    assert store.status("B") == JobStatus.PENDING


def test_bounded_pool():
    active = []
    peak = []
    lock = threading.Lock()

    def work(job, resume):
        with lock:
            active.append(job.id)
            peak.append(len(active))
        time.sleep(0.05)
        with lock:
            active.remove(job.id)
        return Completed(None)

    ids = [f"j{i}" for i in range(6)]
    store, executor, _ = setup([J(i) for i in ids], FakeRunner({i: work for i in ids}), max_workers=2)
    executor.run_wave(ids)

    assert max(peak) <= 2
    assert all(store.status(i) == JobStatus.COMPLETED for i in ids)


def test_listener_can_emit_from_inside_a_listener():
    recorder = EventRecorder()
    bus = EventBus([recorder])

    def relay(event):
        if event.kind == EventKind.JOB_FAILED:
            bus.emit(Event(EventKind.JOB_BLOCKED, event.unit_id, job_id="B", data={"blocked_by": event.job_id}))

    bus.subscribe(relay)
    done = threading.Thread(target=bus.emit, args=(Event(EventKind.JOB_FAILED, "u", job_id="A"),), daemon=True)
    done.start()
    done.join(2)

    assert not done.is_alive()
    assert [(e.kind, e.job_id) for e in recorder.events] == [
        (EventKind.JOB_FAILED, "A"),
        (EventKind.JOB_BLOCKED, "B"),
    ]
