# test_runner.py
from __future__ import annotations

import textwrap
import time

import pytest

from conftest import FakeRunner, J
from jobwave.dsl import checkpoint, job, sh
from jobwave.model import CheckpointKind, Completed, Failed, Resume, Suspended
from jobwave.runner import FunctionRunner, ShellJobRunner, VerifiedRunner, as_runner, invoke, load_workflow


# ---------------------------------------------------------------------
# invoke()
# ---------------------------------------------------------------------

def test_invoke_passes_outcome_through():
    assert invoke(FakeRunner(), J("A")) == Completed({"job": "A"})


def test_invoke_turns_exceptions_into_failed():
    def broken(job, resume):
        raise ValueError("bad input")

    outcome = invoke(FunctionRunner(broken), J("A"))
    assert outcome == Failed(reason="ValueError: bad input")


def test_invoke_rejects_untyped_results():
    outcome = invoke(as_runner(lambda job, resume: "done!"), J("A"))
    assert isinstance(outcome, Failed)
    assert "str" in outcome.reason


def test_invoke_timeout():
    def slow(job, resume):
        time.sleep(1)
        return Completed(None)

    started = time.monotonic()
    outcome = invoke(as_runner(slow), J("A"), timeout=0.05)
    assert time.monotonic() - started < 0.9
    assert outcome.timed_out
    assert outcome.reason == "Timeout: exceeded 0.05s"


def test_invoke_within_timeout():
    assert invoke(FakeRunner(), J("A"), timeout=5) == Completed({"job": "A"})


def test_as_runner_rejects_non_callables():
    with pytest.raises(TypeError):
        as_runner(42)


def test_verified_runner_downgrades_unverified_success():
    def check(job, result):
        return None if job.id == "A" else "no commit found"

    runner = VerifiedRunner(FakeRunner(), check)
    assert runner.run(J("A")) == Completed({"job": "A"})
    assert runner.run(J("B")) == Failed(reason="Verification failed: no commit found")


# ---------------------------------------------------------------------
# ShellJobRunner
# ---------------------------------------------------------------------

def test_shell_runner_runs_steps(tmp_path):
    j = job(
        "hello",
        sh("write", "echo hi > out.txt"),
        sh("check", 'test "$GREETING" = hey'),
        env={"GREETING": "hey"},
    )
    outcome = ShellJobRunner(tmp_path).run(j)
    assert outcome == Completed({"steps": ["write", "check"]})
    assert (tmp_path / "out.txt").read_text().strip() == "hi"


def test_shell_runner_reports_failing_step(tmp_path):
    j = job("bad", sh("ok", "true"), sh("boom", "echo oops >&2; exit 3"), sh("never", "touch never"))
    outcome = ShellJobRunner(tmp_path).run(j)
    assert isinstance(outcome, Failed)
    assert "exit=3" in outcome.reason
    assert "oops" in outcome.reason
    assert not (tmp_path / "never").exists()


def test_shell_runner_missing_cwd(tmp_path):
    j = job("x", sh("ls", "ls", cwd="does/not/exist"))
    outcome = ShellJobRunner(tmp_path).run(j)
    assert isinstance(outcome, Failed)
    assert "cwd not found" in outcome.reason


def test_shell_runner_suspends_and_resumes_with_decision(tmp_path):
    j = job(
        "deploy",
        sh("pre", "echo pre"),
        checkpoint("pick", "decision", options=["a", "b"], default="a", note="pick a target"),
        sh("use", 'test "$JOBWAVE_DECISION" = b'),
    )
    runner = ShellJobRunner(tmp_path)

    first = runner.run(j)
    assert isinstance(first, Suspended)
    cp = first.checkpoint
    assert cp.kind == CheckpointKind.DECISION
    assert cp.options == ["a", "b"]
    assert cp.default_option == "a"
    assert cp.prompt_details == {"step": "pick", "note": "pick a target"}
    assert cp.resume_state == {"next_step": 2, "env": {}, "ran": ["pre"]}

    second = runner.run(j, Resume(state=cp.resume_state, response={"selected": "b"}, kind=cp.kind))
    assert second == Completed({"steps": ["pre", "use"], "decision": "b"})


def test_shell_runner_rejected_verification(tmp_path):
    j = job("ui", checkpoint("look", "human-verify"), sh("ship", "touch shipped"))
    runner = ShellJobRunner(tmp_path)
    cp = runner.run(j).checkpoint

    outcome = runner.run(j, Resume(state=cp.resume_state, response={"approved": False, "issue": "ugly"}, kind=cp.kind))
    assert outcome == Failed(reason="Verification rejected: ugly")
    assert not (tmp_path / "shipped").exists()


def test_shell_runner_action_note(tmp_path):
    j = job("auth", checkpoint("login", "human-action"), sh("note", 'echo "$JOBWAVE_ACTION_NOTE" > note.txt'))
    runner = ShellJobRunner(tmp_path)
    cp = runner.run(j).checkpoint

    runner.run(j, Resume(state=cp.resume_state, response={"acknowledged": True, "note": "token set"}, kind=cp.kind))
    assert (tmp_path / "note.txt").read_text().strip() == "token set"


# ---------------------------------------------------------------------
# Workflow files
# ---------------------------------------------------------------------

def test_load_workflow_function(tmp_path):
    path = tmp_path / "demo_workflow.py"
    path.write_text(textwrap.dedent("""
        from jobwave.dsl import wf, job, sh

        def workflow():
            return wf(
                job("a", sh("one", "true")),
                job("b", sh("two", "true"), needs=["a"]),
            )
    """))
    loaded = load_workflow(path)
    assert [j.id for j in loaded.jobs] == ["a", "b"]
    assert loaded.runner is None


def test_load_workflow_jobs_and_runner(tmp_path):
    path = tmp_path / "custom_workflow.py"
    path.write_text(textwrap.dedent("""
        from jobwave.model import Job, Completed

        JOBS = [Job(id="x")]

        def RUNNER(job, resume):
            return Completed("custom")
    """))
    loaded = load_workflow(path)
    assert [j.id for j in loaded.jobs] == ["x"]
    assert loaded.runner.run(loaded.jobs[0]) == Completed("custom")


def test_load_workflow_rejects_bad_files(tmp_path):
    path = tmp_path / "empty_workflow.py"
    path.write_text("X = 1\n")
    with pytest.raises(TypeError):
        load_workflow(path)
    with pytest.raises(FileNotFoundError):
        load_workflow(tmp_path / "missing.py")
