# runner.py
from __future__ import annotations

import os
import runpy
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from .model import (
    TIMEOUT_REASON,
    Checkpoint,
    CheckpointKind,
    Completed,
    Failed,
    Job,
    Outcome,
    Resume,
    Step,
    Suspended,
)
from .ui.console import get_console


# ----------------------------------------------------------------------
# Runner interface
# ----------------------------------------------------------------------

@runtime_checkable
class JobRunner(Protocol):
    """
    Performs the actual work of a job.

    Called with resume=None for a first run, and with a Resume carrying the
    stored state and the human response when a suspended job continues.
    Must be re-entrant from any stored resume state.
    """

    def run(self, job: Job, resume: Optional[Resume] = None) -> Outcome: ...


class FunctionRunner:
    """Adapts a plain `fn(job, resume)` callable to the JobRunner interface."""

    def __init__(self, fn: Callable[[Job, Optional[Resume]], Outcome]):
        self.fn = fn

    def run(self, job: Job, resume: Optional[Resume] = None) -> Outcome:
        return self.fn(job, resume)


class VerifiedRunner:
    """
    Wraps a runner whose self-reported success should not be taken on trust.

    `check(job, result)` runs after every Completed outcome and returns None
    when the claimed work is really there, or a reason string; a reason turns
    the outcome into Failed. Failed and Suspended outcomes pass through.
    """

    def __init__(self, inner: Any, check: Callable[[Job, Any], Optional[str]]):
        self.inner = as_runner(inner)
        self.check = check

    def run(self, job: Job, resume: Optional[Resume] = None) -> Outcome:
        outcome = self.inner.run(job, resume)
        if isinstance(outcome, Completed):
            problem = self.check(job, outcome.result)
            if problem:
                return Failed(reason=f"Verification failed: {problem}")
        return outcome


def as_runner(obj: Any) -> JobRunner:
    if isinstance(obj, JobRunner):
        return obj
    if callable(obj):
        return FunctionRunner(obj)
    raise TypeError(f"Expected a JobRunner or a callable, got {type(obj).__name__}")


def _call(runner: JobRunner, job: Job, resume: Optional[Resume]) -> Outcome:
    try:
        outcome = runner.run(job, resume)
    except Exception as e:
        get_console().print_debug(f"[{job.id}] runner raised {type(e).__name__}: {e}")
        return Failed(reason=f"{type(e).__name__}: {e}")

    if not isinstance(outcome, (Completed, Failed, Suspended)):
        return Failed(reason=f"Runner returned {type(outcome).__name__}, expected Completed/Failed/Suspended")
    return outcome


def invoke(
    runner: JobRunner,
    job: Job,
    resume: Optional[Resume] = None,
    timeout: Optional[float] = None,
) -> Outcome:
    """
    Run one job through the runner and always come back with an outcome.

    Exceptions become Failed. With a timeout, the runner executes on a daemon
    thread; if it has not returned in time the job is Failed with reason
    Timeout and whatever it produces later is dropped. The thread itself is
    not killed: stopping its work is the runner's business.
    """
    if timeout is None:
        return _call(runner, job, resume)

    box: Dict[str, Outcome] = {}

    def target() -> None:
        box["outcome"] = _call(runner, job, resume)

    t = threading.Thread(target=target, name=f"jobwave-{job.id}", daemon=True)
    t.start()
    t.join(timeout)
    if t.is_alive() or "outcome" not in box:
        return Failed(reason=f"{TIMEOUT_REASON}: exceeded {timeout:g}s", timed_out=True)
    return box["outcome"]


# ----------------------------------------------------------------------
# Shell runner
# ----------------------------------------------------------------------

@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


def _run_step(job: Job, step: Step, repo_root: Path, env: Dict[str, str]) -> None:
    cwd = (repo_root / (step.cwd or ".")).resolve()
    if not cwd.exists():
        raise FileNotFoundError(f"[{job.id}] step '{step.name}' cwd not found: {cwd}")

    full_env = os.environ.copy()
    full_env.update({k: str(v) for k, v in (job.metadata.get("env") or {}).items()})
    full_env.update(env)

    proc = subprocess.run(
        step.run,
        shell=True,
        cwd=str(cwd),
        env=full_env,
        text=True,
        capture_output=True,   # so you can show output on failure
    )

    if proc.returncode != 0:
        raise StepFailure(
            job=job.id,
            step=step.name,
            cmd=step.run,
            exit_code=proc.returncode,
            stdout=proc.stdout[-4000:],
            stderr=proc.stderr[-4000:],
        )


class ShellJobRunner:
    """
    Runs the shell steps stored in job.metadata["steps"], in order.

    A step with kind="checkpoint" suspends the job. The resume state records
    the index of the next step plus any env collected so far, so a later
    process can pick up from there:
      - human-verify answered with an issue fails the job
      - decision exports JOBWAVE_DECISION to the remaining steps
      - human-action exports JOBWAVE_ACTION_NOTE when a note was given
    """

    def __init__(self, repo_root: str | Path = "."):
        self.repo_root = Path(repo_root).resolve()

    def run(self, job: Job, resume: Optional[Resume] = None) -> Outcome:
        console = get_console()
        steps = [Step.from_dict(s) for s in job.metadata.get("steps", [])]
        start = 0
        env: Dict[str, str] = {}

        if resume is not None:
            start = int(resume.state.get("next_step", 0))
            env.update(resume.state.get("env") or {})
            if resume.kind == CheckpointKind.HUMAN_VERIFY and not resume.response.get("approved"):
                return Failed(reason=f"Verification rejected: {resume.response.get('issue')}")
            if resume.kind == CheckpointKind.DECISION:
                env["JOBWAVE_DECISION"] = str(resume.response["selected"])
            if resume.kind == CheckpointKind.HUMAN_ACTION and resume.response.get("note"):
                env["JOBWAVE_ACTION_NOTE"] = str(resume.response["note"])

        ran: List[str] = list(resume.state.get("ran", [])) if resume is not None else []
        for idx in range(start, len(steps)):
            step = steps[idx]

            if step.kind == "checkpoint":
                data = dict(step.data or {})
                console.print_debug(f"[{job.id}] checkpoint at step '{step.name}'")
                return Suspended(
                    Checkpoint(
                        kind=CheckpointKind(data.get("kind", CheckpointKind.HUMAN_VERIFY.value)),
                        prompt_details={"step": step.name, **(data.get("details") or {})},
                        resume_state={"next_step": idx + 1, "env": env, "ran": ran},
                        options=list(data.get("options") or []),
                        default_option=data.get("default"),
                    )
                )

            console.print_debug(f"[{job.id}] > {step.name}")
            try:
                _run_step(job, step, self.repo_root, env)
            except StepFailure as e:
                detail = e.stderr.strip().splitlines()[-1] if e.stderr.strip() else ""
                return Failed(reason=f"{e} {detail}".strip())
            except FileNotFoundError as e:
                return Failed(reason=str(e))
            ran.append(step.name)

        result: Dict[str, Any] = {"steps": ran}
        if "JOBWAVE_DECISION" in env:
            result["decision"] = env["JOBWAVE_DECISION"]
        return Completed(result=result)


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

@dataclass
class Workflow:
    jobs: List[Job]
    runner: Optional[JobRunner] = None


def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[Job]
      - JOBS = [Job, ...]
    and may define RUNNER (a JobRunner or callable) to replace the shell
    runner.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"jobwave_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        jobs = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise TypeError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )

    runner = globals_dict.get("RUNNER")
    return Workflow(jobs=jobs, runner=as_runner(runner) if runner is not None else None)
