# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List, Optional

from .model import CheckpointKind, Job, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


def checkpoint(
    name: str,
    kind: str | CheckpointKind = CheckpointKind.HUMAN_VERIFY,
    *,
    options: Optional[List[str]] = None,
    default: Optional[str] = None,
    **details: Any,
) -> Step:
    """
    A pause point inside a job. Extra keyword arguments end up in the
    checkpoint's prompt details (what the human gets shown).
    """
    kind = CheckpointKind(kind)
    if kind == CheckpointKind.DECISION and not options:
        raise ValueError(f"checkpoint({name!r}): a decision needs options")
    if default is not None and options and default not in options:
        raise ValueError(f"checkpoint({name!r}): default {default!r} is not one of {options}")

    data: Dict[str, Any] = {"kind": kind.value, "details": details}
    if options:
        data["options"] = list(options)
    if default is not None:
        data["default"] = default
    return Step(name=name, kind="checkpoint", data=data)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    wave: Optional[int] = None,
    autonomous: Optional[bool] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    **metadata: Any,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({id!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None or s.kind == "checkpoint" else replace(s, cwd=cwd) for s in steps_final]

    has_checkpoints = any(s.kind == "checkpoint" for s in steps_final)
    if autonomous is None:
        autonomous = not has_checkpoints
    elif autonomous and has_checkpoints:
        raise ValueError(f"job({id!r}) has checkpoint steps but autonomous=True")

    meta: Dict[str, Any] = dict(metadata)
    meta["steps"] = [s.to_dict() for s in steps_final]
    if env:
        meta["env"] = {k: str(v) for k, v in env.items()}

    return Job(
        id=id,
        depends_on=list(needs or []),
        autonomous=autonomous,
        timeout=timeout,
        wave_override=wave,
        metadata=meta,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, id: str):
        self.id = id
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._timeout: Optional[float] = None
        self._wave: Optional[int] = None

    def depends_on(self, *job_ids: str):
        self._needs.extend(job_ids)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def pause_for(self, name: str, kind: str | CheckpointKind = CheckpointKind.HUMAN_VERIFY, **kwargs: Any):
        self._steps.append(checkpoint(name, kind, **kwargs))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def in_wave(self, wave: int):
        self._wave = wave
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.id}' has no steps")
        return job(
            self.id,
            steps_list=self._steps,
            needs=self._needs,
            env=self._env,
            timeout=self._timeout,
            wave=self._wave,
        )


def build(id: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(id)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job) -> List[Job]:
    """
    Workflow definition helper.

        from jobwave import wf, job, sh, checkpoint

        def workflow():
            return wf(
                job("build", sh("compile", "make")),
                job("deploy", checkpoint("approve", "human-verify"), sh("ship", "make deploy"),
                    needs=["build"]),
            )
    """
    return list(jobs)
