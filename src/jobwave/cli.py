# cli.py
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
from pydantic import ValidationError

from jobwave import settings
from jobwave.dag import job_index, ready_jobs, validate_jobs
from jobwave.errors import JobwaveError
from jobwave.model import JobStatus, OrchestratorState
from jobwave.orchestrator import Orchestrator
from jobwave.persistence import FilePersistence, Persistence
from jobwave.runner import ShellJobRunner, load_workflow
from jobwave.ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_AWAITING = 3


def find_workflow_files() -> list[Path]:
    """Workflow files in the current directory: jobwave_workflow.py first."""
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / "jobwave_workflow.py"
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  jobwave run --workflow my_workflow.py",
            )
            sys.exit(EXIT_FAILED)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", "  jobwave_workflow.py", "  *_workflow.py"],
            suggestion="Create jobwave_workflow.py or pass --workflow.",
        )
        sys.exit(EXIT_FAILED)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  jobwave run --workflow jobwave_workflow.py",
        )
        sys.exit(EXIT_FAILED)

    return workflow_files[0]


def make_persistence(state_dir: Optional[str], db_url: Optional[str]) -> Persistence:
    if db_url:
        from jobwave.sql import SqlPersistence
        return SqlPersistence(db_url)
    return FilePersistence(state_dir or settings.STATE_DIR)


def parse_response(raw: str) -> tuple[str, Any]:
    """JOB=VALUE, where VALUE is JSON (objects, true) or plain text."""
    if "=" not in raw:
        raise click.BadParameter(f"expected JOB=RESPONSE, got {raw!r}")
    job_id, value = raw.split("=", 1)
    value = value.strip()
    if value.startswith("{") or value in ("true", "false"):
        try:
            return job_id.strip(), json.loads(value)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"invalid JSON for {job_id}: {e}") from e
    return job_id.strip(), value


def exit_code_for(state: OrchestratorState, failed: int) -> int:
    if state == OrchestratorState.AWAITING_CHECKPOINT:
        return EXIT_AWAITING
    if state == OrchestratorState.HALTED or failed:
        return EXIT_FAILED
    return EXIT_OK


def _fail(ctx: click.Context, e: Exception) -> None:
    console = get_console()
    if isinstance(e, JobwaveError):
        console.print_error(e.kind.replace("_", " ").title(), e.message, details=[f"{k}: {v}" for k, v in e.details.items()])
        console.print_debug(repr(e))
    elif isinstance(e, ValidationError):
        console.print_error("Invalid configuration", str(e))
    else:
        console.print_exception(e)
    sys.exit(EXIT_FAILED)


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Show stack traces and debug output")
@click.option("--state-dir", default=None, help=f"Where unit state is kept (default {settings.STATE_DIR})")
@click.option("--db-url", default=settings.DATABASE_URL, help="SQLAlchemy URL; overrides --state-dir")
@click.option("--config", "config_path", default=None, help="Config file (default jobwave.json)")
@click.pass_context
def cli(ctx, debug, state_dir, db_url, config_path):
    """jobwave: run dependent jobs in waves, pausing at human checkpoints."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    try:
        config = settings.load_config(config_path)
    except ValidationError as e:
        _fail(ctx, e)
    ctx.obj["config"] = config
    ctx.obj["state_dir"] = state_dir or config.state_dir
    ctx.obj["db_url"] = db_url or config.database_url


def _persistence(ctx) -> Persistence:
    return make_persistence(ctx.obj["state_dir"], ctx.obj["db_url"])


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (defaults to jobwave_workflow.py if present)")
@click.option("--unit", "unit_id", default=None, help="Execution unit id; reuse one to continue it")
@click.option("--workers", default=None, type=int, help="Max parallel jobs per wave")
@click.option("--concurrent/--sequential", default=None, help="Run a wave's jobs in parallel or one by one")
@click.option("--auto-resolve/--interactive", default=None, help="Auto-approve verify and default decision checkpoints")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Sequential mode: stop the wave after a failure")
@click.option("--halt-on-failure/--continue-on-failure", default=None, help="Halt for review when a job fails")
@click.option("--retry-failed", is_flag=True, default=None, help="Re-run jobs that failed in a previous pass")
@click.option("--allow-failed", multiple=True, help="Failed job whose dependents may still run (repeatable)")
@click.option("--timeout", default=None, type=float, help="Default per-job timeout in seconds")
@click.pass_context
def run(ctx, workflow, unit_id, workers, concurrent, auto_resolve, fail_fast, halt_on_failure,
        retry_failed, allow_failed, timeout):
    """Run a workflow, wave by wave."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        wf = load_workflow(workflow_path)
        options = settings.resolve_options(
            ctx.obj["config"],
            concurrent=concurrent,
            max_workers=workers,
            auto_resolve=auto_resolve,
            fail_fast=fail_fast,
            halt_on_failure=halt_on_failure,
            retry_failed=retry_failed,
            allow_failed=list(allow_failed) or None,
            default_timeout=timeout,
        )
        orchestrator = Orchestrator(
            wf.runner or ShellJobRunner(workflow_path.resolve().parent),
            _persistence(ctx),
            listeners=[console.render_event],
        )

        console.print_run_started(
            unit_id=unit_id or "(new)",
            workflow=workflow_path.name,
            job_count=len(wf.jobs),
        )
        report = orchestrator.execute(wf.jobs, options, unit_id=unit_id)
        console.print_report(report)
        sys.exit(exit_code_for(report.state, len(report.failed)))

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except (JobwaveError, ValidationError, FileNotFoundError, TypeError, ValueError) as e:
        _fail(ctx, e)


@cli.command()
@click.argument("unit_id")
@click.option("--respond", "responses", multiple=True, help="JOB=RESPONSE (repeatable). JSON objects allowed.")
@click.option("--workflow", default=None, help="Workflow file whose RUNNER should be used")
@click.pass_context
def resume(ctx, unit_id, responses, workflow):
    """Answer checkpoints of a paused unit and continue it."""
    console = get_console()
    parsed: Dict[str, Any] = dict(parse_response(r) for r in responses)

    try:
        runner = None
        base = Path(".").resolve()
        if workflow:
            workflow_path = discover_workflow(workflow)
            runner = load_workflow(workflow_path).runner
            base = workflow_path.resolve().parent
        orchestrator = Orchestrator(
            runner or ShellJobRunner(base),
            _persistence(ctx),
            listeners=[console.render_event],
        )
        report = orchestrator.resume_execution(unit_id, parsed)
        console.print_report(report)
        sys.exit(exit_code_for(report.state, len(report.failed)))

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except (JobwaveError, ValidationError, FileNotFoundError, TypeError, ValueError) as e:
        _fail(ctx, e)


@cli.command()
@click.argument("unit_id")
@click.pass_context
def status(ctx, unit_id):
    """Show the stored report of a unit."""
    console = get_console()
    snapshot = _persistence(ctx).load_unit(unit_id)
    if snapshot is None:
        console.print_error("Unknown unit", f"No persisted execution unit '{unit_id}'")
        sys.exit(EXIT_FAILED)

    console.print_header(f"UNIT {unit_id}")
    for record in sorted(snapshot.jobs.values(), key=lambda r: (r.wave if r.wave is not None else -1, r.id)):
        suffix = ""
        if record.status == JobStatus.FAILED:
            suffix = f" ({record.failure_reason})"
        elif record.status == JobStatus.BLOCKED:
            suffix = f" (by {record.blocked_by})"
        console.print_info(f"  wave {record.wave}  {record.id}: {record.status.value}{suffix}")
    if snapshot.report is not None:
        console.print_report(snapshot.report)


@cli.command()
@click.pass_context
def units(ctx):
    """List persisted execution units."""
    for unit_id in _persistence(ctx).list_units():
        get_console().print_info(unit_id)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
@click.option("--unit", "unit_id", default=None, help="Mark completion from a persisted unit")
@click.pass_context
def waves(ctx, workflow, unit_id):
    """Validate a workflow and print its wave partition."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        wf = load_workflow(workflow_path)
        result = validate_jobs(wf.jobs)
        for warning in result.warnings:
            console.print_info(f"warning: {warning}")
        if not result.valid:
            console.print_error("Invalid workflow", workflow_path.name, details=result.errors)
            sys.exit(EXIT_FAILED)

        statuses = {}
        if unit_id:
            snapshot = _persistence(ctx).load_unit(unit_id)
            if snapshot is not None:
                statuses = {r.id: r.status for r in snapshot.jobs.values()}
        index = job_index(wf.jobs, statuses)
        console.print_waves(index.waves, index.incomplete if unit_id else None)
        if index.has_checkpoints:
            console.print_info("\nSome jobs pause at checkpoints.")
    except (JobwaveError, FileNotFoundError, TypeError, ValueError) as e:
        _fail(ctx, e)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
@click.option("--unit", "unit_id", required=True, help="Persisted unit to inspect")
@click.pass_context
def ready(ctx, workflow, unit_id):
    """Jobs that could start now, and the join points waiting on them."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        wf = load_workflow(workflow_path)
        snapshot = _persistence(ctx).load_unit(unit_id)
        completed = []
        if snapshot is not None:
            completed = [r.id for r in snapshot.jobs.values() if r.status == JobStatus.COMPLETED]
        plan = ready_jobs(wf.jobs, completed)
        console.print_header("READY")
        for job_id in plan.ready:
            console.print_info(f"  {job_id}")
        if plan.join_points:
            console.print_header("JOIN POINTS")
            for job_id, waits_for in sorted(plan.join_points.items()):
                console.print_info(f"  {job_id} waits for {', '.join(waits_for)}")
    except (JobwaveError, FileNotFoundError, TypeError, ValueError) as e:
        _fail(ctx, e)


if __name__ == "__main__":
    cli()
