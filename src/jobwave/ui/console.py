"""Console output formatting utilities for jobwave."""

from __future__ import annotations

import json
import sys
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from ..events import Event
    from ..model import RunReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, unit_id: str, workflow: str, job_count: int) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Unit: {unit_id}")
        print(f"Workflow: {workflow}")
        print(f"Jobs: {job_count}")
        print()

    def print_waves(self, waves: Dict[int, List[str]], incomplete: Optional[List[str]] = None) -> None:
        """Print the wave partition of a job set."""
        self.print_header("WAVES")
        pending = set(incomplete or [])
        for index in sorted(waves):
            names = ", ".join(f"{j}*" if j in pending else j for j in waves[index])
            print(f"  Wave {index}: {names}")
        if incomplete is not None:
            print("  (* = not completed)")

    # ------------------------------------------------------------------
    # Lifecycle events
    # ------------------------------------------------------------------

    def render_event(self, event: Event) -> None:
        """Listener for the orchestrator's event stream."""
        kind = event.kind.value
        if kind == "wave_started":
            print(f"\n=== Wave {event.wave}: {', '.join(event.data.get('jobs', []))} ===")
        elif kind == "wave_finished":
            print(f"--- Wave {event.wave} finished: {event.data.get('decision', '')}")
        elif kind == "job_started":
            print(f"[{event.job_id}] started")
        elif kind == "job_completed":
            print(f"[{event.job_id}] completed")
        elif kind == "job_failed":
            print(f"[{event.job_id}] FAILED: {event.data.get('reason', '')}")
        elif kind == "job_suspended":
            print(f"[{event.job_id}] waiting at checkpoint ({event.data.get('kind', '')})")
        elif kind == "job_resumed":
            print(f"[{event.job_id}] resumed")
        elif kind == "job_blocked":
            print(f"[{event.job_id}] blocked by {event.data.get('blocked_by', '')}")
        elif kind == "run_halted":
            print(f"\nRUN HALTED ({event.data.get('decision', '')})")
        elif kind == "run_completed":
            print("\nRUN COMPLETED")
        elif self.debug:
            print(f"[DEBUG] event {kind}", file=sys.stderr)

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def print_report(self, report: RunReport) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print(f"RESULTS ({report.unit_id})")
        print("=" * 40)
        print(f"State: {report.state.value}")
        print(f"Decision: {report.decision.value}")
        counts = report.counts
        print(
            f"Completed: {counts['completed']}  Failed: {counts['failed']}  "
            f"Suspended: {counts['suspended']}  Blocked: {counts['blocked']}"
        )
        for f in report.failed:
            print(f"  FAILED  {f.job_id}: {f.reason}")
        for b in report.blocked:
            print(f"  BLOCKED {b.job_id} (by {b.blocked_by})")
        for err in report.errors:
            print(f"  ERROR   {err}")
        if report.checkpoints:
            self.print_checkpoints(report)

    def print_checkpoints(self, report: RunReport) -> None:
        """Print what each suspended job is waiting for."""
        self.print_header("CHECKPOINTS")
        for cp in report.checkpoints:
            print(f"  {cp.job_id} [{cp.kind.value}]")
            if cp.prompt_details:
                print(f"    {json.dumps(cp.prompt_details, sort_keys=True)}")
            if cp.options:
                print(f"    options: {', '.join(cp.options)}")
        print(f"\nResume with: jobwave resume {report.unit_id} --respond JOB=RESPONSE")

    # ------------------------------------------------------------------
    # Errors / misc
    # ------------------------------------------------------------------

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
