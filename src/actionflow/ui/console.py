"""Console output formatting utilities for actionflow."""

from __future__ import annotations

import sys
import threading
import traceback
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from actionflow.model import RunResult


class Console:
    """
    Centralized console output.

    Workers print concurrently, so every write happens under one lock and
    job-scoped lines carry the instance id as a prefix. Text reaching this
    class must already be redacted.
    """

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, do not echo step output lines (they are still captured)
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)
            stream.flush()

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out("", title, "-" * len(title))

    def print_run_started(self, workflow: str, instance_count: int, workers: int) -> None:
        """Print run start information."""
        self._out(
            "",
            "RUN STARTED",
            f"Workflow: {workflow}",
            f"Job instances: {instance_count}",
            f"Workers: {workers}",
            "",
        )

    def print_plan(self, layers: List[List[str]], instances: Dict[str, List[str]]) -> None:
        """Print the dependency layers and the instances each job expands to."""
        lines = []
        for n, layer in enumerate(layers):
            lines.append(f"Layer {n}:")
            for job in layer:
                lines.append(f"  {job}")
                for inst in instances.get(job, []):
                    if inst != job:
                        lines.append(f"    - {inst}")
        self._out(*lines)

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"[{name}] JOB STARTED")

    def print_job_finished(self, name: str, status: str, duration: Optional[float] = None) -> None:
        took = f" in {duration:.1f}s" if duration is not None else ""
        self._out(f"[{name}] JOB {status.upper()}{took}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"[{name}] JOB SKIPPED ({reason})")

    def print_job_cancelled(self, name: str) -> None:
        self._out(f"[{name}] JOB CANCELLED")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] ▶ {name}")

    def print_step_skipped(self, job: str, name: str) -> None:
        self._out(f"[{job}] ⏭ {name} (skipped)")

    def print_step_line(self, job: str, line: str, err: bool = False) -> None:
        """One line of step output (stdout or stderr)."""
        if self.quiet:
            return
        self._out(f"[{job}]   {line}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        elif reason:
            # first line only outside debug mode
            lines.append(f"Error: {reason.splitlines()[0]}")
        self._out(*lines)

    def print_results(self, result: "RunResult") -> None:
        """Print final results summary: one line per instance, steps indented."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for inst_id, job in result.jobs.items():
            lines.append(f"  {inst_id}: {job.status.value.upper()}")
            for step in job.steps:
                status = step.status.value
                if step.conclusion is not None and step.conclusion != step.status:
                    status = f"{status} (continue-on-error)"
                lines.append(f"    {step.name}: {status}")
        lines.append("")
        lines.append(f"PIPELINE: {result.status.value.upper()}")
        self._out(*lines)

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
        lines = ["", f"ERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.extend(["", suggestion])
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            text = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            self._out(text.rstrip(), err=True)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


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
