"""Console output formatting utilities for ciflow."""

from __future__ import annotations

import sys
import threading
from typing import Dict, List, Optional

from ..events import RunListener
from ..model import JobInstance, JobStatus, Step, StepResult, WorkflowRun


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        self._lock = threading.Lock()

    def _print(self, *lines: str, err: bool = False) -> None:
        # job threads print concurrently; keep multi-line blocks together
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        run_id: str,
        job_count: int,
        event: str = "push",
        ref: str = "",
    ) -> None:
        """Print run start information."""
        self._print(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Run ID: {run_id}",
            f"Event: {event} ({ref})" if ref else f"Event: {event}",
            f"Jobs: {job_count}",
            "",
        )

    def print_job_start(self, name: str, runner: Optional[str] = None) -> None:
        """Print job start message."""
        line = f"\nJOB STARTED: {name}"
        if runner:
            line += f" [{runner}]"
        self._print(line)

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._print(f"[{job}] STEP: {name}")

    def print_job_finished(self, name: str, status: JobStatus) -> None:
        self._print(f"[{name}] STATUS: {status.value}")

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
        else:
            # first line only outside debug mode
            error_line = reason.strip().split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._print(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._print(f"[{name}] STATUS: skipped ({reason})")

    def print_plan(self, stages: List[List[str]], instances: Dict[str, List[str]]) -> None:
        """Print expanded job instances, one block per dependency stage."""
        for i, stage in enumerate(stages, start=1):
            self._print(f"\nStage {i}")
            for job_id in stage:
                keys = instances.get(job_id, [job_id])
                for key in keys:
                    self._print(f"  {key}")

    def print_results(self, results: Dict[str, str], status: Optional[str] = None) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for job, job_status in results.items():
            lines.append(f"  {job}: {job_status.upper()}")
        if status is not None:
            lines.append("-" * 40)
            lines.append(f"  RUN: {status.upper()}")
        self._print(*lines)

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
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", err=True)


class ConsoleListener(RunListener):
    """Streams run lifecycle events to a Console."""

    def __init__(self, console: Console):
        self.console = console

    def run_started(self, run: WorkflowRun) -> None:
        self.console.print_run_started(
            workflow=run.workflow.name,
            run_id=run.id,
            job_count=len(run.instances),
            event=run.event.kind,
            ref=run.event.ref,
        )

    def job_started(self, run: WorkflowRun, instance: JobInstance) -> None:
        self.console.print_job_start(instance.key)

    def job_finished(self, run: WorkflowRun, instance: JobInstance) -> None:
        if instance.status is JobStatus.SKIPPED:
            self.console.print_job_skipped(instance.key, "condition not met")
        elif instance.status is JobStatus.FAILED:
            self.console.print_failure(instance.key, instance.error or "", is_job=True)
        else:
            self.console.print_job_finished(instance.key, instance.status)

    def step_started(self, instance: JobInstance, step: Step) -> None:
        self.console.print_step(instance.key, step.name)

    def step_finished(self, instance: JobInstance, step: Step, result: StepResult) -> None:
        if result.status is JobStatus.FAILED:
            self.console.print_failure(f"{instance.key} / {step.name}", result.error or "", exit_code=result.exit_code)


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
