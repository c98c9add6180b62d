"""Console output formatting utilities for cimatrix."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional, Tuple

from cimatrix.aggregate import PipelineReport
from cimatrix.job_runner import JobListener
from cimatrix.model import JobResult, JobSpec, SkipDecision, StepResult, StepSpec, StepStatus


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # job threads print concurrently; keep each line whole
        self._lock = threading.Lock()

    def _print(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        event: str,
        job_count: int,
        fingerprint: Optional[str] = None,
        ref: Optional[str] = None,
        changed: int = 0,
    ) -> None:
        """Print run start information."""
        lines = ["\nRUN STARTED", f"Pipeline: {pipeline}", f"Event: {event}"]
        if ref:
            lines.append(f"Ref: {ref}")
        if fingerprint:
            lines.append(f"Fingerprint: {fingerprint[:12]}...")
        if changed:
            lines.append(f"Relevant changes: {changed} file(s)")
        lines.append(f"Jobs: {job_count}")
        lines.append("")
        self._print(*lines)

    def print_job_start(self, name: str) -> None:
        self._print(f"[{name}] JOB STARTED")

    def print_step(self, job: str, step: str) -> None:
        self._print(f"[{job}] STEP: {step}")

    def print_step_result(self, job: str, result: StepResult) -> None:
        if result.status is StepStatus.NOT_RUN:
            if self.debug:
                self._print(f"[{job}] STEP NOT RUN: {result.name}")
            return
        if result.status is StepStatus.FAILED:
            lines = [f"[{job}] STEP FAILED: {result.name}"]
            if result.exit_code is not None:
                lines.append(f"[{job}] Exit code: {result.exit_code}")
            if result.error:
                lines.append(f"[{job}] Error: {result.error.splitlines()[0]}")
            if self.debug and result.output:
                lines.extend(f"[{job}] | {line}" for line in result.output.splitlines()[-20:])
            self._print(*lines)
            return
        self._print(f"[{job}] STEP {result.status.value.upper()}: {result.name} ({result.duration:.1f}s)")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._print(f"[{name}] STATUS: skipped ({reason})")

    def print_job_finished(self, result: JobResult) -> None:
        self._print(f"[{result.name}] STATUS: {result.status.value} ({result.duration:.1f}s)")

    def print_plan(self, plan: Iterable[Tuple[JobSpec, SkipDecision]]) -> None:
        """Print expanded jobs and their skip decisions."""
        self.print_header("PLAN")
        for job, decision in plan:
            mark = "skip" if decision.skip else "run "
            self._print(f"  {mark}  {job.name} [{job.policy.value}] ({decision.reason})")
            if self.debug:
                for step in job.steps:
                    self._print(f"          - {step.name}: {step.invocation.run}")

    def print_results(self, report: PipelineReport) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for line in report.lines:
            marker = "!!" if line.decisive else "  "
            text = f"{marker} {line.job}: {line.status.value.upper()} [{line.policy.value}] {line.duration:.1f}s"
            if line.failed_step:
                text += f" (failed at: {line.failed_step})"
            elif line.reason:
                text += f" ({line.reason})"
            lines.append(text)
        counts = ", ".join(f"{k}={v}" for k, v in report.counts().items() if v)
        lines.append("-" * 40)
        lines.append(f"VERDICT: {report.verdict.value.upper()} ({counts})")
        if report.decisive:
            lines.append("Verdict determined by: " + ", ".join(l.job for l in report.decisive))
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
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", err=True)


class ConsoleListener(JobListener):
    """Forwards job runner events to the console."""

    def __init__(self, console: Console):
        self.console = console

    def job_started(self, job: JobSpec, decision: SkipDecision) -> None:
        if decision.skip:
            self.console.print_job_skipped(job.name, decision.reason)
        else:
            self.console.print_job_start(job.name)

    def step_started(self, job: JobSpec, step: StepSpec) -> None:
        self.console.print_step(job.name, step.name)

    def step_finished(self, job: JobSpec, result: StepResult) -> None:
        self.console.print_step_result(job.name, result)

    def job_finished(self, result: JobResult) -> None:
        self.console.print_job_finished(result)


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
