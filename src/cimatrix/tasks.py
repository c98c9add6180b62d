# tasks.py
"""
External collaborators consumed by the job runner.

- TaskRunner: runs one step invocation and reports (exit code, output).
- ToolchainProvisioner: prepares a job's toolchain before its first step.

Both must be safe to call concurrently from several job threads.
"""
from __future__ import annotations

import logging
import os
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .errors import StepInvocationError
from .model import Invocation, JobSpec, render_template

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
OUTPUT_TAIL = 4000


@dataclass(frozen=True)
class InvocationResult:
    exit_code: int
    output: str = field(default="", repr=False)
    timed_out: bool = False


class TaskRunner(ABC):
    @abstractmethod
    def invoke(self, invocation: Invocation, cancel_event: threading.Event) -> InvocationResult:
        """
        Run the invocation to completion.

        Implementations should stop early once `cancel_event` is set; the
        exit status of a cancelled invocation is discarded by the caller.

        Raises:
            StepInvocationError: the invocation could not be started at all
        """


class ShellTaskRunner(TaskRunner):
    """Run invocations as shell commands relative to a repository root."""

    def __init__(self, repo_root: str | Path = ".", *, poll_interval: float = 0.2):
        self.repo_root = Path(repo_root).resolve()
        self.poll_interval = poll_interval

    def invoke(self, invocation: Invocation, cancel_event: threading.Event) -> InvocationResult:
        cwd = (self.repo_root / (invocation.cwd or ".")).resolve()
        if not cwd.is_dir():
            raise StepInvocationError(f"working directory not found: {cwd}")

        env = os.environ.copy()
        env.update(invocation.env or {})

        try:
            proc = subprocess.Popen(
                invocation.run,
                shell=True,
                cwd=str(cwd),
                env=env,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as e:
            raise StepInvocationError(f"could not start {invocation.run!r}: {e}") from e

        waited = 0.0
        timed_out = False
        while True:
            try:
                out, _ = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                waited += self.poll_interval
                if cancel_event.is_set():
                    logger.debug("cancel requested, terminating %r", invocation.run)
                    out = self._terminate(proc)
                    break
                if invocation.timeout is not None and waited >= invocation.timeout:
                    logger.debug("timeout after %.1fs, terminating %r", waited, invocation.run)
                    out = self._terminate(proc)
                    timed_out = True
                    break

        out = (out or "")[-OUTPUT_TAIL:]
        if timed_out:
            return InvocationResult(
                exit_code=TIMEOUT_EXIT_CODE,
                output=f"{out}\ntimed out after {invocation.timeout}s",
                timed_out=True,
            )
        return InvocationResult(exit_code=proc.returncode, output=out)

    @staticmethod
    def _terminate(proc: subprocess.Popen) -> str:
        proc.terminate()
        try:
            out, _ = proc.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
            out, _ = proc.communicate()
        return out or ""


# ---------------------------------------------------------------------
# Toolchain provisioning
# ---------------------------------------------------------------------

class ToolchainProvisioner(ABC):
    @abstractmethod
    def provision(self, job: JobSpec, cancel_event: threading.Event) -> Optional[InvocationResult]:
        """
        Prepare the toolchain for `job`. Called once before its first step.

        Returns None when there was nothing to do.

        Raises:
            StepInvocationError: provisioning failed; the job fails as if its
                first step had failed
        """


class NullProvisioner(ToolchainProvisioner):
    def provision(self, job: JobSpec, cancel_event: threading.Event) -> Optional[InvocationResult]:
        return None


class CommandProvisioner(ToolchainProvisioner):
    """
    Provision by running a command template filled from `job.toolchain`.

    Example:
        CommandProvisioner(runner, "rustup toolchain install {channel} --target {target}")
    """

    def __init__(self, runner: TaskRunner, template: str):
        self.runner = runner
        self.template = template

    def provision(self, job: JobSpec, cancel_event: threading.Event) -> Optional[InvocationResult]:
        if not job.toolchain:
            return None
        try:
            cmd = render_template(self.template, job.toolchain)
        except (KeyError, IndexError, ValueError) as e:
            raise StepInvocationError(f"toolchain template for {job.name!r} is missing {e}") from e

        result = self.runner.invoke(Invocation(run=cmd), cancel_event)
        if result.exit_code != 0:
            raise StepInvocationError(
                f"toolchain provisioning failed: {cmd}",
                exit_code=result.exit_code,
                output=result.output,
            )
        return result
