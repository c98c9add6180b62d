# job_runner.py
"""
JobRunner - per-job state machine.

    pending -> running -> {succeeded, failed, skipped, cancelled}

Terminal states are sinks. Steps run strictly in declared order as an
AND-chain: the first invoked step that fails (without continue_on_error)
fails the job, and every later step is recorded not_run regardless of its
gate. Cancellation only ever comes from outside (the dispatcher).
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, FrozenSet, List, Optional

from .errors import IllegalTransition, StepInvocationError
from .gates import GateContext
from .model import JobResult, JobSpec, JobStatus, SkipDecision, StepResult, StepStatus, StepSpec
from .tasks import NullProvisioner, TaskRunner, ToolchainProvisioner

logger = logging.getLogger(__name__)

PROVISION_STEP = "Set up toolchain"

_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({
        JobStatus.SUCCEEDED,
        JobStatus.FAILED,
        JobStatus.SKIPPED,
        JobStatus.CANCELLED,
    }),
}


class JobListener:
    """Receives job/step events. Methods are called from job threads."""

    def job_started(self, job: JobSpec, decision: SkipDecision) -> None:
        pass

    def step_started(self, job: JobSpec, step: StepSpec) -> None:
        pass

    def step_finished(self, job: JobSpec, result: StepResult) -> None:
        pass

    def job_finished(self, result: JobResult) -> None:
        pass


def not_run(step: StepSpec) -> StepResult:
    return StepResult(name=step.name, status=StepStatus.NOT_RUN)


def cancelled_result(job: JobSpec, decision: Optional[SkipDecision] = None) -> JobResult:
    """Result for a job cancelled before it ever started."""
    return JobResult(
        job=job,
        status=JobStatus.CANCELLED,
        steps=tuple(not_run(s) for s in job.steps),
        duration=0.0,
        decision=decision,
    )


class JobRunner:
    def __init__(
        self,
        job: JobSpec,
        decision: SkipDecision,
        task_runner: TaskRunner,
        provisioner: Optional[ToolchainProvisioner] = None,
        *,
        listener: Optional[JobListener] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.job = job
        self.decision = decision
        self.task_runner = task_runner
        self.provisioner = provisioner or NullProvisioner()
        self.listener = listener or JobListener()
        self._clock = clock

        self._state = JobStatus.PENDING
        self._lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._steps: List[StepResult] = []
        self._next_step = 0
        self._started_at: Optional[float] = None
        self._duration = 0.0
        self._error: Optional[str] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> JobStatus:
        with self._lock:
            return self._state

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _start(self) -> bool:
        """pending -> running. Returns False if the job was cancelled first."""
        with self._lock:
            if self._state is JobStatus.CANCELLED:
                return False
            if JobStatus.RUNNING not in _TRANSITIONS.get(self._state, frozenset()):
                raise IllegalTransition(f"{self.job.name}: {self._state.value} -> running")
            self._state = JobStatus.RUNNING
            return True

    def _finish(self, new: JobStatus) -> JobStatus:
        """Move to a terminal state unless cancel() got there first. Returns the final state."""
        with self._lock:
            if new not in _TRANSITIONS.get(self._state, frozenset()):
                return self._state
            self._state = new
            return self._state

    def cancel(self) -> bool:
        """
        Request cancellation. Pending and running jobs become cancelled;
        terminal jobs are left alone. Returns True if the state changed.
        """
        with self._lock:
            if self._state.is_terminal:
                return False
            self._state = JobStatus.CANCELLED
            self._cancel_event.set()
        logger.debug("cancelled %s", self.job.name)
        return True

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _record(self, result: StepResult, *, job_step: bool = True) -> None:
        self._steps.append(result)
        if job_step:
            self._next_step += 1
        self.listener.step_finished(self.job, result)

    def _record_rest_not_run(self) -> None:
        for step in self.job.steps[self._next_step:]:
            self._record(not_run(step))

    def _invoke(self, step: StepSpec) -> StepResult:
        self.listener.step_started(self.job, step)
        start = self._clock()
        try:
            res = self.task_runner.invoke(step.invocation, self._cancel_event)
        except StepInvocationError as e:
            return StepResult(
                name=step.name,
                status=StepStatus.FAILED,
                exit_code=e.exit_code,
                output=e.output,
                duration=self._clock() - start,
                error=str(e),
            )
        except Exception as e:
            logger.exception("task runner crashed on %s / %s", self.job.name, step.name)
            return StepResult(
                name=step.name,
                status=StepStatus.FAILED,
                duration=self._clock() - start,
                error=f"{type(e).__name__}: {e}",
            )

        elapsed = self._clock() - start
        if self.cancelled:
            # late exit status after cancellation is discarded
            return StepResult(name=step.name, status=StepStatus.CANCELLED, duration=elapsed)
        status = StepStatus.SUCCEEDED if res.exit_code == 0 else StepStatus.FAILED
        return StepResult(
            name=step.name,
            status=status,
            exit_code=res.exit_code,
            output=res.output,
            duration=elapsed,
            error="timed out" if res.timed_out else None,
        )

    def _provision(self) -> bool:
        """Run the provisioner. Returns False if the job must fail."""
        start = self._clock()
        try:
            res = self.provisioner.provision(self.job, self._cancel_event)
        except StepInvocationError as e:
            self._error = str(e)
            self._record(StepResult(
                name=PROVISION_STEP,
                status=StepStatus.FAILED,
                exit_code=e.exit_code,
                output=e.output,
                duration=self._clock() - start,
                error=str(e),
            ), job_step=False)
            return False
        if res is not None:
            self._record(StepResult(
                name=PROVISION_STEP,
                status=StepStatus.SUCCEEDED,
                exit_code=res.exit_code,
                output=res.output,
                duration=self._clock() - start,
            ), job_step=False)
        return True

    def run(self) -> JobResult:
        """Drive the job to a terminal state and return its result."""
        if not self._start():
            return cancelled_result(self.job, self.decision)
        self._started_at = self._clock()
        self.listener.job_started(self.job, self.decision)

        if self.decision.skip:
            self._record_rest_not_run()
            return self._complete(JobStatus.SKIPPED)

        if not self._provision():
            self._record_rest_not_run()
            return self._complete(JobStatus.FAILED)

        failed = False
        prior_success = True
        variants = self.job.variant_map

        for step in self.job.steps:
            if failed or self.cancelled:
                self._record(not_run(step))
                continue

            ctx = GateContext(skip=False, prior_success=prior_success, variants=variants)
            if not step.gate(ctx):
                logger.debug("%s: gate %s false for %s", self.job.name, step.gate, step.name)
                self._record(not_run(step))
                continue

            result = self._invoke(step)
            self._record(result)

            if result.status is StepStatus.FAILED:
                prior_success = False
                if not step.continue_on_error:
                    failed = True
                    self._error = result.error or f"step {step.name!r} exited {result.exit_code}"

        return self._complete(JobStatus.FAILED if failed else JobStatus.SUCCEEDED)

    def _complete(self, status: JobStatus) -> JobResult:
        final = self._finish(status)
        self._duration = self._clock() - (self._started_at or self._clock())
        result = self.result()
        logger.debug("%s finished: %s", self.job.name, final.value)
        self.listener.job_finished(result)
        return result

    def abort(self, exc: BaseException) -> JobResult:
        """Force a failed result after an unexpected crash outside step invocation."""
        with self._lock:
            if not self._state.is_terminal:
                self._state = JobStatus.FAILED
        self._error = f"{type(exc).__name__}: {exc}"
        self._record_rest_not_run()
        return self.result()

    def result(self) -> JobResult:
        state = self.state
        if not state.is_terminal:
            raise IllegalTransition(f"{self.job.name} has not finished (state={state.value})")
        return JobResult(
            job=self.job,
            status=state,
            steps=tuple(self._steps),
            duration=self._duration,
            decision=self.decision,
            error=self._error,
        )
