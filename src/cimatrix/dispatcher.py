# dispatcher.py
from __future__ import annotations

import logging
import os
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Deque, Dict, List, Optional, Sequence

from .job_runner import JobListener, JobRunner, cancelled_result
from .model import JobResult, JobSpec, JobStatus, Policy, SkipDecision, TriggerContext
from .skip import SkipDecider
from .tasks import TaskRunner, ToolchainProvisioner

logger = logging.getLogger(__name__)


def default_concurrency() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Dispatcher:
    """
    Scheduler + orchestrator.

    - Launches at most `concurrency_limit` JobRunners at once; the rest
      queue and start as slots free.
    - Consults the SkipDecider for each job right before launching it.
    - A failed required job cancels pending/running required jobs only when
      fail-fast is on (globally, or for that job's own matrix).
    - Best-effort jobs never trigger cancellation and are never cancelled.
    - Successful jobs are recorded in the history store on completion.
    """

    def __init__(
        self,
        task_runner: TaskRunner,
        provisioner: Optional[ToolchainProvisioner] = None,
        decider: Optional[SkipDecider] = None,
        *,
        fail_fast: bool = False,
        listener: Optional[JobListener] = None,
    ):
        self.task_runner = task_runner
        self.provisioner = provisioner
        self.decider = decider or SkipDecider(None)
        self.fail_fast = fail_fast
        self.listener = listener

    def _should_cancel(self, failed: JobSpec, candidate: JobSpec) -> bool:
        if candidate.policy is not Policy.REQUIRED:
            return False
        if self.fail_fast:
            return True
        return failed.fail_fast and candidate.matrix == failed.matrix

    def run(
        self,
        jobs: Sequence[JobSpec],
        trigger: TriggerContext,
        concurrency_limit: Optional[int] = None,
    ) -> List[JobResult]:
        """Run every job to a terminal state. Results come back in job order."""
        jobs = list(jobs)
        limit = default_concurrency() if concurrency_limit is None else concurrency_limit
        if limit < 1:
            raise ValueError(f"concurrency_limit must be >= 1, got {limit}")

        results: List[Optional[JobResult]] = [None] * len(jobs)
        runners: Dict[int, JobRunner] = {}
        queue: Deque[int] = deque(range(len(jobs)))
        in_flight: Dict[Future, int] = {}

        with ThreadPoolExecutor(max_workers=limit) as pool:
            while queue or in_flight:
                # schedule as many as free slots allow
                while queue and len(in_flight) < limit:
                    idx = queue.popleft()
                    job = jobs[idx]
                    decision = self.decider.decide(job, trigger)
                    logger.debug("dispatch %s (skip=%s: %s)", job.name, decision.skip, decision.reason)
                    runner = JobRunner(
                        job,
                        decision,
                        self.task_runner,
                        self.provisioner,
                        listener=self.listener,
                    )
                    runners[idx] = runner
                    in_flight[pool.submit(runner.run)] = idx

                if not in_flight:
                    break

                # wait for at least one completion, then loop to refill slots
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    idx = in_flight.pop(fut)
                    result = self._collect(fut, runners[idx])
                    results[idx] = result

                    if result.status is JobStatus.SUCCEEDED:
                        self.decider.record_success(result.job, trigger)
                    elif result.status is JobStatus.FAILED and result.policy is Policy.REQUIRED:
                        self._cancel_after(result.job, queue, runners, in_flight, results, jobs)

        return [r for r in results if r is not None]

    def _collect(self, fut: Future, runner: JobRunner) -> JobResult:
        try:
            return fut.result()
        except Exception as e:
            # job errors stay inside their job
            logger.exception("job %s crashed", runner.job.name)
            return runner.abort(e)

    def _cancel_after(
        self,
        failed: JobSpec,
        queue: Deque[int],
        runners: Dict[int, JobRunner],
        in_flight: Dict[Future, int],
        results: List[Optional[JobResult]],
        jobs: List[JobSpec],
    ) -> None:
        if not (self.fail_fast or failed.fail_fast):
            return

        # queued jobs never start
        kept: Deque[int] = deque()
        for idx in queue:
            if self._should_cancel(failed, jobs[idx]):
                results[idx] = cancelled_result(
                    jobs[idx],
                    SkipDecision(skip=False, reason=f"cancelled after {failed.name} failed"),
                )
                if self.listener is not None:
                    self.listener.job_finished(results[idx])
            else:
                kept.append(idx)
        queue.clear()
        queue.extend(kept)

        # running jobs stop at their next step boundary
        for idx in in_flight.values():
            if self._should_cancel(failed, jobs[idx]):
                runners[idx].cancel()

        logger.info("fail-fast: %s failed, cancelled remaining required jobs", failed.name)
