# aggregate.py
"""
Result aggregation: terminal JobResults -> one pipeline verdict + report.

The verdict is `failure` iff at least one required job failed or was
cancelled. Best-effort jobs are reported but never change the verdict.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .model import JobResult, JobStatus, Policy, Verdict

_BAD = (JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass(frozen=True)
class ReportLine:
    job: str
    matrix: str
    policy: Policy
    status: JobStatus
    duration: float
    decisive: bool = False          # this line alone makes the verdict fail
    failed_step: Optional[str] = None
    reason: Optional[str] = None    # skip reason or error text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "matrix": self.matrix,
            "policy": self.policy.value,
            "status": self.status.value,
            "duration": round(self.duration, 3),
            "decisive": self.decisive,
            "failed_step": self.failed_step,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class PipelineReport:
    verdict: Verdict
    lines: Tuple[ReportLine, ...]
    results: Tuple[JobResult, ...] = field(default=(), repr=False)

    @property
    def exit_code(self) -> int:
        return 0 if self.verdict is Verdict.SUCCESS else 1

    @property
    def decisive(self) -> List[ReportLine]:
        return [line for line in self.lines if line.decisive]

    def counts(self) -> Dict[str, int]:
        c = Counter(line.status.value for line in self.lines)
        return {s.value: c.get(s.value, 0) for s in JobStatus if s.is_terminal}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "counts": self.counts(),
            "jobs": [line.to_dict() for line in self.lines],
        }


def verdict_of(results: Iterable[JobResult]) -> Verdict:
    for r in results:
        if r.policy is Policy.REQUIRED and r.status in _BAD:
            return Verdict.FAILURE
    return Verdict.SUCCESS


def _line(r: JobResult) -> ReportLine:
    failed = r.failed_step if r.status is JobStatus.FAILED else None
    if r.status is JobStatus.SKIPPED and r.decision is not None:
        reason = r.decision.reason or None
    else:
        reason = r.error
    return ReportLine(
        job=r.name,
        matrix=r.job.matrix,
        policy=r.policy,
        status=r.status,
        duration=r.duration,
        decisive=r.policy is Policy.REQUIRED and r.status in _BAD,
        failed_step=failed.name if failed is not None else None,
        reason=reason,
    )


def aggregate(results: Iterable[JobResult]) -> PipelineReport:
    """Compute the verdict and one report line per job, in input order."""
    results = tuple(results)
    return PipelineReport(
        verdict=verdict_of(results),
        lines=tuple(_line(r) for r in results),
        results=results,
    )
