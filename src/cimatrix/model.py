# model.py
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Sequence, Tuple

from .gates import Gate, Success


class Policy(str, Enum):
    """How a job's outcome counts towards the pipeline verdict."""
    REQUIRED = "required"
    BEST_EFFORT = "best-effort"


class TriggerKind(str, Enum):
    MANUAL = "manual"
    PULL_REQUEST = "pull_request"
    PUSH = "push"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_RUN = "not_run"
    CANCELLED = "cancelled"


class Verdict(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


DEFAULT_DO_NOT_SKIP: FrozenSet[TriggerKind] = frozenset({TriggerKind.MANUAL, TriggerKind.PUSH})

# axis name -> ordered variants (scalars or key/value records)
AxisSet = Mapping[str, Sequence[Any]]


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _format_variant(value: Any) -> str:
    if isinstance(value, Mapping):
        return ", ".join(str(v) for v in value.values())
    return str(value)


def render_template(template: str, variants: Mapping[str, Any]) -> str:
    """
    Render `{features}` / `{info[target]}` placeholders against job variants.

    Unknown placeholders raise KeyError so typos surface at expansion time.
    """
    return template.format_map(dict(variants))


@dataclass(frozen=True)
class Invocation:
    """Opaque descriptor handed to the task runner."""
    run: str
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout: float | None = None

    def render(self, variants: Mapping[str, Any]) -> Invocation:
        return Invocation(
            run=render_template(self.run, variants),
            cwd=render_template(self.cwd, variants) if self.cwd is not None else None,
            env={k: render_template(str(v), variants) for k, v in self.env.items()},
            timeout=self.timeout,
        )


@dataclass(frozen=True)
class StepSpec:
    """A named action inside a job, guarded by a gate."""
    name: str
    invocation: Invocation
    gate: Gate = field(default_factory=Success)
    continue_on_error: bool = False


@dataclass(frozen=True)
class Matrix:
    """
    One declared matrix: axes plus everything every expanded job shares.

    `continue-on-error: true` in a workflow maps to `policy=BEST_EFFORT`.
    """
    name: str
    axes: AxisSet
    steps: Tuple[StepSpec, ...]
    policy: Policy = Policy.REQUIRED
    fail_fast: bool = False
    exclude: Tuple[Mapping[str, Any], ...] = ()
    include: Tuple[Mapping[str, Any], ...] = ()
    toolchain: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class JobSpec:
    """One fully resolved matrix combination. Immutable once expanded."""
    matrix: str
    variants: Tuple[Tuple[str, Any], ...]
    steps: Tuple[StepSpec, ...]
    policy: Policy = Policy.REQUIRED
    fail_fast: bool = False
    toolchain: Mapping[str, str] = field(default_factory=dict)

    @property
    def variant_map(self) -> Dict[str, Any]:
        return dict(self.variants)

    @property
    def name(self) -> str:
        if not self.variants:
            return self.matrix
        shown = ", ".join(_format_variant(v) for _, v in self.variants)
        return f"{self.matrix} ({shown})"

    @property
    def key(self) -> str:
        """Equivalence key: same matrix + same variant combination."""
        payload = {"matrix": self.matrix, "variants": [[k, v] for k, v in self.variants]}
        return hashlib.sha256(_json_dumps_stable(payload).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Pipeline:
    """A loaded pipeline definition: matrices plus run-wide settings."""
    name: str
    matrices: Tuple[Matrix, ...]
    paths: Tuple[str, ...] = ()
    fail_fast: bool = False
    max_workers: Optional[int] = None
    skip_after_successful_duplicate: bool = True
    do_not_skip: FrozenSet[TriggerKind] = DEFAULT_DO_NOT_SKIP


@dataclass(frozen=True)
class TriggerContext:
    """
    What started this pipeline run. Read-only for the whole run.

    `changed_paths` is informational: it is shown in the run header and
    never filters jobs. Skip eligibility is scoped by `fingerprint`, which
    covers only the files under the pipeline's path globs.
    """
    event: TriggerKind
    fingerprint: Optional[str] = None
    ref: Optional[str] = None
    changed_paths: Tuple[str, ...] = ()
    do_not_skip: FrozenSet[TriggerKind] = DEFAULT_DO_NOT_SKIP


@dataclass(frozen=True)
class SkipDecision:
    skip: bool
    fingerprint: Optional[str] = None
    reason: str = ""


@dataclass(frozen=True)
class StepResult:
    name: str
    status: StepStatus
    exit_code: Optional[int] = None
    output: str = field(default="", repr=False)
    duration: float = 0.0
    error: Optional[str] = None


@dataclass(frozen=True)
class JobResult:
    job: JobSpec
    status: JobStatus
    steps: Tuple[StepResult, ...] = ()
    duration: float = 0.0
    decision: Optional[SkipDecision] = None
    error: Optional[str] = None

    @property
    def name(self) -> str:
        return self.job.name

    @property
    def policy(self) -> Policy:
        return self.job.policy

    @property
    def failed_step(self) -> Optional[StepResult]:
        for s in self.steps:
            if s.status is StepStatus.FAILED:
                return s
        return None
