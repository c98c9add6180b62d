from .gates import always, success, matrix_eq, matrix_ne, all_of
from .matrix import expand, expand_all
from .skip import should_skip, SkipDecider
from .dispatcher import Dispatcher
from .aggregate import aggregate, PipelineReport
from .runner import run_pipeline, build_trigger
from .model import (
    Invocation,
    JobResult,
    JobSpec,
    JobStatus,
    Matrix,
    Pipeline,
    Policy,
    SkipDecision,
    StepResult,
    StepSpec,
    StepStatus,
    TriggerContext,
    TriggerKind,
    Verdict,
)
# imported last: loading the cimatrix.matrix submodule rebinds the package
# attribute `matrix`, and the DSL helper must win
from .dsl import sh, matrix, build, define_pipeline, MatrixBuilder

__all__ = [
    "sh", "matrix", "build", "define_pipeline", "MatrixBuilder",
    "always", "success", "matrix_eq", "matrix_ne", "all_of",
    "expand", "expand_all", "should_skip", "SkipDecider", "Dispatcher",
    "aggregate", "PipelineReport", "run_pipeline", "build_trigger",
    "Invocation", "JobResult", "JobSpec", "JobStatus", "Matrix", "Pipeline", "Policy",
    "SkipDecision", "StepResult", "StepSpec", "StepStatus", "TriggerContext", "TriggerKind",
    "Verdict",
]
