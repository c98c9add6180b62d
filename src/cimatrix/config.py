# config.py
"""
Pipeline loading.

Two formats are accepted:

- YAML (`cimatrix.yaml`): validated with pydantic, unknown keys rejected.
- Python (`*_pipeline.py`): must define `pipeline() -> Pipeline` or
  `PIPELINE = Pipeline(...)`, usually built with the DSL helpers.

Either way the result is an immutable `Pipeline`; axis/exclusion problems
are checked by expanding every matrix once, so a broken definition fails
before any job starts.
"""
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .dsl import define_pipeline, matrix, sh
from .errors import ConfigError
from .matrix import expand_all
from .model import DEFAULT_DO_NOT_SKIP, Pipeline, Policy, TriggerKind

YAML_SUFFIXES = (".yaml", ".yml", ".json")


# -------------------- Schemas --------------------

class StepModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str
    run: str
    cwd: Optional[str] = None
    env: Dict[str, Any] = Field(default_factory=dict)
    if_: Optional[str] = Field(default=None, alias="if")
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout: Optional[float] = Field(default=None, gt=0)


class MatrixModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    axes: Dict[str, List[Any]] = Field(default_factory=dict)
    exclude: List[Dict[str, Any]] = Field(default_factory=list)
    include: List[Dict[str, Any]] = Field(default_factory=list)
    steps: List[StepModel] = Field(min_length=1)
    policy: Policy = Policy.REQUIRED
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    fail_fast: bool = Field(default=False, alias="fail-fast")
    toolchain: Dict[str, Any] = Field(default_factory=dict)


class SkipModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    after_successful_duplicate: bool = Field(default=True, alias="after-successful-duplicate")
    do_not_skip: List[TriggerKind] = Field(
        default_factory=lambda: sorted(DEFAULT_DO_NOT_SKIP, key=lambda k: k.value),
        alias="do-not-skip",
    )


class PipelineModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = "pipeline"
    paths: List[str] = Field(default_factory=list)
    fail_fast: bool = Field(default=False, alias="fail-fast")
    max_workers: Optional[int] = Field(default=None, ge=1, alias="max-workers")
    skip: SkipModel = Field(default_factory=SkipModel)
    jobs: Dict[str, MatrixModel] = Field(min_length=1)

    @field_validator("paths")
    @classmethod
    def _no_blank_paths(cls, v: List[str]) -> List[str]:
        if any(not p.strip() for p in v):
            raise ValueError("paths must not contain blank entries")
        return v


# -------------------- Conversion --------------------

def _to_pipeline(model: PipelineModel) -> Pipeline:
    matrices = []
    for name, m in model.jobs.items():
        steps = []
        for i, s in enumerate(m.steps):
            try:
                steps.append(sh(
                    s.name,
                    s.run,
                    cwd=s.cwd,
                    env=s.env,
                    timeout=s.timeout,
                    gate=s.if_,
                    continue_on_error=s.continue_on_error,
                ))
            except ValueError as e:
                raise ConfigError("Invalid step gate", [f"jobs.{name}.steps[{i}].if: {e}"]) from e
        matrices.append(matrix(
            name,
            *steps,
            axes=m.axes,
            exclude=m.exclude,
            include=m.include,
            policy=m.policy,
            continue_on_error=m.continue_on_error,
            fail_fast=m.fail_fast,
            toolchain=m.toolchain,
        ))

    return define_pipeline(
        model.name,
        *matrices,
        paths=model.paths,
        fail_fast=model.fail_fast,
        max_workers=model.max_workers,
        skip_after_successful_duplicate=model.skip.after_successful_duplicate,
        do_not_skip=model.skip.do_not_skip,
    )


def _format_validation_error(e: ValidationError) -> List[str]:
    lines = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        lines.append(f"{loc}: {err.get('msg')}")
    return lines


def parse_pipeline(data: Any, *, source: str = "<memory>") -> Pipeline:
    """Validate an already-parsed mapping and build a Pipeline."""
    if not isinstance(data, dict):
        raise ConfigError(f"Pipeline definition in {source} must be a mapping")
    try:
        model = PipelineModel.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid pipeline definition in {source}", _format_validation_error(e)) from e
    pipeline = _to_pipeline(model)
    validate_pipeline(pipeline)
    return pipeline


def load_yaml_pipeline(path: str | Path) -> Pipeline:
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read pipeline file: {path}", [str(e)]) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {path}", [str(e)]) from e
    if not data:
        raise ConfigError(f"Pipeline file is empty: {path}")
    return parse_pipeline(data, source=str(path))


def load_python_pipeline(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a python file path.

    The file must define either:
      - pipeline() -> Pipeline
      - PIPELINE = Pipeline(...)
    """
    wf_path = Path(path).expanduser().resolve()
    module_name = f"cimatrix_pipeline_{wf_path.stem}"

    pipeline = None
    # user code: anything it raises is a definition problem, not a crash
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
        if "pipeline" in globals_dict and callable(globals_dict["pipeline"]):
            pipeline = globals_dict["pipeline"]()
        elif "PIPELINE" in globals_dict:
            pipeline = globals_dict["PIPELINE"]
    except ConfigError:
        raise
    except Exception as e:
        raise ConfigError(f"Cannot load {wf_path.name}", [f"{type(e).__name__}: {e}"]) from e

    if not isinstance(pipeline, Pipeline):
        raise ConfigError(
            f"{wf_path.name} does not define a pipeline",
            ["Define pipeline() -> Pipeline or PIPELINE = define_pipeline(...)."],
        )
    validate_pipeline(pipeline)
    return pipeline


def load_pipeline(path: str | Path) -> Pipeline:
    """Load a pipeline definition, dispatching on the file suffix."""
    p = Path(path).expanduser()
    if not p.exists():
        raise ConfigError(f"Pipeline file not found: {p}")
    if p.suffix in YAML_SUFFIXES:
        return load_yaml_pipeline(p)
    if p.suffix == ".py":
        return load_python_pipeline(p)
    raise ConfigError(f"Unsupported pipeline file type: {p.name}", ["Use .yaml, .yml, .json or .py"])


def validate_pipeline(pipeline: Pipeline) -> None:
    """Expand every matrix once so axis and exclusion errors surface now."""
    expand_all(pipeline.matrices)
