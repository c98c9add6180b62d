# src/cimatrix/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .gates import Gate, parse_gate
from .model import DEFAULT_DO_NOT_SKIP, Invocation, Matrix, Pipeline, Policy, StepSpec, TriggerKind


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, Any]] = None,
    timeout: float | None = None,
    gate: Gate | str | None = None,
    continue_on_error: bool = False,
) -> StepSpec:
    """
    Create a shell step. `cmd`, `cwd` and env values are templates rendered
    per job, e.g. "cargo test {features} --target={info[target]}".
    """
    if isinstance(gate, str) or gate is None:
        gate = parse_gate(gate)
    return StepSpec(
        name=name,
        invocation=Invocation(
            run=cmd,
            cwd=cwd,
            env={k: str(v) for k, v in (env or {}).items()},
            timeout=timeout,
        ),
        gate=gate,
        continue_on_error=continue_on_error,
    )


# ---------------------------------------------------------------------
# Functional matrix helper
# ---------------------------------------------------------------------

def matrix(
    name: str,
    *steps: StepSpec,  # allow: matrix("x", sh(...), sh(...), axes={...})
    axes: Optional[Mapping[str, Sequence[Any]]] = None,
    exclude: Optional[Iterable[Mapping[str, Any]]] = None,
    include: Optional[Iterable[Mapping[str, Any]]] = None,
    policy: Policy = Policy.REQUIRED,
    continue_on_error: bool = False,
    fail_fast: bool = False,
    toolchain: Optional[Mapping[str, Any]] = None,
) -> Matrix:
    if not steps:
        raise ValueError(f"matrix({name!r}) must have at least one step")
    if continue_on_error:
        policy = Policy.BEST_EFFORT

    return Matrix(
        name=name,
        axes={k: list(v) for k, v in (axes or {}).items()},
        steps=tuple(steps),
        policy=policy,
        fail_fast=fail_fast,
        exclude=tuple(dict(e) for e in (exclude or ())),
        include=tuple(dict(i) for i in (include or ())),
        toolchain=dict(toolchain or {}),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class MatrixBuilder:
    def __init__(self, name: str):
        self.name = name
        self._axes: Dict[str, List[Any]] = {}
        self._steps: List[StepSpec] = []
        self._exclude: List[Dict[str, Any]] = []
        self._include: List[Dict[str, Any]] = []
        self._policy = Policy.REQUIRED
        self._fail_fast = False
        self._toolchain: Dict[str, Any] = {}

    def axis(self, name: str, *variants: Any):
        self._axes[name] = list(variants)
        return self

    def exclude(self, **rule: Any):
        self._exclude.append(rule)
        return self

    def include(self, **combo: Any):
        self._include.append(combo)
        return self

    def define_step(
        self,
        name: str,
        run: str,
        cwd: str | None = None,
        *,
        gate: Gate | str | None = None,
        continue_on_error: bool = False,
        timeout: float | None = None,
        **env: Any,
    ):
        self._steps.append(
            sh(name, run, cwd=cwd, env=env, timeout=timeout, gate=gate, continue_on_error=continue_on_error)
        )
        return self

    def best_effort(self, enabled: bool = True):
        self._policy = Policy.BEST_EFFORT if enabled else Policy.REQUIRED
        return self

    def fail_fast(self, enabled: bool = True):
        self._fail_fast = enabled
        return self

    def toolchain(self, **settings: Any):
        self._toolchain.update(settings)
        return self

    def build(self) -> Matrix:
        if not self._steps:
            raise ValueError(f"Matrix '{self.name}' has no steps")
        return Matrix(
            name=self.name,
            axes=dict(self._axes),
            steps=tuple(self._steps),
            policy=self._policy,
            fail_fast=self._fail_fast,
            exclude=tuple(self._exclude),
            include=tuple(self._include),
            toolchain=dict(self._toolchain),
        )


def build(name: str) -> MatrixBuilder:
    """Convenience: build('test').axis('os', 'linux').define_step(...).build()"""
    return MatrixBuilder(name)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def define_pipeline(
    name: str,
    *matrices: Matrix,
    paths: Optional[Iterable[str]] = None,
    fail_fast: bool = False,
    max_workers: Optional[int] = None,
    skip_after_successful_duplicate: bool = True,
    do_not_skip: Optional[Iterable[TriggerKind | str]] = None,
) -> Pipeline:
    """
    Pipeline definition helper. A workflow file defines

        def pipeline():
            return define_pipeline("ci", matrix(...), matrix(...))

    or assigns `PIPELINE = define_pipeline(...)` directly.
    """
    if not matrices:
        raise ValueError(f"define_pipeline({name!r}) must declare at least one matrix")
    names = [m.name for m in matrices]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValueError(f"Duplicate matrix names found: {dupes}")

    return Pipeline(
        name=name,
        matrices=tuple(matrices),
        paths=tuple(paths or ()),
        fail_fast=fail_fast,
        max_workers=max_workers,
        skip_after_successful_duplicate=skip_after_successful_duplicate,
        do_not_skip=(
            DEFAULT_DO_NOT_SKIP if do_not_skip is None
            else frozenset(TriggerKind(k) for k in do_not_skip)
        ),
    )
