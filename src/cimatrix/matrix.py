# matrix.py
"""
Matrix expansion: axes -> concrete JobSpecs.

Axes are iterated in declaration order with the first axis as the outermost
loop, so the same input always yields the same ordered output. Exclusions
are matched against raw combinations before any JobSpec exists; includes
are appended afterwards and are not subject to exclusions.
"""
from __future__ import annotations

import itertools
import logging
from dataclasses import replace
from typing import Any, Iterable, List, Mapping, Sequence, Tuple

from .errors import InvalidAxisSet, InvalidExclusionRule
from .model import AxisSet, JobSpec, Matrix, StepSpec, render_template

logger = logging.getLogger(__name__)

Combination = Tuple[Tuple[str, Any], ...]


def _validate_axes(axes: AxisSet) -> None:
    problems: List[str] = []
    for name, variants in axes.items():
        if isinstance(variants, (str, bytes)) or not isinstance(variants, Sequence):
            problems.append(f"axis {name!r} must be a list of variants, got {type(variants).__name__}")
            continue
        if len(variants) == 0:
            problems.append(f"axis {name!r} has no variants")
            continue
        seen: List[Any] = []
        for v in variants:
            if v in seen:
                problems.append(f"axis {name!r} lists variant {v!r} more than once")
            seen.append(v)
    if problems:
        raise InvalidAxisSet("Invalid axis set", problems)


def _validate_exclusions(axes: AxisSet, exclusions: Iterable[Mapping[str, Any]]) -> None:
    problems: List[str] = []
    for i, rule in enumerate(exclusions):
        if not isinstance(rule, Mapping) or not rule:
            problems.append(f"exclude[{i}] must be a non-empty mapping of axis -> value")
            continue
        unknown = sorted(k for k in rule if k not in axes)
        if unknown:
            problems.append(f"exclude[{i}] references unknown axis {unknown} (known: {list(axes)})")
    if problems:
        raise InvalidExclusionRule("Invalid exclusion rule", problems)


def _variant_matches(variant: Any, expected: Any) -> bool:
    # record variants match on the listed keys only
    if isinstance(expected, Mapping) and isinstance(variant, Mapping):
        return all(k in variant and variant[k] == v for k, v in expected.items())
    return variant == expected


def is_excluded(combo: Mapping[str, Any], exclusions: Iterable[Mapping[str, Any]]) -> bool:
    """A combination is excluded if every axis named by some rule matches."""
    for rule in exclusions:
        if all(_variant_matches(combo[axis], expected) for axis, expected in rule.items()):
            return True
    return False


def combinations(
    axes: AxisSet,
    exclusions: Sequence[Mapping[str, Any]] = (),
    includes: Sequence[Mapping[str, Any]] = (),
) -> List[Combination]:
    """
    Cross-product of axis variants minus exclusions, plus includes.

    Raises:
        InvalidAxisSet: an axis is empty / not a list / has duplicates,
            or an include does not name exactly the declared axes.
        InvalidExclusionRule: a rule is empty or names an unknown axis.
    """
    _validate_axes(axes)
    _validate_exclusions(axes, exclusions)

    names = list(axes)
    out: List[Combination] = []
    for values in itertools.product(*(axes[n] for n in names)):
        combo = dict(zip(names, values))
        if is_excluded(combo, exclusions):
            logger.debug("excluded combination %s", combo)
            continue
        out.append(tuple(zip(names, values)))

    for i, inc in enumerate(includes):
        if not isinstance(inc, Mapping) or set(inc) != set(names):
            raise InvalidAxisSet(
                "Invalid include rule",
                [f"include[{i}] must name exactly the axes {names}, got {sorted(inc) if isinstance(inc, Mapping) else inc!r}"],
            )
        combo_t = tuple((n, inc[n]) for n in names)
        if combo_t not in out:
            out.append(combo_t)

    return out


def _render_toolchain(toolchain: Mapping[str, Any], variants: Mapping[str, Any]) -> dict:
    rendered = {}
    for k, v in toolchain.items():
        if isinstance(v, (list, tuple)):
            v = ", ".join(str(x) for x in v)
        rendered[k] = render_template(str(v), variants)
    return rendered


def _render_steps(steps: Sequence[StepSpec], variants: Mapping[str, Any], job: str) -> Tuple[StepSpec, ...]:
    out = []
    for s in steps:
        try:
            inv = s.invocation.render(variants)
        except (KeyError, IndexError, ValueError) as e:
            raise InvalidAxisSet(
                "Step template references an unknown variant",
                [f"job {job!r} step {s.name!r}: {type(e).__name__}: {e}"],
            ) from e
        out.append(StepSpec(name=s.name, invocation=inv, gate=s.gate, continue_on_error=s.continue_on_error))
    return tuple(out)


def expand(matrix: Matrix) -> List[JobSpec]:
    """Expand one matrix into JobSpecs with rendered step invocations."""
    jobs: List[JobSpec] = []
    for combo in combinations(matrix.axes, matrix.exclude, matrix.include):
        variants = dict(combo)
        try:
            toolchain = _render_toolchain(matrix.toolchain, variants)
        except (KeyError, IndexError, ValueError) as e:
            raise InvalidAxisSet(
                "Toolchain template references an unknown variant",
                [f"matrix {matrix.name!r}: {type(e).__name__}: {e}"],
            ) from e
        spec = JobSpec(
            matrix=matrix.name,
            variants=combo,
            steps=(),
            policy=matrix.policy,
            fail_fast=matrix.fail_fast,
            toolchain=toolchain,
        )
        jobs.append(replace(spec, steps=_render_steps(matrix.steps, variants, spec.name)))

    logger.debug("matrix %s expanded to %d job(s)", matrix.name, len(jobs))
    return jobs


def expand_all(matrices: Iterable[Matrix]) -> List[JobSpec]:
    """Expand every matrix in declaration order."""
    jobs: List[JobSpec] = []
    for m in matrices:
        jobs.extend(expand(m))
    return jobs
