# gates.py
"""
Step gates: predicates deciding whether a step is invoked.

A gate sees a GateContext (the skip verdict, whether every previously
invoked step of the job succeeded, and the job's variants). The job runner
already stops the chain on the first hard failure, so `success()` only
matters after a step that was allowed to fail (`continue_on_error`).

YAML pipelines spell gates as small expressions:

    success()
    always()
    matrix.info.cross == false
    success() && matrix.features != '--no-default-features'

An expression without success() or always() is implicitly prefixed with
success(), so `matrix.info.cross == false` does not run after a tolerated
failure. Gate objects passed to the DSL are used as given.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Tuple, Union

import yaml


@dataclass(frozen=True)
class GateContext:
    skip: bool
    prior_success: bool
    variants: Mapping[str, Any]


@dataclass(frozen=True)
class Success:
    """Run only if every previously invoked step succeeded (default gate)."""

    def __call__(self, ctx: GateContext) -> bool:
        return ctx.prior_success

    def __str__(self) -> str:
        return "success()"


@dataclass(frozen=True)
class Always:
    """Run even after a tolerated failure."""

    def __call__(self, ctx: GateContext) -> bool:
        return True

    def __str__(self) -> str:
        return "always()"


_MISSING = object()


def lookup_variant(variants: Mapping[str, Any], path: Tuple[str, ...]) -> Any:
    """Resolve ("info", "target") against {"info": {"target": ...}}; missing -> None."""
    cur: Any = variants
    for part in path:
        if not isinstance(cur, Mapping):
            return None
        cur = cur.get(part, _MISSING)
        if cur is _MISSING:
            return None
    return cur


@dataclass(frozen=True)
class MatrixCompare:
    path: Tuple[str, ...]
    value: Any
    negate: bool = False

    def __call__(self, ctx: GateContext) -> bool:
        equal = lookup_variant(ctx.variants, self.path) == self.value
        return not equal if self.negate else equal

    def __str__(self) -> str:
        op = "!=" if self.negate else "=="
        return f"matrix.{'.'.join(self.path)} {op} {self.value!r}"


@dataclass(frozen=True)
class AllOf:
    gates: Tuple["Gate", ...]

    def __call__(self, ctx: GateContext) -> bool:
        return all(g(ctx) for g in self.gates)

    def __str__(self) -> str:
        return " && ".join(str(g) for g in self.gates)


Gate = Union[Success, Always, MatrixCompare, AllOf, Callable[[GateContext], bool]]


def success() -> Gate:
    return Success()


def always() -> Gate:
    return Always()


def matrix_eq(path: str, value: Any) -> Gate:
    return MatrixCompare(tuple(path.split(".")), value)


def matrix_ne(path: str, value: Any) -> Gate:
    return MatrixCompare(tuple(path.split(".")), value, negate=True)


def all_of(*gates: Gate) -> Gate:
    return AllOf(tuple(gates))


# ---------------------------------------------------------------------
# Expression parsing
# ---------------------------------------------------------------------

_COMPARE_RE = re.compile(r"^matrix\.([A-Za-z_][\w-]*(?:\.[A-Za-z_][\w-]*)*)\s*(==|!=)\s*(.+)$")


def _parse_literal(text: str) -> Any:
    # YAML scalars give us true/false/numbers/quoted strings for free
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValueError(f"invalid literal {text!r}: {e}") from e


def _parse_term(term: str) -> Gate:
    if term == "success()":
        return Success()
    if term == "always()":
        return Always()

    m = _COMPARE_RE.match(term)
    if not m:
        raise ValueError(
            f"unsupported gate term {term!r} "
            "(expected success(), always() or matrix.<path> ==/!= <value>)"
        )
    path, op, raw = m.groups()
    return MatrixCompare(tuple(path.split(".")), _parse_literal(raw.strip()), negate=(op == "!="))


def parse_gate(expr: str | None) -> Gate:
    """Parse an `if:` expression. Empty / None means the default gate."""
    if expr is None or not expr.strip():
        return Success()

    terms = [t.strip() for t in expr.split("&&")]
    if any(not t for t in terms):
        raise ValueError(f"empty term in gate expression {expr!r}")

    gates = [_parse_term(t) for t in terms]
    # without a status function the expression means success() && <expr>
    if not any(isinstance(g, (Success, Always)) for g in gates):
        gates.insert(0, Success())
    if len(gates) == 1:
        return gates[0]
    return AllOf(tuple(gates))
