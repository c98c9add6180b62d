"""Tests for step gates."""

import pytest

from cimatrix.gates import (
    AllOf,
    Always,
    GateContext,
    MatrixCompare,
    Success,
    all_of,
    lookup_variant,
    matrix_eq,
    matrix_ne,
    parse_gate,
)

VARIANTS = {"info": {"os": "ubuntu-latest", "cross": False}, "features": "--all-features"}


def ctx(prior_success=True):
    return GateContext(skip=False, prior_success=prior_success, variants=VARIANTS)


class TestGates:

    def test_success_follows_prior_steps(self):
        """success() is false after a tolerated failure."""
        assert Success()(ctx())
        assert not Success()(ctx(prior_success=False))

    def test_always_is_true(self):
        assert Always()(ctx(prior_success=False))

    def test_matrix_eq_on_record(self):
        """Dotted paths reach into record variants."""
        assert matrix_eq("info.os", "ubuntu-latest")(ctx())
        assert not matrix_eq("info.os", "windows-latest")(ctx())

    def test_matrix_ne_and_all_of(self):
        """all_of holds only when every gate holds."""
        gate = all_of(matrix_ne("info.os", "windows-latest"), matrix_eq("features", "--all-features"))

        assert gate(ctx())
        assert not all_of(gate, matrix_ne("info.cross", False))(ctx())

    def test_missing_path_is_none(self):
        assert lookup_variant(VARIANTS, ("info", "nope")) is None
        assert lookup_variant(VARIANTS, ("features", "deeper")) is None


class TestParseGate:

    def test_blank_is_success(self):
        """No expression means the default gate."""
        assert parse_gate(None) == Success()
        assert parse_gate("  ") == Success()

    def test_literals_are_typed(self):
        """Booleans and quoted strings parse like YAML scalars."""
        assert parse_gate("always() && matrix.info.cross == false") == AllOf(
            (Always(), MatrixCompare(("info", "cross"), False))
        )
        assert parse_gate("always() && matrix.features != '--all-features'") == AllOf(
            (Always(), MatrixCompare(("features",), "--all-features", negate=True))
        )

    def test_comparison_implies_success(self):
        """A bare comparison also requires every earlier step to have succeeded."""
        gate = parse_gate("matrix.info.cross == false")

        assert gate == AllOf((Success(), MatrixCompare(("info", "cross"), False)))
        assert gate(ctx())
        assert not gate(ctx(prior_success=False))

    def test_explicit_status_is_not_doubled(self):
        assert parse_gate("success() && matrix.info.cross == false") == AllOf(
            (Success(), MatrixCompare(("info", "cross"), False))
        )

    def test_conjunction(self):
        """&& joins terms; all must hold."""
        gate = parse_gate("always() && matrix.info.cross == false")

        assert isinstance(gate, AllOf)
        assert gate(ctx(prior_success=False))
        assert not parse_gate("success() && matrix.info.cross == true")(ctx())

    def test_round_trips_through_str(self):
        """Parsed gates print back as expressions."""
        assert str(parse_gate("success() && always()")) == "success() && always()"

    @pytest.mark.parametrize("expr", ["failure()", "matrix.os", "env.X == 1", "success() &&"])
    def test_unsupported_terms_raise(self, expr):
        """Anything outside the small grammar is rejected."""
        with pytest.raises(ValueError):
            parse_gate(expr)
