# tests/test_expressions.py
"""
Tests for the guard-expression grammar and the helpers over parsed
expressions.
"""

import pytest

from ctestsynth.errors import ExpressionLoweringError
from ctestsynth.expressions import (
    Binary,
    BoolConst,
    IntConst,
    Name,
    RealConst,
    Unary,
    comparisons_on,
    conjoin_text,
    conjuncts,
    free_names,
    negate_text,
    parse_expression,
)


class TestParseAtoms:

    def test_identifier(self):
        assert parse_expression("count") == Name("count")

    @pytest.mark.parametrize("text, value", [
        ("42", 42),
        ("0x1F", 31),
        ("010", 8),
        ("10u", 10),
        ("7UL", 7),
        ("0", 0),
    ])
    def test_integer_literals(self, text, value):
        assert parse_expression(text) == IntConst(value)

    def test_float_literals(self):
        assert parse_expression("2.5") == RealConst(2.5)
        assert parse_expression("2.5f") == RealConst(2.5)
        assert parse_expression("1e3") == RealConst(1000.0)

    def test_character_literals(self):
        assert parse_expression("'A'") == IntConst(65)
        assert parse_expression(r"'\n'") == IntConst(10)

    def test_bool_literals(self):
        assert parse_expression("true") == BoolConst(True)
        assert parse_expression("false") == BoolConst(False)
        assert parse_expression("true_count") == Name("true_count")

    def test_member_and_index_paths_are_flat_names(self):
        assert parse_expression("p->len") == Name("p->len")
        assert parse_expression("cfg.mode") == Name("cfg.mode")
        assert parse_expression("buf[ 0 ]") == Name("buf[0]")

    def test_negative_literal_folds(self):
        assert parse_expression("-5") == IntConst(-5)
        assert parse_expression("+5") == IntConst(5)


class TestPrecedence:

    def test_multiplicative_over_additive(self):
        assert str(parse_expression("a + b * c")) == "(a + (b * c))"

    def test_additive_over_relational(self):
        assert str(parse_expression("a + 1 < b")) == "((a + 1) < b)"

    def test_relational_over_equality(self):
        assert str(parse_expression("a < b == c > d")) == "((a < b) == (c > d))"

    def test_and_over_or(self):
        assert str(parse_expression("a || b && c")) == "(a || (b && c))"

    def test_left_associative(self):
        assert str(parse_expression("a - b - c")) == "((a - b) - c)"
        assert str(parse_expression("a / b % c")) == "((a / b) % c)"

    def test_parentheses(self):
        assert str(parse_expression("(a + b) * c")) == "((a + b) * c)"

    def test_unary_not(self):
        e = parse_expression("!(x < 0)")
        assert isinstance(e, Unary)
        assert e.op == "!"
        assert e.operand == Binary("<", Name("x"), IntConst(0))

    def test_whitespace_is_insignificant(self):
        assert parse_expression("x<0&&y>=1") == parse_expression("  x < 0 && y >= 1 ")


class TestParseErrors:

    @pytest.mark.parametrize("text", [
        "",
        "   ",
        "x = 1",
        "f(x) > 0",
        "x & 1",
        "(int)x",
        "x <",
        "(a + b",
    ])
    def test_unsupported_input_raises(self, text):
        with pytest.raises(ExpressionLoweringError):
            parse_expression(text)

    def test_error_carries_expression(self):
        with pytest.raises(ExpressionLoweringError) as info:
            parse_expression("x & 1")
        assert info.value.expression == "x & 1"


class TestQueries:

    def test_free_names_in_order(self):
        assert free_names(parse_expression("b + a * b > c")) == ["b", "a", "c"]

    def test_conjuncts(self):
        parts = conjuncts(parse_expression("a && (b || c) && d"))
        assert [str(p) for p in parts] == ["a", "(b || c)", "d"]

    def test_comparisons_normalise_constant_on_left(self):
        found = comparisons_on(parse_expression("5 < x && x <= 10"), "x")
        assert found == [(">", 5), ("<=", 10)]

    def test_comparisons_under_or_are_not_bounds(self):
        assert comparisons_on(parse_expression("x < 3 || y"), "x") == []

    def test_comparisons_ignore_other_names(self):
        assert comparisons_on(parse_expression("i < n && j < 4"), "i") == []

    def test_negate_text_is_textual(self):
        assert negate_text("a && b") == "!(a && b)"
        assert negate_text("!(x)") == "!(!(x))"

    def test_conjoin_text(self):
        assert conjoin_text(["a", "b"]) == "(a) && (b)"
        assert conjoin_text(["a"]) == "a"
        assert conjoin_text([]) == "1"
