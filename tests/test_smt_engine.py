# tests/test_smt_engine.py
"""
Tests for the Z3-backed engine: lowering of C conditions, C integer
division, sorts, rendering and failure reporting.
"""

import math
from concurrent.futures import ThreadPoolExecutor

import pytest
import z3

from ctestsynth.constraints import VariableConstraint
from ctestsynth.errors import ExpressionLoweringError, SolverFailureError
from ctestsynth.smt_engine import SmtEngine, SolveStatus, literal_value
from ctestsynth.typedef_registry import TypedefRegistry


@pytest.fixture
def engine():
    return SmtEngine(timeout_ms=5000)


def _value(result, name):
    assert result.is_sat, result.reason
    return result.assignment.as_number(name)


class TestSatisfiability:

    def test_simple_sat(self, engine):
        result = engine.solve({}, {"x": "int"}, ["x < 0"])
        assert result.status is SolveStatus.SATISFIABLE
        assert _value(result, "x") < 0

    def test_conjunction(self, engine):
        result = engine.solve({}, {"x": "int"}, ["!(x < 0)", "x > 100"])
        assert _value(result, "x") > 100

    def test_contradiction_is_unsat(self, engine):
        result = engine.solve({}, {"x": "int"}, ["x < 0", "x > 5"])
        assert result.is_unsat
        assert result.assignment is None

    def test_type_range_makes_guard_infeasible(self, engine):
        constraints = {"count": VariableConstraint.range("count", 0, 255)}
        result = engine.solve(constraints, {"count": "unsigned char"}, ["count > 255"])
        assert result.is_unsat

    def test_constraints_as_list(self, engine):
        result = engine.solve([VariableConstraint.range("x", 10, 12)], {"x": "int"},
                              ["x != 10", "x != 11"])
        assert _value(result, "x") == 12

    def test_enumeration_constraint(self, engine):
        result = engine.solve([VariableConstraint.enumeration("c", [0, 1, 2])],
                              {"c": "int"}, ["c > 1"])
        assert _value(result, "c") == 2

    def test_empty_constraint_is_unsat(self, engine):
        c = VariableConstraint.exact("x", 1).intersect(VariableConstraint.exact("x", 2))
        assert engine.solve([c], {"x": "int"}).is_unsat

    def test_custom_expression_constraint(self, engine):
        result = engine.solve([VariableConstraint.custom("x", "x * x == 49")],
                              {"x": "int"}, ["x < 0"])
        assert _value(result, "x") == -7

    def test_unmentioned_variables_get_values(self, engine):
        result = engine.solve({}, {"x": "int", "y": "int"}, ["x == 3"])
        assert set(result.assignment) == {"x", "y"}
        assert result.assignment["x"] == "3"

    def test_unparseable_condition_is_unknown(self, engine):
        result = engine.solve({}, {"x": "int"}, ["x & 1"])
        assert result.status is SolveStatus.UNKNOWN
        assert "x & 1" in result.reason

    def test_modulo_on_real_is_unknown(self, engine):
        result = engine.solve({}, {"d": "double"}, ["d % 2 == 1"])
        assert result.status is SolveStatus.UNKNOWN


class TestCArithmetic:

    def test_division_truncates_toward_zero(self, engine):
        result = engine.solve({}, {"x": "int"}, ["x / 2 == -3", "x < 0"])
        assert _value(result, "x") in (-6, -7)

    def test_negative_division_excludes_euclidean_answer(self, engine):
        assert engine.solve({}, {"x": "int"}, ["x / 2 == -3", "x == -5"]).is_unsat

    def test_modulo_sign_follows_dividend(self, engine):
        result = engine.solve({}, {"x": "int"}, ["x % 3 == -1", "x > -10", "x < 0"])
        x = _value(result, "x")
        assert math.fmod(x, 3) == -1

    def test_divisor_is_nonzero(self, engine):
        result = engine.solve({}, {"y": "int"}, ["10 / y == 5"])
        assert _value(result, "y") == 2

    def test_division_by_literal_zero_is_unsat(self, engine):
        assert engine.solve({}, {"x": "int"}, ["x / 0 == 1"]).is_unsat

    def test_guarded_division_under_or(self, engine):
        # 10 / x never exceeds 10, so only the left operand can hold.
        result = engine.solve({}, {"x": "int"}, ["x == 0 || 10 / x > 20"])
        assert _value(result, "x") == 0

    def test_guarded_division_under_and(self, engine):
        result = engine.solve({}, {"x": "int"}, ["x != 0 && 10 / x == 5"])
        assert _value(result, "x") == 2

    def test_negated_guarded_division(self, engine):
        result = engine.solve({}, {"x": "int"}, ["!(x == 0 || 10 / x > 1)"])
        x = _value(result, "x")
        assert x != 0
        assert int(10 / x) <= 1

    def test_unguarded_divisor_still_nonzero(self, engine):
        assert engine.solve({}, {"x": "int"}, ["10 / x > 20 || x == 0", "x == 0"]).is_unsat

    def test_precedence(self, engine):
        result = engine.solve({}, {"x": "int"}, ["x + 2 * 3 == 10"])
        assert _value(result, "x") == 4


class TestSorts:

    def test_real_variable(self, engine):
        result = engine.solve({}, {"d": "double"}, ["d > 1.5 && d < 1.75"])
        assert 1.5 < _value(result, "d") < 1.75

    def test_integral_real_renders_with_point(self, engine):
        result = engine.solve({}, {"d": "double"}, ["d == 2"])
        assert result.assignment["d"] == "2.0"

    def test_bool_variable(self, engine):
        result = engine.solve({}, {"flag": "_Bool"}, ["flag"])
        assert result.assignment["flag"] == "true"
        result = engine.solve({}, {"flag": "_Bool"}, ["!flag"])
        assert result.assignment["flag"] == "false"

    def test_bool_in_arithmetic(self, engine):
        result = engine.solve({}, {"flag": "_Bool"}, ["flag + 1 == 2"])
        assert result.assignment["flag"] == "true"

    def test_int_in_boolean_context(self, engine):
        result = engine.solve({}, {"n": "int"}, ["!n"])
        assert result.assignment["n"] == "0"

    def test_mixed_int_and_real(self, engine):
        result = engine.solve({}, {"d": "double", "n": "int"}, ["d + n == 2.5", "n == 2"])
        assert result.assignment["d"] == "0.5"

    def test_registry_alias_sort(self):
        registry = TypedefRegistry()
        registry.register("real_t", "double")
        result = SmtEngine(registry=registry).solve({}, {"r": "real_t"}, ["r > 0 && r < 1"])
        assert 0 < _value(result, "r") < 1

    def test_unknown_alias_defaults_to_int(self, engine):
        assert engine.solve({}, {"r": "real_t"}, ["r > 0 && r < 1"]).is_unsat

    def test_symbols_substituted(self):
        engine = SmtEngine(symbols={"LIMIT": 10})
        result = engine.solve({}, {"x": "int"}, ["x > LIMIT && x < 12"])
        assert result.assignment.to_dict() == {"x": "11"}


class TestHelpers:

    def test_find_values_for_expression(self, engine):
        result = engine.find_values_for_expression(
            "x > 10", {"x": "int"}, [VariableConstraint.range("x", 0, 11)])
        assert _value(result, "x") == 11

    def test_find_values_for_outputs(self, engine):
        result = engine.find_values_for_outputs(
            [VariableConstraint.custom("y", "y == 2 * x")],
            {"x": "int", "y": "int"},
            {"y": 10},
        )
        assert _value(result, "x") == 5

    def test_outputs_pinned_to_expressions(self, engine):
        result = engine.find_values_for_outputs(None, {"a": "int"}, {"b": "a + 1", "a": 4})
        assert _value(result, "b") == 5

    def test_validate_constraint(self, engine):
        assert engine.validate_constraint(VariableConstraint.range("x", 0, 10))
        assert not engine.validate_constraint(VariableConstraint.range("x", 5, 1))
        assert not engine.validate_constraint(VariableConstraint.enumeration("x", []))

    def test_generate_sample_values(self, engine):
        values = engine.generate_sample_values("x", "int", VariableConstraint.range("x", 1, 3))
        assert sorted(values) == ["1", "2", "3"]

    def test_generate_sample_values_count(self, engine):
        assert len(engine.generate_sample_values("x", count=4)) == 4

    @pytest.mark.parametrize("expression, values, expected", [
        ("x * 2 + 1", {"x": 20}, "41"),
        ("7 / 2", {}, "3"),
        ("-7 / 2", {}, "-3"),
        ("-7 % 2", {}, "-1"),
        ("x > 3", {"x": "5"}, "true"),
        ("x == 3", {"x": 5}, "false"),
    ])
    def test_evaluate_expression(self, engine, expression, values, expected):
        assert engine.evaluate_expression(expression, values) == expected

    def test_evaluate_real(self, engine):
        assert engine.evaluate_expression("x / 2", {"x": 5}, {"x": "double"}) == "2.5"

    def test_evaluate_with_symbols(self):
        assert SmtEngine(symbols={"LIMIT": 10}).evaluate_expression("LIMIT - 1", {}) == "9"

    def test_evaluate_unbound_name(self, engine):
        with pytest.raises(ExpressionLoweringError):
            engine.evaluate_expression("x + y", {"x": 1})

    def test_evaluate_division_by_zero(self, engine):
        with pytest.raises(ExpressionLoweringError):
            engine.evaluate_expression("x / y", {"x": 1, "y": 0})

    def test_evaluate_short_circuit_skips_division(self, engine):
        assert engine.evaluate_expression("y == 0 || x / y > 1", {"x": 1, "y": 0}) == "true"

    def test_literal_value(self):
        assert literal_value("-12") == -12
        assert literal_value("2.5") == 2.5
        assert literal_value("true") == 1


class TestFailures:

    def test_internal_failure_raises(self, engine, monkeypatch):
        def broken_check(self, *args):
            raise z3.Z3Exception("internal error")

        monkeypatch.setattr(z3.Solver, "check", broken_check)
        with pytest.raises(SolverFailureError):
            engine.solve({}, {"x": "int"}, ["x > 0"])

    def test_parallel_solves_are_independent(self, engine):
        def solve(k):
            result = engine.solve([VariableConstraint.exact("x", k)], {"x": "int"}, ["x >= 0"])
            return result.assignment.as_number("x")

        with ThreadPoolExecutor(max_workers=4) as pool:
            assert list(pool.map(solve, range(16))) == list(range(16))
