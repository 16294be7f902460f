# tests/test_synthesis.py
"""
Tests for the coverage-guided synthesis loop: coverage marking,
infeasibility, budgets, cancellation and determinism.
"""

import ast

import pytest

import ctestsynth
from ctestsynth.config import SynthesisConfig
from ctestsynth.smt_engine import SmtEngine, SolveResult, SolveStatus
from ctestsynth.synthesis import (
    CancellationToken,
    CoverageSynthesizer,
    SynthesisState,
)
from tests.conftest import (
    CLAMP_UNIT,
    block,
    decl,
    expr,
    function,
    if_,
    make_session,
    ret,
    while_,
)


class AlwaysUnknownEngine:
    """Engine stand-in whose every solve times out."""

    def __init__(self):
        self.calls = []

    def solve(self, constraints, variable_types, conditions=()):
        self.calls.append(list(conditions))
        return SolveResult(SolveStatus.UNKNOWN, None, "timeout")


class CancelAfterFirstSolve:
    """Wraps a real engine and sets the token once a solve finishes."""

    def __init__(self, token):
        self.token = token
        self.inner = SmtEngine()

    def solve(self, constraints, variable_types, conditions=()):
        result = self.inner.solve(constraints, variable_types, conditions)
        self.token.cancel()
        return result


def _run(session, name, target=None, cancel=None, engine=None, config=None):
    analysis = session.analyze_branches(name)
    synthesizer = CoverageSynthesizer(engine or session.engine, config or session.config)
    return synthesizer.run(analysis, session.extract_constraints(name),
                           session.variable_types(name), target, cancel)


class TestClampCoverage:

    def test_full_coverage(self, clamp_session):
        result = clamp_session.synthesize_for_coverage("clamp", 1.0)
        assert result.achieved_coverage == 1.0
        assert result.target_reached
        assert result.covered_branch_ids == [0, 1, 2, 3]
        assert [t.branch_id for t in result.test_cases] == [0, 1, 3]
        assert result.infeasible_branch_ids == []
        assert result.unknown_branch_ids == []

    def test_values_drive_their_paths(self, clamp_session):
        result = clamp_session.synthesize_for_coverage("clamp", 1.0)
        by_branch = {t.branch_id: t.values.as_number("x") for t in result.test_cases}
        assert by_branch[0] < 0
        assert by_branch[1] > 100
        assert 0 <= by_branch[3] <= 100

    def test_quick_start_output_drives_clamp_paths(self):
        shown = ctestsynth.__doc__.split("# doctest: +SKIP\n")[-1].splitlines()[0]
        low, high, mid = (int(v["x"]) for v in ast.literal_eval(shown))
        assert -2 ** 31 <= low < 0
        assert 100 < high < 2 ** 31
        assert 0 <= mid <= 100

    def test_records_carry_path_and_counts(self, clamp_session):
        result = clamp_session.synthesize_for_coverage("clamp", 1.0)
        first, second, third = result.test_cases
        assert first.covered_branch_ids == (0,)
        assert second.path_id == 1
        assert second.covered_branch_ids == (1, 2)
        assert [t.covered_branch_count for t in result.test_cases] == [1, 3, 4]
        assert all(t.total_branch_count == 4 for t in result.test_cases)
        assert third.function_name == "clamp"

    def test_lower_target_stops_early(self, clamp_session):
        result = clamp_session.synthesize_for_coverage("clamp", 0.5)
        assert len(result.test_cases) == 2
        assert result.achieved_coverage == 0.75

    def test_default_target_from_config(self):
        session = make_session(CLAMP_UNIT, config=SynthesisConfig(target_coverage=0.25))
        result = session.synthesize_for_coverage("clamp")
        assert result.target_coverage == 0.25
        assert len(result.test_cases) == 1

    def test_deterministic(self, clamp_session):
        first = clamp_session.synthesize_for_coverage("clamp", 1.0)
        second = clamp_session.synthesize_for_coverage("clamp", 1.0)
        assert [t.branch_id for t in first.test_cases] == [t.branch_id for t in second.test_cases]
        assert first.covered_branch_ids == second.covered_branch_ids

    def test_analysis_branches_not_mutated(self, clamp_session):
        result = clamp_session.synthesize_for_coverage("clamp", 1.0)
        assert all(b.is_covered for b in result.branches)
        assert not any(b.is_covered for b in clamp_session.analyze_branches("clamp").branches)

    def test_state_machine_finishes(self, clamp_session):
        synthesizer = CoverageSynthesizer(clamp_session.engine)
        assert synthesizer.state is SynthesisState.INITIALIZED
        analysis = clamp_session.analyze_branches("clamp")
        synthesizer.run(analysis, {}, {"x": "int"}, 1.0)
        assert synthesizer.state is SynthesisState.DONE

    @pytest.mark.parametrize("target", [0.0, -0.1, 1.5])
    def test_target_out_of_range(self, clamp_session, target):
        with pytest.raises(ValueError):
            clamp_session.synthesize_for_coverage("clamp", target)

    def test_to_dict(self, clamp_session):
        data = clamp_session.synthesize_for_coverage("clamp", 1.0).to_dict()
        assert data["function"] == "clamp"
        assert data["achieved_coverage"] == 1.0
        assert len(data["test_cases"]) == 3
        assert set(data["test_cases"][0]["values"]) == {"x"}


class TestInfeasibility:

    def test_type_bound_makes_branch_infeasible(self, overflow_session):
        result = overflow_session.synthesize_for_coverage("f", 1.0)
        assert result.infeasible_branch_ids == [0]
        assert result.covered_branch_ids == [1]
        assert result.achieved_coverage == 0.5
        assert not result.target_reached
        assert not result.branches[0].is_feasible

    def test_unloweable_guard_is_unknown(self):
        session = make_session({"functions": [
            function("odd", [("x", "int")], body=block(if_("x & 1", ret("1")), ret("0"))),
        ]})
        result = session.synthesize_for_coverage("odd", 1.0)
        assert result.unknown_branch_ids == [0, 1]
        assert result.infeasible_branch_ids == []
        assert result.test_cases == []
        assert result.achieved_coverage == 0.0

    def test_unreachable_branches_not_counted(self):
        session = make_session({"functions": [
            function("f", [("x", "int")], body=block(
                if_("x > 0", ret("1")),
                ret("0"),
                if_("x < 0", ret("2")),
            )),
        ]})
        result = session.synthesize_for_coverage("f", 1.0)
        assert result.total_branches == 2
        assert result.achieved_coverage == 1.0

    def test_function_without_branches(self):
        session = make_session({"functions": [function("k", body=block(ret("42")))]})
        result = session.synthesize_for_coverage("k", 1.0)
        assert result.total_branches == 0
        assert result.achieved_coverage == 1.0
        assert result.test_cases == []

    def test_infeasible_branches_are_unsat_on_their_own(self, overflow_session):
        result = overflow_session.synthesize_for_coverage("f", 1.0)
        analysis = overflow_session.analyze_branches("f")
        engine = SmtEngine()
        assert result.infeasible_branch_ids
        for branch_id in result.infeasible_branch_ids:
            check = engine.solve(overflow_session.extract_constraints("f"),
                                 overflow_session.variable_types("f"),
                                 [analysis.branch(branch_id).condition])
            assert check.is_unsat

    @pytest.mark.parametrize("guard, exit_value", [
        ("i < 10", 10),
        ("i <= 10", 11),
    ])
    def test_loop_exit_is_feasible(self, guard, exit_value):
        session = make_session({"functions": [
            function("count_up", body=block(
                decl("i", "int", "0"),
                while_(guard, expr("i++;")),
                ret("i"),
            )),
        ]})
        result = session.synthesize_for_coverage("count_up", 1.0)
        assert result.infeasible_branch_ids == []
        assert result.covered_branch_ids == [0, 1]
        assert result.achieved_coverage == 1.0
        exits = [t for t in result.test_cases if t.branch_id == 1]
        assert exits[0].values.as_number("i") == exit_value

    def test_guarded_division_branch_is_covered(self):
        session = make_session({"functions": [
            function("ratio", [("x", "int")], body=block(
                if_("x == 0 || 10 / x > 20", ret("1")),
                ret("0"),
            )),
        ]})
        result = session.synthesize_for_coverage("ratio", 1.0)
        assert result.infeasible_branch_ids == []
        assert result.achieved_coverage == 1.0
        taken = [t for t in result.test_cases if t.branch_id == 0]
        assert taken[0].values.as_number("x") == 0


class TestBudgetAndCancellation:

    def test_budget_exhausted(self, clamp_session):
        engine = AlwaysUnknownEngine()
        result = _run(clamp_session, "clamp", 1.0, engine=engine,
                      config=SynthesisConfig(attempt_budget_factor=1))
        assert result.solver_calls == 4
        assert len(engine.calls) == 4
        assert result.budget_exhausted
        assert result.unknown_branch_ids == [0, 1]
        assert result.attempted_branch_ids == [0, 1]

    def test_unknown_path_retries_branch_condition(self, clamp_session):
        engine = AlwaysUnknownEngine()
        _run(clamp_session, "clamp", 1.0, engine=engine)
        assert engine.calls[0] == ["x < 0"]
        assert engine.calls[1] == ["x < 0"]

    def test_cancel_before_start(self, clamp_session):
        token = CancellationToken()
        token.cancel()
        result = clamp_session.synthesize_for_coverage("clamp", 1.0, cancel=token)
        assert result.cancelled
        assert result.test_cases == []
        assert result.solver_calls == 0

    def test_cancel_between_branches(self, clamp_session):
        token = CancellationToken()
        result = _run(clamp_session, "clamp", 1.0, cancel=token,
                      engine=CancelAfterFirstSolve(token))
        assert result.cancelled
        assert len(result.test_cases) == 1
        assert result.covered_branch_ids == [0]

    def test_solve_branch_directly(self, clamp_session):
        synthesizer = CoverageSynthesizer(clamp_session.engine)
        analysis = clamp_session.analyze_branches("clamp")
        result, path, calls = synthesizer.solve_branch(analysis, 2, {}, {"x": "int"})
        assert result.is_sat
        assert path.branch_ids == (1, 2)
        assert calls == 1
