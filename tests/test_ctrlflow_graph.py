# tests/test_ctrlflow_graph.py
"""
Tests for CFG construction, branch numbering, bounded path enumeration,
complexity metrics and parameter-direction classification.
"""

import pytest

from ctestsynth.ast_model import NodeKind
from ctestsynth.ctrlflow_graph import (
    BranchAnalyzer,
    CFGBuilder,
    EdgeKind,
    ParameterDirection,
    PointerConstHeuristic,
    cfg_summary,
    find_paths_covering_branches,
)
from ctestsynth.errors import EntityNotFoundError
from tests.conftest import (
    CLAMP_UNIT,
    block,
    brk,
    case,
    default,
    do_while,
    expr,
    for_,
    function,
    if_,
    load_unit,
    ret,
    switch,
    ternary,
    while_,
)


def _analyze(data, name, **kwargs):
    unit = load_unit(data)
    return BranchAnalyzer(**kwargs).analyze(unit.model.get_function(name), unit.bodies[name])


def _single(body, params=(("x", "int"),)):
    return _analyze({"file": "t.c", "functions": [function("f", params, body=body)]}, "f")


def _conditions(result):
    return [b.condition for b in result.branches]


def _path_ids(result):
    return [p.branch_ids for p in result.paths]


class TestClamp:

    @pytest.fixture
    def result(self):
        return _analyze(CLAMP_UNIT, "clamp")

    def test_branches(self, result):
        assert _conditions(result) == ["x < 0", "!(x < 0)", "x > 100", "!(x > 100)"]
        assert [b.is_true_edge for b in result.branches] == [True, False, True, False]
        assert [b.decision_line for b in result.branches] == [2, 2, 3, 3]
        assert all(b.kind is NodeKind.IF for b in result.branches)
        assert all(b.is_reachable for b in result.branches)

    def test_paths(self, result):
        assert _path_ids(result) == [(0,), (1, 2), (1, 3)]
        assert result.paths[1].condition == "(!(x < 0)) && (x > 100)"
        assert result.paths[0].condition == "x < 0"
        assert [p.path_id for p in result.paths] == [0, 1, 2]

    def test_complexity(self, result):
        c = result.complexity
        assert c.cyclomatic == 3
        assert c.decision_points == 2
        assert c.nesting_depth == 1
        assert c.statement_count == 5
        assert c.line_count == 5
        assert c.branch_count == 4
        assert 0 < c.maintainability_index <= 100

    def test_complexity_to_dict(self, result):
        data = result.complexity.to_dict()
        assert data["cyclomatic"] == 3
        assert data["maintainability_index"] == round(data["maintainability_index"], 2)

    def test_branch_lookup(self, result):
        assert result.branch(2).condition == "x > 100"
        with pytest.raises(EntityNotFoundError):
            result.branch(9)

    def test_paths_through(self, result):
        assert [p.path_id for p in result.paths_through(1)] == [1, 2]

    def test_arms_in_cfg(self, result):
        cfg = result.cfg
        arms = [n for n in cfg.nodes if n.kind == "arm"]
        assert sorted(n.branch_id for n in arms) == [0, 1, 2, 3]
        assert len(cfg.decision_nodes()) == 2
        kinds = {e.kind for e in cfg.edges}
        assert {EdgeKind.BRANCH_TRUE, EdgeKind.BRANCH_FALSE, EdgeKind.RETURN} <= kinds
        assert cfg.unreachable_nodes() == []

    def test_to_dot(self, result):
        dot = result.cfg.to_dot()
        assert dot.startswith("digraph CFG {")
        assert 'label="clamp"' in dot
        assert "shape=diamond" in dot

    def test_summary(self, result):
        text = cfg_summary(result)
        assert text.splitlines()[0] == "clamp: cyclomatic 3, 4 branches, 3 paths"
        assert "#3 L3 if: !(x > 100)" in text

    def test_max_paths(self):
        result = _analyze(CLAMP_UNIT, "clamp", max_paths=2)
        assert len(result.paths) == 2


class TestCoveringPaths:

    def test_minimal_selection(self):
        result = _analyze(CLAMP_UNIT, "clamp")
        chosen = find_paths_covering_branches(result, [0, 1, 2, 3])
        assert [p.path_id for p in chosen] == [0, 1, 2]

    def test_shared_prefix_not_repeated(self):
        result = _analyze(CLAMP_UNIT, "clamp")
        chosen = find_paths_covering_branches(result, [2, 1, 3])
        assert [p.path_id for p in chosen] == [1, 2]

    def test_unknown_branch(self):
        result = _analyze(CLAMP_UNIT, "clamp")
        with pytest.raises(EntityNotFoundError):
            find_paths_covering_branches(result, [0, 42])


class TestStatements:

    def test_if_else_if_chain(self):
        result = _single(block(
            if_("x < 0", ret("-1"), if_("x == 0", ret("0"), ret("1"))),
        ))
        assert _conditions(result) == ["x < 0", "!(x < 0)", "x == 0", "!(x == 0)"]
        assert _path_ids(result) == [(0,), (1, 2), (1, 3)]

    def test_while_loop_unrolled_once(self):
        result = _single(block(
            while_("x < 10", expr("x++;")),
            ret("x"),
        ))
        assert _conditions(result) == ["x < 10", "!(x < 10)"]
        assert all(b.kind is NodeKind.WHILE for b in result.branches)
        assert _path_ids(result) == [(0,), (1,)]
        assert len(result.cfg.back_edges()) == 1

    def test_do_while(self):
        result = _single(block(
            do_while("x > 0", expr("x--;")),
            ret("x"),
        ))
        assert _conditions(result) == ["x > 0", "!(x > 0)"]
        assert _path_ids(result) == [(0,), (1,)]

    def test_for_without_guard(self):
        result = _single(block(
            for_("", block(if_("x", brk()), expr("x--;"))),
            ret("0"),
        ))
        assert _conditions(result)[:2] == ["1", "!(1)"]
        assert result.complexity.cyclomatic == 3

    def test_switch_with_default(self):
        result = _single(block(
            switch("x",
                   case("1", expr("a();"), brk()),
                   case("2", brk()),
                   default(brk())),
            ret("0"),
        ), params=(("x", "int"),))
        assert _conditions(result) == ["x == 1", "x == 2", "!(x == 1 || x == 2)"]
        assert [b.kind for b in result.branches] == [NodeKind.CASE, NodeKind.CASE,
                                                     NodeKind.DEFAULT]
        assert result.branches[0].case_value == "1"
        assert result.branches[2].is_default
        assert _path_ids(result) == [(0,), (1,), (2,)]

    def test_switch_implied_default(self):
        result = _single(block(
            switch("x", case("3", brk())),
            ret("0"),
        ))
        assert _conditions(result) == ["x == 3", "!(x == 3)"]
        assert result.branches[1].kind is NodeKind.DEFAULT
        assert _path_ids(result) == [(0,), (1,)]

    def test_switch_without_cases(self):
        result = _single(block(switch("x", expr("noop();")), ret("0")))
        assert _conditions(result) == ["1"]

    def test_case_fall_through(self):
        result = _single(block(
            switch("x", case("1"), case("2", ret("2")), default(ret("0"))),
        ))
        label_two = [n for n in result.cfg.nodes if n.text == "case 2:"][0]
        assert len(label_two.predecessors) == 2

    def test_ternary(self):
        result = _single(block(
            expr("y = x ? 1 : 2;", ternary("x", "1", "2")),
            ret("y"),
        ))
        assert _conditions(result) == ["x", "!(x)"]
        assert result.branches[0].kind is NodeKind.TERNARY
        assert _path_ids(result) == [(0,), (1,)]

    def test_goto(self):
        result = _single(block(
            if_("x", {"kind": "goto", "name": "out"}),
            expr("work();"),
            {"kind": "label", "name": "out", "children": [ret("0")]},
        ))
        assert _path_ids(result) == [(0,), (1,)]
        assert any(e.kind is EdgeKind.GOTO for e in result.cfg.edges)

    def test_goto_unknown_label_goes_to_exit(self):
        result = _single(block({"kind": "goto", "name": "nowhere"}))
        goto_edges = [e for e in result.cfg.edges if e.kind is EdgeKind.GOTO]
        assert goto_edges[0].dst is result.cfg.exit

    def test_unreachable_decision(self):
        result = _single(block(ret("0"), if_("x > 0", ret("1"))))
        assert [b.is_reachable for b in result.branches] == [False, False]
        assert result.reachable_branches == []
        assert result.cfg.unreachable_nodes()

    def test_long_else_if_chain(self):
        node = ret("0")
        for i in range(100, 0, -1):
            node = if_(f"x == {i}", ret(str(i)), node)
        result = _single(block(node))
        assert len(result.branches) == 200
        assert result.branches[-1].condition == "!(x == 100)"

    def test_builder_directly(self):
        unit = load_unit(CLAMP_UNIT)
        cfg, branches = CFGBuilder("clamp").build(unit.bodies["clamp"])
        assert cfg.function_name == "clamp"
        assert len(branches) == 4
        assert cfg.entry.kind == "entry" and cfg.exit.kind == "exit"


class TestParameterDirections:

    def test_store_then_read(self):
        result = _single(
            block(expr("dst[0] = src[0];"), ret("0")),
            params=(("dst", "char *"), ("src", "const char *")),
        )
        assert result.parameter_directions == {
            "dst": ParameterDirection.OUTPUT,
            "src": ParameterDirection.INPUT,
        }

    def test_read_modify_write(self):
        result = _single(
            block(expr("*acc = *acc + n;"), ret("0")),
            params=(("acc", "int *"), ("n", "int")),
        )
        assert result.parameter_directions["acc"] is ParameterDirection.IN_OUT
        assert result.parameter_directions["n"] is ParameterDirection.INPUT

    def test_pointer_in_condition_is_in_out(self):
        result = _single(
            block(if_("p", expr("p->len = 0;")), ret("0")),
            params=(("p", "struct buf *"),),
        )
        assert result.parameter_directions["p"] is ParameterDirection.IN_OUT

    def test_no_body(self):
        fn = load_unit({"functions": [function("g", [("out", "int *")])]}).model.get_function("g")
        directions = PointerConstHeuristic().classify(fn, None)
        assert directions == {"out": ParameterDirection.IN_OUT}
