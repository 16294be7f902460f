# tests/test_analysis.py
"""
Tests for AnalysisSession: loading, lookups, caching and the
whole-unit queries built on the per-module pieces.
"""

import pytest

from ctestsynth.analysis import AnalysisSession
from ctestsynth.config import SynthesisConfig
from ctestsynth.errors import (
    EntityNotFoundError,
    FunctionNotFoundError,
    IssueKind,
    IssueSeverity,
    SourceFileNotFoundError,
)
from ctestsynth.synthesis import CancellationToken
from tests.conftest import (
    CLAMP_UNIT,
    MUTUAL_UNIT,
    block,
    function,
    if_,
    make_session,
    ret,
    write_unit,
)


class TestLoading:

    def test_open_json_unit(self, clamp_file):
        session = AnalysisSession.open(clamp_file)
        assert session.function("clamp").name == "clamp"
        assert "clamp" in session.bodies

    def test_open_passes_options(self, clamp_file):
        config = SynthesisConfig(max_paths=2)
        session = AnalysisSession.open(clamp_file, config=config)
        assert session.config is config
        assert len(session.analyze_branches("clamp").paths) == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(SourceFileNotFoundError):
            AnalysisSession.open(tmp_path / "absent.json")

    def test_model_typedefs_registered(self, tmp_path):
        path = write_unit(tmp_path, {
            "typedefs": [{"alias": "small_t", "original_type": "unsigned char"}],
            "functions": [function("f", [("s", "small_t")], body=block(ret("s")))],
        })
        session = AnalysisSession.open(path)
        assert session.registry.resolve("small_t") == "unsigned char"
        assert session.extract_constraints("f")["s"].max_value == 255


class TestLookup:

    def test_unknown_function(self, clamp_session):
        with pytest.raises(FunctionNotFoundError):
            clamp_session.analyze_branches("nope")

    def test_declaration_has_no_body(self, overflow_session):
        with pytest.raises(EntityNotFoundError):
            overflow_session.body("hit")

    def test_branch_analysis_is_cached(self, clamp_session):
        first = clamp_session.analyze_branches("clamp")
        assert clamp_session.analyze_branches("clamp") is first
        assert clamp_session.analyze_function_complexity("clamp") is first.complexity

    def test_constraints_returned_as_copy(self, overflow_session):
        constraints = overflow_session.extract_constraints("f")
        constraints.clear()
        assert "count" in overflow_session.extract_constraints("f")

    def test_variable_types(self, overflow_session):
        assert overflow_session.variable_types("f") == {"count": "unsigned char"}

    def test_covering_paths(self, clamp_session):
        paths = clamp_session.find_paths_covering_branches("clamp", [2, 3])
        assert [p.branch_ids for p in paths] == [(1, 2), (1, 3)]


class TestSolving:

    def test_expression_respects_type_bounds(self, overflow_session):
        assert overflow_session.synthesize_for_expression("count > 200", "f").is_sat
        assert overflow_session.synthesize_for_expression("count > 255", "f").is_unsat

    def test_values_for_outputs(self):
        session = make_session({"functions": [
            function("scale", [("x", "int"), ("y", "int")], body=block(ret("y"))),
        ]})
        result = session.find_values_for_outputs("scale", {"y": "3 * x", "x": 7})
        assert result.assignment.to_dict() == {"x": "7", "y": "21"}

    def test_enum_constants_usable_in_conditions(self):
        session = make_session({
            "enums": [{"name": "mode", "values": ["OFF", "ON", "AUTO"]}],
            "functions": [function("set", [("m", "enum mode")], body=block(
                if_("m == AUTO", ret("1")), ret("0")))],
        })
        result = session.synthesize_for_coverage("set", 1.0)
        assert result.achieved_coverage == 1.0
        assert result.test_cases[0].values["m"] == "2"


class TestCallGraphQueries:

    @pytest.fixture
    def session(self):
        return make_session(MUTUAL_UNIT)

    def test_call_graph_is_cached(self, session):
        assert session.call_graph() is session.call_graph()

    def test_depth_limited_graph(self, session):
        sub = session.build_call_graph("main", max_depth=1)
        assert sorted(sub.nodes) == ["f", "main", "printf"]

    def test_call_paths(self, session):
        assert session.find_call_paths("main") == [["main", "f", "g"], ["main", "printf"]]

    def test_unknown_root(self, session):
        with pytest.raises(FunctionNotFoundError):
            session.build_call_graph("nope")

    def test_synthesis_over_call_graph(self, session):
        results = session.synthesize_for_call_graph("main", max_depth=3, target_coverage=1.0)
        assert set(results) == {"main", "f", "g"}
        assert results["f"].achieved_coverage == 1.0
        assert results["g"].total_branches == 0

    def test_call_graph_synthesis_cancelled(self, session):
        token = CancellationToken()
        token.cancel()
        assert session.synthesize_for_call_graph("main", cancel=token) == {}


class TestWholeUnit:

    def test_clean_unit_validates(self, clamp_session):
        assert clamp_session.validate() == []

    def test_layout_warning_reported(self):
        session = make_session({
            "file": "pad.h",
            "structs": [{"name": "loose", "line": 4, "members": [
                {"name": "a", "type": "char"},
                {"name": "b", "type": "double"},
                {"name": "c", "type": "char"},
            ]}],
        })
        issues = session.validate()
        assert issues
        assert {i.kind for i in issues} == {IssueKind.LAYOUT}
        assert all(i.severity is IssueSeverity.WARNING for i in issues)
        assert issues[0].entity == "loose"
        assert issues[0].file == "pad.h"

    def test_self_containment_is_an_error_without_layout(self):
        session = make_session({"structs": [
            {"name": "node", "members": [{"name": "next", "type": "struct node"}]},
        ]})
        kinds = {i.kind for i in session.validate()}
        assert IssueKind.SELF_CONTAINMENT in kinds
        assert IssueKind.LAYOUT not in kinds

    def test_type_dependencies(self):
        session = make_session({
            "structs": [{"name": "node", "members": [
                {"name": "next", "type": "struct node *"}]}],
        })
        assert session.type_dependencies().self_references() == ["node"]

    def test_include_dependencies(self):
        session = make_session({
            "file": "main.c",
            "includes": [{"path": "stdlib.h", "is_system": True}],
            "functions": CLAMP_UNIT["functions"],
        })
        assert session.include_dependencies().system_headers() == ["stdlib.h"]
