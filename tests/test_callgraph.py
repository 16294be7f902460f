# tests/test_callgraph.py
"""
Tests for call-graph construction, recursion detection, depth-limited
subgraphs and the generic graph algorithms.
"""

import pytest

from ctestsynth.callgraph import (
    CallGraphBuilder,
    NodeKind,
    build_call_graph,
    callgraph_summary,
    find_cycles,
    tarjan_scc,
)
from ctestsynth.errors import FunctionNotFoundError
from tests.conftest import block, call, function, load_unit, ret


def _graph(unit):
    return CallGraphBuilder(unit.model).build(unit.bodies)


def _chain_unit(edges, names):
    """Unit whose functions call each other as listed in *edges*."""
    functions = []
    for line, name in enumerate(names, start=1):
        calls = [call(callee, line=line) for caller, callee in edges if caller == name]
        functions.append(function(name, line=line, body=block(*calls, ret("0"))))
    return load_unit({"file": "chain.c", "functions": functions})


class TestGenericAlgorithms:

    def test_find_cycles_reports_each_cycle_once(self):
        succ = {1: [2], 2: [3], 3: [1], 4: [4]}
        cycles = find_cycles([3, 1, 2, 4], lambda n: succ[n])
        assert sorted(cycles) == [[1, 2, 3], [4]]

    def test_find_cycles_acyclic(self):
        succ = {"a": ["b", "c"], "b": ["c"], "c": []}
        assert find_cycles(succ, lambda n: succ[n]) == []

    def test_tarjan_callees_first(self):
        succ = {1: [2], 2: [3], 3: []}
        assert tarjan_scc([1, 2, 3], lambda n: succ[n]) == [[3], [2], [1]]

    def test_tarjan_groups_cycle(self):
        succ = {"a": ["b"], "b": ["a", "c"], "c": []}
        sccs = tarjan_scc(["a", "b", "c"], lambda n: succ[n])
        assert sccs[0] == ["c"]
        assert sorted(sccs[1]) == ["a", "b"]

    def test_deep_chain_does_not_recurse(self):
        n = 5000
        succ = {i: [i + 1] for i in range(n)}
        succ[n] = [0]
        assert len(tarjan_scc(list(succ), lambda k: succ[k])) == 1
        assert len(find_cycles(list(succ), lambda k: succ[k])) == 1


class TestMutualRecursion:

    def test_cycle_found(self, mutual_unit):
        assert _graph(mutual_unit).find_cycles() == [["f", "g"]]

    def test_functions_marked_recursive(self, mutual_unit):
        graph = _graph(mutual_unit)
        assert graph.recursive_functions() == ["f", "g"]
        assert mutual_unit.model.get_function("f").is_recursive
        assert mutual_unit.model.get_function("g").is_recursive
        assert not mutual_unit.model.get_function("main").is_recursive

    def test_declared_only_callee_is_external(self, mutual_unit):
        graph = _graph(mutual_unit)
        assert graph.node("printf").kind is NodeKind.EXTERNAL
        assert graph.node("f").kind is NodeKind.FUNCTION

    def test_unknown_callee_is_unresolved(self, mutual_unit):
        graph = _graph(mutual_unit)
        assert "mystery" not in graph
        assert [(u.caller, u.callee, u.line) for u in graph.unresolved_calls] == [
            ("main", "mystery", 11)]

    def test_external_nodes_can_be_excluded(self, mutual_unit):
        graph = build_call_graph(mutual_unit.model, mutual_unit.bodies,
                                 include_external=False)
        assert "printf" not in graph
        assert {u.callee for u in graph.unresolved_calls} == {"printf", "mystery"}

    def test_callees_and_callers(self, mutual_unit):
        graph = _graph(mutual_unit)
        assert graph.callees("main") == ["f", "printf"]
        assert graph.callers("f") == ["g", "main"]
        assert graph.transitive_callees("main") == {"f", "g", "printf"}
        assert graph.transitive_callers("g") == {"f", "g", "main"}

    def test_edge_locations(self, mutual_unit):
        graph = _graph(mutual_unit)
        edge = graph.node("f").out_edges[0]
        assert (edge.callee.name, edge.file, edge.line) == ("g", "mutual.c", 2)

    def test_unknown_function(self, mutual_unit):
        with pytest.raises(FunctionNotFoundError):
            _graph(mutual_unit).node("nope")

    def test_statistics(self, mutual_unit):
        stats = _graph(mutual_unit).statistics()
        assert stats["functions"] == 3
        assert stats["external_functions"] == 1
        assert stats["unresolved_calls"] == 1
        assert stats["recursive_sccs"] == 1
        assert stats["recursive_functions"] == 2

    def test_summary_text(self, mutual_unit):
        text = callgraph_summary(_graph(mutual_unit))
        assert "cycle: f -> g -> f" in text
        assert "unresolved calls: mystery" in text


class TestConstruction:

    def test_self_recursion(self):
        unit = _chain_unit([("fact", "fact")], ["fact"])
        graph = _graph(unit)
        assert graph.node("fact").calls_itself
        assert graph.recursive_functions() == ["fact"]

    def test_forward_reference_links(self):
        unit = _chain_unit([("early", "late")], ["early", "late"])
        assert _graph(unit).callees("early") == ["late"]

    def test_repeated_call_site_not_duplicated(self):
        unit = load_unit({"file": "r.c", "functions": [
            function("a", body=block(call("b", line=2), call("b", line=3))),
            function("b", body=block(ret("0"))),
        ]})
        graph = _graph(unit)
        assert len(graph.edges) == 2
        assert graph.callees("a") == ["b"]

    def test_called_functions_used_without_body(self):
        unit = load_unit({"functions": [
            {"name": "a", "called_functions": ["b"]},
            {"name": "b", "called_functions": []},
        ]})
        graph = CallGraphBuilder(unit.model).build({})
        assert graph.callees("a") == ["b"]

    def test_acyclic_has_no_recursion(self):
        unit = _chain_unit([("a", "b"), ("b", "c")], ["a", "b", "c"])
        graph = _graph(unit)
        assert graph.find_cycles() == []
        assert graph.recursive_functions() == []
        assert graph.topological_order() == ["c", "b", "a"]
        assert [n.name for n in graph.roots] == ["a"]


class TestSubgraph:

    @pytest.fixture
    def chain(self):
        return _chain_unit([("a", "b"), ("b", "c"), ("c", "d")], ["a", "b", "c", "d"])

    def test_depth_limit(self, chain):
        sub = _graph(chain).subgraph("a", max_depth=2)
        assert list(sub.nodes) == ["a", "b", "c"]
        assert [sub.nodes[n].depth for n in sub.nodes] == [0, 1, 2]
        assert sub.callees("c") == []
        assert sub.root == "a"

    def test_unlimited_depth(self, chain):
        sub = _graph(chain).subgraph("b")
        assert list(sub.nodes) == ["b", "c", "d"]
        assert sub.statistics()["max_depth"] == 2

    def test_depth_zero_is_root_only(self, chain):
        sub = _graph(chain).subgraph("a", max_depth=0)
        assert list(sub.nodes) == ["a"]
        assert sub.edges == []

    def test_cycle_cut_by_depth_leaves_function_flags_alone(self, mutual_unit):
        graph = _graph(mutual_unit)
        sub = graph.subgraph("main", max_depth=1)
        assert sub.recursive_functions() == []
        assert mutual_unit.model.get_function("f").is_recursive

    def test_cycle_inside_subgraph(self, mutual_unit):
        sub = _graph(mutual_unit).subgraph("f")
        assert sub.recursive_functions() == ["f", "g"]
        assert sub.find_cycles() == [["f", "g"]]

    def test_unknown_root(self, chain):
        with pytest.raises(FunctionNotFoundError):
            _graph(chain).subgraph("zzz")


class TestCallPaths:

    def test_diamond(self):
        unit = _chain_unit([("top", "left"), ("top", "right"),
                            ("left", "bottom"), ("right", "bottom")],
                           ["top", "left", "right", "bottom"])
        paths = _graph(unit).call_paths("top")
        assert paths == [["top", "left", "bottom"], ["top", "right", "bottom"]]

    def test_recursion_terminates(self, mutual_unit):
        assert _graph(mutual_unit).call_paths("f") == [["f", "g"]]

    def test_depth_limited_paths(self):
        unit = _chain_unit([("a", "b"), ("b", "c")], ["a", "b", "c"])
        assert _graph(unit).call_paths("a", max_depth=1) == [["a", "b"]]


class TestExport:

    def test_to_dot(self, mutual_unit):
        dot = _graph(mutual_unit).to_dot(title="mutual")
        assert dot.startswith("digraph CallGraph {")
        assert '"f" -> "g"' in dot
        assert '"main" -> "printf"' in dot
        assert "color=red" in dot

    def test_to_dict(self, mutual_unit):
        data = _graph(mutual_unit).to_dict()
        names = [n["name"] for n in data["nodes"]]
        assert names == ["f", "g", "main", "printf"]
        assert data["unresolved_calls"][0]["callee"] == "mystery"
