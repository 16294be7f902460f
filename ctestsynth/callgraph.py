"""
ctestsynth.callgraph
====================

Builds the call graph of a translation unit from an
:class:`~ctestsynth.entities.EntityModel` and the function bodies supplied
by the AST provider.

The call graph is a directed graph where:
- **Nodes** are functions, keyed by name.  Functions defined in the unit
  are ``FUNCTION`` nodes; functions that are only declared (library or
  other-unit functions) are ``EXTERNAL`` nodes.
- **Edges** are call sites, annotated with file and line.

Construction is two-pass.  The first pass collects callee names from each
body; the second pass links edges once every function is known, so the
order in which functions are declared does not matter.  A call to a name
the model does not know at all is recorded in
:attr:`CallGraph.unresolved_calls` and not linked.

Recursion
---------
Cycles are legal.  :meth:`CallGraph.find_cycles` reports them with an
iterative white/gray/black depth-first search, and
:meth:`CallGraph.strongly_connected_components` uses an iterative Tarjan
walk; neither recurses, so deep or cyclic graphs cannot exhaust the
stack.  A function is recursive iff it lies on a cycle: a self-edge or a
strongly connected component with more than one member.

Public API
----------
    CallGraphNode       - a node in the call graph
    CallGraphEdge       - a directed edge (call site)
    UnresolvedCall      - a call to a name with no declaration
    CallGraph           - the whole-unit call graph
    CallGraphBuilder    - two-pass builder
    build_call_graph    - convenience wrapper
    find_cycles         - generic iterative colouring cycle finder
    tarjan_scc          - generic iterative Tarjan SCC
"""

from __future__ import annotations

import enum
import logging
from collections import OrderedDict, defaultdict, deque
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    Hashable,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    TypeVar,
)

from .ast_model import AstNode, NodeKind as AstKind, walk
from .entities import EntityModel, Function
from .errors import FunctionNotFoundError

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


# ===========================================================================
# GENERIC GRAPH ALGORITHMS
# ===========================================================================

_WHITE, _GRAY, _BLACK = 0, 1, 2


def _canonical_cycle(cycle: Sequence[K]) -> Tuple[K, ...]:
    """Rotate so the smallest member (by ``str``) comes first."""
    pivot = min(range(len(cycle)), key=lambda i: str(cycle[i]))
    return tuple(cycle[pivot:]) + tuple(cycle[:pivot])


def find_cycles(nodes: Iterable[K],
                successors: Callable[[K], Iterable[K]]) -> List[List[K]]:
    """Cycles closed by back edges of an iterative colouring DFS.

    Every back edge ``u -> v`` (``v`` gray) yields the cycle formed by the
    DFS path from ``v`` to ``u``.  Each cycle is reported once, rotated to
    start at its smallest member.
    """
    color: Dict[K, int] = {}
    found: List[List[K]] = []
    seen: Set[Tuple[K, ...]] = set()

    for start in nodes:
        if color.get(start, _WHITE) != _WHITE:
            continue
        color[start] = _GRAY
        path: List[K] = [start]
        stack = [(start, iter(successors(start)))]
        while stack:
            node, it = stack[-1]
            advanced = False
            for succ in it:
                state = color.get(succ, _WHITE)
                if state == _WHITE:
                    color[succ] = _GRAY
                    path.append(succ)
                    stack.append((succ, iter(successors(succ))))
                    advanced = True
                    break
                if state == _GRAY:
                    cycle = _canonical_cycle(path[path.index(succ):])
                    if cycle not in seen:
                        seen.add(cycle)
                        found.append(list(cycle))
            if not advanced:
                stack.pop()
                path.pop()
                color[node] = _BLACK
    return found


def tarjan_scc(nodes: Iterable[K],
               successors: Callable[[K], Iterable[K]]) -> List[List[K]]:
    """Strongly connected components, callees before callers."""
    index: Dict[K, int] = {}
    low: Dict[K, int] = {}
    on_stack: Set[K] = set()
    scc_stack: List[K] = []
    result: List[List[K]] = []
    counter = 0

    for root in nodes:
        if root in index:
            continue
        index[root] = low[root] = counter
        counter += 1
        scc_stack.append(root)
        on_stack.add(root)
        work = [(root, iter(successors(root)))]
        while work:
            node, it = work[-1]
            pushed = False
            for succ in it:
                if succ not in index:
                    index[succ] = low[succ] = counter
                    counter += 1
                    scc_stack.append(succ)
                    on_stack.add(succ)
                    work.append((succ, iter(successors(succ))))
                    pushed = True
                    break
                if succ in on_stack:
                    low[node] = min(low[node], index[succ])
            if pushed:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] == index[node]:
                component: List[K] = []
                while True:
                    member = scc_stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                result.append(component)
    return result


# ---------------------------------------------------------------------------
# Resolution and node kinds
# ---------------------------------------------------------------------------

class CallResolutionKind(enum.Enum):
    """How a call edge was resolved."""

    DIRECT     = "direct"
    UNRESOLVED = "unresolved"


class NodeKind(enum.Enum):
    """Classification of a call-graph node."""

    FUNCTION = "function"      # Defined in the unit
    EXTERNAL = "external"      # Declared only


# ---------------------------------------------------------------------------
# CallGraphNode / CallGraphEdge
# ---------------------------------------------------------------------------

class CallGraphNode:
    """A node in the call graph.

    Attributes
    ----------
    name : str
        Function name; unique within the graph.
    kind : NodeKind
        Defined or external.
    function : Function or None
        The entity record.
    out_edges, in_edges : list[CallGraphEdge]
        Call sites leaving / reaching this function.
    depth : int or None
        Distance from the root in a depth-limited subgraph.
    is_recursive : bool
        True iff the node lies on a call cycle.
    """

    __slots__ = ("name", "kind", "function", "out_edges", "in_edges",
                 "depth", "is_recursive")

    def __init__(self, name: str, kind: NodeKind = NodeKind.FUNCTION,
                 function: Optional[Function] = None) -> None:
        self.name = name
        self.kind = kind
        self.function = function
        self.out_edges: List[CallGraphEdge] = []
        self.in_edges: List[CallGraphEdge] = []
        self.depth: Optional[int] = None
        self.is_recursive = False

    @property
    def callees(self) -> List["CallGraphNode"]:
        """Distinct callees in first-call order."""
        out: List[CallGraphNode] = []
        for e in self.out_edges:
            if e.callee not in out:
                out.append(e.callee)
        return out

    @property
    def callers(self) -> List["CallGraphNode"]:
        out: List[CallGraphNode] = []
        for e in self.in_edges:
            if e.caller not in out:
                out.append(e.caller)
        return out

    @property
    def is_leaf(self) -> bool:
        return len(self.out_edges) == 0

    @property
    def is_root(self) -> bool:
        return len(self.in_edges) == 0

    @property
    def calls_itself(self) -> bool:
        return any(e.callee is self for e in self.out_edges)

    def __repr__(self) -> str:
        return f"CallGraphNode({self.name!r}, kind={self.kind.value})"

    def __hash__(self) -> int:
        return hash(self.name)

    def __eq__(self, other) -> bool:
        if isinstance(other, CallGraphNode):
            return self.name == other.name
        return NotImplemented


class CallGraphEdge:
    """A call site."""

    __slots__ = ("caller", "callee", "file", "line", "resolution")

    def __init__(self, caller: CallGraphNode, callee: CallGraphNode,
                 file: str = "", line: int = 0,
                 resolution: CallResolutionKind = CallResolutionKind.DIRECT) -> None:
        self.caller = caller
        self.callee = callee
        self.file = file
        self.line = line
        self.resolution = resolution

    def __repr__(self) -> str:
        loc = f" @ {self.file}:{self.line}" if self.line else ""
        return f"CallGraphEdge({self.caller.name} -> {self.callee.name}{loc})"

    def __hash__(self) -> int:
        return hash((self.caller.name, self.callee.name, self.file, self.line))

    def __eq__(self, other) -> bool:
        if isinstance(other, CallGraphEdge):
            return (self.caller.name, self.callee.name, self.file, self.line) == (
                other.caller.name, other.callee.name, other.file, other.line)
        return NotImplemented


@dataclass(frozen=True)
class UnresolvedCall:
    caller: str
    callee: str
    file: str = ""
    line: int = 0


# ---------------------------------------------------------------------------
# CallGraph
# ---------------------------------------------------------------------------

class CallGraph:
    """Call graph of one translation unit.

    Attributes
    ----------
    nodes : OrderedDict[str, CallGraphNode]
        All nodes, keyed by function name.
    edges : list[CallGraphEdge]
        All edges, in insertion order.
    unresolved_calls : list[UnresolvedCall]
        Calls to names with no declaration; never linked.
    root : str or None
        Set on depth-limited subgraphs.
    """

    def __init__(self) -> None:
        self.nodes: "OrderedDict[str, CallGraphNode]" = OrderedDict()
        self.edges: List[CallGraphEdge] = []
        self.unresolved_calls: List[UnresolvedCall] = []
        self.root: Optional[str] = None
        self._edge_keys: Set[Tuple[str, str, str, int]] = set()

    # ----- construction -----------------------------------------------------

    def get_or_create_node(self, name: str, kind: NodeKind = NodeKind.FUNCTION,
                           function: Optional[Function] = None) -> CallGraphNode:
        node = self.nodes.get(name)
        if node is None:
            node = CallGraphNode(name, kind, function)
            self.nodes[name] = node
        return node

    def add_edge(self, caller: CallGraphNode, callee: CallGraphNode,
                 file: str = "", line: int = 0,
                 resolution: CallResolutionKind = CallResolutionKind.DIRECT
                 ) -> Optional[CallGraphEdge]:
        """Link *caller* to *callee*; repeated call sites are not duplicated."""
        key = (caller.name, callee.name, file, line)
        if key in self._edge_keys:
            return None
        self._edge_keys.add(key)
        edge = CallGraphEdge(caller, callee, file, line, resolution)
        caller.out_edges.append(edge)
        callee.in_edges.append(edge)
        self.edges.append(edge)
        return edge

    # ----- queries ----------------------------------------------------------

    def __contains__(self, name: str) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def node(self, name: str) -> CallGraphNode:
        try:
            return self.nodes[name]
        except KeyError:
            raise FunctionNotFoundError(name) from None

    def callees(self, name: str) -> List[str]:
        return [n.name for n in self.node(name).callees]

    def callers(self, name: str) -> List[str]:
        return [n.name for n in self.node(name).callers]

    def _successor_names(self, name: str) -> List[str]:
        return [n.name for n in self.nodes[name].callees]

    @property
    def roots(self) -> List[CallGraphNode]:
        return [n for n in self.nodes.values()
                if n.is_root and n.kind == NodeKind.FUNCTION]

    @property
    def leaves(self) -> List[CallGraphNode]:
        return [n for n in self.nodes.values() if n.is_leaf]

    def transitive_callees(self, name: str) -> Set[str]:
        """Every function reachable from *name* (excluding itself unless recursive)."""
        start = self.node(name)
        visited: Set[str] = set()
        worklist: Deque[CallGraphNode] = deque(start.callees)
        while worklist:
            n = worklist.popleft()
            if n.name in visited:
                continue
            visited.add(n.name)
            worklist.extend(n.callees)
        return visited

    def transitive_callers(self, name: str) -> Set[str]:
        start = self.node(name)
        visited: Set[str] = set()
        worklist: Deque[CallGraphNode] = deque(start.callers)
        while worklist:
            n = worklist.popleft()
            if n.name in visited:
                continue
            visited.add(n.name)
            worklist.extend(n.callers)
        return visited

    def find_cycles(self) -> List[List[str]]:
        return find_cycles(list(self.nodes), self._successor_names)

    def strongly_connected_components(self) -> List[List[str]]:
        return tarjan_scc(list(self.nodes), self._successor_names)

    def recursive_functions(self) -> List[str]:
        return [n.name for n in self.nodes.values() if n.is_recursive]

    def mark_recursive(self, update_functions: bool = True) -> None:
        """Set ``is_recursive`` on nodes and, optionally, their Function records."""
        recursive: Set[str] = set()
        for scc in self.strongly_connected_components():
            if len(scc) > 1:
                recursive.update(scc)
        for node in self.nodes.values():
            node.is_recursive = node.name in recursive or node.calls_itself
            if update_functions and node.function is not None:
                node.function.is_recursive = node.is_recursive

    def topological_order(self) -> List[str]:
        """Callees before callers; members of a cycle are adjacent."""
        return [name for scc in self.strongly_connected_components() for name in scc]

    def subgraph(self, root: str, max_depth: int = -1) -> "CallGraph":
        """Functions reachable from *root* within *max_depth* calls.

        ``max_depth < 0`` means unlimited.  Every node of the result
        carries its BFS ``depth`` from *root*.
        """
        start = self.node(root)
        sub = CallGraph()
        sub.root = root
        depth: Dict[str, int] = {start.name: 0}
        order: List[CallGraphNode] = [start]
        queue: Deque[CallGraphNode] = deque([start])
        while queue:
            n = queue.popleft()
            d = depth[n.name]
            if 0 <= max_depth <= d:
                continue
            for callee in n.callees:
                if callee.name not in depth:
                    depth[callee.name] = d + 1
                    order.append(callee)
                    queue.append(callee)

        for n in order:
            copy = sub.get_or_create_node(n.name, n.kind, n.function)
            copy.depth = depth[n.name]
        for n in order:
            if 0 <= max_depth <= depth[n.name]:
                continue
            for e in n.out_edges:
                if e.callee.name in sub.nodes:
                    sub.add_edge(sub.nodes[n.name], sub.nodes[e.callee.name],
                                 e.file, e.line, e.resolution)
        sub.unresolved_calls = [u for u in self.unresolved_calls if u.caller in sub.nodes]
        sub.mark_recursive(update_functions=False)
        return sub

    def call_paths(self, root: str, max_depth: int = -1,
                   max_paths: int = 10000) -> List[List[str]]:
        """Acyclic call chains from *root* to a leaf (or the depth limit).

        A chain stops when every callee of its last function is already on
        the chain, so recursion cannot make it infinite.
        """
        self.node(root)
        paths: List[List[str]] = []
        stack: List[List[str]] = [[root]]
        while stack and len(paths) < max_paths:
            path = stack.pop()
            last = path[-1]
            if 0 <= max_depth <= len(path) - 1:
                paths.append(path)
                continue
            nxt = [c for c in self._successor_names(last) if c not in path]
            if not nxt:
                paths.append(path)
                continue
            for callee in reversed(nxt):
                stack.append(path + [callee])
        return paths

    # ----- statistics -------------------------------------------------------

    def statistics(self) -> Dict[str, Any]:
        """Return a dict with summary statistics."""
        n_func = sum(1 for n in self.nodes.values() if n.kind == NodeKind.FUNCTION)
        n_ext = sum(1 for n in self.nodes.values() if n.kind == NodeKind.EXTERNAL)
        sccs = self.strongly_connected_components()
        return {
            "functions": n_func,
            "external_functions": n_ext,
            "total_nodes": len(self.nodes),
            "total_edges": len(self.edges),
            "unresolved_calls": len(self.unresolved_calls),
            "sccs": len(sccs),
            "recursive_sccs": sum(1 for scc in sccs if len(scc) > 1),
            "self_recursive_functions": sum(1 for n in self.nodes.values() if n.calls_itself),
            "recursive_functions": len(self.recursive_functions()),
            "root_functions": len(self.roots),
            "leaf_functions": len(self.leaves),
            "max_depth": max((n.depth for n in self.nodes.values()
                              if n.depth is not None), default=None),
        }

    # ----- serialisation ----------------------------------------------------

    def to_dot(self, title: Optional[str] = None) -> str:
        """Return a Graphviz DOT representation."""
        lines = ["digraph CallGraph {"]
        lines.append("  rankdir=TB;")
        if title:
            lines.append(f'  label="{title}";')
        lines.append('  node [shape=box, fontname="Helvetica", fontsize=10];')

        kind_attrs = {
            NodeKind.FUNCTION: 'style=filled, fillcolor="#ddeeff"',
            NodeKind.EXTERNAL: 'style=filled, fillcolor="#fff3cd", shape=ellipse',
        }
        for n in self.nodes.values():
            attrs = kind_attrs.get(n.kind, "")
            if n.is_recursive:
                attrs += ", penwidth=2, color=red"
            escaped = n.name.replace('"', '\\"')
            lines.append(f'  "{escaped}" [label="{escaped}", {attrs}];')

        for e in self.edges:
            label = f' [label="{e.line}"]' if e.line else ""
            lines.append(f'  "{e.caller.name}" -> "{e.callee.name}"{label};')
        lines.append("}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.root,
            "nodes": [
                {"name": n.name, "kind": n.kind.value, "depth": n.depth,
                 "is_recursive": n.is_recursive, "callees": self._successor_names(n.name)}
                for n in self.nodes.values()
            ],
            "edges": [
                {"caller": e.caller.name, "callee": e.callee.name,
                 "file": e.file, "line": e.line}
                for e in self.edges
            ],
            "unresolved_calls": [
                {"caller": u.caller, "callee": u.callee, "file": u.file, "line": u.line}
                for u in self.unresolved_calls
            ],
        }

    def __repr__(self) -> str:
        return f"CallGraph(nodes={len(self.nodes)}, edges={len(self.edges)})"


# ===========================================================================
# BUILDER
# ===========================================================================

@dataclass(frozen=True)
class _CallSite:
    callee: str
    file: str
    line: int


class CallGraphBuilder:
    """Two-pass call-graph construction.

    Parameters
    ----------
    model : EntityModel
        Declares the known functions.
    include_external : bool
        Create ``EXTERNAL`` nodes for declared-only callees.  When false,
        calls to them are recorded as unresolved instead.
    """

    def __init__(self, model: EntityModel, include_external: bool = True) -> None:
        self.model = model
        self.include_external = include_external

    def build(self, bodies: Optional[Mapping[str, AstNode]] = None) -> CallGraph:
        bodies = bodies or {}
        sites = self._collect_call_sites(bodies)
        graph = CallGraph()
        self._create_function_nodes(graph)
        self._link(graph, sites)
        graph.mark_recursive()
        logger.debug("call graph: %r, %d unresolved", graph, len(graph.unresolved_calls))
        return graph

    # Pass 1: callee names only; nothing is resolved yet.
    def _collect_call_sites(self, bodies: Mapping[str, AstNode]) -> Dict[str, List[_CallSite]]:
        sites: Dict[str, List[_CallSite]] = defaultdict(list)
        for fn in self.model.defined_functions():
            body = bodies.get(fn.name)
            if body is not None:
                for node in walk(body):
                    if node.kind is AstKind.CALL and node.callee:
                        sites[fn.name].append(
                            _CallSite(node.callee, node.file or fn.file, node.line))
            else:
                for callee in fn.called_functions:
                    sites[fn.name].append(_CallSite(callee, fn.file, 0))
        return sites

    def _create_function_nodes(self, graph: CallGraph) -> None:
        for fn in self.model.defined_functions():
            graph.get_or_create_node(fn.name, NodeKind.FUNCTION, fn)

    # Pass 2: every defined function has a node, so forward references link.
    def _link(self, graph: CallGraph, sites: Dict[str, List[_CallSite]]) -> None:
        for caller_name, calls in sites.items():
            caller = graph.nodes[caller_name]
            for site in calls:
                callee = graph.nodes.get(site.callee)
                if callee is None:
                    fn = self.model.find(site.callee)
                    if isinstance(fn, Function) and self.include_external:
                        callee = graph.get_or_create_node(site.callee, NodeKind.EXTERNAL, fn)
                if callee is None:
                    graph.unresolved_calls.append(
                        UnresolvedCall(caller_name, site.callee, site.file, site.line))
                    continue
                graph.add_edge(caller, callee, site.file, site.line)


def build_call_graph(model: EntityModel,
                     bodies: Optional[Mapping[str, AstNode]] = None,
                     include_external: bool = True) -> CallGraph:
    """Build the call graph of *model*."""
    return CallGraphBuilder(model, include_external).build(bodies)


def callgraph_summary(cg: CallGraph) -> str:
    """Human-readable multi-line summary."""
    stats = cg.statistics()
    lines = [f"Call graph: {stats['functions']} functions, "
             f"{stats['total_edges']} call edges"]
    if stats["external_functions"]:
        lines.append(f"  external functions: {stats['external_functions']}")
    if stats["unresolved_calls"]:
        names = sorted({u.callee for u in cg.unresolved_calls})
        lines.append(f"  unresolved calls: {', '.join(names)}")
    for cycle in cg.find_cycles():
        lines.append("  cycle: " + " -> ".join(cycle + [cycle[0]]))
    for n in cg.nodes.values():
        callees = ", ".join(c.name for c in n.callees) or "-"
        depth = f" [depth {n.depth}]" if n.depth is not None else ""
        lines.append(f"  {n.name}{depth}: {callees}")
    return "\n".join(lines)
