"""
ctestsynth/dependency_graph.py
══════════════════════════════

Type-level and include-level dependency graphs over an
:class:`~ctestsynth.entities.EntityModel`.

    ┌─────────────────────────────────────────────────────────────────┐
    │  Dependency Kinds                                               │
    │    CONTAINS  — aggregate holds a member of the target by value  │
    │    POINTS_TO — aggregate holds a pointer to the target          │
    │    ALIASES   — typedef names the target                         │
    │    INCLUDES  — source file includes the target file             │
    └─────────────────────────────────────────────────────────────────┘

A by-value ``CONTAINS`` cycle is a structural error (the aggregate would
have infinite size); the same cycle through a ``POINTS_TO`` edge is the
ordinary linked-structure idiom and is legal.

Node keys carry the tag (``"struct node"``, ``"union value"``,
``"enum colour"``) so that ``typedef struct node node;`` does not collapse
the alias onto the aggregate.  Typedef nodes are keyed by alias name.

Usage example::

    graph = TypeDependencyGraph.build(model, registry)
    for cycle in graph.invalid_self_containment():
        print(" -> ".join(cycle))
    print(graph.dependency_order())
"""

from __future__ import annotations

import logging
from collections import OrderedDict, defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Deque, Dict, List, Optional, Set

from .base_types import normalize_type
from .callgraph import find_cycles, tarjan_scc
from .entities import EntityKind, EntityModel
from .errors import TypedefCycleError

if TYPE_CHECKING:
    from .typedef_registry import TypedefRegistry

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 0 — DEPENDENCY KINDS
# ═══════════════════════════════════════════════════════════════════════════

class DepKind(Enum):
    """Classification of dependency edges."""

    CONTAINS  = auto()
    POINTS_TO = auto()
    ALIASES   = auto()
    INCLUDES  = auto()


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — NODE AND EDGE DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DepEdge:
    """
    A single dependency edge.

    Attributes
    ----------
    source : str
        Key of the depending node.
    target : str
        Key of the node depended upon.
    kind : DepKind
        The dependency classification.
    via : str
        Member name for aggregate edges, empty otherwise.
    line : int
        Source line of the member / directive, 0 if unknown.
    """
    source: str
    target: str
    kind: DepKind
    via: str = ""
    line: int = 0

    def __repr__(self) -> str:
        v = f" [{self.via}]" if self.via else ""
        return f"DepEdge({self.source}→{self.target} {self.kind.name}{v})"


@dataclass
class DepNode:
    """A node keyed by tagged type name or file path."""

    key: str
    name: str
    kind: str
    file: str = ""
    line: int = 0
    _in_edges: List[DepEdge] = field(default_factory=list, repr=False)
    _out_edges: List[DepEdge] = field(default_factory=list, repr=False)

    @staticmethod
    def _of_kind(edges: List[DepEdge], kind: Optional[DepKind]) -> List[DepEdge]:
        return [e for e in edges if kind is None or e.kind is kind]

    def in_edges(self, kind: Optional[DepKind] = None) -> List[DepEdge]:
        """Edges naming this node as their target."""
        return self._of_kind(self._in_edges, kind)

    def out_edges(self, kind: Optional[DepKind] = None) -> List[DepEdge]:
        return self._of_kind(self._out_edges, kind)

    def predecessors(self, kind: Optional[DepKind] = None) -> List[str]:
        return [e.source for e in self.in_edges(kind)]

    def successors(self, kind: Optional[DepKind] = None) -> List[str]:
        return [e.target for e in self.out_edges(kind)]

    def __hash__(self) -> int:
        return hash(self.key)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DepNode):
            return NotImplemented
        return self.key == other.key


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — GRAPH
# ═══════════════════════════════════════════════════════════════════════════

class DependencyGraph:
    """Directed graph of :class:`DepNode` keyed by string."""

    title = "Dependencies"

    def __init__(self) -> None:
        self._nodes: "OrderedDict[str, DepNode]" = OrderedDict()
        self._edges: List[DepEdge] = []

    @property
    def nodes(self) -> List[DepNode]:
        return list(self._nodes.values())

    @property
    def edges(self) -> List[DepEdge]:
        return list(self._edges)

    def __contains__(self, key: str) -> bool:
        return key in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def node(self, key: str) -> Optional[DepNode]:
        return self._nodes.get(key)

    def add_node(self, key: str, name: str, kind: str,
                 file: str = "", line: int = 0) -> DepNode:
        node = self._nodes.get(key)
        if node is None:
            node = DepNode(key, name, kind, file, line)
            self._nodes[key] = node
        return node

    def add_edge(self, source: str, target: str, kind: DepKind,
                 via: str = "", line: int = 0) -> DepEdge:
        edge = DepEdge(source, target, kind, via, line)
        self._nodes[source]._out_edges.append(edge)
        self._nodes[target]._in_edges.append(edge)
        self._edges.append(edge)
        return edge

    def edges_of_kind(self, kind: DepKind) -> List[DepEdge]:
        return [e for e in self._edges if e.kind is kind]

    def _successors(self, kinds: Optional[Set[DepKind]] = None):
        def succ(key: str) -> List[str]:
            return [e.target for e in self._nodes[key]._out_edges
                    if kinds is None or e.kind in kinds]
        return succ

    def cycles(self, kinds: Optional[Set[DepKind]] = None) -> List[List[str]]:
        """Cycles over edges of *kinds* (all kinds when ``None``)."""
        return find_cycles(list(self._nodes), self._successors(kinds))

    def dependency_order(self) -> List[str]:
        """Node keys with every dependency before its dependents."""
        return [key for scc in tarjan_scc(list(self._nodes), self._successors())
                for key in scc]

    def reachable_from(self, key: str, kinds: Optional[Set[DepKind]] = None) -> Set[str]:
        succ = self._successors(kinds)
        seen: Set[str] = set()
        worklist: Deque[str] = deque(succ(key))
        while worklist:
            k = worklist.popleft()
            if k in seen:
                continue
            seen.add(k)
            worklist.extend(succ(k))
        return seen

    # ── DOT export ────────────────────────────────────────────────────

    def to_dot(self, title: Optional[str] = None) -> str:
        title = title or self.title
        lines: List[str] = [
            f'digraph "{title}" {{',
            '  rankdir=LR;',
            '  node [shape=box, fontname="Courier", fontsize=10];',
            '  edge [fontname="Courier", fontsize=8];',
        ]
        _KIND_STYLE: Dict[DepKind, str] = {
            DepKind.CONTAINS:  'color="blue", style="bold"',
            DepKind.POINTS_TO: 'color="gray40", style="dashed"',
            DepKind.ALIASES:   'color="darkgreen", style="dotted"',
            DepKind.INCLUDES:  'color="black"',
        }
        for node in self._nodes.values():
            lines.append(f'  "{node.key}" [label="{node.key}"];')
        for edge in self._edges:
            lbl = edge.via or edge.kind.name
            lines.append(f'  "{edge.source}" -> "{edge.target}" '
                         f'[label="{lbl}", {_KIND_STYLE[edge.kind]}];')
        lines.append("}")
        return "\n".join(lines)

    def summary(self) -> Dict[str, Any]:
        kind_counts: Dict[str, int] = defaultdict(int)
        for e in self._edges:
            kind_counts[e.kind.name] += 1
        return {
            "nodes": len(self._nodes),
            "edges": len(self._edges),
            "edges_by_kind": dict(kind_counts),
            "cycles": len(self.cycles()),
        }

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(nodes={len(self._nodes)}, "
                f"edges={len(self._edges)})")


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — TYPE DEPENDENCIES
# ═══════════════════════════════════════════════════════════════════════════

def _tagged(kind: EntityKind, name: str) -> str:
    if kind is EntityKind.TYPEDEF:
        return name
    return f"{kind.value} {name}"


class TypeDependencyGraph(DependencyGraph):
    """Dependencies between struct, union, enum and typedef names."""

    title = "Type dependencies"

    @classmethod
    def build(cls, model: EntityModel,
              registry: Optional["TypedefRegistry"] = None) -> "TypeDependencyGraph":
        graph = cls()
        for agg in model.aggregates():
            graph.add_node(_tagged(agg.kind, agg.name), agg.name, agg.kind.value,
                           agg.file, agg.line)
        for enum_def in model.enums():
            graph.add_node(_tagged(EntityKind.ENUM, enum_def.name), enum_def.name,
                           "enum", enum_def.file, enum_def.line)
        for td in model.typedefs():
            graph.add_node(td.alias_name, td.alias_name, "typedef", td.file, td.line)

        for agg in model.aggregates():
            graph._add_member_edges(model, registry, agg)
        for td in model.typedefs():
            if td.is_function_pointer:
                continue
            target = graph._alias_target(model, td.original_type)
            if target is not None:
                graph.add_edge(td.alias_name, target, DepKind.ALIASES, line=td.line)
        logger.debug("type dependency graph: %r", graph)
        return graph

    def _alias_target(self, model: EntityModel, spelling: str) -> Optional[str]:
        core = " ".join(t for t in normalize_type(spelling).split()
                        if t != "*" and not t.startswith("["))
        if core in self._nodes:
            return core
        found = model._find_aggregate(core)
        if found is None:
            return None
        key = _tagged(found.kind, found.name)
        return key if key in self._nodes else None

    def _add_member_edges(self, model: EntityModel, registry, agg) -> None:
        source = _tagged(agg.kind, agg.name)
        for member in agg.members:
            try:
                resolved = model.resolve_type(member.type_name, registry)
                kind = DepKind.CONTAINS
                if resolved.is_pointer:
                    kind = DepKind.POINTS_TO
                    resolved = model.resolve_type(resolved.core, registry)
            except TypedefCycleError as exc:
                logger.debug("member %s.%s: %s", agg.name, member.name, exc)
                continue
            target_entity = resolved.aggregate or resolved.enum
            if target_entity is None:
                continue
            target = _tagged(target_entity.kind, target_entity.name)
            if target in self._nodes:
                self.add_edge(source, target, kind, member.name, member.line)

    # ── queries ───────────────────────────────────────────────────────

    def self_references(self) -> List[str]:
        """Aggregates with a member mentioning their own type."""
        out: List[str] = []
        for node in self._nodes.values():
            if any(e.target == node.key for e in node._out_edges
                   if e.kind in (DepKind.CONTAINS, DepKind.POINTS_TO)):
                out.append(node.name)
        return out

    def invalid_self_containment(self) -> List[List[str]]:
        """By-value containment cycles, as lists of aggregate names."""
        return [[self._nodes[k].name for k in cycle]
                for cycle in self.cycles({DepKind.CONTAINS})]

    def dependents_of(self, key: str) -> List[str]:
        node = self._nodes.get(key)
        return node.predecessors() if node is not None else []


# ═══════════════════════════════════════════════════════════════════════════
#  PART 4 — INCLUDE DEPENDENCIES
# ═══════════════════════════════════════════════════════════════════════════

class IncludeDependencyGraph(DependencyGraph):
    """File → included-file edges from ``#include`` directives."""

    title = "Includes"

    @classmethod
    def build(cls, model: EntityModel) -> "IncludeDependencyGraph":
        graph = cls()
        for inc in model.includes():
            graph.add_node(inc.file, inc.file, "file")
            graph.add_node(inc.path, inc.path, "system" if inc.is_system else "file")
            graph.add_edge(inc.file, inc.path, DepKind.INCLUDES, line=inc.line)
        return graph

    def transitive_includes(self, file: str) -> Set[str]:
        if file not in self._nodes:
            return set()
        return self.reachable_from(file)

    def system_headers(self) -> List[str]:
        return [n.key for n in self._nodes.values() if n.kind == "system"]
