"""
ctestsynth.ctrlflow_graph
=========================

Builds an intraprocedural Control Flow Graph (CFG) for one function from
the statement tree supplied by the AST provider, then derives the
*branches* that coverage-guided synthesis has to reach.

Each statement becomes one CFG node.  Decision statements (``if``,
``while``, ``do``, ``for``, ``switch`` and the ternary operator) become a
*decision* node with one synthetic *arm* node per outcome; an arm is the
CFG image of a :class:`Branch`.  Edges carry control-flow semantics
(fall-through, branch-true, branch-false, back-edge, switch-case, ...).

Public API
----------
    EdgeKind             - classification of a CFG edge
    CFGNode / CFGEdge    - graph elements
    CFG                  - the control flow graph for one function
    CFGBuilder           - builds a CFG and its branch table from a body
    Branch               - one outcome of one decision
    ControlFlowPath      - a bounded decision-outcome sequence
    FunctionComplexity   - complexity metrics
    BranchAnalyzer       - CFG + branches + paths + metrics in one call
    find_paths_covering_branches
    ParameterDirection / ParameterClassifier / PointerConstHeuristic

Implementation notes
--------------------
* Branch ids are sequential in source order.  Every two-way decision
  emits its true branch and then its false branch; a ``switch`` emits one
  branch per ``case`` label and then one for ``default`` (explicit or
  implied).
* The false-branch condition is the textual negation ``!(guard)`` of the
  guard.  It is never simplified.
* ``else if`` chains are walked with a loop, so a long chain does not
  deepen the Python stack.
* Path enumeration is an explicit-stack DFS.  Re-entering a loop header
  already on the current path leaves the loop through its exit node, so
  every loop body is unrolled at most once.
* ``goto`` is resolved after the whole body is built; an unknown label
  sends control to the exit node.
"""

from __future__ import annotations

import enum
import logging
import math
import re
from dataclasses import dataclass, field
from typing import (
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    Set,
    Tuple,
    runtime_checkable,
)

from .ast_model import (
    DECISION_KINDS,
    LOOP_KINDS,
    STATEMENT_KINDS,
    AstNode,
    NodeKind,
    walk,
)
from .entities import Function
from .errors import EntityNotFoundError
from .expressions import conjoin_text, negate_text

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Edge kinds
# ---------------------------------------------------------------------------


class EdgeKind(enum.Enum):
    """Classification of a CFG edge."""

    FALL_THROUGH = "fall-through"
    BRANCH_TRUE = "branch-true"
    BRANCH_FALSE = "branch-false"
    BACK_EDGE = "back-edge"
    BREAK = "break"
    CONTINUE = "continue"
    RETURN = "return"
    GOTO = "goto"
    SWITCH_CASE = "switch-case"
    SWITCH_DEFAULT = "switch-default"


# ---------------------------------------------------------------------------
# CFGNode / CFGEdge
# ---------------------------------------------------------------------------

class CFGNode:
    """A node in the CFG.

    Attributes
    ----------
    id : int
        Numeric identifier, unique within its CFG.
    kind : str
        ``"entry"``, ``"exit"``, ``"statement"``, ``"decision"``,
        ``"arm"``, ``"join"``, ``"loop-exit"``, ``"label"``, ...
    ast : AstNode or None
        The statement this node stands for; ``None`` for synthetic nodes.
    branch_id : int or None
        Set on arm nodes only.
    loop_exit : CFGNode or None
        Set on loop headers: where control goes when the loop ends.
    """

    __slots__ = ("id", "kind", "ast", "line", "text", "branch_id",
                 "loop_exit", "successors", "predecessors")

    def __init__(self, node_id: int, kind: str, ast: Optional[AstNode] = None,
                 line: int = 0, text: str = "") -> None:
        self.id = node_id
        self.kind = kind
        self.ast = ast
        self.line = line
        self.text = text
        self.branch_id: Optional[int] = None
        self.loop_exit: Optional[CFGNode] = None
        self.successors: List[CFGEdge] = []
        self.predecessors: List[CFGEdge] = []

    @property
    def is_synthetic(self) -> bool:
        return self.ast is None

    def label(self) -> str:
        if self.text:
            return f"L{self.line}: {self.text}" if self.line else self.text
        return f"[{self.kind}]"

    def __repr__(self) -> str:
        return f"CFGNode(id={self.id}, kind={self.kind!r}, line={self.line})"

    def __hash__(self) -> int:
        return self.id

    def __eq__(self, other) -> bool:
        if isinstance(other, CFGNode):
            return self.id == other.id
        return NotImplemented


class CFGEdge:
    """A directed edge in the CFG.

    ``label`` carries the case constant on ``SWITCH_CASE`` edges.
    """

    __slots__ = ("src", "dst", "kind", "label")

    def __init__(self, src: CFGNode, dst: CFGNode,
                 kind: EdgeKind = EdgeKind.FALL_THROUGH,
                 label: Optional[str] = None) -> None:
        self.src = src
        self.dst = dst
        self.kind = kind
        self.label = label

    def __repr__(self) -> str:
        return f"CFGEdge(N{self.src.id} -> N{self.dst.id}, kind={self.kind.value!r})"

    def __hash__(self) -> int:
        return hash((self.src.id, self.dst.id, self.kind))

    def __eq__(self, other) -> bool:
        if isinstance(other, CFGEdge):
            return (self.src.id, self.dst.id, self.kind) == (
                other.src.id, other.dst.id, other.kind)
        return NotImplemented


# ---------------------------------------------------------------------------
# CFG
# ---------------------------------------------------------------------------

class CFG:
    """Control flow graph for a single function."""

    def __init__(self, function_name: str) -> None:
        self.function_name = function_name
        self.nodes: List[CFGNode] = []
        self.edges: List[CFGEdge] = []
        self.entry = self.new_node("entry")
        self.exit = self.new_node("exit")

    def new_node(self, kind: str, ast: Optional[AstNode] = None,
                 line: int = 0, text: str = "") -> CFGNode:
        node = CFGNode(len(self.nodes), kind, ast, line, text)
        self.nodes.append(node)
        return node

    def add_edge(self, src: CFGNode, dst: CFGNode,
                 kind: EdgeKind = EdgeKind.FALL_THROUGH,
                 label: Optional[str] = None) -> CFGEdge:
        e = CFGEdge(src, dst, kind=kind, label=label)
        self.edges.append(e)
        src.successors.append(e)
        dst.predecessors.append(e)
        return e

    def successors_of(self, node: CFGNode) -> List[CFGNode]:
        return [e.dst for e in node.successors]

    def predecessors_of(self, node: CFGNode) -> List[CFGNode]:
        return [e.src for e in node.predecessors]

    def reachable_from(self, start: Optional[CFGNode] = None) -> Set[CFGNode]:
        """Return the set of nodes reachable from *start* (entry by default)."""
        visited: Set[CFGNode] = set()
        worklist = [start or self.entry]
        while worklist:
            n = worklist.pop()
            if n in visited:
                continue
            visited.add(n)
            for e in n.successors:
                worklist.append(e.dst)
        return visited

    def unreachable_nodes(self) -> List[CFGNode]:
        """Statement and decision nodes that no path from entry reaches."""
        reachable = self.reachable_from(self.entry)
        return [n for n in self.nodes if n not in reachable and not n.is_synthetic]

    def decision_nodes(self) -> List[CFGNode]:
        return [n for n in self.nodes if n.kind == "decision"]

    def back_edges(self) -> List[CFGEdge]:
        return [e for e in self.edges if e.kind is EdgeKind.BACK_EDGE]

    def to_dot(self, title: Optional[str] = None) -> str:
        """Return a Graphviz DOT representation of this CFG."""
        lines = ["digraph CFG {"]
        lines.append(f'  label="{title or self.function_name}";')
        lines.append("  node [shape=box, fontname=monospace, fontsize=10];")
        for n in self.nodes:
            lbl = n.label().replace('"', '\\"').replace("\n", "\\n")
            extra = ""
            if n.kind == "entry":
                extra = ', style=filled, fillcolor="#ccffcc"'
            elif n.kind == "exit":
                extra = ', style=filled, fillcolor="#ffcccc"'
            elif n.kind == "decision":
                extra = ", shape=diamond"
            elif n.kind == "arm":
                extra = ", shape=point"
            lines.append(f'  N{n.id} [label="{lbl}"{extra}];')
        for e in self.edges:
            style = ""
            elabel = e.kind.value
            if e.label:
                elabel += f": {e.label}"
            if e.kind == EdgeKind.BRANCH_TRUE:
                style = ", color=green, fontcolor=green"
            elif e.kind == EdgeKind.BRANCH_FALSE:
                style = ", color=red, fontcolor=red"
            elif e.kind == EdgeKind.BACK_EDGE:
                style = ", style=dashed, color=blue, fontcolor=blue"
            elif e.kind in (EdgeKind.BREAK, EdgeKind.CONTINUE, EdgeKind.GOTO):
                style = ", style=dotted"
            lines.append(f'  N{e.src.id} -> N{e.dst.id} [label="{elabel}"{style}];')
        lines.append("}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (f"CFG(function={self.function_name!r}, nodes={len(self.nodes)}, "
                f"edges={len(self.edges)})")


# ---------------------------------------------------------------------------
# Branches and paths
# ---------------------------------------------------------------------------

@dataclass
class Branch:
    """One outcome of one decision.

    ``condition`` is the source text that holds when the outcome is taken.
    ``is_feasible`` and ``is_covered`` are updated by synthesis.
    """

    branch_id: int
    function: str
    kind: NodeKind
    line: int
    condition: str
    decision_line: int
    is_true_edge: bool = True
    case_value: Optional[str] = None
    is_feasible: bool = True
    is_covered: bool = False
    is_reachable: bool = True
    decision_node: int = -1
    arm_node: int = -1

    @property
    def is_default(self) -> bool:
        return self.kind is NodeKind.DEFAULT

    def to_dict(self) -> Dict[str, object]:
        return {
            "branch_id": self.branch_id,
            "function": self.function,
            "kind": self.kind.value,
            "line": self.line,
            "condition": self.condition,
            "decision_line": self.decision_line,
            "is_true_edge": self.is_true_edge,
            "case_value": self.case_value,
            "is_feasible": self.is_feasible,
            "is_covered": self.is_covered,
            "is_reachable": self.is_reachable,
        }


@dataclass
class ControlFlowPath:
    path_id: int
    branch_ids: Tuple[int, ...]
    condition: str
    is_feasible: bool = True
    statements: Tuple[int, ...] = ()

    def __contains__(self, branch_id: int) -> bool:
        return branch_id in self.branch_ids


@dataclass(frozen=True)
class FunctionComplexity:
    cyclomatic: int
    decision_points: int
    nesting_depth: int
    statement_count: int
    line_count: int
    branch_count: int
    maintainability_index: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "cyclomatic": self.cyclomatic,
            "decision_points": self.decision_points,
            "nesting_depth": self.nesting_depth,
            "statement_count": self.statement_count,
            "line_count": self.line_count,
            "branch_count": self.branch_count,
            "maintainability_index": round(self.maintainability_index, 2),
        }


# ===========================================================================
# CFG BUILDER
# ===========================================================================

@dataclass(frozen=True)
class _Targets:
    break_to: Optional[CFGNode] = None
    continue_to: Optional[CFGNode] = None
    switch: Optional["_SwitchContext"] = None


@dataclass
class _SwitchContext:
    decision: CFGNode
    branches: Dict[int, Branch] = field(default_factory=dict)   # id(ast) -> Branch
    default: Optional[Branch] = None


def _guard(stmt: AstNode) -> str:
    cond = (stmt.condition or "").strip()
    return cond or "1"


def _first_line(stmt: Optional[AstNode], fallback: int) -> int:
    if stmt is None:
        return fallback
    for node in walk(stmt):
        if node.line:
            return node.line
    return fallback


class CFGBuilder:
    """Builds a :class:`CFG` and its :class:`Branch` table.

    Usage::

        cfg, branches = CFGBuilder("clamp").build(body)
    """

    def __init__(self, function_name: str) -> None:
        self.function_name = function_name

    def build(self, body: AstNode) -> Tuple[CFG, List[Branch]]:
        self.cfg = CFG(self.function_name)
        self.branches: List[Branch] = []
        self._labels: Dict[str, CFGNode] = {}
        self._gotos: List[Tuple[CFGNode, str]] = []

        end = self._process(body, self.cfg.entry, _Targets())
        if end is not None:
            self.cfg.add_edge(end, self.cfg.exit)
        self._resolve_gotos()

        reachable = self.cfg.reachable_from(self.cfg.entry)
        for br in self.branches:
            br.is_reachable = self.cfg.nodes[br.decision_node] in reachable
        logger.debug("%r with %d branches", self.cfg, len(self.branches))
        return self.cfg, self.branches

    # ----- helpers ----------------------------------------------------------

    def _node(self, kind: str, stmt: Optional[AstNode] = None,
              text: Optional[str] = None) -> CFGNode:
        line = stmt.line if stmt is not None else 0
        if text is None and stmt is not None:
            text = stmt.text or stmt.condition or stmt.callee or stmt.name or stmt.kind.value
        return self.cfg.new_node(kind, stmt, line, text or "")

    def _link(self, src: Optional[CFGNode], dst: CFGNode,
              kind: EdgeKind = EdgeKind.FALL_THROUGH) -> None:
        if src is not None:
            self.cfg.add_edge(src, dst, kind)

    def _new_branch(self, decision: CFGNode, stmt: AstNode, condition: str,
                    is_true_edge: bool, arm_stmt: Optional[AstNode],
                    kind: Optional[NodeKind] = None,
                    case_value: Optional[str] = None) -> Branch:
        br = Branch(
            branch_id=len(self.branches),
            function=self.function_name,
            kind=kind or stmt.kind,
            line=_first_line(arm_stmt, stmt.line),
            condition=condition,
            decision_line=stmt.line,
            is_true_edge=is_true_edge,
            case_value=case_value,
            decision_node=decision.id,
        )
        self.branches.append(br)
        return br

    def _arm(self, decision: CFGNode, branch: Branch, kind: EdgeKind,
             label: Optional[str] = None) -> CFGNode:
        arm = self.cfg.new_node("arm", None, branch.line, branch.condition)
        arm.branch_id = branch.branch_id
        branch.arm_node = arm.id
        self.cfg.add_edge(decision, arm, kind, label)
        return arm

    def _two_way(self, stmt: AstNode, current: Optional[CFGNode],
                 true_stmt: Optional[AstNode], false_stmt: Optional[AstNode]
                 ) -> Tuple[CFGNode, CFGNode, CFGNode]:
        """Decision node plus its true and false arms."""
        decision = self._node("decision", stmt, _guard(stmt))
        self._link(current, decision)
        guard = _guard(stmt)
        t = self._new_branch(decision, stmt, guard, True, true_stmt)
        f = self._new_branch(decision, stmt, negate_text(guard), False, false_stmt)
        return (decision,
                self._arm(decision, t, EdgeKind.BRANCH_TRUE),
                self._arm(decision, f, EdgeKind.BRANCH_FALSE))

    # ----- dispatch ---------------------------------------------------------

    def _process(self, stmt: AstNode, current: Optional[CFGNode],
                 targets: _Targets) -> Optional[CFGNode]:
        """Add *stmt* after *current*; return where control continues.

        ``None`` means control does not fall out of *stmt*.
        """
        kind = stmt.kind
        if kind is NodeKind.COMPOUND:
            for child in stmt.children:
                current = self._process(child, current, targets)
            return current
        if kind is NodeKind.IF:
            return self._process_if(stmt, current, targets)
        if kind is NodeKind.WHILE:
            return self._process_while(stmt, current, targets)
        if kind is NodeKind.DO_WHILE:
            return self._process_do_while(stmt, current, targets)
        if kind is NodeKind.FOR:
            return self._process_for(stmt, current, targets)
        if kind is NodeKind.SWITCH:
            return self._process_switch(stmt, current, targets)
        if kind in (NodeKind.CASE, NodeKind.DEFAULT):
            return self._process_case_label(stmt, current, targets)
        if kind is NodeKind.LABEL:
            node = self._node("label", stmt, f"{stmt.name}:")
            self._link(current, node)
            self._labels[stmt.name or ""] = node
            current = node
            for child in stmt.children:
                current = self._process(child, current, targets)
            return current

        current = self._ternaries(stmt, current)
        node = self._node("statement", stmt)
        self._link(current, node)
        if kind is NodeKind.RETURN:
            self.cfg.add_edge(node, self.cfg.exit, EdgeKind.RETURN)
            return None
        if kind is NodeKind.BREAK:
            self._jump(node, targets.break_to, EdgeKind.BREAK, stmt)
            return None
        if kind is NodeKind.CONTINUE:
            self._jump(node, targets.continue_to, EdgeKind.CONTINUE, stmt)
            return None
        if kind is NodeKind.GOTO:
            self._gotos.append((node, stmt.name or ""))
            return None
        return node

    def _jump(self, node: CFGNode, target: Optional[CFGNode], kind: EdgeKind,
              stmt: AstNode) -> None:
        if target is None:
            logger.warning("%s: %s outside loop/switch at line %d",
                           self.function_name, stmt.kind.value, stmt.line)
            target = self.cfg.exit
        self.cfg.add_edge(node, target, kind)

    def _ternaries(self, stmt: AstNode, current: Optional[CFGNode]) -> Optional[CFGNode]:
        """Ternaries inside an expression statement, as decisions before it."""
        for expr in walk(stmt):
            if expr.kind is not NodeKind.TERNARY:
                continue
            then_expr = expr.children[0] if expr.children else None
            else_expr = expr.children[1] if len(expr.children) > 1 else None
            _, t_arm, f_arm = self._two_way(expr, current, then_expr, else_expr)
            join = self.cfg.new_node("join", None, expr.line)
            self._link(t_arm, join)
            self._link(f_arm, join)
            current = join
        return current

    # ----- structured statements --------------------------------------------

    def _process_if(self, stmt: AstNode, current: Optional[CFGNode],
                    targets: _Targets) -> Optional[CFGNode]:
        join = self.cfg.new_node("join", None, stmt.line)
        node = stmt
        while True:
            then_stmt = node.children[0] if node.children else None
            else_stmt = node.children[1] if len(node.children) > 1 else None
            _, t_arm, f_arm = self._two_way(node, current, then_stmt, else_stmt)
            t_end = self._process(then_stmt, t_arm, targets) if then_stmt else t_arm
            self._link(t_end, join)
            if else_stmt is not None and else_stmt.kind is NodeKind.IF:
                current = f_arm
                node = else_stmt
                continue
            f_end = self._process(else_stmt, f_arm, targets) if else_stmt else f_arm
            self._link(f_end, join)
            break
        return join if join.predecessors else None

    def _process_while(self, stmt: AstNode, current: Optional[CFGNode],
                       targets: _Targets) -> Optional[CFGNode]:
        body = stmt.children[0] if stmt.children else None
        exit_node = self.cfg.new_node("loop-exit", None, stmt.line)
        header, t_arm, f_arm = self._two_way(stmt, current, body, None)
        header.loop_exit = exit_node
        inner = _Targets(exit_node, header, targets.switch)
        end = self._process(body, t_arm, inner) if body else t_arm
        self._link(end, header, EdgeKind.BACK_EDGE)
        self._link(f_arm, exit_node)
        return exit_node

    def _process_do_while(self, stmt: AstNode, current: Optional[CFGNode],
                          targets: _Targets) -> Optional[CFGNode]:
        body = stmt.children[0] if stmt.children else None
        top = self.cfg.new_node("loop-entry", None, stmt.line)
        exit_node = self.cfg.new_node("loop-exit", None, stmt.line)
        top.loop_exit = exit_node
        self._link(current, top)
        # The guard is evaluated after the body, so its decision node is
        # created once the body is in place; continue jumps straight to it.
        cond_anchor = self.cfg.new_node("join", None, stmt.line)
        inner = _Targets(exit_node, cond_anchor, targets.switch)
        end = self._process(body, top, inner) if body else top
        self._link(end, cond_anchor)
        _, t_arm, f_arm = self._two_way(stmt, cond_anchor, body, None)
        self._link(t_arm, top, EdgeKind.BACK_EDGE)
        self._link(f_arm, exit_node)
        return exit_node

    def _process_for(self, stmt: AstNode, current: Optional[CFGNode],
                     targets: _Targets) -> Optional[CFGNode]:
        body = stmt.children[0] if stmt.children else None
        exit_node = self.cfg.new_node("loop-exit", None, stmt.line)
        header, t_arm, f_arm = self._two_way(stmt, current, body, None)
        header.loop_exit = exit_node
        step = self.cfg.new_node("for-step", None, stmt.line)
        inner = _Targets(exit_node, step, targets.switch)
        end = self._process(body, t_arm, inner) if body else t_arm
        self._link(end, step)
        self._link(step, header, EdgeKind.BACK_EDGE)
        self._link(f_arm, exit_node)
        return exit_node

    def _process_switch(self, stmt: AstNode, current: Optional[CFGNode],
                        targets: _Targets) -> Optional[CFGNode]:
        subject = (stmt.condition or stmt.text or "0").strip()
        decision = self._node("decision", stmt, subject)
        self._link(current, decision)
        exit_node = self.cfg.new_node("switch-exit", None, stmt.line)
        ctx = _SwitchContext(decision)

        labels = self._case_labels(stmt)
        values: List[str] = []
        explicit_default: Optional[AstNode] = None
        for label in labels:
            if label.kind is NodeKind.DEFAULT:
                explicit_default = label
                continue
            value = (label.value or label.text or "").strip()
            values.append(value)
            ctx.branches[id(label)] = self._new_branch(
                decision, stmt, f"{subject} == {value}", True, label,
                kind=NodeKind.CASE, case_value=value)
        if values:
            default_cond = negate_text(" || ".join(f"{subject} == {v}" for v in values))
        else:
            default_cond = "1"
        ctx.default = self._new_branch(decision, stmt, default_cond, False,
                                       explicit_default, kind=NodeKind.DEFAULT)

        inner = _Targets(exit_node, targets.continue_to, ctx)
        end: Optional[CFGNode] = None
        for child in stmt.children:
            end = self._process(child, end, inner)
        self._link(end, exit_node)
        if explicit_default is None:
            arm = self._arm(decision, ctx.default, EdgeKind.SWITCH_DEFAULT)
            self._link(arm, exit_node)
        return exit_node if exit_node.predecessors else None

    @staticmethod
    def _case_labels(switch: AstNode) -> List[AstNode]:
        """Case/default labels of *switch*, not of switches nested in it."""
        found: List[AstNode] = []
        stack = list(reversed(switch.children))
        while stack:
            node = stack.pop()
            if node.kind in (NodeKind.CASE, NodeKind.DEFAULT):
                found.append(node)
            if node.kind is NodeKind.SWITCH:
                continue
            stack.extend(reversed(node.children))
        return found

    def _process_case_label(self, stmt: AstNode, current: Optional[CFGNode],
                            targets: _Targets) -> Optional[CFGNode]:
        ctx = targets.switch
        label = self._node("label", stmt,
                           "default:" if stmt.kind is NodeKind.DEFAULT
                           else f"case {stmt.value or stmt.text}:")
        self._link(current, label)          # fall-through from the previous case
        if ctx is None:
            logger.warning("%s: %s label outside switch at line %d",
                           self.function_name, stmt.kind.value, stmt.line)
        else:
            if stmt.kind is NodeKind.DEFAULT:
                arm = self._arm(ctx.decision, ctx.default, EdgeKind.SWITCH_DEFAULT)
            else:
                br = ctx.branches[id(stmt)]
                arm = self._arm(ctx.decision, br, EdgeKind.SWITCH_CASE, br.case_value)
            self._link(arm, label)
        current = label
        for child in stmt.children:
            current = self._process(child, current, targets)
        return current

    def _resolve_gotos(self) -> None:
        for node, name in self._gotos:
            target = self._labels.get(name)
            if target is None:
                logger.warning("%s: goto to unknown label %r", self.function_name, name)
                target = self.cfg.exit
            self.cfg.add_edge(node, target, EdgeKind.GOTO)


# ===========================================================================
# PATHS
# ===========================================================================

def enumerate_paths(cfg: CFG, branches: Sequence[Branch],
                    max_paths: int = 256) -> List[ControlFlowPath]:
    """Entry-to-exit decision sequences, true outcomes first.

    At most *max_paths* distinct branch sequences are returned.
    """
    by_id = {b.branch_id: b for b in branches}
    seen: Set[Tuple[int, ...]] = set()
    paths: List[ControlFlowPath] = []

    def record(branch_ids: Tuple[int, ...], lines: Tuple[int, ...]) -> None:
        if branch_ids in seen:
            return
        seen.add(branch_ids)
        condition = conjoin_text([by_id[b].condition for b in branch_ids])
        paths.append(ControlFlowPath(len(paths), branch_ids, condition,
                                     statements=lines))

    stack: List[Tuple[CFGNode, Tuple[int, ...], Tuple[int, ...], frozenset]] = [
        (cfg.entry, (), (), frozenset({cfg.entry.id}))
    ]
    while stack and len(paths) < max_paths:
        node, branch_ids, lines, on_path = stack.pop()
        if node is cfg.exit or not node.successors:
            record(branch_ids, lines)
            continue
        for edge in reversed(node.successors):
            dst = edge.dst
            if dst.id in on_path:
                if dst.loop_exit is None or dst.loop_exit.id in on_path:
                    record(branch_ids, lines)
                    continue
                dst = dst.loop_exit
            nb = branch_ids + (dst.branch_id,) if dst.branch_id is not None else branch_ids
            nl = lines + (dst.line,) if not dst.is_synthetic and dst.line else lines
            stack.append((dst, nb, nl, on_path | {dst.id}))
    if stack:
        logger.debug("%s: path enumeration stopped at %d paths",
                     cfg.function_name, max_paths)
    return paths


# ===========================================================================
# PARAMETER DIRECTION
# ===========================================================================

class ParameterDirection(enum.Enum):
    INPUT  = "input"
    OUTPUT = "output"
    IN_OUT = "in-out"


@runtime_checkable
class ParameterClassifier(Protocol):
    """Strategy deciding whether a parameter carries data in, out, or both."""

    def classify(self, function: Function,
                 body: Optional[AstNode]) -> Dict[str, ParameterDirection]:
        ...


class PointerConstHeuristic:
    """Best-effort direction guess from pointer constness.

    A ``const`` pointer or a non-pointer is ``INPUT``.  A non-const pointer
    is ``IN_OUT``, or ``OUTPUT`` when its first mention in the body is a
    store through it (``*p =``, ``p[i] =``, ``p->f =``) that does not also
    read it, and it never appears in a condition.  This is not an alias
    analysis and will misclassify pointers that escape.
    """

    def classify(self, function: Function,
                 body: Optional[AstNode]) -> Dict[str, ParameterDirection]:
        out: Dict[str, ParameterDirection] = {}
        texts = self._statement_texts(body)
        conditions = " ".join(n.condition or "" for n in walk(body)) if body else ""
        for p in function.parameters:
            if not (p.is_pointer or p.is_array) or p.is_const:
                out[p.name] = ParameterDirection.INPUT
            elif body is not None and self._written_first(p.name, texts, conditions):
                out[p.name] = ParameterDirection.OUTPUT
            else:
                out[p.name] = ParameterDirection.IN_OUT
        return out

    @staticmethod
    def _statement_texts(body: Optional[AstNode]) -> List[str]:
        if body is None:
            return []
        return [n.text for n in walk(body)
                if n.kind in STATEMENT_KINDS and n.kind is not NodeKind.COMPOUND and n.text]

    @staticmethod
    def _written_first(name: str, texts: Iterable[str], conditions: str) -> bool:
        mention = re.compile(rf"\b{re.escape(name)}\b")
        store = re.compile(
            rf"(\*\s*{re.escape(name)}\b|\b{re.escape(name)}\s*\[[^\]]*\]"
            rf"|\b{re.escape(name)}\s*->\s*\w+)\s*=(?!=)")
        if mention.search(conditions):
            return False
        for text in texts:
            if not mention.search(text):
                continue
            m = store.search(text)
            if m is None:
                return False
            rest = text[:m.start()] + text[m.end():]
            return not mention.search(rest)
        return False


# ===========================================================================
# BRANCH ANALYZER
# ===========================================================================

@dataclass
class BranchAnalysisResult:
    function: str
    cfg: CFG
    branches: List[Branch]
    paths: List[ControlFlowPath]
    complexity: FunctionComplexity
    parameter_directions: Dict[str, ParameterDirection] = field(default_factory=dict)

    def branch(self, branch_id: int) -> Branch:
        for b in self.branches:
            if b.branch_id == branch_id:
                return b
        raise EntityNotFoundError("branch", f"{self.function}#{branch_id}")

    @property
    def reachable_branches(self) -> List[Branch]:
        return [b for b in self.branches if b.is_reachable]

    def paths_through(self, branch_id: int) -> List[ControlFlowPath]:
        return [p for p in self.paths if branch_id in p.branch_ids]


def _nesting_depth(body: AstNode) -> int:
    nesting = DECISION_KINDS | LOOP_KINDS | {NodeKind.SWITCH}
    deepest = 0
    stack = [(body, 0)]
    while stack:
        node, depth = stack.pop()
        if node.kind in nesting and node.kind is not NodeKind.CASE:
            depth += 1
            deepest = max(deepest, depth)
        for child in node.children:
            stack.append((child, depth))
    return deepest


def _maintainability(cyclomatic: int, lines: int) -> float:
    """Normalised maintainability index without the Halstead term, 0..100."""
    raw = 171.0 - 0.23 * cyclomatic - 16.2 * math.log(max(lines, 1))
    return max(0.0, raw * 100.0 / 171.0)


class BranchAnalyzer:
    """CFG, branch table, bounded paths and complexity for one function."""

    def __init__(self, classifier: Optional[ParameterClassifier] = None,
                 max_paths: int = 256) -> None:
        self.classifier = classifier or PointerConstHeuristic()
        self.max_paths = max_paths

    def analyze(self, function: Function, body: AstNode) -> BranchAnalysisResult:
        cfg, branches = CFGBuilder(function.name).build(body)
        paths = enumerate_paths(cfg, branches, self.max_paths)
        complexity = self.complexity(function, body, len(branches))
        directions = self.classifier.classify(function, body)
        logger.debug("%s: %d branches, %d paths, cyclomatic %d", function.name,
                     len(branches), len(paths), complexity.cyclomatic)
        return BranchAnalysisResult(function.name, cfg, branches, paths,
                                    complexity, directions)

    @staticmethod
    def complexity(function: Function, body: AstNode,
                   branch_count: int = 0) -> FunctionComplexity:
        decisions = sum(1 for n in walk(body) if n.kind in DECISION_KINDS)
        statements = sum(1 for n in walk(body)
                         if n.kind in STATEMENT_KINDS and n.kind is not NodeKind.COMPOUND)
        body_lines = [n.line for n in walk(body) if n.line]
        if function.end_line and function.line:
            line_count = function.end_line - function.line + 1
        elif body_lines:
            line_count = max(body_lines) - min(body_lines) + 1
        else:
            line_count = 1
        cyclomatic = 1 + decisions
        return FunctionComplexity(
            cyclomatic=cyclomatic,
            decision_points=decisions,
            nesting_depth=_nesting_depth(body),
            statement_count=statements,
            line_count=line_count,
            branch_count=branch_count,
            maintainability_index=_maintainability(cyclomatic, line_count),
        )


def find_paths_covering_branches(result: BranchAnalysisResult,
                                 branch_ids: Iterable[int]) -> List[ControlFlowPath]:
    """A small set of paths that together take every requested branch.

    Greedy, in path order: for each requested branch not yet taken, the
    first path through it is selected.  Branches on no enumerated path are
    skipped.
    """
    wanted = list(dict.fromkeys(branch_ids))
    for bid in wanted:
        result.branch(bid)
    chosen: List[ControlFlowPath] = []
    taken: Set[int] = set()
    for bid in wanted:
        if bid in taken:
            continue
        for path in result.paths:
            if bid in path.branch_ids:
                chosen.append(path)
                taken.update(path.branch_ids)
                break
        else:
            logger.debug("%s: branch %d lies on no enumerated path", result.function, bid)
    return chosen


def cfg_summary(result: BranchAnalysisResult) -> str:
    """Human-readable multi-line summary."""
    c = result.complexity
    lines = [f"{result.function}: cyclomatic {c.cyclomatic}, "
             f"{len(result.branches)} branches, {len(result.paths)} paths"]
    for b in result.branches:
        flag = "" if b.is_reachable else " (unreachable)"
        lines.append(f"  #{b.branch_id} L{b.decision_line} {b.kind.value}: {b.condition}{flag}")
    return "\n".join(lines)
