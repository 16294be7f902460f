"""
ctestsynth.ast_model
====================

The boundary to the C front end.

This package does not parse C.  An *AST provider* hands it, per function,
a tree of :class:`AstNode` statements whose conditions are kept as literal
source text, together with an :class:`~ctestsynth.entities.EntityModel`
describing the declarations.  Loading is the only asynchronous seam: a
provider returns a :class:`concurrent.futures.Future` and everything
downstream is synchronous.

Parent links are not stored on nodes.  :class:`NodeTable` assigns each node
an integer id and records the parent's id, so walking *up* is a table
lookup and the tree itself only owns its children.

JSON translation-unit format
----------------------------
:class:`JsonAstProvider` reads a document shaped like::

    {
      "file": "clamp.c",
      "functions": [
        {"name": "clamp", "return_type": "int", "line": 1,
         "parameters": [{"name": "x", "type": "int"}],
         "body": {"kind": "compound", "children": [
            {"kind": "if", "condition": "x < 0", "line": 2,
             "children": [{"kind": "return", "text": "0", "line": 2}]},
            ...
         ]}}
      ],
      "structs": [...], "unions": [...], "enums": [...],
      "typedefs": [...], "macros": [...], "conditionals": [...],
      "includes": [...], "variables": [...]
    }

Children by node kind
---------------------
``if``              ``[then]`` or ``[then, else]``; ``condition`` is the guard
``while``/``for``   ``[body]``; ``condition`` is the guard (empty for ``for(;;)``)
``do``              ``[body]``; ``condition`` is the trailing guard
``switch``          case labels and statements in order; ``condition`` is the subject
``case``            ``value`` is the label; children (if any) follow the label
``default``         children (if any) follow the label
``ternary``         ``[then_expr, else_expr]``; ``condition`` is the guard
``call``            ``callee`` names the function; children are arguments
``declaration``     ``name``, ``type_name``, optional initialiser ``text``
``goto``/``label``  ``name`` is the label
"""

from __future__ import annotations

import enum
import json
import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    Dict,
    Iterator,
    List,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

from .base_types import LP64, TargetABI
from .entities import (
    ConditionalDirective,
    EntityModel,
    EnumDefinition,
    Function,
    IncludeDirective,
    MacroDefinition,
    StructDefinition,
    TypedefDefinition,
    UnionDefinition,
    Variable,
)
from .errors import ModelError, SourceFileNotFoundError

logger = logging.getLogger(__name__)


class NodeKind(enum.Enum):
    COMPOUND    = "compound"
    IF          = "if"
    WHILE       = "while"
    DO_WHILE    = "do"
    FOR         = "for"
    SWITCH      = "switch"
    CASE        = "case"
    DEFAULT     = "default"
    BREAK       = "break"
    CONTINUE    = "continue"
    RETURN      = "return"
    GOTO        = "goto"
    LABEL       = "label"
    CALL        = "call"
    DECLARATION = "declaration"
    EXPRESSION  = "expression"
    TERNARY     = "ternary"


DECISION_KINDS = frozenset({
    NodeKind.IF, NodeKind.WHILE, NodeKind.DO_WHILE, NodeKind.FOR,
    NodeKind.CASE, NodeKind.TERNARY,
})

LOOP_KINDS = frozenset({NodeKind.WHILE, NodeKind.DO_WHILE, NodeKind.FOR})

STATEMENT_KINDS = frozenset({
    NodeKind.COMPOUND, NodeKind.IF, NodeKind.WHILE, NodeKind.DO_WHILE,
    NodeKind.FOR, NodeKind.SWITCH, NodeKind.CASE, NodeKind.DEFAULT,
    NodeKind.BREAK, NodeKind.CONTINUE, NodeKind.RETURN, NodeKind.GOTO,
    NodeKind.LABEL, NodeKind.DECLARATION, NodeKind.EXPRESSION,
})


@dataclass(eq=False)
class AstNode:
    """One statement or expression node supplied by the front end."""

    kind: NodeKind
    text: str = ""
    children: List["AstNode"] = field(default_factory=list)
    line: int = 0
    file: str = ""
    condition: Optional[str] = None
    callee: Optional[str] = None
    name: Optional[str] = None
    type_name: Optional[str] = None
    value: Optional[str] = None
    node_id: int = -1

    @property
    def is_decision(self) -> bool:
        return self.kind in DECISION_KINDS

    @property
    def is_statement(self) -> bool:
        return self.kind in STATEMENT_KINDS

    def __repr__(self) -> str:
        detail = self.condition or self.callee or self.name or self.text
        return f"AstNode({self.kind.value}, {detail!r}, line={self.line})"

    @classmethod
    def from_dict(cls, data: Dict[str, Any], file: str = "") -> "AstNode":
        """Build a tree from nested dicts without recursion."""
        root = cls._node_from_dict(data, file)
        stack = [(root, data)]
        while stack:
            node, raw = stack.pop()
            for child_raw in raw.get("children", []):
                child = cls._node_from_dict(child_raw, node.file)
                node.children.append(child)
                stack.append((child, child_raw))
        return root

    @classmethod
    def _node_from_dict(cls, data: Dict[str, Any], file: str) -> "AstNode":
        try:
            kind = NodeKind(data["kind"])
        except (KeyError, ValueError) as exc:
            raise ModelError(f"bad AST node kind in {data!r}") from exc
        value = data.get("value")
        return cls(
            kind=kind,
            text=data.get("text", ""),
            line=data.get("line", 0),
            file=data.get("file", file),
            condition=data.get("condition"),
            callee=data.get("callee"),
            name=data.get("name"),
            type_name=data.get("type"),
            value=None if value is None else str(value),
        )


def walk(root: AstNode) -> Iterator[AstNode]:
    """Pre-order traversal, children left to right, without recursion."""
    stack = [root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))


def collect(root: AstNode, kind: NodeKind) -> List[AstNode]:
    return [n for n in walk(root) if n.kind is kind]


def decision_count(root: AstNode) -> int:
    return sum(1 for n in walk(root) if n.kind in DECISION_KINDS)


def called_names(root: AstNode) -> List[str]:
    """Callee names in source order, duplicates removed."""
    seen = set()
    out: List[str] = []
    for node in walk(root):
        if node.kind is NodeKind.CALL and node.callee and node.callee not in seen:
            seen.add(node.callee)
            out.append(node.callee)
    return out


class NodeTable:
    """Integer ids and non-owning parent links for one tree."""

    def __init__(self, root: AstNode) -> None:
        self.root = root
        self._nodes: List[AstNode] = []
        self._parents: List[Optional[int]] = []
        stack: List[tuple] = [(root, None)]
        while stack:
            node, parent_id = stack.pop()
            node.node_id = len(self._nodes)
            self._nodes.append(node)
            self._parents.append(parent_id)
            for child in reversed(node.children):
                stack.append((child, node.node_id))

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, node_id: int) -> AstNode:
        return self._nodes[node_id]

    def parent(self, node: AstNode) -> Optional[AstNode]:
        pid = self._parents[node.node_id]
        return None if pid is None else self._nodes[pid]

    def ancestors(self, node: AstNode) -> Iterator[AstNode]:
        current = self.parent(node)
        while current is not None:
            yield current
            current = self.parent(current)


# ---------------------------------------------------------------------------
# Translation units and providers
# ---------------------------------------------------------------------------

@dataclass
class TranslationUnit:
    path: str
    model: EntityModel
    bodies: Dict[str, AstNode] = field(default_factory=dict)


@runtime_checkable
class AstProvider(Protocol):
    """Anything that can turn a path into a :class:`TranslationUnit`.

    ``load`` must raise :class:`SourceFileNotFoundError` synchronously for
    a missing file, and otherwise return a future.
    """

    def load(self, path: Union[str, Path]) -> "Future[TranslationUnit]":
        ...


def _annotate_function(fn: Function, body: AstNode) -> None:
    """Fill body-derived fields that the provider did not supply."""
    if not fn.called_functions:
        fn.called_functions = called_names(body)
    if not fn.local_variables:
        fn.local_variables = [
            Variable(name=n.name, type_name=n.type_name or "int", file=n.file or fn.file,
                     line=n.line, scope=fn.name, initializer=n.text or None)
            for n in collect(body, NodeKind.DECLARATION) if n.name
        ]
    if not fn.return_sites:
        fn.return_sites = [n.line for n in collect(body, NodeKind.RETURN)]
    fn.cyclomatic_complexity = 1 + decision_count(body)
    fn.is_declaration_only = False


def translation_unit_from_dict(data: Dict[str, Any], path: str = "",
                               abi: TargetABI = LP64) -> TranslationUnit:
    """Populate an :class:`EntityModel` and body table from a JSON document."""
    file = data.get("file", path)
    model = EntityModel(abi=abi)
    bodies: Dict[str, AstNode] = {}

    for raw in data.get("typedefs", []):
        model.add_typedef(TypedefDefinition.from_dict(raw, file))
    for raw in data.get("enums", []):
        model.add_enum(EnumDefinition.from_dict(raw, file))
    for raw in data.get("structs", []):
        model.add_struct(StructDefinition.from_dict(raw, file))
    for raw in data.get("unions", []):
        model.add_union(UnionDefinition.from_dict(raw, file))
    for raw in data.get("macros", []):
        model.add_macro(MacroDefinition.from_dict(raw, file))
    for raw in data.get("conditionals", []):
        model.add_conditional(ConditionalDirective.from_dict(raw, file))
    for raw in data.get("includes", []):
        model.add_include(IncludeDirective.from_dict(raw, file))
    for raw in data.get("variables", []):
        model.add_variable(Variable.from_dict(raw, file=file))
    for raw in data.get("functions", []):
        fn = Function.from_dict(raw, file)
        if "body" in raw:
            body = AstNode.from_dict(raw["body"], fn.file)
            _annotate_function(fn, body)
            bodies[fn.name] = body
        model.add_function(fn)

    logger.debug("loaded %s: %r, %d bodies", path or file, model, len(bodies))
    return TranslationUnit(path=str(path or file), model=model, bodies=bodies)


class JsonAstProvider:
    """Reads translation units serialised as JSON on a worker thread."""

    def __init__(self, executor: Optional[Executor] = None,
                 abi: TargetABI = LP64) -> None:
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="ctestsynth-load")
        self.abi = abi

    def load(self, path: Union[str, Path]) -> "Future[TranslationUnit]":
        p = Path(path)
        if not p.is_file():
            raise SourceFileNotFoundError(str(path))
        return self._executor.submit(self._read, p)

    def _read(self, path: Path) -> TranslationUnit:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        return translation_unit_from_dict(data, str(path), self.abi)

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    def __enter__(self) -> "JsonAstProvider":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
