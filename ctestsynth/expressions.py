"""
ctestsynth.expressions
======================

PEG grammar and AST for the C guard-expression subset that branch
conditions are written in.

Supported operators, loosest binding first::

    ||
    &&
    ==  !=
    <  <=  >  >=
    +  -
    *  /  %
    !  -  +        (unary)

All binary levels are left-associative.  Operands are identifiers (member
and index paths such as ``p->len`` or ``buf[0]`` are kept as one flat
name), integer literals (decimal, hex, octal, with ``u``/``l`` suffixes),
floating literals, character literals and ``true``/``false``.

Anything outside the subset (casts, calls, assignment, bitwise
operators) is a parse failure and raises
:class:`~ctestsynth.errors.ExpressionLoweringError`.  Callers rely on that:
a condition is either lowered completely or not at all.

Public API
----------
    GUARD_GRAMMAR        - the compiled parsimonious grammar
    parse_expression     - text -> Expr (cached)
    Expr, Name, IntConst, RealConst, BoolConst, Unary, Binary
    free_names           - identifiers referenced by an expression
    comparisons_on       - (op, constant) bounds a conjunction places on a name
    negate_text          - textual negation ``!(...)``
    conjoin_text         - textual conjunction of several conditions
"""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Set, Tuple, Union

from parsimonious.exceptions import ParseError, VisitationError
from parsimonious.grammar import Grammar
from parsimonious.nodes import Node, NodeVisitor

from .errors import ExpressionLoweringError


# ===================================================================
#  PART 1 — GRAMMAR
# ===================================================================

GUARD_GRAMMAR = Grammar(r'''
    expression     = _ or_expr _
    or_expr        = and_expr (_ or_op _ and_expr)*
    and_expr       = equality (_ and_op _ equality)*
    equality       = relational (_ eq_op _ relational)*
    relational     = additive (_ rel_op _ additive)*
    additive       = multiplicative (_ add_op _ multiplicative)*
    multiplicative = unary (_ mul_op _ unary)*
    unary          = (unary_op _ unary) / primary
    primary        = paren / number / char_lit / bool_lit / name
    paren          = "(" _ or_expr _ ")"
    number         = float_lit / int_lit

    or_op          = "||"
    and_op         = "&&"
    eq_op          = "==" / "!="
    rel_op         = "<=" / ">=" / "<" / ">"
    add_op         = "+" / "-"
    mul_op         = "*" / "/" / "%"
    unary_op       = "!" / "-" / "+"

    float_lit      = ~r"((\d+\.\d*|\.\d+)([eE][+-]?\d+)?|\d+[eE][+-]?\d+)[fFlL]?"
    int_lit        = ~r"(0[xX][0-9a-fA-F]+|\d+)[uUlL]*"
    char_lit       = ~r"'(\\.|[^\\'])'"
    bool_lit       = ~r"(true|false)\b"
    name           = ~r"[A-Za-z_][A-Za-z0-9_]*(\s*(\.|->)\s*[A-Za-z_][A-Za-z0-9_]*|\s*\[\s*[A-Za-z0-9_]+\s*\])*"
    _              = ~r"\s*"
''')


# ===================================================================
#  PART 2 — EXPRESSION AST
# ===================================================================

class Expr:
    """Base class of guard-expression nodes."""

    __slots__ = ()


@dataclass(frozen=True)
class Name(Expr):
    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class IntConst(Expr):
    value: int

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class RealConst(Expr):
    value: float

    def __str__(self) -> str:
        return repr(self.value)


@dataclass(frozen=True)
class BoolConst(Expr):
    value: bool

    def __str__(self) -> str:
        return "true" if self.value else "false"


@dataclass(frozen=True)
class Unary(Expr):
    op: str
    operand: Expr

    def __str__(self) -> str:
        return f"{self.op}{self.operand}"


@dataclass(frozen=True)
class Binary(Expr):
    op: str
    left: Expr
    right: Expr

    def __str__(self) -> str:
        return f"({self.left} {self.op} {self.right})"


RELATIONAL_OPS = frozenset({"==", "!=", "<", "<=", ">", ">="})
LOGICAL_OPS = frozenset({"&&", "||"})
ARITHMETIC_OPS = frozenset({"+", "-", "*", "/", "%"})

_FLIPPED = {"<": ">", "<=": ">=", ">": "<", ">=": "<=", "==": "==", "!=": "!="}


# ===================================================================
#  PART 3 — PARSE TREE -> AST
# ===================================================================

def _items(visited) -> list:
    """Children of an optional repetition; an empty match visits to a Node."""
    return visited if isinstance(visited, list) else []


def _text(visited) -> str:
    if isinstance(visited, Node):
        return visited.text
    if isinstance(visited, list):
        return "".join(_text(v) for v in visited)
    return str(visited)


def _parse_int(text: str) -> int:
    digits = text.rstrip("uUlL")
    if digits[:2] in ("0x", "0X"):
        return int(digits, 16)
    if len(digits) > 1 and digits.startswith("0"):
        return int(digits, 8)
    return int(digits)


class GuardExpressionBuilder(NodeVisitor):
    """Transforms the parsimonious parse tree into :class:`Expr` nodes."""

    unwrapped_exceptions = (ExpressionLoweringError,)

    def generic_visit(self, node, visited_children):
        return visited_children or node

    def _fold(self, first, rest) -> Expr:
        result = first
        for _, op, _, rhs in _items(rest):
            result = Binary(_text(op), result, rhs)
        return result

    def visit_expression(self, node, visited_children):
        _, expr, _ = visited_children
        return expr

    def visit_or_expr(self, node, visited_children):
        return self._fold(*visited_children)

    visit_and_expr = visit_or_expr
    visit_equality = visit_or_expr
    visit_relational = visit_or_expr
    visit_additive = visit_or_expr
    visit_multiplicative = visit_or_expr

    def visit_unary(self, node, visited_children):
        (inner,) = visited_children
        if isinstance(inner, list):
            op, _, operand = inner
            op = _text(op)
            if op == "-" and isinstance(operand, IntConst):
                return IntConst(-operand.value)
            if op == "-" and isinstance(operand, RealConst):
                return RealConst(-operand.value)
            if op == "+":
                return operand
            return Unary(op, operand)
        return inner

    def visit_primary(self, node, visited_children):
        return visited_children[0]

    def visit_number(self, node, visited_children):
        return visited_children[0]

    def visit_paren(self, node, visited_children):
        _, _, expr, _, _ = visited_children
        return expr

    def visit_float_lit(self, node, visited_children):
        return RealConst(float(node.text.rstrip("fFlL")))

    def visit_int_lit(self, node, visited_children):
        try:
            return IntConst(_parse_int(node.text))
        except ValueError as exc:
            raise ExpressionLoweringError(node.full_text, str(exc)) from exc

    def visit_char_lit(self, node, visited_children):
        body = node.text[1:-1]
        if body.startswith("\\"):
            escapes = {"n": 10, "t": 9, "r": 13, "0": 0, "\\": 92, "'": 39,
                       '"': 34, "a": 7, "b": 8, "f": 12, "v": 11}
            if body[1] not in escapes:
                raise ExpressionLoweringError(node.full_text,
                                              f"unknown escape {body!r}")
            return IntConst(escapes[body[1]])
        return IntConst(ord(body))

    def visit_bool_lit(self, node, visited_children):
        return BoolConst(node.text == "true")

    def visit_name(self, node, visited_children):
        return Name(re.sub(r"\s+", "", node.text))


@functools.lru_cache(maxsize=4096)
def parse_expression(text: str) -> Expr:
    """Parse a guard expression.

    Raises
    ------
    ExpressionLoweringError
        If *text* is empty or not in the supported subset.
    """
    if text is None or not text.strip():
        raise ExpressionLoweringError(text or "", "empty expression")
    try:
        tree = GUARD_GRAMMAR.parse(text)
    except ParseError as exc:
        raise ExpressionLoweringError(text, f"syntax error at column {exc.pos + 1}") from exc
    try:
        return GuardExpressionBuilder().visit(tree)
    except VisitationError as exc:
        raise ExpressionLoweringError(text, str(exc)) from exc


# ===================================================================
#  PART 4 — QUERIES
# ===================================================================

def walk_expr(expr: Expr) -> Iterator[Expr]:
    """Pre-order traversal without recursion."""
    stack: List[Expr] = [expr]
    while stack:
        node = stack.pop()
        yield node
        if isinstance(node, Binary):
            stack.append(node.right)
            stack.append(node.left)
        elif isinstance(node, Unary):
            stack.append(node.operand)


def free_names(expr: Expr) -> List[str]:
    """Identifiers in order of first appearance."""
    seen: Set[str] = set()
    names: List[str] = []
    for node in walk_expr(expr):
        if isinstance(node, Name) and node.name not in seen:
            seen.add(node.name)
            names.append(node.name)
    return names


def constant_value(expr: Expr) -> Optional[Union[int, float]]:
    if isinstance(expr, IntConst):
        return expr.value
    if isinstance(expr, RealConst):
        return expr.value
    if isinstance(expr, BoolConst):
        return int(expr.value)
    return None


def conjuncts(expr: Expr) -> List[Expr]:
    """Split a top-level ``&&`` chain into its operands."""
    out: List[Expr] = []
    stack = [expr]
    while stack:
        node = stack.pop()
        if isinstance(node, Binary) and node.op == "&&":
            stack.append(node.right)
            stack.append(node.left)
        else:
            out.append(node)
    return out


def comparisons_on(expr: Expr, name: str) -> List[Tuple[str, Union[int, float]]]:
    """Bounds that must hold on *name* whenever *expr* is true.

    Only comparisons between *name* and a constant that sit in the
    top-level conjunction are reported; anything under ``||`` or ``!`` is
    not a guaranteed bound.  ``5 < x`` is returned as ``(">", 5)``.
    """
    found: List[Tuple[str, Union[int, float]]] = []
    for term in conjuncts(expr):
        if not isinstance(term, Binary) or term.op not in RELATIONAL_OPS:
            continue
        lhs, rhs, op = term.left, term.right, term.op
        if isinstance(rhs, Name) and rhs.name == name:
            lhs, rhs, op = rhs, lhs, _FLIPPED[op]
        if not (isinstance(lhs, Name) and lhs.name == name):
            continue
        value = constant_value(rhs)
        if value is not None:
            found.append((op, value))
    return found


def negate_text(text: str) -> str:
    """Textual negation.  No simplification is attempted."""
    return f"!({text})"


def conjoin_text(conditions: Sequence[str]) -> str:
    parts = [c for c in conditions if c and c.strip()]
    if not parts:
        return "1"
    if len(parts) == 1:
        return parts[0]
    return " && ".join(f"({c})" for c in parts)
