"""
ctestsynth.smt_engine
=====================

Lowers branch conditions and variable constraints to Z3 and reads back
concrete C values.

Every solve builds its own ``z3.Context`` and ``z3.Solver``; nothing
solver-side is shared between calls, so independent requests may run on
different threads.

Sorts
-----
Each variable gets the sort of its resolved base type
(:func:`ctestsynth.base_types.sort_for_type`): integer types map to Int,
floating types to Real, ``_Bool`` to Bool.  Arithmetic is unbounded; the
width of a C type enters only through its range constraint.

Lowering rules
--------------
* ``/`` on integers truncates toward zero as in C, and ``%`` follows from
  it; every divisor is asserted non-zero.
* Mixed Int/Real operands are promoted to Real.
* A Bool operand of an arithmetic or relational operator becomes
  ``If(b, 1, 0)``; an integer operand of ``!``, ``&&`` or ``||`` becomes
  ``x != 0``.
* An expression the guard grammar cannot parse is not guessed at: the
  solve reports ``UNKNOWN`` with the reason.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from fractions import Fraction
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Union

import z3

from .base_types import SortKind, sort_for_type
from .constraints import VariableConstraint
from .errors import ExpressionLoweringError, SolverFailureError, TypedefCycleError
from .expressions import (
    ARITHMETIC_OPS,
    RELATIONAL_OPS,
    Binary,
    BoolConst,
    Expr,
    IntConst,
    Name,
    RealConst,
    Unary,
    free_names,
    parse_expression,
)

logger = logging.getLogger(__name__)

Number = Union[int, float]
ConstraintSet = Union[Mapping, Iterable[VariableConstraint]]

DEFAULT_TIMEOUT_MS = 5000


class SolveStatus(enum.Enum):
    SATISFIABLE   = "sat"
    UNSATISFIABLE = "unsat"
    UNKNOWN       = "unknown"


class SolvedAssignment(Mapping):
    """Read-only mapping of variable name to C literal text."""

    def __init__(self, values: Mapping) -> None:
        self._values: Dict[str, str] = dict(values)

    def __getitem__(self, name: str) -> str:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def as_number(self, name: str) -> Number:
        return literal_value(self._values[name])

    def to_dict(self) -> Dict[str, str]:
        return dict(self._values)

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}={v}" for k, v in self._values.items())
        return f"SolvedAssignment({inner})"


@dataclass(frozen=True)
class SolveResult:
    status: SolveStatus
    assignment: Optional[SolvedAssignment] = None
    reason: str = ""

    @property
    def is_sat(self) -> bool:
        return self.status is SolveStatus.SATISFIABLE

    @property
    def is_unsat(self) -> bool:
        return self.status is SolveStatus.UNSATISFIABLE


def literal_value(text: str) -> Number:
    """Parse a rendered literal back into a Python number."""
    t = text.strip()
    if t in ("true", "false"):
        return int(t == "true")
    try:
        return int(t, 0)
    except ValueError:
        return float(t)


# ---------------------------------------------------------------------------
# Lowering
# ---------------------------------------------------------------------------

class _Lowering:
    """Translates :class:`Expr` trees into terms of one Z3 context."""

    def __init__(self, ctx: z3.Context, sorts: Mapping,
                 symbols: Optional[Mapping] = None) -> None:
        self.ctx = ctx
        self.sorts = sorts
        self.symbols = symbols or {}
        self.variables: Dict[str, z3.ExprRef] = {}
        self.side_conditions: List[z3.BoolRef] = []

    # ----- atoms ------------------------------------------------------------

    def var(self, name: str) -> z3.ExprRef:
        v = self.variables.get(name)
        if v is None:
            sort = self.sorts.get(name, SortKind.INT)
            if sort is SortKind.REAL:
                v = z3.Real(name, self.ctx)
            elif sort is SortKind.BOOL:
                v = z3.Bool(name, self.ctx)
            else:
                v = z3.Int(name, self.ctx)
            self.variables[name] = v
        return v

    def const(self, value) -> z3.ExprRef:
        if isinstance(value, bool):
            return z3.BoolVal(value, self.ctx)
        if isinstance(value, int):
            return z3.IntVal(value, self.ctx)
        return z3.RealVal(value, self.ctx)

    # ----- coercions --------------------------------------------------------

    def as_bool(self, term: z3.ExprRef) -> z3.BoolRef:
        if z3.is_bool(term):
            return term
        zero = z3.RealVal(0, self.ctx) if z3.is_real(term) else z3.IntVal(0, self.ctx)
        return term != zero

    def as_num(self, term: z3.ExprRef) -> z3.ArithRef:
        if z3.is_bool(term):
            return z3.If(term, z3.IntVal(1, self.ctx), z3.IntVal(0, self.ctx))
        return term

    def _promote(self, a: z3.ArithRef, b: z3.ArithRef):
        if z3.is_real(a) and z3.is_int(b):
            b = z3.ToReal(b)
        elif z3.is_int(a) and z3.is_real(b):
            a = z3.ToReal(a)
        return a, b

    def _tdiv(self, a: z3.ArithRef, b: z3.ArithRef) -> z3.ArithRef:
        # Z3 integer division is Euclidean; C truncates toward zero.
        zero = z3.IntVal(0, self.ctx)
        return z3.If(a >= zero, a / b, -((-a) / b))

    # ----- expressions ------------------------------------------------------

    def lower(self, expr: Expr) -> z3.ExprRef:
        """Post-order translation with an explicit stack.

        Divisor guards raised while lowering *expr* are appended to
        :attr:`side_conditions`.  A guard from the right operand of ``&&``
        or ``||`` only applies when that operand is evaluated.
        """
        done: Dict[int, z3.ExprRef] = {}
        sides: Dict[int, List[z3.BoolRef]] = {}
        stack = [(expr, False)]
        while stack:
            node, expanded = stack.pop()
            if isinstance(node, Binary) and not expanded:
                stack.append((node, True))
                stack.append((node.right, False))
                stack.append((node.left, False))
                continue
            if isinstance(node, Unary) and not expanded:
                stack.append((node, True))
                stack.append((node.operand, False))
                continue
            done[id(node)] = self._lower_node(node, done, sides)
        self.side_conditions.extend(sides.get(id(expr), ()))
        return done[id(expr)]

    def _lower_node(self, node: Expr, done: Dict[int, z3.ExprRef],
                    sides: Dict[int, List[z3.BoolRef]]) -> z3.ExprRef:
        if isinstance(node, Name):
            if node.name in self.symbols:
                return self.const(self.symbols[node.name])
            return self.var(node.name)
        if isinstance(node, BoolConst):
            return z3.BoolVal(node.value, self.ctx)
        if isinstance(node, IntConst):
            return z3.IntVal(node.value, self.ctx)
        if isinstance(node, RealConst):
            return z3.RealVal(node.value, self.ctx)
        if isinstance(node, Unary):
            operand = done[id(node.operand)]
            sides[id(node)] = sides.get(id(node.operand), [])
            if node.op == "!":
                return z3.Not(self.as_bool(operand))
            if node.op == "-":
                return -self.as_num(operand)
            return self.as_num(operand)
        if isinstance(node, Binary):
            left = done[id(node.left)]
            own: List[z3.BoolRef] = []
            term = self._binary(node.op, left, done[id(node.right)], node, own)
            sides[id(node)] = (sides.get(id(node.left), [])
                               + self._scoped(node.op, left, sides.get(id(node.right), []))
                               + own)
            return term
        raise ExpressionLoweringError(str(node), f"unsupported node {type(node).__name__}")

    def _scoped(self, op: str, left: z3.ExprRef,
                guards: List[z3.BoolRef]) -> List[z3.BoolRef]:
        if not guards:
            return []
        guard = guards[0] if len(guards) == 1 else z3.And(guards)
        if op == "&&":
            return [z3.Implies(self.as_bool(left), guard)]
        if op == "||":
            return [z3.Implies(z3.Not(self.as_bool(left)), guard)]
        return list(guards)

    def _binary(self, op: str, left: z3.ExprRef, right: z3.ExprRef,
                node: Binary, guards: List[z3.BoolRef]) -> z3.ExprRef:
        if op == "&&":
            return z3.And(self.as_bool(left), self.as_bool(right))
        if op == "||":
            return z3.Or(self.as_bool(left), self.as_bool(right))
        if op in ("==", "!=") and z3.is_bool(left) and z3.is_bool(right):
            return left == right if op == "==" else left != right

        a, b = self._promote(self.as_num(left), self.as_num(right))
        if op in RELATIONAL_OPS:
            return {
                "==": lambda: a == b, "!=": lambda: a != b,
                "<": lambda: a < b, "<=": lambda: a <= b,
                ">": lambda: a > b, ">=": lambda: a >= b,
            }[op]()
        if op not in ARITHMETIC_OPS:
            raise ExpressionLoweringError(str(node), f"unsupported operator {op!r}")
        if op == "+":
            return a + b
        if op == "-":
            return a - b
        if op == "*":
            return a * b

        zero = z3.RealVal(0, self.ctx) if z3.is_real(b) else z3.IntVal(0, self.ctx)
        guards.append(b != zero)
        if z3.is_real(a):
            if op == "%":
                raise ExpressionLoweringError(str(node), "'%' on a floating operand")
            return a / b
        q = self._tdiv(a, b)
        return q if op == "/" else a - b * q

    # ----- constraints ------------------------------------------------------

    def constraint(self, c: VariableConstraint) -> z3.BoolRef:
        v = self.var(c.variable_name)
        num = self.as_num(v)
        if c.is_empty:
            return z3.BoolVal(False, self.ctx)
        parts: List[z3.BoolRef] = []
        if c.exact_value is not None:
            parts.append(num == self.const(c.exact_value))
        if c.allowed_values is not None:
            parts.append(z3.Or([num == self.const(x) for x in c.allowed_values]))
        if c.min_value is not None:
            parts.append(num >= self.const(c.min_value))
        if c.max_value is not None:
            parts.append(num <= self.const(c.max_value))
        if c.expression:
            parts.append(self.as_bool(self.lower(parse_expression(c.expression))))
        if not parts:
            return z3.BoolVal(True, self.ctx)
        return parts[0] if len(parts) == 1 else z3.And(parts)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def render_value(value: z3.ExprRef) -> str:
    """Render a Z3 model value as a C literal."""
    if z3.is_true(value):
        return "true"
    if z3.is_false(value):
        return "false"
    if z3.is_int_value(value):
        return str(value.as_long())
    if z3.is_rational_value(value):
        frac = Fraction(value.numerator_as_long(), value.denominator_as_long())
        if frac.denominator == 1:
            return f"{frac.numerator}.0"
        return repr(float(frac))
    if z3.is_algebraic_value(value):
        return repr(float(value.approx(17).as_fraction()))
    raise SolverFailureError(f"cannot render model value {value}")


def _iter_constraints(constraints: Optional[ConstraintSet]) -> List[VariableConstraint]:
    if constraints is None:
        return []
    if isinstance(constraints, Mapping):
        return list(constraints.values())
    return list(constraints)


# ===========================================================================
# ENGINE
# ===========================================================================

class SmtEngine:
    """Z3-backed satisfiability queries over C conditions.

    Parameters
    ----------
    timeout_ms : int
        Per-solve timeout; hitting it yields ``UNKNOWN``.
    registry : TypedefRegistry, optional
        Used to resolve typedef spellings in ``variable_types`` to sorts.
    symbols : mapping, optional
        Named constants (enumerators, numeric macros) substituted into
        expressions by value.
    """

    def __init__(self, timeout_ms: int = DEFAULT_TIMEOUT_MS, registry=None,
                 symbols: Optional[Mapping] = None) -> None:
        self.timeout_ms = int(timeout_ms)
        self.registry = registry
        self.symbols: Dict[str, Number] = dict(symbols or {})

    # ----- helpers ----------------------------------------------------------

    def sort_of(self, type_name: str) -> SortKind:
        if self.registry is not None:
            try:
                base = self.registry.resolve_base_type(type_name)
            except TypedefCycleError as exc:
                logger.warning("%s; treating %r as int", exc, type_name)
                return SortKind.INT
            if base is not None:
                return base.sort
        return sort_for_type(type_name)

    def _context(self, variable_types: Mapping):
        ctx = z3.Context()
        sorts = {name: self.sort_of(t) for name, t in variable_types.items()}
        lowering = _Lowering(ctx, sorts, self.symbols)
        solver = z3.Solver(ctx=ctx)
        solver.set("timeout", self.timeout_ms)
        for name in variable_types:
            lowering.var(name)
        return lowering, solver

    @staticmethod
    def _read_model(lowering: _Lowering, model: z3.ModelRef) -> SolvedAssignment:
        return SolvedAssignment({
            name: render_value(model.eval(v, model_completion=True))
            for name, v in lowering.variables.items()
        })

    # ----- queries ----------------------------------------------------------

    def solve(self, constraints: Optional[ConstraintSet],
              variable_types: Mapping,
              conditions: Sequence[str] = ()) -> SolveResult:
        """Find values satisfying every condition and constraint.

        Infeasibility is a normal ``UNSATISFIABLE`` result.  A condition
        that cannot be lowered, or a solver timeout, gives ``UNKNOWN``.
        Internal Z3 failures raise :class:`SolverFailureError`.
        """
        try:
            parsed = [parse_expression(text) for text in conditions]
        except ExpressionLoweringError as exc:
            logger.debug("solve: %s", exc)
            return SolveResult(SolveStatus.UNKNOWN, None, str(exc))

        try:
            lowering, solver = self._context(variable_types)
            for c in _iter_constraints(constraints):
                solver.add(lowering.constraint(c))
            for expr in parsed:
                solver.add(lowering.as_bool(lowering.lower(expr)))
            for side in lowering.side_conditions:
                solver.add(side)
            status = solver.check()
            if status == z3.sat:
                return SolveResult(SolveStatus.SATISFIABLE,
                                   self._read_model(lowering, solver.model()))
            if status == z3.unsat:
                return SolveResult(SolveStatus.UNSATISFIABLE, None, "unsatisfiable")
            return SolveResult(SolveStatus.UNKNOWN, None, solver.reason_unknown())
        except ExpressionLoweringError as exc:
            logger.debug("solve: %s", exc)
            return SolveResult(SolveStatus.UNKNOWN, None, str(exc))
        except z3.Z3Exception as exc:
            raise SolverFailureError(f"z3 failure: {exc}") from exc

    def find_values_for_expression(self, expression: str, variable_types: Mapping,
                                   constraints: Optional[ConstraintSet] = None) -> SolveResult:
        return self.solve(constraints, variable_types, [expression])

    def find_values_for_outputs(self, constraints: Optional[ConstraintSet],
                                variable_types: Mapping,
                                expected_outputs: Mapping) -> SolveResult:
        """Values of the remaining variables given required output values.

        Each entry of *expected_outputs* pins a variable to a literal or to
        an expression over the other variables.
        """
        conditions = [f"{name} == ({value})" for name, value in expected_outputs.items()]
        types = dict(variable_types)
        for name in expected_outputs:
            types.setdefault(name, "int")
        return self.solve(constraints, types, conditions)

    def validate_constraint(self, constraint: VariableConstraint,
                            variable_type: str = "int") -> bool:
        """True iff some value of *variable_type* satisfies *constraint*."""
        result = self.solve([constraint], {constraint.variable_name: variable_type})
        return result.is_sat

    def generate_sample_values(self, name: str, variable_type: str = "int",
                               constraint: Optional[VariableConstraint] = None,
                               count: int = 5) -> List[str]:
        """Up to *count* distinct values, each new one excluded on the next check."""
        out: List[str] = []
        try:
            lowering, solver = self._context({name: variable_type})
            if constraint is not None:
                solver.add(lowering.constraint(constraint))
            v = lowering.variables[name]
            while len(out) < count and solver.check() == z3.sat:
                value = solver.model().eval(v, model_completion=True)
                out.append(render_value(value))
                solver.add(v != value)
        except ExpressionLoweringError as exc:
            logger.warning("sample values for %s: %s", name, exc)
        except z3.Z3Exception as exc:
            raise SolverFailureError(f"z3 failure: {exc}") from exc
        return out

    def evaluate_expression(self, expression: str, values: Mapping,
                            variable_types: Optional[Mapping] = None) -> str:
        """Value of *expression* with every free name bound by *values*."""
        expr = parse_expression(expression)
        missing = [n for n in free_names(expr)
                   if n not in values and n not in self.symbols]
        if missing:
            raise ExpressionLoweringError(expression, "unbound names: " + ", ".join(missing))
        bound: Dict[str, object] = dict(self.symbols)
        for name, raw in values.items():
            value = raw if not isinstance(raw, str) else _parse_literal(raw)
            if variable_types and isinstance(value, int) and not isinstance(value, bool) \
                    and self.sort_of(variable_types.get(name, "int")) is SortKind.REAL:
                value = float(value)
            bound[name] = value
        try:
            lowering = _Lowering(z3.Context(), {}, bound)
            term = z3.simplify(lowering.lower(expr))
            guards = [z3.simplify(s) for s in lowering.side_conditions]
        except z3.Z3Exception as exc:
            raise SolverFailureError(f"z3 failure: {exc}") from exc
        if any(z3.is_false(g) for g in guards):
            raise ExpressionLoweringError(expression, "division by zero")
        return render_value(term)


def _parse_literal(text: str):
    t = text.strip()
    if t in ("true", "false"):
        return t == "true"
    try:
        return int(t, 0)
    except ValueError:
        return float(t)
