"""
ctestsynth.constraints
======================

Value-domain constraints on C variables, and the extractor that derives
them from declared types and loop guards.

A :class:`VariableConstraint` is immutable.  Combining two constraints on
the same variable (:meth:`VariableConstraint.intersect`) yields a new one
whose bounds are the tighter of the two; a bound is never widened.  The
constraint's :attr:`~VariableConstraint.kind` is derived from which bound
data it carries:

=============  =============================================
kind           bound data
=============  =============================================
EXACT_VALUE    ``exact_value``
ENUMERATION    ``allowed_values`` (possibly empty: infeasible)
RANGE          ``min_value`` and ``max_value``
MIN_VALUE      ``min_value`` only
MAX_VALUE      ``max_value`` only
CUSTOM         only ``expression``
=============  =============================================

An optional ``expression`` (guard text) may accompany any kind and is
conjoined with the bounds when encoded for the solver.

Extraction
----------
For every parameter and local of a function the extractor

1. follows the declared type through the typedef chain to a base type,
2. emits the base type's full range (``unsigned char`` -> ``[0, 255]``),
   or an enumeration of declared enumerator values for enum types,
3. intersects bounds that *loop* guards place on locals
   (``i < 10`` -> ``i <= 9``).

Branch guards are not folded in: they are the conditions the synthesis
loop solves for, and folding ``x < 0`` into ``x``'s domain would make the
opposite branch unreachable.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Tuple, Union

from .ast_model import LOOP_KINDS, AstNode, walk
from .base_types import BaseType, SortKind
from .errors import ExpressionLoweringError, TypedefCycleError
from .expressions import comparisons_on, conjoin_text, parse_expression

if TYPE_CHECKING:
    from .entities import EntityModel, Function
    from .typedef_registry import TypedefRegistry

logger = logging.getLogger(__name__)

Number = Union[int, float]


class ConstraintKind(enum.Enum):
    MIN_VALUE   = "MinValue"
    MAX_VALUE   = "MaxValue"
    RANGE       = "Range"
    ENUMERATION = "Enumeration"
    EXACT_VALUE = "ExactValue"
    CUSTOM      = "Custom"


@dataclass(frozen=True)
class VariableConstraint:
    """Conjunctive bound data for one variable."""

    variable_name: str
    min_value: Optional[Number] = None
    max_value: Optional[Number] = None
    allowed_values: Optional[Tuple[Number, ...]] = None
    exact_value: Optional[Number] = None
    expression: Optional[str] = None
    source: str = "type"

    # ----- constructors -----------------------------------------------------

    @classmethod
    def range(cls, name: str, lo: Number, hi: Number, source: str = "type"):
        return cls(name, min_value=lo, max_value=hi, source=source)

    @classmethod
    def at_least(cls, name: str, lo: Number, source: str = "guard"):
        return cls(name, min_value=lo, source=source)

    @classmethod
    def at_most(cls, name: str, hi: Number, source: str = "guard"):
        return cls(name, max_value=hi, source=source)

    @classmethod
    def enumeration(cls, name: str, values: Iterable[Number], source: str = "enum"):
        return cls(name, allowed_values=tuple(values), source=source)

    @classmethod
    def exact(cls, name: str, value: Number, source: str = "user"):
        return cls(name, exact_value=value, source=source)

    @classmethod
    def custom(cls, name: str, expression: str, source: str = "user"):
        return cls(name, expression=expression, source=source)

    # ----- derived ----------------------------------------------------------

    @property
    def kind(self) -> ConstraintKind:
        if self.exact_value is not None:
            return ConstraintKind.EXACT_VALUE
        if self.allowed_values is not None:
            return ConstraintKind.ENUMERATION
        if self.min_value is not None and self.max_value is not None:
            return ConstraintKind.RANGE
        if self.min_value is not None:
            return ConstraintKind.MIN_VALUE
        if self.max_value is not None:
            return ConstraintKind.MAX_VALUE
        return ConstraintKind.CUSTOM

    @property
    def is_empty(self) -> bool:
        """True when no value can satisfy the numeric bounds."""
        if self.allowed_values is not None and not self.allowed_values:
            return True
        if (self.min_value is not None and self.max_value is not None
                and self.min_value > self.max_value):
            return True
        return False

    def is_satisfied(self, value: Number) -> bool:
        """Check *value* against the numeric bounds (``expression`` ignored)."""
        if self.exact_value is not None and value != self.exact_value:
            return False
        if self.allowed_values is not None and value not in self.allowed_values:
            return False
        if self.min_value is not None and value < self.min_value:
            return False
        if self.max_value is not None and value > self.max_value:
            return False
        return True

    def describe(self) -> str:
        kind = self.kind
        if kind is ConstraintKind.EXACT_VALUE:
            text = f"== {self.exact_value}"
        elif kind is ConstraintKind.ENUMERATION:
            text = "One of: " + ", ".join(str(v) for v in self.allowed_values)
        elif kind is ConstraintKind.RANGE:
            text = f"{self.min_value} to {self.max_value}"
        elif kind is ConstraintKind.MIN_VALUE:
            text = f">= {self.min_value}"
        elif kind is ConstraintKind.MAX_VALUE:
            text = f"<= {self.max_value}"
        else:
            text = self.expression or "unconstrained"
            return text
        if self.expression:
            text += f" and {self.expression}"
        return text

    def __str__(self) -> str:
        return f"{self.variable_name}: {self.describe()}"

    # ----- combination ------------------------------------------------------

    def with_bounds(self, **changes) -> "VariableConstraint":
        """Clone with some fields replaced."""
        return dataclasses.replace(self, **changes)

    def intersect(self, other: "VariableConstraint") -> "VariableConstraint":
        """Conjunction of two constraints on the same variable."""
        if other.variable_name != self.variable_name:
            raise ValueError(
                f"cannot intersect constraints on {self.variable_name!r} "
                f"and {other.variable_name!r}"
            )
        lo = _tighter(self.min_value, other.min_value, max)
        hi = _tighter(self.max_value, other.max_value, min)

        allowed: Optional[Tuple[Number, ...]] = None
        if self.allowed_values is not None and other.allowed_values is not None:
            allowed = tuple(v for v in self.allowed_values if v in other.allowed_values)
        elif self.allowed_values is not None:
            allowed = self.allowed_values
        elif other.allowed_values is not None:
            allowed = other.allowed_values

        exact = self.exact_value
        if other.exact_value is not None:
            if exact is not None and exact != other.exact_value:
                allowed, exact = (), None
            else:
                exact = other.exact_value

        expression = None
        exprs = [e for e in (self.expression, other.expression) if e]
        if exprs:
            expression = exprs[0] if len(exprs) == 1 else conjoin_text(exprs)
        sources = []
        for s in (self.source, other.source):
            for part in s.split("+"):
                if part and part not in sources:
                    sources.append(part)
        merged = VariableConstraint(self.variable_name, lo, hi, allowed, exact,
                                    expression, "+".join(sources))
        return merged._normalised()

    def _normalised(self) -> "VariableConstraint":
        """Fold bounds into an enumeration or exact value where one exists."""
        def in_bounds(v: Number) -> bool:
            return ((self.min_value is None or v >= self.min_value)
                    and (self.max_value is None or v <= self.max_value))

        if self.exact_value is not None:
            ok = in_bounds(self.exact_value) and (
                self.allowed_values is None or self.exact_value in self.allowed_values)
            if not ok:
                return self.with_bounds(exact_value=None, allowed_values=(),
                                        min_value=None, max_value=None)
            return self.with_bounds(allowed_values=None, min_value=None, max_value=None)
        if self.allowed_values is not None:
            kept = tuple(v for v in self.allowed_values if in_bounds(v))
            return self.with_bounds(allowed_values=kept, min_value=None, max_value=None)
        return self


def _tighter(a: Optional[Number], b: Optional[Number], pick) -> Optional[Number]:
    if a is None:
        return b
    if b is None:
        return a
    return pick(a, b)


def merge_constraints(constraints: Iterable[VariableConstraint]) -> Dict[str, VariableConstraint]:
    """Aggregate any number of constraints into one per variable."""
    merged: Dict[str, VariableConstraint] = {}
    for c in constraints:
        prev = merged.get(c.variable_name)
        merged[c.variable_name] = c if prev is None else prev.intersect(c)
    return merged


# ===========================================================================
# EXTRACTION
# ===========================================================================

def _loop_exit_bound(name: str, op: str, value: Number,
                     integral: bool) -> Optional[VariableConstraint]:
    # The bound keeps the first value that fails the guard, so the loop exit
    # stays reachable.  Guards whose exit side is unbounded are not folded.
    if op == "<":
        hi = math.ceil(value) if integral else value
        return VariableConstraint.at_most(name, hi, source="guard")
    if op == ">":
        lo = math.floor(value) if integral else value
        return VariableConstraint.at_least(name, lo, source="guard")
    if not integral:
        return None
    if op == "<=":
        return VariableConstraint.at_most(name, math.floor(value) + 1, source="guard")
    if op == ">=":
        return VariableConstraint.at_least(name, math.ceil(value) - 1, source="guard")
    return None


class ConstraintExtractor:
    """Derives one aggregated :class:`VariableConstraint` per variable.

    Parameters
    ----------
    registry : TypedefRegistry
        Used to follow typedef chains to base types.
    model : EntityModel
        Supplies enum definitions and model-local typedefs.
    fold_loop_guards : bool
        Whether constant comparisons in loop guards tighten the domain.
    """

    def __init__(self, registry: "TypedefRegistry", model: "EntityModel",
                 fold_loop_guards: bool = True) -> None:
        self.registry = registry
        self.model = model
        self.fold_loop_guards = fold_loop_guards

    def variable_types(self, function: "Function") -> Dict[str, str]:
        """Declared type of every parameter and local, by name."""
        types: Dict[str, str] = {}
        for p in function.parameters:
            types[p.name] = p.type_name
        for local in function.local_variables:
            types.setdefault(local.name, local.type_name)
        return types

    def solver_types(self, function: "Function") -> Dict[str, str]:
        """Like :meth:`variable_types` but with typedefs resolved to base types."""
        out: Dict[str, str] = {}
        for name, type_name in self.variable_types(function).items():
            base = self._base_type(type_name)
            out[name] = base.value if base is not None else type_name
        return out

    def _base_type(self, type_name: str) -> Optional[BaseType]:
        try:
            resolved = self.model.resolve_type(type_name, self.registry)
        except TypedefCycleError as exc:
            logger.warning("typedef cycle while resolving %r: %s", type_name, exc)
            return None
        if resolved.is_pointer or resolved.array_dims:
            return None
        return resolved.base

    def constraint_for_declaration(self, name: str,
                                   type_name: str) -> Optional[VariableConstraint]:
        """Type-derived constraint for one declaration."""
        try:
            resolved = self.model.resolve_type(type_name, self.registry)
        except TypedefCycleError as exc:
            logger.warning("%s: typedef cycle in %r: %s", name, type_name, exc)
            return None
        if resolved.is_pointer or resolved.array_dims or resolved.aggregate is not None:
            return None
        if resolved.enum is not None:
            values = [v for _, v in resolved.enum.resolved_values()]
            return VariableConstraint.enumeration(name, values, source="enum")
        base = resolved.base
        if base is None:
            return None
        bounds = base.bounds(self.model.abi)
        if bounds is None:
            return None
        constraint = VariableConstraint.range(name, bounds[0], bounds[1], source="type")
        # Explicit registry bounds (e.g. BOOL -> int in [0, 1]) narrow the base range.
        for alias in (resolved.chain[:-1] if self.registry is not None else ()):
            mapping = self.registry.mapping(alias)
            if mapping is None or mapping.min_value is None or mapping.max_value is None:
                continue
            return constraint.intersect(VariableConstraint.range(
                name, mapping.min_value, mapping.max_value, source="typedef"))
        return constraint

    def extract(self, function: "Function",
                body: Optional[AstNode] = None) -> Dict[str, VariableConstraint]:
        """Constraints for every parameter and local of *function*."""
        result: Dict[str, VariableConstraint] = {}
        types = self.variable_types(function)
        for name, type_name in types.items():
            c = self.constraint_for_declaration(name, type_name)
            if c is not None:
                result[name] = c

        if body is not None and self.fold_loop_guards:
            locals_only = {
                v.name: v.type_name for v in function.local_variables
                if function.parameter(v.name) is None
            }
            for guard in self._loop_guards(body):
                self._fold_guard(guard, locals_only, result)

        logger.debug("%s: extracted %d constraints", function.name, len(result))
        return result

    @staticmethod
    def _loop_guards(body: AstNode) -> List[str]:
        return [
            node.condition for node in walk(body)
            if node.kind in LOOP_KINDS and node.condition and node.condition.strip()
        ]

    def _fold_guard(self, guard: str, types: Dict[str, str],
                    result: Dict[str, VariableConstraint]) -> None:
        try:
            expr = parse_expression(guard)
        except ExpressionLoweringError as exc:
            logger.debug("loop guard %r not scanned: %s", guard, exc)
            return
        for name, type_name in types.items():
            base = self._base_type(type_name)
            if base is None or base.sort is SortKind.BOOL:
                continue
            integral = base.is_integer
            for op, value in comparisons_on(expr, name):
                bound = _loop_exit_bound(name, op, value, integral)
                if bound is None:
                    continue
                prev = result.get(name)
                result[name] = bound if prev is None else prev.intersect(bound)
