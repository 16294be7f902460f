"""
ctestsynth.entities
===================

Typed records for everything a C translation unit declares, and the
:class:`EntityModel` that owns them.

Entities are keyed by ``(kind, name, file, line)``.  Adding an entity a
second time with the same identity merges body-derived data into the
existing record instead of creating a duplicate.  Apart from derived or
cached fields (aggregate layout, ``is_recursive``, usage counters) an entity
is not modified after it has been added.

Layout rules
------------
Structs
    Each member is placed at the next multiple of its own alignment; the
    total size is padded to a multiple of the largest member alignment.
    Consecutive bit-fields share a storage unit of their declared type while
    they fit; a zero-width bit-field closes the current unit.
Unions
    Every member sits at offset 0; the size is the largest member size
    rounded up to the largest alignment.
Packed aggregates
    All alignments are 1.

Public API
----------
    SourceLocation, EntityKind, Linkage
    FunctionParameter, Function, Variable
    StructMember, MemberLayout, MemoryLayout
    StructDefinition, UnionDefinition
    EnumValue, EnumDefinition, TypedefDefinition
    MacroDefinition, ConditionalDirective, IncludeDirective
    ResolvedType
    EntityModel
"""

from __future__ import annotations

import enum
import logging
import re
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    List,
    Optional,
    Set,
    Tuple,
    Union,
)

from .base_types import (
    LP64,
    BaseType,
    TargetABI,
    is_pointer_spelling,
    lookup_base_type,
    normalize_type,
    pointer_depth,
)
from .errors import (
    ExpressionLoweringError,
    FunctionNotFoundError,
    Issue,
    IssueKind,
    IssueSeverity,
    ModelError,
    TypedefCycleError,
)

if TYPE_CHECKING:
    from .typedef_registry import TypedefRegistry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

class EntityKind(enum.Enum):
    FUNCTION    = "function"
    VARIABLE    = "variable"
    STRUCT      = "struct"
    UNION       = "union"
    ENUM        = "enum"
    TYPEDEF     = "typedef"
    MACRO       = "macro"
    CONDITIONAL = "conditional"
    INCLUDE     = "include"


class Linkage(enum.Enum):
    EXTERNAL = "external"
    INTERNAL = "internal"
    NONE     = "none"


@dataclass(frozen=True)
class SourceLocation:
    file: str = ""
    line: int = 0
    column: int = 0

    def __str__(self) -> str:
        return f"{self.file}:{self.line}"


Identity = Tuple[EntityKind, str, str, int]


# ---------------------------------------------------------------------------
# Functions and variables
# ---------------------------------------------------------------------------

def _has_qualifier(spelling: str, qualifier: str) -> bool:
    return re.search(rf"\b{qualifier}\b", spelling or "") is not None


@dataclass
class FunctionParameter:
    """One formal parameter.

    ``is_const`` refers to the pointee for pointer parameters
    (``const char *s``) and to the value otherwise.
    """

    name: str
    type_name: str
    position: int = 0
    is_const: bool = False
    is_volatile: bool = False

    @property
    def is_pointer(self) -> bool:
        return is_pointer_spelling(self.type_name)

    @property
    def pointer_depth(self) -> int:
        return pointer_depth(self.type_name)

    @property
    def is_array(self) -> bool:
        return "[" in (self.type_name or "")

    @classmethod
    def from_dict(cls, data: Dict[str, Any], position: int = 0) -> "FunctionParameter":
        type_name = data.get("type", "int")
        return cls(
            name=data.get("name", f"arg{position}"),
            type_name=type_name,
            position=position,
            is_const=data.get("is_const", _has_qualifier(type_name, "const")),
            is_volatile=data.get("is_volatile", _has_qualifier(type_name, "volatile")),
        )


@dataclass
class Variable:
    """A file-scope or local variable.  ``scope`` is the owning function
    name for locals and ``None`` at file scope."""

    name: str
    type_name: str
    file: str = ""
    line: int = 0
    scope: Optional[str] = None
    is_static: bool = False
    is_extern: bool = False
    is_const: bool = False
    is_volatile: bool = False
    initializer: Optional[str] = None

    kind = EntityKind.VARIABLE

    @property
    def identity(self) -> Identity:
        return (EntityKind.VARIABLE, self.name, self.file, self.line)

    @property
    def location(self) -> SourceLocation:
        return SourceLocation(self.file, self.line)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], scope: Optional[str] = None,
                  file: str = "") -> "Variable":
        type_name = data.get("type", "int")
        return cls(
            name=data["name"],
            type_name=type_name,
            file=data.get("file", file),
            line=data.get("line", 0),
            scope=data.get("scope", scope),
            is_static=data.get("is_static", False),
            is_extern=data.get("is_extern", False),
            is_const=data.get("is_const", _has_qualifier(type_name, "const")),
            is_volatile=data.get("is_volatile", _has_qualifier(type_name, "volatile")),
            initializer=data.get("initializer"),
        )


@dataclass
class Function:
    """A function declaration or definition.

    The body-derived fields (``called_functions``, ``local_variables``,
    ``return_sites``, ``cyclomatic_complexity``) are filled in by whoever
    supplies the body.  ``is_recursive`` is set by the call graph.
    """

    name: str
    return_type: str = "int"
    parameters: List[FunctionParameter] = field(default_factory=list)
    file: str = ""
    line: int = 0
    end_line: int = 0
    is_static: bool = False
    is_inline: bool = False
    is_extern: bool = False
    is_variadic: bool = False
    is_declaration_only: bool = False
    called_functions: List[str] = field(default_factory=list)
    local_variables: List[Variable] = field(default_factory=list)
    return_sites: List[int] = field(default_factory=list)
    cyclomatic_complexity: int = 1
    is_recursive: bool = False

    kind = EntityKind.FUNCTION

    def __post_init__(self) -> None:
        if self.cyclomatic_complexity < 1:
            raise ModelError(
                f"{self.name}: cyclomatic complexity must be >= 1, "
                f"got {self.cyclomatic_complexity}"
            )

    @property
    def identity(self) -> Identity:
        return (EntityKind.FUNCTION, self.name, self.file, self.line)

    @property
    def location(self) -> SourceLocation:
        return SourceLocation(self.file, self.line)

    @property
    def linkage(self) -> Linkage:
        return Linkage.INTERNAL if self.is_static else Linkage.EXTERNAL

    @property
    def has_body(self) -> bool:
        return not self.is_declaration_only

    def parameter(self, name: str) -> Optional[FunctionParameter]:
        for p in self.parameters:
            if p.name == name:
                return p
        return None

    def signature(self) -> str:
        params = ", ".join(f"{p.type_name} {p.name}" for p in self.parameters)
        if self.is_variadic:
            params = f"{params}, ..." if params else "..."
        return f"{self.return_type} {self.name}({params or 'void'})"

    def merge_from(self, other: "Function") -> None:
        """Fill body-derived data that this record is missing."""
        if self.is_declaration_only and not other.is_declaration_only:
            self.is_declaration_only = False
            self.end_line = other.end_line
        if not self.called_functions:
            self.called_functions = list(other.called_functions)
        if not self.local_variables:
            self.local_variables = list(other.local_variables)
        if not self.return_sites:
            self.return_sites = list(other.return_sites)
        if self.cyclomatic_complexity == 1:
            self.cyclomatic_complexity = other.cyclomatic_complexity

    @classmethod
    def from_dict(cls, data: Dict[str, Any], file: str = "") -> "Function":
        name = data["name"]
        ffile = data.get("file", file)
        return cls(
            name=name,
            return_type=data.get("return_type", "int"),
            parameters=[
                FunctionParameter.from_dict(p, i)
                for i, p in enumerate(data.get("parameters", []))
            ],
            file=ffile,
            line=data.get("line", 0),
            end_line=data.get("end_line", 0),
            is_static=data.get("is_static", False),
            is_inline=data.get("is_inline", False),
            is_extern=data.get("is_extern", False),
            is_variadic=data.get("is_variadic", False),
            is_declaration_only=data.get(
                "is_declaration_only", "body" not in data and not data.get("called_functions")
            ),
            called_functions=list(data.get("called_functions", [])),
            local_variables=[
                Variable.from_dict(v, scope=name, file=ffile)
                for v in data.get("local_variables", [])
            ],
            return_sites=list(data.get("return_sites", [])),
            cyclomatic_complexity=max(1, int(data.get("cyclomatic_complexity", 1))),
        )


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

@dataclass
class StructMember:
    """A struct/union member.

    ``size`` and ``alignment`` may be supplied by the AST provider; when
    omitted they are derived from ``type_name`` under the model's ABI.
    ``size`` is the size of one element for array members.
    """

    name: str
    type_name: str
    array_length: Optional[int] = None
    bit_width: Optional[int] = None
    size: Optional[int] = None
    alignment: Optional[int] = None
    line: int = 0

    @property
    def is_pointer(self) -> bool:
        return is_pointer_spelling(self.type_name)

    @property
    def is_bitfield(self) -> bool:
        return self.bit_width is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StructMember":
        return cls(
            name=data["name"],
            type_name=data.get("type", "int"),
            array_length=data.get("array_length"),
            bit_width=data.get("bit_width"),
            size=data.get("size"),
            alignment=data.get("alignment"),
            line=data.get("line", 0),
        )


@dataclass(frozen=True)
class MemberLayout:
    name: str
    offset: int
    size: int
    alignment: int
    bit_offset: Optional[int] = None
    bit_width: Optional[int] = None


@dataclass(frozen=True)
class MemoryLayout:
    """Derived layout of a struct or union."""

    size: int
    alignment: int
    members: Tuple[MemberLayout, ...]
    padding: int

    def member(self, name: str) -> Optional[MemberLayout]:
        for m in self.members:
            if m.name == name:
                return m
        return None

    @property
    def offsets(self) -> Dict[str, int]:
        return {m.name: m.offset for m in self.members}


@dataclass
class _AggregateDefinition:
    name: str
    members: List[StructMember] = field(default_factory=list)
    file: str = ""
    line: int = 0
    is_packed: bool = False
    _layout: Optional[MemoryLayout] = field(default=None, init=False,
                                            repr=False, compare=False)

    kind = EntityKind.STRUCT

    @property
    def identity(self) -> Identity:
        return (self.kind, self.name, self.file, self.line)

    @property
    def location(self) -> SourceLocation:
        return SourceLocation(self.file, self.line)

    @property
    def is_union(self) -> bool:
        return self.kind is EntityKind.UNION

    @property
    def layout(self) -> Optional[MemoryLayout]:
        """Cached layout, or ``None`` until :meth:`EntityModel.layout_of` ran."""
        return self._layout

    def member(self, name: str) -> Optional[StructMember]:
        for m in self.members:
            if m.name == name:
                return m
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], file: str = ""):
        return cls(
            name=data["name"],
            members=[StructMember.from_dict(m) for m in data.get("members", [])],
            file=data.get("file", file),
            line=data.get("line", 0),
            is_packed=data.get("is_packed", False),
        )


@dataclass
class StructDefinition(_AggregateDefinition):
    kind = EntityKind.STRUCT


@dataclass
class UnionDefinition(_AggregateDefinition):
    kind = EntityKind.UNION


Aggregate = Union[StructDefinition, UnionDefinition]


# ---------------------------------------------------------------------------
# Enums, typedefs, preprocessor
# ---------------------------------------------------------------------------

@dataclass
class EnumValue:
    name: str
    value: Optional[Union[int, str]] = None


@dataclass
class EnumDefinition:
    name: str
    values: List[EnumValue] = field(default_factory=list)
    file: str = ""
    line: int = 0
    underlying_type: str = "int"

    kind = EntityKind.ENUM

    @property
    def identity(self) -> Identity:
        return (EntityKind.ENUM, self.name, self.file, self.line)

    def resolved_values(self) -> List[Tuple[str, int]]:
        """Enumerators with implicit values filled in.

        Explicit values may be integer literals, earlier enumerators, or a
        constant expression over those.  Raises :class:`ModelError` for
        anything else.
        """
        from .expressions import parse_expression  # local: expressions is a leaf

        known: Dict[str, int] = {}
        out: List[Tuple[str, int]] = []
        next_value = 0
        for ev in self.values:
            if ev.value is None:
                value = next_value
            elif isinstance(ev.value, int):
                value = ev.value
            else:
                try:
                    value = _fold_constant(parse_expression(str(ev.value)), known)
                except ExpressionLoweringError as exc:
                    raise ModelError(
                        f"enum {self.name}: cannot evaluate {ev.name} = {ev.value!r}"
                    ) from exc
                if value is None:
                    raise ModelError(
                        f"enum {self.name}: cannot evaluate {ev.name} = {ev.value!r}"
                    )
            known[ev.name] = value
            out.append((ev.name, value))
            next_value = value + 1
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any], file: str = "") -> "EnumDefinition":
        values = []
        for v in data.get("values", []):
            if isinstance(v, str):
                values.append(EnumValue(v))
            else:
                values.append(EnumValue(v["name"], v.get("value")))
        return cls(
            name=data["name"],
            values=values,
            file=data.get("file", file),
            line=data.get("line", 0),
            underlying_type=data.get("underlying_type", "int"),
        )


def _fold_constant(expr, known: Dict[str, int]) -> Optional[int]:
    """Integer constant folding for enumerator initialisers."""
    from .expressions import Binary, BoolConst, IntConst, Name, Unary

    if isinstance(expr, IntConst):
        return expr.value
    if isinstance(expr, BoolConst):
        return int(expr.value)
    if isinstance(expr, Name):
        return known.get(expr.name)
    if isinstance(expr, Unary):
        inner = _fold_constant(expr.operand, known)
        if inner is None:
            return None
        return -inner if expr.op == "-" else int(not inner)
    if isinstance(expr, Binary):
        lhs = _fold_constant(expr.left, known)
        rhs = _fold_constant(expr.right, known)
        if lhs is None or rhs is None:
            return None
        if expr.op == "+":
            return lhs + rhs
        if expr.op == "-":
            return lhs - rhs
        if expr.op == "*":
            return lhs * rhs
        if expr.op in ("/", "%"):
            if rhs == 0:
                return None
            q = abs(lhs) // abs(rhs)
            q = q if (lhs >= 0) == (rhs >= 0) else -q
            return q if expr.op == "/" else lhs - rhs * q
    return None


@dataclass
class TypedefDefinition:
    alias_name: str
    original_type: str
    file: str = ""
    line: int = 0

    kind = EntityKind.TYPEDEF

    @property
    def name(self) -> str:
        return self.alias_name

    @property
    def identity(self) -> Identity:
        return (EntityKind.TYPEDEF, self.alias_name, self.file, self.line)

    @property
    def is_function_pointer(self) -> bool:
        return "(*" in self.original_type.replace(" ", "")

    @property
    def is_pointer(self) -> bool:
        return not self.is_function_pointer and is_pointer_spelling(self.original_type)

    @property
    def is_array(self) -> bool:
        return "[" in self.original_type

    @classmethod
    def from_dict(cls, data: Dict[str, Any], file: str = "") -> "TypedefDefinition":
        return cls(
            alias_name=data.get("alias", data.get("name")),
            original_type=data.get("original_type", data.get("type", "int")),
            file=data.get("file", file),
            line=data.get("line", 0),
        )


@dataclass
class MacroDefinition:
    name: str
    value: str = ""
    parameters: Optional[List[str]] = None
    file: str = ""
    line: int = 0
    dependencies: List[str] = field(default_factory=list)
    is_enabled: bool = True
    usage_count: int = 0

    kind = EntityKind.MACRO

    @property
    def identity(self) -> Identity:
        return (EntityKind.MACRO, self.name, self.file, self.line)

    @property
    def is_function_like(self) -> bool:
        return self.parameters is not None

    def numeric_value(self) -> Optional[Union[int, float]]:
        """Value of an object-like macro whose body is a numeric constant."""
        if self.is_function_like or not self.value.strip():
            return None
        from .expressions import constant_value, parse_expression

        try:
            return constant_value(parse_expression(self.value))
        except ExpressionLoweringError:
            return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], file: str = "") -> "MacroDefinition":
        return cls(
            name=data["name"],
            value=str(data.get("value", "")),
            parameters=data.get("parameters"),
            file=data.get("file", file),
            line=data.get("line", 0),
            dependencies=list(data.get("dependencies", [])),
            is_enabled=data.get("is_enabled", True),
            usage_count=data.get("usage_count", 0),
        )


@dataclass
class ConditionalDirective:
    """``#if``/``#ifdef``/``#ifndef``/``#elif``/``#else`` block."""

    directive: str
    condition: str = ""
    file: str = ""
    line: int = 0
    end_line: int = 0
    dependencies: List[str] = field(default_factory=list)
    parent_line: Optional[int] = None
    is_condition_satisfied: Optional[bool] = None

    kind = EntityKind.CONDITIONAL

    @property
    def name(self) -> str:
        return f"#{self.directive} {self.condition}".strip()

    @property
    def identity(self) -> Identity:
        return (EntityKind.CONDITIONAL, self.name, self.file, self.line)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], file: str = "") -> "ConditionalDirective":
        return cls(
            directive=data.get("directive", "if"),
            condition=data.get("condition", ""),
            file=data.get("file", file),
            line=data.get("line", 0),
            end_line=data.get("end_line", 0),
            dependencies=list(data.get("dependencies", [])),
            parent_line=data.get("parent_line"),
            is_condition_satisfied=data.get("is_condition_satisfied"),
        )


@dataclass
class IncludeDirective:
    path: str
    file: str = ""
    line: int = 0
    is_system: bool = False

    kind = EntityKind.INCLUDE

    @property
    def name(self) -> str:
        return self.path

    @property
    def identity(self) -> Identity:
        return (EntityKind.INCLUDE, self.path, self.file, self.line)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], file: str = "") -> "IncludeDirective":
        return cls(
            path=data["path"],
            file=data.get("file", file),
            line=data.get("line", 0),
            is_system=data.get("is_system", False),
        )


Entity = Union[
    Function, Variable, StructDefinition, UnionDefinition, EnumDefinition,
    TypedefDefinition, MacroDefinition, ConditionalDirective, IncludeDirective,
]


# ---------------------------------------------------------------------------
# Type resolution result
# ---------------------------------------------------------------------------

_TAG_RE = re.compile(r"^(struct|union|enum)\s+(\w+)$")
_ARRAY_RE = re.compile(r"\[\s*(\w*)\s*\]")


@dataclass(frozen=True)
class ResolvedType:
    """Where a type spelling ends up after following typedefs."""

    spelling: str
    chain: Tuple[str, ...]
    core: str
    pointer_depth: int = 0
    array_dims: Tuple[int, ...] = ()
    base: Optional[BaseType] = None
    aggregate: Optional[Aggregate] = None
    enum: Optional[EnumDefinition] = None

    @property
    def is_pointer(self) -> bool:
        return self.pointer_depth > 0

    @property
    def is_resolved(self) -> bool:
        return (self.is_pointer or self.base is not None
                or self.aggregate is not None or self.enum is not None)

    @property
    def element_count(self) -> int:
        n = 1
        for d in self.array_dims:
            n *= d
        return n


def _split_spelling(text: str) -> Tuple[str, int, Tuple[int, ...]]:
    """``"unsigned char *[4]"`` -> ``("unsigned char", 1, (4,))``."""
    dims = []
    for m in _ARRAY_RE.finditer(text):
        dims.append(int(m.group(1)) if m.group(1).isdigit() else 0)
    core = _ARRAY_RE.sub("", text)
    stars = core.count("*")
    core = core.replace("*", " ")
    return " ".join(core.split()), stars, tuple(dims)


def _align_up(value: int, alignment: int) -> int:
    if alignment <= 1:
        return value
    return (value + alignment - 1) // alignment * alignment


# ===========================================================================
# ENTITY MODEL
# ===========================================================================

class EntityModel:
    """Owns every entity of one translation unit (or several merged ones).

    Attributes
    ----------
    abi : TargetABI
        Target used for layout computation.
    """

    def __init__(self, abi: TargetABI = LP64) -> None:
        self.abi = abi
        self._entities: Dict[EntityKind, "OrderedDict[Identity, Any]"] = {
            kind: OrderedDict() for kind in EntityKind
        }
        self._name_index: Dict[str, List[Any]] = defaultdict(list)

    # ----- mutation ---------------------------------------------------------

    def _add(self, entity):
        table = self._entities[entity.kind]
        key = entity.identity
        existing = table.get(key)
        if existing is not None:
            if isinstance(existing, Function):
                existing.merge_from(entity)
            return existing
        table[key] = entity
        self._name_index[entity.name].append(entity)
        return entity

    def add_function(self, function: Function) -> Function:
        added = self._add(function)
        for local in function.local_variables:
            if local.scope is None:
                local.scope = function.name
        return added

    def add_variable(self, variable: Variable) -> Variable:
        return self._add(variable)

    def add_struct(self, struct: StructDefinition) -> StructDefinition:
        return self._add(struct)

    def add_union(self, union: UnionDefinition) -> UnionDefinition:
        return self._add(union)

    def add_enum(self, enum_def: EnumDefinition) -> EnumDefinition:
        return self._add(enum_def)

    def add_typedef(self, typedef: TypedefDefinition) -> TypedefDefinition:
        return self._add(typedef)

    def add_macro(self, macro: MacroDefinition) -> MacroDefinition:
        return self._add(macro)

    def add_conditional(self, directive: ConditionalDirective) -> ConditionalDirective:
        return self._add(directive)

    def add_include(self, include: IncludeDirective) -> IncludeDirective:
        return self._add(include)

    # ----- queries ----------------------------------------------------------

    def find(self, name: str, kind: Optional[EntityKind] = None):
        """First entity called *name* (definitions before declarations)."""
        candidates = [
            e for e in self._name_index.get(name, ())
            if kind is None or e.kind is kind
        ]
        if not candidates:
            return None
        for e in candidates:
            if not (isinstance(e, Function) and e.is_declaration_only):
                return e
        return candidates[0]

    def find_all(self, name: str) -> List[Any]:
        return list(self._name_index.get(name, ()))

    def get_function(self, name: str) -> Function:
        fn = self.find(name, EntityKind.FUNCTION)
        if fn is None:
            raise FunctionNotFoundError(name)
        return fn

    def has_function(self, name: str) -> bool:
        return self.find(name, EntityKind.FUNCTION) is not None

    def _values(self, kind: EntityKind) -> List[Any]:
        return list(self._entities[kind].values())

    def functions(self) -> List[Function]:
        return self._values(EntityKind.FUNCTION)

    def defined_functions(self) -> List[Function]:
        return [f for f in self.functions() if not f.is_declaration_only]

    def variables(self) -> List[Variable]:
        return self._values(EntityKind.VARIABLE)

    def structs(self) -> List[StructDefinition]:
        return self._values(EntityKind.STRUCT)

    def unions(self) -> List[UnionDefinition]:
        return self._values(EntityKind.UNION)

    def aggregates(self) -> List[Aggregate]:
        return self.structs() + self.unions()

    def enums(self) -> List[EnumDefinition]:
        return self._values(EntityKind.ENUM)

    def typedefs(self) -> List[TypedefDefinition]:
        return self._values(EntityKind.TYPEDEF)

    def macros(self) -> List[MacroDefinition]:
        return self._values(EntityKind.MACRO)

    def conditionals(self) -> List[ConditionalDirective]:
        return self._values(EntityKind.CONDITIONAL)

    def includes(self) -> List[IncludeDirective]:
        return self._values(EntityKind.INCLUDE)

    def __len__(self) -> int:
        return sum(len(t) for t in self._entities.values())

    def __contains__(self, name: str) -> bool:
        return bool(self._name_index.get(name))

    def macro_value(self, name: str) -> Optional[Union[int, float]]:
        macro = self.find(name, EntityKind.MACRO)
        if macro is None or not macro.is_enabled:
            return None
        return macro.numeric_value()

    def enum_values(self, type_name: str) -> Optional[List[Tuple[str, int]]]:
        m = _TAG_RE.match(normalize_type(type_name))
        name = m.group(2) if m else type_name
        enum_def = self.find(name, EntityKind.ENUM)
        if enum_def is None:
            return None
        return enum_def.resolved_values()

    def constants(self) -> Dict[str, Union[int, float]]:
        """Enumerator values and numeric object-like macros, by name."""
        out: Dict[str, Union[int, float]] = {}
        for enum_def in self.enums():
            try:
                out.update(enum_def.resolved_values())
            except ModelError as exc:
                logger.debug("skipping constants of enum %s: %s", enum_def.name, exc)
        for macro in self.macros():
            if not macro.is_enabled:
                continue
            value = macro.numeric_value()
            if value is not None:
                out.setdefault(macro.name, value)
        return out

    # ----- typedefs and types -----------------------------------------------

    def register_typedefs(self, registry: "TypedefRegistry", source: str = "Source") -> int:
        """Push this model's typedefs into *registry*; returns the count."""
        count = 0
        for td in self.typedefs():
            if td.is_function_pointer:
                continue
            registry.register(td.alias_name, normalize_type(td.original_type), source)
            count += 1
        return count

    def _typedef_target(self, alias: str,
                        registry: Optional["TypedefRegistry"]) -> Optional[str]:
        td = self.find(alias, EntityKind.TYPEDEF)
        if td is not None:
            return normalize_type(td.original_type)
        if registry is not None:
            return registry.resolve(alias)
        return None

    def _find_aggregate(self, name: str, tag: Optional[str] = None):
        kinds = {"struct": (EntityKind.STRUCT,), "union": (EntityKind.UNION,),
                 "enum": (EntityKind.ENUM,)}.get(
            tag, (EntityKind.STRUCT, EntityKind.UNION, EntityKind.ENUM))
        for kind in kinds:
            found = self.find(name, kind)
            if found is not None:
                return found
        return None

    def resolve_type(self, spelling: str,
                     registry: Optional["TypedefRegistry"] = None) -> ResolvedType:
        """Follow typedefs from *spelling* down to a base type or aggregate.

        Model typedefs are consulted before *registry*.  The walk visits
        each alias at most once and raises :class:`TypedefCycleError` on a
        revisit.
        """
        text = normalize_type(spelling)
        core, stars, dims = _split_spelling(text)
        chain: List[str] = [core]
        seen: Set[str] = set()
        while True:
            if stars:
                return ResolvedType(text, tuple(chain), core, stars, dims,
                                    base=BaseType.POINTER)
            base = lookup_base_type(core)
            if base is not None:
                return ResolvedType(text, tuple(chain), core, 0, dims, base=base)
            m = _TAG_RE.match(core)
            if m:
                target = self._find_aggregate(m.group(2), m.group(1))
                return self._resolved_aggregate(text, chain, core, dims, target)
            if core in seen:
                raise TypedefCycleError(chain)
            seen.add(core)
            target_spelling = self._typedef_target(core, registry)
            if target_spelling is None:
                return self._resolved_aggregate(
                    text, chain, core, dims, self._find_aggregate(core))
            nxt, more_stars, more_dims = _split_spelling(target_spelling)
            stars += more_stars
            dims = dims + more_dims
            core = nxt
            chain.append(core)

    def _resolved_aggregate(self, text, chain, core, dims, target) -> ResolvedType:
        if isinstance(target, EnumDefinition):
            return ResolvedType(text, tuple(chain), core, 0, dims,
                                base=lookup_base_type(target.underlying_type),
                                enum=target)
        return ResolvedType(text, tuple(chain), core, 0, dims, aggregate=target)

    # ----- layout -----------------------------------------------------------

    def layout_of(self, aggregate: Union[str, Aggregate],
                  registry: Optional["TypedefRegistry"] = None) -> MemoryLayout:
        """Compute (once) and return the layout of a struct or union.

        Raises :class:`ModelError` when a member cannot be sized, including
        an aggregate that contains itself by value.
        """
        if isinstance(aggregate, str):
            core = normalize_type(aggregate)
            m = _TAG_RE.match(core)
            target = (self._find_aggregate(m.group(2), m.group(1)) if m
                      else self._find_aggregate(core))
            if not isinstance(target, (StructDefinition, UnionDefinition)):
                raise ModelError(f"no struct or union named {aggregate!r}")
            aggregate = target
        return self._layout(aggregate, registry, [])

    def _layout(self, agg: Aggregate, registry, in_progress: List[str]) -> MemoryLayout:
        if agg._layout is not None:
            return agg._layout
        if agg.name in in_progress:
            cycle = " -> ".join(in_progress + [agg.name])
            raise ModelError(f"aggregate contains itself by value: {cycle}")
        in_progress.append(agg.name)
        try:
            if agg.is_union:
                layout = self._union_layout(agg, registry, in_progress)
            else:
                layout = self._struct_layout(agg, registry, in_progress)
        finally:
            in_progress.pop()
        agg._layout = layout
        return layout

    def _member_size_align(self, agg: Aggregate, member: StructMember, registry,
                           in_progress: List[str]) -> Tuple[int, int, int]:
        """``(element size, alignment, element count)`` of *member*."""
        count = member.array_length or 1
        if member.size is not None:
            size = member.size
            align = member.alignment or min(max(size, 1), self.abi.max_alignment)
        else:
            resolved = self.resolve_type(member.type_name, registry)
            count *= resolved.element_count
            if resolved.is_pointer:
                size = self.abi.pointer_size
                align = min(size, self.abi.max_alignment)
            elif resolved.aggregate is not None:
                inner = self._layout(resolved.aggregate, registry, in_progress)
                size, align = inner.size, inner.alignment
            elif resolved.base is not None and resolved.base is not BaseType.VOID:
                size = resolved.base.size(self.abi)
                align = resolved.base.alignment(self.abi)
            else:
                raise ModelError(
                    f"{agg.kind.value} {agg.name}: cannot size member "
                    f"{member.name!r} of type {member.type_name!r}"
                )
            if member.alignment is not None:
                align = member.alignment
        if agg.is_packed:
            align = 1
        return size, align, count

    def _struct_layout(self, agg: Aggregate, registry, in_progress) -> MemoryLayout:
        offset = 0
        max_align = 1
        data_bytes = 0
        placed: List[MemberLayout] = []
        unit_start: Optional[int] = None
        unit_size = 0
        bits_used = 0

        for member in agg.members:
            size, align, count = self._member_size_align(agg, member, registry, in_progress)
            max_align = max(max_align, align)
            if member.is_bitfield:
                width = member.bit_width or 0
                if width == 0:
                    unit_start = None
                    offset = _align_up(offset, align)
                    continue
                if (unit_start is not None and unit_size == size
                        and bits_used + width <= size * 8):
                    placed.append(MemberLayout(member.name, unit_start, size, align,
                                               bits_used, width))
                    bits_used += width
                    continue
                offset = _align_up(offset, align)
                unit_start, unit_size, bits_used = offset, size, width
                placed.append(MemberLayout(member.name, offset, size, align, 0, width))
                offset += size
                data_bytes += size
                continue

            unit_start = None
            offset = _align_up(offset, align)
            placed.append(MemberLayout(member.name, offset, size * count, align))
            offset += size * count
            data_bytes += size * count

        total = _align_up(offset, max_align)
        return MemoryLayout(total, max_align, tuple(placed), total - data_bytes)

    def _union_layout(self, agg: Aggregate, registry, in_progress) -> MemoryLayout:
        max_align = 1
        largest = 0
        placed: List[MemberLayout] = []
        for member in agg.members:
            size, align, count = self._member_size_align(agg, member, registry, in_progress)
            max_align = max(max_align, align)
            largest = max(largest, size * count)
            bit = 0 if member.is_bitfield else None
            placed.append(MemberLayout(member.name, 0, size * count, align, bit,
                                       member.bit_width))
        total = _align_up(largest, max_align)
        return MemoryLayout(total, max_align, tuple(placed), total - largest)

    def layout_warnings(self, aggregate: Aggregate,
                        registry: Optional["TypedefRegistry"] = None) -> List[str]:
        """Advisory findings about an aggregate's layout.

        Large aggregates (over 1024 bytes), heavy padding (over 25% of the
        size) and members that would pack tighter if sorted by decreasing
        alignment.
        """
        layout = self.layout_of(aggregate, registry)
        warnings: List[str] = []
        if layout.size > 1024:
            warnings.append(f"{aggregate.name}: large aggregate ({layout.size} bytes)")
        if layout.size and layout.padding * 4 > layout.size:
            warnings.append(
                f"{aggregate.name}: {layout.padding} of {layout.size} bytes are padding"
            )
        if not aggregate.is_union:
            aligns = [m.alignment for m in layout.members if m.bit_offset is None]
            if aligns != sorted(aligns, reverse=True):
                reordered = StructDefinition(
                    name=aggregate.name,
                    members=sorted(
                        aggregate.members,
                        key=lambda m: -(layout.member(m.name).alignment
                                        if layout.member(m.name) else 1),
                    ),
                    is_packed=aggregate.is_packed,
                )
                better = self._struct_layout(reordered, registry, [aggregate.name])
                if better.size < layout.size:
                    warnings.append(
                        f"{aggregate.name}: reordering members by alignment "
                        f"saves {layout.size - better.size} bytes"
                    )
        return warnings

    # ----- validation -------------------------------------------------------

    def validate(self, registry: Optional["TypedefRegistry"] = None) -> List[Issue]:
        """Collect model problems.  Never raises for problems in the model."""
        issues: List[Issue] = []
        self._check_duplicates(issues)
        self._check_types(issues, registry)
        self._check_references(issues)
        self._check_self_containment(issues, registry)
        self._check_enums(issues)
        return issues

    def _issue(self, issues: List[Issue], kind: IssueKind, severity: IssueSeverity,
               message: str, entity=None) -> None:
        issues.append(Issue(
            kind=kind,
            severity=severity,
            message=message,
            entity=getattr(entity, "name", None),
            file=getattr(entity, "file", None),
            line=getattr(entity, "line", None),
        ))

    def _check_duplicates(self, issues: List[Issue]) -> None:
        # Ordinary identifiers at file scope.
        ordinary: Dict[Tuple[str, str], List[Any]] = defaultdict(list)
        for fn in self.defined_functions():
            ordinary[(fn.file, fn.name)].append(fn)
        for var in self.variables():
            if var.scope is None and not var.is_extern:
                ordinary[(var.file, var.name)].append(var)
        for (_, name), found in ordinary.items():
            if len(found) > 1:
                self._issue(issues, IssueKind.DUPLICATE_NAME, IssueSeverity.ERROR,
                            f"{name!r} defined {len(found)} times at file scope",
                            found[1])

        # Typedef redefinition is only allowed with the same type.
        by_alias: Dict[Tuple[str, str], Set[str]] = defaultdict(set)
        for td in self.typedefs():
            by_alias[(td.file, td.alias_name)].add(normalize_type(td.original_type))
        for (_, alias), originals in by_alias.items():
            if len(originals) > 1:
                self._issue(issues, IssueKind.DUPLICATE_NAME, IssueSeverity.ERROR,
                            f"typedef {alias!r} redefined with different types: "
                            + ", ".join(sorted(originals)),
                            self.find(alias, EntityKind.TYPEDEF))

        # Tags share one namespace per file.
        tags: Dict[Tuple[str, str], List[Any]] = defaultdict(list)
        for agg in list(self.aggregates()) + list(self.enums()):
            tags[(agg.file, agg.name)].append(agg)
        for (_, name), found in tags.items():
            if len(found) > 1:
                self._issue(issues, IssueKind.DUPLICATE_NAME, IssueSeverity.ERROR,
                            f"tag {name!r} defined {len(found)} times", found[1])

        for fn in self.functions():
            seen: Set[str] = set()
            for p in fn.parameters:
                if p.name in seen:
                    self._issue(issues, IssueKind.DUPLICATE_NAME, IssueSeverity.ERROR,
                                f"{fn.name}: duplicate parameter {p.name!r}", fn)
                seen.add(p.name)
            locals_seen: Set[str] = set()
            for local in fn.local_variables:
                if local.name in locals_seen:
                    self._issue(issues, IssueKind.DUPLICATE_NAME, IssueSeverity.WARNING,
                                f"{fn.name}: local {local.name!r} declared more than once",
                                local)
                elif local.name in seen:
                    self._issue(issues, IssueKind.DUPLICATE_NAME, IssueSeverity.WARNING,
                                f"{fn.name}: local {local.name!r} shadows a parameter",
                                local)
                locals_seen.add(local.name)

        for agg in self.aggregates():
            names = [m.name for m in agg.members if m.name]
            dupes = sorted({n for n in names if names.count(n) > 1})
            for name in dupes:
                self._issue(issues, IssueKind.DUPLICATE_NAME, IssueSeverity.ERROR,
                            f"{agg.kind.value} {agg.name}: duplicate member {name!r}", agg)

    def _check_type(self, issues: List[Issue], spelling: str, owner, what: str,
                    registry) -> None:
        if not spelling or normalize_type(spelling) in ("", "void"):
            return
        try:
            resolved = self.resolve_type(spelling, registry)
        except TypedefCycleError as exc:
            self._issue(issues, IssueKind.TYPEDEF_CYCLE, IssueSeverity.ERROR,
                        f"{what}: {exc}", owner)
            return
        if resolved.is_pointer or resolved.is_resolved:
            return
        self._issue(issues, IssueKind.UNRESOLVED_TYPE, IssueSeverity.WARNING,
                    f"{what}: unknown type {spelling!r}", owner)

    def _check_types(self, issues: List[Issue], registry) -> None:
        reported_cycles: Set[frozenset] = set()
        for td in self.typedefs():
            if td.is_function_pointer:
                continue
            try:
                resolved = self.resolve_type(td.alias_name, registry)
            except TypedefCycleError as exc:
                key = frozenset(exc.chain)
                if key not in reported_cycles:
                    reported_cycles.add(key)
                    self._issue(issues, IssueKind.TYPEDEF_CYCLE, IssueSeverity.ERROR,
                                str(exc), td)
                continue
            if not resolved.is_resolved:
                self._issue(issues, IssueKind.UNRESOLVED_REFERENCE, IssueSeverity.WARNING,
                            f"typedef {td.alias_name!r} refers to unknown type "
                            f"{td.original_type!r}", td)
        for fn in self.functions():
            self._check_type(issues, fn.return_type, fn, f"{fn.name} return type", registry)
            for p in fn.parameters:
                self._check_type(issues, p.type_name, fn,
                                 f"{fn.name} parameter {p.name!r}", registry)
            for local in fn.local_variables:
                self._check_type(issues, local.type_name, local,
                                 f"{fn.name} local {local.name!r}", registry)
        for var in self.variables():
            self._check_type(issues, var.type_name, var, f"variable {var.name!r}", registry)
        for agg in self.aggregates():
            for m in agg.members:
                self._check_type(issues, m.type_name, agg,
                                 f"{agg.kind.value} {agg.name} member {m.name!r}", registry)

    def _check_references(self, issues: List[Issue]) -> None:
        for fn in self.defined_functions():
            for callee in fn.called_functions:
                if not self.has_function(callee):
                    self._issue(issues, IssueKind.UNKNOWN_CALLEE, IssueSeverity.WARNING,
                                f"{fn.name} calls undeclared function {callee!r}", fn)
        macro_names = {m.name for m in self.macros()}
        for macro in self.macros():
            for dep in macro.dependencies:
                if dep not in macro_names:
                    self._issue(issues, IssueKind.ORPHANED_DEPENDENCY, IssueSeverity.WARNING,
                                f"macro {macro.name!r} depends on undefined {dep!r}", macro)
        for cond in self.conditionals():
            for dep in cond.dependencies:
                if dep not in macro_names:
                    self._issue(issues, IssueKind.ORPHANED_DEPENDENCY, IssueSeverity.WARNING,
                                f"{cond.name!r} depends on undefined macro {dep!r}", cond)

    def _check_self_containment(self, issues: List[Issue], registry) -> None:
        from .dependency_graph import TypeDependencyGraph

        graph = TypeDependencyGraph.build(self, registry)
        for cycle in graph.invalid_self_containment():
            owner = self._find_aggregate(cycle[0])
            self._issue(issues, IssueKind.SELF_CONTAINMENT, IssueSeverity.ERROR,
                        "aggregate contains itself by value: " + " -> ".join(cycle),
                        owner)

    def _check_enums(self, issues: List[Issue]) -> None:
        for enum_def in self.enums():
            try:
                enum_def.resolved_values()
            except ModelError as exc:
                self._issue(issues, IssueKind.ENUM_VALUE, IssueSeverity.ERROR,
                            str(exc), enum_def)

    def __repr__(self) -> str:
        parts = ", ".join(
            f"{kind.value}s={len(table)}"
            for kind, table in self._entities.items() if table
        )
        return f"EntityModel({parts})"
