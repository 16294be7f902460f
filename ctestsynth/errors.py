# ctestsynth/errors.py
"""
Error Types and Model Issues

Error Hierarchy:
────────────────
┌──────────────────────────────────────────────────────────────────────┐
│  CTestSynthError (base)                                              │
│  ├── NotFoundError            - fail-fast resource lookups           │
│  │   ├── SourceFileNotFoundError                                     │
│  │   ├── FunctionNotFoundError                                       │
│  │   └── EntityNotFoundError                                         │
│  ├── ModelError               - malformed entity graph               │
│  ├── TypedefCycleError        - alias chain loops back on itself     │
│  ├── ExpressionLoweringError  - guard text cannot be lowered         │
│  └── SolverFailureError       - solver internal failure              │
└──────────────────────────────────────────────────────────────────────┘

Structural failures (not-found, malformed model) escalate to the caller.
Per-branch failures (``ExpressionLoweringError``, an UNSAT or UNKNOWN
solve) are caught by the synthesis loop and recorded as data.

Model problems found by :meth:`ctestsynth.entities.EntityModel.validate`
are *not* raised; they are returned as a list of :class:`Issue` records.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, unique
from typing import Optional, Sequence


# ═══════════════════════════════════════════════════════════════════════════════
# EXCEPTIONS
# ═══════════════════════════════════════════════════════════════════════════════

class CTestSynthError(Exception):
    """Base class for every error raised by this package."""


class NotFoundError(CTestSynthError):
    """A named resource does not exist."""

    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} not found: {name!r}")


class SourceFileNotFoundError(NotFoundError):
    def __init__(self, path: str) -> None:
        super().__init__("source file", str(path))
        self.path = str(path)


class FunctionNotFoundError(NotFoundError):
    def __init__(self, name: str) -> None:
        super().__init__("function", name)


class EntityNotFoundError(NotFoundError):
    pass


class ModelError(CTestSynthError):
    """The entity graph is structurally unusable (e.g. a struct contains itself)."""


class TypedefCycleError(CTestSynthError):
    """A typedef resolution chain revisits an alias."""

    def __init__(self, chain: Sequence[str]) -> None:
        self.chain = list(chain)
        super().__init__("typedef cycle: " + " -> ".join(self.chain))


class ExpressionLoweringError(CTestSynthError):
    """A condition expression could not be parsed or translated."""

    def __init__(self, expression: str, reason: str) -> None:
        self.expression = expression
        self.reason = reason
        super().__init__(f"cannot lower {expression!r}: {reason}")


class SolverFailureError(CTestSynthError):
    """The SMT backend failed internally.

    Distinct from an infeasible constraint set, which is reported as
    :attr:`ctestsynth.smt_engine.SolveStatus.UNSATISFIABLE`.
    """


# ═══════════════════════════════════════════════════════════════════════════════
# MODEL ISSUES
# ═══════════════════════════════════════════════════════════════════════════════

@unique
class IssueSeverity(Enum):
    ERROR = "error"
    WARNING = "warning"

    def is_error(self) -> bool:
        return self is IssueSeverity.ERROR


@unique
class IssueKind(Enum):
    """Categories reported by entity-model validation."""

    DUPLICATE_NAME = "duplicate-name"
    UNRESOLVED_TYPE = "unresolved-type"
    UNRESOLVED_REFERENCE = "unresolved-reference"
    UNKNOWN_CALLEE = "unknown-callee"
    ORPHANED_DEPENDENCY = "orphaned-dependency"
    SELF_CONTAINMENT = "self-containment"
    TYPEDEF_CYCLE = "typedef-cycle"
    ENUM_VALUE = "enum-value"
    LAYOUT = "layout"


@dataclass(frozen=True)
class Issue:
    """One finding from :meth:`EntityModel.validate`."""

    kind: IssueKind
    severity: IssueSeverity
    message: str
    entity: Optional[str] = None
    file: Optional[str] = None
    line: Optional[int] = None

    def __str__(self) -> str:
        loc = ""
        if self.file:
            loc = f"{self.file}:{self.line or 0}: "
        return f"{loc}{self.severity.value}: {self.message} [{self.kind.value}]"
