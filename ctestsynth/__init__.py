"""
ctestsynth — Branch Analysis and Test-Data Synthesis for C
==========================================================

This package models the entities of a parsed C translation unit and
drives an SMT solver to produce inputs that exercise a function's
branches.

Core modules
------------
errors
    Exception hierarchy and validation issues.
base_types
    C builtin types, target ABIs and solver sorts.
expressions
    PEG grammar for C guard expressions and helpers over the parsed tree.
entities
    Functions, aggregates, enums, typedefs, macros, includes and layout.
ast_model
    Normalised function bodies and the JSON translation-unit provider.
typedef_registry
    Thread-safe typedef resolution shared across a session.
constraints
    Per-variable bounds from declared types and loop guards.
callgraph
    Call graph with cycle, SCC and depth-bounded path queries.
dependency_graph
    Type and include dependency graphs.
ctrlflow_graph
    Per-function CFG, branch table, path enumeration and complexity.
smt_engine
    Lowering of constraints and guards to Z3 and model extraction.
synthesis
    The coverage-guided synthesis loop.
config
    Synthesis configuration.
analysis
    :class:`AnalysisSession`, the query surface over one unit.

Quick start
-----------
>>> from ctestsynth import AnalysisSession
>>> session = AnalysisSession.open("clamp.json")          # doctest: +SKIP
>>> result = session.synthesize_for_coverage("clamp", 1.0)  # doctest: +SKIP
>>> [dict(t.values) for t in result.test_cases]             # doctest: +SKIP
[{'x': '-2147483648'}, {'x': '125'}, {'x': '4'}]
"""

from __future__ import annotations

import importlib
import logging
import sys
from typing import TYPE_CHECKING, List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.1.0"
__license__ = "MIT"
__all__: List[str] = []          # populated incrementally below

_log = logging.getLogger(__name__)
_log.addHandler(logging.NullHandler())

# ---------------------------------------------------------------------------
# Internal registry: (module_name, list_of_names_to_import)
# ---------------------------------------------------------------------------

_CORE_MODULES = {
    "errors": [
        "CTestSynthError",
        "NotFoundError",
        "SourceFileNotFoundError",
        "FunctionNotFoundError",
        "EntityNotFoundError",
        "ModelError",
        "TypedefCycleError",
        "ExpressionLoweringError",
        "SolverFailureError",
        "Issue",
        "IssueKind",
        "IssueSeverity",
    ],
    "base_types": [
        "BaseType",
        "SortKind",
        "TargetABI",
        "LP64",
        "ILP32",
    ],
    "expressions": [
        "parse_expression",
    ],
    "entities": [
        "EntityModel",
        "Function",
        "FunctionParameter",
        "Variable",
        "StructDefinition",
        "UnionDefinition",
        "EnumDefinition",
        "TypedefDefinition",
        "MacroDefinition",
        "MemoryLayout",
    ],
    "ast_model": [
        "AstNode",
        "TranslationUnit",
        "JsonAstProvider",
    ],
    "typedef_registry": [
        "TypedefRegistry",
        "TypedefMapping",
    ],
    "constraints": [
        "ConstraintExtractor",
        "VariableConstraint",
    ],
    "callgraph": [
        "CallGraph",
        "CallGraphBuilder",
        "find_cycles",
        "tarjan_scc",
    ],
    "dependency_graph": [
        "TypeDependencyGraph",
        "IncludeDependencyGraph",
    ],
    "ctrlflow_graph": [
        "CFG",
        "CFGBuilder",
        "Branch",
        "BranchAnalyzer",
        "BranchAnalysisResult",
        "ControlFlowPath",
        "FunctionComplexity",
    ],
    "smt_engine": [
        "SmtEngine",
        "SolveResult",
        "SolveStatus",
    ],
    "config": [
        "SynthesisConfig",
    ],
    "synthesis": [
        "CancellationToken",
        "CoverageSynthesizer",
        "SynthesisResult",
        "TestCaseRecord",
    ],
    "analysis": [
        "AnalysisSession",
    ],
}

# ---------------------------------------------------------------------------
# Import helper
# ---------------------------------------------------------------------------

def _import_names(module_rel_name: str, names: List[str]) -> None:
    """Import *names* from a submodule and bind them in the package namespace."""
    fq_name = f"{__name__}.{module_rel_name}"
    try:
        mod = importlib.import_module(fq_name)
    except ImportError as exc:
        raise ImportError(
            f"ctestsynth: required submodule '{module_rel_name}' "
            f"failed to import: {exc}"
        ) from exc

    current_module = sys.modules[__name__]
    for name in names:
        obj = getattr(mod, name, None)
        if obj is None:
            raise AttributeError(f"ctestsynth.{module_rel_name} does not export '{name}'")
        setattr(current_module, name, obj)
        __all__.append(name)

    setattr(current_module, module_rel_name, mod)
    if module_rel_name not in __all__:
        __all__.append(module_rel_name)


for _mod, _names in _CORE_MODULES.items():
    _import_names(_mod, _names)

del _mod, _names


def list_submodules() -> List[str]:
    """Return the names of all core submodules."""
    return sorted(_CORE_MODULES)


__all__ += ["list_submodules", "__version__"]

if TYPE_CHECKING:
    from .analysis import AnalysisSession as AnalysisSession
    from .callgraph import CallGraph as CallGraph
    from .config import SynthesisConfig as SynthesisConfig
    from .ctrlflow_graph import BranchAnalyzer as BranchAnalyzer
    from .entities import EntityModel as EntityModel
    from .smt_engine import SmtEngine as SmtEngine
    from .synthesis import CoverageSynthesizer as CoverageSynthesizer
    from .typedef_registry import TypedefRegistry as TypedefRegistry
