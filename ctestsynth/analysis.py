"""
ctestsynth.analysis
===================

The query surface: one :class:`AnalysisSession` per loaded translation
unit.  The session owns the typedef registry, the SMT engine and the
per-function caches, and threads them explicitly into every component.

Typical usage::

    from ctestsynth.analysis import AnalysisSession

    session = AnalysisSession.open("clamp.json")
    result = session.synthesize_for_coverage("clamp", 1.0)
    for case in result.test_cases:
        print(case.branch_id, dict(case.values))

Unknown function names raise :class:`FunctionNotFoundError` before any
analysis is done.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Union

from .ast_model import AstNode, AstProvider, JsonAstProvider
from .callgraph import CallGraph, CallGraphBuilder, NodeKind
from .config import SynthesisConfig
from .constraints import ConstraintExtractor, VariableConstraint
from .ctrlflow_graph import (
    BranchAnalysisResult,
    BranchAnalyzer,
    ControlFlowPath,
    FunctionComplexity,
    ParameterClassifier,
    find_paths_covering_branches,
)
from .dependency_graph import IncludeDependencyGraph, TypeDependencyGraph
from .entities import EntityModel, Function
from .errors import (
    EntityNotFoundError,
    Issue,
    IssueKind,
    IssueSeverity,
    ModelError,
)
from .smt_engine import SmtEngine, SolveResult
from .synthesis import CancellationToken, CoverageSynthesizer, SynthesisResult
from .typedef_registry import TypedefRegistry

logger = logging.getLogger(__name__)


class AnalysisSession:
    """Analysis and synthesis over one entity model.

    Parameters
    ----------
    model : EntityModel
    bodies : mapping of function name to body
    registry : TypedefRegistry, optional
        Created for the model's ABI when omitted.  The model's own
        typedefs are registered into it either way.
    engine : SmtEngine, optional
    config : SynthesisConfig, optional
    classifier : ParameterClassifier, optional
        Replaces the default parameter-direction heuristic.
    """

    def __init__(self, model: EntityModel, bodies: Optional[Mapping[str, AstNode]] = None,
                 registry: Optional[TypedefRegistry] = None,
                 engine: Optional[SmtEngine] = None,
                 config: Optional[SynthesisConfig] = None,
                 classifier: Optional[ParameterClassifier] = None) -> None:
        self.model = model
        self.bodies: Dict[str, AstNode] = dict(bodies or {})
        self.config = config or SynthesisConfig()
        self.registry = registry if registry is not None else TypedefRegistry(model.abi)
        model.register_typedefs(self.registry)
        self.engine = engine or SmtEngine(self.config.solver_timeout_ms, self.registry,
                                          symbols=model.constants())
        self.extractor = ConstraintExtractor(self.registry, model,
                                             fold_loop_guards=self.config.fold_loop_guards)
        self.analyzer = BranchAnalyzer(classifier, self.config.max_paths)

        self._lock = threading.RLock()
        self._branch_cache: Dict[str, BranchAnalysisResult] = {}
        self._constraint_cache: Dict[str, Dict[str, VariableConstraint]] = {}
        self._call_graph: Optional[CallGraph] = None

    @classmethod
    def open(cls, path: Union[str, Path], provider: Optional[AstProvider] = None,
             timeout: Optional[float] = None, **kwargs) -> "AnalysisSession":
        """Load *path* through *provider* and start a session on it.

        A missing file raises :class:`SourceFileNotFoundError` here, before
        any analysis runs.
        """
        own_provider = provider is None
        provider = provider or JsonAstProvider()
        try:
            unit = provider.load(path).result(timeout)
        finally:
            if own_provider:
                provider.close()
        logger.info("opened %s: %d functions", unit.path, len(unit.model.functions()))
        return cls(unit.model, unit.bodies, **kwargs)

    # ----- lookup -----------------------------------------------------------

    def function(self, name: str) -> Function:
        return self.model.get_function(name)

    def body(self, name: str) -> AstNode:
        fn = self.function(name)
        body = self.bodies.get(fn.name)
        if body is None:
            raise EntityNotFoundError("function body", name)
        return body

    # ----- per-function analysis --------------------------------------------

    def analyze_branches(self, name: str) -> BranchAnalysisResult:
        with self._lock:
            cached = self._branch_cache.get(name)
            if cached is None:
                cached = self.analyzer.analyze(self.function(name), self.body(name))
                self._branch_cache[name] = cached
            return cached

    def analyze_function_complexity(self, name: str) -> FunctionComplexity:
        return self.analyze_branches(name).complexity

    def find_paths_covering_branches(self, name: str,
                                     branch_ids: Iterable[int]) -> List[ControlFlowPath]:
        return find_paths_covering_branches(self.analyze_branches(name), branch_ids)

    def extract_constraints(self, name: str) -> Dict[str, VariableConstraint]:
        with self._lock:
            cached = self._constraint_cache.get(name)
            if cached is None:
                fn = self.function(name)
                cached = self.extractor.extract(fn, self.bodies.get(fn.name))
                self._constraint_cache[name] = cached
            return dict(cached)

    def variable_types(self, name: str) -> Dict[str, str]:
        return self.extractor.solver_types(self.function(name))

    # ----- call graph -------------------------------------------------------

    def call_graph(self) -> CallGraph:
        with self._lock:
            if self._call_graph is None:
                self._call_graph = CallGraphBuilder(self.model).build(self.bodies)
            return self._call_graph

    def build_call_graph(self, root: str, max_depth: int = -1) -> CallGraph:
        self.function(root)
        return self.call_graph().subgraph(root, max_depth)

    def find_call_paths(self, root: str, max_depth: int = -1) -> List[List[str]]:
        self.function(root)
        return self.call_graph().call_paths(root, max_depth)

    # ----- synthesis --------------------------------------------------------

    def synthesize_for_coverage(self, name: str, target_coverage: Optional[float] = None,
                                cancel: Optional[CancellationToken] = None) -> SynthesisResult:
        analysis = self.analyze_branches(name)
        synthesizer = CoverageSynthesizer(self.engine, self.config)
        return synthesizer.run(analysis, self.extract_constraints(name),
                               self.variable_types(name), target_coverage, cancel)

    def synthesize_for_expression(self, expression: str, name: str) -> SolveResult:
        return self.engine.find_values_for_expression(
            expression, self.variable_types(name), self.extract_constraints(name))

    def find_values_for_outputs(self, name: str, expected_outputs: Mapping) -> SolveResult:
        return self.engine.find_values_for_outputs(
            self.extract_constraints(name), self.variable_types(name), expected_outputs)

    def synthesize_for_call_graph(self, root: str, max_depth: int = 3,
                                  target_coverage: Optional[float] = None,
                                  cancel: Optional[CancellationToken] = None
                                  ) -> Dict[str, SynthesisResult]:
        """Coverage synthesis for every defined function reachable from *root*."""
        results: Dict[str, SynthesisResult] = {}
        for node in self.build_call_graph(root, max_depth).nodes.values():
            if node.kind is not NodeKind.FUNCTION or node.name not in self.bodies:
                continue
            if cancel is not None and cancel.is_cancelled:
                break
            results[node.name] = self.synthesize_for_coverage(node.name, target_coverage,
                                                              cancel)
        return results

    # ----- whole-unit queries -----------------------------------------------

    def type_dependencies(self) -> TypeDependencyGraph:
        return TypeDependencyGraph.build(self.model, self.registry)

    def include_dependencies(self) -> IncludeDependencyGraph:
        return IncludeDependencyGraph.build(self.model)

    def validate(self) -> List[Issue]:
        """Model issues plus advisory layout findings."""
        issues = self.model.validate(self.registry)
        for aggregate in self.model.aggregates():
            try:
                findings = self.model.layout_warnings(aggregate, self.registry)
            except ModelError as exc:
                logger.debug("no layout for %s: %s", aggregate.name, exc)
                continue
            for text in findings:
                issues.append(Issue(IssueKind.LAYOUT, IssueSeverity.WARNING, text,
                                    aggregate.name, aggregate.file, aggregate.line))
        return issues
