"""
ctestsynth.synthesis
====================

Coverage-guided test-data synthesis for one function.

The loop is a small state machine::

    INITIALIZED -> SELECTING_BRANCH -> SOLVING -> RECORDING -> SELECTING_BRANCH ...
                          |
                          +-> DONE

``SELECTING_BRANCH`` picks the lowest-numbered branch that is neither
covered nor settled (infeasible or unknown).  ``SOLVING`` asks the engine
for values that drive execution down each enumerated path through that
branch in turn, stopping at the first satisfiable one; when no path
reaches the branch, the branch condition is solved on its own.  On success
``RECORDING`` stores the assignment and marks every branch of the solved
path covered.  A branch is infeasible only when every attempt was
unsatisfiable.

The run stops when the target coverage is reached, every branch is
settled, the attempt budget (``attempt_budget_factor`` solver calls per
branch) is spent, or the cancellation token is set.  Cancellation is only
looked at in ``SELECTING_BRANCH``, never while a solve is running.  Not
reaching the target is a normal outcome, reported in the result.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .config import SynthesisConfig
from .ctrlflow_graph import Branch, BranchAnalysisResult, ControlFlowPath
from .smt_engine import SmtEngine, SolveResult, SolveStatus

logger = logging.getLogger(__name__)


class SynthesisState(enum.Enum):
    INITIALIZED      = "initialized"
    SELECTING_BRANCH = "selecting-branch"
    SOLVING          = "solving"
    RECORDING        = "recording"
    DONE             = "done"


class CancellationToken:
    """Thread-safe flag a caller sets to stop a synthesis run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class TestCaseRecord:
    """One synthesised test input, as handed to test-code generators."""

    __test__ = False

    function_name: str
    branch_id: int
    values: Mapping[str, str]
    covered_branch_count: int
    total_branch_count: int
    path_id: Optional[int] = None
    covered_branch_ids: Tuple[int, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "function": self.function_name,
            "branch_id": self.branch_id,
            "values": dict(self.values),
            "covered_branch_count": self.covered_branch_count,
            "total_branch_count": self.total_branch_count,
            "path_id": self.path_id,
            "covered_branch_ids": list(self.covered_branch_ids),
        }


@dataclass
class SynthesisResult:
    function: str
    target_coverage: float
    achieved_coverage: float = 0.0
    test_cases: List[TestCaseRecord] = field(default_factory=list)
    covered_branch_ids: List[int] = field(default_factory=list)
    infeasible_branch_ids: List[int] = field(default_factory=list)
    unknown_branch_ids: List[int] = field(default_factory=list)
    attempted_branch_ids: List[int] = field(default_factory=list)
    total_branches: int = 0
    branches: List[Branch] = field(default_factory=list)
    cancelled: bool = False
    budget_exhausted: bool = False
    solver_calls: int = 0

    @property
    def target_reached(self) -> bool:
        return self.achieved_coverage >= self.target_coverage

    def to_dict(self) -> Dict[str, Any]:
        return {
            "function": self.function,
            "target_coverage": self.target_coverage,
            "achieved_coverage": self.achieved_coverage,
            "total_branches": self.total_branches,
            "covered_branch_ids": list(self.covered_branch_ids),
            "infeasible_branch_ids": list(self.infeasible_branch_ids),
            "unknown_branch_ids": list(self.unknown_branch_ids),
            "attempted_branch_ids": list(self.attempted_branch_ids),
            "cancelled": self.cancelled,
            "budget_exhausted": self.budget_exhausted,
            "solver_calls": self.solver_calls,
            "test_cases": [t.to_dict() for t in self.test_cases],
        }


class CoverageSynthesizer:
    """Drives the engine over the branches of one analysed function."""

    def __init__(self, engine: Optional[SmtEngine] = None,
                 config: Optional[SynthesisConfig] = None) -> None:
        self.config = config or SynthesisConfig()
        for problem in self.config.validate():
            logger.warning("SynthesisConfig: %s", problem)
        self.engine = engine or SmtEngine(timeout_ms=self.config.solver_timeout_ms)
        self.state = SynthesisState.INITIALIZED

    # ----- solving one branch -----------------------------------------------

    def solve_branch(self, analysis: BranchAnalysisResult, branch_id: int,
                     constraints, variable_types: Mapping,
                     limit: Optional[int] = None
                     ) -> Tuple[SolveResult, Optional[ControlFlowPath], int]:
        """Solve for *branch_id*; returns ``(result, path, solver_calls)``.

        *path* is the enumerated path whose condition was satisfied, or
        ``None`` when the branch condition was solved on its own.
        """
        branch = analysis.branch(branch_id)
        candidates: List[Tuple[str, Optional[ControlFlowPath]]] = [
            (p.condition, p) for p in analysis.paths_through(branch_id)
        ]
        if not candidates:
            candidates.append((branch.condition, None))

        calls = 0
        unknown_reason = ""
        for condition, path in candidates:
            if limit is not None and calls >= limit:
                return (SolveResult(SolveStatus.UNKNOWN, None, "attempt budget exhausted"),
                        None, calls)
            result = self.engine.solve(constraints, variable_types, [condition])
            calls += 1
            if result.is_sat:
                return result, path, calls
            if result.status is SolveStatus.UNKNOWN:
                unknown_reason = result.reason

        if unknown_reason and candidates[-1][1] is not None:
            # Another condition on the paths may be the one that failed.
            if limit is None or calls < limit:
                result = self.engine.solve(constraints, variable_types, [branch.condition])
                calls += 1
                if result.status is not SolveStatus.UNSATISFIABLE:
                    return result, None, calls
        if unknown_reason:
            return SolveResult(SolveStatus.UNKNOWN, None, unknown_reason), None, calls
        return SolveResult(SolveStatus.UNSATISFIABLE, None, "unsatisfiable"), None, calls

    # ----- the loop ---------------------------------------------------------

    def run(self, analysis: BranchAnalysisResult, constraints,
            variable_types: Mapping, target_coverage: Optional[float] = None,
            cancel: Optional[CancellationToken] = None) -> SynthesisResult:
        target = self.config.target_coverage if target_coverage is None else target_coverage
        if not 0.0 < target <= 1.0:
            raise ValueError(f"target coverage must be in (0, 1], got {target}")

        self.state = SynthesisState.INITIALIZED
        branches = [dataclasses.replace(b) for b in analysis.branches]
        by_id = {b.branch_id: b for b in branches}
        candidates = sorted((b for b in branches if b.is_reachable),
                            key=lambda b: b.branch_id)
        total = len(candidates)
        budget = self.config.attempt_budget_factor * max(total, 1)
        result = SynthesisResult(analysis.function, target, total_branches=total,
                                 branches=branches)
        covered: Set[int] = set()
        settled: Set[int] = set()

        self.state = SynthesisState.SELECTING_BRANCH
        while True:
            if cancel is not None and cancel.is_cancelled:
                result.cancelled = True
                logger.info("%s: synthesis cancelled", analysis.function)
                break
            if total == 0 or len(covered) / total >= target:
                break
            branch = next((b for b in candidates
                           if b.branch_id not in covered and b.branch_id not in settled),
                          None)
            if branch is None:
                break
            if result.solver_calls >= budget:
                result.budget_exhausted = True
                logger.info("%s: attempt budget of %d solver calls spent",
                            analysis.function, budget)
                break

            self.state = SynthesisState.SOLVING
            logger.debug("%s: solving branch %d: %s", analysis.function,
                         branch.branch_id, branch.condition)
            solved, path, calls = self.solve_branch(
                analysis, branch.branch_id, constraints, variable_types,
                limit=budget - result.solver_calls)
            result.solver_calls += calls
            result.attempted_branch_ids.append(branch.branch_id)

            self.state = SynthesisState.RECORDING
            self._record(result, branch, solved, path, by_id, covered, settled, total)
            self.state = SynthesisState.SELECTING_BRANCH

        self.state = SynthesisState.DONE
        result.covered_branch_ids = sorted(covered)
        result.achieved_coverage = len(covered) / total if total else 1.0
        logger.info("%s: coverage %.2f (%d/%d), %d test cases, %d infeasible, %d unknown",
                    analysis.function, result.achieved_coverage, len(covered), total,
                    len(result.test_cases), len(result.infeasible_branch_ids),
                    len(result.unknown_branch_ids))
        return result

    def _record(self, result: SynthesisResult, branch: Branch, solved: SolveResult,
                path: Optional[ControlFlowPath], by_id: Dict[int, Branch],
                covered: Set[int], settled: Set[int], total: int) -> None:
        if solved.is_sat:
            taken: Sequence[int] = path.branch_ids if path is not None else (branch.branch_id,)
            for bid in taken:
                b = by_id[bid]
                if b.is_reachable and bid not in covered:
                    covered.add(bid)
                    b.is_covered = True
                    if bid in result.unknown_branch_ids:
                        result.unknown_branch_ids.remove(bid)
                        settled.discard(bid)
            result.test_cases.append(TestCaseRecord(
                function_name=result.function,
                branch_id=branch.branch_id,
                values=solved.assignment,
                covered_branch_count=len(covered),
                total_branch_count=total,
                path_id=path.path_id if path is not None else None,
                covered_branch_ids=tuple(taken),
            ))
            logger.debug("%s: branch %d covered by %r", result.function,
                         branch.branch_id, solved.assignment)
        elif solved.is_unsat:
            settled.add(branch.branch_id)
            branch.is_feasible = False
            result.infeasible_branch_ids.append(branch.branch_id)
            logger.debug("%s: branch %d is infeasible", result.function, branch.branch_id)
        else:
            settled.add(branch.branch_id)
            result.unknown_branch_ids.append(branch.branch_id)
            logger.warning("%s: branch %d left unknown: %s", result.function,
                           branch.branch_id, solved.reason)
