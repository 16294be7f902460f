"""
ctestsynth.config
=================

Tuning knobs for analysis and synthesis, loadable from JSON.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Union

from .errors import CTestSynthError

logger = logging.getLogger(__name__)


@dataclass
class SynthesisConfig:
    """Configuration for the coverage-guided synthesis loop."""
    # Coverage
    target_coverage: float = 0.9

    # Solver
    solver_timeout_ms: int = 5000

    # Loop budget: total solver calls = factor * branch count
    attempt_budget_factor: int = 4

    # Path enumeration
    max_paths: int = 256

    # Constraint extraction
    fold_loop_guards: bool = True

    def validate(self) -> List[str]:
        """Return a list of validation problems (empty if valid)."""
        problems: List[str] = []
        if not 0.0 < self.target_coverage <= 1.0:
            problems.append("target_coverage must be in (0, 1]")
        if self.solver_timeout_ms <= 0:
            problems.append("solver_timeout_ms must be positive")
        if self.attempt_budget_factor < 1:
            problems.append("attempt_budget_factor must be at least 1")
        if self.max_paths < 1:
            problems.append("max_paths must be at least 1")
        return problems

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SynthesisConfig":
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("ignoring unknown config keys: %s", ", ".join(unknown))
        config = cls(**{k: v for k, v in data.items() if k in known})
        problems = config.validate()
        if problems:
            raise CTestSynthError("invalid configuration: " + "; ".join(problems))
        return config

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "SynthesisConfig":
        with Path(path).open("r", encoding="utf-8") as fh:
            return cls.from_dict(json.load(fh))
