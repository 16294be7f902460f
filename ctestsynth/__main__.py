#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
ctestsynth/__main__.py
======================

Command-line front end.

Usage
-----
    python -m ctestsynth <command> [options] <unit.json> ...

Commands
--------
    validate     Report model issues (duplicates, unresolved types, cycles, layout)
    complexity   Complexity metrics of one function
    callgraph    Call graph of the unit, or of one root to a depth
    branches     Branch table (and optionally paths / CFG) of one function
    synthesize   Coverage-guided test-data synthesis for one function
    solve        Values satisfying an expression in one function's scope

The input is a translation unit serialised as JSON (see
:mod:`ctestsynth.ast_model`).  Exit status is 0 on success, 1 when
``validate`` finds errors, and 2 for a missing file, an unknown function
or a structurally broken model.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import textwrap
from typing import Optional, Sequence, TextIO

from . import __version__
from .analysis import AnalysisSession
from .callgraph import callgraph_summary
from .config import SynthesisConfig
from .ctrlflow_graph import cfg_summary
from .errors import CTestSynthError, Issue
from .typedef_registry import TypedefRegistry

__description__ = "ctestsynth: C branch analysis and constraint-based test-data synthesis"

logger = logging.getLogger("ctestsynth")


# ═══════════════════════════════════════════════════════════════════════════
# TERMINAL OUTPUT
# ═══════════════════════════════════════════════════════════════════════════

class _Colors:
    """ANSI color codes, disabled when not writing to a TTY."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled

    def _code(self, code: str) -> str:
        return code if self.enabled else ""

    @property
    def RESET(self) -> str:
        return self._code("\033[0m")

    @property
    def BOLD(self) -> str:
        return self._code("\033[1m")

    @property
    def RED(self) -> str:
        return self._code("\033[31m")

    @property
    def YELLOW(self) -> str:
        return self._code("\033[33m")


def _get_colors(stream: TextIO = sys.stderr) -> _Colors:
    is_tty = hasattr(stream, "isatty") and stream.isatty()
    return _Colors(enabled=is_tty and os.environ.get("NO_COLOR") is None)


def _print_issue(issue: Issue, colors: _Colors, stream: TextIO) -> None:
    loc = ""
    if issue.file:
        loc = f"{issue.file}:{issue.line}: " if issue.line else f"{issue.file}: "
    if issue.severity.is_error():
        tag = f"{colors.RED}error:{colors.RESET}"
    else:
        tag = f"{colors.YELLOW}warning:{colors.RESET}"
    stream.write(f"{colors.BOLD}{loc}{colors.RESET}{tag} {issue.message} "
                 f"[{issue.kind.value}]\n")


def _dump_json(data, stream: TextIO) -> None:
    json.dump(data, stream, indent=2, sort_keys=False)
    stream.write("\n")


# ═══════════════════════════════════════════════════════════════════════════
# COMMANDS
# ═══════════════════════════════════════════════════════════════════════════

def _open_session(args: argparse.Namespace) -> AnalysisSession:
    registry = TypedefRegistry.load(args.typedefs) if args.typedefs else None
    config = SynthesisConfig.from_json(args.config) if args.config else None
    return AnalysisSession.open(args.input, registry=registry, config=config)


def cmd_validate(args: argparse.Namespace) -> int:
    session = _open_session(args)
    issues = session.validate()
    colors = _get_colors(sys.stdout)
    for issue in issues:
        _print_issue(issue, colors, sys.stdout)
    errors = sum(1 for i in issues if i.severity.is_error())
    sys.stdout.write(f"{errors} error(s), {len(issues) - errors} warning(s)\n")
    return 1 if errors else 0


def cmd_complexity(args: argparse.Namespace) -> int:
    session = _open_session(args)
    names = args.functions or [f.name for f in session.model.defined_functions()]
    report = {name: session.analyze_function_complexity(name).to_dict() for name in names}
    if args.json:
        _dump_json(report, sys.stdout)
        return 0
    for name, metrics in report.items():
        sys.stdout.write(f"{name}: " + ", ".join(f"{k}={v}" for k, v in metrics.items()) + "\n")
    return 0


def cmd_callgraph(args: argparse.Namespace) -> int:
    session = _open_session(args)
    if args.root:
        graph = session.build_call_graph(args.root, args.depth)
    else:
        graph = session.call_graph()
    if args.dot:
        sys.stdout.write(graph.to_dot(title=args.root) + "\n")
    elif args.json:
        _dump_json(graph.to_dict(), sys.stdout)
    else:
        sys.stdout.write(callgraph_summary(graph) + "\n")
    return 0


def cmd_branches(args: argparse.Namespace) -> int:
    session = _open_session(args)
    result = session.analyze_branches(args.function)
    if args.dot:
        sys.stdout.write(result.cfg.to_dot() + "\n")
        return 0
    if args.json:
        _dump_json({
            "function": result.function,
            "complexity": result.complexity.to_dict(),
            "branches": [b.to_dict() for b in result.branches],
            "paths": [{"path_id": p.path_id, "branch_ids": list(p.branch_ids),
                       "condition": p.condition} for p in result.paths],
            "parameters": {k: v.value for k, v in result.parameter_directions.items()},
        }, sys.stdout)
        return 0
    sys.stdout.write(cfg_summary(result) + "\n")
    if args.paths:
        for p in result.paths:
            sys.stdout.write(f"  path {p.path_id}: {p.condition}\n")
    return 0


def cmd_synthesize(args: argparse.Namespace) -> int:
    session = _open_session(args)
    result = session.synthesize_for_coverage(args.function, args.coverage)
    if args.json:
        _dump_json(result.to_dict(), sys.stdout)
        return 0
    sys.stdout.write(
        f"{result.function}: coverage {result.achieved_coverage:.0%} "
        f"({len(result.covered_branch_ids)}/{result.total_branches} branches)\n")
    for case in result.test_cases:
        values = ", ".join(f"{k}={v}" for k, v in case.values.items())
        sys.stdout.write(f"  branch {case.branch_id}: {values}\n")
    if result.infeasible_branch_ids:
        sys.stdout.write(f"  infeasible: {result.infeasible_branch_ids}\n")
    if result.unknown_branch_ids:
        sys.stdout.write(f"  unknown: {result.unknown_branch_ids}\n")
    return 0


def cmd_solve(args: argparse.Namespace) -> int:
    session = _open_session(args)
    result = session.synthesize_for_expression(args.expression, args.function)
    if args.json:
        _dump_json({
            "status": result.status.value,
            "values": result.assignment.to_dict() if result.assignment else None,
            "reason": result.reason,
        }, sys.stdout)
        return 0
    if result.is_sat:
        values = ", ".join(f"{k}={v}" for k, v in result.assignment.items())
        sys.stdout.write(f"sat: {values}\n")
    else:
        sys.stdout.write(f"{result.status.value}: {result.reason}\n")
    return 0


# ═══════════════════════════════════════════════════════════════════════════
# ARGUMENT PARSER
# ═══════════════════════════════════════════════════════════════════════════

def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("input", help="Translation unit as JSON")
    p.add_argument("--typedefs", metavar="FILE",
                   help="Typedef registry JSON to start from")
    p.add_argument("--config", metavar="FILE", help="Synthesis configuration JSON")
    p.add_argument("--json", action="store_true", default=False,
                   help="Emit machine-readable JSON")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the ctestsynth CLI."""
    parser = argparse.ArgumentParser(
        prog="ctestsynth",
        description=__description__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              %(prog)s validate unit.json
              %(prog)s complexity unit.json clamp
              %(prog)s callgraph unit.json --root main --depth 2 --dot
              %(prog)s branches unit.json clamp --paths
              %(prog)s synthesize unit.json clamp --coverage 1.0
              %(prog)s solve unit.json clamp "x > 10 && x < 20"
        """),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="More logging (-v info, -vv debug)")

    subparsers = parser.add_subparsers(dest="command", title="commands",
                                       description="available commands",
                                       metavar="<command>")

    p = subparsers.add_parser("validate", help="Report model issues")
    _add_common(p)
    p.set_defaults(func=cmd_validate)

    p = subparsers.add_parser("complexity", help="Complexity metrics")
    _add_common(p)
    p.add_argument("functions", nargs="*", help="Functions (default: all defined)")
    p.set_defaults(func=cmd_complexity)

    p = subparsers.add_parser("callgraph", help="Call graph")
    _add_common(p)
    p.add_argument("--root", help="Restrict to functions reachable from ROOT")
    p.add_argument("--depth", type=int, default=-1,
                   help="Maximum call depth from ROOT (default: unlimited)")
    p.add_argument("--dot", action="store_true", default=False, help="Emit Graphviz DOT")
    p.set_defaults(func=cmd_callgraph)

    p = subparsers.add_parser("branches", help="Branch table of a function")
    _add_common(p)
    p.add_argument("function")
    p.add_argument("--paths", action="store_true", default=False,
                   help="Also list enumerated paths")
    p.add_argument("--dot", action="store_true", default=False, help="Emit the CFG as DOT")
    p.set_defaults(func=cmd_branches)

    p = subparsers.add_parser("synthesize", help="Coverage-guided synthesis")
    _add_common(p)
    p.add_argument("function")
    p.add_argument("--coverage", type=float, default=None,
                   help="Target branch coverage in (0, 1]")
    p.set_defaults(func=cmd_synthesize)

    p = subparsers.add_parser("solve", help="Solve an expression in a function's scope")
    _add_common(p)
    p.add_argument("function")
    p.add_argument("expression")
    p.set_defaults(func=cmd_solve)

    return parser


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0
    _configure_logging(args.verbose)

    colors = _get_colors()
    try:
        return args.func(args)
    except KeyboardInterrupt:
        sys.stderr.write("\nInterrupted.\n")
        return 130
    except (CTestSynthError, ValueError) as e:
        logger.debug("%s failed", args.command, exc_info=True)
        sys.stderr.write(f"{colors.RED}{colors.BOLD}error:{colors.RESET} {e}\n")
        return 2


if __name__ == "__main__":
    sys.exit(main())
