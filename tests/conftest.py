# tests/conftest.py
"""
Shared fixtures: statement-tree builders for JSON translation units and a
few small units used across the test modules.
"""

import copy
import json

import pytest

from ctestsynth.analysis import AnalysisSession
from ctestsynth.ast_model import translation_unit_from_dict


# ---------------------------------------------------------------------------
# Statement builders (JSON shape read by JsonAstProvider)
# ---------------------------------------------------------------------------

def block(*children, line=0):
    return {"kind": "compound", "children": list(children), "line": line}


def if_(condition, then, else_=None, line=0):
    children = [then] if else_ is None else [then, else_]
    return {"kind": "if", "condition": condition, "children": children, "line": line}


def while_(condition, body, line=0):
    return {"kind": "while", "condition": condition, "children": [body], "line": line}


def do_while(condition, body, line=0):
    return {"kind": "do", "condition": condition, "children": [body], "line": line}


def for_(condition, body, line=0):
    return {"kind": "for", "condition": condition, "children": [body], "line": line}


def switch(subject, *children, line=0):
    return {"kind": "switch", "condition": subject, "children": list(children), "line": line}


def case(value, *children, line=0):
    return {"kind": "case", "value": value, "children": list(children), "line": line}


def default(*children, line=0):
    return {"kind": "default", "children": list(children), "line": line}


def ret(text="", line=0):
    return {"kind": "return", "text": text, "line": line}


def brk(line=0):
    return {"kind": "break", "line": line}


def expr(text, *children, line=0):
    return {"kind": "expression", "text": text, "children": list(children), "line": line}


def call(callee, line=0):
    return expr(f"{callee}();", {"kind": "call", "callee": callee, "line": line}, line=line)


def decl(name, type_name="int", init="", line=0):
    return {"kind": "declaration", "name": name, "type": type_name, "text": init, "line": line}


def ternary(condition, then_text, else_text, line=0):
    return {"kind": "ternary", "condition": condition, "line": line,
            "children": [expr(then_text, line=line), expr(else_text, line=line)]}


def function(name, params=(), body=None, return_type="int", line=1, end_line=0, **extra):
    data = {
        "name": name,
        "return_type": return_type,
        "parameters": [{"name": n, "type": t} for n, t in params],
        "line": line,
        "end_line": end_line,
    }
    if body is not None:
        data["body"] = body
    data.update(extra)
    return data


# ---------------------------------------------------------------------------
# Units
# ---------------------------------------------------------------------------

#   int clamp(int x) {
#       if (x < 0) return 0;
#       if (x > 100) return 100;
#       return x;
#   }
CLAMP_UNIT = {
    "file": "clamp.c",
    "functions": [
        function("clamp", [("x", "int")], line=1, end_line=5, body=block(
            if_("x < 0", ret("0", line=2), line=2),
            if_("x > 100", ret("100", line=3), line=3),
            ret("x", line=4),
        )),
    ],
}

#   void f(unsigned char count) { if (count > 255) { hit(); } }
OVERFLOW_UNIT = {
    "file": "overflow.c",
    "functions": [
        function("f", [("count", "unsigned char")], return_type="void", body=block(
            if_("count > 255", call("hit", line=2), line=2),
        )),
        function("hit", return_type="void"),
    ],
}

#   int f(int n) { if (n > 0) return g(n - 1); return 0; }
#   int g(int n) { return f(n); }
#   int main(void) { f(3); printf(); mystery(); }
MUTUAL_UNIT = {
    "file": "mutual.c",
    "functions": [
        function("f", [("n", "int")], line=1, body=block(
            if_("n > 0", block(call("g", line=2), ret("1", line=2)), line=2),
            ret("0", line=3),
        )),
        function("g", [("n", "int")], line=5, body=block(
            call("f", line=6),
            ret("0", line=6),
        )),
        function("main", line=8, body=block(
            call("f", line=9),
            call("printf", line=10),
            call("mystery", line=11),
            ret("0", line=12),
        )),
        function("printf", line=0, is_variadic=True),
    ],
}


def load_unit(data, abi=None):
    data = copy.deepcopy(data)
    if abi is None:
        return translation_unit_from_dict(data, data.get("file", ""))
    return translation_unit_from_dict(data, data.get("file", ""), abi)


def make_session(data, **kwargs):
    unit = load_unit(data)
    return AnalysisSession(unit.model, unit.bodies, **kwargs)


def write_unit(tmp_path, data, name="unit.json"):
    path = tmp_path / name
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clamp_unit():
    return load_unit(CLAMP_UNIT)


@pytest.fixture
def clamp_session():
    return make_session(CLAMP_UNIT)


@pytest.fixture
def overflow_session():
    return make_session(OVERFLOW_UNIT)


@pytest.fixture
def mutual_unit():
    return load_unit(MUTUAL_UNIT)


@pytest.fixture
def clamp_file(tmp_path):
    return write_unit(tmp_path, CLAMP_UNIT, "clamp.json")
