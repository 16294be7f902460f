"""
ctestsynth.base_types
=====================

The closed set of C arithmetic base types, their target-ABI sizes and
alignments, numeric bounds, and the solver sort each one maps to.

Every question of the form "what kind of number is ``unsigned long``?" is
answered here by table lookup on a :class:`BaseType` member.  Type
spellings are normalised by C declaration-specifier rules (qualifiers and
storage classes dropped, ``long`` counted, ``signed``/``unsigned`` folded
in), never by substring matching.

Typedef names such as ``uint8_t`` are *not* base types; they live in
:class:`ctestsynth.typedef_registry.TypedefRegistry` and resolve down to
one of the members below.

Public API
----------
    BaseType          - closed enumeration of C base types
    SortKind          - INT / REAL / BOOL solver sorts
    TargetABI         - size/alignment parameters of the target
    LP64, ILP32       - the two stock ABIs
    lookup_base_type  - normalise a spelling to a BaseType
    sort_for_type     - solver sort for a spelling (unknown -> INT)
    normalize_type    - canonical spelling without qualifiers
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Tuple


# ---------------------------------------------------------------------------
# Solver sorts
# ---------------------------------------------------------------------------

class SortKind(enum.Enum):
    """Solver sort a C variable is encoded as."""

    INT  = "int"
    REAL = "real"
    BOOL = "bool"


# ---------------------------------------------------------------------------
# Target ABI
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TargetABI:
    """Sizes that differ between targets.

    Attributes
    ----------
    name : str
        Short label, e.g. ``"lp64"``.
    pointer_size : int
        ``sizeof(void *)``.
    long_size : int
        ``sizeof(long)``.
    long_double_size : int
        ``sizeof(long double)``.
    max_alignment : int
        Upper bound applied to every scalar's natural alignment.
    char_is_signed : bool
        Whether plain ``char`` behaves as ``signed char``.
    """

    name: str = "lp64"
    pointer_size: int = 8
    long_size: int = 8
    long_double_size: int = 16
    max_alignment: int = 16
    char_is_signed: bool = True


LP64 = TargetABI()
ILP32 = TargetABI(
    name="ilp32",
    pointer_size=4,
    long_size=4,
    long_double_size=12,
    max_alignment=4,
)


# ---------------------------------------------------------------------------
# Base types
# ---------------------------------------------------------------------------

class BaseType(enum.Enum):
    """C arithmetic/pointer base types.  Values are canonical spellings."""

    BOOL       = "_Bool"
    CHAR       = "char"
    SCHAR      = "signed char"
    UCHAR      = "unsigned char"
    SHORT      = "short"
    USHORT     = "unsigned short"
    INT        = "int"
    UINT       = "unsigned int"
    LONG       = "long"
    ULONG      = "unsigned long"
    LONGLONG   = "long long"
    ULONGLONG  = "unsigned long long"
    FLOAT      = "float"
    DOUBLE     = "double"
    LONGDOUBLE = "long double"
    POINTER    = "void *"
    VOID       = "void"

    # ----- classification ---------------------------------------------------

    @property
    def is_integer(self) -> bool:
        return self in _INTEGER_TYPES

    @property
    def is_floating(self) -> bool:
        return self in (BaseType.FLOAT, BaseType.DOUBLE, BaseType.LONGDOUBLE)

    @property
    def is_arithmetic(self) -> bool:
        return self.is_integer or self.is_floating

    @property
    def sort(self) -> SortKind:
        return _SORTS[self]

    def is_signed(self, abi: TargetABI = LP64) -> bool:
        if self is BaseType.CHAR:
            return abi.char_is_signed
        return self in _SIGNED_TYPES

    # ----- layout -----------------------------------------------------------

    def size(self, abi: TargetABI = LP64) -> int:
        if self is BaseType.LONG or self is BaseType.ULONG:
            return abi.long_size
        if self is BaseType.POINTER:
            return abi.pointer_size
        if self is BaseType.LONGDOUBLE:
            return abi.long_double_size
        return _FIXED_SIZES[self]

    def alignment(self, abi: TargetABI = LP64) -> int:
        return max(1, min(self.size(abi), abi.max_alignment))

    def bit_width(self, abi: TargetABI = LP64) -> int:
        if self is BaseType.BOOL:
            return 1
        return self.size(abi) * 8

    # ----- bounds -----------------------------------------------------------

    def bounds(self, abi: TargetABI = LP64) -> Optional[Tuple[int, int]]:
        """Inclusive integer range, or ``None`` for non-integer types."""
        if not self.is_integer:
            return None
        if self is BaseType.BOOL:
            return (0, 1)
        bits = self.bit_width(abi)
        if self.is_signed(abi):
            return (-(1 << (bits - 1)), (1 << (bits - 1)) - 1)
        return (0, (1 << bits) - 1)


_INTEGER_TYPES: FrozenSet[BaseType] = frozenset({
    BaseType.BOOL, BaseType.CHAR, BaseType.SCHAR, BaseType.UCHAR,
    BaseType.SHORT, BaseType.USHORT, BaseType.INT, BaseType.UINT,
    BaseType.LONG, BaseType.ULONG, BaseType.LONGLONG, BaseType.ULONGLONG,
})

_SIGNED_TYPES: FrozenSet[BaseType] = frozenset({
    BaseType.SCHAR, BaseType.SHORT, BaseType.INT, BaseType.LONG,
    BaseType.LONGLONG, BaseType.FLOAT, BaseType.DOUBLE, BaseType.LONGDOUBLE,
})

_FIXED_SIZES: Dict[BaseType, int] = {
    BaseType.BOOL: 1,
    BaseType.CHAR: 1,
    BaseType.SCHAR: 1,
    BaseType.UCHAR: 1,
    BaseType.SHORT: 2,
    BaseType.USHORT: 2,
    BaseType.INT: 4,
    BaseType.UINT: 4,
    BaseType.LONGLONG: 8,
    BaseType.ULONGLONG: 8,
    BaseType.FLOAT: 4,
    BaseType.DOUBLE: 8,
    BaseType.VOID: 1,
}

_SORTS: Dict[BaseType, SortKind] = {
    BaseType.BOOL: SortKind.BOOL,
    BaseType.CHAR: SortKind.INT,
    BaseType.SCHAR: SortKind.INT,
    BaseType.UCHAR: SortKind.INT,
    BaseType.SHORT: SortKind.INT,
    BaseType.USHORT: SortKind.INT,
    BaseType.INT: SortKind.INT,
    BaseType.UINT: SortKind.INT,
    BaseType.LONG: SortKind.INT,
    BaseType.ULONG: SortKind.INT,
    BaseType.LONGLONG: SortKind.INT,
    BaseType.ULONGLONG: SortKind.INT,
    BaseType.FLOAT: SortKind.REAL,
    BaseType.DOUBLE: SortKind.REAL,
    BaseType.LONGDOUBLE: SortKind.REAL,
    BaseType.POINTER: SortKind.INT,
    BaseType.VOID: SortKind.INT,
}


# ===========================================================================
# SPELLING NORMALISATION
# ===========================================================================

_QUALIFIERS: FrozenSet[str] = frozenset({
    "const", "volatile", "restrict", "__restrict", "__restrict__",
    "__const", "__volatile__", "static", "extern", "register", "inline",
    "__inline", "__inline__", "auto", "_Atomic", "thread_local",
    "_Thread_local",
})

_TAG_KEYWORDS: FrozenSet[str] = frozenset({"struct", "union", "enum"})

_TOKEN_RE = re.compile(r"\*|\[[^\]]*\]|[A-Za-z_][A-Za-z0-9_]*")


def _tokens(spelling: str) -> List[str]:
    return _TOKEN_RE.findall(spelling or "")


def normalize_type(spelling: str) -> str:
    """Drop qualifiers and storage classes, collapse whitespace.

    ``"const unsigned  char * const"`` becomes ``"unsigned char *"``.
    """
    words: List[str] = []
    arrays: List[str] = []
    stars = 0
    for tok in _tokens(spelling):
        if tok in _QUALIFIERS:
            continue
        if tok == "*":
            stars += 1
        elif tok.startswith("["):
            arrays.append(tok.replace(" ", ""))
        else:
            words.append(tok)
    text = " ".join(words)
    if stars:
        text += " " + "*" * stars
    return text + "".join(arrays)


def is_pointer_spelling(spelling: str) -> bool:
    return any(t == "*" for t in _tokens(spelling))


def pointer_depth(spelling: str) -> int:
    return sum(1 for t in _tokens(spelling) if t == "*")


def is_array_spelling(spelling: str) -> bool:
    return any(t.startswith("[") for t in _tokens(spelling))


def strip_tag(spelling: str) -> str:
    """``"struct point"`` -> ``"point"``; other spellings are normalised."""
    toks = [t for t in normalize_type(spelling).split() if t not in _TAG_KEYWORDS]
    return " ".join(toks)


_SPECIFIER_WORDS: FrozenSet[str] = frozenset({
    "signed", "unsigned", "char", "short", "int", "long", "float",
    "double", "void", "_Bool", "bool",
})


def lookup_base_type(spelling: str) -> Optional[BaseType]:
    """Map a declaration-specifier spelling to a :class:`BaseType`.

    Returns ``None`` when the spelling names anything else (a typedef,
    an aggregate, an unknown identifier).  Any ``*`` yields ``POINTER``.
    """
    toks = [t for t in _tokens(spelling) if t not in _QUALIFIERS]
    if not toks:
        return None
    if "*" in toks:
        return BaseType.POINTER
    toks = [t for t in toks if not t.startswith("[")]
    if not toks or any(t not in _SPECIFIER_WORDS for t in toks):
        return None

    n_long = toks.count("long")
    unsigned = "unsigned" in toks
    signed = "signed" in toks
    words = set(toks) - {"signed", "unsigned", "long"}

    if words & {"_Bool", "bool"}:
        return BaseType.BOOL if len(toks) == 1 else None
    if "void" in words:
        return BaseType.VOID if len(toks) == 1 else None
    if "float" in words:
        return BaseType.FLOAT if len(toks) == 1 else None
    if "double" in words:
        if n_long == 1 and not (signed or unsigned):
            return BaseType.LONGDOUBLE
        if n_long == 0 and len(toks) == 1:
            return BaseType.DOUBLE
        return None
    if "char" in words:
        if n_long or "short" in words or "int" in words:
            return None
        if unsigned:
            return BaseType.UCHAR
        if signed:
            return BaseType.SCHAR
        return BaseType.CHAR
    if "short" in words:
        return BaseType.USHORT if unsigned else BaseType.SHORT
    if n_long >= 2:
        return BaseType.ULONGLONG if unsigned else BaseType.LONGLONG
    if n_long == 1:
        return BaseType.ULONG if unsigned else BaseType.LONG
    # "int", "signed", "unsigned", "signed int", "unsigned int"
    return BaseType.UINT if unsigned else BaseType.INT


def sort_for_type(spelling: str) -> SortKind:
    """Solver sort for a *base* type spelling.

    Unrecognised spellings default to :attr:`SortKind.INT`.
    """
    base = lookup_base_type(spelling)
    if base is None:
        return SortKind.INT
    return base.sort
