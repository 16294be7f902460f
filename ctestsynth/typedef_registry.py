"""
ctestsynth.typedef_registry
===========================

Session-scoped registry of typedef names.

A :class:`TypedefRegistry` maps a user type name (``UINT8``, ``size_t``,
``counter_t``) to the spelling it aliases, plus optional explicit bounds.
It is created once per analysis session and passed explicitly to every
component that resolves types.

Bounds and sizes are derived lazily: registering ``a -> b`` before ``b``
is known is fine, and the derived :class:`TypedefMapping` is computed on
first lookup and cached until the next write.

Resolution chains follow aliases one hop at a time.  A chain without a
cycle stops after at most ``len(registry)`` hops; a cycle raises
:class:`~ctestsynth.errors.TypedefCycleError`.

Concurrency
-----------
Reads take a shared lock, writes an exclusive one.  Any number of threads
may resolve names while no writer is active.

Persistence
-----------
:meth:`TypedefRegistry.save` / :meth:`TypedefRegistry.load` use a JSON
document with three lists, split by the ``source`` of each mapping::

    {"version": "1.0",
     "predefined": [...], "detected": [...], "learned": [...]}
"""

from __future__ import annotations

import json
import logging
import re
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .base_types import LP64, BaseType, TargetABI, lookup_base_type, normalize_type
from .constraints import VariableConstraint
from .errors import TypedefCycleError

logger = logging.getLogger(__name__)

CONFIG_VERSION = "1.0"

SOURCE_PREDEFINED = "Predefined"
SOURCE_DETECTED = "Detected"
SOURCE_LEARNED = "Learned"

_BUILTIN_ALIASES: Tuple[Tuple[str, str], ...] = (
    ("int8_t", "signed char"),
    ("uint8_t", "unsigned char"),
    ("int16_t", "short"),
    ("uint16_t", "unsigned short"),
    ("int32_t", "int"),
    ("uint32_t", "unsigned int"),
    ("int64_t", "long long"),
    ("uint64_t", "unsigned long long"),
    ("intptr_t", "long"),
    ("uintptr_t", "unsigned long"),
    ("size_t", "unsigned long"),
    ("ssize_t", "long"),
    ("ptrdiff_t", "long"),
    ("bool", "_Bool"),
    ("INT8", "signed char"),
    ("UINT8", "unsigned char"),
    ("INT16", "short"),
    ("UINT16", "unsigned short"),
    ("INT32", "int"),
    ("UINT32", "unsigned int"),
    ("INT64", "long long"),
    ("UINT64", "unsigned long long"),
    ("BYTE", "unsigned char"),
    ("WORD", "unsigned short"),
    ("DWORD", "unsigned int"),
)

# typedef <original type> <alias>;  -- aggregates and function pointers excluded
_TYPEDEF_RE = re.compile(r"typedef\s+([^;{}()]+?)\s*\b([A-Za-z_]\w*)\s*((?:\[[^\]]*\])*)\s*;")
_COMMENT_RE = re.compile(r"/\*.*?\*/|//[^\n]*", re.DOTALL)


@dataclass(frozen=True)
class TypedefMapping:
    """A registered alias with its derived numeric description."""

    user_type: str
    base_type: str
    min_value: Optional[Union[int, float]] = None
    max_value: Optional[Union[int, float]] = None
    size: Optional[int] = None
    source: str = SOURCE_PREDEFINED

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "TypedefMapping":
        return cls(
            user_type=str(data["user_type"]),
            base_type=str(data["base_type"]),
            min_value=data.get("min_value"),
            max_value=data.get("max_value"),
            size=data.get("size"),
            source=str(data.get("source", SOURCE_PREDEFINED)),
        )


@dataclass(frozen=True)
class TypedefResolution:
    """Result of following an alias chain.

    ``chain`` starts with the queried name.  ``ultimate_type`` is the last
    spelling reached; ``base_type`` is set when that spelling is a C base
    type.
    """

    chain: Tuple[str, ...]
    ultimate_type: str
    base_type: Optional[BaseType]

    @property
    def hops(self) -> int:
        return len(self.chain) - 1


class _ReadWriteLock:
    """Many readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def reading(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def writing(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class _Entry:
    target: str
    source: str
    min_value: Optional[Union[int, float]] = None
    max_value: Optional[Union[int, float]] = None


class TypedefRegistry:
    """Alias table for one analysis session.

    Parameters
    ----------
    abi : TargetABI
        Used to derive sizes and bounds of base types.
    include_builtins : bool
        Seed the registry with the ``<stdint.h>``/``<stddef.h>`` names and
        the common Windows-style aliases.
    """

    def __init__(self, abi: TargetABI = LP64, include_builtins: bool = True) -> None:
        self.abi = abi
        self._entries: Dict[str, _Entry] = {}
        self._cache: Dict[str, TypedefMapping] = {}
        self._lock = _ReadWriteLock()
        self._cache_lock = threading.Lock()
        if include_builtins:
            for alias, target in _BUILTIN_ALIASES:
                self._entries[alias] = _Entry(target, SOURCE_PREDEFINED)
            self._entries["BOOL"] = _Entry("int", SOURCE_PREDEFINED, 0, 1)

    # ----- writes -----------------------------------------------------------

    def register(self, user_type: str, base_type: str, source: str = SOURCE_LEARNED,
                 min_value: Optional[Union[int, float]] = None,
                 max_value: Optional[Union[int, float]] = None) -> None:
        """Add or replace an alias.  The latest registration wins."""
        user_type = user_type.strip()
        target = normalize_type(base_type)
        if not user_type or not target:
            raise ValueError(f"invalid typedef {user_type!r} -> {base_type!r}")
        with self._lock.writing():
            self._entries[user_type] = _Entry(target, source, min_value, max_value)
            self._cache.clear()
        logger.debug("typedef %s -> %s (%s)", user_type, target, source)

    def unregister(self, user_type: str) -> bool:
        with self._lock.writing():
            removed = self._entries.pop(user_type, None) is not None
            self._cache.clear()
        return removed

    def register_from_source(self, text: str, source: str = SOURCE_DETECTED) -> int:
        """Register every simple ``typedef`` found in C source text.

        Struct/union/enum bodies and function-pointer typedefs are skipped;
        ``typedef struct tag name;`` is kept.  Returns the number registered.
        """
        stripped = _COMMENT_RE.sub(" ", text)
        found: List[Tuple[str, str]] = []
        for m in _TYPEDEF_RE.finditer(stripped):
            original, alias, arrays = m.group(1), m.group(2), m.group(3)
            original = " ".join(original.split())
            if not original or alias in ("struct", "union", "enum"):
                continue
            found.append((alias, original + arrays))
        with self._lock.writing():
            for alias, original in found:
                self._entries[alias] = _Entry(normalize_type(original), source)
            self._cache.clear()
        if found:
            logger.info("registered %d typedefs from source", len(found))
        return len(found)

    def register_from_file(self, path: Union[str, Path],
                           source: str = SOURCE_DETECTED) -> int:
        text = Path(path).read_text(encoding="utf-8", errors="replace")
        return self.register_from_source(text, source)

    # ----- reads ------------------------------------------------------------

    def __contains__(self, name: str) -> bool:
        with self._lock.reading():
            return name in self._entries

    def __len__(self) -> int:
        with self._lock.reading():
            return len(self._entries)

    def resolve(self, name: str) -> Optional[str]:
        """One hop: the spelling *name* aliases, or ``None``."""
        with self._lock.reading():
            entry = self._entries.get(name)
        return entry.target if entry is not None else None

    def resolve_chain(self, name: str) -> TypedefResolution:
        """Follow aliases from *name* until a non-alias spelling is reached."""
        with self._lock.reading():
            return self._resolve_chain_locked(name)

    def _resolve_chain_locked(self, name: str) -> TypedefResolution:
        current = normalize_type(name)
        chain: List[str] = [current]
        seen = {current}
        limit = len(self._entries)
        for _ in range(limit + 1):
            entry = self._entries.get(current)
            if entry is None:
                return TypedefResolution(tuple(chain), current, lookup_base_type(current))
            current = entry.target
            chain.append(current)
            if current in seen:
                raise TypedefCycleError(chain)
            seen.add(current)
        raise TypedefCycleError(chain)

    def resolve_base_type(self, name: str) -> Optional[BaseType]:
        return self.resolve_chain(name).base_type

    def mapping(self, name: str) -> Optional[TypedefMapping]:
        """Derived mapping for *name*, computed on first use."""
        with self._lock.reading():
            cached = self._cache.get(name)
            if cached is not None:
                return cached
            entry = self._entries.get(name)
            if entry is None:
                return None
            mapping = self._derive(name, entry)
            with self._cache_lock:
                self._cache[name] = mapping
            return mapping

    def _derive(self, name: str, entry: _Entry) -> TypedefMapping:
        lo = hi = size = None
        try:
            resolution = self._resolve_chain_locked(name)
        except TypedefCycleError as exc:
            logger.warning("%s", exc)
            resolution = None
        if resolution is not None and resolution.base_type is not None:
            base = resolution.base_type
            size = base.size(self.abi)
            bounds = base.bounds(self.abi)
            if bounds is not None:
                lo, hi = bounds
        if entry.min_value is not None:
            lo = entry.min_value if lo is None else max(lo, entry.min_value)
        if entry.max_value is not None:
            hi = entry.max_value if hi is None else min(hi, entry.max_value)
        return TypedefMapping(name, entry.target, lo, hi, size, entry.source)

    def all_mappings(self) -> Dict[str, TypedefMapping]:
        """Snapshot of every alias with derived bounds and size."""
        with self._lock.reading():
            names = list(self._entries)
        out: Dict[str, TypedefMapping] = {}
        for n in names:
            m = self.mapping(n)
            if m is not None:
                out[n] = m
        return out

    def constraint_for_type(self, type_name: str,
                            variable_name: str) -> Optional[VariableConstraint]:
        """Range constraint implied by an alias's bounds, if it has any."""
        m = self.mapping(normalize_type(type_name))
        if m is None:
            base = lookup_base_type(type_name)
            bounds = base.bounds(self.abi) if base is not None else None
            if bounds is None:
                return None
            return VariableConstraint.range(variable_name, bounds[0], bounds[1])
        if m.min_value is None and m.max_value is None:
            return None
        return VariableConstraint(variable_name, min_value=m.min_value,
                                  max_value=m.max_value, source="typedef")

    # ----- persistence ------------------------------------------------------

    def to_dict(self) -> Dict[str, object]:
        groups: Dict[str, List[Dict[str, object]]] = {
            "predefined": [], "detected": [], "learned": [],
        }
        with self._lock.reading():
            items = list(self._entries.items())
        for name, entry in items:
            record = {
                "user_type": name,
                "base_type": entry.target,
                "min_value": entry.min_value,
                "max_value": entry.max_value,
                "source": entry.source,
            }
            if entry.source == SOURCE_PREDEFINED:
                groups["predefined"].append(record)
            elif entry.source.startswith(SOURCE_DETECTED):
                groups["detected"].append(record)
            else:
                groups["learned"].append(record)
        return {"version": CONFIG_VERSION, **groups}

    def save(self, path: Union[str, Path]) -> None:
        Path(path).write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")

    @classmethod
    def from_dict(cls, data: Dict[str, object], abi: TargetABI = LP64) -> "TypedefRegistry":
        registry = cls(abi=abi, include_builtins=False)
        version = data.get("version", CONFIG_VERSION)
        if version != CONFIG_VERSION:
            logger.warning("typedef config version %s, expected %s", version, CONFIG_VERSION)
        # Later groups must not shadow earlier ones.
        for group in ("predefined", "detected", "learned"):
            for raw in data.get(group, []) or []:
                user = raw["user_type"]
                if user in registry._entries:
                    continue
                registry._entries[user] = _Entry(
                    normalize_type(raw["base_type"]),
                    raw.get("source", group.capitalize()),
                    raw.get("min_value"),
                    raw.get("max_value"),
                )
        return registry

    @classmethod
    def load(cls, path: Union[str, Path], abi: TargetABI = LP64) -> "TypedefRegistry":
        with Path(path).open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        registry = cls.from_dict(data, abi)
        logger.info("loaded %d typedefs from %s", len(registry), path)
        return registry

    def __repr__(self) -> str:
        return f"TypedefRegistry({len(self)} aliases, abi={self.abi.name})"
