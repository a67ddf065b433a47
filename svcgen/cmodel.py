"""
In-memory model of the C declarations svcgen cares about.

Type references are small frozen dataclasses so two references compare equal
exactly when they describe the same shape.  Composite definitions live in a
TypeTable keyed by their C spelling ("struct foo", "enum bar", "foo_t"), or by
a location-derived key for anonymous records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterator, Union

from .errors import MalformedDeclaration


# ── Type references ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Void:
    spelling: str = "void"


@dataclass(frozen=True)
class Scalar:
    """Builtin arithmetic type, or a system typedef of one (uint32_t, size_t)."""
    spelling: str
    size: int
    signed: bool
    floating: bool = False


@dataclass(frozen=True)
class Pointer:
    pointee: "TypeRef"


@dataclass(frozen=True)
class Named:
    """Reference to a TypeTable entry."""
    key: str


@dataclass(frozen=True)
class Array:
    element: "TypeRef"
    length: int | None


@dataclass(frozen=True)
class FunctionProto:
    result: "TypeRef"
    params: tuple["TypeRef", ...]
    variadic: bool = False


@dataclass(frozen=True)
class Qualified:
    base: "TypeRef"
    const: bool = False
    volatile: bool = False

    def qualifiers(self) -> str:
        return " ".join(q for q, on in (("const", self.const),
                                         ("volatile", self.volatile)) if on)


TypeRef = Union[Void, Scalar, Pointer, Named, Array, FunctionProto, Qualified]


def unqualified(t: TypeRef) -> TypeRef:
    while isinstance(t, Qualified):
        t = t.base
    return t


# ── Type table entries ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class Field:
    name: str            # "" for an anonymous struct/union member
    type: TypeRef
    bits: int | None = None
    offset: int | None = None    # in bits, as clang reports it
    packed: bool = False
    aligned: str | None = None   # aligned(...) argument as written, "" when bare


@dataclass(frozen=True)
class Record:
    key: str
    kind: str                        # "struct" or "union"
    fields: tuple[Field, ...] | None  # None: declared but never defined
    size: int = 0
    align: int = 0
    packed: bool = False
    aligned: bool = False
    pack: int | None = None          # #pragma pack(N) in effect at the definition
    anonymous: bool = False
    origin: str = ""
    comment: str | None = field(default=None, compare=False)

    @property
    def complete(self) -> bool:
        return self.fields is not None


@dataclass(frozen=True)
class Enum:
    key: str
    variants: tuple[tuple[str, int], ...]
    size: int
    signed: bool
    anonymous: bool = False
    origin: str = ""
    comment: str | None = field(default=None, compare=False)


@dataclass(frozen=True)
class Alias:
    key: str
    target: TypeRef
    origin: str = ""
    comment: str | None = field(default=None, compare=False)


TypeDef = Union[Record, Enum, Alias]


class TypeTable:
    """
    Ordered mapping from type key to definition.

    Filled once by the extractor, then frozen.  Re-registering an identical
    definition is harmless; a different shape under the same key is a
    corrupt corpus.
    """

    def __init__(self) -> None:
        self._defs: dict[str, TypeDef] = {}
        self._frozen = False

    def register(self, definition: TypeDef) -> TypeDef:
        if self._frozen:
            raise RuntimeError(f"type table is frozen; cannot add '{definition.key}'")
        existing = self._defs.get(definition.key)
        if existing is None:
            self._defs[definition.key] = definition
            return definition
        if existing == definition:
            return existing
        # A forward declaration may be completed later, never the reverse.
        # The completed definition moves to the end so it follows its
        # by-value dependencies.
        if isinstance(existing, Record) and isinstance(definition, Record):
            if not existing.complete and definition.complete:
                del self._defs[definition.key]
                self._defs[definition.key] = definition
                return definition
            if existing.complete and not definition.complete:
                return existing
        raise MalformedDeclaration(
            f"type '{definition.key}' redefined with a different shape "
            f"(first seen in {existing.origin or '?'})",
            origin=definition.origin or None)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, key: str) -> bool:
        return key in self._defs

    def __getitem__(self, key: str) -> TypeDef:
        return self._defs[key]

    def get(self, key: str) -> TypeDef | None:
        return self._defs.get(key)

    def __iter__(self) -> Iterator[TypeDef]:
        return iter(self._defs.values())

    def __len__(self) -> int:
        return len(self._defs)

    def lookup(self, t: TypeRef) -> TypeRef | Record | Enum:
        """Strip qualifiers and follow aliases down to a concrete shape."""
        seen = set()
        t = unqualified(t)
        while isinstance(t, Named):
            if t.key in seen:
                raise MalformedDeclaration(f"typedef cycle through '{t.key}'")
            seen.add(t.key)
            definition = self._defs.get(t.key)
            if definition is None:
                raise MalformedDeclaration(f"unknown type '{t.key}'")
            if isinstance(definition, Alias):
                t = unqualified(definition.target)
            else:
                return definition
        return t

    def size_of(self, t: TypeRef, pointer_size: int = 4) -> int:
        shape = self.lookup(t)
        if isinstance(shape, (Record, Enum, Scalar)):
            return shape.size
        if isinstance(shape, (Pointer, FunctionProto)):
            return pointer_size
        if isinstance(shape, Array):
            if shape.length is None:
                return 0
            return shape.length * self.size_of(shape.element, pointer_size)
        return 0


# ── Declarations ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Parameter:
    name: str
    type: TypeRef


@dataclass(frozen=True)
class Declaration:
    name: str
    trap_number: int
    return_type: TypeRef
    parameters: tuple[Parameter, ...]
    symbol: str = ""
    origin: str = ""
    line: int = 0
    variadic: bool = False
    comment: str | None = field(default=None, compare=False)

    @property
    def location(self) -> str:
        return f"{self.origin}:{self.line}" if self.origin else ""


# ── C spelling ───────────────────────────────────────────────────────────────

def default_spelling(named: Named) -> str:
    return named.key


def declarator(t: TypeRef, name: str = "",
               spell: Callable[[Named], str] = default_spelling) -> str:
    """Render `t` as a C declaration of `name` (abstract when name is empty).

    >>> declarator(Pointer(Qualified(Scalar("uint8_t", 1, False), const=True)), "p")
    'const uint8_t *p'
    """
    spec, decl = _split(t, name, spell)
    if not decl:
        return spec
    return f"{spec} {decl}"


def _split(t: TypeRef, decl: str, spell: Callable[[Named], str]) -> tuple[str, str]:
    quals = ""
    if isinstance(t, Qualified):
        quals, t = t.qualifiers(), t.base
        while isinstance(t, Qualified):
            extra = t.qualifiers()
            quals = " ".join(q for q in (quals, extra) if q)
            t = t.base

    if isinstance(t, Pointer):
        inner = f"*{quals} {decl}".rstrip() if quals else f"*{decl}"
        pointee = unqualified(t.pointee)
        if isinstance(pointee, (Array, FunctionProto)):
            inner = f"({inner})"
        return _split(t.pointee, inner, spell)

    if isinstance(t, Array):
        length = "" if t.length is None else str(t.length)
        return _split(t.element, f"{decl}[{length}]", spell)

    if isinstance(t, FunctionProto):
        params = [declarator(p, "", spell) for p in t.params]
        if t.variadic:
            params.append("...")
        joined = ", ".join(params) if params else "void"
        return _split(t.result, f"{decl}({joined})", spell)

    if isinstance(t, Named):
        base = spell(t)
    else:
        base = t.spelling
    if quals:
        base = f"{quals} {base}"
    return base, decl
