"""
Declaration extractor: header corpus -> trap declarations + type table.

The vendor headers wrap every firmware entry point in an annotation macro:

    SVCALL(SD_BLE_ENABLE, uint32_t, sd_ble_enable(uint32_t * p_app_ram_base));

where SD_BLE_ENABLE is an enumerator (or any integer constant expression).
The corpus is staged into a temporary directory with each annotation
rewritten, on the same line, into a plain prototype tagged with an
`annotate` attribute plus a one-constant enum holding the trap expression:

    uint32_t sd_ble_enable(uint32_t * p_app_ram_base)
        __attribute__((annotate("svcall:SD_BLE_ENABLE")));
    enum { __svcall_sd_ble_enable = (SD_BLE_ENABLE) };

libclang then parses the whole corpus as one translation unit, which gives
type layouts and evaluates every trap number in the same pass that collects
the enums.  Pass 1 walks the tree and fills the type table; pass 2 resolves
each tagged prototype against the finished table.
"""

from __future__ import annotations

import os
import re
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from clang.cindex import (
    Config,
    Cursor,
    CursorKind,
    Diagnostic,
    Index,
    TokenKind,
    TranslationUnit,
    TranslationUnitLoadError,
    Type,
    TypeKind,
)

from .cmodel import (
    Alias,
    Array,
    Declaration,
    Enum,
    Field,
    FunctionProto,
    Named,
    Parameter,
    Pointer,
    Qualified,
    Record,
    Scalar,
    TypeRef,
    TypeTable,
    Void,
    unqualified,
)
from .config import GeneratorConfig
from .errors import MalformedDeclaration

# Allow libclang path to be specified via environment variable
if "LIBCLANG_PATH" in os.environ:
    libclang_path = os.environ["LIBCLANG_PATH"]
    if os.path.isfile(libclang_path):
        Config.set_library_file(libclang_path)
    elif os.path.isdir(libclang_path):
        Config.set_library_path(libclang_path)
    else:
        sys.stderr.write(
            f"WARNING: LIBCLANG_PATH={libclang_path} is not a file or directory\n"
        )


SYSROOT = Path(__file__).resolve().parent / "sysroot"
WRAPPER_NAME = "svcgen_corpus.c"
ANNOTATE_TAG = "svcall:"
TRAP_PREFIX = "__svcall_"

# Thumb `svc` carries an 8-bit immediate.
SVC_IMMEDIATE_MAX = 0xFF

# What a bare `aligned` attribute means on ARM EABI targets.
BIGGEST_ALIGNMENT = 8

SIGNED_KINDS = {
    TypeKind.CHAR_S,
    TypeKind.SCHAR,
    TypeKind.SHORT,
    TypeKind.INT,
    TypeKind.LONG,
    TypeKind.LONGLONG,
    TypeKind.INT128,
    TypeKind.FLOAT,
    TypeKind.DOUBLE,
    TypeKind.LONGDOUBLE,
}

FLOATING_KINDS = {TypeKind.FLOAT, TypeKind.DOUBLE, TypeKind.LONGDOUBLE}

SCALAR_KINDS = SIGNED_KINDS | {
    TypeKind.BOOL,
    TypeKind.CHAR_U,
    TypeKind.UCHAR,
    TypeKind.CHAR16,
    TypeKind.CHAR32,
    TypeKind.USHORT,
    TypeKind.UINT,
    TypeKind.ULONG,
    TypeKind.ULONGLONG,
    TypeKind.UINT128,
    TypeKind.WCHAR,
}

# Identifiers a carried macro may use besides corpus names.
STANDARD_NAMES = {
    "int8_t", "int16_t", "int32_t", "int64_t",
    "uint8_t", "uint16_t", "uint32_t", "uint64_t",
    "intptr_t", "uintptr_t", "size_t", "ptrdiff_t",
    "bool", "true", "false", "NULL",
    "INT8_MAX", "INT16_MAX", "INT32_MAX", "INT64_MAX",
    "INT8_MIN", "INT16_MIN", "INT32_MIN", "INT64_MIN",
    "UINT8_MAX", "UINT16_MAX", "UINT32_MAX", "UINT64_MAX", "SIZE_MAX",
}

TAG_KEYWORD = re.compile(rb"(struct|union|enum)\b")

MACRO_KEYWORDS = {"sizeof", "unsigned", "signed", "char", "short", "int", "long"}


# ── Annotation rewriting ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class Annotation:
    """One annotation occurrence in a header, as written."""
    origin: str
    line: int
    last_line: int
    name: str
    symbol: str


def annotation_pattern(macro: str) -> re.Pattern:
    return re.compile(
        rf"^(?P<indent>[ \t]*){re.escape(macro)}\s*\(\s*(?P<number>[^,;]+?)\s*,"
        rf"\s*(?P<ret>[^,;()]+?)\s*,"
        rf"\s*(?P<name>[A-Za-z_]\w*)\s*\((?P<args>[^;]*)\)\s*\)\s*;",
        re.M,
    )


def rewrite_annotations(text: str, origin: str,
                        macro: str = "SVCALL") -> tuple[str, list[Annotation]]:
    """
    Replace every annotation in `text` with a tagged prototype and its trap
    constant.  Line structure is preserved so clang locations still point at
    the original header lines.

    Raises MalformedDeclaration for an annotation that starts a statement but
    does not have the full (number, return type, name(params)) form.
    """
    annotations: list[Annotation] = []

    def replace(m: re.Match) -> str:
        line = text.count("\n", 0, m.start()) + 1
        name = m.group("name")
        number = m.group("number").strip()
        annotations.append(Annotation(
            origin=origin,
            line=line,
            last_line=line + m.group(0).count("\n"),
            name=name,
            symbol=number,
        ))
        replacement = (f"{m.group('indent')}{m.group('ret')} {name}({m.group('args')})"
                       f" __attribute__((annotate(\"{ANNOTATE_TAG}{number}\")));"
                       f" enum {{ {TRAP_PREFIX}{name} = ({number}) }};")
        # Newlines outside the parameter list would otherwise be lost.
        return replacement + "\n" * (m.group(0).count("\n") - replacement.count("\n"))

    rewritten = annotation_pattern(macro).sub(replace, text)

    consumed = {a.line for a in annotations}
    for m in re.finditer(rf"^[ \t]*{re.escape(macro)}\s*\(", text, re.M):
        line = text.count("\n", 0, m.start()) + 1
        if line not in consumed:
            snippet = text[m.start():].split("\n", 1)[0].strip()
            raise MalformedDeclaration(
                f"incomplete {macro} annotation: {snippet}",
                origin=f"{origin}:{line}")

    return rewritten, annotations


# ── Corpus staging ───────────────────────────────────────────────────────────

def discover_headers(source_dir: Path, exclude: tuple[str, ...] = ()) -> list[Path]:
    """All *.h files below source_dir in stable, lexical relative-path order."""
    if not source_dir.is_dir():
        raise MalformedDeclaration(f"header directory not found: {source_dir}")
    found = []
    for dirpath, dirnames, filenames in os.walk(source_dir, followlinks=True):
        dirnames.sort()
        for name in filenames:
            if name.endswith(".h") and name not in exclude:
                found.append(Path(dirpath) / name)
    return sorted(found, key=lambda p: p.relative_to(source_dir).as_posix())


class StagedCorpus:
    """
    Rewritten copy of the header corpus in a temporary directory.

    Use as a context manager; the directory is removed on every exit path.
    """

    def __init__(self, source_dir: str | Path, config: GeneratorConfig) -> None:
        self.source_dir = Path(source_dir)
        self.config = config
        self.headers: list[str] = []
        self.texts: dict[str, bytes] = {}
        self.annotations: list[Annotation] = []
        self._by_line: dict[tuple[str, int], Annotation] = {}
        self._origins: dict[str, str | None] = {}
        self._tmp: tempfile.TemporaryDirectory | None = None
        self.root: Path | None = None
        self.corpus: Path | None = None

    def __enter__(self) -> "StagedCorpus":
        self._tmp = tempfile.TemporaryDirectory(prefix="svcgen-")
        try:
            self._stage()
        except BaseException:
            self._tmp.cleanup()
            raise
        return self

    def __exit__(self, *exc) -> bool:
        if self._tmp is not None:
            self._tmp.cleanup()
        return False

    def _stage(self) -> None:
        self.root = Path(self._tmp.name).resolve()
        self.corpus = self.root / "corpus"
        self.corpus.mkdir()

        for path in discover_headers(self.source_dir, self.config.exclude):
            rel = path.relative_to(self.source_dir).as_posix()
            try:
                text = path.read_text(encoding="utf-8", errors="surrogateescape")
            except OSError as e:
                raise MalformedDeclaration(f"cannot read header: {e}", origin=rel) from e
            staged, annotations = rewrite_annotations(text, rel, self.config.annotation)

            dest = self.corpus / rel
            dest.parent.mkdir(parents=True, exist_ok=True)
            data = staged.encode("utf-8", errors="surrogateescape")
            dest.write_bytes(data)

            self.headers.append(rel)
            self.texts[rel] = data
            for a in annotations:
                self.annotations.append(a)
                for line in range(a.line, a.last_line + 1):
                    self._by_line[(rel, line)] = a

        # Vendor includes that only matter to the firmware build.
        for name in self.config.empty_headers:
            dest = self.corpus / name
            if not dest.exists():
                dest.write_text("", encoding="utf-8")

        wrapper = "".join(f'#include "{rel}"\n' for rel in self.headers)
        (self.root / WRAPPER_NAME).write_text(wrapper, encoding="utf-8")

    @property
    def wrapper(self) -> Path:
        return self.root / WRAPPER_NAME

    @property
    def include_dirs(self) -> list[Path]:
        dirs = {self.corpus}
        dirs.update((self.corpus / rel).parent for rel in self.headers)
        return [self.corpus] + sorted(d for d in dirs if d != self.corpus)

    def relative(self, filename: str) -> str | None:
        """Corpus-relative path of a staged header, None for anything else."""
        if filename not in self._origins:
            try:
                rel = Path(filename).resolve().relative_to(self.corpus).as_posix()
            except ValueError:
                rel = None
            self._origins[filename] = rel if rel in self.texts else None
        return self._origins[filename]

    def origin_of(self, cursor: Cursor) -> str | None:
        location = cursor.location
        if location.file is None:
            return None
        return self.relative(location.file.name)

    def annotation_at(self, origin: str | None, line: int) -> Annotation | None:
        if origin is None:
            return None
        return self._by_line.get((origin, line))

    def check_diagnostics(self, tu: TranslationUnit) -> None:
        """Any clang error means the corpus did not resolve; report the first."""
        for diag in tu.diagnostics:
            if diag.severity < Diagnostic.Error:
                continue
            location = diag.location
            origin = self.relative(location.file.name) if location.file else None
            annotation = self.annotation_at(origin, location.line)
            message = diag.spelling
            if annotation is not None:
                message = f"{message} (trap number symbol {annotation.symbol})"
            raise MalformedDeclaration(
                message,
                declaration=annotation.name if annotation else None,
                origin=f"{origin}:{location.line}" if origin else None)


def parse_translation_unit(path: Path, include_dirs: list[Path],
                           config: GeneratorConfig) -> TranslationUnit:
    args = [
        "-x", "c",
        "-std=gnu11",
        f"--target={config.target}",
        "-ffreestanding",
        "-nostdinc",
        "-isystem", str(SYSROOT),
    ]
    args += [f"-I{d}" for d in include_dirs]
    args += config.clang_defines()
    args += list(config.clang_args)

    index = Index.create()
    try:
        return index.parse(
            str(path),
            args=args,
            options=(TranslationUnit.PARSE_DETAILED_PROCESSING_RECORD
                     | TranslationUnit.PARSE_SKIP_FUNCTION_BODIES),
        )
    except TranslationUnitLoadError as e:
        raise MalformedDeclaration(f"clang could not parse the corpus: {e}") from e


# ── Pass 1: walk the translation unit ────────────────────────────────────────

def _tag_name(cursor: Cursor, data: bytes | None) -> str | None:
    """Tag identifier of a struct/union/enum, None when the tag is unnamed."""
    name = cursor.spelling
    # Newer libclang spells unnamed tags as "struct (unnamed at file:line:col)".
    if not name or "(" in name or " " in name or cursor.is_anonymous():
        return None
    # libclang 18 spells `typedef struct {...} t;` as "t".  A named tag is
    # located at its identifier, an unnamed one at the struct keyword.
    if data is not None and TAG_KEYWORD.match(data, cursor.location.offset):
        return None
    return name


def _balanced(tokens: list, start: int) -> int | None:
    """Index of the ")" closing the "(" at tokens[start]."""
    depth = 0
    for i in range(start, len(tokens)):
        if tokens[i].spelling == "(":
            depth += 1
        elif tokens[i].spelling == ")":
            depth -= 1
            if depth == 0:
                return i
    return None


def _literal_alignment(text: str | None) -> int | None:
    if text == "":
        return BIGGEST_ALIGNMENT
    if text and re.fullmatch(r"(0[xX][0-9a-fA-F]+|\d+)[uUlL]*", text):
        return int(text.rstrip("uUlL"), 0)
    return None


def _inferred_alignment(cursor: Cursor, offset: int | None) -> int:
    """Largest alignment consistent with where clang placed the member."""
    position = (offset or 0) // 8
    if position == 0:
        return max(1, cursor.semantic_parent.type.get_align())
    return min(position & -position, BIGGEST_ALIGNMENT)


def _annotation_symbol(cursor: Cursor) -> str | None:
    for child in cursor.get_children():
        if child.kind == CursorKind.ANNOTATE_ATTR and child.spelling.startswith(ANNOTATE_TAG):
            return child.spelling[len(ANNOTATE_TAG):]
    return None


def _strip_qualifiers(spelling: str) -> str:
    return " ".join(w for w in spelling.split() if w not in ("const", "volatile", "restrict"))


@dataclass
class _Macro:
    name: str
    origin: str
    tokens: list[tuple[TokenKind, str]]
    body: str


class _Collector:
    """Pass 1 state: type table, enum constants, trap values, prototypes, macros."""

    def __init__(self, staged: StagedCorpus) -> None:
        self.staged = staged
        self.table = TypeTable()
        self.enum_constants: dict[str, int] = {}
        self.trap_values: dict[str, int] = {}
        self.prototypes: list[Cursor] = []
        self.macros: dict[str, _Macro] = {}
        self._done: set[str] = set()
        self._in_progress: set[str] = set()

    def walk(self, tu: TranslationUnit) -> None:
        for cursor in tu.cursor.get_children():
            origin = self.staged.origin_of(cursor)
            if origin is None:
                continue
            kind = cursor.kind
            if kind in (CursorKind.STRUCT_DECL, CursorKind.UNION_DECL):
                if cursor.is_definition():
                    self.record(cursor)
                else:
                    self.record_ref(cursor)
            elif kind == CursorKind.ENUM_DECL:
                self.enum(cursor)
            elif kind == CursorKind.TYPEDEF_DECL:
                self.alias(cursor)
            elif kind == CursorKind.FUNCTION_DECL:
                if _annotation_symbol(cursor) is not None:
                    self.prototypes.append(cursor)
            elif kind == CursorKind.MACRO_DEFINITION:
                self.macro(cursor, origin)

    # -- keys --

    def _key(self, cursor: Cursor, kind: str) -> tuple[str, bool]:
        origin = self.staged.origin_of(cursor)
        tag = _tag_name(cursor, self.staged.texts.get(origin) if origin else None)
        if tag:
            return f"{kind} {tag}", False
        location = cursor.location
        return f"{kind} @{origin or '?'}:{location.line}:{location.column}", True

    # -- definitions --

    def record_ref(self, cursor: Cursor) -> Named:
        """Name a record reached through a pointer without defining it yet."""
        kind = "union" if cursor.kind == CursorKind.UNION_DECL else "struct"
        key, anonymous = self._key(cursor, kind)
        if anonymous:
            return self.record(cursor)
        if key not in self.table:
            self.table.register(Record(key, kind, None,
                                       origin=self.staged.origin_of(cursor) or ""))
        return Named(key)

    def record(self, cursor: Cursor) -> Named:
        kind = "union" if cursor.kind == CursorKind.UNION_DECL else "struct"
        key, anonymous = self._key(cursor, kind)
        if key in self._done or key in self._in_progress:
            return Named(key)

        origin = self.staged.origin_of(cursor) or ""
        definition = cursor.get_definition()
        if definition is None:
            if key not in self.table:
                self.table.register(Record(key, kind, None, anonymous=anonymous, origin=origin))
            return Named(key)

        self._in_progress.add(key)
        fields = []
        natural = 1
        for f in definition.type.get_fields():
            field_, alignment = self.field(f)
            fields.append(field_)
            natural = max(natural, alignment)
        children = [c.kind for c in definition.get_children()]
        self._in_progress.discard(key)

        packed = CursorKind.PACKED_ATTR in children
        aligned = CursorKind.ALIGNED_ATTR in children
        align = definition.type.get_align()
        # #pragma pack leaves no attribute behind, only a record aligned
        # below what its members ask for.
        pack = None
        if not packed and not aligned and 0 < align < natural:
            pack = align

        self.table.register(Record(
            key=key,
            kind=kind,
            fields=tuple(fields),
            size=definition.type.get_size(),
            align=align,
            packed=packed,
            aligned=aligned,
            pack=pack,
            anonymous=anonymous,
            origin=self.staged.origin_of(definition) or origin,
            comment=definition.raw_comment,
        ))
        self._done.add(key)
        return Named(key)

    def field(self, cursor: Cursor) -> tuple[Field, int]:
        """One member, and the alignment it asks for before any #pragma pack."""
        offset = cursor.get_field_offsetof()
        offset = offset if offset >= 0 else None
        packed = False
        aligned = None
        for child in cursor.get_children():
            if child.kind == CursorKind.PACKED_ATTR:
                packed = True
            elif child.kind == CursorKind.ALIGNED_ATTR:
                aligned = self._aligned_argument(child)
                if aligned is None:
                    aligned = str(_inferred_alignment(cursor, offset))

        t = cursor.type.get_canonical()
        if t.kind == TypeKind.INCOMPLETEARRAY:
            t = t.element_type
        alignment = max(1, t.get_align())
        explicit = _literal_alignment(aligned)
        if packed:
            alignment = explicit or 1
        elif explicit:
            alignment = max(alignment, explicit)

        return Field(
            name=cursor.spelling if "(" not in cursor.spelling else "",
            type=self.convert(cursor.type),
            bits=cursor.get_bitfield_width() if cursor.is_bitfield() else None,
            offset=offset,
            packed=packed,
            aligned=aligned,
        ), alignment

    def _aligned_argument(self, attr: Cursor) -> str | None:
        """Argument of an aligned attribute as written; None when it came from a macro."""
        tokens = list(attr.get_tokens())
        if not tokens or tokens[0].spelling.strip("_") != "aligned":
            return None
        if len(tokens) == 1 or tokens[1].spelling != "(":
            return ""
        close = _balanced(tokens, 1)
        if close is None:
            return None
        if close == 2:
            return ""
        first, last = tokens[2], tokens[close - 1]
        origin = self.staged.relative(first.location.file.name) if first.location.file else None
        data = self.staged.texts.get(origin) if origin else None
        if data is None:
            return " ".join(t.spelling for t in tokens[2:close])
        return data[first.extent.start.offset:last.extent.end.offset].decode(
            "utf-8", errors="surrogateescape")

    def enum(self, cursor: Cursor) -> Named | None:
        definition = cursor.get_definition() or cursor
        variants = tuple((c.spelling, c.enum_value) for c in definition.get_children()
                         if c.kind == CursorKind.ENUM_CONSTANT_DECL)

        if variants and all(name.startswith(TRAP_PREFIX) for name, _ in variants):
            for name, value in variants:
                self.trap_values[name[len(TRAP_PREFIX):]] = value
            return None

        key, anonymous = self._key(definition, "enum")
        if key in self._done:
            return Named(key)
        for name, value in variants:
            self.enum_constants[name] = value
        underlying = definition.enum_type.get_canonical()
        self.table.register(Enum(
            key=key,
            variants=variants,
            size=definition.type.get_size(),
            signed=underlying.kind in SIGNED_KINDS,
            anonymous=anonymous,
            origin=self.staged.origin_of(definition) or "",
            comment=definition.raw_comment,
        ))
        self._done.add(key)
        return Named(key)

    def alias(self, cursor: Cursor, by_value: bool = True) -> Named:
        key = cursor.spelling
        if key in self._done:
            return Named(key)
        target = self.convert(cursor.underlying_typedef_type, by_value)
        self.table.register(Alias(
            key=key,
            target=target,
            origin=self.staged.origin_of(cursor) or "",
            comment=cursor.raw_comment,
        ))
        self._done.add(key)
        return Named(key)

    def macro(self, cursor: Cursor, origin: str) -> None:
        tokens = list(cursor.get_tokens())
        if len(tokens) < 2:
            return
        name = tokens[0].spelling
        # Function-like: "(" glued to the name.
        if tokens[1].spelling == "(" and tokens[1].extent.start.offset == tokens[0].extent.end.offset:
            return

        # Token offsets are byte offsets into the staged file.
        data = self.staged.texts[origin]
        body = []
        end = tokens[0].extent.end.offset
        for token in tokens[1:]:
            gap = data[end:token.extent.start.offset].replace(b"\\\n", b"")
            if b"\n" in gap:
                break
            body.append(token)
            end = token.extent.end.offset
        if not body:
            return

        source = data[body[0].extent.start.offset:body[-1].extent.end.offset]
        source = re.sub(r"\\\n\s*", " ",
                        source.decode("utf-8", errors="surrogateescape"))
        self.macros[name] = _Macro(
            name=name,
            origin=origin,
            tokens=[(t.kind, t.spelling) for t in body],
            body=source,
        )

    # -- type conversion --

    def convert(self, t: Type, by_value: bool = True) -> TypeRef:
        """
        Convert a clang type.  Records used by value are defined first so the
        table stays in dependency order; records behind a pointer are only
        named, their definition is picked up where the header places it.
        """
        base = self._convert_unqualified(t, by_value)
        const, volatile = t.is_const_qualified(), t.is_volatile_qualified()
        if const or volatile:
            return Qualified(unqualified(base), const=const, volatile=volatile)
        return base

    def _convert_unqualified(self, t: Type, by_value: bool) -> TypeRef:
        kind = t.kind

        if kind == TypeKind.ELABORATED:
            return self.convert(t.get_named_type(), by_value)

        if kind == TypeKind.TYPEDEF:
            decl = t.get_declaration()
            if self.staged.origin_of(decl) is not None:
                return self.alias(decl, by_value)
            canonical = t.get_canonical()
            if canonical.kind in SCALAR_KINDS:
                return Scalar(decl.spelling, canonical.get_size(),
                              canonical.kind in SIGNED_KINDS,
                              canonical.kind in FLOATING_KINDS)
            return unqualified(self.convert(canonical, by_value))

        if kind == TypeKind.POINTER:
            return Pointer(self.convert(t.get_pointee(), by_value=False))

        if kind == TypeKind.RECORD:
            if by_value:
                return self.record(t.get_declaration())
            return self.record_ref(t.get_declaration())

        if kind == TypeKind.ENUM:
            named = self.enum(t.get_declaration())
            if named is None:
                raise MalformedDeclaration(f"trap constant enum used as a type: {t.spelling}")
            return named

        if kind == TypeKind.CONSTANTARRAY:
            return Array(self.convert(t.element_type, by_value), t.element_count)

        if kind in (TypeKind.INCOMPLETEARRAY, TypeKind.VARIABLEARRAY):
            return Array(self.convert(t.element_type, by_value), None)

        if kind == TypeKind.FUNCTIONPROTO:
            return FunctionProto(
                self.convert(t.get_result(), by_value=False),
                tuple(self.convert(a, by_value=False) for a in t.argument_types()),
                t.is_function_variadic(),
            )

        if kind == TypeKind.FUNCTIONNOPROTO:
            return FunctionProto(self.convert(t.get_result(), by_value=False), ())

        if kind == TypeKind.VOID:
            return Void()

        if kind in SCALAR_KINDS:
            spelling = "bool" if kind == TypeKind.BOOL else _strip_qualifiers(t.spelling)
            return Scalar(spelling, t.get_size(), kind in SIGNED_KINDS, kind in FLOATING_KINDS)

        # Decayed parameters, attributed and other sugar: use the canonical shape.
        canonical = t.get_canonical()
        if canonical.kind != kind:
            return self._convert_unqualified(canonical, by_value)

        raise MalformedDeclaration(f"unsupported type '{t.spelling}' ({kind.spelling})")

    # ── Pass 2: resolve prototypes against the full table ───────────────────

    def resolve(self) -> list[Declaration]:
        declarations = [self._declaration(cursor) for cursor in self.prototypes]
        declarations.sort(key=lambda d: (d.origin, d.line))

        by_name: dict[str, Declaration] = {}
        by_number: dict[int, Declaration] = {}
        for d in declarations:
            other = by_name.get(d.name)
            if other is not None:
                raise MalformedDeclaration(
                    f"declared twice (also at {other.location})",
                    declaration=d.name, origin=d.location)
            other = by_number.get(d.trap_number)
            if other is not None:
                raise MalformedDeclaration(
                    f"trap number 0x{d.trap_number:02X} ({d.symbol}) collides with "
                    f"'{other.name}' ({other.symbol}, {other.location})",
                    declaration=d.name, origin=d.location)
            by_name[d.name] = d
            by_number[d.trap_number] = d
        return declarations

    def _declaration(self, cursor: Cursor) -> Declaration:
        name = cursor.spelling
        origin = self.staged.origin_of(cursor) or ""
        line = cursor.location.line
        where = f"{origin}:{line}"
        symbol = _annotation_symbol(cursor) or ""

        if name not in self.trap_values:
            raise MalformedDeclaration(
                f"trap number symbol '{symbol}' could not be resolved",
                declaration=name, origin=where)
        number = self.trap_values[name]
        if not 0 <= number <= SVC_IMMEDIATE_MAX:
            raise MalformedDeclaration(
                f"trap number {number} ({symbol}) does not fit the svc immediate "
                f"(0..{SVC_IMMEDIATE_MAX})",
                declaration=name, origin=where)

        try:
            parameters = tuple(
                Parameter(arg.spelling or f"arg{i}", self.convert(arg.type))
                for i, arg in enumerate(cursor.get_arguments()))
            return_type = self.convert(cursor.result_type)
        except MalformedDeclaration as e:
            raise MalformedDeclaration(e.message, declaration=name, origin=where) from e

        declaration = Declaration(
            name=name,
            trap_number=number,
            return_type=return_type,
            parameters=parameters,
            symbol=symbol,
            origin=origin,
            line=line,
            variadic=(cursor.type.kind == TypeKind.FUNCTIONPROTO
                      and cursor.type.is_function_variadic()),
            comment=cursor.raw_comment,
        )
        self._require_complete(declaration)
        return declaration

    def _require_complete(self, declaration: Declaration) -> None:
        """By-value types must be defined; pointers may reach opaque records."""
        checks = [("return type", declaration.return_type)]
        checks += [(f"parameter '{p.name}'", p.type) for p in declaration.parameters]
        for what, t in checks:
            try:
                shape = self.table.lookup(t)
            except MalformedDeclaration as e:
                raise MalformedDeclaration(
                    f"{what}: {e.message}",
                    declaration=declaration.name, origin=declaration.location) from e
            if isinstance(shape, Record) and not shape.complete:
                raise MalformedDeclaration(
                    f"{what} uses incomplete type '{shape.key}' by value",
                    declaration=declaration.name, origin=declaration.location)

    # ── Constants ───────────────────────────────────────────────────────────

    def carried_constants(self) -> list[tuple[str, str]]:
        """Object-like integer macros whose every identifier is itself emitted."""
        known = set(self.enum_constants) | STANDARD_NAMES
        known.update(d.key for d in self.table if isinstance(d, Alias))
        candidates = {name: m for name, m in self.macros.items()
                      if not name.startswith("_") and _is_integer_macro(m)}

        carried: set[str] = set()
        changed = True
        while changed:
            changed = False
            for name, m in candidates.items():
                if name in carried:
                    continue
                idents = [s for k, s in m.tokens if k == TokenKind.IDENTIFIER]
                if all(i in known or i in carried for i in idents):
                    carried.add(name)
                    changed = True
        return [(name, m.body) for name, m in candidates.items() if name in carried]


def _is_integer_macro(m: _Macro) -> bool:
    has_value = False
    for kind, spelling in m.tokens:
        if kind == TokenKind.LITERAL:
            if spelling.startswith('"'):
                return False
            has_value = True
        elif kind == TokenKind.IDENTIFIER:
            has_value = True
        elif kind == TokenKind.KEYWORD:
            if spelling not in MACRO_KEYWORDS:
                return False
        elif kind != TokenKind.PUNCTUATION:
            return False
    return has_value


# ── Public entry point ───────────────────────────────────────────────────────

@dataclass
class Corpus:
    """Everything the extractor learned about one header corpus."""
    source_dir: Path
    headers: list[str]
    table: TypeTable
    declarations: list[Declaration]
    constants: list[tuple[str, str]] = field(default_factory=list)


def extract_corpus(source_dir: str | Path,
                   config: GeneratorConfig | None = None) -> Corpus:
    """
    Parse every header below `source_dir` and return its trap declarations,
    frozen type table and carried constants.

    Raises MalformedDeclaration when the corpus does not resolve.
    """
    config = config or GeneratorConfig()
    source_dir = Path(source_dir)

    with StagedCorpus(source_dir, config) as staged:
        if config.verbose:
            print(f"Scanning {len(staged.headers)} headers in {source_dir} "
                  f"({len(staged.annotations)} {config.annotation} annotations)")
        if not staged.annotations:
            print(f"WARNING: no {config.annotation} annotations found in {source_dir}",
                  file=sys.stderr)

        tu = parse_translation_unit(staged.wrapper, staged.include_dirs, config)
        staged.check_diagnostics(tu)

        collector = _Collector(staged)
        collector.walk(tu)
        declarations = collector.resolve()
        constants = collector.carried_constants()
        collector.table.freeze()

    if config.verbose:
        print(f"  {len(declarations)} declarations, {len(collector.table)} types, "
              f"{len(constants)} constants")

    return Corpus(
        source_dir=source_dir,
        headers=list(staged.headers),
        table=collector.table,
        declarations=declarations,
        constants=constants,
    )
