"""
Stub emitter: register plans -> one C header of inline SVC wrappers.

Each declaration becomes a `static inline` function whose body binds its
arguments to r0..r3, issues `svc #<trap>` and reassembles the result:

    static inline __attribute__((always_inline)) uint32_t sd_app_evt_wait(void)
    {
        register uint32_t __r0 __asm__("r0");
        __asm__ __volatile__("svc #0x3D"
                             : "=r" (__r0)
                             :
                             : "r1", "r2", "r3", "r12", "cc", "memory");
        return (uint32_t)__r0;
    }

The header also carries every type the stubs mention, so it compiles on its
own with nothing but <stdint.h>, <stdbool.h> and <stddef.h>.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

from .abi import (
    ARG_REGISTERS,
    Half,
    RegisterPlan,
    ReturnKind,
    SlotKind,
    register_name,
)
from .cmodel import (
    Alias,
    Array,
    Enum,
    Field,
    FunctionProto,
    Named,
    Pointer,
    Record,
    Scalar,
    TypeRef,
    TypeTable,
    declarator,
    unqualified,
)
from .config import GeneratorConfig
from .errors import EmissionError

if TYPE_CHECKING:
    from .extract import Corpus


INDENT = "    "
ASM_CLOBBERS = ("r12", "cc", "memory")
SYSTEM_INCLUDES = ("stdint.h", "stdbool.h", "stddef.h")


def derive_guard(output_name: str) -> str:
    """Include guard from the output file name: `nrf_svc.h` -> `NRF_SVC_H`."""
    name = Path(output_name).name
    guard = re.sub(r"[^a-zA-Z0-9]", "_", name.replace(".h", "")).upper() + "_H"
    if guard[0].isdigit():
        guard = "_" + guard
    return guard


def section(title: str) -> str:
    return "/* " + "─" * 2 + f" {title} " + "─" * max(4, 68 - len(title)) + " */"


def _named_keys(t: TypeRef) -> Iterator[str]:
    t = unqualified(t)
    if isinstance(t, Named):
        yield t.key
    elif isinstance(t, Pointer):
        yield from _named_keys(t.pointee)
    elif isinstance(t, Array):
        yield from _named_keys(t.element)
    elif isinstance(t, FunctionProto):
        yield from _named_keys(t.result)
        for p in t.params:
            yield from _named_keys(p)


def _is_floating(shape) -> bool:
    return isinstance(shape, Scalar) and shape.floating


# ── Type definitions ─────────────────────────────────────────────────────────

class TypeWriter:
    """
    Spells table types as C.  Anonymous records and enums have no name of
    their own, so they are written inline where they are used, or through
    the first typedef that gave them a name.
    """

    def __init__(self, table: TypeTable) -> None:
        self.table = table
        self.anon_names: dict[str, str] = {}

    def spell(self, named: Named, depth: int = 0) -> str:
        definition = self.table.get(named.key)
        if isinstance(definition, (Record, Enum)) and definition.anonymous:
            alias = self.anon_names.get(named.key)
            if alias is not None:
                return alias
            return self.body(definition, depth)
        return named.key

    def declarator(self, t: TypeRef, name: str = "", depth: int = 0) -> str:
        return declarator(t, name, lambda n: self.spell(n, depth))

    def body(self, definition: Record | Enum, depth: int = 0) -> str:
        """`struct foo { ... }` text; the closing brace sits at `depth`."""
        inner = INDENT * (depth + 1)
        head = definition.key.split(" ")[0] if definition.anonymous else definition.key
        lines = [f"{head} {{"]
        if isinstance(definition, Enum):
            for name, value in definition.variants:
                lines.append(f"{inner}{name} = {value},")
            lines.append(f"{INDENT * depth}}}")
        else:
            for f in definition.fields:
                text = self.declarator(f.type, f.name, depth + 1)
                if f.bits is not None:
                    text += f" : {f.bits}"
                text += self.member_attributes(f)
                lines.append(f"{inner}{text};")
            lines.append(f"{INDENT * depth}}}{self.attributes(definition)}")
        return "\n".join(lines)

    @staticmethod
    def member_attributes(f: Field) -> str:
        attrs = []
        if f.packed:
            attrs.append("packed")
        if f.aligned == "":
            attrs.append("aligned")
        elif f.aligned is not None:
            attrs.append(f"aligned({f.aligned})")
        if not attrs:
            return ""
        return f" __attribute__(({', '.join(attrs)}))"

    @staticmethod
    def attributes(record: Record) -> str:
        attrs = []
        if record.packed:
            attrs.append("packed")
        if record.aligned:
            attrs.append(f"aligned({record.align})")
        if not attrs:
            return ""
        return f" __attribute__(({', '.join(attrs)}))"


def _inlined_anonymous(table: TypeTable, plans: list[RegisterPlan]) -> set[str]:
    """Anonymous types some field, typedef or stub refers to."""
    refs: set[str] = set()
    for definition in table:
        if isinstance(definition, Record) and definition.complete:
            for f in definition.fields:
                refs.update(_named_keys(f.type))
        elif isinstance(definition, Alias):
            refs.update(_named_keys(definition.target))
    for plan in plans:
        d = plan.declaration
        refs.update(_named_keys(d.return_type))
        for p in d.parameters:
            refs.update(_named_keys(p.type))
    return {k for k in refs if getattr(table.get(k), "anonymous", False)}


def _emit_comment(emit, comment: str | None, enabled: bool) -> None:
    if enabled and comment:
        for line in comment.splitlines():
            emit(line.rstrip())


def _layout_asserts(spelled: str, record: Record) -> list[str]:
    """Size pin plus one offsetof pin per named, addressable member."""
    if record.size < 0:
        return []
    pins = [f"sizeof({spelled}) == {record.size}"]
    for f in record.fields:
        if f.name and f.bits is None and f.offset is not None:
            pins.append(f"offsetof({spelled}, {f.name}) == {f.offset // 8}")
    return [f'_Static_assert({pin}, "{spelled} layout");' for pin in pins]


def _emit_under_pack(emit, pack: int | None, text: str) -> None:
    if pack:
        emit(f"#pragma pack(push, {pack})")
    emit(text)
    if pack:
        emit("#pragma pack(pop)")


def render_types(writer: TypeWriter, plans: list[RegisterPlan], emit,
                 comments: bool = True) -> None:
    table = writer.table
    inlined = _inlined_anonymous(table, plans)

    named_records = [d for d in table if isinstance(d, Record) and not d.anonymous]
    if named_records:
        emit("")
        for record in named_records:
            emit(f"{record.key};")

    for definition in table:
        if isinstance(definition, Record):
            if definition.anonymous or not definition.complete:
                continue
            emit("")
            _emit_comment(emit, definition.comment, comments)
            _emit_under_pack(emit, definition.pack, writer.body(definition) + ";")
            for line in _layout_asserts(definition.key, definition):
                emit(line)

        elif isinstance(definition, Enum):
            if definition.anonymous and definition.key in inlined:
                continue
            emit("")
            _emit_comment(emit, definition.comment, comments)
            emit(writer.body(definition) + ";")

        elif isinstance(definition, Alias):
            target = unqualified(definition.target)
            named = None
            if isinstance(target, Named) and target.key not in writer.anon_names:
                named = table.get(target.key)
                if not isinstance(named, (Record, Enum)) or not named.anonymous:
                    named = None
            # The first typedef of an anonymous record carries its body.
            pack = named.pack if isinstance(named, Record) else None

            emit("")
            _emit_comment(emit, definition.comment, comments)
            _emit_under_pack(emit, pack,
                             f"typedef {writer.declarator(definition.target, definition.key)};")
            if named is None:
                continue
            writer.anon_names[target.key] = definition.key
            if isinstance(named, Record) and named.complete:
                for line in _layout_asserts(definition.key, named):
                    emit(line)


# ── Stubs ────────────────────────────────────────────────────────────────────

def _register_var(index: int) -> str:
    return f"__{register_name(index)}"


def render_stub(plan: RegisterPlan, writer: TypeWriter, emit,
                comments: bool = True) -> None:
    """One inline SVC wrapper for `plan`."""
    d = plan.declaration
    table = writer.table

    params = ", ".join(writer.declarator(p.type, p.name) for p in d.parameters)
    signature = writer.declarator(d.return_type, f"{d.name}({params or 'void'})")

    prelude: list[str] = []
    values: dict[int, str] = {}

    hidden = plan.hidden_return
    if hidden is not None:
        prelude.append(f"{writer.declarator(unqualified(d.return_type), '__result')};")
        values[hidden.register] = "(uint32_t)(uintptr_t)&__result"

    for index, param in enumerate(d.parameters):
        slots = plan.slots_for(index)
        shape = table.lookup(param.type)
        name = param.name
        if slots[0].kind == SlotKind.REFERENCE:
            values[slots[0].register] = f"(uint32_t)(uintptr_t)({name})"
        elif len(slots) == 2:
            if _is_floating(shape):
                wide = f"__{name}_bits"
                prelude.append(f"uint64_t {wide};")
                prelude.append(f"__builtin_memcpy(&{wide}, &{name}, sizeof({wide}));")
            else:
                wide = f"(uint64_t)({name})"
            for slot in slots:
                if slot.half is Half.LOW:
                    values[slot.register] = f"(uint32_t){wide}"
                else:
                    values[slot.register] = f"(uint32_t)({wide} >> {Half.HIGH.shift})"
        elif _is_floating(shape) or isinstance(shape, Record):
            bits = f"__{name}_bits"
            prelude.append(f"uint32_t {bits} = 0;")
            prelude.append(f"__builtin_memcpy(&{bits}, &{name}, sizeof({name}));")
            values[slots[0].register] = bits
        else:
            values[slots[0].register] = f"(uint32_t)({name})"

    registers = sorted(set(values) | set(plan.output_registers))
    operands = [f'"+r" ({_register_var(r)})' if r in values else f'"=r" ({_register_var(r)})'
                for r in registers]
    clobbers = [f'"{register_name(r)}"' for r in range(ARG_REGISTERS) if r not in registers]
    clobbers += [f'"{c}"' for c in ASM_CLOBBERS]

    _emit_comment(emit, d.comment, comments)
    emit(f"static inline __attribute__((always_inline)) {signature}")
    emit("{")
    for line in prelude:
        emit(f"{INDENT}{line}")
    for r in registers:
        init = f" = {values[r]}" if r in values else ""
        emit(f'{INDENT}register uint32_t {_register_var(r)} __asm__("{register_name(r)}"){init};')

    asm = f'{INDENT}__asm__ __volatile__('
    pad = " " * len(asm)
    emit(f'{asm}"svc #0x{d.trap_number:02X}"')
    emit(f"{pad}: {', '.join(operands)}".rstrip())
    emit(f"{pad}:")
    emit(f"{pad}: {', '.join(clobbers)});")

    for line in _return_lines(plan, writer):
        emit(f"{INDENT}{line}")
    emit("}")


def _return_lines(plan: RegisterPlan, writer: TypeWriter) -> list[str]:
    d = plan.declaration
    if plan.returns == ReturnKind.VOID:
        return []
    if plan.returns == ReturnKind.HIDDEN_POINTER:
        return ["return __result;"]

    cast = writer.declarator(d.return_type)
    local = writer.declarator(unqualified(d.return_type), "__ret")
    shape = writer.table.lookup(d.return_type)

    if plan.returns == ReturnKind.REGISTER_PAIR:
        joined = f"((uint64_t)__r1 << {Half.HIGH.shift}) | __r0"
        if _is_floating(shape):
            return [f"uint64_t __ret_bits = {joined};",
                    f"{local};",
                    "__builtin_memcpy(&__ret, &__ret_bits, sizeof(__ret));",
                    "return __ret;"]
        return [f"return ({cast})({joined});"]

    if isinstance(shape, (Pointer, FunctionProto, Array)):
        return [f"return ({cast})(uintptr_t)__r0;"]
    if _is_floating(shape) or isinstance(shape, Record):
        return ["uint32_t __ret_bits = __r0;",
                f"{local};",
                "__builtin_memcpy(&__ret, &__ret_bits, sizeof(__ret));",
                "return __ret;"]
    return [f"return ({cast})__r0;"]


# ── Whole file ───────────────────────────────────────────────────────────────

def emit_source(corpus: "Corpus", plans: list[RegisterPlan],
                config: GeneratorConfig | None = None,
                output_name: str = "svcall.h") -> str:
    """Render the complete header text.  Same inputs, same bytes."""
    config = config or GeneratorConfig()
    guard = config.guard or derive_guard(output_name)
    writer = TypeWriter(corpus.table)

    lines: list[str] = []

    def emit(s: str = "") -> None:
        lines.append(s)

    if config.preamble:
        emit(config.preamble.rstrip("\n"))
        emit("")

    source_name = Path(corpus.source_dir).resolve().name
    emit(f"/* Auto-generated by svcgen from {len(corpus.headers)} headers in "
         f"'{source_name}'. Do not edit manually. */")
    emit(f"#ifndef {guard}")
    emit(f"#define {guard}")
    emit("")
    for header in SYSTEM_INCLUDES:
        emit(f"#include <{header}>")

    if corpus.constants:
        emit("")
        emit(section("Constants"))
        emit("")
        for name, body in corpus.constants:
            emit(f"#define {name} {body}")

    if len(corpus.table):
        emit("")
        emit(section("Types"))
        render_types(writer, plans, emit, config.comments)

    if plans:
        emit("")
        emit(section("SVC stubs"))
        for plan in plans:
            emit("")
            render_stub(plan, writer, emit, config.comments)

    emit("")
    emit(f"#endif /* {guard} */")
    emit("")
    return "\n".join(lines)


def write_output(path: str | Path, text: str) -> int:
    """Write the header, creating parent directories.  Returns bytes written."""
    path = Path(path)
    data = text.encode("utf-8", errors="surrogateescape")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    except OSError as e:
        raise EmissionError(f"cannot write output: {e.strerror or e}",
                            origin=str(path)) from e
    return len(data)
