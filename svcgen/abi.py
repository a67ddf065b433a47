"""
ABI classifier: maps one trap declaration onto the Cortex-M argument registers.

AAPCS rules as they apply at the svc boundary:
  - r0..r3 carry arguments, 32 bits each; nothing is ever passed on the stack.
  - A composite returned by value (wider than one register) is written
    through a hidden pointer that takes r0 before any declared parameter.
  - Pointers and scalars up to 32 bits take one register.
  - 64-bit scalars take an even/odd register pair, low word first.
  - Composites up to 32 bits travel as their memory image in one register;
    wider composites must be passed by pointer.
  - Scalar and small composite results come back in r0, 64-bit results in r0:r1.

A plan depends only on the declaration and the type table.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum as PyEnum

from .cmodel import (
    Array,
    Declaration,
    Enum,
    FunctionProto,
    Pointer,
    Record,
    Scalar,
    TypeRef,
    TypeTable,
    Void,
)
from .errors import RegisterPressureExceeded, UnsupportedParameterShape


ARG_REGISTERS = 4
REGISTER_BYTES = 4
RETURN_REGISTER = 0


def register_name(index: int) -> str:
    return f"r{index}"


class SlotKind(str, PyEnum):
    VALUE = "value"                  # scalar, enum or small composite image
    REFERENCE = "reference"          # pointer / address passthrough
    HIDDEN_RETURN = "hidden-return"  # caller storage for a composite result


class Half(str, PyEnum):
    LOW = "low"
    HIGH = "high"

    @property
    def shift(self) -> int:
        return 0 if self is Half.LOW else REGISTER_BYTES * 8

    def extract(self, value: int) -> int:
        return (value >> self.shift) & ((1 << (REGISTER_BYTES * 8)) - 1)


class ReturnKind(str, PyEnum):
    VOID = "void"
    REGISTER = "register"
    REGISTER_PAIR = "register-pair"
    HIDDEN_POINTER = "hidden-pointer"


def split_wide(value: int) -> tuple[int, int]:
    """Split a 64-bit value into its (low, high) register words."""
    value &= (1 << (2 * REGISTER_BYTES * 8)) - 1
    return Half.LOW.extract(value), Half.HIGH.extract(value)


def join_wide(low: int, high: int) -> int:
    """Reassemble a 64-bit value from its (low, high) register words."""
    word = (1 << (REGISTER_BYTES * 8)) - 1
    return ((high & word) << Half.HIGH.shift) | ((low & word) << Half.LOW.shift)


@dataclass(frozen=True)
class Slot:
    kind: SlotKind
    register: int
    param: str | None = None    # None for the hidden return pointer
    index: int | None = None    # position in the declared parameter list
    half: Half | None = None    # set for the two words of a 64-bit scalar

    @property
    def register_name(self) -> str:
        return register_name(self.register)


@dataclass(frozen=True)
class RegisterPlan:
    declaration: Declaration
    slots: tuple[Slot, ...]
    returns: ReturnKind
    padding: tuple[int, ...] = ()

    @property
    def registers_used(self) -> int:
        used = [s.register for s in self.slots] + list(self.padding)
        return max(used) + 1 if used else 0

    @property
    def input_registers(self) -> list[int]:
        return sorted({s.register for s in self.slots})

    @property
    def output_registers(self) -> list[int]:
        if self.returns == ReturnKind.REGISTER:
            return [RETURN_REGISTER]
        if self.returns == ReturnKind.REGISTER_PAIR:
            return [RETURN_REGISTER, RETURN_REGISTER + 1]
        return []

    def slots_for(self, index: int) -> list[Slot]:
        return [s for s in self.slots if s.index == index]

    @property
    def hidden_return(self) -> Slot | None:
        for s in self.slots:
            if s.kind == SlotKind.HIDDEN_RETURN:
                return s
        return None


# ── Shape classification ─────────────────────────────────────────────────────

class _Shape(str, PyEnum):
    VOID = "void"
    WORD = "word"            # fits one register by value
    WIDE = "wide"            # 64-bit scalar, register pair
    ADDRESS = "address"      # pointer-like, one register
    SMALL_COMPOSITE = "small-composite"
    COMPOSITE = "composite"  # needs memory
    UNSUPPORTED = "unsupported"


def _shape(t: TypeRef, table: TypeTable) -> tuple[_Shape, int]:
    concrete = table.lookup(t)
    if isinstance(concrete, Void):
        return _Shape.VOID, 0
    if isinstance(concrete, (Pointer, Array, FunctionProto)):
        return _Shape.ADDRESS, REGISTER_BYTES
    if isinstance(concrete, (Scalar, Enum)):
        size = concrete.size
        if size <= REGISTER_BYTES:
            return _Shape.WORD, size
        if size == 2 * REGISTER_BYTES:
            return _Shape.WIDE, size
        return _Shape.UNSUPPORTED, size
    if isinstance(concrete, Record):
        if concrete.complete and 0 < concrete.size <= REGISTER_BYTES:
            return _Shape.SMALL_COMPOSITE, concrete.size
        return _Shape.COMPOSITE, concrete.size
    return _Shape.UNSUPPORTED, 0


def classify(declaration: Declaration, table: TypeTable) -> RegisterPlan:
    """Compute the register assignment plan for one declaration."""
    name = declaration.name
    where = declaration.location or None

    if declaration.variadic:
        raise UnsupportedParameterShape(
            "variadic prototypes cannot be passed through registers",
            declaration=name, origin=where)

    slots: list[Slot] = []
    padding: list[int] = []
    cursor = 0

    ret_shape, ret_size = _shape(declaration.return_type, table)
    if ret_shape == _Shape.VOID:
        returns = ReturnKind.VOID
    elif ret_shape in (_Shape.WORD, _Shape.ADDRESS, _Shape.SMALL_COMPOSITE):
        returns = ReturnKind.REGISTER
    elif ret_shape == _Shape.WIDE:
        returns = ReturnKind.REGISTER_PAIR
    elif ret_shape == _Shape.COMPOSITE:
        returns = ReturnKind.HIDDEN_POINTER
        slots.append(Slot(SlotKind.HIDDEN_RETURN, cursor))
        cursor += 1
    else:
        raise UnsupportedParameterShape(
            f"return type of {ret_size} bytes has no register convention",
            declaration=name, origin=where)

    for index, param in enumerate(declaration.parameters):
        shape, size = _shape(param.type, table)
        if shape == _Shape.ADDRESS:
            slots.append(Slot(SlotKind.REFERENCE, cursor, param.name, index))
            cursor += 1
        elif shape in (_Shape.WORD, _Shape.SMALL_COMPOSITE):
            slots.append(Slot(SlotKind.VALUE, cursor, param.name, index))
            cursor += 1
        elif shape == _Shape.WIDE:
            if cursor % 2:
                padding.append(cursor)
                cursor += 1
            slots.append(Slot(SlotKind.VALUE, cursor, param.name, index, Half.LOW))
            slots.append(Slot(SlotKind.VALUE, cursor + 1, param.name, index, Half.HIGH))
            cursor += 2
        elif shape == _Shape.COMPOSITE:
            raise UnsupportedParameterShape(
                f"parameter '{param.name}' passes a {size}-byte composite by value; "
                f"the header must pass it by pointer",
                declaration=name, origin=where)
        else:
            raise UnsupportedParameterShape(
                f"parameter '{param.name}' of {size} bytes has no register convention",
                declaration=name, origin=where)

    if cursor > ARG_REGISTERS:
        raise RegisterPressureExceeded(
            f"needs {cursor} argument registers, only {ARG_REGISTERS} are available",
            declaration=name, origin=where)

    return RegisterPlan(declaration, tuple(slots), returns, tuple(padding))


def classify_all(declarations: list[Declaration], table: TypeTable) -> list[RegisterPlan]:
    return [classify(d, table) for d in declarations]


def describe_plan(plan: RegisterPlan) -> str:
    """One-line summary, e.g. `sd_foo  svc 0x60  r0=p_buf(reference)  -> r0`."""
    parts = []
    for slot in plan.slots:
        if slot.kind == SlotKind.HIDDEN_RETURN:
            parts.append(f"{slot.register_name}=&result(hidden-return)")
        elif slot.half is not None:
            parts.append(f"{slot.register_name}={slot.param}.{slot.half.value}({slot.kind.value})")
        else:
            parts.append(f"{slot.register_name}={slot.param}({slot.kind.value})")
    for reg in plan.padding:
        parts.append(f"{register_name(reg)}=(pad)")

    if plan.returns == ReturnKind.VOID:
        result = "void"
    elif plan.returns == ReturnKind.HIDDEN_POINTER:
        result = "*r0"
    else:
        result = ":".join(register_name(r) for r in plan.output_registers)

    d = plan.declaration
    args = "  ".join(parts) if parts else "(no arguments)"
    return f"{d.name:32s}  svc 0x{d.trap_number:02X}  {args}  -> {result}"
