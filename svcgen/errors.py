"""Error taxonomy for svcgen. Every error aborts the run."""

from __future__ import annotations


class SvcGenError(ValueError):
    """Base class; carries the offending declaration and header when known."""

    kind = "SvcGenError"

    def __init__(self, message: str, *, declaration: str | None = None,
                 origin: str | None = None) -> None:
        self.message = message
        self.declaration = declaration
        self.origin = origin
        super().__init__(self._format())

    def _format(self) -> str:
        where = []
        if self.origin:
            where.append(self.origin)
        if self.declaration:
            where.append(f"'{self.declaration}'")
        if where:
            return f"{' '.join(where)}: {self.message}"
        return self.message


class MalformedDeclaration(SvcGenError):
    kind = "MalformedDeclaration"


class UnsupportedParameterShape(SvcGenError):
    kind = "UnsupportedParameterShape"


class RegisterPressureExceeded(SvcGenError):
    kind = "RegisterPressureExceeded"


class EmissionError(SvcGenError):
    kind = "EmissionError"
