"""Generator configuration. Defaults fit the Nordic SoftDevice header corpus."""

from __future__ import annotations

from dataclasses import dataclass, replace


DEFAULT_TARGET = "thumbv7em-none-eabi"
DEFAULT_ANNOTATION = "SVCALL"


@dataclass(frozen=True)
class GeneratorConfig:
    """
    Attributes:
        target:         Clang target triple used to lay out types.
        defines:        Preprocessor defines, "NAME" or "NAME=VALUE".
        exclude:        Header file names skipped while scanning the corpus.
        empty_headers:  File names provided as empty headers (vendor includes
                        that only matter to the firmware build).
        annotation:     Name of the macro wrapping each trap prototype.
        clang_args:     Extra arguments handed to clang verbatim.
        guard:          Include guard of the output; derived from its name if unset.
        preamble:       Text placed verbatim at the top of the output.
        comments:       Copy header doc comments onto the emitted stubs and types.
        verbose:        Print progress lines.
    """
    target: str = DEFAULT_TARGET
    defines: tuple[str, ...] = ("SVCALL_AS_NORMAL_FUNCTION", "__STATIC_INLINE=")
    exclude: tuple[str, ...] = ("nrf_nvic.h",)
    empty_headers: tuple[str, ...] = ("nrf.h",)
    annotation: str = DEFAULT_ANNOTATION
    clang_args: tuple[str, ...] = ()
    guard: str | None = None
    preamble: str = ""
    comments: bool = True
    verbose: bool = True

    def with_(self, **changes) -> "GeneratorConfig":
        return replace(self, **changes)

    def clang_defines(self) -> list[str]:
        return [f"-D{d}" for d in self.defines]
