"""svcgen: SVC trap stubs from annotated C headers."""

__version__ = "0.1.0"

from .abi import RegisterPlan, classify, classify_all, describe_plan
from .cmodel import Declaration, TypeTable
from .config import GeneratorConfig
from .emit import emit_source, write_output
from .errors import (
    EmissionError,
    MalformedDeclaration,
    RegisterPressureExceeded,
    SvcGenError,
    UnsupportedParameterShape,
)
from .extract import Corpus, extract_corpus
from .generator import GenerationResult, generate

__all__ = [
    "Corpus",
    "Declaration",
    "EmissionError",
    "GenerationResult",
    "GeneratorConfig",
    "MalformedDeclaration",
    "RegisterPlan",
    "RegisterPressureExceeded",
    "SvcGenError",
    "TypeTable",
    "UnsupportedParameterShape",
    "classify",
    "classify_all",
    "describe_plan",
    "emit_source",
    "extract_corpus",
    "generate",
    "write_output",
]
