"""End-to-end run: header directory in, one stub header out."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .abi import RegisterPlan, classify_all, describe_plan
from .config import GeneratorConfig
from .emit import emit_source, write_output
from .extract import Corpus, extract_corpus


@dataclass
class GenerationResult:
    output_path: Path
    corpus: Corpus
    plans: list[RegisterPlan]
    text: str
    size: int

    @property
    def declarations(self):
        return self.corpus.declarations


def generate(source_dir: str | Path, output_path: str | Path,
             config: GeneratorConfig | None = None,
             dump_plan: bool = False) -> GenerationResult:
    """
    Extract, classify and emit.  The output file is only written once every
    declaration has been classified, so a failed run leaves nothing behind.
    """
    config = config or GeneratorConfig()
    output_path = Path(output_path)

    corpus = extract_corpus(source_dir, config)
    plans = classify_all(corpus.declarations, corpus.table)

    if dump_plan:
        for plan in plans:
            print(describe_plan(plan))

    text = emit_source(corpus, plans, config, output_path.name)
    size = write_output(output_path, text)

    if config.verbose:
        print(f"Wrote {output_path} ({size} bytes, {len(plans)} stubs)")

    return GenerationResult(
        output_path=output_path,
        corpus=corpus,
        plans=plans,
        text=text,
        size=size,
    )
