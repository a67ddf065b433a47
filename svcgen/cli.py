"""
Command line entry point.

Usage:
  svcgen path/to/headers nrf_svc.h
  svcgen headers/ out/sd_svc.h -D NRF52 --exclude nrf_nvic.h --preamble LICENSE
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from clang.cindex import LibclangError

from . import __version__
from .config import DEFAULT_ANNOTATION, DEFAULT_TARGET, GeneratorConfig
from .errors import SvcGenError
from .generator import generate


def build_parser() -> argparse.ArgumentParser:
    defaults = GeneratorConfig()
    parser = argparse.ArgumentParser(
        prog="svcgen",
        description="Generate inline SVC trap stubs from annotated C headers.")
    parser.add_argument("source_dir", metavar="SRC_DIR",
                        help="Directory of annotated headers (scanned recursively)")
    parser.add_argument("output", metavar="OUTPUT",
                        help="Generated header path")
    parser.add_argument("--target", default=DEFAULT_TARGET,
                        help=f"Clang target triple (default: {DEFAULT_TARGET})")
    parser.add_argument("-D", dest="defines", action="append", metavar="NAME[=VALUE]",
                        help="Preprocessor define; replaces the defaults "
                             f"({', '.join(defaults.defines)})")
    parser.add_argument("--exclude", action="append", metavar="FILE",
                        help="Header file name to skip; replaces the default "
                             f"({', '.join(defaults.exclude)})")
    parser.add_argument("--empty-header", action="append", metavar="FILE",
                        help="Provide FILE as an empty header; replaces the default "
                             f"({', '.join(defaults.empty_headers)})")
    parser.add_argument("--annotation", default=DEFAULT_ANNOTATION, metavar="MACRO",
                        help=f"Annotation macro name (default: {DEFAULT_ANNOTATION})")
    parser.add_argument("--guard", help="Include guard (default: from OUTPUT name)")
    parser.add_argument("--preamble", metavar="FILE",
                        help="Text file placed verbatim at the top of the output")
    parser.add_argument("--no-comments", action="store_true",
                        help="Do not copy header doc comments")
    parser.add_argument("--clang-arg", action="append", default=[], metavar="ARG",
                        help="Extra argument passed to clang (repeatable)")
    parser.add_argument("--dump-plan", action="store_true",
                        help="Print the register plan of every declaration")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Only print errors")
    parser.add_argument("--version", action="version",
                        version=f"%(prog)s {__version__}")
    return parser


def config_from_args(args: argparse.Namespace) -> GeneratorConfig:
    config = GeneratorConfig(
        target=args.target,
        annotation=args.annotation,
        clang_args=tuple(args.clang_arg),
        guard=args.guard,
        comments=not args.no_comments,
        verbose=not args.quiet,
    )
    if args.defines is not None:
        config = config.with_(defines=tuple(args.defines))
    if args.exclude is not None:
        config = config.with_(exclude=tuple(args.exclude))
    if args.empty_header is not None:
        config = config.with_(empty_headers=tuple(args.empty_header))
    return config


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = config_from_args(args)

    if args.preamble:
        preamble_path = Path(args.preamble)
        try:
            config = config.with_(preamble=preamble_path.read_text(encoding="utf-8"))
        except OSError as e:
            print(f"ERROR: cannot read preamble {preamble_path}: {e.strerror or e}",
                  file=sys.stderr)
            return 1

    try:
        generate(args.source_dir, args.output, config, dump_plan=args.dump_plan)
    except SvcGenError as e:
        print(f"ERROR: {e.kind}: {e}", file=sys.stderr)
        return 1
    except LibclangError as e:
        print(f"ERROR: libclang unavailable: {e}", file=sys.stderr)
        print("  Set LIBCLANG_PATH to the libclang shared library or its directory.",
              file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
