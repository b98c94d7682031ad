"""plates entry point."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from plates_interpreter import DEFAULT_MAX_DEPTH, Interpreter, PlatesRuntimeError, TracebackFormatter
from plates_lexer import PlatesParseError
from plates_parser import DIALECTS, DIALECT_NAMED


def _positive_int(text: str) -> int:
    value = int(text)
    if value < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer but got {text}")
    return value


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="plates", description="plates stack language interpreter")
    parser.add_argument("program", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record stack snapshots in tracebacks")
    parser.add_argument("-debug", "--debug", dest="debug", action="store_true", help="Print the stack to stderr after each instruction")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--max-depth", type=_positive_int, default=DEFAULT_MAX_DEPTH, help="Maximum number of nested function calls")
    parser.add_argument("--max-steps", type=_positive_int, default=None, help="Abort after this many instructions")
    parser.add_argument("--seed", type=int, default=None, help="Seed for the random byte generator used by PUSH *")
    parser.add_argument("--dialect", choices=DIALECTS, default=DIALECT_NAMED, help="Calling convention")
    return parser


def run_cli(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except (OSError, UnicodeDecodeError) as exc:
            print(f"IOError: failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    interpreter = Interpreter(
        source=source_text,
        filename=filename,
        verbose=args.verbose,
        debug=args.debug,
        max_depth=args.max_depth,
        max_steps=args.max_steps,
        dialect=args.dialect,
        seed=args.seed,
    )
    try:
        return interpreter.run()
    except PlatesParseError as error:
        print(f"{error.kind}: {error}", file=sys.stderr)
        return 1
    except PlatesRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
