"""IPPcode interpreter entry point."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional, TextIO

from interpreter import ExitSignal, Interpreter, TracebackFormatter
from loader import IPPError, ReturnCode, load_program
from services import RuntimeServices, build_default_services, install_tracer


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        print(f"{self.prog}: error: {message}", file=sys.stderr)
        raise SystemExit(int(ReturnCode.PARAMETER_ERROR))


def _open_input(path: Optional[str]) -> TextIO:
    if path is None:
        return sys.stdin
    return open(path, "r", encoding="utf-8")


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = _ArgumentParser(description="IPPcode24 interpreter")
    parser.add_argument("--source", dest="source", help="XML program file (default: stdin)")
    parser.add_argument("--input", dest="input", help="Input file for READ (default: stdin)")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record frame snapshots for tracebacks")
    parser.add_argument("--trace", action="store_true", help="Echo every instruction to stderr before it runs")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    args = parser.parse_args(argv)

    if args.source is None and args.input is None:
        print("At least one of --source or --input is required", file=sys.stderr)
        return int(ReturnCode.PARAMETER_ERROR)

    try:
        source_handle = _open_input(args.source)
        try:
            source_text = source_handle.read()
        finally:
            if source_handle is not sys.stdin:
                source_handle.close()
        input_handle = _open_input(args.input)
    except OSError as exc:
        print(f"Failed to open input: {exc}", file=sys.stderr)
        return int(ReturnCode.INPUT_FILE_ERROR)

    services = build_default_services(input_stream=input_handle)
    if args.trace:
        install_tracer(services)

    try:
        return _execute(source_text, args.source or "<stdin>", services, args.verbose, args.traceback_json)
    finally:
        services.stdout.flush()
        if input_handle is not sys.stdin:
            input_handle.close()


def _execute(source_text: str, filename: str, services: RuntimeServices, verbose: bool, traceback_json: bool) -> int:
    try:
        instructions = load_program(source_text, filename)
        interpreter = Interpreter(instructions, services=services, verbose=verbose)
    except IPPError as error:
        print(f"{error.__class__.__name__}: {error.message}", file=sys.stderr)
        return int(error.code)

    try:
        return interpreter.run()
    except ExitSignal as sig:
        return sig.code
    except IPPError as error:
        services.stdout.flush()
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=verbose), file=sys.stderr)
        if traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return int(error.code)


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
