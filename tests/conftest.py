from __future__ import annotations
import io
from dataclasses import dataclass
from typing import Callable, List

import pytest

from interpreter import ExitSignal, Interpreter
from loader import Argument, Instruction
from services import build_default_services

LABEL_FIRST = {"LABEL", "JUMP", "CALL", "JUMPIFEQ", "JUMPIFNEQ"}
LITERAL_TYPES = ("int", "bool", "string", "nil")


def _classify(opcode: str, position: int, token: str) -> Argument:
    if position == 0 and opcode in LABEL_FIRST:
        return Argument("label", token)
    if opcode == "READ" and position == 1:
        return Argument("type", token)
    kind, sep, text = token.partition("@")
    if sep and kind in ("GF", "LF", "TF"):
        return Argument("var", token)
    if sep and kind in LITERAL_TYPES:
        return Argument(kind, text)
    raise ValueError(f"Cannot classify operand {token!r}")


def assemble(source: str) -> List[Instruction]:
    """Build instructions from one `OPCODE arg...` per line (blank lines ignored)."""
    instructions: List[Instruction] = []
    for line in source.strip().splitlines():
        parts = line.split()
        if not parts:
            continue
        opcode = parts[0].upper()
        args = [_classify(opcode, i, token) for i, token in enumerate(parts[1:])]
        instructions.append(Instruction(opcode=opcode, args=args, order=len(instructions) + 1))
    return instructions


@dataclass
class RunResult:
    code: int
    stdout: str
    stderr: str
    interpreter: Interpreter


@pytest.fixture
def run_program() -> Callable[..., RunResult]:
    def _run(source: str, stdin: str = "", verbose: bool = False) -> RunResult:
        out, err = io.StringIO(), io.StringIO()
        services = build_default_services(input_stream=io.StringIO(stdin), output_stream=out, error_stream=err)
        interpreter = Interpreter(assemble(source), services=services, verbose=verbose)
        try:
            code = interpreter.run()
        except ExitSignal as sig:
            code = sig.code
        return RunResult(code=code, stdout=out.getvalue(), stderr=err.getvalue(), interpreter=interpreter)

    return _run


@pytest.fixture
def make_interpreter() -> Callable[..., Interpreter]:
    def _make(source: str, stdin: str = "", verbose: bool = False) -> Interpreter:
        services = build_default_services(
            input_stream=io.StringIO(stdin),
            output_stream=io.StringIO(),
            error_stream=io.StringIO(),
        )
        return Interpreter(assemble(source), services=services, verbose=verbose)

    return _make
