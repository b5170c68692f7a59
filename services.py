from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TextIO, Tuple

from loader import parse_int_literal


class InputReader:
    """Line oriented reader backing the READ instruction."""

    def __init__(self, stream: TextIO) -> None:
        self.stream = stream

    def _next_line(self) -> Optional[str]:
        line = self.stream.readline()
        if line == "":
            return None
        return line[:-1] if line.endswith("\n") else line

    def read_int(self) -> Optional[int]:
        line = self._next_line()
        if line is None:
            return None
        return parse_int_literal(line)

    def read_string(self) -> Optional[str]:
        return self._next_line()

    def read_bool(self) -> Optional[bool]:
        line = self._next_line()
        if line is None:
            return None
        return line.strip().lower() == "true"


class OutputWriter:
    def __init__(self, stream: TextIO) -> None:
        self.stream = stream

    def write_string(self, text: str) -> None:
        self.stream.write(text)

    def write_int(self, number: int) -> None:
        self.stream.write(str(number))

    def write_bool(self, flag: bool) -> None:
        self.stream.write("true" if flag else "false")

    def flush(self) -> None:
        self.stream.flush()


@dataclass(frozen=True)
class StepContext:
    step_index: int
    ip: int
    opcode: str
    extra: Optional[Dict[str, Any]] = None


@dataclass
class HookRegistry:
    # event -> list[(priority, handler)]
    _events: Dict[str, List[Tuple[int, Callable[..., None]]]] = field(default_factory=dict)
    # list[(every_n, handler, name)]
    _step_rules: List[Tuple[int, Callable[[Any, StepContext], None], str]] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int = 0) -> None:
        self._events.setdefault(event, []).append((priority, handler))
        self._events[event].sort(key=lambda t: t[0], reverse=True)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler in self._events.get(event, []):
            handler(*args, **kwargs)

    def add_step_rule(self, *, name: str, every_n: int, handler: Callable[[Any, StepContext], None]) -> None:
        if every_n <= 0:
            raise ValueError("every_n must be >= 1")
        self._step_rules.append((every_n, handler, name))

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for every_n, handler, _name in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    input_reader: InputReader
    stdout: OutputWriter
    stderr: OutputWriter
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


def build_default_services(
    *,
    input_stream: Optional[TextIO] = None,
    output_stream: Optional[TextIO] = None,
    error_stream: Optional[TextIO] = None,
) -> RuntimeServices:
    return RuntimeServices(
        input_reader=InputReader(input_stream if input_stream is not None else sys.stdin),
        stdout=OutputWriter(output_stream if output_stream is not None else sys.stdout),
        stderr=OutputWriter(error_stream if error_stream is not None else sys.stderr),
    )


def install_tracer(services: RuntimeServices) -> None:
    """Echo every instruction to the diagnostics writer before it runs."""

    def _trace(interpreter: Any, ip: int, instruction: Any) -> None:
        services.stderr.write_string(f"[{ip:04d}] {instruction}\n")

    services.hook_registry.on_event("before_instruction", _trace)
