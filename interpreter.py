from __future__ import annotations
import json
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from loader import Argument, Instruction, InvalidStructureError, IPPError, ReturnCode, parse_int_literal
from services import RuntimeServices, StepContext, build_default_services


TYPE_INT = "int"
TYPE_BOOL = "bool"
TYPE_STRING = "string"
TYPE_NIL = "nil"
TYPE_LABEL = "label"
TYPE_UNDEFINED = "undefined"

INT64_MIN = int(np.iinfo(np.int64).min)
INT64_MAX = int(np.iinfo(np.int64).max)
_UINT64_MASK = (1 << 64) - 1

MAX_CODE_POINT = 0x10FFFF


@dataclass(frozen=True)
class Value:
    type: str
    value: Any


UNDEFINED = Value(TYPE_UNDEFINED, None)
NIL = Value(TYPE_NIL, None)


def int_value(number: int) -> Value:
    return Value(TYPE_INT, number)


def str_value(text: str) -> Value:
    return Value(TYPE_STRING, text)


def bool_value(flag: bool) -> Value:
    return Value(TYPE_BOOL, bool(flag))


def wrap_int64(number: int) -> int:
    """Reduce an arbitrary Python int to two's complement int64."""
    return int(np.array([number & _UINT64_MASK], dtype=np.uint64).view(np.int64)[0])


def truncating_div(dividend: int, divisor: int) -> int:
    quotient = abs(dividend) // abs(divisor)
    if (dividend < 0) != (divisor < 0):
        quotient = -quotient
    return wrap_int64(quotient)


def decode_string_literal(text: str) -> str:
    r"""Replace every \DDD escape with the code point DDD."""
    parts: List[str] = []
    index = 0
    while True:
        slash = text.find("\\", index)
        if slash == -1:
            parts.append(text[index:])
            break
        digits = text[slash + 1 : slash + 4]
        if len(digits) != 3 or any(ch not in "0123456789" for ch in digits):
            raise InvalidStructureError(f"Invalid escape sequence in string literal: {text[slash:slash + 4]!r}")
        parts.append(text[index:slash])
        parts.append(chr(int(digits, 10)))
        index = slash + 4
    return "".join(parts)


def describe_value(value: Value) -> str:
    if value.type == TYPE_UNDEFINED:
        return TYPE_UNDEFINED
    if value.type == TYPE_NIL:
        return "nil@nil"
    if value.type == TYPE_BOOL:
        return "bool@" + ("true" if value.value else "false")
    rendered = str(value.value)
    if len(rendered) > 80:
        rendered = rendered[:77] + "..."
    return f"{value.type}@{rendered}"


# ---- Errors ----


class IPPRuntimeError(IPPError):
    """Raised for runtime faults."""


class SemanticError(IPPRuntimeError):
    code = ReturnCode.SEMANTIC_ERROR


class OperandTypeError(IPPRuntimeError):
    code = ReturnCode.OPERAND_TYPE_ERROR


class VariableAccessError(IPPRuntimeError):
    code = ReturnCode.VARIABLE_ACCESS_ERROR


class FrameAccessError(IPPRuntimeError):
    code = ReturnCode.FRAME_ACCESS_ERROR


class ValueAccessError(IPPRuntimeError):
    code = ReturnCode.VALUE_ERROR


class EmptyStackError(IPPRuntimeError):
    code = ReturnCode.VALUE_ERROR


class OperandValueError(IPPRuntimeError):
    code = ReturnCode.OPERAND_VALUE_ERROR


class StringOperationError(IPPRuntimeError):
    code = ReturnCode.STRING_OPERATION_ERROR


class NotImplementedOpcodeError(IPPRuntimeError):
    code = ReturnCode.INTERNAL_ERROR


class ExitSignal(Exception):
    def __init__(self, code: int = 0) -> None:
        super().__init__(code)
        self.code = code


# ---- Frames ----

FRAME_GLOBAL = "GF"
FRAME_LOCAL = "LF"
FRAME_TEMPORARY = "TF"
FRAME_KINDS = (FRAME_GLOBAL, FRAME_LOCAL, FRAME_TEMPORARY)


class VariableAddress(NamedTuple):
    frame: str
    name: str

    @classmethod
    def parse(cls, text: str) -> "VariableAddress":
        frame, sep, name = text.partition("@")
        if not sep or frame not in FRAME_KINDS:
            raise OperandValueError(f"Invalid frame: {frame!r}")
        if not name:
            raise OperandValueError(f"Missing variable name in {text!r}")
        return cls(frame, name)

    def __str__(self) -> str:
        return f"{self.frame}@{self.name}"


@dataclass
class Frame:
    variables: Dict[str, Value] = field(default_factory=dict)

    def define(self, name: str) -> None:
        if name in self.variables:
            raise SemanticError(f"Variable '{name}' is already defined")
        self.variables[name] = UNDEFINED

    def get(self, name: str) -> Value:
        try:
            return self.variables[name]
        except KeyError:
            raise VariableAccessError(f"Undefined variable: {name}")

    def set(self, name: str, value: Value) -> None:
        if name not in self.variables:
            raise VariableAccessError(f"Undefined variable: {name}")
        self.variables[name] = value

    def has(self, name: str) -> bool:
        return name in self.variables

    def snapshot(self) -> Dict[str, str]:
        return {k: describe_value(v) for k, v in self.variables.items()}


class FrameManager:
    def __init__(self) -> None:
        self.global_frame = Frame()
        self.temporary_frame: Optional[Frame] = None
        self.local_frames: List[Frame] = []

    def create_frame(self) -> None:
        self.temporary_frame = Frame()

    def push_frame(self) -> None:
        if self.temporary_frame is None:
            raise FrameAccessError("Temporary frame is not defined")
        self.local_frames.append(self.temporary_frame)
        self.temporary_frame = None

    def pop_frame(self) -> None:
        if not self.local_frames:
            raise FrameAccessError("Local frame stack is empty")
        self.temporary_frame = self.local_frames.pop()

    def frame_for(self, kind: str) -> Frame:
        if kind == FRAME_GLOBAL:
            return self.global_frame
        if kind == FRAME_LOCAL:
            if not self.local_frames:
                raise FrameAccessError("Local frame is not defined")
            return self.local_frames[-1]
        if kind == FRAME_TEMPORARY:
            if self.temporary_frame is None:
                raise FrameAccessError("Temporary frame is not defined")
            return self.temporary_frame
        raise OperandValueError(f"Invalid frame: {kind!r}")

    def define(self, address: str) -> None:
        addr = VariableAddress.parse(address)
        self.frame_for(addr.frame).define(addr.name)

    def get_variable(self, address: str, allow_undefined: bool = False) -> Value:
        addr = VariableAddress.parse(address)
        value = self.frame_for(addr.frame).get(addr.name)
        if value.type == TYPE_UNDEFINED and not allow_undefined:
            raise ValueAccessError(f"Variable {addr} has no value")
        return value

    def set_variable(self, address: str, value: Value) -> None:
        addr = VariableAddress.parse(address)
        self.frame_for(addr.frame).set(addr.name, value)

    def snapshot(self) -> Dict[str, Any]:
        return {
            FRAME_GLOBAL: self.global_frame.snapshot(),
            FRAME_TEMPORARY: None if self.temporary_frame is None else self.temporary_frame.snapshot(),
            FRAME_LOCAL: [frame.snapshot() for frame in self.local_frames],
        }


# ---- Stacks and labels ----


class Stack:
    def __init__(self, name: str) -> None:
        self.name = name
        self.items: List[Any] = []

    def push(self, item: Any) -> None:
        self.items.append(item)

    def pop(self) -> Any:
        if not self.items:
            raise EmptyStackError(f"Pop from empty {self.name}")
        return self.items.pop()

    def top(self) -> Any:
        if not self.items:
            raise EmptyStackError(f"Top of empty {self.name}")
        return self.items[-1]

    def is_empty(self) -> bool:
        return not self.items

    def __len__(self) -> int:
        return len(self.items)


class LabelTable:
    def __init__(self, labels: Optional[Dict[str, int]] = None) -> None:
        self.labels: Dict[str, int] = dict(labels) if labels else {}

    @classmethod
    def build(cls, instructions: Sequence[Instruction]) -> "LabelTable":
        table = cls()
        for index, instruction in enumerate(instructions):
            if instruction.opcode.upper() != Opcode.LABEL.value:
                continue
            if len(instruction.args) != 1:
                raise InvalidStructureError(f"LABEL expects 1 operand, got {len(instruction.args)}")
            arg = instruction.args[0]
            if arg.type != TYPE_LABEL:
                raise OperandTypeError(f"LABEL expects a label operand, got {arg.type}", rule="LABEL")
            if arg.text in table.labels:
                raise SemanticError(f"Duplicate label: {arg.text}", rule="LABEL")
            table.labels[arg.text] = index
        return table

    def resolve(self, name: str) -> int:
        try:
            return self.labels[name]
        except KeyError:
            raise SemanticError(f"Undefined label: {name}")

    def __contains__(self, name: str) -> bool:
        return name in self.labels

    def __len__(self) -> int:
        return len(self.labels)


# ---- Opcodes ----


class Opcode(str, Enum):
    MOVE = "MOVE"
    CREATEFRAME = "CREATEFRAME"
    PUSHFRAME = "PUSHFRAME"
    POPFRAME = "POPFRAME"
    DEFVAR = "DEFVAR"
    CALL = "CALL"
    RETURN = "RETURN"
    PUSHS = "PUSHS"
    POPS = "POPS"
    ADD = "ADD"
    SUB = "SUB"
    MUL = "MUL"
    IDIV = "IDIV"
    LT = "LT"
    GT = "GT"
    EQ = "EQ"
    AND = "AND"
    OR = "OR"
    NOT = "NOT"
    INT2CHAR = "INT2CHAR"
    STRI2INT = "STRI2INT"
    READ = "READ"
    WRITE = "WRITE"
    CONCAT = "CONCAT"
    STRLEN = "STRLEN"
    GETCHAR = "GETCHAR"
    SETCHAR = "SETCHAR"
    TYPE = "TYPE"
    LABEL = "LABEL"
    JUMP = "JUMP"
    JUMPIFEQ = "JUMPIFEQ"
    JUMPIFNEQ = "JUMPIFNEQ"
    EXIT = "EXIT"
    DPRINT = "DPRINT"
    BREAK = "BREAK"


UNIMPLEMENTED_OPCODES = (Opcode.LT, Opcode.GT, Opcode.EQ, Opcode.AND, Opcode.OR, Opcode.NOT)

# Handlers return the next instruction pointer, or None to fall through.
OpcodeImpl = Callable[[List[Argument]], Optional[int]]


@dataclass
class OpcodeSpec:
    opcode: Opcode
    operands: Optional[Tuple[str, ...]]
    impl: OpcodeImpl

    def validate(self, supplied: int) -> None:
        if self.operands is None:
            return
        if supplied != len(self.operands):
            raise InvalidStructureError(
                f"{self.opcode.value} expects {len(self.operands)} operands, got {supplied}",
                rule=self.opcode.value,
            )


# ---- Step logging ----


@dataclass
class StateEntry:
    step_index: int
    ip: int
    statement: str
    frames_snapshot: Optional[Dict[str, Any]]


class StateLogger:
    def __init__(self, history: int = 256) -> None:
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_step_index = 0

    def record(self, *, ip: int, statement: str, frames_snapshot: Optional[Dict[str, Any]] = None) -> StateEntry:
        entry = StateEntry(
            step_index=self.next_step_index,
            ip=ip,
            statement=statement,
            frames_snapshot=frames_snapshot,
        )
        self.entries.append(entry)
        self.next_step_index += 1
        return entry

    def last_entry(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


# ---- Interpreter ----


class Interpreter:
    def __init__(
        self,
        instructions: Sequence[Instruction],
        *,
        services: Optional[RuntimeServices] = None,
        verbose: bool = False,
    ) -> None:
        self.instructions: List[Instruction] = list(instructions)
        self.verbose = verbose
        self.services = services or build_default_services()
        self.hook_registry = self.services.hook_registry
        self.stdout = self.services.stdout
        self.stderr = self.services.stderr
        self.input_reader = self.services.input_reader

        self.frames = FrameManager()
        self.call_stack = Stack("call stack")
        self.data_stack = Stack("data stack")
        self.labels = LabelTable.build(self.instructions)
        self.ip = 0
        self.logger = StateLogger()

        self.table: Dict[Opcode, OpcodeSpec] = {}
        register = self._register
        register(Opcode.MOVE, ("var", "symb"), self._move)
        register(Opcode.CREATEFRAME, (), self._createframe)
        register(Opcode.PUSHFRAME, (), self._pushframe)
        register(Opcode.POPFRAME, (), self._popframe)
        register(Opcode.DEFVAR, ("var",), self._defvar)
        register(Opcode.CALL, ("label",), self._call)
        register(Opcode.RETURN, (), self._return)
        register(Opcode.PUSHS, ("symb",), self._pushs)
        register(Opcode.POPS, ("var",), self._pops)
        register(Opcode.ADD, ("var", "symb", "symb"), self._arith("ADD", lambda a, b: a + b))
        register(Opcode.SUB, ("var", "symb", "symb"), self._arith("SUB", lambda a, b: a - b))
        register(Opcode.MUL, ("var", "symb", "symb"), self._arith("MUL", lambda a, b: a * b))
        register(Opcode.IDIV, ("var", "symb", "symb"), self._idiv)
        for opcode in UNIMPLEMENTED_OPCODES:
            register(opcode, None, self._not_implemented(opcode))
        register(Opcode.INT2CHAR, ("var", "symb"), self._int2char)
        register(Opcode.STRI2INT, ("var", "symb", "symb"), self._stri2int)
        register(Opcode.READ, ("var", "type"), self._read)
        register(Opcode.WRITE, ("symb",), self._write)
        register(Opcode.CONCAT, ("var", "symb", "symb"), self._concat)
        register(Opcode.STRLEN, ("var", "symb"), self._strlen)
        register(Opcode.GETCHAR, ("var", "symb", "symb"), self._getchar)
        register(Opcode.SETCHAR, ("var", "symb", "symb"), self._setchar)
        register(Opcode.TYPE, ("var", "symb"), self._type)
        register(Opcode.LABEL, ("label",), self._label_noop)
        register(Opcode.JUMP, ("label",), self._jump)
        register(Opcode.JUMPIFEQ, ("label", "symb", "symb"), self._conditional_jump(True))
        register(Opcode.JUMPIFNEQ, ("label", "symb", "symb"), self._conditional_jump(False))
        register(Opcode.EXIT, ("symb",), self._exit)
        register(Opcode.DPRINT, ("symb",), self._dprint)
        register(Opcode.BREAK, (), self._break)

        missing = [op.value for op in Opcode if op not in self.table]
        if missing:
            raise RuntimeError(f"No handler registered for: {', '.join(missing)}")

    def _register(self, opcode: Opcode, operands: Optional[Tuple[str, ...]], impl: OpcodeImpl) -> None:
        self.table[opcode] = OpcodeSpec(opcode=opcode, operands=operands, impl=impl)

    # ---- main loop ----

    def run(self) -> int:
        instructions = self.instructions
        count = len(instructions)
        emit_event = self._emit_event
        self.ip = 0
        emit_event("program_start", self)
        try:
            while self.ip < count:
                instruction = instructions[self.ip]
                self._log_step(instruction)
                emit_event("before_instruction", self, self.ip, instruction)
                next_ip = self._execute_instruction(instruction)
                emit_event("after_instruction", self, self.ip, instruction)
                self.ip = self.ip + 1 if next_ip is None else next_ip
        except ExitSignal:
            raise
        except IPPError as error:
            self._annotate(error)
            emit_event("on_error", self, error)
            raise
        except Exception as exc:
            wrapped = IPPRuntimeError(f"Internal interpreter error: {exc}", rule="internal")
            self._annotate(wrapped)
            raise wrapped from exc
        emit_event("program_end", self, 0)
        return 0

    def _annotate(self, error: IPPError) -> None:
        error.ip = self.ip
        entry = self.logger.last_entry()
        if entry is not None:
            error.step_index = entry.step_index
        if error.rule is None and self.ip < len(self.instructions):
            error.rule = self.instructions[self.ip].opcode

    def _execute_instruction(self, instruction: Instruction) -> Optional[int]:
        opcode = Opcode.__members__.get(instruction.opcode.upper())
        if opcode is None:
            raise InvalidStructureError(f"Invalid opcode: {instruction.opcode}", rule=instruction.opcode)
        spec = self.table[opcode]
        spec.validate(len(instruction.args))
        return spec.impl(instruction.args)

    def _emit_event(self, event: str, *args: Any) -> None:
        try:
            self.hook_registry.emit(event, *args)
        except (IPPError, ExitSignal):
            raise
        except Exception as exc:
            raise IPPRuntimeError(f"Hook '{event}' failed: {exc}", rule="hook")

    def _log_step(self, instruction: Instruction) -> None:
        snapshot = self.frames.snapshot() if self.verbose else None
        entry = self.logger.record(ip=self.ip, statement=str(instruction), frames_snapshot=snapshot)
        try:
            self.hook_registry.after_step(
                self,
                StepContext(step_index=entry.step_index, ip=self.ip, opcode=instruction.opcode),
            )
        except (IPPError, ExitSignal):
            raise
        except Exception as exc:
            raise IPPRuntimeError(f"Step rule failed: {exc}", rule="hook")

    # ---- operand helpers ----

    def _symb(self, arg: Argument) -> Value:
        kind = arg.type
        text = arg.text
        if kind == "var":
            return self.frames.get_variable(text)
        if kind == TYPE_STRING:
            return str_value(decode_string_literal(text))
        if kind == TYPE_INT:
            number = parse_int_literal(text)
            if number is None or not (INT64_MIN <= number <= INT64_MAX):
                raise InvalidStructureError(f"Invalid int literal: {text!r}")
            return int_value(number)
        if kind == TYPE_BOOL:
            lowered = text.lower()
            if lowered not in ("true", "false"):
                raise InvalidStructureError(f"Invalid bool literal: {text!r}")
            return bool_value(lowered == "true")
        if kind == TYPE_NIL:
            if text != "nil":
                raise InvalidStructureError(f"Invalid nil literal: {text!r}")
            return NIL
        raise OperandTypeError(f"Expected a symbol, got {kind}")

    def _var(self, arg: Argument) -> str:
        if arg.type != "var":
            raise OperandTypeError(f"Expected a variable, got {arg.type}")
        return arg.text

    def _label(self, arg: Argument) -> int:
        if arg.type != TYPE_LABEL:
            raise OperandTypeError(f"Expected a label, got {arg.type}")
        return self.labels.resolve(arg.text)

    def _expect_int(self, value: Value, rule: str) -> int:
        if value.type != TYPE_INT:
            raise OperandTypeError(f"{rule} expects int, got {value.type}", rule=rule)
        return value.value

    def _expect_str(self, value: Value, rule: str) -> str:
        if value.type != TYPE_STRING:
            raise OperandTypeError(f"{rule} expects string, got {value.type}", rule=rule)
        return value.value

    def _char_index(self, text: str, index: int, rule: str) -> int:
        if index < 0 or index >= len(text):
            raise StringOperationError(f"Index {index} out of range for string of length {len(text)}", rule=rule)
        return index

    # ---- frames and data movement ----

    def _move(self, args: List[Argument]) -> Optional[int]:
        target = self._var(args[0])
        self.frames.set_variable(target, self._symb(args[1]))
        return None

    def _createframe(self, args: List[Argument]) -> Optional[int]:
        self.frames.create_frame()
        return None

    def _pushframe(self, args: List[Argument]) -> Optional[int]:
        self.frames.push_frame()
        return None

    def _popframe(self, args: List[Argument]) -> Optional[int]:
        self.frames.pop_frame()
        return None

    def _defvar(self, args: List[Argument]) -> Optional[int]:
        self.frames.define(self._var(args[0]))
        return None

    def _pushs(self, args: List[Argument]) -> Optional[int]:
        self.data_stack.push(self._symb(args[0]))
        return None

    def _pops(self, args: List[Argument]) -> Optional[int]:
        target = self._var(args[0])
        self.frames.set_variable(target, self.data_stack.pop())
        return None

    # ---- control flow ----

    def _call(self, args: List[Argument]) -> Optional[int]:
        target = self._label(args[0])
        self.call_stack.push(self.ip)
        return target

    def _return(self, args: List[Argument]) -> Optional[int]:
        return self.call_stack.pop() + 1

    def _label_noop(self, args: List[Argument]) -> Optional[int]:
        return None

    def _jump(self, args: List[Argument]) -> Optional[int]:
        return self._label(args[0])

    def _values_equal(self, left: Value, right: Value, rule: str) -> bool:
        if left.type == TYPE_NIL or right.type == TYPE_NIL:
            return left.type == right.type
        if left.type != right.type:
            raise OperandTypeError(f"Cannot compare {left.type} with {right.type}", rule=rule)
        return left.value == right.value

    def _conditional_jump(self, when_equal: bool) -> OpcodeImpl:
        rule = "JUMPIFEQ" if when_equal else "JUMPIFNEQ"

        def impl(args: List[Argument]) -> Optional[int]:
            target = self._label(args[0])
            left = self._symb(args[1])
            right = self._symb(args[2])
            if self._values_equal(left, right, rule) == when_equal:
                return target
            return None

        return impl

    def _exit(self, args: List[Argument]) -> Optional[int]:
        code = self._expect_int(self._symb(args[0]), "EXIT")
        if code < 0 or code > 9:
            raise OperandValueError(f"Invalid exit code: {code}", rule="EXIT")
        raise ExitSignal(code)

    def _not_implemented(self, opcode: Opcode) -> OpcodeImpl:
        def impl(args: List[Argument]) -> Optional[int]:
            raise NotImplementedOpcodeError(f"Not implemented yet: {opcode.value}", rule=opcode.value)

        return impl

    # ---- arithmetic ----

    def _arith(self, rule: str, op: Callable[[int, int], int]) -> OpcodeImpl:
        def impl(args: List[Argument]) -> Optional[int]:
            target = self._var(args[0])
            left = self._expect_int(self._symb(args[1]), rule)
            right = self._expect_int(self._symb(args[2]), rule)
            self.frames.set_variable(target, int_value(wrap_int64(op(left, right))))
            return None

        return impl

    def _idiv(self, args: List[Argument]) -> Optional[int]:
        target = self._var(args[0])
        dividend = self._expect_int(self._symb(args[1]), "IDIV")
        divisor = self._expect_int(self._symb(args[2]), "IDIV")
        if divisor == 0:
            raise OperandValueError("Division by zero", rule="IDIV")
        self.frames.set_variable(target, int_value(truncating_div(dividend, divisor)))
        return None

    # ---- strings ----

    def _int2char(self, args: List[Argument]) -> Optional[int]:
        target = self._var(args[0])
        code_point = self._expect_int(self._symb(args[1]), "INT2CHAR")
        if code_point < 0 or code_point > MAX_CODE_POINT or 0xD800 <= code_point <= 0xDFFF:
            raise OperandValueError(f"Invalid character code: {code_point}", rule="INT2CHAR")
        self.frames.set_variable(target, str_value(chr(code_point)))
        return None

    def _stri2int(self, args: List[Argument]) -> Optional[int]:
        target = self._var(args[0])
        text = self._expect_str(self._symb(args[1]), "STRI2INT")
        index = self._char_index(text, self._expect_int(self._symb(args[2]), "STRI2INT"), "STRI2INT")
        self.frames.set_variable(target, int_value(ord(text[index])))
        return None

    def _concat(self, args: List[Argument]) -> Optional[int]:
        target = self._var(args[0])
        left = self._expect_str(self._symb(args[1]), "CONCAT")
        right = self._expect_str(self._symb(args[2]), "CONCAT")
        self.frames.set_variable(target, str_value(left + right))
        return None

    def _strlen(self, args: List[Argument]) -> Optional[int]:
        target = self._var(args[0])
        text = self._expect_str(self._symb(args[1]), "STRLEN")
        self.frames.set_variable(target, int_value(len(text)))
        return None

    def _getchar(self, args: List[Argument]) -> Optional[int]:
        target = self._var(args[0])
        text = self._expect_str(self._symb(args[1]), "GETCHAR")
        index = self._char_index(text, self._expect_int(self._symb(args[2]), "GETCHAR"), "GETCHAR")
        self.frames.set_variable(target, str_value(text[index]))
        return None

    def _setchar(self, args: List[Argument]) -> Optional[int]:
        target = self._var(args[0])
        current = self._expect_str(self.frames.get_variable(target), "SETCHAR")
        index = self._expect_int(self._symb(args[1]), "SETCHAR")
        replacement = self._expect_str(self._symb(args[2]), "SETCHAR")
        self._char_index(current, index, "SETCHAR")
        if not replacement:
            raise StringOperationError("SETCHAR replacement string is empty", rule="SETCHAR")
        updated = current[:index] + replacement[0] + current[index + 1 :]
        self.frames.set_variable(target, str_value(updated))
        return None

    # ---- types and I/O ----

    def _type(self, args: List[Argument]) -> Optional[int]:
        target = self._var(args[0])
        source = args[1]
        if source.type == "var":
            value = self.frames.get_variable(source.text, allow_undefined=True)
        else:
            value = self._symb(source)
        name = "" if value.type == TYPE_UNDEFINED else value.type
        self.frames.set_variable(target, str_value(name))
        return None

    def _read(self, args: List[Argument]) -> Optional[int]:
        target = self._var(args[0])
        type_arg = args[1]
        if type_arg.type != "type":
            raise OperandTypeError(f"READ expects a type operand, got {type_arg.type}", rule="READ")
        kind = type_arg.text
        reader = self.input_reader
        value: Value = NIL
        if kind == TYPE_INT:
            number = reader.read_int()
            if number is not None and INT64_MIN <= number <= INT64_MAX:
                value = int_value(number)
        elif kind == TYPE_STRING:
            text = reader.read_string()
            if text is not None:
                value = str_value(text)
        elif kind == TYPE_BOOL:
            flag = reader.read_bool()
            if flag is not None:
                value = bool_value(flag)
        else:
            raise OperandValueError(f"Invalid type: {kind!r}", rule="READ")
        self.frames.set_variable(target, value)
        return None

    def _write(self, args: List[Argument]) -> Optional[int]:
        value = self._symb(args[0])
        out = self.stdout
        if value.type == TYPE_INT:
            out.write_int(value.value)
        elif value.type == TYPE_BOOL:
            out.write_bool(value.value)
        elif value.type == TYPE_NIL:
            out.write_string("")
        elif value.type == TYPE_STRING:
            out.write_string(value.value)
        else:
            raise OperandTypeError(f"WRITE cannot print {value.type}", rule="WRITE")
        return None

    def _dprint(self, args: List[Argument]) -> Optional[int]:
        value = self._symb(args[0])
        if value.type == TYPE_BOOL:
            rendered = "true" if value.value else "false"
        elif value.type == TYPE_NIL:
            rendered = "nil"
        else:
            rendered = str(value.value)
        self.stderr.write_string(rendered + "\n")
        return None

    def _break(self, args: List[Argument]) -> Optional[int]:
        snapshot = self.frames.snapshot()
        temporary = snapshot[FRAME_TEMPORARY]
        lines = [
            f"Instruction pointer: {self.ip}",
            f"Executed instructions: {self.logger.next_step_index}",
            f"Global frame: {_format_frame(snapshot[FRAME_GLOBAL])}",
            f"Temporary frame: {'<absent>' if temporary is None else _format_frame(temporary)}",
            "Local frames: " + ("Empty" if not snapshot[FRAME_LOCAL] else " | ".join(_format_frame(f) for f in snapshot[FRAME_LOCAL])),
            "Call stack: " + ("Empty" if self.call_stack.is_empty() else ", ".join(str(ip) for ip in self.call_stack.items)),
            "Data stack: " + ("Empty" if self.data_stack.is_empty() else ", ".join(describe_value(v) for v in self.data_stack.items)),
        ]
        self.stderr.write_string("\n".join(lines) + "\n")
        return None


def _format_frame(variables: Dict[str, str]) -> str:
    if not variables:
        return "Empty"
    return "{" + ", ".join(f"{k}={v}" for k, v in variables.items()) + "}"


# ---- Tracebacks ----


@dataclass
class TracebackFrame:
    ip: int
    statement: Optional[str]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def _statement_at(self, ip: int) -> Optional[str]:
        if 0 <= ip < len(self.interpreter.instructions):
            return str(self.interpreter.instructions[ip])
        return None

    def build_frames(self, error: IPPError) -> List[TracebackFrame]:
        frames = [TracebackFrame(ip=ip, statement=self._statement_at(ip)) for ip in self.interpreter.call_stack.items]
        failing_ip = error.ip if error.ip is not None else self.interpreter.ip
        frames.append(TracebackFrame(ip=failing_ip, statement=self._statement_at(failing_ip)))
        return frames

    def format_text(self, error: IPPError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames(error):
            lines.append(f"  Instruction {frame.ip}")
            if frame.statement:
                lines.append(f"    {frame.statement}")
        if error.step_index is not None:
            lines.append(f"    Step index: {error.step_index}")
        if verbose:
            entry = self.interpreter.logger.last_entry()
            if entry is not None and entry.frames_snapshot is not None:
                lines.append(f"    Frames: {json.dumps(entry.frames_snapshot)}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (opcode: {rule}, exit code: {int(error.code)})")
        return "\n".join(lines)

    def to_json(self, error: IPPError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames(error)):
            entry: Dict[str, Any] = {"frame_index": index, "ip": frame.ip}
            if frame.statement:
                entry["statement"] = frame.statement
            frames_json.append(entry)
        data: Dict[str, Any] = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "code": int(error.code),
                "opcode": error.rule,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        last = self.interpreter.logger.last_entry()
        if last is not None and last.frames_snapshot is not None:
            data["frames"] = last.frames_snapshot
        return json.dumps(data, indent=2)
