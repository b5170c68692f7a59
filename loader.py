from __future__ import annotations
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional


class ReturnCode(IntEnum):
    OK = 0
    PARAMETER_ERROR = 10
    INPUT_FILE_ERROR = 11
    OUTPUT_FILE_ERROR = 12
    INVALID_XML = 31
    INVALID_SOURCE_STRUCTURE = 32
    SEMANTIC_ERROR = 52
    OPERAND_TYPE_ERROR = 53
    VARIABLE_ACCESS_ERROR = 54
    FRAME_ACCESS_ERROR = 55
    VALUE_ERROR = 56
    OPERAND_VALUE_ERROR = 57
    STRING_OPERATION_ERROR = 58
    INTEGRATION_ERROR = 88
    INTERNAL_ERROR = 99


class IPPError(Exception):
    """Base class for interpreter errors."""

    code: ReturnCode = ReturnCode.INTERNAL_ERROR

    def __init__(self, message: str, *, rule: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.rule = rule
        self.ip: Optional[int] = None
        self.step_index: Optional[int] = None


class SourceFormatError(IPPError):
    """Raised when the source document is not well-formed XML."""

    code = ReturnCode.INVALID_XML


class InvalidStructureError(IPPError):
    """Raised for malformed instructions: bad shape, unknown opcode, bad literal."""

    code = ReturnCode.INVALID_SOURCE_STRUCTURE


ARGUMENT_TYPES = {"var", "label", "int", "bool", "string", "nil", "type"}

LANGUAGE = "IPPcode24"

# Optional sign, then hex, octal (0o17 or 017) or decimal digits.
INT_LITERAL = re.compile(r"^([+-]?)(?:0[xX]([0-9a-fA-F]+)|0[oO]?([0-7]+)|([1-9][0-9]*|0))$")


def parse_int_literal(text: str) -> Optional[int]:
    match = INT_LITERAL.match(text.strip())
    if match is None:
        return None
    sign, hex_digits, oct_digits, dec_digits = match.groups()
    if hex_digits is not None:
        number = int(hex_digits, 16)
    elif oct_digits is not None:
        number = int(oct_digits, 8)
    else:
        number = int(dec_digits, 10)
    return -number if sign == "-" else number


@dataclass(frozen=True)
class Argument:
    type: str
    text: str

    def __str__(self) -> str:
        return f"{self.type}@{self.text}"


@dataclass(frozen=True)
class Instruction:
    opcode: str
    args: List[Argument] = field(default_factory=list)
    order: Optional[int] = None

    def __str__(self) -> str:
        if not self.args:
            return self.opcode
        return self.opcode + " " + " ".join(str(arg) for arg in self.args)


class Loader:
    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename

    def load(self) -> List[Instruction]:
        try:
            root = ET.fromstring(self.text)
        except ET.ParseError as exc:
            raise SourceFormatError(f"{self.filename}: malformed XML: {exc}")

        if root.tag != "program":
            raise InvalidStructureError(f"Root element must be 'program', found '{root.tag}'")
        language = root.get("language")
        if language is None or language.upper() != LANGUAGE.upper():
            raise InvalidStructureError(f"Unsupported language attribute: {language!r}")

        by_order: Dict[int, Instruction] = {}
        for element in root:
            if element.tag != "instruction":
                raise InvalidStructureError(f"Unexpected element '{element.tag}' in program")
            order = self._parse_order(element.get("order"))
            if order in by_order:
                raise InvalidStructureError(f"Duplicate instruction order {order}")
            opcode = (element.get("opcode") or "").strip()
            if not opcode:
                raise InvalidStructureError(f"Instruction {order} has no opcode")
            by_order[order] = Instruction(opcode=opcode.upper(), args=self._parse_args(element, order), order=order)

        return [by_order[key] for key in sorted(by_order)]

    def _parse_order(self, raw: Optional[str]) -> int:
        if raw is None or not raw.strip():
            raise InvalidStructureError("Instruction is missing the order attribute")
        try:
            order = int(raw.strip(), 10)
        except ValueError:
            raise InvalidStructureError(f"Invalid order attribute: {raw!r}")
        if order <= 0:
            raise InvalidStructureError(f"Order must be positive, got {order}")
        return order

    def _parse_args(self, element: ET.Element, order: int) -> List[Argument]:
        slots: Dict[int, Argument] = {}
        for child in element:
            tag = child.tag
            if not (tag.startswith("arg") and tag[3:].isdigit()):
                raise InvalidStructureError(f"Unexpected element '{tag}' in instruction {order}")
            slot = int(tag[3:])
            if slot < 1 or slot > 3 or slot in slots:
                raise InvalidStructureError(f"Invalid argument slot '{tag}' in instruction {order}")
            arg_type = child.get("type")
            if arg_type not in ARGUMENT_TYPES:
                raise InvalidStructureError(f"Invalid argument type {arg_type!r} in instruction {order}")
            slots[slot] = Argument(type=arg_type, text=(child.text or "").strip())

        # arg slots must be dense: arg1..argN
        if sorted(slots) != list(range(1, len(slots) + 1)):
            raise InvalidStructureError(f"Argument slots of instruction {order} are not contiguous")
        return [slots[i] for i in range(1, len(slots) + 1)]


def load_program(text: str, filename: str = "<string>") -> List[Instruction]:
    return Loader(text, filename).load()
