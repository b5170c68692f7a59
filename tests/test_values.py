import pytest

from interpreter import (
    INT64_MAX,
    INT64_MIN,
    OperandValueError,
    VariableAddress,
    decode_string_literal,
    describe_value,
    int_value,
    NIL,
    UNDEFINED,
    truncating_div,
    wrap_int64,
)
from loader import InvalidStructureError, parse_int_literal


@pytest.mark.parametrize(
    "text, expected",
    [
        ("42", 42),
        ("-7", -7),
        ("+3", 3),
        ("0", 0),
        ("0x1F", 31),
        ("-0x10", -16),
        ("0o17", 15),
        ("017", 15),
    ],
)
def test_parse_int_literal_forms(text, expected):
    assert parse_int_literal(text) == expected


@pytest.mark.parametrize("text", ["", "abc", "08", "0x", "1.5", "--1", "12a"])
def test_parse_int_literal_rejects_garbage(text):
    assert parse_int_literal(text) is None


def test_decode_string_literal_escapes():
    assert decode_string_literal(r"a\032b") == "a b"
    assert decode_string_literal(r"\035\092") == "#\\"
    assert decode_string_literal("") == ""
    assert decode_string_literal("žluťoučký") == "žluťoučký"


@pytest.mark.parametrize("text", [r"bad\03", r"bad\x41x", "\\"])
def test_decode_string_literal_rejects_malformed_escape(text):
    with pytest.raises(InvalidStructureError):
        decode_string_literal(text)


def test_wrap_int64_overflow():
    assert wrap_int64(INT64_MAX + 1) == INT64_MIN
    assert wrap_int64(INT64_MIN - 1) == INT64_MAX
    assert wrap_int64(-5) == -5


def test_truncating_div_rounds_toward_zero():
    assert truncating_div(7, 2) == 3
    assert truncating_div(-7, 2) == -3
    assert truncating_div(7, -2) == -3
    assert truncating_div(-7, -2) == 3
    assert truncating_div(INT64_MIN, -1) == INT64_MIN


def test_variable_address_parse():
    assert VariableAddress.parse("GF@x") == ("GF", "x")
    assert VariableAddress.parse("TF@a@b") == ("TF", "a@b")
    assert str(VariableAddress.parse("LF@y")) == "LF@y"


@pytest.mark.parametrize("text", ["XF@x", "GF@", "noframe"])
def test_variable_address_rejects_bad_kind(text):
    with pytest.raises(OperandValueError):
        VariableAddress.parse(text)


def test_describe_value():
    assert describe_value(int_value(3)) == "int@3"
    assert describe_value(NIL) == "nil@nil"
    assert describe_value(UNDEFINED) == "undefined"
