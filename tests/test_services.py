import io

import pytest

from services import HookRegistry, InputReader, OutputWriter, StepContext, build_default_services, install_tracer


def test_input_reader_sequence():
    reader = InputReader(io.StringIO("12\nhello\nfalse\n-0x1\n"))
    assert reader.read_int() == 12
    assert reader.read_string() == "hello"
    assert reader.read_bool() is False
    assert reader.read_int() == -1
    assert reader.read_int() is None
    assert reader.read_string() is None
    assert reader.read_bool() is None


def test_input_reader_last_line_without_newline():
    reader = InputReader(io.StringIO("tail"))
    assert reader.read_string() == "tail"


def test_output_writer_formats():
    stream = io.StringIO()
    writer = OutputWriter(stream)
    writer.write_int(-3)
    writer.write_bool(True)
    writer.write_string("x")
    writer.flush()
    assert stream.getvalue() == "-3truex"


def test_hook_priorities():
    registry = HookRegistry()
    calls = []
    registry.on_event("evt", lambda: calls.append("low"), priority=0)
    registry.on_event("evt", lambda: calls.append("high"), priority=10)
    registry.emit("evt")
    registry.emit("other")
    assert calls == ["high", "low"]


def test_step_rules_run_every_n():
    registry = HookRegistry()
    seen = []
    registry.add_step_rule(name="every2", every_n=2, handler=lambda interp, ctx: seen.append(ctx.step_index))
    for i in range(5):
        registry.after_step(None, StepContext(step_index=i, ip=i, opcode="BREAK"))
    assert seen == [0, 2, 4]
    with pytest.raises(ValueError):
        registry.add_step_rule(name="bad", every_n=0, handler=lambda interp, ctx: None)


def test_tracer_echoes_instructions():
    err = io.StringIO()
    services = build_default_services(input_stream=io.StringIO(), output_stream=io.StringIO(), error_stream=err)
    install_tracer(services)
    services.hook_registry.emit("before_instruction", None, 3, "WRITE int@1")
    assert err.getvalue() == "[0003] WRITE int@1\n"


def test_interpreter_emits_lifecycle_events(make_interpreter):
    interp = make_interpreter("DEFVAR GF@x\nMOVE GF@x int@1")
    events = []
    for name in ("program_start", "before_instruction", "after_instruction", "program_end"):
        interp.hook_registry.on_event(name, lambda *args, _n=name: events.append(_n))
    interp.run()
    assert events == [
        "program_start",
        "before_instruction",
        "after_instruction",
        "before_instruction",
        "after_instruction",
        "program_end",
    ]
