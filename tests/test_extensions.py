import json
import textwrap
from pathlib import Path

import pytest

from conftest import var
from extensions import (
    ExtensionAPI,
    ITLExtensionError,
    build_default_services,
    gather_extension_paths,
    load_runtime_services,
)
from interpreter import Interpreter, ITLRuntimeError, TracebackFormatter
from storage import TYPE_UNDEF, Value, number, string


EXT_DIR = Path(__file__).resolve().parent.parent / "ext"


@pytest.fixture
def strings_interp(host):
    services = load_runtime_services([str(EXT_DIR / "strings.py")])
    return Interpreter(host=host, services=services)


def write_ext(tmp_path, name, body):
    path = tmp_path / name
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


@pytest.mark.parametrize(
    "text, expected",
    [
        ('len("hello")', number(5)),
        ('asc("A")', number(65)),
        ('asc("")', number(0)),
        ("chr(65)", string("A")),
        ('mid("hello",2,3)', string("ell")),
        ('mid("hello",2)', string("ello")),
        ('upper("ab")', string("AB")),
        ('lower("AB")', string("ab")),
        ('instr("hello","ll")', number(3)),
        ('instr("a","z")', number(0)),
    ],
)
def test_strings_extension(strings_interp, text, expected):
    assert strings_interp.evaluate(text) == expected


def test_extension_arity_is_checked(strings_interp, console):
    assert strings_interp.evaluate('mid("x")').type == TYPE_UNDEF
    assert "Warning: function 'mid' expects 2 to 3 argument(s)\n" in console.text


def test_default_pointer_file_loads_strings():
    paths = gather_extension_paths([str(EXT_DIR / "default.itlx")])
    assert [Path(p).name for p in paths] == ["strings.py"]
    services = load_runtime_services([str(EXT_DIR / "default.itlx")])
    assert "len" in services.functions
    assert services.metadata[0].name == "strings"


def test_pointer_file_resolves_relative_paths(tmp_path):
    write_ext(
        tmp_path,
        "twice.py",
        """
        from storage import number, to_number

        ITL_EXTENSION_NAME = "twice"

        def itl_register(ext):
            ext.register_function("twice", 1, 1, lambda interp, args: number(to_number(args[0]) * 2))
        """,
    )
    pointer = tmp_path / "set.itlx"
    pointer.write_text("# my extensions\ntwice.py  # doubles\n\n", encoding="utf-8")
    services = load_runtime_services([str(pointer)])
    assert services.functions["twice"].ext_name == "twice"


def test_missing_extension_is_an_error(tmp_path):
    with pytest.raises(ITLExtensionError):
        load_runtime_services([str(tmp_path / "nope.py")])
    with pytest.raises(ITLExtensionError):
        load_runtime_services([str(tmp_path / "nope.itlx")])


def test_extension_without_register_is_rejected(tmp_path):
    path = write_ext(tmp_path, "empty.py", "X = 1\n")
    with pytest.raises(ITLExtensionError, match="itl_register"):
        load_runtime_services([str(path)])


def test_extension_api_version_mismatch(tmp_path):
    path = write_ext(
        tmp_path,
        "future.py",
        """
        ITL_EXTENSION_API_VERSION = 2

        def itl_register(ext):
            pass
        """,
    )
    with pytest.raises(ITLExtensionError, match="requires API 2"):
        load_runtime_services([str(path)])


def test_metadata_version_mismatch():
    api = ExtensionAPI(services=build_default_services(), ext_name="x")
    with pytest.raises(ITLExtensionError):
        api.metadata(name="x", requires_api=99)


def test_function_names_are_validated():
    services = build_default_services(reserved=["len2"])
    api = ExtensionAPI(services=services, ext_name="x")
    impl = lambda interp, args: number(0)
    for bad in ("Foo", "1abc", "", "a_b"):
        with pytest.raises(ITLExtensionError):
            api.register_function(bad, 0, 0, impl)
    for builtin in ("sin", "gotoxy", "len2"):
        with pytest.raises(ITLExtensionError):
            api.register_function(builtin, 0, 0, impl)
    api.register_function("ok", 0, 0, impl)
    with pytest.raises(ITLExtensionError, match="already defined"):
        api.register_function("ok", 0, 0, impl)


def test_unknown_event_is_rejected():
    api = ExtensionAPI(services=build_default_services(), ext_name="x")
    with pytest.raises(ITLExtensionError, match="Unknown event"):
        api.on_event("on_tuesday", lambda *a: None)


def test_function_decorator_and_argument_cap(host, services, console):
    api = ExtensionAPI(services=services, ext_name="test")

    @api.function("count", 0)
    def count(interp, args):
        return number(len(args))

    interp = Interpreter(host=host, services=services)
    assert interp.evaluate("count()") == number(0)
    assert interp.evaluate("count(1,2,3)") == number(3)
    assert interp.evaluate("count(1,2,3,4,5,6,7,8,9,10)") == number(8)
    assert interp.evaluate("count(1,2,3,4,5,6,7,8,(A=9;))") == number(8)
    assert var(interp, "A") == number(9)


def test_screen_functions_win_over_math_names(interp):
    assert interp.evaluate("getw()") == number(80)


def test_events_fire_in_order(host, services):
    seen = []
    api = ExtensionAPI(services=services, ext_name="test")
    api.on_event("program_start", lambda interp: seen.append("start"))
    api.on_event("before_line", lambda interp, line, text: seen.append(f"before {line} {text}"))
    api.on_event("after_line", lambda interp, line: seen.append(f"after {line}"))
    api.on_event("program_end", lambda interp, status: seen.append(f"end {status}"))

    interp = Interpreter(host=host, services=services)
    interp.load_source("A=1\n\nB=2")
    interp.run()
    assert seen == ["start", "before 1 A=1", "after 1", "before 3 B=2", "after 3", "end 0"]


def test_event_priority(host, services):
    seen = []
    api = ExtensionAPI(services=services, ext_name="test")

    @api.on_event("program_start", priority=1)
    def low(interp):
        seen.append("low")

    @api.on_event("program_start", priority=10)
    def high(interp):
        seen.append("high")

    Interpreter(host=host, services=services).run()
    assert seen == ["high", "low"]


def test_step_rules(host, services):
    hits = []
    api = ExtensionAPI(services=services, ext_name="test")
    api.every_n_lines(2, lambda interp, ctx: hits.append(ctx.rule))
    interp = Interpreter(host=host, services=services)
    interp.load_source("A=1\n?A\nB=2\nC=3")
    interp.run()
    assert hits == ["PRINT", "ASSIGN"]


def test_step_rule_needs_positive_interval(services):
    api = ExtensionAPI(services=services, ext_name="test")
    with pytest.raises(ITLExtensionError):
        api.every_n_lines(0, lambda interp, ctx: None)


def test_failing_function_raises_runtime_error(host, services):
    errors = []
    api = ExtensionAPI(services=services, ext_name="test")

    @api.function("boom", 0, 0)
    def boom(interp, args):
        raise ValueError("bad")

    api.on_event("on_error", lambda interp, error: errors.append(error))
    interp = Interpreter(host=host, services=services)
    interp.load_source("?1\nA=boom()")
    with pytest.raises(ITLRuntimeError) as info:
        interp.run()
    error = info.value
    assert error.message == "Function 'boom' failed: bad"
    assert error.location.line == 2
    assert errors == [error]

    formatter = TracebackFormatter(interp)
    text = formatter.format_text(error)
    assert text == "Error at line 2: Function 'boom' failed: bad\nLine content: A=boom()"
    verbose = formatter.format_text(error, verbose=True)
    assert "Recent states (most recent last):" in verbose
    assert verbose.endswith("ITLRuntimeError: Function 'boom' failed: bad (rule: boom)")
    data = json.loads(formatter.to_json(error))
    assert data["error"]["type"] == "ITLRuntimeError"
    assert data["error"]["location"]["statement"] == "A=boom()"
    assert data["recent_states"][-1]["rule"] == "PRINT"


def test_function_must_return_a_value(host, services):
    api = ExtensionAPI(services=services, ext_name="test")
    api.register_function("bad", 0, 0, lambda interp, args: 5)
    interp = Interpreter(host=host, services=services)
    interp.load_source("A=bad()")
    with pytest.raises(ITLRuntimeError, match="expected Value"):
        interp.run()


def test_failing_hook_is_reported_as_runtime_error(host, services):
    api = ExtensionAPI(services=services, ext_name="test")

    def fail(interp, line):
        raise RuntimeError("hook broke")

    api.on_event("after_line", fail)
    interp = Interpreter(host=host, services=services)
    interp.load_source("A=1")
    with pytest.raises(ITLRuntimeError, match="Extension hook 'after_line' failed"):
        interp.run()


def test_extension_can_drive_the_interpreter(host, services):
    api = ExtensionAPI(services=services, ext_name="test")

    @api.function("setall", 1, 1)
    def setall(interp, args: list) -> Value:
        interp.array_set(2, 4.0)
        return args[0]

    interp = Interpreter(host=host, services=services)
    interp.load_source("A=setall(3)")
    interp.run()
    assert var(interp, "A") == number(3)
    assert interp.array.get(2) == 4.0


def test_help_lists_extension_functions(strings_interp, console):
    strings_interp.commands.execute("help")
    assert "Extension functions:" in console.text
    assert "mid(s,start[,n])" in console.text
