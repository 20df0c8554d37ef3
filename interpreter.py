from __future__ import annotations
import json
import os
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from evaluator import Cursor, Evaluator, SourceLocation, is_digit
from extensions import HookRegistry, RuntimeServices, StepContext, build_default_services
from host import MATH_FUNCTIONS, SCREEN_FUNCTIONS, Host, expand_escapes
from segmenter import ITLError, ITLFatalError, segment_source
from storage import (
    MAX_ARRAY_SIZE,
    TYPE_NUM,
    TYPE_STR,
    UNDEFINED,
    ArrayStore,
    Program,
    Value,
    VariableStore,
    format_number,
    is_var_name,
    number,
    render_value,
    string,
    to_int,
    to_number,
    var_index,
    var_name,
)


DEFAULT_LOG_LIMIT = 10_000
ARRAY_LISTING_LIMIT = 20
LINES_LISTING_LIMIT = 50


class ITLRuntimeError(ITLError):
    """Raised for host-level faults while running a program."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None


class ExitSignal(Exception):
    def __init__(self, code: int = 0) -> None:
        super().__init__(code)
        self.code = code


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    rule: str
    env_snapshot: Optional[Dict[str, str]]
    extra: Optional[Dict[str, Any]]


class StateLogger:
    def __init__(self, verbose: bool, limit: int = DEFAULT_LOG_LIMIT) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=max(limit, 1))
        self.next_state_index = 0
        self.last_state_id = "seed"

    def record(
        self,
        *,
        location: Optional[SourceLocation],
        rule: str,
        env_snapshot: Optional[Dict[str, str]] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        state_id = f"s_{step_index:06d}"
        entry = StateEntry(
            step_index=step_index,
            state_id=state_id,
            source_location=location,
            statement=location.statement if location else None,
            rule=rule,
            env_snapshot=env_snapshot,
            extra=extra,
        )
        self.entries.append(entry)
        self.last_state_id = state_id
        self.next_state_index += 1
        return entry

    def last(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None

    def recent(self, count: int) -> List[StateEntry]:
        if count <= 0:
            return []
        return list(self.entries)[-count:]


HELP_TEXT = """ITL - Special commands:
  :help         - Show this help
  :vars         - Show all defined variables
  :clear        - Clear all variables
  :array        - Show array contents
  :lines        - Show program lines
  :syntax       - Show syntax help
  :screen       - Show screen functions help
  :debug VAR    - Show raw bytes of a variable (e.g. :debug A or :debug _)
  :reset        - Reset the REPL completely (clears everything)
  :exit/:quit   - Exit the session

Ctrl-C interrupts a running program between lines.
"""

SYNTAX_TEXT = """ITL syntax:
  #              - Current line number
  #=expr         - Jump to line expr
  '              - Random number [0, 0.999969]
  'N             - Set RNG seed to integer N
  :              - Read key from keyboard buffer (0 if empty)
  ?              - Input from keyboard (inside expression)
  ?=expr         - Print expr
  $VAR           - Type conversion
  @index         - Array access
  N@=expr        - Array assignment
  ;              - Statement separator
  func(args)     - Function call (sin, cos, sqrt, etc.)
  (stmt;stmt)    - Block: execute stmts, return last value
  _              - Underscore variable (27th single-letter var)
"""


class ControlCommands:
    """The ``:name [argument]`` commands, usable in programs and at the prompt."""

    def __init__(self, interpreter: "Interpreter") -> None:
        self.interpreter = interpreter
        self.table: Dict[str, Callable[[str], None]] = {
            "help": self._help,
            "syntax": self._syntax,
            "screen": self._screen,
            "exit": self._exit,
            "quit": self._exit,
            "vars": self._vars,
            "array": self._array,
            "lines": self._lines,
            "clear": self._clear,
            "reset": self._reset,
            "debug": self._debug,
        }

    def execute(self, text: str) -> bool:
        """Run one command; False when the name is unknown."""
        name, _, argument = text.strip().partition(" ")
        handler = self.table.get(name)
        if handler is None:
            return False
        handler(argument.strip())
        return True

    def _write(self, text: str) -> None:
        self.interpreter.host.write(text)

    def _help(self, _: str) -> None:
        self._write(HELP_TEXT)
        functions = self.interpreter.functions
        if functions:
            self._write("Extension functions:\n")
            for name in sorted(functions):
                fn = functions[name]
                self._write(f"  {name:<14} - {fn.doc or fn.ext_name}\n")
        self._write("\n")

    def _syntax(self, _: str) -> None:
        self._write(SYNTAX_TEXT + "\n")

    def _screen(self, _: str) -> None:
        self._write("Screen functions:\n")
        for fn in SCREEN_FUNCTIONS.values():
            self._write(f"  {fn.doc}\n")
        self._write("Math functions:\n  " + " ".join(sorted(MATH_FUNCTIONS)) + "\n\n")

    def _exit(self, _: str) -> None:
        self._write("Arrivederci!\n")
        raise ExitSignal(0)

    def _vars(self, _: str) -> None:
        found = False
        for name, value in self.interpreter.variables.defined():
            self._write(f"{name} = {render_value(value)}\n")
            found = True
        if not found:
            self._write("No variables defined.\n")

    def _array(self, _: str) -> None:
        array = self.interpreter.array
        if len(array) == 0:
            self._write("Array is empty.\n")
            return
        self._write(f"Array (size: {len(array)}):\n")
        for index, x in enumerate(array.head(ARRAY_LISTING_LIMIT)):
            self._write(f"  @{index} = {format_number(x)}\n")
        if len(array) > ARRAY_LISTING_LIMIT:
            self._write(f"  ... ({len(array)} elements total)\n")

    def _lines(self, _: str) -> None:
        program = self.interpreter.program
        if len(program) == 0:
            self._write("No lines in program.\n")
            return
        self._write(f"Program ({len(program)} lines):\n")
        for line_num, text in enumerate(program, start=1):
            if line_num > LINES_LISTING_LIMIT:
                self._write(f"  ... ({len(program)} lines total)\n")
                break
            self._write(f"  {line_num:3d}: {text}\n")

    def _clear(self, _: str) -> None:
        self.interpreter.reset_vars()
        self._write("All variables and array cleared.\n")

    def _reset(self, _: str) -> None:
        self.interpreter.reset_all()
        self._write("REPL completely reset.\n")

    def _debug(self, argument: str) -> None:
        name = argument[:1]
        if not is_var_name(name):
            self._write("Usage: :debug VARIABLE (e.g. :debug A or :debug _)\n")
            return
        value = self.interpreter.variables.get(var_index(name))
        if value.type == TYPE_STR:
            raw = value.value.encode("utf-8")
            self._write(f"Variable {name} (string):\n")
            self._write(f'  Content: "{value.value}"\n')
            self._write("  Bytes (hex): " + "".join(f"{b:02X} " for b in raw) + "\n")
            self._write("  Bytes (dec): " + "".join(f"{b} " for b in raw) + "\n")
        elif value.type == TYPE_NUM:
            self._write(f"Variable {name} = {format_number(value.value)} (number)\n")
        else:
            self._write(f"Variable {name} is undefined\n")


class Interpreter:
    def __init__(
        self,
        *,
        host: Optional[Host] = None,
        services: Optional[RuntimeServices] = None,
        verbose: bool = False,
        filename: str = "<string>",
        show_assignments: bool = False,
        interactive: bool = False,
        log_limit: int = DEFAULT_LOG_LIMIT,
    ) -> None:
        self.host = host or Host()
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.functions = self.services.functions
        self.verbose = verbose
        self.filename = filename
        self.show_assignments = show_assignments
        self.interactive = interactive

        self.variables = VariableStore()
        self.array = ArrayStore()
        self.program = Program()
        self.current_line = 0
        self.in_forward_ref = False
        self.interrupted = threading.Event()

        self.evaluator = Evaluator(self)
        self.commands = ControlCommands(self)
        self.logger = StateLogger(verbose=verbose, limit=log_limit)
        self.logger.record(location=None, rule="SEED")

    # ---- program text ----

    def load_source(self, source: str) -> int:
        self.program.clear()
        self.program.append(segment_source(source))
        return len(self.program)

    def load_file(self, path: str) -> int:
        try:
            with open(path, "r", encoding="utf-8", errors="replace", newline="") as handle:
                source = handle.read()
        except OSError as exc:
            raise ITLFatalError(f"Cannot open file '{path}'") from exc
        self.filename = os.path.abspath(path)
        return self.load_source(source)

    def append_source(self, text: str) -> int:
        return self.program.append(segment_source(text))

    def submit(self, text: str) -> bool:
        """Append a chunk of text and run from its first new line."""
        first = self.append_source(text)
        if first > len(self.program):
            return True
        return self.run_from(first)

    # ---- running ----

    def run(self) -> bool:
        self._emit_event("program_start", self)
        completed = self.run_from(1)
        self._emit_event("program_end", self, 0 if completed else 1)
        return completed

    def run_from(self, start: int) -> bool:
        """Run from ``start`` to the end; False when an interrupt stopped it."""
        try:
            return self._run_lines(start)
        except ITLRuntimeError as error:
            if error.step_index is None:
                last = self.logger.last()
                error.step_index = last.step_index if last else None
            self._emit_event("on_error", self, error)
            raise
        except (ExitSignal, ITLError):
            raise
        except Exception as exc:
            self._emit_event("on_error", self, exc)
            # Convert unexpected Python-level exceptions into ITLRuntimeError
            # so the CLI and REPL can format them like any other failure.
            wrapped = ITLRuntimeError(f"Internal interpreter error: {exc}", location=self.location(), rule="internal")
            last = self.logger.last()
            wrapped.step_index = last.step_index if last else None
            raise wrapped from exc

    def _run_lines(self, start: int) -> bool:
        self.current_line = start
        while self.current_line <= len(self.program):
            if self.interrupted.is_set():
                self.interrupted.clear()
                self.host.write("\n[Interrupted]\n")
                self._log_step(rule="INTERRUPT")
                self._emit_event("on_interrupt", self, self.current_line)
                return False
            self.execute_line(self.current_line)
            self.current_line += 1
        return True

    def request_interrupt(self) -> None:
        self.interrupted.set()

    def execute_line(self, line_num: int) -> None:
        if line_num < 1 or line_num > len(self.program):
            return
        self.current_line = line_num
        text = self.program.line(line_num)
        cursor = Cursor(text, 0, line_num)
        cursor.skip_spaces()
        if cursor.peek() == "":
            return
        self._emit_event("before_line", self, line_num, text)
        rule = self._dispatch(cursor)
        self._log_step(rule=rule, location=SourceLocation(self.filename, line_num, text))
        self._emit_event("after_line", self, line_num)

    def _dispatch(self, cursor: Cursor) -> str:
        evaluator = self.evaluator
        ch = cursor.peek()

        if ch == ":":
            command = cursor.text[cursor.pos + 1 :]
            if not self.commands.execute(command):
                self.host.write(f"Unknown command: :{command}\n")
            return "COMMAND"

        if ch == "?":
            cursor.pos += 1
            cursor.skip_spaces()
            if cursor.peek() == "=":
                cursor.pos += 1
            self.print_value(evaluator.evaluate(cursor))
            return "PRINT"

        if (is_digit(ch) or is_var_name(ch)) and evaluator.array_assignment(cursor):
            return "ARRAY_SET"

        if is_var_name(ch):
            evaluator.assign_statement(cursor)
            return "ASSIGN"

        if ch == "#":
            cursor.pos += 1
            cursor.skip_spaces()
            if cursor.peek() == "=":
                cursor.pos += 1
            target = to_int(to_number(evaluator.evaluate(cursor)))
            if 1 <= target <= len(self.program):
                # the run loop advances past current_line next
                self.current_line = target - 1
            return "JUMP"

        evaluator.evaluate(cursor)
        return "EXPR"

    def evaluate(self, text: str) -> Value:
        """Evaluate ``text`` as an expression in the context of the current line."""
        return self.evaluator.evaluate(Cursor(text, 0, self.current_line))

    def print_value(self, value: Value) -> None:
        if value.type == TYPE_NUM:
            self.host.write(format_number(value.value))
        elif value.type == TYPE_STR:
            self.host.write(expand_escapes(value.value))

    def read_input(self) -> Value:
        return string(self.host.read_line("> " if self.interactive else ""))

    # ---- storage access ----

    def get_variable(self, slot: int) -> Value:
        if self.variables.is_defined(slot) or self.in_forward_ref:
            return self.variables.get(slot)
        name = var_name(slot)
        saved_line = self.current_line
        self.in_forward_ref = True
        try:
            line_num = saved_line + 1
            while line_num <= len(self.program):
                text = self.program.line(line_num).lstrip(" \t")
                if len(text) > 1 and text[0] == name:
                    self._log_step(rule="FORWARD_REF", extra={"variable": name, "target_line": line_num})
                    self.execute_line(line_num)
                    break
                line_num += 1
        finally:
            self.in_forward_ref = False
            self.current_line = saved_line
        return self.variables.get(slot)

    def set_variable(self, slot: int, value: Value) -> None:
        self.variables.set(slot, value)
        self._echo_variable(slot)

    def undefine_variable(self, slot: int) -> None:
        self.variables.undefine(slot)
        self._echo_variable(slot)

    def _echo_variable(self, slot: int) -> None:
        if self.show_assignments:
            self.host.write(f"< {var_name(slot)} = {render_value(self.variables.get(slot))}\n")

    def array_get(self, index: int) -> float:
        return self.array.get(index)

    def array_set(self, index: int, x: float) -> None:
        if not self.array.in_range(index):
            self.report(f"Array index {index} exceeds maximum size {MAX_ARRAY_SIZE}", rule="ARRAY_SET")
            return
        self.array.set(index, x)
        if self.show_assignments:
            self.host.write(f"< @{index} = {format_number(x)}\n")

    def reset_vars(self) -> None:
        self.variables.clear()
        self.array.clear()

    def reset_all(self) -> None:
        self.reset_vars()
        self.program.clear()

    # ---- functions ----

    def call_function(self, name: str, args: List[Value]) -> Value:
        screen = SCREEN_FUNCTIONS.get(name)
        if screen is not None:
            return self._invoke(name, screen.impl, self.host, args)
        ext = self.functions.get(name)
        if ext is not None:
            if not ext.accepts(len(args)):
                self.report(f"function '{name}' expects {ext.arity_text()} argument(s)", rule="CALL", level="Warning")
                return UNDEFINED
            return self._invoke(name, ext.impl, self, args)
        math_fn = MATH_FUNCTIONS.get(name)
        if math_fn is None:
            self.report(f"unknown function '{name}'", rule="CALL", level="Warning")
            return UNDEFINED
        if len(args) < math_fn.arity:
            self.report(f"function '{name}' expects {math_fn.arity} argument(s)", rule="CALL", level="Warning")
            return UNDEFINED
        return number(math_fn.call([to_number(arg) for arg in args]))

    def _invoke(self, name: str, impl: Callable[..., Any], target: Any, args: List[Value]) -> Value:
        try:
            result = impl(target, args)
        except (ITLError, ExitSignal):
            raise
        except Exception as exc:
            raise ITLRuntimeError(f"Function '{name}' failed: {exc}", location=self.location(), rule=name) from exc
        if not isinstance(result, Value):
            raise ITLRuntimeError(
                f"Function '{name}' returned {type(result).__name__}, expected Value",
                location=self.location(),
                rule=name,
            )
        return result

    # ---- diagnostics ----

    def location(self) -> SourceLocation:
        statement = ""
        if 1 <= self.current_line <= len(self.program):
            statement = self.program.line(self.current_line)
        return SourceLocation(self.filename, self.current_line, statement)

    def report(self, message: str, *, rule: str = "EXPR", level: str = "Error") -> None:
        """Recovered error: tell the user and keep going."""
        self.host.write(f"{level}: {message}\n")
        self._log_step(rule="WARN", extra={"level": level, "message": message, "source_rule": rule})

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except (ITLRuntimeError, ExitSignal):
            raise
        except Exception as exc:
            raise ITLRuntimeError(
                f"Extension hook '{event}' failed: {exc}",
                location=self.location(),
                rule="EXT",
            ) from exc

    def _log_step(
        self,
        *,
        rule: str,
        location: Optional[SourceLocation] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        if location is None:
            location = self.location()
        env_snapshot = self.variables.snapshot() if self.verbose else None
        entry = self.logger.record(location=location, rule=rule, env_snapshot=env_snapshot, extra=extra)

        # Run extension step rules (every N lines) after recording.
        try:
            self.hook_registry.after_step(
                self,
                StepContext(step_index=entry.step_index, rule=rule, location=location, extra=extra),
            )
        except ITLRuntimeError:
            raise
        except Exception as exc:
            raise ITLRuntimeError(
                f"Extension step rule failed: {exc}",
                location=location,
                rule="EXT",
            ) from exc


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def format_text(self, error: ITLRuntimeError, verbose: bool = False) -> str:
        lines: List[str] = []
        location = error.location
        if location is not None and location.line > 0:
            lines.append(f"Error at line {location.line}: {error.message}")
            if location.statement:
                lines.append(f"Line content: {location.statement}")
        else:
            lines.append(f"Error: {error.message}")
        if verbose:
            lines.append("Recent states (most recent last):")
            for entry in self.interpreter.logger.recent(10):
                where = entry.source_location.line if entry.source_location else "-"
                lines.append(f"  {entry.state_id} line {where} {entry.rule}: {entry.statement or ''}")
                if entry.env_snapshot:
                    snapshot = ", ".join(f"{k}={v}" for k, v in entry.env_snapshot.items())
                    lines.append(f"    Env snapshot: {snapshot}")
            rule = error.rule or "runtime"
            lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: ITLRuntimeError) -> str:
        states: List[Dict[str, Any]] = []
        for entry in self.interpreter.logger.recent(10):
            item: Dict[str, Any] = {"state_id": entry.state_id, "step_index": entry.step_index, "rule": entry.rule}
            if entry.source_location:
                item["source_location"] = {
                    "file": entry.source_location.file,
                    "line": entry.source_location.line,
                    "statement": entry.source_location.statement,
                }
            if entry.env_snapshot is not None:
                item["env_snapshot"] = entry.env_snapshot
            if entry.extra:
                item["extra"] = entry.extra
            states.append(item)
        location = error.location
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rule,
                "failing_step_index": error.step_index,
                "location": None
                if location is None
                else {"file": location.file, "line": location.line, "statement": location.statement},
            },
            "recent_states": states,
        }
        return json.dumps(data, indent=2)
