from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from host import c_fmod, c_pow
from storage import (
    TYPE_NUM,
    TYPE_STR,
    TYPE_UNDEF,
    UNDEFINED,
    ZERO,
    Value,
    format_number,
    is_var_name,
    number,
    parse_number_prefix,
    string,
    to_index,
    to_int,
    to_number,
    to_string,
    var_index,
)

if TYPE_CHECKING:
    from interpreter import Interpreter


MAX_FUNC_ARGS = 8

BINARY_OPERATORS = frozenset("+-*/%^&|<>=")
SELF_REF_OPERATORS = frozenset("+-*/%^&|<>")
# after a variable, these never start an implicit assignment
NON_VALUE_FOLLOWERS = frozenset(("", ")", ";", ",", "+", "*", "/", "%", "^", "&", "|", "<", ">", "!"))
NEGATABLE_STARTS = frozenset("(@?'#$")

_LITERAL = re.compile(r"(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    statement: str


def is_digit(ch: str) -> bool:
    return "0" <= ch <= "9"


def is_lower(ch: str) -> bool:
    return "a" <= ch <= "z"


class Cursor:
    """A position inside one logical line; ``line_num`` is what ``#`` reads."""

    __slots__ = ("text", "pos", "line_num")

    def __init__(self, text: str, pos: int = 0, line_num: int = 0) -> None:
        self.text = text
        self.pos = pos
        self.line_num = line_num

    def peek(self, offset: int = 0) -> str:
        index = self.pos + offset
        if index < len(self.text):
            return self.text[index]
        return ""

    def skip_spaces(self) -> None:
        text = self.text
        n = len(text)
        while self.pos < n and text[self.pos] in (" ", "\t"):
            self.pos += 1

    def rest(self) -> str:
        return self.text[self.pos :]


class Evaluator:
    """Flat left-to-right expression evaluator plus the assignment resolver.

    Every method returns a Value; malformed input falls through to a default
    production instead of raising.
    """

    def __init__(self, interpreter: "Interpreter") -> None:
        self.interpreter = interpreter

    # ---- expressions ----

    def evaluate(self, cursor: Cursor, left: Optional[Value] = None) -> Value:
        if left is None:
            left = self.parse_primary(cursor)
        while True:
            cursor.skip_spaces()
            op = cursor.peek()
            if op not in BINARY_OPERATORS:
                return left
            cursor.pos += 1
            right = self.parse_primary(cursor)
            left = self.apply(op, left, right)

    def apply(self, op: str, left: Value, right: Value) -> Value:
        if op == "+" and (left.type == TYPE_STR or right.type == TYPE_STR):
            return string(to_string(left) + to_string(right))
        a = to_number(left)
        b = to_number(right)
        if op == "+":
            return number(a + b)
        if op == "-":
            return number(a - b)
        if op == "*":
            return number(a * b)
        if op == "/":
            if b == 0.0:
                self.interpreter.report("Division by zero", rule="DIV")
                return ZERO
            return number(a / b)
        if op == "%":
            if b == 0.0:
                self.interpreter.report("Modulo by zero", rule="MOD")
                return ZERO
            return number(c_fmod(a, b))
        if op == "^":
            return number(c_pow(a, b))
        if op == "&":
            return number(1.0 if a != 0.0 and b != 0.0 else 0.0)
        if op == "|":
            return number(1.0 if a != 0.0 or b != 0.0 else 0.0)
        if op == "<":
            return number(1.0 if a < b else 0.0)
        if op == ">":
            return number(1.0 if a > b else 0.0)
        return number(1.0 if a == b else 0.0)

    def parse_primary(self, cursor: Cursor) -> Value:
        interpreter = self.interpreter
        cursor.skip_spaces()
        ch = cursor.peek()

        if ch == "-":
            nxt = cursor.peek(1)
            if is_digit(nxt) or is_var_name(nxt) or nxt in NEGATABLE_STARTS:
                cursor.pos += 1
                return number(-to_number(self.parse_primary(cursor)))

        if ch == "!":
            cursor.pos += 1
            operand = to_number(self.parse_primary(cursor))
            return number(1.0 if operand == 0.0 else 0.0)

        if ch == "$":
            cursor.pos += 1
            cursor.skip_spaces()
            name = cursor.peek()
            if is_var_name(name):
                cursor.pos += 1
                value = interpreter.get_variable(var_index(name))
                if value.type == TYPE_NUM:
                    return string(format_number(value.value))
                if value.type == TYPE_STR:
                    return number(parse_number_prefix(value.value))
                return ZERO
            # a stray '$' is skipped; carry on with whatever follows it
            ch = cursor.peek()

        if ch == "(":
            return self.parse_block(cursor)

        if ch == '"':
            return self._string_literal(cursor)

        if ch == "'":
            cursor.pos += 1
            cursor.skip_spaces()
            nxt = cursor.peek()
            if is_digit(nxt) or is_var_name(nxt) or nxt == "(":
                seed = to_int(to_number(self.parse_primary(cursor)))
                interpreter.host.random.seed(seed)
                return ZERO
            return number(interpreter.host.random.fraction())

        if ch == ":":
            cursor.pos += 1
            return number(float(interpreter.host.read_key()))

        if ch == "?":
            cursor.pos += 1
            return interpreter.read_input()

        if ch == "#":
            cursor.pos += 1
            return number(float(cursor.line_num))

        if ch == "@":
            cursor.pos += 1
            index = to_index(self.parse_primary(cursor))
            return number(interpreter.array_get(index))

        if is_lower(ch):
            return self._function_call(cursor)

        if is_var_name(ch):
            cursor.pos += 1
            return interpreter.get_variable(var_index(ch))

        if is_digit(ch) or ch == ".":
            match = _LITERAL.match(cursor.text, cursor.pos)
            if match is None:
                return ZERO
            cursor.pos = match.end()
            return number(float(match.group(0)))

        return ZERO

    def _string_literal(self, cursor: Cursor) -> Value:
        text = cursor.text
        n = len(text)
        cursor.pos += 1
        start = cursor.pos
        while cursor.pos < n and text[cursor.pos] != '"':
            if text[cursor.pos] == "\\" and cursor.pos + 1 < n:
                cursor.pos += 2
            else:
                cursor.pos += 1
        value = text[start : cursor.pos]
        if cursor.peek() == '"':
            cursor.pos += 1
        return string(value)

    def _function_call(self, cursor: Cursor) -> Value:
        text = cursor.text
        start = cursor.pos
        while is_lower(cursor.peek()) or is_digit(cursor.peek()):
            cursor.pos += 1
        name = text[start : cursor.pos]
        cursor.skip_spaces()
        args: List[Value] = []
        if cursor.peek() == "(":
            cursor.pos += 1
            args = self.parse_arguments(cursor)
        return self.interpreter.call_function(name, args)

    def parse_arguments(self, cursor: Cursor) -> List[Value]:
        """Parse ``a, b, ...)``; the opening paren is already consumed."""
        args: List[Value] = []
        while cursor.peek() not in ("", ")"):
            cursor.skip_spaces()
            if cursor.peek() in ("", ")"):
                break
            start = cursor.pos
            value = self.evaluate(cursor)
            if cursor.pos == start:
                break
            if len(args) < MAX_FUNC_ARGS:
                args.append(value)
            cursor.skip_spaces()
            if cursor.peek() == ",":
                cursor.pos += 1
        if cursor.peek() == ")":
            cursor.pos += 1
        return args

    # ---- blocks ----

    def parse_block(self, cursor: Cursor) -> Value:
        cursor.pos += 1
        last = UNDEFINED
        while True:
            cursor.skip_spaces()
            if cursor.peek() in ("", ")"):
                break
            last = self.block_statement(cursor)
            cursor.skip_spaces()
            if cursor.peek() in (";", ","):
                cursor.pos += 1
                continue
            break
        cursor.skip_spaces()
        if cursor.peek() == ")":
            cursor.pos += 1
        if last.type == TYPE_UNDEF:
            return ZERO
        return last

    def _lookahead(self, cursor: Cursor) -> int:
        """Index of the first non-space character after the variable at the cursor."""
        text = cursor.text
        look = cursor.pos + 1
        while look < len(text) and text[look] in (" ", "\t"):
            look += 1
        return look

    def block_statement(self, cursor: Cursor) -> Value:
        ch = cursor.peek()
        if not is_var_name(ch):
            return self.evaluate(cursor)

        interpreter = self.interpreter
        slot = var_index(ch)
        look = self._lookahead(cursor)
        text = cursor.text
        nxt = text[look] if look < len(text) else ""

        if nxt == "=":
            current = interpreter.get_variable(slot)
            cursor.pos = look + 1
            rhs = self.evaluate(cursor)
            cursor.skip_spaces()
            if cursor.peek() == ";":
                interpreter.set_variable(slot, rhs)
                return rhs
            if current.type == TYPE_STR and rhs.type == TYPE_STR:
                equal = current.value == rhs.value
            else:
                equal = to_number(current) == to_number(rhs)
            return number(1.0 if equal else 0.0)

        if self._starts_implicit(text, look):
            cursor.pos = look
            value = self.evaluate(cursor)
            interpreter.set_variable(slot, value)
            return value

        if nxt in SELF_REF_OPERATORS:
            current = interpreter.get_variable(slot)
            cursor.pos += 1
            value = self.evaluate(cursor, left=current)
            cursor.skip_spaces()
            if cursor.peek() == ";":
                interpreter.set_variable(slot, value)
            return value

        return self.evaluate(cursor)

    @staticmethod
    def _starts_implicit(text: str, look: int) -> bool:
        nxt = text[look] if look < len(text) else ""
        if nxt in NON_VALUE_FOLLOWERS:
            return False
        if nxt == "-":
            after = text[look + 1] if look + 1 < len(text) else ""
            return is_digit(after) or after == "("
        return True

    # ---- top-level statements ----

    def assign_statement(self, cursor: Cursor) -> None:
        """``A`` undefines, ``A=e`` and ``A e`` assign, ``A<op>e`` updates A."""
        interpreter = self.interpreter
        slot = var_index(cursor.peek())
        cursor.pos += 1
        cursor.skip_spaces()
        nxt = cursor.peek()
        if nxt == "":
            interpreter.undefine_variable(slot)
            return
        if nxt == "=":
            cursor.pos += 1
            interpreter.set_variable(slot, self.evaluate(cursor))
            return
        if nxt in SELF_REF_OPERATORS:
            current = interpreter.get_variable(slot)
            interpreter.set_variable(slot, self.evaluate(cursor, left=current))
            return
        interpreter.set_variable(slot, self.evaluate(cursor))

    def array_target_end(self, cursor: Cursor) -> Optional[int]:
        """Position of the ``@`` when the line reads ``<number or VAR> @ ...``."""
        text = cursor.text
        ch = cursor.peek()
        if is_digit(ch):
            match = _LITERAL.match(text, cursor.pos)
            if match is None:
                return None
            end = match.end()
        elif is_var_name(ch):
            end = cursor.pos + 1
        else:
            return None
        while end < len(text) and text[end] in (" ", "\t"):
            end += 1
        if end < len(text) and text[end] == "@":
            return end
        return None

    def array_assignment(self, cursor: Cursor) -> bool:
        if self.array_target_end(cursor) is None:
            return False
        index = to_index(self.parse_primary(cursor))
        cursor.skip_spaces()
        cursor.pos += 1
        cursor.skip_spaces()
        if cursor.peek() == "=":
            cursor.pos += 1
        value = self.evaluate(cursor)
        self.interpreter.array_set(index, to_number(value))
        return True
