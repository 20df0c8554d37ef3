from __future__ import annotations
import math
import re
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Sequence, Tuple

import numpy as np


TYPE_UNDEF = "UNDEF"
TYPE_NUM = "NUM"
TYPE_STR = "STR"

NUM_VARS = 27
MAX_ARRAY_SIZE = 1_000_000

# strtod-compatible decimal prefix (no hex, no inf/nan)
_NUMBER_PREFIX = re.compile(r"[ \t\n\r\f\v]*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


@dataclass(frozen=True)
class Value:
    type: str
    value: Any = None


UNDEFINED = Value(TYPE_UNDEF, None)
ZERO = Value(TYPE_NUM, 0.0)


def number(x: float) -> Value:
    return Value(TYPE_NUM, float(x))


def string(text: str) -> Value:
    return Value(TYPE_STR, text)


def format_number(x: float) -> str:
    return "%.15g" % x


def parse_number_prefix(text: str) -> float:
    match = _NUMBER_PREFIX.match(text)
    if match is None:
        return 0.0
    return float(match.group(0))


def to_number(value: Value) -> float:
    if value.type == TYPE_NUM:
        return value.value
    if value.type == TYPE_STR:
        return parse_number_prefix(value.value)
    return 0.0


def to_string(value: Value) -> str:
    if value.type == TYPE_NUM:
        return format_number(value.value)
    if value.type == TYPE_STR:
        return value.value
    return "0"


def to_int(x: float) -> int:
    """Truncate toward zero the way a C cast does, mapping NaN to 0."""
    if math.isnan(x):
        return 0
    if math.isinf(x):
        return MAX_ARRAY_SIZE if x > 0 else -MAX_ARRAY_SIZE
    return int(x)


def to_index(value: Value) -> int:
    index = to_int(to_number(value))
    return index if index > 0 else 0


def is_var_name(ch: str) -> bool:
    return ch == "_" or ("A" <= ch <= "Z" and len(ch) == 1)


def var_index(ch: str) -> int:
    return 26 if ch == "_" else ord(ch) - ord("A")


def var_name(index: int) -> str:
    return "_" if index == 26 else chr(ord("A") + index)


def render_value(value: Value) -> str:
    if value.type == TYPE_NUM:
        return format_number(value.value)
    if value.type == TYPE_STR:
        return f'"{value.value}"'
    return "undefined"


class VariableStore:
    """The 27 single-letter slots (A-Z and _)."""

    def __init__(self) -> None:
        self._slots: List[Value] = [UNDEFINED] * NUM_VARS

    def get(self, index: int) -> Value:
        if not 0 <= index < NUM_VARS:
            return UNDEFINED
        return self._slots[index]

    def set(self, index: int, value: Value) -> None:
        if 0 <= index < NUM_VARS:
            self._slots[index] = value

    def undefine(self, index: int) -> None:
        self.set(index, UNDEFINED)

    def is_defined(self, index: int) -> bool:
        return self.get(index).type != TYPE_UNDEF

    def clear(self) -> None:
        self._slots = [UNDEFINED] * NUM_VARS

    def defined(self) -> Iterator[Tuple[str, Value]]:
        for index, value in enumerate(self._slots):
            if value.type != TYPE_UNDEF:
                yield var_name(index), value

    def snapshot(self) -> dict:
        return {name: render_value(value) for name, value in self.defined()}


class ArrayStore:
    """Global numeric array; grows on write, never on read."""

    def __init__(self) -> None:
        self._data = np.zeros(0, dtype=np.float64)
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def in_range(self, index: int) -> bool:
        return index < MAX_ARRAY_SIZE

    def get(self, index: int) -> float:
        if index < 0:
            index = 0
        if index >= self._size:
            return 0.0
        return float(self._data[index])

    def set(self, index: int, x: float) -> None:
        if index < 0:
            index = 0
        if index >= self._size:
            self._grow(index + 1)
        self._data[index] = x

    def _grow(self, size: int) -> None:
        if size > len(self._data):
            capacity = max(size, 2 * len(self._data), 16)
            grown = np.zeros(capacity, dtype=np.float64)
            grown[: self._size] = self._data[: self._size]
            self._data = grown
        self._size = size

    def clear(self) -> None:
        self._data = np.zeros(0, dtype=np.float64)
        self._size = 0

    def head(self, limit: int) -> List[float]:
        return [float(x) for x in self._data[: min(limit, self._size)]]


class Program:
    """Ordered, 1-based list of logical lines."""

    def __init__(self, lines: Optional[Sequence[str]] = None) -> None:
        self._lines: List[str] = list(lines or [])

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self) -> Iterator[str]:
        return iter(self._lines)

    def line(self, number: int) -> str:
        return self._lines[number - 1]

    def append(self, lines: Sequence[str]) -> int:
        first = len(self._lines) + 1
        self._lines.extend(lines)
        return first

    def clear(self) -> None:
        self._lines = []
