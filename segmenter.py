from __future__ import annotations
from typing import List


class ITLError(Exception):
    """Base class for interpreter errors."""


class ITLFatalError(ITLError):
    """Raised for host-level failures that end a static run."""


SEPARATOR = ";"


class Segmenter:
    """Splits raw text into logical lines on top-level separators.

    A separator does not split while inside a double-quoted string (where a
    backslash protects the next character) or while inside parentheses.
    Parenthesis depth is only tracked outside strings and never drops below
    zero. The remainder after the last separator is always emitted, even
    when empty.
    """

    def __init__(self, text: str) -> None:
        self.text = text
        self.index = 0
        self.depth = 0
        self.in_string = False

    def segments(self) -> List[str]:
        out: List[str] = []
        current: List[str] = []
        append = current.append
        text = self.text
        n = len(text)

        while self.index < n:
            ch = text[self.index]
            if self.in_string:
                if ch == "\\" and self.index + 1 < n:
                    append(ch)
                    append(text[self.index + 1])
                    self.index += 2
                    continue
                if ch == '"':
                    self.in_string = False
                append(ch)
                self.index += 1
                continue
            if ch == '"':
                self.in_string = True
                append(ch)
                self.index += 1
                continue
            if ch == "(":
                self.depth += 1
            elif ch == ")" and self.depth > 0:
                self.depth -= 1
            if ch == SEPARATOR and self.depth == 0:
                out.append("".join(current))
                current.clear()
                self.index += 1
                continue
            append(ch)
            self.index += 1

        out.append("".join(current))
        return out


def split_statements(text: str) -> List[str]:
    return Segmenter(text).segments()


def physical_lines(source: str) -> List[str]:
    if not source:
        return []
    lines = source.split("\n")
    if lines and lines[-1] == "" and source.endswith("\n"):
        lines.pop()
    return [line.rstrip("\r") for line in lines]


def segment_source(source: str) -> List[str]:
    """Segment a whole program text, one physical line at a time."""
    out: List[str] = []
    for line in physical_lines(source):
        out.extend(split_statements(line))
    return out
