"""ITL Extension: string helpers.

Positions are 1-based, like the line numbers ITL programs jump to.
"""

from __future__ import annotations

from typing import List

from extensions import ExtensionAPI
from storage import Value, number, string, to_int, to_number, to_string


ITL_EXTENSION_NAME = "strings"
ITL_EXTENSION_API_VERSION = 1


def _len(_, args: List[Value]) -> Value:
    return number(float(len(to_string(args[0]))))


def _asc(_, args: List[Value]) -> Value:
    text = to_string(args[0])
    return number(float(ord(text[0]))) if text else number(0.0)


def _chr(_, args: List[Value]) -> Value:
    code = to_int(to_number(args[0]))
    if not 0 <= code <= 0x10FFFF:
        return string("")
    return string(chr(code))


def _mid(_, args: List[Value]) -> Value:
    text = to_string(args[0])
    start = max(to_int(to_number(args[1])), 1) - 1
    if len(args) < 3:
        return string(text[start:])
    count = max(to_int(to_number(args[2])), 0)
    return string(text[start : start + count])


def _upper(_, args: List[Value]) -> Value:
    return string(to_string(args[0]).upper())


def _lower(_, args: List[Value]) -> Value:
    return string(to_string(args[0]).lower())


def _instr(_, args: List[Value]) -> Value:
    return number(float(to_string(args[0]).find(to_string(args[1])) + 1))


def itl_register(ext: ExtensionAPI) -> None:
    ext.metadata(name="strings", version="0.1.0")
    ext.register_function("len", 1, 1, _len, doc="len(s) -> number of characters")
    ext.register_function("asc", 1, 1, _asc, doc="asc(s) -> code of the first character, 0 if empty")
    ext.register_function("chr", 1, 1, _chr, doc="chr(n) -> one-character string")
    ext.register_function("mid", 2, 3, _mid, doc="mid(s,start[,n]) -> substring from 1-based start")
    ext.register_function("upper", 1, 1, _upper, doc="upper(s) -> s in upper case")
    ext.register_function("lower", 1, 1, _lower, doc="lower(s) -> s in lower case")
    ext.register_function("instr", 2, 2, _instr, doc="instr(s,t) -> 1-based position of t in s, 0 if absent")
