"""Host capabilities the language engine calls out to.

Everything observable outside the interpreter goes through a ``Host``: text
output with the current colour/attribute, blocking line input, the
non-blocking key/pointer event queue, the text and pixel surfaces, clocks and
the random source. The function tables map lowercase names to descriptors so
the evaluator can dispatch a call without string comparisons.
"""

from __future__ import annotations

import math
import shutil
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Tuple

import numpy as np

from graphics import PixelSurface, PointerState
from storage import (
    TYPE_STR,
    Value,
    number,
    to_int,
    to_number,
    to_string,
)


RAND_RANGE = 32768

COLOR_BLACK = 0
COLOR_WHITE = 7
ATTR_NORMAL = 0
ATTR_BOLD = 1
ATTR_REVERSE = 2

EVENT_KEY = "key"
EVENT_POINTER = "pointer"


def expand_escapes(text: str) -> str:
    """Expand backslash escapes the way PRINT shows them."""
    out: List[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch != "\\" or i + 1 >= n:
            out.append(ch)
            i += 1
            continue
        nxt = text[i + 1]
        if "0" <= nxt <= "7":
            j = i + 1
            code = 0
            while j < n and j < i + 4 and "0" <= text[j] <= "7":
                code = code * 8 + (ord(text[j]) - ord("0"))
                j += 1
            out.append(chr(code & 0xFF))
            i = j
            continue
        out.append({"n": "\n", "t": "\t", "r": "\r"}.get(nxt, nxt))
        i += 2
    return "".join(out)


@dataclass(frozen=True)
class InputEvent:
    kind: str
    code: int = 0
    x: int = 0
    y: int = 0
    button: int = 0
    pressed: bool = True


class TextSurface:
    """In-memory character grid mirroring what the console shows."""

    def __init__(self, cols: int, rows: int) -> None:
        self.cols = max(cols, 1)
        self.rows = max(rows, 1)
        self.x = 0
        self.y = 0
        self.fg = COLOR_WHITE
        self.bg = COLOR_BLACK
        self.attr = ATTR_NORMAL
        self.cells: List[List[str]] = [[" "] * self.cols for _ in range(self.rows)]

    def move(self, x: int, y: int) -> bool:
        if 0 <= x < self.cols and 0 <= y < self.rows:
            self.x, self.y = x, y
            return True
        return False

    def char_at_cursor(self) -> int:
        return ord(self.cells[self.y][self.x]) & 0xFF

    def clear(self) -> None:
        self.cells = [[" "] * self.cols for _ in range(self.rows)]
        self.x = self.y = 0

    def _newline(self) -> None:
        self.x = 0
        self.y += 1
        if self.y >= self.rows:
            self.cells.pop(0)
            self.cells.append([" "] * self.cols)
            self.y = self.rows - 1

    def write(self, text: str) -> None:
        for ch in text:
            if ch == "\n":
                self._newline()
            elif ch == "\r":
                self.x = 0
            elif ch == "\t":
                self.x = min((self.x // 8 + 1) * 8, self.cols - 1)
            else:
                self.cells[self.y][self.x] = ch
                self.x += 1
                if self.x >= self.cols:
                    self._newline()

    def row_text(self, y: int) -> str:
        return "".join(self.cells[y]).rstrip()


class Clock:
    def __init__(self) -> None:
        self.start = time.perf_counter()
        self.last_elapsed = self.start

    def epoch_seconds(self) -> float:
        return float(int(time.time()))

    def ticks(self) -> float:
        return (time.perf_counter() - self.start) * 1000.0

    def elapsed(self) -> float:
        now = time.perf_counter()
        delta = (now - self.last_elapsed) * 1000.0
        self.last_elapsed = now
        return delta


class RandomSource:
    def __init__(self, seed: Optional[int] = None) -> None:
        self.seed(int(time.time()) if seed is None else seed)

    def seed(self, value: int) -> None:
        self._rng = np.random.default_rng(value & 0xFFFFFFFF)

    def fraction(self) -> float:
        return int(self._rng.integers(0, RAND_RANGE)) / RAND_RANGE


class Host:
    def __init__(
        self,
        *,
        output_sink: Optional[Callable[[str], None]] = None,
        input_provider: Optional[Callable[[], str]] = None,
        ansi: bool = False,
        seed: Optional[int] = None,
        text_size: Optional[Tuple[int, int]] = None,
        snapshot_path: Optional[str] = None,
    ) -> None:
        self.output_sink = output_sink or (lambda text: print(text, end="", flush=True))
        self.input_provider = input_provider or (lambda: input())
        self.ansi = ansi
        if text_size is None:
            size = shutil.get_terminal_size((80, 25))
            text_size = (size.columns, size.lines)
        self.screen = TextSurface(*text_size)
        self.text_pointer = PointerState()
        self.gfx = PixelSurface(snapshot_path=snapshot_path)
        self.clock = Clock()
        self.random = RandomSource(seed)
        self.events: Deque[InputEvent] = deque()
        self.at_line_start = True
        self._emitted_style: Optional[Tuple[int, int, int]] = (COLOR_WHITE, COLOR_BLACK, ATTR_NORMAL)

    # ---- output ----

    def _style_sequence(self) -> str:
        style = (self.screen.fg, self.screen.bg, self.screen.attr)
        if style == self._emitted_style:
            return ""
        self._emitted_style = style
        codes = ["0"]
        if self.screen.attr == ATTR_BOLD:
            codes.append("1")
        elif self.screen.attr == ATTR_REVERSE:
            codes.append("7")
        codes.append(f"3{self.screen.fg}")
        codes.append(f"4{self.screen.bg}")
        return "\x1b[" + ";".join(codes) + "m"

    def write(self, text: str) -> None:
        if not text:
            return
        self.screen.write(text)
        if self.ansi:
            text = self._style_sequence() + text
        self.output_sink(text)
        self.at_line_start = text.endswith("\n")

    def ensure_newline(self) -> None:
        if not self.at_line_start:
            self.write("\n")

    def move_cursor(self, x: int, y: int) -> bool:
        if not self.screen.move(x, y):
            return False
        if self.ansi:
            self.output_sink(f"\x1b[{y + 1};{x + 1}H")
        return True

    def clear_screen(self) -> None:
        self.screen.clear()
        if self.ansi:
            self.output_sink(self._style_sequence() + "\x1b[2J\x1b[H")
        self.at_line_start = True

    # ---- input ----

    def read_line(self, prompt: str = "") -> str:
        if prompt:
            self.write(prompt)
        try:
            text = self.input_provider()
        except EOFError:
            text = ""
        self.at_line_start = True
        return text

    def prompt(self, text: str, color: Optional[str] = None) -> str:
        """Show a session prompt and read one line; EOFError propagates."""
        self.screen.write(text)
        if self.ansi and color:
            self.output_sink(f"{color}{text}\x1b[0m")
            self._emitted_style = None
        else:
            self.output_sink(text)
        line = self.input_provider()
        self.at_line_start = True
        return line

    def post_key(self, code: int) -> None:
        self.events.append(InputEvent(EVENT_KEY, code=code))

    def post_pointer(self, x: int, y: int, button: int, pressed: bool = True) -> None:
        self.events.append(InputEvent(EVENT_POINTER, x=x, y=y, button=button, pressed=pressed))

    def read_event(self) -> Optional[InputEvent]:
        try:
            return self.events.popleft()
        except IndexError:
            return None

    def read_key(self) -> int:
        """Consume one queued event; pointer events update the text pointer and read as 0."""
        event = self.read_event()
        if event is None:
            return 0
        if event.kind == EVENT_POINTER:
            if event.pressed:
                self.text_pointer.press(event.button, event.x, event.y)
            else:
                with self.text_pointer.lock:
                    self.text_pointer.x, self.text_pointer.y = event.x, event.y
                self.text_pointer.release(event.button)
            return 0
        return event.code


# ---- math functions ----


@dataclass(frozen=True)
class MathFunction:
    name: str
    arity: int
    impl: Callable[..., float]

    def call(self, args: List[float]) -> float:
        with np.errstate(all="ignore"):
            return float(self.impl(*args[: self.arity]))


def _round_half_away(x: float) -> float:
    magnitude = np.floor(abs(x))
    if abs(x) - magnitude >= 0.5:
        magnitude += 1.0
    return math.copysign(magnitude, x)


def _sign(x: float) -> float:
    if x > 0:
        return 1.0
    if x < 0:
        return -1.0
    return 0.0


MATH_FUNCTIONS: Dict[str, MathFunction] = {
    fn.name: fn
    for fn in [
        MathFunction("sin", 1, np.sin),
        MathFunction("cos", 1, np.cos),
        MathFunction("tan", 1, np.tan),
        MathFunction("asin", 1, np.arcsin),
        MathFunction("acos", 1, np.arccos),
        MathFunction("atan", 1, np.arctan),
        MathFunction("sinh", 1, np.sinh),
        MathFunction("cosh", 1, np.cosh),
        MathFunction("tanh", 1, np.tanh),
        MathFunction("exp", 1, np.exp),
        MathFunction("log", 1, np.log),
        MathFunction("log2", 1, np.log2),
        MathFunction("log10", 1, np.log10),
        MathFunction("sqrt", 1, np.sqrt),
        MathFunction("cbrt", 1, np.cbrt),
        MathFunction("ceil", 1, np.ceil),
        MathFunction("floor", 1, np.floor),
        MathFunction("round", 1, _round_half_away),
        MathFunction("trunc", 1, np.trunc),
        MathFunction("fabs", 1, np.fabs),
        MathFunction("abs", 1, np.fabs),
        MathFunction("sign", 1, _sign),
        MathFunction("atan2", 2, np.arctan2),
        MathFunction("pow", 2, np.power),
        MathFunction("fmod", 2, np.fmod),
        MathFunction("hypot", 2, np.hypot),
        MathFunction("fmax", 2, np.fmax),
        MathFunction("fmin", 2, np.fmin),
        MathFunction("max", 2, np.fmax),
        MathFunction("min", 2, np.fmin),
        MathFunction("pi", 0, lambda: math.pi),
        MathFunction("e", 0, lambda: math.e),
    ]
}


def c_pow(base: float, exponent: float) -> float:
    with np.errstate(all="ignore"):
        return float(np.power(base, exponent))


def c_fmod(x: float, y: float) -> float:
    with np.errstate(all="ignore"):
        return float(np.fmod(x, y))


# ---- screen functions ----

ScreenImpl = Callable[[Host, List[Value]], Value]


@dataclass(frozen=True)
class ScreenFunction:
    name: str
    impl: ScreenImpl
    doc: str = ""


_OK = number(1.0)
_FAIL = number(0.0)


def _int_arg(args: List[Value], index: int, default: int = 0) -> int:
    if index >= len(args):
        return default
    return to_int(to_number(args[index]))


def _flag(ok: bool) -> Value:
    return _OK if ok else _FAIL


def _gotoxy(host: Host, args: List[Value]) -> Value:
    if len(args) < 2:
        return _FAIL
    return _flag(host.move_cursor(_int_arg(args, 0), _int_arg(args, 1)))


def _putch(host: Host, args: List[Value]) -> Value:
    if not args:
        return number(-1.0)
    previous = number(float(host.screen.char_at_cursor()))
    if args[0].type == TYPE_STR:
        host.write(args[0].value)
        return previous
    code = _int_arg(args, 0)
    if not 0 <= code <= 255:
        return number(-1.0)
    host.write(chr(code))
    return previous


def _getch(host: Host, args: List[Value]) -> Value:
    return number(float(host.screen.char_at_cursor()))


def _setfore(host: Host, args: List[Value]) -> Value:
    color = _int_arg(args, 0, -1)
    if not 0 <= color <= 7:
        return _FAIL
    host.screen.fg = color
    return _OK


def _setback(host: Host, args: List[Value]) -> Value:
    color = _int_arg(args, 0, -1)
    if not 0 <= color <= 7:
        return _FAIL
    host.screen.bg = color
    return _OK


def _setattr(host: Host, args: List[Value]) -> Value:
    if not args:
        return _FAIL
    attr = _int_arg(args, 0)
    host.screen.attr = attr if attr in (ATTR_BOLD, ATTR_REVERSE) else ATTR_NORMAL
    return number(float(attr))


def _getw(host: Host, args: List[Value]) -> Value:
    return number(float(host.screen.cols))


def _geth(host: Host, args: List[Value]) -> Value:
    return number(float(host.screen.rows))


def _clear(host: Host, args: List[Value]) -> Value:
    host.clear_screen()
    return _OK


def _pointer_x(pointer_of: Callable[[Host], PointerState]) -> ScreenImpl:
    return lambda host, args: number(float(pointer_of(host).x))


def _pointer_y(pointer_of: Callable[[Host], PointerState]) -> ScreenImpl:
    return lambda host, args: number(float(pointer_of(host).y))


def _pointer_click(pointer_of: Callable[[Host], PointerState]) -> ScreenImpl:
    return lambda host, args: number(float(pointer_of(host).take_click()))


def _pointer_drag(pointer_of: Callable[[Host], PointerState]) -> ScreenImpl:
    return lambda host, args: _flag(pointer_of(host).dragging(_int_arg(args, 0, 1)))


def _text_pointer(host: Host) -> PointerState:
    return host.text_pointer


def _gfx_pointer(host: Host) -> PointerState:
    return host.gfx.pointer


def _gmb(host: Host, args: List[Value]) -> Value:
    return number(float(host.gfx.pointer.buttons))


def _gopen(host: Host, args: List[Value]) -> Value:
    host.gfx.open(_int_arg(args, 0, 640), _int_arg(args, 1, 480))
    return _OK


def _gclear(host: Host, args: List[Value]) -> Value:
    return _flag(host.gfx.clear())


def _gpen(host: Host, args: List[Value]) -> Value:
    if len(args) < 3:
        return _FAIL
    host.gfx.set_pen(_int_arg(args, 0), _int_arg(args, 1), _int_arg(args, 2))
    return _OK


def _gbr(host: Host, args: List[Value]) -> Value:
    if len(args) < 3:
        return _FAIL
    host.gfx.set_brush(_int_arg(args, 0), _int_arg(args, 1), _int_arg(args, 2))
    return _OK


def _gpixel(host: Host, args: List[Value]) -> Value:
    if len(args) < 2:
        return _FAIL
    return _flag(host.gfx.pixel(_int_arg(args, 0), _int_arg(args, 1)))


def _four(args: List[Value]) -> Tuple[int, int, int, int]:
    return _int_arg(args, 0), _int_arg(args, 1), _int_arg(args, 2), _int_arg(args, 3)


def _gline(host: Host, args: List[Value]) -> Value:
    if len(args) < 4:
        return _FAIL
    return _flag(host.gfx.line(*_four(args)))


def _grect(host: Host, args: List[Value]) -> Value:
    if len(args) < 4:
        return _FAIL
    return _flag(host.gfx.rectangle(*_four(args), fill=False))


def _gfillrect(host: Host, args: List[Value]) -> Value:
    if len(args) < 4:
        return _FAIL
    return _flag(host.gfx.rectangle(*_four(args), fill=True))


def _gcircle(host: Host, args: List[Value]) -> Value:
    if len(args) < 3:
        return _FAIL
    return _flag(host.gfx.circle(_int_arg(args, 0), _int_arg(args, 1), _int_arg(args, 2), fill=False))


def _gfillcircle(host: Host, args: List[Value]) -> Value:
    if len(args) < 3:
        return _FAIL
    return _flag(host.gfx.circle(_int_arg(args, 0), _int_arg(args, 1), _int_arg(args, 2), fill=True))


def _gtext(host: Host, args: List[Value]) -> Value:
    if len(args) < 3:
        return _FAIL
    return _flag(host.gfx.text(_int_arg(args, 0), _int_arg(args, 1), to_string(args[2])))


def _grefresh(host: Host, args: List[Value]) -> Value:
    return _flag(host.gfx.refresh())


def _time(host: Host, args: List[Value]) -> Value:
    return number(host.clock.epoch_seconds())


def _ticks(host: Host, args: List[Value]) -> Value:
    return number(host.clock.ticks())


def _elapsed(host: Host, args: List[Value]) -> Value:
    return number(host.clock.elapsed())


SCREEN_FUNCTIONS: Dict[str, ScreenFunction] = {
    fn.name: fn
    for fn in [
        ScreenFunction("gotoxy", _gotoxy, "gotoxy(x,y) - move cursor to column x, row y"),
        ScreenFunction("putch", _putch, "putch(c) - write char (code or string) at cursor"),
        ScreenFunction("getch", _getch, "getch() - char code at cursor"),
        ScreenFunction("setfore", _setfore, "setfore(c) - foreground colour 0-7"),
        ScreenFunction("setback", _setback, "setback(c) - background colour 0-7"),
        ScreenFunction("setattr", _setattr, "setattr(a) - 0=normal, 1=bold, 2=reverse"),
        ScreenFunction("getw", _getw, "getw() - screen width in columns"),
        ScreenFunction("geth", _geth, "geth() - screen height in rows"),
        ScreenFunction("clear", _clear, "clear() - clear screen with current background"),
        ScreenFunction("tmx", _pointer_x(_text_pointer), "tmx() - text pointer column"),
        ScreenFunction("tmy", _pointer_y(_text_pointer), "tmy() - text pointer row"),
        ScreenFunction("tmclick", _pointer_click(_text_pointer), "tmclick() - last click button, then reset"),
        ScreenFunction("tmdrag", _pointer_drag(_text_pointer), "tmdrag(b) - 1 while button b is held"),
        ScreenFunction("gopen", _gopen, "gopen(w,h) - open the pixel surface"),
        ScreenFunction("gclear", _gclear, "gclear() - fill with brush colour"),
        ScreenFunction("gpen", _gpen, "gpen(r,g,b) - pen colour"),
        ScreenFunction("gbr", _gbr, "gbr(r,g,b) - brush colour"),
        ScreenFunction("gpixel", _gpixel, "gpixel(x,y) - plot with pen"),
        ScreenFunction("gline", _gline, "gline(x1,y1,x2,y2) - line with pen"),
        ScreenFunction("grect", _grect, "grect(x1,y1,x2,y2) - rectangle outline"),
        ScreenFunction("gfillrect", _gfillrect, "gfillrect(x1,y1,x2,y2) - filled rectangle"),
        ScreenFunction("gcircle", _gcircle, "gcircle(x,y,r) - circle outline"),
        ScreenFunction("gfillcircle", _gfillcircle, "gfillcircle(x,y,r) - filled circle"),
        ScreenFunction("gtext", _gtext, "gtext(x,y,s) - text in pen colour"),
        ScreenFunction("grefresh", _grefresh, "grefresh() - present the surface"),
        ScreenFunction("gmx", _pointer_x(_gfx_pointer), "gmx() - pixel pointer x"),
        ScreenFunction("gmy", _pointer_y(_gfx_pointer), "gmy() - pixel pointer y"),
        ScreenFunction("gmb", _gmb, "gmb() - held button mask"),
        ScreenFunction("gmclick", _pointer_click(_gfx_pointer), "gmclick() - last click button, then reset"),
        ScreenFunction("gmdrag", _pointer_drag(_gfx_pointer), "gmdrag(b) - 1 while button b is held"),
        ScreenFunction("time", _time, "time() - seconds since the epoch"),
        ScreenFunction("ticks", _ticks, "ticks() - milliseconds since start"),
        ScreenFunction("elapsed", _elapsed, "elapsed() - milliseconds since last elapsed()"),
    ]
}
