import time

import numpy as np
import pytest
from PIL import Image

from graphics import PixelSurface, PointerState
from host import Host, RandomSource, TextSurface, expand_escapes


def num(interp, text):
    return interp.evaluate(text).value


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("a\\n", "a\n"),
        ("\\t|\\r", "\t|\r"),
        ("\\101\\102", "AB"),
        ("\\0", "\x00"),
        ("\\q", "q"),
        ("\\\\", "\\"),
        ("a\\", "a\\"),
    ],
)
def test_expand_escapes(raw, expected):
    assert expand_escapes(raw) == expected


def test_text_surface_wraps_and_scrolls():
    surface = TextSurface(4, 2)
    surface.write("abcdef")
    assert surface.row_text(0) == "abcd"
    assert surface.row_text(1) == "ef"
    surface.write("\nxy")
    assert surface.row_text(0) == "ef"
    assert surface.row_text(1) == "xy"


def test_random_source_is_deterministic():
    a = RandomSource(seed=7)
    b = RandomSource(seed=7)
    assert [a.fraction() for _ in range(5)] == [b.fraction() for _ in range(5)]


def test_read_line_returns_empty_on_eof(host):
    assert host.read_line() == ""


def test_prompt_propagates_eof(host):
    with pytest.raises(EOFError):
        host.prompt("1> ")


def test_ansi_output_carries_style(console):
    host = Host(output_sink=console.sink, ansi=True, text_size=(80, 25))
    host.write("a")
    host.screen.fg = 2
    host.write("b")
    assert console.text == "a\x1b[0;32;40mb"


# ---- text screen functions ----


def test_cursor_and_characters(interp, console):
    assert num(interp, "gotoxy(2,1)") == 1.0
    assert num(interp, "gotoxy(100,0)") == 0.0
    assert num(interp, "gotoxy(0,0)") == 1.0
    assert num(interp, 'putch("Z")') == 32.0
    assert num(interp, "putch(66)") == 32.0
    assert num(interp, "putch(300)") == -1.0
    interp.evaluate("gotoxy(0,0)")
    assert num(interp, "getch()") == ord("Z")
    assert console.text == "ZB"


def test_colours_and_attributes(interp, host):
    assert num(interp, "setfore(3)") == 1.0
    assert num(interp, "setfore(9)") == 0.0
    assert num(interp, "setback(4)") == 1.0
    assert num(interp, "setattr(2)") == 2.0
    assert (host.screen.fg, host.screen.bg, host.screen.attr) == (3, 4, 2)


def test_screen_size(interp):
    assert num(interp, "getw()") == 80.0
    assert num(interp, "geth()") == 25.0


def test_clear_resets_cursor(interp, host):
    interp.evaluate("gotoxy(5,5)")
    assert num(interp, "clear()") == 1.0
    assert (host.screen.x, host.screen.y) == (0, 0)


def test_clocks(interp):
    assert abs(num(interp, "time()") - time.time()) < 5
    assert num(interp, "ticks()") >= 0.0
    assert num(interp, "elapsed()") >= 0.0


# ---- pixel surface ----


def test_drawing_needs_an_open_surface(interp):
    assert num(interp, "gpixel(1,1)") == 0.0
    assert num(interp, "gclear()") == 0.0


def test_pen_and_pixels(interp, host):
    assert num(interp, "gopen(20,10)") == 1.0
    assert num(interp, "gpen(255,0,0)") == 1.0
    assert num(interp, "gpixel(1,1)") == 1.0
    assert host.gfx.buffer.shape == (10, 20, 3)
    assert list(host.gfx.buffer[1, 1]) == [255, 0, 0]
    assert num(interp, "gpixel(50,50)") == 1.0


def test_colour_channels_are_clamped(interp, host):
    interp.evaluate("gpen(300,0-5,10)")
    assert host.gfx.pen == (255, 0, 10)


def test_line_excludes_end_point(interp, host):
    interp.evaluate("gopen(10,10)")
    interp.evaluate("gline(0,0,4,0)")
    row = host.gfx.buffer[0, :, 0]
    assert list(row[:4]) == [255] * 4
    assert row[4] == 0


def test_filled_rectangle_uses_pen_and_brush(interp, host):
    interp.evaluate("gopen(10,10)")
    interp.evaluate("gpen(255,0,0)")
    interp.evaluate("gbr(0,0,255)")
    interp.evaluate("gfillrect(2,2,6,6)")
    buf = host.gfx.buffer
    assert list(buf[2, 2]) == [255, 0, 0]
    assert list(buf[5, 5]) == [255, 0, 0]
    assert list(buf[3, 3]) == [0, 0, 255]
    assert list(buf[6, 6]) == [0, 0, 0]


def test_rectangle_outline_leaves_interior(interp, host):
    interp.evaluate("gopen(10,10)")
    interp.evaluate("grect(0,0,5,5)")
    assert list(host.gfx.buffer[0, 0]) == [255, 255, 255]
    assert list(host.gfx.buffer[2, 2]) == [0, 0, 0]


def test_filled_circle_centre_uses_brush(interp, host):
    interp.evaluate("gopen(20,10)")
    interp.evaluate("gbr(0,255,0)")
    interp.evaluate("gfillcircle(10,5,3)")
    assert list(host.gfx.buffer[5, 10]) == [0, 255, 0]
    assert list(host.gfx.buffer[0, 0]) == [0, 0, 0]


def test_gclear_fills_with_brush(interp, host):
    interp.evaluate("gopen(4,4)")
    interp.evaluate("gbr(1,2,3)")
    assert num(interp, "gclear()") == 1.0
    assert (host.gfx.buffer == np.array([1, 2, 3], dtype=np.uint8)).all()


def test_text_draws_pixels(interp, host):
    interp.evaluate("gopen(40,20)")
    assert num(interp, 'gtext(0,0,"Hi")') == 1.0
    assert host.gfx.buffer.any()


def test_refresh_writes_snapshot(console, services, tmp_path):
    from interpreter import Interpreter

    path = tmp_path / "frame.png"
    host = Host(output_sink=console.sink, text_size=(80, 25), snapshot_path=str(path))
    interp = Interpreter(host=host, services=services)
    interp.load_source("gopen(20,10)\ngpixel(0,0)\ngrefresh()")
    interp.run()
    with Image.open(path) as image:
        assert image.size == (20, 10)
        assert image.getpixel((0, 0)) == (255, 255, 255)
    assert host.gfx.refresh_count == 1


def test_graphics_pointer(interp, host):
    host.gfx.pointer.press(1, 3, 4)
    assert num(interp, "gmx()") == 3.0
    assert num(interp, "gmy()") == 4.0
    assert num(interp, "gmb()") == 1.0
    assert num(interp, "gmclick()") == 1.0
    assert num(interp, "gmclick()") == 0.0
    assert num(interp, "gmdrag(1)") == 1.0
    host.gfx.pointer.release(1)
    assert num(interp, "gmb()") == 0.0
    assert num(interp, "gmdrag(1)") == 0.0


def test_pointer_button_bits():
    pointer = PointerState()
    pointer.press(2, 0, 0)
    pointer.press(3, 0, 0)
    assert pointer.buttons == 6
    pointer.release(2)
    assert pointer.buttons == 4
    assert pointer.dragging(3)


def test_surface_open_is_idempotent():
    surface = PixelSurface()
    surface.open(8, 8)
    surface.open(16, 16)
    assert surface.snapshot().shape == (8, 8, 3)
    surface.close()
    assert surface.snapshot() is None


def test_huge_line_is_clipped_to_the_surface(interp, host):
    interp.evaluate("gopen(64,48)")
    started = time.perf_counter()
    assert num(interp, "gline(0,0,300000000,0)") == 1.0
    assert num(interp, "gline(0-300000000,5,300000000,5)") == 1.0
    assert num(interp, "gline(0-1000000,0-1000000,1000000,1000000)") == 1.0
    assert time.perf_counter() - started < 2.0
    buf = host.gfx.buffer
    assert (buf[0, :, 0] == 255).all()
    assert (buf[5, :, 0] == 255).all()
    assert list(buf[10, 10]) == [255, 255, 255]
    assert list(buf[47, 47]) == [255, 255, 255]


def test_line_entirely_off_surface_draws_nothing(interp, host):
    interp.evaluate("gopen(10,10)")
    assert num(interp, "gline(20,20,900000000,30)") == 1.0
    assert not host.gfx.buffer.any()


def test_clipped_line_keeps_inside_end_point_excluded():
    surface = PixelSurface()
    surface.open(10, 10)
    surface.line(-1000000, 3, 5, 3)
    row = surface.buffer[3, :, 0]
    assert list(row[:5]) == [255] * 5
    assert row[5] == 0
