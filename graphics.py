"""Pixel-addressable drawing surface.

The framebuffer is a numpy ``uint8`` array of shape ``[height][width][rgb]``.
Primitives follow GDI conventions: outlines use the pen colour, interiors use
the brush colour, and rectangles/ellipses exclude their right and bottom edge.
Text is rendered and snapshots are written through Pillow.

A window or event thread may share this surface with the interpreter, so the
framebuffer and the pointer state are only touched under their locks.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw


DEFAULT_WIDTH = 640
DEFAULT_HEIGHT = 480
MAX_DIMENSION = 8192

Color = Tuple[int, int, int]


def button_bit(button: int) -> int:
    if button == 1:
        return 1
    if button == 2:
        return 2
    return 4


def _clamp_channel(v: int) -> int:
    if v < 0:
        return 0
    if v > 255:
        return 255
    return v


@dataclass
class PointerState:
    x: int = 0
    y: int = 0
    buttons: int = 0
    click: int = 0
    drag: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def press(self, button: int, x: int, y: int) -> None:
        with self.lock:
            self.x, self.y = x, y
            self.buttons |= button_bit(button)
            self.drag |= button_bit(button)
            self.click = button

    def release(self, button: int) -> None:
        with self.lock:
            self.buttons &= ~button_bit(button)
            self.drag &= ~button_bit(button)

    def take_click(self) -> int:
        with self.lock:
            click = self.click
            self.click = 0
            return click

    def dragging(self, button: int) -> bool:
        with self.lock:
            return bool(self.drag & button_bit(button))


class PixelSurface:
    def __init__(self, *, snapshot_path: Optional[str] = None) -> None:
        self.snapshot_path = snapshot_path
        self.lock = threading.Lock()
        self.width = DEFAULT_WIDTH
        self.height = DEFAULT_HEIGHT
        self.buffer: Optional[np.ndarray] = None
        self.pen: Color = (255, 255, 255)
        self.brush: Color = (0, 0, 0)
        self.pointer = PointerState()
        self.refresh_count = 0

    def open(self, width: int, height: int) -> None:
        if self.buffer is not None:
            return
        self.width = min(max(width, 1), MAX_DIMENSION)
        self.height = min(max(height, 1), MAX_DIMENSION)
        with self.lock:
            self.buffer = np.zeros((self.height, self.width, 3), dtype=np.uint8)

    def close(self) -> None:
        with self.lock:
            self.buffer = None

    def set_pen(self, r: int, g: int, b: int) -> None:
        self.pen = (_clamp_channel(r), _clamp_channel(g), _clamp_channel(b))

    def set_brush(self, r: int, g: int, b: int) -> None:
        self.brush = (_clamp_channel(r), _clamp_channel(g), _clamp_channel(b))

    def clear(self) -> bool:
        if self.buffer is None:
            return False
        with self.lock:
            self.buffer[:, :] = self.brush
        return True

    def pixel(self, x: int, y: int) -> bool:
        if self.buffer is None:
            return False
        with self.lock:
            self._plot(x, y, self.pen)
        return True

    def _plot(self, x: int, y: int, color: Color) -> None:
        if 0 <= x < self.width and 0 <= y < self.height:
            self.buffer[y, x] = color

    def _clip_segment(self, x1: int, y1: int, x2: int, y2: int) -> Optional[Tuple[int, int, int, int]]:
        """Liang-Barsky clip against the surface grown by one pixel on every side.

        An end that is not clipped keeps its exact coordinates; a clipped end
        lands on the off-surface border, so dropping it changes nothing.
        """
        dx = x2 - x1
        dy = y2 - y1
        t0, t1 = 0.0, 1.0
        for p, q in ((-dx, x1 + 1), (dx, self.width - x1), (-dy, y1 + 1), (dy, self.height - y1)):
            if p == 0:
                if q < 0:
                    return None
                continue
            t = q / p
            if p < 0:
                if t > t1:
                    return None
                t0 = max(t0, t)
            else:
                if t < t0:
                    return None
                t1 = min(t1, t)
        start = (x1, y1) if t0 == 0.0 else (round(x1 + t0 * dx), round(y1 + t0 * dy))
        end = (x2, y2) if t1 == 1.0 else (round(x1 + t1 * dx), round(y1 + t1 * dy))
        return start + end

    def line(self, x1: int, y1: int, x2: int, y2: int) -> bool:
        """Bresenham line; the end point is not drawn, as with LineTo."""
        if self.buffer is None:
            return False
        clipped = self._clip_segment(x1, y1, x2, y2)
        if clipped is None:
            return True
        x1, y1, x2, y2 = clipped
        dx = abs(x2 - x1)
        dy = -abs(y2 - y1)
        sx = 1 if x1 < x2 else -1
        sy = 1 if y1 < y2 else -1
        err = dx + dy
        x, y = x1, y1
        with self.lock:
            while (x, y) != (x2, y2):
                self._plot(x, y, self.pen)
                e2 = 2 * err
                if e2 >= dy:
                    err += dy
                    x += sx
                if e2 <= dx:
                    err += dx
                    y += sy
        return True

    def _clip_box(self, x1: int, y1: int, x2: int, y2: int) -> Tuple[int, int, int, int]:
        left, right = sorted((x1, x2))
        top, bottom = sorted((y1, y2))
        return left, top, right, bottom

    def rectangle(self, x1: int, y1: int, x2: int, y2: int, *, fill: bool) -> bool:
        if self.buffer is None:
            return False
        left, top, right, bottom = self._clip_box(x1, y1, x2, y2)
        if right - left < 1 or bottom - top < 1:
            return True
        ys, xs = np.ogrid[0 : self.height, 0 : self.width]
        inside = (xs >= left) & (xs < right) & (ys >= top) & (ys < bottom)
        interior = (xs > left) & (xs < right - 1) & (ys > top) & (ys < bottom - 1)
        with self.lock:
            if fill:
                self.buffer[interior] = self.brush
            self.buffer[inside & ~interior] = self.pen
        return True

    def circle(self, cx: int, cy: int, radius: int, *, fill: bool) -> bool:
        if self.buffer is None:
            return False
        if radius <= 0:
            return True
        ys, xs = np.ogrid[0 : self.height, 0 : self.width]
        # bounding box is [cx-r, cx+r) x [cy-r, cy+r); sample at pixel centres
        dx = (xs + 0.5 - cx) / radius
        dy = (ys + 0.5 - cy) / radius
        dist = dx * dx + dy * dy
        inside = dist <= 1.0
        inner_r = radius - 1
        if inner_r > 0:
            idx = (xs + 0.5 - cx) / inner_r
            idy = (ys + 0.5 - cy) / inner_r
            interior = (idx * idx + idy * idy) < 1.0
        else:
            interior = np.zeros_like(inside)
        with self.lock:
            if fill:
                self.buffer[interior & inside] = self.brush
            self.buffer[inside & ~interior] = self.pen
        return True

    def text(self, x: int, y: int, text: str) -> bool:
        if self.buffer is None:
            return False
        with self.lock:
            image = Image.fromarray(self.buffer)
            ImageDraw.Draw(image).text((x, y), text, fill=self.pen)
            self.buffer = np.array(image, dtype=np.uint8)
        return True

    def refresh(self) -> bool:
        self.refresh_count += 1
        if self.buffer is None or not self.snapshot_path:
            return True
        with self.lock:
            image = Image.fromarray(self.buffer.copy())
        image.save(self.snapshot_path)
        return True

    def snapshot(self) -> Optional[np.ndarray]:
        if self.buffer is None:
            return None
        with self.lock:
            return self.buffer.copy()
