"""Coordinate transforms shared by the rasterizer and the text locator.

Three spaces are involved:

* page space: PDF user units (points), origin bottom-left, y grows upward;
* device space: page space multiplied by the raster scale, still bottom-up;
* image space: raster pixels, origin top-left, y grows downward.

Text fragments carry a page-space affine transform. The raster is produced at
the same scale, so a fragment lands on the image by going page -> device ->
image. Every function here is pure.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

Matrix = Tuple[float, float, float, float, float, float]

IDENTITY: Matrix = (1.0, 0.0, 0.0, 1.0, 0.0, 0.0)
FALLBACK_HEIGHT_PX = 10.0


@dataclass(frozen=True)
class DeviceRect:
    """Fragment geometry in device space; ``(x, y)`` is the bottom-left corner."""

    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class RedactionBox:
    """An opaque fill rectangle in image space, clipped to the raster."""

    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    def as_rectangle(self) -> Tuple[int, int, int, int]:
        """Return ``(x0, y0, x1, y1)`` with exclusive right/bottom edges."""
        return (self.x, self.y, self.right, self.bottom)


def multiply(outer: Matrix, inner: Matrix) -> Matrix:
    """Compose two affine matrices; ``inner`` is applied first."""
    a1, b1, c1, d1, e1, f1 = outer
    a2, b2, c2, d2, e2, f2 = inner
    return (
        a1 * a2 + c1 * b2,
        b1 * a2 + d1 * b2,
        a1 * c2 + c1 * d2,
        b1 * c2 + d1 * d2,
        a1 * e2 + c1 * f2 + e1,
        b1 * e2 + d1 * f2 + f1,
    )


def page_to_device(scale: float, origin: Tuple[float, float] = (0.0, 0.0)) -> Matrix:
    """Return the page-to-device matrix for a raster rendered at ``scale``.

    ``origin`` is the bottom-left corner of the visible page box in page space.
    """
    if scale <= 0:
        raise ValueError("Scale must be positive")
    ox, oy = origin
    return (scale, 0.0, 0.0, scale, -ox * scale, -oy * scale)


def fragment_device_rect(
    transform: Matrix,
    scale: float,
    text_length: int,
    width: Optional[float] = None,
    height: Optional[float] = None,
    origin: Tuple[float, float] = (0.0, 0.0),
) -> DeviceRect:
    """Map a fragment's page-space transform and extent into device space.

    Explicit ``width``/``height`` are page units and get scaled. Without them
    the extent is estimated from the transformed glyph scale.
    """
    device = multiply(page_to_device(scale, origin), transform)
    if width:
        device_width = abs(width) * scale
    else:
        device_width = abs(device[0]) * max(text_length, 1)
    if height:
        device_height = abs(height) * scale
    else:
        device_height = abs(device[3]) or FALLBACK_HEIGHT_PX
    return DeviceRect(device[4], device[5], device_width, device_height)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def device_rect_to_box(
    rect: DeviceRect,
    raster_width: int,
    raster_height: int,
    padding: float = 2,
) -> RedactionBox:
    """Flip a device rectangle into image space, pad it and clip it to the raster."""
    left = _clamp(rect.x - padding, 0, raster_width)
    top = _clamp(raster_height - rect.y - rect.height - padding, 0, raster_height)
    right = _clamp(rect.x + rect.width + padding, 0, raster_width)
    bottom = _clamp(raster_height - rect.y + padding, 0, raster_height)
    x0 = int(left)
    y0 = int(top)
    # round the far edges outward so fractional glyph edges stay covered
    x1 = max(x0, min(raster_width, math.ceil(right)))
    y1 = max(y0, min(raster_height, math.ceil(bottom)))
    return RedactionBox(x0, y0, x1 - x0, y1 - y0)
