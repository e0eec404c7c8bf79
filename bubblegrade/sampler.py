from __future__ import annotations

from typing import List, Tuple

import numpy as np

from .calibration import (
    ANCHOR_TO_FIRST_OPTION_MM,
    BUBBLE_RADIUS_MM,
    OPTION_SPACING_MM,
    SAMPLE_RADIUS_FACTOR,
    px_per_mm,
)
from .types import OPTIONS, Bubble, Rect, RowGrid


def bubble_geometry(pitch: float) -> Tuple[float, float, float]:
    """
    Returns (first option offset, option spacing, sample radius) in pixels for
    a band whose measured row pitch is ``pitch``.
    """
    scale = px_per_mm(pitch)
    return (
        ANCHOR_TO_FIRST_OPTION_MM * scale,
        OPTION_SPACING_MM * scale,
        BUBBLE_RADIUS_MM * SAMPLE_RADIUS_FACTOR * scale,
    )


def _clip_rect(cx: float, cy: float, radius: float, width: int, height: int) -> Rect:
    x0 = int(round(cx - radius))
    y0 = int(round(cy - radius))
    x1 = int(round(cx + radius))
    y1 = int(round(cy + radius))
    x0, x1 = max(0, x0), min(width, x1)
    y0, y1 = max(0, y0), min(height, y1)
    return (x0, y0, max(0, x1 - x0), max(0, y1 - y0))


def option_rects(
    anchor_x: float,
    y: float,
    pitch: float,
    width: int,
    height: int,
    dx: float = 0.0,
    dy: float = 0.0,
) -> List[Rect]:
    """One sampling rectangle per option, in the coordinates of ``anchor_x``/``y``."""
    first, spacing, radius = bubble_geometry(pitch)
    cy = y + dy
    return [
        _clip_rect(anchor_x + first + i * spacing + dx, cy, radius, width, height)
        for i in range(len(OPTIONS))
    ]


def fill_ratio(binary: np.ndarray, rect: Rect) -> float:
    x, y, w, h = rect
    if w <= 0 or h <= 0:
        return 0.0
    roi = binary[y : y + h, x : x + w]
    if roi.size == 0:
        return 0.0
    return float(np.count_nonzero(roi)) / float(roi.size)


def sample_bubbles(
    grid: RowGrid,
    first_item: int,
    band_offset: int,
    band_width: int,
    height: int,
    dx: float = 0.0,
    dy: float = 0.0,
) -> List[Bubble]:
    """
    Sampling rectangles for every (row, option) of a band. Rectangles are
    clipped to the band and returned in canonical coordinates.
    """
    bubbles: List[Bubble] = []
    for row_index, y in enumerate(grid.rows):
        rects = option_rects(grid.anchor_x, y, grid.pitch, band_width, height, dx, dy)
        for option, (x, yy, w, h) in zip(OPTIONS, rects):
            bubbles.append(
                Bubble(
                    rect=(x + band_offset, yy, w, h),
                    option=option,
                    item=first_item + row_index,
                    band_offset=band_offset,
                )
            )
    return bubbles


def band_rect(bubble: Bubble) -> Rect:
    x, y, w, h = bubble.rect
    return (x - bubble.band_offset, y, w, h)
