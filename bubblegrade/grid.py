from __future__ import annotations

from typing import List, Optional, Sequence, Tuple
import logging

import cv2
import numpy as np

from .calibration import (
    ANCHOR_BIN_PX,
    ANCHOR_MIN_BIN_HITS,
    ANCHOR_X_TOLERANCE_PX,
    MAX_PITCH_PX,
    MIN_PITCH_PX,
)
from .sampler import fill_ratio, option_rects
from .types import Anchor, LayoutCalibration, Point, RowGrid

logger = logging.getLogger(__name__)

# Gaps within this fraction of a whole number of pitches count as missing rows
INTERPOLATION_TOLERANCE = 0.3


def binarize_band(gray: np.ndarray, block_size: int) -> np.ndarray:
    """
    Foreground (ink) is 255. The block must be wider than a bubble so a fully
    shaded bubble still reads as ink in its centre.
    """
    block = block_size if block_size % 2 == 1 else block_size + 1
    binary = cv2.adaptiveThreshold(
        gray,
        255,
        cv2.ADAPTIVE_THRESH_MEAN_C,
        cv2.THRESH_BINARY_INV,
        block,
        10,
    )
    kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (3, 3))
    return cv2.morphologyEx(binary, cv2.MORPH_CLOSE, kernel)


def find_anchors(binary: np.ndarray, calibration: LayoutCalibration) -> List[Anchor]:
    contours, _ = cv2.findContours(binary, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    anchors: List[Anchor] = []
    for contour in contours:
        x, y, w, h = cv2.boundingRect(contour)
        box_area = float(w * h)
        if box_area < calibration.min_anchor_area or box_area > calibration.max_anchor_area:
            continue
        aspect = w / float(h)
        if aspect < calibration.aspect_min or aspect > calibration.aspect_max:
            continue
        area = cv2.contourArea(contour)
        if area / box_area < calibration.min_solidity:
            continue
        cy = y + h / 2.0
        if cy < calibration.min_y_margin:
            continue
        anchors.append(Anchor(center=Point(x + w / 2.0, cy), area=box_area, radius=(w + h) / 4.0))
    return anchors


def anchor_column(anchors: Sequence[Anchor]) -> Tuple[Optional[float], List[Anchor]]:
    """
    Locate the vertical anchor line: the first 10px X bin holding at least
    three anchors. Returns the peak X and the anchors near it sorted by Y.
    """
    if not anchors:
        return None, []

    bins: dict[int, int] = {}
    for anchor in anchors:
        key = int(anchor.center.x // ANCHOR_BIN_PX)
        bins[key] = bins.get(key, 0) + 1

    peak_bin = next((b for b in sorted(bins) if bins[b] >= ANCHOR_MIN_BIN_HITS), None)
    if peak_bin is None:
        # Too few anchors for a histogram peak; fall back to the busiest bin
        peak_bin = max(sorted(bins), key=lambda b: bins[b])
    peak_x = peak_bin * ANCHOR_BIN_PX + ANCHOR_BIN_PX / 2.0

    kept = [a for a in anchors if abs(a.center.x - peak_x) <= ANCHOR_X_TOLERANCE_PX]
    kept.sort(key=lambda a: a.center.y)

    deduped: List[Anchor] = []
    for anchor in kept:
        if deduped and anchor.center.y - deduped[-1].center.y < MIN_PITCH_PX / 2.0:
            continue
        deduped.append(anchor)
    return peak_x, deduped


def estimate_pitch(ys: Sequence[float], default_pitch: float) -> float:
    if len(ys) < 2:
        return float(default_pitch)
    gaps = np.diff(np.asarray(ys, dtype="float64"))
    pitch = float(np.median(gaps))
    if pitch < MIN_PITCH_PX or pitch > MAX_PITCH_PX:
        logger.info("[OMR] Row pitch %.1fpx out of range, using default %.1fpx", pitch, default_pitch)
        return float(default_pitch)
    return pitch


def interpolate_rows(ys: Sequence[float], pitch: float) -> List[float]:
    if not ys:
        return []
    rows = [float(ys[0])]
    for a, b in zip(ys, ys[1:]):
        gap = float(b) - float(a)
        ratio = gap / pitch
        steps = int(round(ratio))
        if steps >= 2 and abs(ratio - steps) <= INTERPOLATION_TOLERANCE:
            step = gap / steps
            rows.extend(float(a) + step * k for k in range(1, steps))
        rows.append(float(b))
    return rows


def backfill_leading(
    rows: List[float],
    pitch: float,
    anchor_x: float,
    binary: np.ndarray,
    expected: int,
    calibration: LayoutCalibration,
) -> List[float]:
    """
    Probe one and then two pitches above the first row. A probe whose option
    slots carry ink is a real row whose anchor was faded or covered.
    """
    if not rows:
        return rows
    height, width = binary.shape[:2]
    first = rows[0]
    result = list(rows)
    for k in (1, 2):
        if len(result) >= expected:
            break
        y = first - k * pitch
        if y < 0:
            break
        rects = option_rects(anchor_x, y, pitch, width, height)
        best = max(fill_ratio(binary, rect) for rect in rects)
        if best <= calibration.fill_threshold:
            break
        logger.info("[OMR] Backfilled leading row at y=%.1f (fill %.2f)", y, best)
        result.insert(0, y)
    return result


def pad_trailing(rows: List[float], pitch: float, expected: int) -> List[float]:
    result = list(rows[:expected])
    while result and len(result) < expected:
        result.append(result[-1] + pitch)
    return result


def reconstruct_grid(
    anchors: Sequence[Anchor],
    binary: np.ndarray,
    expected: int,
    calibration: LayoutCalibration,
) -> Tuple[Optional[RowGrid], List[Anchor]]:
    peak_x, line = anchor_column(anchors)
    if peak_x is None or not line:
        return None, []

    ys = [a.center.y for a in line]
    anchor_x = float(np.median([a.center.x for a in line]))
    pitch = estimate_pitch(ys, calibration.default_pitch)
    rows = interpolate_rows(ys, pitch)
    rows = backfill_leading(rows, pitch, anchor_x, binary, expected, calibration)
    rows = pad_trailing(rows, pitch, expected)
    return RowGrid(rows=tuple(rows), pitch=pitch, anchor_x=anchor_x, detected=len(line)), line


def reconstruct_band(
    gray: np.ndarray,
    expected: int,
    calibration: LayoutCalibration,
) -> Tuple[np.ndarray, Optional[RowGrid], List[Anchor]]:
    """Binarize one band and rebuild its row grid. Grid is None when no anchor was found."""
    binary = binarize_band(gray, calibration.block_size)
    anchors = find_anchors(binary, calibration)
    grid, line = reconstruct_grid(anchors, binary, expected, calibration)
    if grid is None:
        logger.warning("[OMR] No row anchors found in band")
    else:
        logger.info(
            "[OMR] Band grid: %d anchors, pitch=%.1fpx, anchor_x=%.1f",
            grid.detected,
            grid.pitch,
            grid.anchor_x,
        )
    return binary, grid, line
