from __future__ import annotations

from typing import Dict

from .types import LayoutCalibration


# ═══════════════════════════════════════════════════════════════════════════════
# SHEET TEMPLATE
# Physical contract of the printed 4-option answer sheet (A4, millimetres).
# Row anchors are 3mm squares printed 1.5mm left of each item number; the
# canonical image spans the centres of the four corner fiducials.
# ═══════════════════════════════════════════════════════════════════════════════

ROW_HEIGHT_MM = 7.6
ANCHOR_TO_FIRST_OPTION_MM = 13.0
OPTION_SPACING_MM = 9.0
BUBBLE_RADIUS_MM = 2.6
SAMPLE_RADIUS_FACTOR = 0.9

CANONICAL_WIDTH = 1000

MIN_PITCH_PX = 25.0
MAX_PITCH_PX = 120.0

ANCHOR_BIN_PX = 10
ANCHOR_MIN_BIN_HITS = 3
ANCHOR_X_TOLERANCE_PX = 25.0

MARKED_PROBABILITY = 0.60
FILL_OVERRIDE = 0.45


# Everything is tuned for the 1000px canonical width. The header block (name,
# date, score boxes, instructions) ends above y≈300 on every layout.
CALIBRATIONS: Dict[int, LayoutCalibration] = {
    20: LayoutCalibration(
        items=20,
        min_y_margin=300,
        fill_threshold=0.45,
        aspect_min=0.7,
        aspect_max=1.4,
        block_size=51,
    ),
    50: LayoutCalibration(
        items=50,
        min_y_margin=300,
        fill_threshold=0.45,
        aspect_min=0.7,
        aspect_max=1.4,
        block_size=51,
    ),
    # Three-column sheets are printed denser; allow slightly squashed anchors.
    100: LayoutCalibration(
        items=100,
        min_y_margin=290,
        fill_threshold=0.5,
        aspect_min=0.65,
        aspect_max=1.5,
        block_size=41,
    ),
}

DEFAULT_CALIBRATION_ITEMS = 50


def calibration_for(items: int) -> LayoutCalibration:
    return CALIBRATIONS.get(items, CALIBRATIONS[DEFAULT_CALIBRATION_ITEMS])


def px_per_mm(pitch: float) -> float:
    """Scale recovered from the measured row pitch rather than a fixed DPI."""
    return float(pitch) / ROW_HEIGHT_MM
