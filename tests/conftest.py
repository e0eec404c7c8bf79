from __future__ import annotations

import math
from typing import List, Optional, Sequence

import cv2
import numpy as np
import pytest

from bubblegrade.classifier import MARKED, UNMARKED
from bubblegrade.runtime import EngineContext, VisionRuntime
from bubblegrade.types import OPTIONS

PAGE_W_MM = 210.0
PAGE_H_MM = 297.0
ITEMS_PER_COLUMN = 25
BLOCK_WIDTH_MM = 42.0
GRID_GAP_MM = 15.0
GRID_START_Y_MM = 80.0
ROW_HEIGHT_MM = 7.6


def expected_answers(total: int) -> List[str]:
    return ["" if i % 5 == 4 else OPTIONS[i % 4] for i in range(total)]


def render_sheet(
    answers: Sequence[str],
    px_per_mm: float = 6.0,
    fill_value: int = 40,
    items_per_column: int = ITEMS_PER_COLUMN,
) -> np.ndarray:
    """Draw the printed answer-sheet template as a BGR image."""

    def mm(v: float) -> int:
        return int(round(v * px_per_mm))

    width, height = mm(PAGE_W_MM), mm(PAGE_H_MM)
    sheet = np.full((height, width, 3), 255, dtype=np.uint8)

    for x, y in ((10, 10), (190, 10), (10, 277), (190, 277)):
        cv2.rectangle(sheet, (mm(x), mm(y)), (mm(x + 10), mm(y + 10)), (0, 0, 0), -1)
        cv2.rectangle(sheet, (mm(x + 2), mm(y + 2)), (mm(x + 8), mm(y + 8)), (255, 255, 255), -1)
        cv2.rectangle(sheet, (mm(x + 3.75), mm(y + 3.75)), (mm(x + 6.25), mm(y + 6.25)), (0, 0, 0), -1)

    # Name box in the header
    cv2.rectangle(sheet, (mm(15), mm(30)), (mm(145), mm(40)), (90, 90, 90), 1)

    total = len(answers)
    columns = math.ceil(total / items_per_column)
    grid_width = columns * BLOCK_WIDTH_MM + (columns - 1) * GRID_GAP_MM
    start_x = (PAGE_W_MM - grid_width) / 2.0

    for i, answer in enumerate(answers):
        column, row = divmod(i, items_per_column)
        x_base = start_x + column * (BLOCK_WIDTH_MM + GRID_GAP_MM)
        y_base = GRID_START_Y_MM + row * ROW_HEIGHT_MM
        cv2.rectangle(
            sheet,
            (mm(x_base - 4.5), mm(y_base - 2.8)),
            (mm(x_base - 1.5) - 1, mm(y_base + 0.2) - 1),
            (0, 0, 0),
            -1,
        )
        for k, option in enumerate(OPTIONS):
            center = (mm(x_base + 10 + k * 9), mm(y_base - 1))
            cv2.circle(sheet, center, mm(2.6), (0, 0, 0), 1)
            if answer == option:
                cv2.circle(sheet, center, mm(2.6), (fill_value,) * 3, -1)

    return sheet


def encode_png(image: np.ndarray) -> bytes:
    ok, buffer = cv2.imencode(".png", image)
    assert ok
    return buffer.tobytes()


class DarknessClassifier:
    """Deterministic stand-in for a learned model: dark crops are marked."""

    def __init__(self, probability: float = 0.9) -> None:
        self.probability = probability
        self.calls = 0

    async def classify(self, image: np.ndarray):
        self.calls += 1
        if image.size == 0:
            return UNMARKED, 0.0
        if float(image.mean()) < 128:
            return MARKED, self.probability
        return UNMARKED, self.probability


class FixedClassifier:
    def __init__(self, label: str, probability: float) -> None:
        self.label = label
        self.probability = probability

    async def classify(self, image: np.ndarray):
        return self.label, self.probability


@pytest.fixture
def classifier() -> DarknessClassifier:
    return DarknessClassifier()


@pytest.fixture
def context(classifier: DarknessClassifier) -> EngineContext:
    return EngineContext(runtime=VisionRuntime(), classifier=classifier, classifier_timeout=1.0)


@pytest.fixture
def sheet_15() -> np.ndarray:
    return render_sheet(expected_answers(15))


@pytest.fixture
def sheet_50() -> np.ndarray:
    return render_sheet(expected_answers(50))


def draw_band(
    rows: Sequence[Optional[float]],
    scale: float = 1.0,
    anchor_x: float = 60.0,
    width: int = 400,
    height: int = 1400,
) -> np.ndarray:
    """Gray band with a 16px anchor square per row; None skips the anchor."""
    band = np.full((int(height * scale), int(width * scale)), 255, dtype=np.uint8)
    half = int(round(8 * scale))
    for y in rows:
        if y is None:
            continue
        cx, cy = int(round(anchor_x * scale)), int(round(y * scale))
        cv2.rectangle(band, (cx - half, cy - half), (cx + half - 1, cy + half - 1), 0, -1)
    return band
