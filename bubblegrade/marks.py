from __future__ import annotations

from typing import Dict, List, Optional, Sequence
import logging

import numpy as np

from .calibration import FILL_OVERRIDE, MARKED_PROBABILITY
from .classifier import MARKED, MarkClassifier, classify_batch
from .sampler import band_rect, fill_ratio
from .types import Bubble

logger = logging.getLogger(__name__)


def is_marked(label: str, probability: float, fill: float) -> bool:
    """
    Two-signal decision: a confident classifier, or pixel evidence strong
    enough to overrule an uncertain or miscalibrated model.
    """
    return (label == MARKED and probability > MARKED_PROBABILITY) or fill > FILL_OVERRIDE


def resolve_row(bubbles: Sequence[Bubble]) -> str:
    """Pick one option for a row; ties between marked bubbles go to the first seen."""
    winner: Optional[Bubble] = None
    for bubble in bubbles:
        if not bubble.marked:
            continue
        if winner is None or bubble.marked_probability > winner.marked_probability:
            winner = bubble
    return winner.option if winner else ""


def _crop(gray: np.ndarray, bubble: Bubble) -> np.ndarray:
    x, y, w, h = bubble.rect
    return gray[y : y + h, x : x + w]


async def classify_bubbles(
    bubbles: List[Bubble],
    binary: np.ndarray,
    gray: np.ndarray,
    classifier: MarkClassifier,
    timeout: Optional[float] = None,
) -> List[Bubble]:
    """
    Fill each bubble's pixel ratio (from the band binary) and classifier
    verdict (from the canonical gray crop), then its marked flag.
    """
    for bubble in bubbles:
        bubble.fill = fill_ratio(binary, band_rect(bubble))

    verdicts = await classify_batch(classifier, [_crop(gray, b) for b in bubbles], timeout)
    for bubble, (label, probability) in zip(bubbles, verdicts):
        bubble.label = label
        bubble.probability = probability
        bubble.marked = is_marked(label, probability, bubble.fill)
    return bubbles


def resolve_answers(bubbles: Sequence[Bubble], first_item: int, count: int) -> List[str]:
    rows: Dict[int, List[Bubble]] = {}
    for bubble in bubbles:
        rows.setdefault(bubble.item, []).append(bubble)
    answers = [resolve_row(rows.get(first_item + i, [])) for i in range(count)]
    multi = sum(1 for row in rows.values() if sum(1 for b in row if b.marked) > 1)
    if multi:
        logger.info("[OMR] %d rows had more than one marked bubble", multi)
    return answers
