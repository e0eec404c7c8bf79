from __future__ import annotations

import logging

import cv2
import numpy as np

from .calibration import CANONICAL_WIDTH
from .types import CornerPoints

logger = logging.getLogger(__name__)


def canonical_size(corners: CornerPoints, target_width: int = CANONICAL_WIDTH) -> tuple[int, int]:
    tl, tr, br, bl = corners.as_array()
    width_a = np.linalg.norm(br - bl)
    width_b = np.linalg.norm(tr - tl)
    height_a = np.linalg.norm(tr - br)
    height_b = np.linalg.norm(tl - bl)
    max_width = max(float(width_a), float(width_b), 1.0)
    max_height = max(float(height_a), float(height_b), 1.0)
    target_height = max(1, int(round(target_width * max_height / max_width)))
    return target_width, target_height


def rectify(image: np.ndarray, corners: CornerPoints, target_width: int = CANONICAL_WIDTH) -> np.ndarray:
    """
    Warp the quadrilateral spanned by ``corners`` onto a top-down canvas of
    fixed width whose height keeps the measured aspect ratio.
    """
    width, height = canonical_size(corners, target_width)
    dst = np.array(
        [
            [0, 0],
            [width - 1, 0],
            [width - 1, height - 1],
            [0, height - 1],
        ],
        dtype="float32",
    )
    transform = cv2.getPerspectiveTransform(corners.as_array(), dst)
    warped = cv2.warpPerspective(
        image,
        transform,
        (width, height),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_REPLICATE,
    )
    logger.info("[OMR] Canonical sheet %dx%d", width, height)
    return warped
