from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple
import logging

import cv2
import numpy as np

from .preprocess import PreparedImage
from .types import CornerPoints

logger = logging.getLogger(__name__)

# Marker candidates relative to the processed image area. A corner fiducial on
# the printed sheet is 10mm, roughly 0.16% of an A4 page; bubbles and row
# anchors fall below the lower bound.
MARKER_MIN_AREA_RATIO = 0.0008
MARKER_MAX_AREA_RATIO = 0.01
MARKER_MIN_ASPECT = 0.7
MARKER_MAX_ASPECT = 1.3
# Each printed edge adds two contour levels after dilation: a solid square
# sits at depth 1, a hollow frame at 3, black-white-black at 5.
FIDUCIAL_MIN_DEPTH = 4
DUPLICATE_DISTANCE_PX = 10.0


@dataclass(frozen=True)
class MarkerCandidate:
    center: Tuple[float, float]
    area: float
    depth: int

    @property
    def is_fiducial(self) -> bool:
        return self.depth >= FIDUCIAL_MIN_DEPTH


@dataclass
class CornerSearch:
    """Detection state shared by the strategies for one processed bitmap."""
    gray: np.ndarray
    candidates: List[MarkerCandidate]


Strategy = Callable[[CornerSearch], Optional[np.ndarray]]


def order_points(points: np.ndarray) -> np.ndarray:
    rect = np.zeros((4, 2), dtype="float32")
    s = points.sum(axis=1)
    rect[0] = points[np.argmin(s)]
    rect[2] = points[np.argmax(s)]
    diff = points[:, 0] - points[:, 1]
    rect[1] = points[np.argmax(diff)]
    rect[3] = points[np.argmin(diff)]
    return rect


def _child_depth(hierarchy: np.ndarray, index: int) -> int:
    depth = 0
    child = hierarchy[index][2]
    while child != -1:
        depth += 1
        child = hierarchy[child][2]
    return depth


def find_marker_candidates(gray: np.ndarray) -> List[MarkerCandidate]:
    """
    Canny -> dilate -> full contour tree. Square-ish 4-vertex contours in the
    marker size band become candidates; nesting depth separates printed
    black/white/black fiducials from solid blobs and text.
    """
    height, width = gray.shape[:2]
    image_area = float(width * height)
    min_area = image_area * MARKER_MIN_AREA_RATIO
    max_area = image_area * MARKER_MAX_AREA_RATIO

    blurred = cv2.GaussianBlur(gray, (5, 5), 0)
    edged = cv2.Canny(blurred, 50, 150)
    edged = cv2.dilate(edged, np.ones((3, 3), np.uint8), iterations=1)

    contours, hierarchy = cv2.findContours(edged, cv2.RETR_TREE, cv2.CHAIN_APPROX_SIMPLE)
    if hierarchy is None or not contours:
        return []
    tree = hierarchy[0]

    candidates: List[MarkerCandidate] = []
    for index, contour in enumerate(contours):
        x, y, w, h = cv2.boundingRect(contour)
        box_area = float(w * h)
        if box_area < min_area or box_area > max_area:
            continue
        aspect = w / float(h)
        if aspect < MARKER_MIN_ASPECT or aspect > MARKER_MAX_ASPECT:
            continue
        perimeter = cv2.arcLength(contour, True)
        approx = cv2.approxPolyDP(contour, 0.04 * perimeter, True)
        if len(approx) != 4 or not cv2.isContourConvex(approx):
            continue

        center = (x + w / 2.0, y + h / 2.0)
        depth = _child_depth(tree, index)
        duplicate = next(
            (
                i
                for i, c in enumerate(candidates)
                if np.hypot(c.center[0] - center[0], c.center[1] - center[1]) < DUPLICATE_DISTANCE_PX
            ),
            None,
        )
        if duplicate is not None:
            # Nested edge bands of the same marker; keep the outermost
            if box_area > candidates[duplicate].area:
                candidates[duplicate] = MarkerCandidate(center, box_area, max(depth, candidates[duplicate].depth))
            continue
        candidates.append(MarkerCandidate(center, box_area, depth))

    return candidates


def _extreme_corners(points: Sequence[Tuple[float, float]]) -> Optional[np.ndarray]:
    if len(points) < 4:
        return None
    corners = order_points(np.array(points, dtype="float32"))
    if len({(round(float(x), 1), round(float(y), 1)) for x, y in corners}) < 4:
        return None
    return corners


def fiducial_strategy(search: CornerSearch) -> Optional[np.ndarray]:
    return _extreme_corners([c.center for c in search.candidates if c.is_fiducial])


def marker_strategy(search: CornerSearch) -> Optional[np.ndarray]:
    return _extreme_corners([c.center for c in search.candidates])


# Otsu first, then fixed cut-offs for dark squares on a grey or noisy page
_SQUARE_THRESHOLDS: List[Callable[[np.ndarray], np.ndarray]] = [
    lambda r: cv2.threshold(r, 0, 255, cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU)[1],
    lambda r: cv2.threshold(r, 100, 255, cv2.THRESH_BINARY_INV)[1],
    lambda r: cv2.threshold(r, 60, 255, cv2.THRESH_BINARY_INV)[1],
]


def _solid_square_score(contour: np.ndarray, region_area: float) -> float:
    """area * solidity for a filled, square-ish blob; 0 when it does not qualify."""
    area = cv2.contourArea(contour)
    if not region_area * 0.005 <= area <= region_area * 0.20:
        return 0.0
    _, _, w, h = cv2.boundingRect(contour)
    if w < 5 or h < 5 or not 0.6 <= w / float(h) <= 1.6:
        return 0.0
    hull_area = cv2.contourArea(cv2.convexHull(contour))
    if hull_area == 0 or area / hull_area < 0.7:
        return 0.0
    return area * (area / hull_area)


def _find_black_square_in_region(gray: np.ndarray, x1: int, y1: int, x2: int, y2: int) -> Optional[Tuple[float, float]]:
    """Centre of the most solid, largest dark square inside the region."""
    region = gray[y1:y2, x1:x2]
    if region.size == 0:
        return None

    region_area = float((x2 - x1) * (y2 - y1))
    best: Optional[Tuple[float, float]] = None
    best_score = 0.0
    for threshold in _SQUARE_THRESHOLDS:
        contours, _ = cv2.findContours(threshold(region), cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        for contour in contours:
            score = _solid_square_score(contour, region_area)
            if score > best_score:
                x, y, w, h = cv2.boundingRect(contour)
                best_score = score
                best = (x1 + x + w / 2.0, y1 + y + h / 2.0)
    return best


def quadrant_strategy(search: CornerSearch) -> Optional[np.ndarray]:
    """Search each 25% corner region of the sheet for a solid black square."""
    height, width = search.gray.shape[:2]
    cw = int(width * 0.25)
    ch = int(height * 0.25)
    regions = [
        (0, 0, cw, ch),
        (width - cw, 0, width, ch),
        (width - cw, height - ch, width, height),
        (0, height - ch, cw, height),
    ]
    found = [_find_black_square_in_region(search.gray, *region) for region in regions]
    if any(point is None for point in found):
        return None
    return _extreme_corners(found)


def document_strategy(search: CornerSearch) -> Optional[np.ndarray]:
    """Largest 4-vertex outline covering at least a fifth of the frame."""
    blurred = cv2.GaussianBlur(search.gray, (5, 5), 0)
    height, width = search.gray.shape[:2]
    min_area = float(width * height) * 0.20

    for t1, t2 in ((60, 180), (30, 120)):
        edged = cv2.Canny(blurred, t1, t2)
        edged = cv2.dilate(edged, None, iterations=2)
        edged = cv2.erode(edged, None, iterations=1)
        contours, _ = cv2.findContours(edged, cv2.RETR_LIST, cv2.CHAIN_APPROX_SIMPLE)
        for contour in sorted(contours, key=cv2.contourArea, reverse=True)[:12]:
            if cv2.contourArea(contour) < min_area:
                break
            perimeter = cv2.arcLength(contour, True)
            for eps in (0.02, 0.03, 0.04):
                approx = cv2.approxPolyDP(contour, eps * perimeter, True)
                if len(approx) == 4:
                    return order_points(approx.reshape(4, 2).astype("float32"))
    return None


CORNER_STRATEGIES: List[Tuple[str, Strategy]] = [
    ("fiducials", fiducial_strategy),
    ("markers", marker_strategy),
    ("quadrants", quadrant_strategy),
    ("document", document_strategy),
]


@dataclass(frozen=True)
class CornerDetection:
    corners: CornerPoints
    strategy: str

    @property
    def found(self) -> bool:
        return self.strategy != "bounds"


def locate_corners(
    prepared: PreparedImage,
    strategies: Optional[Sequence[Tuple[str, Strategy]]] = None,
) -> CornerDetection:
    """
    Find the sheet's registration corners in original-image coordinates.
    Walks the strategy list in order and never raises; the last resort is the
    image's own bounding rectangle.
    """
    search = CornerSearch(gray=prepared.gray, candidates=find_marker_candidates(prepared.gray))
    fiducials = sum(1 for c in search.candidates if c.is_fiducial)
    logger.info("[OMR] Marker candidates: %d (fiducials: %d)", len(search.candidates), fiducials)

    for name, strategy in strategies or CORNER_STRATEGIES:
        corners = strategy(search)
        if corners is None:
            logger.debug("[OMR] Corner strategy %s found nothing", name)
            continue
        points = CornerPoints.from_array(corners).scaled(prepared.scale_to_original)
        if not points.is_convex():
            logger.info("[OMR] Corner strategy %s gave a non-convex quad, skipping", name)
            continue
        logger.info("[OMR] Corners found by %s: %s", name, points.to_list())
        return CornerDetection(points, name)

    logger.warning("[OMR] No corners detected, using full image bounds")
    return CornerDetection(
        CornerPoints.from_bounds(prepared.original_width, prepared.original_height),
        "bounds",
    )
