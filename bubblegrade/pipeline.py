from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import base64
import logging

import cv2
import numpy as np

from .calibration import calibration_for
from .corners import locate_corners, order_points
from .errors import OMRError, ProcessingError
from .grid import reconstruct_band
from .marks import classify_bubbles, resolve_answers
from .preprocess import ImageInput, load_image, preprocess_image, to_gray
from .router import merge_answers, plan_bands
from .runtime import EngineContext, default_context
from .sampler import sample_bubbles
from .types import (
    BandSheet,
    Bubble,
    CanonicalSheet,
    ColumnResult,
    CornerPoints,
    GradingResult,
    SourceType,
)
from .warp import rectify

logger = logging.getLogger(__name__)

CornersInput = Union[CornerPoints, Sequence[Sequence[float]]]


def _check_items(total_items: int) -> int:
    if isinstance(total_items, bool) or not isinstance(total_items, (int, np.integer)) or total_items < 1:
        raise ValueError("total_items must be a positive integer")
    return int(total_items)


def parse_corners(corners: CornersInput) -> CornerPoints:
    """Caller-supplied corners in original-image coordinates, in any order."""
    if isinstance(corners, CornerPoints):
        points = corners.as_array()
    else:
        points = np.array(corners, dtype="float32")
    if points.shape != (4, 2):
        raise ValueError("corners must be four [x, y] points")
    ordered = CornerPoints.from_array(order_points(points))
    if not ordered.is_convex():
        raise ValueError("corners must form a convex quadrilateral")
    return ordered


def build_sheet(canonical_gray: np.ndarray, total_items: int) -> CanonicalSheet:
    """Split a canonical image into bands and reconstruct each band's row grid."""
    total_items = _check_items(total_items)
    calibration = calibration_for(total_items)
    width = int(canonical_gray.shape[1])
    bands: List[BandSheet] = []
    for plan in plan_bands(total_items, width):
        band_gray = canonical_gray[:, plan.x0 : plan.x1]
        binary, grid, anchors = reconstruct_band(band_gray, plan.count, calibration)
        bands.append(
            BandSheet(
                index=plan.index,
                x0=plan.x0,
                x1=plan.x1,
                first_item=plan.first_item,
                count=plan.count,
                binary=binary,
                grid=grid,
                anchors=anchors,
            )
        )
    return CanonicalSheet(gray=canonical_gray, total_items=total_items, bands=bands)


async def _grade_band(
    band: BandSheet,
    sheet: CanonicalSheet,
    context: EngineContext,
    dx: float,
    dy: float,
    debug: bool,
) -> ColumnResult:
    snapshot = np.ascontiguousarray(sheet.gray[:, band.x0 : band.x1]) if debug else None
    if band.grid is None:
        return ColumnResult(answers=[""] * band.count, snapshot=snapshot)

    bubbles = sample_bubbles(
        band.grid,
        first_item=band.first_item,
        band_offset=band.x0,
        band_width=band.x1 - band.x0,
        height=sheet.height,
        dx=dx,
        dy=dy,
    )
    await classify_bubbles(bubbles, band.binary, sheet.gray, context.classifier, context.classifier_timeout)
    answers = resolve_answers(bubbles, band.first_item, band.count)
    return ColumnResult(answers=answers, bubbles=bubbles, anchors=list(band.anchors), snapshot=snapshot)


def _row_certainty(row: Sequence[Bubble], answer: str) -> float:
    if not row:
        return 0.0
    if answer:
        winner = next(b for b in row if b.option == answer)
        return float(min(1.0, max(winner.marked_probability, winner.fill)))
    strongest = max(max(b.fill, b.marked_probability) for b in row)
    return float(max(0.0, 1.0 - strongest))


def compute_confidence(answers: Sequence[str], bubbles: Sequence[Bubble]) -> float:
    """
    Mean per-item certainty. Items of a band without anchors count as zero, so
    a total detection failure reports 0.
    """
    if not answers:
        return 0.0
    rows: Dict[int, List[Bubble]] = {}
    for bubble in bubbles:
        rows.setdefault(bubble.item, []).append(bubble)
    scores = [_row_certainty(rows.get(i + 1, []), answer) for i, answer in enumerate(answers)]
    return float(np.mean(scores))


def _encode(image: np.ndarray, ext: str, params: Optional[List[int]] = None) -> str:
    ok, encoded = cv2.imencode(ext, image, params or [])
    if not ok:
        raise ProcessingError(f"encode_failed: {ext}")
    return base64.b64encode(encoded.tobytes()).decode("ascii")


def _draw_overlay(sheet: CanonicalSheet, columns: Sequence[ColumnResult], answers: Sequence[str]) -> np.ndarray:
    overlay = cv2.cvtColor(sheet.gray, cv2.COLOR_GRAY2BGR)
    for band in sheet.bands:
        cv2.line(overlay, (band.x0, 0), (band.x0, sheet.height - 1), (200, 200, 200), 1)
    for band, column in zip(sheet.bands, columns):
        for anchor in column.anchors:
            # Anchors are in band coordinates
            center = (int(anchor.center.x + band.x0), int(anchor.center.y))
            cv2.circle(overlay, center, max(3, int(anchor.radius)), (255, 0, 0), 2)
        for bubble in column.bubbles:
            x, y, w, h = bubble.rect
            if bubble.marked and answers[bubble.item - 1] == bubble.option:
                color = (0, 255, 0)
            elif bubble.marked:
                color = (0, 255, 255)
            else:
                color = (0, 0, 255)
            cv2.rectangle(overlay, (x, y), (x + w, y + h), color, 1 if not bubble.marked else 2)
    return overlay


def _debug_payload(
    sheet: CanonicalSheet,
    columns: Sequence[ColumnResult],
    answers: Sequence[str],
    jpeg_quality: int,
) -> Dict[str, Any]:
    bands = []
    for band, column in zip(sheet.bands, columns):
        grid = band.grid
        bands.append(
            {
                "index": band.index,
                "x0": band.x0,
                "x1": band.x1,
                "firstItem": band.first_item,
                "count": band.count,
                "pitch": round(grid.pitch, 2) if grid else None,
                "anchorX": round(grid.anchor_x + band.x0, 2) if grid else None,
                "rows": [round(y, 1) for y in grid.rows] if grid else [],
                "anchors": [{**a.to_dict(), "x": round(a.center.x + band.x0, 2)} for a in column.anchors],
                "snapshotImage": _encode(column.snapshot, ".png") if column.snapshot is not None else None,
            }
        )
    overlay = _draw_overlay(sheet, columns, answers)
    return {
        "bands": bands,
        "bubbles": [b.to_dict() for column in columns for b in column.bubbles],
        "canonicalImage": _encode(sheet.gray, ".png"),
        "overlayImage": _encode(overlay, ".jpg", [int(cv2.IMWRITE_JPEG_QUALITY), jpeg_quality]),
    }


async def grade_canonical(
    sheet: CanonicalSheet,
    context: EngineContext,
    dx: float = 0.0,
    dy: float = 0.0,
    debug: bool = False,
) -> GradingResult:
    """Bubble sampling and mark classification over an already rectified sheet."""
    columns: List[ColumnResult] = []
    for band in sheet.bands:
        columns.append(await _grade_band(band, sheet, context, dx, dy, debug))

    answers = merge_answers([c.answers for c in columns], sheet.total_items)
    bubbles = [b for c in columns for b in c.bubbles]
    warnings: List[str] = []
    if any(band.grid is None for band in sheet.bands):
        warnings.append("band_anchors_missing")
    marked_count = sum(1 for a in answers if a)
    if marked_count == 0:
        warnings.append("no_marks_detected")
    marked_per_item: Dict[int, int] = {}
    for bubble in bubbles:
        if bubble.marked:
            marked_per_item[bubble.item] = marked_per_item.get(bubble.item, 0) + 1
    if any(count > 1 for count in marked_per_item.values()):
        warnings.append("multiple_marks")

    result = GradingResult(
        answers=answers,
        confidence=compute_confidence(answers, bubbles),
        warnings=warnings,
        meta={
            "canonicalWidth": sheet.width,
            "canonicalHeight": sheet.height,
            "bandPitch": [round(b.grid.pitch, 2) if b.grid else None for b in sheet.bands],
            "markedCount": marked_count,
            "offset": {"dx": dx, "dy": dy},
        },
        sheet=sheet,
    )
    if debug:
        result.debug = _debug_payload(sheet, columns, answers, context.debug_jpeg_quality)
    return result


async def grade_sheet(
    image: ImageInput,
    total_items: int,
    source: Union[SourceType, str] = SourceType.UPLOAD,
    corners: Optional[CornersInput] = None,
    offset: Tuple[float, float] = (0.0, 0.0),
    debug: bool = False,
    context: Optional[EngineContext] = None,
) -> GradingResult:
    """
    Grade one answer sheet photo or scan.

    The returned answers always hold exactly ``total_items`` entries; detection
    misses show up as blank answers and ``warnings``. Raises ImageReadError when
    the input cannot be decoded and ProcessingError when OpenCV fails.
    """
    total_items = _check_items(total_items)
    manual = parse_corners(corners) if corners is not None else None
    context = context or default_context()
    context.runtime.initialize()

    try:
        prepared = preprocess_image(image, source)
        warnings: List[str] = []
        if manual is not None:
            corner_points, corner_mode = manual, "manual"
        else:
            detection = locate_corners(prepared)
            corner_points, corner_mode = detection.corners, detection.strategy
            if not detection.found:
                warnings.append("markers_not_found")

        canonical = rectify(to_gray(prepared.original), corner_points)
        sheet = build_sheet(canonical, total_items)
        dx, dy = offset
        result = await grade_canonical(sheet, context, float(dx), float(dy), debug)
    except OMRError:
        raise
    except cv2.error as exc:
        raise ProcessingError(f"vision_processing_failed: {exc}") from exc

    result.warnings = warnings + result.warnings
    result.meta.update(
        {
            "source": prepared.source.value,
            "originalWidth": prepared.original_width,
            "originalHeight": prepared.original_height,
            "cornerMode": corner_mode,
            "cornerPoints": corner_points.to_list(),
        }
    )
    logger.info(
        "[OMR] Graded %d items: %d marked, confidence %.3f, warnings=%s",
        total_items,
        result.meta["markedCount"],
        result.confidence,
        result.warnings,
    )
    return result


async def nudge_sheet(
    sheet: CanonicalSheet,
    dx: float,
    dy: float,
    context: Optional[EngineContext] = None,
    debug: bool = False,
) -> GradingResult:
    """
    Re-grade a cached canonical sheet with every sampling rectangle shifted by
    (dx, dy). The offset is absolute: repeated calls do not accumulate.
    """
    context = context or default_context()
    try:
        return await grade_canonical(sheet, context, float(dx), float(dy), debug)
    except cv2.error as exc:
        raise ProcessingError(f"vision_processing_failed: {exc}") from exc


async def nudge_image(
    canonical_image: ImageInput,
    total_items: int,
    dx: float,
    dy: float,
    context: Optional[EngineContext] = None,
    debug: bool = False,
) -> GradingResult:
    """Nudge from a canonical snapshot (e.g. the debug ``canonicalImage``) instead of a cached sheet."""
    total_items = _check_items(total_items)
    context = context or default_context()
    context.runtime.initialize()
    try:
        gray = to_gray(load_image(canonical_image))
        sheet = build_sheet(gray, total_items)
    except cv2.error as exc:
        raise ProcessingError(f"vision_processing_failed: {exc}") from exc
    return await nudge_sheet(sheet, dx, dy, context, debug)
