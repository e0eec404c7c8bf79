from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, List, Tuple

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .config import SETTINGS
from .errors import ImageReadError, ProcessingError
from .pipeline import grade_sheet, nudge_image, parse_corners
from .runtime import default_context
from .types import SourceType


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthResponse(BaseModel):
    status: str
    mode: str
    version: str
    timestamp: str


class GradeResponse(BaseModel):
    ok: bool
    result: dict


app = FastAPI(title="OMR Grading Service")


ManualCorners = Annotated[List[Tuple[float, float]], Field(min_length=4, max_length=4)]
_MANUAL_CORNERS = TypeAdapter(ManualCorners)


def _parse_manual_corners(value: str | None) -> tuple[list[list[float]] | None, bool]:
    """
    Returns (manual_corners, was_invalid) for a JSON ``[[x, y], ...]`` form
    field. A malformed or non-convex value is reported rather than rejected
    so grading can fall back to automatic corner detection.
    """
    if not value:
        return None, False
    try:
        points = _MANUAL_CORNERS.validate_json(value)
    except ValidationError:
        return None, True
    manual = [[x, y] for x, y in points]
    try:
        parse_corners(manual)
    except ValueError:
        return None, True
    return manual, False


def _parse_source(value: str | None) -> SourceType:
    try:
        return SourceType((value or SourceType.UPLOAD.value).strip().lower())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="invalid_source_type") from exc


def _check_total_items(value: int) -> int:
    if value < 1:
        raise HTTPException(status_code=400, detail="invalid_total_items")
    return value


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        mode=SETTINGS.mode,
        version=SETTINGS.version,
        timestamp=_now_iso()
    )


@app.get("/version")
def version() -> dict:
    return {
        "name": "OMR Grading Service",
        "version": SETTINGS.version,
        "mode": SETTINGS.mode,
        "timestamp": _now_iso()
    }


@app.post("/grade", response_model=GradeResponse)
async def grade(
    file: UploadFile = File(...),
    totalItems: int = Form(...),
    sourceType: str | None = Form(None),
    xOffset: float | None = Form(None),
    yOffset: float | None = Form(None),
    debug: bool | None = Form(None),
    corners: str | None = Form(None),
) -> GradeResponse:
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="empty_file")

    total_items = _check_total_items(totalItems)
    source = _parse_source(sourceType)
    manual_corners, corners_invalid = _parse_manual_corners(corners)

    try:
        result = await grade_sheet(
            content,
            total_items,
            source=source,
            corners=manual_corners,
            offset=(xOffset or 0.0, yOffset or 0.0),
            debug=bool(debug),
            context=default_context(),
        )
    except ImageReadError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ProcessingError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    payload = result.to_dict()
    if corners_invalid:
        payload["warnings"].append("invalid_manual_corners")

    return GradeResponse(ok=True, result=payload)


@app.post("/nudge", response_model=GradeResponse)
async def nudge(
    file: UploadFile = File(...),
    totalItems: int = Form(...),
    dx: float = Form(0.0),
    dy: float = Form(0.0),
    debug: bool | None = Form(None),
) -> GradeResponse:
    """Re-grade a canonical snapshot returned by /grade with debug enabled."""
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="empty_file")

    total_items = _check_total_items(totalItems)
    try:
        result = await nudge_image(content, total_items, dx, dy, context=default_context(), debug=bool(debug))
    except ImageReadError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ProcessingError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return GradeResponse(ok=True, result=result.to_dict())
