from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


Rect = Tuple[int, int, int, int]

OPTIONS: Tuple[str, ...] = ("A", "B", "C", "D")


class SourceType(str, Enum):
    CAMERA = "camera"
    UPLOAD = "upload"


@dataclass(frozen=True)
class Point:
    x: float
    y: float

    def scaled(self, factor: float) -> "Point":
        return Point(self.x * factor, self.y * factor)

    def to_dict(self) -> Dict[str, float]:
        return {"x": round(float(self.x), 2), "y": round(float(self.y), 2)}


@dataclass(frozen=True)
class CornerPoints:
    """
    Registration corners of the sheet in original-image coordinates.
    Order follows the warp destination: top-left, top-right, bottom-right, bottom-left.
    """
    tl: Point
    tr: Point
    br: Point
    bl: Point

    @classmethod
    def from_bounds(cls, width: int, height: int) -> "CornerPoints":
        right = float(max(0, width - 1))
        bottom = float(max(0, height - 1))
        return cls(Point(0.0, 0.0), Point(right, 0.0), Point(right, bottom), Point(0.0, bottom))

    @classmethod
    def from_array(cls, points: np.ndarray) -> "CornerPoints":
        pts = np.asarray(points, dtype="float32").reshape(4, 2)
        return cls(*(Point(float(x), float(y)) for x, y in pts))

    def as_array(self) -> np.ndarray:
        return np.array(
            [[p.x, p.y] for p in (self.tl, self.tr, self.br, self.bl)],
            dtype="float32",
        )

    def scaled(self, factor: float) -> "CornerPoints":
        return CornerPoints(*(p.scaled(factor) for p in (self.tl, self.tr, self.br, self.bl)))

    def is_convex(self) -> bool:
        pts = self.as_array().astype("float64")
        signs = []
        for i in range(4):
            a, b, c = pts[i], pts[(i + 1) % 4], pts[(i + 2) % 4]
            cross = (b[0] - a[0]) * (c[1] - b[1]) - (b[1] - a[1]) * (c[0] - b[0])
            if abs(cross) < 1e-6:
                return False
            signs.append(cross > 0)
        return all(signs) or not any(signs)

    def to_list(self) -> List[List[float]]:
        return [[round(p.x, 2), round(p.y, 2)] for p in (self.tl, self.tr, self.br, self.bl)]


@dataclass(frozen=True)
class LayoutCalibration:
    items: int
    min_y_margin: int
    fill_threshold: float
    aspect_min: float
    aspect_max: float
    block_size: int
    min_anchor_area: float = 60.0
    max_anchor_area: float = 450.0
    min_solidity: float = 0.78
    default_pitch: float = 50.0


@dataclass(frozen=True)
class Anchor:
    center: Point
    area: float
    radius: float

    def to_dict(self) -> Dict[str, Any]:
        return {**self.center.to_dict(), "area": round(self.area, 1), "radius": round(self.radius, 2)}


@dataclass(frozen=True)
class RowGrid:
    rows: Tuple[float, ...]
    pitch: float
    anchor_x: float
    detected: int

    def __len__(self) -> int:
        return len(self.rows)


@dataclass
class Bubble:
    rect: Rect
    option: str
    item: int
    fill: float = 0.0
    marked: bool = False
    band_offset: int = 0
    label: str = "unmarked"
    probability: float = 0.0

    @property
    def marked_probability(self) -> float:
        if self.label == "marked":
            return self.probability
        return 1.0 - self.probability if self.probability > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        x, y, w, h = self.rect
        return {
            "item": self.item,
            "option": self.option,
            "rect": {"x": x, "y": y, "w": w, "h": h},
            "fill": round(float(self.fill), 4),
            "marked": bool(self.marked),
            "label": self.label,
            "probability": round(float(self.probability), 4),
            "bandOffset": self.band_offset,
        }


@dataclass
class ColumnResult:
    answers: List[str]
    bubbles: List[Bubble] = field(default_factory=list)
    anchors: List[Anchor] = field(default_factory=list)
    snapshot: Optional[np.ndarray] = None


@dataclass
class BandSheet:
    """Per-band state kept on a canonical sheet so bubbles can be re-sampled."""
    index: int
    x0: int
    x1: int
    first_item: int
    count: int
    binary: np.ndarray
    grid: Optional[RowGrid]
    anchors: List[Anchor] = field(default_factory=list)


@dataclass
class CanonicalSheet:
    gray: np.ndarray
    total_items: int
    bands: List[BandSheet]

    @property
    def width(self) -> int:
        return int(self.gray.shape[1])

    @property
    def height(self) -> int:
        return int(self.gray.shape[0])


@dataclass
class GradingResult:
    answers: List[str]
    confidence: float
    debug: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)
    sheet: Optional[CanonicalSheet] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "answers": list(self.answers),
            "confidence": round(float(self.confidence), 4),
            "warnings": list(self.warnings),
            "meta": dict(self.meta),
        }
        if self.debug is not None:
            payload["debug"] = self.debug
        return payload
