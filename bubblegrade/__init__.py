from .errors import ImageReadError, OMRError, ProcessingError
from .pipeline import build_sheet, grade_sheet, nudge_image, nudge_sheet
from .runtime import EngineContext, VisionRuntime, default_context
from .types import CanonicalSheet, CornerPoints, GradingResult, Point, SourceType

__all__ = [
    "CanonicalSheet",
    "CornerPoints",
    "EngineContext",
    "GradingResult",
    "ImageReadError",
    "OMRError",
    "Point",
    "ProcessingError",
    "SourceType",
    "VisionRuntime",
    "build_sheet",
    "default_context",
    "grade_sheet",
    "nudge_image",
    "nudge_sheet",
]
