from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional
import logging
import threading

import cv2

from .classifier import MarkClassifier, NullMarkClassifier, OnnxMarkClassifier
from .config import SETTINGS, Settings
from .errors import ProcessingError

logger = logging.getLogger(__name__)


class VisionRuntime:
    """
    Handle to the OpenCV runtime. Initialising it twice is a no-op; after that
    it is only read.
    """

    def __init__(self, threads: int = 0) -> None:
        self.threads = threads
        self.version: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self.version is not None

    def initialize(self) -> "VisionRuntime":
        with self._lock:
            if self.ready:
                return self
            try:
                cv2.setUseOptimized(True)
                if self.threads > 0:
                    cv2.setNumThreads(self.threads)
                self.version = cv2.__version__
            except cv2.error as exc:
                raise ProcessingError("vision_runtime_init_failed") from exc
            logger.info("[OMR] OpenCV %s ready (optimized=%s)", self.version, cv2.useOptimized())
        return self


@dataclass
class EngineContext:
    runtime: VisionRuntime
    classifier: MarkClassifier
    classifier_timeout: Optional[float] = None
    debug_jpeg_quality: int = 75
    settings: Optional[Settings] = field(default=None, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineContext":
        runtime = VisionRuntime(threads=settings.cv_threads).initialize()
        classifier: MarkClassifier
        if settings.classifier_model:
            classifier = OnnxMarkClassifier(settings.classifier_model, settings.classifier_input_size)
            logger.info("[OMR] Loaded mark classifier from %s", settings.classifier_model)
        else:
            classifier = NullMarkClassifier()
            logger.info("[OMR] No mark classifier configured, using fill ratio only")
        return cls(
            runtime=runtime,
            classifier=classifier,
            classifier_timeout=settings.classifier_timeout,
            debug_jpeg_quality=settings.debug_jpeg_quality,
            settings=settings,
        )


_default_context: Optional[EngineContext] = None
_default_lock = threading.Lock()


def default_context() -> EngineContext:
    """Process-wide context built from SETTINGS on first use."""
    global _default_context
    with _default_lock:
        if _default_context is None:
            _default_context = EngineContext.from_settings(SETTINGS)
        return _default_context
