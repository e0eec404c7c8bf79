from __future__ import annotations

from typing import List, Optional, Protocol, Sequence, Tuple
import asyncio
import logging
import threading

import cv2
import numpy as np

from .errors import ProcessingError

logger = logging.getLogger(__name__)

MARKED = "marked"
UNMARKED = "unmarked"

Verdict = Tuple[str, float]

FAILED_VERDICT: Verdict = (UNMARKED, 0.0)


class MarkClassifier(Protocol):
    async def classify(self, image: np.ndarray) -> Verdict:
        """Return (label, probability) for one grayscale bubble crop."""
        ...


class NullMarkClassifier:
    """Used when no model is configured; marks then rest on pixel evidence alone."""

    async def classify(self, image: np.ndarray) -> Verdict:
        return FAILED_VERDICT


class OnnxMarkClassifier:
    """
    Two-class (unmarked, marked) bubble classifier exported to ONNX and run
    through OpenCV's DNN module. Input is a single-channel square crop scaled
    to [0, 1].
    """

    labels: Tuple[str, str] = (UNMARKED, MARKED)

    def __init__(self, model_path: str, input_size: int = 32) -> None:
        try:
            self._net = cv2.dnn.readNetFromONNX(model_path)
        except cv2.error as exc:
            raise ProcessingError(f"classifier_load_failed: {model_path}") from exc
        self.input_size = input_size
        # cv2.dnn.Net is not safe for concurrent forward passes
        self._lock = threading.Lock()

    def _infer(self, image: np.ndarray) -> Verdict:
        blob = cv2.dnn.blobFromImage(
            image,
            scalefactor=1.0 / 255.0,
            size=(self.input_size, self.input_size),
        )
        with self._lock:
            self._net.setInput(blob)
            logits = self._net.forward().reshape(-1).astype("float64")
        exp = np.exp(logits - logits.max())
        probs = exp / exp.sum()
        best = int(np.argmax(probs))
        return self.labels[best], float(probs[best])

    async def classify(self, image: np.ndarray) -> Verdict:
        if image.size == 0:
            return FAILED_VERDICT
        return await asyncio.to_thread(self._infer, image)


async def _guarded(classifier: MarkClassifier, crop: np.ndarray, timeout: Optional[float]) -> Verdict:
    try:
        if timeout is None:
            label, probability = await classifier.classify(crop)
        else:
            label, probability = await asyncio.wait_for(classifier.classify(crop), timeout)
    except asyncio.TimeoutError:
        logger.warning("[OMR] Classifier timed out after %.2fs", timeout)
        return FAILED_VERDICT
    except Exception as exc:
        logger.warning("[OMR] Classifier failed: %s", exc)
        return FAILED_VERDICT
    return str(label), float(np.clip(probability, 0.0, 1.0))


async def classify_batch(
    classifier: MarkClassifier,
    crops: Sequence[np.ndarray],
    timeout: Optional[float] = None,
) -> List[Verdict]:
    """
    Submit every crop at once and wait for all of them. A failing or slow
    call only costs its own bubble, which comes back as unmarked with p=0.
    """
    if not crops:
        return []
    return list(await asyncio.gather(*(_guarded(classifier, crop, timeout) for crop in crops)))
