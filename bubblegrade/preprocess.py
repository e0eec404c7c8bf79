from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union
import logging
import struct

import cv2
import numpy as np

from .errors import ImageReadError
from .types import SourceType

logger = logging.getLogger(__name__)

ImageInput = Union[bytes, bytearray, memoryview, np.ndarray, str, Path]

CAMERA_TARGET_WIDTH = 1000
UPLOAD_TARGET_WIDTH = 1200

SHARPEN_KERNEL = np.array(
    [
        [0, -1, 0],
        [-1, 5, -1],
        [0, -1, 0],
    ],
    dtype="float32",
)


@dataclass
class PreparedImage:
    gray: np.ndarray
    original: np.ndarray
    original_width: int
    original_height: int
    source: SourceType

    @property
    def scale_to_original(self) -> float:
        """Factor mapping processed-bitmap coordinates back to the original image."""
        return float(self.original_width) / float(self.gray.shape[1] or 1)


_JPEG_SOI = b"\xFF\xD8"
_EXIF_HEADER = b"Exif\x00\x00"
_ORIENTATION_TAG = 0x0112
_TIFF_SHORT = 3


def _read_exif_orientation(image_bytes: bytes) -> Optional[int]:
    """
    Walk the JPEG marker segments up to start-of-scan and return the EXIF
    orientation (1..8) from the first APP1 block, or None.
    """
    if len(image_bytes) < 4 or image_bytes[:2] != _JPEG_SOI:
        return None

    pos = 2
    while pos + 4 <= len(image_bytes) and image_bytes[pos] == 0xFF:
        marker = image_bytes[pos + 1]
        if marker in (0xDA, 0xD9):
            break
        (seg_len,) = struct.unpack_from(">H", image_bytes, pos + 2)
        body_start, body_end = pos + 4, pos + 2 + seg_len
        if seg_len < 2 or body_end > len(image_bytes):
            break
        if marker == 0xE1 and image_bytes[body_start : body_start + 6] == _EXIF_HEADER:
            return _orientation_from_tiff(image_bytes[body_start + 6 : body_end])
        pos = body_end
    return None


def _orientation_from_tiff(tiff: bytes) -> Optional[int]:
    prefix = {b"II": "<", b"MM": ">"}.get(tiff[:2])
    if prefix is None or len(tiff) < 8:
        return None
    magic, ifd0 = struct.unpack_from(prefix + "HI", tiff, 2)
    if magic != 0x2A or ifd0 + 2 > len(tiff):
        return None

    (entries,) = struct.unpack_from(prefix + "H", tiff, ifd0)
    for n in range(entries):
        offset = ifd0 + 2 + n * 12
        if offset + 12 > len(tiff):
            break
        tag, kind, count, value = struct.unpack_from(prefix + "HHIH", tiff, offset)
        if tag == _ORIENTATION_TAG:
            return value if kind == _TIFF_SHORT and count == 1 else None
    return None


_ORIENTATION_OPS = {
    2: lambda img: cv2.flip(img, 1),
    3: lambda img: cv2.rotate(img, cv2.ROTATE_180),
    4: lambda img: cv2.flip(img, 0),
    5: lambda img: cv2.rotate(cv2.flip(img, 1), cv2.ROTATE_90_COUNTERCLOCKWISE),
    6: lambda img: cv2.rotate(img, cv2.ROTATE_90_CLOCKWISE),
    7: lambda img: cv2.rotate(cv2.flip(img, 1), cv2.ROTATE_90_CLOCKWISE),
    8: lambda img: cv2.rotate(img, cv2.ROTATE_90_COUNTERCLOCKWISE),
}


def apply_exif_orientation(image: np.ndarray, orientation: Optional[int]) -> np.ndarray:
    op = _ORIENTATION_OPS.get(orientation or 1)
    return op(image) if op else image


def decode_image(image_bytes: bytes) -> np.ndarray:
    if not image_bytes:
        raise ImageReadError("empty_image_data")
    buffer = np.frombuffer(image_bytes, np.uint8)
    # Orientation is applied below from our own EXIF read, not by the decoder
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR | cv2.IMREAD_IGNORE_ORIENTATION)
    if image is None:
        raise ImageReadError("invalid_image_data")
    orientation = _read_exif_orientation(image_bytes)
    if orientation and orientation != 1:
        image = apply_exif_orientation(image, orientation)
        logger.info("[OMR] Applied EXIF orientation: %s", orientation)
    return image


def load_image(image: ImageInput) -> np.ndarray:
    """Turn any supported input into a BGR or single-channel uint8 array."""
    if isinstance(image, (str, Path)):
        path = Path(image)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise ImageReadError(f"cannot_read_file: {path}") from exc
        return decode_image(data)

    if isinstance(image, (bytes, bytearray, memoryview)):
        return decode_image(bytes(image))

    if isinstance(image, np.ndarray):
        if image.size == 0 or image.ndim not in (2, 3):
            raise ImageReadError("invalid_image_buffer")
        if image.ndim == 3 and image.shape[2] not in (1, 3, 4):
            raise ImageReadError("invalid_image_buffer")
        if image.dtype != np.uint8:
            image = np.clip(image, 0, 255).astype(np.uint8)
        return image

    raise ImageReadError(f"unsupported_image_type: {type(image).__name__}")


def to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    channels = image.shape[2]
    if channels == 1:
        return image[:, :, 0]
    if channels == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def resize_to_width(image: np.ndarray, target_width: int) -> np.ndarray:
    height, width = image.shape[:2]
    if width == 0 or width == target_width:
        return image
    scale = target_width / float(width)
    target_height = max(1, int(round(height * scale)))
    interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR
    return cv2.resize(image, (target_width, target_height), interpolation=interpolation)


def _camera_profile(image: np.ndarray) -> np.ndarray:
    resized = resize_to_width(image, CAMERA_TARGET_WIDTH)
    gray = to_gray(resized)
    # Edge-preserving smoothing; phone sensors are noisy and light is uneven
    smoothed = cv2.bilateralFilter(gray, 9, 75, 75)
    return cv2.normalize(smoothed, None, 0, 255, cv2.NORM_MINMAX)


def _upload_profile(image: np.ndarray) -> np.ndarray:
    resized = resize_to_width(image, UPLOAD_TARGET_WIDTH)
    gray = to_gray(resized)
    sharpened = cv2.filter2D(gray, cv2.CV_8U, SHARPEN_KERNEL)
    # Scanner banding shows up as slow brightness drift across the page
    clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
    return clahe.apply(sharpened)


_PROFILES = {
    SourceType.CAMERA: _camera_profile,
    SourceType.UPLOAD: _upload_profile,
}


def preprocess_image(image: ImageInput, source: Union[SourceType, str] = SourceType.UPLOAD) -> PreparedImage:
    source_type = SourceType(source)
    original = load_image(image)
    original_h, original_w = original.shape[:2]
    gray = _PROFILES[source_type](original)
    logger.info(
        "[OMR] Preprocessed %s image %dx%d -> %dx%d",
        source_type.value,
        original_w,
        original_h,
        gray.shape[1],
        gray.shape[0],
    )
    return PreparedImage(
        gray=gray,
        original=original,
        original_width=original_w,
        original_height=original_h,
        source=source_type,
    )
