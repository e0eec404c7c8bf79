import struct

import cv2
import numpy as np
import pytest

from bubblegrade.errors import ImageReadError
from bubblegrade.preprocess import (
    _read_exif_orientation,
    apply_exif_orientation,
    decode_image,
    load_image,
    preprocess_image,
)
from bubblegrade.types import SourceType

from .conftest import encode_png


def _exif_segment(orientation: int) -> bytes:
    tiff = b"II" + struct.pack("<HI", 0x2A, 8)
    tiff += struct.pack("<H", 1)
    tiff += struct.pack("<HHIHH", 0x0112, 3, 1, orientation, 0)
    tiff += struct.pack("<I", 0)
    payload = b"Exif\x00\x00" + tiff
    return b"\xFF\xE1" + struct.pack(">H", len(payload) + 2) + payload


def _jpeg_with_orientation(image: np.ndarray, orientation: int) -> bytes:
    ok, buffer = cv2.imencode(".jpg", image)
    assert ok
    data = buffer.tobytes()
    return data[:2] + _exif_segment(orientation) + data[2:]


class TestExif:
    def test_reads_orientation_tag(self):
        data = b"\xFF\xD8" + _exif_segment(6) + b"\xFF\xD9"
        assert _read_exif_orientation(data) == 6

    def test_non_jpeg_has_no_orientation(self):
        assert _read_exif_orientation(b"\x89PNG\r\n\x1a\n") is None

    def test_rotation_swaps_dimensions(self):
        image = np.zeros((20, 40), dtype=np.uint8)
        assert apply_exif_orientation(image, 6).shape == (40, 20)
        assert apply_exif_orientation(image, 3).shape == (20, 40)
        assert apply_exif_orientation(image, None) is image

    def test_decode_applies_orientation_once(self):
        image = np.full((20, 40, 3), 255, dtype=np.uint8)
        decoded = decode_image(_jpeg_with_orientation(image, 6))
        assert decoded.shape[:2] == (40, 20)


class TestLoadImage:
    def test_png_bytes(self):
        image = np.full((30, 50, 3), 200, dtype=np.uint8)
        assert load_image(encode_png(image)).shape == (30, 50, 3)

    def test_invalid_bytes(self):
        with pytest.raises(ImageReadError):
            load_image(b"definitely not an image")

    def test_invalid_bytes_is_a_value_error(self):
        with pytest.raises(ValueError):
            load_image(b"\x00\x01\x02")

    def test_empty_bytes(self):
        with pytest.raises(ImageReadError):
            load_image(b"")

    def test_missing_file(self, tmp_path):
        with pytest.raises(ImageReadError):
            load_image(tmp_path / "missing.png")

    def test_file_path(self, tmp_path):
        path = tmp_path / "sheet.png"
        path.write_bytes(encode_png(np.zeros((10, 12), dtype=np.uint8)))
        assert load_image(str(path)).shape[:2] == (10, 12)

    def test_float_buffer_is_converted(self):
        image = np.full((5, 5), 300.0)
        loaded = load_image(image)
        assert loaded.dtype == np.uint8
        assert int(loaded.max()) == 255

    def test_rejects_empty_buffer(self):
        with pytest.raises(ImageReadError):
            load_image(np.zeros((0, 0), dtype=np.uint8))


class TestProfiles:
    @pytest.mark.parametrize(
        "source, width",
        [(SourceType.CAMERA, 1000), (SourceType.UPLOAD, 1200), ("camera", 1000)],
    )
    def test_target_width(self, sheet_15, source, width):
        prepared = preprocess_image(sheet_15, source)
        assert prepared.gray.ndim == 2
        assert prepared.gray.shape[1] == width
        assert prepared.gray.dtype == np.uint8

    def test_original_dimensions_are_kept(self, sheet_15):
        prepared = preprocess_image(sheet_15, SourceType.UPLOAD)
        height, width = sheet_15.shape[:2]
        assert (prepared.original_width, prepared.original_height) == (width, height)
        assert prepared.scale_to_original == pytest.approx(width / 1200.0)

    def test_unknown_source_type(self, sheet_15):
        with pytest.raises(ValueError):
            preprocess_image(sheet_15, "fax")
