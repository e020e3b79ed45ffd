"""
Tests for image preparation helpers.
"""

import io
from unittest.mock import MagicMock, patch

from PIL import Image

import photo_filter
from photo_filter import check_photo, extract_gps, format_coordinates, normalize_image, to_hd_jpeg
from tests.conftest import make_image


def fake_open(gps):
    img = MagicMock()
    img.getexif.return_value.get_ifd.return_value = gps
    ctx = MagicMock()
    ctx.__enter__.return_value = img
    return ctx


class TestExtractGps:
    def test_no_exif(self):
        assert extract_gps(make_image()) is None

    def test_garbage_bytes(self):
        assert extract_gps(b"not an image") is None

    def test_reads_dms_with_hemispheres(self):
        gps = {1: "N", 2: (1.0, 21.0, 0.0), 3: "E", 4: (103.0, 49.0, 12.0)}
        with patch.object(photo_filter.Image, "open", return_value=fake_open(gps)):
            lat, lng = extract_gps(b"...")
        assert round(lat, 4) == 1.35
        assert round(lng, 4) == 103.82

    def test_southern_western(self):
        gps = {1: "S", 2: (33.0, 52.0, 0.0), 3: "W", 4: (70.0, 30.0, 0.0)}
        with patch.object(photo_filter.Image, "open", return_value=fake_open(gps)):
            lat, lng = extract_gps(b"...")
        assert lat < 0 and lng < 0

    def test_zero_zero_is_ignored(self):
        gps = {1: "N", 2: (0.0, 0.0, 0.0), 3: "E", 4: (0.0, 0.0, 0.0)}
        with patch.object(photo_filter.Image, "open", return_value=fake_open(gps)):
            assert extract_gps(b"...") is None

    def test_format_coordinates(self):
        assert format_coordinates(1.352083, 103.819836) == "1.3521, 103.8198"


class TestCheckPhoto:
    def test_accepts_jpeg_and_png(self):
        assert check_photo(make_image()) is None
        assert check_photo(make_image(fmt="PNG")) is None

    def test_rejects_unreadable(self):
        assert check_photo(b"\x00\x01garbage") == photo_filter.UNREADABLE

    def test_rejects_unsupported_format(self):
        assert check_photo(make_image(fmt="BMP")) == photo_filter.UNSUPPORTED_FORMAT

    def test_rejects_extreme_proportions(self):
        assert check_photo(make_image(size=(700, 100))) == photo_filter.BAD_PROPORTIONS

    def test_rejects_large_file(self):
        with patch.object(photo_filter, "MAX_FILE_SIZE", 10):
            assert check_photo(make_image()) == photo_filter.FILE_TOO_LARGE


class TestTransforms:
    def test_normalize_to_rgb_png(self):
        out = normalize_image(make_image(fmt="PNG"))
        with Image.open(io.BytesIO(out)) as img:
            assert img.format == "PNG"
            assert img.mode == "RGB"
            assert img.size == (64, 48)

    def test_hd_jpeg(self):
        out = to_hd_jpeg(normalize_image(make_image()))
        with Image.open(io.BytesIO(out)) as img:
            assert img.format == "JPEG"
            assert img.size == (64, 48)
