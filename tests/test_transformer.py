"""Tests for the resolution transformer."""

import io
from unittest.mock import patch

import pytest
from PIL import Image

from resize_pipeline.errors import TransformError, UnsupportedFormat
from resize_pipeline.resolutions import DEFAULT_RESOLUTIONS
from resize_pipeline.transformer import (
    format_size_label,
    read_dimensions,
    resize_cover,
    transform,
)

from conftest import make_image_bytes


def _decode(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


class TestTransform:
    @pytest.mark.parametrize("width,height", [(400, 300), (800, 200), (200, 800), (64, 64)])
    def test_every_resolution_has_exact_size(self, width, height):
        """Test each variant is exactly the configured box, whatever the aspect ratio."""
        data = make_image_bytes(width, height)
        results = transform(data)

        assert set(results) == set(DEFAULT_RESOLUTIONS) | {"original"}
        for name, (w, h) in DEFAULT_RESOLUTIONS.items():
            variant = results[name]
            assert (variant.width, variant.height) == (w, h)
            assert _decode(variant.data).size == (w, h)

    def test_original_keeps_native_dimensions_and_bytes(self, jpeg_bytes):
        """Test original is passed through untouched."""
        original = transform(jpeg_bytes)["original"]
        assert (original.width, original.height) == (400, 300)
        assert original.data == jpeg_bytes
        assert original.content_type == "image/jpeg"

    def test_cover_fit_crops_instead_of_letterboxing(self):
        """Test the box is filled edge to edge, cropped around the center."""
        img = Image.new("RGB", (400, 100), (255, 0, 0))
        img.paste((0, 0, 255), (200, 0, 400, 100))
        buf = io.BytesIO()
        img.save(buf, format="PNG")

        square = transform(buf.getvalue(), {"square": (100, 100)})["square"]
        out = _decode(square.data).convert("RGB")

        # Center crop spans the red/blue boundary; no black bars anywhere
        left = out.getpixel((5, 50))
        right = out.getpixel((95, 50))
        assert left[0] > 200 and left[2] < 50
        assert right[2] > 200 and right[0] < 50
        for corner in [(0, 0), (99, 0), (0, 99), (99, 99)]:
            assert sum(out.getpixel(corner)) > 200

    @pytest.mark.parametrize(
        "fmt,mode",
        [("JPEG", "RGB"), ("JPEG", "L"), ("PNG", "RGBA"), ("GIF", "P"), ("BMP", "RGB")],
    )
    def test_same_input_gives_same_variants(self, fmt, mode):
        """Test a redelivered image produces the same variant set as the first run."""
        data = make_image_bytes(320, 200, fmt=fmt, mode=mode)

        first = transform(data)
        second = transform(data)

        assert set(first) == set(second)
        for name in first:
            assert (first[name].width, first[name].height) == (second[name].width, second[name].height)
            assert first[name].format == second[name].format
            assert first[name].content_type == second[name].content_type
            assert _decode(first[name].data).size == _decode(second[name].data).size

    def test_custom_resolution_table(self, jpeg_bytes):
        """Test new resolutions are data, not code."""
        results = transform(jpeg_bytes, {"banner": (600, 200)})
        assert set(results) == {"banner", "original"}
        assert (results["banner"].width, results["banner"].height) == (600, 200)

    def test_png_stays_png(self):
        data = make_image_bytes(120, 80, fmt="PNG", mode="RGBA")
        variant = transform(data, {"tiny": (32, 32)})["tiny"]
        assert variant.format == "PNG"
        assert variant.content_type == "image/png"
        assert _decode(variant.data).mode == "RGBA"

    def test_gif_palette_image_stays_gif(self):
        data = make_image_bytes(120, 80, fmt="GIF", mode="P")
        variant = transform(data, {"tiny": (32, 32)})["tiny"]
        assert variant.format == "GIF"
        assert _decode(variant.data).size == (32, 32)

    def test_other_formats_fall_back_to_jpeg(self):
        """Test formats outside the passthrough set are re-encoded as JPEG."""
        data = make_image_bytes(120, 80, fmt="BMP")
        results = transform(data, {"tiny": (32, 32)})

        assert results["tiny"].format == "JPEG"
        assert results["tiny"].content_type == "image/jpeg"
        assert _decode(results["tiny"].data).format == "JPEG"
        assert results["original"].format == "BMP"

    def test_undecodable_input_raises_unsupported_format(self):
        with pytest.raises(UnsupportedFormat):
            transform(b"definitely not an image")

    def test_empty_input_raises_unsupported_format(self):
        with pytest.raises(UnsupportedFormat):
            transform(b"")

    def test_unsupported_format_is_a_transform_error(self):
        with pytest.raises(TransformError):
            transform(b"\x00\x01\x02")

    def test_original_cannot_be_requested(self, jpeg_bytes):
        with pytest.raises(TransformError, match="original"):
            transform(jpeg_bytes, {"original": (10, 10)})

    def test_failure_in_one_resolution_aborts_all(self, jpeg_bytes):
        """Test no partial result set is returned."""
        real_resize = resize_cover

        def flaky(img, width, height, image_format):
            if width == 480:
                raise MemoryError("out of memory")
            return real_resize(img, width, height, image_format)

        with patch("resize_pipeline.transformer.resize_cover", side_effect=flaky):
            with pytest.raises(TransformError, match="small"):
                transform(jpeg_bytes)


class TestHelpers:
    @pytest.mark.parametrize(
        "n_bytes,unit,expected",
        [
            (0, "KB", "0.00KB"),
            (2048, "KB", "2.00KB"),
            (1536, "KB", "1.50KB"),
            (1572864, "MB", "1.50MB"),
            (1024, "MB", "0.00MB"),
        ],
    )
    def test_format_size_label(self, n_bytes, unit, expected):
        assert format_size_label(n_bytes, unit) == expected

    def test_read_dimensions(self):
        assert read_dimensions(make_image_bytes(321, 123)) == (321, 123)

    def test_read_dimensions_rejects_garbage(self):
        with pytest.raises(UnsupportedFormat):
            read_dimensions(b"garbage")
