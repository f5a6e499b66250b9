"""Resolution transformer: image bytes -> fixed-size variants.

Pure and side-effect free. Every configured resolution is produced with a
cover fit (fill the box exactly, crop overflow, centered) and the untouched
original is returned alongside with its native dimensions. Any failure
aborts the whole transform; callers never see a partial set.
"""

import io
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import TransformError, UnsupportedFormat
from .resolutions import DEFAULT_RESOLUTIONS, ORIGINAL

# Formats re-encoded as-is; anything else (BMP, TIFF, ...) becomes JPEG
PASSTHROUGH_FORMATS = {"JPEG", "PNG", "WEBP", "GIF"}
FALLBACK_FORMAT = "JPEG"

_SAVE_OPTIONS = {
    "JPEG": {"quality": 85, "optimize": True},
    "WEBP": {"quality": 85},
    "PNG": {"optimize": True},
}


@dataclass(frozen=True)
class Variant:
    """One produced resolution."""

    data: bytes
    width: int
    height: int
    format: str
    content_type: str

    @property
    def size_bytes(self) -> int:
        return len(self.data)


def format_size_label(n_bytes: int, unit: str = "KB") -> str:
    """Human readable size: ``12.34KB`` or ``1.23MB``."""
    divisor = 1024 * 1024 if unit == "MB" else 1024
    return f"{n_bytes / divisor:.2f}{unit}"


def content_type_for(image_format: Optional[str]) -> str:
    return Image.MIME.get((image_format or FALLBACK_FORMAT).upper(), "application/octet-stream")


def _open(data: bytes) -> Image.Image:
    if not data:
        raise UnsupportedFormat("empty input, no image data")
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise UnsupportedFormat(f"cannot decode image: {e}") from e
    return img


def read_dimensions(data: bytes) -> Tuple[int, int]:
    """Native (width, height) of encoded image bytes."""
    img = _open(data)
    try:
        return img.width, img.height
    finally:
        img.close()


def _encode(img: Image.Image, image_format: str) -> bytes:
    if image_format == "JPEG" and img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format=image_format, **_SAVE_OPTIONS.get(image_format, {}))
    return buf.getvalue()


def resize_cover(img: Image.Image, width: int, height: int, image_format: str) -> Variant:
    """Fill ``width`` x ``height`` exactly, cropping overflow around the center."""
    fitted = ImageOps.fit(img, (width, height), method=Image.Resampling.LANCZOS, centering=(0.5, 0.5))
    data = _encode(fitted, image_format)
    return Variant(
        data=data,
        width=fitted.width,
        height=fitted.height,
        format=image_format,
        content_type=content_type_for(image_format),
    )


def transform(
    data: bytes,
    resolutions: Optional[Mapping[str, Tuple[int, int]]] = None,
) -> Dict[str, Variant]:
    """Produce every configured resolution plus the original.

    Args:
        data: Encoded source image
        resolutions: name -> (width, height); defaults to DEFAULT_RESOLUTIONS

    Returns:
        name -> Variant for each resolution and ``original``

    Raises:
        UnsupportedFormat: input is not a decodable image
        TransformError: a resolution could not be produced
    """
    if resolutions is None:
        resolutions = DEFAULT_RESOLUTIONS
    if ORIGINAL in resolutions:
        raise TransformError(f"'{ORIGINAL}' is implicit and cannot be configured")

    img = _open(data)
    try:
        source_format = (img.format or "").upper()
        target_format = source_format if source_format in PASSTHROUGH_FORMATS else FALLBACK_FORMAT

        results: Dict[str, Variant] = {}
        for name, (width, height) in resolutions.items():
            try:
                results[name] = resize_cover(img, int(width), int(height), target_format)
            except Exception as e:
                raise TransformError(f"failed to produce '{name}' ({width}x{height}): {e}") from e

        results[ORIGINAL] = Variant(
            data=data,
            width=img.width,
            height=img.height,
            format=source_format or FALLBACK_FORMAT,
            content_type=content_type_for(source_format),
        )
        return results
    finally:
        img.close()
