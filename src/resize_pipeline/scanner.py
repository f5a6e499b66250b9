"""Find image files on disk for batch enqueue."""

from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from loguru import logger
from PIL import Image, UnidentifiedImageError

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp", ".tif", ".tiff"})


def _normalize(extensions: Optional[Iterable[str]]) -> frozenset:
    if not extensions:
        return IMAGE_EXTENSIONS
    return frozenset((e if e.startswith(".") else f".{e}").lower() for e in extensions)


def is_image(path: Path) -> bool:
    """True if Pillow recognizes the file header. Pixel data is not decoded."""
    try:
        with Image.open(path) as img:
            return img.format is not None
    except (UnidentifiedImageError, OSError):
        return False


def scan_input(
    input_path: str,
    recursive: bool = False,
    limit: Optional[int] = None,
    extensions: Optional[List[str]] = None,
    verify: bool = True,
) -> Tuple[List[Path], List[Path]]:
    """
    Scan input path for image files.

    Candidates are matched by extension and, with ``verify``, kept only when
    Pillow can identify them, so a renamed text file never reaches the queue.

    Args:
        input_path: File or directory path.
        recursive: Whether to search directories recursively.
        limit: Max number of images to return.
        extensions: Allowed extensions (e.g. ['jpg', 'png']). If None, uses defaults.
        verify: Skip files whose header Pillow does not recognize.

    Returns:
        (images, skipped), both sorted by path.
    """
    path = Path(input_path)
    if not path.exists():
        raise FileNotFoundError(f"Input path not found: {input_path}")

    allowed = _normalize(extensions)

    if path.is_file():
        candidates = [path]
    else:
        pattern = path.rglob("*") if recursive else path.iterdir()
        candidates = sorted((p for p in pattern if p.is_file()), key=str)

    images: List[Path] = []
    skipped: List[Path] = []
    for candidate in candidates:
        if candidate.suffix.lower() not in allowed:
            continue
        if verify and not is_image(candidate):
            logger.bind(event="scan_skipped").warning("Not a readable image: {}", candidate)
            skipped.append(candidate)
            continue
        images.append(candidate)
        if limit and len(images) >= limit:
            break

    return images, skipped
