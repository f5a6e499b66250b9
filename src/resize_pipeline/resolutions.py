"""Resolution table shared by config, transformer and records.

New resolutions are added here (or in config ``resolutions``) as data; no
control flow depends on the names.
"""

from typing import Dict, Tuple

ORIGINAL = "original"

DEFAULT_RESOLUTIONS: Dict[str, Tuple[int, int]] = {
    "thumbnail": (150, 150),
    "small": (480, 480),
    "medium": (1024, 1024),
    "large": (1920, 1920),
}


def object_key(resolution: str, user_id: str, image_id: str, extension: str) -> str:
    """Deterministic storage key: ``<resolution>/<user_id>/<image_id><ext>``."""
    if extension and not extension.startswith("."):
        extension = f".{extension}"
    return f"{resolution}/{user_id}/{image_id}{extension.lower()}"

