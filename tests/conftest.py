import io
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from PIL import Image

from resize_pipeline.models import PipelineConfig
from resize_pipeline.pipeline import build_components

REPO_ROOT = Path(__file__).resolve().parent.parent


def make_image_bytes(width=400, height=300, fmt="JPEG", color=(200, 60, 40), mode="RGB") -> bytes:
    """Encode a solid-colour test image."""
    if mode in ("L", "P"):
        color = 128
    elif mode == "RGBA":
        color = (*color[:3], 128)
    img = Image.new(mode, (width, height), color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


class FakeClock:
    """Settable UTC clock for TTL and visibility-timeout tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def jpeg_bytes():
    return make_image_bytes(400, 300)


@pytest.fixture
def memory_config(tmp_path):
    """All-in-process configuration with a local object store under tmp_path."""
    return PipelineConfig.from_dict(
        {
            "queue": {"backend": "memory"},
            "status": {"backend": "memory"},
            "records": {"backend": "memory"},
            "storage": {"backend": "local", "local_root": str(tmp_path / "objects")},
            "worker": {"poll_interval_s": 0.01},
        }
    )


@pytest.fixture
def sqlite_config(tmp_path):
    """SQLite-backed configuration, database and objects under tmp_path."""
    return PipelineConfig.from_dict(
        {
            "database": {"path": str(tmp_path / "pipeline.db")},
            "storage": {"backend": "local", "local_root": str(tmp_path / "objects")},
            "worker": {"poll_interval_s": 0.01},
        }
    )


@pytest.fixture
def components(memory_config):
    built = build_components(memory_config)
    yield built
    built.close()
