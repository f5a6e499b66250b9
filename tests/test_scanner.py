import pytest
from pathlib import Path
import tempfile
from resize_pipeline.scanner import is_image, scan_input

from conftest import make_image_bytes


def _write_image(path: Path, fmt="JPEG"):
    path.write_bytes(make_image_bytes(16, 16, fmt=fmt))
    return path


def test_scan_empty_directory():
    """Test scanning empty directory returns nothing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        images, skipped = scan_input(tmpdir, recursive=False)
        assert images == []
        assert skipped == []


def test_scan_filters_non_image_files():
    """Test scanner ignores files outside the image extensions."""
    with tempfile.TemporaryDirectory() as tmpdir:
        tmppath = Path(tmpdir)
        _write_image(tmppath / "cat.jpg")
        (tmppath / "readme.txt").write_text("hello")
        (tmppath / "clip.mp4").write_bytes(b"\x00\x00\x00\x18ftypmp42")

        images, skipped = scan_input(tmpdir)
        assert [p.name for p in images] == ["cat.jpg"]
        assert skipped == []


def test_scan_skips_renamed_non_image():
    """Test a text file with an image extension is reported, not returned."""
    with tempfile.TemporaryDirectory() as tmpdir:
        tmppath = Path(tmpdir)
        _write_image(tmppath / "real.png", fmt="PNG")
        (tmppath / "fake.jpg").write_text("not really a jpeg")
        (tmppath / "empty.gif").touch()

        images, skipped = scan_input(tmpdir)
        assert [p.name for p in images] == ["real.png"]
        assert [p.name for p in skipped] == ["empty.gif", "fake.jpg"]


def test_scan_without_verify_trusts_extension():
    """Test verify=False matches on extension alone."""
    with tempfile.TemporaryDirectory() as tmpdir:
        tmppath = Path(tmpdir)
        (tmppath / "fake.jpg").write_text("not really a jpeg")

        images, skipped = scan_input(tmpdir, verify=False)
        assert [p.name for p in images] == ["fake.jpg"]
        assert skipped == []


def test_scan_recursive_nested_dirs():
    """Test recursive scanning finds nested images."""
    with tempfile.TemporaryDirectory() as tmpdir:
        tmppath = Path(tmpdir)
        (tmppath / "sub1").mkdir()
        _write_image(tmppath / "sub1" / "a.png", fmt="PNG")
        (tmppath / "sub2").mkdir()
        _write_image(tmppath / "sub2" / "b.gif", fmt="GIF")

        images, _ = scan_input(tmpdir, recursive=True)
        assert len(images) == 2


def test_scan_non_recursive_ignores_subdirs():
    """Test non-recursive scan only finds top-level files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        tmppath = Path(tmpdir)
        _write_image(tmppath / "top.jpg")
        (tmppath / "sub").mkdir()
        _write_image(tmppath / "sub" / "nested.jpg")

        images, _ = scan_input(tmpdir, recursive=False)
        assert [p.name for p in images] == ["top.jpg"]


def test_scan_single_file():
    """Test scanning a single file path."""
    with tempfile.TemporaryDirectory() as tmpdir:
        image_file = _write_image(Path(tmpdir) / "photo.jpeg")

        images, skipped = scan_input(str(image_file))
        assert images == [image_file]
        assert skipped == []


def test_scan_nonexistent_path_raises():
    """Test scanning nonexistent path raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        scan_input("/nonexistent/path/photo.jpg")


def test_scan_with_limit_is_sorted():
    """Test limit keeps the first images in sorted order."""
    with tempfile.TemporaryDirectory() as tmpdir:
        tmppath = Path(tmpdir)
        for i in reversed(range(5)):
            _write_image(tmppath / f"img{i}.png", fmt="PNG")

        images, _ = scan_input(tmpdir, limit=3)
        assert [p.name for p in images] == ["img0.png", "img1.png", "img2.png"]


def test_scan_limit_counts_images_only():
    """Test skipped files do not use up the limit."""
    with tempfile.TemporaryDirectory() as tmpdir:
        tmppath = Path(tmpdir)
        (tmppath / "a.jpg").write_text("junk")
        _write_image(tmppath / "b.jpg")
        _write_image(tmppath / "c.jpg")

        images, skipped = scan_input(tmpdir, limit=2)
        assert [p.name for p in images] == ["b.jpg", "c.jpg"]
        assert [p.name for p in skipped] == ["a.jpg"]


def test_scan_custom_extensions_without_dots():
    """Test extensions may be given with or without the dot."""
    with tempfile.TemporaryDirectory() as tmpdir:
        tmppath = Path(tmpdir)
        _write_image(tmppath / "a.jpg")
        _write_image(tmppath / "b.png", fmt="PNG")

        images, _ = scan_input(tmpdir, extensions=["png"])
        assert [p.name for p in images] == ["b.png"]


def test_scan_extensions_case_insensitive():
    """Test extension matching is case-insensitive."""
    with tempfile.TemporaryDirectory() as tmpdir:
        tmppath = Path(tmpdir)
        _write_image(tmppath / "a.JPG")
        _write_image(tmppath / "b.Png", fmt="PNG")

        images, _ = scan_input(tmpdir, extensions=[".jpg", ".PNG"])
        assert len(images) == 2


def test_is_image_reads_header_not_extension():
    with tempfile.TemporaryDirectory() as tmpdir:
        tmppath = Path(tmpdir)
        png_named_jpg = _write_image(tmppath / "x.jpg", fmt="PNG")
        (tmppath / "y.png").write_text("plain text")

        assert is_image(png_named_jpg)
        assert not is_image(tmppath / "y.png")
