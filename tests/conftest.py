from __future__ import annotations

from pathlib import Path

import pytest

from common.types import CacheValue

# Just enough of each format for the bytes to look like the real thing.
JPEG_BYTES = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01" + bytes(range(64)) + b"\xff\xd9"
PNG_BYTES = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR" + bytes(range(64, 128))


@pytest.fixture
def jpeg_value() -> CacheValue:
    return CacheValue(data=JPEG_BYTES, content_type="image/jpeg")


@pytest.fixture
def png_value() -> CacheValue:
    return CacheValue(data=PNG_BYTES, content_type="image/png")


@pytest.fixture
def jpeg_file(tmp_path: Path) -> Path:
    path = tmp_path / "blank.jpg"
    path.write_bytes(JPEG_BYTES)
    return path


@pytest.fixture
def image_dir(tmp_path: Path) -> Path:
    """Two valid images and one non-image file."""
    root = tmp_path / "images"
    root.mkdir()
    (root / "test1.jpg").write_bytes(JPEG_BYTES)
    (root / "test2.png").write_bytes(PNG_BYTES)
    (root / "readme.txt").write_text("not an image")
    return root
