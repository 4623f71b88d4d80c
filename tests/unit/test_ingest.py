"""
Unit tests for the ingestion pipeline
"""

from pathlib import Path
from unittest.mock import Mock, patch

import pytest
import requests

from common.types import CacheValue, ImagePath, ImageUrl
from image_server.cache import CacheError, InMemoryCache
from image_server.config import PathSource, UrlSource
from image_server.ingest import (
    IngestError,
    UnsupportedImageError,
    extension_for_content_type,
    iter_image_files,
    populate_cache,
    read_image_from_path,
    read_image_from_url,
)
from image_server.state import ServerState


def _response(status=200, content_type="image/jpeg", content=b"\xff\xd8\xff\xd9"):
    r = Mock()
    r.status_code = status
    r.headers = {} if content_type is None else {"Content-Type": content_type}
    r.content = content
    return r


def _session(*responses):
    session = Mock()
    session.get.side_effect = list(responses)
    return session


class TestReadImageFromPath:
    """Test cases for reading single image files"""

    def test_success(self, jpeg_file):
        value = read_image_from_path(jpeg_file)
        assert value.data == jpeg_file.read_bytes()
        assert value.content_type == "image/jpeg"

    @pytest.mark.parametrize(
        "name, content_type",
        [
            ("a.jpg", "image/jpeg"),
            ("a.jpeg", "image/jpeg"),
            ("a.JPG", "image/jpeg"),
            ("a.png", "image/png"),
            ("a.webp", "image/webp"),
            ("a.gif", "image/gif"),
        ],
    )
    def test_extensions(self, tmp_path, name, content_type):
        path = tmp_path / name
        path.write_bytes(b"\x01\x02\x03\x04")
        assert read_image_from_path(path).content_type == content_type

    def test_file_not_found(self):
        with pytest.raises(IngestError, match="does not exist"):
            read_image_from_path(Path("/nonexistent/image.jpg"))

    def test_directory(self, tmp_path):
        with pytest.raises(IngestError, match="does not exist"):
            read_image_from_path(tmp_path)

    def test_no_extension(self, tmp_path):
        path = tmp_path / "test_no_ext"
        path.write_text("test data")
        with pytest.raises(UnsupportedImageError, match="no extension"):
            read_image_from_path(path)

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "test.txt"
        path.write_text("test data")
        with pytest.raises(UnsupportedImageError, match="Unsupported image file extension"):
            read_image_from_path(path)


class TestContentType:
    """Test cases for Content-Type → extension mapping"""

    @pytest.mark.parametrize(
        "header, expected",
        [
            ("image/jpeg", "jpeg"),
            ("image/jpg", "jpg"),
            ("IMAGE/PNG", "png"),
            ("image/png; charset=binary", "png"),
            ("image/webp", "webp"),
            ("image/gif", "gif"),
            ("image/svg+xml", None),
            ("text/html", None),
            ("application/octet-stream", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extension_for_content_type(self, header, expected):
        assert extension_for_content_type(header) == expected


class TestReadImageFromUrl:
    """Test cases for fetching images over HTTP"""

    def test_success(self):
        session = _session(_response(content=b"jpegbytes"))
        value = read_image_from_url("https://example.com/a.jpg", session, timeout=3.0)

        assert value == CacheValue(data=b"jpegbytes", content_type="image/jpeg")
        session.get.assert_called_once_with("https://example.com/a.jpg", timeout=3.0)

    def test_content_type_parameters_dropped(self):
        session = _session(_response(content_type="image/PNG; charset=binary"))
        value = read_image_from_url("https://example.com/a", session)
        assert value.content_type == "image/png"

    def test_bad_status(self):
        session = _session(_response(status=404))
        with pytest.raises(IngestError, match="status: 404"):
            read_image_from_url("https://example.com/a.jpg", session)

    def test_missing_content_type(self):
        session = _session(_response(content_type=None))
        with pytest.raises(IngestError, match="Content-Type"):
            read_image_from_url("https://example.com/a.jpg", session)

    def test_disallowed_content_type(self):
        session = _session(_response(content_type="text/html"))
        with pytest.raises(UnsupportedImageError, match="Unsupported image content type"):
            read_image_from_url("https://example.com/a.jpg", session)

    def test_network_error(self):
        session = Mock()
        session.get.side_effect = requests.ConnectionError("Network error")
        with pytest.raises(IngestError, match="Network error"):
            read_image_from_url("https://example.com/a.jpg", session)

    @patch("image_server.ingest.requests.get")
    def test_without_session_uses_requests_get(self, mock_get):
        mock_get.return_value = _response()
        value = read_image_from_url("https://example.com/a.jpg", timeout=2.0)
        assert value.content_type == "image/jpeg"
        mock_get.assert_called_once_with("https://example.com/a.jpg", timeout=2.0)


class TestIterImageFiles:
    """Test cases for directory walking"""

    def test_recursive_sorted_and_filtered(self, image_dir):
        nested = image_dir / "nested" / "deeper"
        nested.mkdir(parents=True)
        (nested / "z.gif").write_bytes(b"GIF89a")
        (nested / "notes.md").write_text("# notes")

        files = list(iter_image_files(image_dir))
        assert files == sorted(files)
        assert [p.name for p in files] == ["z.gif", "test1.jpg", "test2.png"]


class TestPopulateCache:
    """Test cases for populate_cache"""

    @pytest.mark.asyncio
    async def test_no_sources(self):
        state = ServerState()
        assert await populate_cache(state, []) == 0
        assert state.size() == 0

    @pytest.mark.asyncio
    async def test_single_file(self, jpeg_file):
        state = ServerState()
        assert await populate_cache(state, [PathSource(jpeg_file)]) == 1
        key = ImagePath(jpeg_file.resolve())
        assert state.order == [key]
        assert state.cache.get(key).data == jpeg_file.read_bytes()

    @pytest.mark.asyncio
    async def test_directory(self, image_dir):
        """Two images and one text file yield a cache of size 2"""
        state = ServerState()
        await populate_cache(state, [PathSource(image_dir)])
        assert state.size() == 2
        assert state.order == [
            ImagePath((image_dir / "test1.jpg").resolve()),
            ImagePath((image_dir / "test2.png").resolve()),
        ]

    @pytest.mark.asyncio
    async def test_invalid_file_skipped(self, tmp_path):
        text = tmp_path / "test.txt"
        text.write_text("not an image")
        state = ServerState()
        assert await populate_cache(state, [PathSource(text)]) == 0
        assert state.size() == 0

    @pytest.mark.asyncio
    async def test_file_removed_after_config_skipped(self, tmp_path, jpeg_file):
        gone = tmp_path / "gone.jpg"
        state = ServerState()
        await populate_cache(state, [PathSource(gone), PathSource(jpeg_file)])
        assert state.size() == 1

    @pytest.mark.asyncio
    async def test_url_source(self):
        session = _session(_response(content=b"remote"))
        state = ServerState()
        await populate_cache(state, [UrlSource("https://example.com/a.jpg")], session=session, timeout=4.0)

        key = ImageUrl("https://example.com/a.jpg")
        assert state.order == [key]
        assert state.cache.get(key) == CacheValue(data=b"remote", content_type="image/jpeg")
        session.get.assert_called_once_with("https://example.com/a.jpg", timeout=4.0)

    @pytest.mark.asyncio
    async def test_bad_url_does_not_abort(self, jpeg_file):
        """A failing source is skipped and later sources still load"""
        session = _session(
            requests.Timeout("timed out"),
            _response(status=500),
            _response(content_type="text/html"),
            _response(content=b"ok"),
        )
        sources = [
            UrlSource("https://example.com/timeout.jpg"),
            UrlSource("https://example.com/500.jpg"),
            UrlSource("https://example.com/page"),
            PathSource(jpeg_file),
            UrlSource("https://example.com/ok.jpg"),
        ]
        state = ServerState()
        assert await populate_cache(state, sources, session=session) == 2
        assert state.order == [ImagePath(jpeg_file.resolve()), ImageUrl("https://example.com/ok.jpg")]

    @pytest.mark.asyncio
    @patch("image_server.ingest.requests.Session")
    async def test_own_session_is_closed(self, mock_session_cls):
        session = _session(_response())
        mock_session_cls.return_value = session
        state = ServerState()
        await populate_cache(state, [UrlSource("https://example.com/a.jpg")])
        assert state.size() == 1
        session.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_reingest_does_not_duplicate(self, image_dir):
        state = ServerState()
        await populate_cache(state, [PathSource(image_dir)])
        await populate_cache(state, [PathSource(image_dir)])
        assert state.size() == 2
        assert len(state.order) == 2
        assert len(state.cache.keys()) == 2

    @pytest.mark.asyncio
    async def test_store_failure_skips_entry(self, image_dir):
        """A backend that cannot persist a value loses only that value"""

        class FlakyCache(InMemoryCache):
            def set(self, key, value):
                if value.content_type == "image/png":
                    raise CacheError("disk full")
                super().set(key, value)

        state = ServerState(FlakyCache())
        assert await populate_cache(state, [PathSource(image_dir)]) == 1
        assert state.order == [ImagePath((image_dir / "test1.jpg").resolve())]

    @pytest.mark.asyncio
    async def test_lock_released_after_ingest(self, image_dir):
        state = ServerState()
        await populate_cache(state, [PathSource(image_dir)])
        assert not state.lock.writing
        assert state.lock.readers == 0
