"""
Turns configured image sources into cache entries.

Sources:
  - URL        fetched with requests; the Content-Type must map to an allowed extension
  - file       read if its extension is allowed
  - directory  walked recursively, every allowed file read

A bad source is logged and skipped; ingestion never aborts on one failure.
Fetches and file reads run in worker threads; only the store into the
shared state takes the write lock.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Tuple

import requests

from common.types import CacheKey, CacheValue, ImagePath, ImageUrl
from image_server.cache import CacheError
from image_server.config import ImageSource, PathSource, UrlSource
from image_server.state import ServerState

log = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "webp", "gif")

# extension -> content type
CONTENT_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
}

# content type -> extension, for types whose subtype is not itself an extension
_EXTENSION_ALIASES = {
    "image/pjpeg": "jpg",
    "image/jpg": "jpg",
}

DEFAULT_FETCH_TIMEOUT = 10.0


class IngestError(Exception):
    """A single source could not be turned into a cache entry."""


class UnsupportedImageError(IngestError):
    """The source is not one of the allowed image types."""


def image_extension(path: Path) -> Optional[str]:
    """Lower-cased extension if it is an allowed image type, else None."""
    ext = path.suffix[1:].lower()
    return ext if ext in ALLOWED_IMAGE_EXTENSIONS else None


def extension_for_content_type(header: Optional[str]) -> Optional[str]:
    """
    Map a Content-Type header value (parameters allowed) to an allowed
    extension, e.g. 'image/jpeg; charset=binary' -> 'jpeg'.
    """
    if not header:
        return None
    media_type = header.split(";", 1)[0].strip().lower()
    if media_type in _EXTENSION_ALIASES:
        return _EXTENSION_ALIASES[media_type]
    maintype, _, subtype = media_type.partition("/")
    if maintype != "image" or subtype not in ALLOWED_IMAGE_EXTENSIONS:
        return None
    return subtype


def read_image_from_path(path: Path) -> CacheValue:
    """Read one image file. Raises IngestError / UnsupportedImageError."""
    if not path.is_file():
        raise IngestError(f"Image file does not exist: {path}")
    if not path.suffix:
        raise UnsupportedImageError(f"Image file has no extension: {path}")
    ext = image_extension(path)
    if ext is None:
        raise UnsupportedImageError(f"Unsupported image file extension: {path}")
    try:
        data = path.read_bytes()
    except OSError as e:
        raise IngestError(f"Failed to read image file {path}: {e}") from e
    return CacheValue(data=data, content_type=CONTENT_TYPES[ext])


def read_image_from_url(
    url: str,
    session: Optional[requests.Session] = None,
    timeout: float = DEFAULT_FETCH_TIMEOUT,
) -> CacheValue:
    """
    Fetch an image over HTTP(S).

    Requires a 2xx status and a Content-Type whose implied extension is
    allowed. Raises IngestError / UnsupportedImageError otherwise.
    """
    get = session.get if session is not None else requests.get
    try:
        r = get(url, timeout=timeout)
    except requests.RequestException as e:
        raise IngestError(f"Failed to fetch image from URL {url}: {e}") from e

    if not 200 <= r.status_code < 300:
        raise IngestError(f"Failed to fetch image from URL {url}, status: {r.status_code}")

    header = r.headers.get("Content-Type")
    if not header:
        raise IngestError(f"Failed to get Content-Type header from response for {url}")
    if extension_for_content_type(header) is None:
        raise UnsupportedImageError(f"Unsupported image content type: {header}")

    return CacheValue(data=r.content, content_type=header.split(";", 1)[0].strip().lower())


def iter_image_files(root: Path) -> Iterator[Path]:
    """Regular files under `root` with an allowed extension, in sorted order."""
    for path in sorted(root.rglob("*")):
        if path.is_file() and image_extension(path) is not None:
            yield path


async def _load_url(
    url: str, session: Optional[requests.Session], timeout: float
) -> List[Tuple[CacheKey, CacheValue]]:
    log.info("Loading image from URL: %s", url)
    value = await asyncio.to_thread(read_image_from_url, url, session, timeout)
    return [(ImageUrl(url), value)]


async def _load_path(path: Path) -> List[Tuple[CacheKey, CacheValue]]:
    path = path.resolve()
    if path.is_dir():
        log.info("Loading images from directory: %s", path)
        files = await asyncio.to_thread(lambda: list(iter_image_files(path)))
    else:
        files = [path]

    loaded: List[Tuple[CacheKey, CacheValue]] = []
    for file in files:
        log.info("Loading image from file: %s", file)
        try:
            value = await asyncio.to_thread(read_image_from_path, file)
        except UnsupportedImageError as e:
            log.warning("%s", e)
            continue
        except IngestError as e:
            log.error("%s", e)
            continue
        loaded.append((ImagePath(file), value))
    return loaded


async def populate_cache(
    state: ServerState,
    sources: Iterable[ImageSource],
    *,
    session: Optional[requests.Session] = None,
    timeout: float = DEFAULT_FETCH_TIMEOUT,
) -> int:
    """
    Load every source into `state`, in order. Returns how many entries were
    stored by this call. Safe to call again: existing keys are overwritten in
    place, not duplicated.
    """
    sources = list(sources)
    log.info("Populating cache from %d configured source(s)", len(sources))
    own_session = session is None and any(isinstance(s, UrlSource) for s in sources)
    if own_session:
        session = requests.Session()
    try:
        return await _populate(state, sources, session, timeout)
    finally:
        if own_session:
            session.close()


async def _populate(
    state: ServerState,
    sources: List[ImageSource],
    session: Optional[requests.Session],
    timeout: float,
) -> int:
    stored = 0
    for source in sources:
        try:
            if isinstance(source, UrlSource):
                entries = await _load_url(source.url, session, timeout)
            elif isinstance(source, PathSource):
                entries = await _load_path(source.path)
            else:
                log.warning("Unsupported image source: %r", source)
                continue
        except UnsupportedImageError as e:
            log.warning("Skipping source %s: %s", source, e)
            continue
        except IngestError as e:
            log.error("Skipping source %s: %s", source, e)
            continue

        for key, value in entries:
            try:
                async with state.lock.write():
                    state.store(key, value)
            except CacheError as e:
                log.error("Failed to store image in cache: %s", e)
                continue
            stored += 1

    log.info("Cache populated: %d stored this run, %d total", stored, state.size())
    return stored
