from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict
from urllib.parse import urlsplit


class CacheKey:
    """
    Identity of a cached image.

    Exactly two variants exist: `ImageUrl` (remote source) and `ImagePath`
    (local file). Equality is structural on the variant and its value, so an
    `ImageUrl` never equals an `ImagePath` even when the strings coincide.
    """

    __slots__ = ()

    def describe(self) -> str:
        raise NotImplementedError


@dataclass(frozen=True)
class ImageUrl(CacheKey):
    """Absolute URL an image was fetched from."""
    url: str

    def __post_init__(self) -> None:
        parts = urlsplit(self.url)
        if not parts.scheme or not parts.netloc:
            raise ValueError(f"not an absolute URL: {self.url!r}")

    def describe(self) -> str:
        return self.url


@dataclass(frozen=True)
class ImagePath(CacheKey):
    """Canonical filesystem path an image was read from."""
    path: Path

    def __post_init__(self) -> None:
        if not isinstance(self.path, Path):
            object.__setattr__(self, "path", Path(self.path))

    def describe(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class CacheValue:
    """
    Cached image payload.

    Attributes:
        data: raw image bytes, exactly as served to clients.
        content_type: MIME type sent back as the `Content-Type` header.
    """
    data: bytes
    content_type: str

    def __post_init__(self) -> None:
        if isinstance(self.data, (bytearray, memoryview)):
            object.__setattr__(self, "data", bytes(self.data))
        if not isinstance(self.data, bytes):
            raise TypeError("data must be bytes")
        if not self.content_type:
            raise ValueError("content_type must be a non-empty string")

    def __repr__(self) -> str:
        return f"CacheValue(content_type={self.content_type!r}, size={len(self.data)})"

    def to_meta(self) -> Dict[str, Any]:
        """Metadata without image bytes (safe to log/serialize)."""
        return {"content_type": self.content_type, "size": len(self.data)}
