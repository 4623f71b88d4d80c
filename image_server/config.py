"""
Configuration for the image server.

A YAML file (default `config.yaml`) with two sections:

    server:
      host: 127.0.0.1
      port: 3000
      log_level: info
      shutdown_timeout: 5.0
      fetch_timeout: 10.0
      sources:
        - ./assets
        - https://example.com/image.jpg
    cache:
      backend: in_memory   # or file_system

Any value can be overridden from the environment with the
RANDOM_IMAGE_SERVER_{PORT,HOST,LOG_LEVEL,SOURCES,CACHE_BACKEND} variables.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
from urllib.parse import urlsplit

import yaml

from common.logging_setup import resolve_level

log = logging.getLogger(__name__)

ENV_PREFIX = "RANDOM_IMAGE_SERVER_"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000
DEFAULT_LOG_LEVEL = "info"


class ConfigError(ValueError):
    """Configuration is invalid; the server cannot start."""


class CacheBackendType(str, Enum):
    IN_MEMORY = "in_memory"
    FILE_SYSTEM = "file_system"

    @classmethod
    def parse(cls, raw: str) -> "CacheBackendType":
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            raise ConfigError(f"Unknown cache backend type: {raw}") from None


@dataclass(frozen=True)
class UrlSource:
    url: str


@dataclass(frozen=True)
class PathSource:
    """A file or directory that existed when the config was parsed."""
    path: Path


ImageSource = Union[UrlSource, PathSource]


def parse_source(raw: str) -> ImageSource:
    """
    Interpret one configured source: an http(s) URL, else an existing path
    (canonicalized). Raises ConfigError if it is neither.
    """
    text = str(raw).strip()
    parts = urlsplit(text)
    if parts.scheme in ("http", "https") and parts.netloc:
        return UrlSource(text)
    path = Path(text).expanduser()
    if text and path.exists():
        return PathSource(path.resolve())
    raise ConfigError(f"Image source doesn't exist or couldn't be parsed as a URL: {text}")


def _parse_sources(raw: Any, *, strict: bool) -> List[ImageSource]:
    if isinstance(raw, str) or not isinstance(raw, (list, tuple)):
        raise ConfigError(f"sources must be a list, got {type(raw).__name__}")
    sources: List[ImageSource] = []
    for item in raw:
        try:
            sources.append(parse_source(item))
        except ConfigError as e:
            if strict:
                raise
            log.warning("Invalid image source %r: %s", item, e)
    if not sources:
        raise ConfigError("No valid image sources found")
    return sources


def _parse_host(raw: Any) -> str:
    host = str(raw).strip()
    if not host or any(c.isspace() for c in host):
        raise ConfigError(f"Invalid host: {raw!r}")
    return host


def _parse_port(raw: Any) -> int:
    try:
        port = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid port: {raw!r}") from None
    if not 0 <= port <= 65535:
        raise ConfigError(f"Port out of range: {port}")
    return port


def _parse_log_level(raw: Any) -> str:
    try:
        resolve_level(str(raw))
    except ValueError as e:
        raise ConfigError(str(e)) from None
    return str(raw).strip().lower()


def _parse_seconds(raw: Any, name: str) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid {name}: {raw!r}") from None
    if value < 0:
        raise ConfigError(f"{name} must be >= 0")
    return value


@dataclass
class ServerConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = DEFAULT_LOG_LEVEL
    # grace period uvicorn gives in-flight requests on shutdown
    shutdown_timeout: float = 5.0
    # HTTP client timeout for URL sources
    fetch_timeout: float = 10.0
    sources: List[ImageSource] = field(default_factory=list)


@dataclass
class CacheConfig:
    backend: CacheBackendType = CacheBackendType.IN_MEMORY


@dataclass
class Config:
    """
    Top-level configuration.

    Usage:
        cfg = Config.from_file("config.yaml").with_env()
        print(cfg.server.port, cfg.cache.backend)
    """
    server: ServerConfig = field(default_factory=ServerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Config":
        """Load a YAML config file. Raises ConfigError if unreadable or invalid."""
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse config file {path}: {e}") from e
        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Config":
        if not isinstance(data, Mapping):
            raise ConfigError("config must be a mapping")
        server_raw = data.get("server")
        if not isinstance(server_raw, Mapping):
            raise ConfigError("missing [server] section")
        if "sources" not in server_raw:
            raise ConfigError("missing server.sources")

        server = ServerConfig(
            host=_parse_host(server_raw.get("host", DEFAULT_HOST)),
            port=_parse_port(server_raw.get("port", DEFAULT_PORT)),
            log_level=_parse_log_level(server_raw.get("log_level", DEFAULT_LOG_LEVEL)),
            shutdown_timeout=_parse_seconds(server_raw.get("shutdown_timeout", 5.0), "shutdown_timeout"),
            fetch_timeout=_parse_seconds(server_raw.get("fetch_timeout", 10.0), "fetch_timeout"),
            sources=_parse_sources(server_raw["sources"], strict=False),
        )

        cache_raw = data.get("cache") or {}
        if not isinstance(cache_raw, Mapping):
            raise ConfigError("cache must be a mapping")
        cache = CacheConfig(
            backend=CacheBackendType.parse(cache_raw.get("backend", CacheBackendType.IN_MEMORY.value)),
        )
        return cls(server=server, cache=cache)

    def with_env(self, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """
        Return a copy with values overridden from RANDOM_IMAGE_SERVER_* variables.
        `environ` defaults to os.environ (pass a dict in tests).
        """
        env = os.environ if environ is None else environ
        server = replace(self.server)
        cache = replace(self.cache)

        overrides: Dict[str, Callable[[str], None]] = {
            "PORT": lambda v: setattr(server, "port", _parse_port(v)),
            "HOST": lambda v: setattr(server, "host", _parse_host(v)),
            "LOG_LEVEL": lambda v: setattr(server, "log_level", _parse_log_level(v)),
            "SOURCES": lambda v: setattr(server, "sources", _parse_sources(v.split(","), strict=True)),
            "CACHE_BACKEND": lambda v: setattr(cache, "backend", CacheBackendType.parse(v)),
        }
        for name, apply in overrides.items():
            var = ENV_PREFIX + name
            if var not in env:
                continue
            try:
                apply(env[var])
            except ConfigError as e:
                raise ConfigError(f"Failed to parse environment variable '{var}': {e}") from e

        return Config(server=server, cache=cache)
