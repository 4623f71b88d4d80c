from __future__ import annotations

import json
import logging
import os
import sys
from typing import Optional

LEVEL_ALIASES = {
    "TRACE": "DEBUG",
    "WARN": "WARNING",
    "FATAL": "CRITICAL",
}


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line:
      { "t": 1700000000000, "lvl": "INFO", "name": "image_server.ingest",
        "src": "ingest.py:42", "msg": "text", "extra": {...} }
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "t": int(record.created * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "src": f"{record.filename}:{record.lineno}",
            "msg": record.getMessage(),
        }
        if hasattr(record, "extra") and isinstance(record.extra, dict):  # type: ignore[attr-defined]
            payload["extra"] = record.extra  # type: ignore[attr-defined]
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def resolve_level(name: Optional[str]) -> int:
    """
    Map a level name (any case, with TRACE/WARN aliases) to a logging level.
    Raises ValueError for unknown names.
    """
    key = (name or "INFO").strip().upper()
    key = LEVEL_ALIASES.get(key, key)
    lvl = logging.getLevelName(key)
    if not isinstance(lvl, int):
        raise ValueError(f"unknown log level: {name!r}")
    return lvl


def setup_logging(level: Optional[str] = None, *, force: bool = False) -> None:
    """
    Configure root logger once with JSON formatting.
    Level precedence:
      - explicit `level` arg
      - env RANDOM_IMAGE_SERVER_LOG_LEVEL
      - default INFO
    Pass force=True to reconfigure (e.g. after the config file is loaded).
    """
    root = logging.getLogger()
    if getattr(root, "_ris_configured", False) and not force:
        return

    try:
        lvl = resolve_level(level or os.environ.get("RANDOM_IMAGE_SERVER_LOG_LEVEL"))
    except ValueError:
        lvl = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(lvl)
    root._ris_configured = True  # type: ignore[attr-defined]
    logging.getLogger(__name__).info("Logging initialized: level=%s", logging.getLevelName(lvl))


def get_logger(name: str) -> logging.Logger:
    """Get a module logger; ensures root is configured."""
    setup_logging()
    return logging.getLogger(name)
