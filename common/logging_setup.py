from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any, Dict, Optional, TextIO


_CONFIGURED_FLAG = "_hypermatch_configured"


class JsonFormatter(logging.Formatter):
    """
    One JSON object per log line:
      {"t": <epoch ms>, "lvl": "INFO", "name": "hypermatch.matcher", "msg": "...", "extra": {...}}

    Structured fields travel as extra={"extra": {...}}; numpy scalars and
    tuples are stringified or listed by json's default handling.
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "t": int(record.created * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        fields = getattr(record, "extra", None)
        if isinstance(fields, dict):
            payload["extra"] = fields
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _resolve_level(level: Optional[str]) -> int:
    name = str(level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    if name == "WARN":
        name = "WARNING"
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level: Optional[str] = None, stream: Optional[TextIO] = None) -> None:
    """
    Install the JSON handler on the root logger (first call only).

    Level: explicit `level`, else env LOG_LEVEL, else INFO. Once installed,
    later calls only change the level, and only when one is given.
    """
    root = logging.getLogger()
    if getattr(root, _CONFIGURED_FLAG, False):
        if level is not None:
            root.setLevel(_resolve_level(level))
        return

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(_resolve_level(level))
    setattr(root, _CONFIGURED_FLAG, True)


def get_logger(name: str) -> logging.Logger:
    """Module logger; installs the JSON root handler on first use."""
    setup_logging()
    return logging.getLogger(name)
