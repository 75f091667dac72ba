"""
Logging setup shared by the API, the coordinator and the CLI.

Every module asks for its logger through get_logger("component") so all
records live under the "shieldpool." namespace and one call to
configure_logging() controls them.
"""
from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional

ROOT_LOGGER = "shieldpool"


class JsonFormatter(logging.Formatter):
    """One JSON object per line (for log shippers)."""

    def format(self, record: logging.LogRecord) -> str:
        row = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            row["exc"] = self.formatException(record.exc_info)
        return json.dumps(row, separators=(",", ":"))


def configure_logging(level: Optional[str] = None, json_lines: Optional[bool] = None) -> logging.Logger:
    """
    Install a single stderr handler on the package root logger.

    Args:
        level: Log level name; defaults to $LOG_LEVEL or INFO
        json_lines: Emit JSON lines instead of plain text; defaults to $LOG_JSON=="1"

    Returns:
        The package root logger
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_lines is None:
        json_lines = os.getenv("LOG_JSON", "0") == "1"

    root = logging.getLogger(ROOT_LOGGER)
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    if json_lines:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False
    return root


def get_logger(name: str) -> logging.Logger:
    if name.startswith(ROOT_LOGGER + ".") or name == ROOT_LOGGER:
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def short(hex_value: Optional[str], n: int = 12) -> str:
    """Shorten a hex identifier for log lines."""
    if not hex_value:
        return "-"
    return f"{hex_value[:n]}…" if len(hex_value) > n else hex_value
