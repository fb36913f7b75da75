"""Central logging configuration for relaygate.

Call ``configure_logging()`` once at startup (the CLI does this); modules
log through ``logging.getLogger(__name__)``.

Environment:
    RELAYGATE_LOG_LEVEL   DEBUG, INFO, WARNING, ERROR or CRITICAL
    RELAYGATE_LOG_FORMAT  "text" or "json"
    RELAYGATE_LOG_FILE    also append to this file
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Literal

TEXT_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)-7s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# aiohttp logs one access line per request at INFO
NOISY_LOGGERS = ("aiohttp.access",)

# Everything a bare LogRecord carries; any other attribute came from ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
}

_configured = False


class JsonFormatter(logging.Formatter):
    """Render each record as a single JSON line.

    Keys: ``timestamp`` (UTC, ISO 8601), ``level``, ``logger``, ``message``,
    plus ``exception`` when one is attached and ``extra`` for any fields
    passed through ``extra=``.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        extra = {key: value for key, value in vars(record).items() if key not in _RECORD_ATTRS}
        if extra:
            payload["extra"] = extra
        return json.dumps(payload, default=str)


def _resolve_level(level: str | None) -> int:
    name = (level or os.environ.get("RELAYGATE_LOG_LEVEL") or "INFO").upper()
    value = logging.getLevelName(name)
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {name}")
    return value


def configure_logging(
    level: str | None = None,
    format: Literal["text", "json"] | None = None,
    file_path: str | None = None,
    force: bool = False,
) -> None:
    """Install handlers on the root logger.

    Only the first call takes effect unless ``force`` is set. Explicit
    arguments take precedence over the environment.

    Args:
        level: Level name, case-insensitive.
        format: "text" for human-readable lines, "json" for one object per line.
        file_path: Optional file that receives the same output as stderr.
        force: Replace handlers installed by an earlier call.

    Raises:
        ValueError: On an unknown level or format.
    """
    global _configured
    if _configured and not force:
        return

    numeric_level = _resolve_level(level)
    fmt = format or os.environ.get("RELAYGATE_LOG_FORMAT") or "text"
    if fmt == "json":
        formatter: logging.Formatter = JsonFormatter()
    elif fmt == "text":
        formatter = logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)
    else:
        raise ValueError(f"Unknown log format: {fmt}")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_file = file_path or os.environ.get("RELAYGATE_LOG_FILE")
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric_level)
    for handler in handlers:
        root.addHandler(handler)

    quiet_level = logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    _configured = True
