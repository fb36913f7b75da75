"""Security audit trail for admission-control decisions.

Events are forwarded to the ``relaygate.security`` logger, counted per
wall-clock hour, and the most recent alert/block events are kept in memory
for the security monitor endpoints.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

logger = logging.getLogger("relaygate.security")

AuditLevel = Literal["info", "warn", "alert", "block"]

_LOG_LEVELS = {
    "info": logging.INFO,
    "warn": logging.WARNING,
    "alert": logging.ERROR,
    "block": logging.ERROR,
}

# Only these keys survive into retained events
_KEPT_KEYS = ("ip", "path", "url", "status", "reason")


def _hour_bucket(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H")


@dataclass
class AuditEvent:
    level: str
    message: str
    data: dict[str, Any]
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "message": self.message,
            "data": self.data,
            "timestamp": datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
        }


@dataclass
class HourlyCounters:
    hour: str
    info: int = 0
    warn: int = 0
    alert: int = 0
    block: int = 0

    @property
    def total(self) -> int:
        return self.info + self.warn + self.alert + self.block


@dataclass
class SecurityAuditLogger:
    """Counts and retains security events.

    Example:
        >>> audit = SecurityAuditLogger()
        >>> audit.log("alert", "Detected scanning pattern", {"ip": "203.0.113.9"})
        >>> audit.recent_alerts(1)[0]["data"]
        {'ip': '203.0.113.9'}
    """

    max_recent_alerts: int = 25
    clock: Callable[[], float] = time.time
    _recent: deque[AuditEvent] = field(init=False)
    _hourly: HourlyCounters = field(init=False)

    def __post_init__(self) -> None:
        self._recent = deque(maxlen=self.max_recent_alerts)
        self._hourly = HourlyCounters(hour=_hour_bucket(self.clock()))

    def log(self, level: AuditLevel, message: str, data: dict[str, Any] | None = None) -> None:
        now = self.clock()
        self._rotate(now)
        setattr(self._hourly, level, getattr(self._hourly, level) + 1)

        sanitized = self._sanitize(data)
        if level in ("alert", "block"):
            self._recent.append(AuditEvent(level, message, sanitized, now))

        logger.log(_LOG_LEVELS[level], "[%s] %s %s", level.upper(), message, sanitized)

    def recent_alerts(self, count: int = 10) -> list[dict[str, Any]]:
        """Newest first, at most ``max_recent_alerts``."""
        count = max(0, min(count, self.max_recent_alerts))
        if count == 0:
            return []
        events = list(self._recent)[-count:]
        return [event.to_dict() for event in reversed(events)]

    def summary(self) -> dict[str, Any]:
        self._rotate(self.clock())
        return {
            "last_hour": {
                "total": self._hourly.total,
                "alerts": self._hourly.alert,
                "blocks": self._hourly.block,
                "warnings": self._hourly.warn,
            }
        }

    def _rotate(self, now: float) -> None:
        hour = _hour_bucket(now)
        if hour != self._hourly.hour:
            self._hourly = HourlyCounters(hour=hour)

    @staticmethod
    def _sanitize(data: dict[str, Any] | None) -> dict[str, Any]:
        if not data:
            return {}
        sanitized = {key: data[key] for key in _KEPT_KEYS if key in data}
        error = data.get("error")
        if isinstance(error, BaseException):
            sanitized["error"] = {"name": type(error).__name__, "message": str(error)}
        elif error:
            sanitized["error"] = str(error)
        return sanitized
