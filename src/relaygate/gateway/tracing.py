"""Per-request trace ids and optional debug dumps.

A trace id reads ``{seq}_{hhmmss}_{kind}_{context}``, for example
``00042_153012_chat_Summarize_this_article``; it is returned to the client as
``X-Trace-Id`` and prefixes every log line of the request.
"""

from __future__ import annotations

import itertools
import json
import logging
import re
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_]")


def _words(text: str, count: int = 3, width: int = 8) -> str:
    picked = [w[:width] for w in text.split()[:count] if not w.startswith("<")]
    return "_".join(picked)[:20]


def _user_text(message: Any) -> str | None:
    if not isinstance(message, dict) or message.get("role") != "user":
        return None
    content = message.get("content")
    if isinstance(content, str):
        return content if content.strip() else None
    if isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                text = part.get("text")
                if isinstance(text, str) and text.strip():
                    return text
    return None


def request_context(body: dict[str, Any] | None) -> str:
    """A few filesystem-safe words describing the request."""
    if not body:
        return "empty"

    text = next(
        (t for t in map(_user_text, reversed(body.get("messages") or [])) if t),
        None,
    )
    if text is None:
        inputs = body.get("input")
        first = inputs[0] if isinstance(inputs, list) and inputs else inputs
        if isinstance(first, str) and first.strip():
            text = first
    if text is None:
        return "empty"
    return _UNSAFE.sub("", _words(text)) or "request"


class RequestTracer:
    """Hands out trace ids and writes debug bodies under ``debug_dir``.

    Files land in ``{debug_dir}/logs/{session}/{trace_id}/``, where the session
    is the tracer's start time. Nothing is written when ``debug_dir`` is None.

    Example:
        >>> tracer = RequestTracer(debug_dir="/tmp/relaygate-debug")
        >>> trace_id = tracer.generate_trace_id("chat", body)
        >>> tracer.save_debug(trace_id, "1_compat_request.json", body)
    """

    def __init__(self, debug_dir: str | Path | None = None):
        self.debug_root = debug_dir
        self.session = time.strftime("%Y-%m-%d_%H-%M-%S")
        self._seq = itertools.count(1)

    @property
    def debug_dir(self) -> Path | None:
        if not self.debug_root:
            return None
        return Path(self.debug_root) / "logs" / self.session

    def generate_trace_id(self, kind: str, body: dict[str, Any] | None = None) -> str:
        seq = next(self._seq)
        kind = _UNSAFE.sub("", kind) or "req"
        return f"{seq:05d}_{time.strftime('%H%M%S')}_{kind}_{request_context(body)}"

    def save_debug(self, trace_id: str, filename: str, data: Any) -> None:
        """Write ``data`` as JSON; failures are logged, never raised."""
        directory = self.debug_dir
        if directory is None:
            return
        target = directory / trace_id / filename
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(json.dumps(data, indent=2, default=str))
        except OSError as e:
            logger.warning("[%s] Failed to save debug file %s: %s", trace_id, filename, e)
            return
        logger.debug("[%s] Debug body written to %s", trace_id, target)

    def log_response(
        self,
        trace_id: str,
        status_code: int,
        duration_s: float,
        error: str | None = None,
    ) -> None:
        """Log how a request ended.

        Args:
            trace_id: Trace id of the request.
            status_code: Status sent to the client.
            duration_s: Wall time spent on the request.
            error: Failure description, if the request failed after the
                response started.
        """
        if error is None:
            logger.info(
                "[%s] request_complete: status=%d (%.2fs)", trace_id, status_code, duration_s
            )
            return
        logger.warning(
            "[%s] request_failed: status=%d (%.2fs) %s",
            trace_id,
            status_code,
            duration_s,
            error[:200],
        )
