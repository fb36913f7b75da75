"""Native SSE stream -> OpenAI-compatible chunk stream.

Two chained stages, both plain stateful objects so they can be driven by
tests without a live connection:

1. ``SSEFramer`` turns arbitrary text fragments into complete
   ``data: <payload>`` record payloads.
2. ``ChunkTranslator`` turns each payload (one native event) into
   ``chat.completion.chunk`` dicts: a preamble the first time a candidate
   ordinal is seen, a delta for each later event with content, and on
   ``finish`` one terminal chunk per ordinal followed by the sentinel.

``StreamReframer`` chains both and encodes the output as SSE records. One
instance serves exactly one upstream stream.
"""

from __future__ import annotations

import codecs
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

from .openai import candidate_to_choice, map_finish_reason, transform_usage

logger = logging.getLogger(__name__)

# One record: "data: <payload>" followed by a blank line (LF, CR or CRLF endings)
SSE_RECORD_RE = re.compile(r"data: ([^\r\n]*)(?:\n\n|\r\r|\r\n\r\n)")

SSE_DELIMITER = "\n\n"
DONE_RECORD = "data: [DONE]" + SSE_DELIMITER


def encode_sse(data: dict[str, Any]) -> str:
    return "data: " + json.dumps(data) + SSE_DELIMITER


@dataclass
class SSEFramer:
    """Stage A: extracts record payloads from a fragmented text stream."""

    buffer: str = ""
    malformed_tail: str | None = None

    def push(self, text: str) -> list[str]:
        if not text:
            return []
        self.buffer += text
        payloads = []
        while True:
            match = SSE_RECORD_RE.match(self.buffer)
            if not match:
                break
            payloads.append(match.group(1))
            self.buffer = self.buffer[match.end():]
        return payloads

    def finish(self) -> list[str]:
        """Emit any unterminated leftover so it is not silently dropped."""
        if not self.buffer:
            return []
        self.malformed_tail = self.buffer
        self.buffer = ""
        logger.error("Unterminated data at end of stream: %r", self.malformed_tail[:200])
        return [self.malformed_tail]


def _has_content(candidate: dict[str, Any]) -> bool:
    content = candidate.get("content")
    return bool(content and content.get("parts"))


def _check_event(event: Any) -> None:
    """Raise TypeError unless ``event`` has the shape the translator reads."""
    if not isinstance(event, dict):
        raise TypeError(f"event is {type(event).__name__}, expected object")
    candidates = event["candidates"]
    if not isinstance(candidates, list):
        raise TypeError(f"candidates is {type(candidates).__name__}, expected list")
    for candidate in candidates:
        if not isinstance(candidate, dict):
            raise TypeError(f"candidate is {type(candidate).__name__}, expected object")
        reason = candidate.get("finishReason")
        if reason is not None and not isinstance(reason, str):
            raise TypeError(f"finishReason is {type(reason).__name__}, expected string")
        index = candidate.get("index")
        if index is not None and (not isinstance(index, int) or isinstance(index, bool)):
            raise TypeError(f"candidate index is {type(index).__name__}, expected integer")
        content = candidate.get("content")
        if content is None:
            continue
        if not isinstance(content, dict):
            raise TypeError(f"content is {type(content).__name__}, expected object")
        parts = content.get("parts")
        if parts is None:
            continue
        if not isinstance(parts, list) or not all(isinstance(p, dict) for p in parts):
            raise TypeError("content.parts must be a list of objects")
    usage = event.get("usageMetadata")
    if usage is not None and not isinstance(usage, dict):
        raise TypeError(f"usageMetadata is {type(usage).__name__}, expected object")


@dataclass
class ChunkTranslator:
    """Stage B: translates native events into compat chunk dicts.

    ``last_events`` holds, per candidate ordinal, the last event seen for it
    along with that candidate; it is replayed once as the terminal chunk.
    """

    response_id: str
    model: str
    include_usage: bool = False
    created: int = field(default_factory=lambda: int(time.time()))
    last_events: dict[int, tuple[dict[str, Any], dict[str, Any]]] = field(default_factory=dict)

    def push(self, payload: str) -> list[dict[str, Any]]:
        try:
            event = json.loads(payload)
            _check_event(event)
            candidates = event["candidates"]
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Unparseable stream event %r: %s", payload[:200], e)
            event = self._error_event(e)
            candidates = event["candidates"]

        chunks = []
        for candidate in candidates:
            ordinal = candidate.get("index") or 0
            if ordinal not in self.last_events:
                chunks.append(self._chunk(event, candidate, role="preamble"))
            elif _has_content(candidate):
                chunks.append(self._chunk(event, candidate, role="delta"))
            self.last_events[ordinal] = (event, candidate)
        return chunks

    def finish(self) -> list[dict[str, Any]]:
        return [
            self._chunk(event, candidate, role="terminal")
            for _, (event, candidate) in sorted(self.last_events.items())
        ]

    def _error_event(self, error: Exception) -> dict[str, Any]:
        ordinals = sorted(self.last_events) or [0]
        return {
            "candidates": [
                {
                    "index": ordinal,
                    "finishReason": "error",
                    "content": {"parts": [{"text": str(error)}]},
                }
                for ordinal in ordinals
            ]
        }

    def _chunk(self, event: dict[str, Any], candidate: dict[str, Any], role: str) -> dict[str, Any]:
        choice = candidate_to_choice(candidate, key="delta")
        if role == "terminal":
            choice["delta"] = {}
            choice["finish_reason"] = map_finish_reason(candidate.get("finishReason"))
        else:
            choice["finish_reason"] = None
            if role == "preamble":
                choice["delta"]["content"] = ""
            else:
                del choice["delta"]["role"]

        chunk: dict[str, Any] = {
            "id": self.response_id,
            "choices": [choice],
            "created": self.created,
            "model": self.model,
            "object": "chat.completion.chunk",
        }
        if self.include_usage:
            usage = event.get("usageMetadata") if role == "terminal" else None
            chunk["usage"] = transform_usage(usage)
        return chunk


class StreamReframer:
    """Single-use pipeline from upstream SSE bytes to compat SSE records.

    Example:
        >>> reframer = StreamReframer(response_id="chatcmpl-1", model="gemini-2.0-flash")
        >>> event = b'{"candidates": [{"content": {"parts": [{"text": "Hi"}]}}]}'
        >>> records = reframer.push(b"data: " + event + b"\\n\\n")
        >>> records += reframer.finish()
        >>> records[-1]
        'data: [DONE]\\n\\n'
    """

    def __init__(
        self,
        response_id: str,
        model: str,
        include_usage: bool = False,
        created: int | None = None,
    ):
        self.framer = SSEFramer()
        self.translator = ChunkTranslator(
            response_id=response_id,
            model=model,
            include_usage=include_usage,
            created=int(time.time()) if created is None else created,
        )
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._finished = False

    def push(self, chunk: bytes | str) -> list[str]:
        if self._finished:
            raise RuntimeError("StreamReframer cannot be reused after finish()")
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        records = []
        for payload in self.framer.push(text):
            records.extend(encode_sse(c) for c in self.translator.push(payload))
        return records

    def finish(self) -> list[str]:
        if self._finished:
            raise RuntimeError("StreamReframer.finish() called twice")
        self._finished = True
        records = []
        tail = self._decoder.decode(b"", final=True)
        for payload in self.framer.push(tail) + self.framer.finish():
            records.extend(encode_sse(c) for c in self.translator.push(payload))
        records.extend(encode_sse(c) for c in self.translator.finish())
        records.append(DONE_RECORD)
        return records

    @property
    def malformed_tail(self) -> str | None:
        return self.framer.malformed_tail
