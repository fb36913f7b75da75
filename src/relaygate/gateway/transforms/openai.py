"""Native -> OpenAI-compatible response transformer.

OpenAI API Reference:
- Chat completion: {id, object: "chat.completion", created, model, choices: [...], usage}
- Choice: {index, message: {role, content}, logprobs, finish_reason}
- Embeddings: {object: "list", data: [{object: "embedding", index, embedding}], model}
- Models: {object: "list", data: [{id, object: "model", created, owned_by}]}
"""

from __future__ import annotations

import secrets
import string
import time
from typing import Any

FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
}

# Joins multiple text parts of one candidate. Chosen so a part boundary can
# still be told apart from whitespace inside the text.
PART_SEPARATOR = "\n\n|>"

_ID_ALPHABET = string.ascii_letters + string.digits


def generate_completion_id() -> str:
    return "chatcmpl-" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(29))


def map_finish_reason(reason: str | None) -> str | None:
    """Translate a native finish reason; unknown values pass through verbatim."""
    if reason is None:
        return None
    return FINISH_REASONS.get(reason, reason)


def join_parts(content: dict[str, Any] | None) -> str | None:
    if not content:
        return None
    parts = content.get("parts") or []
    return PART_SEPARATOR.join(str(part.get("text", "")) for part in parts)


def transform_usage(usage: dict[str, Any] | None) -> dict[str, Any] | None:
    if usage is None:
        return None
    return {
        "completion_tokens": usage.get("candidatesTokenCount"),
        "prompt_tokens": usage.get("promptTokenCount"),
        "total_tokens": usage.get("totalTokenCount"),
    }


def candidate_to_choice(candidate: dict[str, Any], key: str = "message") -> dict[str, Any]:
    """Convert one native candidate into a compat choice.

    ``key`` is "message" for complete responses and "delta" for stream chunks.
    The candidate index defaults to 0 since some backend versions omit it.
    """
    return {
        "index": candidate.get("index") or 0,
        key: {
            "role": "assistant",
            "content": join_parts(candidate.get("content")),
        },
        "logprobs": None,
        "finish_reason": map_finish_reason(candidate.get("finishReason")),
    }


def completion_response(data: dict[str, Any], model: str, completion_id: str) -> dict[str, Any]:
    """Convert a non-streaming generateContent response."""
    return {
        "id": completion_id,
        "choices": [candidate_to_choice(c) for c in data.get("candidates") or []],
        "created": int(time.time()),
        "model": model,
        "object": "chat.completion",
        "usage": transform_usage(data.get("usageMetadata")),
    }


def embeddings_response(data: dict[str, Any], model: str) -> dict[str, Any]:
    """Convert a batchEmbedContents response; ``values[i]`` becomes ``data[i]``."""
    return {
        "object": "list",
        "data": [
            {"object": "embedding", "index": index, "embedding": item.get("values")}
            for index, item in enumerate(data.get("embeddings") or [])
        ],
        "model": model,
    }


def models_response(data: dict[str, Any]) -> dict[str, Any]:
    """Convert a native model listing."""
    created = int(time.time())
    return {
        "object": "list",
        "data": [
            {
                "id": model["name"].removeprefix("models/"),
                "object": "model",
                "created": created,
                "owned_by": "google",
            }
            for model in data.get("models") or []
        ],
    }
