"""OpenAI-compatible -> native (generateContent) request transformer.

Converts Chat Completions and Embeddings request bodies into the native
API's request bodies.

Native API Reference:
- Request: POST /{version}/models/{model}:generateContent with
  {contents, system_instruction, safetySettings, generationConfig}
- Contents: [{role: "user"|"model", parts: [{text} | {inlineData: {mimeType, data}}]}]
- Embeddings: POST /{version}/models/{model}:batchEmbedContents with {requests: [...]}
"""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from relaygate.gateway.errors import (
    ImageFetchError,
    TransformError,
    UnknownContentType,
    UnsupportedFormat,
)

if TYPE_CHECKING:
    import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-1.5-pro-latest"
DEFAULT_EMBEDDINGS_MODEL = "text-embedding-004"

# Model ids that already name a native model family
NATIVE_MODEL_PREFIXES = ("gemini-", "gemma-", "learnlm-")

HARM_CATEGORIES = (
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_CIVIC_INTEGRITY",
)

# Every category is relaxed to BLOCK_NONE: the gateway forwards, it does not moderate
SAFETY_SETTINGS = [{"category": c, "threshold": "BLOCK_NONE"} for c in HARM_CATEGORIES]

FIELDS_MAP = {
    "stop": "stopSequences",
    "n": "candidateCount",
    "max_tokens": "maxOutputTokens",
    "max_completion_tokens": "maxOutputTokens",
    "temperature": "temperature",
    "top_p": "topP",
    "top_k": "topK",
    "frequency_penalty": "frequencyPenalty",
    "presence_penalty": "presencePenalty",
}

DATA_URI_RE = re.compile(r"^data:(?P<mime_type>.*?)(;base64)?,(?P<data>.*)$", re.DOTALL)


def resolve_model(model: Any, default: str = DEFAULT_MODEL) -> str:
    """Map a requested model name onto a native model id.

    ``models/x`` becomes ``x``; native family names pass through; anything
    else (including non-strings) falls back to ``default``.
    """
    if not isinstance(model, str):
        return default
    if model.startswith("models/"):
        return model[len("models/"):]
    if model.startswith(NATIVE_MODEL_PREFIXES):
        return model
    return default


def resolve_embeddings_model(
    model: str, default: str = DEFAULT_EMBEDDINGS_MODEL
) -> tuple[str, str]:
    """Return (native model path, model name to report back)."""
    if model.startswith("models/"):
        return model, model
    return f"models/{default}", default


def to_generation_config(body: dict[str, Any]) -> dict[str, Any]:
    """Map sampling parameters and ``response_format`` onto generationConfig.

    Raises:
        UnsupportedFormat: If ``response_format.type`` is not recognized.
    """
    config: dict[str, Any] = {}
    for key, value in body.items():
        native_key = FIELDS_MAP.get(key)
        if native_key:
            config[native_key] = value

    # candidateCount is not supported for streaming
    if body.get("stream"):
        config.pop("candidateCount", None)

    response_format = body.get("response_format")
    if response_format:
        format_type = response_format.get("type")
        if format_type == "json_schema":
            json_schema = response_format.get("json_schema") or {}
            if not isinstance(json_schema, dict):
                raise UnsupportedFormat('"json_schema" must be an object')
            schema = json_schema.get("schema")
            config["responseSchema"] = schema
            if isinstance(schema, dict) and "enum" in schema:
                config["responseMimeType"] = "text/x.enum"
            else:
                config["responseMimeType"] = "application/json"
        elif format_type == "json_object":
            config["responseMimeType"] = "application/json"
        elif format_type == "text":
            config["responseMimeType"] = "text/plain"
        else:
            raise UnsupportedFormat(f"Unsupported response_format.type: {format_type!r}")

    return config


@dataclass
class NativeRequestTransformer:
    """Transforms compat request bodies into native request bodies.

    ``session`` is only needed for ``image_url`` parts pointing at http(s)
    URLs; inline ``data:`` URIs are decoded without network access.
    """

    default_model: str = DEFAULT_MODEL
    default_embeddings_model: str = DEFAULT_EMBEDDINGS_MODEL
    session: aiohttp.ClientSession | None = None

    async def to_native(self, body: dict[str, Any]) -> dict[str, Any]:
        """Convert a Chat Completions body to a generateContent body."""
        system_instruction, contents = await self.transform_messages(body.get("messages") or [])

        result: dict[str, Any] = {}
        if system_instruction is not None:
            result["system_instruction"] = system_instruction
        result["contents"] = contents
        result["safetySettings"] = SAFETY_SETTINGS
        result["generationConfig"] = to_generation_config(body)
        return result

    async def transform_messages(
        self, messages: list[dict[str, Any]]
    ) -> tuple[dict[str, Any] | None, list[dict[str, Any]]]:
        system_instruction: dict[str, Any] | None = None
        contents: list[dict[str, Any]] = []

        for message in messages:
            if message.get("role") == "system":
                system_instruction = {"parts": await self.transform_parts(message.get("content"))}
                continue
            role = "model" if message.get("role") == "assistant" else "user"
            parts = await self.transform_parts(message.get("content"))
            contents.append({"role": role, "parts": parts})

        # The backend rejects an empty turn sequence
        if system_instruction is not None and not contents:
            contents.append({"role": "model", "parts": [{"text": " "}]})

        return system_instruction, contents

    async def transform_parts(self, content: Any) -> list[dict[str, Any]]:
        if not isinstance(content, list):
            return [{"text": content}]

        parts: list[dict[str, Any]] = []
        for item in content:
            part_type = item.get("type")
            if part_type == "text":
                parts.append({"text": item.get("text")})
            elif part_type == "image_url":
                image = item.get("image_url")
                url = image.get("url") if isinstance(image, dict) else None
                if not isinstance(url, str):
                    raise TransformError('"image_url" part is missing "image_url.url"')
                parts.append(await self.parse_image(url))
            elif part_type == "input_audio":
                audio = item.get("input_audio")
                if not isinstance(audio, dict) or not all(
                    isinstance(audio.get(key), str) for key in ("format", "data")
                ):
                    raise TransformError(
                        '"input_audio" part requires "input_audio.format" and "input_audio.data"'
                    )
                parts.append(
                    {
                        "inlineData": {
                            "mimeType": f"audio/{audio['format']}",
                            "data": audio["data"],
                        }
                    }
                )
            else:
                raise UnknownContentType(f'Unknown "content" item type: "{part_type}"')

        # The backend requires at least one text part
        if content and all(item.get("type") == "image_url" for item in content):
            parts.append({"text": ""})

        return parts

    async def parse_image(self, url: str) -> dict[str, Any]:
        if url.startswith(("http://", "https://")):
            mime_type, data = await self._fetch_image(url)
        else:
            match = DATA_URI_RE.match(url)
            if not match:
                raise ImageFetchError(f"Invalid image data: {url[:64]}")
            mime_type, data = match.group("mime_type"), match.group("data")
        return {"inlineData": {"mimeType": mime_type, "data": data}}

    async def _fetch_image(self, url: str) -> tuple[str, str]:
        import aiohttp

        if self.session is None:
            raise ImageFetchError("Error fetching image: no HTTP session available")
        try:
            async with self.session.get(url) as response:
                if response.status != 200:
                    raise ImageFetchError(
                        f"Error fetching image: {response.status} {response.reason} ({url})"
                    )
                mime_type = response.headers.get("Content-Type", "application/octet-stream")
                payload = await response.read()
        except aiohttp.ClientError as e:
            raise ImageFetchError(f"Error fetching image: {e}") from e

        logger.debug("Fetched image %s (%d bytes, %s)", url, len(payload), mime_type)
        return mime_type, base64.b64encode(payload).decode("ascii")

    def to_native_embeddings(self, body: dict[str, Any]) -> tuple[str, str, dict[str, Any]]:
        """Convert an Embeddings body to a batchEmbedContents body.

        Returns:
            (native model path, model name to report back, request body)
        """
        inputs = body["input"]
        if not isinstance(inputs, list):
            inputs = [inputs]

        model_path, reported_model = resolve_embeddings_model(
            body["model"], self.default_embeddings_model
        )
        requests = []
        for text in inputs:
            request: dict[str, Any] = {"model": model_path, "content": {"parts": [{"text": text}]}}
            if body.get("dimensions") is not None:
                request["outputDimensionality"] = body["dimensions"]
            requests.append(request)

        return model_path, reported_model, {"requests": requests}
