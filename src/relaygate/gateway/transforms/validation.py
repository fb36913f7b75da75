"""Pydantic models for OpenAI-compatible request validation.

These models check the envelope of incoming compat requests before any
translation happens. Unknown fields are allowed and passed through to the
transformer, which decides what to map and what to drop.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

MAX_MESSAGES = 100
MAX_TEXT_CHARS = 100_000
MAX_EMBEDDING_INPUTS = 100
IMAGE_URL_SCHEMES = ("http://", "https://", "data:")


class ContentPart(BaseModel):
    """One element of a multi-part message content list.

    The ``type`` is not restricted here: unknown part types are rejected by
    the request transformer with a more specific error.
    """

    model_config = ConfigDict(extra="allow")

    type: str
    text: str | None = None
    image_url: dict[str, Any] | None = None
    input_audio: dict[str, Any] | None = None

    @field_validator("text")
    @classmethod
    def validate_text_size(cls, v: str | None) -> str | None:
        if v is not None and len(v) > MAX_TEXT_CHARS:
            raise ValueError(
                f"text content too large, maximum allowed: {MAX_TEXT_CHARS} characters"
            )
        return v

    @field_validator("image_url")
    @classmethod
    def validate_image_url(cls, v: dict[str, Any] | None) -> dict[str, Any] | None:
        if v is None:
            return v
        url = v.get("url")
        if not isinstance(url, str) or not url.startswith(IMAGE_URL_SCHEMES):
            raise ValueError("invalid image URL format")
        return v

    @model_validator(mode="after")
    def validate_payload_present(self) -> "ContentPart":
        if self.type == "image_url" and self.image_url is None:
            raise ValueError("image_url part requires an image_url object")
        if self.type == "input_audio":
            audio = self.input_audio or {}
            for key in ("format", "data"):
                if not isinstance(audio.get(key), str):
                    raise ValueError(f"input_audio part requires input_audio.{key}")
        return self


class ChatMessage(BaseModel):
    """A message in the conversation."""

    model_config = ConfigDict(extra="allow")

    role: str
    content: str | list[ContentPart] | None = None

    @field_validator("content")
    @classmethod
    def validate_content_size(cls, v: Any) -> Any:
        if isinstance(v, str) and len(v) > MAX_TEXT_CHARS:
            raise ValueError(
                f"message content too large, maximum allowed: {MAX_TEXT_CHARS} characters"
            )
        return v


class ChatCompletionRequest(BaseModel):
    """Chat Completions request body."""

    model_config = ConfigDict(extra="allow")

    messages: list[ChatMessage]
    model: str | None = None
    stream: bool = False
    stream_options: dict[str, Any] | None = None
    response_format: dict[str, Any] | None = None

    @field_validator("messages")
    @classmethod
    def validate_messages(cls, v: list[ChatMessage]) -> list[ChatMessage]:
        if not v:
            raise ValueError("messages list cannot be empty")
        if len(v) > MAX_MESSAGES:
            raise ValueError(f"too many messages, maximum allowed: {MAX_MESSAGES}")
        return v

    @field_validator("response_format")
    @classmethod
    def validate_response_format(cls, v: dict[str, Any] | None) -> dict[str, Any] | None:
        if v is not None and v.get("json_schema") is not None:
            if not isinstance(v["json_schema"], dict):
                raise ValueError("json_schema must be an object")
        return v


class EmbeddingsRequest(BaseModel):
    """Embeddings request body."""

    model_config = ConfigDict(extra="allow")

    model: str
    input: str | list[Any]
    dimensions: int | None = None

    @field_validator("input")
    @classmethod
    def validate_input(cls, v: Any) -> Any:
        if isinstance(v, list) and len(v) > MAX_EMBEDDING_INPUTS:
            raise ValueError(f"too many input items, maximum allowed: {MAX_EMBEDDING_INPUTS}")
        return v


def _format_errors(err: ValidationError) -> list[str]:
    errors = []
    for item in err.errors():
        location = ".".join(str(part) for part in item["loc"])
        message = item["msg"].removeprefix("Value error, ")
        errors.append(f"{location}: {message}" if location else message)
    return errors


def validate_chat_request(body: dict[str, Any]) -> list[str]:
    """Validate a chat completions body.

    Returns:
        List of validation error messages (empty if valid)
    """
    try:
        ChatCompletionRequest.model_validate(body)
    except ValidationError as e:
        return _format_errors(e)
    return []


def validate_embeddings_request(body: dict[str, Any]) -> list[str]:
    """Validate an embeddings body.

    Returns:
        List of validation error messages (empty if valid)
    """
    try:
        EmbeddingsRequest.model_validate(body)
    except ValidationError as e:
        return _format_errors(e)
    return []
