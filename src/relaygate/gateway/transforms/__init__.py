"""Dialect transformers.

This module provides the translation between the OpenAI-compatible dialect
clients speak and the native generateContent dialect the upstream speaks:
request bodies one way, complete responses and SSE streams the other way.
"""

from .native import NativeRequestTransformer, resolve_model, to_generation_config
from .openai import (
    completion_response,
    embeddings_response,
    generate_completion_id,
    map_finish_reason,
    models_response,
)
from .stream import ChunkTranslator, SSEFramer, StreamReframer
from .validation import (
    ChatCompletionRequest,
    EmbeddingsRequest,
    validate_chat_request,
    validate_embeddings_request,
)

__all__ = [
    # Request direction
    "NativeRequestTransformer",
    "resolve_model",
    "to_generation_config",
    # Response direction
    "completion_response",
    "embeddings_response",
    "generate_completion_id",
    "map_finish_reason",
    "models_response",
    # Streaming
    "ChunkTranslator",
    "SSEFramer",
    "StreamReframer",
    # Validation
    "ChatCompletionRequest",
    "EmbeddingsRequest",
    "validate_chat_request",
    "validate_embeddings_request",
]
