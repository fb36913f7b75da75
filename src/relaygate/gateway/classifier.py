"""Dialect classification for inbound requests.

``classify`` is a pure function over headers, path and query: it decides
whether a request speaks the native dialect (forwarded as-is) or the
OpenAI-compatible dialect (translated), which payload kind it carries, and
which upstream credential it presents.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from relaygate.gateway.errors import Unauthenticated

NATIVE_KEY_HEADER = "x-goog-api-key"
DIALECT_HINT_HEADER = "x-api-format"
NATIVE_HINT_VALUES = frozenset({"gemini", "native"})

# Versioned prefixes of the native REST API. Compat endpoints hosted under
# them (e.g. /v1beta/openai/chat/completions) are not native.
NATIVE_PATH_PREFIXES = ("/v1beta/", "/v1alpha/")
COMPAT_PATH_MARKER = "/openai/"


class Dialect(Enum):
    NATIVE = "native"
    COMPAT = "compat"


class PayloadKind(Enum):
    CHAT = "chat"
    EMBEDDINGS = "embeddings"
    MODEL_LIST = "model_list"
    NATIVE_PASSTHROUGH = "native_passthrough"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RequestContext:
    """Classification result. ``target_model`` is filled in once the body is read."""

    dialect: Dialect
    credential: str
    payload_kind: PayloadKind
    target_model: str | None = None


def _header(headers: Mapping[str, str], name: str) -> str | None:
    # aiohttp's CIMultiDictProxy is case-insensitive already; plain dicts are not
    value = headers.get(name)
    if value is None:
        for key, val in headers.items():
            if key.lower() == name:
                return val
    return value


def is_native_path(path: str) -> bool:
    return path.startswith(NATIVE_PATH_PREFIXES) and COMPAT_PATH_MARKER not in path


def detect_dialect(headers: Mapping[str, str], path: str) -> Dialect:
    if _header(headers, NATIVE_KEY_HEADER):
        return Dialect.NATIVE
    if is_native_path(path):
        return Dialect.NATIVE
    hint = (_header(headers, DIALECT_HINT_HEADER) or "").strip().lower()
    if hint in NATIVE_HINT_VALUES:
        return Dialect.NATIVE
    return Dialect.COMPAT


def extract_credential(
    headers: Mapping[str, str],
    query: Mapping[str, str],
    dialect: Dialect,
) -> str | None:
    """Resolve the upstream credential.

    Precedence: native key header, then the ``key`` query parameter (native
    dialect only), then the Authorization header with any ``Bearer`` prefix
    stripped.
    """
    native_key = _header(headers, NATIVE_KEY_HEADER)
    if native_key:
        return native_key.strip()

    if dialect is Dialect.NATIVE:
        query_key = query.get("key")
        if query_key:
            return query_key

    auth = (_header(headers, "authorization") or "").strip()
    if not auth:
        return None
    scheme, _, token = auth.partition(" ")
    if token and scheme.lower() == "bearer":
        return token.strip() or None
    return auth


def payload_kind_for(dialect: Dialect, path: str) -> PayloadKind:
    if dialect is Dialect.NATIVE:
        return PayloadKind.NATIVE_PASSTHROUGH
    trimmed = path.rstrip("/")
    if trimmed.endswith("/chat/completions"):
        return PayloadKind.CHAT
    if trimmed.endswith("/embeddings"):
        return PayloadKind.EMBEDDINGS
    if trimmed.endswith("/models"):
        return PayloadKind.MODEL_LIST
    return PayloadKind.UNKNOWN


def classify(
    headers: Mapping[str, str],
    path: str,
    query: Mapping[str, str],
) -> RequestContext:
    """Classify an inbound request.

    Raises:
        Unauthenticated: If no credential can be found.
    """
    dialect = detect_dialect(headers, path)
    credential = extract_credential(headers, query, dialect)
    if not credential:
        raise Unauthenticated("API key is required")
    return RequestContext(
        dialect=dialect,
        credential=credential,
        payload_kind=payload_kind_for(dialect, path),
    )


def endpoint_class_for(context: RequestContext, path: str) -> str:
    """Rate-limit class for a classified request."""
    if context.payload_kind is PayloadKind.CHAT:
        return "chat"
    if context.payload_kind is PayloadKind.EMBEDDINGS:
        return "embeddings"
    if context.payload_kind is PayloadKind.NATIVE_PASSTHROUGH:
        if path.endswith((":generateContent", ":streamGenerateContent")):
            return "chat"
        if path.endswith((":embedContent", ":batchEmbedContents")):
            return "embeddings"
    return "default"
