"""HTTP client for the native upstream API.

Uses aiohttp.ClientSession for both JSON calls and SSE streams.

Features:
- Retry with exponential backoff (transport failures and 5xx only)
- Streaming requests retried only while the connection is being opened
- Raw passthrough for native-dialect requests
- Per-request timeout
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, TypeVar

import aiohttp

from relaygate import __version__
from relaygate.gateway.errors import UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")

API_CLIENT = f"relaygate/{__version__}"


@dataclass
class NativeClientConfig:
    """Configuration for the native API client."""

    base_url: str = "https://generativelanguage.googleapis.com"
    api_version: str = "v1beta"

    # Timeouts (seconds)
    connect_timeout: float = 10.0
    read_timeout: float = 300.0

    # Retry configuration
    retry_attempts: int = 3
    retry_base_delay: float = 1.0


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    attempts: int,
    base_delay: float,
    trace_id: str = "-",
) -> T:
    """Run ``fn`` up to ``attempts`` times.

    Only ``UpstreamError.retryable`` failures are retried, with a delay of
    ``base_delay * 2**i`` after attempt ``i``. Anything else, and the last
    error once attempts are exhausted, propagates unchanged.
    """
    last_error: UpstreamError | None = None
    for attempt in range(attempts):
        try:
            return await fn()
        except UpstreamError as e:
            last_error = e
            if not e.retryable:
                raise
            if attempt < attempts - 1:
                delay = base_delay * (2**attempt)
                logger.warning(
                    "[%s] Upstream failed (%s), retrying in %.1fs (attempt %d/%d)",
                    trace_id,
                    e.status_code or "transport",
                    delay,
                    attempt + 1,
                    attempts,
                )
                await asyncio.sleep(delay)

    if last_error is None:
        raise ValueError("attempts must be at least 1")
    raise last_error


@dataclass
class NativeClient:
    """Client for the native generateContent API.

    Example:
        >>> client = NativeClient(NativeClientConfig())
        >>> await client.connect()
        >>> data = await client.generate("gemini-2.0-flash", body, credential="key")
        >>> await client.close()
    """

    config: NativeClientConfig
    _session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        """Initialize the HTTP session."""
        timeout = aiohttp.ClientTimeout(
            connect=self.config.connect_timeout,
            total=self.config.read_timeout,
        )
        self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("Client not connected. Call connect() first.")
        return self._session

    def url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/{self.config.api_version}/{path.lstrip('/')}"

    @staticmethod
    def headers(credential: str) -> dict[str, str]:
        return {
            "x-goog-api-client": API_CLIENT,
            "x-goog-api-key": credential,
            "Content-Type": "application/json",
        }

    async def _request_json(
        self,
        method: str,
        url: str,
        credential: str,
        body: dict[str, Any] | None,
        trace_id: str,
    ) -> dict[str, Any]:
        try:
            async with self.session.request(
                method, url, json=body, headers=self.headers(credential)
            ) as response:
                if response.status != 200:
                    error_body = await response.text()
                    logger.error(
                        "[%s] Upstream error %d: %s", trace_id, response.status, error_body[:500]
                    )
                    raise UpstreamError(
                        f"Upstream returned {response.status}: {error_body}",
                        response.status,
                        error_body,
                    )
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"Upstream request failed: {type(e).__name__}: {e}") from e

    async def request_json(
        self,
        method: str,
        path: str,
        credential: str,
        body: dict[str, Any] | None = None,
        trace_id: str = "-",
    ) -> dict[str, Any]:
        """JSON request against ``{base}/{version}/{path}`` with retry."""
        url = self.url(path)
        logger.debug("[%s] %s %s", trace_id, method, url)
        return await with_retry(
            lambda: self._request_json(method, url, credential, body, trace_id),
            self.config.retry_attempts,
            self.config.retry_base_delay,
            trace_id,
        )

    async def generate(
        self, model: str, body: dict[str, Any], credential: str, trace_id: str = "-"
    ) -> dict[str, Any]:
        return await self.request_json(
            "POST", f"models/{model}:generateContent", credential, body, trace_id
        )

    async def batch_embed(
        self, model_path: str, body: dict[str, Any], credential: str, trace_id: str = "-"
    ) -> dict[str, Any]:
        return await self.request_json(
            "POST", f"{model_path}:batchEmbedContents", credential, body, trace_id
        )

    async def list_models(self, credential: str, trace_id: str = "-") -> dict[str, Any]:
        return await self.request_json("GET", "models", credential, None, trace_id)

    async def _open_stream(
        self, url: str, body: dict[str, Any], credential: str, trace_id: str
    ) -> aiohttp.ClientResponse:
        try:
            response = await self.session.post(url, json=body, headers=self.headers(credential))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"Upstream request failed: {type(e).__name__}: {e}") from e

        if response.status != 200:
            error_body = await response.text()
            response.release()
            logger.error("[%s] Upstream error %d: %s", trace_id, response.status, error_body[:500])
            raise UpstreamError(
                f"Upstream returned {response.status}: {error_body}",
                response.status,
                error_body,
            )
        return response

    @asynccontextmanager
    async def stream_generate(
        self, model: str, body: dict[str, Any], credential: str, trace_id: str = "-"
    ) -> AsyncIterator[aiohttp.ClientResponse]:
        """Open a streamGenerateContent SSE response.

        Retries only cover opening the stream; once bytes flow, a failure is
        final. Leaving the context early (e.g. the client went away) closes
        the upstream connection instead of draining it.
        """
        url = self.url(f"models/{model}:streamGenerateContent") + "?alt=sse"
        response = await with_retry(
            lambda: self._open_stream(url, body, credential, trace_id),
            self.config.retry_attempts,
            self.config.retry_base_delay,
            trace_id,
        )
        try:
            yield response
        finally:
            if response.content.at_eof():
                response.release()
            else:
                logger.debug("[%s] Aborting unfinished upstream stream", trace_id)
                response.close()

    @asynccontextmanager
    async def passthrough(
        self,
        method: str,
        path_qs: str,
        headers: Mapping[str, str],
        data: bytes | None,
        trace_id: str = "-",
    ) -> AsyncIterator[aiohttp.ClientResponse]:
        """Forward a native-dialect request verbatim (no retry).

        ``path_qs`` is the inbound path and query string, which already carry
        the API version.
        """
        url = self.config.base_url.rstrip("/") + path_qs
        logger.debug("[%s] Passthrough %s %s", trace_id, method, url)
        try:
            response = await self.session.request(method, url, headers=dict(headers), data=data)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"Upstream request failed: {type(e).__name__}: {e}") from e
        try:
            yield response
        finally:
            response.close()
