"""Translation gateway server.

Accepts OpenAI-compatible Chat Completions, Embeddings and Models requests,
translates them to the native generateContent API and translates the
responses back. Native-dialect requests are forwarded untouched apart from
the credential header, and websocket upgrades are relayed to the upstream
realtime endpoint.

Request flow:
1. CORS preflight is answered directly
2. Abuse screening (blocked clients, sensitive paths)
3. Websocket upgrade -> realtime relay
4. Dialect classification and credential extraction
5. Per-endpoint-class rate limit
6. Translate and forward, or pass through
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import aiohttp
from aiohttp import web

from relaygate.gateway.admission import (
    DEFAULT_RATE_LIMITS,
    AdmissionController,
    PathDetector,
    RateLimiter,
    RateLimitPolicy,
    ScanDetector,
)
from relaygate.gateway.audit import SecurityAuditLogger
from relaygate.gateway.cache import TTLCache
from relaygate.gateway.classifier import (
    NATIVE_KEY_HEADER,
    Dialect,
    PayloadKind,
    RequestContext,
    classify,
    endpoint_class_for,
)
from relaygate.gateway.clients.native_client import NativeClient, NativeClientConfig
from relaygate.gateway.errors import (
    GatewayError,
    InvalidRequest,
    MethodNotAllowed,
    NotFound,
    RateLimited,
    Unauthenticated,
    UpstreamError,
    error_body,
)
from relaygate.gateway.relay import RelaySession, to_realtime_url
from relaygate.gateway.tracing import RequestTracer
from relaygate.gateway.transforms import (
    NativeRequestTransformer,
    StreamReframer,
    completion_response,
    embeddings_response,
    generate_completion_id,
    models_response,
    resolve_model,
    validate_chat_request,
    validate_embeddings_request,
)
from relaygate.gateway.transforms.native import DEFAULT_EMBEDDINGS_MODEL, DEFAULT_MODEL
from relaygate.gateway.transforms.stream import DONE_RECORD, encode_sse

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Max-Age": "86400",
}
PREFLIGHT_HEADERS = {**CORS_HEADERS, "Access-Control-Allow-Headers": "*"}

# Request headers never forwarded upstream on passthrough
DROPPED_REQUEST_HEADERS = frozenset(
    {
        "host",
        "connection",
        "authorization",
        "x-api-format",
        NATIVE_KEY_HEADER,
        "content-length",
        "transfer-encoding",
        "keep-alive",
        "upgrade",
    }
)

# Response headers not copied back to the client on passthrough
DROPPED_RESPONSE_HEADERS = frozenset(
    {"content-length", "content-encoding", "transfer-encoding", "connection", "keep-alive"}
)

ADMIN_PREFIX = "/admin/security/"
MAX_ALERTS = 25


@dataclass
class GatewayConfig:
    """Configuration for the gateway server."""

    host: str = "127.0.0.1"
    port: int = 8080

    # Upstream configuration
    upstream_base_url: str = "https://generativelanguage.googleapis.com"
    api_version: str = "v1beta"
    default_model: str = DEFAULT_MODEL
    default_embeddings_model: str = DEFAULT_EMBEDDINGS_MODEL

    # Client configuration
    connect_timeout: float = 10.0
    read_timeout: float = 300.0
    retry_attempts: int = 3
    retry_base_delay: float = 1.0

    # Request limits
    max_body_size: int = 20 * 1024 * 1024  # 20MB
    rate_limits: dict[str, RateLimitPolicy] = field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMITS)
    )

    # Scan detection
    scan_threshold: int = 3
    scan_window: float = 30.0
    block_duration: float = 3600.0

    # Caching (seconds)
    models_cache_ttl: float = 1800.0
    embeddings_cache_ttl: float = 300.0
    cache_max_entries: int = 1024

    # Security monitor endpoints are disabled without a token
    admin_token: str | None = None

    # Debug: save translated bodies to files
    debug_dir: str | None = None

    @property
    def realtime_base_url(self) -> str:
        return to_realtime_url(self.upstream_base_url.rstrip("/"))


def client_identity(request: web.Request) -> str:
    """Best-effort client address: proxy headers first, then the peer."""
    cf_ip = request.headers.get("CF-Connecting-IP")
    if cf_ip:
        return cf_ip.strip()
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.remote or "unknown"


def is_websocket_upgrade(request: web.Request) -> bool:
    return request.headers.get("Upgrade", "").lower() == "websocket"


@web.middleware
async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    """Single boundary turning every failure into the JSON error body."""
    try:
        return await handler(request)
    except GatewayError as e:
        headers = {}
        if isinstance(e, RateLimited):
            headers["Retry-After"] = str(e.retry_after)
        logger.info("%s %s -> %d %s", request.method, request.path, e.status, e)
        return web.json_response(e.to_dict(), status=e.status, headers=headers)
    except UpstreamError as e:
        status = e.status_code or 502
        logger.warning(
            "%s %s -> upstream %s", request.method, request.path, e.status_code or "failure"
        )
        return web.json_response(e.to_dict(), status=status)
    except web.HTTPException as e:
        if e.status < 400:
            raise
        message = e.text if e.text else e.reason
        return web.json_response(error_body(message, e.status), status=e.status)
    except Exception as e:
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return web.json_response(error_body(f"Internal error: {e}", 500), status=500)


@web.middleware
async def preflight_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    if request.method == "OPTIONS":
        return web.Response(status=204, headers=PREFLIGHT_HEADERS)
    return await handler(request)


async def _apply_cors(request: web.Request, response: web.StreamResponse) -> None:
    for name, value in CORS_HEADERS.items():
        response.headers.setdefault(name, value)


@dataclass
class GatewayServer:
    """OpenAI-compatible front for the native generative API.

    Example:
        >>> config = GatewayConfig(port=8080, admin_token="secret")
        >>> server = GatewayServer(config=config)
        >>> await server.serve()
    """

    config: GatewayConfig
    _app: web.Application | None = None
    _runner: web.AppRunner | None = None
    _client: NativeClient | None = None
    _shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    _tracer: RequestTracer = field(init=False)
    _cache: TTLCache = field(init=False)
    _audit: SecurityAuditLogger = field(init=False)
    _scan_detector: ScanDetector = field(init=False)
    _admission: AdmissionController = field(init=False)

    def __post_init__(self) -> None:
        self._tracer = RequestTracer(debug_dir=self.config.debug_dir)
        self._cache = TTLCache(
            default_ttl=self.config.embeddings_cache_ttl,
            max_entries=self.config.cache_max_entries,
        )
        self._audit = SecurityAuditLogger()
        self._scan_detector = ScanDetector(
            scan_threshold=self.config.scan_threshold,
            scan_window=self.config.scan_window,
            block_duration=self.config.block_duration,
        )
        self._admission = AdmissionController(
            rate_limiter=RateLimiter(self.config.rate_limits),
            scan_detector=self._scan_detector,
            path_detector=PathDetector(
                exempt_paths=frozenset(
                    {"/health", ADMIN_PREFIX + "summary", ADMIN_PREFIX + "alerts"}
                ),
            ),
            audit=self._audit,
        )

    @property
    def port(self) -> int | None:
        """Bound port once started (useful with port 0)."""
        if self._runner is None or not self._runner.addresses:
            return None
        return self._runner.addresses[0][1]

    def create_app(self) -> web.Application:
        app = web.Application(
            client_max_size=self.config.max_body_size,
            middlewares=[error_middleware, preflight_middleware, self._screening_middleware()],
        )
        app.on_response_prepare.append(_apply_cors)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get(ADMIN_PREFIX + "summary", self._handle_security_summary)
        app.router.add_get(ADMIN_PREFIX + "alerts", self._handle_security_alerts)
        app.router.add_route("*", "/{tail:.*}", self._handle_gateway)
        return app

    async def start(self) -> None:
        """Connect the upstream client and start listening."""
        self._client = NativeClient(
            config=NativeClientConfig(
                base_url=self.config.upstream_base_url,
                api_version=self.config.api_version,
                connect_timeout=self.config.connect_timeout,
                read_timeout=self.config.read_timeout,
                retry_attempts=self.config.retry_attempts,
                retry_base_delay=self.config.retry_base_delay,
            )
        )
        await self._client.connect()

        self._app = self.create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        logger.info(
            "Gateway listening on %s:%s -> %s",
            self.config.host,
            self.port,
            self.config.upstream_base_url,
        )

    async def serve(self) -> None:
        """Start the gateway and run until shutdown is requested."""
        await self.start()
        try:
            await self._shutdown_event.wait()
            logger.info("Gateway shutdown requested")
        finally:
            await self.stop()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def stop(self) -> None:
        """Stop the gateway."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        if self._client:
            await self._client.close()
            self._client = None

    @property
    def client(self) -> NativeClient:
        if self._client is None:
            raise UpstreamError("Upstream client not initialized", 503)
        return self._client

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _screening_middleware(self) -> Any:
        admission = self._admission

        @web.middleware
        async def screening_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
            identity = client_identity(request)
            request["client_identity"] = identity
            admission.screen(identity, request.raw_path)
            return await handler(request)

        return screening_middleware

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def _handle_gateway(self, request: web.Request) -> web.StreamResponse:
        """Catch-all: websocket relay, native passthrough or compat translation."""
        identity = request["client_identity"]
        if is_websocket_upgrade(request):
            return await self._handle_realtime(request)

        ctx = classify(request.headers, request.path, request.query)
        if ctx.payload_kind is PayloadKind.UNKNOWN:
            raise NotFound("404 Not Found")

        self._admission.admit(identity, endpoint_class_for(ctx, request.path))

        if ctx.dialect is Dialect.NATIVE:
            return await self._handle_passthrough(request, ctx)
        if ctx.payload_kind is PayloadKind.CHAT:
            self._require_method(request, "POST")
            return await self._handle_chat(request, ctx)
        if ctx.payload_kind is PayloadKind.EMBEDDINGS:
            self._require_method(request, "POST")
            return await self._handle_embeddings(request, ctx)
        self._require_method(request, "GET")
        return await self._handle_models(request, ctx)

    @staticmethod
    def _require_method(request: web.Request, method: str) -> None:
        if request.method != method:
            raise MethodNotAllowed(f"Method {request.method} not allowed, use {method}")

    @staticmethod
    async def _read_json(request: web.Request) -> tuple[bytes, dict[str, Any]]:
        raw = await request.read()
        try:
            body = json.loads(raw)
        except ValueError as e:
            raise InvalidRequest(f"Invalid JSON: {e}") from e
        if not isinstance(body, dict):
            raise InvalidRequest("Request body must be a JSON object")
        return raw, body

    def _transformer(self) -> NativeRequestTransformer:
        return NativeRequestTransformer(
            default_model=self.config.default_model,
            default_embeddings_model=self.config.default_embeddings_model,
            session=self.client.session,
        )

    # ------------------------------------------------------------------
    # Chat completions
    # ------------------------------------------------------------------

    async def _handle_chat(self, request: web.Request, ctx: RequestContext) -> web.StreamResponse:
        """Handle POST .../chat/completions."""
        started = time.monotonic()
        _, body = await self._read_json(request)
        trace_id = self._tracer.generate_trace_id("chat", body)

        validation_errors = validate_chat_request(body)
        if validation_errors:
            raise InvalidRequest("; ".join(validation_errors))

        self._tracer.save_debug(trace_id, "1_compat_request.json", body)
        native_body = await self._transformer().to_native(body)
        model = resolve_model(body.get("model"), self.config.default_model)
        self._tracer.save_debug(trace_id, "2_native_request.json", native_body)

        is_streaming = bool(body.get("stream"))
        logger.info(
            "[%s] Chat: model=%s -> %s, messages=%d, stream=%s",
            trace_id,
            body.get("model"),
            model,
            len(body.get("messages") or []),
            is_streaming,
        )

        if is_streaming:
            stream_options = body.get("stream_options") or {}
            return await self._stream_chat(
                request,
                ctx,
                model,
                native_body,
                trace_id,
                include_usage=bool(stream_options.get("include_usage")),
            )

        data = await self.client.generate(model, native_body, ctx.credential, trace_id)
        result = completion_response(data, model, generate_completion_id())
        self._tracer.save_debug(trace_id, "3_compat_response.json", result)
        self._tracer.log_response(trace_id, 200, time.monotonic() - started)
        return web.json_response(result, headers={"X-Trace-Id": trace_id})

    async def _stream_chat(
        self,
        request: web.Request,
        ctx: RequestContext,
        model: str,
        native_body: dict[str, Any],
        trace_id: str,
        include_usage: bool,
    ) -> web.StreamResponse:
        """Relay the upstream SSE stream through a StreamReframer.

        Failures before the stream opens surface as a normal error response;
        after that they are reported in-band followed by the sentinel.
        """
        started = time.monotonic()
        async with self.client.stream_generate(
            model, native_body, ctx.credential, trace_id
        ) as upstream:
            response = web.StreamResponse(
                status=200,
                headers={
                    "Content-Type": "text/event-stream",
                    "Cache-Control": "no-cache",
                    "Connection": "keep-alive",
                    "X-Trace-Id": trace_id,
                },
            )
            await response.prepare(request)

            reframer = StreamReframer(
                response_id=generate_completion_id(),
                model=model,
                include_usage=include_usage,
            )
            error: str | None = None
            try:
                async for chunk in upstream.content.iter_any():
                    for record in reframer.push(chunk):
                        await response.write(record.encode())
                trailer = reframer.finish()
            except ConnectionResetError:
                logger.debug("[%s] Client disconnected during streaming", trace_id)
                return response
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                error = f"Upstream stream failed: {type(e).__name__}: {e}"
                logger.error("[%s] %s", trace_id, error)
                trailer = [encode_sse(UpstreamError(error).to_dict()), DONE_RECORD]

            if reframer.malformed_tail is not None:
                self._tracer.save_debug(
                    trace_id, "3_malformed_tail.json", {"tail": reframer.malformed_tail}
                )
            try:
                for record in trailer:
                    await response.write(record.encode())
                await response.write_eof()
            except ConnectionResetError:
                logger.debug("[%s] Client disconnected before end of stream", trace_id)

        self._tracer.log_response(trace_id, 200, time.monotonic() - started, error)
        return response

    # ------------------------------------------------------------------
    # Embeddings and models
    # ------------------------------------------------------------------

    async def _handle_embeddings(
        self, request: web.Request, ctx: RequestContext
    ) -> web.Response:
        """Handle POST .../embeddings; cached by the literal request body."""
        started = time.monotonic()
        raw, body = await self._read_json(request)
        trace_id = self._tracer.generate_trace_id("embeddings", body)

        validation_errors = validate_embeddings_request(body)
        if validation_errors:
            raise InvalidRequest("; ".join(validation_errors))

        cache_key = "embeddings:" + raw.decode("utf-8", errors="replace")
        cached = self._cache.get(cache_key)
        if cached is not None:
            logger.debug("[%s] Embeddings cache hit", trace_id)
            return web.Response(
                text=cached,
                content_type="application/json",
                headers={"X-Trace-Id": trace_id, "X-Cache": "HIT"},
            )

        model_path, reported_model, native_body = self._transformer().to_native_embeddings(body)
        self._tracer.save_debug(trace_id, "2_native_request.json", native_body)

        data = await self.client.batch_embed(model_path, native_body, ctx.credential, trace_id)
        payload = json.dumps(embeddings_response(data, reported_model))
        self._cache.set(cache_key, payload, ttl=self.config.embeddings_cache_ttl)

        self._tracer.log_response(trace_id, 200, time.monotonic() - started)
        return web.Response(
            text=payload,
            content_type="application/json",
            headers={"X-Trace-Id": trace_id, "X-Cache": "MISS"},
        )

    async def _handle_models(self, request: web.Request, ctx: RequestContext) -> web.Response:
        """Handle GET .../models; cached per credential."""
        trace_id = self._tracer.generate_trace_id("models")
        digest = hashlib.sha256(ctx.credential.encode()).hexdigest()[:16]
        cache_key = f"models:{digest}"

        cached = self._cache.get(cache_key)
        if cached is not None:
            return web.Response(
                text=cached,
                content_type="application/json",
                headers={"X-Trace-Id": trace_id, "X-Cache": "HIT"},
            )

        data = await self.client.list_models(ctx.credential, trace_id)
        payload = json.dumps(models_response(data))
        self._cache.set(cache_key, payload, ttl=self.config.models_cache_ttl)
        return web.Response(
            text=payload,
            content_type="application/json",
            headers={"X-Trace-Id": trace_id, "X-Cache": "MISS"},
        )

    # ------------------------------------------------------------------
    # Native passthrough and realtime relay
    # ------------------------------------------------------------------

    async def _handle_passthrough(
        self, request: web.Request, ctx: RequestContext
    ) -> web.StreamResponse:
        """Forward a native request, rewriting only the credential header."""
        trace_id = self._tracer.generate_trace_id("native")
        headers = {
            name: value
            for name, value in request.headers.items()
            if name.lower() not in DROPPED_REQUEST_HEADERS
        }
        headers[NATIVE_KEY_HEADER] = ctx.credential
        data = await request.read() if request.can_read_body else None

        logger.info("[%s] Passthrough %s %s", trace_id, request.method, request.path)
        async with self.client.passthrough(
            request.method, request.path_qs, headers, data, trace_id
        ) as upstream:
            response = web.StreamResponse(status=upstream.status, reason=upstream.reason)
            for name, value in upstream.headers.items():
                lowered = name.lower()
                if lowered in DROPPED_RESPONSE_HEADERS or lowered.startswith("access-control-"):
                    continue
                response.headers.add(name, value)
            response.headers["X-Trace-Id"] = trace_id
            await response.prepare(request)
            try:
                async for chunk in upstream.content.iter_any():
                    await response.write(chunk)
                await response.write_eof()
            except ConnectionResetError:
                logger.debug("[%s] Client disconnected during passthrough", trace_id)
            return response

    async def _handle_realtime(self, request: web.Request) -> web.WebSocketResponse:
        """Relay a websocket session to the upstream realtime endpoint."""
        trace_id = self._tracer.generate_trace_id("realtime")
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        headers = {}
        native_key = request.headers.get(NATIVE_KEY_HEADER)
        if native_key:
            headers[NATIVE_KEY_HEADER] = native_key

        upstream_url = self.config.realtime_base_url + request.path_qs
        logger.info("[%s] Realtime relay -> %s", trace_id, request.path)
        relay = RelaySession(
            client_ws=ws,
            upstream_url=upstream_url,
            headers=headers,
            connect_timeout=self.config.connect_timeout,
            trace_id=trace_id,
        )
        await relay.run()
        return ws

    # ------------------------------------------------------------------
    # Gateway-owned endpoints
    # ------------------------------------------------------------------

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /health."""
        return web.json_response({"status": "ok"})

    def _require_admin(self, request: web.Request) -> None:
        token = self.config.admin_token
        if not token:
            raise NotFound("404 Not Found")
        supplied = request.headers.get("Authorization", "")
        if not hmac.compare_digest(supplied.encode(), f"Bearer {token}".encode()):
            raise Unauthenticated("Invalid admin token")

    async def _handle_security_summary(self, request: web.Request) -> web.Response:
        """Handle GET /admin/security/summary."""
        self._require_admin(request)
        summary = self._audit.summary()
        summary["blocked_identities"] = self._scan_detector.blocked_identities()
        return web.json_response(summary)

    async def _handle_security_alerts(self, request: web.Request) -> web.Response:
        """Handle GET /admin/security/alerts?count=N."""
        self._require_admin(request)
        try:
            count = int(request.query.get("count", "10"))
        except ValueError as e:
            raise InvalidRequest("count must be an integer") from e
        count = max(1, min(count, MAX_ALERTS))
        return web.json_response({"alerts": self._audit.recent_alerts(count)})
