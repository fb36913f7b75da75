"""Realtime websocket relay.

A transparent duplex proxy between a client websocket and the equivalent
upstream realtime endpoint. Client messages that arrive before the upstream
handshake completes are queued and flushed in order once it does.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

import aiohttp
from aiohttp import WSMsgType, web

logger = logging.getLogger(__name__)

# Codes that may appear locally but must never be sent in a close frame
_RESERVED_CLOSE_CODES = frozenset({1004, 1005, 1006, 1015})


class RelayState(Enum):
    CONNECTING = auto()
    RELAYING = auto()
    CLOSING = auto()
    CLOSED = auto()


def to_realtime_url(base_url: str) -> str:
    """Translate an http(s) base URL to the ws(s) scheme."""
    if base_url.startswith("https://"):
        return "wss://" + base_url[len("https://"):]
    if base_url.startswith("http://"):
        return "ws://" + base_url[len("http://"):]
    return base_url


def sendable_close_code(code: int | None, default: int = 1000) -> int:
    if code is None or code in _RESERVED_CLOSE_CODES or not 1000 <= code < 5000:
        return default
    return code


async def _forward(ws: Any, msg: aiohttp.WSMessage) -> None:
    if msg.type == WSMsgType.TEXT:
        await ws.send_str(msg.data)
    else:
        await ws.send_bytes(msg.data)


@dataclass
class RelaySession:
    """One client connection relayed to one upstream connection.

    Example:
        >>> ws = web.WebSocketResponse()
        >>> await ws.prepare(request)
        >>> relay = RelaySession(client_ws=ws, upstream_url="wss://host/ws/path?key=k")
        >>> await relay.run()
    """

    client_ws: web.WebSocketResponse
    upstream_url: str
    headers: dict[str, str] = field(default_factory=dict)
    connect_timeout: float = 10.0
    trace_id: str = "-"
    upstream_ws: aiohttp.ClientWebSocketResponse | None = None
    pending: deque[aiohttp.WSMessage] = field(default_factory=deque)
    state: RelayState = RelayState.CONNECTING
    close_code: int | None = None
    close_reason: str = ""

    async def run(self) -> None:
        """Relay until either side closes."""
        timeout = aiohttp.ClientTimeout(total=None, connect=self.connect_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            client_task = asyncio.create_task(self._pump_client())
            try:
                try:
                    upstream_ws = await session.ws_connect(self.upstream_url, headers=self.headers)
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    logger.error("[%s] Upstream websocket connect failed: %s", self.trace_id, e)
                    self.state = RelayState.CLOSING
                    await self.client_ws.close(code=1011, message=b"Upstream connection failed")
                    return

                self.upstream_ws = upstream_ws
                if self.state is RelayState.CONNECTING:
                    logger.debug(
                        "[%s] Upstream open, flushing %d queued messages",
                        self.trace_id,
                        len(self.pending),
                    )
                    await self._flush_pending(upstream_ws)
                    self.state = RelayState.RELAYING
                    await self._pump_upstream(upstream_ws)
                else:
                    # Client left during the handshake
                    self.pending.clear()
                    await upstream_ws.close(
                        code=sendable_close_code(self.close_code),
                        message=self.close_reason.encode(),
                    )
                await client_task
            finally:
                if not client_task.done():
                    client_task.cancel()
                    try:
                        await client_task
                    except asyncio.CancelledError:
                        pass
                if self.upstream_ws is not None and not self.upstream_ws.closed:
                    await self.upstream_ws.close()
                self.state = RelayState.CLOSED
                logger.info(
                    "[%s] Relay closed (code=%s, reason=%r)",
                    self.trace_id,
                    self.close_code,
                    self.close_reason,
                )

    async def _flush_pending(self, upstream_ws: aiohttp.ClientWebSocketResponse) -> None:
        # Messages received while flushing are appended and sent in turn
        while self.pending:
            await _forward(upstream_ws, self.pending.popleft())

    async def _pump_client(self) -> None:
        while True:
            msg = await self.client_ws.receive()
            if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                if self.state is RelayState.CONNECTING:
                    self.pending.append(msg)
                elif self.state is RelayState.RELAYING and self.upstream_ws is not None:
                    await _forward(self.upstream_ws, msg)
                continue

            if msg.type == WSMsgType.CLOSE:
                self._record_close(msg.data, msg.extra)
            elif msg.type == WSMsgType.ERROR:
                logger.warning("[%s] Client websocket error: %s", self.trace_id, msg.data)
                self._record_close(1011, "Client error")
            else:
                self._record_close(self.client_ws.close_code, "")
            break

        if self.state is RelayState.RELAYING and self.upstream_ws is not None:
            self.state = RelayState.CLOSING
            await self.upstream_ws.close(
                code=sendable_close_code(self.close_code),
                message=self.close_reason.encode(),
            )
        elif self.state is RelayState.CONNECTING:
            self.state = RelayState.CLOSING

    async def _pump_upstream(self, upstream_ws: aiohttp.ClientWebSocketResponse) -> None:
        while True:
            msg = await upstream_ws.receive()
            if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                if self.client_ws.closed:
                    logger.debug("[%s] Dropping upstream message, client gone", self.trace_id)
                else:
                    await _forward(self.client_ws, msg)
                continue

            if msg.type == WSMsgType.CLOSE:
                self._record_close(msg.data, msg.extra)
            elif msg.type == WSMsgType.ERROR:
                logger.warning("[%s] Upstream websocket error: %s", self.trace_id, msg.data)
                self._record_close(1011, "Upstream error")
            else:
                self._record_close(upstream_ws.close_code, "")
            break

        if not self.client_ws.closed:
            self.state = RelayState.CLOSING
            await self.client_ws.close(
                code=sendable_close_code(self.close_code),
                message=self.close_reason.encode(),
            )

    def _record_close(self, code: int | None, reason: Any) -> None:
        # First side to close decides the code and reason
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason if isinstance(reason, str) else ""
