# request_transport.py

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import aiohttp

from requrse_errors import TransportError, UnsupportedSchemeError
from response_normalizer import NormalizedResponse, normalize_http, normalize_ws
from stop_conditions import StopConditionEvaluator
from template_binder import WS_SCHEMES, BoundRequest

logger = logging.getLogger("requrse.transport")

__all__ = ["Exchange", "RequestTransport", "HTTP_SCHEMES", "WS_SCHEMES"]

HTTP_SCHEMES = ("http", "https")


def _preview(text, limit: int = 200) -> str:
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    return f"{text[:limit]}{'...' if len(text) > limit else ''}"


@dataclass
class Exchange:
    """Outcome of one request/response (or write/read) round trip."""
    body: bytes
    response: NormalizedResponse
    should_continue: bool
    elapsed_ms: float = 0.0


class RequestTransport:
    """
    Executes one logical exchange per call. HTTP(S) requests are one-shot;
    WS(S) targets share a single connection dialed on first use and kept for
    the lifetime of the transport. Failures are raised as TransportError and
    never retried.
    """

    def __init__(
        self,
        evaluator: StopConditionEvaluator,
        *,
        proxy: Optional[str] = None,
        insecure: bool = False,
        timeout: Optional[aiohttp.ClientTimeout] = None,
    ):
        self.evaluator = evaluator
        self.proxy = proxy
        self.insecure = insecure
        self.timeout = timeout or aiohttp.ClientTimeout(total=None)
        self._session: Optional[aiohttp.ClientSession] = None
        self._websocket: Optional[aiohttp.ClientWebSocketResponse] = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        if self._session is None:
            # ssl=False skips certificate verification; only on explicit opt-in
            connector = aiohttp.TCPConnector(ssl=False if self.insecure else True)
            if self.insecure:
                logger.warning("TLS certificate verification is disabled.")
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=self.timeout,
                cookie_jar=aiohttp.DummyCookieJar(),
            )

    async def close(self):
        if self._websocket is not None:
            try:
                await self._websocket.close()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Error closing WebSocket connection: {e}")
            self._websocket = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def exchange(self, bound: BoundRequest, iteration: int) -> Exchange:
        scheme = urlparse(bound.url).scheme.lower()
        if scheme in HTTP_SCHEMES:
            return await self._exchange_http(bound)
        if scheme in WS_SCHEMES:
            return await self._exchange_ws(bound, iteration)
        raise UnsupportedSchemeError(bound.url)

    # ---------------------------
    # HTTP
    # ---------------------------
    async def _exchange_http(self, bound: BoundRequest) -> Exchange:
        await self.start()
        data = bound.body.encode("utf-8") if bound.body else None
        start = time.monotonic()
        try:
            async with self._session.request(
                bound.method,
                bound.url,
                headers=bound.headers,
                data=data,
                proxy=self.proxy,
            ) as resp:
                body = await resp.read()
                status = resp.status
                final_url = str(resp.url)
                headers = resp.headers
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"{bound.method} {bound.url} failed: {type(e).__name__}: {e}") from e
        elapsed_ms = (time.monotonic() - start) * 1000

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"  Response Headers: {dict(headers)}")
            logger.debug(f"  Response Body ({len(body)} bytes): {_preview(body)}")

        response = normalize_http(final_url, status, headers, body)
        should_continue = self.evaluator.should_continue(response.as_document())
        return Exchange(body=body, response=response, should_continue=should_continue, elapsed_ms=elapsed_ms)

    # ---------------------------
    # WebSocket
    # ---------------------------
    async def _connect_ws(self, bound: BoundRequest) -> aiohttp.ClientWebSocketResponse:
        if self._websocket is None:
            await self.start()
            try:
                self._websocket = await self._session.ws_connect(bound.url, headers=bound.headers)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise TransportError(f"WebSocket dial to {bound.url} failed: {type(e).__name__}: {e}") from e
            logger.info(f"WebSocket connected: {bound.url}")
        return self._websocket

    async def _round_trip(self, ws: aiohttp.ClientWebSocketResponse, url: str, payload: str):
        try:
            await ws.send_str(payload)
            msg = await ws.receive(timeout=self.timeout.sock_read)
        except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionResetError) as e:
            raise TransportError(f"WebSocket exchange with {url} failed: {type(e).__name__}: {e}") from e

        if msg.type == aiohttp.WSMsgType.TEXT:
            return msg.data.encode("utf-8")
        if msg.type == aiohttp.WSMsgType.BINARY:
            return msg.data
        if msg.type == aiohttp.WSMsgType.ERROR:
            raise TransportError(f"WebSocket read from {url} failed: {ws.exception()}")
        raise TransportError(f"WebSocket {url} closed instead of replying ({msg.type.name})")

    async def _exchange_ws(self, bound: BoundRequest, iteration: int) -> Exchange:
        ws = await self._connect_ws(bound)

        if iteration == 0 and bound.setup_body:
            setup_reply = await self._round_trip(ws, bound.url, bound.setup_body)
            logger.info(f"Setup reply: {_preview(setup_reply)}")

        start = time.monotonic()
        message = await self._round_trip(ws, bound.url, bound.body)
        elapsed_ms = (time.monotonic() - start) * 1000

        response = normalize_ws(bound.url, message)
        should_continue = self.evaluator.should_continue(response.as_document())
        return Exchange(body=message, response=response, should_continue=should_continue, elapsed_ms=elapsed_ms)
