"""Websocket connection to the BitMEX realtime endpoint.

The connection owns transport concerns only: signing the connect URL, keeping the
socket alive with pings, reconnecting with backoff, and decoding inbound messages
into :class:`~bitmex_realtime.data.topics.Frame` objects. Everything it observes is
reported to a single bound :class:`ConnectionListener`.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urlencode, urlsplit

import websockets

from bitmex_realtime.errors import ExchangeError, FrameDecodeError
from .topics import WILDCARD, Frame, is_account_scoped

SIGNATURE_TTL_SECONDS = 60


@dataclass
class BackoffConfig:
    """Configuration for reconnection backoff."""

    initial: float = 1.0
    maximum: float = 60.0
    factor: float = 2.0
    jitter: float = 0.25


class ConnectionListener(Protocol):
    def handle_open(self) -> None:
        ...

    def handle_close(self) -> None:
        ...

    def handle_frame(self, frame: Frame) -> None:
        ...

    def handle_error(self, exc: BaseException) -> None:
        ...


class ConnectionProxy(Protocol):
    """What the client needs from a connection."""

    opened: bool

    def bind(self, listener: ConnectionListener) -> None:
        ...

    def send(self, command: str) -> None:
        ...

    async def run(self) -> None:
        ...

    async def stop(self) -> None:
        ...


def sign_request(secret: str, verb: str, path: str, expires: int, body: str = "") -> str:
    """Hex HMAC-SHA256 of ``verb + path + expires + body``."""

    message = f"{verb}{path}{expires}{body}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signed_url(endpoint: str, api_key_id: str, api_key_secret: str, expires: Optional[int] = None) -> str:
    """Append BitMEX authentication query parameters to ``endpoint``."""

    expires = expires if expires is not None else int(time.time()) + SIGNATURE_TTL_SECONDS
    path = urlsplit(endpoint).path or "/"
    signature = sign_request(api_key_secret, "GET", path, expires)
    query = urlencode({"api-expires": expires, "api-signature": signature, "api-key": api_key_id})
    separator = "&" if "?" in endpoint else "?"
    return f"{endpoint}{separator}{query}"


def decode_message(raw: Any) -> List[Frame]:
    """Split one websocket message into per-symbol frames.

    Welcome and subscription acknowledgements carry no ``data`` and produce no
    frames. Account-scoped tables are always addressed with the ``*`` symbol.
    """

    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise FrameDecodeError(f"Unable to parse incoming data: {raw!r}") from exc
    if not isinstance(message, dict):
        raise FrameDecodeError(f"Unexpected message shape: {raw!r}")

    if message.get("error"):
        raise ExchangeError(str(message["error"]))
    if "data" not in message:
        return []

    table = message.get("table")
    action = message.get("action")
    rows = message.get("data")
    if not table or not action or not isinstance(rows, list):
        raise FrameDecodeError(f"Data message without table/action: {raw!r}")

    if is_account_scoped(table):
        return [Frame(table=table, action=action, symbol=WILDCARD, data=rows)]

    if not rows:
        filter_symbol = (message.get("filter") or {}).get("symbol")
        return [Frame(table=table, action=action, symbol=filter_symbol or WILDCARD, data=[])]

    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for row in rows:
        symbol = row.get("symbol") if isinstance(row, dict) else None
        grouped.setdefault(symbol or WILDCARD, []).append(row)
    return [Frame(table=table, action=action, symbol=symbol, data=group) for symbol, group in grouped.items()]


class WebSocketConnection:
    """Reconnecting websocket that reports opens, closes, frames, and errors."""

    def __init__(
        self,
        endpoint: str,
        api_key_id: Optional[str] = None,
        api_key_secret: Optional[str] = None,
        backoff: Optional[BackoffConfig] = None,
        ping_interval: float = 20.0,
        ping_timeout: float = 20.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.endpoint = endpoint
        self.api_key_id = api_key_id
        self.api_key_secret = api_key_secret
        self.backoff = backoff or BackoffConfig()
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.logger = logger or logging.getLogger(__name__)

        self.opened = False
        self.sessions = 0
        self._listener: Optional[ConnectionListener] = None
        self._outbound: Optional[asyncio.Queue] = None
        self._ws: Any = None
        self._running = False

    def bind(self, listener: ConnectionListener) -> None:
        self._listener = listener

    def send(self, command: str) -> None:
        """Queue ``command`` for the live session, or drop it when disconnected."""

        if not self.opened or self._outbound is None:
            self.logger.warning(
                "Dropping command while disconnected: %s", command,
                extra={"event": "send_dropped"},
            )
            return
        self._outbound.put_nowait(command)

    async def run(self) -> None:
        """Connect and keep reconnecting with backoff until :meth:`stop` is called."""

        self._running = True
        delay = self.backoff.initial
        while self._running:
            start_time = time.monotonic()
            sessions_before = self.sessions
            try:
                await self._run_session()
            except asyncio.CancelledError:
                self._running = False
                raise
            except Exception as exc:
                self.logger.warning(
                    "Realtime connection failure: %s", exc,
                    extra={"event": "connection_failure", "endpoint": self.endpoint},
                )
            if not self._running:
                break
            if self.sessions > sessions_before:
                delay = self.backoff.initial
            elapsed = time.monotonic() - start_time
            sleep_for = min(delay, self.backoff.maximum) + random.uniform(0, self.backoff.jitter)
            self.logger.info(
                "Reconnecting to realtime feed",
                extra={"event": "reconnect", "sleep_seconds": sleep_for, "elapsed_seconds": elapsed},
            )
            await asyncio.sleep(sleep_for)
            delay = min(delay * self.backoff.factor, self.backoff.maximum)

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            await self._ws.close()

    def _connect_url(self) -> str:
        if self.api_key_id and self.api_key_secret:
            return signed_url(self.endpoint, self.api_key_id, self.api_key_secret)
        return self.endpoint

    async def _run_session(self) -> None:
        async with websockets.connect(
            self._connect_url(), ping_interval=self.ping_interval, ping_timeout=self.ping_timeout
        ) as ws:
            outbound: asyncio.Queue = asyncio.Queue()
            writer = asyncio.create_task(self._write_loop(ws, outbound))
            self._ws = ws
            self._outbound = outbound
            self.opened = True
            self.sessions += 1
            self.logger.info(
                "Connected to %s", self.endpoint,
                extra={"event": "connected", "session": self.sessions},
            )
            try:
                if self._listener:
                    self._listener.handle_open()
                async for raw in ws:
                    self._handle_raw(raw)
            finally:
                self.opened = False
                self._outbound = None
                self._ws = None
                writer.cancel()
                try:
                    await writer
                except asyncio.CancelledError:
                    pass
                except Exception as exc:
                    self.logger.debug("Writer stopped with %s", exc)
                if self._listener:
                    self._listener.handle_close()

    async def _write_loop(self, ws: Any, outbound: asyncio.Queue) -> None:
        while True:
            command = await outbound.get()
            await ws.send(command)
            self.logger.debug("Sent %s", command, extra={"event": "sent"})

    def _handle_raw(self, raw: Any) -> None:
        if self._listener is None:
            return
        try:
            frames = decode_message(raw)
        except (FrameDecodeError, ExchangeError) as exc:
            self._listener.handle_error(exc)
            return
        for frame in frames:
            self._listener.handle_frame(frame)


__all__ = [
    "BackoffConfig",
    "ConnectionListener",
    "ConnectionProxy",
    "WebSocketConnection",
    "decode_message",
    "sign_request",
    "signed_url",
]
