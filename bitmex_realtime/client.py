"""Realtime client multiplexing many table/symbol streams over one websocket.

Subscriptions are gated on two conditions: the table registry has been loaded
(``initialized``) and the connection is open. Calls made before both hold are
kept in a pending queue and replayed when either condition changes. Every topic
ever subscribed is re-sent on each ``open`` so subscriptions survive reconnects.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from bitmex_realtime.data.connection import BackoffConfig, ConnectionProxy, WebSocketConnection
from bitmex_realtime.data.ledger import SubscriptionLedger
from bitmex_realtime.data.registry import TopicRegistry, fetch_topic_registry
from bitmex_realtime.data.router import StreamBinding, StreamCallback, TopicRouter
from bitmex_realtime.data.topics import WILDCARD, Frame, Topic, TopicPattern, effective_symbol
from bitmex_realtime.errors import RealtimeError
from bitmex_realtime.infra.config import ClientConfig

EVENTS = ("initialize", "open", "close", "error")

RegistryLookup = Callable[[str], TopicRegistry]
EventHandler = Callable[..., Any]


@dataclass
class PendingStream:
    """An ``add_stream`` call waiting for the client to become ready."""

    symbol: str
    table: Optional[str]
    callback: StreamCallback


class RealtimeClient:
    """Topic-multiplexing client for the BitMEX realtime API.

    Usage::

        client = RealtimeClient(ClientConfig(testnet=True))
        client.on("error", log_error)
        client.add_stream("XBTUSD", "trade", on_trades)
        await client.connect()

    Callbacks receive ``(rows, symbol)``. Exceptions they raise are reported
    through the ``error`` event instead of propagating into the connection.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        connection: Optional[ConnectionProxy] = None,
        lookup: Optional[RegistryLookup] = None,
        metrics_callback: Optional[Callable[[str, Dict[str, float]], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config or ClientConfig()
        self.endpoint = self.config.resolve_endpoint()
        self.authenticated = self.config.authenticated
        self.logger = logger or logging.getLogger(__name__)
        self.metrics_callback = metrics_callback
        self.lookup = lookup or fetch_topic_registry

        self.ledger = SubscriptionLedger()
        self.router = TopicRouter(self.ledger, on_error=self._emit_error, logger=self.logger.getChild("router"))
        self.registry: Optional[TopicRegistry] = None
        self.initialized = False

        self._handlers: Dict[str, List[EventHandler]] = {event: [] for event in EVENTS}
        self._pending: Deque[PendingStream] = deque()
        # Topics already requested from the exchange; re-sent on every open.
        self._subscribed: Dict[Topic, None] = {}

        self.connection = connection or self._build_connection()
        self.connection.bind(self)
        self.logger.debug(
            "Client created for %s", self.endpoint,
            extra={"event": "client_created", "authenticated": self.authenticated},
        )

    # --- Events -----------------------------------------------------------
    def on(self, event: str, handler: EventHandler) -> EventHandler:
        """Register ``handler`` for ``event`` (initialize, open, close, error)."""

        if event not in self._handlers:
            raise ValueError(f"Unknown event {event!r}; expected one of {', '.join(EVENTS)}")
        self._handlers[event].append(handler)
        return handler

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            handler(*args)

    def _emit_error(self, exc: BaseException) -> None:
        self._emit_metrics("error", {"count": 1})
        if not self._handlers["error"]:
            self.logger.error(
                "Unhandled client error: %s", exc,
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"event": "client_error"},
            )
            return
        for handler in list(self._handlers["error"]):
            try:
                handler(exc)
            except Exception:
                self.logger.exception(
                    "Error handler raised while reporting %s", exc,
                    extra={"event": "error_handler_failed"},
                )

    # --- Lifecycle --------------------------------------------------------
    async def connect(self) -> None:
        """Load the table registry and run the connection until :meth:`close`.

        A failed registry lookup is fatal: the connection is torn down and the
        error propagates to the caller.
        """

        connection_task = asyncio.create_task(self.connection.run())
        try:
            registry = await asyncio.to_thread(self.lookup, self.endpoint)
        except BaseException:
            connection_task.cancel()
            await asyncio.gather(connection_task, return_exceptions=True)
            raise
        self.initialize(registry)
        await connection_task

    async def close(self) -> None:
        await self.connection.stop()

    def initialize(self, registry: TopicRegistry) -> None:
        """Install the table registry and replay calls queued before it arrived."""

        if self.initialized:
            raise RuntimeError("RealtimeClient is already initialized")
        self.registry = registry
        self.initialized = True
        self.logger.info(
            "Realtime client initialized with %d tables", len(registry.all),
            extra={"event": "initialize", "pending": len(self._pending)},
        )
        self.emit("initialize", registry)
        self._drain_pending()

    # --- Subscriptions ----------------------------------------------------
    def add_stream(
        self,
        symbol: str,
        table: Optional[str] = None,
        callback: Optional[StreamCallback] = None,
    ) -> List[StreamBinding]:
        """Listen to ``table`` for ``symbol``; all permitted tables when ``table`` is omitted.

        Returns the created bindings, or an empty list when the call was queued
        until the client is initialized and connected.
        """

        if not callable(callback):
            raise TypeError("A callback must be passed to RealtimeClient.add_stream.")
        registry = self.registry
        if registry is not None and table not in (None, WILDCARD):
            registry.validate(table)

        if registry is None or not self.connection.opened:
            self._pending.append(PendingStream(symbol=symbol, table=table, callback=callback))
            self.logger.debug(
                "Deferring stream %s:%s until ready", table or WILDCARD, symbol,
                extra={"event": "stream_deferred", "initialized": self.initialized},
            )
            return []

        return self._bind_streams(registry, symbol, table, callback)

    def subscription_count(self, table: str, symbol: str) -> int:
        return self.ledger.count(table, symbol)

    def subscribed_topics(self) -> List[Topic]:
        return list(self._subscribed)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def connected(self) -> bool:
        return bool(self.connection.opened)

    def resubscribe_all(self) -> None:
        """Send a subscribe command for every topic requested so far."""

        for topic in self._subscribed:
            self.send_subscribe_request(topic)

    def send_subscribe_request(self, topic: Topic) -> None:
        command = json.dumps({"op": "subscribe", "args": topic.subscription_arg()})
        self.connection.send(command)
        self.logger.info(
            "Subscribed to %s", topic.subscription_arg(),
            extra={"event": "subscription", "table": topic.table, "symbol": topic.symbol},
        )
        self._emit_metrics("subscribe", {"topics": len(self._subscribed)})

    def _bind_streams(
        self,
        registry: TopicRegistry,
        symbol: str,
        table: Optional[str],
        callback: StreamCallback,
    ) -> List[StreamBinding]:
        if table in (None, WILDCARD):
            tables = registry.tables_for(self.authenticated)
        else:
            tables = [table]

        bindings: List[StreamBinding] = []
        for name in tables:
            pattern = TopicPattern(table=name, action=WILDCARD, symbol=effective_symbol(name, symbol))
            bindings.append(self.router.bind(pattern, callback))
            if self.ledger.count(pattern.table, pattern.symbol) == 1:
                self._track(pattern.topic())
        return bindings

    def _track(self, topic: Topic) -> None:
        if topic in self._subscribed:
            return
        self._subscribed[topic] = None
        if self.connection.opened:
            self.send_subscribe_request(topic)

    def _drain_pending(self) -> None:
        pending, self._pending = self._pending, deque()
        for request in pending:
            try:
                self.add_stream(request.symbol, request.table, request.callback)
            except RealtimeError as exc:
                self._emit_error(exc)

    # --- Connection listener ----------------------------------------------
    def handle_open(self) -> None:
        self.logger.info("Realtime connection open", extra={"event": "open", "topics": len(self._subscribed)})
        self.resubscribe_all()
        self._drain_pending()
        self.emit("open")

    def handle_close(self) -> None:
        self.logger.info("Realtime connection closed", extra={"event": "close"})
        self.emit("close")

    def handle_frame(self, frame: Frame) -> None:
        delivered = self.router.dispatch(frame)
        self._emit_metrics("frame", {"rows": len(frame.data), "delivered": delivered})

    def handle_error(self, exc: BaseException) -> None:
        self._emit_error(exc)

    # --- Helpers ----------------------------------------------------------
    def _build_connection(self) -> WebSocketConnection:
        backoff = self.config.backoff
        return WebSocketConnection(
            self.endpoint,
            api_key_id=self.config.api_key_id,
            api_key_secret=self.config.api_key_secret,
            backoff=BackoffConfig(
                initial=backoff.initial,
                maximum=backoff.maximum,
                factor=backoff.factor,
                jitter=backoff.jitter,
            ),
            ping_interval=self.config.ping_interval,
            ping_timeout=self.config.ping_timeout,
            logger=self.logger.getChild("connection"),
        )

    def _emit_metrics(self, name: str, values: Dict[str, float]) -> None:
        if not self.metrics_callback:
            return
        try:
            self.metrics_callback(name, values)
        except Exception as exc:  # pragma: no cover - external callback safety
            self.logger.debug("Metric callback failed for %s: %s", name, exc)


__all__ = ["RealtimeClient", "PendingStream", "EVENTS"]
