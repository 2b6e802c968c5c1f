import asyncio
import json
import unittest
from typing import Any, List

from bitmex_realtime.client import RealtimeClient
from bitmex_realtime.data.registry import TopicRegistry
from bitmex_realtime.data.topics import Frame
from bitmex_realtime.errors import RegistryLookupError, UnknownTableError
from bitmex_realtime.infra.config import ClientConfig
from bitmex_realtime.infra.metrics import MetricsSink

PUBLIC = [
    "announcement",
    "chat",
    "connected",
    "funding",
    "instrument",
    "insurance",
    "liquidation",
    "orderBookL2",
    "publicNotifications",
    "quote",
    "settlement",
    "trade",
]
PRIVATE = ["execution", "margin", "order", "position", "privateNotifications", "wallet"]
REGISTRY = TopicRegistry.from_lists(PUBLIC, PRIVATE)


class FakeConnection:
    def __init__(self, opened: bool = False) -> None:
        self.opened = opened
        self.sent: List[dict] = []
        self.listener: Any = None
        self.stopped = False
        self.block = False

    def bind(self, listener: Any) -> None:
        self.listener = listener

    def send(self, command: str) -> None:
        self.sent.append(json.loads(command))

    async def run(self) -> None:
        if self.block:
            await asyncio.Event().wait()

    async def stop(self) -> None:
        self.stopped = True

    def open(self) -> None:
        self.opened = True
        self.listener.handle_open()

    def drop(self) -> None:
        self.opened = False
        self.listener.handle_close()

    def push(self, table: str, action: str, symbol: str, data: list) -> None:
        self.listener.handle_frame(Frame(table=table, action=action, symbol=symbol, data=data))

    def subscribe_args(self) -> List[str]:
        return [command["args"] for command in self.sent if command["op"] == "subscribe"]


class Recorder:
    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def __call__(self, data: list, symbol: str) -> None:
        self.calls.append((data, symbol))


def make_client(config: ClientConfig | None = None, ready: bool = True, **kwargs: Any) -> tuple:
    connection = FakeConnection()
    client = RealtimeClient(config or ClientConfig(), connection=connection, **kwargs)
    if ready:
        client.initialize(REGISTRY)
        connection.open()
    return client, connection


class AddStreamValidationTest(unittest.TestCase):
    def test_unknown_table_raises_before_binding(self) -> None:
        client, connection = make_client()

        with self.assertRaises(UnknownTableError) as ctx:
            client.add_stream("XBTUSD", "tradez", Recorder())

        self.assertIn("tradez", str(ctx.exception))
        self.assertIn("trade", ctx.exception.available)
        self.assertEqual([], client.router.bindings())
        self.assertEqual(0, len(client.ledger))
        self.assertEqual([], connection.sent)

    def test_unknown_table_is_rejected_without_queueing_while_disconnected(self) -> None:
        client, connection = make_client(ready=False)
        client.initialize(REGISTRY)

        with self.assertRaises(UnknownTableError):
            client.add_stream("XBTUSD", "nope", Recorder())
        self.assertEqual(0, client.pending_count)

    def test_directly_built_registry_accepts_its_tables(self) -> None:
        client, connection = make_client(ready=False)
        client.initialize(TopicRegistry(public=["trade"], private=["order"]))
        connection.open()

        client.add_stream("XBTUSD", "trade", Recorder())

        self.assertEqual(["trade", "order"], client.registry.all)
        self.assertEqual(1, client.subscription_count("trade", "XBTUSD"))
        self.assertEqual(["trade:XBTUSD"], connection.subscribe_args())

    def test_missing_callback_raises_even_before_initialize(self) -> None:
        client, _ = make_client(ready=False)

        with self.assertRaises(TypeError):
            client.add_stream("XBTUSD", "trade", None)
        with self.assertRaises(TypeError):
            client.add_stream("XBTUSD", "trade", "not callable")
        self.assertEqual(0, client.pending_count)

    def test_account_scoped_tables_always_use_wildcard_symbol(self) -> None:
        client, connection = make_client(ClientConfig(api_key_id="key", api_key_secret="secret"))

        client.add_stream("XBTUSD", "margin", Recorder())
        client.add_stream("ETHUSD", "wallet", Recorder())

        self.assertEqual(1, client.subscription_count("margin", "*"))
        self.assertEqual(0, client.subscription_count("margin", "XBTUSD"))
        self.assertEqual(1, client.subscription_count("wallet", "*"))
        self.assertEqual(["margin:*", "wallet:*"], connection.subscribe_args())


class DeferredStreamTest(unittest.TestCase):
    def test_calls_before_initialize_run_exactly_once(self) -> None:
        client, connection = make_client(ready=False)
        trades, quotes, more_trades = Recorder(), Recorder(), Recorder()

        self.assertEqual([], client.add_stream("XBTUSD", "trade", trades))
        client.add_stream("XBTUSD", "quote", quotes)
        client.add_stream("XBTUSD", "trade", more_trades)
        self.assertEqual(3, client.pending_count)

        client.initialize(REGISTRY)
        self.assertEqual(3, client.pending_count)
        self.assertEqual([], connection.sent)

        connection.open()
        self.assertEqual(0, client.pending_count)
        self.assertEqual(2, client.subscription_count("trade", "XBTUSD"))
        self.assertEqual(1, client.subscription_count("quote", "XBTUSD"))
        self.assertEqual(["trade:XBTUSD", "quote:XBTUSD"], connection.subscribe_args())

        connection.push("trade", "insert", "XBTUSD", [{"price": 1}])
        self.assertEqual(1, len(trades.calls))
        self.assertEqual(1, len(more_trades.calls))
        self.assertEqual(0, len(quotes.calls))

    def test_calls_while_disconnected_wait_for_open(self) -> None:
        client, connection = make_client(ready=False)
        client.initialize(REGISTRY)

        client.add_stream("XBTUSD", "trade", Recorder())
        self.assertEqual(1, client.pending_count)
        self.assertEqual(0, client.subscription_count("trade", "XBTUSD"))

        connection.open()
        self.assertEqual(1, client.subscription_count("trade", "XBTUSD"))
        self.assertEqual(["trade:XBTUSD"], connection.subscribe_args())

    def test_open_before_initialize_drains_on_initialize(self) -> None:
        client, connection = make_client(ready=False)
        client.add_stream("XBTUSD", "trade", Recorder())
        connection.open()
        self.assertEqual(1, client.pending_count)

        client.initialize(REGISTRY)
        self.assertEqual(0, client.pending_count)
        self.assertEqual(["trade:XBTUSD"], connection.subscribe_args())

    def test_queued_unknown_table_is_reported_as_error_event(self) -> None:
        client, connection = make_client(ready=False)
        errors: List[BaseException] = []
        client.on("error", errors.append)
        client.add_stream("XBTUSD", "bogus", Recorder())
        connection.open()

        client.initialize(REGISTRY)

        self.assertEqual(1, len(errors))
        self.assertIsInstance(errors[0], UnknownTableError)
        self.assertEqual(0, client.pending_count)
        self.assertEqual([], connection.sent)

    def test_initialize_only_once(self) -> None:
        client, _ = make_client()
        with self.assertRaises(RuntimeError):
            client.initialize(REGISTRY)

    def test_initialize_event_carries_registry(self) -> None:
        client, _ = make_client(ready=False)
        seen: List[TopicRegistry] = []
        client.on("initialize", seen.append)

        client.initialize(REGISTRY)

        self.assertEqual([REGISTRY], seen)


class SubscriptionTest(unittest.TestCase):
    def test_duplicate_callbacks_increment_count_and_subscribe_once(self) -> None:
        client, connection = make_client()

        for _ in range(4):
            client.add_stream("XBTUSD", "trade", Recorder())

        self.assertEqual(4, client.subscription_count("trade", "XBTUSD"))
        self.assertEqual(["trade:XBTUSD"], connection.subscribe_args())
        self.assertEqual({"op": "subscribe", "args": "trade:XBTUSD"}, connection.sent[0])

    def test_reconnects_resubscribe_every_topic(self) -> None:
        client, connection = make_client()
        client.add_stream("XBTUSD", "trade", Recorder())
        client.add_stream("XBTUSD", "trade", Recorder())

        connection.drop()
        connection.open()
        connection.drop()
        connection.open()

        self.assertEqual(["trade:XBTUSD"] * 3, connection.subscribe_args())
        self.assertEqual(2, client.subscription_count("trade", "XBTUSD"))

    def test_stream_added_from_open_handler_is_sent_once(self) -> None:
        client, connection = make_client(ready=False)
        client.initialize(REGISTRY)
        client.on("open", lambda: client.add_stream("XBTUSD", "quote", Recorder()))

        connection.open()

        self.assertEqual(["quote:XBTUSD"], connection.subscribe_args())

    def test_wildcard_expands_to_public_tables_when_unauthenticated(self) -> None:
        client, connection = make_client()

        bindings = client.add_stream("XBTUSD", None, Recorder())

        self.assertEqual(PUBLIC, [binding.pattern.table for binding in bindings])
        self.assertEqual(len(PUBLIC), len(connection.sent))
        self.assertIn("chat:*", connection.subscribe_args())
        self.assertIn("trade:XBTUSD", connection.subscribe_args())
        self.assertEqual(0, client.subscription_count("order", "XBTUSD"))

    def test_wildcard_expands_to_all_tables_when_authenticated(self) -> None:
        client, connection = make_client(ClientConfig(api_key_id="key", api_key_secret="secret"))

        bindings = client.add_stream("XBTUSD", "*", Recorder())

        self.assertEqual(REGISTRY.all, [binding.pattern.table for binding in bindings])
        self.assertEqual(1, client.subscription_count("order", "XBTUSD"))
        self.assertEqual(1, client.subscription_count("margin", "*"))
        self.assertTrue(client.authenticated)


class DispatchTest(unittest.TestCase):
    def test_frame_reaches_only_matching_callbacks(self) -> None:
        client, connection = make_client()
        instrument, other_symbol, quotes, everything = Recorder(), Recorder(), Recorder(), Recorder()
        client.add_stream("XBTUSD", "instrument", instrument)
        client.add_stream("ETHUSD", "instrument", other_symbol)
        client.add_stream("XBTUSD", "quote", quotes)
        client.add_stream("XBTUSD", None, everything)

        rows = [{"symbol": "XBTUSD", "lastPrice": 65000}]
        connection.push("instrument", "update", "XBTUSD", rows)

        self.assertEqual([(rows, "XBTUSD")], instrument.calls)
        self.assertEqual([(rows, "XBTUSD")], everything.calls)
        self.assertEqual([], other_symbol.calls)
        self.assertEqual([], quotes.calls)

    def test_every_action_is_delivered(self) -> None:
        client, connection = make_client()
        trades = Recorder()
        client.add_stream("XBTUSD", "orderBookL2", trades)

        for action in ("partial", "insert", "update", "delete"):
            connection.push("orderBookL2", action, "XBTUSD", [{"id": 1}])

        self.assertEqual(4, len(trades.calls))

    def test_callback_error_becomes_error_event_and_delivery_continues(self) -> None:
        client, connection = make_client()
        errors: List[BaseException] = []
        client.on("error", errors.append)
        boom = RuntimeError("boom")

        def failing(data: list, symbol: str) -> None:
            raise boom

        after_same, other_topic = Recorder(), Recorder()
        client.add_stream("XBTUSD", "trade", failing)
        client.add_stream("XBTUSD", "trade", after_same)
        client.add_stream("XBTUSD", "quote", other_topic)

        connection.push("trade", "insert", "XBTUSD", [{"price": 1}])
        connection.push("quote", "insert", "XBTUSD", [{"bidPrice": 1}])

        self.assertEqual([boom], errors)
        self.assertEqual(1, len(after_same.calls))
        self.assertEqual(1, len(other_topic.calls))

    def test_raising_error_handler_does_not_stop_delivery(self) -> None:
        client, connection = make_client()

        def rethrow(exc: BaseException) -> None:
            raise exc

        client.on("error", rethrow)

        def failing(data: list, symbol: str) -> None:
            raise RuntimeError("cb")

        second = Recorder()
        client.add_stream("XBTUSD", "trade", failing)
        client.add_stream("XBTUSD", "trade", second)

        with self.assertLogs("bitmex_realtime.client", level="ERROR") as logs:
            connection.push("trade", "insert", "XBTUSD", [{"price": 1}])

        self.assertEqual([([{"price": 1}], "XBTUSD")], second.calls)
        self.assertIn("Error handler raised", logs.output[0])

    def test_unhandled_error_is_logged(self) -> None:
        client, connection = make_client()

        def failing(data: list, symbol: str) -> None:
            raise ValueError("bad row")

        client.add_stream("XBTUSD", "trade", failing)
        with self.assertLogs("bitmex_realtime.client", level="ERROR") as logs:
            connection.push("trade", "insert", "XBTUSD", [])

        self.assertIn("bad row", logs.output[0])

    def test_connection_errors_are_forwarded(self) -> None:
        client, _ = make_client()
        errors: List[BaseException] = []
        client.on("error", errors.append)
        failure = ValueError("decode")

        client.handle_error(failure)

        self.assertEqual([failure], errors)

    def test_close_event_forwarded(self) -> None:
        client, connection = make_client()
        closes: List[bool] = []
        client.on("close", lambda: closes.append(True))

        connection.drop()

        self.assertEqual([True], closes)
        self.assertFalse(client.connected)

    def test_unknown_event_name_rejected(self) -> None:
        client, _ = make_client()
        with self.assertRaises(ValueError):
            client.on("end", lambda: None)

    def test_metrics_callback_observes_frames(self) -> None:
        metrics = MetricsSink()
        client, connection = make_client(metrics_callback=metrics.observe)
        client.add_stream("XBTUSD", "trade", Recorder())

        connection.push("trade", "insert", "XBTUSD", [{"price": 1}, {"price": 2}])

        exported = metrics.export()
        self.assertEqual(1, exported["frame_total"])
        self.assertEqual(2.0, exported["frame_rows"])
        self.assertEqual(1.0, exported["frame_delivered"])
        self.assertEqual(1, exported["subscribe_total"])


class ConnectLifecycleTest(unittest.IsolatedAsyncioTestCase):
    async def test_connect_initializes_from_lookup(self) -> None:
        connection = FakeConnection()
        endpoints: List[str] = []

        def lookup(endpoint: str) -> TopicRegistry:
            endpoints.append(endpoint)
            return REGISTRY

        client = RealtimeClient(ClientConfig(endpoint="wss://example.test/realtime"), connection=connection, lookup=lookup)
        client.add_stream("XBTUSD", "trade", Recorder())

        await client.connect()

        self.assertTrue(client.initialized)
        self.assertEqual(["wss://example.test/realtime"], endpoints)
        self.assertEqual(1, client.pending_count)

    async def test_lookup_failure_is_fatal(self) -> None:
        connection = FakeConnection()
        connection.block = True

        def lookup(endpoint: str) -> TopicRegistry:
            raise RegistryLookupError("schema unavailable")

        client = RealtimeClient(ClientConfig(), connection=connection, lookup=lookup)

        with self.assertRaises(RegistryLookupError):
            await client.connect()
        self.assertFalse(client.initialized)

    async def test_close_stops_connection(self) -> None:
        client, connection = make_client()
        await client.close()
        self.assertTrue(connection.stopped)


if __name__ == "__main__":
    unittest.main()
