"""Command line entry point: stream tables and log every received frame."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from bitmex_realtime.client import RealtimeClient
from bitmex_realtime.dashboard.app import serve_status
from bitmex_realtime.infra.config import ClientConfig, StreamSettings, load_config
from bitmex_realtime.infra.logging import configure_logging
from bitmex_realtime.infra.metrics import MetricsSink


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stream BitMEX realtime tables")
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--symbol", default="XBTUSD", help="Instrument symbol (default: XBTUSD)")
    parser.add_argument(
        "--table",
        action="append",
        dest="tables",
        help="Table to subscribe to; repeatable. Omit to subscribe to every permitted table.",
    )
    parser.add_argument("--testnet", action="store_true", help="Connect to the testnet endpoint")
    parser.add_argument("--status-port", type=int, help="Serve the status API on this port")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ClientConfig:
    config = load_config(Path(args.config)) if args.config else ClientConfig()
    if args.testnet:
        config.testnet = True
    if args.tables:
        config.streams = [StreamSettings(symbol=args.symbol, table=table) for table in args.tables]
    elif not config.streams:
        config.streams = [StreamSettings(symbol=args.symbol)]
    if args.status_port:
        config.status.enable = True
        config.status.port = args.status_port
    return config


def log_frame(logger: logging.Logger, table: Optional[str]):
    def callback(data: List[Dict[str, Any]], symbol: str) -> None:
        logger.info(
            "Received %d rows for %s", len(data), symbol,
            extra={"event": "frame", "table": table or "*", "symbol": symbol, "rows": data},
        )

    return callback


async def run_client(config: ClientConfig) -> None:
    logger = logging.getLogger("bitmex_realtime")
    metrics = MetricsSink()
    client = RealtimeClient(config, metrics_callback=metrics.observe, logger=logger)
    client.on("error", lambda exc: logger.error("Stream error: %s", exc, extra={"event": "stream_error"}))
    client.on("close", lambda: logger.warning("Connection closed", extra={"event": "close"}))

    for stream in config.streams:
        client.add_stream(stream.symbol, stream.table, log_frame(logger, stream.table))

    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows/limited environments
            pass

    connect_task = asyncio.create_task(client.connect())
    tasks = [connect_task]
    if config.status.enable:
        tasks.append(asyncio.create_task(serve_status(client, config.status.host, config.status.port)))

    stop_task = asyncio.create_task(stop_event.wait())
    await asyncio.wait([connect_task, stop_task], return_when=asyncio.FIRST_COMPLETED)
    await client.close()
    for task in tasks + [stop_task]:
        task.cancel()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    logger.info("Client stopped", extra={"event": "stopped", "metrics": metrics.export()})

    # Registry lookup failures are fatal and must surface to the caller.
    if connect_task.done() and not connect_task.cancelled() and isinstance(results[0], Exception):
        raise results[0]


def main(argv: Optional[Sequence[str]] = None) -> None:
    configure_logging()
    config = build_config(parse_args(argv))
    asyncio.run(run_client(config))


if __name__ == "__main__":
    main()
