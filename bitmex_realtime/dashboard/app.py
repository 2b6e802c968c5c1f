"""FastAPI status endpoints exposing a running client's subscription state."""

from __future__ import annotations

from typing import Any, Dict, List

from fastapi import FastAPI

from bitmex_realtime.client import RealtimeClient


def create_status_app(client: RealtimeClient) -> FastAPI:
    app = FastAPI(title="BitMEX Realtime Status", version="0.1.0")

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok" if client.initialized and client.connected else "starting",
            "initialized": client.initialized,
            "connected": client.connected,
            "authenticated": client.authenticated,
            "pending": client.pending_count,
        }

    @app.get("/subscriptions")
    async def subscriptions() -> List[Dict[str, Any]]:
        snapshot = client.ledger.snapshot()
        return [
            {"table": table, "symbol": symbol, "listeners": count}
            for table, symbols in sorted(snapshot.items())
            for symbol, count in sorted(symbols.items())
        ]

    return app


async def serve_status(client: RealtimeClient, host: str, port: int) -> None:
    """Serve the status app until cancelled."""

    import uvicorn

    app = create_status_app(client)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))
    await server.serve()


__all__ = ["create_status_app", "serve_status"]
