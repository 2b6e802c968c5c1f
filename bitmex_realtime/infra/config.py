"""Config loading for the realtime client and its command line entry point."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

ENDPOINTS = {
    "production": "wss://www.bitmex.com/realtime",
    "testnet": "wss://testnet.bitmex.com/realtime",
}
ENDPOINT_ENV = "BITMEX_ENDPOINT"


@dataclass
class BackoffSettings:
    initial: float = 1.0
    maximum: float = 60.0
    factor: float = 2.0
    jitter: float = 0.25


@dataclass
class StreamSettings:
    symbol: str
    table: Optional[str] = None


@dataclass
class StatusSettings:
    host: str = "127.0.0.1"
    port: int = 8000
    enable: bool = False


@dataclass
class ClientConfig:
    endpoint: Optional[str] = None
    testnet: bool = False
    api_key_id: Optional[str] = None
    api_key_secret: Optional[str] = None
    ping_interval: float = 20.0
    ping_timeout: float = 20.0
    backoff: BackoffSettings = field(default_factory=BackoffSettings)
    streams: List[StreamSettings] = field(default_factory=list)
    status: StatusSettings = field(default_factory=StatusSettings)

    @property
    def authenticated(self) -> bool:
        return bool(self.api_key_id)

    def resolve_endpoint(self) -> str:
        """Explicit endpoint, else testnet/production default; ``BITMEX_ENDPOINT`` wins."""

        override = os.getenv(ENDPOINT_ENV)
        if override:
            return override
        if self.endpoint:
            return self.endpoint
        return ENDPOINTS["testnet" if self.testnet else "production"]


def load_config(path: str | Path) -> ClientConfig:
    resolved = Path(path).expanduser().resolve()
    with resolved.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return config_from_dict(raw)


def config_from_dict(raw: dict) -> ClientConfig:
    backoff = raw.get("backoff", {})
    status = raw.get("status", {})

    return ClientConfig(
        endpoint=raw.get("endpoint"),
        testnet=bool(raw.get("testnet", False)),
        api_key_id=raw.get("api_key_id") or os.getenv("BITMEX_API_KEY_ID"),
        api_key_secret=raw.get("api_key_secret") or os.getenv("BITMEX_API_KEY_SECRET"),
        ping_interval=float(raw.get("ping_interval", 20.0)),
        ping_timeout=float(raw.get("ping_timeout", 20.0)),
        backoff=BackoffSettings(
            initial=float(backoff.get("initial", BackoffSettings.initial)),
            maximum=float(backoff.get("maximum", BackoffSettings.maximum)),
            factor=float(backoff.get("factor", BackoffSettings.factor)),
            jitter=float(backoff.get("jitter", BackoffSettings.jitter)),
        ),
        streams=[
            StreamSettings(symbol=s["symbol"], table=s.get("table"))
            for s in raw.get("streams", [])
        ],
        status=StatusSettings(
            host=status.get("host", "127.0.0.1"),
            port=int(status.get("port", 8000)),
            enable=bool(status.get("enable", False)),
        ),
    )


__all__ = [
    "load_config",
    "config_from_dict",
    "ClientConfig",
    "BackoffSettings",
    "StreamSettings",
    "StatusSettings",
    "ENDPOINTS",
]
