"""Exception types raised by the realtime client."""

from __future__ import annotations

from typing import Iterable


class RealtimeError(Exception):
    """Base class for client errors."""


class UnknownTableError(RealtimeError, ValueError):
    """Raised when a subscription names a table the exchange does not publish."""

    def __init__(self, table: str, available: Iterable[str]) -> None:
        self.table = table
        self.available = list(available)
        super().__init__(
            f"Unknown table for BitMEX subscription: {table}. "
            f"Available tables are {', '.join(self.available)}."
        )


class RegistryLookupError(RealtimeError):
    """Raised when the list of valid tables cannot be retrieved."""


class FrameDecodeError(RealtimeError, ValueError):
    """Raised when an inbound websocket message cannot be decoded."""


class ExchangeError(RealtimeError):
    """An ``error`` message pushed by the exchange over the websocket."""


__all__ = ["RealtimeError", "UnknownTableError", "RegistryLookupError", "FrameDecodeError", "ExchangeError"]
