"""Topic naming for the realtime feed.

Inbound data is addressed by a three-part composite key ``table:action:symbol``
such as ``instrument:update:XBTUSD``. Subscriptions bind to patterns of the same
shape where ``action`` and ``symbol`` may be the wildcard ``*``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

WILDCARD = "*"
DELIMITER = ":"

ACTIONS = ("partial", "insert", "update", "delete")

# Tables whose rows are not partitioned by instrument.
ACCOUNT_SCOPED_TABLES = frozenset(
    {
        "account",
        "affiliate",
        "funds",
        "insurance",
        "margin",
        "transact",
        "wallet",
        "announcement",
        "connected",
        "chat",
        "publicNotifications",
        "privateNotifications",
    }
)


def is_account_scoped(table: str) -> bool:
    return table in ACCOUNT_SCOPED_TABLES


def effective_symbol(table: str, symbol: str) -> str:
    """Return the symbol actually used for ``table`` (``*`` for account tables)."""

    return WILDCARD if is_account_scoped(table) else symbol


@dataclass(frozen=True)
class Topic:
    """A single logical stream: one table for one symbol."""

    table: str
    symbol: str

    def subscription_arg(self) -> str:
        """Return the ``args`` value used in the subscribe command."""

        return f"{self.table}{DELIMITER}{self.symbol}"


@dataclass(frozen=True)
class TopicPattern:
    """Composite key a binding listens on. ``action``/``symbol`` may be wildcards."""

    table: str
    action: str = WILDCARD
    symbol: str = WILDCARD

    @classmethod
    def parse(cls, key: str) -> "TopicPattern":
        parts = key.split(DELIMITER)
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Composite topic must look like table:action:symbol, got {key!r}")
        table, action, symbol = parts
        return cls(table=table, action=action, symbol=symbol)

    def key(self) -> str:
        return DELIMITER.join((self.table, self.action, self.symbol))

    def topic(self) -> Topic:
        return Topic(self.table, self.symbol)

    def matches(self, frame: "Frame") -> bool:
        if frame.table != self.table:
            return False
        if self.action != WILDCARD and frame.action != self.action:
            return False
        return self.symbol == WILDCARD or frame.symbol == self.symbol


@dataclass
class Frame:
    """Rows from one inbound message for a single table, action, and symbol."""

    table: str
    action: str
    symbol: str
    data: List[Dict[str, Any]] = field(default_factory=list)

    def key(self) -> str:
        return DELIMITER.join((self.table, self.action, self.symbol))


__all__ = [
    "WILDCARD",
    "ACTIONS",
    "ACCOUNT_SCOPED_TABLES",
    "is_account_scoped",
    "effective_symbol",
    "Topic",
    "TopicPattern",
    "Frame",
]
