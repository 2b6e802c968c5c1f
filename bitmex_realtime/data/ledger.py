"""Reference counts of live bindings per (table, symbol)."""

from __future__ import annotations

from typing import Dict, List

from .topics import Topic


class SubscriptionLedger:
    """Counts bindings per topic; decides when the exchange must be asked for data."""

    def __init__(self) -> None:
        self._counts: Dict[str, Dict[str, int]] = {}

    def count(self, table: str, symbol: str) -> int:
        return self._counts.get(table, {}).get(symbol, 0)

    def increment(self, table: str, symbol: str) -> int:
        """Add one listener and return the new count."""

        symbols = self._counts.setdefault(table, {})
        symbols[symbol] = symbols.get(symbol, 0) + 1
        return symbols[symbol]

    def decrement(self, table: str, symbol: str) -> int:
        """Remove one listener and return the new count. Entries are dropped at zero."""

        symbols = self._counts.get(table)
        if not symbols or symbol not in symbols:
            return 0
        remaining = symbols[symbol] - 1
        if remaining > 0:
            symbols[symbol] = remaining
            return remaining
        del symbols[symbol]
        if not symbols:
            del self._counts[table]
        return 0

    def topics(self) -> List[Topic]:
        return [Topic(table, symbol) for table, symbols in self._counts.items() for symbol in symbols]

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        return {table: dict(symbols) for table, symbols in self._counts.items()}

    def __len__(self) -> int:
        return sum(len(symbols) for symbols in self._counts.values())


__all__ = ["SubscriptionLedger"]
