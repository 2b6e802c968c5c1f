"""In-process counters and gauges for client instrumentation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping


@dataclass
class MetricsSink:
    """Collects counters and gauges reported through the client's metrics callback.

    Pass :meth:`observe` as ``metrics_callback`` when building a
    :class:`~bitmex_realtime.client.RealtimeClient`.
    """

    counters: Dict[str, int] = field(default_factory=dict)
    gauges: Dict[str, float] = field(default_factory=dict)
    log_events: bool = False
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("metrics"))

    def incr(self, name: str, value: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + value

    def set_gauge(self, name: str, value: float) -> None:
        self.gauges[name] = float(value)

    def observe(self, name: str, values: Mapping[str, Any]) -> None:
        """Count the event and record its numeric values as ``<name>_<key>`` gauges."""

        self.incr(f"{name}_total")
        for key, value in values.items():
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                self.set_gauge(f"{name}_{key}", value)
        if self.log_events:
            self.logger.debug(name, extra={"event": name, **dict(values)})

    def export(self) -> Dict[str, float | int]:
        """Return a merged view of all current metrics."""

        return {**self.counters, **self.gauges}


__all__ = ["MetricsSink"]
