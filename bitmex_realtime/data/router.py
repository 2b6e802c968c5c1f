"""Binding of user callbacks to composite topics and dispatch of inbound frames."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .ledger import SubscriptionLedger
from .topics import Frame, TopicPattern

StreamCallback = Callable[[List[Dict[str, Any]], str], Any]
ErrorSink = Callable[[BaseException], None]

_binding_ids = itertools.count(1)


@dataclass(eq=False)
class StreamBinding:
    """A user callback attached to one composite topic pattern."""

    pattern: TopicPattern
    callback: StreamCallback
    binding_id: int = field(default_factory=lambda: next(_binding_ids))


class TopicRouter:
    """Maps composite topics to callbacks and keeps the ledger in step with them.

    Bindings are indexed by table; dispatch filters that table's bindings by
    action and symbol. Callback exceptions are handed to ``on_error`` so one
    failing consumer never blocks delivery to the rest.
    """

    def __init__(
        self,
        ledger: Optional[SubscriptionLedger] = None,
        on_error: Optional[ErrorSink] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.ledger = ledger or SubscriptionLedger()
        self.on_error = on_error
        self.logger = logger or logging.getLogger(__name__)
        self._bindings: Dict[str, List[StreamBinding]] = {}

    def bind(self, pattern: TopicPattern, callback: StreamCallback) -> StreamBinding:
        """Attach ``callback`` to ``pattern`` and count it in the ledger."""

        binding = StreamBinding(pattern=pattern, callback=callback)
        self._bindings.setdefault(pattern.table, []).append(binding)
        count = self.ledger.increment(pattern.table, pattern.symbol)
        self.logger.debug(
            "Opening listener to %s", pattern.key(),
            extra={"event": "bind", "topic": pattern.key(), "listeners": count},
        )
        return binding

    def unbind(self, binding: StreamBinding) -> bool:
        """Detach a binding. Returns False when it was not registered."""

        bindings = self._bindings.get(binding.pattern.table, [])
        if binding not in bindings:
            return False
        bindings.remove(binding)
        if not bindings:
            del self._bindings[binding.pattern.table]
        self.ledger.decrement(binding.pattern.table, binding.pattern.symbol)
        return True

    def bindings(self, table: Optional[str] = None) -> List[StreamBinding]:
        if table is not None:
            return list(self._bindings.get(table, []))
        return [binding for group in self._bindings.values() for binding in group]

    def dispatch(self, frame: Frame) -> int:
        """Deliver ``frame`` to every matching binding. Returns the number invoked."""

        delivered = 0
        for binding in list(self._bindings.get(frame.table, [])):
            if not binding.pattern.matches(frame):
                continue
            delivered += 1
            try:
                binding.callback(frame.data, frame.symbol)
            except Exception as exc:
                self._report(exc, binding, frame)
        return delivered

    def _report(self, exc: Exception, binding: StreamBinding, frame: Frame) -> None:
        if self.on_error is None:
            self.logger.exception(
                "Stream callback failed for %s", frame.key(),
                extra={"event": "callback_error", "topic": binding.pattern.key()},
            )
            return
        try:
            self.on_error(exc)
        except Exception:
            self.logger.exception(
                "Error handler failed for %s", frame.key(),
                extra={"event": "error_handler_failed", "topic": binding.pattern.key()},
            )


__all__ = ["StreamBinding", "StreamCallback", "TopicRouter"]
