"""Topic model, registry, ledger, routing, and the websocket connection."""

from .connection import BackoffConfig, ConnectionListener, ConnectionProxy, WebSocketConnection
from .ledger import SubscriptionLedger
from .registry import TopicRegistry, fetch_topic_registry
from .router import StreamBinding, TopicRouter
from .topics import ACCOUNT_SCOPED_TABLES, Frame, Topic, TopicPattern

__all__ = [
    "BackoffConfig",
    "ConnectionListener",
    "ConnectionProxy",
    "WebSocketConnection",
    "SubscriptionLedger",
    "TopicRegistry",
    "fetch_topic_registry",
    "StreamBinding",
    "TopicRouter",
    "ACCOUNT_SCOPED_TABLES",
    "Frame",
    "Topic",
    "TopicPattern",
]
