"""Topic-multiplexing client for the BitMEX realtime websocket API."""

from .client import RealtimeClient
from .data.registry import TopicRegistry
from .data.topics import Frame, Topic
from .errors import RealtimeError, RegistryLookupError, UnknownTableError
from .infra.config import ClientConfig

__version__ = "0.1.0"

__all__ = [
    "RealtimeClient",
    "ClientConfig",
    "TopicRegistry",
    "Topic",
    "Frame",
    "RealtimeError",
    "RegistryLookupError",
    "UnknownTableError",
]
