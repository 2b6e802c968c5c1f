"""Infrastructure utilities for configuration, logging, and metrics."""

from .config import ClientConfig, load_config
from .logging import configure_logging
from .metrics import MetricsSink

__all__ = [
    "ClientConfig",
    "load_config",
    "configure_logging",
    "MetricsSink",
]
