"""Core module initialization."""

from .config_manager import ConfigManager, StreamZureConfig
from .logging_config import setup_logging, log_with_context, correlation_scope
from .metrics import TransferMetrics, get_metrics, reset_metrics

__all__ = [
    "ConfigManager",
    "StreamZureConfig",
    "setup_logging",
    "log_with_context",
    "correlation_scope",
    "TransferMetrics",
    "get_metrics",
    "reset_metrics",
]
