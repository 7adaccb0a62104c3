"""
Observability module - Logging and Metrics.
"""

from commerce.observability.logging import get_logger, log_context, setup_logging
from commerce.observability.metrics import metrics

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
]
