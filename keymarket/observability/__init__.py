"""
Observability module - Logging, Metrics, and Tracing.
"""

from keymarket.observability.logging import get_logger, setup_logging
from keymarket.observability.metrics import metrics
from keymarket.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
