"""
Observability module - Logging, Metrics, and Tracing.
"""

from wispr.observability.logging import setup_logging
from wispr.observability.metrics import metrics
from wispr.observability.tracing import setup_tracing

__all__ = [
    "setup_logging",
    "metrics",
    "setup_tracing",
]
