"""
Observability for the sync engine.

Structured logging with job, company and document correlation IDs.
"""

from core.observability.logging import (
    CorrelationContext,
    configure_logging,
    get_correlation_context,
    get_logger,
    with_correlation,
)

__all__ = [
    "CorrelationContext",
    "configure_logging",
    "get_correlation_context",
    "get_logger",
    "with_correlation",
]
