"""QuickBooks Online (target system) connector."""

from connectors.quickbooks.qbo_auth import QBOAuthProvider
from connectors.quickbooks.qbo_client import (
    QBOApiClient,
    RetryConfig,
    escape_query_value,
    fault_message,
)

__all__ = [
    "QBOAuthProvider",
    "QBOApiClient",
    "RetryConfig",
    "escape_query_value",
    "fault_message",
]
