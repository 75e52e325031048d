"""DevPos (source system) connector."""

from connectors.devpos.devpos_client import DevposClient, format_query_date

__all__ = ["DevposClient", "format_query_date"]
