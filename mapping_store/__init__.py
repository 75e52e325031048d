"""Mapping Store - idempotency ledger and counterparty cache.

The ledger records which DevPos documents already exist in QuickBooks so
that replays of overlapping date ranges never create duplicates.
"""

from mapping_store.models import (
    MappingRecord,
    PartyMapping,
    PartyType,
    TransactionType,
)
from mapping_store.db import (
    count_mappings,
    delete_mapping,
    delete_party_mapping,
    find_mapping,
    get_party_mapping,
    get_vat_rate_mappings,
    list_mappings,
    save_party_mapping,
    save_vat_rate_mapping,
    upsert_mapping,
)

__all__ = [
    "MappingRecord",
    "PartyMapping",
    "PartyType",
    "TransactionType",
    "count_mappings",
    "delete_mapping",
    "delete_party_mapping",
    "find_mapping",
    "get_party_mapping",
    "get_vat_rate_mappings",
    "list_mappings",
    "save_party_mapping",
    "save_vat_rate_mapping",
    "upsert_mapping",
]
