"""Mapping Store Data Models.

- MappingRecord: one synced DevPos document and the QuickBooks record it became
- PartyMapping: cached DevPos counterparty to QuickBooks customer/vendor id
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TransactionType(str, Enum):
    INVOICE = "invoice"
    BILL = "bill"


class PartyType(str, Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"


class MappingRecord(BaseModel):
    """Idempotency ledger row.

    At most one row exists per (company_id, source_key, transaction_type).

    Attributes:
        source_key: DevPos EIC, or "documentNumber|counterpartyNuis" without one
        target_document_id: QuickBooks Invoice/Bill Id
        amount: Amount synced, used to detect later changes in DevPos
        synced_at: First successful sync
        last_synced_at: Most recent create or update
    """
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: Optional[int] = None
    company_id: int
    source_key: str = Field(..., description="EIC or composite document key")
    transaction_type: TransactionType
    target_document_id: str
    target_doc_number: Optional[str] = None
    amount: float = 0.0
    currency: Optional[str] = None
    counterparty_name: Optional[str] = None
    synced_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None


class PartyMapping(BaseModel):
    """Cache entry for a resolved QuickBooks customer or vendor.

    QuickBooks stays authoritative: entries whose id no longer resolves are
    deleted and recreated.
    """
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: Optional[int] = None
    company_id: int
    party_type: PartyType
    lookup_key: str = Field(..., description="NUIS or normalized name, plus currency suffix")
    counterparty_name: str
    counterparty_tax_id: Optional[str] = None
    currency: Optional[str] = None
    target_party_id: str
    created_at: Optional[datetime] = None
