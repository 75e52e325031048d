"""Source document models.

DevPos returns loosely-shaped JSON whose field names vary between API
versions and document kinds. SourceDocument keeps the raw payload intact
and exposes ordered fallback lookups over it; the mapper decides which
chain applies to which concept.
"""

from enum import Enum
from typing import Any, Dict, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from core.mapping.fields import (
    BUYER_NUIS_FIELDS,
    DOCUMENT_NUMBER_FIELDS,
    EIC_FIELDS,
    PDF_FIELDS,
    SELLER_NUIS_FIELDS,
    first_value,
)


class DocumentKind(str, Enum):
    """DevPos document class and its QuickBooks counterpart."""
    SALES = "sales"
    PURCHASE = "purchase"

    @property
    def target_entity(self) -> str:
        return "invoice" if self is DocumentKind.SALES else "bill"

    @property
    def transaction_type(self) -> str:
        """Idempotency ledger transaction type."""
        return self.target_entity

    @property
    def party_type(self) -> str:
        return "customer" if self is DocumentKind.SALES else "vendor"

    @property
    def results_key(self) -> str:
        """Key of this kind's block in a job's results."""
        return "sales" if self is DocumentKind.SALES else "bills"


class SourceDocument(BaseModel):
    """A sales invoice or purchase bill as returned by DevPos.

    Read-only to the sync engine.
    """
    model_config = ConfigDict(frozen=True)

    kind: DocumentKind
    raw: Dict[str, Any] = Field(default_factory=dict)

    def first(self, names: Sequence[str], default: Any = None) -> Any:
        """First non-empty value among ``names``."""
        return first_value(self.raw, names, default)

    @property
    def eic(self) -> Optional[str]:
        value = self.first(EIC_FIELDS)
        return str(value) if value is not None else None

    @property
    def document_number(self) -> Optional[str]:
        value = self.first(DOCUMENT_NUMBER_FIELDS)
        return str(value) if value is not None else None

    @property
    def counterparty_tax_id(self) -> Optional[str]:
        names = BUYER_NUIS_FIELDS if self.kind is DocumentKind.SALES else SELLER_NUIS_FIELDS
        value = self.first(names)
        return str(value) if value is not None else None

    @property
    def pdf_base64(self) -> Optional[str]:
        value = self.first(PDF_FIELDS)
        return value if isinstance(value, str) else None

    @property
    def idempotency_key(self) -> str:
        """EIC when present, otherwise document number plus counterparty NUIS."""
        if self.eic:
            return self.eic
        return f"{self.document_number or ''}|{self.counterparty_tax_id or ''}"

    @property
    def display_id(self) -> str:
        """Identifier used in logs and error details."""
        return self.eic or self.document_number or "unknown"


class VatRateMapping(BaseModel):
    """Company-configured DevPos VAT rate to QuickBooks tax code."""
    company_id: int
    source_vat_rate: float
    target_tax_code: str
    is_excluded: bool = False
