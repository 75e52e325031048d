"""DevPos field-name fallback chains.

DevPos has renamed fields across API versions, and sales and purchase
documents disagree on several names. Each chain is tried in order and the
first non-empty value wins.
"""

from typing import Any, Mapping, Optional, Sequence


INVOICE_DATE_FIELDS = ("invoiceCreatedDate", "issueDate", "dateCreated", "created_at")
BILL_DATE_FIELDS = ("invoiceCreatedDate", "issueDate", "dateIssued", "date", "transactionDate")

INVOICE_AMOUNT_FIELDS = ("totalAmount", "total", "amount")
BILL_AMOUNT_FIELDS = ("amount", "total", "totalAmount")

DOCUMENT_NUMBER_FIELDS = ("documentNumber", "doc_no", "DocNumber")
EIC_FIELDS = ("eic", "EIC")

BUYER_NAME_FIELDS = ("buyerName", "buyer_name", "customerName")
BUYER_NUIS_FIELDS = ("buyerNuis", "buyer_nuis", "customerNuis")
SELLER_NAME_FIELDS = ("sellerName", "seller_name")
SELLER_NUIS_FIELDS = ("sellerNuis", "seller_nuis")

VAT_RATE_FIELDS = ("vatRate", "vat_rate", "taxRate")
CURRENCY_FIELDS = ("currencyCode", "currency", "Currency", "CurrencyCode")
EXCHANGE_RATE_FIELDS = ("exchangeRate", "ExchangeRate", "rate")
PDF_FIELDS = ("pdf", "PDF", "pdfContent")

DEFAULT_CUSTOMER_NAME = "Walk-in Customer"
DEFAULT_VENDOR_NAME = "Unknown Vendor"


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def first_value(raw: Mapping[str, Any], names: Sequence[str], default: Any = None) -> Any:
    """Return the first non-empty value of ``names`` in ``raw``."""
    for name in names:
        value = raw.get(name)
        if not _is_empty(value):
            return value.strip() if isinstance(value, str) else value
    return default


def to_float(value: Any, default: float = 0.0) -> float:
    """Coerce a DevPos numeric field (number or numeric string) to float."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip().replace(" ", ""))
    except ValueError:
        return default


def to_date_string(value: Any) -> Optional[str]:
    """Date-only part (YYYY-MM-DD) of a DevPos date or timestamp value."""
    if _is_empty(value):
        return None
    return str(value).strip()[:10]
