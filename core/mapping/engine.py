"""DevPos to QuickBooks document mapper.

Pure transformation from a SourceDocument to a QuickBooks Invoice or Bill
payload. No I/O happens here: counterparty ids and VAT rate mappings are
resolved by the caller and passed in.

Tax handling depends on whether the company tracks VAT in QuickBooks.
When it does not, the payload must carry no tax fields at all; QuickBooks
rejects or misbooks an empty TaxCodeRef on companies with tax disabled.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.mapping.fields import (
    BILL_AMOUNT_FIELDS,
    BILL_DATE_FIELDS,
    BUYER_NAME_FIELDS,
    CURRENCY_FIELDS,
    DEFAULT_CUSTOMER_NAME,
    DEFAULT_VENDOR_NAME,
    EXCHANGE_RATE_FIELDS,
    INVOICE_AMOUNT_FIELDS,
    INVOICE_DATE_FIELDS,
    SELLER_NAME_FIELDS,
    VAT_RATE_FIELDS,
    to_date_string,
    to_float,
)
from core.models.documents import DocumentKind, SourceDocument, VatRateMapping


# QuickBooks custom field StringValue limit
EIC_MAX_LENGTH = 31

NON_TAXABLE_CODE = "NON"
TAXABLE_CODE = "TAX"


@dataclass
class MappingOptions:
    """Company-independent mapping configuration."""
    eic_custom_field_id: Optional[str] = None
    item_id: str = "1"
    item_name: str = "Services"
    expense_account_id: str = "1"
    home_currency: str = "ALL"


@dataclass
class MappedDocument:
    """A QuickBooks payload plus what the executor needs to record about it."""
    payload: Dict[str, Any]
    txn_date: str
    amount: float
    currency: str
    degraded: bool = False
    warnings: List[str] = field(default_factory=list)


# =============================================================================
# Field extraction
# =============================================================================

def extract_txn_date(
    doc: SourceDocument,
    today: Optional[date] = None,
) -> Tuple[str, bool]:
    """Transaction date and whether it had to fall back to today.

    Returns:
        (YYYY-MM-DD, degraded)
    """
    names = INVOICE_DATE_FIELDS if doc.kind is DocumentKind.SALES else BILL_DATE_FIELDS
    value = to_date_string(doc.first(names))
    if value:
        return value, False
    return (today or date.today()).isoformat(), True


def extract_amount(doc: SourceDocument) -> float:
    """Document total; 0 when no amount field is present."""
    names = INVOICE_AMOUNT_FIELDS if doc.kind is DocumentKind.SALES else BILL_AMOUNT_FIELDS
    return round(to_float(doc.first(names)), 2)


def extract_counterparty_name(doc: SourceDocument) -> str:
    if doc.kind is DocumentKind.SALES:
        return str(doc.first(BUYER_NAME_FIELDS, DEFAULT_CUSTOMER_NAME))
    return str(doc.first(SELLER_NAME_FIELDS, DEFAULT_VENDOR_NAME))


def extract_vat_rate(doc: SourceDocument) -> float:
    return to_float(doc.first(VAT_RATE_FIELDS))


def extract_currency(doc: SourceDocument, home_currency: str = "ALL") -> str:
    value = doc.first(CURRENCY_FIELDS)
    return str(value).upper() if value else home_currency.upper()


def extract_exchange_rate(doc: SourceDocument) -> Optional[float]:
    rate = to_float(doc.first(EXCHANGE_RATE_FIELDS))
    return rate if rate > 0 else None


def format_rate(rate: float) -> str:
    """20.0 -> '20', 6.5 -> '6.5'."""
    return f"{rate:g}"


# =============================================================================
# Tax codes
# =============================================================================

def resolve_tax_code(rate: float, vat_mappings: Sequence[VatRateMapping]) -> str:
    """QuickBooks tax code for a DevPos VAT rate.

    An exact rate mapping wins. Unmapped 0% uses the company's excluded code
    if one is configured, else the non-taxable code. Unmapped non-zero rates
    use the generic taxable code.
    """
    for mapping in vat_mappings:
        if abs(mapping.source_vat_rate - rate) < 1e-9:
            return mapping.target_tax_code

    if rate == 0:
        for mapping in vat_mappings:
            if mapping.is_excluded:
                return mapping.target_tax_code
        return NON_TAXABLE_CODE

    return TAXABLE_CODE


# =============================================================================
# Payload builders
# =============================================================================

def _apply_currency(
    payload: Dict[str, Any],
    doc: SourceDocument,
    options: MappingOptions,
    warnings: List[str],
) -> str:
    currency = extract_currency(doc, options.home_currency)
    if currency == options.home_currency.upper():
        return currency

    payload["CurrencyRef"] = {"value": currency}
    exchange_rate = extract_exchange_rate(doc)
    if exchange_rate:
        payload["ExchangeRate"] = exchange_rate
    else:
        warnings.append(f"Foreign currency {currency} without exchange rate")
    return currency


def map_to_target_invoice(
    doc: SourceDocument,
    customer_id: str,
    tracks_vat: bool,
    vat_mappings: Sequence[VatRateMapping] = (),
    options: Optional[MappingOptions] = None,
    today: Optional[date] = None,
) -> MappedDocument:
    """Build a QuickBooks Invoice payload from a DevPos sales invoice.

    Args:
        doc: DevPos sales document
        customer_id: Resolved QuickBooks customer id
        tracks_vat: Company-level VAT tracking flag
        vat_mappings: Company VAT rate mappings (ignored when not tracking VAT)
        options: Item, custom field and currency settings
        today: Fallback date when the document has none
    """
    options = options or MappingOptions()
    warnings: List[str] = []

    txn_date, degraded = extract_txn_date(doc, today)
    if degraded:
        warnings.append(f"No date field on document {doc.display_id}; using {txn_date}")

    amount = extract_amount(doc)
    doc_number = doc.document_number

    line_detail: Dict[str, Any] = {
        "ItemRef": {"value": options.item_id, "name": options.item_name},
        "UnitPrice": amount,
        "Qty": 1,
    }
    description = f"Invoice: {doc_number}" if doc_number else "Sales Invoice"

    if tracks_vat:
        vat_rate = extract_vat_rate(doc)
        line_detail["TaxCodeRef"] = {"value": resolve_tax_code(vat_rate, vat_mappings)}
        if doc_number:
            description = f"{description} - VAT: {format_rate(vat_rate)}%"

    payload: Dict[str, Any] = {
        "Line": [
            {
                "Amount": amount,
                "DetailType": "SalesItemLineDetail",
                "SalesItemLineDetail": line_detail,
                "Description": description,
            }
        ],
        "CustomerRef": {"value": str(customer_id)},
        "TxnDate": txn_date,
    }

    if doc_number:
        payload["DocNumber"] = doc_number

    eic = doc.eic
    if eic and options.eic_custom_field_id:
        payload["CustomField"] = [
            {
                "DefinitionId": options.eic_custom_field_id,
                "Name": "EIC",
                "Type": "StringType",
                "StringValue": eic[:EIC_MAX_LENGTH],
            }
        ]

    currency = _apply_currency(payload, doc, options, warnings)

    return MappedDocument(
        payload=payload,
        txn_date=txn_date,
        amount=amount,
        currency=currency,
        degraded=degraded,
        warnings=warnings,
    )


def map_to_target_bill(
    doc: SourceDocument,
    vendor_id: str,
    options: Optional[MappingOptions] = None,
    today: Optional[date] = None,
) -> MappedDocument:
    """Build a QuickBooks Bill payload from a DevPos purchase invoice."""
    options = options or MappingOptions()
    warnings: List[str] = []

    txn_date, degraded = extract_txn_date(doc, today)
    if degraded:
        warnings.append(f"No date field on document {doc.display_id}; using {txn_date}")

    amount = extract_amount(doc)
    seller_name = extract_counterparty_name(doc)

    payload: Dict[str, Any] = {
        "VendorRef": {"value": str(vendor_id)},
        "TxnDate": txn_date,
        "Line": [
            {
                "Amount": amount,
                "DetailType": "AccountBasedExpenseLineDetail",
                "AccountBasedExpenseLineDetail": {
                    "AccountRef": {"value": options.expense_account_id},
                },
                "Description": f"Bill from {seller_name}",
            }
        ],
    }

    doc_number = doc.document_number
    if doc_number:
        payload["DocNumber"] = doc_number

    currency = _apply_currency(payload, doc, options, warnings)

    return MappedDocument(
        payload=payload,
        txn_date=txn_date,
        amount=amount,
        currency=currency,
        degraded=degraded,
        warnings=warnings,
    )
