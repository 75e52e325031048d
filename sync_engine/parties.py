"""Counterparty resolution (QuickBooks customers and vendors).

Lookup order for a DevPos buyer/seller:
1. Cached id from party_mappings (verified once per job against QuickBooks)
2. Query by tax id (Customer.ResaleNum / Vendor.TaxIdentifier)
3. Query by DisplayName
4. Create

Documents of one company are synced sequentially, so the read-then-create
sequence here cannot race with itself inside a job.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

from connectors.quickbooks.qbo_client import QBOApiClient
from core.db import DEFAULT_DB_PATH
from core.errors import AuthenticationError, TargetValidationError, UpstreamError
from core.models.documents import DocumentKind
from core.observability.logging import get_logger
from mapping_store.db import delete_party_mapping, get_party_mapping, save_party_mapping
from mapping_store.models import PartyMapping

logger = get_logger(__name__)

TAX_ID_FIELDS = {
    "customer": "ResaleNum",
    "vendor": "TaxIdentifier",
}


def party_lookup_key(name: str, tax_id: Optional[str], currency: Optional[str], home_currency: str) -> str:
    """Cache key: NUIS when known, else normalized name; foreign currency appended."""
    key = tax_id.strip() if tax_id else f"name:{' '.join(name.lower().split())}"
    if currency and currency.upper() != home_currency.upper():
        key = f"{key}|{currency.upper()}"
    return key


def party_display_name(
    party_type: str,
    name: str,
    tax_id: Optional[str],
    currency: Optional[str],
    home_currency: str,
) -> str:
    """QuickBooks DisplayName for a new customer or vendor.

    DisplayName is unique across customers and vendors in QuickBooks, so
    vendors carry their NUIS and foreign-currency parties their currency.
    """
    display = name.strip()
    if party_type == "vendor" and tax_id:
        display = f"{display} ({tax_id})"
    if currency and currency.upper() != home_currency.upper():
        display = f"{display} - {currency.upper()}"
    return display


def _is_duplicate_name_error(error: TargetValidationError) -> bool:
    text = f"{error} {error.response_body}".lower()
    return "duplicate" in text or "already exists" in text or "6240" in text


class CounterpartyResolver:
    """Resolves DevPos counterparties to QuickBooks ids for one job."""

    def __init__(
        self,
        target: QBOApiClient,
        company_id: int,
        home_currency: str = "ALL",
        db_path: Path = DEFAULT_DB_PATH,
    ):
        self.target = target
        self.company_id = company_id
        self.home_currency = home_currency.upper()
        self.db_path = db_path
        self._verified: Dict[str, str] = {}

    def _is_foreign(self, currency: Optional[str]) -> bool:
        return bool(currency) and currency.upper() != self.home_currency

    def _matches_currency(self, record: Dict[str, Any], currency: Optional[str]) -> bool:
        record_currency = (record.get("CurrencyRef") or {}).get("value")
        if self._is_foreign(currency):
            return record_currency == currency.upper()
        return record_currency in (None, "", self.home_currency)

    async def resolve(
        self,
        kind: DocumentKind,
        name: str,
        tax_id: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> str:
        """QuickBooks customer (sales) or vendor (purchase) id for a counterparty."""
        party_type = kind.party_type
        key = party_lookup_key(name, tax_id, currency, self.home_currency)
        cache_id = f"{party_type}:{key}"

        if cache_id in self._verified:
            return self._verified[cache_id]

        cached = get_party_mapping(self.company_id, party_type, key, self.db_path)
        if cached:
            if await self.target.exists(party_type, cached.target_party_id):
                self._verified[cache_id] = cached.target_party_id
                return cached.target_party_id
            logger.warning(
                f"Cached {party_type} {cached.target_party_id} for '{name}' no longer exists; re-resolving"
            )
            delete_party_mapping(self.company_id, party_type, key, self.db_path)

        display_name = party_display_name(party_type, name, tax_id, currency, self.home_currency)

        party_id = await self._find_by_tax_id(party_type, tax_id, currency)
        if party_id is None:
            party_id = await self._find_by_name(party_type, display_name, currency)
        if party_id is None:
            party_id = await self._create(party_type, name, display_name, tax_id, currency)

        save_party_mapping(
            PartyMapping(
                company_id=self.company_id,
                party_type=party_type,
                lookup_key=key,
                counterparty_name=name,
                counterparty_tax_id=tax_id,
                currency=currency.upper() if currency else None,
                target_party_id=party_id,
            ),
            self.db_path,
        )
        self._verified[cache_id] = party_id
        return party_id

    async def _find_by_tax_id(self, party_type: str, tax_id: Optional[str], currency: Optional[str]) -> Optional[str]:
        if not tax_id:
            return None
        try:
            records = await self.target.find_by_field(party_type, TAX_ID_FIELDS[party_type], tax_id)
        except AuthenticationError:
            raise
        except UpstreamError as e:
            # Not every QBO region allows filtering on tax id fields
            logger.warning(f"{party_type} lookup by tax id {tax_id} failed: {e}")
            return None
        return self._pick(records, currency)

    async def _find_by_name(self, party_type: str, display_name: str, currency: Optional[str]) -> Optional[str]:
        records = await self.target.find_by_field(party_type, "DisplayName", display_name)
        return self._pick(records, currency)

    def _pick(self, records: List[Dict[str, Any]], currency: Optional[str]) -> Optional[str]:
        active = [r for r in records if r.get("Active", True)]
        for record in active:
            if self._matches_currency(record, currency):
                return str(record["Id"])
        return None

    async def _create(
        self,
        party_type: str,
        name: str,
        display_name: str,
        tax_id: Optional[str],
        currency: Optional[str],
    ) -> str:
        payload: Dict[str, Any] = {
            "DisplayName": display_name,
            "CompanyName": name.strip(),
        }
        if party_type == "vendor":
            payload["Vendor1099"] = False
            if tax_id:
                payload["TaxIdentifier"] = tax_id
        elif tax_id:
            payload["ResaleNum"] = tax_id
        if self._is_foreign(currency):
            payload["CurrencyRef"] = {"value": currency.upper()}

        try:
            created = await self.target.create(party_type, payload)
        except TargetValidationError as e:
            if not _is_duplicate_name_error(e):
                raise
            logger.info(f"{party_type} '{display_name}' already exists in QuickBooks; looking it up")
            records = await self.target.find_by_field(party_type, "DisplayName", display_name)
            if not records:
                raise
            return str(records[0]["Id"])

        logger.info(
            f"Created QuickBooks {party_type} {created['Id']} '{display_name}'",
            extra_fields={"party_type": party_type, "target_party_id": created["Id"]},
        )
        return str(created["Id"])
