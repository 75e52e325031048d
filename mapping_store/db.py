"""Mapping Store Database Operations.

This module handles the sync engine's lookup tables:
- invoice_mappings: idempotency ledger (DevPos document -> QuickBooks record)
- party_mappings: customer/vendor id cache
- vat_rate_mappings: company VAT rate to QuickBooks tax code (read-mostly)

Every write is a true upsert against the table's unique key, so replays
never produce duplicate rows.
"""

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from core.db import DEFAULT_DB_PATH, connect
from core.models.documents import VatRateMapping
from mapping_store.models import MappingRecord, PartyMapping


# =============================================================================
# Idempotency ledger
# =============================================================================

def find_mapping(
    company_id: int,
    source_key: str,
    transaction_type: str,
    db_path: Path = DEFAULT_DB_PATH,
) -> Optional[MappingRecord]:
    """Look up the mapping for a DevPos document, if it was synced before."""
    conn = connect(db_path)
    try:
        row = conn.execute(
            """
            SELECT * FROM invoice_mappings
            WHERE company_id = ? AND source_key = ? AND transaction_type = ?
            """,
            (company_id, source_key, _enum_value(transaction_type)),
        ).fetchone()
        return _row_to_mapping(row) if row else None
    finally:
        conn.close()


def upsert_mapping(
    record: MappingRecord,
    db_path: Path = DEFAULT_DB_PATH,
) -> MappingRecord:
    """Insert or update the mapping for (company, source_key, transaction_type).

    The original synced_at is kept on update; last_synced_at is refreshed.

    Returns:
        The stored MappingRecord
    """
    now = datetime.utcnow().isoformat()

    conn = connect(db_path)
    try:
        conn.execute(
            """
            INSERT INTO invoice_mappings
                (company_id, source_key, transaction_type, target_document_id,
                 target_doc_number, amount, currency, counterparty_name,
                 synced_at, last_synced_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(company_id, source_key, transaction_type) DO UPDATE SET
                target_document_id = excluded.target_document_id,
                target_doc_number = excluded.target_doc_number,
                amount = excluded.amount,
                currency = excluded.currency,
                counterparty_name = excluded.counterparty_name,
                last_synced_at = excluded.last_synced_at
            """,
            (
                record.company_id,
                record.source_key,
                _enum_value(record.transaction_type),
                record.target_document_id,
                record.target_doc_number,
                record.amount,
                record.currency,
                record.counterparty_name,
                now,
                now,
            ),
        )
        conn.commit()

        row = conn.execute(
            """
            SELECT * FROM invoice_mappings
            WHERE company_id = ? AND source_key = ? AND transaction_type = ?
            """,
            (record.company_id, record.source_key, _enum_value(record.transaction_type)),
        ).fetchone()
        return _row_to_mapping(row)
    finally:
        conn.close()


def delete_mapping(
    company_id: int,
    source_key: str,
    transaction_type: str,
    db_path: Path = DEFAULT_DB_PATH,
) -> bool:
    """Delete a mapping. Returns True if a row was removed."""
    conn = connect(db_path)
    try:
        cursor = conn.execute(
            """
            DELETE FROM invoice_mappings
            WHERE company_id = ? AND source_key = ? AND transaction_type = ?
            """,
            (company_id, source_key, _enum_value(transaction_type)),
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def list_mappings(
    company_id: int,
    transaction_type: Optional[str] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> List[MappingRecord]:
    conn = connect(db_path)
    try:
        if transaction_type:
            rows = conn.execute(
                """
                SELECT * FROM invoice_mappings
                WHERE company_id = ? AND transaction_type = ?
                ORDER BY id
                """,
                (company_id, _enum_value(transaction_type)),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM invoice_mappings WHERE company_id = ? ORDER BY id",
                (company_id,),
            ).fetchall()
        return [_row_to_mapping(row) for row in rows]
    finally:
        conn.close()


def count_mappings(
    company_id: int,
    transaction_type: Optional[str] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> int:
    conn = connect(db_path)
    try:
        if transaction_type:
            row = conn.execute(
                """
                SELECT COUNT(*) AS n FROM invoice_mappings
                WHERE company_id = ? AND transaction_type = ?
                """,
                (company_id, _enum_value(transaction_type)),
            ).fetchone()
        else:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM invoice_mappings WHERE company_id = ?",
                (company_id,),
            ).fetchone()
        return row["n"]
    finally:
        conn.close()



# =============================================================================
# Counterparty cache
# =============================================================================

def get_party_mapping(
    company_id: int,
    party_type: str,
    lookup_key: str,
    db_path: Path = DEFAULT_DB_PATH,
) -> Optional[PartyMapping]:
    conn = connect(db_path)
    try:
        row = conn.execute(
            """
            SELECT * FROM party_mappings
            WHERE company_id = ? AND party_type = ? AND lookup_key = ?
            """,
            (company_id, _enum_value(party_type), lookup_key),
        ).fetchone()
        return _row_to_party(row) if row else None
    finally:
        conn.close()


def save_party_mapping(
    party: PartyMapping,
    db_path: Path = DEFAULT_DB_PATH,
) -> PartyMapping:
    """Cache a resolved counterparty (replacing any previous id for the key)."""
    now = datetime.utcnow().isoformat()

    conn = connect(db_path)
    try:
        cursor = conn.execute(
            """
            INSERT OR REPLACE INTO party_mappings
                (company_id, party_type, lookup_key, counterparty_name,
                 counterparty_tax_id, currency, target_party_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                party.company_id,
                _enum_value(party.party_type),
                party.lookup_key,
                party.counterparty_name,
                party.counterparty_tax_id,
                party.currency,
                party.target_party_id,
                now,
            ),
        )
        conn.commit()

        party.id = cursor.lastrowid
        party.created_at = datetime.fromisoformat(now)
        return party
    finally:
        conn.close()


def delete_party_mapping(
    company_id: int,
    party_type: str,
    lookup_key: str,
    db_path: Path = DEFAULT_DB_PATH,
) -> bool:
    conn = connect(db_path)
    try:
        cursor = conn.execute(
            """
            DELETE FROM party_mappings
            WHERE company_id = ? AND party_type = ? AND lookup_key = ?
            """,
            (company_id, _enum_value(party_type), lookup_key),
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


# =============================================================================
# VAT rate mappings
# =============================================================================

def get_vat_rate_mappings(
    company_id: int,
    db_path: Path = DEFAULT_DB_PATH,
) -> List[VatRateMapping]:
    conn = connect(db_path)
    try:
        rows = conn.execute(
            """
            SELECT * FROM vat_rate_mappings
            WHERE company_id = ?
            ORDER BY source_vat_rate
            """,
            (company_id,),
        ).fetchall()
        return [
            VatRateMapping(
                company_id=row["company_id"],
                source_vat_rate=row["source_vat_rate"],
                target_tax_code=row["target_tax_code"],
                is_excluded=bool(row["is_excluded"]),
            )
            for row in rows
        ]
    finally:
        conn.close()


def save_vat_rate_mapping(
    mapping: VatRateMapping,
    db_path: Path = DEFAULT_DB_PATH,
) -> VatRateMapping:
    conn = connect(db_path)
    try:
        conn.execute(
            """
            INSERT INTO vat_rate_mappings
                (company_id, source_vat_rate, target_tax_code, is_excluded)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(company_id, source_vat_rate) DO UPDATE SET
                target_tax_code = excluded.target_tax_code,
                is_excluded = excluded.is_excluded
            """,
            (
                mapping.company_id,
                mapping.source_vat_rate,
                mapping.target_tax_code,
                int(mapping.is_excluded),
            ),
        )
        conn.commit()
        return mapping
    finally:
        conn.close()


# =============================================================================
# Row helpers
# =============================================================================

def _enum_value(value) -> str:
    """Plain string for an Enum member or string."""
    return getattr(value, "value", value)


def _row_to_mapping(row: sqlite3.Row) -> MappingRecord:
    return MappingRecord(
        id=row["id"],
        company_id=row["company_id"],
        source_key=row["source_key"],
        transaction_type=row["transaction_type"],
        target_document_id=row["target_document_id"],
        target_doc_number=row["target_doc_number"],
        amount=row["amount"],
        currency=row["currency"],
        counterparty_name=row["counterparty_name"],
        synced_at=datetime.fromisoformat(row["synced_at"]),
        last_synced_at=datetime.fromisoformat(row["last_synced_at"]),
    )


def _row_to_party(row: sqlite3.Row) -> PartyMapping:
    return PartyMapping(
        id=row["id"],
        company_id=row["company_id"],
        party_type=row["party_type"],
        lookup_key=row["lookup_key"],
        counterparty_name=row["counterparty_name"],
        counterparty_tax_id=row["counterparty_tax_id"],
        currency=row["currency"],
        target_party_id=row["target_party_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )
