"""SQLite schema for the sync engine.

One database file holds companies, encrypted credentials, the job table,
the idempotency ledger, the counterparty cache and VAT rate mappings.
Store modules (core.security.credential_store, jobs.db, mapping_store.db)
open their own short-lived connections against the same file.
"""

import sqlite3
from pathlib import Path
from typing import Union


DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "devpos_sync.db"

JOB_TYPES = ("sales", "purchases", "bills", "full")
JOB_STATUSES = ("pending", "running", "completed", "failed")


def connect(db_path: Union[str, Path] = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open a connection with Row access by column name."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Union[str, Path] = DEFAULT_DB_PATH) -> None:
    """Create all sync tables and indexes if they don't exist."""
    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS companies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                company_code TEXT NOT NULL UNIQUE,
                company_name TEXT NOT NULL,
                tracks_vat INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS company_credentials_devpos (
                company_id INTEGER PRIMARY KEY REFERENCES companies(id),
                tenant TEXT NOT NULL,
                username TEXT NOT NULL,
                password_encrypted TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS company_credentials_qbo (
                company_id INTEGER PRIMARY KEY REFERENCES companies(id),
                realm_id TEXT NOT NULL,
                tokens_encrypted TEXT NOT NULL,
                token_expires_at TEXT,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS sync_jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                company_id INTEGER NOT NULL REFERENCES companies(id),
                job_type TEXT NOT NULL CHECK (job_type IN {JOB_TYPES!r}),
                from_date TEXT NOT NULL,
                to_date TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN {JOB_STATUSES!r}),
                trigger_source TEXT NOT NULL DEFAULT 'manual',
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                error_message TEXT,
                results_json TEXT
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_jobs_status
            ON sync_jobs(status, created_at)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_jobs_company
            ON sync_jobs(company_id, status)
        """)

        # Idempotency ledger
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS invoice_mappings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                company_id INTEGER NOT NULL,
                source_key TEXT NOT NULL,
                transaction_type TEXT NOT NULL,
                target_document_id TEXT NOT NULL,
                target_doc_number TEXT,
                amount REAL NOT NULL DEFAULT 0,
                currency TEXT,
                counterparty_name TEXT,
                synced_at TEXT NOT NULL,
                last_synced_at TEXT NOT NULL,
                UNIQUE(company_id, source_key, transaction_type)
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_invoice_mappings_target
            ON invoice_mappings(company_id, target_document_id)
        """)

        # Customer/vendor cache
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS party_mappings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                company_id INTEGER NOT NULL,
                party_type TEXT NOT NULL,
                lookup_key TEXT NOT NULL,
                counterparty_name TEXT NOT NULL,
                counterparty_tax_id TEXT,
                currency TEXT,
                target_party_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE(company_id, party_type, lookup_key)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS vat_rate_mappings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                company_id INTEGER NOT NULL,
                source_vat_rate REAL NOT NULL,
                target_tax_code TEXT NOT NULL,
                is_excluded INTEGER NOT NULL DEFAULT 0,
                UNIQUE(company_id, source_vat_rate)
            )
        """)

        conn.commit()
    finally:
        conn.close()
