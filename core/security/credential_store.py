"""Per-company credential store.

Holds one DevPos credential set and one QuickBooks credential set per
company, encrypted at rest. Callers get short-lived decrypted copies
(SourceCredentials / TargetCredentials) and hand refreshed QuickBooks
tokens back through save_target_tokens; nothing else writes these tables.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from core.db import DEFAULT_DB_PATH, connect
from core.errors import ConfigurationError
from core.security.encryption import CredentialEncryption, EncryptedSecret, company_scope

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Company:
    id: int
    company_code: str
    company_name: str
    tracks_vat: bool = False
    is_active: bool = True


@dataclass(frozen=True)
class SourceCredentials:
    """Decrypted DevPos login for one company."""
    company_id: int
    tenant: str
    username: str
    password: str

    def __repr__(self) -> str:
        return (
            f"SourceCredentials(company_id={self.company_id}, tenant={self.tenant!r}, "
            f"username={self.username!r}, password='***')"
        )


@dataclass(frozen=True)
class TargetCredentials:
    """Decrypted QuickBooks OAuth state for one company."""
    company_id: int
    realm_id: str
    access_token: str
    refresh_token: str
    expires_at: Optional[datetime] = None

    def expires_within(self, window: timedelta) -> bool:
        """True if the access token expires within ``window`` (or expiry is unknown)."""
        if self.expires_at is None:
            return True
        return datetime.utcnow() + window >= self.expires_at

    def __repr__(self) -> str:
        return (
            f"TargetCredentials(company_id={self.company_id}, realm_id={self.realm_id!r}, "
            f"expires_at={self.expires_at!r})"
        )


class CredentialStore:
    """SQLite-backed encrypted credential store."""

    def __init__(self, encryption: CredentialEncryption, db_path: Path = DEFAULT_DB_PATH):
        self._encryption = encryption
        self.db_path = db_path

    @classmethod
    def from_key(cls, encryption_key: Optional[str], db_path: Path = DEFAULT_DB_PATH) -> "CredentialStore":
        """Build a store from an ENCRYPTION_KEY value."""
        if not encryption_key:
            raise ConfigurationError("ENCRYPTION_KEY is not set")
        try:
            encryption = CredentialEncryption(encryption_key)
        except ValueError as e:
            raise ConfigurationError(str(e))
        return cls(encryption, db_path)

    # -------------------------------------------------------------------------
    # Companies
    # -------------------------------------------------------------------------

    def add_company(self, company_code: str, company_name: str, tracks_vat: bool = False) -> Company:
        conn = connect(self.db_path)
        try:
            cursor = conn.execute(
                """
                INSERT INTO companies (company_code, company_name, tracks_vat, is_active, created_at)
                VALUES (?, ?, ?, 1, ?)
                """,
                (company_code, company_name, int(tracks_vat), datetime.utcnow().isoformat()),
            )
            conn.commit()
            return Company(
                id=cursor.lastrowid,
                company_code=company_code,
                company_name=company_name,
                tracks_vat=tracks_vat,
            )
        finally:
            conn.close()

    def get_company(self, company_id: int) -> Optional[Company]:
        conn = connect(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM companies WHERE id = ?", (company_id,)
            ).fetchone()
            return _row_to_company(row) if row else None
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # DevPos
    # -------------------------------------------------------------------------

    def save_source_credentials(self, company_id: int, tenant: str, username: str, password: str) -> None:
        blob = self._encryption.encrypt({"password": password}, company_scope(company_id))
        conn = connect(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO company_credentials_devpos
                    (company_id, tenant, username, password_encrypted, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(company_id) DO UPDATE SET
                    tenant = excluded.tenant,
                    username = excluded.username,
                    password_encrypted = excluded.password_encrypted,
                    updated_at = excluded.updated_at
                """,
                (company_id, tenant, username, blob.to_json(), datetime.utcnow().isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

    def get_source_credentials(self, company_id: int) -> Optional[SourceCredentials]:
        """Decrypted DevPos credentials, or None if the company has none."""
        conn = connect(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM company_credentials_devpos WHERE company_id = ?", (company_id,)
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            return None

        secret = self._decrypt(row["password_encrypted"], company_id)
        return SourceCredentials(
            company_id=company_id,
            tenant=row["tenant"],
            username=row["username"],
            password=secret.get("password", ""),
        )

    # -------------------------------------------------------------------------
    # QuickBooks
    # -------------------------------------------------------------------------

    def save_target_credentials(
        self,
        company_id: int,
        realm_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: Optional[datetime] = None,
    ) -> TargetCredentials:
        credentials = TargetCredentials(
            company_id=company_id,
            realm_id=realm_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )
        self.save_target_tokens(credentials)
        return credentials

    def save_target_tokens(self, credentials: TargetCredentials) -> None:
        """Persist QuickBooks tokens (initial connect or after a refresh)."""
        blob = self._encryption.encrypt(
            {
                "access_token": credentials.access_token,
                "refresh_token": credentials.refresh_token,
            },
            company_scope(credentials.company_id),
        )
        expires_at = credentials.expires_at.isoformat() if credentials.expires_at else None

        conn = connect(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO company_credentials_qbo
                    (company_id, realm_id, tokens_encrypted, token_expires_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(company_id) DO UPDATE SET
                    realm_id = excluded.realm_id,
                    tokens_encrypted = excluded.tokens_encrypted,
                    token_expires_at = excluded.token_expires_at,
                    updated_at = excluded.updated_at
                """,
                (
                    credentials.company_id,
                    credentials.realm_id,
                    blob.to_json(),
                    expires_at,
                    datetime.utcnow().isoformat(),
                ),
            )
            conn.commit()
        finally:
            conn.close()

        logger.info(f"Stored QuickBooks tokens for company {credentials.company_id} (expires {expires_at})")

    def get_target_credentials(self, company_id: int) -> Optional[TargetCredentials]:
        """Decrypted QuickBooks credentials, or None if the company isn't connected."""
        conn = connect(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM company_credentials_qbo WHERE company_id = ?", (company_id,)
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            return None

        tokens = self._decrypt(row["tokens_encrypted"], company_id)
        expires_at = row["token_expires_at"]
        return TargetCredentials(
            company_id=company_id,
            realm_id=row["realm_id"],
            access_token=tokens.get("access_token", ""),
            refresh_token=tokens.get("refresh_token", ""),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
        )

    def _decrypt(self, text: str, company_id: int) -> dict:
        try:
            return self._encryption.decrypt(EncryptedSecret.from_json(text), company_scope(company_id))
        except ValueError as e:
            raise ConfigurationError(f"Stored credentials for company {company_id} are unreadable: {e}")


def _row_to_company(row: sqlite3.Row) -> Company:
    return Company(
        id=row["id"],
        company_code=row["company_code"],
        company_name=row["company_name"],
        tracks_vat=bool(row["tracks_vat"]),
        is_active=bool(row["is_active"]),
    )
