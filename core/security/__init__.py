"""Security module - credential encryption and the per-company credential store."""

from core.security.encryption import (
    CredentialEncryption,
    EncryptedSecret,
    company_scope,
    generate_encryption_key,
)
from core.security.credential_store import (
    Company,
    CredentialStore,
    SourceCredentials,
    TargetCredentials,
)

__all__ = [
    "CredentialEncryption",
    "EncryptedSecret",
    "company_scope",
    "generate_encryption_key",
    "Company",
    "CredentialStore",
    "SourceCredentials",
    "TargetCredentials",
]
