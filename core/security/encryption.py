"""Credential encryption using AES-GCM.

Company secrets (DevPos passwords, QuickBooks OAuth tokens) are stored
encrypted with AES-256-GCM. The company id is bound as associated data so a
ciphertext copied onto another company's row fails to decrypt.
"""

import base64
import json
import os
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict

from cryptography.hazmat.primitives.ciphers.aead import AESGCM


def generate_encryption_key() -> str:
    """Generate a new 256-bit encryption key.

    Returns:
        Base64-encoded 32-byte key suitable for ENCRYPTION_KEY
    """
    key = secrets.token_bytes(32)
    return base64.b64encode(key).decode('utf-8')


def company_scope(company_id: int) -> str:
    """Associated-data scope for a company's secrets."""
    return f"company:{company_id}"


@dataclass
class EncryptedSecret:
    """Encrypted secret with metadata, stored as JSON text."""
    ciphertext: str  # Base64, GCM tag appended
    nonce: str       # Base64 96-bit nonce
    scope: str       # Associated data, e.g. "company:7"
    created_at: str
    key_version: int = 1

    def to_json(self) -> str:
        return json.dumps({
            "ciphertext": self.ciphertext,
            "nonce": self.nonce,
            "scope": self.scope,
            "created_at": self.created_at,
            "key_version": self.key_version,
        })

    @classmethod
    def from_json(cls, text: str) -> "EncryptedSecret":
        try:
            data = json.loads(text)
            return cls(
                ciphertext=data["ciphertext"],
                nonce=data["nonce"],
                scope=data["scope"],
                created_at=data.get("created_at", ""),
                key_version=data.get("key_version", 1),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise ValueError(f"Malformed encrypted secret: {e}")


class CredentialEncryption:
    """AES-256-GCM encryption for company credentials.

    Usage:
        enc = CredentialEncryption(os.environ["ENCRYPTION_KEY"])
        blob = enc.encrypt({"password": "..."}, scope=company_scope(7))
        secret = enc.decrypt(blob, scope=company_scope(7))
    """

    def __init__(self, encryption_key: str):
        """Initialize with base64-encoded encryption key.

        Raises:
            ValueError: If the key is not valid base64 for 32 bytes
        """
        try:
            self._key = base64.b64decode(encryption_key, validate=True)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid encryption key: {e}")
        if len(self._key) != 32:
            raise ValueError("Invalid encryption key: must be 32 bytes (256 bits)")

        self._aesgcm = AESGCM(self._key)

    def encrypt(
        self,
        secret_data: Dict[str, Any],
        scope: str,
        key_version: int = 1,
    ) -> EncryptedSecret:
        """Encrypt a dict of secrets bound to ``scope``."""
        plaintext = json.dumps(secret_data).encode('utf-8')
        nonce = os.urandom(12)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext, scope.encode('utf-8'))

        return EncryptedSecret(
            ciphertext=base64.b64encode(ciphertext).decode('utf-8'),
            nonce=base64.b64encode(nonce).decode('utf-8'),
            scope=scope,
            created_at=datetime.utcnow().isoformat(),
            key_version=key_version,
        )

    def decrypt(self, encrypted: EncryptedSecret, scope: str) -> Dict[str, Any]:
        """Decrypt a secret, requiring it to belong to ``scope``.

        Raises:
            ValueError: If decryption fails (wrong key, tampered data, wrong scope)
        """
        if encrypted.scope != scope:
            raise ValueError(
                f"Secret decryption failed: scope {encrypted.scope!r} does not match {scope!r}"
            )
        try:
            ciphertext = base64.b64decode(encrypted.ciphertext)
            nonce = base64.b64decode(encrypted.nonce)
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, scope.encode('utf-8'))
            return json.loads(plaintext.decode('utf-8'))
        except Exception as e:
            raise ValueError(f"Secret decryption failed: {e}")
