"""Shared pytest fixtures: a throwaway SQLite database, credential store and in-memory DevPos/QuickBooks fakes."""

import os
import tempfile
from pathlib import Path

import pytest

from core.db import init_db
from core.models.documents import DocumentKind, SourceDocument
from core.security.credential_store import CredentialStore
from core.security.encryption import generate_encryption_key


@pytest.fixture
def temp_db():
    """Create a temporary database with the sync schema."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = Path(f.name)

    init_db(db_path)
    yield db_path

    # Cleanup - try to delete, ignore errors on Windows
    try:
        os.unlink(db_path)
    except PermissionError:
        pass


@pytest.fixture
def encryption_key():
    return generate_encryption_key()


@pytest.fixture
def store(temp_db, encryption_key):
    return CredentialStore.from_key(encryption_key, temp_db)


class FakeQuickBooks:
    """In-memory stand-in for QBOApiClient (one realm)."""

    def __init__(self):
        self.records = {entity: {} for entity in ("invoice", "bill", "customer", "vendor")}
        self.attachments = []
        self.updates = []
        # DocNumber or DisplayName -> exception raised by create()
        self.create_errors = {}
        self._next_id = 100

    async def create(self, entity, payload):
        key = payload.get("DocNumber") or payload.get("DisplayName")
        if key in self.create_errors:
            raise self.create_errors[key]
        self._next_id += 1
        record = dict(payload, Id=str(self._next_id), SyncToken="0")
        self.records[entity][record["Id"]] = record
        return record

    async def get(self, entity, entity_id):
        return self.records[entity].get(str(entity_id), {})

    async def exists(self, entity, entity_id):
        return str(entity_id) in self.records[entity]

    async def update(self, entity, entity_id, changes):
        record = self.records[entity][str(entity_id)]
        record.update(changes)
        self.updates.append((entity, str(entity_id), changes))
        return record

    async def find_by_field(self, entity, field_name, value):
        return [r for r in self.records[entity].values() if r.get(field_name) == value]

    async def upload_attachment(self, entity, entity_id, filename, content, content_type="application/pdf"):
        self.attachments.append((entity, str(entity_id), filename, content))
        return {"Id": f"att-{len(self.attachments)}"}


class FakeDevpos:
    """In-memory stand-in for DevposClient."""

    def __init__(self):
        self.documents = {DocumentKind.SALES: [], DocumentKind.PURCHASE: []}
        self.details = {}
        self.fetch_error = None
        self.fetch_calls = []

    async def authenticate(self, credentials):
        return "devpos-token"

    async def fetch_documents(self, token, tenant, kind, from_date, to_date):
        self.fetch_calls.append((DocumentKind(kind), from_date, to_date))
        if self.fetch_error:
            raise self.fetch_error
        return [SourceDocument(kind=kind, raw=dict(raw)) for raw in self.documents[DocumentKind(kind)]]

    async def fetch_document_detail(self, token, tenant, eic, kind=DocumentKind.SALES):
        raw = self.details.get(eic)
        return SourceDocument(kind=kind, raw=raw) if raw else None


@pytest.fixture
def qbo():
    return FakeQuickBooks()


@pytest.fixture
def devpos():
    return FakeDevpos()
