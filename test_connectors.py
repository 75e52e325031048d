"""
Connector Tests

DevPos and QuickBooks HTTP clients against a mocked aiohttp session:
request shape, status-to-error mapping, retries, query escaping and
multipart attachment upload.
"""

import asyncio
import base64
import json
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from connectors.devpos.devpos_client import DevposClient
from connectors.quickbooks.qbo_auth import QBOAuthProvider
from connectors.quickbooks.qbo_client import QBOApiClient, RetryConfig, escape_query_value
from core.config import DevposSettings, QuickBooksSettings
from core.errors import (
    AuthenticationError,
    ConfigurationError,
    TargetNotFoundError,
    TargetValidationError,
    UpstreamError,
)
from core.models.documents import DocumentKind
from core.security.credential_store import SourceCredentials, TargetCredentials


def fake_response(status: int, body=None, headers=None):
    response = MagicMock()
    response.status = status
    text = body if isinstance(body, str) else json.dumps(body) if body is not None else ""
    response.text = AsyncMock(return_value=text)
    response.headers = headers or {}
    return response


def fake_session(*responses):
    """Session whose request()/post() context managers yield ``responses`` in order."""
    managers = []
    for response in responses:
        cm = MagicMock()
        cm.__aenter__ = AsyncMock(return_value=response)
        cm.__aexit__ = AsyncMock(return_value=False)
        managers.append(cm)
    session = MagicMock()
    session.request.side_effect = list(managers)
    session.post.side_effect = list(managers)
    return session


DEVPOS_SETTINGS = DevposSettings(
    token_url="https://devpos.test/connect/token",
    api_base="https://devpos.test/api/v3",
)
SOURCE_CREDS = SourceCredentials(company_id=7, tenant="acme", username="api@acme.al", password="pw")

QBO_SETTINGS = QuickBooksSettings(
    client_id="client",
    client_secret="secret",
    api_base="https://qbo.test",
    token_url="https://qbo.test/oauth2/v1/tokens/bearer",
)
TARGET_CREDS = TargetCredentials(
    company_id=7,
    realm_id="9130",
    access_token="access",
    refresh_token="refresh",
    expires_at=datetime(2030, 1, 1),
)
NO_DELAY = RetryConfig(max_retries=2, base_delay=0)


def qbo_client(session, retry_config=NO_DELAY) -> QBOApiClient:
    return QBOApiClient(session, TARGET_CREDS, QBO_SETTINGS, retry_config)


# =============================================================================
# DevPos
# =============================================================================

class TestDevposClient:

    def test_authenticate(self):
        session = fake_session(fake_response(200, {"access_token": "tok", "expires_in": 3600}))
        client = DevposClient(session, DEVPOS_SETTINGS)

        token = asyncio.run(client.authenticate(SOURCE_CREDS))

        assert token == "tok"
        args, kwargs = session.request.call_args
        assert args == ("POST", "https://devpos.test/connect/token")
        assert kwargs["headers"]["tenant"] == "acme"
        assert kwargs["headers"]["Authorization"] == f"Basic {DEVPOS_SETTINGS.auth_basic}"
        assert kwargs["data"] == {"grant_type": "password", "username": "api@acme.al", "password": "pw"}

    @pytest.mark.parametrize("response", [
        fake_response(400, {"error": "invalid_grant"}),
        fake_response(200, {"token_type": "bearer"}),
        fake_response(200, "not json"),
    ])
    def test_authenticate_failures(self, response):
        client = DevposClient(fake_session(response), DEVPOS_SETTINGS)
        with pytest.raises(AuthenticationError):
            asyncio.run(client.authenticate(SOURCE_CREDS))

    def test_fetch_documents(self):
        body = [{"eic": "EIC-1", "amount": 10}, "garbage", {"eic": "EIC-2", "amount": 20}]
        session = fake_session(fake_response(200, body))
        client = DevposClient(session, DEVPOS_SETTINGS)

        docs = asyncio.run(client.fetch_documents("tok", "acme", "purchase", "2025-01-01", "2025-01-31T23:59:59"))

        assert [d.eic for d in docs] == ["EIC-1", "EIC-2"]
        assert all(d.kind is DocumentKind.PURCHASE for d in docs)
        args, kwargs = session.request.call_args
        assert args == ("GET", "https://devpos.test/api/v3/EInvoice/GetPurchaseInvoice")
        assert kwargs["params"] == {"fromDate": "2025-01-01", "toDate": "2025-01-31", "includePdf": "true"}
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["headers"]["tenant"] == "acme"

    def test_fetch_documents_empty(self):
        client = DevposClient(fake_session(fake_response(200, [])), DEVPOS_SETTINGS)
        assert asyncio.run(client.fetch_documents("tok", "acme", DocumentKind.SALES, "2025-01-01", "2025-01-31")) == []

    @pytest.mark.parametrize("response,error", [
        (fake_response(401, "unauthorized"), AuthenticationError),
        (fake_response(500, "boom"), UpstreamError),
        (fake_response(200, {"items": []}), UpstreamError),
        (fake_response(200, "<html>"), UpstreamError),
    ])
    def test_fetch_documents_errors(self, response, error):
        client = DevposClient(fake_session(response), DEVPOS_SETTINGS)
        with pytest.raises(error):
            asyncio.run(client.fetch_documents("tok", "acme", DocumentKind.SALES, "2025-01-01", "2025-01-31"))

    def test_network_error_is_upstream_error(self):
        session = MagicMock()
        session.request.side_effect = aiohttp.ClientConnectionError("refused")
        client = DevposClient(session, DEVPOS_SETTINGS)
        with pytest.raises(UpstreamError):
            asyncio.run(client.fetch_documents("tok", "acme", DocumentKind.SALES, "2025-01-01", "2025-01-31"))

    def test_fetch_document_detail(self):
        session = fake_session(fake_response(200, [{"eic": "EIC-1", "pdf": "JVBERi0="}]))
        client = DevposClient(session, DEVPOS_SETTINGS)

        doc = asyncio.run(client.fetch_document_detail("tok", "acme", "EIC-1"))

        assert doc.pdf_base64 == "JVBERi0="
        args, kwargs = session.request.call_args
        assert args[1] == "https://devpos.test/api/v3/EInvoice"
        assert kwargs["params"] == {"EIC": "EIC-1"}

    def test_fetch_document_detail_empty(self):
        client = DevposClient(fake_session(fake_response(200, [])), DEVPOS_SETTINGS)
        assert asyncio.run(client.fetch_document_detail("tok", "acme", "EIC-1")) is None


# =============================================================================
# QuickBooks
# =============================================================================

class TestQBOApiClient:

    def test_create(self):
        session = fake_session(fake_response(200, {"Invoice": {"Id": "184", "SyncToken": "0"}}))

        created = asyncio.run(qbo_client(session).create("invoice", {"Line": []}))

        assert created["Id"] == "184"
        args, kwargs = session.request.call_args
        assert args == ("POST", "https://qbo.test/v3/company/9130/invoice")
        assert kwargs["params"]["minorversion"] == "65"
        assert kwargs["json"] == {"Line": []}
        assert kwargs["headers"]["Authorization"] == "Bearer access"

    def test_create_without_id(self):
        session = fake_session(fake_response(200, {"Invoice": {}}))
        with pytest.raises(UpstreamError):
            asyncio.run(qbo_client(session).create("invoice", {}))

    def test_unauthorized_is_not_retried(self):
        session = fake_session(fake_response(401, "nope"), fake_response(200, {}))
        with pytest.raises(AuthenticationError):
            asyncio.run(qbo_client(session).create("bill", {}))
        assert session.request.call_count == 1

    def test_validation_error_carries_fault_detail(self):
        fault = {"Fault": {"Error": [{"Message": "Duplicate Name Exists Error", "Detail": "name taken", "code": "6240"}]}}
        session = fake_session(fake_response(400, fault))

        with pytest.raises(TargetValidationError) as excinfo:
            asyncio.run(qbo_client(session).create("customer", {}))

        assert "Duplicate Name Exists Error: name taken" in str(excinfo.value)
        assert excinfo.value.status_code == 400
        assert "6240" in excinfo.value.response_body

    def test_not_found(self):
        session = fake_session(fake_response(404, ""))
        with pytest.raises(TargetNotFoundError):
            asyncio.run(qbo_client(session).get("bill", "1"))

    def test_server_errors_are_retried(self):
        session = fake_session(
            fake_response(503, "busy"),
            fake_response(429, "slow down", {"Retry-After": "0"}),
            fake_response(200, {"Bill": {"Id": "9"}}),
        )
        bill = asyncio.run(qbo_client(session).get("bill", "9"))
        assert bill == {"Id": "9"}
        assert session.request.call_count == 3

    def test_create_retry_reuses_request_id(self):
        timed_out = MagicMock()
        timed_out.__aenter__ = AsyncMock(side_effect=aiohttp.ServerTimeoutError("timeout"))
        timed_out.__aexit__ = AsyncMock(return_value=False)
        session = fake_session(
            fake_response(200, {"Invoice": {"Id": "184"}}),
            fake_response(200, {"Invoice": {"Id": "185"}}),
        )
        session.request.side_effect = [timed_out] + list(session.request.side_effect)

        async def scenario():
            client = qbo_client(session)
            first = await client.create("invoice", {"DocNumber": "S-1"})
            second = await client.create("invoice", {"DocNumber": "S-2"})
            return first, second

        first, second = asyncio.run(scenario())

        assert (first["Id"], second["Id"]) == ("184", "185")
        ids = [c.kwargs["params"]["requestid"] for c in session.request.call_args_list]
        assert len(ids) == 3
        assert ids[0] and ids[0] == ids[1]
        assert ids[2] != ids[0]

    def test_reads_carry_no_request_id(self):
        session = fake_session(fake_response(200, {"Bill": {"Id": "9"}}))
        asyncio.run(qbo_client(session).get("bill", "9"))
        assert "requestid" not in session.request.call_args.kwargs["params"]

    def test_retries_are_bounded(self):
        session = fake_session(*[fake_response(500, "boom") for _ in range(3)])
        with pytest.raises(UpstreamError):
            asyncio.run(qbo_client(session).get("bill", "9"))
        assert session.request.call_count == 3

    def test_exists(self):
        present = fake_session(fake_response(200, {"Bill": {"Id": "9"}}))
        missing = fake_session(fake_response(404, ""))
        failing = fake_session(fake_response(500, "boom"))

        assert asyncio.run(qbo_client(present).exists("bill", "9")) is True
        assert asyncio.run(qbo_client(missing).exists("bill", "9")) is False
        assert asyncio.run(qbo_client(failing, RetryConfig(max_retries=0)).exists("bill", "9")) is False

    def test_exists_propagates_unauthorized(self):
        session = fake_session(fake_response(401, ""))
        with pytest.raises(AuthenticationError):
            asyncio.run(qbo_client(session).exists("bill", "9"))

    def test_update_is_sparse_with_sync_token(self):
        session = fake_session(
            fake_response(200, {"Bill": {"Id": "9", "SyncToken": "3"}}),
            fake_response(200, {"Bill": {"Id": "9", "SyncToken": "4"}}),
        )

        updated = asyncio.run(qbo_client(session).update("bill", "9", {"TxnDate": "2025-01-02"}))

        assert updated["SyncToken"] == "4"
        _, kwargs = session.request.call_args
        assert kwargs["json"] == {"TxnDate": "2025-01-02", "Id": "9", "SyncToken": "3", "sparse": True}

    def test_query_escapes_values(self):
        assert escape_query_value("O'Brien\\Co") == "O\\'Brien\\\\Co"

        session = fake_session(fake_response(200, {"QueryResponse": {"Customer": [{"Id": "1"}]}}))
        records = asyncio.run(qbo_client(session).find_by_field("customer", "DisplayName", "O'Brien"))

        assert records == [{"Id": "1"}]
        args, kwargs = session.request.call_args
        assert args[1] == "https://qbo.test/v3/company/9130/query"
        assert kwargs["params"]["query"] == "SELECT * FROM Customer WHERE DisplayName = 'O\\'Brien'"

    def test_query_without_results(self):
        session = fake_session(fake_response(200, {"QueryResponse": {}}))
        assert asyncio.run(qbo_client(session).find_by_field("vendor", "DisplayName", "X")) == []

    def test_upload_attachment(self):
        session = fake_session(fake_response(200, {"AttachableResponse": [{"Attachable": {"Id": "5"}}]}))

        attachable = asyncio.run(
            qbo_client(session).upload_attachment("bill", "9", "bill_B-1.pdf", b"%PDF-1.4")
        )

        assert attachable == {"Id": "5"}
        args, kwargs = session.request.call_args
        assert args == ("POST", "https://qbo.test/v3/company/9130/upload")
        assert isinstance(kwargs["data"], aiohttp.FormData)
        assert "Content-Type" not in kwargs["headers"]

    def test_upload_attachment_fault(self):
        body = {"AttachableResponse": [{"Fault": {"Error": [{"Message": "Bad file"}]}}]}
        session = fake_session(fake_response(200, body))
        with pytest.raises(UpstreamError):
            asyncio.run(qbo_client(session).upload_attachment("bill", "9", "b.pdf", b"%PDF"))


class TestQBOAuthProvider:

    def test_refresh(self):
        session = fake_session(fake_response(200, {
            "access_token": "new-access",
            "refresh_token": "new-refresh",
            "expires_in": 3600,
        }))
        auth = QBOAuthProvider(session, QBO_SETTINGS)

        refreshed = asyncio.run(auth.refresh(TARGET_CREDS))

        assert refreshed.access_token == "new-access"
        assert refreshed.refresh_token == "new-refresh"
        assert refreshed.realm_id == "9130"
        assert refreshed.expires_at > datetime.utcnow()
        assert TARGET_CREDS.access_token == "access"

        args, kwargs = session.post.call_args
        assert args == ("https://qbo.test/oauth2/v1/tokens/bearer",)
        expected = base64.b64encode(b"client:secret").decode()
        assert kwargs["headers"]["Authorization"] == f"Basic {expected}"
        assert kwargs["data"] == {"grant_type": "refresh_token", "refresh_token": "refresh"}

    def test_refresh_keeps_refresh_token_when_not_rotated(self):
        session = fake_session(fake_response(200, {"access_token": "new-access"}))
        refreshed = asyncio.run(QBOAuthProvider(session, QBO_SETTINGS).refresh(TARGET_CREDS))
        assert refreshed.refresh_token == "refresh"

    def test_refresh_rejected(self):
        session = fake_session(fake_response(400, {"error": "invalid_grant"}))
        with pytest.raises(AuthenticationError):
            asyncio.run(QBOAuthProvider(session, QBO_SETTINGS).refresh(TARGET_CREDS))

    def test_refresh_without_client_credentials(self):
        auth = QBOAuthProvider(fake_session(), QuickBooksSettings())
        with pytest.raises(ConfigurationError):
            asyncio.run(auth.refresh(TARGET_CREDS))
