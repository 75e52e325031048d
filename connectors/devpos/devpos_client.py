"""DevPos HTTP Client.

Authenticates with the DevPos password grant and fetches e-invoices.

The token endpoint takes the tenant as a header (not a form field) and a
fixed Basic credential identifying the API client. List endpoints take
plain YYYY-MM-DD dates; timestamps with time zones return inconsistent
result sets.
"""

import asyncio
import json
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

import aiohttp

from core.config import DevposSettings
from core.errors import AuthenticationError, UpstreamError
from core.models.documents import DocumentKind, SourceDocument
from core.security.credential_store import SourceCredentials

logger = logging.getLogger(__name__)

SYSTEM = "devpos"

LIST_ENDPOINTS = {
    DocumentKind.SALES: "/EInvoice/GetSalesInvoice",
    DocumentKind.PURCHASE: "/EInvoice/GetPurchaseInvoice",
}
DETAIL_ENDPOINT = "/EInvoice"


def format_query_date(value: Union[date, datetime, str]) -> str:
    """DevPos date parameter: date-only YYYY-MM-DD."""
    if isinstance(value, (date, datetime)):
        return value.strftime("%Y-%m-%d")
    return str(value).strip()[:10]


class DevposClient:
    """Client for the DevPos e-invoicing API.

    One instance can serve many companies: credentials, token and tenant
    are passed on every call and nothing company-specific is stored.

    Usage:
        async with aiohttp.ClientSession() as session:
            client = DevposClient(session, DevposSettings.from_env())
            token = await client.authenticate(credentials)
            docs = await client.fetch_documents(token, credentials.tenant,
                                                DocumentKind.SALES, "2025-01-01", "2025-01-31")
    """

    def __init__(self, session: aiohttp.ClientSession, settings: Optional[DevposSettings] = None):
        self._session = session
        self.settings = settings or DevposSettings()
        self._timeout = aiohttp.ClientTimeout(total=self.settings.timeout_seconds)

    async def authenticate(self, credentials: SourceCredentials) -> str:
        """Exchange username/password for a bearer token.

        Returns:
            Access token (valid for this job only, never persisted)

        Raises:
            AuthenticationError: If DevPos rejects the login
            UpstreamError: On network failure
        """
        form = {
            "grant_type": "password",
            "username": credentials.username,
            "password": credentials.password,
        }
        headers = {
            "Authorization": f"Basic {self.settings.auth_basic}",
            "tenant": credentials.tenant,
            "Accept": "application/json",
        }

        status, body = await self._send("POST", self.settings.token_url, data=form, headers=headers)

        if status != 200:
            raise AuthenticationError(
                f"DevPos authentication failed for tenant {credentials.tenant}: HTTP {status} - {body[:500]}",
                system=SYSTEM,
            )

        try:
            token = json.loads(body).get("access_token")
        except (ValueError, AttributeError):
            token = None
        if not token:
            raise AuthenticationError("DevPos token response did not contain access_token", system=SYSTEM)

        logger.info(f"Authenticated with DevPos (tenant {credentials.tenant})")
        return token

    async def fetch_documents(
        self,
        token: str,
        tenant: str,
        kind: Union[DocumentKind, str],
        from_date: Union[date, str],
        to_date: Union[date, str],
    ) -> List[SourceDocument]:
        """Fetch sales or purchase e-invoices for a date range.

        Returns:
            Documents in API order; empty list when none match

        Raises:
            AuthenticationError: On 401
            UpstreamError: On any other non-2xx or a non-array body
        """
        kind = DocumentKind(kind)
        params = {
            "fromDate": format_query_date(from_date),
            "toDate": format_query_date(to_date),
            "includePdf": "true",
        }
        url = f"{self.settings.api_base}{LIST_ENDPOINTS[kind]}"

        status, body = await self._send("GET", url, params=params, headers=self._headers(token, tenant))
        self._raise_for_status(status, body, f"fetch {kind.value} documents")

        try:
            data = json.loads(body) if body.strip() else None
        except ValueError:
            raise UpstreamError(
                f"DevPos returned invalid JSON for {kind.value} documents",
                status_code=status,
                response_body=body[:1000],
                system=SYSTEM,
            )

        if not isinstance(data, list):
            raise UpstreamError(
                f"DevPos returned a non-array response for {kind.value} documents",
                status_code=status,
                response_body=body[:1000],
                system=SYSTEM,
            )

        documents = []
        for item in data:
            if not isinstance(item, dict):
                logger.warning(f"Dropping non-object item in DevPos {kind.value} response: {item!r}"[:200])
                continue
            documents.append(SourceDocument(kind=kind, raw=item))

        logger.info(
            f"Fetched {len(documents)} {kind.value} documents from DevPos "
            f"({params['fromDate']} to {params['toDate']})"
        )
        return documents

    async def fetch_document_detail(
        self,
        token: str,
        tenant: str,
        eic: str,
        kind: Union[DocumentKind, str] = DocumentKind.SALES,
    ) -> Optional[SourceDocument]:
        """Fetch one document (including its base64 PDF) by EIC.

        Returns:
            The document, or None if DevPos returned an empty list
        """
        url = f"{self.settings.api_base}{DETAIL_ENDPOINT}"
        status, body = await self._send("GET", url, params={"EIC": eic}, headers=self._headers(token, tenant))
        self._raise_for_status(status, body, f"fetch document {eic}")

        try:
            data = json.loads(body) if body.strip() else None
        except ValueError:
            raise UpstreamError(
                f"DevPos returned invalid JSON for document {eic}",
                status_code=status,
                response_body=body[:1000],
                system=SYSTEM,
            )

        if isinstance(data, list):
            data = data[0] if data else None
        if data is None:
            return None
        if not isinstance(data, dict):
            raise UpstreamError(
                f"DevPos returned an unexpected body for document {eic}",
                status_code=status,
                response_body=body[:1000],
                system=SYSTEM,
            )
        return SourceDocument(kind=DocumentKind(kind), raw=data)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _headers(self, token: str, tenant: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "tenant": tenant,
            "Accept": "application/json",
        }

    def _raise_for_status(self, status: int, body: str, action: str) -> None:
        if status == 401:
            raise AuthenticationError(f"DevPos rejected token while trying to {action}", system=SYSTEM)
        if not 200 <= status < 300:
            raise UpstreamError(
                f"DevPos failed to {action}: HTTP {status}",
                status_code=status,
                response_body=body[:1000],
                system=SYSTEM,
            )

    async def _send(self, method: str, url: str, **kwargs: Any):
        """Perform one request and return (status, body text)."""
        try:
            async with self._session.request(method, url, timeout=self._timeout, **kwargs) as response:
                return response.status, await response.text()
        except asyncio.TimeoutError:
            raise UpstreamError(f"DevPos request timed out: {method} {url}", system=SYSTEM)
        except aiohttp.ClientError as e:
            raise UpstreamError(f"DevPos request failed: {method} {url}: {e}", system=SYSTEM)
