"""QuickBooks Online HTTP Client.

Low-level client for the QBO v3 accounting API of one company (realm).
Handles auth headers, retries, error mapping, the query endpoint and
multipart attachment uploads.

A 401 is never retried: the executor refreshes tokens before a job starts,
so a 401 mid-job means the grant was revoked and the job must stop.

Every POST carries a fresh QBO `requestid`, reused by its retries, so a
create that timed out after QuickBooks stored it is not created twice.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from core.config import QuickBooksSettings
from core.errors import (
    AuthenticationError,
    TargetNotFoundError,
    TargetValidationError,
    UpstreamError,
)
from core.security.credential_store import TargetCredentials

logger = logging.getLogger(__name__)

SYSTEM = "qbo"

# REST path segment -> response wrapper key
ENTITY_NAMES = {
    "invoice": "Invoice",
    "bill": "Bill",
    "customer": "Customer",
    "vendor": "Vendor",
    "attachable": "Attachable",
}


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    retry_on_status: Tuple[int, ...] = (429, 500, 502, 503, 504)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt (exponential backoff)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


def escape_query_value(value: str) -> str:
    """Escape a user-controlled value for a QBO query string literal."""
    return str(value).replace("\\", "\\\\").replace("'", "\\'")


def fault_message(body: str) -> Optional[str]:
    """Human-readable message from a QBO Fault body, if it has one."""
    try:
        data = json.loads(body)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    fault = data.get("Fault") or data.get("fault")
    if not isinstance(fault, dict):
        return None
    errors = fault.get("Error") or fault.get("error") or []
    if not errors:
        return None
    first = errors[0]
    message = first.get("Message", "")
    detail = first.get("Detail", "")
    if detail and detail != message:
        return f"{message}: {detail}" if message else detail
    return message or None


def _entity_name(entity: str) -> str:
    try:
        return ENTITY_NAMES[entity.lower()]
    except KeyError:
        raise ValueError(f"Unsupported QuickBooks entity: {entity}")


class QBOApiClient:
    """HTTP client for one QuickBooks company.

    Usage:
        client = QBOApiClient(session, credentials, settings.quickbooks)
        invoice = await client.create("invoice", payload)
        if await client.exists("invoice", invoice["Id"]):
            ...
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        credentials: TargetCredentials,
        settings: Optional[QuickBooksSettings] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self._session = session
        self.credentials = credentials
        self.settings = settings or QuickBooksSettings()
        self.retry_config = retry_config or RetryConfig()
        self._timeout = aiohttp.ClientTimeout(total=self.settings.timeout_seconds)

    @property
    def company_url(self) -> str:
        return f"{self.settings.base_url}/v3/company/{self.credentials.realm_id}"

    def _headers(self, content_type: Optional[str] = "application/json") -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.credentials.access_token}",
            "Accept": "application/json",
        }
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        form_factory: Optional[Callable[[], aiohttp.FormData]] = None,
    ) -> Dict[str, Any]:
        """Make an authenticated API request with bounded retries.

        Args:
            method: HTTP method
            path: Path below the company URL, e.g. "/invoice"
            params: Extra query parameters (minorversion is always added)
            json_body: JSON request body
            form_factory: Builds a fresh multipart body per attempt

        Raises:
            AuthenticationError: 401
            TargetValidationError: 400
            TargetNotFoundError: 404
            UpstreamError: Other failures
        """
        url = f"{self.company_url}{path}"
        query = {"minorversion": str(self.settings.minor_version)}
        if params:
            query.update(params)
        if method == "POST":
            query.setdefault("requestid", uuid.uuid4().hex)

        retry_config = self.retry_config
        last_error: Optional[Exception] = None

        for attempt in range(retry_config.max_retries + 1):
            kwargs: Dict[str, Any] = {"params": query, "timeout": self._timeout}
            if form_factory is not None:
                kwargs["data"] = form_factory()
                kwargs["headers"] = self._headers(content_type=None)
            else:
                kwargs["json"] = json_body
                kwargs["headers"] = self._headers()

            try:
                async with self._session.request(method, url, **kwargs) as response:
                    status = response.status
                    response_text = await response.text()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
                if attempt < retry_config.max_retries:
                    delay = retry_config.get_delay(attempt)
                    logger.warning(
                        f"QuickBooks request failed with {type(e).__name__}: {e}, "
                        f"retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise UpstreamError(
                    f"QuickBooks request failed after {retry_config.max_retries} retries: {e}",
                    system=SYSTEM,
                )

            if status < 400:
                return json.loads(response_text) if response_text.strip() else {}

            message = fault_message(response_text) or response_text[:500]

            if status == 401:
                raise AuthenticationError(f"QuickBooks authentication failed: {message}", system=SYSTEM)

            if status == 400:
                raise TargetValidationError(
                    f"QuickBooks validation error: {message}", status, response_text, system=SYSTEM
                )

            if status == 404:
                raise TargetNotFoundError(
                    f"QuickBooks resource not found: {path}", status, response_text, system=SYSTEM
                )

            if status in retry_config.retry_on_status and attempt < retry_config.max_retries:
                if status == 429:
                    delay = min(float(response.headers.get("Retry-After", 0) or 0), retry_config.max_delay)
                    delay = delay or retry_config.get_delay(attempt)
                else:
                    delay = retry_config.get_delay(attempt)
                logger.warning(
                    f"QuickBooks request failed with {status}, "
                    f"retrying in {delay:.1f}s (attempt {attempt + 1}/{retry_config.max_retries})"
                )
                await asyncio.sleep(delay)
                continue

            raise UpstreamError(
                f"QuickBooks API error {status}: {message}", status, response_text, system=SYSTEM
            )

        raise UpstreamError(f"QuickBooks request failed: {last_error}", system=SYSTEM)

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    async def create(self, entity: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create an invoice, bill, customer or vendor.

        Returns:
            The created entity object (including Id and SyncToken)
        """
        name = _entity_name(entity)
        result = await self._request("POST", f"/{entity.lower()}", json_body=payload)
        created = result.get(name)
        if not isinstance(created, dict) or not created.get("Id"):
            raise UpstreamError(
                f"QuickBooks create {name} returned no {name}.Id",
                response_body=json.dumps(result)[:1000],
                system=SYSTEM,
            )
        return created

    async def get(self, entity: str, entity_id: str) -> Dict[str, Any]:
        name = _entity_name(entity)
        result = await self._request("GET", f"/{entity.lower()}/{entity_id}")
        return result.get(name, {})

    async def exists(self, entity: str, entity_id: str) -> bool:
        """True if GET-by-id succeeds.

        401 still raises AuthenticationError; any other failure counts as absent.
        """
        try:
            record = await self.get(entity, entity_id)
        except AuthenticationError:
            raise
        except UpstreamError as e:
            logger.info(f"QuickBooks {entity} {entity_id} treated as absent: {e}")
            return False
        return bool(record)

    async def update(self, entity: str, entity_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Sparse-update a record, using its current SyncToken."""
        name = _entity_name(entity)
        current = await self.get(entity, entity_id)
        payload = dict(changes)
        payload.update({
            "Id": str(entity_id),
            "SyncToken": current.get("SyncToken", "0"),
            "sparse": True,
        })
        result = await self._request("POST", f"/{entity.lower()}", json_body=payload)
        return result.get(name, {})

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    async def query(self, statement: str) -> Dict[str, Any]:
        """Run a QBO query statement and return its QueryResponse."""
        result = await self._request("GET", "/query", params={"query": statement})
        return result.get("QueryResponse", {})

    async def find_by_field(self, entity: str, field_name: str, value: str) -> List[Dict[str, Any]]:
        """Records whose ``field_name`` equals ``value`` exactly."""
        name = _entity_name(entity)
        statement = f"SELECT * FROM {name} WHERE {field_name} = '{escape_query_value(value)}'"
        response = await self.query(statement)
        return list(response.get(name, []))

    # -------------------------------------------------------------------------
    # Attachments
    # -------------------------------------------------------------------------

    async def upload_attachment(
        self,
        entity: str,
        entity_id: str,
        filename: str,
        content: bytes,
        content_type: str = "application/pdf",
    ) -> Dict[str, Any]:
        """Upload a file and link it to a record.

        Returns:
            The created Attachable
        """
        metadata = {
            "AttachableRef": [
                {"EntityRef": {"type": _entity_name(entity), "value": str(entity_id)}}
            ],
            "FileName": filename,
            "ContentType": content_type,
        }

        def build_form() -> aiohttp.FormData:
            form = aiohttp.FormData()
            form.add_field(
                "file_metadata_0",
                json.dumps(metadata),
                content_type="application/json",
            )
            form.add_field(
                "file_content_0",
                content,
                filename=filename,
                content_type=content_type,
            )
            return form

        result = await self._request("POST", "/upload", form_factory=build_form)

        responses = result.get("AttachableResponse") or []
        first = responses[0] if responses else {}
        if "Fault" in first:
            raise UpstreamError(
                f"QuickBooks attachment upload failed: {fault_message(json.dumps(first)) or first['Fault']}",
                response_body=json.dumps(first)[:1000],
                system=SYSTEM,
            )
        return first.get("Attachable", {})
