"""Best-effort PDF attachment of DevPos documents to QuickBooks records.

An attachment is an enhancement to an already-synced record: every failure
here is logged and reported as False, never raised.
"""

import base64
import binascii
import re
from typing import Optional

from connectors.devpos.devpos_client import DevposClient
from connectors.quickbooks.qbo_client import QBOApiClient
from core.models.documents import SourceDocument
from core.observability.logging import get_logger

logger = get_logger(__name__)

_DATA_URI_PREFIX = re.compile(r"^data:[^,]*,")
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def decode_pdf(encoded: str) -> bytes:
    """Decode a base64 PDF (optionally a data: URI) and check its signature.

    Raises:
        ValueError: If the value isn't base64 or isn't a PDF
    """
    cleaned = _DATA_URI_PREFIX.sub("", encoded.strip())
    cleaned = "".join(cleaned.split())
    try:
        content = base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"PDF is not valid base64: {e}")
    if not content.startswith(b"%PDF"):
        raise ValueError("Decoded content is not a PDF")
    return content


def pdf_filename(doc: SourceDocument) -> str:
    stem = doc.document_number or doc.eic or "document"
    safe = _UNSAFE_FILENAME_CHARS.sub("_", stem).strip("_") or "document"
    return f"{doc.kind.target_entity}_{safe}.pdf"


async def attach_source_pdf(
    source: DevposClient,
    target: QBOApiClient,
    token: str,
    tenant: str,
    doc: SourceDocument,
    entity_id: str,
) -> bool:
    """Upload the document's PDF to the QuickBooks record ``entity_id``.

    Uses the PDF from the list response when present, otherwise fetches the
    document detail by EIC.

    Returns:
        True if a PDF was attached
    """
    try:
        encoded: Optional[str] = doc.pdf_base64
        if not encoded and doc.eic:
            detail = await source.fetch_document_detail(token, tenant, doc.eic, doc.kind)
            encoded = detail.pdf_base64 if detail else None

        if not encoded:
            logger.info(f"No PDF available for {doc.display_id}")
            return False

        content = decode_pdf(encoded)
        filename = pdf_filename(doc)
        await target.upload_attachment(doc.kind.target_entity, entity_id, filename, content)
        logger.info(f"Attached {filename} to {doc.kind.target_entity} {entity_id}")
        return True

    except Exception as e:
        logger.warning(f"PDF attachment failed for {doc.display_id}: {type(e).__name__}: {e}")
        return False
