"""Sync Executor.

Drives one sync job from pending to completed or failed:

    pending --claim--> running --(all documents processed)--> completed
                       running --(job-level error)---------> failed

Job-level errors (missing credentials, token refresh failure, DevPos login
or fetch failure, QuickBooks 401) fail the job. Per-document errors are
recorded in the job results and the batch continues; a job whose every
document errored is still completed.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import aiohttp

from connectors.devpos.devpos_client import DevposClient
from connectors.quickbooks.qbo_auth import QBOAuthProvider
from connectors.quickbooks.qbo_client import QBOApiClient
from core.config import SyncSettings
from core.db import init_db
from core.errors import (
    AuthenticationError,
    ConfigurationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from core.mapping.engine import (
    MappedDocument,
    extract_amount,
    extract_counterparty_name,
    extract_currency,
    map_to_target_bill,
    map_to_target_invoice,
)
from core.models.documents import DocumentKind, SourceDocument, VatRateMapping
from core.observability.logging import get_logger, with_correlation
from core.security.credential_store import Company, CredentialStore, TargetCredentials
from jobs.db import claim_job, complete_job, fail_job, get_job
from jobs.models import DocumentError, JobResult, JobStatus, KindResult, SyncJob
from mapping_store.db import delete_mapping, find_mapping, get_vat_rate_mappings, upsert_mapping
from mapping_store.models import MappingRecord
from sync_engine.attachments import attach_source_pdf
from sync_engine.parties import CounterpartyResolver

logger = get_logger(__name__)

# Amount difference below which a re-synced document counts as unchanged
AMOUNT_TOLERANCE = 0.01

TargetClientFactory = Callable[[TargetCredentials], QBOApiClient]


class DocumentOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED_EXISTING = "skipped_existing"


@dataclass
class JobContext:
    """Everything borrowed for the duration of one job."""
    job: SyncJob
    company: Company
    tenant: str
    source_token: str
    target: QBOApiClient
    parties: CounterpartyResolver
    vat_mappings: List[VatRateMapping]


class SyncExecutor:
    """Executes DevPos to QuickBooks sync jobs.

    Args:
        source: DevPos client
        auth: QuickBooks token refresher
        target_factory: Builds a QuickBooks client for refreshed credentials
        credentials: Per-company credential store
        settings: Sync settings (mapping options, refresh window, db path)
        db_path: Overrides settings.db_path
    """

    def __init__(
        self,
        source: DevposClient,
        auth: QBOAuthProvider,
        target_factory: TargetClientFactory,
        credentials: CredentialStore,
        settings: Optional[SyncSettings] = None,
        db_path: Optional[Path] = None,
    ):
        self.source = source
        self.auth = auth
        self.target_factory = target_factory
        self.credentials = credentials
        self.settings = settings or SyncSettings()
        self.db_path = db_path or self.settings.db_path

    async def execute_job(self, job_id: int) -> JobResult:
        """Run one pending job to a terminal state.

        Raises:
            NotFoundError: Unknown job id
            InvalidStateError: Job isn't pending, or another worker claimed it
        """
        job = get_job(job_id, self.db_path)
        if job is None:
            raise NotFoundError(f"Sync job {job_id} not found")
        if job.status is not JobStatus.PENDING:
            raise InvalidStateError(f"Sync job {job_id} is {job.status.value}, expected pending")
        if not claim_job(job_id, self.db_path):
            raise InvalidStateError(f"Sync job {job_id} was claimed by another worker")

        with with_correlation(job_id=job.id, company_id=job.company_id, job_type=job.job_type.value):
            logger.info(f"Starting {job.job_type.value} sync for {job.from_date} to {job.to_date}")

            try:
                results = await self._run(job)
            except Exception as e:
                message = f"{type(e).__name__}: {e}"
                logger.exception(f"Sync job {job.id} failed: {message}")
                fail_job(job.id, message, self.db_path)
                return JobResult(job_id=job.id, status=JobStatus.FAILED, error_message=message)

            complete_job(job.id, results, self.db_path)
            logger.info(f"Sync job {job.id} completed", extra_fields={"results": _summary(results)})
            return JobResult(job_id=job.id, status=JobStatus.COMPLETED, results=results)

    # -------------------------------------------------------------------------
    # Job level
    # -------------------------------------------------------------------------

    async def _run(self, job: SyncJob) -> Dict[str, Any]:
        company = self.credentials.get_company(job.company_id)
        if company is None:
            raise ConfigurationError(f"Company {job.company_id} not found")

        source_credentials = self.credentials.get_source_credentials(company.id)
        if source_credentials is None:
            raise ConfigurationError(f"DevPos credentials not configured for company {company.id}")

        target_credentials = self.credentials.get_target_credentials(company.id)
        if target_credentials is None:
            raise ConfigurationError(f"QuickBooks not connected for company {company.id}")

        window = timedelta(minutes=self.settings.token_refresh_window_minutes)
        target_credentials = await self.auth.ensure_fresh(target_credentials, self.credentials, window)

        source_token = await self.source.authenticate(source_credentials)

        target = self.target_factory(target_credentials)
        context = JobContext(
            job=job,
            company=company,
            tenant=source_credentials.tenant,
            source_token=source_token,
            target=target,
            parties=CounterpartyResolver(
                target,
                company.id,
                home_currency=self.settings.mapping.home_currency,
                db_path=self.db_path,
            ),
            vat_mappings=get_vat_rate_mappings(company.id, self.db_path) if company.tracks_vat else [],
        )

        results: Dict[str, Any] = {}
        for kind in job.job_type.document_kinds:
            with with_correlation(document_kind=kind.value):
                documents = await self.source.fetch_documents(
                    source_token, context.tenant, kind, job.from_date, job.to_date
                )
                kind_result = await self._sync_documents(context, kind, documents)
            results[kind.results_key] = kind_result.to_results()

        if len(results) == 1:
            return next(iter(results.values()))
        return results

    # -------------------------------------------------------------------------
    # Document level
    # -------------------------------------------------------------------------

    async def _sync_documents(
        self,
        context: JobContext,
        kind: DocumentKind,
        documents: List[SourceDocument],
    ) -> KindResult:
        result = KindResult(kind=kind, total=len(documents))

        for doc in documents:
            with with_correlation(document_id=doc.display_id):
                try:
                    outcome = await self._sync_document(context, doc, result)
                except ValidationError as e:
                    result.skipped += 1
                    logger.info(f"Skipping {doc.display_id}: {e}")
                    continue
                except AuthenticationError:
                    raise
                except Exception as e:
                    logger.error(f"Failed to sync {doc.display_id}: {type(e).__name__}: {e}")
                    result.error_details.append(DocumentError(document_id=doc.display_id, error=str(e)))
                    continue

                if outcome is DocumentOutcome.CREATED:
                    result.created += 1
                elif outcome is DocumentOutcome.UPDATED:
                    result.updated += 1
                else:
                    result.skipped += 1

        logger.info(
            f"{kind.value}: {result.total} documents, {result.created} created, "
            f"{result.updated} updated, {result.skipped} skipped, {result.errors} errors"
        )
        return result

    async def _sync_document(
        self,
        context: JobContext,
        doc: SourceDocument,
        result: KindResult,
    ) -> DocumentOutcome:
        amount = extract_amount(doc)
        # Negative sales totals are credit notes and go through; a bill must be positive
        if amount == 0 or (amount < 0 and doc.kind is DocumentKind.PURCHASE):
            raise ValidationError(f"invalid amount {amount}", doc.display_id)
        if not doc.document_number:
            raise ValidationError("missing document number", doc.display_id)

        company_id = context.company.id
        kind = doc.kind
        entity = kind.target_entity
        source_key = doc.idempotency_key
        home_currency = self.settings.mapping.home_currency

        mapping = find_mapping(company_id, source_key, kind.transaction_type, self.db_path)
        if mapping is not None:
            if await context.target.exists(entity, mapping.target_document_id):
                currency = extract_currency(doc, home_currency)
                if not _has_changed(mapping, amount, currency):
                    logger.info(f"Already synced as {entity} {mapping.target_document_id}")
                    return DocumentOutcome.SKIPPED_EXISTING
                return await self._update_existing(context, doc, mapping, result)

            logger.warning(
                f"{entity} {mapping.target_document_id} no longer exists in QuickBooks; "
                f"removing stale mapping and re-creating"
            )
            delete_mapping(company_id, source_key, kind.transaction_type, self.db_path)

        mapped = await self._map(context, doc, result)
        created = await context.target.create(entity, mapped.payload)
        target_id = str(created["Id"])

        upsert_mapping(
            MappingRecord(
                company_id=company_id,
                source_key=source_key,
                transaction_type=kind.transaction_type,
                target_document_id=target_id,
                target_doc_number=created.get("DocNumber") or doc.document_number,
                amount=mapped.amount,
                currency=mapped.currency,
                counterparty_name=extract_counterparty_name(doc),
            ),
            self.db_path,
        )
        logger.info(f"Created {entity} {target_id} for {doc.display_id}")

        await attach_source_pdf(
            self.source,
            context.target,
            context.source_token,
            context.tenant,
            doc,
            target_id,
        )
        return DocumentOutcome.CREATED

    async def _update_existing(
        self,
        context: JobContext,
        doc: SourceDocument,
        mapping: MappingRecord,
        result: KindResult,
    ) -> DocumentOutcome:
        """Push changed amount/currency of an already-synced document."""
        entity = doc.kind.target_entity
        mapped = await self._map(context, doc, result)

        logger.info(
            f"{doc.display_id} changed since last sync "
            f"({mapping.amount} {mapping.currency} -> {mapped.amount} {mapped.currency}); "
            f"updating {entity} {mapping.target_document_id}"
        )
        await context.target.update(entity, mapping.target_document_id, mapped.payload)

        upsert_mapping(
            mapping.model_copy(update={
                "amount": mapped.amount,
                "currency": mapped.currency,
                "counterparty_name": extract_counterparty_name(doc),
            }),
            self.db_path,
        )
        return DocumentOutcome.UPDATED

    async def _map(self, context: JobContext, doc: SourceDocument, result: KindResult) -> MappedDocument:
        options = self.settings.mapping
        party_id = await context.parties.resolve(
            doc.kind,
            extract_counterparty_name(doc),
            doc.counterparty_tax_id,
            extract_currency(doc, options.home_currency),
        )

        if doc.kind is DocumentKind.SALES:
            mapped = map_to_target_invoice(
                doc,
                party_id,
                context.company.tracks_vat,
                context.vat_mappings,
                options,
            )
        else:
            mapped = map_to_target_bill(doc, party_id, options)

        if mapped.degraded and doc.display_id not in result.degraded:
            result.degraded.append(doc.display_id)
        for warning in mapped.warnings:
            logger.warning(warning)
        return mapped


def _has_changed(mapping: MappingRecord, amount: float, currency: str) -> bool:
    if mapping.amount > 0 and abs(mapping.amount - amount) > AMOUNT_TOLERANCE:
        return True
    if mapping.currency and mapping.currency.upper() != currency.upper():
        return True
    return False


def _summary(results: Dict[str, Any]) -> Dict[str, Any]:
    """Results without per-document details, for logging."""
    if "total" in results:
        return {k: v for k, v in results.items() if k != "error_details"}
    return {key: _summary(value) for key, value in results.items()}


@asynccontextmanager
async def open_executor(settings: Optional[SyncSettings] = None) -> AsyncIterator[SyncExecutor]:
    """Build a production executor with a shared aiohttp session.

    Usage:
        async with open_executor(SyncSettings.from_env()) as executor:
            result = await executor.execute_job(job_id)
    """
    settings = settings or SyncSettings.from_env()
    init_db(settings.db_path)
    store = CredentialStore.from_key(settings.encryption_key, settings.db_path)

    async with aiohttp.ClientSession() as session:
        def target_factory(credentials: TargetCredentials) -> QBOApiClient:
            return QBOApiClient(session, credentials, settings.quickbooks)

        yield SyncExecutor(
            source=DevposClient(session, settings.devpos),
            auth=QBOAuthProvider(session, settings.quickbooks),
            target_factory=target_factory,
            credentials=store,
            settings=settings,
        )
