"""
Sync Executor Tests

End-to-end job execution against in-memory DevPos and QuickBooks fakes and
a temporary SQLite database: idempotent re-runs, stale mapping repair,
per-document error isolation, job-level failures and PDF attachments.
"""

import asyncio
import base64
import sqlite3
import warnings
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.config import SyncSettings
from core.errors import (
    AuthenticationError,
    InvalidStateError,
    NotFoundError,
    TargetValidationError,
    UpstreamError,
)
from core.models.documents import DocumentKind, VatRateMapping
from jobs.db import claim_job, create_job, get_job
from jobs.models import JobStatus
from mapping_store import count_mappings, find_mapping, save_vat_rate_mapping
from sync_engine import executor as executor_module
from sync_engine.executor import SyncExecutor


PDF = base64.b64encode(b"%PDF-1.4 test").decode()


def add_company(store, company_id: int, tracks_vat: bool = False, source=True, target=True):
    conn = sqlite3.connect(store.db_path)
    try:
        conn.execute(
            """
            INSERT INTO companies (id, company_code, company_name, tracks_vat, is_active, created_at)
            VALUES (?, ?, ?, ?, 1, ?)
            """,
            (company_id, f"C{company_id}", f"Company {company_id}", int(tracks_vat), datetime.utcnow().isoformat()),
        )
        conn.commit()
    finally:
        conn.close()
    if source:
        store.save_source_credentials(company_id, "acme", "api@acme.al", "pw")
    if target:
        store.save_target_credentials(
            company_id, "9130", "access", "refresh", datetime.utcnow() + timedelta(hours=1)
        )


def bill(n: int, amount, **extra):
    raw = {
        "eic": f"EIC-B{n}",
        "documentNumber": f"B-{n}",
        "amount": amount,
        "sellerName": f"Furnitor {n}",
        "sellerNuis": f"L{n}",
        "invoiceCreatedDate": f"2025-01-{n:02d}",
    }
    raw.update(extra)
    return raw


def sale(n: int, amount, **extra):
    raw = {
        "eic": f"EIC-S{n}",
        "documentNumber": f"S-{n}",
        "totalAmount": amount,
        "buyerName": "Blerësi",
        "buyerNuis": "K1",
        "invoiceCreatedDate": f"2025-01-{n:02d}",
        "vatRate": 20,
    }
    raw.update(extra)
    return raw


def fresh_auth():
    auth = MagicMock()
    auth.ensure_fresh = AsyncMock(side_effect=lambda credentials, store, window: credentials)
    return auth


@pytest.fixture
def make_executor(store, devpos, qbo):
    def factory(auth=None):
        return SyncExecutor(
            source=devpos,
            auth=auth or fresh_auth(),
            target_factory=MagicMock(return_value=qbo),
            credentials=store,
            settings=SyncSettings(db_path=store.db_path),
        )
    return factory


def run_job(executor, company_id=7, job_type="bills"):
    job = create_job(company_id, job_type, "2025-01-01", "2025-01-31", db_path=executor.db_path)
    return asyncio.run(executor.execute_job(job.id))


class TestBillsJob:

    def test_creates_bills_and_skips_invalid(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.PURCHASE] = [bill(1, 100), bill(2, 0), bill(3, 250.5)]

        result = run_job(make_executor())

        assert result.status is JobStatus.COMPLETED
        results = result.results
        assert results["total"] == 3
        assert results["bills_created"] == 2
        assert results["skipped"] == 1
        assert results["errors"] == 0
        assert count_mappings(7, "bill", store.db_path) == 2
        assert len(qbo.records["bill"]) == 2

        job = get_job(result.job_id, store.db_path)
        assert job.status is JobStatus.COMPLETED
        assert job.results == results
        assert devpos.fetch_calls == [(DocumentKind.PURCHASE, "2025-01-01", "2025-01-31")]

    def test_rerun_skips_everything(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.PURCHASE] = [bill(1, 100), bill(2, 0), bill(3, 250.5)]
        run_job(make_executor())

        result = run_job(make_executor())

        assert result.status is JobStatus.COMPLETED
        assert result.results["total"] == 3
        assert result.results["bills_created"] == 0
        assert result.results["skipped"] == 3
        assert result.results["errors"] == 0
        assert len(qbo.records["bill"]) == 2
        assert len(qbo.records["vendor"]) == 2

    def test_purchases_job_type_is_an_alias(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.PURCHASE] = [bill(1, 100)]

        result = run_job(make_executor(), job_type="purchases")

        assert result.results["bills_created"] == 1

    def test_stale_mapping_is_recreated(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.PURCHASE] = [bill(1, 100)]
        run_job(make_executor())
        old_id = find_mapping(7, "EIC-B1", "bill", store.db_path).target_document_id
        del qbo.records["bill"][old_id]

        result = run_job(make_executor())

        assert result.results["created"] == 1
        mapping = find_mapping(7, "EIC-B1", "bill", store.db_path)
        assert mapping.target_document_id != old_id
        assert mapping.target_document_id in qbo.records["bill"]
        assert count_mappings(7, db_path=store.db_path) == 1

    def test_one_bad_document_does_not_abort_the_batch(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.PURCHASE] = [bill(1, 100), bill(2, 200), bill(3, 300)]
        qbo.create_errors["B-2"] = UpstreamError("QuickBooks API error 500: boom", 500)

        result = run_job(make_executor())

        assert result.status is JobStatus.COMPLETED
        assert result.results["created"] == 2
        assert result.results["errors"] == 1
        assert result.results["error_details"] == [
            {"document_id": "EIC-B2", "error": "QuickBooks API error 500: boom"}
        ]
        assert find_mapping(7, "EIC-B2", "bill", store.db_path) is None

    def test_every_document_failing_still_completes(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.PURCHASE] = [bill(1, 100)]
        qbo.create_errors["B-1"] = UpstreamError("rejected", 400)

        result = run_job(make_executor())

        assert result.status is JobStatus.COMPLETED
        assert result.results["errors"] == 1

    def test_missing_document_number_is_skipped(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.PURCHASE] = [bill(1, 100, documentNumber=None)]

        result = run_job(make_executor())

        assert result.results["skipped"] == 1
        assert qbo.records["bill"] == {}

    def test_composite_key_without_eic(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.PURCHASE] = [bill(1, 100, eic=None)]

        run_job(make_executor())

        assert find_mapping(7, "B-1|L1", "bill", store.db_path) is not None

    def test_changed_amount_updates_existing_bill(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.PURCHASE] = [bill(1, 100), bill(3, 250.5)]
        run_job(make_executor())
        devpos.documents[DocumentKind.PURCHASE][0]["amount"] = 120

        result = run_job(make_executor())

        assert result.results["updated"] == 1
        assert result.results["skipped"] == 1
        assert result.results["created"] == 0
        mapping = find_mapping(7, "EIC-B1", "bill", store.db_path)
        assert mapping.amount == 120
        assert qbo.updates[0][1] == mapping.target_document_id
        assert qbo.records["bill"][mapping.target_document_id]["Line"][0]["Amount"] == 120
        assert len(qbo.records["bill"]) == 2

    def test_missing_date_is_reported_as_degraded(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.PURCHASE] = [bill(1, 100, invoiceCreatedDate=None)]

        result = run_job(make_executor())

        assert result.results["created"] == 1
        assert result.results["degraded"] == ["EIC-B1"]

    def test_negative_bill_is_skipped(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.PURCHASE] = [bill(1, -40)]

        result = run_job(make_executor())

        assert result.results["skipped"] == 1
        assert qbo.records["bill"] == {}


class TestSalesAndFullJobs:

    def test_full_job_nests_results(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.SALES] = [sale(1, 500), sale(2, 80)]
        devpos.documents[DocumentKind.PURCHASE] = [bill(1, 100)]

        result = run_job(make_executor(), job_type="full")

        assert set(result.results) == {"sales", "bills"}
        assert result.results["sales"]["invoices_created"] == 2
        assert result.results["bills"]["bills_created"] == 1
        # Both invoices share one customer
        assert len(qbo.records["customer"]) == 1
        assert [kind for kind, _, _ in devpos.fetch_calls] == [DocumentKind.SALES, DocumentKind.PURCHASE]

    def test_non_vat_company_sends_no_tax_code(self, store, devpos, qbo, make_executor):
        add_company(store, 7, tracks_vat=False)
        devpos.documents[DocumentKind.SALES] = [sale(1, 500)]

        run_job(make_executor(), job_type="sales")

        invoice = next(iter(qbo.records["invoice"].values()))
        assert "TaxCodeRef" not in invoice["Line"][0]["SalesItemLineDetail"]

    def test_vat_company_uses_rate_mapping(self, store, devpos, qbo, make_executor):
        add_company(store, 8, tracks_vat=True)
        save_vat_rate_mapping(VatRateMapping(company_id=8, source_vat_rate=20, target_tax_code="7"), store.db_path)
        devpos.documents[DocumentKind.SALES] = [sale(1, 500)]

        run_job(make_executor(), company_id=8, job_type="sales")

        invoice = next(iter(qbo.records["invoice"].values()))
        assert invoice["Line"][0]["SalesItemLineDetail"]["TaxCodeRef"] == {"value": "7"}

    def test_negative_sale_is_sent_to_quickbooks(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.SALES] = [sale(1, -50)]

        result = run_job(make_executor(), job_type="sales")

        assert result.results["invoices_created"] == 1
        assert result.results["skipped"] == 0
        invoice = next(iter(qbo.records["invoice"].values()))
        assert invoice["Line"][0]["Amount"] == -50
        assert find_mapping(7, "EIC-S1", "invoice", store.db_path).amount == -50

    def test_rejected_negative_sale_is_reported(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.SALES] = [sale(1, -50), sale(2, 0)]
        qbo.create_errors["S-1"] = TargetValidationError("QuickBooks validation error: negative total", 400)

        result = run_job(make_executor(), job_type="sales")

        assert result.results["errors"] == 1
        assert result.results["error_details"][0]["document_id"] == "EIC-S1"
        # Zero stays a validation skip
        assert result.results["skipped"] == 1


class TestJobFailures:

    def test_unknown_job(self, store, make_executor):
        with pytest.raises(NotFoundError):
            asyncio.run(make_executor().execute_job(999))

    def test_job_not_pending(self, store, devpos, make_executor):
        add_company(store, 7)
        job = create_job(7, "bills", "2025-01-01", "2025-01-31", db_path=store.db_path)
        claim_job(job.id, store.db_path)

        with pytest.raises(InvalidStateError):
            asyncio.run(make_executor().execute_job(job.id))
        assert devpos.fetch_calls == []

    def test_completed_job_is_not_rerun(self, store, devpos, make_executor):
        add_company(store, 7)
        executor = make_executor()
        result = run_job(executor)

        with pytest.raises(InvalidStateError):
            asyncio.run(executor.execute_job(result.job_id))

    @pytest.mark.parametrize("source,target,expected", [
        (False, True, "DevPos credentials"),
        (True, False, "QuickBooks not connected"),
    ])
    def test_missing_credentials_fail_the_job(self, store, make_executor, source, target, expected):
        add_company(store, 7, source=source, target=target)

        result = run_job(make_executor())

        assert result.status is JobStatus.FAILED
        assert result.error_message.startswith("ConfigurationError:")
        assert expected in result.error_message
        job = get_job(result.job_id, store.db_path)
        assert job.status is JobStatus.FAILED
        assert job.error_message == result.error_message

    def test_unknown_company_fails_the_job(self, store, make_executor):
        result = run_job(make_executor(), company_id=42)
        assert result.status is JobStatus.FAILED
        assert "Company 42 not found" in result.error_message

    def test_source_fetch_failure_fails_the_job(self, store, devpos, make_executor):
        add_company(store, 7)
        devpos.fetch_error = UpstreamError("DevPos failed to fetch purchase documents: HTTP 502", 502)

        result = run_job(make_executor())

        assert result.status is JobStatus.FAILED
        assert result.error_message == "UpstreamError: DevPos failed to fetch purchase documents: HTTP 502"

    def test_unauthorized_mid_batch_fails_the_job(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.PURCHASE] = [bill(1, 100), bill(2, 200)]
        qbo.create_errors["B-2"] = AuthenticationError("QuickBooks authentication failed", system="qbo")

        result = run_job(make_executor())

        assert result.status is JobStatus.FAILED
        assert result.error_message.startswith("AuthenticationError:")
        # The first bill was created before the failure and stays recorded
        assert find_mapping(7, "EIC-B1", "bill", store.db_path) is not None

    def test_token_refresh_failure_fails_the_job(self, store, make_executor):
        add_company(store, 7)
        auth = MagicMock()
        auth.ensure_fresh = AsyncMock(side_effect=AuthenticationError("refresh rejected", system="qbo"))

        result = run_job(make_executor(auth=auth))

        assert result.status is JobStatus.FAILED
        assert result.error_message == "AuthenticationError: refresh rejected"

    def test_refreshed_credentials_are_used(self, store, devpos, qbo):
        add_company(store, 7)
        refreshed = store.get_target_credentials(7)
        auth = MagicMock()
        auth.ensure_fresh = AsyncMock(return_value=refreshed)
        target_factory = MagicMock(return_value=qbo)
        executor = SyncExecutor(devpos, auth, target_factory, store, SyncSettings(db_path=store.db_path))

        run_job(executor)

        target_factory.assert_called_once_with(refreshed)


class TestAttachments:

    def test_pdf_from_list_response(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.PURCHASE] = [bill(1, 100, pdf=PDF)]

        run_job(make_executor())

        bill_id = find_mapping(7, "EIC-B1", "bill", store.db_path).target_document_id
        assert qbo.attachments == [("bill", bill_id, "bill_B-1.pdf", b"%PDF-1.4 test")]

    def test_pdf_from_detail_fetch(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.SALES] = [sale(1, 500)]
        devpos.details["EIC-S1"] = {"eic": "EIC-S1", "pdf": f"data:application/pdf;base64,{PDF}"}

        run_job(make_executor(), job_type="sales")

        assert len(qbo.attachments) == 1
        assert qbo.attachments[0][2] == "invoice_S-1.pdf"

    def test_invalid_pdf_is_not_an_error(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        not_a_pdf = base64.b64encode(b"hello").decode()
        devpos.documents[DocumentKind.PURCHASE] = [bill(1, 100, pdf=not_a_pdf)]

        result = run_job(make_executor())

        assert result.results["created"] == 1
        assert result.results["errors"] == 0
        assert qbo.attachments == []

    def test_upload_failure_is_swallowed(self, store, devpos, qbo, make_executor):
        add_company(store, 7)
        devpos.documents[DocumentKind.PURCHASE] = [bill(1, 100, pdf=PDF)]
        qbo.upload_attachment = AsyncMock(side_effect=UpstreamError("upload rejected", 400))

        result = run_job(make_executor())

        assert result.status is JobStatus.COMPLETED
        assert result.results["created"] == 1
        assert result.results["errors"] == 0


class TestModuleSource:

    def test_compiles_without_warnings(self):
        with open(executor_module.__file__, encoding="utf-8") as f:
            source = f.read()

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            compile(source, executor_module.__file__, "exec")
