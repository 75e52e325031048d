"""Sync job models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from core.models.documents import DocumentKind


class JobStatus(str, Enum):
    """pending -> running -> completed | failed, each transition exactly once."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobType(str, Enum):
    SALES = "sales"
    PURCHASES = "purchases"
    BILLS = "bills"
    FULL = "full"

    @property
    def document_kinds(self) -> Tuple[DocumentKind, ...]:
        """DevPos document classes a job of this type syncs, in order."""
        if self is JobType.SALES:
            return (DocumentKind.SALES,)
        if self is JobType.FULL:
            return (DocumentKind.SALES, DocumentKind.PURCHASE)
        # purchases and bills both sync DevPos purchase invoices into QBO bills
        return (DocumentKind.PURCHASE,)


class SyncJob(BaseModel):
    """A row of sync_jobs."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    company_id: int
    job_type: JobType
    from_date: str
    to_date: str
    status: JobStatus = JobStatus.PENDING
    trigger_source: str = "manual"
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    results: Optional[Dict[str, Any]] = None


class JobResult(BaseModel):
    """What execute_job reports back to its caller."""
    job_id: int
    status: JobStatus
    results: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


class DocumentError(BaseModel):
    document_id: str
    error: str


class KindResult(BaseModel):
    """Per document-kind counters for one job."""
    kind: DocumentKind
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    error_details: List[DocumentError] = []
    degraded: List[str] = []

    @property
    def errors(self) -> int:
        return len(self.error_details)

    def to_results(self) -> Dict[str, Any]:
        created_key = "invoices_created" if self.kind is DocumentKind.SALES else "bills_created"
        return {
            "total": self.total,
            "created": self.created,
            created_key: self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "error_details": [e.model_dump() for e in self.error_details],
            "degraded": list(self.degraded),
        }
