"""Sync job table: intake, claiming, completion and stuck-job reaping."""

from jobs.models import (
    DocumentError,
    JobResult,
    JobStatus,
    JobType,
    KindResult,
    SyncJob,
)
from jobs.db import (
    claim_job,
    complete_job,
    create_job,
    fail_job,
    get_job,
    has_active_job,
    list_jobs,
    list_pending_jobs,
    reap_stuck_jobs,
)

__all__ = [
    "DocumentError",
    "JobResult",
    "JobStatus",
    "JobType",
    "KindResult",
    "SyncJob",
    "claim_job",
    "complete_job",
    "create_job",
    "fail_job",
    "get_job",
    "has_active_job",
    "list_jobs",
    "list_pending_jobs",
    "reap_stuck_jobs",
]
