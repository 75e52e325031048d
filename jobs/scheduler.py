"""Scheduled job intake.

Inserts one pending job per connected company covering the last N days.
Companies that already have a pending or running job are left alone, so a
slow sync is never stacked with a second one for the same company.
"""

import logging
from datetime import date, timedelta
from pathlib import Path
from typing import List, Optional, Union

from core.db import DEFAULT_DB_PATH, connect
from jobs.db import create_job, has_active_job
from jobs.models import JobType, SyncJob

logger = logging.getLogger(__name__)


def list_connected_companies(db_path: Path = DEFAULT_DB_PATH) -> List[int]:
    """Active companies with both DevPos and QuickBooks credentials."""
    conn = connect(db_path)
    try:
        rows = conn.execute(
            """
            SELECT c.id FROM companies c
            JOIN company_credentials_devpos d ON d.company_id = c.id
            JOIN company_credentials_qbo q ON q.company_id = c.id
            WHERE c.is_active = 1
            ORDER BY c.id
            """
        ).fetchall()
        return [row["id"] for row in rows]
    finally:
        conn.close()


def enqueue_scheduled_jobs(
    days_back: int = 1,
    job_type: Union[JobType, str] = JobType.FULL,
    today: Optional[date] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> List[SyncJob]:
    """Create pending jobs for every connected company without one in flight."""
    to_date = today or date.today()
    from_date = to_date - timedelta(days=days_back)

    created = []
    for company_id in list_connected_companies(db_path):
        if has_active_job(company_id, db_path):
            logger.info(f"Company {company_id} already has a job in flight; not scheduling")
            continue
        job = create_job(company_id, job_type, from_date, to_date, trigger_source="scheduled", db_path=db_path)
        logger.info(f"Scheduled job {job.id} for company {company_id} ({from_date} to {to_date})")
        created.append(job)
    return created
