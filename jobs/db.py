"""Sync Job Database Operations.

The executor is the only writer of job status. Every transition is a single
conditional UPDATE on the current status, so two workers can never both
claim a job and a terminal job can never be re-entered.
"""

import json
import sqlite3
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from core.db import DEFAULT_DB_PATH, connect
from jobs.models import JobStatus, JobType, SyncJob


def _date_str(value: Union[date, str]) -> str:
    if isinstance(value, (date, datetime)):
        return value.strftime("%Y-%m-%d")
    return str(value)[:10]


def create_job(
    company_id: int,
    job_type: Union[JobType, str],
    from_date: Union[date, str],
    to_date: Union[date, str],
    trigger_source: str = "manual",
    db_path: Path = DEFAULT_DB_PATH,
) -> SyncJob:
    """Insert a pending job."""
    job_type = JobType(job_type)
    now = datetime.utcnow().isoformat()

    conn = connect(db_path)
    try:
        cursor = conn.execute(
            """
            INSERT INTO sync_jobs
                (company_id, job_type, from_date, to_date, status, trigger_source, created_at)
            VALUES (?, ?, ?, ?, 'pending', ?, ?)
            """,
            (company_id, job_type.value, _date_str(from_date), _date_str(to_date), trigger_source, now),
        )
        conn.commit()
        job_id = cursor.lastrowid
    finally:
        conn.close()

    return get_job(job_id, db_path)


def get_job(job_id: int, db_path: Path = DEFAULT_DB_PATH) -> Optional[SyncJob]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM sync_jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None
    finally:
        conn.close()


def claim_job(job_id: int, db_path: Path = DEFAULT_DB_PATH) -> bool:
    """Atomically move a job from pending to running.

    Returns:
        True if this caller claimed the job, False if it was not pending
    """
    conn = connect(db_path)
    try:
        cursor = conn.execute(
            """
            UPDATE sync_jobs
            SET status = 'running', started_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (datetime.utcnow().isoformat(), job_id),
        )
        conn.commit()
        return cursor.rowcount == 1
    finally:
        conn.close()


def complete_job(
    job_id: int,
    results: Dict[str, Any],
    db_path: Path = DEFAULT_DB_PATH,
) -> bool:
    """Mark a running job completed with its results."""
    return _finish(job_id, JobStatus.COMPLETED, json.dumps(results, default=str), None, db_path)


def fail_job(job_id: int, error_message: str, db_path: Path = DEFAULT_DB_PATH) -> bool:
    """Mark a running job failed."""
    return _finish(job_id, JobStatus.FAILED, None, error_message, db_path)


def _finish(
    job_id: int,
    status: JobStatus,
    results_json: Optional[str],
    error_message: Optional[str],
    db_path: Path,
) -> bool:
    conn = connect(db_path)
    try:
        cursor = conn.execute(
            """
            UPDATE sync_jobs
            SET status = ?, completed_at = ?, results_json = ?, error_message = ?
            WHERE id = ? AND status = 'running'
            """,
            (status.value, datetime.utcnow().isoformat(), results_json, error_message, job_id),
        )
        conn.commit()
        return cursor.rowcount == 1
    finally:
        conn.close()


def list_pending_jobs(
    limit: int = 20,
    db_path: Path = DEFAULT_DB_PATH,
    exclude_companies: Iterable[int] = (),
) -> List[SyncJob]:
    """Pending jobs, oldest first, leaving out the companies in ``exclude_companies``."""
    excluded = list(exclude_companies)
    company_filter = ""
    if excluded:
        company_filter = f"AND company_id NOT IN ({', '.join('?' for _ in excluded)})"
    conn = connect(db_path)
    try:
        rows = conn.execute(
            f"""
            SELECT * FROM sync_jobs
            WHERE status = 'pending' {company_filter}
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (*excluded, limit),
        ).fetchall()
        return [_row_to_job(row) for row in rows]
    finally:
        conn.close()


def list_jobs(company_id: int, limit: int = 50, db_path: Path = DEFAULT_DB_PATH) -> List[SyncJob]:
    """A company's jobs, newest first."""
    conn = connect(db_path)
    try:
        rows = conn.execute(
            """
            SELECT * FROM sync_jobs
            WHERE company_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (company_id, limit),
        ).fetchall()
        return [_row_to_job(row) for row in rows]
    finally:
        conn.close()


def has_active_job(company_id: int, db_path: Path = DEFAULT_DB_PATH) -> bool:
    """True if the company has a pending or running job."""
    conn = connect(db_path)
    try:
        row = conn.execute(
            """
            SELECT 1 FROM sync_jobs
            WHERE company_id = ? AND status IN ('pending', 'running')
            LIMIT 1
            """,
            (company_id,),
        ).fetchone()
        return row is not None
    finally:
        conn.close()


def reap_stuck_jobs(timeout_minutes: int = 30, db_path: Path = DEFAULT_DB_PATH) -> List[int]:
    """Fail jobs that have been running longer than ``timeout_minutes``.

    Returns:
        Ids of the jobs that were marked failed
    """
    cutoff = (datetime.utcnow() - timedelta(minutes=timeout_minutes)).isoformat()
    message = f"Job timeout - exceeded {timeout_minutes} minutes"

    conn = connect(db_path)
    try:
        rows = conn.execute(
            """
            SELECT id FROM sync_jobs
            WHERE status = 'running' AND started_at < ?
            """,
            (cutoff,),
        ).fetchall()

        reaped = []
        for row in rows:
            cursor = conn.execute(
                """
                UPDATE sync_jobs
                SET status = 'failed', completed_at = ?, error_message = ?
                WHERE id = ? AND status = 'running'
                """,
                (datetime.utcnow().isoformat(), message, row["id"]),
            )
            if cursor.rowcount == 1:
                reaped.append(row["id"])
        conn.commit()
        return reaped
    finally:
        conn.close()


def _row_to_job(row: sqlite3.Row) -> SyncJob:
    def _ts(value: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(value) if value else None

    results = json.loads(row["results_json"]) if row["results_json"] else None

    return SyncJob(
        id=row["id"],
        company_id=row["company_id"],
        job_type=row["job_type"],
        from_date=row["from_date"],
        to_date=row["to_date"],
        status=row["status"],
        trigger_source=row["trigger_source"],
        created_at=_ts(row["created_at"]),
        started_at=_ts(row["started_at"]),
        completed_at=_ts(row["completed_at"]),
        error_message=row["error_message"],
        results=results,
    )
