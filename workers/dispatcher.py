"""Job dispatcher.

Lists pending sync_jobs rows (oldest first) and runs each one as an asyncio
task on the shared executor. A company with a job in flight is skipped until
that job finishes, so a company never has two jobs running in this worker;
the atomic claim in jobs.db covers other worker processes. Jobs of different
companies run concurrently, up to max_concurrent at once.
"""

import asyncio
from pathlib import Path
from typing import Dict, List, Optional

from core.db import DEFAULT_DB_PATH
from core.errors import InvalidStateError, NotFoundError
from core.observability.logging import get_logger, with_correlation
from jobs.db import list_pending_jobs
from jobs.models import SyncJob
from sync_engine.executor import SyncExecutor

logger = get_logger(__name__)


class JobDispatcher:
    """Starts pending jobs on a SyncExecutor.

    Args:
        executor: Executor shared by every job of this worker
        db_path: SQLite database holding sync_jobs
        max_concurrent: Upper bound on jobs running at once
        worker_id: Attached to the log records of every dispatched job
    """

    def __init__(
        self,
        executor: SyncExecutor,
        db_path: Path = DEFAULT_DB_PATH,
        max_concurrent: int = 4,
        worker_id: Optional[str] = None,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.executor = executor
        self.db_path = db_path
        self.max_concurrent = max_concurrent
        self.worker_id = worker_id
        # company_id -> task running that company's job
        self._in_flight: Dict[int, asyncio.Task] = {}

    @property
    def busy_companies(self) -> List[int]:
        return sorted(self._in_flight)

    async def dispatch_pending(self, limit: int = 20) -> List[int]:
        """Start tasks for pending jobs.

        Returns:
            Ids of the jobs started this round
        """
        started = []
        for job in list_pending_jobs(limit, self.db_path, exclude_companies=self._in_flight):
            if len(self._in_flight) >= self.max_concurrent:
                logger.debug(f"{self.max_concurrent} jobs in flight; remaining jobs wait")
                break
            if job.company_id in self._in_flight:
                logger.debug(f"Company {job.company_id} has a job in flight; job {job.id} waits")
                continue

            self._in_flight[job.company_id] = asyncio.ensure_future(self._run(job))
            started.append(job.id)
            logger.info(f"Dispatched job {job.id} for company {job.company_id}")
        return started

    async def wait_idle(self) -> None:
        """Wait until every job in flight has finished."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def _run(self, job: SyncJob) -> None:
        try:
            with with_correlation(worker_id=self.worker_id):
                await self.executor.execute_job(job.id)
        except (NotFoundError, InvalidStateError) as e:
            # Another worker got there first, or the row went away
            logger.info(f"Job {job.id} not run: {e}")
        except Exception as e:
            logger.error(f"Job {job.id} crashed: {type(e).__name__}: {e}", exc_info=True)
        finally:
            self._in_flight.pop(job.company_id, None)
