"""Worker for DevPos to QuickBooks sync.

Polls sync_jobs every WORKER_POLL_SECONDS and runs pending jobs. Each round
(a tick) may also:
- fail jobs stuck in running (every WATCHDOG_INTERVAL_MINUTES)
- enqueue scheduled jobs for connected companies (every SCHEDULE_INTERVAL_MINUTES)

Run with:
    python -m workers.worker
    python -m workers.worker --once      # one round, then wait for its jobs
"""

import argparse
import asyncio
import os
import signal
import socket
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from core.config import SyncSettings
from core.db import init_db
from core.observability.logging import configure_logging, get_logger
from jobs.db import reap_stuck_jobs
from jobs.models import JobType
from jobs.scheduler import enqueue_scheduled_jobs
from sync_engine.executor import open_executor
from workers.dispatcher import JobDispatcher

logger = get_logger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class SyncWorker:
    """Periodic dispatch loop with optional watchdog and scheduled intake.

    An interval of 0 minutes disables the watchdog or the scheduled intake.
    The clock is injectable so the interval logic can be tested without
    sleeping.
    """

    def __init__(
        self,
        dispatcher: JobDispatcher,
        settings: SyncSettings,
        schedule_days_back: int = 1,
        schedule_job_type: Union[JobType, str] = JobType.FULL,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.dispatcher = dispatcher
        self.settings = settings
        self.schedule_days_back = schedule_days_back
        self.schedule_job_type = JobType(schedule_job_type)
        self._clock = clock
        self._last_watchdog: Optional[datetime] = None
        self._last_schedule: Optional[datetime] = None

    @staticmethod
    def _due(last_run: Optional[datetime], interval_minutes: int, now: datetime) -> bool:
        if interval_minutes <= 0:
            return False
        return last_run is None or now - last_run >= timedelta(minutes=interval_minutes)

    async def tick(self) -> List[int]:
        """One round: watchdog and scheduling when due, then dispatch.

        Returns:
            Ids of the jobs dispatched this round
        """
        now = self._clock()
        db_path = self.settings.db_path

        if self._due(self._last_watchdog, self.settings.watchdog_interval_minutes, now):
            self._last_watchdog = now
            reaped = reap_stuck_jobs(self.settings.job_timeout_minutes, db_path)
            if reaped:
                logger.warning(f"Failed {len(reaped)} stuck job(s): {reaped}")

        if self._due(self._last_schedule, self.settings.schedule_interval_minutes, now):
            self._last_schedule = now
            created = enqueue_scheduled_jobs(
                self.schedule_days_back,
                self.schedule_job_type,
                db_path=db_path,
            )
            logger.info(f"Scheduled {len(created)} job(s)")

        return await self.dispatcher.dispatch_pending()

    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick until stop_event is set, then wait for in-flight jobs."""
        logger.info(f"Worker polling every {self.settings.worker_poll_seconds}s")

        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                # SQLite hiccup: keep polling
                logger.error(f"Worker round failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.settings.worker_poll_seconds)
            except asyncio.TimeoutError:
                pass

        busy = self.dispatcher.busy_companies
        if busy:
            logger.info(f"Stopping; waiting for jobs of companies {busy}")
        await self.dispatcher.wait_idle()
        logger.info("Worker stopped")


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops: Ctrl+C surfaces as KeyboardInterrupt instead
            pass


async def run_worker(
    settings: SyncSettings,
    once: bool = False,
    schedule_days_back: int = 1,
    schedule_job_type: str = "full",
) -> None:
    """Start the sync worker."""
    init_db(settings.db_path)
    worker_id = default_worker_id()

    async with open_executor(settings) as executor:
        dispatcher = JobDispatcher(
            executor,
            settings.db_path,
            max_concurrent=settings.worker_max_concurrent,
            worker_id=worker_id,
        )
        worker = SyncWorker(
            dispatcher,
            settings,
            schedule_days_back=schedule_days_back,
            schedule_job_type=schedule_job_type,
        )
        logger.info(f"Worker {worker_id} started (max {settings.worker_max_concurrent} concurrent jobs)")

        if once:
            await worker.tick()
            await dispatcher.wait_idle()
            return

        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)
        await worker.run(stop_event)


def main():
    """Entry point for worker with CLI args."""
    parser = argparse.ArgumentParser(description="DevPos to QuickBooks sync worker")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single round and exit when its jobs finish",
    )
    parser.add_argument(
        "--max-concurrent",
        type=int,
        default=None,
        help="Jobs run at once (default: WORKER_MAX_CONCURRENT)",
    )
    parser.add_argument(
        "--watchdog-interval",
        type=int,
        default=None,
        help="Minutes between stuck-job sweeps, 0 disables (default: WATCHDOG_INTERVAL_MINUTES)",
    )
    parser.add_argument(
        "--schedule-interval",
        type=int,
        default=None,
        help="Minutes between scheduled syncs, 0 disables (default: SCHEDULE_INTERVAL_MINUTES)",
    )
    parser.add_argument(
        "--schedule-days",
        type=int,
        default=1,
        help="Days covered by each scheduled sync (default: 1)",
    )
    parser.add_argument(
        "--schedule-type",
        choices=[t.value for t in JobType],
        default="full",
        help="Job type of scheduled syncs (default: full)",
    )

    args = parser.parse_args()
    configure_logging()

    settings = SyncSettings.from_env()
    if args.max_concurrent is not None:
        settings.worker_max_concurrent = args.max_concurrent
    if args.watchdog_interval is not None:
        settings.watchdog_interval_minutes = args.watchdog_interval
    if args.schedule_interval is not None:
        settings.schedule_interval_minutes = args.schedule_interval

    try:
        asyncio.run(run_worker(
            settings,
            once=args.once,
            schedule_days_back=args.schedule_days,
            schedule_job_type=args.schedule_type,
        ))
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")


if __name__ == "__main__":
    main()
