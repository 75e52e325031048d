"""Fail sync jobs stuck in running beyond the timeout.

Meant for cron when no worker runs with a watchdog interval.

Usage:
    python scripts/reap_stuck_jobs.py [--timeout-minutes 30]
"""

import argparse
import sys
from pathlib import Path
import logging

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import SyncSettings
from core.db import init_db
from jobs.db import reap_stuck_jobs


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def main():
    settings = SyncSettings.from_env()
    parser = argparse.ArgumentParser(description="Fail stuck sync jobs")
    parser.add_argument("--timeout-minutes", type=int, default=settings.job_timeout_minutes)
    args = parser.parse_args()

    init_db(settings.db_path)
    reaped = reap_stuck_jobs(args.timeout_minutes, settings.db_path)

    if reaped:
        logger.warning(f"Marked {len(reaped)} job(s) failed: {reaped}")
    else:
        logger.info("No stuck jobs")
    return 0


if __name__ == "__main__":
    sys.exit(main())
