"""Enqueue a sync job.

The job is picked up by a running worker (python -m workers.worker), or can be run
in-process with scripts/run_sync_job.py.

Usage:
    python scripts/create_sync_job.py 7 bills 2025-01-01 2025-01-31
"""

import argparse
import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import SyncSettings
from core.db import init_db
from jobs.db import create_job
from jobs.models import JobType


def main():
    parser = argparse.ArgumentParser(description="Create a pending sync job")
    parser.add_argument("company_id", type=int)
    parser.add_argument("job_type", choices=[t.value for t in JobType])
    parser.add_argument("from_date", help="YYYY-MM-DD")
    parser.add_argument("to_date", help="YYYY-MM-DD")
    args = parser.parse_args()

    settings = SyncSettings.from_env()
    init_db(settings.db_path)

    job = create_job(args.company_id, args.job_type, args.from_date, args.to_date, db_path=settings.db_path)
    print(job.id)
    return 0


if __name__ == "__main__":
    sys.exit(main())
