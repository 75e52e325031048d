"""Execute one sync job in the foreground, outside the worker.

Usage:
    python scripts/run_sync_job.py 42
"""

import asyncio
import json
import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import SyncSettings
from core.errors import SyncError
from core.observability.logging import configure_logging
from jobs.models import JobStatus
from sync_engine.executor import open_executor


async def run(job_id: int):
    async with open_executor(SyncSettings.from_env()) as executor:
        return await executor.execute_job(job_id)


def main():
    if len(sys.argv) != 2 or not sys.argv[1].isdigit():
        print("Usage: run_sync_job.py <job_id>", file=sys.stderr)
        return 2

    configure_logging()
    try:
        result = asyncio.run(run(int(sys.argv[1])))
    except SyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(json.dumps(result.model_dump(mode="json"), indent=2))
    return 0 if result.status is JobStatus.COMPLETED else 1


if __name__ == "__main__":
    sys.exit(main())
