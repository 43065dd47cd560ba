"""Retention cleanup for finished jobs and their result directories."""

from __future__ import annotations

import argparse
import asyncio
import logging
import shutil
from pathlib import Path
from typing import List, Optional, Sequence

from tacklebox.config import configure_logging, get_settings
from tacklebox.models import JobStatus, JobType
from tacklebox.store import JobStore, create_store

logger = logging.getLogger(__name__)


async def cleanup_jobs(store: JobStore, *, keep_completed: int, results_dir: Path) -> List[str]:
    """
    Delete FAILED and CANCELLED jobs, and all but the newest `keep_completed`
    COMPLETED jobs of each type. Returns the deleted job ids.
    """
    doomed = [
        job.id
        for job in await store.list_jobs(statuses=[JobStatus.FAILED, JobStatus.CANCELLED])
    ]
    for job_type in JobType:
        completed = await store.list_jobs(job_type=job_type, statuses=[JobStatus.COMPLETED])
        doomed.extend(job.id for job in completed[max(0, keep_completed):])

    if not doomed:
        return []

    removed = await store.delete(doomed)
    for job_id in doomed:
        shutil.rmtree(Path(results_dir) / job_id, ignore_errors=True)
    logger.info("Deleted %d jobs", removed)
    return doomed


def main(argv: Optional[Sequence[str]] = None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Delete old tacklebox jobs and their result files.")
    parser.add_argument("--database-url", default=settings.database_url)
    parser.add_argument("--results-dir", default=str(settings.results_dir))
    parser.add_argument("--keep", type=int, default=settings.keep_completed_per_type,
                        help="completed jobs to keep per job type")
    args = parser.parse_args(argv)

    configure_logging(settings.log_level)

    async def run() -> List[str]:
        store = create_store(args.database_url)
        try:
            return await cleanup_jobs(store, keep_completed=args.keep, results_dir=Path(args.results_dir))
        finally:
            await store.aclose()

    deleted = asyncio.run(run())
    print(f"Deleted {len(deleted)} jobs")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
