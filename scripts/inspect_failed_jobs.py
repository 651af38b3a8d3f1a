#!/usr/bin/env python3
"""
List permanently failed jobs.

Usage:
    python scripts/inspect_failed_jobs.py            # Last 20 failures
    python scripts/inspect_failed_jobs.py --limit 100
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from loguru import logger

from jobs.context import build_context

# Configure logger
logger.remove()
logger.add(sys.stderr, level="INFO", format="{time:HH:mm:ss} | {level} | {message}")


async def inspect_failed_jobs(limit: int) -> None:
    context = build_context()
    try:
        depth = await context.queue.depth()
        jobs = await context.queue.failed_jobs(limit)
    finally:
        await context.close()

    logger.info(
        f"Queue: pending={depth.get('pending', 0)} active={depth.get('active', 0)} "
        f"failed={depth.get('failed', 0)}"
    )
    if not jobs:
        logger.info("No failed jobs")
        return

    for job in jobs:
        last_error = job.errors[-1] if job.errors else "-"
        logger.info(
            f"{job.job_id} kind={job.kind.value} group={job.group_id} "
            f"attempts={job.attempts_made}/{job.options.attempts} error={last_error}"
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="List permanently failed jobs")
    parser.add_argument("--limit", type=int, default=20, help="Max jobs to show")
    args = parser.parse_args()
    asyncio.run(inspect_failed_jobs(args.limit))


if __name__ == "__main__":
    main()
