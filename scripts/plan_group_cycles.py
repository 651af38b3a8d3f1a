#!/usr/bin/env python3
"""
Plan the cycle dates of a new group and schedule its first cycle.

Usage:
    python scripts/plan_group_cycles.py <group_id> 2026-11-01T09:00:00+00:00
"""

import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from loguru import logger

from app.utils.exceptions import CycleConfigurationError
from jobs.context import build_context

# Configure logger
logger.remove()
logger.add(sys.stderr, level="INFO", format="{time:HH:mm:ss} | {level} | {message}")


async def plan(group_id: str, first_cycle_date: datetime) -> int:
    context = build_context()
    try:
        dates = await context.planner.plan_group_cycles(group_id, first_cycle_date)
    except CycleConfigurationError as e:
        logger.error(f"Cannot plan: {e}")
        return 1
    finally:
        await context.close()

    for number, date in enumerate(dates, start=1):
        logger.info(f"Cycle {number}: {date.isoformat()}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Plan the cycles of a group")
    parser.add_argument("group_id", help="Group ID")
    parser.add_argument(
        "first_cycle_date",
        type=datetime.fromisoformat,
        help="ISO-8601 date of cycle 1 (UTC if no offset)",
    )
    args = parser.parse_args()
    sys.exit(asyncio.run(plan(args.group_id, args.first_cycle_date)))


if __name__ == "__main__":
    main()
