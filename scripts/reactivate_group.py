#!/usr/bin/env python3
"""
Reactivate a paused group.

Resumes an interrupted cycle (run-cycle job plus retries of failed
contributions still under the retry cap) or schedules the next cycle.

Usage:
    python scripts/reactivate_group.py <group_id>
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from loguru import logger

from app.utils.exceptions import CycleConfigurationError
from jobs.context import build_context

# Configure logger
logger.remove()
logger.add(sys.stderr, level="INFO", format="{time:HH:mm:ss} | {level} | {message}")


async def reactivate(group_id: str) -> int:
    context = build_context()
    try:
        was_paused = await context.cycles.reactivate_group(group_id)
    except CycleConfigurationError as e:
        logger.error(f"Cannot reactivate: {e}")
        return 1
    finally:
        await context.close()

    if was_paused:
        logger.success(f"Group {group_id} reactivated")
    else:
        logger.info(f"Group {group_id} was not paused, nothing to do")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Reactivate a paused group")
    parser.add_argument("group_id", help="Group ID")
    args = parser.parse_args()
    sys.exit(asyncio.run(reactivate(args.group_id)))


if __name__ == "__main__":
    main()
