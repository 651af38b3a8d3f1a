#!/usr/bin/env python3
"""
Create the cycle engine tables from the models.

For local development and test databases; production schemas are
managed by the alembic revisions under alembic/versions.

Usage:
    python scripts/init_database.py
    python scripts/init_database.py --drop   # recreate from scratch
"""

import argparse
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from loguru import logger

from app.config.settings import settings
from app.models import Base
from jobs.utils.database import create_task_engine

logger.remove()
logger.add(sys.stderr, level="INFO")


async def init_database(drop: bool) -> None:
    engine = create_task_engine(settings)
    try:
        async with engine.begin() as conn:
            if drop:
                logger.warning("Dropping cycle engine tables")
                await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all, checkfirst=True)
    finally:
        await engine.dispose()
    logger.success(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create cycle engine tables")
    parser.add_argument("--drop", action="store_true", help="drop existing tables first")
    args = parser.parse_args()
    asyncio.run(init_database(args.drop))
