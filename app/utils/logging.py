"""
Logging setup.

Configures loguru sinks for worker and scheduler processes.
"""

import sys

from loguru import logger

from app.config.settings import settings


def setup_logging(component: str) -> None:
    """
    Configure logger with stderr output and file rotation.

    Args:
        component: Process name written in the startup line
    """
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)
    logger.add(
        settings.log_file,
        rotation="1 day",
        retention="7 days",
        level=settings.log_level,
        encoding="utf-8",
    )

    logger.info(f"Starting roscapay {component} ({settings.environment})...")
