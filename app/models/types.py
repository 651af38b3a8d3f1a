"""
Standard type definitions for database models.

Provides consistent types for monetary fields and the typed list of
future cycle dates owned by a group.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import DECIMAL, JSON
from sqlalchemy.types import TypeDecorator

from app.utils.datetime_utils import ensure_utc

# Standard money type for contributions, fees, payouts
# Precision: 18 digits total, 2 after decimal point (cents)
MoneyType = DECIMAL(18, 2)


def validate_cycle_dates(values: list[datetime]) -> list[datetime]:
    """
    Validate and normalize an ordered sequence of cycle dates.

    Args:
        values: Cycle dates, one per cycle

    Returns:
        List of aware UTC datetimes

    Raises:
        ValueError: If an entry is not a datetime or the list is not
            strictly increasing
    """
    normalized: list[datetime] = []
    for value in values:
        if not isinstance(value, datetime):
            raise ValueError(f"Cycle date must be a datetime, got {type(value).__name__}")
        value = ensure_utc(value)
        if normalized and value <= normalized[-1]:
            raise ValueError(
                f"Cycle dates must be strictly increasing: {value.isoformat()} "
                f"follows {normalized[-1].isoformat()}"
            )
        normalized.append(value)
    return normalized


class CycleDateList(TypeDecorator):
    """
    Ordered list of cycle dates stored as JSON ISO-8601 strings.

    Validated on write; read back as aware UTC datetimes.
    """

    impl = JSON
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> list[str] | None:
        if value is None:
            return None
        return [d.isoformat() for d in validate_cycle_dates(list(value))]

    def process_result_value(self, value: Any, dialect) -> list[datetime] | None:
        if value is None:
            return None
        return [ensure_utc(datetime.fromisoformat(item)) for item in value]
