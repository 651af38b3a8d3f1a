"""
Processor fee calculation.

fee = min(amount * percent + fixed, cap), plus a flat surcharge on every
retried attempt (retry_count >= 1). First attempts are never surcharged.
"""

from decimal import ROUND_HALF_UP, Decimal

from app.config.constants import (
    DEFAULT_PROCESSOR_FEE_CAP,
    DEFAULT_PROCESSOR_FEE_PERCENT,
    DEFAULT_PROCESSOR_FIXED_FEE,
    DEFAULT_RETRY_FEE_SURCHARGE,
    MONEY_QUANTUM,
)


def quantize_money(value: Decimal) -> Decimal:
    """Round to cents, half up."""
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def calculate_processor_fee(
    amount: Decimal,
    retry_count: int = 0,
    percent: Decimal = DEFAULT_PROCESSOR_FEE_PERCENT,
    fixed_fee: Decimal = DEFAULT_PROCESSOR_FIXED_FEE,
    cap: Decimal = DEFAULT_PROCESSOR_FEE_CAP,
    retry_surcharge: Decimal = DEFAULT_RETRY_FEE_SURCHARGE,
) -> Decimal:
    """
    Calculate the application fee for one charge attempt.

    Args:
        amount: Contribution amount
        retry_count: Failed attempts so far (0 for the first attempt)
        percent: Proportional part of the fee
        fixed_fee: Fixed part of the fee
        cap: Upper bound of the proportional + fixed fee
        retry_surcharge: Added when retry_count >= 1

    Returns:
        Fee rounded to cents

    Raises:
        ValueError: If amount is not positive or retry_count is negative
    """
    if amount <= 0:
        raise ValueError(f"Amount must be positive, got {amount}")
    if retry_count < 0:
        raise ValueError(f"retry_count must be >= 0, got {retry_count}")

    base_fee = min(amount * percent + fixed_fee, cap)
    if retry_count >= 1:
        base_fee += retry_surcharge
    return quantize_money(base_fee)
