"""
Application constants.

Centralized constants for the cycle engine.
"""

from decimal import Decimal

# ========================================================================
# FEE CONSTANTS
# ========================================================================

# Processor fee: min(amount * 1% + 0.30, 3.50)
DEFAULT_PROCESSOR_FEE_PERCENT = Decimal("0.01")
DEFAULT_PROCESSOR_FIXED_FEE = Decimal("0.30")
DEFAULT_PROCESSOR_FEE_CAP = Decimal("3.50")

# Added on top of the capped fee for every retried attempt (retry_count >= 1)
DEFAULT_RETRY_FEE_SURCHARGE = Decimal("2.50")

# Money is settled in cents
MONEY_QUANTUM = Decimal("0.01")

# ========================================================================
# RETRY / PAUSE CONSTANTS
# ========================================================================

PAYMENT_MAX_RETRIES = 3  # retry_count at which the group is paused
PAYMENT_RETRY_DELAY_SECONDS = 2 * 24 * 60 * 60  # 2 days

# ========================================================================
# SCHEDULER CONSTANTS
# ========================================================================

SCHEDULE_MIN_DELAY_SECONDS = 5  # never enqueue with an immediate/negative delay
SCHEDULE_PAST_DUE_BUFFER_SECONDS = 10  # past-due cycles run at now + buffer

# Recovery pass
RECOVERY_IN_PROGRESS_DELAY_SECONDS = 10
RECOVERY_RETRY_BASE_DELAY_SECONDS = 60
RECOVERY_RETRY_STAGGER_SECONDS = 60  # extra delay per batch
RECOVERY_RETRY_BATCH_SIZE = 10

# ========================================================================
# JOB QUEUE CONSTANTS
# ========================================================================

CYCLE_QUEUE_NAME = "cycles"
PAYMENT_QUEUE_NAME = "payments"
GROUP_STATUS_QUEUE_NAME = "group-status"
NOTIFICATION_QUEUE_NAME = "notifications"

NOTIFICATION_JOB_ATTEMPTS = 5
NOTIFICATION_BACKOFF_BASE_MS = 30_000

# Metrics retention
METRICS_MAX_PROCESSING_SAMPLES = 100
METRICS_MAX_ERROR_RECORDS = 1000
METRICS_MAX_HEALTH_RECORDS = 100
