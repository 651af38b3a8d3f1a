"""
Cycle Service - Main Module.

The cycle execution engine of a rotating savings group.

Module Structure:
- fees.py: Processor fee calculation
- planning.py: Cycle date planning
- effects.py: Post-commit jobs and notifications
- charging.py: Per-member charges and failure escalation
- finalizer.py: Finalization gate and advancement
- core.py: CycleService entry points
- payment_events.py: Processor callback handling

Public Interface:
- CycleService: run_cycle, check_and_finalize_cycle, retry_payment,
  pause_group, handle_group_pause, reactivate_group
- PaymentEventHandler: apply_charge_status
- CyclePlanner: plan_group_cycles
"""

from .charging import ChargeOutcome, MemberCharger
from .core import CycleRunResult, CycleService
from .fees import calculate_processor_fee
from .finalizer import CycleFinalizer
from .payment_events import PaymentEventHandler
from .planning import CyclePlanner, build_future_cycle_dates

__all__ = [
    "ChargeOutcome",
    "CycleFinalizer",
    "CyclePlanner",
    "CycleRunResult",
    "CycleService",
    "MemberCharger",
    "PaymentEventHandler",
    "build_future_cycle_dates",
    "calculate_processor_fee",
]
