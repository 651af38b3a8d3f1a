"""
Services.

Business logic layer: the cycle state machine, scheduling, recovery,
reminders, notifications, metrics and the payment processor client.
Import services from their modules; this package re-exports nothing so
that workers only load what they use.
"""
