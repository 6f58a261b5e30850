"""Recurring billing scheduler package."""

from src.scheduler.billing import (
    BillingTimer,
    RecurringBillingScheduler,
    advance_billing_date,
    build_subscription_transaction,
)

__all__ = [
    "BillingTimer",
    "RecurringBillingScheduler",
    "advance_billing_date",
    "build_subscription_transaction",
]
