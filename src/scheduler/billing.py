"""
Recurring Billing Scheduler

Once a day, every active subscription whose billing date has arrived is
turned into an EXPENSE transaction and its billing date moves forward by
one cycle.

DESIGN DECISION: Each subscription is billed in its OWN unit of work.
The transaction insert, the balance decrement and the date advance commit
together, so a subscription is either fully billed or untouched. One
failing subscription never blocks the others.

DOUBLE-BILLING GUARD: The due list is only a hint. Inside the unit the
subscription is re-read under a row lock and billed only if it is still
due AND its billing date is still the one observed when the run started.
A concurrent run that got there first has already advanced the date, so
the late run skips.

CATCH-UP: A subscription several cycles behind is billed once per run.
Successive daily runs catch it up one cycle at a time.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional
from uuid import UUID

import structlog
from dateutil.relativedelta import relativedelta

from src.audit import AuditLogger
from src.ledger.engine import LedgerEngine
from src.ledger.errors import EntityNotFoundError
from src.models.ledger import (
    Account,
    BillingCycle,
    BillingOutcome,
    BillingOutcomeStatus,
    BillingRunReport,
    Subscription,
    Transaction,
    TransactionType,
)
from src.services.storage.interface import LedgerSession


logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

# relativedelta clamps to the last day of a shorter month (Jan 31 -> Feb 28)
_CYCLE_STEPS = {
    BillingCycle.MONTHLY: relativedelta(months=1),
    BillingCycle.YEARLY: relativedelta(years=1),
}


def advance_billing_date(current: datetime, cycle: BillingCycle) -> datetime:
    """Next billing date, exactly one cycle after `current`."""
    return current + _CYCLE_STEPS[cycle]


def build_subscription_transaction(
    subscription: Subscription,
    account: Account,
) -> Transaction:
    """
    The EXPENSE transaction a subscription emits for its current billing date.

    The transaction is dated at the billing date it covers, not at the time
    the run happened to execute.
    """
    description = subscription.name
    if subscription.description:
        description = f"{subscription.name} - {subscription.description}"

    return Transaction(
        user_id=subscription.user_id,
        amount=subscription.amount,
        type=TransactionType.EXPENSE,
        currency=account.currency,
        account_id=subscription.account_id,
        category_id=subscription.category_id,
        date=subscription.next_billing_date,
        description=description,
        metadata={
            "subscription_id": str(subscription.id),
            "subscription_name": subscription.name,
            "billing_cycle": subscription.billing_cycle.value,
        },
    )


class RecurringBillingScheduler:
    """
    Bills due subscriptions through the ledger engine.

    Usage:
        scheduler = RecurringBillingScheduler(engine, audit_logger)
        report = await scheduler.run_billing_cycle()
    """

    def __init__(
        self,
        engine: LedgerEngine,
        audit_logger: Optional[AuditLogger] = None,
        clock: Clock = datetime.utcnow,
    ):
        self._engine = engine
        self._audit = audit_logger or AuditLogger()
        self._clock = clock

    async def run_billing_cycle(self, now: Optional[datetime] = None) -> BillingRunReport:
        """
        Bill every subscription due at `now` (defaults to the clock).

        Failures are isolated per subscription and reported in the returned
        report; only cancellation escapes.
        """
        now = now or self._clock()
        report = BillingRunReport(evaluated_at=now)
        log = logger.bind(run_id=str(report.run_id))
        log.info("billing_run_started", evaluated_at=now.isoformat())

        try:
            due = await self._engine.atomic(
                "find_due_subscriptions",
                lambda session: session.subscriptions.find_due(now),
            )
        except Exception as e:
            log.error("billing_run_lookup_failed", error=str(e))
            await self._audit.log_error(
                error_type=type(e).__name__,
                error_message=str(e),
                details={"stage": "find_due_subscriptions"},
                correlation_id=report.run_id,
            )
            due = []

        for subscription in due:
            outcome = await self._bill_one(subscription, now, report.run_id)
            report.outcomes.append(outcome)
            await self._audit.log_billing_outcome(
                outcome,
                amount=str(subscription.amount),
                correlation_id=report.run_id,
            )

        report.completed_at = self._clock()
        log.info(
            "billing_run_completed",
            due=len(due),
            billed=report.billed_count,
            skipped=report.skipped_count,
            failed=report.failed_count,
        )
        await self._audit.log_billing_run(report)
        return report

    async def _bill_one(
        self,
        subscription: Subscription,
        now: datetime,
        run_id: UUID,
    ) -> BillingOutcome:
        observed_date = subscription.next_billing_date
        try:
            return await self._engine.atomic(
                "bill_subscription",
                lambda session: self._bill_in_unit(session, subscription.id, observed_date, now),
            )
        except Exception as e:
            logger.error(
                "subscription_billing_failed",
                run_id=str(run_id),
                subscription_id=str(subscription.id),
                error_type=type(e).__name__,
                error=str(e),
            )
            return BillingOutcome(
                subscription_id=subscription.id,
                status=BillingOutcomeStatus.FAILED,
                billed_for=observed_date,
                error_type=type(e).__name__,
                error_message=str(e),
            )

    async def _bill_in_unit(
        self,
        session: LedgerSession,
        subscription_id: UUID,
        observed_date: datetime,
        now: datetime,
    ) -> BillingOutcome:
        current = await session.subscriptions.get_subscription(
            subscription_id,
            for_update=True,
        )

        reason = None
        if current is None:
            reason = "subscription no longer exists"
        elif not current.is_active:
            reason = "subscription is inactive"
        elif current.next_billing_date != observed_date:
            reason = "already billed by another run"
        elif not current.is_due(now):
            reason = "not due"

        if reason is not None:
            logger.info(
                "subscription_skipped",
                subscription_id=str(subscription_id),
                reason=reason,
            )
            return BillingOutcome(
                subscription_id=subscription_id,
                status=BillingOutcomeStatus.SKIPPED,
                billed_for=observed_date,
                reason=reason,
            )

        account = await session.accounts.get_account(current.account_id)
        if account is None or not account.is_active:
            raise EntityNotFoundError("account", current.account_id)

        transaction = await session.transactions.create_transaction(
            build_subscription_transaction(current, account)
        )
        await self._engine.apply_on_create(session, transaction)

        next_date = advance_billing_date(current.next_billing_date, current.billing_cycle)
        await session.subscriptions.update_subscription(
            current.id,
            {"next_billing_date": next_date},
        )

        logger.info(
            "subscription_billed",
            subscription_id=str(current.id),
            transaction_id=str(transaction.id),
            amount=str(transaction.amount),
            billed_for=current.next_billing_date.isoformat(),
            next_billing_date=next_date.isoformat(),
        )
        return BillingOutcome(
            subscription_id=current.id,
            status=BillingOutcomeStatus.BILLED,
            transaction_id=transaction.id,
            billed_for=current.next_billing_date,
            next_billing_date=next_date,
        )


class BillingTimer:
    """
    Fires `run_billing_cycle` once a day at `run_hour_utc`.

    The clock and the sleep function are injectable so the loop can be
    driven deterministically.
    """

    def __init__(
        self,
        scheduler: RecurringBillingScheduler,
        run_hour_utc: int = 0,
        clock: Clock = datetime.utcnow,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self._scheduler = scheduler
        self._run_hour = run_hour_utc
        self._clock = clock
        self._sleep = sleep
        self._stop = asyncio.Event()

    def seconds_until_next_run(self, now: datetime) -> float:
        next_run = now.replace(hour=self._run_hour, minute=0, second=0, microsecond=0)
        if next_run <= now:
            next_run += timedelta(days=1)
        return (next_run - now).total_seconds()

    def stop(self) -> None:
        self._stop.set()

    async def run_forever(self, max_runs: Optional[int] = None) -> int:
        """
        Sleep until each scheduled hour and run a billing cycle.

        Returns the number of runs performed once stopped (or after
        `max_runs`).
        """
        runs = 0
        while not self._stop.is_set():
            delay = self.seconds_until_next_run(self._clock())
            logger.info("billing_timer_waiting", seconds=delay)
            await self._pause(delay)
            if self._stop.is_set():
                break

            await self._scheduler.run_billing_cycle()
            runs += 1
            if max_runs is not None and runs >= max_runs:
                break

        logger.info("billing_timer_stopped", runs=runs)
        return runs

    async def _pause(self, seconds: float) -> None:
        if self._sleep is not None:
            await self._sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
