"""
Tests for the Recurring Billing Scheduler.

The billing clock is always injected; no real time passes.
"""

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from src.models.audit import AuditEventType
from src.models.ledger import (
    Account,
    BillingCycle,
    BillingOutcomeStatus,
    Currency,
    TransactionType,
)
from src.orchestrator import AccountFlow
from src.scheduler import (
    BillingTimer,
    RecurringBillingScheduler,
    advance_billing_date,
)
from src.services.storage.memory import (
    InMemoryAccountStorage,
    InMemorySubscriptionStorage,
)


JAN_15 = datetime(2024, 1, 15)


@pytest.fixture
def scheduler(engine, audit_logger):
    return RecurringBillingScheduler(engine, audit_logger, clock=lambda: JAN_15)


class TestAdvanceBillingDate:
    """Tests for the one-cycle date step."""

    def test_monthly(self):
        """Monthly adds one calendar month."""
        assert advance_billing_date(JAN_15, BillingCycle.MONTHLY) == datetime(2024, 2, 15)

    def test_yearly(self):
        """Yearly adds one calendar year."""
        assert advance_billing_date(JAN_15, BillingCycle.YEARLY) == datetime(2025, 1, 15)

    def test_month_end_clamps(self):
        """Jan 31 advances to the last day of February, not into March."""
        assert advance_billing_date(datetime(2024, 1, 31), BillingCycle.MONTHLY) == datetime(2024, 2, 29)
        assert advance_billing_date(datetime(2023, 1, 31), BillingCycle.MONTHLY) == datetime(2023, 2, 28)

    def test_leap_day_yearly(self):
        """Feb 29 advances to Feb 28 of the next year."""
        assert advance_billing_date(datetime(2024, 2, 29), BillingCycle.YEARLY) == datetime(2025, 2, 28)

    def test_keeps_time_of_day(self):
        """The time component is preserved."""
        assert advance_billing_date(
            datetime(2024, 3, 10, 9, 30), BillingCycle.MONTHLY
        ) == datetime(2024, 4, 10, 9, 30)


class TestRunBillingCycle:
    """Tests for run_billing_cycle."""

    @pytest.mark.asyncio
    async def test_bills_due_monthly_subscription(
        self, scheduler, make_account, make_subscription,
        read_account, read_subscription, list_transactions,
    ):
        """A due subscription emits one EXPENSE and advances one month."""
        account = await make_account(balance=Decimal("100.00"))
        subscription = await make_subscription(account, amount=Decimal("15.99"))

        report = await scheduler.run_billing_cycle()

        assert report.billed_count == 1
        assert report.failed_count == 0
        assert report.evaluated_at == JAN_15
        assert report.completed_at == JAN_15

        transactions = await list_transactions(account.id)
        assert len(transactions) == 1
        tx = transactions[0]
        assert tx.type == TransactionType.EXPENSE
        assert tx.amount == Decimal("15.99")
        assert tx.date == JAN_15
        assert tx.description == "Netflix"
        assert tx.currency == Currency.ARS
        assert tx.metadata == {
            "subscription_id": str(subscription.id),
            "subscription_name": "Netflix",
            "billing_cycle": "MONTHLY",
        }

        assert (await read_account(account.id)).balance == Decimal("84.01")
        assert (await read_subscription(subscription.id)).next_billing_date == datetime(2024, 2, 15)

        outcome = report.outcomes[0]
        assert outcome.transaction_id == tx.id
        assert outcome.billed_for == JAN_15
        assert outcome.next_billing_date == datetime(2024, 2, 15)

    @pytest.mark.asyncio
    async def test_description_and_currency(
        self, scheduler, make_account, make_subscription, list_transactions,
    ):
        """Description joins name and description; currency comes from the account."""
        account = await make_account(currency=Currency.USD)
        await make_subscription(account, name="Spotify", description="Family plan")

        await scheduler.run_billing_cycle()

        tx = (await list_transactions(account.id))[0]
        assert tx.description == "Spotify - Family plan"
        assert tx.currency == Currency.USD

    @pytest.mark.asyncio
    async def test_not_due_and_inactive_ignored(
        self, scheduler, make_account, make_subscription, list_transactions,
    ):
        """Future and inactive subscriptions are left alone."""
        account = await make_account()
        await make_subscription(account, next_billing_date=datetime(2024, 1, 16))
        await make_subscription(account, is_active=False)

        report = await scheduler.run_billing_cycle()

        assert report.outcomes == []
        assert await list_transactions(account.id) == []

    @pytest.mark.asyncio
    async def test_due_at_exact_instant(self, scheduler, make_account, make_subscription):
        """next_billing_date == now counts as due."""
        account = await make_account()
        await make_subscription(account, next_billing_date=JAN_15)

        report = await scheduler.run_billing_cycle(now=JAN_15)

        assert report.billed_count == 1

    @pytest.mark.asyncio
    async def test_overdue_advances_one_cycle_per_run(
        self, scheduler, make_account, make_subscription, read_subscription, list_transactions,
    ):
        """Two cycles behind: each run bills once, dated at the covered period."""
        account = await make_account()
        subscription = await make_subscription(account, next_billing_date=datetime(2023, 12, 15))
        now = datetime(2024, 1, 20)

        first = await scheduler.run_billing_cycle(now=now)
        assert first.billed_count == 1
        assert (await read_subscription(subscription.id)).next_billing_date == datetime(2024, 1, 15)

        second = await scheduler.run_billing_cycle(now=now)
        assert second.billed_count == 1
        assert (await read_subscription(subscription.id)).next_billing_date == datetime(2024, 2, 15)

        third = await scheduler.run_billing_cycle(now=now)
        assert third.outcomes == []

        dates = sorted(tx.date for tx in await list_transactions(account.id))
        assert dates == [datetime(2023, 12, 15), datetime(2024, 1, 15)]

    @pytest.mark.asyncio
    async def test_yearly_subscription(self, scheduler, make_account, make_subscription, read_subscription):
        """Yearly subscriptions advance by one year."""
        account = await make_account()
        subscription = await make_subscription(account, billing_cycle=BillingCycle.YEARLY)

        await scheduler.run_billing_cycle()

        assert (await read_subscription(subscription.id)).next_billing_date == datetime(2025, 1, 15)

    @pytest.mark.asyncio
    async def test_rerun_same_day_does_not_double_bill(
        self, scheduler, make_account, make_subscription, list_transactions,
    ):
        """A second run at the same instant finds nothing due."""
        account = await make_account()
        await make_subscription(account)

        await scheduler.run_billing_cycle()
        await scheduler.run_billing_cycle()

        assert len(await list_transactions(account.id)) == 1


class TestFailureIsolation:
    """One failing subscription never blocks the others."""

    @pytest.mark.asyncio
    async def test_missing_account_fails_alone(
        self, scheduler, storage, make_account, make_subscription, read_subscription, list_transactions,
    ):
        """A subscription pointing at a deleted account fails; others bill."""
        account = await make_account()
        good = await make_subscription(account, name="Good")
        orphan_account = await make_account(name="Gone")
        orphan = await make_subscription(orphan_account, name="Orphan")
        async with storage.unit_of_work() as session:
            await session.accounts.delete_account(orphan_account.id)

        report = await scheduler.run_billing_cycle()

        statuses = {o.subscription_id: o for o in report.outcomes}
        assert statuses[good.id].status == BillingOutcomeStatus.BILLED
        assert statuses[orphan.id].status == BillingOutcomeStatus.FAILED
        assert statuses[orphan.id].error_type == "EntityNotFoundError"
        assert (await read_subscription(orphan.id)).next_billing_date == JAN_15
        assert len(await list_transactions()) == 1

    @pytest.mark.asyncio
    async def test_deactivated_account_is_not_charged(
        self, scheduler, storage, engine, make_account, make_subscription,
        new_transaction, read_account, read_subscription, list_transactions,
    ):
        """A soft-deleted account keeps its balance; its subscription fails."""
        account = await make_account(balance=Decimal("100.00"))
        await engine.create_transaction(
            new_transaction(account, type=TransactionType.INCOME, amount=Decimal("100.00"))
        )
        subscription = await make_subscription(account, amount=Decimal("20.00"))
        assert await AccountFlow(storage).delete_account(account.user_id, account.id) is True

        report = await scheduler.run_billing_cycle()

        outcome = report.outcomes[0]
        assert outcome.status == BillingOutcomeStatus.FAILED
        assert outcome.error_type == "EntityNotFoundError"
        stored = await read_account(account.id)
        assert stored.is_active is False
        assert stored.balance == Decimal("200.00")
        assert (await read_subscription(subscription.id)).next_billing_date == JAN_15
        assert len(await list_transactions(account.id)) == 1

    @pytest.mark.asyncio
    async def test_balance_failure_rolls_back_whole_subscription(
        self, scheduler, make_account, make_subscription,
        read_account, read_subscription, list_transactions, monkeypatch,
    ):
        """No transaction and no date advance when the balance step fails."""
        healthy = await make_account(name="Healthy")
        broken = await make_account(name="Broken", balance=Decimal("20.00"))
        ok_sub = await make_subscription(healthy)
        bad_sub = await make_subscription(broken)

        original = InMemoryAccountStorage.adjust_balance

        async def flaky(self, account_id, delta):
            if account_id == broken.id:
                raise RuntimeError("constraint violated")
            return await original(self, account_id, delta)

        monkeypatch.setattr(InMemoryAccountStorage, "adjust_balance", flaky)

        report = await scheduler.run_billing_cycle()

        assert report.billed_count == 1
        assert report.failed_count == 1
        assert await list_transactions(broken.id) == []
        assert (await read_account(broken.id)).balance == Decimal("20.00")
        assert (await read_subscription(bad_sub.id)).next_billing_date == JAN_15
        assert (await read_subscription(ok_sub.id)).next_billing_date == datetime(2024, 2, 15)

    @pytest.mark.asyncio
    async def test_lookup_failure_reports_empty_run(
        self, scheduler, audit_storage, monkeypatch,
    ):
        """If the due query itself fails the run completes with no outcomes."""
        async def broken(self, now):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(InMemorySubscriptionStorage, "find_due", broken)

        report = await scheduler.run_billing_cycle()

        assert report.outcomes == []
        types = [e.event_type for e in audit_storage.events]
        assert AuditEventType.SYSTEM_ERROR in types
        assert AuditEventType.BILLING_RUN_COMPLETED in types


class TestConcurrentRuns:
    """Overlapping runs must never double-bill."""

    @pytest.mark.asyncio
    async def test_stale_due_list_is_skipped(
        self, scheduler, storage, make_account, make_subscription, list_transactions, monkeypatch,
    ):
        """A run holding a stale due list skips what another run billed."""
        account = await make_account()
        subscription = await make_subscription(account)

        async with storage.unit_of_work() as session:
            stale = await session.subscriptions.find_due(JAN_15)

        await scheduler.run_billing_cycle()

        async def stale_find_due(self, now):
            return [s.model_copy() for s in stale]

        monkeypatch.setattr(InMemorySubscriptionStorage, "find_due", stale_find_due)

        late = await scheduler.run_billing_cycle()

        assert late.skipped_count == 1
        assert late.outcomes[0].subscription_id == subscription.id
        assert late.outcomes[0].reason == "already billed by another run"
        assert len(await list_transactions(account.id)) == 1

    @pytest.mark.asyncio
    async def test_parallel_runs_bill_once(
        self, engine, audit_logger, make_account, make_subscription, list_transactions, read_account,
    ):
        """Two schedulers racing on the same subscriptions bill each once."""
        account = await make_account()
        for i in range(5):
            await make_subscription(account, name=f"Sub {i}", amount=Decimal("10.00"))

        first = RecurringBillingScheduler(engine, audit_logger)
        second = RecurringBillingScheduler(engine, audit_logger)

        reports = await asyncio.gather(
            first.run_billing_cycle(now=JAN_15),
            second.run_billing_cycle(now=JAN_15),
        )

        assert sum(r.billed_count for r in reports) == 5
        assert sum(r.failed_count for r in reports) == 0
        assert len(await list_transactions(account.id)) == 5
        assert (await read_account(account.id)).balance == Decimal("-50.00")


class TestBillingAudit:
    """Billing outcomes are audited."""

    @pytest.mark.asyncio
    async def test_events_share_run_correlation(
        self, scheduler, audit_storage, make_account, make_subscription,
    ):
        """Per-subscription events and the run summary carry the run id."""
        account = await make_account()
        subscription = await make_subscription(account)

        report = await scheduler.run_billing_cycle()

        billed = [e for e in audit_storage.events if e.event_type == AuditEventType.SUBSCRIPTION_BILLED]
        summary = [e for e in audit_storage.events if e.event_type == AuditEventType.BILLING_RUN_COMPLETED]
        assert len(billed) == 1
        assert billed[0].entity_id == subscription.id
        assert billed[0].correlation_id == report.run_id
        assert summary[0].details == {"billed": 1, "skipped": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_failure_is_audited(self, scheduler, audit_storage, make_subscription):
        """A failed subscription produces an error-level audit event."""
        ghost = Account(id=uuid4(), user_id="user-1", name="Ghost")
        await make_subscription(ghost)

        await scheduler.run_billing_cycle()

        failed = [
            e for e in audit_storage.events
            if e.event_type == AuditEventType.SUBSCRIPTION_BILLING_FAILED
        ]
        assert len(failed) == 1
        assert "not found" in failed[0].error_message


class _RecordingScheduler:
    def __init__(self):
        self.runs = 0

    async def run_billing_cycle(self, now=None):
        self.runs += 1


class _FakeClock:
    def __init__(self, start: datetime):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now = self.now + timedelta(seconds=seconds)


class TestBillingTimer:
    """Tests for the daily trigger."""

    def test_seconds_until_midnight(self):
        """22:00 is two hours before the midnight run."""
        timer = BillingTimer(_RecordingScheduler(), run_hour_utc=0)
        assert timer.seconds_until_next_run(datetime(2024, 1, 15, 22, 0)) == 7200

    def test_exactly_at_run_time_waits_a_day(self):
        """At the run instant the next run is tomorrow."""
        timer = BillingTimer(_RecordingScheduler(), run_hour_utc=0)
        assert timer.seconds_until_next_run(datetime(2024, 1, 15)) == 86400

    def test_later_hour_same_day(self):
        """A 06:00 run seen from 03:30 is 2.5 hours away."""
        timer = BillingTimer(_RecordingScheduler(), run_hour_utc=6)
        assert timer.seconds_until_next_run(datetime(2024, 1, 15, 3, 30)) == 9000

    @pytest.mark.asyncio
    async def test_runs_once_per_day(self):
        """The loop sleeps to each run time and fires once per day."""
        clock = _FakeClock(datetime(2024, 1, 15, 12, 0))
        scheduler = _RecordingScheduler()
        timer = BillingTimer(scheduler, run_hour_utc=0, clock=clock, sleep=clock.sleep)

        runs = await timer.run_forever(max_runs=3)

        assert runs == 3
        assert scheduler.runs == 3
        assert clock.sleeps == [43200, 86400, 86400]
        assert clock.now == datetime(2024, 1, 18)

    @pytest.mark.asyncio
    async def test_stop_during_sleep(self):
        """Stopping while asleep exits without running."""
        scheduler = _RecordingScheduler()
        timer = None

        async def sleep_then_stop(seconds):
            timer.stop()

        timer = BillingTimer(
            scheduler,
            clock=lambda: datetime(2024, 1, 15, 12, 0),
            sleep=sleep_then_stop,
        )

        assert await timer.run_forever() == 0
        assert scheduler.runs == 0

    @pytest.mark.asyncio
    async def test_default_pause_wakes_on_stop(self):
        """Without an injected sleep, stop() interrupts the wait."""
        scheduler = _RecordingScheduler()
        timer = BillingTimer(scheduler, clock=lambda: datetime(2024, 1, 15, 12, 0))

        task = asyncio.create_task(timer.run_forever())
        await asyncio.sleep(0)
        timer.stop()

        assert await asyncio.wait_for(task, timeout=1) == 0
        assert scheduler.runs == 0
