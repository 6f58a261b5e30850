"""
Tests for the SQL storage backend against in-process SQLite.
"""

import sqlite3
import time
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from src.config import DatabaseSettings, LedgerSettings
from src.ledger import LedgerEngine, ReconciliationError, TransientLedgerError
from src.models.ledger import (
    Account,
    BillingCycle,
    Currency,
    Subscription,
    Transaction,
    TransactionType,
)
from src.scheduler import RecurringBillingScheduler
from src.services.storage import DuplicateError, NotFoundError, SqlLedgerStorage
from src.services.storage.sql import SqlAccountStorage, timeout_connect_args


@pytest.fixture
def sql_storage():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    storage = SqlLedgerStorage(engine=engine, settings=DatabaseSettings())
    storage.init_db()
    return storage


@pytest.fixture
def sql_engine(sql_storage, ledger_settings):
    return LedgerEngine(sql_storage, ledger_settings)


async def _create_account(storage, **overrides) -> Account:
    fields = {"user_id": "user-1", "name": "Checking", "currency": Currency.ARS, **overrides}
    async with storage.unit_of_work() as session:
        return await session.accounts.create_account(Account(**fields))


async def _balance(storage, account_id) -> Decimal:
    async with storage.unit_of_work() as session:
        return (await session.accounts.get_account(account_id)).balance


def _expense(account: Account, amount: str = "50.00", **overrides) -> Transaction:
    return Transaction(
        user_id=account.user_id,
        amount=Decimal(amount),
        type=TransactionType.EXPENSE,
        currency=account.currency,
        account_id=account.id,
        date=datetime(2024, 1, 10),
        **overrides,
    )


class TestSqlStores:
    """Tests for the individual SQL stores."""

    @pytest.mark.asyncio
    async def test_account_round_trip(self, sql_storage):
        """Accounts come back with their enums and Decimal balance."""
        created = await _create_account(sql_storage, currency=Currency.USD, balance=Decimal("12.34"))

        async with sql_storage.unit_of_work() as session:
            loaded = await session.accounts.get_account(created.id)

        assert loaded.currency == Currency.USD
        assert loaded.balance == Decimal("12.34")

    @pytest.mark.asyncio
    async def test_adjust_balance_increments(self, sql_storage):
        """adjust_balance adds to the stored value."""
        account = await _create_account(sql_storage, balance=Decimal("100.00"))

        async with sql_storage.unit_of_work() as session:
            await session.accounts.adjust_balance(account.id, Decimal("-30.25"))
            updated = await session.accounts.adjust_balance(account.id, Decimal("5.00"))

        assert updated.balance == Decimal("74.75")
        assert await _balance(sql_storage, account.id) == Decimal("74.75")

    @pytest.mark.asyncio
    async def test_adjust_missing_account(self, sql_storage):
        """Adjusting an unknown account raises NotFoundError."""
        with pytest.raises(NotFoundError):
            async with sql_storage.unit_of_work() as session:
                await session.accounts.adjust_balance(uuid4(), Decimal("1.00"))

    @pytest.mark.asyncio
    async def test_duplicate_account(self, sql_storage):
        """Inserting the same id twice raises DuplicateError."""
        account = await _create_account(sql_storage)
        with pytest.raises(DuplicateError):
            async with sql_storage.unit_of_work() as session:
                await session.accounts.create_account(account)

    @pytest.mark.asyncio
    async def test_metadata_round_trip(self, sql_storage):
        """Transaction metadata survives storage as JSON."""
        account = await _create_account(sql_storage)
        tx = _expense(account, metadata={"subscription_id": "abc", "n": 2})

        async with sql_storage.unit_of_work() as session:
            await session.transactions.create_transaction(tx)
        async with sql_storage.unit_of_work() as session:
            loaded = await session.transactions.get_transaction(tx.id)
            count = await session.transactions.count_transactions(account.id)

        assert loaded.metadata == {"subscription_id": "abc", "n": 2}
        assert loaded.type == TransactionType.EXPENSE
        assert count == 1

    @pytest.mark.asyncio
    async def test_find_due_filters_and_orders(self, sql_storage):
        """Only active, due subscriptions come back, oldest first."""
        account = await _create_account(sql_storage)

        def subscription(name, when, active=True):
            return Subscription(
                user_id="user-1",
                name=name,
                amount=Decimal("9.99"),
                billing_cycle=BillingCycle.MONTHLY,
                next_billing_date=when,
                account_id=account.id,
                is_active=active,
            )

        async with sql_storage.unit_of_work() as session:
            for sub in (
                subscription("later", datetime(2024, 1, 14)),
                subscription("earlier", datetime(2024, 1, 2)),
                subscription("future", datetime(2024, 2, 1)),
                subscription("paused", datetime(2024, 1, 1), active=False),
            ):
                await session.subscriptions.create_subscription(sub)

        async with sql_storage.unit_of_work() as session:
            due = await session.subscriptions.find_due(datetime(2024, 1, 15))

        assert [s.name for s in due] == ["earlier", "later"]

    @pytest.mark.asyncio
    async def test_unit_rolls_back_on_error(self, sql_storage):
        """Writes made before an exception are discarded."""
        account = await _create_account(sql_storage)

        with pytest.raises(RuntimeError):
            async with sql_storage.unit_of_work() as session:
                await session.accounts.adjust_balance(account.id, Decimal("-10.00"))
                raise RuntimeError("abort")

        assert await _balance(sql_storage, account.id) == Decimal("0.00")


class TestSqlLedger:
    """The engine and scheduler running on SQL."""

    @pytest.mark.asyncio
    async def test_create_update_delete(self, sql_storage, sql_engine):
        """Balance follows 0 → -50 → -30 → 0 on SQL."""
        account = await _create_account(sql_storage)

        tx = await sql_engine.create_transaction(_expense(account))
        assert await _balance(sql_storage, account.id) == Decimal("-50.00")

        await sql_engine.update_transaction(tx.id, {"amount": Decimal("30.00")})
        assert await _balance(sql_storage, account.id) == Decimal("-30.00")

        await sql_engine.delete_transaction(tx.id)
        assert await _balance(sql_storage, account.id) == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_failed_adjustment_rolls_back_insert(self, sql_storage, sql_engine, monkeypatch):
        """The transaction row disappears with the failed unit."""
        account = await _create_account(sql_storage)

        async def broken(self, account_id, delta):
            raise RuntimeError("constraint violated")

        monkeypatch.setattr(SqlAccountStorage, "adjust_balance", broken)

        tx = _expense(account)
        with pytest.raises(ReconciliationError):
            await sql_engine.create_transaction(tx)

        async with sql_storage.unit_of_work() as session:
            assert await session.transactions.get_transaction(tx.id) is None

    @pytest.mark.asyncio
    async def test_billing_run(self, sql_storage, sql_engine):
        """A due subscription is billed and advanced on SQL."""
        account = await _create_account(sql_storage, balance=Decimal("100.00"))
        subscription = Subscription(
            user_id="user-1",
            name="Gym",
            amount=Decimal("25.00"),
            billing_cycle=BillingCycle.MONTHLY,
            next_billing_date=datetime(2024, 1, 31),
            account_id=account.id,
        )
        async with sql_storage.unit_of_work() as session:
            await session.subscriptions.create_subscription(subscription)

        scheduler = RecurringBillingScheduler(sql_engine)
        report = await scheduler.run_billing_cycle(now=datetime(2024, 2, 1))

        assert report.billed_count == 1
        assert await _balance(sql_storage, account.id) == Decimal("75.00")
        async with sql_storage.unit_of_work() as session:
            stored = await session.subscriptions.get_subscription(subscription.id)
            transactions = await session.transactions.list_transactions(account_id=account.id)
        assert stored.next_billing_date == datetime(2024, 2, 29)
        assert transactions[0].date == datetime(2024, 1, 31)
        assert transactions[0].metadata["subscription_name"] == "Gym"


class TestSqlTimeouts:
    """Lock waits are bounded by the ledger's storage timeout."""

    def test_connect_args_per_backend(self):
        """Each driver gets its own form of the limit."""
        assert timeout_connect_args("sqlite:///ledger.db", 2.5) == {"timeout": 2.5}
        assert timeout_connect_args("postgresql+psycopg2://ledger@db/ledger", 0.2) == {
            "options": "-c lock_timeout=200 -c statement_timeout=200",
        }
        assert timeout_connect_args("mysql+pymysql://ledger@db/ledger", 1.0) == {}

    @pytest.mark.asyncio
    async def test_locked_database_gives_up_at_storage_timeout(self, tmp_path):
        """A unit blocked by another writer fails as transient within the limit."""
        settings = LedgerSettings(
            storage_timeout_seconds=0.2,
            max_attempts=1,
            retry_wait_min_seconds=0,
            retry_wait_max_seconds=0,
        )
        path = tmp_path / "ledger.db"
        storage = SqlLedgerStorage(
            settings=DatabaseSettings(url=f"sqlite:///{path}"),
            ledger_settings=settings,
        )
        storage.init_db()
        account = await _create_account(storage)
        engine = LedgerEngine(storage, settings)

        blocker = sqlite3.connect(path, isolation_level=None)
        blocker.execute("BEGIN EXCLUSIVE")
        try:
            started = time.monotonic()
            with pytest.raises(TransientLedgerError):
                await engine.create_transaction(_expense(account))
            elapsed = time.monotonic() - started
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()
            storage.engine.dispose()

        assert elapsed < 2
