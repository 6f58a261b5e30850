"""
Shared fixtures.

Async setup is exposed as sync fixtures returning async factories, so
tests stay in pytest-asyncio strict mode without async fixtures.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from src.audit import AuditLogger
from src.config import LedgerSettings
from src.ledger import LedgerEngine
from src.models.ledger import (
    Account,
    BillingCycle,
    Category,
    CategoryType,
    Currency,
    Subscription,
    Transaction,
    TransactionType,
)
from src.services.storage import InMemoryAuditStorage, InMemoryLedgerStorage


USER_ID = "user-1"
OTHER_USER_ID = "user-2"


@pytest.fixture
def ledger_settings():
    return LedgerSettings(
        storage_timeout_seconds=5,
        max_attempts=3,
        retry_wait_min_seconds=0,
        retry_wait_max_seconds=0,
        allow_cross_currency_moves=False,
    )


@pytest.fixture
def storage():
    return InMemoryLedgerStorage()


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def engine(storage, ledger_settings):
    return LedgerEngine(storage, ledger_settings)


@pytest.fixture
def make_account(storage):
    async def factory(**overrides) -> Account:
        fields = {
            "user_id": USER_ID,
            "name": "Checking",
            "currency": Currency.ARS,
            "balance": Decimal("0.00"),
            **overrides,
        }
        async with storage.unit_of_work() as session:
            return await session.accounts.create_account(Account(**fields))
    return factory


@pytest.fixture
def make_category(storage):
    async def factory(**overrides) -> Category:
        fields = {
            "user_id": USER_ID,
            "name": "Streaming",
            "type": CategoryType.EXPENSE,
            **overrides,
        }
        async with storage.unit_of_work() as session:
            return await session.categories.create_category(Category(**fields))
    return factory


@pytest.fixture
def make_subscription(storage):
    async def factory(account: Account, **overrides) -> Subscription:
        fields = {
            "user_id": account.user_id,
            "name": "Netflix",
            "amount": Decimal("15.99"),
            "billing_cycle": BillingCycle.MONTHLY,
            "next_billing_date": datetime(2024, 1, 15),
            "account_id": account.id,
            **overrides,
        }
        async with storage.unit_of_work() as session:
            return await session.subscriptions.create_subscription(Subscription(**fields))
    return factory


@pytest.fixture
def new_transaction():
    def factory(account: Account, **overrides) -> Transaction:
        fields = {
            "user_id": account.user_id,
            "amount": Decimal("50.00"),
            "type": TransactionType.EXPENSE,
            "currency": account.currency,
            "account_id": account.id,
            "date": datetime(2024, 1, 10),
            **overrides,
        }
        return Transaction(**fields)
    return factory


@pytest.fixture
def read_account(storage):
    async def reader(account_id) -> Account:
        async with storage.unit_of_work() as session:
            return await session.accounts.get_account(account_id)
    return reader


@pytest.fixture
def read_subscription(storage):
    async def reader(subscription_id) -> Subscription:
        async with storage.unit_of_work() as session:
            return await session.subscriptions.get_subscription(subscription_id)
    return reader


@pytest.fixture
def list_transactions(storage):
    async def reader(account_id=None) -> list[Transaction]:
        async with storage.unit_of_work() as session:
            return await session.transactions.list_transactions(account_id=account_id)
    return reader
