"""
In-Memory Storage Implementation

Used by the test suite and for local experiments. It honors the same
contract as the SQL backend:

- `adjust_balance` is a single synchronous dict update, so no other
  coroutine can interleave between reading and writing a balance.
- Every write in a unit records an undo step; a failing unit replays them
  in reverse. Balance undo is the inverse increment, never a snapshot
  restore, so concurrent units on the same account stay correct.
- `get_subscription(for_update=True)` holds a per-subscription
  `asyncio.Lock` until the unit ends.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Optional
from uuid import UUID

from src.models.audit import AuditEvent
from src.models.ledger import (
    Account,
    Category,
    Currency,
    Subscription,
    Transaction,
)
from src.services.storage.interface import (
    AccountStorageInterface,
    AuditStorageInterface,
    CategoryStorageInterface,
    DuplicateError,
    LedgerSession,
    LedgerStorageInterface,
    NotFoundError,
    SubscriptionStorageInterface,
    TransactionStorageInterface,
)


class _InMemoryState:
    """Backing dictionaries shared by every unit of work."""

    def __init__(self):
        self.accounts: dict[UUID, Account] = {}
        self.transactions: dict[UUID, Transaction] = {}
        self.subscriptions: dict[UUID, Subscription] = {}
        self.categories: dict[UUID, Category] = {}
        self.subscription_locks: defaultdict[UUID, asyncio.Lock] = defaultdict(asyncio.Lock)


class InMemoryLedgerSession(LedgerSession):
    """One unit of work over the in-memory state."""

    def __init__(self, state: _InMemoryState):
        self._undo: list[Callable[[], None]] = []
        self._held_locks: list[asyncio.Lock] = []
        self.accounts = InMemoryAccountStorage(state, self)
        self.transactions = InMemoryTransactionStorage(state, self)
        self.subscriptions = InMemorySubscriptionStorage(state, self)
        self.categories = InMemoryCategoryStorage(state, self)

    def record_undo(self, step: Callable[[], None]) -> None:
        self._undo.append(step)

    async def hold(self, lock: asyncio.Lock) -> None:
        if lock in self._held_locks:
            return
        await lock.acquire()
        self._held_locks.append(lock)

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()

    def release(self) -> None:
        while self._held_locks:
            self._held_locks.pop().release()


class _InMemoryStore:
    def __init__(self, state: _InMemoryState, session: InMemoryLedgerSession):
        self._state = state
        self._session = session


def _restore(table: dict, key: UUID, previous) -> Callable[[], None]:
    def step() -> None:
        if previous is None:
            table.pop(key, None)
        else:
            table[key] = previous
    return step


class InMemoryAccountStorage(_InMemoryStore, AccountStorageInterface):

    async def create_account(self, account: Account) -> Account:
        if account.id in self._state.accounts:
            raise DuplicateError(f"Account already exists: {account.id}")
        self._state.accounts[account.id] = account.model_copy(deep=True)
        self._session.record_undo(_restore(self._state.accounts, account.id, None))
        return account.model_copy(deep=True)

    async def get_account(self, account_id: UUID) -> Optional[Account]:
        account = self._state.accounts.get(account_id)
        return account.model_copy(deep=True) if account else None

    async def adjust_balance(self, account_id: UUID, delta: Decimal) -> Account:
        self._increment(account_id, delta)
        self._session.record_undo(lambda: self._increment(account_id, -delta))
        return self._state.accounts[account_id].model_copy(deep=True)

    def _increment(self, account_id: UUID, delta: Decimal) -> None:
        account = self._state.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")
        self._state.accounts[account_id] = account.model_copy(
            update={
                "balance": account.balance + delta,
                "updated_at": datetime.utcnow(),
            }
        )

    async def list_accounts(
        self,
        user_id: str,
        currency: Optional[Currency] = None,
        active_only: bool = True,
    ) -> list[Account]:
        accounts = [
            account.model_copy(deep=True)
            for account in self._state.accounts.values()
            if account.user_id == user_id
            and (currency is None or account.currency == currency)
            and (account.is_active or not active_only)
        ]
        accounts.sort(key=lambda a: a.name)
        return accounts

    async def set_account_active(self, account_id: UUID, is_active: bool) -> Account:
        account = self._state.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")
        self._state.accounts[account_id] = account.model_copy(
            update={"is_active": is_active, "updated_at": datetime.utcnow()}
        )

        def undo() -> None:
            current = self._state.accounts.get(account_id)
            if current is not None:
                self._state.accounts[account_id] = current.model_copy(
                    update={"is_active": account.is_active}
                )

        self._session.record_undo(undo)
        return self._state.accounts[account_id].model_copy(deep=True)

    async def delete_account(self, account_id: UUID) -> bool:
        previous = self._state.accounts.pop(account_id, None)
        if previous is None:
            return False
        self._session.record_undo(_restore(self._state.accounts, account_id, previous))
        return True


class InMemoryTransactionStorage(_InMemoryStore, TransactionStorageInterface):

    async def create_transaction(self, transaction: Transaction) -> Transaction:
        if transaction.id in self._state.transactions:
            raise DuplicateError(f"Transaction already exists: {transaction.id}")
        self._state.transactions[transaction.id] = transaction.model_copy(deep=True)
        self._session.record_undo(
            _restore(self._state.transactions, transaction.id, None)
        )
        return transaction.model_copy(deep=True)

    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        transaction = self._state.transactions.get(transaction_id)
        return transaction.model_copy(deep=True) if transaction else None

    async def update_transaction(
        self,
        transaction_id: UUID,
        fields: dict[str, Any],
    ) -> Transaction:
        previous = self._state.transactions.get(transaction_id)
        if previous is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        updated = Transaction.model_validate(
            {**previous.model_dump(), **fields, "updated_at": datetime.utcnow()}
        )
        self._state.transactions[transaction_id] = updated
        self._session.record_undo(
            _restore(self._state.transactions, transaction_id, previous)
        )
        return updated.model_copy(deep=True)

    async def delete_transaction(self, transaction_id: UUID) -> bool:
        previous = self._state.transactions.pop(transaction_id, None)
        if previous is None:
            return False
        self._session.record_undo(
            _restore(self._state.transactions, transaction_id, previous)
        )
        return True

    async def list_transactions(
        self,
        account_id: Optional[UUID] = None,
        user_id: Optional[str] = None,
    ) -> list[Transaction]:
        transactions = [
            tx.model_copy(deep=True)
            for tx in self._state.transactions.values()
            if (account_id is None or tx.account_id == account_id)
            and (user_id is None or tx.user_id == user_id)
        ]
        transactions.sort(key=lambda t: t.date, reverse=True)
        return transactions

    async def count_transactions(self, account_id: UUID) -> int:
        return sum(
            1 for tx in self._state.transactions.values()
            if tx.account_id == account_id
        )


class InMemorySubscriptionStorage(_InMemoryStore, SubscriptionStorageInterface):

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        if subscription.id in self._state.subscriptions:
            raise DuplicateError(f"Subscription already exists: {subscription.id}")
        self._state.subscriptions[subscription.id] = subscription.model_copy(deep=True)
        self._session.record_undo(
            _restore(self._state.subscriptions, subscription.id, None)
        )
        return subscription.model_copy(deep=True)

    async def get_subscription(
        self,
        subscription_id: UUID,
        for_update: bool = False,
    ) -> Optional[Subscription]:
        if for_update:
            await self._session.hold(self._state.subscription_locks[subscription_id])
        subscription = self._state.subscriptions.get(subscription_id)
        return subscription.model_copy(deep=True) if subscription else None

    async def find_due(self, now: datetime) -> list[Subscription]:
        due = [
            sub.model_copy(deep=True)
            for sub in self._state.subscriptions.values()
            if sub.is_due(now)
        ]
        due.sort(key=lambda s: s.next_billing_date)
        return due

    async def update_subscription(
        self,
        subscription_id: UUID,
        fields: dict[str, Any],
    ) -> Subscription:
        previous = self._state.subscriptions.get(subscription_id)
        if previous is None:
            raise NotFoundError(f"Subscription not found: {subscription_id}")
        updated = Subscription.model_validate(
            {**previous.model_dump(), **fields, "updated_at": datetime.utcnow()}
        )
        self._state.subscriptions[subscription_id] = updated
        self._session.record_undo(
            _restore(self._state.subscriptions, subscription_id, previous)
        )
        return updated.model_copy(deep=True)


class InMemoryCategoryStorage(_InMemoryStore, CategoryStorageInterface):

    async def create_category(self, category: Category) -> Category:
        if category.id in self._state.categories:
            raise DuplicateError(f"Category already exists: {category.id}")
        self._state.categories[category.id] = category.model_copy(deep=True)
        self._session.record_undo(_restore(self._state.categories, category.id, None))
        return category.model_copy(deep=True)

    async def get_category(self, category_id: UUID) -> Optional[Category]:
        category = self._state.categories.get(category_id)
        return category.model_copy(deep=True) if category else None


class InMemoryLedgerStorage(LedgerStorageInterface):
    """Process-local ledger storage."""

    def __init__(self):
        self._state = _InMemoryState()

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[InMemoryLedgerSession]:
        session = InMemoryLedgerSession(self._state)
        try:
            yield session
        except BaseException:
            session.rollback()
            raise
        finally:
            session.release()


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit log kept in a list."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        events = [
            e for e in self.events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self.events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
