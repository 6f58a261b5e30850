"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Run the ledger on SQL in production and in memory in tests
2. Keep business logic decoupled from storage implementation
3. Give the ledger engine a single notion of an atomic unit of work

Every ledger write happens inside `LedgerStorageInterface.unit_of_work()`.
A unit commits when its block exits normally and rolls back every write
it made when the block raises. Balance changes go through
`adjust_balance`, which must be an atomic increment at the storage layer.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from src.models.audit import AuditEvent
from src.models.ledger import (
    Account,
    Category,
    Currency,
    Subscription,
    Transaction,
)


class AccountStorageInterface(ABC):
    """Account records and their cached balances."""

    @abstractmethod
    async def create_account(self, account: Account) -> Account:
        """
        Persist a new account.

        Raises:
            DuplicateError: If an account with this ID already exists
        """
        pass

    @abstractmethod
    async def get_account(self, account_id: UUID) -> Optional[Account]:
        """Retrieve an account by ID, active or not. None if missing."""
        pass

    @abstractmethod
    async def adjust_balance(self, account_id: UUID, delta: Decimal) -> Account:
        """
        Atomically add `delta` to the account's balance.

        This is the ONLY way balances change. Implementations must not
        read-modify-write in application code.

        Returns:
            The account after the increment

        Raises:
            NotFoundError: If the account doesn't exist
        """
        pass

    @abstractmethod
    async def list_accounts(
        self,
        user_id: str,
        currency: Optional[Currency] = None,
        active_only: bool = True,
    ) -> list[Account]:
        """List a user's accounts, optionally filtered by currency."""
        pass

    @abstractmethod
    async def set_account_active(self, account_id: UUID, is_active: bool) -> Account:
        """
        Flip the soft-delete flag.

        Raises:
            NotFoundError: If the account doesn't exist
        """
        pass

    @abstractmethod
    async def delete_account(self, account_id: UUID) -> bool:
        """Hard-delete an account. Returns False if it didn't exist."""
        pass


class TransactionStorageInterface(ABC):
    """Transaction records."""

    @abstractmethod
    async def create_transaction(self, transaction: Transaction) -> Transaction:
        """
        Persist a new transaction.

        Raises:
            DuplicateError: If a transaction with this ID already exists
        """
        pass

    @abstractmethod
    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        """Retrieve a transaction by ID. None if missing."""
        pass

    @abstractmethod
    async def update_transaction(
        self,
        transaction_id: UUID,
        fields: dict[str, Any],
    ) -> Transaction:
        """
        Apply `fields` to an existing transaction.

        Returns:
            The updated transaction

        Raises:
            NotFoundError: If the transaction doesn't exist
        """
        pass

    @abstractmethod
    async def delete_transaction(self, transaction_id: UUID) -> bool:
        """Delete a transaction. Returns False if it didn't exist."""
        pass

    @abstractmethod
    async def list_transactions(
        self,
        account_id: Optional[UUID] = None,
        user_id: Optional[str] = None,
    ) -> list[Transaction]:
        """List transactions, newest first, optionally filtered."""
        pass

    @abstractmethod
    async def count_transactions(self, account_id: UUID) -> int:
        """Number of transactions posted against an account."""
        pass


class SubscriptionStorageInterface(ABC):
    """Recurring billing definitions."""

    @abstractmethod
    async def create_subscription(self, subscription: Subscription) -> Subscription:
        """Persist a new subscription."""
        pass

    @abstractmethod
    async def get_subscription(
        self,
        subscription_id: UUID,
        for_update: bool = False,
    ) -> Optional[Subscription]:
        """
        Retrieve a subscription by ID.

        Args:
            subscription_id: The subscription's unique identifier
            for_update: Lock the subscription until the current unit of
                        work ends, so concurrent billing runs serialize on it
        """
        pass

    @abstractmethod
    async def find_due(self, now: datetime) -> list[Subscription]:
        """
        Active subscriptions whose next billing date is at or before `now`,
        oldest billing date first.
        """
        pass

    @abstractmethod
    async def update_subscription(
        self,
        subscription_id: UUID,
        fields: dict[str, Any],
    ) -> Subscription:
        """
        Apply `fields` to an existing subscription.

        Raises:
            NotFoundError: If the subscription doesn't exist
        """
        pass


class CategoryStorageInterface(ABC):
    """Categories referenced by transactions and subscriptions."""

    @abstractmethod
    async def create_category(self, category: Category) -> Category:
        """Persist a new category."""
        pass

    @abstractmethod
    async def get_category(self, category_id: UUID) -> Optional[Category]:
        """Retrieve a category by ID. None if missing."""
        pass


class LedgerSession(ABC):
    """
    The stores visible inside one unit of work.

    Every write made through these stores belongs to the enclosing unit.
    """

    accounts: AccountStorageInterface
    transactions: TransactionStorageInterface
    subscriptions: SubscriptionStorageInterface
    categories: CategoryStorageInterface


class LedgerStorageInterface(ABC):
    """
    Entry point to a ledger storage backend.

    Usage:
        async with storage.unit_of_work() as session:
            tx = await session.transactions.create_transaction(tx)
            await session.accounts.adjust_balance(tx.account_id, delta)
    """

    @abstractmethod
    def unit_of_work(self) -> AbstractAsyncContextManager[LedgerSession]:
        """
        Open an atomic unit of work.

        Commits on normal exit. On any exception, every write made in the
        unit is rolled back and the exception propagates.
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity, in chronological order.
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events (newest first).
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not reach the storage backend, or it timed out. Safe to retry."""
    pass
