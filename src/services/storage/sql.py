"""
SQL Storage Implementation

DESIGN DECISION: The ledger runs on a transactional SQL database through
SQLAlchemy. One unit of work is one database transaction:
- Commit on normal exit, rollback on any exception
- `adjust_balance` is a single `UPDATE ... SET balance = balance + :delta`,
  so concurrent units never lose an increment
- `get_subscription(for_update=True)` issues `SELECT ... FOR UPDATE` on
  backends that support row locks

SQLAlchemy errors never leak past this module. They are translated to the
storage exceptions in `interface.py`; `OperationalError` (lost connection,
lock timeout) becomes the retryable `ConnectionError`.
"""

import functools
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Iterator, Optional
from uuid import UUID

import structlog
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from src.config import DatabaseSettings, LedgerSettings, get_settings
from src.models.ledger import (
    Account,
    Category,
    Currency,
    Subscription,
    Transaction,
)
from src.services.storage.interface import (
    AccountStorageInterface,
    CategoryStorageInterface,
    ConnectionError,
    DuplicateError,
    LedgerSession,
    LedgerStorageInterface,
    NotFoundError,
    StorageError,
    SubscriptionStorageInterface,
    TransactionStorageInterface,
)
from src.services.storage.sql_models import (
    AccountRow,
    Base,
    CategoryRow,
    SubscriptionRow,
    TransactionRow,
)


logger = structlog.get_logger(__name__)


@contextmanager
def _translated(operation: str) -> Iterator[None]:
    try:
        yield
    except IntegrityError as e:
        raise DuplicateError(f"{operation}: {e.orig}") from e
    except OperationalError as e:
        raise ConnectionError(f"{operation}: {e.orig}") from e
    except SQLAlchemyError as e:
        raise StorageError(f"{operation}: {e}") from e


def _storage_call(method):
    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        with _translated(method.__name__):
            return await method(self, *args, **kwargs)
    return wrapper


# =============================================================================
# ROW <-> MODEL MAPPING
# =============================================================================

def _account_from_row(row: AccountRow) -> Account:
    return Account(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        account_type=row.account_type,
        currency=row.currency,
        balance=Decimal(row.balance),
        is_active=row.is_active,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _category_from_row(row: CategoryRow) -> Category:
    return Category(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        type=row.type,
        is_default=row.is_default,
    )


def _transaction_from_row(row: TransactionRow) -> Transaction:
    return Transaction(
        id=row.id,
        user_id=row.user_id,
        amount=row.amount,
        type=row.type,
        currency=row.currency,
        account_id=row.account_id,
        category_id=row.category_id,
        date=row.date,
        description=row.description,
        metadata=row.extra or {},
        processed=row.processed,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _write_transaction(row: TransactionRow, transaction: Transaction) -> None:
    row.user_id = transaction.user_id
    row.amount = transaction.amount
    row.type = transaction.type.value
    row.currency = transaction.currency.value
    row.account_id = transaction.account_id
    row.category_id = transaction.category_id
    row.date = transaction.date
    row.description = transaction.description
    row.extra = transaction.metadata
    row.processed = transaction.processed
    row.created_at = transaction.created_at
    row.updated_at = transaction.updated_at


def _subscription_from_row(row: SubscriptionRow) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        description=row.description,
        amount=row.amount,
        billing_cycle=row.billing_cycle,
        next_billing_date=row.next_billing_date,
        account_id=row.account_id,
        category_id=row.category_id,
        is_active=row.is_active,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _write_subscription(row: SubscriptionRow, subscription: Subscription) -> None:
    row.user_id = subscription.user_id
    row.name = subscription.name
    row.description = subscription.description
    row.amount = subscription.amount
    row.billing_cycle = subscription.billing_cycle.value
    row.next_billing_date = subscription.next_billing_date
    row.account_id = subscription.account_id
    row.category_id = subscription.category_id
    row.is_active = subscription.is_active
    row.created_at = subscription.created_at
    row.updated_at = subscription.updated_at


# =============================================================================
# STORES
# =============================================================================

class _SqlStore:
    def __init__(self, session: Session):
        self._session = session


class SqlAccountStorage(_SqlStore, AccountStorageInterface):

    @_storage_call
    async def create_account(self, account: Account) -> Account:
        if self._session.get(AccountRow, account.id) is not None:
            raise DuplicateError(f"Account already exists: {account.id}")
        row = AccountRow(
            id=account.id,
            user_id=account.user_id,
            name=account.name,
            account_type=account.account_type.value,
            currency=account.currency.value,
            balance=account.balance,
            is_active=account.is_active,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )
        self._session.add(row)
        self._session.flush()
        return _account_from_row(row)

    @_storage_call
    async def get_account(self, account_id: UUID) -> Optional[Account]:
        row = self._session.get(AccountRow, account_id)
        return _account_from_row(row) if row else None

    @_storage_call
    async def adjust_balance(self, account_id: UUID, delta: Decimal) -> Account:
        result = self._session.execute(
            update(AccountRow)
            .where(AccountRow.id == account_id)
            .values(
                balance=AccountRow.balance + delta,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Account not found: {account_id}")
        row = self._session.get(AccountRow, account_id, populate_existing=True)
        return _account_from_row(row)

    @_storage_call
    async def list_accounts(
        self,
        user_id: str,
        currency: Optional[Currency] = None,
        active_only: bool = True,
    ) -> list[Account]:
        query = select(AccountRow).where(AccountRow.user_id == user_id)
        if currency is not None:
            query = query.where(AccountRow.currency == currency.value)
        if active_only:
            query = query.where(AccountRow.is_active.is_(True))
        rows = self._session.execute(query.order_by(AccountRow.name)).scalars()
        return [_account_from_row(row) for row in rows]

    @_storage_call
    async def set_account_active(self, account_id: UUID, is_active: bool) -> Account:
        row = self._session.get(AccountRow, account_id)
        if row is None:
            raise NotFoundError(f"Account not found: {account_id}")
        row.is_active = is_active
        row.updated_at = datetime.utcnow()
        self._session.flush()
        return _account_from_row(row)

    @_storage_call
    async def delete_account(self, account_id: UUID) -> bool:
        row = self._session.get(AccountRow, account_id)
        if row is None:
            return False
        self._session.delete(row)
        self._session.flush()
        return True


class SqlTransactionStorage(_SqlStore, TransactionStorageInterface):

    @_storage_call
    async def create_transaction(self, transaction: Transaction) -> Transaction:
        if self._session.get(TransactionRow, transaction.id) is not None:
            raise DuplicateError(f"Transaction already exists: {transaction.id}")
        row = TransactionRow(id=transaction.id)
        _write_transaction(row, transaction)
        self._session.add(row)
        self._session.flush()
        return _transaction_from_row(row)

    @_storage_call
    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        row = self._session.get(TransactionRow, transaction_id)
        return _transaction_from_row(row) if row else None

    @_storage_call
    async def update_transaction(
        self,
        transaction_id: UUID,
        fields: dict[str, Any],
    ) -> Transaction:
        row = self._session.get(TransactionRow, transaction_id)
        if row is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        current = _transaction_from_row(row)
        updated = Transaction.model_validate(
            {**current.model_dump(), **fields, "updated_at": datetime.utcnow()}
        )
        _write_transaction(row, updated)
        self._session.flush()
        return _transaction_from_row(row)

    @_storage_call
    async def delete_transaction(self, transaction_id: UUID) -> bool:
        row = self._session.get(TransactionRow, transaction_id)
        if row is None:
            return False
        self._session.delete(row)
        self._session.flush()
        return True

    @_storage_call
    async def list_transactions(
        self,
        account_id: Optional[UUID] = None,
        user_id: Optional[str] = None,
    ) -> list[Transaction]:
        query = select(TransactionRow)
        if account_id is not None:
            query = query.where(TransactionRow.account_id == account_id)
        if user_id is not None:
            query = query.where(TransactionRow.user_id == user_id)
        rows = self._session.execute(query.order_by(TransactionRow.date.desc())).scalars()
        return [_transaction_from_row(row) for row in rows]

    @_storage_call
    async def count_transactions(self, account_id: UUID) -> int:
        return self._session.execute(
            select(func.count())
            .select_from(TransactionRow)
            .where(TransactionRow.account_id == account_id)
        ).scalar_one()


class SqlSubscriptionStorage(_SqlStore, SubscriptionStorageInterface):

    @_storage_call
    async def create_subscription(self, subscription: Subscription) -> Subscription:
        if self._session.get(SubscriptionRow, subscription.id) is not None:
            raise DuplicateError(f"Subscription already exists: {subscription.id}")
        row = SubscriptionRow(id=subscription.id)
        _write_subscription(row, subscription)
        self._session.add(row)
        self._session.flush()
        return _subscription_from_row(row)

    @_storage_call
    async def get_subscription(
        self,
        subscription_id: UUID,
        for_update: bool = False,
    ) -> Optional[Subscription]:
        query = select(SubscriptionRow).where(SubscriptionRow.id == subscription_id)
        if for_update:
            query = query.with_for_update()
        row = self._session.execute(
            query.execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return _subscription_from_row(row) if row else None

    @_storage_call
    async def find_due(self, now: datetime) -> list[Subscription]:
        rows = self._session.execute(
            select(SubscriptionRow)
            .where(SubscriptionRow.is_active.is_(True))
            .where(SubscriptionRow.next_billing_date <= now)
            .order_by(SubscriptionRow.next_billing_date)
        ).scalars()
        return [_subscription_from_row(row) for row in rows]

    @_storage_call
    async def update_subscription(
        self,
        subscription_id: UUID,
        fields: dict[str, Any],
    ) -> Subscription:
        row = self._session.get(SubscriptionRow, subscription_id)
        if row is None:
            raise NotFoundError(f"Subscription not found: {subscription_id}")
        current = _subscription_from_row(row)
        updated = Subscription.model_validate(
            {**current.model_dump(), **fields, "updated_at": datetime.utcnow()}
        )
        _write_subscription(row, updated)
        self._session.flush()
        return _subscription_from_row(row)


class SqlCategoryStorage(_SqlStore, CategoryStorageInterface):

    @_storage_call
    async def create_category(self, category: Category) -> Category:
        if self._session.get(CategoryRow, category.id) is not None:
            raise DuplicateError(f"Category already exists: {category.id}")
        row = CategoryRow(
            id=category.id,
            user_id=category.user_id,
            name=category.name,
            type=category.type.value,
            is_default=category.is_default,
        )
        self._session.add(row)
        self._session.flush()
        return _category_from_row(row)

    @_storage_call
    async def get_category(self, category_id: UUID) -> Optional[Category]:
        row = self._session.get(CategoryRow, category_id)
        return _category_from_row(row) if row else None


# =============================================================================
# UNIT OF WORK
# =============================================================================

def timeout_connect_args(url: str, timeout_seconds: float) -> dict[str, Any]:
    """
    Driver options that bound lock waits and statements to `timeout_seconds`.

    Store calls are synchronous, so the asyncio timeout around a unit only
    fires once the driver returns; the driver itself has to give up first.
    """
    backend = make_url(url).get_backend_name()
    if backend == "sqlite":
        return {"timeout": timeout_seconds}
    if backend == "postgresql":
        millis = max(1, int(timeout_seconds * 1000))
        return {"options": f"-c lock_timeout={millis} -c statement_timeout={millis}"}
    return {}


class SqlLedgerSession(LedgerSession):
    """Stores bound to one SQLAlchemy session (one database transaction)."""

    def __init__(self, session: Session):
        self.accounts = SqlAccountStorage(session)
        self.transactions = SqlTransactionStorage(session)
        self.subscriptions = SqlSubscriptionStorage(session)
        self.categories = SqlCategoryStorage(session)


class SqlLedgerStorage(LedgerStorageInterface):
    """
    Ledger storage on any SQLAlchemy-supported database.

    Usage:
        storage = SqlLedgerStorage()          # DATABASE_URL from settings
        storage.init_db()
        async with storage.unit_of_work() as session:
            ...
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        settings: Optional[DatabaseSettings] = None,
        ledger_settings: Optional[LedgerSettings] = None,
    ):
        settings = settings or get_settings().database
        if engine is None:
            timeout = (ledger_settings or get_settings().ledger).storage_timeout_seconds
            options: dict[str, Any] = {
                "echo": settings.echo,
                "connect_args": timeout_connect_args(settings.url, timeout),
            }
            if not settings.url.startswith("sqlite"):
                options["pool_timeout"] = settings.pool_timeout_seconds
            engine = create_engine(settings.url, **options)
        self._engine = engine
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    def init_db(self) -> None:
        """Create missing tables."""
        with _translated("init_db"):
            Base.metadata.create_all(bind=self._engine)
        logger.info("database_initialized", url=self._engine.url.render_as_string(hide_password=True))

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[SqlLedgerSession]:
        session = self._session_factory()
        try:
            yield SqlLedgerSession(session)
            with _translated("commit"):
                session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()
