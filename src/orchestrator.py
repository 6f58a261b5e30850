"""
Main Orchestrator for the Personal Ledger

This module ties together all the components and defines the
request-level flows for:
1. Transactions (validate -> engine write -> audit)
2. Accounts (soft/hard delete, balance totals)

DESIGN DECISION: The orchestrator enforces the boundaries:
- No ledger write without validation against stored references
- Users only ever see and touch their own records; another user's record
  is reported exactly like a missing one
- Every outcome is audited

Balances are never touched here. The flows delegate every ledger effect
to the LedgerEngine's atomic operations.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from src.audit import AuditLogger, create_correlation_id
from src.config import get_settings
from src.ledger import (
    EntityNotFoundError,
    LedgerEngine,
    LedgerValidationError,
    ReconciliationError,
    ledger_fields_changed,
)
from src.models.ledger import (
    Account,
    AccountType,
    Currency,
    Transaction,
    TransactionCreate,
    TransactionUpdate,
    ValidationResult,
)
from src.queries import LedgerQueryExecutor
from src.scheduler import RecurringBillingScheduler
from src.services.storage import (
    AuditStorageInterface,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    LedgerStorageInterface,
    SqlLedgerStorage,
)
from src.validation import TransactionValidator


logger = structlog.get_logger(__name__)


class TransactionFlow:
    """
    Orchestrates transaction writes.

    Flow:
    1. Load → Check the caller owns what they reference
    2. Validate → Account active, category visible, currency policy
    3. Write → LedgerEngine atomic operation (record + balances)
    4. Audit → Outcome recorded, including rejections
    """

    def __init__(
        self,
        engine: LedgerEngine,
        validator: Optional[TransactionValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._engine = engine
        self._storage = engine.storage
        self._validator = validator or TransactionValidator()
        self._audit_logger = audit_logger or AuditLogger()

    async def _reject(
        self,
        operation: str,
        result: ValidationResult,
        correlation_id: UUID,
    ) -> None:
        await self._audit_logger.log_validation_failed(
            operation=operation,
            issues=[issue.model_dump() for issue in result.issues],
            correlation_id=correlation_id,
        )
        errors = [issue for issue in result.issues if issue.severity == "error"]
        raise LedgerValidationError(
            "; ".join(issue.message for issue in errors),
            result.issues,
        )

    async def _load_owned(self, user_id: str, transaction_id: UUID) -> Transaction:
        async with self._storage.unit_of_work() as session:
            transaction = await session.transactions.get_transaction(transaction_id)
        if transaction is None or transaction.user_id != user_id:
            raise EntityNotFoundError("transaction", transaction_id)
        return transaction

    async def _write(self, operation: str, correlation_id: UUID, write):
        try:
            return await write
        except ReconciliationError as e:
            await self._audit_logger.log_reconciliation_failed(
                operation=operation,
                error_message=str(e),
                correlation_id=correlation_id,
            )
            raise

    async def create(
        self,
        user_id: str,
        request: TransactionCreate,
        correlation_id: Optional[UUID] = None,
    ) -> Transaction:
        """
        Post a new transaction for `user_id`.

        The transaction inherits the account's currency.

        Raises:
            LedgerValidationError: Account missing/foreign/inactive, or
                                   category not visible to the user
        """
        correlation_id = correlation_id or create_correlation_id()

        async with self._storage.unit_of_work() as session:
            account, result = await self._validator.validate_create(
                session, user_id, request
            )
        if result.has_errors or account is None:
            await self._reject("create_transaction", result, correlation_id)

        transaction = Transaction(
            user_id=user_id,
            currency=account.currency,
            **request.model_dump(),
        )
        created = await self._write(
            "create_transaction",
            correlation_id,
            self._engine.create_transaction(transaction),
        )

        await self._audit_logger.log_transaction_created(
            transaction_id=created.id,
            account_id=created.account_id,
            transaction_type=created.type.value,
            amount=str(created.amount),
            correlation_id=correlation_id,
        )
        return created

    async def update(
        self,
        user_id: str,
        transaction_id: UUID,
        request: TransactionUpdate,
        correlation_id: Optional[UUID] = None,
    ) -> Transaction:
        """
        Apply a partial update to one of the user's transactions.

        Raises:
            EntityNotFoundError: Transaction missing or owned by someone else
            LedgerValidationError: New account/category rejected
        """
        correlation_id = correlation_id or create_correlation_id()
        existing = await self._load_owned(user_id, transaction_id)

        async with self._storage.unit_of_work() as session:
            result = await self._validator.validate_update(
                session, user_id, existing, request
            )
        if result.has_errors:
            await self._reject("update_transaction", result, correlation_id)

        changes = request.changes()
        updated = await self._write(
            "update_transaction",
            correlation_id,
            self._engine.update_transaction(transaction_id, changes),
        )

        await self._audit_logger.log_transaction_updated(
            transaction_id=transaction_id,
            changed_fields=sorted(changes),
            balance_touched=ledger_fields_changed(existing, updated),
            correlation_id=correlation_id,
        )
        return updated

    async def delete(
        self,
        user_id: str,
        transaction_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> Transaction:
        """
        Delete one of the user's transactions and revert its balance effect.

        Raises:
            EntityNotFoundError: Transaction missing or owned by someone else
        """
        correlation_id = correlation_id or create_correlation_id()
        await self._load_owned(user_id, transaction_id)

        deleted = await self._write(
            "delete_transaction",
            correlation_id,
            self._engine.delete_transaction(transaction_id),
        )

        await self._audit_logger.log_transaction_deleted(
            transaction_id=deleted.id,
            account_id=deleted.account_id,
            correlation_id=correlation_id,
        )
        return deleted


class AccountFlow:
    """
    Orchestrates account lifecycle and balance totals.

    An account with history is never physically removed: it is deactivated
    so its transactions keep a valid reference.
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        query_executor: Optional[LedgerQueryExecutor] = None,
    ):
        self._storage = storage
        self._audit_logger = audit_logger or AuditLogger()
        self._queries = query_executor or LedgerQueryExecutor(storage)

    async def create_account(
        self,
        user_id: str,
        name: str,
        currency: Currency = Currency.ARS,
        account_type: AccountType = AccountType.CHECKING,
        initial_balance: Decimal = Decimal("0.00"),
    ) -> Account:
        """Open a new account with an optional starting balance."""
        account = Account(
            user_id=user_id,
            name=name,
            currency=currency,
            account_type=account_type,
            balance=initial_balance,
        )
        async with self._storage.unit_of_work() as session:
            created = await session.accounts.create_account(account)
        logger.info(
            "account_created",
            account_id=str(created.id),
            currency=created.currency.value,
        )
        return created

    async def delete_account(
        self,
        user_id: str,
        account_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """
        Remove an account.

        Returns:
            True if the account was soft-deleted (deactivated),
            False if it was physically deleted

        Raises:
            EntityNotFoundError: Account missing or owned by someone else
        """
        async with self._storage.unit_of_work() as session:
            account = await session.accounts.get_account(account_id)
            if account is None or account.user_id != user_id:
                raise EntityNotFoundError("account", account_id)

            transaction_count = await session.transactions.count_transactions(account_id)
            soft = transaction_count > 0
            if soft:
                await session.accounts.set_account_active(account_id, False)
            else:
                await session.accounts.delete_account(account_id)

        await self._audit_logger.log_account_removed(
            account_id=account_id,
            soft=soft,
            transaction_count=transaction_count,
            correlation_id=correlation_id,
        )
        return soft

    async def total_balance(self, user_id: str, currency: Currency) -> Decimal:
        """Sum of the user's active account balances in one currency."""
        return await self._queries.total_balance(user_id, currency)


def create_audit_storage() -> Optional[AuditStorageInterface]:
    """Google Sheets audit sink if credentials are configured, else None."""
    try:
        return GoogleSheetsAuditStorage(GoogleSheetsClient())
    except Exception as e:
        # Sheets not configured - continue with local-only audit logging
        logger.warning("sheets_audit_not_configured", error=str(e))
        return None


def create_app_components(
    use_storage: bool = True,
    storage: Optional[LedgerStorageInterface] = None,
) -> tuple[TransactionFlow, AccountFlow, RecurringBillingScheduler]:
    """
    Factory function to create all application components.

    Args:
        use_storage: Whether to attach the Google Sheets audit sink.
                    Set to False to log audit events locally only.
        storage: Ledger storage to use. Defaults to the SQL backend at
                 DATABASE_URL, with tables created if missing.

    Returns:
        (transaction_flow, account_flow, billing_scheduler)
    """
    settings = get_settings()

    if storage is None:
        sql_storage = SqlLedgerStorage(
            settings=settings.database,
            ledger_settings=settings.ledger,
        )
        sql_storage.init_db()
        storage = sql_storage

    audit_storage = create_audit_storage() if use_storage else None
    audit_logger = AuditLogger(audit_storage)

    engine = LedgerEngine(storage, settings.ledger)
    transaction_flow = TransactionFlow(
        engine,
        validator=TransactionValidator(settings.ledger),
        audit_logger=audit_logger,
    )
    account_flow = AccountFlow(storage, audit_logger=audit_logger)
    scheduler = RecurringBillingScheduler(engine, audit_logger=audit_logger)

    return transaction_flow, account_flow, scheduler
