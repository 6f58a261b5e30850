"""
Ledger Mutation Engine

Keeps every account's cached balance equal to the signed sum of the
INCOME/EXPENSE transactions posted against it.

DESIGN DECISION: Every balance change in the system flows through
`LedgerEngine._apply_adjustments`. Create, update, delete and the billing
scheduler all describe their effect as a list of `BalanceAdjustment`s and
hand it to that one primitive, so the invariant has a single enforcement
point.

GUARANTEES:
- A transaction write and its balance adjustments commit together or not
  at all (one unit of work per operation).
- Adjustments are applied in ascending account-id order, so two units
  touching the same pair of accounts always lock them in the same order.
- Transient failures retry the WHOLE unit; nothing is retried partially.
"""

import asyncio
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import UUID

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.config import LedgerSettings, get_settings
from src.ledger.errors import (
    CrossCurrencyMoveError,
    EntityNotFoundError,
    LedgerValidationError,
    ReconciliationError,
    TransientLedgerError,
)
from src.models.ledger import (
    BalanceAdjustment,
    Transaction,
    TransactionType,
    ValidationIssue,
)
from src.services.storage.interface import (
    ConnectionError as StorageConnectionError,
    LedgerSession,
    LedgerStorageInterface,
)


logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Fields whose change alters a transaction's balance effect
LEDGER_FIELDS = ("amount", "type", "account_id")

IMMUTABLE_FIELDS = ("id", "user_id", "currency", "created_at")


def balance_delta(transaction_type: TransactionType, amount: Decimal) -> Decimal:
    """Signed effect of a transaction on its account's balance."""
    return amount * transaction_type.sign


def ledger_fields_changed(old: Transaction, new: Transaction) -> bool:
    return any(getattr(old, field) != getattr(new, field) for field in LEDGER_FIELDS)


class LedgerEngine:
    """
    Applies, reverts and re-applies balance deltas for transaction writes.

    The `apply_on_*` primitives run inside a caller's open session. The
    `create_transaction` / `update_transaction` / `delete_transaction`
    operations open their own atomic unit around the record write and
    the primitive.
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        settings: Optional[LedgerSettings] = None,
    ):
        self._storage = storage
        self._settings = settings or get_settings().ledger

    @property
    def storage(self) -> LedgerStorageInterface:
        return self._storage

    # ------------------------------------------------------------------
    # Atomic unit runner
    # ------------------------------------------------------------------

    async def atomic(
        self,
        operation: str,
        work: Callable[[LedgerSession], Awaitable[T]],
    ) -> T:
        """
        Run `work` inside one unit of work.

        The unit is bounded by `storage_timeout_seconds`. Transient
        failures (timeouts, lost connections) roll back and re-run the
        whole unit up to `max_attempts` times. Any other error rolls back
        and propagates immediately.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.max_attempts),
            wait=wait_exponential(
                multiplier=1,
                min=self._settings.retry_wait_min_seconds,
                max=self._settings.retry_wait_max_seconds,
            ),
            retry=retry_if_exception_type(TransientLedgerError),
            before_sleep=self._log_retry(operation),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await self._run_unit(operation, work)
        return result

    async def _run_unit(
        self,
        operation: str,
        work: Callable[[LedgerSession], Awaitable[T]],
    ) -> T:
        timeout = self._settings.storage_timeout_seconds
        try:
            return await asyncio.wait_for(self._in_unit(work), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("ledger_unit_timeout", operation=operation, timeout_seconds=timeout)
            raise TransientLedgerError(f"{operation} timed out after {timeout}s")
        except StorageConnectionError as e:
            logger.warning("ledger_unit_connection_error", operation=operation, error=str(e))
            raise TransientLedgerError(f"{operation}: {e}") from e

    async def _in_unit(self, work: Callable[[LedgerSession], Awaitable[T]]) -> T:
        async with self._storage.unit_of_work() as session:
            return await work(session)

    @staticmethod
    def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "ledger_unit_retry",
                operation=operation,
                attempt=retry_state.attempt_number,
                error=str(error),
            )
        return before_sleep

    # ------------------------------------------------------------------
    # Balance primitives
    # ------------------------------------------------------------------

    async def apply_on_create(
        self,
        session: LedgerSession,
        transaction: Transaction,
    ) -> list[BalanceAdjustment]:
        """Post a new transaction's contribution to its account."""
        return await self._apply_adjustments(
            session,
            "apply_on_create",
            [
                BalanceAdjustment(
                    account_id=transaction.account_id,
                    delta=balance_delta(transaction.type, transaction.amount),
                ),
            ],
        )

    async def apply_on_update(
        self,
        session: LedgerSession,
        old: Transaction,
        new: Transaction,
    ) -> list[BalanceAdjustment]:
        """
        Revert the old contribution and apply the new one.

        No-op when amount, type and account are all unchanged. When the
        account changed, the revert hits the source account and the apply
        hits the destination.
        """
        if not ledger_fields_changed(old, new):
            return []

        return await self._apply_adjustments(
            session,
            "apply_on_update",
            [
                BalanceAdjustment(
                    account_id=old.account_id,
                    delta=-balance_delta(old.type, old.amount),
                ),
                BalanceAdjustment(
                    account_id=new.account_id,
                    delta=balance_delta(new.type, new.amount),
                ),
            ],
        )

    async def apply_on_delete(
        self,
        session: LedgerSession,
        transaction: Transaction,
    ) -> list[BalanceAdjustment]:
        """Remove a deleted transaction's contribution from its account."""
        return await self._apply_adjustments(
            session,
            "apply_on_delete",
            [
                BalanceAdjustment(
                    account_id=transaction.account_id,
                    delta=-balance_delta(transaction.type, transaction.amount),
                ),
            ],
        )

    async def _apply_adjustments(
        self,
        session: LedgerSession,
        operation: str,
        adjustments: list[BalanceAdjustment],
    ) -> list[BalanceAdjustment]:
        # sorted() is stable: a revert stays ahead of an apply on the same account
        ordered = sorted(
            (adjustment for adjustment in adjustments if adjustment.delta != 0),
            key=lambda adjustment: adjustment.account_id,
        )

        for adjustment in ordered:
            try:
                await session.accounts.adjust_balance(
                    adjustment.account_id,
                    adjustment.delta,
                )
            except StorageConnectionError:
                raise
            except Exception as e:
                logger.error(
                    "balance_adjustment_failed",
                    operation=operation,
                    account_id=str(adjustment.account_id),
                    delta=str(adjustment.delta),
                    error=str(e),
                )
                raise ReconciliationError(
                    operation,
                    f"adjusting account {adjustment.account_id} by {adjustment.delta} failed: {e}",
                ) from e

            logger.debug(
                "balance_adjusted",
                operation=operation,
                account_id=str(adjustment.account_id),
                delta=str(adjustment.delta),
            )

        return ordered

    # ------------------------------------------------------------------
    # Atomic transaction writes
    # ------------------------------------------------------------------

    async def create_transaction(self, transaction: Transaction) -> Transaction:
        """
        Persist a transaction and post its balance effect as one unit.

        Raises:
            EntityNotFoundError: The account doesn't exist
            LedgerValidationError: Currency differs from the account's
            ReconciliationError: Balance step failed; nothing was written
            TransientLedgerError: Storage unavailable after all retries
        """
        async def work(session: LedgerSession) -> Transaction:
            account = await session.accounts.get_account(transaction.account_id)
            if account is None:
                raise EntityNotFoundError("account", transaction.account_id)
            if account.currency != transaction.currency:
                raise LedgerValidationError(
                    "Transaction currency must match its account",
                    [ValidationIssue(
                        field="currency",
                        issue_type="currency_mismatch",
                        message=(
                            f"Account {account.id} holds {account.currency.value}, "
                            f"transaction is {transaction.currency.value}"
                        ),
                        severity="error",
                    )],
                )

            created = await session.transactions.create_transaction(transaction)
            await self.apply_on_create(session, created)
            return created

        created = await self.atomic("create_transaction", work)
        logger.info(
            "transaction_created",
            transaction_id=str(created.id),
            account_id=str(created.account_id),
            type=created.type.value,
            amount=str(created.amount),
        )
        return created

    async def update_transaction(
        self,
        transaction_id: UUID,
        changes: dict[str, Any],
    ) -> Transaction:
        """
        Apply `changes` to a transaction and re-derive the affected
        balances as one unit.

        Edits that leave amount, type and account untouched never touch a
        balance.

        Raises:
            EntityNotFoundError: Transaction or destination account missing
            CrossCurrencyMoveError: Destination account has another currency
                                    and cross-currency moves are disabled
            LedgerValidationError: An immutable field was included
            ReconciliationError: Balance step failed; nothing was written
            TransientLedgerError: Storage unavailable after all retries
        """
        immutable = sorted(field for field in changes if field in IMMUTABLE_FIELDS)
        if immutable:
            raise LedgerValidationError(
                f"Fields cannot be changed: {', '.join(immutable)}",
                [
                    ValidationIssue(
                        field=field,
                        issue_type="immutable",
                        message=f"{field} is fixed when the transaction is created",
                        severity="error",
                    )
                    for field in immutable
                ],
            )

        async def work(session: LedgerSession) -> Transaction:
            old = await session.transactions.get_transaction(transaction_id)
            if old is None:
                raise EntityNotFoundError("transaction", transaction_id)

            new_account_id = changes.get("account_id", old.account_id)
            if new_account_id != old.account_id:
                await self._check_destination(session, old, new_account_id)

            new = await session.transactions.update_transaction(transaction_id, changes)
            await self.apply_on_update(session, old, new)
            return new

        updated = await self.atomic("update_transaction", work)
        logger.info(
            "transaction_updated",
            transaction_id=str(transaction_id),
            changed_fields=sorted(changes),
        )
        return updated

    async def _check_destination(
        self,
        session: LedgerSession,
        transaction: Transaction,
        account_id: UUID,
    ) -> None:
        account = await session.accounts.get_account(account_id)
        if account is None or not account.is_active:
            raise EntityNotFoundError("account", account_id)

        if account.currency != transaction.currency:
            if not self._settings.allow_cross_currency_moves:
                raise CrossCurrencyMoveError(
                    "Cannot move a transaction to an account with another currency",
                    [ValidationIssue(
                        field="account_id",
                        issue_type="currency_mismatch",
                        message=(
                            f"Transaction is in {transaction.currency.value}, "
                            f"account {account_id} holds {account.currency.value}"
                        ),
                        severity="error",
                    )],
                )
            # Allowed: the amount is reinterpreted unchanged, no conversion
            logger.warning(
                "cross_currency_move",
                transaction_id=str(transaction.id),
                from_currency=transaction.currency.value,
                to_currency=account.currency.value,
            )

    async def delete_transaction(self, transaction_id: UUID) -> Transaction:
        """
        Delete a transaction and revert its balance effect as one unit.

        Returns:
            The transaction as it was before deletion
        """
        async def work(session: LedgerSession) -> Transaction:
            old = await session.transactions.get_transaction(transaction_id)
            if old is None:
                raise EntityNotFoundError("transaction", transaction_id)

            await session.transactions.delete_transaction(transaction_id)
            await self.apply_on_delete(session, old)
            return old

        deleted = await self.atomic("delete_transaction", work)
        logger.info(
            "transaction_deleted",
            transaction_id=str(deleted.id),
            account_id=str(deleted.account_id),
        )
        return deleted
