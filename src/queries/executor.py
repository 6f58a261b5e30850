"""
Ledger Query Execution

DESIGN DECISION: Queries are DETERMINISTIC reads of stored data.
Totals are computed from cached account balances, never estimated, and a
reconciliation check recomputes a balance from its transactions so drift
in the cached value can be detected.

GUARANTEES:
- Only returns real data from storage
- Never sums across currencies; every total is for exactly one currency
- Clear zero total if a user has no matching accounts
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from src.ledger.engine import balance_delta
from src.ledger.errors import EntityNotFoundError
from src.models.ledger import Currency, ReconciliationReport, Transaction
from src.services.storage import LedgerStorageInterface


logger = structlog.get_logger(__name__)


class QueryExecutionError(Exception):
    """Error during query execution."""
    pass


class LedgerQueryExecutor:
    """
    Read-side queries over the ledger.

    Each query runs in its own read-only unit of work.
    """

    def __init__(self, storage: LedgerStorageInterface):
        self._storage = storage

    async def total_balance(self, user_id: str, currency: Currency) -> Decimal:
        """
        Sum of cached balances over the user's ACTIVE accounts in `currency`.
        """
        try:
            async with self._storage.unit_of_work() as session:
                accounts = await session.accounts.list_accounts(
                    user_id,
                    currency=currency,
                    active_only=True,
                )
        except Exception as e:
            raise QueryExecutionError(f"Failed to total balances: {e}") from e

        return sum((account.balance for account in accounts), Decimal("0.00"))

    async def balances_by_currency(self, user_id: str) -> dict[Currency, Decimal]:
        """One total per supported currency, zero where the user holds none."""
        return {
            currency: await self.total_balance(user_id, currency)
            for currency in Currency
        }

    async def account_transactions(
        self,
        account_id: UUID,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        """Transactions posted against an account, newest first."""
        try:
            async with self._storage.unit_of_work() as session:
                transactions = await session.transactions.list_transactions(
                    account_id=account_id,
                )
        except Exception as e:
            raise QueryExecutionError(f"Failed to list transactions: {e}") from e
        return transactions[:limit] if limit is not None else transactions

    async def reconcile(
        self,
        account_id: UUID,
        opening_balance: Decimal = Decimal("0.00"),
    ) -> ReconciliationReport:
        """
        Compare an account's cached balance against
        `opening_balance + sum(signed amounts of its transactions)`.

        Raises:
            EntityNotFoundError: The account doesn't exist
        """
        async with self._storage.unit_of_work() as session:
            account = await session.accounts.get_account(account_id)
            if account is None:
                raise EntityNotFoundError("account", account_id)
            transactions = await session.transactions.list_transactions(
                account_id=account_id,
            )

        expected = opening_balance + sum(
            (balance_delta(tx.type, tx.amount) for tx in transactions),
            Decimal("0.00"),
        )
        report = ReconciliationReport(
            account_id=account_id,
            cached_balance=account.balance,
            expected_balance=expected,
            transaction_count=len(transactions),
        )

        if not report.is_consistent:
            logger.warning(
                "balance_drift_detected",
                account_id=str(account_id),
                cached=str(report.cached_balance),
                expected=str(report.expected_balance),
                difference=str(report.difference),
            )
        return report
