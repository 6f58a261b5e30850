"""
Two-Stage Request Validation

DESIGN DECISION: Transaction requests are validated in two distinct stages:

STAGE 1 - SCHEMA VALIDATION:
- Type checking, required fields, positive two-decimal amounts
- Done by the pydantic request models (TransactionCreate/TransactionUpdate)
  before a request ever reaches this module

STAGE 2 - REFERENCE VALIDATION:
- Account exists, belongs to the user and is active
- Category exists and is visible to the user
- Currency policy for account moves
- This needs storage, so it runs against an open ledger session

IMPORTANT: Validation NEVER silently fixes issues.
It reports them; the flow decides whether to reject the request.
"""

from typing import Optional
from uuid import UUID

from src.config import LedgerSettings, get_settings
from src.models.ledger import (
    Account,
    CategoryType,
    Currency,
    Transaction,
    TransactionCreate,
    TransactionType,
    TransactionUpdate,
    ValidationIssue,
    ValidationResult,
)
from src.services.storage import LedgerSession


_CATEGORY_TYPE_FOR = {
    TransactionType.INCOME: CategoryType.INCOME,
    TransactionType.EXPENSE: CategoryType.EXPENSE,
}


class TransactionValidator:
    """
    Checks a transaction request's references against storage.

    Returns a ValidationResult; errors mean the request must be rejected,
    warnings are surfaced but allowed.
    """

    def __init__(self, settings: Optional[LedgerSettings] = None):
        self._settings = settings or get_settings().ledger

    async def _check_account(
        self,
        session: LedgerSession,
        user_id: str,
        account_id: UUID,
    ) -> tuple[Optional[Account], list[ValidationIssue]]:
        account = await session.accounts.get_account(account_id)

        # Another user's account is reported exactly like a missing one
        if account is None or account.user_id != user_id:
            return None, [ValidationIssue(
                field="account_id",
                issue_type="not_found",
                message=f"Account not found: {account_id}",
                severity="error",
            )]

        if not account.is_active:
            return account, [ValidationIssue(
                field="account_id",
                issue_type="inactive",
                message=f"Account '{account.name}' is deactivated",
                severity="error",
            )]

        return account, []

    async def _check_category(
        self,
        session: LedgerSession,
        user_id: str,
        category_id: Optional[UUID],
        transaction_type: TransactionType,
    ) -> list[ValidationIssue]:
        if category_id is None:
            return []

        category = await session.categories.get_category(category_id)
        if category is None or not category.is_visible_to(user_id):
            return [ValidationIssue(
                field="category_id",
                issue_type="not_found",
                message=f"Category not found: {category_id}",
                severity="error",
            )]

        expected = _CATEGORY_TYPE_FOR.get(transaction_type)
        if expected is not None and category.type != expected:
            return [ValidationIssue(
                field="category_id",
                issue_type="type_mismatch",
                message=(
                    f"{transaction_type.value} transaction filed under "
                    f"{category.type.value} category '{category.name}'"
                ),
                severity="warning",
            )]
        return []

    @staticmethod
    def _check_type(transaction_type: TransactionType) -> list[ValidationIssue]:
        if transaction_type.sign == 0:
            return [ValidationIssue(
                field="type",
                issue_type="no_balance_effect",
                message=f"{transaction_type.value} transactions do not change any balance",
                severity="info",
            )]
        return []

    def _check_currency_move(
        self,
        currency: Currency,
        destination: Account,
    ) -> list[ValidationIssue]:
        if destination.currency == currency:
            return []
        return [ValidationIssue(
            field="account_id",
            issue_type="currency_mismatch",
            message=(
                f"Transaction is in {currency.value}, "
                f"account '{destination.name}' holds {destination.currency.value}"
            ),
            severity="warning" if self._settings.allow_cross_currency_moves else "error",
        )]

    async def validate_create(
        self,
        session: LedgerSession,
        user_id: str,
        request: TransactionCreate,
    ) -> tuple[Optional[Account], ValidationResult]:
        """
        Validate a create request.

        Returns:
            (account, result). The account is None when it failed lookup.
        """
        account, issues = await self._check_account(session, user_id, request.account_id)
        issues.extend(
            await self._check_category(session, user_id, request.category_id, request.type)
        )
        issues.extend(self._check_type(request.type))
        return account, ValidationResult(issues=issues)

    async def validate_update(
        self,
        session: LedgerSession,
        user_id: str,
        existing: Transaction,
        request: TransactionUpdate,
    ) -> ValidationResult:
        """Validate a partial update of `existing`."""
        changes = request.changes()
        issues: list[ValidationIssue] = []

        new_account_id = changes.get("account_id", existing.account_id)
        if new_account_id != existing.account_id:
            account, account_issues = await self._check_account(
                session, user_id, new_account_id
            )
            issues.extend(account_issues)
            if account is not None and account.is_active:
                issues.extend(self._check_currency_move(existing.currency, account))

        new_type = changes.get("type", existing.type)
        if "category_id" in changes or "type" in changes:
            issues.extend(
                await self._check_category(
                    session,
                    user_id,
                    changes.get("category_id", existing.category_id),
                    new_type,
                )
            )
        if "type" in changes:
            issues.extend(self._check_type(new_type))

        return ValidationResult(issues=issues)

    @staticmethod
    def get_user_friendly_summary(result: ValidationResult) -> str:
        """Plain-text summary of the issues for display to a user."""
        if not result.issues:
            return "All checks passed."

        lines = []
        errors = [i for i in result.issues if i.severity == "error"]
        warnings = [i for i in result.issues if i.severity == "warning"]

        if errors:
            lines.append("The request was rejected:")
            lines.extend(f"  - {issue.message}" for issue in errors)
        if warnings:
            lines.append("Please verify the following:")
            lines.extend(f"  - {issue.message}" for issue in warnings)

        return "\n".join(lines)
