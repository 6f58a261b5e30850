"""
Audit Models for the Personal Ledger

Every balance-affecting action in the system is logged for audit purposes.
This provides:
1. Complete traceability of every ledger mutation
2. Debugging information when a unit of work is rolled back
3. A per-run record of what the billing scheduler did
4. Ability to reconstruct history

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.
    """
    # Transaction writes
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_UPDATED = "transaction_updated"
    TRANSACTION_DELETED = "transaction_deleted"
    VALIDATION_FAILED = "validation_failed"
    RECONCILIATION_FAILED = "reconciliation_failed"

    # Accounts
    ACCOUNT_DEACTIVATED = "account_deactivated"
    ACCOUNT_DELETED = "account_deleted"

    # Recurring billing
    SUBSCRIPTION_BILLED = "subscription_billed"
    SUBSCRIPTION_SKIPPED = "subscription_skipped"
    SUBSCRIPTION_BILLING_FAILED = "subscription_billing_failed"
    BILLING_RUN_COMPLETED = "billing_run_completed"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    One append-only entry in the ledger's audit trail.

    Events emitted for the same user request or the same billing run share
    a correlation_id.
    """

    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="Naive UTC"
    )
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # Which ledger record the event is about
    entity_type: Optional[str] = Field(
        default=None,
        description="'transaction', 'account' or 'subscription'"
    )
    entity_id: Optional[UUID] = None
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="Shared by every event of one request or one billing run"
    )

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    is_user_action: bool = Field(
        default=False,
        description="False for events emitted by the billing scheduler"
    )

    def to_log_dict(self) -> dict:
        """JSON-safe field dict, passed to structlog as keyword arguments."""
        return self.model_dump(mode="json")

    def to_sheets_row(self) -> list[str]:
        """
        Flatten to one row in the audit sheet's column order.

        Missing optional values become empty cells and details are
        JSON-encoded into a single cell.
        """
        data = self.to_log_dict()
        return [
            data["event_id"],
            data["timestamp"],
            data["event_type"],
            data["severity"],
            data["entity_type"] or "",
            data["entity_id"] or "",
            data["correlation_id"] or "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.transaction_created(tx_id, account_id, "EXPENSE", "50.00")
        event = AuditEventBuilder.billing_run_completed(run_id, billed=3, skipped=0, failed=1)
    """

    @staticmethod
    def transaction_created(
        transaction_id: UUID,
        account_id: UUID,
        transaction_type: str,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_CREATED,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Transaction created: {transaction_type} {amount}",
            details={
                "account_id": str(account_id),
                "type": transaction_type,
                "amount": amount,
            },
            is_user_action=True,
        )

    @staticmethod
    def transaction_updated(
        transaction_id: UUID,
        changed_fields: list[str],
        balance_touched: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_UPDATED,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Transaction updated: {', '.join(changed_fields) or 'no fields'}",
            details={
                "changed_fields": changed_fields,
                "balance_touched": balance_touched,
            },
            is_user_action=True,
        )

    @staticmethod
    def transaction_deleted(
        transaction_id: UUID,
        account_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_DELETED,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description="Transaction deleted and its balance effect reverted",
            details={
                "account_id": str(account_id),
            },
            is_user_action=True,
        )

    @staticmethod
    def validation_failed(
        operation: str,
        issues: list[dict],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            severity=AuditSeverity.WARNING,
            correlation_id=correlation_id,
            description=f"Validation failed for {operation} with {len(issues)} issues",
            details={
                "operation": operation,
                "issues": issues,
            },
            is_user_action=True,
        )

    @staticmethod
    def reconciliation_failed(
        operation: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECONCILIATION_FAILED,
            severity=AuditSeverity.ERROR,
            correlation_id=correlation_id,
            description=f"Balance adjustment failed during {operation}; unit rolled back",
            error_message=error_message,
            details={
                "operation": operation,
            },
        )

    @staticmethod
    def account_removed(
        account_id: UUID,
        soft: bool,
        transaction_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.ACCOUNT_DEACTIVATED
                if soft
                else AuditEventType.ACCOUNT_DELETED
            ),
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=(
                f"Account deactivated ({transaction_count} transactions kept)"
                if soft
                else "Account deleted"
            ),
            details={
                "transaction_count": transaction_count,
            },
            is_user_action=True,
        )

    @staticmethod
    def subscription_billed(
        subscription_id: UUID,
        transaction_id: UUID,
        amount: str,
        billed_for: datetime,
        next_billing_date: datetime,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SUBSCRIPTION_BILLED,
            entity_type="subscription",
            entity_id=subscription_id,
            correlation_id=correlation_id,
            description=f"Subscription billed: {amount} for {billed_for.date().isoformat()}",
            details={
                "transaction_id": str(transaction_id),
                "amount": amount,
                "billed_for": billed_for.isoformat(),
                "next_billing_date": next_billing_date.isoformat(),
            },
        )

    @staticmethod
    def subscription_skipped(
        subscription_id: UUID,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SUBSCRIPTION_SKIPPED,
            severity=AuditSeverity.DEBUG,
            entity_type="subscription",
            entity_id=subscription_id,
            correlation_id=correlation_id,
            description=f"Subscription skipped: {reason}",
            details={
                "reason": reason,
            },
        )

    @staticmethod
    def subscription_billing_failed(
        subscription_id: UUID,
        error_type: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SUBSCRIPTION_BILLING_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="subscription",
            entity_id=subscription_id,
            correlation_id=correlation_id,
            description=f"Subscription billing failed: {error_type}",
            error_message=error_message,
            details={
                "error_type": error_type,
            },
        )

    @staticmethod
    def billing_run_completed(
        run_id: UUID,
        billed: int,
        skipped: int,
        failed: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BILLING_RUN_COMPLETED,
            severity=AuditSeverity.WARNING if failed else AuditSeverity.INFO,
            entity_type="billing_run",
            entity_id=run_id,
            correlation_id=run_id,
            description=(
                f"Billing run completed: {billed} billed, "
                f"{skipped} skipped, {failed} failed"
            ),
            details={
                "billed": billed,
                "skipped": skipped,
                "failed": failed,
            },
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
