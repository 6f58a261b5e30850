"""
Audit Logger

DESIGN DECISION: Every ledger mutation and every billing outcome is logged.
This provides:
1. Complete traceability of balance changes
2. Debugging capability for failed billing runs
3. A history the user can inspect

The audit logger:
- Is async to not block the ledger flow
- Gracefully handles failures (a failed audit write never undoes a
  committed ledger unit)
- Supports correlation IDs to trace related events
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

import structlog

from src.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from src.models.ledger import BillingOutcome, BillingOutcomeStatus, BillingRunReport
from src.services.storage import AuditStorageInterface


def configure_logging(level: str = "INFO") -> None:
    """
    Configure structlog for JSON output through the stdlib logging tree.

    Called once by the process entry point.
    """
    logging.basicConfig(format="%(message)s", level=level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


_SEVERITY_METHODS = {
    AuditSeverity.DEBUG: "debug",
    AuditSeverity.INFO: "info",
    AuditSeverity.WARNING: "warning",
    AuditSeverity.ERROR: "error",
    AuditSeverity.CRITICAL: "critical",
}


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. An audit store (in memory, or Google Sheets for user visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        method = getattr(self._logger, _SEVERITY_METHODS[event.severity])
        method("audit_event", **event.to_log_dict())

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_transaction_created(
        self,
        transaction_id: UUID,
        account_id: UUID,
        transaction_type: str,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.transaction_created(
            transaction_id=transaction_id,
            account_id=account_id,
            transaction_type=transaction_type,
            amount=amount,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_transaction_updated(
        self,
        transaction_id: UUID,
        changed_fields: list[str],
        balance_touched: bool,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.transaction_updated(
            transaction_id=transaction_id,
            changed_fields=changed_fields,
            balance_touched=balance_touched,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_transaction_deleted(
        self,
        transaction_id: UUID,
        account_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.transaction_deleted(
            transaction_id=transaction_id,
            account_id=account_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_validation_failed(
        self,
        operation: str,
        issues: list[dict],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a rejected request."""
        event = AuditEventBuilder.validation_failed(
            operation=operation,
            issues=issues,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_reconciliation_failed(
        self,
        operation: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a rolled-back unit whose balance step failed."""
        event = AuditEventBuilder.reconciliation_failed(
            operation=operation,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_account_removed(
        self,
        account_id: UUID,
        soft: bool,
        transaction_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.account_removed(
            account_id=account_id,
            soft=soft,
            transaction_count=transaction_count,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_billing_outcome(
        self,
        outcome: BillingOutcome,
        amount: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log the result of billing a single subscription."""
        if outcome.status == BillingOutcomeStatus.BILLED:
            event = AuditEventBuilder.subscription_billed(
                subscription_id=outcome.subscription_id,
                transaction_id=outcome.transaction_id,
                amount=amount or "",
                billed_for=outcome.billed_for,
                next_billing_date=outcome.next_billing_date,
                correlation_id=correlation_id,
            )
        elif outcome.status == BillingOutcomeStatus.SKIPPED:
            event = AuditEventBuilder.subscription_skipped(
                subscription_id=outcome.subscription_id,
                reason=outcome.reason or "not due",
                correlation_id=correlation_id,
            )
        else:
            event = AuditEventBuilder.subscription_billing_failed(
                subscription_id=outcome.subscription_id,
                error_type=outcome.error_type or "Exception",
                error_message=outcome.error_message or "",
                correlation_id=correlation_id,
            )
        await self.log(event)

    async def log_billing_run(self, report: BillingRunReport) -> None:
        """Log the summary of a completed billing run."""
        event = AuditEventBuilder.billing_run_completed(
            run_id=report.run_id,
            billed=report.billed_count,
            skipped=report.skipped_count,
            failed=report.failed_count,
        )
        await self.log(event)

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., a transaction edit).
    Pass it through all subsequent operations.
    """
    return uuid4()
