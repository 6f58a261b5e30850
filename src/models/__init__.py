"""
Data Models Package

This package contains all Pydantic models used in the Personal Ledger.
All data flowing through the system must conform to these schemas.
"""

from src.models.ledger import (
    Account,
    AccountType,
    BalanceAdjustment,
    BillingCycle,
    BillingOutcome,
    BillingOutcomeStatus,
    BillingRunReport,
    Category,
    CategoryType,
    Currency,
    ReconciliationReport,
    Subscription,
    Transaction,
    TransactionCreate,
    TransactionType,
    TransactionUpdate,
    ValidationIssue,
    ValidationResult,
)
from src.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "Account",
    "AccountType",
    "BalanceAdjustment",
    "BillingCycle",
    "BillingOutcome",
    "BillingOutcomeStatus",
    "BillingRunReport",
    "Category",
    "CategoryType",
    "Currency",
    "ReconciliationReport",
    "Subscription",
    "Transaction",
    "TransactionCreate",
    "TransactionType",
    "TransactionUpdate",
    "ValidationIssue",
    "ValidationResult",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
