"""
Ledger Exceptions

Callers map these to outcomes:
- LedgerValidationError, EntityNotFoundError: the request was wrong
  (4xx-equivalent); nothing was written.
- ReconciliationError, TransientLedgerError: generic failure; the unit of
  work was rolled back, so no partial ledger mutation took effect.
"""

from typing import Optional
from uuid import UUID

from src.models.ledger import ValidationIssue


class LedgerError(Exception):
    """Base exception for ledger operations."""
    pass


class LedgerValidationError(LedgerError):
    """Request rejected before any ledger effect."""

    def __init__(self, message: str, issues: Optional[list[ValidationIssue]] = None):
        self.issues = issues or []
        super().__init__(message)


class CrossCurrencyMoveError(LedgerValidationError):
    """Transaction moved to an account holding a different currency."""
    pass


class EntityNotFoundError(LedgerError):
    """A referenced account, category, transaction or subscription is missing."""

    def __init__(self, entity_type: str, entity_id: UUID):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} not found: {entity_id}")


class ReconciliationError(LedgerError):
    """
    The balance adjustment of a unit failed after its record write.

    The whole unit has been rolled back when this reaches the caller.
    """

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation}: {message}")


class TransientLedgerError(LedgerError):
    """Storage timed out or was unreachable. The whole unit may be retried."""
    pass
