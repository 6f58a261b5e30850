"""Ledger mutation engine package."""

from src.ledger.engine import LEDGER_FIELDS, LedgerEngine, balance_delta, ledger_fields_changed
from src.ledger.errors import (
    CrossCurrencyMoveError,
    EntityNotFoundError,
    LedgerError,
    LedgerValidationError,
    ReconciliationError,
    TransientLedgerError,
)

__all__ = [
    "LEDGER_FIELDS",
    "LedgerEngine",
    "balance_delta",
    "ledger_fields_changed",
    # Exceptions
    "CrossCurrencyMoveError",
    "EntityNotFoundError",
    "LedgerError",
    "LedgerValidationError",
    "ReconciliationError",
    "TransientLedgerError",
]
