"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
The ledger runs on SQL (SQLAlchemy) in production and in memory in tests;
Google Sheets is an optional audit sink.
"""

from src.services.storage.interface import (
    AccountStorageInterface,
    AuditStorageInterface,
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
from src.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
)
from src.services.storage.sql import SqlLedgerStorage
from src.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
)

__all__ = [
    # Interfaces
    "AccountStorageInterface",
    "AuditStorageInterface",
    "CategoryStorageInterface",
    "LedgerSession",
    "LedgerStorageInterface",
    "SubscriptionStorageInterface",
    "TransactionStorageInterface",
    # Exceptions
    "ConnectionError",
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    # Implementations
    "InMemoryAuditStorage",
    "InMemoryLedgerStorage",
    "SqlLedgerStorage",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
]
