"""
SQLAlchemy table definitions for the SQL ledger backend.

Amounts are fixed-point NUMERIC(14, 2). Enum columns hold the enum value
string so rows stay readable from any SQL client.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

MONEY = Numeric(14, 2, asdecimal=True)


class AccountRow(Base):
    __tablename__ = "accounts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    account_type = Column(String(32), nullable=False)
    currency = Column(String(3), nullable=False)
    balance = Column(MONEY, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class CategoryRow(Base):
    __tablename__ = "categories"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=True, index=True)  # NULL for shared defaults
    name = Column(String(100), nullable=False)
    type = Column(String(16), nullable=False)
    is_default = Column(Boolean, nullable=False, default=False)


class TransactionRow(Base):
    __tablename__ = "transactions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    type = Column(String(16), nullable=False)
    currency = Column(String(3), nullable=False)
    account_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False, index=True)
    category_id = Column(Uuid, ForeignKey("categories.id"), nullable=True)
    date = Column(DateTime, nullable=False)
    description = Column(String(500), nullable=True)
    # "metadata" is reserved on declarative classes
    extra = Column("metadata", JSON, default=dict)
    processed = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class SubscriptionRow(Base):
    __tablename__ = "subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(String(500), nullable=True)
    amount = Column(MONEY, nullable=False)
    billing_cycle = Column(String(16), nullable=False)
    next_billing_date = Column(DateTime, nullable=False)
    account_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False)
    category_id = Column(Uuid, ForeignKey("categories.id"), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_subscriptions_due", "is_active", "next_billing_date"),
    )
