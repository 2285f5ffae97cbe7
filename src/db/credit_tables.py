"""Credit tables: per-user account, append-only transaction log, dead letters."""
from __future__ import annotations

import uuid

from sqlalchemy import (
    Column, String, Integer, DateTime, JSON, Text,
    CheckConstraint, Index, UniqueConstraint,
)

from src.db.tables import Base, utcnow


class CreditAccountRow(Base):
    """One per user. Only src.services.credits writes the balance columns."""
    __tablename__ = "credit_account"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, unique=True)

    balance = Column(Integer, nullable=False, default=0)
    total_earned = Column(Integer, nullable=False, default=0)
    total_spent = Column(Integer, nullable=False, default=0)
    frozen_balance = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("frozen_balance >= 0", name="ck_credit_account_frozen_nonneg"),
        CheckConstraint("balance - frozen_balance >= 0", name="ck_credit_account_available_nonneg"),
    )


class CreditTransactionRow(Base):
    """Immutable ledger entry. Never updated or deleted."""
    __tablename__ = "credit_transaction"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False)

    # Type: earn | spend | refund | admin_adjust | freeze | unfreeze
    type = Column(String(20), nullable=False)

    # Positive magnitude; signed for admin_adjust
    amount = Column(Integer, nullable=False)

    # Source: subscription | bonus | api_call | storage | admin
    source = Column(String(20), nullable=False)
    description = Column(Text, nullable=True)
    reference_id = Column(String(255), nullable=True)
    balance_after = Column(Integer, nullable=False)
    metadata_ = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        # NULL reference ids never collide, so unreferenced entries are unrestricted
        UniqueConstraint("user_id", "type", "reference_id", name="uq_credit_transaction_reference"),
        Index("ix_credit_transaction_user_created", "user_id", "created_at"),
    )


class CreditDeadLetterRow(Base):
    """A credit posting that failed inside a webhook handler, awaiting retry."""
    __tablename__ = "credit_dead_letter"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    source = Column(String(20), nullable=False)
    description = Column(Text, nullable=True)
    reference_id = Column(String(255), nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    provider_event_id = Column(String(255), nullable=True)

    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    # Status: pending | resolved | failed
    status = Column(String(20), nullable=False, default="pending", index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
