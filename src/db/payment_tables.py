"""Payment tables: subscription/one-time payment records and the webhook event log."""
from __future__ import annotations

import uuid

from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, BigInteger,
    ForeignKey, Index,
)

from src.db.tables import Base, utcnow


class PaymentRecordRow(Base):
    """Current lifecycle state of one Stripe subscription or one-time payment."""
    __tablename__ = "payment_record"

    # Stripe subscription id (sub_...) or payment intent id (pi_...)
    id = Column(String(255), primary_key=True)
    price_id = Column(String(255), nullable=False)

    # Kind: subscription | one_time
    kind = Column(String(20), nullable=False)

    # Billing interval: month | year | none
    billing_interval = Column(String(10), nullable=False, default="none")

    user_id = Column(String(255), nullable=False, index=True)
    customer_id = Column(String(255), nullable=True, index=True)
    subscription_id = Column(String(255), nullable=True, unique=True)

    # Status: incomplete | incomplete_expired | trialing | active | past_due | canceled | unpaid | paused
    status = Column(String(32), nullable=False)

    period_start = Column(DateTime(timezone=True), nullable=True)
    period_end = Column(DateTime(timezone=True), nullable=True)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    # Stripe `created` (unix seconds) of the newest lifecycle event applied
    last_event_at = Column(BigInteger, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_payment_record_user_status", "user_id", "status"),
    )


class PaymentEventRow(Base):
    """Immutable log of every Stripe delivery: doubles as the idempotency guard."""
    __tablename__ = "payment_event"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    payment_record_id = Column(
        String(255), ForeignKey("payment_record.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    event_type = Column(String(100), nullable=False, index=True)

    # Unique constraint is the source of truth for "already processed"
    provider_event_id = Column(String(255), nullable=False, unique=True)

    raw_payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
