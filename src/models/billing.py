"""Billing data models: enums shared by tables and services, plus API schemas."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


class PaymentStatus(str, Enum):
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"


# No later event may move a record out of these
TERMINAL_STATUSES = frozenset({PaymentStatus.CANCELED, PaymentStatus.INCOMPLETE_EXPIRED})

# Statuses that count as a paying subscriber
ENTITLED_STATUSES = frozenset({PaymentStatus.ACTIVE, PaymentStatus.TRIALING})


class PaymentKind(str, Enum):
    SUBSCRIPTION = "subscription"
    ONE_TIME = "one_time"


class BillingInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"
    NONE = "none"


class TransactionType(str, Enum):
    EARN = "earn"
    SPEND = "spend"
    REFUND = "refund"
    ADMIN_ADJUST = "admin_adjust"
    FREEZE = "freeze"
    UNFREEZE = "unfreeze"


class TransactionSource(str, Enum):
    SUBSCRIPTION = "subscription"
    BONUS = "bonus"
    API_CALL = "api_call"
    STORAGE = "storage"
    ADMIN = "admin"


class DeadLetterStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


def signed_delta(tx_type: str, amount: int) -> int:
    """Balance change implied by a ledger entry.

    ``admin_adjust`` is stored signed; freeze/unfreeze never touch ``balance``.
    """
    tx_type = TransactionType(tx_type)
    if tx_type in (TransactionType.EARN, TransactionType.REFUND):
        return amount
    if tx_type == TransactionType.SPEND:
        return -amount
    if tx_type == TransactionType.ADMIN_ADJUST:
        return amount
    return 0


# ── API schemas ──────────────────────────────────────────────────────────────

class CreditAccount(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    balance: int
    total_earned: int
    total_spent: int
    frozen_balance: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @computed_field
    @property
    def available_balance(self) -> int:
        return self.balance - self.frozen_balance


class CreditTransaction(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    type: TransactionType
    amount: int
    source: TransactionSource
    description: Optional[str] = None
    reference_id: Optional[str] = None
    balance_after: int
    metadata: Optional[dict[str, Any]] = Field(default=None, validation_alias="metadata_")
    created_at: Optional[datetime] = None


class PaymentRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    price_id: str
    kind: PaymentKind
    billing_interval: BillingInterval
    user_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: PaymentStatus
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
